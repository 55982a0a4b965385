"""Outbound URL validation for callback and notification webhooks.

Approval callbacks are supplied by API callers, so every outbound URL is
checked before KeyWarden posts to it:
- scheme must be allowed (https by default)
- loopback, private, link-local and reserved addresses are refused
- hostnames are resolved and the resolved address is checked as well
"""

import ipaddress
import socket
from urllib.parse import ParseResult, urlparse

from keywarden.exceptions import SSRFProtectionError

BLOCKED_NETWORKS = [
    ipaddress.ip_network("10.0.0.0/8"),
    ipaddress.ip_network("172.16.0.0/12"),
    ipaddress.ip_network("192.168.0.0/16"),
    ipaddress.ip_network("127.0.0.0/8"),
    ipaddress.ip_network("169.254.0.0/16"),  # cloud metadata lives here
    ipaddress.ip_network("0.0.0.0/8"),
    ipaddress.ip_network("100.64.0.0/10"),
    ipaddress.ip_network("240.0.0.0/4"),
    ipaddress.ip_network("::1/128"),
    ipaddress.ip_network("fe80::/10"),
    ipaddress.ip_network("fc00::/7"),
]

LOCALHOST_HOSTNAMES = {"localhost", "localhost.localdomain", "ip6-localhost", "ip6-loopback"}


def is_private_ip(ip_address: str) -> bool:
    """True for loopback, private, link-local and reserved addresses.

    Raises:
        ValueError: If ip_address is not an IP address
    """
    ip_obj = ipaddress.ip_address(ip_address)
    if isinstance(ip_obj, ipaddress.IPv6Address) and ip_obj.ipv4_mapped:
        return is_private_ip(str(ip_obj.ipv4_mapped))
    return any(ip_obj in network for network in BLOCKED_NETWORKS)


def resolve_hostname(hostname: str) -> str | None:
    """First address a hostname resolves to, or None if resolution fails."""
    try:
        addr_info = socket.getaddrinfo(hostname, None, socket.AF_UNSPEC, socket.SOCK_STREAM)
    except (socket.gaierror, socket.herror, OSError):
        return None
    return str(addr_info[0][4][0]) if addr_info else None


def validate_url_for_ssrf(
    url: str,
    allowed_schemes: list[str] | None = None,
    resolve_dns: bool = True,
) -> ParseResult:
    """Validate an outbound URL.

    Returns:
        The parsed URL

    Raises:
        SSRFProtectionError: Disallowed scheme or internal destination
        ValueError: Empty or malformed URL
    """
    if not url:
        raise ValueError("URL cannot be empty")
    allowed_schemes = allowed_schemes or ["https"]

    parsed = urlparse(url)
    if parsed.scheme not in allowed_schemes:
        raise SSRFProtectionError(
            f"URL scheme '{parsed.scheme}' not allowed. "
            f"Allowed schemes: {', '.join(allowed_schemes)}"
        )

    hostname = parsed.hostname
    if not hostname:
        raise ValueError("URL must include a hostname")
    try:
        hostname = hostname.encode("idna").decode("ascii").lower()
    except UnicodeError:
        raise ValueError(f"Invalid hostname: {hostname}")

    if hostname in LOCALHOST_HOSTNAMES:
        raise SSRFProtectionError(f"Blocked private/internal hostname: {hostname}")

    try:
        literal_ip = ipaddress.ip_address(hostname.strip("[]"))
    except ValueError:
        literal_ip = None

    if literal_ip is not None:
        if is_private_ip(str(literal_ip)):
            raise SSRFProtectionError(f"Blocked private IP address: {literal_ip}")
    elif resolve_dns:
        resolved_ip = resolve_hostname(hostname)
        if resolved_ip and is_private_ip(resolved_ip):
            raise SSRFProtectionError(
                f"Hostname '{hostname}' resolves to private IP: {resolved_ip}"
            )

    return parsed
