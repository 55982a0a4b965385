"""Command-line side of the device authorization flow.

The CLI asks the server for a device code, shows the user code to the
human, and polls the token endpoint until the human approves or denies it
or the code expires.
"""

import asyncio
import logging
import time
from typing import Awaitable, Callable, Optional

import httpx

logger = logging.getLogger(__name__)

DEVICE_CODE_GRANT_TYPE = "urn:ietf:params:oauth:grant-type:device_code"


class DeviceLoginError(Exception):
    """Terminal failure of a device login. ``error_code`` is the server's error value."""

    def __init__(self, error_code: str, message: Optional[str] = None) -> None:
        self.error_code = error_code
        super().__init__(message or error_code)


async def request_device_code(client: httpx.AsyncClient, base_url: str) -> dict:
    """Start a device flow session on the server."""
    response = await client.post(f"{base_url.rstrip('/')}/api/auth/device/code", json={})
    response.raise_for_status()
    return response.json()


async def poll_for_token(
    client: httpx.AsyncClient,
    base_url: str,
    device_code: str,
    interval: float = 5,
    expires_in: float = 1800,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> str:
    """Poll the token endpoint until a token is issued.

    ``authorization_pending`` keeps polling at the current interval and
    ``slow_down`` doubles it for the rest of the session.

    Returns:
        The bearer access token

    Raises:
        DeviceLoginError: ``access_denied``, ``expired_token``, any other
            server error, or local expiry (reported as ``expired_token``)
    """
    url = f"{base_url.rstrip('/')}/api/auth/token"
    deadline = clock() + expires_in
    interval = interval or 5

    while True:
        await sleep(interval)
        if clock() > deadline:
            raise DeviceLoginError("expired_token", "Authentication timed out. Please try again.")

        try:
            response = await client.post(
                url, json={"device_code": device_code, "grant_type": DEVICE_CODE_GRANT_TYPE}
            )
        except httpx.RequestError as e:
            raise DeviceLoginError("network_error", f"Network error during polling: {e}") from e

        if response.status_code == 200:
            return response.json()["access_token"]

        try:
            error_code = response.json().get("error", "unknown_error")
        except ValueError:
            error_code = "unknown_error"

        if error_code == "authorization_pending":
            continue
        if error_code == "slow_down":
            interval *= 2
            logger.debug(f"Server asked to slow down; polling every {interval}s")
            continue
        if error_code == "access_denied":
            raise DeviceLoginError(error_code, "Access denied by user.")
        if error_code == "expired_token":
            raise DeviceLoginError(error_code, "Session expired. Please try again.")
        raise DeviceLoginError(error_code, f"Authentication failed: {error_code}")
