"""Delivery of approval outcomes to caller-supplied callback URLs."""

import asyncio
import hashlib
import hmac
import json
import logging
import time
from typing import Any, Dict, Optional

import httpx

from keywarden.exceptions import SSRFProtectionError
from keywarden.models.approval_request import ApprovalRequest
from keywarden.utils.url_validation import validate_url_for_ssrf

logger = logging.getLogger(__name__)

EVENT_APPROVAL_RESOLVED = "approval.resolved"


def generate_signature(payload: str, secret: str) -> str:
    """HMAC-SHA256 hex signature of the exact request body."""
    return hmac.new(secret.encode("utf-8"), payload.encode("utf-8"), hashlib.sha256).hexdigest()


def build_callback_payload(request: ApprovalRequest) -> Dict[str, Any]:
    return {
        "event": EVENT_APPROVAL_RESOLVED,
        "timestamp": time.time(),
        "data": {
            "request_id": request.id,
            "resource_id": request.resource_id,
            "status": request.status,
            "resolved_by": request.resolved_by,
            "resolved_at": request.resolved_at.isoformat() if request.resolved_at else None,
        },
    }


async def deliver_callback(
    request: ApprovalRequest,
    secret: str,
    client: Optional[httpx.AsyncClient] = None,
    retry_count: int = 2,
) -> bool:
    """POST the resolved request to its callback URL.

    The body is signed with the resource's API key so the receiver can check
    it came from KeyWarden. Failures are logged; the decision stands either way.

    Returns:
        True if the receiver answered 2xx
    """
    if not request.callback_url:
        return False

    try:
        validate_url_for_ssrf(request.callback_url, allowed_schemes=["https"])
    except (SSRFProtectionError, ValueError) as e:
        logger.warning(f"Refusing callback for request {request.id}: {e}")
        return False

    payload_json = json.dumps(build_callback_payload(request))
    headers = {
        "Content-Type": "application/json",
        "X-KeyWarden-Signature": generate_signature(payload_json, secret),
        "X-KeyWarden-Event": EVENT_APPROVAL_RESOLVED,
        "User-Agent": "KeyWarden-Callback/1.0",
    }

    owns_client = client is None
    client = client or httpx.AsyncClient(timeout=10.0)
    last_error = None
    try:
        for attempt in range(retry_count + 1):
            try:
                response = await client.post(request.callback_url, content=payload_json, headers=headers)
                if 200 <= response.status_code < 300:
                    logger.info(f"Delivered callback for request {request.id}")
                    return True
                last_error = f"HTTP {response.status_code}"
            except httpx.TimeoutException:
                last_error = "Request timeout"
            except httpx.RequestError as e:
                last_error = f"Request error: {e}"

            if attempt < retry_count:
                await asyncio.sleep(2**attempt)
    finally:
        if owns_client:
            await client.aclose()

    logger.error(
        f"Callback for request {request.id} failed after {retry_count + 1} attempts: {last_error}"
    )
    return False
