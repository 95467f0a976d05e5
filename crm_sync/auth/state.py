"""
Signed OAuth state tokens.

Format: ``base64url(JSON payload) + "." + base64url(HMAC-SHA256(secret,
encoded payload))`` with payload ``{"tenantKey", "nonce", "issuedAtMs"}``.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import secrets
import time
from typing import Any

from crm_sync.errors import OAuthFlowError

# Maximum accepted state age (10 minutes)
DEFAULT_MAX_AGE_MS = 10 * 60 * 1000


def b64url_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def b64url_decode(text: str) -> bytes:
    padding = "=" * (-len(text) % 4)
    return base64.urlsafe_b64decode(text + padding)


def _sign(secret: str, encoded_payload: str) -> str:
    mac = hmac.new(secret.encode("utf-8"), encoded_payload.encode("utf-8"), hashlib.sha256)
    return b64url_encode(mac.digest())


def create_signed_state(
    tenant_key: str,
    secret: str,
    now_ms: int | None = None,
    nonce: str | None = None,
) -> str:
    """
    Create a signed state token binding an OAuth round trip to a tenant.

    Args:
        tenant_key: Tenant starting the connect flow
        secret: State signing secret
        now_ms: Issue time in epoch milliseconds (defaults to now)
        nonce: Random nonce (generated when omitted)

    Returns:
        State token string
    """
    payload = {
        "tenantKey": tenant_key,
        "nonce": nonce or secrets.token_urlsafe(16),
        "issuedAtMs": int(time.time() * 1000) if now_ms is None else now_ms,
    }
    encoded = b64url_encode(
        json.dumps(payload, separators=(",", ":")).encode("utf-8")
    )
    return f"{encoded}.{_sign(secret, encoded)}"


def verify_signed_state(
    state: str,
    secret: str,
    expected_tenant_key: str,
    max_age_ms: int = DEFAULT_MAX_AGE_MS,
    now_ms: int | None = None,
) -> dict[str, Any]:
    """
    Verify a state token and return its payload.

    Args:
        state: Token produced by create_signed_state
        secret: State signing secret
        expected_tenant_key: Tenant key of the authenticated caller
        max_age_ms: Maximum accepted age
        now_ms: Current time in epoch milliseconds (defaults to now)

    Returns:
        Decoded payload dictionary

    Raises:
        OAuthFlowError: ``invalid_state``, ``state_expired`` or
            ``tenant_key_mismatch``
    """
    encoded, sep, signature = (state or "").partition(".")
    if not sep or not encoded or not signature:
        raise OAuthFlowError("invalid_state", "State token is malformed.")

    expected = _sign(secret, encoded)
    if not hmac.compare_digest(expected.encode("utf-8"), signature.encode("utf-8")):
        raise OAuthFlowError("invalid_state", "State signature does not match.")

    try:
        payload = json.loads(b64url_decode(encoded))
    except (binascii.Error, UnicodeDecodeError, ValueError) as e:
        raise OAuthFlowError("invalid_state", "State payload is unreadable.") from e

    issued_at = payload.get("issuedAtMs") if isinstance(payload, dict) else None
    if not isinstance(issued_at, int) or isinstance(issued_at, bool):
        raise OAuthFlowError("invalid_state", "State payload is incomplete.")

    now = int(time.time() * 1000) if now_ms is None else now_ms
    if now - issued_at > max_age_ms:
        raise OAuthFlowError("state_expired", "State token has expired.")

    if payload.get("tenantKey") != expected_tenant_key:
        raise OAuthFlowError(
            "tenant_key_mismatch", "State was issued for a different tenant."
        )
    return payload
