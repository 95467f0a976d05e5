"""
Inbound webhook authentication.

Two schemes are supported because the remote CRM may send either:

- Scheme A (``X-HubSpot-Signature-V3``): base64 HMAC-SHA256 over
  method + decoded external URI + raw body + timestamp header, with a
  bounded timestamp skew.
- Scheme B (``X-HubSpot-Signature``): hex SHA-256 of
  secret + method + external URL + raw body, no timestamp.

Signature values, computed or received, are never logged.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import logging
import re
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from urllib.parse import urlsplit

from requests.structures import CaseInsensitiveDict

# Header names
SIGNATURE_V3_HEADER = "X-HubSpot-Signature-V3"
TIMESTAMP_HEADER = "X-HubSpot-Request-Timestamp"
SIGNATURE_V2_HEADER = "X-HubSpot-Signature"

# Maximum accepted timestamp skew for scheme A (5 minutes)
DEFAULT_MAX_AGE_MS = 5 * 60 * 1000

# Rejection reasons
REASON_MISSING_HEADERS = "Missing signature headers."
REASON_INVALID_TIMESTAMP = "Invalid timestamp."
REASON_TIMESTAMP_WINDOW = "Timestamp outside window."
REASON_SIGNATURE_MISMATCH = "Signature mismatch."

# Headers carrying the original path behind a reverse proxy, in priority order
FORWARDED_PATH_HEADERS = (
    "X-Forwarded-Uri",
    "X-Original-URL",
    "X-Original-URI",
    "X-Rewrite-URL",
)

# Percent-encodings the remote CRM decodes before signing (scheme A)
_V3_DECODE_TABLE = {
    "%3A": ":",
    "%2F": "/",
    "%3F": "?",
    "%40": "@",
    "%21": "!",
    "%24": "$",
    "%27": "'",
    "%28": "(",
    "%29": ")",
    "%2A": "*",
    "%2C": ",",
    "%3B": ";",
}
_V3_DECODE_RE = re.compile("|".join(_V3_DECODE_TABLE), re.IGNORECASE)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class VerificationResult:
    """Outcome of a signature check; ``reason`` is set when ``ok`` is False."""

    ok: bool
    reason: str | None = None
    scheme: str | None = None

    @classmethod
    def accept(cls, scheme: str) -> VerificationResult:
        return cls(ok=True, scheme=scheme)

    @classmethod
    def reject(cls, reason: str, scheme: str | None = None) -> VerificationResult:
        return cls(ok=False, reason=reason, scheme=scheme)


def first_header_value(value: str | None) -> str | None:
    """Return the first comma-separated element of a header, or None."""
    if not value:
        return None
    first = value.split(",")[0].strip()
    return first or None


def external_url(url: str, headers: Mapping[str, str]) -> str:
    """
    Reconstruct the externally visible URL of a request.

    Forwarding headers set by a reverse proxy take priority over the URL
    the application server saw. Only absolute-path forms are accepted
    from the path headers.

    Args:
        url: URL as seen by the application
        headers: Request headers (any mapping; lookup is case-insensitive)

    Returns:
        ``proto://host/path?query``
    """
    h = CaseInsensitiveDict(headers)
    parts = urlsplit(url)

    proto = first_header_value(h.get("X-Forwarded-Proto")) or parts.scheme or "https"
    host = (
        first_header_value(h.get("X-Forwarded-Host"))
        or first_header_value(h.get("Host"))
        or parts.netloc
    )

    path = None
    for name in FORWARDED_PATH_HEADERS:
        candidate = first_header_value(h.get(name))
        if candidate and candidate.startswith("/"):
            path = candidate
            break
    if path is None:
        path = parts.path or "/"
        if parts.query:
            path = f"{path}?{parts.query}"

    return f"{proto}://{host}{path}"


def decode_uri_for_v3(uri: str) -> str:
    """Decode the fixed set of percent-encodings signed in decoded form."""
    return _V3_DECODE_RE.sub(lambda m: _V3_DECODE_TABLE[m.group(0).upper()], uri)


def _safe_equal(left: str, right: str) -> bool:
    return hmac.compare_digest(left.encode("utf-8"), right.encode("utf-8"))


def verify_v3(
    secret: str,
    method: str,
    url: str,
    raw_body: bytes,
    signature: str | None,
    timestamp: str | None,
    now_ms: int | None = None,
    max_age_ms: int = DEFAULT_MAX_AGE_MS,
) -> VerificationResult:
    """
    Verify a scheme A (timestamped HMAC) signature.

    Args:
        secret: Shared secret (the OAuth app client secret)
        method: HTTP method
        url: Externally visible request URL
        raw_body: Unparsed request body
        signature: Value of the V3 signature header
        timestamp: Value of the request timestamp header (epoch ms)
        now_ms: Current time in epoch milliseconds (defaults to now)
        max_age_ms: Accepted skew in either direction

    Returns:
        VerificationResult
    """
    if not signature or not timestamp:
        return VerificationResult.reject(REASON_MISSING_HEADERS, "v3")

    ts_raw = timestamp.strip()
    # ASCII digits only
    if not (ts_raw.isascii() and ts_raw.isdigit()):
        return VerificationResult.reject(REASON_INVALID_TIMESTAMP, "v3")
    ts = int(ts_raw)

    now = int(time.time() * 1000) if now_ms is None else now_ms
    if abs(now - ts) > max_age_ms:
        return VerificationResult.reject(REASON_TIMESTAMP_WINDOW, "v3")

    base = (
        method.upper().encode("utf-8")
        + decode_uri_for_v3(url).encode("utf-8")
        + raw_body
        + ts_raw.encode("utf-8")
    )
    mac = hmac.new(secret.encode("utf-8"), base, hashlib.sha256).digest()
    computed = base64.b64encode(mac).decode("ascii")
    if not _safe_equal(computed, signature.strip()):
        return VerificationResult.reject(REASON_SIGNATURE_MISMATCH, "v3")
    return VerificationResult.accept("v3")


def verify_v2(
    secret: str,
    method: str,
    url: str,
    raw_body: bytes,
    signature: str | None,
) -> VerificationResult:
    """
    Verify a scheme B (legacy, untimed) signature.

    The digest is compared case-insensitively.
    """
    if not signature:
        return VerificationResult.reject(REASON_MISSING_HEADERS, "v2")

    base = (secret + method.upper() + url).encode("utf-8") + raw_body
    computed = hashlib.sha256(base).hexdigest()
    if not _safe_equal(computed, signature.strip().lower()):
        return VerificationResult.reject(REASON_SIGNATURE_MISMATCH, "v2")
    return VerificationResult.accept("v2")


class WebhookVerifier:
    """
    Chooses the signature scheme for a request and verifies it.

    Scheme A is used when its signature header is present, scheme B when
    only the legacy header is present; a request with neither is rejected.

    Usage:
        verifier = WebhookVerifier(secret)
        result = verifier.verify("POST", url, headers, body)
        if not result.ok:
            ...  # 401
    """

    def __init__(
        self,
        secret: str,
        max_age_ms: int = DEFAULT_MAX_AGE_MS,
        clock: Callable[[], float] = time.time,
    ):
        self._secret = secret
        self.max_age_ms = max_age_ms
        self.clock = clock

    def verify(
        self, method: str, url: str, headers: Mapping[str, str], raw_body: bytes
    ) -> VerificationResult:
        h = CaseInsensitiveDict(headers)
        target = external_url(url, h)

        if h.get(SIGNATURE_V3_HEADER):
            result = verify_v3(
                self._secret,
                method,
                target,
                raw_body,
                h.get(SIGNATURE_V3_HEADER),
                h.get(TIMESTAMP_HEADER),
                now_ms=int(self.clock() * 1000),
                max_age_ms=self.max_age_ms,
            )
        elif h.get(SIGNATURE_V2_HEADER):
            result = verify_v2(
                self._secret, method, target, raw_body, h.get(SIGNATURE_V2_HEADER)
            )
        else:
            result = VerificationResult.reject(REASON_MISSING_HEADERS)

        if not result.ok:
            logger.warning(
                f"Webhook signature rejected ({result.scheme or 'none'}): "
                f"{result.reason} url={target}"
            )
        return result
