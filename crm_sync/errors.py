"""
Error taxonomy for the contact bridge.

Every error raised by the core carries a stable, machine-readable ``code``
so callers (webhook handlers, the event log, the CLI) can report failures
without inspecting messages. Messages never contain token or secret values.
"""

from __future__ import annotations

from typing import Any


class SyncError(Exception):
    """Base class for all bridge errors."""

    code = "sync_error"


class NotConnectedError(SyncError):
    """Raised when a tenant has no usable token pair."""

    code = "not_connected"

    def __init__(self, tenant_key: str | None = None):
        self.tenant_key = tenant_key
        super().__init__("Remote CRM is not connected.")


class AuthFailedError(SyncError):
    """Raised when the remote OAuth token endpoint rejects a grant."""

    code = "auth_failed"

    def __init__(self, message: str, status: int | None = None, details: str = ""):
        super().__init__(message)
        self.status = status
        self.details = details


class InvalidWebhookSignatureError(SyncError):
    """Raised when an inbound webhook fails signature verification."""

    code = "invalid_webhook_signature"

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class MalformedPayloadError(SyncError):
    """Raised when an inbound payload cannot be decoded."""

    code = "malformed_payload"


class RemoteApiError(SyncError):
    """Raised for non-2xx responses and transport failures of a CRM API."""

    code = "remote_api_error"

    def __init__(self, message: str, status: int | None = None, details: str = ""):
        super().__init__(message)
        self.status = status
        self.details = details

    def __str__(self) -> str:
        base = super().__str__()
        if self.status is not None:
            return f"{base} (status {self.status})"
        return base


class StoreWriteFailedError(SyncError):
    """
    Raised when the backing store rejects a write.

    Carries the table, the operation and a summary of the attempted field
    shapes (types and lengths only) for debugging schema mismatches.
    """

    code = "store_write_failed"

    def __init__(
        self,
        table: str,
        operation: str,
        cause: str,
        fields: dict[str, Any] | None = None,
    ):
        self.table = table
        self.operation = operation
        self.cause = cause
        self.field_summary = summarize_fields(fields or {})
        super().__init__(
            f"Failed to {operation} {table}: {cause} fields={self.field_summary}"
        )


class MappingValidationError(SyncError):
    """Raised when a field mapping set fails validation."""

    code = "invalid_mappings"


class OAuthFlowError(SyncError):
    """
    Raised by the OAuth start/finish flows.

    The ``code`` is set per instance to one of the stable flow codes
    (``missing_client_id``, ``invalid_state``, ``state_expired``, ...).
    """

    def __init__(
        self,
        code: str,
        message: str = "",
        status: int | None = None,
        details: str = "",
    ):
        super().__init__(message or code)
        self.code = code
        self.status = status
        self.details = details


def summarize_value(value: Any) -> Any:
    """Describe the shape of a value without revealing it."""
    if value is None:
        return None
    if isinstance(value, bool):
        return {"type": "boolean"}
    if isinstance(value, str):
        return {"type": "string", "length": len(value)}
    if isinstance(value, (int, float)):
        return {"type": "number"}
    if isinstance(value, (list, tuple)):
        return {"type": "array", "length": len(value)}
    if isinstance(value, dict):
        return {"type": "object", "keys": list(value)[:20]}
    return {"type": type(value).__name__}


def summarize_fields(fields: dict[str, Any]) -> dict[str, Any]:
    return {key: summarize_value(value) for key, value in fields.items()}


def error_code(exc: BaseException) -> str:
    """Return the taxonomy code for an exception, or ``unknown_error``."""
    if isinstance(exc, SyncError):
        return exc.code
    return "unknown_error"
