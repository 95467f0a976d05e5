"""
Per-request tenant context.

Every store and API call receives the resolved tenant explicitly; there is
no process-wide "current tenant".
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class TenantContext:
    """
    Resolved scope of one request.

    Attributes:
        tenant_key: Stable identifier of one installation of the integration
        remote_account_id: Remote CRM account id, when already known
    """

    tenant_key: str
    remote_account_id: str | None = None

    def __post_init__(self) -> None:
        if not self.tenant_key:
            raise ValueError("tenant_key cannot be empty")
