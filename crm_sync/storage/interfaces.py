"""
Store collaborator interfaces.

The sync core depends only on these protocols. ``SyncDatabase`` implements
all of them; tests may substitute lighter doubles.
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import Any, Protocol


class ConnectionStore(Protocol):
    def get_connection(self, tenant_key: str) -> dict[str, Any] | None: ...

    def get_connection_by_remote_account(
        self, remote_account_id: str
    ) -> dict[str, Any] | None: ...

    def upsert_connection(self, tenant_key: str, **fields: Any) -> None: ...

    def clear_connection(self, tenant_key: str) -> bool: ...


class MappingStore(Protocol):
    def list_mappings(self, tenant_key: str) -> list[dict[str, Any]]: ...

    def replace_mappings(
        self, tenant_key: str, mappings: Iterable[dict[str, Any]]
    ) -> int: ...


class IdentityMapStore(Protocol):
    def get_identity_by_local_id(
        self, tenant_key: str, local_contact_id: str
    ) -> dict[str, Any] | None: ...

    def get_identity_by_remote_id(
        self, tenant_key: str, remote_contact_id: str
    ) -> dict[str, Any] | None: ...

    def upsert_identity(
        self, tenant_key: str, local_contact_id: str, remote_contact_id: str
    ) -> None: ...


class LedgerStore(Protocol):
    def insert_ledger_entry(
        self,
        tenant_key: str,
        entity_type: str,
        writer_source: str,
        payload_hash: str,
        created_at_ms: int,
        expires_at_ms: int,
        local_contact_id: str | None = None,
        remote_contact_id: str | None = None,
        correlation_id: str | None = None,
    ) -> None: ...

    def query_ledger(
        self,
        tenant_key: str,
        entity_type: str,
        writer_source: str,
        payload_hash: str,
        local_contact_id: str | None = None,
        remote_contact_id: str | None = None,
    ) -> list[dict[str, Any]]: ...


class EventLogStore(Protocol):
    def insert_event(self, **fields: Any) -> None: ...


class BridgeStore(
    ConnectionStore, MappingStore, IdentityMapStore, LedgerStore, EventLogStore, Protocol
):
    """Everything the sync orchestrator reads and writes."""
