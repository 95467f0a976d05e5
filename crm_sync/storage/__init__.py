"""
crm_sync.storage - Persistent bridge state

SQLite-backed connections, field mappings, identity map, sync ledger and
event log.
"""

from crm_sync.storage.db import SyncDatabase, now_ms
from crm_sync.storage.interfaces import (
    BridgeStore,
    ConnectionStore,
    EventLogStore,
    IdentityMapStore,
    LedgerStore,
    MappingStore,
)

__all__ = [
    "SyncDatabase",
    "now_ms",
    "BridgeStore",
    "ConnectionStore",
    "EventLogStore",
    "IdentityMapStore",
    "LedgerStore",
    "MappingStore",
]
