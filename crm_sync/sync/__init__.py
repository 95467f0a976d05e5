"""
crm_sync.sync - Synchronization logic module

Contains the contact models, field mapping resolver, sync ledger and
freshness comparison. The orchestrator lives in crm_sync.sync.engine.
"""

from crm_sync.sync.conflict import ConflictSide, FreshnessResult, compare_freshness
from crm_sync.sync.contact import LOCAL_FIELD_KEYS, LocalContact, RemoteContact
from crm_sync.sync.ledger import SyncLedger, WriterSource
from crm_sync.sync.mapping import (
    Direction,
    FieldMapping,
    Transform,
    apply_transform,
    resolve_inbound,
    resolve_outbound,
    validate_mappings,
)

__all__ = [
    "ConflictSide",
    "FreshnessResult",
    "compare_freshness",
    "LOCAL_FIELD_KEYS",
    "LocalContact",
    "RemoteContact",
    "SyncLedger",
    "WriterSource",
    "Direction",
    "FieldMapping",
    "Transform",
    "apply_transform",
    "resolve_inbound",
    "resolve_outbound",
    "validate_mappings",
]
