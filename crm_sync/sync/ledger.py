"""
Sync ledger for loop and echo suppression.

Every successful propagation is recorded as "entity E with payload hash H
was written by source S, valid until T + ttl". Before propagating a change,
the orchestrator asks whether the *opposite* writer just produced the same
payload; if so, the change is our own echo and is dropped.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from enum import Enum

from crm_sync.context import TenantContext
from crm_sync.storage.interfaces import LedgerStore

# Entity kind recorded in the ledger
ENTITY_CONTACT = "contact"

# Default lifetime of a ledger entry (2 minutes)
DEFAULT_TTL_SECONDS = 120

logger = logging.getLogger(__name__)


class WriterSource(Enum):
    """System whose write a ledger entry records."""

    LOCAL = "local"
    REMOTE = "remote"


class SyncLedger:
    """
    TTL-bounded record of recent propagations.

    Usage:
        ledger = SyncLedger(db)
        if ledger.was_recently_synced(ctx, WriterSource.REMOTE, payload_hash,
                                      local_contact_id="c-1"):
            return  # echo
        ...
        ledger.record_sync(ctx, WriterSource.LOCAL, payload_hash,
                           local_contact_id="c-1", remote_contact_id="42")
    """

    def __init__(
        self,
        store: LedgerStore,
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize the ledger.

        Args:
            store: Ledger store
            ttl_seconds: Lifetime of recorded entries
            clock: Returns the current time in epoch seconds
        """
        self.store = store
        self.ttl_ms = ttl_seconds * 1000
        self.clock = clock

    def _now_ms(self) -> int:
        return int(self.clock() * 1000)

    def was_recently_synced(
        self,
        ctx: TenantContext,
        written_by: WriterSource,
        payload_hash: str,
        local_contact_id: str | None = None,
        remote_contact_id: str | None = None,
        entity_type: str = ENTITY_CONTACT,
        now_ms: int | None = None,
    ) -> bool:
        """
        Check for an unexpired entry written by ``written_by``.

        Id filters apply only when given; several matching rows are fine.

        Args:
            ctx: Tenant scope
            written_by: Writer whose entry would make this change an echo
            payload_hash: Canonical hash of the values being propagated
            local_contact_id: Restrict to this local contact
            remote_contact_id: Restrict to this remote contact
            entity_type: Entity kind
            now_ms: Evaluation instant (defaults to now)

        Returns:
            True if a matching entry expires after ``now_ms``
        """
        now = self._now_ms() if now_ms is None else now_ms
        entries = self.store.query_ledger(
            ctx.tenant_key,
            entity_type,
            written_by.value,
            payload_hash,
            local_contact_id=local_contact_id,
            remote_contact_id=remote_contact_id,
        )
        return any((entry.get("expires_at_ms") or 0) > now for entry in entries)

    def record_sync(
        self,
        ctx: TenantContext,
        written_by: WriterSource,
        payload_hash: str,
        local_contact_id: str | None = None,
        remote_contact_id: str | None = None,
        correlation_id: str | None = None,
        entity_type: str = ENTITY_CONTACT,
        ttl_seconds: int | None = None,
        now_ms: int | None = None,
    ) -> None:
        """Record a successful propagation written by ``written_by``."""
        now = self._now_ms() if now_ms is None else now_ms
        ttl_ms = self.ttl_ms if ttl_seconds is None else ttl_seconds * 1000
        self.store.insert_ledger_entry(
            tenant_key=ctx.tenant_key,
            entity_type=entity_type,
            writer_source=written_by.value,
            payload_hash=payload_hash,
            created_at_ms=now,
            expires_at_ms=now + ttl_ms,
            local_contact_id=local_contact_id,
            remote_contact_id=remote_contact_id,
            correlation_id=correlation_id,
        )
        logger.debug(
            f"Ledger: {written_by.value} wrote {entity_type} "
            f"local={local_contact_id} remote={remote_contact_id} "
            f"hash={payload_hash[:12]}"
        )
