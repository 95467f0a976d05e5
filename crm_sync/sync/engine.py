"""
Sync engine for bidirectional contact propagation.

Propagates one changed contact at a time between the local and the remote
CRM. Each attempt runs strictly in sequence:

    mapping resolution -> payload hash -> ledger check -> identity lookup
    -> freshness check (outbound only) -> write -> identity map -> ledger

Nothing is cached between attempts; every attempt re-reads connection,
mappings and ledger from the store.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from crm_sync.api.local_api import LocalCRMClient
from crm_sync.api.remote_api import RemoteCRMClient
from crm_sync.context import TenantContext
from crm_sync.errors import error_code
from crm_sync.events import (
    SOURCE_LOCAL,
    SOURCE_REMOTE,
    STATUS_ERROR,
    log_event,
    new_correlation_id,
)
from crm_sync.storage.interfaces import BridgeStore
from crm_sync.sync.conflict import compare_freshness
from crm_sync.sync.contact import (
    REMOTE_BASE_PROPERTIES,
    REMOTE_LAST_MODIFIED_PROPERTY,
    REMOTE_UNIQUE_PROPERTY,
    LocalContact,
    RemoteContact,
)
from crm_sync.sync.ledger import ENTITY_CONTACT, SyncLedger, WriterSource
from crm_sync.sync.mapping import (
    Direction,
    FieldMapping,
    ResolvedPayload,
    mappings_from_rows,
    resolve_inbound,
    resolve_outbound,
    select_mappings,
)
from crm_sync.utils.hashing import canonical_hash

logger = logging.getLogger(__name__)

# Event types for failed propagations
OUTBOUND_FAILED_EVENT = "local_to_remote.write_failed"
INBOUND_FAILED_EVENT = "remote_to_local.write_failed"


class SyncOutcome(Enum):
    """How a propagation attempt ended."""

    NOT_CONNECTED = "not_connected"
    NO_MAPPINGS = "no_mappings"
    NO_VALUES = "no_values"
    ECHO = "echo"
    NO_UNIQUE_KEY = "no_unique_key"
    REMOTE_NEWER = "remote_newer"
    CREATED = "created"
    UPDATED = "updated"
    UNCHANGED = "unchanged"


@dataclass
class SyncResult:
    """
    Result of one propagation attempt.

    Attributes:
        outcome: How the attempt ended
        local_contact_id: Local contact involved, when known
        remote_contact_id: Remote contact involved, when known
        payload_hash: Canonical hash of the resolved values, when computed
        reason: Human-readable explanation for skipped attempts
    """

    outcome: SyncOutcome
    local_contact_id: Optional[str] = None
    remote_contact_id: Optional[str] = None
    payload_hash: Optional[str] = None
    reason: str = ""

    @property
    def wrote(self) -> bool:
        """True if the attempt wrote to the opposite system."""
        return self.outcome in (SyncOutcome.CREATED, SyncOutcome.UPDATED)


class SyncOrchestrator:
    """
    Conflict-resolving sync orchestrator.

    Usage:
        orchestrator = SyncOrchestrator(db, ledger, remote_client, local_client)

        # Local contact changed
        result = orchestrator.sync_local_change(ctx, local_contact)

        # Remote webhook for contact "42"
        result = orchestrator.sync_remote_change(ctx, "42", correlation_id)
    """

    def __init__(
        self,
        store: BridgeStore,
        ledger: SyncLedger,
        remote: RemoteCRMClient,
        local: LocalCRMClient,
    ):
        """
        Initialize the orchestrator.

        Args:
            store: Connection, mapping, identity map and event log store
            ledger: Sync ledger for echo suppression
            remote: Remote CRM API client
            local: Local CRM API client
        """
        self.store = store
        self.ledger = ledger
        self.remote = remote
        self.local = local

    # =========================================================================
    # Shared steps
    # =========================================================================

    def _is_connected(self, ctx: TenantContext) -> bool:
        connection = self.store.get_connection(ctx.tenant_key)
        return bool(
            connection
            and connection.get("access_token")
            and connection.get("refresh_token")
        )

    def _load_mappings(self, ctx: TenantContext) -> list[FieldMapping]:
        return mappings_from_rows(self.store.list_mappings(ctx.tenant_key))

    def _record_failure(
        self,
        ctx: TenantContext,
        event_type: str,
        source: str,
        correlation_id: str,
        object_id: Optional[str],
        error: Exception,
    ) -> None:
        code = error_code(error)
        logger.error(
            f"{event_type} for tenant {ctx.tenant_key} "
            f"(contact {object_id}, {correlation_id}): [{code}] {error}"
        )
        log_event(
            self.store,
            event_type=event_type,
            source=source,
            correlation_id=correlation_id,
            tenant_key=ctx.tenant_key,
            remote_account_id=ctx.remote_account_id,
            object_type=ENTITY_CONTACT,
            object_id=object_id,
            status=STATUS_ERROR,
            error_code=code,
        )

    # =========================================================================
    # Outbound: local change -> remote
    # =========================================================================

    def sync_local_change(
        self,
        ctx: TenantContext,
        contact: LocalContact,
        correlation_id: Optional[str] = None,
    ) -> SyncResult:
        """
        Propagate a local contact change to the remote CRM.

        Args:
            ctx: Tenant scope
            contact: Changed local contact (must carry its id)
            correlation_id: Id of the triggering event

        Returns:
            SyncResult

        Raises:
            ValueError: If the contact has no id
            SyncError: Any failure of the remote lookup or write, after it
                has been logged
        """
        if not contact.id:
            raise ValueError("Local contact id is required")
        local_id = contact.id
        correlation_id = correlation_id or new_correlation_id(SOURCE_LOCAL)

        if not self._is_connected(ctx):
            logger.debug(f"Tenant {ctx.tenant_key} not connected; skipping outbound sync")
            return SyncResult(SyncOutcome.NOT_CONNECTED, local_contact_id=local_id)

        mappings = self._load_mappings(ctx)
        if not select_mappings(mappings, Direction.LOCAL_TO_REMOTE):
            return SyncResult(SyncOutcome.NO_MAPPINGS, local_contact_id=local_id)

        payload = resolve_outbound(mappings, contact)
        if payload.is_empty():
            return SyncResult(SyncOutcome.NO_VALUES, local_contact_id=local_id)

        payload_hash = canonical_hash(payload.canonical_fields)
        if self.ledger.was_recently_synced(
            ctx, WriterSource.REMOTE, payload_hash, local_contact_id=local_id
        ):
            logger.info(f"Local contact {local_id}: echo of a remote write, skipping")
            return SyncResult(
                SyncOutcome.ECHO, local_contact_id=local_id, payload_hash=payload_hash
            )

        try:
            return self._write_outbound(
                ctx, contact, payload, payload_hash, correlation_id
            )
        except Exception as e:
            self._record_failure(
                ctx, OUTBOUND_FAILED_EVENT, SOURCE_LOCAL, correlation_id, local_id, e
            )
            raise

    def _find_remote_contact(
        self, ctx: TenantContext, contact: LocalContact, payload: ResolvedPayload
    ) -> tuple[Optional[str], Optional[RemoteContact]]:
        identity = self.store.get_identity_by_local_id(ctx.tenant_key, contact.id)
        if identity:
            return identity["remote_contact_id"], None

        email = payload.remote_properties.get(REMOTE_UNIQUE_PROPERTY) or contact.email
        if not email:
            return None, None
        found = self.remote.search_by_email(
            ctx, email, [REMOTE_UNIQUE_PROPERTY, REMOTE_LAST_MODIFIED_PROPERTY]
        )
        if found is None:
            return None, None
        logger.debug(f"Matched local contact {contact.id} to remote {found.id} by email")
        return found.id, found

    def _write_outbound(
        self,
        ctx: TenantContext,
        contact: LocalContact,
        payload: ResolvedPayload,
        payload_hash: str,
        correlation_id: str,
    ) -> SyncResult:
        local_id = contact.id
        remote_id, remote_contact = self._find_remote_contact(ctx, contact, payload)

        if remote_id and contact.updated_at is not None:
            if remote_contact is None:
                remote_contact = self.remote.get_contact(
                    ctx, remote_id, [REMOTE_LAST_MODIFIED_PROPERTY]
                )
            freshness = compare_freshness(contact.updated_at, remote_contact.last_modified)
            if freshness.remote_wins:
                logger.info(
                    f"Local contact {local_id}: {freshness.reason}; not overwriting"
                )
                return SyncResult(
                    SyncOutcome.REMOTE_NEWER,
                    local_contact_id=local_id,
                    remote_contact_id=remote_id,
                    payload_hash=payload_hash,
                    reason=freshness.reason,
                )

        if remote_id is None:
            if not payload.remote_properties.get(REMOTE_UNIQUE_PROPERTY):
                logger.info(
                    f"Local contact {local_id}: no {REMOTE_UNIQUE_PROPERTY} in mapped "
                    "values; not creating a remote contact"
                )
                return SyncResult(
                    SyncOutcome.NO_UNIQUE_KEY,
                    local_contact_id=local_id,
                    payload_hash=payload_hash,
                )
            remote_id = self.remote.create_contact(ctx, payload.remote_properties).id
            outcome = SyncOutcome.CREATED
        else:
            self.remote.update_contact(ctx, remote_id, payload.remote_properties)
            outcome = SyncOutcome.UPDATED

        self.store.upsert_identity(ctx.tenant_key, local_id, remote_id)
        self.ledger.record_sync(
            ctx,
            WriterSource.LOCAL,
            payload_hash,
            local_contact_id=local_id,
            remote_contact_id=remote_id,
            correlation_id=correlation_id,
        )
        logger.info(f"Local contact {local_id} -> remote {remote_id}: {outcome.value}")
        return SyncResult(
            outcome,
            local_contact_id=local_id,
            remote_contact_id=remote_id,
            payload_hash=payload_hash,
        )

    # =========================================================================
    # Inbound: remote change -> local
    # =========================================================================

    def sync_remote_change(
        self,
        ctx: TenantContext,
        remote_contact_id: str,
        correlation_id: Optional[str] = None,
    ) -> SyncResult:
        """
        Propagate a remote contact change to the local CRM.

        Args:
            ctx: Tenant scope
            remote_contact_id: Remote contact named by the webhook
            correlation_id: Id of the triggering webhook event

        Returns:
            SyncResult

        Raises:
            SyncError: Any failure of the remote fetch, or of the local
                lookup or write after it has been logged
        """
        remote_id = str(remote_contact_id)
        correlation_id = correlation_id or new_correlation_id(SOURCE_REMOTE)

        if not self._is_connected(ctx):
            logger.debug(f"Tenant {ctx.tenant_key} not connected; skipping inbound sync")
            return SyncResult(SyncOutcome.NOT_CONNECTED, remote_contact_id=remote_id)

        mappings = self._load_mappings(ctx)
        inbound = select_mappings(mappings, Direction.REMOTE_TO_LOCAL)
        if not inbound:
            return SyncResult(SyncOutcome.NO_MAPPINGS, remote_contact_id=remote_id)

        properties = list(REMOTE_BASE_PROPERTIES)
        for mapping in inbound:
            if mapping.remote_property not in properties:
                properties.append(mapping.remote_property)
        remote_contact = self.remote.get_contact(ctx, remote_id, properties)

        payload = resolve_inbound(mappings, remote_contact)
        if payload.is_empty():
            return SyncResult(SyncOutcome.NO_VALUES, remote_contact_id=remote_id)

        payload_hash = canonical_hash(payload.canonical_fields)
        if self.ledger.was_recently_synced(
            ctx, WriterSource.LOCAL, payload_hash, remote_contact_id=remote_id
        ):
            logger.info(f"Remote contact {remote_id}: echo of a local write, skipping")
            return SyncResult(
                SyncOutcome.ECHO, remote_contact_id=remote_id, payload_hash=payload_hash
            )

        try:
            return self._write_inbound(
                ctx, remote_contact, payload, payload_hash, correlation_id
            )
        except Exception as e:
            self._record_failure(
                ctx, INBOUND_FAILED_EVENT, SOURCE_REMOTE, correlation_id, remote_id, e
            )
            raise

    def _write_inbound(
        self,
        ctx: TenantContext,
        remote_contact: RemoteContact,
        payload: ResolvedPayload,
        payload_hash: str,
        correlation_id: str,
    ) -> SyncResult:
        remote_id = remote_contact.id
        identity = self.store.get_identity_by_remote_id(ctx.tenant_key, remote_id)
        local_id: Optional[str] = identity["local_contact_id"] if identity else None
        existing: Optional[LocalContact] = None

        if local_id is None and remote_contact.email:
            existing = self.local.search_by_email(ctx, remote_contact.email)
            if existing is not None:
                local_id = existing.id

        if local_id is None:
            local_id = self.local.create_contact(ctx, payload.canonical_fields).id
            outcome = SyncOutcome.CREATED
        else:
            if existing is None:
                existing = self.local.get_contact(ctx, local_id)
            current = existing.comparable_fields()
            changed = any(
                current.get(key) != value
                for key, value in payload.canonical_fields.items()
            )
            if changed:
                self.local.update_contact(ctx, local_id, payload.canonical_fields)
                outcome = SyncOutcome.UPDATED
            else:
                outcome = SyncOutcome.UNCHANGED

        self.store.upsert_identity(ctx.tenant_key, local_id, remote_id)
        self.ledger.record_sync(
            ctx,
            WriterSource.REMOTE,
            payload_hash,
            local_contact_id=local_id,
            remote_contact_id=remote_id,
            correlation_id=correlation_id,
        )
        logger.info(f"Remote contact {remote_id} -> local {local_id}: {outcome.value}")
        return SyncResult(
            outcome,
            local_contact_id=local_id,
            remote_contact_id=remote_id,
            payload_hash=payload_hash,
        )
