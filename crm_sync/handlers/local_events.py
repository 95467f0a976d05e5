"""
Local CRM change-event entry points.

The local CRM publishes ``contact.created`` and ``contact.updated`` events
on its event bus. These entry points run the outbound sync and never raise
back to the bus: failures are logged with their error code.
"""

import logging
from dataclasses import dataclass
from typing import Any, Optional

from crm_sync.context import TenantContext
from crm_sync.errors import error_code
from crm_sync.events import SOURCE_LOCAL, new_correlation_id
from crm_sync.sync.contact import LocalContact
from crm_sync.sync.engine import SyncOrchestrator, SyncResult

logger = logging.getLogger(__name__)


@dataclass
class LocalContactEvent:
    """
    Decoded local change event.

    Expected JSON shape::

        {"tenant_key": "...", "event_id": "...", "contact": {...}}
    """

    tenant_key: Optional[str]
    event_id: Optional[str]
    contact: LocalContact

    @classmethod
    def from_json(cls, data: dict[str, Any]) -> "LocalContactEvent":
        contact = data.get("contact")
        event_id = data.get("event_id")
        tenant_key = data.get("tenant_key")
        return cls(
            tenant_key=tenant_key if isinstance(tenant_key, str) and tenant_key else None,
            event_id=str(event_id) if event_id is not None else None,
            contact=LocalContact.from_api_response(contact if isinstance(contact, dict) else {}),
        )


class LocalEventHandler:
    """
    Entry points for local contact events.

    Usage:
        handler = LocalEventHandler(orchestrator)
        handler.on_contact_updated(event_json)
    """

    def __init__(self, orchestrator: SyncOrchestrator):
        self.orchestrator = orchestrator

    def on_contact_created(self, data: dict[str, Any]) -> Optional[SyncResult]:
        return self._handle("contact.created", data)

    def on_contact_updated(self, data: dict[str, Any]) -> Optional[SyncResult]:
        return self._handle("contact.updated", data)

    def _handle(self, event_type: str, data: dict[str, Any]) -> Optional[SyncResult]:
        event = LocalContactEvent.from_json(data if isinstance(data, dict) else {})
        if not event.tenant_key or not event.contact.id:
            logger.debug(f"Ignoring {event_type} without tenant key or contact id")
            return None

        correlation_id = new_correlation_id(SOURCE_LOCAL, event.event_id)
        ctx = TenantContext(event.tenant_key)
        try:
            result = self.orchestrator.sync_local_change(
                ctx, event.contact, correlation_id
            )
        except Exception as e:
            logger.error(
                f"{event_type} sync failed for contact {event.contact.id} "
                f"({correlation_id}): [{error_code(e)}] {e}"
            )
            return None

        logger.debug(f"{event_type} {event.contact.id}: {result.outcome.value}")
        return result
