"""
Inbound webhook endpoint logic.

Authenticates the delivery, decodes the envelope once, and processes each
contained event independently. Authenticated deliveries always get a 200,
even when individual events fail, so the sender does not redeliver the
whole batch; only a forged signature (401) or an undecodable body (400) is
refused.
"""

import json
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Optional

from crm_sync.auth.oauth import parse_account_id
from crm_sync.auth.webhook import WebhookVerifier
from crm_sync.context import TenantContext
from crm_sync.errors import InvalidWebhookSignatureError, MalformedPayloadError, error_code
from crm_sync.events import (
    SOURCE_REMOTE,
    STATUS_ERROR,
    STATUS_IGNORED,
    STATUS_RECEIVED,
    log_event,
    new_correlation_id,
)
from crm_sync.handlers.http import HandlerResponse, WebhookRequest
from crm_sync.storage.interfaces import BridgeStore
from crm_sync.sync.engine import SyncOrchestrator
from crm_sync.sync.ledger import ENTITY_CONTACT

# Subscription types that do not carry a contact change to propagate
IGNORED_SUBSCRIPTIONS = {"contact.deletion", "contact.privacyDeletion"}

logger = logging.getLogger(__name__)


@dataclass
class WebhookEvent:
    """
    One change notification from a webhook envelope.

    Attributes:
        event_id: Sender's event id
        remote_account_id: Account (portal) the change happened in
        object_id: Changed object id
        subscription_type: e.g. ``contact.propertyChange``
        occurred_at_ms: When the change happened
    """

    event_id: Optional[str]
    remote_account_id: Optional[str]
    object_id: Optional[str]
    subscription_type: str
    occurred_at_ms: Optional[int]

    @classmethod
    def from_json(cls, item: Any) -> "WebhookEvent":
        if not isinstance(item, dict):
            raise MalformedPayloadError("Webhook event must be an object.")
        occurred = item.get("occurredAt", item.get("label"))
        event_id = item.get("eventId")
        subscription_type = item.get("subscriptionType")
        return cls(
            event_id=str(event_id) if event_id is not None else None,
            remote_account_id=parse_account_id(item.get("portalId")),
            object_id=parse_account_id(item.get("objectId")),
            subscription_type=(
                subscription_type if isinstance(subscription_type, str) else "unknown"
            ),
            occurred_at_ms=(
                occurred
                if isinstance(occurred, int) and not isinstance(occurred, bool)
                else None
            ),
        )

    @property
    def is_contact_change(self) -> bool:
        return (
            self.subscription_type.startswith("contact.")
            and self.subscription_type not in IGNORED_SUBSCRIPTIONS
        )


def decode_envelope(body: bytes) -> list[Any]:
    """
    Decode a webhook body into its list of raw events.

    Accepted shapes are a JSON array and an object with an ``events``
    array. An empty body is an empty batch.

    Raises:
        MalformedPayloadError: For invalid JSON or any other shape
    """
    if not body or not body.strip():
        return []
    try:
        parsed = json.loads(body)
    except (UnicodeDecodeError, ValueError) as e:
        raise MalformedPayloadError("Invalid JSON") from e

    if isinstance(parsed, list):
        return parsed
    if isinstance(parsed, dict) and isinstance(parsed.get("events"), list):
        return parsed["events"]
    raise MalformedPayloadError(
        f"Unrecognized webhook payload shape: {type(parsed).__name__}"
    )


class WebhookHandler:
    """
    Handles one webhook delivery.

    Usage:
        handler = WebhookHandler(db, orchestrator, WebhookVerifier(secret))
        response = handler.handle(WebhookRequest("POST", url, headers, body))
    """

    def __init__(
        self,
        store: BridgeStore,
        orchestrator: SyncOrchestrator,
        verifier: Optional[WebhookVerifier],
        require_signature: bool = True,
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize the handler.

        Args:
            store: Store for connection lookup and the event log
            orchestrator: Runs the inbound sync for each contact event
            verifier: Signature verifier (None when no secret is configured)
            require_signature: Refuse deliveries that fail verification
            clock: Returns the current time in epoch seconds
        """
        self.store = store
        self.orchestrator = orchestrator
        self.verifier = verifier
        self.require_signature = require_signature
        self.clock = clock

    def handle(self, request: WebhookRequest) -> HandlerResponse:
        received_at = int(self.clock() * 1000)

        if self.require_signature:
            try:
                self._authenticate(request)
            except InvalidWebhookSignatureError as e:
                log_event(
                    self.store,
                    event_type="webhook.rejected",
                    source=SOURCE_REMOTE,
                    correlation_id=new_correlation_id(SOURCE_REMOTE),
                    received_at_ms=received_at,
                    status=STATUS_ERROR,
                    error_code=e.code,
                )
                return HandlerResponse(401, {"error": e.code, "reason": e.reason})

        try:
            items = decode_envelope(request.body)
        except MalformedPayloadError as e:
            logger.warning(f"Malformed webhook body: {e}")
            return HandlerResponse(400, {"error": "Invalid JSON"})

        if not items:
            log_event(
                self.store,
                event_type="webhook.empty_payload",
                source=SOURCE_REMOTE,
                correlation_id=new_correlation_id(SOURCE_REMOTE),
                received_at_ms=received_at,
                status=STATUS_IGNORED,
                error_code="no_events",
            )
            return HandlerResponse(200, {"ok": True, "processed": 0})

        failed = 0
        for item in items:
            if not self._process_item(item, received_at):
                failed += 1

        logger.info(f"Webhook delivery: {len(items)} events, {failed} failed")
        return HandlerResponse(200, {"ok": True, "processed": len(items)})

    def _authenticate(self, request: WebhookRequest) -> None:
        if self.verifier is None:
            logger.error("Webhook secret is not configured; rejecting delivery")
            raise InvalidWebhookSignatureError("Webhook secret not configured.")
        result = self.verifier.verify(
            request.method, request.url, request.headers, request.body
        )
        if not result.ok:
            raise InvalidWebhookSignatureError(result.reason or "Signature mismatch.")

    def _process_item(self, item: Any, received_at: int) -> bool:
        """Process one event; returns False if it failed. Never raises."""
        correlation_id = new_correlation_id(
            SOURCE_REMOTE, item.get("eventId") if isinstance(item, dict) else None
        )
        event: Optional[WebhookEvent] = None
        tenant_key: Optional[str] = None
        try:
            event = WebhookEvent.from_json(item)
            connection = None
            if event.remote_account_id is not None:
                connection = self.store.get_connection_by_remote_account(
                    event.remote_account_id
                )
            tenant_key = connection["tenant_key"] if connection else None

            if connection is None:
                status, code = STATUS_IGNORED, "unknown_account"
            elif not event.is_contact_change:
                status, code = STATUS_IGNORED, "unsupported_subscription"
            else:
                status, code = STATUS_RECEIVED, None

            log_event(
                self.store,
                event_type=event.subscription_type,
                source=SOURCE_REMOTE,
                correlation_id=correlation_id,
                tenant_key=tenant_key,
                remote_account_id=event.remote_account_id,
                object_type=ENTITY_CONTACT,
                object_id=event.object_id,
                occurred_at_ms=event.occurred_at_ms,
                received_at_ms=received_at,
                status=status,
                error_code=code,
            )

            if status != STATUS_RECEIVED or event.object_id is None:
                if code == "unknown_account":
                    logger.info(
                        f"Ignoring webhook for unknown account {event.remote_account_id}"
                    )
                return True

            ctx = TenantContext(tenant_key, event.remote_account_id)
            self.orchestrator.sync_remote_change(ctx, event.object_id, correlation_id)
            return True
        except Exception as e:
            code = error_code(e)
            logger.error(f"Webhook event {correlation_id} failed: [{code}] {e}")
            log_event(
                self.store,
                event_type="webhook.processing_failed",
                source=SOURCE_REMOTE,
                correlation_id=correlation_id,
                tenant_key=tenant_key,
                remote_account_id=event.remote_account_id if event else None,
                object_type=ENTITY_CONTACT,
                object_id=event.object_id if event else None,
                received_at_ms=received_at,
                status=STATUS_ERROR,
                error_code=code,
            )
            return False
