"""
crm_sync.handlers - Entry points

Webhook endpoint logic, local change-event entry points, OAuth flows and
mapping configuration, all independent of any web framework.
"""

from crm_sync.handlers.http import HandlerResponse, WebhookRequest
from crm_sync.handlers.local_events import LocalEventHandler
from crm_sync.handlers.mappings import MappingService
from crm_sync.handlers.oauth import ConnectionStatus, OAuthFlow
from crm_sync.handlers.webhook import WebhookHandler, decode_envelope

__all__ = [
    "HandlerResponse",
    "WebhookRequest",
    "LocalEventHandler",
    "MappingService",
    "ConnectionStatus",
    "OAuthFlow",
    "WebhookHandler",
    "decode_envelope",
]
