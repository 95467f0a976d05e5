"""
Wiring for the contact bridge.

Builds the store, clients, sync engine and entry points from ``Settings``.
Components are created lazily so that commands needing only the store do
not require CRM credentials or a local API base.

Usage:
    settings = Settings.from_config(ConfigLoader().load_and_validate())
    bridge = Bridge(settings)
    bridge.webhooks.handle(request)
"""

import logging
from functools import cached_property

from crm_sync.api.local_api import LocalCRMClient
from crm_sync.api.remote_api import RemoteCRMClient
from crm_sync.auth.oauth import OAuthClient
from crm_sync.auth.tokens import TokenManager
from crm_sync.auth.webhook import WebhookVerifier
from crm_sync.config.loader import ConfigError
from crm_sync.config.settings import Settings
from crm_sync.handlers.local_events import LocalEventHandler
from crm_sync.handlers.mappings import MappingService
from crm_sync.handlers.oauth import OAuthFlow
from crm_sync.handlers.webhook import WebhookHandler
from crm_sync.storage.db import SyncDatabase
from crm_sync.sync.engine import SyncOrchestrator
from crm_sync.sync.ledger import SyncLedger

logger = logging.getLogger(__name__)


class Bridge:
    """Lazily assembled bridge components for one settings object."""

    def __init__(self, settings: Settings, database: SyncDatabase | None = None):
        self.settings = settings
        if database is not None:
            self.__dict__["database"] = database

    @cached_property
    def database(self) -> SyncDatabase:
        db = SyncDatabase(self.settings.database_path)
        db.initialize()
        logger.debug(f"Using database {self.settings.database_path}")
        return db

    @cached_property
    def oauth(self) -> OAuthClient:
        secrets = self.settings.secrets
        return OAuthClient(
            secrets.client_id or "",
            secrets.client_secret or "",
            api_base=self.settings.remote_api_base,
            auth_base=self.settings.remote_auth_base,
            timeout=self.settings.request_timeout,
        )

    @cached_property
    def tokens(self) -> TokenManager:
        return TokenManager(
            self.database,
            self.oauth,
            safety_window_seconds=self.settings.token_safety_window_seconds,
        )

    @cached_property
    def remote(self) -> RemoteCRMClient:
        return RemoteCRMClient(
            self.tokens,
            api_base=self.settings.remote_api_base,
            timeout=self.settings.request_timeout,
        )

    @cached_property
    def local(self) -> LocalCRMClient:
        if not self.settings.local_api_base:
            raise ConfigError("local_api_base is not configured")
        return LocalCRMClient(
            self.settings.local_api_base,
            api_key=self.settings.secrets.local_api_key,
            timeout=self.settings.request_timeout,
        )

    @cached_property
    def ledger(self) -> SyncLedger:
        return SyncLedger(self.database, ttl_seconds=self.settings.ledger_ttl_seconds)

    @cached_property
    def orchestrator(self) -> SyncOrchestrator:
        return SyncOrchestrator(self.database, self.ledger, self.remote, self.local)

    @cached_property
    def verifier(self) -> WebhookVerifier | None:
        secret = self.settings.secrets.webhook_secret
        if not secret:
            logger.warning("No webhook secret configured")
            return None
        return WebhookVerifier(
            secret, max_age_ms=self.settings.webhook_max_age_seconds * 1000
        )

    @cached_property
    def webhooks(self) -> WebhookHandler:
        return WebhookHandler(
            self.database,
            self.orchestrator,
            self.verifier,
            require_signature=self.settings.require_webhook_signature,
        )

    @cached_property
    def local_events(self) -> LocalEventHandler:
        return LocalEventHandler(self.orchestrator)

    @cached_property
    def oauth_flow(self) -> OAuthFlow:
        secrets = self.settings.secrets
        return OAuthFlow(
            self.database,
            secrets.client_id,
            secrets.client_secret,
            secrets.state_signing_secret,
            oauth=self.oauth if secrets.client_id else None,
            tokens=self.tokens,
            redirect_uri=self.settings.redirect_uri,
            scopes=self.settings.scopes,
            state_max_age_seconds=self.settings.state_max_age_seconds,
        )

    @cached_property
    def mappings(self) -> MappingService:
        return MappingService(self.database, self.remote)
