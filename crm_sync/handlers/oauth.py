"""
OAuth connect / finish / disconnect / status flows.

Every failure surfaces as an ``OAuthFlowError`` carrying a stable code the
caller can show to the end user.
"""

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Optional

from crm_sync.auth.oauth import OAuthClient
from crm_sync.auth.state import create_signed_state, verify_signed_state
from crm_sync.auth.tokens import TokenManager
from crm_sync.config.settings import DEFAULT_SCOPES
from crm_sync.context import TenantContext
from crm_sync.errors import AuthFailedError, OAuthFlowError
from crm_sync.storage.interfaces import ConnectionStore

CALLBACK_PATH = "/oauth/callback"

logger = logging.getLogger(__name__)


@dataclass
class ConnectionStatus:
    """
    Connection state shown to the end user.

    Attributes:
        connected: True when a refresh token is stored
        remote_account_id: Connected remote account
        scopes: Granted scopes
        token_expires_in_ms: Time left on the access token, never negative
        last_error_code: Code of the last token failure, if any
    """

    connected: bool
    remote_account_id: Optional[str] = None
    scopes: list[str] = field(default_factory=list)
    token_expires_in_ms: Optional[int] = None
    last_error_code: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "connected": self.connected,
            "remote_account_id": self.remote_account_id,
            "scopes": list(self.scopes),
            "token_expires_in_ms": self.token_expires_in_ms,
            "last_error_code": self.last_error_code,
        }


class OAuthFlow:
    """
    Connect flow for one tenant at a time.

    Usage:
        flow = OAuthFlow(db, client_id, client_secret, signing_secret,
                         oauth=oauth_client, tokens=token_manager)
        url = flow.start(ctx, origin="https://bridge.example.com")
        # user consents, remote redirects back with code and state
        status = flow.finish(ctx, code, state, origin="https://bridge.example.com")
    """

    def __init__(
        self,
        store: ConnectionStore,
        client_id: Optional[str],
        client_secret: Optional[str],
        state_signing_secret: Optional[str],
        oauth: Optional[OAuthClient] = None,
        tokens: Optional[TokenManager] = None,
        redirect_uri: Optional[str] = None,
        scopes: Optional[list[str]] = None,
        state_max_age_seconds: int = 600,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.client_id = client_id
        self._client_secret = client_secret
        self._state_secret = state_signing_secret
        self.oauth = oauth
        self.tokens = tokens
        self.redirect_uri = redirect_uri
        self.scopes = list(scopes) if scopes else list(DEFAULT_SCOPES)
        self.state_max_age_ms = state_max_age_seconds * 1000
        self.clock = clock

    def _now_ms(self) -> int:
        return int(self.clock() * 1000)

    def _redirect_uri_for(self, origin: Optional[str]) -> str:
        if self.redirect_uri:
            return self.redirect_uri
        if not origin:
            raise OAuthFlowError(
                "missing_redirect_uri", "No redirect URI configured and no origin given."
            )
        return f"{origin.rstrip('/')}{CALLBACK_PATH}"

    def _require_client(self, need_secret: bool) -> OAuthClient:
        if not self.client_id:
            raise OAuthFlowError("missing_client_id", "OAuth client id is not configured.")
        if need_secret and not self._client_secret:
            raise OAuthFlowError(
                "missing_client_secret", "OAuth client secret is not configured."
            )
        if not self._state_secret:
            raise OAuthFlowError(
                "missing_state_signing_secret", "State signing secret is not configured."
            )
        if self.oauth is None:
            self.oauth = OAuthClient(self.client_id, self._client_secret or "")
        return self.oauth

    def start(self, ctx: TenantContext, origin: Optional[str] = None) -> str:
        """
        Build the authorization URL for a tenant.

        Args:
            ctx: Tenant starting the flow
            origin: Public origin of the bridge, used when no redirect URI
                    is configured

        Returns:
            Authorization URL to redirect the user to

        Raises:
            OAuthFlowError: missing_client_id, missing_state_signing_secret,
                missing_redirect_uri
        """
        oauth = self._require_client(need_secret=False)
        redirect_uri = self._redirect_uri_for(origin)
        state = create_signed_state(ctx.tenant_key, self._state_secret, now_ms=self._now_ms())
        logger.info(f"Starting OAuth connect for tenant {ctx.tenant_key}")
        return oauth.authorization_url(redirect_uri, self.scopes, state)

    def finish(
        self,
        ctx: TenantContext,
        code: Optional[str],
        state: Optional[str],
        origin: Optional[str] = None,
    ) -> ConnectionStatus:
        """
        Complete the flow: verify state, exchange the code, store tokens.

        Raises:
            OAuthFlowError: missing_code_or_state, missing_client_id,
                missing_client_secret, missing_state_signing_secret,
                invalid_state, state_expired, tenant_key_mismatch,
                remote_oauth_failed, missing_refresh_token
        """
        if not code or not state:
            raise OAuthFlowError("missing_code_or_state", "Missing code or state.")

        oauth = self._require_client(need_secret=True)
        now = self._now_ms()
        verify_signed_state(
            state,
            self._state_secret,
            ctx.tenant_key,
            max_age_ms=self.state_max_age_ms,
            now_ms=now,
        )

        redirect_uri = self._redirect_uri_for(origin)
        try:
            tokens = oauth.exchange_code(code, redirect_uri)
        except AuthFailedError as e:
            raise OAuthFlowError(
                "remote_oauth_failed",
                "Remote CRM rejected the authorization code.",
                status=e.status,
                details=e.details,
            ) from e

        if not tokens.refresh_token:
            raise OAuthFlowError(
                "missing_refresh_token", "Remote CRM did not return a refresh token."
            )

        manager = self.tokens or TokenManager(self.store, oauth, clock=self.clock)
        manager.store_tokens(ctx.tenant_key, tokens, now_ms=now)
        logger.info(
            f"Tenant {ctx.tenant_key} connected to remote account "
            f"{tokens.remote_account_id}"
        )
        return self.status(ctx)

    def disconnect(self, ctx: TenantContext) -> bool:
        """Clear the tenant's tokens; the connection record is kept."""
        cleared = self.store.clear_connection(ctx.tenant_key)
        logger.info(f"Tenant {ctx.tenant_key} disconnected (record existed: {cleared})")
        return cleared

    def status(self, ctx: TenantContext) -> ConnectionStatus:
        connection = self.store.get_connection(ctx.tenant_key)
        if not connection:
            return ConnectionStatus(connected=False)

        expires_at = connection.get("token_expires_at_ms")
        expires_in = max(0, expires_at - self._now_ms()) if expires_at else None
        return ConnectionStatus(
            connected=bool(connection.get("refresh_token")),
            remote_account_id=connection.get("remote_account_id"),
            scopes=connection.get("scopes") or [],
            token_expires_in_ms=expires_in,
            last_error_code=connection.get("last_error_code"),
        )
