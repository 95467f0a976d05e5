"""
Token lifecycle management.

Hands out access tokens that are valid for at least the safety window,
refreshing through the OAuth client when needed. The connection store is
the only source of truth: nothing is cached between calls, so concurrent
refreshes for one tenant converge on whichever token pair was written last.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable

from crm_sync.auth.oauth import OAuthClient, TokenResponse
from crm_sync.context import TenantContext
from crm_sync.errors import AuthFailedError, NotConnectedError, SyncError
from crm_sync.storage.interfaces import ConnectionStore

# Refresh tokens expiring within this many seconds
DEFAULT_SAFETY_WINDOW_SECONDS = 60

logger = logging.getLogger(__name__)


class TokenManager:
    """
    Token lifecycle manager.

    Usage:
        manager = TokenManager(db, oauth_client)
        token = manager.get_valid_access_token(TenantContext("tenant-1"))
    """

    def __init__(
        self,
        store: ConnectionStore,
        oauth: OAuthClient,
        safety_window_seconds: int = DEFAULT_SAFETY_WINDOW_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize the token manager.

        Args:
            store: Connection store holding token sets
            oauth: Client for the remote token endpoint
            safety_window_seconds: Refresh when expiry is closer than this
            clock: Returns the current time in epoch seconds
        """
        self.store = store
        self.oauth = oauth
        self.safety_window_ms = safety_window_seconds * 1000
        self.clock = clock

    def _now_ms(self) -> int:
        return int(self.clock() * 1000)

    def get_valid_access_token(self, ctx: TenantContext) -> str:
        """
        Return an access token valid beyond the safety window.

        Args:
            ctx: Tenant to act for

        Returns:
            Access token string

        Raises:
            NotConnectedError: If the tenant has no token pair
            AuthFailedError: If a needed refresh is rejected
            StoreWriteFailedError: If the refreshed tokens cannot be stored
        """
        connection = self.store.get_connection(ctx.tenant_key)
        if (
            not connection
            or not connection.get("access_token")
            or not connection.get("refresh_token")
        ):
            raise NotConnectedError(ctx.tenant_key)

        now = self._now_ms()
        expires_at = connection.get("token_expires_at_ms") or 0
        if expires_at > now + self.safety_window_ms:
            return connection["access_token"]

        logger.info(f"Access token for tenant {ctx.tenant_key} near expiry; refreshing")
        try:
            tokens = self.oauth.refresh(connection["refresh_token"])
        except AuthFailedError as e:
            self._record_failure(ctx.tenant_key, e, now)
            raise

        self.store_tokens(
            ctx.tenant_key,
            tokens,
            now_ms=now,
            previous_refresh_token=connection["refresh_token"],
            previous_scopes=connection.get("scopes") or [],
        )
        return tokens.access_token

    def store_tokens(
        self,
        tenant_key: str,
        tokens: TokenResponse,
        now_ms: int | None = None,
        previous_refresh_token: str | None = None,
        previous_scopes: list[str] | None = None,
    ) -> None:
        """
        Persist a token set in one write.

        A missing refresh token keeps the previous one; missing scopes keep
        the previous scopes. Error bookkeeping fields are cleared.

        Raises:
            NotConnectedError: If neither the response nor the previous state
                carries a refresh token
        """
        now = self._now_ms() if now_ms is None else now_ms
        refresh_token = tokens.refresh_token or previous_refresh_token
        if not refresh_token:
            raise NotConnectedError(tenant_key)

        fields = {
            "access_token": tokens.access_token,
            "refresh_token": refresh_token,
            "token_expires_at_ms": now + tokens.expires_in * 1000,
            "scopes": tokens.scopes if tokens.scopes else (previous_scopes or []),
            "last_error_code": None,
            "last_error_at_ms": None,
        }
        if tokens.remote_account_id:
            fields["remote_account_id"] = tokens.remote_account_id

        self.store.upsert_connection(tenant_key, **fields)
        logger.debug(f"Stored token set for tenant {tenant_key}")

    def _record_failure(self, tenant_key: str, error: AuthFailedError, now: int) -> None:
        logger.error(
            f"Token refresh rejected for tenant {tenant_key} (status {error.status})"
        )
        try:
            self.store.upsert_connection(
                tenant_key, last_error_code=error.code, last_error_at_ms=now
            )
        except (SyncError, ValueError) as e:
            logger.warning(f"Could not record refresh failure for {tenant_key}: {e}")
