"""
OAuth2 client for the remote CRM.

Provides:
- Authorization URL construction for the user-facing consent redirect
- ``authorization_code`` grant (initial connect)
- ``refresh_token`` grant (token lifecycle)

Request bodies are prepared with oauthlib's ``WebApplicationClient`` and
posted form-encoded with requests.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

import requests
from oauthlib.oauth2 import WebApplicationClient
from requests.exceptions import RequestException

from crm_sync.errors import AuthFailedError
from crm_sync.utils.text import safe_details

# Remote OAuth endpoint paths
AUTHORIZE_PATH = "/oauth/authorize"
TOKEN_PATH = "/oauth/v1/token"

# Default timeout for token endpoint requests (in seconds)
DEFAULT_TIMEOUT = 30

logger = logging.getLogger(__name__)


def parse_account_id(value: Any) -> str | None:
    """
    Normalize a remote account id that may arrive as int or numeric string.

    Returns:
        The id as a decimal string, or None if absent or not numeric
    """
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return str(value)
    if isinstance(value, str) and value.strip().isdigit():
        return value.strip()
    return None


@dataclass
class TokenResponse:
    """
    Parsed token endpoint response.

    Attributes:
        access_token: Bearer token for API calls
        expires_in: Lifetime of the access token in seconds
        refresh_token: Refresh token, when the remote sent one
        scopes: Granted scopes, when the remote sent them
        remote_account_id: Remote account (portal) id, when present
    """

    access_token: str
    expires_in: int
    refresh_token: str | None = None
    scopes: list[str] | None = None
    remote_account_id: str | None = None
    raw: dict[str, Any] = field(default_factory=dict, repr=False)

    @classmethod
    def from_json(cls, payload: dict[str, Any]) -> TokenResponse:
        """
        Build a TokenResponse from the token endpoint JSON body.

        Raises:
            AuthFailedError: If access_token or expires_in is missing
        """
        access_token = payload.get("access_token")
        expires_in = payload.get("expires_in")
        if not isinstance(access_token, str) or not access_token:
            raise AuthFailedError("Token response is missing access_token.")
        try:
            expires_seconds = int(expires_in)
        except (TypeError, ValueError) as e:
            raise AuthFailedError("Token response is missing expires_in.") from e

        scope = payload.get("scope")
        scopes = scope.split() if isinstance(scope, str) and scope.strip() else None
        refresh_token = payload.get("refresh_token")
        if not isinstance(refresh_token, str) or not refresh_token:
            refresh_token = None

        return cls(
            access_token=access_token,
            expires_in=expires_seconds,
            refresh_token=refresh_token,
            scopes=scopes,
            remote_account_id=parse_account_id(payload.get("hub_id")),
            raw=payload,
        )


class OAuthClient:
    """
    Client for the remote CRM's OAuth2 endpoints.

    Attributes:
        client_id: OAuth app client id
        api_base: Base URL hosting the token endpoint
        auth_base: Base URL hosting the authorization page
        timeout: Request timeout in seconds

    Usage:
        client = OAuthClient(client_id, client_secret)
        url = client.authorization_url(redirect_uri, scopes, state)
        tokens = client.exchange_code(code, redirect_uri)
        tokens = client.refresh(tokens.refresh_token)
    """

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        api_base: str = "https://api.hubapi.com",
        auth_base: str = "https://app.hubspot.com",
        timeout: float = DEFAULT_TIMEOUT,
    ):
        self.client_id = client_id
        self._client_secret = client_secret
        self.api_base = api_base.rstrip("/")
        self.auth_base = auth_base.rstrip("/")
        self.timeout = timeout
        self._client = WebApplicationClient(client_id)

    @property
    def token_url(self) -> str:
        return f"{self.api_base}{TOKEN_PATH}"

    def authorization_url(self, redirect_uri: str, scopes: list[str], state: str) -> str:
        """
        Build the user-facing authorization URL.

        Args:
            redirect_uri: Callback URL registered with the OAuth app
            scopes: Scopes to request (sent space-joined)
            state: Signed state token

        Returns:
            Absolute authorization URL
        """
        return self._client.prepare_request_uri(
            f"{self.auth_base}{AUTHORIZE_PATH}",
            redirect_uri=redirect_uri,
            scope=list(scopes),
            state=state,
        )

    def exchange_code(self, code: str, redirect_uri: str) -> TokenResponse:
        """
        Exchange an authorization code for a token set.

        Raises:
            AuthFailedError: If the remote rejects the grant or is unreachable
        """
        body = self._client.prepare_request_body(
            code=code,
            redirect_uri=redirect_uri,
            client_secret=self._client_secret,
        )
        logger.debug("Exchanging authorization code for tokens")
        return self._post_token(body, "authorization_code")

    def refresh(self, refresh_token: str) -> TokenResponse:
        """
        Run a refresh-token grant.

        Raises:
            AuthFailedError: If the remote rejects the grant or is unreachable
        """
        body = self._client.prepare_refresh_body(
            refresh_token=refresh_token,
            client_id=self.client_id,
            client_secret=self._client_secret,
        )
        logger.debug("Refreshing access token")
        return self._post_token(body, "refresh_token")

    def _post_token(self, body: str, grant_type: str) -> TokenResponse:
        try:
            response = requests.post(
                self.token_url,
                data=body,
                headers={
                    "Content-Type": "application/x-www-form-urlencoded",
                    "Accept": "application/json",
                },
                timeout=self.timeout,
            )
        except RequestException as e:
            logger.error(f"Token endpoint unreachable ({grant_type}): {e}")
            raise AuthFailedError(
                f"Token endpoint request failed: {e}", details=safe_details(str(e))
            ) from e

        if not response.ok:
            details = safe_details(response.text)
            logger.error(
                f"Token endpoint rejected {grant_type} grant "
                f"(status {response.status_code}): {details}"
            )
            raise AuthFailedError(
                f"Token {grant_type} grant failed.",
                status=response.status_code,
                details=details,
            )

        try:
            payload = response.json()
        except ValueError as e:
            raise AuthFailedError(
                "Token endpoint returned invalid JSON.",
                status=response.status_code,
                details=safe_details(response.text),
            ) from e
        if not isinstance(payload, dict):
            raise AuthFailedError("Token endpoint returned an unexpected body.")

        return TokenResponse.from_json(payload)
