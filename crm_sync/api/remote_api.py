"""
Remote CRM REST API client.

Provides contact read/search/create/update and contact property listing
for one tenant at a time. Every call obtains a fresh access token through
the token manager; nothing is cached between calls.
"""

import logging
from collections.abc import Iterable
from typing import Any, Optional
from urllib.parse import quote

import requests
from requests.exceptions import RequestException

from crm_sync.auth.tokens import TokenManager
from crm_sync.context import TenantContext
from crm_sync.errors import RemoteApiError
from crm_sync.sync.contact import REMOTE_UNIQUE_PROPERTY, RemoteContact
from crm_sync.utils.text import safe_details

# Versioned object paths
CONTACTS_PATH = "/crm/v3/objects/contacts"
CONTACT_SEARCH_PATH = "/crm/v3/objects/contacts/search"
CONTACT_PROPERTIES_PATH = "/crm/v3/properties/contacts"

# Default timeout for API requests (in seconds)
DEFAULT_TIMEOUT = 30

logger = logging.getLogger(__name__)


class RemoteCRMClient:
    """
    Client for the remote CRM's contact API.

    Attributes:
        api_base: Base URL of the REST API
        timeout: Request timeout in seconds

    Usage:
        client = RemoteCRMClient(token_manager)
        contact = client.get_contact(ctx, "42", ["email", "firstname"])
        found = client.search_by_email(ctx, "a@example.com")
        created = client.create_contact(ctx, {"email": "a@example.com"})
    """

    def __init__(
        self,
        tokens: TokenManager,
        api_base: str = "https://api.hubapi.com",
        timeout: float = DEFAULT_TIMEOUT,
    ):
        self.tokens = tokens
        self.api_base = api_base.rstrip("/")
        self.timeout = timeout

    def _request(
        self,
        ctx: TenantContext,
        method: str,
        path: str,
        params: Optional[dict[str, Any]] = None,
        body: Optional[dict[str, Any]] = None,
    ) -> dict[str, Any]:
        """
        Perform an authenticated JSON request.

        Raises:
            NotConnectedError: If the tenant has no token pair
            AuthFailedError: If a needed token refresh is rejected
            RemoteApiError: For transport failures and non-2xx responses
        """
        access_token = self.tokens.get_valid_access_token(ctx)
        url = f"{self.api_base}{path}"
        try:
            response = requests.request(
                method,
                url,
                params=params,
                json=body,
                headers={
                    "Authorization": f"Bearer {access_token}",
                    "Accept": "application/json",
                },
                timeout=self.timeout,
            )
        except RequestException as e:
            logger.error(f"Remote CRM {method} {path} failed: {e}")
            raise RemoteApiError(
                f"Remote CRM {method} {path} request failed",
                details=safe_details(str(e)),
            ) from e

        if not response.ok:
            details = safe_details(response.text)
            logger.error(
                f"Remote CRM {method} {path} returned {response.status_code}: {details}"
            )
            raise RemoteApiError(
                f"Remote CRM {method} {path} failed",
                status=response.status_code,
                details=details,
            )

        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as e:
            raise RemoteApiError(
                f"Remote CRM {method} {path} returned invalid JSON",
                status=response.status_code,
                details=safe_details(response.text),
            ) from e

    def get_contact(
        self, ctx: TenantContext, contact_id: str, properties: Iterable[str]
    ) -> RemoteContact:
        """
        Fetch one contact with the requested properties.

        Args:
            ctx: Tenant scope
            contact_id: Remote contact id
            properties: Property names to include

        Returns:
            RemoteContact
        """
        data = self._request(
            ctx,
            "GET",
            f"{CONTACTS_PATH}/{quote(str(contact_id), safe='')}",
            params={"properties": ",".join(properties)},
        )
        return RemoteContact.from_api_response(data)

    def search_by_email(
        self,
        ctx: TenantContext,
        email: str,
        properties: Iterable[str] = (REMOTE_UNIQUE_PROPERTY,),
    ) -> Optional[RemoteContact]:
        """
        Find a contact by exact email.

        Returns:
            The first matching RemoteContact, or None
        """
        data = self._request(
            ctx,
            "POST",
            CONTACT_SEARCH_PATH,
            body={
                "filterGroups": [
                    {
                        "filters": [
                            {
                                "propertyName": REMOTE_UNIQUE_PROPERTY,
                                "operator": "EQ",
                                "value": email,
                            }
                        ]
                    }
                ],
                "properties": list(properties),
                "limit": 1,
            },
        )
        results = data.get("results") or []
        if not results:
            return None
        return RemoteContact.from_api_response(results[0])

    def create_contact(
        self, ctx: TenantContext, properties: dict[str, str]
    ) -> RemoteContact:
        """Create a contact and return it."""
        data = self._request(ctx, "POST", CONTACTS_PATH, body={"properties": properties})
        logger.info(f"Created remote contact {data.get('id')}")
        return RemoteContact.from_api_response(data)

    def update_contact(
        self, ctx: TenantContext, contact_id: str, properties: dict[str, str]
    ) -> RemoteContact:
        """Patch the given properties of a contact and return it."""
        data = self._request(
            ctx,
            "PATCH",
            f"{CONTACTS_PATH}/{quote(str(contact_id), safe='')}",
            body={"properties": properties},
        )
        logger.info(f"Updated remote contact {contact_id}")
        return RemoteContact.from_api_response(data)

    def list_properties(self, ctx: TenantContext) -> list[dict[str, Any]]:
        """
        List visible, non-archived contact properties.

        Returns:
            Dictionaries with name, label, type, field_type and read_only
        """
        data = self._request(
            ctx, "GET", CONTACT_PROPERTIES_PATH, params={"archived": "false"}
        )
        return [
            {
                "name": prop.get("name"),
                "label": prop.get("label"),
                "type": prop.get("type"),
                "field_type": prop.get("fieldType"),
                "read_only": bool(prop.get("readOnlyValue")),
            }
            for prop in data.get("results") or []
            if not prop.get("hidden")
        ]
