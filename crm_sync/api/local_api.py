"""
Local CRM REST API client.

The local CRM exposes a plain JSON contact resource authenticated with an
API key; every request carries the tenant key so the local side scopes it
to the right installation.
"""

import logging
from typing import Any, Optional
from urllib.parse import quote

import requests
from requests.exceptions import RequestException

from crm_sync.context import TenantContext
from crm_sync.errors import RemoteApiError
from crm_sync.sync.contact import LocalContact
from crm_sync.utils.text import safe_details

CONTACTS_PATH = "/contacts"
TENANT_HEADER = "X-Tenant-Key"

# Default timeout for API requests (in seconds)
DEFAULT_TIMEOUT = 30

logger = logging.getLogger(__name__)


class LocalCRMClient:
    """
    Client for the local CRM's contact API.

    Usage:
        client = LocalCRMClient("https://crm.example.com/api", api_key)
        contact = client.get_contact(ctx, "c-1")
        created = client.create_contact(ctx, {"email": "a@example.com"})
    """

    def __init__(
        self,
        api_base: str,
        api_key: Optional[str] = None,
        timeout: float = DEFAULT_TIMEOUT,
    ):
        self.api_base = api_base.rstrip("/")
        self._api_key = api_key
        self.timeout = timeout

    def _request(
        self,
        ctx: TenantContext,
        method: str,
        path: str,
        params: Optional[dict[str, Any]] = None,
        body: Optional[dict[str, Any]] = None,
    ) -> Any:
        headers = {"Accept": "application/json", TENANT_HEADER: ctx.tenant_key}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"

        try:
            response = requests.request(
                method,
                f"{self.api_base}{path}",
                params=params,
                json=body,
                headers=headers,
                timeout=self.timeout,
            )
        except RequestException as e:
            logger.error(f"Local CRM {method} {path} failed: {e}")
            raise RemoteApiError(
                f"Local CRM {method} {path} request failed",
                details=safe_details(str(e)),
            ) from e

        if not response.ok:
            details = safe_details(response.text)
            logger.error(
                f"Local CRM {method} {path} returned {response.status_code}: {details}"
            )
            raise RemoteApiError(
                f"Local CRM {method} {path} failed",
                status=response.status_code,
                details=details,
            )

        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as e:
            raise RemoteApiError(
                f"Local CRM {method} {path} returned invalid JSON",
                status=response.status_code,
                details=safe_details(response.text),
            ) from e

    def get_contact(self, ctx: TenantContext, contact_id: str) -> LocalContact:
        data = self._request(ctx, "GET", f"{CONTACTS_PATH}/{quote(contact_id, safe='')}")
        return LocalContact.from_api_response(data)

    def search_by_email(self, ctx: TenantContext, email: str) -> Optional[LocalContact]:
        """Return the first contact whose primary email equals ``email``."""
        data = self._request(ctx, "GET", CONTACTS_PATH, params={"email": email, "limit": 1})
        items = data.get("items") if isinstance(data, dict) else data
        if not items:
            return None
        return LocalContact.from_api_response(items[0])

    def create_contact(self, ctx: TenantContext, fields: dict[str, str]) -> LocalContact:
        data = self._request(ctx, "POST", CONTACTS_PATH, body=fields)
        contact = LocalContact.from_api_response(data)
        if not contact.id:
            raise RemoteApiError("Local CRM create returned no contact id")
        logger.info(f"Created local contact {contact.id}")
        return contact

    def update_contact(
        self, ctx: TenantContext, contact_id: str, fields: dict[str, str]
    ) -> LocalContact:
        data = self._request(
            ctx, "PATCH", f"{CONTACTS_PATH}/{quote(contact_id, safe='')}", body=fields
        )
        logger.info(f"Updated local contact {contact_id}")
        return LocalContact.from_api_response(data)
