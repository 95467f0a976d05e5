"""
Mapping configuration: remote property listing and mapping save / list.
"""

import logging
from typing import Any

from crm_sync.api.remote_api import RemoteCRMClient
from crm_sync.context import TenantContext
from crm_sync.storage.interfaces import MappingStore
from crm_sync.sync.mapping import FieldMapping, mappings_from_rows, validate_mappings

logger = logging.getLogger(__name__)


class MappingService:
    """
    Reads and replaces a tenant's mapping set.

    Usage:
        service = MappingService(db, remote_client)
        service.save(ctx, [{"local_field_key": "email",
                            "remote_property": "email",
                            "direction": "bidirectional"}])
    """

    def __init__(self, store: MappingStore, remote: RemoteCRMClient):
        self.store = store
        self.remote = remote

    def list_mappings(self, ctx: TenantContext) -> list[FieldMapping]:
        return mappings_from_rows(self.store.list_mappings(ctx.tenant_key))

    def save(self, ctx: TenantContext, rows: Any) -> list[FieldMapping]:
        """
        Validate and store a full mapping set, replacing the previous one.

        Raises:
            MappingValidationError: Before any store mutation
        """
        mappings = validate_mappings(rows)
        self.store.replace_mappings(ctx.tenant_key, [m.to_row() for m in mappings])
        logger.info(f"Saved {len(mappings)} mappings for tenant {ctx.tenant_key}")
        return mappings

    def remote_properties(self, ctx: TenantContext) -> list[dict[str, Any]]:
        """Contact properties available on the remote side."""
        return self.remote.list_properties(ctx)
