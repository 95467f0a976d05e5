"""
crm_sync.api - CRM REST API clients
"""

from crm_sync.api.local_api import LocalCRMClient
from crm_sync.api.remote_api import RemoteCRMClient

__all__ = ["LocalCRMClient", "RemoteCRMClient"]
