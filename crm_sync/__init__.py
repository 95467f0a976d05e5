"""
crm_sync - Bidirectional contact bridge between a local CRM and a remote CRM.

Real-time, multi-tenant contact synchronization driven by remote webhooks
and local change events, with echo-loop suppression through a short-lived
sync ledger.
"""

__version__ = "0.1.0"
__author__ = "crm-sync contributors"
