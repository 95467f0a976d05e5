"""
crm_sync.auth - Authentication module

OAuth2 client, token lifecycle management, signed OAuth state tokens and
inbound webhook signature verification.
"""

from crm_sync.auth.oauth import OAuthClient, TokenResponse
from crm_sync.auth.state import create_signed_state, verify_signed_state
from crm_sync.auth.tokens import TokenManager
from crm_sync.auth.webhook import VerificationResult, WebhookVerifier, external_url

__all__ = [
    "OAuthClient",
    "TokenResponse",
    "TokenManager",
    "create_signed_state",
    "verify_signed_state",
    "VerificationResult",
    "WebhookVerifier",
    "external_url",
]
