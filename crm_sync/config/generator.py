"""
Configuration file generator for the contact bridge.

Writes a documented default config.yaml for `crm-sync init-config`.
"""

import logging
from pathlib import Path

logger = logging.getLogger(__name__)


def generate_default_config() -> str:
    """
    Generate default YAML configuration with all options documented.

    Returns:
        String containing YAML configuration with comments
    """
    return """# crm-sync Configuration
# ======================
#
# Save as ~/.crm-sync/config.yaml (or $CRM_SYNC_CONFIG_DIR/config.yaml).
# Secrets are NOT read from this file. Export them instead:
#   CRM_SYNC_CLIENT_ID, CRM_SYNC_CLIENT_SECRET, CRM_SYNC_STATE_SIGNING_SECRET,
#   CRM_SYNC_WEBHOOK_SECRET (optional, defaults to the client secret),
#   CRM_SYNC_LOCAL_API_KEY


# Endpoints
# ---------

# Remote CRM REST API and OAuth token endpoint base
# Default: https://api.hubapi.com
# remote_api_base: https://api.hubapi.com

# Remote CRM authorization page base (user-facing redirect)
# Default: https://app.hubspot.com
# remote_auth_base: https://app.hubspot.com

# Local CRM REST API base
# local_api_base: https://crm.example.com/api

# OAuth redirect URI override
# Default: <request origin>/oauth/callback
# redirect_uri: https://bridge.example.com/oauth/callback

# OAuth scopes requested on connect
# scopes:
#   - crm.objects.contacts.read
#   - crm.objects.contacts.write
#   - crm.schemas.contacts.read
#   - forms

# HTTP timeout in seconds for every outbound call
# Default: 30
# request_timeout: 30


# Storage
# -------

# SQLite database holding connections, mappings, identity map and ledger
# Default: <config dir>/crm_sync.db
# database_path: /var/lib/crm-sync/crm_sync.db


# Sync Behaviour
# --------------

# Refresh access tokens expiring within this many seconds
# Default: 60
# token_safety_window_seconds: 60

# How long a recorded propagation suppresses its echo
# Default: 120
# ledger_ttl_seconds: 120

# Maximum webhook timestamp skew accepted
# Default: 300
# webhook_max_age_seconds: 300

# Maximum age of an OAuth state token
# Default: 600
# state_max_age_seconds: 600

# Reject unsigned or wrongly signed webhooks
# Default: true
# require_webhook_signature: true


# Logging
# -------

# Directory for log files
# Default: <config dir>/logs
# log_dir: /var/log/crm-sync

# Enable verbose output with detailed logging
# Default: false
# verbose: false
"""


def save_config_file(path: Path, force: bool = False) -> bool:
    """
    Save the default configuration to a file.

    Args:
        path: Destination path
        force: Overwrite an existing file

    Returns:
        True if the file was written, False if it already existed
    """
    if path.exists() and not force:
        logger.debug(f"Configuration file already exists: {path}")
        return False

    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(generate_default_config(), encoding="utf-8")
    logger.info(f"Wrote default configuration to {path}")
    return True
