"""
crm_sync.utils - Utility module

Common utilities including logging configuration, config-dir resolution,
canonical hashing and diagnostic text helpers.
"""

from crm_sync.utils.hashing import canonical_hash, stable_json
from crm_sync.utils.paths import DEFAULT_CONFIG_DIR, resolve_config_dir, resolve_under
from crm_sync.utils.text import compact, safe_details, scrub_secrets

__all__ = [
    "canonical_hash",
    "stable_json",
    "resolve_config_dir",
    "resolve_under",
    "DEFAULT_CONFIG_DIR",
    "compact",
    "safe_details",
    "scrub_secrets",
]
