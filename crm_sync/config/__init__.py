"""
crm_sync.config - Configuration management module

Contains configuration loading, validation, default settings and secrets.
"""

from crm_sync.config.generator import generate_default_config, save_config_file
from crm_sync.config.loader import DEFAULT_CONFIG_FILE, ConfigError, ConfigLoader
from crm_sync.config.settings import DEFAULT_SCOPES, Secrets, Settings

__all__ = [
    "ConfigError",
    "ConfigLoader",
    "DEFAULT_CONFIG_FILE",
    "DEFAULT_SCOPES",
    "Secrets",
    "Settings",
    "generate_default_config",
    "save_config_file",
]
