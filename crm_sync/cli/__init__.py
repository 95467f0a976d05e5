"""CLI package for crm_sync."""

from crm_sync.cli.main import cli, get_bridge, get_config_file

__all__ = [
    "cli",
    "get_bridge",
    "get_config_file",
]
