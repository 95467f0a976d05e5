"""
Entry point for running crm_sync as a module.

Usage:
    python -m crm_sync --help
    python -m crm_sync status --tenant acme
"""

from crm_sync.cli import cli

if __name__ == "__main__":
    cli()
