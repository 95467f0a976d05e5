"""
Filesystem locations used by the bridge.

Everything the bridge writes (database, logs, config) lives under one
config directory unless the config file points elsewhere.
"""

from __future__ import annotations

import os
from pathlib import Path

DEFAULT_CONFIG_DIR = Path.home() / ".crm-sync"
CONFIG_DIR_ENV_VAR = "CRM_SYNC_CONFIG_DIR"
LOGS_SUBDIR = "logs"


def resolve_config_dir(config_dir: Path | str | None = None) -> Path:
    """
    Resolve the configuration directory.

    An explicit ``config_dir`` wins, then ``$CRM_SYNC_CONFIG_DIR``, then
    ``~/.crm-sync``. The result is expanded and absolute.
    """
    chosen = config_dir if config_dir is not None else os.environ.get(CONFIG_DIR_ENV_VAR)
    return Path(chosen or DEFAULT_CONFIG_DIR).expanduser().resolve()


def resolve_under(config_dir: Path, value: str | Path | None, default: str) -> Path:
    """
    Resolve a configured path.

    Empty values fall back to ``config_dir / default``. Relative values are
    taken relative to ``config_dir``, not the working directory.
    """
    if not value:
        return config_dir / default
    path = Path(value).expanduser()
    return path if path.is_absolute() else config_dir / path
