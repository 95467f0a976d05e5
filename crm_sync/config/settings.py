"""
Runtime settings for the contact bridge.

Merges built-in defaults, the validated YAML configuration and the
secrets taken from the environment into one immutable object.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from crm_sync.utils.paths import resolve_config_dir, resolve_under

logger = logging.getLogger(__name__)

DEFAULT_REMOTE_API_BASE = "https://api.hubapi.com"
DEFAULT_REMOTE_AUTH_BASE = "https://app.hubspot.com"
DEFAULT_DATABASE_FILE = "crm_sync.db"
DEFAULT_SCOPES = [
    "crm.objects.contacts.read",
    "crm.objects.contacts.write",
    "crm.schemas.contacts.read",
    "forms",
]

# Environment variables holding secrets
ENV_CLIENT_ID = "CRM_SYNC_CLIENT_ID"
ENV_CLIENT_SECRET = "CRM_SYNC_CLIENT_SECRET"
ENV_STATE_SIGNING_SECRET = "CRM_SYNC_STATE_SIGNING_SECRET"
ENV_ENCRYPTION_KEY = "CRM_SYNC_ENCRYPTION_KEY"
ENV_WEBHOOK_SECRET = "CRM_SYNC_WEBHOOK_SECRET"
ENV_LOCAL_API_KEY = "CRM_SYNC_LOCAL_API_KEY"


def _env(name: str, environ: dict[str, str]) -> str | None:
    value = environ.get(name, "").strip()
    return value or None


@dataclass(frozen=True)
class Secrets:
    """Credentials read from the environment. Never logged."""

    client_id: str | None = None
    client_secret: str | None = None
    state_signing_secret: str | None = None
    webhook_secret: str | None = None
    local_api_key: str | None = None

    @classmethod
    def from_env(cls, environ: dict[str, str] | None = None) -> Secrets:
        """
        Read secrets from environment variables.

        The state signing secret falls back to the encryption key, and the
        webhook secret falls back to the client secret (the remote CRM signs
        webhooks with the app's client secret).
        """
        env = dict(os.environ if environ is None else environ)
        client_secret = _env(ENV_CLIENT_SECRET, env)
        return cls(
            client_id=_env(ENV_CLIENT_ID, env),
            client_secret=client_secret,
            state_signing_secret=(
                _env(ENV_STATE_SIGNING_SECRET, env) or _env(ENV_ENCRYPTION_KEY, env)
            ),
            webhook_secret=_env(ENV_WEBHOOK_SECRET, env) or client_secret,
            local_api_key=_env(ENV_LOCAL_API_KEY, env),
        )

    def __repr__(self) -> str:
        present = [name for name, value in self.__dict__.items() if value]
        return f"Secrets(present={present})"


@dataclass(frozen=True)
class Settings:
    """
    Effective bridge settings.

    Attributes mirror the keys accepted by ``ConfigLoader.validate``; see
    ``crm-sync init-config`` for their documentation.
    """

    config_dir: Path
    remote_api_base: str = DEFAULT_REMOTE_API_BASE
    remote_auth_base: str = DEFAULT_REMOTE_AUTH_BASE
    local_api_base: str | None = None
    database_path: str = ""
    redirect_uri: str | None = None
    scopes: list[str] = field(default_factory=lambda: list(DEFAULT_SCOPES))
    request_timeout: float = 30
    token_safety_window_seconds: int = 60
    ledger_ttl_seconds: int = 120
    webhook_max_age_seconds: int = 300
    state_max_age_seconds: int = 600
    require_webhook_signature: bool = True
    log_dir: str | None = None
    verbose: bool = False
    secrets: Secrets = field(default_factory=Secrets)

    @classmethod
    def from_config(
        cls,
        config: dict[str, Any],
        config_dir: Path | None = None,
        secrets: Secrets | None = None,
    ) -> Settings:
        """
        Build settings from a validated configuration dictionary.

        Args:
            config: Output of ``ConfigLoader.load_and_validate``
            config_dir: Configuration directory (used for default paths)
            secrets: Secrets to use; read from the environment when omitted

        Returns:
            Settings instance
        """
        resolved_dir = resolve_config_dir(config_dir)
        known = {f for f in cls.__dataclass_fields__ if f not in ("config_dir", "secrets")}
        values = {key: value for key, value in config.items() if key in known}

        values["database_path"] = str(
            resolve_under(resolved_dir, values.get("database_path"), DEFAULT_DATABASE_FILE)
        )
        if "scopes" in values:
            values["scopes"] = [s.strip() for s in values["scopes"]]
        for key in ("remote_api_base", "remote_auth_base", "local_api_base"):
            if values.get(key):
                values[key] = values[key].rstrip("/")

        settings = cls(
            config_dir=resolved_dir,
            secrets=secrets if secrets is not None else Secrets.from_env(),
            **values,
        )
        logger.debug(
            f"Settings loaded: remote_api_base={settings.remote_api_base}, "
            f"database_path={settings.database_path}, secrets={settings.secrets!r}"
        )
        return settings
