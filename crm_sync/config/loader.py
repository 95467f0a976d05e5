"""
Configuration loader for the contact bridge.

Reads ``config.yaml`` from the config directory and checks it against a
small declarative schema. The file holds endpoints and tuning knobs only;
secrets are read from the environment by ``Secrets.from_env``.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

from crm_sync.utils.paths import resolve_config_dir

DEFAULT_CONFIG_FILE = "config.yaml"

logger = logging.getLogger(__name__)


class ConfigError(Exception):
    """Raised when configuration loading or validation fails."""

    pass


@dataclass(frozen=True)
class KeyRule:
    types: tuple[type, ...]
    minimum: float | None = None
    # minimum itself is rejected
    exclusive: bool = False
    url: bool = False


SCHEMA: dict[str, KeyRule] = {
    "remote_api_base": KeyRule((str,), url=True),
    "remote_auth_base": KeyRule((str,), url=True),
    "local_api_base": KeyRule((str,), url=True),
    "redirect_uri": KeyRule((str,)),
    "scopes": KeyRule((list,)),
    "request_timeout": KeyRule((int, float), minimum=0, exclusive=True),
    "database_path": KeyRule((str,)),
    "token_safety_window_seconds": KeyRule((int,), minimum=0),
    "ledger_ttl_seconds": KeyRule((int,), minimum=1),
    "webhook_max_age_seconds": KeyRule((int,), minimum=1),
    "state_max_age_seconds": KeyRule((int,), minimum=1),
    "require_webhook_signature": KeyRule((bool,)),
    "log_dir": KeyRule((str,)),
    "verbose": KeyRule((bool,)),
}

SECRET_KEYS = frozenset(
    {
        "client_secret",
        "state_signing_secret",
        "encryption_key",
        "webhook_secret",
        "local_api_key",
        "access_token",
        "refresh_token",
    }
)


def _check_type(key: str, value: Any, types: tuple[type, ...]) -> None:
    # bool is an int subclass
    wrong = not isinstance(value, types) or (
        isinstance(value, bool) and bool not in types
    )
    if wrong:
        expected = " or ".join(t.__name__ for t in types)
        raise ConfigError(
            f"Invalid type for '{key}': expected {expected}, got {type(value).__name__}"
        )


def _check_range(key: str, value: Any, rule: KeyRule) -> None:
    if rule.minimum is None:
        return
    if rule.exclusive and value <= rule.minimum:
        raise ConfigError(f"{key} must be > {rule.minimum}, got {value}")
    if value < rule.minimum:
        raise ConfigError(f"{key} must be >= {rule.minimum}, got {value}")


class ConfigLoader:
    """
    Loads and validates ``config.yaml``.

    Usage:
        config = ConfigLoader().load_and_validate()
        settings = Settings.from_config(config)
    """

    def __init__(
        self, config_dir: Path | None = None, config_file: str = DEFAULT_CONFIG_FILE
    ):
        """
        Args:
            config_dir: Defaults to ~/.crm-sync/ or $CRM_SYNC_CONFIG_DIR
            config_file: File name inside config_dir
        """
        self.config_dir = resolve_config_dir(config_dir)
        self.config_file = config_file

    @property
    def path(self) -> Path:
        return self.config_dir / self.config_file

    def load(self) -> dict[str, Any]:
        """Load the default file; a missing file yields an empty dict."""
        return self.load_from_file(self.path)

    def load_from_file(self, path: Path | str) -> dict[str, Any]:
        """
        Load configuration from ``path``.

        Missing and empty files both give ``{}``.

        Raises:
            ConfigError: If the file is unreadable, not YAML, or not a mapping
        """
        path = Path(path)
        if not path.exists():
            logger.debug(f"No configuration file at {path}")
            return {}

        try:
            text = path.read_text(encoding="utf-8")
        except OSError as e:
            raise ConfigError(f"Failed to read configuration file: {e}") from e

        try:
            data = yaml.safe_load(text)
        except yaml.YAMLError as e:
            raise ConfigError(f"Failed to parse YAML configuration file: {e}") from e

        if data is None:
            return {}
        if not isinstance(data, dict):
            raise ConfigError(
                f"Configuration file must contain a YAML dictionary, "
                f"got {type(data).__name__}"
            )
        logger.debug(f"Loaded {len(data)} configuration keys from {path}")
        return data

    def validate(self, config: dict[str, Any]) -> None:
        """
        Check ``config`` against ``SCHEMA``.

        Unknown keys are logged and ignored. Secret keys are rejected.

        Raises:
            ConfigError: If configuration is invalid
        """
        if not isinstance(config, dict):
            raise ConfigError(
                f"Configuration must be a dictionary, got {type(config).__name__}"
            )

        leaked = sorted(SECRET_KEYS.intersection(config))
        if leaked:
            raise ConfigError(
                "Secrets belong in the environment, not the config file: "
                + ", ".join(leaked)
            )

        for key, value in config.items():
            rule = SCHEMA.get(key)
            if rule is None:
                logger.warning(f"Unknown configuration key ignored: {key}")
                continue
            _check_type(key, value, rule.types)
            _check_range(key, value, rule)
            if rule.url and not value.startswith(("http://", "https://")):
                raise ConfigError(f"{key} must be an http(s) URL, got {value!r}")

        for i, scope in enumerate(config.get("scopes", [])):
            if not isinstance(scope, str) or not scope.strip():
                raise ConfigError(f"scopes[{i}] must be a non-empty string")

    def load_and_validate(self) -> dict[str, Any]:
        """Load then validate; raises ConfigError on either failure."""
        config = self.load()
        if config:
            self.validate(config)
        return config
