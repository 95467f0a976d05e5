"""
Logging configuration for the contact bridge.

One ``crm_sync`` logger hierarchy with:
- a console handler on stderr (ANSI colors on capable terminals)
- a daily file handler that always captures DEBUG
- a redaction filter on every handler so bearer tokens and token-like
  JSON fields never reach a log sink

Levels come from ``CRM_SYNC_DEBUG`` / ``CRM_SYNC_LOG_LEVEL``; the file from
``CRM_SYNC_LOG_FILE`` (``none`` or ``disabled`` turns it off).
"""

import logging
import os
import re
import sys
from datetime import datetime
from pathlib import Path
from typing import Optional

from crm_sync.utils.paths import LOGS_SUBDIR, resolve_config_dir
from crm_sync.utils.text import scrub_secrets

# Console: level and message only
CONSOLE_FORMAT = "%(levelname)s: %(message)s"

# Verbose console and log file
VERBOSE_FORMAT = (
    "%(asctime)s - %(name)s - %(levelname)s - [%(filename)s:%(lineno)d] - %(message)s"
)

DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

ENV_LOG_LEVEL = "CRM_SYNC_LOG_LEVEL"
ENV_DEBUG = "CRM_SYNC_DEBUG"
ENV_LOG_FILE = "CRM_SYNC_LOG_FILE"

ROOT_LOGGER_NAME = "crm_sync"

_BEARER_RE = re.compile(r"(Bearer\s+)[A-Za-z0-9._~+/=-]+", re.IGNORECASE)


def dated_log_name(day: Optional[datetime] = None) -> str:
    """File name of the log for ``day`` (default today)."""
    return f"crm_sync_{(day or datetime.now()).strftime('%Y%m%d')}.log"


class RedactingFilter(logging.Filter):
    """Masks bearer tokens and token-like JSON fields in log messages."""

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        redacted = scrub_secrets(_BEARER_RE.sub(r"\1***", message))
        if redacted != message:
            record.msg = redacted
            record.args = None
        return True


class ColoredFormatter(logging.Formatter):
    """Formatter that colors the level name and message for terminals."""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def __init__(
        self,
        fmt: Optional[str] = None,
        datefmt: Optional[str] = None,
        use_colors: bool = True,
    ):
        super().__init__(fmt, datefmt)
        self.use_colors = use_colors and self._supports_color()

    @staticmethod
    def _supports_color() -> bool:
        if not getattr(sys.stderr, "isatty", None) or not sys.stderr.isatty():
            return False
        # https://no-color.org/
        if os.environ.get("NO_COLOR"):
            return False
        return os.environ.get("TERM", "") != "dumb"

    def format(self, record: logging.LogRecord) -> str:
        if not self.use_colors or record.levelname not in self.COLORS:
            return super().format(record)
        color = self.COLORS[record.levelname]
        colored = logging.makeLogRecord(record.__dict__)
        colored.levelname = f"{color}{record.levelname}{self.RESET}"
        colored.msg = f"{color}{record.getMessage()}{self.RESET}"
        colored.args = None
        return super().format(colored)


def get_log_level_from_env() -> int:
    """
    Get the logging level from the environment.

    ``CRM_SYNC_DEBUG`` (1/true/yes) wins over ``CRM_SYNC_LOG_LEVEL``; unknown
    level names fall back to INFO.
    """
    if os.environ.get(ENV_DEBUG, "").lower() in ("1", "true", "yes"):
        return logging.DEBUG

    name = os.environ.get(ENV_LOG_LEVEL, "INFO").upper()
    if name == "WARN":
        name = "WARNING"
    level = logging.getLevelName(name)
    return level if isinstance(level, int) else logging.INFO


def get_log_file_path() -> Optional[Path]:
    """
    Get the log file path from the environment or the default location.

    Returns:
        Path to the log file, or None if file logging is disabled
    """
    log_file = os.environ.get(ENV_LOG_FILE)
    if log_file is not None:
        if log_file.lower() in ("none", "disabled", ""):
            return None
        return Path(log_file)
    return resolve_config_dir() / LOGS_SUBDIR / dated_log_name()


def _console_handler(level: int, verbose: bool, use_colors: bool) -> logging.Handler:
    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(level)
    fmt = VERBOSE_FORMAT if verbose else CONSOLE_FORMAT
    formatter: logging.Formatter
    if use_colors:
        formatter = ColoredFormatter(fmt, DATE_FORMAT)
    else:
        formatter = logging.Formatter(fmt, DATE_FORMAT)
    handler.setFormatter(formatter)
    return handler


def _file_handler(path: Path) -> logging.Handler:
    path.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(path, encoding="utf-8")
    handler.setLevel(logging.DEBUG)
    handler.setFormatter(logging.Formatter(VERBOSE_FORMAT, DATE_FORMAT))
    return handler


def setup_logging(
    level: Optional[int] = None,
    verbose: bool = False,
    log_dir: Optional[Path] = None,
    log_file: Optional[Path] = None,
    enable_file_logging: bool = True,
    use_colors: bool = True,
) -> logging.Logger:
    """
    Configure the ``crm_sync`` logger. Safe to call more than once.

    Args:
        level: Console level; from the environment when None
        verbose: Use the verbose format and DEBUG level
        log_dir: Directory for the dated log file
        log_file: Explicit log file (wins over log_dir)
        enable_file_logging: Set False to log to the console only
        use_colors: Color console output when the terminal supports it

    Returns:
        The ``crm_sync`` logger
    """
    if level is None:
        level = get_log_level_from_env()
    if verbose:
        level = logging.DEBUG

    logger = logging.getLogger(ROOT_LOGGER_NAME)
    for old in list(logger.handlers):
        old.close()
    logger.handlers.clear()
    logger.setLevel(logging.DEBUG if enable_file_logging else level)
    logger.propagate = False

    redact = RedactingFilter()
    console = _console_handler(level, verbose, use_colors)
    console.addFilter(redact)
    logger.addHandler(console)

    if not enable_file_logging:
        return logger

    if log_file:
        path: Optional[Path] = log_file
    elif log_dir:
        path = log_dir / dated_log_name()
    else:
        path = get_log_file_path()
    if path is None:
        return logger

    try:
        file_handler = _file_handler(path)
    except OSError as e:
        logger.warning(f"Could not create log file {path}: {e}")
        return logger
    file_handler.addFilter(redact)
    logger.addHandler(file_handler)
    logger.debug(f"Log file: {path}")
    return logger


def get_logger(name: str) -> logging.Logger:
    """Get a logger inside the ``crm_sync`` hierarchy."""
    if not name.startswith(ROOT_LOGGER_NAME):
        name = f"{ROOT_LOGGER_NAME}.{name}"
    return logging.getLogger(name)


__all__ = [
    "setup_logging",
    "get_logger",
    "ColoredFormatter",
    "RedactingFilter",
    "get_log_level_from_env",
    "get_log_file_path",
    "dated_log_name",
    "CONSOLE_FORMAT",
    "VERBOSE_FORMAT",
    "DATE_FORMAT",
]
