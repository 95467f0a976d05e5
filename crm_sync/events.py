"""
Best-effort diagnostic event log.

Event-log writes never block or fail the operation being logged: a store
failure is reported on the process log and dropped.
"""

import logging
import secrets
import time
from typing import Any

from crm_sync.errors import SyncError
from crm_sync.storage.interfaces import EventLogStore

# Event sources
SOURCE_REMOTE = "remote"
SOURCE_LOCAL = "local"

# Event statuses
STATUS_RECEIVED = "received"
STATUS_IGNORED = "ignored"
STATUS_ERROR = "error"

logger = logging.getLogger(__name__)


def new_correlation_id(source: str, event_id: Any = None) -> str:
    """
    Build a correlation id for an inbound event.

    ``<source>:<event id>`` when the sender supplied an id, otherwise
    ``<source>:<received ms>:<random hex>``.
    """
    if event_id is not None and event_id != "":
        return f"{source}:{event_id}"
    return f"{source}:{int(time.time() * 1000)}:{secrets.token_hex(6)}"


def log_event(store: EventLogStore, **fields: Any) -> bool:
    """
    Write one event-log entry.

    Args:
        store: Event log store
        **fields: Event columns (event_type, source and status at least)

    Returns:
        True if the entry was written
    """
    try:
        store.insert_event(**fields)
        return True
    except (SyncError, ValueError) as e:
        logger.warning(f"Event log write failed for {fields.get('event_type')}: {e}")
        return False
