"""
Conflict resolution for local-to-remote propagation.

The bridge is last-writer-wins, with one privilege: when a local push races
a remote edit, a strictly newer remote modification wins and the push is
dropped.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Optional


class ConflictSide(Enum):
    """Which side holds the newer modification."""

    LOCAL = "local"
    REMOTE = "remote"
    EQUAL = "equal"
    UNKNOWN = "unknown"


@dataclass
class FreshnessResult:
    """
    Result of a freshness comparison.

    Attributes:
        newer: Side with the newer timestamp
        reason: Human-readable explanation
    """

    newer: ConflictSide
    reason: str

    @property
    def remote_wins(self) -> bool:
        return self.newer is ConflictSide.REMOTE


def _comparable(
    time1: datetime, time2: datetime
) -> tuple[datetime, datetime]:
    # If one has tzinfo and the other doesn't, assume UTC for the naive one
    if time1.tzinfo is None and time2.tzinfo is not None:
        time1 = time1.replace(tzinfo=timezone.utc)
    elif time2.tzinfo is None and time1.tzinfo is not None:
        time2 = time2.replace(tzinfo=timezone.utc)
    return time1, time2


def compare_freshness(
    local_updated_at: Optional[datetime], remote_modified_at: Optional[datetime]
) -> FreshnessResult:
    """
    Compare a local and a remote modification instant.

    Without both timestamps there is no conflict to detect.

    Args:
        local_updated_at: Local contact's last modification
        remote_modified_at: Remote contact's last modification

    Returns:
        FreshnessResult
    """
    if local_updated_at is None or remote_modified_at is None:
        return FreshnessResult(ConflictSide.UNKNOWN, "Missing timestamp, no conflict")

    local_time, remote_time = _comparable(local_updated_at, remote_modified_at)
    if remote_time > local_time:
        return FreshnessResult(
            ConflictSide.REMOTE,
            f"Remote has newer modification time ({remote_time} > {local_time})",
        )
    if local_time > remote_time:
        return FreshnessResult(
            ConflictSide.LOCAL,
            f"Local has newer modification time ({local_time} > {remote_time})",
        )
    return FreshnessResult(ConflictSide.EQUAL, f"Equal timestamps ({local_time})")
