"""
Field mapping resolution.

A tenant's mapping set says which local field feeds which remote property,
in which direction, and how the value is normalized on the way. Resolution
is pure and total: it never raises, and missing or empty values are left
out of the result rather than written as empty strings.
"""

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from crm_sync.errors import MappingValidationError
from crm_sync.sync.contact import LOCAL_FIELD_KEYS, LocalContact, RemoteContact

logger = logging.getLogger(__name__)


class Direction(Enum):
    """Which way a mapped value flows."""

    LOCAL_TO_REMOTE = "local_to_remote"
    REMOTE_TO_LOCAL = "remote_to_local"
    BIDIRECTIONAL = "bidirectional"


class Transform(Enum):
    """Normalization applied to a value before it is compared or written."""

    NONE = "none"
    TRIM = "trim"
    LOWERCASE = "lowercase"


@dataclass(frozen=True)
class FieldMapping:
    """
    One mapping row.

    Attributes:
        local_field_key: Local contact field (one of LOCAL_FIELD_KEYS)
        remote_property: Remote contact property name
        direction: Flow direction
        transform: Value normalization
    """

    local_field_key: str
    remote_property: str
    direction: Direction
    transform: Transform = Transform.NONE

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "FieldMapping":
        """Build a mapping from a stored row (already validated)."""
        return cls(
            local_field_key=row["local_field_key"],
            remote_property=row["remote_property"],
            direction=Direction(row["direction"]),
            transform=_parse_transform(row.get("transform")),
        )

    def to_row(self) -> dict[str, str]:
        return {
            "local_field_key": self.local_field_key,
            "remote_property": self.remote_property,
            "direction": self.direction.value,
            "transform": self.transform.value,
        }

    def applies_to(self, direction: Direction) -> bool:
        return self.direction in (direction, Direction.BIDIRECTIONAL)


@dataclass
class ResolvedPayload:
    """
    Values resolved for one propagation.

    Attributes:
        canonical_fields: Values keyed by local field key; hashed for the
            ledger identically in both directions
        remote_properties: The same values keyed by remote property name
    """

    canonical_fields: dict[str, str] = field(default_factory=dict)
    remote_properties: dict[str, str] = field(default_factory=dict)

    def is_empty(self) -> bool:
        return not self.canonical_fields


def _parse_transform(value: Any) -> Transform:
    try:
        return Transform(value)
    except ValueError:
        return Transform.NONE


def apply_transform(value: str, transform: Transform) -> str:
    """
    Apply a transform to a value.

    ``trim`` strips surrounding whitespace, ``lowercase`` trims then
    lowercases, ``none`` passes the value through.
    """
    if transform is Transform.TRIM:
        return value.strip()
    if transform is Transform.LOWERCASE:
        return value.strip().lower()
    return value


def select_mappings(
    mappings: Iterable[FieldMapping], direction: Direction
) -> list[FieldMapping]:
    """Return the mappings that apply to ``direction`` (or are bidirectional)."""
    return [m for m in mappings if m.applies_to(direction)]


def _resolve_value(raw: Any, transform: Transform) -> str | None:
    if not isinstance(raw, str) or not raw:
        return None
    value = apply_transform(raw, transform)
    return value or None


def resolve_outbound(
    mappings: Iterable[FieldMapping], contact: LocalContact
) -> ResolvedPayload:
    """
    Resolve local-to-remote values for a local contact.

    Args:
        mappings: The tenant's full mapping set
        contact: Changed local contact

    Returns:
        ResolvedPayload (empty when no mapping produced a value)
    """
    payload = ResolvedPayload()
    for mapping in select_mappings(mappings, Direction.LOCAL_TO_REMOTE):
        raw = contact.field_value(mapping.local_field_key)
        value = _resolve_value(raw, mapping.transform)
        if value is None:
            continue
        payload.remote_properties[mapping.remote_property] = value
        payload.canonical_fields[mapping.local_field_key] = value
    return payload


def resolve_inbound(
    mappings: Iterable[FieldMapping], contact: RemoteContact
) -> ResolvedPayload:
    """
    Resolve remote-to-local values for a remote contact.

    Mappings whose local field key is not a known local field are skipped.

    Args:
        mappings: The tenant's full mapping set
        contact: Changed remote contact

    Returns:
        ResolvedPayload (empty when no mapping produced a value)
    """
    payload = ResolvedPayload()
    for mapping in select_mappings(mappings, Direction.REMOTE_TO_LOCAL):
        if mapping.local_field_key not in LOCAL_FIELD_KEYS:
            continue
        value = _resolve_value(
            contact.properties.get(mapping.remote_property), mapping.transform
        )
        if value is None:
            continue
        payload.remote_properties[mapping.remote_property] = value
        payload.canonical_fields[mapping.local_field_key] = value
    return payload


def validate_mappings(rows: Any) -> list[FieldMapping]:
    """
    Validate a raw mapping set before it is saved.

    Rules: the set is a list of objects; each has a non-empty
    ``local_field_key`` naming a known local field, a non-empty
    ``remote_property`` and a known ``direction``; an unknown ``transform``
    becomes ``none``; no two rows share a remote property.

    Args:
        rows: Parsed JSON/YAML mapping set

    Returns:
        Validated FieldMapping list, in input order

    Raises:
        MappingValidationError: On the first violated rule
    """
    if not isinstance(rows, list):
        raise MappingValidationError("Mappings must be a list.")

    mappings: list[FieldMapping] = []
    seen: set[str] = set()
    for index, row in enumerate(rows):
        if not isinstance(row, dict):
            raise MappingValidationError(f"Mapping {index} must be an object.")

        local_key = row.get("local_field_key")
        remote_property = row.get("remote_property")
        if not isinstance(local_key, str) or not local_key:
            raise MappingValidationError(f"Mapping {index} is missing local_field_key.")
        if local_key not in LOCAL_FIELD_KEYS:
            raise MappingValidationError(
                f"Mapping {index} has unknown local_field_key {local_key!r}."
            )
        if not isinstance(remote_property, str) or not remote_property:
            raise MappingValidationError(f"Mapping {index} is missing remote_property.")

        try:
            direction = Direction(row.get("direction"))
        except ValueError as e:
            raise MappingValidationError(
                f"Mapping {index} has invalid direction {row.get('direction')!r}."
            ) from e

        if remote_property in seen:
            raise MappingValidationError(
                f"Remote property {remote_property!r} is mapped more than once."
            )
        seen.add(remote_property)

        mappings.append(
            FieldMapping(
                local_field_key=local_key,
                remote_property=remote_property,
                direction=direction,
                transform=_parse_transform(row.get("transform")),
            )
        )

    logger.debug(f"Validated {len(mappings)} field mappings")
    return mappings


def mappings_from_rows(rows: Iterable[dict[str, Any]]) -> list[FieldMapping]:
    """Convert stored rows to mappings, skipping rows that no longer parse."""
    mappings = []
    for row in rows:
        try:
            mappings.append(FieldMapping.from_row(row))
        except (KeyError, ValueError) as e:
            logger.warning(f"Skipping unreadable stored mapping {row!r}: {e}")
    return mappings
