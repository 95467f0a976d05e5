"""
Contact data models for the contact bridge.

Provides the two sides' contact representations with methods for:
- Converting to/from each CRM's API format
- Reading a local contact's value for a mappable field key
- Parsing last-modified timestamps for freshness comparison
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

# Local contact fields that can take part in a mapping
LOCAL_FIELD_KEYS = ("email", "first_name", "last_name", "phone")

# Remote properties always fetched for an inbound sync
REMOTE_BASE_PROPERTIES = ("email", "firstname", "lastname", "phone")

# Remote property used to find an existing contact, and required to create one
REMOTE_UNIQUE_PROPERTY = "email"

# Remote property carrying the last modification instant
REMOTE_LAST_MODIFIED_PROPERTY = "lastmodifieddate"


def _from_epoch_ms(value: float) -> Optional[datetime]:
    try:
        return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        # out of the platform range, or NaN
        return None


def parse_timestamp(value: Any) -> Optional[datetime]:
    """
    Parse a timestamp from an API payload.

    Accepts ISO 8601 strings (with ``Z`` or an offset), epoch milliseconds
    as int or numeric string, and datetimes. Naive values are taken as UTC.

    Returns:
        Timezone-aware datetime, or None if the value is missing or invalid
    """
    if value is None or value == "" or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        return _from_epoch_ms(value)
    if isinstance(value, str):
        text = value.strip()
        if text.isascii() and text.isdigit():
            return _from_epoch_ms(int(text))
        try:
            parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            return None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return None


def _clean(value: Any) -> Optional[str]:
    if isinstance(value, str) and value.strip():
        return value
    return None


@dataclass
class LocalContact:
    """
    Contact record of the local CRM.

    Attributes:
        id: Local CRM contact id (None before creation)
        email: Primary email address
        first_name: Given name
        last_name: Family name
        phone: Primary phone number
        updated_at: Last modification instant

    Usage:
        contact = LocalContact.from_api_response(payload)
        contact.field_value("email")
        api_data = contact.to_api_format()
    """

    id: Optional[str] = None
    email: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    phone: Optional[str] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_api_response(cls, data: dict[str, Any]) -> "LocalContact":
        """
        Create a LocalContact from a local CRM API response.

        Args:
            data: Contact JSON object, e.g.
                {'id': 'c-1', 'email': 'a@example.com', 'first_name': 'Ann',
                 'updated_at': '2024-01-02T03:04:05Z'}

        Returns:
            LocalContact instance
        """
        contact_id = data.get("id")
        return cls(
            id=str(contact_id) if contact_id is not None else None,
            email=_clean(data.get("email")),
            first_name=_clean(data.get("first_name")),
            last_name=_clean(data.get("last_name")),
            phone=_clean(data.get("phone")),
            updated_at=parse_timestamp(data.get("updated_at")),
        )

    @classmethod
    def from_fields(
        cls, fields: dict[str, str], contact_id: Optional[str] = None
    ) -> "LocalContact":
        """Build a contact from values keyed by local field key."""
        known = {key: value for key, value in fields.items() if key in LOCAL_FIELD_KEYS}
        return cls(id=contact_id, **known)

    def field_value(self, key: str) -> Optional[str]:
        """Return the non-empty value of a mappable field, or None."""
        if key not in LOCAL_FIELD_KEYS:
            return None
        return _clean(getattr(self, key))

    def comparable_fields(self) -> dict[str, str]:
        """All non-empty mappable field values keyed by local field key."""
        values = {key: self.field_value(key) for key in LOCAL_FIELD_KEYS}
        return {key: value for key, value in values.items() if value is not None}

    def to_api_format(self) -> dict[str, Any]:
        """Convert to the local CRM API write format (non-empty fields only)."""
        return self.comparable_fields()


@dataclass
class RemoteContact:
    """
    Contact object of the remote CRM.

    Attributes:
        id: Remote object id
        properties: Raw property values keyed by property name
    """

    id: str
    properties: dict[str, Optional[str]] = field(default_factory=dict)

    @classmethod
    def from_api_response(cls, data: dict[str, Any]) -> "RemoteContact":
        properties = data.get("properties") or {}
        return cls(id=str(data["id"]), properties=dict(properties))

    @property
    def email(self) -> Optional[str]:
        return _clean(self.properties.get(REMOTE_UNIQUE_PROPERTY))

    @property
    def last_modified(self) -> Optional[datetime]:
        return parse_timestamp(self.properties.get(REMOTE_LAST_MODIFIED_PROPERTY))

    def property_value(self, name: str) -> Optional[str]:
        value = self.properties.get(name)
        return value if isinstance(value, str) and value != "" else None
