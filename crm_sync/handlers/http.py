"""
Framework-neutral request and response types.

Any web framework adapter builds a ``WebhookRequest`` from its native
request (keeping the raw body bytes untouched) and translates the returned
``HandlerResponse`` back.
"""

from dataclasses import dataclass, field
from typing import Any

from requests.structures import CaseInsensitiveDict


@dataclass
class WebhookRequest:
    """
    Inbound HTTP request.

    Attributes:
        method: HTTP method
        url: Full URL as seen by the application server
        headers: Request headers (case-insensitive)
        body: Raw, unparsed request body
    """

    method: str
    url: str
    headers: CaseInsensitiveDict = field(default_factory=CaseInsensitiveDict)
    body: bytes = b""

    def __post_init__(self) -> None:
        self.headers = CaseInsensitiveDict(self.headers or {})
        if isinstance(self.body, str):
            self.body = self.body.encode("utf-8")


@dataclass
class HandlerResponse:
    """HTTP status and JSON body to send back."""

    status: int
    body: dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300
