"""
Text helpers for diagnostics that must never leak secrets.
"""

from __future__ import annotations

import re

DEFAULT_DETAILS_LIMIT = 500

_SECRET_PATTERNS = [
    (re.compile(r'"access_token"\s*:\s*"[^"]+"', re.IGNORECASE), '"access_token":"***"'),
    (
        re.compile(r'"refresh_token"\s*:\s*"[^"]+"', re.IGNORECASE),
        '"refresh_token":"***"',
    ),
    (re.compile(r'"code"\s*:\s*"[^"]+"', re.IGNORECASE), '"code":"***"'),
]


def compact(text: str, limit: int = DEFAULT_DETAILS_LIMIT) -> str:
    """Collapse whitespace and truncate to ``limit`` characters."""
    value = re.sub(r"\s+", " ", text or "").strip()
    if len(value) <= limit:
        return value
    return f"{value[:limit]}…"


def scrub_secrets(text: str) -> str:
    """Mask token-like JSON fields in upstream error text."""
    for pattern, replacement in _SECRET_PATTERNS:
        text = pattern.sub(replacement, text)
    return text


def safe_details(text: str, limit: int = DEFAULT_DETAILS_LIMIT) -> str:
    """Scrub then compact upstream response text for errors and logs."""
    return compact(scrub_secrets(text or ""), limit)
