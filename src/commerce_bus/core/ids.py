"""Canonical ID and timestamp factories for the bus.

All modules import from here instead of defining local _uuid()/_now() copies.

ID Categories
-------------
1. Event IDs: UUID v4 objects, fixed when an event is constructed.
2. Message IDs: the string form of the event ID unless overridden.
3. Correlation IDs: UUID v4 strings linking messages of one business flow.

Timestamp Rule
--------------
All timestamps are ``datetime`` with ``tzinfo=timezone.utc``, never naive.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone


def new_event_id() -> uuid.UUID:
    """Generate a new UUID v4 for an integration event."""
    return uuid.uuid4()


def new_id() -> str:
    """Generate a new UUID v4 string.  Use for correlation and consumer IDs."""
    return str(uuid.uuid4())


def utc_now() -> datetime:
    """Return the current UTC time as a timezone-aware datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Interpret naive datetimes as UTC and convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
