"""Idempotency store protocol.

Design invariants
-----------------
1.  ``try_mark_processed()`` is a **single atomic check-and-set**: of any
    number of concurrent callers for one id, exactly one gets ``True``.
2.  ``is_processed()`` never mutates; it is a probe only.  The guarantee
    rests on ``try_mark_processed()`` alone.
3.  Records carry a retention window.  Once a record expires a
    redelivery of that id is treated as new.
4.  Backend failures raise ``IdempotencyStoreError``.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Protocol, runtime_checkable


@dataclass(frozen=True)
class IdempotencyRecord:
    """A message id observed as processed."""

    message_id: str
    processed_at: datetime
    expires_at: datetime | None = None

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at <= now


@runtime_checkable
class IIdempotencyStore(Protocol):
    """Tracks which message ids have already been processed."""

    async def try_mark_processed(self, message_id: str) -> bool:
        """Claim *message_id*.  ``True`` only for the first claimant."""
        ...

    async def is_processed(self, message_id: str) -> bool:
        """Non-mutating probe."""
        ...

    async def release(self, message_id: str) -> None:
        """Drop the claim on *message_id* (no-op if absent)."""
        ...

    async def purge_expired(self) -> int:
        """Evict expired records, returning how many were removed."""
        ...

    async def close(self) -> None: ...
