"""In-process idempotency store.

Good for: unit tests, local development, single-process consumers.
Not durable: records are lost on restart, so a redelivery after a crash
is processed again.  Use the Redis or SQL store in production.
"""

from __future__ import annotations

import threading
from datetime import timedelta

from commerce_bus.core.clock import IClock, WallClock

from .base import IdempotencyRecord


class InMemoryIdempotencyStore:
    """Dict-backed store guarded by a lock."""

    def __init__(
        self,
        retention_seconds: float | None = 7 * 24 * 3600,
        clock: IClock | None = None,
    ) -> None:
        self._retention = (
            timedelta(seconds=retention_seconds) if retention_seconds else None
        )
        self._clock = clock or WallClock()
        self._records: dict[str, IdempotencyRecord] = {}
        self._lock = threading.Lock()

    async def try_mark_processed(self, message_id: str) -> bool:
        now = self._clock.now()
        with self._lock:
            existing = self._records.get(message_id)
            if existing is not None and not existing.is_expired(now):
                return False
            self._records[message_id] = IdempotencyRecord(
                message_id=message_id,
                processed_at=now,
                expires_at=now + self._retention if self._retention else None,
            )
            return True

    async def is_processed(self, message_id: str) -> bool:
        now = self._clock.now()
        with self._lock:
            record = self._records.get(message_id)
            return record is not None and not record.is_expired(now)

    async def release(self, message_id: str) -> None:
        with self._lock:
            self._records.pop(message_id, None)

    async def purge_expired(self) -> int:
        now = self._clock.now()
        with self._lock:
            expired = [k for k, r in self._records.items() if r.is_expired(now)]
            for key in expired:
                del self._records[key]
        return len(expired)

    async def close(self) -> None:
        pass

    # -- Testing helpers ---------------------------------------------------

    def get_record(self, message_id: str) -> IdempotencyRecord | None:
        with self._lock:
            return self._records.get(message_id)

    def __len__(self) -> int:
        return len(self._records)
