"""Transport protocol and shared delivery bookkeeping.

A transport owns the broker connection and is the only component that
acknowledges, negatively acknowledges or dead-letters a message.  It
settles every delivery the same way:

* ``on_message`` returns         -> ack
* ``on_message`` raises DecodeError -> dead-letter (``decode_error``), ack
* any other exception            -> nack for redelivery, or dead-letter
  (``max_attempts_exceeded``) once ``max_delivery_attempts`` is reached

Nothing is acknowledged before ``on_message`` has completed.
"""

from __future__ import annotations

import logging
import time
from collections import defaultdict
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Protocol, runtime_checkable

from commerce_bus.bus.codec import Envelope
from commerce_bus.core.enums import DeadLetterReason

logger = logging.getLogger(__name__)

# Facade callback: (envelope, attempt) -> None; raising means failure.
MessageCallback = Callable[[Envelope, int], Awaitable[None]]

# Observability hook: (event_type, group, message_id, exc) -> None.
HandlerErrorCallback = Callable[[str, str, str, Exception], None]


@dataclass
class DeadLetter:
    """Record of a message removed from normal flow."""

    event_type: str
    group: str
    message_id: str
    reason: DeadLetterReason
    error: str
    attempts: int
    timestamp: float = field(default_factory=time.time)


@runtime_checkable
class ITransport(Protocol):
    """Publishes envelopes and runs consumer loops."""

    async def start(self) -> None: ...

    async def stop(self, timeout: float | None = None) -> None: ...

    async def publish(self, envelope: Envelope) -> None:
        """Hand *envelope* to the broker; returns once it is accepted."""
        ...

    async def subscribe(
        self,
        event_type: str,
        group: str,
        on_message: MessageCallback,
    ) -> None:
        """Open a consumer loop for *group* on *event_type*."""
        ...

    async def read_dead_letters(self, count: int = 100) -> list[DeadLetter]: ...

    @property
    def dead_letters(self) -> list[DeadLetter]: ...

    @property
    def messages_processed(self) -> int: ...

    def get_error_counts(self) -> dict[str, int]: ...


class TransportStats:
    """Counters and dead-letter log shared by the transport implementations."""

    def __init__(self, on_handler_error: HandlerErrorCallback | None = None) -> None:
        self._on_handler_error = on_handler_error
        self._error_counts: dict[str, int] = defaultdict(int)
        self._dead_letters: list[DeadLetter] = []
        self._messages_processed: int = 0

    def record_success(self) -> None:
        self._messages_processed += 1

    def record_failure(
        self,
        event_type: str,
        group: str,
        message_id: str,
        exc: Exception,
    ) -> None:
        self._error_counts[f"{event_type}/{group}"] += 1
        if self._on_handler_error is not None:
            try:
                self._on_handler_error(event_type, group, message_id, exc)
            except Exception:
                logger.warning("on_handler_error callback failed", exc_info=True)

    def record_dead_letter(self, dead_letter: DeadLetter) -> None:
        self._dead_letters.append(dead_letter)
        logger.error(
            "Dead-lettered %s [%s] for %s after %d attempt(s): %s (%s)",
            dead_letter.event_type,
            dead_letter.message_id,
            dead_letter.group,
            dead_letter.attempts,
            dead_letter.reason.value,
            dead_letter.error,
        )

    def count_loop_error(self, key: str) -> None:
        self._error_counts[key] += 1

    # ------------------------------------------------------------------
    # Observability
    # ------------------------------------------------------------------

    def get_error_counts(self) -> dict[str, int]:
        """Return per-event-type/group error counts."""
        return dict(self._error_counts)

    @property
    def dead_letters(self) -> list[DeadLetter]:
        """Read-only snapshot of the dead-letter list."""
        return list(self._dead_letters)

    @property
    def messages_processed(self) -> int:
        """Total messages successfully processed."""
        return self._messages_processed

    def clear_dead_letters(self) -> list[DeadLetter]:
        """Drain the dead-letter list and return all entries."""
        drained = self._dead_letters[:]
        self._dead_letters.clear()
        return drained
