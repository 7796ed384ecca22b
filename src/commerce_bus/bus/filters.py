"""Built-in pipeline filters.

Reference order (closest to the transport first)::

    IdempotencyFilter -> LoggingFilter -> handler dispatch

``LoggingFilter`` only sees deliveries that passed the idempotency
check, so a suppressed duplicate never produces a second
``message.processed`` entry.
"""

from __future__ import annotations

import asyncio
import logging
import time

from commerce_bus.core.errors import IdempotencyStoreError
from commerce_bus.idempotency.base import IIdempotencyStore
from commerce_bus.observability.logger import correlation_scope, get_logger

from .pipeline import MessageContext, Next

logger = logging.getLogger(__name__)


class IdempotencyFilter:
    """Suppresses messages this consumer has already processed.

    Parameters
    ----------
    store:
        Shared, concurrency-safe idempotency store.
    release_on_failure:
        When ``True`` (default) a failed handler releases its claim so the
        broker's redelivery retries it.  When ``False`` the claim is kept
        and the redelivery is acknowledged as a duplicate (at-most-once
        effective processing).

    The default differs from the strict "never roll back a claim" policy:
    with it, a failed attempt and its successful retry both see
    ``try_mark_processed`` return ``True``, and only the retry's claim is
    retained.  Pass ``release_on_failure=False`` (or set
    ``idempotency.release_on_failure = false``) for the strict policy.

    A delivery cancelled mid-handler (shutdown timeout) always releases
    its claim, whatever the policy: the handler never finished, and the
    broker redelivers the message.

    A store outage fails open: the message is handled and may be
    processed twice, but it is never lost.
    """

    def __init__(
        self,
        store: IIdempotencyStore,
        *,
        release_on_failure: bool = True,
    ) -> None:
        self._store = store
        self._release_on_failure = release_on_failure

    @property
    def store(self) -> IIdempotencyStore:
        return self._store

    async def __call__(self, ctx: MessageContext, next: Next) -> None:
        key = ctx.idempotency_key
        degraded = False

        try:
            claimed = await self._store.try_mark_processed(key)
        except IdempotencyStoreError:
            logger.warning(
                "Idempotency store unavailable, processing %s [%s] without dedup",
                ctx.event_type,
                ctx.message_id,
                exc_info=True,
            )
            claimed = True
            degraded = True

        if not claimed:
            ctx.duplicate = True
            logger.info(
                "Duplicate %s [%s] for %s suppressed (attempt %d)",
                ctx.event_type,
                ctx.message_id,
                ctx.consumer,
                ctx.attempt,
            )
            return

        ctx.items["idempotency_degraded"] = degraded
        try:
            await next(ctx)
        except asyncio.CancelledError:
            if not degraded:
                await self._release(key, ctx)
            raise
        except Exception:
            if self._release_on_failure and not degraded:
                await self._release(key, ctx)
            raise

    async def _release(self, key: str, ctx: MessageContext) -> None:
        try:
            await self._store.release(key)
        except IdempotencyStoreError:
            logger.error(
                "Could not release idempotency claim for %s [%s]; "
                "redelivery will be treated as a duplicate",
                ctx.event_type,
                ctx.message_id,
                exc_info=True,
            )


class LoggingFilter:
    """Records start, success and failure of every delivery.

    The rest of the pipeline runs inside the message's correlation scope,
    so events a handler publishes carry the incoming ``correlation-id``.
    Never swallows: failures are logged and re-raised so the transport
    can still nack.
    """

    def __init__(self, logger_name: str = "commerce_bus.consumer") -> None:
        self._log = get_logger(logger_name)

    async def __call__(self, ctx: MessageContext, next: Next) -> None:
        log = self._log.bind(
            message_id=ctx.message_id,
            event_type=ctx.event_type,
            consumer=ctx.consumer,
            attempt=ctx.attempt,
        )
        with correlation_scope(ctx.correlation_id or ctx.message_id):
            log.info("message.received")
            started = time.monotonic()
            try:
                await next(ctx)
            except Exception as exc:
                log.error(
                    "message.failed",
                    error=str(exc),
                    error_type=type(exc).__name__,
                    duration_ms=round((time.monotonic() - started) * 1000, 3),
                    exc_info=True,
                )
                raise
            log.info(
                "message.processed",
                duration_ms=round((time.monotonic() - started) * 1000, 3),
            )
