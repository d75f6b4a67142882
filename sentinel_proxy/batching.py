"""Fire-and-forget usage tracking that batches increments before sending them to Zion."""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Any, Protocol

from .increments import (
    AggregatedUsage,
    BatchIncrementItem,
    BatchingConfig,
    CircuitState,
    UsageIncrement,
    aggregate,
)

logger = logging.getLogger(__name__)

REDIS_FAILED_INCREMENTS_KEY = "sentinel:usage:failed"
"""Redis list holding increments that could not be delivered."""

_CLOSE = object()


class ZionBatchClient(Protocol):
    """The part of the Zion client the batching tracker needs."""

    async def batch_increment(self, items: list[BatchIncrementItem]) -> Any: ...

    async def increment_usage(
        self,
        external_id: str,
        input_tokens: int,
        output_tokens: int,
        requests: int,
        model: str | None,
        timestamp: str | None,
    ) -> Any: ...


class AsyncListStore(Protocol):
    """The Redis list commands used for failed increments."""

    async def rpush(self, name: str, *values: Any) -> Any: ...

    async def llen(self, name: str) -> int: ...

    async def lpop(self, name: str, count: int | None = None) -> Any: ...


class RateLimiter:
    """Token-bucket limiter allowing a burst of `per_second` calls, refilled each second."""

    def __init__(self, per_second: int) -> None:
        if per_second < 1:
            raise ValueError("rate limit must be at least one call per second")
        self.per_second = per_second
        self._tokens = float(per_second)
        self._updated = time.monotonic()
        self._lock = asyncio.Lock()

    async def until_ready(self) -> None:
        """Wait until a call is allowed and take its slot."""
        async with self._lock:
            while True:
                now = time.monotonic()
                elapsed = now - self._updated
                self._updated = now
                self._tokens = min(
                    float(self.per_second), self._tokens + elapsed * self.per_second
                )
                if self._tokens >= 1.0:
                    self._tokens -= 1.0
                    return
                await asyncio.sleep((1.0 - self._tokens) / self.per_second)


class CircuitBreaker:
    """Opens after consecutive failures and lets one attempt through after a pause."""

    def __init__(self, threshold: int, reset_after: float) -> None:
        self.threshold = threshold
        self.reset_after = reset_after
        self.state = CircuitState.CLOSED
        self.consecutive_failures = 0
        self.opened_at: float | None = None

    def allow(self) -> bool:
        """True if a call may be attempted; moves an expired open circuit to half-open."""
        if self.state is CircuitState.OPEN and self.opened_at is not None:
            if time.monotonic() - self.opened_at >= self.reset_after:
                logger.debug("Circuit breaker transitioning to half-open")
                self.state = CircuitState.HALF_OPEN
            else:
                return False
        return True

    def record_success(self) -> None:
        """Reset the failure count and close a half-open circuit."""
        if self.state is CircuitState.HALF_OPEN:
            logger.debug("Circuit breaker closing after successful request")
            self.state = CircuitState.CLOSED
        self.consecutive_failures = 0
        self.opened_at = None

    def record_failure(self) -> bool:
        """Count a failure; returns True if the circuit is (re)opened by it."""
        self.consecutive_failures += 1
        if self.consecutive_failures >= self.threshold:
            self.state = CircuitState.OPEN
            self.opened_at = time.monotonic()
            return True
        return False


class FailedIncrementStore:
    """FIFO queue of undelivered increments kept in a Redis list."""

    def __init__(
        self, redis: AsyncListStore, key: str = REDIS_FAILED_INCREMENTS_KEY
    ) -> None:
        self.redis = redis
        self.key = key

    async def push(self, increment: UsageIncrement) -> None:
        """Append an increment to the end of the queue."""
        await self.redis.rpush(self.key, increment.to_json())
        logger.debug(
            "Persisted failed increment email=%s input_tokens=%d output_tokens=%d "
            "requests=%d",
            increment.email,
            increment.input_tokens,
            increment.output_tokens,
            increment.requests,
        )

    async def pending(self) -> int:
        """Number of increments waiting in the queue."""
        return int(await self.redis.llen(self.key))

    async def pop(self) -> UsageIncrement | None:
        """Take the oldest increment, or None if the queue is empty.

        Raises ValueError if the stored entry cannot be decoded; it is
        removed from the queue all the same.
        """
        raw = await self.redis.lpop(self.key)
        if raw is None:
            return None
        if isinstance(raw, (bytes, bytearray)):
            raw = bytes(raw).decode("utf-8")
        return UsageIncrement.from_json(raw)


def _now_timestamp() -> str:
    return (
        datetime.now(timezone.utc)
        .isoformat(timespec="milliseconds")
        .replace("+00:00", "Z")
    )


class BatchingUsageTracker:
    """Queues usage increments, aggregates them by (email, model) and sends them in batches.

    Without a Redis client, failed batches are only logged: there is no
    persistence, no retry and no circuit breaker.
    """

    def __init__(
        self,
        zion_client: ZionBatchClient,
        redis: AsyncListStore | None,
        config: BatchingConfig | None = None,
    ) -> None:
        self.zion_client = zion_client
        self.config = config if config is not None else BatchingConfig()
        self.store = FailedIncrementStore(redis) if redis is not None else None
        self.circuit_breaker = (
            CircuitBreaker(
                self.config.circuit_breaker_threshold,
                self.config.circuit_breaker_reset,
            )
            if redis is not None
            else None
        )
        self._rate_limiter = RateLimiter(self.config.rate_limit_per_second)
        self._queue: asyncio.Queue[Any] = asyncio.Queue(
            maxsize=self.config.channel_buffer
        )
        self._buffer: dict[tuple[str, str | None], AggregatedUsage] = {}
        self._task: asyncio.Task[None] | None = None
        self._closed = False

    @classmethod
    def for_testing(cls, zion_client: ZionBatchClient) -> BatchingUsageTracker:
        """A tracker without Redis that flushes quickly in small batches."""
        config = BatchingConfig(
            flush_interval=0.01, max_batch_size=10, channel_buffer=1000
        )
        return cls(zion_client, None, config)

    def start(self) -> asyncio.Task[None]:
        """Start the background worker in the running event loop."""
        if self._task is None:
            logger.info(
                "Starting batching usage tracker worker batch_size=%d "
                "flush_interval=%.3fs rate_limit=%d redis=%s",
                self.config.max_batch_size,
                self.config.flush_interval,
                self.config.rate_limit_per_second,
                self.store is not None,
            )
            self._task = asyncio.get_running_loop().create_task(self._run())
        return self._task

    async def __aenter__(self) -> BatchingUsageTracker:
        self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    def track(
        self,
        email: str,
        input_tokens: int,
        output_tokens: int,
        model: str | None = None,
    ) -> None:
        """Queue usage for one request; drops it with a log entry if the queue is full or closed."""
        if input_tokens < 0 or output_tokens < 0:
            raise ValueError("token counts must not be negative")
        if not email:
            logger.warning(
                "Attempted to track usage with empty email - this will fail "
                "input_tokens=%d output_tokens=%d",
                input_tokens,
                output_tokens,
            )
        increment = UsageIncrement(
            email=email,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            requests=1,
            model=model,
            timestamp=_now_timestamp(),
        )
        self._send(increment)

    def track_request_only(self, email: str, model: str | None = None) -> None:
        """Queue a request without token counts."""
        if not email:
            logger.warning("Attempted to track request with empty email - this will fail")
        self.track(email, 0, 0, model)

    def _send(self, increment: UsageIncrement) -> None:
        if self._closed:
            logger.error(
                "Usage tracking channel closed, dropping increment email=%s "
                "input_tokens=%d output_tokens=%d",
                increment.email,
                increment.input_tokens,
                increment.output_tokens,
            )
            return
        try:
            self._queue.put_nowait(increment)
        except asyncio.QueueFull:
            logger.warning(
                "Usage tracking channel full, dropping increment email=%s "
                "input_tokens=%d output_tokens=%d requests=%d",
                increment.email,
                increment.input_tokens,
                increment.output_tokens,
                increment.requests,
            )

    async def flush(self) -> None:
        """Aggregate everything queued so far and send it to Zion."""
        while True:
            try:
                item = self._queue.get_nowait()
            except asyncio.QueueEmpty:
                break
            if item is _CLOSE:
                self._queue.put_nowait(_CLOSE)
                break
            aggregate(self._buffer, item)
            if len(self._buffer) >= self.config.max_batch_size:
                await self._flush_buffer()
        if self._buffer:
            await self._flush_buffer()

    async def _flush_buffer(self) -> None:
        breaker = self.circuit_breaker
        if breaker is not None and not breaker.allow():
            dropped = len(self._buffer)
            self._buffer.clear()
            logger.warning(
                "Circuit breaker open, dropping usage increments dropped_count=%d",
                dropped,
            )
            return

        entries = [
            (key, usage) for key, usage in self._buffer.items() if not usage.is_empty()
        ]
        self._buffer.clear()
        if not entries:
            return

        logger.debug("Flushing usage increments to Zion user_count=%d", len(entries))
        await self._rate_limiter.until_ready()

        items = [
            BatchIncrementItem.from_usage(email, model, usage)
            for (email, model), usage in entries
        ]
        try:
            result = await self.zion_client.batch_increment(items)
        except Exception as exc:
            if breaker is None:
                logger.warning("Batch increment failed (no retry): %s", exc)
                return
            opened = breaker.record_failure()
            logger.warning(
                "Failed to batch increment usage user_count=%d consecutive_failures=%d: %s",
                len(entries),
                breaker.consecutive_failures,
                exc,
            )
            for (email, model), usage in entries:
                await self._persist(usage.to_increment(email, model))
            if opened:
                logger.error(
                    "Circuit breaker opening due to consecutive failures "
                    "threshold=%d reset_seconds=%.0f",
                    breaker.threshold,
                    breaker.reset_after,
                )
            return

        if breaker is None:
            logger.debug(
                "Batch increment completed processed=%s failed=%s",
                result.processed,
                result.failed,
            )
            return

        breaker.record_success()
        if result.failed > 0:
            logger.warning(
                "Batch increment completed with partial failures processed=%s failed=%s",
                result.processed,
                result.failed,
            )
            for item_result in result.results:
                if item_result.success:
                    continue
                match = next(
                    (
                        (key, usage)
                        for key, usage in entries
                        if key[0] == item_result.email
                    ),
                    None,
                )
                if match is not None:
                    (email, model), usage = match
                    await self._persist(usage.to_increment(email, model))
        else:
            logger.debug(
                "Batch flush completed successfully processed=%s", result.processed
            )

    async def _persist(self, increment: UsageIncrement) -> None:
        if self.store is None:
            return
        try:
            await self.store.push(increment)
        except Exception as exc:
            logger.error(
                "Failed to persist failed increment to Redis email=%s: %s",
                increment.email,
                exc,
            )

    async def retry_failed(self) -> tuple[int, int]:
        """Resend stored increments one by one; returns (succeeded, failed)."""
        store = self.store
        breaker = self.circuit_breaker
        if store is None or breaker is None:
            return 0, 0

        try:
            pending = await store.pending()
        except Exception as exc:
            logger.warning("Failed to get failed increments count from Redis: %s", exc)
            return 0, 0
        if pending == 0:
            return 0, 0

        batch_size = min(pending, self.config.max_retry_batch)
        logger.info(
            "Retrying failed usage increments total_pending=%d batch_size=%d",
            pending,
            batch_size,
        )

        succeeded = 0
        failed = 0
        for _ in range(batch_size):
            try:
                increment = await store.pop()
            except ValueError as exc:
                logger.error("Failed to deserialize increment: %s", exc)
                continue
            except Exception as exc:
                logger.warning("Failed to pop from Redis queue: %s", exc)
                break
            if increment is None:
                break

            await self._rate_limiter.until_ready()
            try:
                await self.zion_client.increment_usage(
                    increment.email,
                    increment.input_tokens,
                    increment.output_tokens,
                    increment.requests,
                    increment.model,
                    increment.timestamp,
                )
            except Exception as exc:
                failed += 1
                opened = breaker.record_failure()
                logger.warning(
                    "Retry failed, re-queuing email=%s: %s", increment.email, exc
                )
                await self._persist(increment)
                if opened:
                    logger.error(
                        "Circuit breaker opening during retry threshold=%d",
                        breaker.threshold,
                    )
                    break
            else:
                succeeded += 1
                breaker.record_success()

        if succeeded or failed:
            logger.info(
                "Retry batch completed success=%d failed=%d remaining=%d",
                succeeded,
                failed,
                max(pending - succeeded, 0),
            )
        return succeeded, failed

    async def close(self) -> None:
        """Stop accepting usage, send what is left and stop the worker."""
        if self._closed:
            return
        self._closed = True
        if self._task is None:
            await self.flush()
            return
        await self._queue.put(_CLOSE)
        await self._task
        logger.info("Batching usage tracker shut down")

    async def _run(self) -> None:
        loop = asyncio.get_running_loop()
        config = self.config
        last_flush = last_retry = loop.time()
        while True:
            now = loop.time()
            timeout = max(0.0, config.flush_interval - (now - last_flush))
            if self.store is not None:
                timeout = min(
                    timeout, max(0.0, config.retry_interval - (now - last_retry))
                )
            try:
                item = await asyncio.wait_for(self._queue.get(), timeout)
            except asyncio.TimeoutError:
                now = loop.time()
                if now - last_flush >= config.flush_interval:
                    if self._buffer:
                        await self._flush_buffer()
                    last_flush = loop.time()
                if (
                    self.store is not None
                    and now - last_retry >= config.retry_interval
                ):
                    breaker = self.circuit_breaker
                    if breaker is not None and breaker.state is CircuitState.CLOSED:
                        await self.retry_failed()
                    last_retry = loop.time()
                continue

            if item is _CLOSE:
                if self._buffer:
                    await self._flush_buffer()
                return
            aggregate(self._buffer, item)
            if len(self._buffer) >= config.max_batch_size:
                await self._flush_buffer()
                last_flush = loop.time()