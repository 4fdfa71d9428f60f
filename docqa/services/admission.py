# =============================================================================
# Admission Controller — Priority Queue + Sliding Window + Circuit Breaker
# =============================================================================
#
# One AdmissionController guards one provider. Callers hand it an opaque
# async operation (a provider call) and await the result:
#
#   result = await controller.admit(call, "extract:policy_number", Priority.HIGH)
#
# ALGORITHM (single dispatch loop per controller):
# 1. Drop waiting operations older than max_queue_wait_ms (QueueTimeout)
# 2. Circuit open → fail the head operation fast (CircuitOpen), never call it
# 3. Trailing-60s request count / token budget exhausted → sleep until the
#    oldest counted event leaves the window (waking early for queue
#    deadlines), then re-check from step 1
# 4. Dispatch the head operation; retry transient failures with exponential
#    backoff + jitter; record the outcome on the circuit breaker
#
# DESIGN DECISION: Sliding window over fixed window. Fixed windows allow
# bursts at window boundaries (60 requests at 0:59 + 60 at 1:00). The
# sliding window bounds every 60-second span, including retry attempts.
#
# DESIGN DECISION: Strictly one dispatch at a time per controller.
# Window and circuit state are only touched by the dispatch loop, so no
# locks are needed. Concurrency across providers comes from running one
# controller per provider.
#
# DESIGN DECISION: Injectable clock, sleep and random source.
# Tests drive the controller with a fake clock, so rate-limit waits, queue
# timeouts and circuit cool-downs run instantly and deterministically.
# =============================================================================

from __future__ import annotations

import asyncio
import heapq
import itertools
import logging
import random
import time
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from docqa.config import AdmissionConfig
from docqa.models.responses import AdmissionStats
from docqa.services.exceptions import (
    CircuitOpen,
    QueueOverflow,
    QueueTimeout,
    is_transient_error,
    retry_after_seconds,
)

logger = logging.getLogger(__name__)

WINDOW_SECONDS = 60.0

# Added to computed waits so the oldest event is strictly outside the
# window when the loop re-checks.
_WINDOW_EPSILON = 0.001

Operation = Callable[[], Awaitable[Any]]


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


class Priority(StrEnum):
    """Queue priority. HIGH dispatches before NORMAL before LOW."""

    HIGH = "high"
    NORMAL = "normal"
    LOW = "low"

    @property
    def rank(self) -> int:
        return _PRIORITY_RANK[self]


_PRIORITY_RANK = {Priority.HIGH: 0, Priority.NORMAL: 1, Priority.LOW: 2}


@dataclass
class QueuedOperation:
    """An accepted operation waiting for dispatch."""

    id: int  # Monotonic sequence number; FIFO tie-break within a priority
    operation: Operation
    name: str
    priority: Priority
    enqueued_at: float
    expires_at: float
    estimated_tokens: int
    future: asyncio.Future


class RateWindow:
    """
    Trailing-window record of dispatches and token usage.

    Timestamps come from a monotonic clock, so both deques stay sorted and
    pruning only ever pops from the left.
    """

    def __init__(self, window_seconds: float = WINDOW_SECONDS) -> None:
        self._window = window_seconds
        self._requests: deque[float] = deque()
        # [timestamp, tokens] lists so usage can be corrected after the call
        self._tokens: deque[list] = deque()

    def prune(self, now: float) -> None:
        cutoff = now - self._window
        while self._requests and self._requests[0] <= cutoff:
            self._requests.popleft()
        while self._tokens and self._tokens[0][0] <= cutoff:
            self._tokens.popleft()

    def request_count(self, now: float) -> int:
        self.prune(now)
        return len(self._requests)

    def token_count(self, now: float) -> int:
        self.prune(now)
        return sum(tokens for _, tokens in self._tokens)

    def delay_until_available(
        self,
        now: float,
        requests_per_minute: int,
        token_budget: int | None,
        estimated_tokens: int,
    ) -> float:
        """
        Seconds to wait before one more dispatch fits the budget.

        Returns 0.0 when the dispatch may proceed now. An operation whose
        estimate alone exceeds the token budget is let through once the
        window is empty, otherwise it could never run.
        """
        self.prune(now)
        delays: list[float] = []

        if len(self._requests) >= requests_per_minute:
            delays.append(self._requests[0] + self._window - now)

        if token_budget is not None and self._tokens:
            used = sum(tokens for _, tokens in self._tokens)
            if used + estimated_tokens > token_budget:
                delays.append(self._tokens[0][0] + self._window - now)

        if not delays:
            return 0.0
        return max(max(delays), 0.0) + _WINDOW_EPSILON

    def record(self, now: float, tokens: int) -> list:
        """Count one dispatch; returns the token entry for later correction."""
        self._requests.append(now)
        entry = [now, tokens]
        self._tokens.append(entry)
        return entry

    @staticmethod
    def adjust(entry: list, actual_tokens: int) -> None:
        entry[1] = actual_tokens

    def reset(self) -> None:
        self._requests.clear()
        self._tokens.clear()


@dataclass
class CircuitState:
    """Breaker state. Open while now < open_until."""

    consecutive_failures: int = 0
    open_until: float = 0.0
    open_count: int = 0  # Openings since the last success; drives cool-down growth

    def is_open(self, now: float) -> bool:
        return now < self.open_until


@dataclass
class _Counters:
    submitted: int = 0
    succeeded: int = 0
    failed: int = 0
    retries: int = 0
    rejected_overflow: int = 0
    timed_out: int = 0
    rejected_circuit_open: int = 0
    circuit_openings: int = 0
    rate_limit_waits: int = 0
    average_response_ms: float = 0.0
    responses_recorded: int = 0
    wait_times_ms: deque = field(default_factory=lambda: deque(maxlen=100))

    def record_response(self, elapsed_ms: float) -> None:
        if self.responses_recorded == 0:
            self.average_response_ms = elapsed_ms
        else:
            self.average_response_ms = (
                0.8 * self.average_response_ms + 0.2 * elapsed_ms
            )
        self.responses_recorded += 1


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


class AdmissionController:
    """
    Rate-limited, circuit-broken priority queue for one provider.

    Args:
        name: Provider name used in logs and error messages.
        config: Limits; defaults to AdmissionConfig().
        clock: Monotonic clock in seconds (default time.monotonic).
        sleep: Async sleep (default asyncio.sleep).
        rng: Random source for backoff jitter.
    """

    def __init__(
        self,
        name: str,
        config: AdmissionConfig | None = None,
        *,
        clock: Callable[[], float] | None = None,
        sleep: Callable[[float], Awaitable[Any]] | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self.name = name
        self._config = config or AdmissionConfig()
        self._clock = clock or time.monotonic
        self._sleep = sleep or asyncio.sleep
        self._rng = rng or random.Random()

        self._queue: list[tuple[int, int, QueuedOperation]] = []
        self._ids = itertools.count(1)
        self._window = RateWindow()
        self.circuit = CircuitState()
        self._stats = _Counters()
        self._dispatcher: asyncio.Task | None = None
        self._in_flight: QueuedOperation | None = None

    @property
    def config(self) -> AdmissionConfig:
        return self._config

    @property
    def queue_depth(self) -> int:
        return len(self._queue)

    async def admit(
        self,
        operation: Operation,
        name: str,
        priority: Priority | str = Priority.NORMAL,
        estimated_tokens: int = 0,
    ) -> Any:
        """
        Queue an operation and wait for its result.

        Args:
            operation: Zero-argument callable returning an awaitable.
                Never inspected; invoked at most 1 + max_retries times.
            name: Label for logs.
            priority: "high", "normal" or "low".
            estimated_tokens: Expected token usage, checked against the
                per-minute token budget before dispatch.

        Returns:
            Whatever the operation returns.

        Raises:
            QueueOverflow: The queue is full; nothing was queued.
            QueueTimeout: The operation waited longer than max_queue_wait_ms.
            CircuitOpen: The circuit was open when the operation reached
                the head of the queue.
            Exception: The operation's own error once retries are exhausted
                (or immediately for non-transient errors).
        """
        priority = Priority(priority)

        if len(self._queue) >= self._config.max_queue_depth:
            self._stats.rejected_overflow += 1
            logger.warning(
                "[%s] Queue full (%d/%d), rejecting '%s'",
                self.name, len(self._queue), self._config.max_queue_depth, name,
            )
            raise QueueOverflow(
                f"{self.name}: queue full "
                f"({len(self._queue)}/{self._config.max_queue_depth}), "
                f"rejected '{name}'"
            )

        loop = asyncio.get_running_loop()
        now = self._clock()
        item = QueuedOperation(
            id=next(self._ids),
            operation=operation,
            name=name,
            priority=priority,
            enqueued_at=now,
            expires_at=now + self._config.max_queue_wait_ms / 1000,
            estimated_tokens=max(int(estimated_tokens), 0),
            future=loop.create_future(),
        )
        heapq.heappush(self._queue, (priority.rank, item.id, item))
        self._stats.submitted += 1

        logger.debug(
            "[%s] Queued '%s' (priority=%s, depth=%d)",
            self.name, name, priority.value, len(self._queue),
        )

        self._ensure_dispatcher()
        return await item.future

    def get_stats(self) -> AdmissionStats:
        """Snapshot of counters, queue and window state."""
        now = self._clock()
        by_priority = {p.value: 0 for p in Priority}
        for _, _, item in self._queue:
            by_priority[item.priority.value] += 1

        waits = self._stats.wait_times_ms
        return AdmissionStats(
            name=self.name,
            submitted=self._stats.submitted,
            succeeded=self._stats.succeeded,
            failed=self._stats.failed,
            retries=self._stats.retries,
            rejected_overflow=self._stats.rejected_overflow,
            timed_out=self._stats.timed_out,
            rejected_circuit_open=self._stats.rejected_circuit_open,
            circuit_openings=self._stats.circuit_openings,
            rate_limit_waits=self._stats.rate_limit_waits,
            average_response_ms=round(self._stats.average_response_ms, 2),
            average_queue_wait_ms=round(sum(waits) / len(waits), 2) if waits else 0.0,
            queue_depth=len(self._queue),
            queue_by_priority=by_priority,
            requests_in_window=self._window.request_count(now),
            tokens_in_window=self._window.token_count(now),
            circuit_open=self.circuit.is_open(now),
            consecutive_failures=self.circuit.consecutive_failures,
        )

    def reset(self) -> None:
        """
        Tear down all state: cancel the dispatch loop and every pending
        operation, then clear the window, circuit and counters.
        """
        if self._dispatcher is not None and not self._dispatcher.done():
            self._dispatcher.cancel()
        self._dispatcher = None

        pending = [item for _, _, item in self._queue]
        if self._in_flight is not None:
            pending.append(self._in_flight)
        for item in pending:
            if not item.future.done():
                item.future.cancel()

        self._queue = []
        self._in_flight = None
        self._window.reset()
        self.circuit = CircuitState()
        self._stats = _Counters()
        logger.info("[%s] Admission controller reset", self.name)

    def reset_circuit_breaker(self) -> None:
        """Force the circuit closed and forget past failures."""
        self.circuit = CircuitState()
        logger.info("[%s] Circuit breaker manually reset", self.name)

    def update_config(self, **changes: Any) -> AdmissionConfig:
        """Replace configuration fields; values are validated."""
        merged = {**self._config.model_dump(), **changes}
        self._config = AdmissionConfig.model_validate(merged)
        logger.info("[%s] Admission config updated: %s", self.name, sorted(changes))
        return self._config

    # -----------------------------------------------------------------------
    # Dispatch Loop
    # -----------------------------------------------------------------------

    def _ensure_dispatcher(self) -> None:
        if self._dispatcher is None or self._dispatcher.done():
            self._dispatcher = asyncio.get_running_loop().create_task(
                self._dispatch_loop(), name=f"admission-{self.name}",
            )

    async def _dispatch_loop(self) -> None:
        while self._queue:
            now = self._clock()
            self._expire_waiting(now)
            if not self._queue:
                break

            _, _, head = self._queue[0]

            if self.circuit.is_open(now):
                heapq.heappop(self._queue)
                self._reject_circuit_open(head, now)
                continue

            delay = self._window.delay_until_available(
                now,
                self._config.requests_per_minute,
                self._config.token_budget_per_minute,
                head.estimated_tokens,
            )
            if delay > 0:
                self._stats.rate_limit_waits += 1
                logger.info(
                    "[%s] Rate budget exhausted, waiting %.2fs (queue depth %d)",
                    self.name, delay, len(self._queue),
                )
                await self._sleep(self._capped_wait(now, delay))
                # Re-check: queued work may have expired or new
                # higher-priority work may have arrived
                continue

            heapq.heappop(self._queue)
            await self._execute(head)

    def _expire_waiting(self, now: float) -> None:
        """Fail operations past their deadline; drop ones whose caller left."""
        stale = [
            entry for entry in self._queue
            if entry[2].future.done() or now > entry[2].expires_at
        ]
        if not stale:
            return

        stale_ids = {entry[1] for entry in stale}
        self._queue = [entry for entry in self._queue if entry[1] not in stale_ids]
        heapq.heapify(self._queue)

        for _, _, item in stale:
            if item.future.done():
                continue
            waited = now - item.enqueued_at
            self._stats.timed_out += 1
            logger.warning(
                "[%s] '%s' expired after %.1fs in queue",
                self.name, item.name, waited,
            )
            item.future.set_exception(QueueTimeout(
                f"{self.name}: '{item.name}' waited {waited:.1f}s "
                f"(max {self._config.max_queue_wait_ms / 1000:.1f}s)"
            ))

    def _capped_wait(self, now: float, delay: float) -> float:
        """Shorten a wait so it ends just after the next queued deadline."""
        if not self._queue:
            return delay
        next_expiry = min(entry[2].expires_at for entry in self._queue)
        return min(delay, max(next_expiry - now, 0.0) + _WINDOW_EPSILON)

    async def _sleep_expiring(self, delay: float) -> None:
        """Sleep `delay` seconds, expiring queued operations as their deadlines pass."""
        remaining = delay
        while remaining > 0:
            step = self._capped_wait(self._clock(), remaining)
            await self._sleep(step)
            remaining -= step
            self._expire_waiting(self._clock())

    def _reject_circuit_open(self, item: QueuedOperation, now: float) -> None:
        self._stats.rejected_circuit_open += 1
        remaining = self.circuit.open_until - now
        if not item.future.done():
            item.future.set_exception(CircuitOpen(
                f"{self.name}: circuit open for another {remaining:.1f}s, "
                f"'{item.name}' not dispatched",
                retry_after=remaining,
            ))

    async def _wait_for_budget(self, estimated_tokens: int) -> None:
        while True:
            delay = self._window.delay_until_available(
                self._clock(),
                self._config.requests_per_minute,
                self._config.token_budget_per_minute,
                estimated_tokens,
            )
            if delay <= 0:
                return
            self._stats.rate_limit_waits += 1
            await self._sleep_expiring(delay)

    async def _execute(self, item: QueuedOperation) -> None:
        """Run one operation with bounded retries and settle its future."""
        self._in_flight = item
        started = self._clock()
        self._stats.wait_times_ms.append((started - item.enqueued_at) * 1000)
        attempt = 0

        try:
            while True:
                entry = self._window.record(self._clock(), item.estimated_tokens)
                try:
                    result = await item.operation()
                except asyncio.CancelledError:
                    if asyncio.current_task().cancelling():
                        raise
                    # The operation cancelled itself; the dispatch loop carries on
                    self._stats.failed += 1
                    logger.warning(
                        "[%s] '%s' was cancelled by its operation", self.name, item.name,
                    )
                    item.future.cancel()
                    return
                except Exception as exc:
                    if (
                        is_transient_error(exc)
                        and attempt < self._config.max_retries
                    ):
                        attempt += 1
                        self._stats.retries += 1
                        delay = self._backoff_delay(attempt, retry_after_seconds(exc))
                        logger.warning(
                            "[%s] '%s' failed transiently (%s), retry %d/%d in %.2fs",
                            self.name, item.name, exc, attempt,
                            self._config.max_retries, delay,
                        )
                        await self._sleep_expiring(delay)
                        await self._wait_for_budget(item.estimated_tokens)
                        continue

                    self._record_failure(item, exc, started)
                    if not item.future.done():
                        item.future.set_exception(exc)
                    return

                self._record_success(item, result, entry, started)
                if not item.future.done():
                    item.future.set_result(result)
                return
        finally:
            if not item.future.done():
                item.future.cancel()
            self._in_flight = None

    def _backoff_delay(self, attempt: int, retry_after: float | None) -> float:
        """base * multiplier^(attempt-1), capped, +/- jitter, >= Retry-After."""
        cfg = self._config
        delay = (cfg.retry_base_delay_ms / 1000) * (
            cfg.retry_backoff_multiplier ** (attempt - 1)
        )
        delay = min(delay, cfg.retry_max_delay_ms / 1000)
        jitter = delay * cfg.retry_jitter_ratio
        delay += self._rng.uniform(-jitter, jitter)
        if retry_after is not None:
            delay = max(delay, retry_after)
        return max(delay, 0.0)

    # -----------------------------------------------------------------------
    # Outcome Recording
    # -----------------------------------------------------------------------

    def _record_success(
        self,
        item: QueuedOperation,
        result: Any,
        entry: list,
        started: float,
    ) -> None:
        self._stats.succeeded += 1
        self._stats.record_response((self._clock() - started) * 1000)

        actual_tokens = getattr(result, "tokens", None)
        if isinstance(actual_tokens, int) and actual_tokens >= 0:
            self._window.adjust(entry, actual_tokens)

        if self.circuit.open_count:
            logger.info(
                "[%s] '%s' succeeded, closing circuit", self.name, item.name,
            )
        self.circuit = CircuitState()

    def _record_failure(
        self,
        item: QueuedOperation,
        exc: Exception,
        started: float,
    ) -> None:
        cfg = self._config
        now = self._clock()
        self._stats.failed += 1
        self._stats.record_response((now - started) * 1000)

        circuit = self.circuit
        circuit.consecutive_failures += 1
        logger.warning(
            "[%s] '%s' failed (%d consecutive): %s",
            self.name, item.name, circuit.consecutive_failures, exc,
        )

        if circuit.consecutive_failures >= cfg.failure_threshold:
            circuit.open_count += 1
            duration_ms = min(
                cfg.circuit_cooldown_ms
                * cfg.circuit_backoff_multiplier ** (circuit.open_count - 1),
                cfg.circuit_max_cooldown_ms,
            )
            circuit.open_until = now + duration_ms / 1000
            self._stats.circuit_openings += 1
            logger.error(
                "[%s] Circuit opened for %.1fs after %d consecutive failures",
                self.name, duration_ms / 1000, circuit.consecutive_failures,
            )
