# =============================================================================
# Unit Tests — Admission Controller
# =============================================================================
#
# Drives the controller with a fake clock whose sleep() advances time
# instantly, so rate-limit waits, queue timeouts and circuit cool-downs
# run deterministically without real waiting.
# =============================================================================

from __future__ import annotations

import asyncio
import random
from unittest.mock import AsyncMock

import pytest
from pydantic import ValidationError

from docqa.config import AdmissionConfig
from docqa.services.admission import AdmissionController, Priority, RateWindow
from docqa.services.exceptions import (
    CircuitOpen,
    FatalProviderError,
    QueueOverflow,
    QueueTimeout,
    TransientProviderError,
)
from docqa.services.llm import ProviderResponse


def _run(coro):
    """Helper to run async functions in sync tests."""
    return asyncio.run(coro)


class FakeClock:
    """Monotonic clock whose sleep() advances time instead of waiting."""

    def __init__(self, start: float = 1_000.0) -> None:
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds
        await asyncio.sleep(0)


def _controller(clock: FakeClock, **overrides) -> AdmissionController:
    return AdmissionController(
        "test-provider",
        AdmissionConfig(**overrides),
        clock=clock,
        sleep=clock.sleep,
        rng=random.Random(7),
    )


def _recording(label: str, log: list, clock: FakeClock):
    """Operation that records (label, dispatch time) and returns label."""
    async def _call():
        log.append((label, clock.now))
        return label
    return _call


# ---------------------------------------------------------------------------
# Test: Basic Dispatch
# ---------------------------------------------------------------------------


class TestAdmit:
    """Tests for the admit() happy path and queue bounds."""

    def test_returns_operation_result(self):
        clock = FakeClock()
        controller = _controller(clock)
        operation = AsyncMock(return_value=42)

        result = _run(controller.admit(operation, "answer"))

        assert result == 42
        operation.assert_awaited_once()

    def test_priority_then_fifo(self):
        clock = FakeClock()
        controller = _controller(clock)
        log: list = []

        async def scenario():
            return await asyncio.gather(
                controller.admit(_recording("A", log, clock), "A", Priority.NORMAL),
                controller.admit(_recording("B", log, clock), "B", Priority.NORMAL),
                controller.admit(_recording("C", log, clock), "C", Priority.HIGH),
            )

        results = _run(scenario())

        assert results == ["A", "B", "C"]
        assert [label for label, _ in log] == ["C", "A", "B"]

    def test_accepts_priority_strings(self):
        clock = FakeClock()
        controller = _controller(clock)
        assert _run(controller.admit(AsyncMock(return_value="ok"), "x", "low")) == "ok"

    def test_queue_overflow_rejects_without_queueing(self):
        clock = FakeClock()
        controller = _controller(clock, max_queue_depth=1)
        second = AsyncMock(return_value="second")

        async def scenario():
            return await asyncio.gather(
                controller.admit(AsyncMock(return_value="first"), "first"),
                controller.admit(second, "second"),
                return_exceptions=True,
            )

        first_result, second_result = _run(scenario())

        assert first_result == "first"
        assert isinstance(second_result, QueueOverflow)
        second.assert_not_awaited()
        assert controller.get_stats().rejected_overflow == 1

    def test_queue_timeout_while_waiting_for_budget(self):
        clock = FakeClock()
        controller = _controller(clock, requests_per_minute=1, max_queue_wait_ms=1_000)
        late = AsyncMock(return_value="late")

        async def scenario():
            return await asyncio.gather(
                controller.admit(AsyncMock(return_value="early"), "early"),
                controller.admit(late, "late"),
                return_exceptions=True,
            )

        early_result, late_result = _run(scenario())

        assert early_result == "early"
        assert isinstance(late_result, QueueTimeout)
        late.assert_not_awaited()
        assert controller.get_stats().timed_out == 1

    def test_queue_timeout_fires_at_deadline_not_after_rate_wait(self):
        clock = FakeClock()
        controller = _controller(clock, requests_per_minute=1, max_queue_wait_ms=1_000)
        start = clock.now

        async def scenario():
            return await asyncio.gather(
                controller.admit(AsyncMock(return_value="a"), "a"),
                controller.admit(AsyncMock(return_value="b"), "b"),
                return_exceptions=True,
            )

        _, late_result = _run(scenario())

        assert isinstance(late_result, QueueTimeout)
        assert "max 1.0s" in str(late_result)
        assert clock.now - start == pytest.approx(1.0, abs=0.01)
        assert clock.sleeps == [pytest.approx(1.001)]

    def test_queue_timeout_fires_during_retry_backoff(self):
        clock = FakeClock()
        controller = _controller(
            clock, max_retries=1, max_queue_wait_ms=5_000, retry_jitter_ratio=0.0,
        )
        flaky = AsyncMock(side_effect=[
            TransientProviderError("slow down", status_code=429, retry_after=30.0),
            "ok",
        ])
        waiting = AsyncMock(return_value="waiting")

        async def scenario():
            return await asyncio.gather(
                controller.admit(flaky, "flaky"),
                controller.admit(waiting, "waiting"),
                return_exceptions=True,
            )

        flaky_result, waiting_result = _run(scenario())

        assert flaky_result == "ok"
        assert isinstance(waiting_result, QueueTimeout)
        assert "waited 5.0s" in str(waiting_result)
        waiting.assert_not_awaited()
        assert clock.sleeps[0] == pytest.approx(5.001)
        assert sum(clock.sleeps) == pytest.approx(30.0)


# ---------------------------------------------------------------------------
# Test: Sliding-Window Rate Limiting
# ---------------------------------------------------------------------------


class TestRateLimiting:
    """No trailing 60-second window may exceed the configured budget."""

    def test_requests_per_minute_never_exceeded(self):
        clock = FakeClock()
        controller = _controller(
            clock, requests_per_minute=2, max_queue_wait_ms=10_000_000,
        )
        log: list = []

        async def scenario():
            await asyncio.gather(*(
                controller.admit(_recording(str(i), log, clock), f"op-{i}")
                for i in range(5)
            ))

        _run(scenario())

        times = [t for _, t in log]
        assert len(times) == 5
        for t in times:
            in_window = [other for other in times if t <= other < t + 60.0]
            assert len(in_window) <= 2
        assert controller.get_stats().rate_limit_waits >= 2

    def test_token_budget_delays_next_dispatch(self):
        clock = FakeClock()
        controller = _controller(
            clock, token_budget_per_minute=100, max_queue_wait_ms=10_000_000,
        )
        log: list = []
        start = clock.now

        async def scenario():
            await asyncio.gather(
                controller.admit(_recording("a", log, clock), "a", estimated_tokens=80),
                controller.admit(_recording("b", log, clock), "b", estimated_tokens=80),
            )

        _run(scenario())

        assert log[0][1] == start
        assert log[1][1] >= start + 60.0

    def test_actual_usage_replaces_estimate(self):
        clock = FakeClock()
        controller = _controller(clock, token_budget_per_minute=100)
        response = ProviderResponse(text="ok", model="m", input_tokens=5, output_tokens=5)
        log: list = []

        async def cheap():
            log.append(clock.now)
            return response

        async def scenario():
            await asyncio.gather(
                controller.admit(cheap, "a", estimated_tokens=80),
                controller.admit(cheap, "b", estimated_tokens=80),
            )

        _run(scenario())

        # First call reported 10 tokens, so 10 + 80 fits the budget
        assert log[0] == log[1]
        assert controller.get_stats().tokens_in_window == 20


class TestRateWindow:
    """Tests for the trailing-window bookkeeping."""

    def test_empty_window_allows_dispatch(self):
        window = RateWindow()
        assert window.delay_until_available(0.0, 1, None, 0) == 0.0

    def test_full_window_waits_for_oldest_event(self):
        window = RateWindow()
        window.record(10.0, 0)
        window.record(20.0, 0)
        delay = window.delay_until_available(30.0, 2, None, 0)
        assert delay == pytest.approx(40.0, abs=0.01)

    def test_events_leave_window_after_sixty_seconds(self):
        window = RateWindow()
        window.record(0.0, 50)
        assert window.request_count(59.0) == 1
        assert window.request_count(60.0) == 0
        assert window.token_count(60.0) == 0

    def test_oversized_estimate_runs_on_empty_window(self):
        window = RateWindow()
        assert window.delay_until_available(0.0, 10, 100, 500) == 0.0


# ---------------------------------------------------------------------------
# Test: Retries
# ---------------------------------------------------------------------------


class TestRetries:
    """Transient errors are retried with backoff; fatal ones are not."""

    def test_transient_errors_retried(self):
        clock = FakeClock()
        controller = _controller(clock, max_retries=3)
        operation = AsyncMock(side_effect=[
            TransientProviderError("rate limited", status_code=429),
            TransientProviderError("overloaded", status_code=503),
            "ok",
        ])

        assert _run(controller.admit(operation, "flaky")) == "ok"
        assert operation.await_count == 3
        assert controller.get_stats().retries == 2
        # 1s then 2s base delays, +/-20% jitter
        assert 0.8 <= clock.sleeps[0] <= 1.2
        assert 1.6 <= clock.sleeps[1] <= 2.4

    def test_fatal_error_not_retried(self):
        clock = FakeClock()
        controller = _controller(clock, max_retries=3)
        operation = AsyncMock(side_effect=FatalProviderError("bad request", status_code=400))

        with pytest.raises(FatalProviderError):
            _run(controller.admit(operation, "broken"))
        assert operation.await_count == 1
        assert controller.get_stats().failed == 1

    def test_retries_exhausted_raises_last_error(self):
        clock = FakeClock()
        controller = _controller(clock, max_retries=2)
        operation = AsyncMock(side_effect=TimeoutError("timed out"))

        with pytest.raises(TimeoutError):
            _run(controller.admit(operation, "slow"))
        assert operation.await_count == 3

    def test_retry_after_respected(self):
        clock = FakeClock()
        controller = _controller(clock, max_retries=1)
        operation = AsyncMock(side_effect=[
            TransientProviderError("slow down", status_code=429, retry_after=30.0),
            "ok",
        ])

        assert _run(controller.admit(operation, "throttled")) == "ok"
        assert clock.sleeps[0] >= 30.0

    def test_backoff_is_capped(self):
        clock = FakeClock()
        controller = _controller(
            clock, retry_base_delay_ms=1_000, retry_max_delay_ms=5_000,
            retry_jitter_ratio=0.0,
        )
        assert controller._backoff_delay(10, None) == 5.0


# ---------------------------------------------------------------------------
# Test: Circuit Breaker
# ---------------------------------------------------------------------------


class TestCircuitBreaker:
    """Consecutive failures open the circuit; cool-down closes it."""

    def _fail_times(self, controller: AdmissionController, count: int) -> None:
        async def scenario():
            for i in range(count):
                with pytest.raises(FatalProviderError):
                    await controller.admit(
                        AsyncMock(side_effect=FatalProviderError("down")), f"fail-{i}",
                    )
        _run(scenario())

    def test_opens_after_threshold_and_skips_operation(self):
        clock = FakeClock()
        controller = _controller(
            clock, failure_threshold=3, max_retries=0, circuit_cooldown_ms=10_000,
        )
        self._fail_times(controller, 3)
        operation = AsyncMock(return_value="never")

        with pytest.raises(CircuitOpen) as excinfo:
            _run(controller.admit(operation, "blocked"))

        operation.assert_not_awaited()
        assert excinfo.value.retry_after == pytest.approx(10.0)
        stats = controller.get_stats()
        assert stats.circuit_open is True
        assert stats.circuit_openings == 1
        assert stats.rejected_circuit_open == 1

    def test_dispatches_again_after_cooldown(self):
        clock = FakeClock()
        controller = _controller(
            clock, failure_threshold=3, max_retries=0, circuit_cooldown_ms=10_000,
        )
        self._fail_times(controller, 3)
        clock.now += 10.001
        operation = AsyncMock(return_value="recovered")

        assert _run(controller.admit(operation, "after-cooldown")) == "recovered"
        operation.assert_awaited_once()
        assert controller.circuit.consecutive_failures == 0
        assert controller.get_stats().circuit_open is False

    def test_below_threshold_stays_closed(self):
        clock = FakeClock()
        controller = _controller(clock, failure_threshold=3, max_retries=0)
        self._fail_times(controller, 2)
        assert _run(controller.admit(AsyncMock(return_value="ok"), "ok")) == "ok"

    def test_cooldown_grows_and_is_capped(self):
        clock = FakeClock()
        controller = _controller(
            clock, failure_threshold=2, max_retries=0,
            circuit_cooldown_ms=10_000, circuit_max_cooldown_ms=15_000,
        )
        self._fail_times(controller, 2)
        assert controller.circuit.open_until - clock.now == pytest.approx(10.0)

        clock.now += 10.001
        self._fail_times(controller, 1)
        # 10s * 2 = 20s, capped at 15s
        assert controller.circuit.open_until - clock.now == pytest.approx(15.0)
        assert controller.get_stats().circuit_openings == 2

    def test_manual_reset_closes_circuit(self):
        clock = FakeClock()
        controller = _controller(clock, failure_threshold=1, max_retries=0)
        self._fail_times(controller, 1)
        controller.reset_circuit_breaker()
        assert _run(controller.admit(AsyncMock(return_value="ok"), "ok")) == "ok"


# ---------------------------------------------------------------------------
# Test: Stats, Reset, Config
# ---------------------------------------------------------------------------


class TestControllerState:
    """Tests for get_stats(), reset() and update_config()."""

    def test_stats_reflect_outcomes(self):
        clock = FakeClock()
        controller = _controller(clock, max_retries=0)

        async def scenario():
            await controller.admit(AsyncMock(return_value="ok"), "ok")
            with pytest.raises(FatalProviderError):
                await controller.admit(AsyncMock(side_effect=FatalProviderError("x")), "bad")

        _run(scenario())
        stats = controller.get_stats()

        assert stats.name == "test-provider"
        assert stats.submitted == 2
        assert stats.succeeded == 1
        assert stats.failed == 1
        assert stats.requests_in_window == 2
        assert stats.queue_depth == 0
        assert stats.queue_by_priority == {"high": 0, "normal": 0, "low": 0}

    def test_reset_cancels_pending_operations(self):
        clock = FakeClock()
        controller = _controller(clock)

        async def scenario():
            started = asyncio.Event()
            never = asyncio.Event()

            async def blocking():
                started.set()
                await never.wait()

            running = asyncio.create_task(controller.admit(blocking, "running"))
            waiting = asyncio.create_task(
                controller.admit(AsyncMock(return_value="x"), "waiting"),
            )
            await started.wait()
            assert controller.queue_depth == 1

            controller.reset()

            for task in (running, waiting):
                with pytest.raises(asyncio.CancelledError):
                    await task
            return controller.get_stats()

        stats = _run(scenario())
        assert stats.submitted == 0
        assert stats.queue_depth == 0

    def test_operation_cancelling_itself_does_not_stall_queue(self):
        clock = FakeClock()
        controller = _controller(clock)

        async def scenario():
            return await asyncio.gather(
                controller.admit(AsyncMock(side_effect=asyncio.CancelledError()), "gone"),
                controller.admit(AsyncMock(return_value="next"), "next"),
                return_exceptions=True,
            )

        gone_result, next_result = _run(scenario())

        assert isinstance(gone_result, asyncio.CancelledError)
        assert next_result == "next"
        stats = controller.get_stats()
        assert stats.failed == 1
        assert stats.succeeded == 1
        assert stats.consecutive_failures == 0

    def test_update_config_validates(self):
        controller = _controller(FakeClock())
        updated = controller.update_config(requests_per_minute=10)
        assert updated.requests_per_minute == 10
        assert controller.config.requests_per_minute == 10

        with pytest.raises(ValidationError):
            controller.update_config(requests_per_minute=0)
