"""
Adaptive Rate Limiter and Retry Gate for the Search Backend

One gate is shared by every concurrent search in the process. It combines
per-operation request windows, exponential backoff on runs of empty results,
random jitter, the circuit breaker and a bounded retry wrapper driven by the
error classifier.
"""

from __future__ import annotations

import asyncio
import math
import random
import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Deque, Dict, Optional, TypeVar

import structlog

from searchgate.config.config import OperationLimit, ReliabilityConfig
from searchgate.observability import gauge, increment
from searchgate.protocols import CircuitState, LimiterMetrics
from searchgate.recovery.classifier import classify_error
from searchgate.recovery.errors import CircuitOpenError, ClassifiedError, RateLimitExceededError
from searchgate.reliability.circuit_breaker import CircuitBreaker, LimiterState

logger = structlog.get_logger(__name__)

T = TypeVar("T")

SleepFunc = Callable[[float], Awaitable[Any]]

_CIRCUIT_GAUGE_VALUES = {
    CircuitState.CLOSED: 0,
    CircuitState.HALF_OPEN: 1,
    CircuitState.OPEN: 2,
}

# 2 ** 62 already exceeds any sane backoff ceiling
_MAX_BACKOFF_EXPONENT = 62


@dataclass
class RequestWindow:
    """
    Fixed counting window of one operation.

    Once ``max_requests + burst_allowance`` calls have gone out inside the
    window the operation is locked out for ``retry_after_ms``; a lockout that
    has run its course starts a fresh window.
    """

    limit: OperationLimit
    count: int = 0
    window_started_at: Optional[float] = None
    last_request_at: Optional[float] = None
    locked_until: Optional[float] = None

    def lockout_remaining_ms(self, now: float) -> float:
        if self.locked_until is None:
            return 0.0
        remaining = (self.locked_until - now) * 1000
        # Sleeps may wake a hair early; a sub-millisecond remainder counts as served.
        return remaining if remaining >= 1.0 else 0.0

    def roll(self, now: float) -> None:
        if self.locked_until is not None and self.lockout_remaining_ms(now) == 0:
            self.locked_until = None
            self.count = 0
            self.window_started_at = now
        elif self.window_started_at is None or (now - self.window_started_at) * 1000 >= self.limit.window_ms:
            self.count = 0
            self.window_started_at = now

    @property
    def exhausted(self) -> bool:
        return self.count >= self.limit.effective_limit

    def lock(self, now: float) -> None:
        self.locked_until = now + self.limit.retry_after_ms / 1000

    def reserve(self, now: float) -> float:
        """Count one call. Returns how long it must wait to keep ``delay_ms`` spacing."""
        spacing_ms = 0.0
        if self.count > 0 and self.last_request_at is not None:
            spacing_ms = max(0.0, self.limit.delay_ms - (now - self.last_request_at) * 1000)
        self.count += 1
        self.last_request_at = now + spacing_ms / 1000
        return spacing_ms

    def status(self, now: float) -> Dict[str, Any]:
        limited = self.lockout_remaining_ms(now) > 0
        if self.locked_until is not None and not limited:
            # lockout over: the next call starts a fresh window
            return {"remaining": self.limit.effective_limit, "reset_in_ms": 0, "limited": False}
        if self.window_started_at is None or (now - self.window_started_at) * 1000 >= self.limit.window_ms:
            return {"remaining": 0 if limited else self.limit.effective_limit, "reset_in_ms": 0, "limited": limited}
        window_end = self.window_started_at + self.limit.window_ms / 1000
        return {
            "remaining": 0 if limited else max(0, self.limit.effective_limit - self.count),
            "reset_in_ms": max(0, math.ceil((window_end - now) * 1000)),
            "limited": limited,
        }


class ReliabilityGate:
    """
    Shared request gate for a rate-limit-sensitive backend.

    Features:
    - Per-operation request quota with burst allowance, lockout and call spacing
    - Exponential backoff once consecutive empty results reach a threshold
    - Uniform jitter on top of the backoff delay
    - Circuit breaker with a single half-open trial call
    - Retry wrapper spacing attempts by ``retry_delay_ms * attempt``
    - Read-only metrics snapshot for external monitoring

    State transitions happen inside short critical sections that never span
    an ``await``; the backoff sleep suspends only the calling task.
    """

    def __init__(
        self,
        config: Optional[ReliabilityConfig] = None,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: SleepFunc = asyncio.sleep,
        rng: Optional[random.Random] = None,
    ):
        self.config = config or ReliabilityConfig()
        self._clock = clock
        self._sleep = sleep
        self._rng = rng or random.Random()

        self._lock = threading.Lock()
        self._state = LimiterState(current_backoff_ms=self.config.initial_backoff_ms)
        self._breaker = CircuitBreaker(
            self._state,
            failure_threshold=self.config.failure_threshold,
            reset_timeout_ms=self.config.circuit_reset_timeout_ms,
            clock=clock,
        )

        # Operational counters
        self._total_requests = 0
        self._empty_responses = 0
        self._backoff_activations = 0
        self._circuit_breaker_trips = 0
        self._retries_executed = 0
        self._response_times: Deque[float] = deque(maxlen=100)
        self._windows: Dict[str, RequestWindow] = {}

        logger.debug(
            "Reliability gate initialized",
            failure_threshold=self.config.failure_threshold,
            empty_result_threshold=self.config.empty_result_threshold,
        )

    # ------------------------------------------------------------------
    # Delay computation
    # ------------------------------------------------------------------

    @property
    def circuit_state(self) -> CircuitState:
        return self._state.circuit_state

    def _backoff_for(self, consecutive_empty: int) -> int:
        exponent = min(consecutive_empty, _MAX_BACKOFF_EXPONENT)
        return min(self.config.max_backoff_ms, self.config.initial_backoff_ms * (2**exponent))

    def jitter_ms(self) -> float:
        """Random jitter drawn from the configured range."""
        return self._rng.uniform(self.config.min_jitter_ms, self.config.max_jitter_ms)

    def backoff_delay_ms(self) -> float:
        """
        Delay the next admitted call would wait, jitter included.

        Zero until the run of consecutive empty results reaches the threshold.
        """
        with self._lock:
            return self._delay_locked()

    def _delay_locked(self) -> float:
        if self._state.consecutive_empty_results < self.config.empty_result_threshold:
            return 0.0
        return self._state.current_backoff_ms + self.jitter_ms()

    # ------------------------------------------------------------------
    # Gate
    # ------------------------------------------------------------------

    def _window_for(self, operation_name: str) -> Optional[RequestWindow]:
        window = self._windows.get(operation_name)
        if window is None:
            limit = self.config.operation_limits.get(operation_name)
            if limit is None:
                return None
            window = self._windows[operation_name] = RequestWindow(limit)
        return window

    async def check_and_wait(self, operation_name: str = "search") -> bool:
        """
        Gate one outbound call.

        A running lockout of the operation is waited out first. The call is
        then counted against the operation's window, spaced from the previous
        call and delayed by any empty-result backoff.

        Returns:
            False when the call must not be issued: the circuit is open or the
            operation just exhausted its window (see ``blocked_error``). True
            once every delay has been served.
        """
        with self._lock:
            window = self._window_for(operation_name)
            lockout_ms = window.lockout_remaining_ms(self._clock()) if window is not None else 0.0
        if lockout_ms > 0:
            logger.info("Waiting out request lockout", operation=operation_name, wait_ms=round(lockout_ms, 1))
            await self._sleep(lockout_ms / 1000.0)

        blocked_by: Optional[OperationLimit] = None
        allowed = False
        spacing_ms = delay_ms = 0.0
        with self._lock:
            now = self._clock()
            if window is not None:
                window.roll(now)
                if window.lockout_remaining_ms(now) > 0:
                    # Another caller locked the window while this one slept.
                    blocked_by = window.limit
                elif window.exhausted:
                    window.lock(now)
                    blocked_by = window.limit
            if blocked_by is None:
                allowed = self._breaker.admit()
                if allowed:
                    spacing_ms = window.reserve(now) if window is not None else 0.0
                    delay_ms = self._delay_locked()
                    if delay_ms > 0:
                        self._backoff_activations += 1
            state = self._state.circuit_state

        gauge("circuit_state", _CIRCUIT_GAUGE_VALUES[state])

        if blocked_by is not None:
            increment("rate_limited_total", labels={"operation": operation_name})
            logger.warning(
                "Request quota exhausted",
                operation=operation_name,
                max_requests=blocked_by.max_requests,
                burst_allowance=blocked_by.burst_allowance,
                locked_for_ms=blocked_by.retry_after_ms,
            )
            return False

        if not allowed:
            increment("circuit_blocked_total")
            logger.info(
                "Call blocked by open circuit",
                operation=operation_name,
                retry_in_ms=self.retry_after_ms(),
            )
            return False

        if spacing_ms > 0:
            logger.debug("Spacing request", operation=operation_name, delay_ms=round(spacing_ms, 1))
            await self._sleep(spacing_ms / 1000.0)

        if delay_ms > 0:
            increment("backoff_activations_total")
            logger.debug("Applying backoff delay", operation=operation_name, delay_ms=round(delay_ms, 1))
            await self._sleep(delay_ms / 1000.0)

        return True

    def retry_after_ms(self) -> int:
        with self._lock:
            return self._breaker.remaining_block_ms()

    def circuit_open_error(self, operation_name: str = "search") -> CircuitOpenError:
        return CircuitOpenError(operation_name, retry_after_ms=self.retry_after_ms() or None)

    def blocked_error(self, operation_name: str = "search") -> ClassifiedError:
        """The error to raise after ``check_and_wait`` refused a call."""
        with self._lock:
            window = self._windows.get(operation_name)
            lockout_ms = window.lockout_remaining_ms(self._clock()) if window is not None else 0.0
        if lockout_ms > 0:
            return RateLimitExceededError(operation_name, retry_after_ms=math.ceil(lockout_ms))
        return self.circuit_open_error(operation_name)

    def rate_limit_status(self, operation_name: str) -> Optional[Dict[str, Any]]:
        """
        Window status of one operation, None when the operation is unmetered.

        ``remaining`` counts burst headroom too; ``reset_in_ms`` is the time
        left in the current window.
        """
        with self._lock:
            window = self._window_for(operation_name)
            if window is None:
                return None
            return window.status(self._clock())

    # ------------------------------------------------------------------
    # Outcome recording
    # ------------------------------------------------------------------

    def _observe_response_time(self, response_time_ms: Optional[float]) -> None:
        self._total_requests += 1
        if response_time_ms is not None:
            self._response_times.append(response_time_ms)

    def record_success(self, response_time_ms: Optional[float] = None) -> None:
        """A call returned a non-empty result."""
        with self._lock:
            self._observe_response_time(response_time_ms)
            self._state.consecutive_empty_results = 0
            self._state.current_backoff_ms = self.config.initial_backoff_ms
            self._breaker.on_success()
            state = self._state.circuit_state
        gauge("circuit_state", _CIRCUIT_GAUGE_VALUES[state])

    def record_empty_result(self, response_time_ms: Optional[float] = None) -> None:
        """A call succeeded but returned nothing. Not a failure."""
        with self._lock:
            self._observe_response_time(response_time_ms)
            self._empty_responses += 1
            self._state.consecutive_empty_results += 1
            self._state.current_backoff_ms = max(
                self._state.current_backoff_ms,
                self._backoff_for(self._state.consecutive_empty_results),
            )
            # The backend answered, so a half-open trial has proven it reachable.
            if self._state.circuit_state is CircuitState.HALF_OPEN:
                self._breaker.on_success()
            consecutive = self._state.consecutive_empty_results

        if consecutive >= self.config.empty_result_threshold:
            logger.debug("Empty result streak", consecutive_empty_results=consecutive)

    def record_token_rejection(self, response_time_ms: Optional[float] = None) -> None:
        """
        The backend answered but refused the continuation token.

        Not a failure: nothing is added to the failure count and the empty-result
        streak is left alone. A half-open trial closes the circuit, the backend
        having proved reachable.
        """
        with self._lock:
            self._observe_response_time(response_time_ms)
            if self._state.circuit_state is CircuitState.HALF_OPEN:
                self._breaker.on_success()
            state = self._state.circuit_state
        gauge("circuit_state", _CIRCUIT_GAUGE_VALUES[state])

    def record_failure(self, response_time_ms: Optional[float] = None) -> None:
        """A call failed."""
        with self._lock:
            self._observe_response_time(response_time_ms)
            tripped = self._breaker.on_failure()
            if tripped:
                self._circuit_breaker_trips += 1
            state = self._state.circuit_state

        gauge("circuit_state", _CIRCUIT_GAUGE_VALUES[state])
        if tripped:
            increment("circuit_breaker_trips_total")

    # ------------------------------------------------------------------
    # Retry wrapper
    # ------------------------------------------------------------------

    async def with_retry(
        self,
        operation: Callable[[], Awaitable[T]],
        max_retries: Optional[int] = None,
        retry_delay_ms: Optional[int] = None,
        *,
        should_retry: Optional[Callable[[ClassifiedError], bool]] = None,
        operation_name: str = "operation",
        debug: bool = False,
    ) -> T:
        """
        Run ``operation`` and retry classified retryable failures.

        Args:
            operation: Zero-argument coroutine factory, invoked once per attempt
            max_retries: Retries after the first attempt (config default if None)
            retry_delay_ms: Base delay; attempt ``n`` waits ``retry_delay_ms * n``
            should_retry: Optional veto over retrying a retryable error
            operation_name: Name used in logs and error details
            debug: Attach technical detail to classified errors

        Raises:
            ClassifiedError: the last failure, once retries are exhausted or
                the failure is not retryable
        """
        if max_retries is None:
            max_retries = self.config.max_retries
        if retry_delay_ms is None:
            retry_delay_ms = self.config.retry_delay_ms

        attempt = 0
        while True:
            attempt += 1
            try:
                return await operation()
            except Exception as exc:
                error = classify_error(exc, debug=debug, operation=operation_name)
                retry = error.retryable and (should_retry is None or should_retry(error))

                if not retry or attempt > max_retries:
                    logger.info(
                        "Operation failed",
                        operation=operation_name,
                        kind=error.kind.value,
                        attempts=attempt,
                        retryable=error.retryable,
                    )
                    if error is exc:
                        raise
                    raise error from exc

                with self._lock:
                    self._retries_executed += 1
                increment("retries_total")

                delay_ms = retry_delay_ms * attempt
                logger.info(
                    "Retrying operation",
                    operation=operation_name,
                    kind=error.kind.value,
                    attempt=attempt,
                    max_retries=max_retries,
                    delay_ms=delay_ms,
                )
                await self._sleep(delay_ms / 1000.0)

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def get_metrics(self) -> LimiterMetrics:
        """Snapshot of the gate state for monitoring."""
        with self._lock:
            average = sum(self._response_times) / len(self._response_times) if self._response_times else 0.0
            return LimiterMetrics(
                circuit_state=self._state.circuit_state,
                failure_count=self._state.failure_count,
                consecutive_empty_results=self._state.consecutive_empty_results,
                current_backoff_ms=self._state.current_backoff_ms,
                total_requests=self._total_requests,
                empty_responses=self._empty_responses,
                backoff_activations=self._backoff_activations,
                circuit_breaker_trips=self._circuit_breaker_trips,
                retries_executed=self._retries_executed,
                average_response_time_ms=round(average, 2),
            )

    def reset(self, operation_name: Optional[str] = None) -> None:
        """
        Reset all state and counters.

        With ``operation_name`` only that operation's request window is
        forgotten; the circuit and the counters are kept.
        """
        if operation_name is not None:
            with self._lock:
                self._windows.pop(operation_name, None)
            logger.info("Request window reset", operation=operation_name)
            return

        with self._lock:
            self._windows.clear()
            self._breaker.reset()
            self._state.consecutive_empty_results = 0
            self._state.current_backoff_ms = self.config.initial_backoff_ms
            self._total_requests = 0
            self._empty_responses = 0
            self._backoff_activations = 0
            self._circuit_breaker_trips = 0
            self._retries_executed = 0
            self._response_times.clear()
        gauge("circuit_state", _CIRCUIT_GAUGE_VALUES[CircuitState.CLOSED])
        logger.info("Reliability gate reset")

    def summary(self) -> str:
        """Human-readable one-line summary of the gate."""
        metrics = self.get_metrics()
        empty_rate = (
            metrics.empty_responses / metrics.total_requests * 100 if metrics.total_requests else 0.0
        )
        return " | ".join(
            [
                f"Circuit: {metrics.circuit_state.value.upper()}",
                f"Requests: {metrics.total_requests}",
                f"Empty: {metrics.empty_responses} ({empty_rate:.2f}%)",
                f"Consecutive Empty: {metrics.consecutive_empty_results}",
                f"Backoff Activations: {metrics.backoff_activations}",
                f"Circuit Trips: {metrics.circuit_breaker_trips}",
                f"Retries: {metrics.retries_executed}",
                f"Avg Response: {metrics.average_response_time_ms:.0f}ms",
            ]
        )
