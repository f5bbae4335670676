"""
Circuit Breaker Pattern Implementation for the Shared Search Gate

Stops calls to a failing search backend after repeated failures and lets a
single trial call through once the cool-down window has elapsed.
"""

from __future__ import annotations

import math
import time
from dataclasses import dataclass
from typing import Callable, Optional

import structlog

from searchgate.protocols import CircuitState

logger = structlog.get_logger(__name__)


@dataclass
class LimiterState:
    """Mutable state shared by every search using one gate."""

    consecutive_empty_results: int = 0
    current_backoff_ms: int = 0
    circuit_state: CircuitState = CircuitState.CLOSED
    failure_count: int = 0
    last_failure_at: Optional[float] = None
    last_transition_at: Optional[float] = None
    half_open_trial_started_at: Optional[float] = None


class CircuitBreaker:
    """
    Circuit transitions over a ``LimiterState``.

    Not synchronized on its own: the owning gate calls every method while
    holding its state lock.
    """

    def __init__(
        self,
        state: LimiterState,
        failure_threshold: int = 5,
        reset_timeout_ms: int = 60000,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.state = state
        self.failure_threshold = failure_threshold
        self.reset_timeout_ms = reset_timeout_ms
        self._clock = clock

    @property
    def _reset_timeout_s(self) -> float:
        return self.reset_timeout_ms / 1000.0

    def _transition(self, new_state: CircuitState, now: float) -> None:
        old_state = self.state.circuit_state
        self.state.circuit_state = new_state
        self.state.last_transition_at = now
        if new_state is not CircuitState.HALF_OPEN:
            self.state.half_open_trial_started_at = None
        logger.info("Circuit breaker transition", from_state=old_state.value, to_state=new_state.value)

    def admit(self) -> bool:
        """Decide whether one call may go out now."""
        now = self._clock()
        state = self.state

        if state.circuit_state is CircuitState.CLOSED:
            return True

        if state.circuit_state is CircuitState.OPEN:
            opened_at = state.last_transition_at or 0.0
            if now < opened_at + self._reset_timeout_s:
                return False
            self._transition(CircuitState.HALF_OPEN, now)
            state.half_open_trial_started_at = now
            return True

        # HALF_OPEN: one trial at a time. A trial never reported back is
        # considered lost after another reset timeout.
        started = state.half_open_trial_started_at
        if started is not None and now - started < self._reset_timeout_s:
            return False
        state.half_open_trial_started_at = now
        return True

    def on_success(self) -> None:
        self.state.failure_count = 0
        if self.state.circuit_state is CircuitState.HALF_OPEN:
            logger.info("Circuit breaker closing - trial call succeeded")
            self._transition(CircuitState.CLOSED, self._clock())

    def on_failure(self) -> bool:
        """Record a failure. Returns True when this failure opened the circuit."""
        now = self._clock()
        state = self.state
        state.failure_count += 1
        state.last_failure_at = now

        if state.circuit_state is CircuitState.HALF_OPEN:
            logger.warning("Circuit breaker reopening - trial call failed")
            self._transition(CircuitState.OPEN, now)
            return True

        if state.circuit_state is CircuitState.CLOSED and state.failure_count >= self.failure_threshold:
            logger.warning(
                "Circuit breaker opening",
                failure_count=state.failure_count,
                reset_timeout_ms=self.reset_timeout_ms,
            )
            self._transition(CircuitState.OPEN, now)
            return True

        return False

    def remaining_block_ms(self) -> int:
        """Milliseconds until the gate would admit a call again, 0 if it would now."""
        now = self._clock()
        state = self.state
        if state.circuit_state is CircuitState.OPEN:
            opened_at = state.last_transition_at or 0.0
            return max(0, math.ceil((opened_at + self._reset_timeout_s - now) * 1000))
        if state.circuit_state is CircuitState.HALF_OPEN and state.half_open_trial_started_at is not None:
            return max(0, math.ceil((state.half_open_trial_started_at + self._reset_timeout_s - now) * 1000))
        return 0

    def reset(self) -> None:
        self.state.circuit_state = CircuitState.CLOSED
        self.state.failure_count = 0
        self.state.last_failure_at = None
        self.state.last_transition_at = None
        self.state.half_open_trial_started_at = None
