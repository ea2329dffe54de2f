"""Circuit breaker guarding a single upstream dependency.

States:
- CLOSED: calls pass through
- OPEN: calls fail fast with CircuitOpenError, the guarded function is not called
- HALF_OPEN: cooldown has elapsed; one probing call at a time is let through

The OPEN -> HALF_OPEN transition is derived when the state is read, from the
stored state, the last failure time and the clock. There is no timer.
"""

from __future__ import annotations

import logging
import time
from enum import Enum
from typing import Awaitable, Callable, TypeVar

from fuelintel.core.errors import CircuitOpenError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CircuitState(str, Enum):
    """Circuit breaker states."""

    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


class CircuitBreaker:
    """Per-dependency failure tracker and fast-fail gate.

    Example:
        >>> breaker = CircuitBreaker("government-api", failure_threshold=5)
        >>> estados = await breaker.execute(lambda: api.fetch_estados())
    """

    def __init__(
        self,
        name: str = "default",
        *,
        failure_threshold: int = 5,
        cooldown_period: float = 60.0,
        success_threshold: int = 3,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initialize circuit breaker.

        Args:
            name: Dependency name, used in logs and errors
            failure_threshold: Consecutive failures that open the circuit
            cooldown_period: Seconds an open circuit waits before probing
            success_threshold: Consecutive trial successes that close it again
            clock: Monotonic time source (injectable for tests)
        """
        self.name = name
        self.failure_threshold = failure_threshold
        self.cooldown_period = cooldown_period
        self.success_threshold = success_threshold
        self._clock = clock

        self._state = CircuitState.CLOSED
        self.consecutive_failures = 0
        self.consecutive_successes = 0
        self.last_failure_time: float | None = None
        self._trial_in_flight = False

    def effective_state(self) -> CircuitState:
        """Current state, with the cooldown applied at read time."""
        if self._state is CircuitState.OPEN and self._cooldown_elapsed():
            return CircuitState.HALF_OPEN
        return self._state

    def can_attempt(self) -> bool:
        """Whether a call would be let through right now. No side effects."""
        state = self.effective_state()
        if state is CircuitState.CLOSED:
            return True
        if state is CircuitState.HALF_OPEN:
            return not self._trial_in_flight
        return False

    async def execute(self, fn: Callable[[], Awaitable[T]]) -> T:
        """Call ``fn`` through the breaker.

        Raises:
            CircuitOpenError: If the circuit refuses the call (fn is not called)
            Exception: Whatever ``fn`` raises, after recording the failure
        """
        if not self.can_attempt():
            raise CircuitOpenError(self.name, self._retry_after())

        probing = self.effective_state() is CircuitState.HALF_OPEN
        if probing:
            if self._state is not CircuitState.HALF_OPEN:
                logger.info(f"Circuit breaker '{self.name}' entering HALF_OPEN state")
            self._state = CircuitState.HALF_OPEN
            self._trial_in_flight = True

        try:
            result = await fn()
        except Exception:
            self._on_failure()
            raise
        finally:
            if probing:
                self._trial_in_flight = False

        self._on_success()
        return result

    def _on_success(self) -> None:
        self.consecutive_failures = 0

        if self._state is CircuitState.HALF_OPEN:
            self.consecutive_successes += 1
            if self.consecutive_successes >= self.success_threshold:
                self._state = CircuitState.CLOSED
                self.consecutive_successes = 0
                logger.info(f"Circuit breaker '{self.name}' is now CLOSED")

    def _on_failure(self) -> None:
        self.consecutive_failures += 1
        self.consecutive_successes = 0
        self.last_failure_time = self._clock()

        if self._state is CircuitState.HALF_OPEN:
            self._state = CircuitState.OPEN
            logger.warning(f"Circuit breaker '{self.name}' trial call failed, re-opening")
        elif (
            self._state is CircuitState.CLOSED
            and self.consecutive_failures >= self.failure_threshold
        ):
            self._state = CircuitState.OPEN
            logger.error(
                f"Circuit breaker '{self.name}' is now OPEN after "
                f"{self.consecutive_failures} consecutive failures"
            )

    def _cooldown_elapsed(self) -> bool:
        if self.last_failure_time is None:
            return True
        return self._clock() - self.last_failure_time >= self.cooldown_period

    def _retry_after(self) -> float:
        if self.last_failure_time is None:
            return 0.0
        return self.cooldown_period - (self._clock() - self.last_failure_time)

    def get_stats(self) -> dict:
        """Snapshot for diagnostics and the monitoring endpoints."""
        return {
            "name": self.name,
            "state": self.effective_state().value,
            "consecutive_failures": self.consecutive_failures,
            "consecutive_successes": self.consecutive_successes,
            "last_failure_time": self.last_failure_time,
            "can_attempt": self.can_attempt(),
        }

    def reset(self) -> None:
        """Return to a pristine CLOSED breaker."""
        self._state = CircuitState.CLOSED
        self.consecutive_failures = 0
        self.consecutive_successes = 0
        self.last_failure_time = None
        self._trial_in_flight = False
        logger.info(f"Circuit breaker '{self.name}' has been reset")

    def force_open(self) -> None:
        """Open the circuit now; the cooldown starts from this moment."""
        self._state = CircuitState.OPEN
        self.last_failure_time = self._clock()
        logger.warning(f"Circuit breaker '{self.name}' forced to OPEN state")

    def force_closed(self) -> None:
        """Close the circuit and clear counters, keeping the failure timestamp."""
        self._state = CircuitState.CLOSED
        self.consecutive_failures = 0
        self.consecutive_successes = 0
        logger.info(f"Circuit breaker '{self.name}' forced to CLOSED state")
