"""
Circuit breaker for the evaluation path.

CLOSED: calls go through; consecutive failures are counted.
OPEN: after ``failure_threshold`` consecutive failures, calls are refused
      for ``reset_timeout`` seconds without touching the engine.
HALF_OPEN: after the timeout one trial call is let through. Success closes
      the circuit, failure opens it again.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from enum import Enum

from .errors import CircuitOpenError

logger = logging.getLogger(__name__)


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    def __init__(
        self,
        failure_threshold: int = 5,
        reset_timeout: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if failure_threshold < 1:
            raise ValueError("failure_threshold must be >= 1")
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self._clock = clock
        self._lock = threading.Lock()
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._opened_at = 0.0
        self._trial_in_flight = False

    @property
    def state(self) -> CircuitState:
        with self._lock:
            if self._state is CircuitState.OPEN and self._clock() - self._opened_at >= self.reset_timeout:
                return CircuitState.HALF_OPEN
            return self._state

    def before_call(self) -> None:
        """Raise ``CircuitOpenError`` if the call must not reach the engine."""
        with self._lock:
            if self._state is CircuitState.CLOSED:
                return
            elapsed = self._clock() - self._opened_at
            if self._state is CircuitState.OPEN and elapsed >= self.reset_timeout:
                self._state = CircuitState.HALF_OPEN
                self._trial_in_flight = False
                logger.info("Circuit half-open; allowing a trial evaluation")
            if self._state is CircuitState.HALF_OPEN and not self._trial_in_flight:
                self._trial_in_flight = True
                return
            raise CircuitOpenError(max(0.0, self.reset_timeout - elapsed))

    def record_success(self) -> None:
        with self._lock:
            if self._state is not CircuitState.CLOSED:
                logger.info("Circuit closed after successful trial")
            self._state = CircuitState.CLOSED
            self._failures = 0
            self._trial_in_flight = False

    def record_failure(self) -> None:
        with self._lock:
            self._failures += 1
            if self._state is CircuitState.HALF_OPEN or self._failures >= self.failure_threshold:
                if self._state is not CircuitState.OPEN:
                    logger.warning("Circuit opened after %d consecutive failures", self._failures)
                self._state = CircuitState.OPEN
                self._opened_at = self._clock()
                self._trial_in_flight = False

    def reset(self) -> None:
        with self._lock:
            self._state = CircuitState.CLOSED
            self._failures = 0
            self._trial_in_flight = False
