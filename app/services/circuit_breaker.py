"""Circuit breaker — fail fast against a provider that keeps failing.

One breaker is owned by each outbound provider client. It moves through
three states:

    closed     — calls pass through; consecutive failures are counted
    open       — calls are rejected without touching the network until
                 reset_timeout has passed since the last failure
    half_open  — a limited number of trial calls probe the provider;
                 one success closes the circuit, one failure reopens it

Rejections (CircuitOpenError / TooManyRequestsError) are raised before the
wrapped operation runs and never count as failures.
"""

import logging
import threading
import time
from enum import Enum

from app.services.provider_errors import CircuitOpenError, TooManyRequestsError

logger = logging.getLogger(__name__)


class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    def __init__(self, name, max_failures=5, reset_timeout=60.0,
                 half_open_max_requests=1, clock=time.monotonic):
        if max_failures < 1:
            raise ValueError("max_failures must be at least 1")
        if reset_timeout <= 0:
            raise ValueError("reset_timeout must be positive")
        if half_open_max_requests < 1:
            raise ValueError("half_open_max_requests must be at least 1")
        self.name = name
        self.max_failures = max_failures
        self.reset_timeout = reset_timeout
        self.half_open_max_requests = half_open_max_requests
        self._clock = clock

        self._lock = threading.Lock()
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._last_failure_at = None
        self._half_open_requests = 0

    @property
    def state(self):
        with self._lock:
            return self._state

    @property
    def failures(self):
        with self._lock:
            return self._failures

    def execute(self, operation, *args, **kwargs):
        """Run operation(*args, **kwargs) under breaker protection.

        Raises CircuitOpenError / TooManyRequestsError without calling
        the operation when the circuit refuses the call. Any exception
        raised by the operation is recorded as a failure and re-raised.
        """
        self._before_call()
        try:
            result = operation(*args, **kwargs)
        except Exception:
            self._on_failure()
            raise
        self._on_success()
        return result

    def _before_call(self):
        with self._lock:
            if self._state is CircuitState.OPEN:
                elapsed = self._clock() - self._last_failure_at
                if elapsed < self.reset_timeout:
                    raise CircuitOpenError(self.name)
                # This call becomes the first trial.
                self._set_state(CircuitState.HALF_OPEN)
                self._half_open_requests = 1
                return

            if self._state is CircuitState.HALF_OPEN:
                if self._half_open_requests >= self.half_open_max_requests:
                    raise TooManyRequestsError(self.name)
                self._half_open_requests += 1

    def _on_failure(self):
        with self._lock:
            self._failures += 1
            self._last_failure_at = self._clock()

            if self._state is CircuitState.HALF_OPEN:
                self._half_open_requests = 0
                self._set_state(CircuitState.OPEN)
            elif (self._state is CircuitState.CLOSED
                  and self._failures >= self.max_failures):
                self._set_state(CircuitState.OPEN)

    def _on_success(self):
        with self._lock:
            if self._state is CircuitState.OPEN:
                # A straggling trial finished after another trial reopened us.
                return
            if self._state is CircuitState.HALF_OPEN:
                self._half_open_requests = 0
                self._set_state(CircuitState.CLOSED)
            self._failures = 0

    def _set_state(self, new_state):
        # caller holds the lock
        if new_state is self._state:
            return
        old_state = self._state
        self._state = new_state
        if new_state is CircuitState.OPEN:
            logger.warning(
                f"Circuit '{self.name}' {old_state.value} -> open "
                f"after {self._failures} failure(s)"
            )
        else:
            logger.info(f"Circuit '{self.name}' {old_state.value} -> {new_state.value}")

    def reset(self):
        """Force the breaker back to closed (operator action / tests)."""
        with self._lock:
            self._state = CircuitState.CLOSED
            self._failures = 0
            self._last_failure_at = None
            self._half_open_requests = 0

    def stats(self):
        with self._lock:
            return {
                "name": self.name,
                "state": self._state.value,
                "failures": self._failures,
            }

    def __repr__(self):
        return f"<CircuitBreaker {self.name} ({self._state.value})>"
