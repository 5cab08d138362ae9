"""
QueueSync - Circuit Breaker Pattern

Prevents a degraded database from causing request pile-up across the
scheduler's many job invocations. Three states:
- CLOSED: Normal operation, operations pass through
- OPEN: Dependency is unhealthy, fail fast without calling
- HALF_OPEN: Allow a limited number of trial operations to test recovery

Usage:
    breaker = CircuitBreaker("replica", failure_threshold=8, recovery_timeout=20)

    try:
        rows = breaker.execute(lambda: replica.fetch_recent_users(cutoff), "fetch_recent_users")
    except CircuitOpenError as e:
        # Dependency is down, back off for e.retry_after seconds
        pass
"""

import logging
import time
from collections import deque
from dataclasses import dataclass
from enum import Enum
from threading import Lock
from typing import Callable, TypeVar

logger = logging.getLogger("queuesync.circuit")

T = TypeVar("T")

MONITORING_WINDOW_SECONDS = 60.0


class CircuitState(Enum):
    CLOSED = "closed"      # Normal operation
    OPEN = "open"          # Failing fast
    HALF_OPEN = "half_open"  # Testing recovery


class CircuitOpenError(Exception):
    """Raised when the circuit rejects an operation without running it."""

    def __init__(self, name: str, operation: str, retry_after: float):
        self.name = name
        self.operation = operation
        self.retry_after = max(0.0, retry_after)
        super().__init__(
            f"Circuit '{name}' is OPEN for {operation} (retry in {self.retry_after:.0f}s)"
        )


@dataclass
class CircuitStats:
    """Mutable state for a circuit breaker."""
    failures: int = 0
    successes: int = 0
    half_open_calls: int = 0
    last_failure_time: float = 0
    last_success_time: float = 0
    state: CircuitState = CircuitState.CLOSED
    open_until: float = 0


class CircuitBreaker:
    """
    Circuit breaker guarding one database dependency.

    Args:
        name: Identifier for this circuit (e.g., "replica")
        failure_threshold: Consecutive failures before opening the circuit
        recovery_timeout: Seconds to stay open before allowing trial calls
        half_open_max_calls: Trial calls allowed while half-open; that many
            successes close the circuit again
        clock: Monotonic time source (injectable for tests)
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        recovery_timeout: float = 30.0,
        half_open_max_calls: int = 3,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.half_open_max_calls = half_open_max_calls
        self._clock = clock

        self._lock = Lock()
        self._stats = CircuitStats()
        # (timestamp, success, duration) inside the monitoring window
        self._history: deque[tuple[float, bool, float]] = deque()

    @property
    def state(self) -> CircuitState:
        """Current circuit state."""
        with self._lock:
            return self._get_state_unlocked()

    @property
    def failure_count(self) -> int:
        with self._lock:
            return self._stats.failures

    def _get_state_unlocked(self) -> CircuitState:
        """Get state without acquiring lock (caller must hold lock)."""
        if self._stats.state == CircuitState.OPEN:
            if self._clock() >= self._stats.open_until:
                self._stats.state = CircuitState.HALF_OPEN
                self._stats.half_open_calls = 0
                self._stats.successes = 0
                logger.info(f"Circuit '{self.name}' transitioning to HALF_OPEN")
        return self._stats.state

    def _retry_after_unlocked(self) -> float:
        return max(0.0, self._stats.open_until - self._clock())

    def execute(self, operation: Callable[[], T], name: str = "operation") -> T:
        """
        Run an operation through the circuit breaker.

        Args:
            operation: Zero-argument callable performing the database work
            name: Operation name used in logs and errors

        Returns:
            Result of the operation

        Raises:
            CircuitOpenError: If the circuit is open (or half-open with no trial slots left)
            Exception: Any exception from the wrapped operation
        """
        with self._lock:
            state = self._get_state_unlocked()

            if state == CircuitState.OPEN:
                raise CircuitOpenError(self.name, name, self._retry_after_unlocked())

            if state == CircuitState.HALF_OPEN:
                if self._stats.half_open_calls >= self.half_open_max_calls:
                    raise CircuitOpenError(self.name, name, self._retry_after_unlocked())
                self._stats.half_open_calls += 1

        # Execute the call (outside lock to avoid blocking)
        started = self._clock()
        try:
            result = operation()
        except Exception as e:
            self._record_failure(name, e, self._clock() - started)
            raise

        self._record_success(self._clock() - started)
        return result

    def _record_success(self, duration: float) -> None:
        """Record a successful call."""
        with self._lock:
            now = self._clock()
            self._remember(now, True, duration)
            self._stats.successes += 1
            self._stats.last_success_time = now

            if self._stats.state == CircuitState.HALF_OPEN:
                if self._stats.successes >= self.half_open_max_calls:
                    self._close_circuit()
                    logger.info(f"Circuit '{self.name}' CLOSED (dependency recovered)")
            elif self._stats.state == CircuitState.CLOSED:
                self._stats.failures = 0

    def _record_failure(self, operation: str, error: Exception, duration: float) -> None:
        """Record a failed call."""
        with self._lock:
            now = self._clock()
            self._remember(now, False, duration)
            self._stats.failures += 1
            self._stats.last_failure_time = now

            if self._stats.state == CircuitState.HALF_OPEN:
                # Any failure in half-open reopens the circuit
                self._open_circuit()
                logger.warning(f"Circuit '{self.name}' reopened from HALF_OPEN ({operation}): {error}")

            elif self._stats.state == CircuitState.CLOSED:
                if self._stats.failures >= self.failure_threshold:
                    self._open_circuit()
                    logger.error(
                        f"Circuit '{self.name}' OPENED after {self._stats.failures} failures "
                        f"({operation}): {error}"
                    )

    def _remember(self, now: float, success: bool, duration: float) -> None:
        self._history.append((now, success, duration))
        while self._history and now - self._history[0][0] >= MONITORING_WINDOW_SECONDS:
            self._history.popleft()

    def _open_circuit(self) -> None:
        """Open the circuit (caller must hold lock)."""
        self._stats.state = CircuitState.OPEN
        self._stats.open_until = self._clock() + self.recovery_timeout
        self._stats.successes = 0
        self._stats.half_open_calls = 0

    def _close_circuit(self) -> None:
        """Close the circuit (caller must hold lock)."""
        self._stats.state = CircuitState.CLOSED
        self._stats.failures = 0
        self._stats.successes = 0
        self._stats.half_open_calls = 0

    def force_open(self) -> None:
        """Manually open the circuit (operator use)."""
        with self._lock:
            self._open_circuit()
            logger.warning(f"Circuit '{self.name}' manually forced OPEN")

    def reset(self) -> None:
        """Manually reset the circuit to closed state."""
        with self._lock:
            self._stats = CircuitStats()
            self._history.clear()
            logger.info(f"Circuit '{self.name}' manually reset")

    def get_stats(self) -> dict:
        """Get circuit statistics."""
        with self._lock:
            state = self._get_state_unlocked()
            now = self._clock()
            recent = [h for h in self._history if now - h[0] < MONITORING_WINDOW_SECONDS]
            ok = sum(1 for h in recent if h[1])
            return {
                "name": self.name,
                "state": state.value,
                "failures": self._stats.failures,
                "successes": self._stats.successes,
                "total_calls": len(recent),
                "success_rate": round(ok / len(recent) * 100, 2) if recent else 100.0,
                "avg_duration_ms": round(sum(h[2] for h in recent) / len(recent) * 1000) if recent else 0,
                "retry_after": self._retry_after_unlocked() if state == CircuitState.OPEN else None,
            }


# Global circuit breakers, one per database
_circuits: dict[str, CircuitBreaker] = {}


def get_circuit(
    name: str,
    failure_threshold: int = 5,
    recovery_timeout: float = 30.0,
    half_open_max_calls: int = 3,
) -> CircuitBreaker:
    """
    Get or create a named circuit breaker.

    Args:
        name: Circuit identifier
        failure_threshold: Failures before opening
        recovery_timeout: Seconds before testing recovery
        half_open_max_calls: Trial calls while half-open

    Returns:
        CircuitBreaker instance
    """
    if name not in _circuits:
        _circuits[name] = CircuitBreaker(
            name=name,
            failure_threshold=failure_threshold,
            recovery_timeout=recovery_timeout,
            half_open_max_calls=half_open_max_calls,
        )
    return _circuits[name]


def get_all_circuit_stats() -> list[dict]:
    """Get stats for all circuits."""
    return [circuit.get_stats() for circuit in _circuits.values()]


def get_database_circuits(settings) -> tuple[CircuitBreaker, CircuitBreaker]:
    """Return the (local_store, replica) breakers configured from settings."""
    local = get_circuit(
        "local_store",
        failure_threshold=settings.local_failure_threshold,
        recovery_timeout=settings.local_recovery_timeout,
        half_open_max_calls=settings.local_half_open_max_calls,
    )
    replica = get_circuit(
        "replica",
        failure_threshold=settings.replica_failure_threshold,
        recovery_timeout=settings.replica_recovery_timeout,
        half_open_max_calls=settings.replica_half_open_max_calls,
    )
    return local, replica
