"""
Sweep Circuit Breaker

Platform-wide guard that stops admitting discovery sweeps after a run of
consecutive sweep failures (e.g. a collector API is down).

Policy: consecutive failures. fail_max failures in a row open the circuit;
any success resets the count. Once cooldown_seconds have passed since the
circuit opened, the next check moves it to half_open and admits sweeps again.
In half_open a success closes the circuit and a failure re-opens it with a
fresh cooldown.

State lives behind a small backend interface: MemoryBreakerState for a single
process (and tests), RedisBreakerState when several API/worker instances must
share one breaker.
"""

import math
import threading
import time
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Optional

import structlog

from app.config import settings
from app.services.alerts import send_admin_alert

logger = structlog.get_logger(__name__)

CLOSED = "closed"
OPEN = "open"
HALF_OPEN = "half_open"


class CircuitOpenError(Exception):
    """Raised when sweeps are blocked by an open circuit."""

    def __init__(self, name: str, retry_after: Optional[float] = None, message: Optional[str] = None):
        self.name = name
        self.retry_after = retry_after

        if message is None:
            if retry_after is not None:
                message = f"Circuit breaker is open. Please wait {math.ceil(retry_after)} seconds."
            else:
                message = "Circuit breaker is open. Discovery sweeps are temporarily unavailable."
        super().__init__(message)


class BreakerState(ABC):
    """Storage for breaker state. Implementations must make failure counting atomic."""

    @abstractmethod
    def snapshot(self) -> Dict[str, Any]:
        """Return {"state": str, "failures": int, "opened_at": Optional[float]}."""

    @abstractmethod
    def increment_failures(self) -> int:
        """Atomically add one consecutive failure and return the new count."""

    @abstractmethod
    def open(self, opened_at: float) -> None:
        """Mark the circuit open as of opened_at (epoch seconds)."""

    @abstractmethod
    def set_half_open(self) -> None:
        """Mark the circuit half-open, keeping opened_at for reporting."""

    @abstractmethod
    def reset(self) -> None:
        """Close the circuit and clear the failure count."""


class MemoryBreakerState(BreakerState):
    """Per-process breaker state."""

    def __init__(self):
        self._lock = threading.Lock()
        self._state = CLOSED
        self._failures = 0
        self._opened_at: Optional[float] = None

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            return {"state": self._state, "failures": self._failures, "opened_at": self._opened_at}

    def increment_failures(self) -> int:
        with self._lock:
            self._failures += 1
            return self._failures

    def open(self, opened_at: float) -> None:
        with self._lock:
            self._state = OPEN
            self._opened_at = opened_at

    def set_half_open(self) -> None:
        with self._lock:
            self._state = HALF_OPEN

    def reset(self) -> None:
        with self._lock:
            self._state = CLOSED
            self._failures = 0
            self._opened_at = None


class RedisBreakerState(BreakerState):
    """
    Breaker state shared across instances through Redis.

    Keys: lead_discovery:sweep_circuit:{name}:{state|failures|opened_at}
    """

    KEY_PREFIX = "lead_discovery:sweep_circuit"

    def __init__(self, redis_client, name: str = "discovery_sweeps"):
        self.redis = redis_client
        self.name = name

    def _key(self, suffix: str) -> str:
        return f"{self.KEY_PREFIX}:{self.name}:{suffix}"

    @staticmethod
    def _decode(value):
        if isinstance(value, bytes):
            return value.decode("utf-8")
        return value

    def snapshot(self) -> Dict[str, Any]:
        state, failures, opened_at = self.redis.mget(
            self._key("state"), self._key("failures"), self._key("opened_at")
        )
        state = self._decode(state)
        failures = self._decode(failures)
        opened_at = self._decode(opened_at)
        return {
            "state": state or CLOSED,
            "failures": int(failures) if failures else 0,
            "opened_at": float(opened_at) if opened_at else None,
        }

    def increment_failures(self) -> int:
        return int(self.redis.incr(self._key("failures")))

    def open(self, opened_at: float) -> None:
        pipe = self.redis.pipeline()
        pipe.set(self._key("state"), OPEN)
        pipe.set(self._key("opened_at"), str(opened_at))
        pipe.execute()

    def set_half_open(self) -> None:
        self.redis.set(self._key("state"), HALF_OPEN)

    def reset(self) -> None:
        pipe = self.redis.pipeline()
        pipe.set(self._key("state"), CLOSED)
        pipe.set(self._key("failures"), 0)
        pipe.delete(self._key("opened_at"))
        pipe.execute()


class SweepCircuitBreaker:
    """
    Consecutive-failure circuit breaker for discovery sweeps.

    Usage:
        breaker = get_sweep_circuit_breaker()
        breaker.ensure_circuit_closed()   # raises CircuitOpenError when open
        ...
        breaker.record_success()          # or record_failure(error)
    """

    def __init__(
        self,
        state: Optional[BreakerState] = None,
        fail_max: Optional[int] = None,
        cooldown_seconds: Optional[float] = None,
        clock: Callable[[], float] = time.time,
        name: str = "discovery_sweeps"
    ):
        """
        Args:
            state: State backend. Defaults to MemoryBreakerState.
            fail_max: Consecutive failures that open the circuit.
                      Defaults to settings.sweep_circuit_fail_max (5).
            cooldown_seconds: Seconds an open circuit waits before half-open.
                              Defaults to settings.sweep_circuit_cooldown_seconds (300).
            clock: Epoch-seconds clock, injectable for tests.
            name: Breaker name used in logs and alerts.
        """
        self.state = state or MemoryBreakerState()
        self.fail_max = fail_max if fail_max is not None else settings.sweep_circuit_fail_max
        self.cooldown_seconds = (
            cooldown_seconds if cooldown_seconds is not None
            else settings.sweep_circuit_cooldown_seconds
        )
        self.clock = clock
        self.name = name

        if self.fail_max < 1:
            raise ValueError("fail_max must be at least 1")

    def current_state(self) -> str:
        """Current state, moving open -> half_open once the cooldown has elapsed."""
        snap = self.state.snapshot()
        if snap["state"] == OPEN:
            opened_at = snap["opened_at"] or 0.0
            if self.clock() - opened_at >= self.cooldown_seconds:
                self.state.set_half_open()
                logger.info("sweep_circuit_half_open", breaker=self.name, failures=snap["failures"])
                return HALF_OPEN
        return snap["state"]

    def ensure_circuit_closed(self) -> None:
        """
        Admission check run before any sweep resource is consumed.

        Raises:
            CircuitOpenError: If the circuit is open and still cooling down
        """
        if self.current_state() != OPEN:
            return

        snap = self.state.snapshot()
        retry_after = None
        if snap["opened_at"] is not None:
            retry_after = max(0.0, self.cooldown_seconds - (self.clock() - snap["opened_at"]))
        logger.warning("sweep_circuit_rejected", breaker=self.name, retry_after=retry_after)
        raise CircuitOpenError(self.name, retry_after=retry_after)

    def record_success(self) -> None:
        """Reset the failure count and close the circuit."""
        previous = self.state.snapshot()["state"]
        self.state.reset()
        if previous != CLOSED:
            logger.info("sweep_circuit_closed", breaker=self.name, previous_state=previous)

    def record_failure(self, error: Optional[str] = None) -> None:
        """
        Count one sweep failure, opening the circuit when the threshold is hit.

        Args:
            error: Failure message, included in the alert when the circuit opens
        """
        current = self.current_state()
        failures = self.state.increment_failures()

        if current == HALF_OPEN:
            self._trip(failures, error, reason="half_open_trial_failed")
        elif current == CLOSED and failures >= self.fail_max:
            self._trip(failures, error, reason="failure_threshold_reached")
        else:
            logger.info(
                "sweep_failure_recorded",
                breaker=self.name,
                failures=failures,
                fail_max=self.fail_max,
                state=current
            )

    def _trip(self, failures: int, error: Optional[str], reason: str) -> None:
        self.state.open(self.clock())
        logger.error(
            "sweep_circuit_opened",
            breaker=self.name,
            failures=failures,
            fail_max=self.fail_max,
            cooldown_seconds=self.cooldown_seconds,
            reason=reason,
            error=error
        )
        send_admin_alert(
            subject=f"ALERT: Discovery sweep circuit opened ({self.name})",
            body=(
                f"Discovery sweeps are blocked platform-wide after {failures} consecutive failures.\n\n"
                f"Reason: {reason}\n"
                f"Last error: {error or 'n/a'}\n"
                f"Cooldown: {self.cooldown_seconds} seconds before sweeps are retried.\n"
            )
        )

    def reset(self) -> None:
        """Manually close the circuit."""
        self.state.reset()
        logger.info("sweep_circuit_manually_reset", breaker=self.name)

    def get_status(self) -> Dict[str, Any]:
        """State snapshot for the usage report and the admin endpoint."""
        state = self.current_state()
        snap = self.state.snapshot()
        return {
            "name": self.name,
            "state": state,
            "failures": snap["failures"],
            "fail_max": self.fail_max,
            "cooldown_seconds": self.cooldown_seconds,
            "opened_at": snap["opened_at"],
        }

    def __repr__(self) -> str:
        return f"SweepCircuitBreaker(name={self.name}, fail_max={self.fail_max}, cooldown={self.cooldown_seconds}s)"


_sweep_breaker: Optional[SweepCircuitBreaker] = None


def get_sweep_circuit_breaker() -> SweepCircuitBreaker:
    """
    Process-wide sweep breaker.

    Backed by Redis when REDIS_URL is set so every instance sees the same
    state; otherwise each process keeps its own in-memory state.
    """
    global _sweep_breaker
    if _sweep_breaker is None:
        if settings.redis_url:
            import redis

            state: BreakerState = RedisBreakerState(redis.from_url(settings.redis_url))
            logger.info("sweep_circuit_configured", backend="redis")
        else:
            state = MemoryBreakerState()
            logger.info("sweep_circuit_configured", backend="memory")
        _sweep_breaker = SweepCircuitBreaker(state=state)
    return _sweep_breaker
