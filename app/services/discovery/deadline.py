"""
Sweep Deadline

Wall-clock deadline passed through the execution phases. Each phase calls
check() at its boundaries and between external calls; an expired deadline
raises SweepTimeoutError so the orchestrator can force the sweep to failed.
"""

import time
from typing import Callable, Optional

from app.services.discovery.errors import SweepTimeoutError


class SweepDeadline:
    """
    Usage:
        deadline = SweepDeadline(settings.sweep_timeout_seconds)
        deadline.check("collect")
        timeout = deadline.bounded_timeout(15.0)  # HTTP timeout never outlives the sweep
    """

    def __init__(self, timeout_seconds: float, clock: Callable[[], float] = time.monotonic):
        if timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be positive")
        self.timeout_seconds = timeout_seconds
        self._clock = clock
        self._expires_at = clock() + timeout_seconds

    def remaining(self) -> float:
        return max(0.0, self._expires_at - self._clock())

    def expired(self) -> bool:
        return self._clock() >= self._expires_at

    def check(self, phase: Optional[str] = None) -> None:
        """
        Raises:
            SweepTimeoutError: If the deadline has passed
        """
        if self.expired():
            raise SweepTimeoutError(self.timeout_seconds, phase)

    def bounded_timeout(self, timeout: float) -> float:
        """Clamp a per-call timeout to what is left of the sweep, checking expiry first."""
        self.check()
        return min(timeout, self.remaining())
