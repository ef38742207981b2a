"""
Discovery Sweep Errors

Quota denials are not exceptions: they are LimitDecision results.
CircuitOpenError lives with the sweep circuit breaker.
"""

from typing import Optional

PROFILE_NOT_FOUND_MESSAGE = "Discovery profile not found. Please configure discovery settings first."
PROFILE_INCOMPLETE_MESSAGE = (
    "Please complete your discovery profile with business description and targeting criteria."
)


class ConfigurationError(Exception):
    """Profile missing or incomplete. Raised before any sweep record exists."""

    def __init__(self, company_id: str, missing_field: Optional[str] = None, message: Optional[str] = None):
        self.company_id = company_id
        self.missing_field = missing_field

        if message is None:
            message = PROFILE_NOT_FOUND_MESSAGE if missing_field is None else PROFILE_INCOMPLETE_MESSAGE
        super().__init__(message)


class ExecutionError(Exception):
    """Failure during collection, analysis or persistence of a running sweep."""

    def __init__(self, message: str, source: str = "orchestrator"):
        self.source = source
        super().__init__(message)


class CollectorError(ExecutionError):
    """A data collector failed to return results."""

    def __init__(self, collector: str, message: str, api_calls: int = 0, cost_usd: float = 0.0):
        self.collector = collector
        self.api_calls = api_calls
        self.cost_usd = cost_usd
        super().__init__(f"{collector}: {message}", source=collector)


class SweepTimeoutError(ExecutionError):
    """The sweep ran past its wall-clock deadline."""

    def __init__(self, timeout_seconds: float, phase: Optional[str] = None):
        self.timeout_seconds = timeout_seconds
        self.phase = phase

        message = f"Sweep exceeded its {timeout_seconds:g}s time limit"
        if phase:
            message += f" during {phase}"
        super().__init__(message, source="timeout")
