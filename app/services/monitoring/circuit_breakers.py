"""
Circuit Breaker Implementation for External Service Dependencies

Protects against cascading failures by opening circuits after consecutive failures
and automatically attempting recovery after a timeout period.

Services protected:
- MongoDB (document store)
- Google Places (business data collector)
- Claude API (lead analysis)

These guard individual collaborator calls. The platform-wide sweep breaker
that gates whole discovery sweeps lives in app.services.token_safety.
"""

import logging
from typing import Dict, Optional

import pybreaker
from pybreaker import CircuitBreakerError
from pymongo.errors import DuplicateKeyError

from app.config import settings
from app.services.alerts import send_admin_alert

logger = logging.getLogger(__name__)

# Service name -> breaker display name
SERVICES = {
    "mongodb": "mongodb",
    "google_places": "google_places_api",
    "claude": "claude_api",
}

# Exceptions that signal a caller-side condition, not an unhealthy service
_EXCLUDED = {
    "mongodb": [DuplicateKeyError],
}


class CircuitBreakerAlertListener(pybreaker.CircuitBreakerListener):
    """
    Alert listener for circuit breaker state changes.

    Logs every transition and sends an admin alert email when a circuit
    opens, indicating that an external service has been isolated.
    """

    def state_change(self, cb: pybreaker.CircuitBreaker, old_state: pybreaker.CircuitBreakerState, new_state: pybreaker.CircuitBreakerState):
        """
        Handle circuit breaker state changes.

        Args:
            cb: The circuit breaker instance
            old_state: Previous state
            new_state: New state
        """
        old_name = old_state.name if old_state else "none"
        logger.warning(
            f"Circuit breaker state change: {cb.name} transitioned from {old_name} to {new_state.name}",
            extra={
                "circuit_breaker": cb.name,
                "old_state": old_name,
                "new_state": new_state.name,
                "fail_count": cb.fail_counter
            }
        )

        if new_state.name == pybreaker.STATE_OPEN:
            send_admin_alert(
                subject=f"ALERT: Circuit Breaker Opened - {cb.name}",
                body=(
                    f"Service: {cb.name}\n"
                    f"Status: OPEN (service is now isolated)\n"
                    f"Failure Count: {cb.fail_counter}\n"
                    f"Reset Timeout: {cb.reset_timeout} seconds\n\n"
                    f"Calls to this service are blocked until the circuit attempts "
                    f"recovery after {cb.reset_timeout} seconds.\n\n"
                    f"Environment: {settings.environment}"
                ),
            )


_listener: Optional[CircuitBreakerAlertListener] = None
_breakers: Dict[str, pybreaker.CircuitBreaker] = {}


def get_breaker(service_name: str) -> pybreaker.CircuitBreaker:
    """
    Get circuit breaker for a specific service.

    Lazy initializes breakers on first access to avoid import-time side effects.

    Args:
        service_name: Service name ("mongodb", "google_places" or "claude")

    Returns:
        Circuit breaker instance for the service

    Raises:
        ValueError: If service_name is not recognized
    """
    global _listener

    if service_name not in SERVICES:
        raise ValueError(
            f"Unknown service name: {service_name}. Must be one of {', '.join(sorted(SERVICES))}"
        )

    if _listener is None:
        _listener = CircuitBreakerAlertListener()

    breaker = _breakers.get(service_name)
    if breaker is None:
        breaker = pybreaker.CircuitBreaker(
            name=SERVICES[service_name],
            fail_max=settings.circuit_breaker_fail_max,
            reset_timeout=settings.circuit_breaker_reset_timeout,
            exclude=_EXCLUDED.get(service_name, []),
            listeners=[_listener]
        )
        _breakers[service_name] = breaker
        logger.info(f"Initialized {SERVICES[service_name]} circuit breaker")
    return breaker


def get_mongodb_breaker() -> pybreaker.CircuitBreaker:
    return get_breaker("mongodb")


def get_google_places_breaker() -> pybreaker.CircuitBreaker:
    return get_breaker("google_places")


def get_claude_breaker() -> pybreaker.CircuitBreaker:
    return get_breaker("claude")


def reset_breakers() -> None:
    """Drop all breakers so the next access builds fresh ones (used by tests)."""
    _breakers.clear()


__all__ = [
    "CircuitBreakerAlertListener",
    "get_breaker",
    "get_mongodb_breaker",
    "get_google_places_breaker",
    "get_claude_breaker",
    "reset_breakers",
    "CircuitBreakerError",
]
