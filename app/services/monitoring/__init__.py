"""
Monitoring Module
Exports for structured logging, collaborator circuit breakers and error tracking
"""

from app.services.monitoring.logging import setup_logging, configure_structlog, CorrelationJsonFormatter
from app.services.monitoring.circuit_breakers import (
    get_claude_breaker,
    get_google_places_breaker,
    get_mongodb_breaker,
    reset_breakers,
    CircuitBreakerError,
)
from app.services.monitoring.error_tracking import init_sentry, set_sweep_context

__all__ = [
    "setup_logging",
    "configure_structlog",
    "CorrelationJsonFormatter",
    "get_claude_breaker",
    "get_google_places_breaker",
    "get_mongodb_breaker",
    "reset_breakers",
    "CircuitBreakerError",
    "init_sentry",
    "set_sweep_context",
]
