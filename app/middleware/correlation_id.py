"""
Correlation ID Middleware
Request IDs for tracing a manual sweep from the HTTP call into logs and Sentry
"""

from asgi_correlation_id import CorrelationIdMiddleware
from asgi_correlation_id.context import correlation_id

__all__ = ["CorrelationIdMiddleware", "get_correlation_id"]


def get_correlation_id() -> str:
    """
    Correlation ID of the current request.

    The sweep router passes it to the orchestrator and into Dramatiq
    messages, where the request context no longer exists.

    Returns:
        str: The correlation ID or 'none' outside a request
    """
    return correlation_id.get() or 'none'
