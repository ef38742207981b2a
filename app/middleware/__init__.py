"""
Middleware Module
ASGI middleware for request tracing
"""

from app.middleware.correlation_id import CorrelationIdMiddleware, get_correlation_id

__all__ = ["CorrelationIdMiddleware", "get_correlation_id"]
