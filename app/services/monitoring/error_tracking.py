"""
Sentry Error Tracking
Provides error tracking with sweep context for production debugging
"""

import logging
from typing import Optional

import sentry_sdk
from sentry_sdk.integrations.fastapi import FastApiIntegration

logger = logging.getLogger(__name__)


def init_sentry() -> None:
    """
    Initialize Sentry SDK with FastAPI integration.

    If SENTRY_DSN is not configured, logs warning and returns (disabled).
    """
    from app.config import settings

    if settings.sentry_dsn is None:
        logger.warning("Sentry DSN not configured - error tracking disabled")
        return

    environment = settings.sentry_environment or settings.environment
    try:
        sentry_sdk.init(
            dsn=settings.sentry_dsn,
            environment=environment,
            traces_sample_rate=0.1,
            integrations=[FastApiIntegration()],
        )
        logger.info("Sentry initialized", extra={"environment": environment})
    except Exception as e:
        logger.error(f"Failed to initialize Sentry: {e}")


def set_sweep_context(
    sweep_id: Optional[str],
    company_id: str,
    triggered_by: str,
    correlation_id: Optional[str] = None
) -> None:
    """
    Tag Sentry events with the sweep being executed.

    Args:
        sweep_id: Sweep record id (None before the record exists)
        company_id: Company that owns the sweep
        triggered_by: "manual" or "scheduled"
        correlation_id: Optional correlation ID for request tracking
    """
    sentry_sdk.set_context("sweep", {
        "sweep_id": sweep_id or "none",
        "company_id": company_id,
        "triggered_by": triggered_by,
        "correlation_id": correlation_id or "none",
    })
    sentry_sdk.set_tag("company_id", company_id)
    if sweep_id:
        sentry_sdk.set_tag("sweep_id", sweep_id)
    if correlation_id:
        sentry_sdk.set_tag("correlation_id", correlation_id)


def add_breadcrumb(
    category: str,
    message: str,
    level: str = "info",
    data: Optional[dict] = None
) -> None:
    """Add breadcrumb to Sentry for the processing trail."""
    sentry_sdk.add_breadcrumb(
        category=category,
        message=message,
        level=level,
        data=data or {}
    )


def capture_exception(error: BaseException) -> None:
    """Report a handled exception that ended a sweep."""
    sentry_sdk.capture_exception(error)
