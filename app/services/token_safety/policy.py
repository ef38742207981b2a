"""
Token Safety Policy

TokenSafetyConfig holds the hard limits for discovery sweeps.
LimitPolicyEvaluator combines them into a single allow/deny decision that
runs before any sweep work begins.
"""

from dataclasses import dataclass
from typing import Callable, Optional, Set

import structlog
from pydantic import BaseModel, ConfigDict, Field

from app.config import settings
from app.services.alerts import send_admin_alert

logger = structlog.get_logger(__name__)


class TokenSafetyConfig(BaseModel):
    """Immutable sweep limits. Built once at process start."""

    model_config = ConfigDict(frozen=True)

    # Per-sweep
    max_tokens_per_sweep: int = Field(default=50_000, gt=0)
    max_api_calls_per_sweep: int = Field(default=20, gt=0)
    max_leads_to_analyze: int = Field(default=50, gt=0)

    # Per-company, per-day
    max_tokens_per_company_per_day: int = Field(default=100_000, gt=0)
    max_sweeps_per_company_per_day: int = Field(default=3, gt=0)

    # Platform-wide
    max_tokens_per_hour: int = Field(default=500_000, gt=0)
    max_concurrent_sweeps: int = Field(default=5, gt=0)

    # Cost circuit breaker
    max_daily_cost_usd: float = Field(default=50.0, gt=0)
    alert_threshold_usd: float = Field(default=25.0, gt=0)

    @classmethod
    def from_settings(cls) -> "TokenSafetyConfig":
        return cls(
            max_tokens_per_sweep=settings.discovery_max_tokens_per_sweep,
            max_api_calls_per_sweep=settings.discovery_max_api_calls_per_sweep,
            max_leads_to_analyze=settings.discovery_max_leads_to_analyze,
            max_tokens_per_company_per_day=settings.discovery_max_tokens_per_company_per_day,
            max_sweeps_per_company_per_day=settings.discovery_max_sweeps_per_company_per_day,
            max_tokens_per_hour=settings.discovery_max_tokens_per_hour,
            max_concurrent_sweeps=settings.discovery_max_concurrent_sweeps,
            max_daily_cost_usd=settings.discovery_max_daily_cost_usd,
            alert_threshold_usd=settings.discovery_alert_threshold_usd,
        )


@dataclass
class LimitDecision:
    """Admission verdict with the limiting dimension when denied"""
    allowed: bool
    reason: Optional[str] = None  # Human-readable, shown to the user
    limit: Optional[str] = None  # e.g. "company_daily_sweeps"


class LimitPolicyEvaluator:
    """
    Single decision point for sweep admission.

    Checks run in order and stop at the first failure:
        1. company sweeps today < max_sweeps_per_company_per_day
        2. company tokens today < max_tokens_per_company_per_day
        3. platform tokens this hour < max_tokens_per_hour
        4. pending/running sweeps < max_concurrent_sweeps
        5. platform cost today < max_daily_cost_usd

    Usage:
        evaluator = LimitPolicyEvaluator(ledger, repository.count_active_sweeps, config)
        decision = evaluator.can_run_sweep(company_id)
        if not decision.allowed:
            return decision.reason
    """

    def __init__(
        self,
        ledger,
        active_sweep_counter: Callable[[], int],
        config: TokenSafetyConfig,
        alert_sender: Callable[..., bool] = send_admin_alert
    ):
        """
        Args:
            ledger: DailyUsageLedger
            active_sweep_counter: Returns the platform-wide count of pending/running sweeps
            config: Limits to enforce
            alert_sender: Called once per day when cost crosses alert_threshold_usd
        """
        self.ledger = ledger
        self.active_sweep_counter = active_sweep_counter
        self.config = config
        self.alert_sender = alert_sender
        self._alerted_dates: Set[str] = set()

    def can_run_sweep(self, company_id: str) -> LimitDecision:
        config = self.config
        daily = self.ledger.get_daily_usage()
        company = self.ledger.get_company_daily_usage(company_id, date=daily.date)
        log = logger.bind(company_id=company_id, date=daily.date)

        if company.sweeps >= config.max_sweeps_per_company_per_day:
            return self._deny(
                log,
                "company_daily_sweeps",
                f"Daily sweep limit reached ({company.sweeps}/{config.max_sweeps_per_company_per_day}). "
                f"Try again tomorrow."
            )

        if company.tokens >= config.max_tokens_per_company_per_day:
            return self._deny(
                log,
                "company_daily_tokens",
                f"Daily token limit reached for your company "
                f"({company.tokens}/{config.max_tokens_per_company_per_day} tokens). Try again tomorrow."
            )

        hourly = self.ledger.get_hourly_usage()
        if hourly.total_tokens >= config.max_tokens_per_hour:
            return self._deny(
                log,
                "platform_hourly_tokens",
                "Platform is experiencing high usage (hourly token limit reached). "
                "Please try again in a few minutes."
            )

        active = self.active_sweep_counter()
        if active >= config.max_concurrent_sweeps:
            return self._deny(
                log,
                "concurrent_sweeps",
                f"Too many discovery sweeps are running right now ({active}/{config.max_concurrent_sweeps}). "
                f"Please try again in a few minutes."
            )

        if daily.total_cost_usd >= config.max_daily_cost_usd:
            log.error(
                "platform_daily_cost_limit_reached",
                total_cost_usd=daily.total_cost_usd,
                max_daily_cost_usd=config.max_daily_cost_usd
            )
            return self._deny(
                log,
                "platform_daily_cost",
                "Platform-wide daily cost limit reached. Please try again tomorrow."
            )

        if daily.total_cost_usd >= config.alert_threshold_usd:
            self._cost_alert(daily.date, daily.total_cost_usd)

        return LimitDecision(allowed=True)

    def _deny(self, log, limit: str, reason: str) -> LimitDecision:
        log.warning("sweep_admission_denied", limit=limit, reason=reason)
        return LimitDecision(allowed=False, reason=reason, limit=limit)

    def _cost_alert(self, date: str, total_cost_usd: float) -> None:
        logger.warning(
            "platform_cost_alert_threshold",
            date=date,
            total_cost_usd=round(total_cost_usd, 4),
            alert_threshold_usd=self.config.alert_threshold_usd,
            max_daily_cost_usd=self.config.max_daily_cost_usd
        )
        if date in self._alerted_dates:
            return
        self._alerted_dates.add(date)
        self.alert_sender(
            subject="ALERT: Discovery daily cost threshold crossed",
            body=(
                f"Platform discovery spend for {date} is ${total_cost_usd:.2f}, "
                f"above the alert threshold of ${self.config.alert_threshold_usd:.2f}.\n"
                f"Sweeps will be blocked at ${self.config.max_daily_cost_usd:.2f}."
            )
        )
