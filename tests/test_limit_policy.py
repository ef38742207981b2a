"""
Tests for sweep admission: the five limit checks and the cost alert.
"""

from datetime import timedelta
from unittest.mock import MagicMock

import pytest

from app.models.discovery import TokenUsage
from app.services.token_safety.policy import LimitPolicyEvaluator, TokenSafetyConfig
from app.services.token_safety.usage_ledger import DailyUsageLedger


@pytest.fixture
def ledger(store, clock):
    return DailyUsageLedger(store, clock=clock)


@pytest.fixture
def active():
    counter = MagicMock(return_value=0)
    return counter


@pytest.fixture
def alert():
    return MagicMock(return_value=True)


def make_evaluator(ledger, active, alert, **limits):
    return LimitPolicyEvaluator(ledger, active, TokenSafetyConfig(**limits), alert_sender=alert)


def record(ledger, company_id, tokens=0, cost=0.0, success=True):
    ledger.update_daily_usage(
        company_id,
        TokenUsage(tokens_used=tokens, api_calls=1, estimated_cost_usd=cost),
        success=success
    )


class TestLimitPolicyEvaluator:

    def test_allows_fresh_company(self, ledger, active, alert):
        decision = make_evaluator(ledger, active, alert).can_run_sweep("acme")
        assert decision.allowed is True
        assert decision.reason is None

    def test_daily_sweep_limit_counts_failed_sweeps(self, ledger, active, alert):
        for _ in range(3):
            record(ledger, "acme", success=False)

        decision = make_evaluator(ledger, active, alert).can_run_sweep("acme")
        assert decision.allowed is False
        assert decision.limit == "company_daily_sweeps"
        assert decision.reason == "Daily sweep limit reached (3/3). Try again tomorrow."

    def test_daily_sweep_limit_is_per_company(self, ledger, active, alert):
        for _ in range(3):
            record(ledger, "acme")
        assert make_evaluator(ledger, active, alert).can_run_sweep("globex").allowed is True

    def test_company_token_limit(self, ledger, active, alert):
        record(ledger, "acme", tokens=100_000)
        decision = make_evaluator(ledger, active, alert).can_run_sweep("acme")
        assert decision.allowed is False
        assert decision.limit == "company_daily_tokens"
        assert "Daily token limit reached" in decision.reason

    def test_hourly_platform_token_limit(self, ledger, active, alert):
        record(ledger, "globex", tokens=600)
        decision = make_evaluator(
            ledger, active, alert, max_tokens_per_hour=500
        ).can_run_sweep("acme")
        assert decision.allowed is False
        assert decision.limit == "platform_hourly_tokens"
        assert "high usage" in decision.reason

    def test_hourly_limit_resets_next_hour(self, ledger, active, alert, clock):
        record(ledger, "globex", tokens=600)
        clock.now = clock.now + timedelta(hours=1)
        decision = make_evaluator(ledger, active, alert, max_tokens_per_hour=500).can_run_sweep("acme")
        assert decision.allowed is True

    def test_concurrent_sweep_limit(self, ledger, active, alert):
        active.return_value = 5
        decision = make_evaluator(ledger, active, alert).can_run_sweep("acme")
        assert decision.allowed is False
        assert decision.limit == "concurrent_sweeps"

    def test_platform_daily_cost_limit(self, ledger, active, alert):
        record(ledger, "globex", cost=50.0)
        decision = make_evaluator(ledger, active, alert).can_run_sweep("acme")
        assert decision.allowed is False
        assert decision.limit == "platform_daily_cost"
        assert decision.reason == "Platform-wide daily cost limit reached. Please try again tomorrow."

    def test_checks_run_in_order(self, ledger, active, alert):
        for _ in range(3):
            record(ledger, "acme", tokens=100_000, cost=20.0)
        active.return_value = 10

        decision = make_evaluator(ledger, active, alert).can_run_sweep("acme")
        assert decision.limit == "company_daily_sweeps"
        active.assert_not_called()


class TestCostAlert:

    def test_alert_once_per_day_without_denying(self, ledger, active, alert):
        record(ledger, "globex", cost=30.0)
        evaluator = make_evaluator(ledger, active, alert)

        assert evaluator.can_run_sweep("acme").allowed is True
        assert evaluator.can_run_sweep("acme").allowed is True
        alert.assert_called_once()
        assert "threshold" in alert.call_args.kwargs["subject"]

    def test_no_alert_below_threshold(self, ledger, active, alert):
        record(ledger, "globex", cost=10.0)
        make_evaluator(ledger, active, alert).can_run_sweep("acme")
        alert.assert_not_called()


class TestTokenSafetyConfig:

    def test_defaults(self):
        config = TokenSafetyConfig()
        assert config.max_tokens_per_sweep == 50_000
        assert config.max_api_calls_per_sweep == 20
        assert config.max_leads_to_analyze == 50
        assert config.max_tokens_per_company_per_day == 100_000
        assert config.max_sweeps_per_company_per_day == 3
        assert config.max_tokens_per_hour == 500_000
        assert config.max_concurrent_sweeps == 5
        assert config.max_daily_cost_usd == 50.0
        assert config.alert_threshold_usd == 25.0

    def test_is_frozen(self):
        config = TokenSafetyConfig()
        with pytest.raises(Exception):
            config.max_sweeps_per_company_per_day = 10

    def test_rejects_non_positive_limits(self):
        with pytest.raises(Exception):
            TokenSafetyConfig(max_tokens_per_sweep=0)

    def test_from_settings(self):
        assert TokenSafetyConfig.from_settings().max_sweeps_per_company_per_day >= 1
