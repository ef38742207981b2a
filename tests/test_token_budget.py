"""
Tests for per-sweep token budget tracking and cost estimation.
"""

import pytest

from app.services.token_safety.policy import TokenSafetyConfig
from app.services.token_safety.pricing import (
    estimate_cost,
    estimate_prompt_tokens,
    estimate_tokens,
    get_pricing,
)
from app.services.token_safety.token_budget import TokenBudgetExceeded, TokenBudgetTracker


@pytest.fixture
def tracker():
    return TokenBudgetTracker("sweep-1", TokenSafetyConfig(max_tokens_per_sweep=10_000, max_api_calls_per_sweep=5))


class TestPricing:

    def test_known_model_pricing(self):
        assert get_pricing("claude-3-5-haiku-20241022") == {"input": 0.80, "output": 4.00}

    def test_unknown_model_falls_back_to_settings(self):
        pricing = get_pricing("some-future-model")
        assert set(pricing) == {"input", "output"}

    def test_cost_is_linear_in_tokens(self):
        single = estimate_cost(1_000_000, 0, "claude-3-5-haiku-20241022")
        double = estimate_cost(2_000_000, 0, "claude-3-5-haiku-20241022")
        assert single == pytest.approx(0.80)
        assert double == pytest.approx(2 * single)

    def test_cost_never_decreases(self):
        costs = [estimate_cost(n, n // 2) for n in range(0, 50_000, 5_000)]
        assert costs == sorted(costs)

    def test_token_estimates(self):
        assert estimate_tokens("") == 0
        assert estimate_tokens("abcd") == 1
        assert estimate_tokens("abcde") == 2
        # 100 + 10 tokens with 10% overhead
        assert estimate_prompt_tokens("a" * 400, "b" * 40) == 121


class TestTokenBudgetTracker:

    def test_starts_empty(self, tracker):
        usage = tracker.get_usage()
        assert usage.tokens_used == 0
        assert usage.api_calls == 0
        assert usage.estimated_cost_usd == 0.0
        assert tracker.remaining() == 10_000
        assert tracker.remaining_calls() == 5

    def test_add_usage_accumulates(self, tracker):
        tracker.add_usage(1_000, 500, model="claude-3-5-haiku-20241022")
        tracker.add_usage(2_000, 250, model="claude-3-5-haiku-20241022")

        assert tracker.used_tokens == 3_750
        assert tracker.input_tokens == 3_000
        assert tracker.output_tokens == 750
        assert tracker.api_calls == 2
        expected = estimate_cost(1_000, 500, "claude-3-5-haiku-20241022") + estimate_cost(
            2_000, 250, "claude-3-5-haiku-20241022"
        )
        assert tracker.cost_usd == pytest.approx(expected)

    def test_usage_never_decreases(self, tracker):
        previous = tracker.get_usage()
        for step in range(5):
            tracker.add_usage(100 * step, 10 * step)
            tracker.add_api_calls(1, cost_per_call=0.01)
            current = tracker.get_usage()
            assert current.tokens_used >= previous.tokens_used
            assert current.api_calls >= previous.api_calls
            assert current.estimated_cost_usd >= previous.estimated_cost_usd
            previous = current

    def test_overuse_is_recorded_not_raised(self, tracker):
        tracker.add_usage(20_000, 5_000)
        assert tracker.used_tokens == 25_000
        assert tracker.remaining() == 0

    def test_negative_usage_rejected(self, tracker):
        with pytest.raises(ValueError):
            tracker.add_usage(-1, 10)
        with pytest.raises(ValueError):
            tracker.add_api_calls(-1)

    def test_api_calls_cost_money_not_tokens(self, tracker):
        tracker.add_api_calls(3, cost_per_call=0.032)
        assert tracker.api_calls == 3
        assert tracker.used_tokens == 0
        assert tracker.cost_usd == pytest.approx(0.096)

    def test_check_budget_tokens(self, tracker):
        tracker.add_usage(8_000, 1_000)
        assert tracker.check_budget(1_000) is True
        assert tracker.check_budget(1_001) is False

    def test_check_budget_api_calls(self, tracker):
        tracker.add_api_calls(5)
        assert tracker.would_exceed(1) is True
        assert tracker.check_budget(1) is False

    def test_calculate_batch_size(self, tracker):
        assert tracker.calculate_batch_size(tokens_per_item=1_000, max_items=50) == 5  # call-bound
        tracker.add_usage(7_000, 0)
        assert tracker.calculate_batch_size(tokens_per_item=1_000, max_items=50) == 3  # token-bound
        assert tracker.calculate_batch_size(tokens_per_item=1_000, max_items=2) == 2

    def test_snapshot_is_immutable(self, tracker):
        usage = tracker.get_usage()
        with pytest.raises(Exception):
            usage.tokens_used = 5


class TestTokenBudgetExceeded:

    def test_message_and_attributes(self):
        error = TokenBudgetExceeded(requested=5_000, used=48_000, max_tokens=50_000)
        assert error.remaining == 2_000
        assert "requested 5000 tokens" in str(error)
        assert "only 2000 remaining" in str(error)
