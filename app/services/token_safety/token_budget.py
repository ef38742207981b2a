"""
Token Budget Tracker

Per-sweep accounting of LLM tokens, external API calls and estimated cost.
The tracker only counts: it never raises on overuse. Callers ask
check_budget() / calculate_batch_size() before spending and decide what to
do when the answer is no.
"""

from datetime import datetime, timezone
from typing import Callable, Optional

import structlog

from app.models.discovery import TokenUsage
from app.services.token_safety.policy import TokenSafetyConfig
from app.services.token_safety.pricing import estimate_cost

logger = structlog.get_logger(__name__)


class TokenBudgetExceeded(Exception):
    """Raised by callers that treat a budget overrun as fatal."""

    def __init__(
        self,
        requested: int,
        used: int,
        max_tokens: int,
        message: Optional[str] = None
    ):
        self.requested = requested
        self.used = used
        self.max_tokens = max_tokens
        self.remaining = max(0, max_tokens - used)

        if message is None:
            message = (
                f"Token budget exceeded: requested {requested} tokens, "
                f"but only {self.remaining} remaining (used {used}/{max_tokens})"
            )
        super().__init__(message)


class TokenBudgetTracker:
    """
    Usage accumulator bound to one sweep.

    Usage:
        tracker = TokenBudgetTracker(sweep_id, config)

        # Before an LLM call, check if it would fit
        if tracker.check_budget(estimated_tokens=2000):
            response = client.messages.create(...)
            tracker.add_usage(
                input_tokens=response.usage.input_tokens,
                output_tokens=response.usage.output_tokens,
                model=response.model
            )

        # Non-LLM API calls (collectors) only cost calls and money
        tracker.add_api_calls(1, cost_per_call=0.032)

        snapshot = tracker.get_usage()
    """

    def __init__(
        self,
        sweep_id: str,
        config: TokenSafetyConfig,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.sweep_id = sweep_id
        self.max_tokens = config.max_tokens_per_sweep
        self.max_api_calls = config.max_api_calls_per_sweep
        self._clock = clock or (lambda: datetime.now(timezone.utc))

        self.used_tokens = 0
        self.api_calls = 0
        self.cost_usd = 0.0
        self._input_tokens = 0
        self._output_tokens = 0

        self.logger = logger.bind(sweep_id=sweep_id)
        self.logger.debug(
            "token_budget_tracker_initialized",
            max_tokens=self.max_tokens,
            max_api_calls=self.max_api_calls
        )

    def check_budget(self, estimated_tokens: int) -> bool:
        """
        Check if one more call of the given size fits the per-sweep budget.

        Args:
            estimated_tokens: Estimated tokens for the call

        Returns:
            True if both the token and the API-call budget allow it
        """
        would_fit = not self.would_exceed(estimated_tokens)

        if not would_fit:
            self.logger.warning(
                "token_budget_check_failed",
                estimated=estimated_tokens,
                used=self.used_tokens,
                max_tokens=self.max_tokens,
                api_calls=self.api_calls,
                max_api_calls=self.max_api_calls
            )

        return would_fit

    def would_exceed(self, estimated_tokens: int) -> bool:
        """True if one more call of estimated_tokens would exceed either budget."""
        return (
            self.used_tokens + estimated_tokens > self.max_tokens
            or self.api_calls + 1 > self.max_api_calls
        )

    def add_usage(
        self,
        input_tokens: int,
        output_tokens: int,
        model: Optional[str] = None,
        api_calls: int = 1
    ) -> None:
        """
        Record token usage from an LLM response.

        Args:
            input_tokens: Prompt tokens reported by the provider
            output_tokens: Completion tokens reported by the provider
            model: Model name used for pricing
            api_calls: API calls this usage represents
        """
        if input_tokens < 0 or output_tokens < 0 or api_calls < 0:
            raise ValueError("Usage amounts must be non-negative")

        self._input_tokens += input_tokens
        self._output_tokens += output_tokens
        self.used_tokens = self._input_tokens + self._output_tokens
        self.api_calls += api_calls
        self.cost_usd = round(self.cost_usd + estimate_cost(input_tokens, output_tokens, model), 6)

        usage_percent = (self.used_tokens / self.max_tokens) * 100 if self.max_tokens else 100.0
        if usage_percent > 80:
            self.logger.warning(
                "token_budget_high_usage",
                used=self.used_tokens,
                max_tokens=self.max_tokens,
                percent=round(usage_percent, 1),
                api_calls=self.api_calls
            )
        else:
            self.logger.debug(
                "token_usage_recorded",
                input_tokens=input_tokens,
                output_tokens=output_tokens,
                total_used=self.used_tokens,
                percent=round(usage_percent, 1)
            )

    def add_api_calls(self, count: int, cost_per_call: float = 0.0) -> None:
        """Record external API calls that consume no LLM tokens."""
        if count < 0 or cost_per_call < 0:
            raise ValueError("API call count and cost must be non-negative")
        self.api_calls += count
        self.cost_usd = round(self.cost_usd + count * cost_per_call, 6)
        self.logger.debug("api_calls_recorded", count=count, total_calls=self.api_calls)

    def remaining(self) -> int:
        """Return tokens remaining in budget."""
        return max(0, self.max_tokens - self.used_tokens)

    def remaining_calls(self) -> int:
        """Return API calls remaining in budget."""
        return max(0, self.max_api_calls - self.api_calls)

    def calculate_batch_size(self, tokens_per_item: int, max_items: int) -> int:
        """How many items the remaining budget can process at tokens_per_item each."""
        items_by_calls = self.remaining_calls()
        if tokens_per_item <= 0:
            return max(0, min(items_by_calls, max_items))
        items_by_tokens = self.remaining() // tokens_per_item
        return max(0, min(items_by_tokens, items_by_calls, max_items))

    def get_usage(self) -> TokenUsage:
        """Snapshot of the usage accrued so far."""
        return TokenUsage(
            tokens_used=self.used_tokens,
            api_calls=self.api_calls,
            estimated_cost_usd=self.cost_usd,
            timestamp=self._clock()
        )

    @property
    def input_tokens(self) -> int:
        return self._input_tokens

    @property
    def output_tokens(self) -> int:
        return self._output_tokens

    def __repr__(self) -> str:
        return (
            f"TokenBudgetTracker(sweep={self.sweep_id}, used={self.used_tokens}, "
            f"max={self.max_tokens}, calls={self.api_calls}/{self.max_api_calls})"
        )
