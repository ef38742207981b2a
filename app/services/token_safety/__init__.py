"""
Token Safety

Hard limits for discovery sweeps: per-sweep token budgets, the daily usage
ledger, the sweep circuit breaker and the admission policy that combines them.
"""

from app.services.token_safety.circuit_breaker import (
    CircuitOpenError,
    MemoryBreakerState,
    RedisBreakerState,
    SweepCircuitBreaker,
    get_sweep_circuit_breaker,
)
from app.services.token_safety.policy import LimitDecision, LimitPolicyEvaluator, TokenSafetyConfig
from app.services.token_safety.pricing import estimate_cost, estimate_prompt_tokens, estimate_tokens
from app.services.token_safety.token_budget import TokenBudgetExceeded, TokenBudgetTracker
from app.services.token_safety.usage_ledger import DailyUsageLedger

__all__ = [
    "CircuitOpenError",
    "DailyUsageLedger",
    "LimitDecision",
    "LimitPolicyEvaluator",
    "MemoryBreakerState",
    "RedisBreakerState",
    "SweepCircuitBreaker",
    "TokenBudgetExceeded",
    "TokenBudgetTracker",
    "TokenSafetyConfig",
    "estimate_cost",
    "estimate_prompt_tokens",
    "estimate_tokens",
    "get_sweep_circuit_breaker",
]
