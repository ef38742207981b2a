"""
Cost Estimation Helpers

Token pricing and rough token estimates for pre-call budget checks.
Cost is linear in tokens, so estimated cost never decreases as usage grows.
"""

import math
from typing import Dict, Optional

from app.config import settings

# USD per million tokens
MODEL_PRICING: Dict[str, Dict[str, float]] = {
    "claude-3-5-haiku-20241022": {"input": 0.80, "output": 4.00},
    "claude-3-haiku-20240307": {"input": 0.25, "output": 1.25},
    "claude-sonnet-4-5-20250929": {"input": 3.00, "output": 15.00},
    "claude-3-5-sonnet-20241022": {"input": 3.00, "output": 15.00},
}


def get_pricing(model: Optional[str] = None) -> Dict[str, float]:
    """
    Look up per-million pricing for a model.

    Unknown or missing models fall back to the configured
    claude_input_cost_per_million / claude_output_cost_per_million.
    """
    if model and model in MODEL_PRICING:
        return MODEL_PRICING[model]
    return {
        "input": settings.claude_input_cost_per_million,
        "output": settings.claude_output_cost_per_million,
    }


def estimate_cost(input_tokens: int, output_tokens: int, model: Optional[str] = None) -> float:
    """Estimated USD cost for a call with the given token counts."""
    pricing = get_pricing(model)
    input_cost = (input_tokens / 1_000_000) * pricing["input"]
    output_cost = (output_tokens / 1_000_000) * pricing["output"]
    return round(input_cost + output_cost, 6)


def estimate_tokens(text: str) -> int:
    """Rough token count: ~4 characters per token for English text."""
    return math.ceil(len(text) / 4)


def estimate_prompt_tokens(user_prompt: str, system_prompt: Optional[str] = None) -> int:
    """Estimate prompt tokens including ~10% message formatting overhead."""
    total = estimate_tokens(user_prompt)
    if system_prompt:
        total += estimate_tokens(system_prompt)
    return math.ceil(total * 11 / 10)
