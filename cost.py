"""Static per-model pricing and cost estimation."""

from typing import Dict, Optional

COST_PRECISION = 6

# USD per 1k tokens
MODEL_PRICING: Dict[str, Dict[str, float]] = {
    "google/gemini-2.5-flash": {"input_per_1k": 0.0003, "output_per_1k": 0.0025},
    "google/gemini-2.5-flash-lite": {"input_per_1k": 0.0001, "output_per_1k": 0.0004},
}


def get_model_pricing(model: str) -> Optional[Dict[str, float]]:
    """Pricing entry for a model, or None when the model is unknown."""
    return MODEL_PRICING.get(model)


def estimate_cost(prompt_tokens: int, completion_tokens: int, model: str) -> float:
    """Estimate the USD cost of one completion.

    Unknown models cost 0: the estimate is telemetry and never gates a request.
    """
    pricing = get_model_pricing(model)
    if not pricing:
        return 0.0
    cost = (max(prompt_tokens, 0) / 1000) * pricing["input_per_1k"] + (
        max(completion_tokens, 0) / 1000
    ) * pricing["output_per_1k"]
    return round(cost, COST_PRECISION)
