"""Test cost estimation."""

import pytest

from cost import MODEL_PRICING, estimate_cost, get_model_pricing


class TestEstimateCost:
    def test_known_model(self):
        """Cost is the per-1k input and output rates applied to token counts."""
        cost = estimate_cost(1000, 500, "google/gemini-2.5-flash")

        assert cost == pytest.approx(0.0003 + 0.00125)

    def test_rounded_to_six_decimals(self):
        cost = estimate_cost(1234, 567, "google/gemini-2.5-flash-lite")

        assert cost == round(cost, 6)
        assert cost == pytest.approx(0.000350, abs=1e-6)

    def test_unknown_model_costs_nothing(self):
        assert estimate_cost(1000, 1000, "unknown/model") == 0.0
        assert get_model_pricing("unknown/model") is None

    def test_negative_tokens_clamped(self):
        assert estimate_cost(-10, -10, "google/gemini-2.5-flash") == 0.0

    def test_pricing_table_shape(self):
        for pricing in MODEL_PRICING.values():
            assert set(pricing) == {"input_per_1k", "output_per_1k"}

    def test_non_decreasing_in_tokens(self):
        model = "google/gemini-2.5-flash"
        costs = [estimate_cost(tokens, 100, model) for tokens in range(0, 5000, 250)]
        assert costs == sorted(costs)
        assert all(cost >= 0 for cost in costs)

        costs = [estimate_cost(100, tokens, model) for tokens in range(0, 5000, 250)]
        assert costs == sorted(costs)
