"""Model pricing catalog.

Prices are USD per 1M tokens.  ``actual`` cost is what the provider bills
and is what budgets are metered in; ``charged`` cost applies the markup.
"""

from __future__ import annotations

from dataclasses import dataclass

from agentrun.core.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class ModelPricing:
    input_per_million: float
    output_per_million: float
    markup: float = 1.5
    context_window: int = 128_000


DEFAULT_MODEL = "gpt-5"

MODEL_PRICING: dict[str, ModelPricing] = {
    # OpenAI
    "gpt-5.2": ModelPricing(1.75, 14.00),
    "gpt-5.1": ModelPricing(1.50, 12.00),
    "gpt-5": ModelPricing(1.25, 10.00),
    "gpt-5-mini": ModelPricing(0.15, 0.60, markup=1.6),
    "gpt-5-nano": ModelPricing(0.05, 0.20, markup=1.8),
    "gpt-o3": ModelPricing(10.00, 40.00, markup=1.4),
    "gpt-o3-mini": ModelPricing(1.00, 4.00),
    "gpt-4.1": ModelPricing(2.00, 8.00),
    "gpt-4.1-mini": ModelPricing(0.15, 0.60, markup=1.6),
    "gpt-4.1-nano": ModelPricing(0.05, 0.20, markup=1.8),
    "gpt-4o": ModelPricing(2.50, 10.00),
    # Anthropic
    "claude-sonnet-4-20250514": ModelPricing(3.00, 15.00, context_window=200_000),
    "claude-opus-4-20250514": ModelPricing(5.00, 25.00, markup=1.4, context_window=200_000),
    "claude-3-7-sonnet-20250219": ModelPricing(3.00, 15.00, context_window=200_000),
}


def extract_model_id(llm_id: str) -> str:
    """``"openai:gpt-5.2"`` -> ``"gpt-5.2"``."""
    _, sep, model = llm_id.partition(":")
    return model if sep else llm_id


def get_pricing(model: str | None) -> ModelPricing:
    model_id = extract_model_id(model or DEFAULT_MODEL)
    pricing = MODEL_PRICING.get(model_id)
    if pricing is None:
        logger.warning("pricing_unknown_model", model=model_id, fallback=DEFAULT_MODEL)
        return MODEL_PRICING[DEFAULT_MODEL]
    return pricing


def calculate_cost(model: str | None, input_units: int, output_units: int) -> float:
    """Provider cost of one turn."""
    pricing = get_pricing(model)
    return (
        input_units / 1_000_000 * pricing.input_per_million
        + output_units / 1_000_000 * pricing.output_per_million
    )


def calculate_charged_cost(model: str | None, input_units: int, output_units: int) -> float:
    return calculate_cost(model, input_units, output_units) * get_pricing(model).markup
