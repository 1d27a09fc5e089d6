"""
Cost Calculator

USD cost of a provider call from token counts. Prices are per 1K tokens.
All arithmetic is Decimal so batch totals do not drift.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, Tuple

# (provider:model) -> (input per 1K, output per 1K)
PRICING: Dict[str, Tuple[Decimal, Decimal]] = {
    # OpenAI
    "openai:gpt-4o": (Decimal("0.0025"), Decimal("0.01")),
    "openai:gpt-4o-mini": (Decimal("0.00015"), Decimal("0.0006")),
    "openai:gpt-4-turbo": (Decimal("0.01"), Decimal("0.03")),
    # Anthropic
    "anthropic:claude-3-opus": (Decimal("0.015"), Decimal("0.075")),
    "anthropic:claude-3-sonnet": (Decimal("0.003"), Decimal("0.015")),
    "anthropic:claude-3-haiku": (Decimal("0.00025"), Decimal("0.00125")),
    "anthropic:claude-sonnet-4": (Decimal("0.003"), Decimal("0.015")),
    # DeepSeek
    "deepseek:deepseek-chat": (Decimal("0.00014"), Decimal("0.00028")),
    "deepseek:deepseek-coder": (Decimal("0.00014"), Decimal("0.00028")),
    # Google
    "google:gemini-1.5-pro": (Decimal("0.00125"), Decimal("0.005")),
    "google:gemini-1.5-flash": (Decimal("0.000075"), Decimal("0.0003")),
}

DEFAULT_PRICING = (Decimal("0.001"), Decimal("0.002"))
FREE_PROVIDERS = frozenset({"ollama"})

# Compression runs only know a total; split it as if 60% were input.
INPUT_SHARE = Decimal("0.6")

_THOUSAND = Decimal(1000)


@dataclass(frozen=True)
class CostBreakdown:
    input_cost: Decimal
    output_cost: Decimal
    total_cost: Decimal
    currency: str = "USD"


def get_pricing(provider: str, model: str) -> Tuple[Decimal, Decimal]:
    """
    Exact provider:model match first, then the longest priced model name
    contained in the requested one (dated snapshots such as
    "gpt-4o-mini-2024-07-18" resolve to "gpt-4o-mini", not "gpt-4o").
    """
    provider = (provider or "").strip().lower()
    model = (model or "").strip().lower()

    exact = PRICING.get(f"{provider}:{model}")
    if exact is not None:
        return exact

    partial = [
        (priced_model, prices)
        for key, prices in PRICING.items()
        for priced_provider, priced_model in [key.split(":", 1)]
        if priced_provider == provider and priced_model in model
    ]
    if partial:
        return max(partial, key=lambda item: len(item[0]))[1]

    if provider in FREE_PROVIDERS:
        return Decimal("0"), Decimal("0")

    return DEFAULT_PRICING


def get_cost_breakdown(provider: str, model: str, input_tokens: int, output_tokens: int) -> CostBreakdown:
    input_price, output_price = get_pricing(provider, model)
    input_cost = Decimal(max(0, input_tokens)) / _THOUSAND * input_price
    output_cost = Decimal(max(0, output_tokens)) / _THOUSAND * output_price
    return CostBreakdown(input_cost=input_cost, output_cost=output_cost, total_cost=input_cost + output_cost)


def calculate_cost(provider: str, model: str, input_tokens: int, output_tokens: int) -> Decimal:
    return get_cost_breakdown(provider, model, input_tokens, output_tokens).total_cost


def calculate_split_cost(provider: str, model: str, total_tokens: int) -> Decimal:
    """Cost for a token total with no input/output split recorded."""
    input_tokens = int(Decimal(total_tokens) * INPUT_SHARE)
    return calculate_cost(provider, model, input_tokens, total_tokens - input_tokens)


class CostCalculator:
    """Injectable wrapper so tests can swap in fixed prices."""

    def calculate_cost(self, provider: str, model: str, input_tokens: int, output_tokens: int) -> Decimal:
        return calculate_cost(provider, model, input_tokens, output_tokens)

    def calculate_split_cost(self, provider: str, model: str, total_tokens: int) -> Decimal:
        return calculate_split_cost(provider, model, total_tokens)

    def get_cost_breakdown(self, provider: str, model: str, input_tokens: int, output_tokens: int) -> CostBreakdown:
        return get_cost_breakdown(provider, model, input_tokens, output_tokens)
