"""Centralized model catalog and credit pricing.

Single source of truth for which models a bot may use, which provider
serves them, and how many credits a query costs.
"""

import math
from dataclasses import dataclass

# Providers with a LiteLLM route wired up.
SUPPORTED_PROVIDERS = frozenset({"openai", "xai"})


@dataclass(frozen=True)
class ModelInfo:
    id: str
    name: str
    provider: str
    context_window: int
    credits_per_query: int = 1
    is_available: bool = True

    @property
    def litellm_model(self) -> str:
        """Model identifier in LiteLLM's ``provider/model`` format."""
        if self.provider == "openai":
            return self.id
        return f"{self.provider}/{self.id}"


MODEL_CATALOG: dict[str, ModelInfo] = {
    m.id: m
    for m in (
        # xAI
        ModelInfo("grok-3-mini-beta", "Grok 3 Mini Beta", "xai", 128_000, 1),
        ModelInfo("grok-3-beta", "Grok 3 Beta", "xai", 128_000, 3),
        # OpenAI
        ModelInfo("gpt-4o", "GPT-4o", "openai", 128_000, 3),
        ModelInfo("gpt-4o-mini", "GPT-4o mini", "openai", 128_000, 1),
        ModelInfo("gpt-4.1", "GPT-4.1", "openai", 1_000_000, 3),
        ModelInfo("gpt-4.1-mini", "GPT-4.1 mini", "openai", 1_000_000, 1),
        # Anthropic: listed for display, no client wired up yet
        ModelInfo("claude-3-5-sonnet", "Claude 3.5 Sonnet", "anthropic", 200_000, 3, False),
        ModelInfo("claude-3-7-sonnet", "Claude 3.7 Sonnet", "anthropic", 200_000, 3, False),
    )
}

DEFAULT_CREDITS_PER_QUERY = 1


def get_model(model_id: str) -> ModelInfo | None:
    return MODEL_CATALOG.get(model_id)


def get_credit_cost(model_id: str) -> int:
    """Credits charged for a single query, before token scaling."""
    model = MODEL_CATALOG.get(model_id)
    return model.credits_per_query if model else DEFAULT_CREDITS_PER_QUERY


def calc_credits(model_id: str, token_count: int, tokens_per_unit: int = 1000) -> int:
    """Credits to debit for a finished turn.

    One query always costs at least the model's per-query price; each
    further ``tokens_per_unit`` tokens adds another query's worth.
    """
    units = max(1, math.ceil(max(token_count, 0) / max(tokens_per_unit, 1)))
    return get_credit_cost(model_id) * units
