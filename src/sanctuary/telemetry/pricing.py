"""Per-model token rates and usage accounting."""

from __future__ import annotations

from dataclasses import dataclass

from loguru import logger

from sanctuary.core.types import Usage

# USD per million tokens as (input, output).
RATE_TABLE: dict[str, tuple[float, float]] = {
    "grok-4-1-fast-reasoning": (0.20, 0.50),
    "grok-4-fast": (0.20, 0.50),
    "grok-3": (3.00, 15.00),
    "grok-3-mini": (0.30, 0.50),
    "gpt-4o": (2.50, 10.00),
    "gpt-4o-mini": (0.15, 0.60),
    "gemini-flash-1.5": (0.075, 0.30),
    "claude-sonnet-4": (3.00, 15.00),
}

_warned_models: set[str] = set()


def lookup_rates(model: str) -> tuple[float, float] | None:
    """Find rates by exact id, then by the id without its ``vendor/`` prefix."""
    if model in RATE_TABLE:
        return RATE_TABLE[model]
    _, _, bare = model.rpartition("/")
    return RATE_TABLE.get(bare)


def estimate_cost(model: str, prompt_tokens: int, completion_tokens: int) -> float:
    rates = lookup_rates(model)
    if rates is None:
        if model not in _warned_models:
            _warned_models.add(model)
            logger.warning("telemetry.pricing.unknown_model model={}", model)
        return 0.0
    input_rate, output_rate = rates
    return (prompt_tokens * input_rate + completion_tokens * output_rate) / 1_000_000


@dataclass
class UsageRecord:
    """Token usage accumulated over every round-trip of one turn."""

    prompt_tokens: int = 0
    completion_tokens: int = 0
    rounds: int = 0

    def add(self, usage: Usage | None) -> None:
        self.rounds += 1
        if usage is None:
            return
        self.prompt_tokens += max(usage.prompt_tokens, 0)
        self.completion_tokens += max(usage.completion_tokens, 0)

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens

    def cost(self, model: str) -> float:
        return estimate_cost(model, self.prompt_tokens, self.completion_tokens)
