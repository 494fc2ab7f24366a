"""Token cost estimation for prompt workers and provider scoring."""

from __future__ import annotations

import os
from dataclasses import dataclass


@dataclass(slots=True)
class ModelPricing:
    """Per-model input/output pricing in USD per 1M tokens."""

    input_per_1m: float
    output_per_1m: float


def estimate_cost_usd(
    *,
    model: str,
    prompt_tokens: int | None,
    completion_tokens: int | None,
    total_tokens: int | None,
) -> float | None:
    """Estimate execution cost in USD from token usage and configured pricing."""

    pricing = _lookup_pricing(model=model)
    if pricing is None:
        return None

    if prompt_tokens is not None and completion_tokens is not None:
        return (
            (prompt_tokens / 1_000_000) * pricing.input_per_1m
            + (completion_tokens / 1_000_000) * pricing.output_per_1m
        )

    if total_tokens is not None:
        return (total_tokens / 1_000_000) * pricing.input_per_1m
    return None


def _lookup_pricing(*, model: str) -> ModelPricing | None:
    mapping = _parse_pricing_mapping(os.getenv("BOUNTY_SETTLEMENT_LLM_PRICING", ""))
    direct = mapping.get(model.strip())
    if direct is not None:
        return direct
    return mapping.get("*")


def _parse_pricing_mapping(raw: str) -> dict[str, ModelPricing]:
    """Parse `BOUNTY_SETTLEMENT_LLM_PRICING`.

    Format: `model:input_per_1m:output_per_1m`, entries separated by `,`;
    model `*` is the fallback for unlisted models.
    """

    parsed: dict[str, ModelPricing] = {}
    if not raw.strip():
        return parsed

    for entry in raw.split(","):
        value = entry.strip()
        if not value:
            continue
        parts = [part.strip() for part in value.rsplit(":", 2)]
        if len(parts) != 3:
            continue
        model, input_price, output_price = parts
        try:
            parsed[model] = ModelPricing(
                input_per_1m=float(input_price),
                output_per_1m=float(output_price),
            )
        except ValueError:
            continue
    return parsed
