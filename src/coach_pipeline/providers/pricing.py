from __future__ import annotations

# USD per 1M tokens.
PRICING_PER_MTOK: dict[str, dict[str, float]] = {
    "gemini-2.5-flash": {"input": 0.075, "output": 0.30},
    "gemini-2.0-flash-exp": {"input": 0.075, "output": 0.30},
    "gemini-3-pro-preview": {"input": 2.00, "output": 12.00},
}
DEFAULT_MODEL = "gemini-2.5-flash"


def estimate_cost_usd(model: str, input_tokens: int, output_tokens: int) -> float:
    """
    Unknown models are priced like the default model.
    """
    p = PRICING_PER_MTOK.get(str(model or "").strip()) or PRICING_PER_MTOK[DEFAULT_MODEL]
    i = max(0, int(input_tokens or 0))
    o = max(0, int(output_tokens or 0))
    return (i / 1_000_000) * p["input"] + (o / 1_000_000) * p["output"]
