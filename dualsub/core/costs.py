"""
Token cost estimation.
Prices are USD per million tokens as published by each vendor.
"""

import logging

logger = logging.getLogger(__name__)

# model id -> (input, output) USD per 1M tokens
MODEL_COSTS = {
    # Anthropic
    "claude-sonnet-4-5": (3.0, 15.0),
    "claude-3-5-sonnet-20240620": (3.0, 15.0),
    "claude-3-opus-20240229": (15.0, 75.0),
    "claude-3-sonnet-20240229": (3.0, 15.0),
    "claude-3-haiku-20240307": (0.25, 1.25),
    # Google
    "gemini-2.5-pro": (1.25, 10.0),
    "gemini-1.5-pro-latest": (3.5, 10.5),
    "gemini-1.5-flash-latest": (0.35, 1.05),
    "gemini-2.5-pro-preview-03-25": (1.25, 10.0),
    "gemini-2.5-flash-preview-04-17": (0.15, 3.5),
    "gemini-2.0-flash": (0.1, 0.4),
}

_warned_models: set[str] = set()


def calculate_cost(model: str, input_tokens: int | None, output_tokens: int | None) -> float:
    """Estimated USD cost; 0.0 when the model is unknown or counts are missing."""
    prices = MODEL_COSTS.get(model)
    if prices is None:
        if model not in _warned_models:
            _warned_models.add(model)
            logger.warning("No pricing for model %s, cost reported as 0", model)
        return 0.0
    if input_tokens is None or output_tokens is None:
        logger.warning("Token counts missing for %s, cost reported as 0", model)
        return 0.0
    input_price, output_price = prices
    return (input_tokens / 1_000_000) * input_price + (output_tokens / 1_000_000) * output_price
