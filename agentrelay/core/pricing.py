# agentrelay/core/pricing.py
"""
Per-model price tables (USD per million tokens) and message cost calculation.
"""

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

logger = logging.getLogger(__name__)

FALLBACK_PRICE = (3.0, 15.0)


@dataclass(frozen=True)
class ModelInfo:
    id: str
    name: str
    context: int
    input_price: float = 0.0
    output_price: float = 0.0

    def to_dict(self) -> Dict[str, object]:
        return {
            "id": self.id,
            "name": self.name,
            "context": self.context,
            "inputPrice": self.input_price,
            "outputPrice": self.output_price,
        }


class PriceTable:
    """
    Price lookup for one provider's models.

    Unknown ids fall back to a case-insensitive substring match against the
    known ids ("opus" → "claude-opus-4.6"), then to the default model.
    """

    def __init__(self, models: List[ModelInfo], default_model: str):
        self._prices: Dict[str, tuple] = {
            m.id: (m.input_price, m.output_price) for m in models
        }
        self.default_model = default_model

    def lookup(self, model_id: Optional[str]) -> tuple:
        if model_id and model_id in self._prices:
            return self._prices[model_id]
        shorthand = (model_id or "").lower()
        if shorthand:
            for known, price in self._prices.items():
                if shorthand in known.lower():
                    return price
        price = self._prices.get(self.default_model)
        if price is None:
            logger.debug(f"No pricing for {model_id!r}, using fallback")
            return FALLBACK_PRICE
        return price

    def calculate_cost(self, input_tokens: int, output_tokens: int, model_id: Optional[str]) -> float:
        input_price, output_price = self.lookup(model_id)
        return (input_tokens / 1_000_000) * input_price + (output_tokens / 1_000_000) * output_price
