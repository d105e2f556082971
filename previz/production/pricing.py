from __future__ import annotations

from decimal import Decimal
from typing import Any, Dict, Mapping, Optional

from previz.errors import ValidationError

# Per-unit USD prices keyed by model id.
PRICING_REGISTRY: Dict[str, Decimal] = {
    "flux-pro": Decimal("0.055"),
    "flux-dev": Decimal("0.04"),
    "flux-fast": Decimal("0.005"),
    "sdxl": Decimal("0.020"),
    "sd-turbo": Decimal("0.005"),
    "stable-video-diffusion": Decimal("0.20"),
    "cogvideox-5b": Decimal("0.15"),
    "elevenlabs/tts": Decimal("0.010"),
    "audioldm-2": Decimal("0.015"),
    "gemini-1.5-pro": Decimal("0.050"),
    "gemini-1.5-flash": Decimal("0.005"),
    "default-image": Decimal("0.05"),
}

DEFAULT_MODEL_ID = "default-image"

# Flat estimates charged once per action, independent of provider pricing.
FIXED_COSTS: Dict[str, Dict[str, Any]] = {
    "SCRIPT_ANALYSIS": {"model_id": "gemini-1.5-pro", "cost": Decimal("0.05")},
    "SHOT_GENERATION": {"model_id": "gemini-1.5-pro", "cost": Decimal("0.02")},
    "MODEL_TRAINING": {"model_id": "flux-dev-lora-trainer", "cost": Decimal("2.00")},
}


class PriceBook:
    """Model prices and fixed action estimates, optionally overridden from studio.toml."""

    def __init__(
        self,
        prices: Optional[Mapping[str, Any]] = None,
        fixed_costs: Optional[Mapping[str, Any]] = None,
    ):
        self.prices: Dict[str, Decimal] = dict(PRICING_REGISTRY)
        for model_id, price in (prices or {}).items():
            self.prices[model_id] = Decimal(str(price))

        self.fixed: Dict[str, Dict[str, Any]] = {k: dict(v) for k, v in FIXED_COSTS.items()}
        for action, override in (fixed_costs or {}).items():
            entry = self.fixed.setdefault(action, {"model_id": action.lower(), "cost": Decimal("0")})
            if isinstance(override, Mapping):
                if "model_id" in override:
                    entry["model_id"] = str(override["model_id"])
                if "cost" in override:
                    entry["cost"] = Decimal(str(override["cost"]))
            else:
                entry["cost"] = Decimal(str(override))

    def unit_price(self, model_id: Optional[str]) -> Decimal:
        if model_id and model_id in self.prices:
            return self.prices[model_id]
        return self.prices.get(DEFAULT_MODEL_ID, Decimal("0"))

    def estimate_cost(self, model_id: Optional[str], quantity: int = 1) -> Decimal:
        if quantity < 0:
            raise ValidationError(f"quantity must be >= 0, got {quantity}")
        return (self.unit_price(model_id) * quantity).quantize(Decimal("0.0001"))

    def fixed_cost(self, action_type: str) -> Decimal:
        return self.fixed[action_type]["cost"]

    def fixed_model(self, action_type: str) -> str:
        return self.fixed[action_type]["model_id"]


def estimate_cost(model_id: Optional[str], quantity: int = 1) -> Decimal:
    return PriceBook().estimate_cost(model_id, quantity)
