"""
Provider model catalogue and tier routing.
Premium callers get the large versatile model; everyone else the fast one.
"""

from __future__ import annotations

from dataclasses import dataclass, asdict


@dataclass(frozen=True)
class ModelInfo:
    id: str
    name: str
    description: str
    context_window: int
    speed: str   # "fast" | "medium" | "slow"
    cost: str    # "low" | "medium" | "high"

    def to_client_format(self) -> dict:
        data = asdict(self)
        data["contextWindow"] = data.pop("context_window")
        return data


MODELS: list[ModelInfo] = [
    ModelInfo(
        id="llama-3.1-70b-versatile",
        name="Llama 3.1 70B Versatile",
        description="High-quality model for general conversations",
        context_window=128000,
        speed="medium",
        cost="medium",
    ),
    ModelInfo(
        id="mixtral-8x7b-32768",
        name="Mixtral 8x7B",
        description="Fast and efficient for quick responses",
        context_window=32768,
        speed="fast",
        cost="low",
    ),
    ModelInfo(
        id="llama-3.1-8b-instant",
        name="Llama 3.1 8B Instant",
        description="Ultra-fast responses for casual chat",
        context_window=131072,
        speed="fast",
        cost="low",
    ),
    ModelInfo(
        id="gemma-7b-it",
        name="Gemma 7B",
        description="Google's efficient model",
        context_window=8192,
        speed="fast",
        cost="low",
    ),
]

PREMIUM_TIERS = ("premium", "premium_plus")


def get_model(model_id: str) -> ModelInfo | None:
    for model in MODELS:
        if model.id == model_id:
            return model
    return None


def recommended_model(tier: str) -> ModelInfo:
    """Best model for premium tiers, the cheaper fast one otherwise."""
    if tier in PREMIUM_TIERS:
        return MODELS[0]
    return MODELS[1]


def resolve_model(tier: str, force_model: str | None = None, default_model: str = "") -> str:
    """
    Pick the model id for one exchange:
      runtime force_model  >  tier recommendation  >  configured default
    The configured default only applies to tiers we don't recognise.
    """
    if force_model:
        return force_model
    if tier in PREMIUM_TIERS or tier == "free" or not default_model:
        return recommended_model(tier).id
    return default_model
