"""Model capability registry used for budgeting and prompt sizing."""

from __future__ import annotations

import logging
from dataclasses import dataclass

logger = logging.getLogger("flowrunner.prompt_engine.models")

# Characters per token used for quick prompt-size estimates, by provider.
PROVIDER_CHARS_PER_TOKEN: dict[str, float] = {
    "anthropic": 3.5,
    "amazon": 4.2,
    "meta": 3.8,
}
DEFAULT_CHARS_PER_TOKEN = 4.0


@dataclass(frozen=True)
class ModelPricing:
    unit: str  # "1K tokens" | "minute" | "image" | "call"
    input_cost_per_unit: float
    output_cost_per_unit: float


@dataclass(frozen=True)
class ModelCapability:
    id: str
    display_name: str
    provider: str
    context_window: int
    reserved_output_tokens: int
    pricing: ModelPricing
    supports_streaming: bool = True
    supports_json_mode: bool = False

    @property
    def chars_per_token(self) -> float:
        return PROVIDER_CHARS_PER_TOKEN.get(self.provider, DEFAULT_CHARS_PER_TOKEN)

    def as_template_dict(self) -> dict[str, str]:
        return {"id": self.id, "provider": self.provider, "display_name": self.display_name}


MODEL_REGISTRY: dict[str, ModelCapability] = {
    m.id: m
    for m in (
        ModelCapability(
            id="gpt-4o",
            display_name="GPT-4 Omni",
            provider="openai",
            context_window=128_000,
            reserved_output_tokens=16_384,
            pricing=ModelPricing("1K tokens", 0.005, 0.02),
            supports_json_mode=True,
        ),
        ModelCapability(
            id="anthropic.claude-3-7-sonnet-20250219-v1:0",
            display_name="Claude 3.7 Sonnet",
            provider="anthropic",
            context_window=200_000,
            reserved_output_tokens=8_192,
            pricing=ModelPricing("1K tokens", 0.003, 0.015),
        ),
        ModelCapability(
            id="amazon.nova-pro-v1:0",
            display_name="Amazon Nova Pro",
            provider="amazon",
            context_window=300_000,
            reserved_output_tokens=10_000,
            pricing=ModelPricing("1K tokens", 0.0008, 0.0032),
        ),
        ModelCapability(
            id="meta.llama4-maverick-17b-instruct-v1:0",
            display_name="LLaMA 4 Maverick",
            provider="meta",
            context_window=1_000_000,
            reserved_output_tokens=8_192,
            pricing=ModelPricing("1K tokens", 0.00027, 0.00085),
        ),
    )
}


def _guess_provider(model_id: str) -> str:
    lowered = model_id.lower()
    for provider in ("anthropic", "amazon", "meta", "openai"):
        if provider in lowered:
            return provider
    if lowered.startswith("gpt"):
        return "openai"
    return "unknown"


def default_capability(model_id: str) -> ModelCapability:
    """Conservative capability for a model id missing from the registry."""
    return ModelCapability(
        id=model_id,
        display_name=model_id,
        provider=_guess_provider(model_id),
        context_window=32_000,
        reserved_output_tokens=2_000,
        pricing=ModelPricing("1K tokens", 0.01, 0.03),
    )


def find_model(model_id: str) -> ModelCapability | None:
    """Registry lookup; cross-region inference ids (``us.`` prefix) map to the base id."""
    if not model_id:
        return None
    normalized = model_id[3:] if model_id.startswith("us.") else model_id
    return MODEL_REGISTRY.get(normalized)


def get_model(model_id: str) -> ModelCapability:
    model = find_model(model_id)
    if model is None:
        logger.warning("Unknown model '%s'; using conservative default capability", model_id)
        return default_capability(model_id)
    return model
