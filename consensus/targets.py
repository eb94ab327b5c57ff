"""Resolve an opaque model identifier into (provider, native model name)."""

from dataclasses import dataclass

AGGREGATOR = "openrouter"

_PREFIX_PROVIDERS = {
    "openai": "openai",
    "anthropic": "anthropic",
    "gemini": "gemini",
    "google": "gemini",
    "openrouter": "openrouter",
}


@dataclass(frozen=True)
class ModelTarget:
    provider: str   # "openrouter", "openai", "anthropic", "gemini"
    model: str      # name understood by that provider's API


def parse_model_target(model_id: str) -> ModelTarget:
    """Parse ``model_id`` into a ModelTarget. Never raises.

    ``openrouter/<x>`` and bare ids go to the aggregator; ``<vendor>:<x>``
    goes direct to that vendor.
    """
    if not isinstance(model_id, str) or not model_id:
        return ModelTarget(AGGREGATOR, model_id if isinstance(model_id, str) else "")

    if model_id.startswith("openrouter/"):
        return ModelTarget(AGGREGATOR, model_id[len("openrouter/"):])

    prefix, sep, rest = model_id.partition(":")
    if sep and prefix:
        provider = _PREFIX_PROVIDERS.get(prefix.lower())
        if provider:
            return ModelTarget(provider, rest)

    return ModelTarget(AGGREGATOR, model_id)


def display_name(model_id: str) -> str:
    """Short label for a model id: ``anthropic/claude-3`` -> ``claude-3``."""
    target = parse_model_target(model_id)
    parts = target.model.split("/", 1)
    return parts[1] if len(parts) > 1 else target.model
