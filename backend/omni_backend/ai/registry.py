from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Mapping, Optional

from .errors import MissingApiKeyError, UnsupportedModelError

log = logging.getLogger(__name__)

__all__ = [
    "FEATURES",
    "PROVIDER_CONFIGS",
    "ProviderConfig",
    "get_provider_from_model",
    "list_providers",
    "resolve_api_key",
    "supports_feature",
    "validate_model_for_provider",
]

FEATURES = (
    "streaming",
    "toolCalling",
    "structuredOutput",
    "imageGeneration",
    "videoGeneration",
    "vision",
    "fileUploads",
    "webSearch",
    "reasoning",
)


@dataclass(frozen=True, slots=True)
class ProviderConfig:
    name: str
    display_name: str
    user_key_field: str
    default_model: str
    models: tuple[str, ...] = ()
    base_url: Optional[str] = None
    features: frozenset[str] = field(default_factory=frozenset)

    def to_dict(self) -> dict[str, object]:
        return {
            "name": self.name,
            "displayName": self.display_name,
            "userKeyField": self.user_key_field,
            "defaultModel": self.default_model,
            "models": list(self.models),
            "baseUrl": self.base_url,
            "supportedFeatures": {feature: feature in self.features for feature in FEATURES},
        }


_BASE_FEATURES = {"streaming", "toolCalling", "structuredOutput"}

PROVIDER_CONFIGS: dict[str, ProviderConfig] = {
    "openai": ProviderConfig(
        name="openai",
        display_name="OpenAI",
        user_key_field="openai",
        default_model="gpt-4o-mini",
        models=("gpt-4o", "gpt-4o-mini", "o1", "o1-mini", "gpt-4-turbo", "gpt-3.5-turbo"),
        features=frozenset(_BASE_FEATURES | {"imageGeneration", "vision", "fileUploads", "webSearch"}),
    ),
    "google": ProviderConfig(
        name="google",
        display_name="Google",
        user_key_field="gemini",
        default_model="gemini-2.0-flash",
        models=("gemini-2.0-flash", "gemini-2.0-flash-exp", "gemini-1.5-pro", "gemini-1.5-flash", "gemini-1.0-pro"),
        features=frozenset(
            _BASE_FEATURES | {"imageGeneration", "videoGeneration", "vision", "fileUploads", "webSearch"}
        ),
    ),
    "anthropic": ProviderConfig(
        name="anthropic",
        display_name="Anthropic",
        user_key_field="anthropic",
        default_model="claude-3-5-sonnet-20241022",
        models=("claude-3-5-sonnet-20241022", "claude-3-5-haiku-20241022", "claude-3-opus-20240229"),
        features=frozenset(_BASE_FEATURES | {"vision", "fileUploads"}),
    ),
    "deepseek": ProviderConfig(
        name="deepseek",
        display_name="DeepSeek",
        user_key_field="deepseek",
        default_model="deepseek-chat",
        models=("deepseek-chat", "deepseek-reasoner", "deepseek-coder"),
        base_url="https://api.deepseek.com/v1",
        features=frozenset(_BASE_FEATURES | {"reasoning"}),
    ),
    "openrouter": ProviderConfig(
        name="openrouter",
        display_name="OpenRouter",
        user_key_field="openrouter",
        default_model="openai/gpt-4o-mini",
        base_url="https://openrouter.ai/api/v1",
        features=frozenset(_BASE_FEATURES | {"vision"}),
    ),
    "together": ProviderConfig(
        name="together",
        display_name="Together AI",
        user_key_field="together",
        default_model="meta-llama/Meta-Llama-3.1-8B-Instruct-Turbo",
        models=(
            "meta-llama/Meta-Llama-3.1-70B-Instruct-Turbo",
            "meta-llama/Meta-Llama-3.1-8B-Instruct-Turbo",
            "mistralai/Mixtral-8x7B-Instruct-v0.1",
        ),
        base_url="https://api.together.xyz/v1",
        features=frozenset(_BASE_FEATURES),
    ),
}

_OPENROUTER_PREFIXES = (
    "openai/",
    "google/",
    "anthropic/",
    "x-ai/",
    "qwen/",
    "deepseek/",
    "mistralai/",
    "meta-llama/",
    "microsoft/",
    "perplexity/",
    "cohere/",
)

# Checked in order; the first provider whose marker occurs in the model name wins.
_MODEL_MARKERS: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("google", ("gemini", "imagen", "veo")),
    ("openai", ("gpt", "dall-e", "sora", "o1", "o3", "o4")),
    ("anthropic", ("claude",)),
    ("deepseek", ("deepseek",)),
    ("together", ("llama", "mixtral", "together")),
)


def get_provider_from_model(model: str) -> str:
    """Return the provider name that serves ``model``."""

    name = (model or "").strip().lower()
    if not name:
        raise UnsupportedModelError("A model name is required.")

    if name.startswith(_OPENROUTER_PREFIXES):
        return "openrouter"

    for provider, markers in _MODEL_MARKERS:
        if any(marker in name for marker in markers):
            return provider

    if "/" in name:
        return "openrouter"

    raise UnsupportedModelError(f"Unable to determine provider for model: {model}")


def list_providers() -> list[dict[str, object]]:
    return [config.to_dict() for config in PROVIDER_CONFIGS.values()]


def supports_feature(provider: str, feature: str) -> bool:
    config = PROVIDER_CONFIGS.get(provider)
    return bool(config and feature in config.features)


def validate_model_for_provider(provider: str, model: str) -> bool:
    config = PROVIDER_CONFIGS.get(provider)
    if config is None:
        return False
    if provider == "openrouter":
        return True
    return any(model in known or known in model for known in config.models)


def resolve_api_key(
    provider: str,
    user_keys: Mapping[str, Optional[str]] | None,
    key_preferences: Mapping[str, bool] | None,
    fallback_keys: Mapping[str, Optional[str]] | None,
) -> tuple[str, str]:
    """Pick the key used for ``provider``.

    Returns ``(api_key, source)`` where source is ``"user"`` or ``"server"``.
    A user key is only used while its preference toggle is enabled.
    """

    config = PROVIDER_CONFIGS.get(provider)
    if config is None:
        raise UnsupportedModelError(f"Unknown provider: {provider}")

    user_key = (user_keys or {}).get(config.user_key_field)
    enabled = (key_preferences or {}).get(config.user_key_field, True)
    if user_key and enabled:
        return user_key, "user"

    server_key = (fallback_keys or {}).get(provider)
    if server_key:
        return server_key, "server"

    log.info("No API key available for provider %s", provider)
    raise MissingApiKeyError(
        f"No API key configured for provider '{provider}'.",
        provider=provider,
    )
