from __future__ import annotations

from typing import Optional

from ..errors import UnsupportedModelError
from ..registry import PROVIDER_CONFIGS
from .anthropic import AnthropicAdapter
from .base import GenerationResult, ProviderAdapter, StreamChunk, normalize_usage, parse_json_object
from .google import GoogleAdapter, supports_search_grounding
from .openai_compat import OpenAICompatibleAdapter
from .openrouter import OpenRouterAdapter, list_available_models

__all__ = [
    "AnthropicAdapter",
    "GenerationResult",
    "GoogleAdapter",
    "OpenAICompatibleAdapter",
    "OpenRouterAdapter",
    "ProviderAdapter",
    "StreamChunk",
    "get_adapter",
    "list_available_models",
    "normalize_usage",
    "parse_json_object",
    "supports_search_grounding",
]


def get_adapter(provider: str, api_key: str, *, server_url: Optional[str] = None) -> ProviderAdapter:
    """Build the adapter that talks to ``provider`` with ``api_key``."""

    config = PROVIDER_CONFIGS.get(provider)
    if config is None:
        raise UnsupportedModelError(f"Unsupported provider: {provider}", provider=provider)

    if provider in {"openai", "deepseek", "together"}:
        return OpenAICompatibleAdapter(api_key, base_url=config.base_url, provider_name=provider)
    if provider == "anthropic":
        return AnthropicAdapter(api_key)
    if provider == "google":
        return GoogleAdapter(api_key)
    return OpenRouterAdapter(api_key, base_url=server_url)
