"""Provider routing, message normalisation and reply generation."""

from __future__ import annotations

from .errors import ProviderError, describe_provider_error
from .pipeline import ReplyOutcome, ReplyPipeline, ReplyRequest
from .registry import get_provider_from_model, resolve_api_key
from .settings import AISettings, merge_ai_settings

__all__ = [
    "AISettings",
    "ProviderError",
    "ReplyOutcome",
    "ReplyPipeline",
    "ReplyRequest",
    "describe_provider_error",
    "get_provider_from_model",
    "merge_ai_settings",
    "resolve_api_key",
]
