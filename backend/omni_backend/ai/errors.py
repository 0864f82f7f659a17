from __future__ import annotations

from typing import Any

__all__ = [
    "MissingApiKeyError",
    "ProviderConfigurationError",
    "ProviderError",
    "ProviderRequestError",
    "UnsupportedFeatureError",
    "UnsupportedModelError",
    "describe_provider_error",
]


class ProviderError(RuntimeError):
    """Base class for failures talking to an AI provider."""

    def __init__(self, message: str, *, provider: str | None = None, status_code: int | None = None) -> None:
        super().__init__(message)
        self.provider = provider
        self.status_code = status_code


class ProviderConfigurationError(ProviderError):
    """Raised when the backend is missing settings a provider needs."""


class MissingApiKeyError(ProviderConfigurationError):
    """Raised when neither the user nor the server has a key for a provider."""


class UnsupportedModelError(ProviderError):
    """Raised when a model name cannot be routed to any provider."""


class UnsupportedFeatureError(ProviderError):
    """Raised when a provider cannot perform the requested operation."""


class ProviderRequestError(ProviderError):
    """Raised when a provider SDK call fails."""


_TOKEN_LIMIT_MARKERS = (
    "context length",
    "context_length",
    "maximum context",
    "too many tokens",
    "token limit",
    "prompt is too long",
)


def _status_code(exc: BaseException) -> int | None:
    for candidate in (exc, exc.__cause__):
        if candidate is None:
            continue
        status = getattr(candidate, "status_code", None) or getattr(candidate, "code", None)
        if isinstance(status, int):
            return status
    return None


def _class_names(exc: BaseException) -> set[str]:
    names: set[str] = set()
    for candidate in (exc, exc.__cause__):
        if candidate is not None:
            names.update(cls.__name__ for cls in type(candidate).__mro__)
    return names


def describe_provider_error(exc: Any) -> str:
    """Translate a provider failure into a message that can be shown to the user."""

    if isinstance(exc, UnsupportedModelError):
        return "The model is not supported or unavailable. Please try a different model."
    if isinstance(exc, MissingApiKeyError):
        return "API key is missing or invalid. Please check your API key settings."

    if not isinstance(exc, BaseException):
        return str(exc or "") or "An unexpected error occurred while generating the response."

    message = str(exc)
    lowered = message.lower()
    names = _class_names(exc)

    if _status_code(exc) == 429 or "RateLimitError" in names:
        return "Rate limit exceeded. Please wait a moment and try again."
    if any(marker in lowered for marker in _TOKEN_LIMIT_MARKERS):
        return "The request is too long. Please try with a shorter conversation or message."
    if "quota" in lowered:
        return "API quota exceeded. Please check your account limits or try a different model."
    if "authentication" in lowered or "AuthenticationError" in names:
        return "Authentication failed. Please check your API key settings."
    if "network" in lowered or "fetch" in lowered or "APIConnectionError" in names:
        return "Network error occurred. Please check your connection and try again."

    return message or "An unexpected error occurred while generating the response."
