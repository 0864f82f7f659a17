from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any, Mapping, Optional

__all__ = [
    "AISettings",
    "DEFAULT_AI_SETTINGS",
    "RESPONSE_MODES",
    "SettingsValidationError",
    "merge_ai_settings",
    "validate_ai_settings",
]

RESPONSE_MODES = ("balanced", "concise", "detailed", "creative", "analytical", "friendly", "professional")

DEFAULT_AI_SETTINGS: dict[str, Any] = {
    "temperature": 0.7,
    "maxTokens": None,
    "systemPrompt": "",
    "responseMode": "balanced",
    "promptEnhancement": False,
    "contextWindow": None,
    "topP": 0.9,
    "frequencyPenalty": 0,
    "presencePenalty": 0,
}

_NUMERIC_RANGES: dict[str, tuple[float, float]] = {
    "temperature": (0.0, 2.0),
    "topP": (0.0, 1.0),
    "frequencyPenalty": (-2.0, 2.0),
    "presencePenalty": (-2.0, 2.0),
}


class SettingsValidationError(ValueError):
    """Raised when an AI settings payload contains an invalid value."""


@dataclass(slots=True)
class AISettings:
    temperature: float = 0.7
    max_tokens: Optional[int] = None
    system_prompt: str = ""
    response_mode: str = "balanced"
    prompt_enhancement: bool = False
    context_window: Optional[int] = None
    top_p: float = 0.9
    frequency_penalty: float = 0.0
    presence_penalty: float = 0.0

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "AISettings":
        return cls(
            temperature=float(data.get("temperature", 0.7)),
            max_tokens=data.get("maxTokens"),
            system_prompt=data.get("systemPrompt") or "",
            response_mode=data.get("responseMode") or "balanced",
            prompt_enhancement=bool(data.get("promptEnhancement", False)),
            context_window=data.get("contextWindow"),
            top_p=float(data.get("topP", 0.9)),
            frequency_penalty=float(data.get("frequencyPenalty", 0)),
            presence_penalty=float(data.get("presencePenalty", 0)),
        )

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        return {
            "temperature": data["temperature"],
            "maxTokens": data["max_tokens"],
            "systemPrompt": data["system_prompt"],
            "responseMode": data["response_mode"],
            "promptEnhancement": data["prompt_enhancement"],
            "contextWindow": data["context_window"],
            "topP": data["top_p"],
            "frequencyPenalty": data["frequency_penalty"],
            "presencePenalty": data["presence_penalty"],
        }


def validate_ai_settings(payload: Mapping[str, Any]) -> dict[str, Any]:
    """Return the recognised keys of ``payload`` after range checks."""

    cleaned: dict[str, Any] = {}
    for key, value in payload.items():
        if key not in DEFAULT_AI_SETTINGS:
            continue
        if value is None:
            cleaned[key] = None
            continue

        if key in _NUMERIC_RANGES:
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise SettingsValidationError(f"{key} must be a number.")
            low, high = _NUMERIC_RANGES[key]
            if not low <= value <= high:
                raise SettingsValidationError(f"{key} must be between {low:g} and {high:g}.")
        elif key in {"maxTokens", "contextWindow"}:
            if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
                raise SettingsValidationError(f"{key} must be a positive integer.")
        elif key == "responseMode":
            if value not in RESPONSE_MODES:
                raise SettingsValidationError(
                    f"responseMode must be one of: {', '.join(RESPONSE_MODES)}."
                )
        elif key == "systemPrompt":
            if not isinstance(value, str):
                raise SettingsValidationError("systemPrompt must be a string.")
        elif key == "promptEnhancement":
            if not isinstance(value, bool):
                raise SettingsValidationError("promptEnhancement must be a boolean.")
        cleaned[key] = value
    return cleaned


def merge_ai_settings(
    global_settings: Mapping[str, Any] | None,
    chat_settings: Mapping[str, Any] | None = None,
) -> AISettings:
    """Defaults, overridden by the user's settings, overridden by the chat's."""

    merged = dict(DEFAULT_AI_SETTINGS)
    for layer in (global_settings, chat_settings):
        if not layer:
            continue
        for key, value in layer.items():
            if key in merged and value is not None:
                merged[key] = value
    return AISettings.from_mapping(merged)
