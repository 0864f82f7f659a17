from __future__ import annotations

import base64
import copy
import hashlib
import logging
from typing import Any, Mapping, Optional

from cryptography.fernet import Fernet, InvalidToken
from google.api_core import exceptions as google_exceptions
from google.cloud.firestore_v1 import DELETE_FIELD

from ..ai.registry import PROVIDER_CONFIGS
from ..ai.settings import DEFAULT_AI_SETTINGS, AISettings, merge_ai_settings, validate_ai_settings
from ..firebase import get_firestore_client
from ..utils import now_utc

log = logging.getLogger(__name__)

__all__ = [
    "DEFAULT_PREFERENCES",
    "KEY_FIELDS",
    "PreferencesStoreError",
    "PreferencesValidationError",
    "decrypt_api_key",
    "encrypt_api_key",
    "get_combined_ai_settings",
    "get_preferences",
    "get_user_api_keys",
    "mask_api_keys",
    "update_preferences",
]

KEY_FIELDS: tuple[str, ...] = tuple(config.user_key_field for config in PROVIDER_CONFIGS.values())
ENCRYPTION_PREFIX = "encrypted:"

DEFAULT_PREFERENCES: dict[str, Any] = {
    "defaultModel": "gemini-2.0-flash",
    "theme": "dark",
    "chatTitleGeneration": "first-message",
    "apiKeys": {},
    "apiKeyPreferences": {field: True for field in KEY_FIELDS},
    "voiceSettings": {
        "autoPlay": False,
        "voice": "aoede",
        "language": "en-US",
        "speed": 1.0,
        "buzzWord": "",
    },
    "aiSettings": dict(DEFAULT_AI_SETTINGS),
}

_THEMES = ("light", "dark", "system")
_TITLE_MODES = ("first-message", "ai-generated")
_VOICE_FIELDS = {"autoPlay": bool, "voice": str, "language": str, "speed": (int, float), "buzzWord": str}


class PreferencesStoreError(Exception):
    """Raised when preferences cannot be read from or written to Firestore."""


class PreferencesValidationError(ValueError):
    """Raised when a preferences update contains invalid values."""


def _fernet(secret: str, uid: str) -> Fernet:
    digest = hashlib.sha256(f"{secret}:{uid}".encode("utf-8")).digest()
    return Fernet(base64.urlsafe_b64encode(digest))


def encrypt_api_key(api_key: str, *, secret: str, uid: str) -> str:
    if not api_key or api_key.startswith(ENCRYPTION_PREFIX):
        return api_key
    token = _fernet(secret, uid).encrypt(api_key.encode("utf-8")).decode("ascii")
    return f"{ENCRYPTION_PREFIX}{token}"


def decrypt_api_key(value: str, *, secret: str, uid: str) -> Optional[str]:
    """Return the plain key, or ``None`` when it cannot be decrypted."""

    if not value:
        return None
    if not value.startswith(ENCRYPTION_PREFIX):
        return value
    try:
        return _fernet(secret, uid).decrypt(value[len(ENCRYPTION_PREFIX) :].encode("ascii")).decode("utf-8")
    except InvalidToken:
        log.warning("Stored API key for %s could not be decrypted", uid)
        return None


def mask_api_keys(encrypted_keys: Mapping[str, Any], *, secret: str, uid: str) -> dict[str, dict[str, Any]]:
    masked: dict[str, dict[str, Any]] = {}
    for field in KEY_FIELDS:
        plain = decrypt_api_key(str(encrypted_keys.get(field) or ""), secret=secret, uid=uid)
        masked[field] = {"hasKey": bool(plain), "last4": plain[-4:] if plain else None}
    return masked


def _preferences_ref(uid: str):
    db = get_firestore_client()
    return db.collection("users").document(uid).collection("settings").document("preferences")


def _load_raw(uid: str) -> dict[str, Any]:
    try:
        snapshot = _preferences_ref(uid).get()
    except (google_exceptions.PermissionDenied, google_exceptions.GoogleAPICallError) as exc:
        raise PreferencesStoreError(str(exc)) from exc
    if not snapshot.exists:
        return {}
    return snapshot.to_dict() or {}


def _merge_defaults(stored: Mapping[str, Any]) -> dict[str, Any]:
    merged = copy.deepcopy(DEFAULT_PREFERENCES)
    for key, value in stored.items():
        if isinstance(value, Mapping) and isinstance(merged.get(key), dict):
            merged[key].update({k: v for k, v in value.items() if v is not None or key == "aiSettings"})
        elif value is not None:
            merged[key] = value
    return merged


def get_preferences(uid: str, *, secret: str) -> dict[str, Any]:
    """Stored preferences over the defaults, with API keys masked."""

    preferences = _merge_defaults(_load_raw(uid))
    preferences["apiKeys"] = mask_api_keys(preferences.get("apiKeys") or {}, secret=secret, uid=uid)
    preferences.pop("updatedAt", None)
    return preferences


def get_user_api_keys(uid: str, *, secret: str) -> tuple[dict[str, str], dict[str, bool]]:
    """Decrypted API keys and their enable toggles."""

    preferences = _merge_defaults(_load_raw(uid))
    keys: dict[str, str] = {}
    for field, value in (preferences.get("apiKeys") or {}).items():
        plain = decrypt_api_key(str(value or ""), secret=secret, uid=uid)
        if plain:
            keys[field] = plain
    toggles = {field: bool(enabled) for field, enabled in (preferences.get("apiKeyPreferences") or {}).items()}
    return keys, toggles


def get_default_model(uid: str) -> str:
    return str(_merge_defaults(_load_raw(uid)).get("defaultModel") or DEFAULT_PREFERENCES["defaultModel"])


def _validate_update(payload: Mapping[str, Any]) -> dict[str, Any]:
    updates: dict[str, Any] = {}

    if "defaultModel" in payload:
        model = payload["defaultModel"]
        if not isinstance(model, str) or not model.strip():
            raise PreferencesValidationError("defaultModel must be a non-empty string.")
        updates["defaultModel"] = model.strip()

    if "theme" in payload:
        if payload["theme"] not in _THEMES:
            raise PreferencesValidationError(f"theme must be one of: {', '.join(_THEMES)}.")
        updates["theme"] = payload["theme"]

    if "chatTitleGeneration" in payload:
        if payload["chatTitleGeneration"] not in _TITLE_MODES:
            raise PreferencesValidationError(f"chatTitleGeneration must be one of: {', '.join(_TITLE_MODES)}.")
        updates["chatTitleGeneration"] = payload["chatTitleGeneration"]

    if "apiKeyPreferences" in payload:
        toggles = payload["apiKeyPreferences"]
        if not isinstance(toggles, Mapping):
            raise PreferencesValidationError("apiKeyPreferences must be an object.")
        for field, enabled in toggles.items():
            if field not in KEY_FIELDS:
                raise PreferencesValidationError(f"Unknown API key provider: {field}.")
            if not isinstance(enabled, bool):
                raise PreferencesValidationError(f"apiKeyPreferences.{field} must be a boolean.")
            updates[f"apiKeyPreferences.{field}"] = enabled

    if "voiceSettings" in payload:
        voice = payload["voiceSettings"]
        if not isinstance(voice, Mapping):
            raise PreferencesValidationError("voiceSettings must be an object.")
        for key, value in voice.items():
            expected = _VOICE_FIELDS.get(key)
            if expected is None:
                continue
            if isinstance(value, bool) and expected is not bool:
                raise PreferencesValidationError(f"voiceSettings.{key} has an invalid type.")
            if not isinstance(value, expected):
                raise PreferencesValidationError(f"voiceSettings.{key} has an invalid type.")
            updates[f"voiceSettings.{key}"] = value

    if "aiSettings" in payload:
        settings = payload["aiSettings"]
        if not isinstance(settings, Mapping):
            raise PreferencesValidationError("aiSettings must be an object.")
        try:
            cleaned = validate_ai_settings(settings)
        except ValueError as exc:
            raise PreferencesValidationError(str(exc)) from exc
        for key, value in cleaned.items():
            updates[f"aiSettings.{key}"] = value

    return updates


def update_preferences(uid: str, payload: Mapping[str, Any], *, secret: str) -> dict[str, Any]:
    """Validate and persist a partial preferences update; returns the masked result."""

    updates = _validate_update(payload)

    if "apiKeys" in payload:
        keys = payload["apiKeys"]
        if not isinstance(keys, Mapping):
            raise PreferencesValidationError("apiKeys must be an object.")
        for field, value in keys.items():
            if field not in KEY_FIELDS:
                raise PreferencesValidationError(f"Unknown API key provider: {field}.")
            if value is not None and not isinstance(value, str):
                raise PreferencesValidationError(f"apiKeys.{field} must be a string.")
            plain = (value or "").strip()
            updates[f"apiKeys.{field}"] = encrypt_api_key(plain, secret=secret, uid=uid) if plain else DELETE_FIELD

    if not updates:
        raise PreferencesValidationError("Provide at least one preference to update.")

    doc_ref = _preferences_ref(uid)
    updates["updatedAt"] = now_utc()
    try:
        snapshot = doc_ref.get()
        if snapshot.exists:
            doc_ref.update(updates)
        else:
            doc_ref.set(_expand_dotted(updates))
    except (google_exceptions.PermissionDenied, google_exceptions.GoogleAPICallError) as exc:
        raise PreferencesStoreError(str(exc)) from exc

    log.info("Updated preferences for %s (%s)", uid, ", ".join(sorted({key.split(".")[0] for key in updates})))
    return get_preferences(uid, secret=secret)


def _expand_dotted(updates: Mapping[str, Any]) -> dict[str, Any]:
    document: dict[str, Any] = {}
    for path, value in updates.items():
        if value is DELETE_FIELD:
            continue
        head, _, tail = path.partition(".")
        if tail:
            document.setdefault(head, {})[tail] = value
        else:
            document[head] = value
    return document


def get_combined_ai_settings(uid: str, chat_settings: Optional[Mapping[str, Any]] = None) -> AISettings:
    """Defaults, then the user's global AI settings, then the chat's overrides."""

    stored = _load_raw(uid)
    return merge_ai_settings(stored.get("aiSettings") or {}, chat_settings or {})
