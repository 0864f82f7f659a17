from __future__ import annotations

from unittest.mock import patch

import pytest
from google.api_core import exceptions as google_exceptions

from conftest import API_KEY_SECRET, AUTH_HEADERS
from omni_backend.ai.settings import (
    AISettings,
    SettingsValidationError,
    merge_ai_settings,
    validate_ai_settings,
)
from omni_backend.preferences.service import (
    PreferencesStoreError,
    PreferencesValidationError,
    decrypt_api_key,
    encrypt_api_key,
    get_combined_ai_settings,
    get_preferences,
    get_user_api_keys,
    update_preferences,
)

PREFS_PATH = "users/user123/settings/preferences"


def test_validate_ai_settings_keeps_known_keys():
    cleaned = validate_ai_settings({"temperature": 1.2, "maxTokens": 512, "responseMode": "concise", "bogus": 1})
    assert cleaned == {"temperature": 1.2, "maxTokens": 512, "responseMode": "concise"}


@pytest.mark.parametrize(
    "payload",
    [
        {"temperature": 2.5},
        {"topP": -0.1},
        {"temperature": True},
        {"maxTokens": 0},
        {"contextWindow": 1.5},
        {"responseMode": "shouty"},
        {"systemPrompt": 42},
        {"promptEnhancement": "yes"},
    ],
)
def test_validate_ai_settings_rejects_bad_values(payload):
    with pytest.raises(SettingsValidationError):
        validate_ai_settings(payload)


def test_merge_ai_settings_layers_chat_over_global_over_defaults():
    merged = merge_ai_settings({"temperature": 0.2, "topP": 0.5}, {"temperature": 1.0, "maxTokens": None})
    assert merged == AISettings(temperature=1.0, top_p=0.5)
    assert merged.to_dict()["topP"] == 0.5


def test_api_keys_are_encrypted_per_user():
    token = encrypt_api_key("sk-secret", secret="s", uid="alice")

    assert token.startswith("encrypted:")
    assert encrypt_api_key(token, secret="s", uid="alice") == token
    assert decrypt_api_key(token, secret="s", uid="alice") == "sk-secret"
    assert decrypt_api_key(token, secret="s", uid="bob") is None
    assert decrypt_api_key("plain-key", secret="s", uid="alice") == "plain-key"


def test_get_preferences_returns_defaults(fake_db):
    preferences = get_preferences("user123", secret=API_KEY_SECRET)

    assert preferences["defaultModel"] == "gemini-2.0-flash"
    assert preferences["chatTitleGeneration"] == "first-message"
    assert preferences["apiKeys"]["gemini"] == {"hasKey": False, "last4": None}
    assert preferences["apiKeyPreferences"]["openai"] is True


def test_update_preferences_encrypts_and_masks_keys(fake_db):
    result = update_preferences(
        "user123",
        {"apiKeys": {"openai": " sk-test-1234 "}, "apiKeyPreferences": {"gemini": False}, "theme": "light"},
        secret=API_KEY_SECRET,
    )

    stored = fake_db.data(PREFS_PATH)
    assert stored["apiKeys"]["openai"].startswith("encrypted:")
    assert stored["theme"] == "light"
    assert result["apiKeys"]["openai"] == {"hasKey": True, "last4": "1234"}

    keys, toggles = get_user_api_keys("user123", secret=API_KEY_SECRET)
    assert keys == {"openai": "sk-test-1234"}
    assert toggles["gemini"] is False
    assert toggles["openai"] is True


def test_clearing_an_api_key_removes_the_field(fake_db):
    update_preferences("user123", {"apiKeys": {"openai": "sk-test-1234", "gemini": ""}}, secret=API_KEY_SECRET)
    assert "gemini" not in fake_db.data(PREFS_PATH)["apiKeys"]

    result = update_preferences("user123", {"apiKeys": {"openai": "  "}}, secret=API_KEY_SECRET)

    assert "openai" not in fake_db.data(PREFS_PATH)["apiKeys"]
    assert result["apiKeys"]["openai"] == {"hasKey": False, "last4": None}
    assert get_user_api_keys("user123", secret=API_KEY_SECRET)[0] == {}


def test_update_preferences_merges_into_existing_document(fake_db):
    fake_db.add(PREFS_PATH, {"theme": "dark", "aiSettings": {"temperature": 0.3}})

    update_preferences("user123", {"aiSettings": {"topP": 0.4}, "voiceSettings": {"speed": 1.5}}, secret=API_KEY_SECRET)

    stored = fake_db.data(PREFS_PATH)
    assert stored["aiSettings"] == {"temperature": 0.3, "topP": 0.4}
    assert stored["voiceSettings"] == {"speed": 1.5}

    combined = get_combined_ai_settings("user123", {"temperature": 1.1})
    assert combined.temperature == 1.1
    assert combined.top_p == 0.4


@pytest.mark.parametrize(
    "payload",
    [
        {},
        {"theme": "neon"},
        {"chatTitleGeneration": "random"},
        {"apiKeys": {"mystery": "key"}},
        {"apiKeyPreferences": {"openai": "yes"}},
        {"voiceSettings": {"speed": True}},
        {"aiSettings": {"temperature": 9}},
        {"defaultModel": ""},
    ],
)
def test_update_preferences_rejects_invalid_payloads(fake_db, payload):
    with pytest.raises(PreferencesValidationError):
        update_preferences("user123", payload, secret=API_KEY_SECRET)


def test_preferences_store_errors_are_wrapped(fake_db):
    fake_db.failures["get"] = google_exceptions.PermissionDenied("nope")
    with pytest.raises(PreferencesStoreError):
        get_preferences("user123", secret=API_KEY_SECRET)


def test_preferences_routes(client, fake_db):
    response = client.patch("/preferences", json={"chatTitleGeneration": "ai-generated"}, headers=AUTH_HEADERS)
    assert response.status_code == 200
    assert response.get_json()["chatTitleGeneration"] == "ai-generated"

    response = client.patch("/preferences", json={"theme": "neon"}, headers=AUTH_HEADERS)
    assert response.status_code == 400
    assert response.get_json()["error"] == "validation_error"

    fake_db.failures["get"] = google_exceptions.ServiceUnavailable("down")
    response = client.get("/preferences", headers=AUTH_HEADERS)
    assert response.status_code == 503
    assert response.get_json()["error"] == "preferences_store_unavailable"


def test_preferences_require_authentication(client):
    response = client.get("/preferences")
    assert response.status_code == 401
    assert response.get_json()["error"] == "unauthorized"


def test_models_route_reports_key_availability(client, fake_db):
    update_preferences("user123", {"apiKeys": {"anthropic": "sk-ant-9999"}}, secret=API_KEY_SECRET)

    response = client.get("/preferences/models", headers=AUTH_HEADERS)

    assert response.status_code == 200
    payload = response.get_json()
    providers = {entry["name"]: entry for entry in payload["providers"]}
    assert providers["anthropic"]["hasUserKey"] is True
    assert providers["google"]["available"] is True
    assert providers["openai"]["available"] is False
    assert payload["openrouterModels"] == []
    assert payload["defaultModel"] == "gemini-2.0-flash"


def test_live_token_requires_enabled_gemini_key(client, fake_db):
    response = client.post("/preferences/live-token", headers=AUTH_HEADERS)
    assert response.status_code == 400
    assert response.get_json()["error"] == "missing_api_key"

    update_preferences("user123", {"apiKeys": {"gemini": "gem-key"}}, secret=API_KEY_SECRET)
    token = {"token": "auth_tokens/abc", "expiresAt": "2030-01-01T00:00:00+00:00", "model": "gemini-2.0-flash-exp"}
    with patch("omni_backend.preferences.routes.create_live_token", return_value=token) as mock_create:
        response = client.post("/preferences/live-token", headers=AUTH_HEADERS)

    assert response.status_code == 201
    assert response.get_json() == token
    mock_create.assert_called_once_with("gem-key")
