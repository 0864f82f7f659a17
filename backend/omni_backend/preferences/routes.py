from __future__ import annotations

import logging
from http import HTTPStatus
from typing import Any

from flask import Blueprint, current_app, jsonify, request

from ..ai.errors import ProviderError
from ..ai.live import create_live_token
from ..ai.providers.openrouter import list_available_models
from ..ai.registry import PROVIDER_CONFIGS, list_providers
from ..auth.utils import current_uid, firebase_user_required
from ..chats.helpers import error_response, parse_json_body, store_unavailable, validation_error
from .service import (
    PreferencesStoreError,
    PreferencesValidationError,
    get_preferences,
    get_user_api_keys,
    update_preferences,
)

preferences_bp = Blueprint("preferences", __name__, url_prefix="/preferences")
log = logging.getLogger(__name__)


def _secret() -> str:
    return current_app.config["API_KEY_SECRET"]


@preferences_bp.get("")
@firebase_user_required
def get_preferences_route() -> tuple[Any, int]:
    try:
        preferences = get_preferences(current_uid(), secret=_secret())
    except PreferencesStoreError as exc:
        log.exception("Failed to load preferences: %s", exc)
        return store_unavailable("preferences_store_unavailable", exc)
    return jsonify(preferences), HTTPStatus.OK


@preferences_bp.patch("")
@firebase_user_required
def update_preferences_route() -> tuple[Any, int]:
    payload = parse_json_body()
    try:
        preferences = update_preferences(current_uid(), payload, secret=_secret())
    except PreferencesValidationError as exc:
        return validation_error(str(exc))
    except PreferencesStoreError as exc:
        log.exception("Failed to update preferences: %s", exc)
        return store_unavailable("preferences_store_unavailable", exc)
    return jsonify(preferences), HTTPStatus.OK


@preferences_bp.get("/models")
@firebase_user_required
def list_models_route() -> tuple[Any, int]:
    """Providers with their static model lists, plus the live OpenRouter catalogue."""

    uid = current_uid()
    try:
        user_keys, toggles = get_user_api_keys(uid, secret=_secret())
    except PreferencesStoreError as exc:
        log.exception("Failed to load API keys: %s", exc)
        return store_unavailable("preferences_store_unavailable", exc)

    server_keys = current_app.config.get("PROVIDER_KEYS") or {}
    providers = list_providers()
    for provider in providers:
        config = PROVIDER_CONFIGS[provider["name"]]
        has_user_key = bool(user_keys.get(config.user_key_field)) and toggles.get(config.user_key_field, True)
        provider["hasUserKey"] = has_user_key
        provider["available"] = has_user_key or bool(server_keys.get(config.name))

    openrouter_models: list[dict[str, Any]] = []
    openrouter_key = user_keys.get("openrouter") or server_keys.get("openrouter")
    if openrouter_key:
        try:
            openrouter_models = list_available_models(
                api_key=openrouter_key,
                server_url=current_app.config.get("OPENROUTER_SERVER_URL"),
                force_refresh=request.args.get("refresh", "false").lower() in ("true", "1", "yes"),
            )
        except ProviderError as exc:
            log.warning("OpenRouter model catalogue unavailable: %s", exc)

    return (
        jsonify(
            {
                "providers": providers,
                "openrouterModels": openrouter_models,
                "defaultModel": current_app.config.get("DEFAULT_MODEL"),
            }
        ),
        HTTPStatus.OK,
    )


@preferences_bp.post("/live-token")
@firebase_user_required
def create_live_token_route() -> tuple[Any, int]:
    try:
        user_keys, toggles = get_user_api_keys(current_uid(), secret=_secret())
    except PreferencesStoreError as exc:
        log.exception("Failed to load API keys: %s", exc)
        return store_unavailable("preferences_store_unavailable", exc)

    api_key = user_keys.get("gemini") if toggles.get("gemini", True) else None
    if not api_key:
        return error_response(
            "missing_api_key",
            "Add and enable your Gemini API key to use voice chat.",
            HTTPStatus.BAD_REQUEST,
        )

    try:
        token = create_live_token(api_key)
    except ProviderError as exc:
        return error_response("provider_error", str(exc), HTTPStatus.BAD_GATEWAY)
    return jsonify(token), HTTPStatus.CREATED
