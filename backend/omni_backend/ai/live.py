from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any

from google import genai

from ..utils import now_utc
from .errors import MissingApiKeyError, ProviderRequestError

log = logging.getLogger(__name__)

LIVE_MODEL = "gemini-2.0-flash-exp"
TOKEN_TTL = timedelta(minutes=30)
NEW_SESSION_WINDOW = timedelta(minutes=1)


def create_live_token(api_key: str | None) -> dict[str, Any]:
    """Mint a single-use ephemeral token for the Gemini Live API."""

    if not api_key:
        raise MissingApiKeyError("A Gemini API key is required for voice chat.", provider="google")

    now = now_utc()
    expires_at = now + TOKEN_TTL
    client = genai.Client(api_key=api_key, http_options={"api_version": "v1alpha"})
    try:
        token = client.auth_tokens.create(
            config={
                "uses": 1,
                "expire_time": expires_at,
                "new_session_expire_time": now + NEW_SESSION_WINDOW,
                "live_connect_constraints": {"model": LIVE_MODEL},
            }
        )
    except Exception as exc:
        log.warning("Creating live token failed: %s", exc)
        raise ProviderRequestError(f"Failed to create live token: {exc}", provider="google") from exc

    return {
        "token": token.name,
        "expiresAt": expires_at.isoformat(),
        "model": LIVE_MODEL,
    }
