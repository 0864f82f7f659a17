"""Glue between the chat routes and :mod:`omni_backend.ai.pipeline`.

Everything here takes plain values instead of reading ``current_app`` so the
multi-model endpoint can run replies on worker threads.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping, Optional

from google.api_core import exceptions as google_exceptions

from ..ai.canonical import DEFAULT_MAX_INLINE_BYTES
from ..ai.generation import VertexSettings
from ..ai.pipeline import ReplyOutcome, ReplyPipeline
from ..ai.providers import get_adapter
from ..ai.registry import get_provider_from_model, resolve_api_key, validate_model_for_provider
from ..ai.titles import DEFAULT_TITLE, clean_title, generate_chat_title
from ..artifacts.service import create_artifacts, make_artifact_hook
from ..library.service import add_to_media_library, make_library_resolver
from ..utils import now_utc
from .helpers import make_storage_loader

log = logging.getLogger(__name__)

_DEFAULT_TITLES = {"", DEFAULT_TITLE.lower()}


@dataclass(slots=True)
class ReplyEnvironment:
    """Application settings a reply needs, captured while a request is active."""

    upload_root: Path
    fallback_keys: dict[str, Optional[str]] = field(default_factory=dict)
    default_model: str = "gemini-2.0-flash"
    max_inline_bytes: int = DEFAULT_MAX_INLINE_BYTES
    server_url: Optional[str] = None
    vertex: Optional[VertexSettings] = None

    @classmethod
    def from_config(cls, config: Mapping[str, Any], upload_root: Path) -> "ReplyEnvironment":
        return cls(
            upload_root=upload_root,
            fallback_keys=dict(config.get("PROVIDER_KEYS") or {}),
            default_model=config.get("DEFAULT_MODEL") or "gemini-2.0-flash",
            max_inline_bytes=int(config.get("MAX_INLINE_ATTACHMENT_BYTES") or DEFAULT_MAX_INLINE_BYTES),
            server_url=config.get("OPENROUTER_SERVER_URL"),
            vertex=VertexSettings(
                project=config.get("GOOGLE_CLOUD_PROJECT"),
                access_token=config.get("GOOGLE_ACCESS_TOKEN"),
                location=config.get("GOOGLE_CLOUD_LOCATION") or "us-central1",
            ),
        )


@dataclass(slots=True)
class UserKeys:
    keys: dict[str, str]
    toggles: dict[str, bool]


def resolve_model(requested: Any, chat_data: Mapping[str, Any], preferences: Mapping[str, Any], default: str) -> str:
    """Request, then chat default, then user default, then server default."""

    for candidate in (requested, chat_data.get("defaultModel"), preferences.get("defaultModel"), default):
        if isinstance(candidate, str) and candidate.strip():
            return candidate.strip()
    return default


def resolve_route(model: str, user_keys: UserKeys, env: ReplyEnvironment) -> tuple[str, str]:
    """Return ``(provider, api_key)`` for ``model``; raises ``ProviderError`` subclasses."""

    provider = get_provider_from_model(model)
    if not validate_model_for_provider(provider, model):
        log.info("Model %s is not in the known %s model list; sending it anyway", model, provider)
    api_key, source = resolve_api_key(provider, user_keys.keys, user_keys.toggles, env.fallback_keys)
    log.debug("Using %s key for %s/%s", source, provider, model)
    return provider, api_key


def build_pipeline(
    uid: str,
    chat_id: str,
    message_id: str,
    user_keys: UserKeys,
    env: ReplyEnvironment,
) -> ReplyPipeline:
    def resolve_key(provider: str) -> str:
        api_key, _ = resolve_api_key(provider, user_keys.keys, user_keys.toggles, env.fallback_keys)
        return api_key

    def store_artifacts(items):
        return create_artifacts(uid, chat_id, message_id, items)

    def store_media(entry: dict[str, Any]):
        return add_to_media_library(uid, {**entry, "sourceChatId": chat_id, "sourceMessageId": message_id})

    return ReplyPipeline(
        loader=make_storage_loader(env.upload_root),
        resolve_key=resolve_key,
        resolver=make_library_resolver(uid),
        artifact_hook_factory=lambda adapter, provider: make_artifact_hook(uid, adapter, provider),
        create_artifacts=store_artifacts,
        on_media_generated=store_media,
        vertex=env.vertex,
        max_inline_bytes=env.max_inline_bytes,
        server_url=env.server_url,
    )


def assistant_message_data(uid: str, outcome: ReplyOutcome, *, is_streaming: bool = False) -> dict[str, Any]:
    return {
        "uid": uid,
        "role": "assistant",
        "content": outcome.content,
        "model": outcome.model,
        "isStreaming": is_streaming,
        "metadata": dict(outcome.metadata),
        "responseMetadata": outcome.response_metadata(),
        "createdAt": now_utc(),
    }


def multi_response_entry(response_id: str, outcome: ReplyOutcome) -> dict[str, Any]:
    metadata = dict(outcome.metadata)
    metadata.update(outcome.response_metadata())
    return {
        "responseId": response_id,
        "model": outcome.model,
        "provider": outcome.provider,
        "content": outcome.content,
        "isComplete": True,
        "metadata": metadata,
    }


def needs_title(chat_data: Mapping[str, Any]) -> bool:
    return str(chat_data.get("title") or "").strip().lower() in _DEFAULT_TITLES


def update_chat_title(
    chat_ref,
    chat_data: dict[str, Any],
    *,
    mode: str,
    user_text: str,
    outcome: ReplyOutcome,
    api_key: str,
    server_url: Optional[str] = None,
) -> Optional[str]:
    """Name a chat after its first exchange; returns the stored title, if any."""

    if not needs_title(chat_data) or outcome.finish_reason == "error":
        return None

    if mode == "ai-generated":
        adapter = get_adapter(outcome.provider, api_key, server_url=server_url)
        title = generate_chat_title(user_text, outcome.content, adapter, outcome.model)
    else:
        title = clean_title(user_text)
    if title == DEFAULT_TITLE:
        return None

    try:
        chat_ref.update({"title": title, "updatedAt": now_utc()})
    except (google_exceptions.PermissionDenied, google_exceptions.GoogleAPICallError) as exc:
        log.warning("Failed to persist chat title: %s", exc)
        return None
    chat_data["title"] = title
    return title
