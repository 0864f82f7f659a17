from __future__ import annotations

import logging
import threading
import time
from typing import Any, Iterator, Optional, Sequence

import openrouter
import requests

from ..canonical import ModelMessage
from ..errors import ProviderRequestError
from ..prompts import JSON_ONLY_INSTRUCTION
from ..settings import AISettings
from .base import ProviderAdapter, StreamChunk, normalize_usage, parse_json_object

log = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 60
MODEL_CACHE_TTL_SECONDS = 300
_MODEL_CACHE_LOCK = threading.Lock()
_MODEL_CACHE: dict[str, Any] = {
    "timestamp": 0.0,
    "models": [],
    "server_url": None,
}


def _resolve_base_url(server_url: str | None) -> str:
    if server_url:
        trimmed = server_url.rstrip("/")
        if trimmed.endswith("/v1"):
            return trimmed
        return f"{trimmed}/v1"
    return "https://openrouter.ai/api/v1"


def extract_text_from_event(event: Any) -> str:
    """Pull the text delta out of a streaming chunk."""

    choices = getattr(event, "choices", None)
    if isinstance(choices, (list, tuple)) and choices:
        delta = getattr(choices[0], "delta", None)
        if delta is not None:
            content = getattr(delta, "content", None)
            if isinstance(content, str) and content:
                return content
            if isinstance(delta, dict):
                maybe_content = delta.get("content")
                if isinstance(maybe_content, str) and maybe_content:
                    return maybe_content
    return ""


def _coalesce_response_text(response: Any) -> str:
    choices = getattr(response, "choices", None) or []
    for choice in choices:
        message = getattr(choice, "message", None)
        content = getattr(message, "content", None) if message is not None else None
        if isinstance(content, str) and content:
            return content.strip()
    return ""


def _usage_from(payload: Any) -> Optional[dict[str, Optional[int]]]:
    usage = getattr(payload, "usage", None)
    if usage is None:
        return None
    return normalize_usage(
        input_tokens=getattr(usage, "prompt_tokens", None),
        output_tokens=getattr(usage, "completion_tokens", None),
        total_tokens=getattr(usage, "total_tokens", None),
    )


def list_available_models(
    *,
    api_key: str | None,
    server_url: str | None = None,
    force_refresh: bool = False,
) -> list[dict[str, Any]]:
    """Fetch the OpenRouter model catalogue, cached for a few minutes."""

    now = time.time()
    with _MODEL_CACHE_LOCK:
        cached_models = list(_MODEL_CACHE.get("models") or [])
        cached_url = _MODEL_CACHE.get("server_url")
        cached_at = float(_MODEL_CACHE.get("timestamp") or 0.0)
    if not force_refresh and cached_models and cached_url == server_url and now - cached_at < MODEL_CACHE_TTL_SECONDS:
        return cached_models

    url = f"{_resolve_base_url(server_url)}/models"
    headers: dict[str, str] = {}
    if api_key:
        headers["Authorization"] = f"Bearer {api_key}"

    try:
        response = requests.get(url, headers=headers, timeout=10)
    except requests.RequestException as exc:
        raise ProviderRequestError(f"Failed to fetch models: {exc}", provider="openrouter") from exc

    if response.status_code != 200:
        raise ProviderRequestError(
            f"Failed to fetch models: HTTP {response.status_code} - {response.text.strip()}",
            provider="openrouter",
            status_code=response.status_code,
        )

    payload = response.json()
    models: list[dict[str, Any]] = []
    for item in payload.get("data") or []:
        if not isinstance(item, dict):
            continue
        model_id = item.get("id") or item.get("name")
        if not model_id:
            continue
        models.append(
            {
                "id": model_id,
                "name": item.get("name") or model_id,
                "description": item.get("description"),
                "contextLength": item.get("context_length") or item.get("contextLength"),
                "pricing": item.get("pricing"),
            }
        )

    if not models:
        raise ProviderRequestError("Model list is empty.", provider="openrouter")

    with _MODEL_CACHE_LOCK:
        _MODEL_CACHE.update({"timestamp": now, "models": models, "server_url": server_url})
    return list(models)


class OpenRouterAdapter(ProviderAdapter):
    name = "openrouter"

    def __init__(
        self,
        api_key: str,
        *,
        base_url: Optional[str] = None,
        timeout: int = DEFAULT_TIMEOUT_SECONDS,
    ) -> None:
        super().__init__(api_key, base_url=base_url)
        self.timeout = timeout
        self.client = openrouter.OpenRouter(api_key=api_key, server_url=base_url)

    def _send(self, model: str, messages: list[dict[str, Any]], settings: AISettings, *, stream: bool) -> Any:
        options: dict[str, Any] = {"temperature": settings.temperature, "top_p": settings.top_p}
        if settings.max_tokens:
            options["max_tokens"] = settings.max_tokens
        return self.client.chat.send(
            model=model,
            messages=messages,
            stream=stream,
            timeout_ms=self.timeout * 1000,
            **options,
        )

    def stream_reply(
        self,
        model: str,
        messages: Sequence[ModelMessage],
        settings: AISettings,
        *,
        web_search: bool = False,
    ) -> Iterator[StreamChunk]:
        usage = None
        finish_reason = None
        started = time.perf_counter()
        try:
            stream = self._send(model, [message.to_dict() for message in messages], settings, stream=True)
            for event in stream:
                usage = _usage_from(event) or usage
                choices = getattr(event, "choices", None) or []
                if choices and getattr(choices[0], "finish_reason", None):
                    finish_reason = choices[0].finish_reason
                text = extract_text_from_event(event)
                if text:
                    yield StreamChunk(text=text, raw=event)
        except ProviderRequestError:
            raise
        except Exception as exc:
            raise self._wrap_error(exc) from exc
        self._log_latency("stream", model, started)
        yield StreamChunk(done=True, usage=usage, finish_reason=finish_reason)

    def generate_structured(
        self,
        model: str,
        messages: Sequence[ModelMessage],
        settings: AISettings,
        *,
        required_keys: Sequence[str] = (),
        web_search: bool = False,
    ) -> dict[str, Any]:
        converted = [{"role": "system", "content": JSON_ONLY_INSTRUCTION}]
        converted.extend(message.to_dict() for message in messages)
        started = time.perf_counter()
        try:
            response = self._send(model, converted, settings, stream=False)
        except Exception as exc:
            raise self._wrap_error(exc) from exc
        self._log_latency("structured", model, started)
        text = _coalesce_response_text(response)
        if not text:
            raise ProviderRequestError("OpenRouter API returned an empty response", provider=self.name)
        return self.check_required_keys(parse_json_object(text), required_keys)

    def list_models(self) -> list[dict[str, Any]]:
        return list_available_models(api_key=self.api_key, server_url=self.base_url)
