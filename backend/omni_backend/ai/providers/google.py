from __future__ import annotations

import io
import logging
import time
from typing import Any, Iterator, Optional, Sequence

import requests
from google import genai
from google.genai import types

from ..canonical import ModelMessage
from ..prompts import compose_system_prompt
from ..settings import AISettings
from .base import ProviderAdapter, StreamChunk, normalize_usage, parse_json_object

log = logging.getLogger(__name__)

SEARCH_GROUNDING_MODELS = ("gemini-2.0-flash-exp", "gemini-1.5-pro", "gemini-1.5-flash", "gemini-pro")
GEMINI_FILES_PREFIX = "https://generativelanguage.googleapis.com/"
IMAGE_FETCH_TIMEOUT_SECONDS = 15


def supports_search_grounding(model: str) -> bool:
    return any(known in (model or "") for known in SEARCH_GROUNDING_MODELS)


def _image_part(url: str, mime_type: str) -> types.Part:
    """Gemini only reads its own file URIs, so web images are downloaded and inlined."""
    if not url.startswith(("http://", "https://")) or url.startswith(GEMINI_FILES_PREFIX):
        return types.Part.from_uri(file_uri=url, mime_type=mime_type)
    try:
        response = requests.get(url, timeout=IMAGE_FETCH_TIMEOUT_SECONDS)
        response.raise_for_status()
    except requests.RequestException as exc:
        log.warning("Could not fetch image %s for Gemini: %s", url, exc)
        return types.Part.from_text(text=f"[Image: {url} - Unable to attach]")
    content_type = response.headers.get("Content-Type", "").split(";")[0].strip()
    if not content_type.startswith("image/"):
        content_type = mime_type
    return types.Part.from_bytes(data=response.content, mime_type=content_type)


def _convert_messages(messages: Sequence[ModelMessage]) -> tuple[str, list[types.Content]]:
    system_parts: list[str] = []
    contents: list[types.Content] = []
    for message in messages:
        if message.role == "system":
            system_parts.append(message.text)
            continue
        parts: list[types.Part] = []
        for reference in message.files:
            parts.append(types.Part.from_uri(file_uri=reference.uri, mime_type=reference.mime_type))
        for image in message.images:
            if image.data is not None:
                parts.append(types.Part.from_bytes(data=image.data, mime_type=image.mime_type))
            elif image.url:
                parts.append(_image_part(image.url, image.mime_type))
        if message.text:
            parts.append(types.Part.from_text(text=message.text))
        if not parts:
            continue
        role = "model" if message.role == "assistant" else "user"
        contents.append(types.Content(role=role, parts=parts))
    return compose_system_prompt(*system_parts), contents


def _usage_from_metadata(metadata: Any) -> Optional[dict[str, Optional[int]]]:
    if metadata is None:
        return None
    return normalize_usage(
        input_tokens=getattr(metadata, "prompt_token_count", None),
        output_tokens=getattr(metadata, "candidates_token_count", None),
        total_tokens=getattr(metadata, "total_token_count", None),
    )


def _chunk_text(chunk: Any) -> str:
    try:
        text = chunk.text
    except ValueError:
        text = None
    return text if isinstance(text, str) else ""


class GoogleAdapter(ProviderAdapter):
    name = "google"
    accepts_file_references = True

    def __init__(self, api_key: str, *, base_url: Optional[str] = None) -> None:
        super().__init__(api_key, base_url=base_url)
        self.client = genai.Client(api_key=api_key)

    def _config(
        self,
        model: str,
        system_instruction: str,
        settings: AISettings,
        *,
        web_search: bool = False,
        json_output: bool = False,
    ) -> types.GenerateContentConfig:
        options: dict[str, Any] = {
            "temperature": settings.temperature,
            "top_p": settings.top_p,
        }
        if settings.max_tokens:
            options["max_output_tokens"] = settings.max_tokens
        if system_instruction:
            options["system_instruction"] = system_instruction
        if json_output:
            options["response_mime_type"] = "application/json"
        if web_search and supports_search_grounding(model):
            options["tools"] = [types.Tool(google_search=types.GoogleSearch())]
        return types.GenerateContentConfig(**options)

    def stream_reply(
        self,
        model: str,
        messages: Sequence[ModelMessage],
        settings: AISettings,
        *,
        web_search: bool = False,
    ) -> Iterator[StreamChunk]:
        system_instruction, contents = _convert_messages(messages)
        config = self._config(model, system_instruction, settings, web_search=web_search)

        usage = None
        finish_reason = None
        started = time.perf_counter()
        try:
            for chunk in self.client.models.generate_content_stream(model=model, contents=contents, config=config):
                if getattr(chunk, "usage_metadata", None):
                    usage = _usage_from_metadata(chunk.usage_metadata)
                candidates = getattr(chunk, "candidates", None) or []
                if candidates and getattr(candidates[0], "finish_reason", None):
                    reason = candidates[0].finish_reason
                    finish_reason = getattr(reason, "name", None) or str(reason)
                text = _chunk_text(chunk)
                if text:
                    yield StreamChunk(text=text, raw=chunk)
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
        system_instruction, contents = _convert_messages(messages)
        grounded = web_search and supports_search_grounding(model)
        # Grounding tools cannot be combined with a JSON response mime type.
        config = self._config(
            model,
            system_instruction,
            settings,
            web_search=grounded,
            json_output=not grounded,
        )
        started = time.perf_counter()
        try:
            response = self.client.models.generate_content(model=model, contents=contents, config=config)
        except Exception as exc:
            raise self._wrap_error(exc) from exc
        self._log_latency("structured", model, started)
        return self.check_required_keys(parse_json_object(_chunk_text(response)), required_keys)

    def upload_file(self, filename: str, content: bytes, mime_type: str) -> dict[str, Any]:
        try:
            uploaded = self.client.files.upload(
                file=io.BytesIO(content),
                config=types.UploadFileConfig(mime_type=mime_type, display_name=filename),
            )
        except Exception as exc:
            raise self._wrap_error(exc) from exc
        log.info("Uploaded %s to google as %s", filename, uploaded.name)
        return {"fileId": uploaded.name, "fileUri": uploaded.uri}

    def list_models(self) -> list[dict[str, Any]]:
        try:
            models = list(self.client.models.list())
        except Exception as exc:
            raise self._wrap_error(exc) from exc
        return [
            {"id": (item.name or "").removeprefix("models/"), "name": item.display_name or item.name}
            for item in models
        ]
