from __future__ import annotations

import io
import logging
import time
from typing import Any, Iterator, Optional, Sequence

from openai import OpenAI

from ..canonical import ModelMessage
from ..prompts import JSON_ONLY_INSTRUCTION
from ..settings import AISettings
from .base import ProviderAdapter, StreamChunk, normalize_usage, parse_json_object

log = logging.getLogger(__name__)


def _convert_messages(messages: Sequence[ModelMessage]) -> list[dict[str, Any]]:
    return [message.to_dict() for message in messages]


def _request_options(settings: AISettings) -> dict[str, Any]:
    options = {
        "temperature": settings.temperature,
        "top_p": settings.top_p,
        "max_tokens": settings.max_tokens,
        "frequency_penalty": settings.frequency_penalty or None,
        "presence_penalty": settings.presence_penalty or None,
    }
    return {key: value for key, value in options.items() if value is not None}


class OpenAICompatibleAdapter(ProviderAdapter):
    """OpenAI chat completions; also serves DeepSeek and Together via ``base_url``."""

    def __init__(self, api_key: str, *, base_url: Optional[str] = None, provider_name: str = "openai") -> None:
        super().__init__(api_key, base_url=base_url)
        self.name = provider_name
        self.client = OpenAI(api_key=api_key, base_url=base_url)

    def stream_reply(
        self,
        model: str,
        messages: Sequence[ModelMessage],
        settings: AISettings,
        *,
        web_search: bool = False,
    ) -> Iterator[StreamChunk]:
        started = time.perf_counter()
        try:
            stream = self.client.chat.completions.create(
                model=model,
                messages=_convert_messages(messages),
                stream=True,
                stream_options={"include_usage": True},
                **_request_options(settings),
            )
        except Exception as exc:
            raise self._wrap_error(exc) from exc

        usage = None
        finish_reason = None
        try:
            for event in stream:
                if getattr(event, "usage", None):
                    usage = normalize_usage(
                        input_tokens=event.usage.prompt_tokens,
                        output_tokens=event.usage.completion_tokens,
                        total_tokens=event.usage.total_tokens,
                    )
                if not event.choices:
                    continue
                choice = event.choices[0]
                if choice.finish_reason:
                    finish_reason = choice.finish_reason
                content = getattr(choice.delta, "content", None)
                if content:
                    yield StreamChunk(text=content, raw=event)
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
        converted = _convert_messages(messages)
        converted.insert(0, {"role": "system", "content": JSON_ONLY_INSTRUCTION})
        started = time.perf_counter()
        try:
            response = self.client.chat.completions.create(
                model=model,
                messages=converted,
                response_format={"type": "json_object"},
                **_request_options(settings),
            )
        except Exception as exc:
            raise self._wrap_error(exc) from exc
        self._log_latency("structured", model, started)

        text = ""
        if response.choices:
            text = response.choices[0].message.content or ""
        return self.check_required_keys(parse_json_object(text), required_keys)

    def upload_file(self, filename: str, content: bytes, mime_type: str) -> dict[str, Any]:
        if self.name != "openai":
            return super().upload_file(filename, content, mime_type)
        buffer = io.BytesIO(content)
        buffer.name = filename
        try:
            uploaded = self.client.files.create(file=buffer, purpose="assistants")
        except Exception as exc:
            raise self._wrap_error(exc) from exc
        log.info("Uploaded %s to %s as %s", filename, self.name, uploaded.id)
        return {"fileId": uploaded.id, "fileUri": uploaded.id}

    def list_models(self) -> list[dict[str, Any]]:
        try:
            page = self.client.models.list()
        except Exception as exc:
            raise self._wrap_error(exc) from exc
        return [{"id": item.id, "name": item.id} for item in page]
