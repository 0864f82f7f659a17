from __future__ import annotations

import logging
import time
from typing import Any, Iterator, Optional, Sequence

from anthropic import Anthropic

from ..canonical import ModelMessage
from ..prompts import JSON_ONLY_INSTRUCTION, compose_system_prompt
from ..settings import AISettings
from .base import ProviderAdapter, StreamChunk, normalize_usage, parse_json_object

log = logging.getLogger(__name__)

DEFAULT_MAX_TOKENS = 4096


def _convert_messages(messages: Sequence[ModelMessage]) -> tuple[str, list[dict[str, Any]]]:
    """Split out the system prompt; Claude takes it as a separate parameter."""

    system_parts: list[str] = []
    converted: list[dict[str, Any]] = []
    for message in messages:
        if message.role == "system":
            system_parts.append(message.text)
            continue
        role = "assistant" if message.role == "assistant" else "user"
        if not message.images:
            converted.append({"role": role, "content": message.text})
            continue
        blocks: list[dict[str, Any]] = []
        for image in message.images:
            if image.data is not None:
                source = {"type": "base64", "media_type": image.mime_type, "data": image.base64_data}
            else:
                source = {"type": "url", "url": image.url}
            blocks.append({"type": "image", "source": source})
        if message.text:
            blocks.append({"type": "text", "text": message.text})
        converted.append({"role": role, "content": blocks})
    return compose_system_prompt(*system_parts), converted


class AnthropicAdapter(ProviderAdapter):
    name = "anthropic"

    def __init__(self, api_key: str, *, base_url: Optional[str] = None) -> None:
        super().__init__(api_key, base_url=base_url)
        self.client = Anthropic(api_key=api_key, base_url=base_url)

    def _request(
        self,
        model: str,
        messages: Sequence[ModelMessage],
        settings: AISettings,
        extra_system: str | None = None,
    ) -> dict[str, Any]:
        system_text, converted = _convert_messages(messages)
        system_text = compose_system_prompt(system_text, extra_system)
        request: dict[str, Any] = {
            "model": model,
            "messages": converted,
            "max_tokens": settings.max_tokens or DEFAULT_MAX_TOKENS,
            "temperature": min(settings.temperature, 1.0),
        }
        if system_text:
            request["system"] = system_text
        return request

    def stream_reply(
        self,
        model: str,
        messages: Sequence[ModelMessage],
        settings: AISettings,
        *,
        web_search: bool = False,
    ) -> Iterator[StreamChunk]:
        request = self._request(model, messages, settings)
        started = time.perf_counter()
        try:
            with self.client.messages.stream(**request) as stream:
                for text in stream.text_stream:
                    if text:
                        yield StreamChunk(text=text)
                final = stream.get_final_message()
        except Exception as exc:
            raise self._wrap_error(exc) from exc

        self._log_latency("stream", model, started)
        usage = None
        if getattr(final, "usage", None):
            usage = normalize_usage(
                input_tokens=final.usage.input_tokens,
                output_tokens=final.usage.output_tokens,
            )
        yield StreamChunk(done=True, usage=usage, finish_reason=getattr(final, "stop_reason", None))

    def generate_structured(
        self,
        model: str,
        messages: Sequence[ModelMessage],
        settings: AISettings,
        *,
        required_keys: Sequence[str] = (),
        web_search: bool = False,
    ) -> dict[str, Any]:
        request = self._request(model, messages, settings, extra_system=JSON_ONLY_INSTRUCTION)
        started = time.perf_counter()
        try:
            response = self.client.messages.create(**request)
        except Exception as exc:
            raise self._wrap_error(exc) from exc
        self._log_latency("structured", model, started)

        text = "".join(
            getattr(block, "text", "") for block in response.content if getattr(block, "type", None) == "text"
        )
        return self.check_required_keys(parse_json_object(text), required_keys)

    def list_models(self) -> list[dict[str, Any]]:
        try:
            page = self.client.models.list()
        except Exception as exc:
            raise self._wrap_error(exc) from exc
        return [{"id": item.id, "name": getattr(item, "display_name", None) or item.id} for item in page]
