from __future__ import annotations

import json
import logging
import re
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Iterator, Optional, Sequence

from ..canonical import ModelMessage
from ..errors import ProviderRequestError, UnsupportedFeatureError
from ..settings import AISettings

log = logging.getLogger(__name__)

__all__ = [
    "GenerationResult",
    "ProviderAdapter",
    "StreamChunk",
    "normalize_usage",
    "parse_json_object",
]

_FENCE_RE = re.compile(r"^```(?:json)?\s*(.*?)\s*```$", re.DOTALL)


@dataclass(slots=True)
class StreamChunk:
    """A text delta, or the terminal chunk that carries usage information."""

    text: str = ""
    done: bool = False
    usage: Optional[dict[str, Optional[int]]] = None
    finish_reason: Optional[str] = None
    raw: Any = None


@dataclass(slots=True)
class GenerationResult:
    text: str
    usage: Optional[dict[str, Optional[int]]] = None
    finish_reason: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)


def normalize_usage(
    *,
    input_tokens: Optional[int],
    output_tokens: Optional[int],
    total_tokens: Optional[int] = None,
) -> Optional[dict[str, Optional[int]]]:
    """Provider usage counters in the ``promptTokens``/``completionTokens`` shape."""

    if input_tokens is None and output_tokens is None and total_tokens is None:
        return None
    if total_tokens is None and input_tokens is not None and output_tokens is not None:
        total_tokens = input_tokens + output_tokens
    return {
        "promptTokens": input_tokens,
        "completionTokens": output_tokens,
        "totalTokens": total_tokens,
    }


def parse_json_object(text: str) -> dict[str, Any]:
    """Parse a model reply that should contain exactly one JSON object."""

    candidate = (text or "").strip()
    fenced = _FENCE_RE.match(candidate)
    if fenced:
        candidate = fenced.group(1)
    if not candidate.startswith("{"):
        start, end = candidate.find("{"), candidate.rfind("}")
        if start == -1 or end <= start:
            raise ProviderRequestError("Model did not return a JSON object.")
        candidate = candidate[start : end + 1]
    try:
        parsed = json.loads(candidate)
    except json.JSONDecodeError as exc:
        raise ProviderRequestError(f"Model returned invalid JSON: {exc}") from exc
    if not isinstance(parsed, dict):
        raise ProviderRequestError("Model did not return a JSON object.")
    return parsed


class ProviderAdapter(ABC):
    """Synchronous facade over one provider SDK."""

    name: str = "provider"
    accepts_file_references = False

    def __init__(self, api_key: str, *, base_url: Optional[str] = None) -> None:
        self.api_key = api_key
        self.base_url = base_url

    @abstractmethod
    def stream_reply(
        self,
        model: str,
        messages: Sequence[ModelMessage],
        settings: AISettings,
        *,
        web_search: bool = False,
    ) -> Iterator[StreamChunk]:
        """Yield text deltas followed by one ``done`` chunk."""

    def generate_reply(
        self,
        model: str,
        messages: Sequence[ModelMessage],
        settings: AISettings,
        *,
        web_search: bool = False,
    ) -> GenerationResult:
        chunks: list[str] = []
        usage = None
        finish_reason = None
        for chunk in self.stream_reply(model, messages, settings, web_search=web_search):
            if chunk.text:
                chunks.append(chunk.text)
            if chunk.done:
                usage = chunk.usage
                finish_reason = chunk.finish_reason
        return GenerationResult(text="".join(chunks), usage=usage, finish_reason=finish_reason)

    @abstractmethod
    def generate_structured(
        self,
        model: str,
        messages: Sequence[ModelMessage],
        settings: AISettings,
        *,
        required_keys: Sequence[str] = (),
        web_search: bool = False,
    ) -> dict[str, Any]:
        """Return a JSON object produced by the model."""

    def upload_file(self, filename: str, content: bytes, mime_type: str) -> dict[str, Any]:
        """Upload ``content`` to the provider and return ``{"fileId", "fileUri"}``."""
        raise UnsupportedFeatureError(
            f"File uploads are not supported for provider '{self.name}'.",
            provider=self.name,
        )

    def list_models(self) -> list[dict[str, Any]]:
        return []

    @staticmethod
    def check_required_keys(payload: dict[str, Any], required_keys: Sequence[str]) -> dict[str, Any]:
        missing = [key for key in required_keys if key not in payload]
        if missing:
            raise ProviderRequestError(f"Structured output is missing keys: {', '.join(missing)}")
        return payload

    def _wrap_error(self, exc: Exception) -> ProviderRequestError:
        log.warning("%s request failed: %s", self.name, exc)
        status = getattr(exc, "status_code", None)
        return ProviderRequestError(str(exc) or exc.__class__.__name__, provider=self.name, status_code=status)

    def _log_latency(self, call: str, model: str, started: float) -> None:
        log.info("%s %s %s finished in %.0f ms", self.name, call, model, (time.perf_counter() - started) * 1000.0)
