from __future__ import annotations

from unittest.mock import patch

import pytest

from omni_backend.ai.errors import ProviderRequestError
from omni_backend.ai.generation import VideoResult
from omni_backend.ai.pipeline import (
    CANVAS_FAILURE_TEXT,
    IMAGE_FAILURE_TEXT,
    VIDEO_FAILURE_TEXT,
    WEB_SEARCH_FAILURE_TEXT,
    WEB_SEARCH_FALLBACK_NOTE,
    ReplyOutcome,
    ReplyPipeline,
    ReplyRequest,
    normalize_commands,
    select_command,
)
from omni_backend.ai.providers.base import ProviderAdapter, StreamChunk
from omni_backend.ai.settings import AISettings


class FakeAdapter(ProviderAdapter):
    name = "fake"

    def __init__(self, chunks=(), structured=None, error=None):
        super().__init__("fake-key")
        self.chunks = list(chunks)
        self.structured = structured
        self.error = error
        self.calls = []

    def stream_reply(self, model, messages, settings, *, web_search=False):
        self.calls.append({"model": model, "messages": list(messages), "web_search": web_search})
        if self.error is not None:
            raise self.error
        for text in self.chunks:
            yield StreamChunk(text=text)
        yield StreamChunk(done=True, usage={"promptTokens": 3, "completionTokens": 2, "totalTokens": 5}, finish_reason="stop")

    def generate_structured(self, model, messages, settings, *, required_keys=(), web_search=False):
        self.calls.append({"model": model, "messages": list(messages), "web_search": web_search})
        if self.error is not None:
            raise self.error
        return dict(self.structured)


HISTORY = [{"role": "user", "content": "Draw a lighthouse at dusk"}]


def _request(**overrides):
    values = {
        "model": "gemini-2.0-flash",
        "provider": "google",
        "api_key": "user-key",
        "settings": AISettings(),
        "history": HISTORY,
    }
    values.update(overrides)
    return ReplyRequest(**values)


def _pipeline(**overrides):
    values = {"loader": lambda path: b"", "resolve_key": lambda provider: f"{provider}-server-key"}
    values.update(overrides)
    return ReplyPipeline(**values)


def _run(pipeline, request):
    outcome = ReplyOutcome(model=request.model, provider=request.provider)
    deltas = list(pipeline.stream(request, outcome))
    return deltas, outcome


def test_normalize_and_select_commands():
    assert normalize_commands(["/Image", "search", "image", "unknown", None]) == ["image", "search"]
    assert select_command(["search", "canvas", "video"]) == "video"
    assert select_command(["search"]) is None
    assert select_command([]) is None


def test_chat_streams_deltas_and_records_usage():
    adapter = FakeAdapter(chunks=["Hel", "lo"])
    with patch("omni_backend.ai.pipeline.get_adapter", return_value=adapter):
        deltas, outcome = _run(_pipeline(), _request(chat_system_prompt="You are terse."))

    assert deltas == ["Hel", "lo"]
    assert outcome.content == "Hello"
    assert outcome.finish_reason == "stop"
    assert outcome.usage["totalTokens"] == 5
    assert outcome.response_time_ms is not None
    system = adapter.calls[0]["messages"][0]
    assert system.role == "system"
    assert system.text.startswith("You are terse.")


def test_chat_applies_context_window():
    history = [{"role": "user", "content": f"message {index}"} for index in range(5)]
    adapter = FakeAdapter(chunks=["ok"])
    with patch("omni_backend.ai.pipeline.get_adapter", return_value=adapter):
        _run(_pipeline(), _request(history=history, settings=AISettings(context_window=2)))

    texts = [message.text for message in adapter.calls[0]["messages"] if message.role == "user"]
    assert texts == ["message 3", "message 4"]


def test_chat_failure_becomes_error_outcome():
    adapter = FakeAdapter(error=ProviderRequestError("Rate limited", status_code=429))
    with patch("omni_backend.ai.pipeline.get_adapter", return_value=adapter):
        deltas, outcome = _run(_pipeline(), _request())

    assert deltas == []
    assert outcome.finish_reason == "error"
    assert outcome.content == "Error generating response: Rate limit exceeded. Please wait a moment and try again."
    assert outcome.metadata["error"] is True


def test_search_command_enables_grounding_and_citations():
    adapter = FakeAdapter(chunks=["See https://example.com/page for details."])
    with patch("omni_backend.ai.pipeline.get_adapter", return_value=adapter):
        _, outcome = _run(_pipeline(), _request(model="gemini-1.5-pro", commands=["search"]))

    assert adapter.calls[0]["web_search"] is True
    assert outcome.metadata["webSearch"] is True
    assert outcome.metadata["citations"][0]["url"].startswith("https://example.com/page")


class GroundingFailsAdapter(FakeAdapter):
    def stream_reply(self, model, messages, settings, *, web_search=False):
        if web_search:
            self.calls.append({"model": model, "messages": list(messages), "web_search": web_search})
            raise ProviderRequestError("search tool unavailable", status_code=503)
        yield from super().stream_reply(model, messages, settings, web_search=web_search)


def test_failed_grounded_search_answers_without_it():
    adapter = GroundingFailsAdapter(chunks=["From memory."])
    with patch("omni_backend.ai.pipeline.get_adapter", return_value=adapter):
        deltas, outcome = _run(_pipeline(), _request(model="gemini-1.5-pro", commands=["search"]))

    assert [call["web_search"] for call in adapter.calls] == [True, False]
    assert deltas == ["From memory.", WEB_SEARCH_FALLBACK_NOTE]
    assert outcome.content == "From memory." + WEB_SEARCH_FALLBACK_NOTE
    assert outcome.finish_reason == "stop"
    assert outcome.metadata["webSearchFallback"] is True
    assert "webSearch" not in outcome.metadata
    assert "error" not in outcome.metadata


def test_search_fallback_failure_apologises():
    adapter = FakeAdapter(error=ProviderRequestError("down", status_code=503))
    with patch("omni_backend.ai.pipeline.get_adapter", return_value=adapter):
        deltas, outcome = _run(_pipeline(), _request(model="gemini-1.5-pro", commands=["search"]))

    assert len(adapter.calls) == 2
    assert deltas == []
    assert outcome.content == WEB_SEARCH_FAILURE_TEXT
    assert outcome.metadata["error"] is True


def test_image_command_uses_openai_key_for_other_providers():
    with patch("omni_backend.ai.pipeline.generate_image", return_value="https://img.example/1.png") as mock_generate:
        deltas, outcome = _run(_pipeline(), _request(model="claude-3-5-sonnet-20241022", provider="anthropic", commands=["image"]))

    args, kwargs = mock_generate.call_args
    assert args == ("openai", "Draw a lighthouse at dusk")
    assert kwargs["api_key"] == "openai-server-key"
    assert outcome.finish_reason == "image_generated"
    assert outcome.metadata["generatedImageUrl"] == "https://img.example/1.png"
    assert deltas == [outcome.content]


def test_image_command_failure():
    with patch("omni_backend.ai.pipeline.generate_image", side_effect=ProviderRequestError("boom")):
        _, outcome = _run(_pipeline(), _request(commands=["image"]))

    assert outcome.content == IMAGE_FAILURE_TEXT
    assert outcome.finish_reason == "error"


@pytest.mark.parametrize(("multi", "expected"), [(False, "Vertex quota exhausted"), (True, VIDEO_FAILURE_TEXT)])
def test_video_failure_text_depends_on_mode(multi, expected):
    failed = VideoResult(video_url=None, duration="8s", resolution="1280x720", status="failed", provider="google", error="Vertex quota exhausted")
    with patch("omni_backend.ai.pipeline.generate_video", return_value=failed):
        _, outcome = _run(_pipeline(), _request(commands=["video"], multi=multi))

    assert outcome.content == expected
    assert outcome.error == "Vertex quota exhausted"


def test_video_command_success():
    result = VideoResult(video_url="https://vid.example/1.mp4", duration="8s", resolution="1280x720", status="success", provider="google")
    with patch("omni_backend.ai.pipeline.generate_video", return_value=result):
        _, outcome = _run(_pipeline(), _request(commands=["video"]))

    assert outcome.content == "Here's your generated video:\n\n[Generated Video](https://vid.example/1.mp4)"
    assert outcome.metadata["videoResolution"] == "1280x720"


def test_canvas_command_creates_artifacts():
    payload = {
        "intro": "Here you go.",
        "artifacts": [
            {"id": "a1", "filename": "index.html", "language": "html", "content": "<p>hi</p>", "description": "Page"},
        ],
        "summary": "Done.",
    }
    created = []
    adapter = FakeAdapter(structured=payload)
    with patch("omni_backend.ai.pipeline.get_adapter", return_value=adapter):
        _, outcome = _run(_pipeline(create_artifacts=created.extend), _request(commands=["canvas"]))

    assert created[0]["filename"] == "index.html"
    assert outcome.content == "Here you go.\n\n**Artifact 1: index.html**\nPage\n\nDone."
    assert outcome.metadata == {"artifactCount": 1, "structuredOutput": True}


@pytest.mark.parametrize(
    ("multi", "expected"),
    [
        (False, "Error generating structured output: bad json"),
        (True, CANVAS_FAILURE_TEXT),
    ],
)
def test_canvas_failure(multi, expected):
    adapter = FakeAdapter(error=ProviderRequestError("bad json"))
    with patch("omni_backend.ai.pipeline.get_adapter", return_value=adapter):
        _, outcome = _run(_pipeline(), _request(commands=["canvas"], multi=multi))

    assert outcome.content == expected
    assert outcome.finish_reason == "error"


def test_generate_returns_finished_outcome():
    adapter = FakeAdapter(chunks=["a", "b"])
    with patch("omni_backend.ai.pipeline.get_adapter", return_value=adapter):
        outcome = _pipeline().generate(_request())

    assert outcome.content == "ab"
    metadata = outcome.response_metadata()
    assert metadata["finishReason"] == "stop"
    assert metadata["provider"] == "google"
    assert metadata["requestId"]
