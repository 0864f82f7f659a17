"""Reply pipeline shared by the single- and multi-model message endpoints.

``ReplyPipeline.stream`` yields text deltas and fills a ``ReplyOutcome`` with
the final content and metadata. Slash commands (image, video, canvas) take
priority over a normal completion; ``search`` combines with any of them.
"""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Iterator, Mapping, Optional, Sequence

from .canonical import (
    ArtifactRefPart,
    BytesLoader,
    DEFAULT_MAX_INLINE_BYTES,
    LibraryResolver,
    build_model_messages,
    message_parts,
    render_text,
)
from .errors import ProviderError, describe_provider_error
from .generation import (
    VertexSettings,
    extract_citations,
    format_canvas_response,
    generate_image,
    generate_structured_output,
    generate_video,
    supports_search_grounding,
)
from .prompts import (
    CANVAS_INSTRUCTION,
    CANVAS_SEARCH_NOTE,
    DEFAULT_SYSTEM_INSTRUCTION,
    compose_system_prompt,
    response_mode_instruction,
)
from .providers import ProviderAdapter, get_adapter
from .registry import supports_feature
from .settings import AISettings

log = logging.getLogger(__name__)

__all__ = [
    "COMMANDS",
    "ReplyOutcome",
    "ReplyPipeline",
    "ReplyRequest",
    "normalize_commands",
    "select_command",
]

COMMANDS = ("image", "video", "canvas", "search")
_COMMAND_PRIORITY = ("image", "video", "canvas")

IMAGE_FAILURE_TEXT = "Sorry, I couldn't generate the image. Please try again."
VIDEO_FAILURE_TEXT = "Sorry, I couldn't generate the video. Please try again."
CANVAS_FAILURE_TEXT = "Sorry, I couldn't generate the canvas artifacts. Please try again."
WEB_SEARCH_FAILURE_TEXT = (
    "I apologize, but I'm unable to perform a web search at the moment. "
    "Please try again later or rephrase your question."
)
WEB_SEARCH_FALLBACK_NOTE = (
    "\n\n*Note: This response is based on training data and may not include the most recent information.*"
)

ArtifactHookFactory = Callable[[ProviderAdapter, str], Callable[[ArtifactRefPart], None]]
ArtifactCreator = Callable[[Sequence[Mapping[str, Any]]], list[dict[str, Any]]]
MediaCallback = Callable[[dict[str, Any]], Any]
KeyResolver = Callable[[str], str]


def normalize_commands(values: Iterable[Any] | None) -> list[str]:
    commands: list[str] = []
    for value in values or []:
        name = str(value or "").strip().lstrip("/").lower()
        if name in COMMANDS and name not in commands:
            commands.append(name)
    return commands


def select_command(commands: Iterable[str]) -> Optional[str]:
    """The command that decides how the reply is produced, or ``None`` for chat."""
    present = set(commands)
    return next((name for name in _COMMAND_PRIORITY if name in present), None)


@dataclass(slots=True)
class ReplyRequest:
    model: str
    provider: str
    api_key: str
    settings: AISettings
    history: Sequence[Mapping[str, Any]]
    commands: Sequence[str] = ()
    chat_system_prompt: str = ""
    multi: bool = False


@dataclass(slots=True)
class ReplyOutcome:
    model: str
    provider: str
    content: str = ""
    finish_reason: Optional[str] = None
    usage: Optional[dict[str, Optional[int]]] = None
    metadata: dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None
    request_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    started_at: float = field(default_factory=time.perf_counter)
    response_time_ms: Optional[int] = None

    def finish(self) -> None:
        self.response_time_ms = int((time.perf_counter() - self.started_at) * 1000)

    def response_metadata(self) -> dict[str, Any]:
        return {
            "usage": self.usage,
            "finishReason": self.finish_reason,
            "responseTime": self.response_time_ms,
            "model": self.model,
            "provider": self.provider,
            "requestId": self.request_id,
        }

    def fail(self, text: str, exc: Optional[BaseException] = None) -> None:
        self.content = text
        self.finish_reason = "error"
        self.error = describe_provider_error(exc) if exc is not None else text
        self.metadata["error"] = True


class ReplyPipeline:
    def __init__(
        self,
        *,
        loader: BytesLoader,
        resolve_key: KeyResolver,
        resolver: Optional[LibraryResolver] = None,
        artifact_hook_factory: Optional[ArtifactHookFactory] = None,
        create_artifacts: Optional[ArtifactCreator] = None,
        on_media_generated: Optional[MediaCallback] = None,
        vertex: Optional[VertexSettings] = None,
        max_inline_bytes: int = DEFAULT_MAX_INLINE_BYTES,
        server_url: Optional[str] = None,
    ) -> None:
        self.loader = loader
        self.resolve_key = resolve_key
        self.resolver = resolver
        self.artifact_hook_factory = artifact_hook_factory
        self.create_artifacts = create_artifacts
        self.on_media_generated = on_media_generated
        self.vertex = vertex
        self.max_inline_bytes = max_inline_bytes
        self.server_url = server_url

    def adapter_for(self, request: ReplyRequest) -> ProviderAdapter:
        return get_adapter(request.provider, request.api_key, server_url=self.server_url)

    def generate(self, request: ReplyRequest) -> ReplyOutcome:
        outcome = ReplyOutcome(model=request.model, provider=request.provider)
        for _ in self.stream(request, outcome):
            pass
        return outcome

    def stream(self, request: ReplyRequest, outcome: ReplyOutcome) -> Iterator[str]:
        """Yield text deltas; ``outcome`` holds the final reply when exhausted."""

        command = select_command(request.commands)
        log.info(
            "Generating reply with %s/%s (command=%s, multi=%s)",
            request.provider,
            request.model,
            command or "chat",
            request.multi,
        )
        try:
            if command == "image":
                self._image(request, outcome)
            elif command == "video":
                self._video(request, outcome)
            elif command == "canvas":
                self._canvas(request, outcome)
            else:
                yield from self._chat(request, outcome)
        finally:
            outcome.finish()
        if outcome.content and command is not None:
            yield outcome.content

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def _last_user_text(self, request: ReplyRequest) -> str:
        for message in reversed(request.history):
            if message.get("role") == "user":
                return render_text(message_parts(message)).strip()
        return ""

    def _image(self, request: ReplyRequest, outcome: ReplyOutcome) -> None:
        prompt = self._last_user_text(request)
        image_provider = request.provider if supports_feature(request.provider, "imageGeneration") else "openai"
        try:
            api_key = request.api_key if image_provider == request.provider else self.resolve_key(image_provider)
            image_url = generate_image(
                image_provider,
                prompt,
                api_key=api_key,
                vertex=self.vertex,
                on_generated=self.on_media_generated,
            )
        except ProviderError as exc:
            log.warning("Image generation with %s failed: %s", image_provider, exc)
            outcome.fail(IMAGE_FAILURE_TEXT, exc)
            return
        outcome.content = f"Here's your generated image:\n\n![Generated Image]({image_url})"
        outcome.finish_reason = "image_generated"
        outcome.metadata.update({"imagePrompt": prompt, "generatedImageUrl": image_url})

    def _video(self, request: ReplyRequest, outcome: ReplyOutcome) -> None:
        prompt = self._last_user_text(request)
        result = generate_video("google", prompt, vertex=self.vertex, on_generated=self.on_media_generated)
        if not result.ok:
            text = VIDEO_FAILURE_TEXT if request.multi else (result.error or VIDEO_FAILURE_TEXT)
            outcome.fail(text)
            outcome.error = result.error or VIDEO_FAILURE_TEXT
            return
        outcome.content = f"Here's your generated video:\n\n[Generated Video]({result.video_url})"
        outcome.finish_reason = "video_generated"
        outcome.metadata.update(
            {
                "videoPrompt": prompt,
                "generatedVideoUrl": result.video_url,
                "videoDuration": result.duration,
                "videoResolution": result.resolution,
            }
        )

    def _canvas(self, request: ReplyRequest, outcome: ReplyOutcome) -> None:
        web_search = "search" in request.commands
        instruction = CANVAS_INSTRUCTION + (CANVAS_SEARCH_NOTE if web_search else "")
        try:
            adapter = self.adapter_for(request)
            messages = self._model_messages(request, adapter, extra_instruction=instruction)
            payload = generate_structured_output(
                adapter,
                request.model,
                messages,
                request.settings,
                web_search=web_search,
            )
        except ProviderError as exc:
            log.warning("Structured output with %s failed: %s", request.model, exc)
            if request.multi:
                outcome.fail(CANVAS_FAILURE_TEXT, exc)
            else:
                outcome.fail(f"Error generating structured output: {describe_provider_error(exc)}", exc)
            return

        artifacts = payload.get("artifacts") or []
        if self.create_artifacts is not None and artifacts:
            self.create_artifacts(artifacts)
        outcome.content = format_canvas_response(payload)
        outcome.finish_reason = "stop"
        outcome.metadata.update({"artifactCount": len(artifacts), "structuredOutput": True})

    # ------------------------------------------------------------------
    # Normal chat
    # ------------------------------------------------------------------

    def _system_prompt(self, request: ReplyRequest, extra_instruction: Optional[str] = None) -> str:
        base = request.chat_system_prompt or request.settings.system_prompt or DEFAULT_SYSTEM_INSTRUCTION
        return compose_system_prompt(
            base,
            response_mode_instruction(request.settings.response_mode),
            extra_instruction,
        )

    def _model_messages(
        self,
        request: ReplyRequest,
        adapter: ProviderAdapter,
        extra_instruction: Optional[str] = None,
    ):
        hook = None
        if self.artifact_hook_factory is not None:
            hook = self.artifact_hook_factory(adapter, request.provider)
        history = list(request.history)
        if request.settings.context_window:
            history = history[-request.settings.context_window :]
        return build_model_messages(
            history,
            loader=self.loader,
            system_prompt=self._system_prompt(request, extra_instruction),
            resolver=self.resolver,
            max_inline_bytes=self.max_inline_bytes,
            artifact_hook=hook,
        )

    def _stream_completion(
        self,
        adapter: ProviderAdapter,
        request: ReplyRequest,
        messages: Any,
        outcome: ReplyOutcome,
        collected: list[str],
        *,
        web_search: bool,
    ) -> Iterator[str]:
        for chunk in adapter.stream_reply(request.model, messages, request.settings, web_search=web_search):
            if chunk.text:
                collected.append(chunk.text)
                yield chunk.text
            if chunk.done:
                outcome.usage = chunk.usage
                outcome.finish_reason = chunk.finish_reason or "stop"

    def _chat(self, request: ReplyRequest, outcome: ReplyOutcome) -> Iterator[str]:
        web_search = "search" in request.commands and request.provider == "google"
        grounded = web_search and supports_search_grounding(request.model)
        collected: list[str] = []
        fell_back = False
        try:
            adapter = self.adapter_for(request)
            messages = self._model_messages(request, adapter)
            try:
                yield from self._stream_completion(
                    adapter, request, messages, outcome, collected, web_search=web_search
                )
            except ProviderError as exc:
                # Grounded search failures get one plain retry while nothing has been streamed yet.
                if not grounded or collected:
                    raise
                log.warning("Web search with %s failed, answering without it: %s", request.model, exc)
                fell_back = True
                yield from self._stream_completion(
                    adapter, request, messages, outcome, collected, web_search=False
                )
        except ProviderError as exc:
            log.warning("Reply from %s/%s failed: %s", request.provider, request.model, exc)
            if fell_back and not collected:
                outcome.fail(WEB_SEARCH_FAILURE_TEXT, exc)
            else:
                outcome.fail(f"Error generating response: {describe_provider_error(exc)}", exc)
            return

        if fell_back:
            collected.append(WEB_SEARCH_FALLBACK_NOTE)
            outcome.metadata["webSearchFallback"] = True
            yield WEB_SEARCH_FALLBACK_NOTE
        outcome.content = "".join(collected)
        if outcome.finish_reason is None:
            outcome.finish_reason = "stop"
        if grounded and not fell_back:
            outcome.metadata["webSearch"] = True
            citations = extract_citations(outcome.content)
            if citations:
                outcome.metadata["citations"] = citations
