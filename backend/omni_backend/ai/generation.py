"""Media generation, structured canvas output and citation extraction.

Image and video generation talk to Vertex AI over REST (``requests``) and to
OpenAI through its SDK. Successful generations are reported to an optional
``on_generated`` callback, which the chat routes use to add the output to the
user's media library.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import asdict, dataclass
from typing import Any, Callable, Mapping, Optional, Sequence
from urllib.parse import urlparse

import requests
from openai import OpenAI

from .canonical import ModelMessage
from .errors import ProviderRequestError, UnsupportedFeatureError
from .providers.base import ProviderAdapter
from .providers.google import SEARCH_GROUNDING_MODELS, supports_search_grounding
from .settings import AISettings

log = logging.getLogger(__name__)

__all__ = [
    "CANVAS_ARTIFACT_KEYS",
    "CANVAS_SCHEMA",
    "SEARCH_GROUNDING_MODELS",
    "VertexSettings",
    "VideoResult",
    "extract_citations",
    "format_canvas_response",
    "generate_image",
    "generate_structured_output",
    "generate_video",
    "supports_search_grounding",
]

VERTEX_ENDPOINT = (
    "https://aiplatform.googleapis.com/v1/projects/{project}/locations/{location}"
    "/publishers/google/models/{model}:predict"
)
IMAGEN_MODEL = "imagegeneration"
VEO_MODEL = "veo-3.0-generate-preview"
REQUEST_TIMEOUT_SECONDS = 120


CANVAS_ARTIFACT_KEYS = ("id", "filename", "language", "content", "description")
CANVAS_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["intro", "artifacts", "summary"],
    "properties": {
        "intro": {"type": "string"},
        "artifacts": {
            "type": "array",
            "items": {
                "type": "object",
                "required": list(CANVAS_ARTIFACT_KEYS),
                "properties": {key: {"type": "string"} for key in CANVAS_ARTIFACT_KEYS},
            },
        },
        "summary": {"type": "string"},
    },
}

GenerationCallback = Callable[[dict[str, Any]], Any]


@dataclass(slots=True)
class VertexSettings:
    project: Optional[str]
    access_token: Optional[str]
    location: str = "us-central1"

    def endpoint(self, model: str) -> str:
        if not self.project or not self.access_token:
            raise UnsupportedFeatureError(
                "GOOGLE_CLOUD_PROJECT and GOOGLE_ACCESS_TOKEN must be set for Vertex AI generation.",
                provider="google",
            )
        return VERTEX_ENDPOINT.format(project=self.project, location=self.location, model=model)


@dataclass(slots=True)
class VideoResult:
    video_url: Optional[str]
    duration: str
    resolution: str
    status: str
    provider: str
    thumbnail_url: Optional[str] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status == "success" and bool(self.video_url)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        return {
            "videoUrl": data["video_url"],
            "thumbnailUrl": data["thumbnail_url"],
            "duration": data["duration"],
            "resolution": data["resolution"],
            "status": data["status"],
            "error": data["error"],
            "provider": data["provider"],
        }


def _vertex_predict(vertex: VertexSettings, model: str, body: dict[str, Any], label: str) -> dict[str, Any]:
    url = vertex.endpoint(model)
    headers = {
        "Authorization": f"Bearer {vertex.access_token}",
        "Content-Type": "application/json",
    }
    try:
        response = requests.post(url, headers=headers, json=body, timeout=REQUEST_TIMEOUT_SECONDS)
    except requests.RequestException as exc:
        raise ProviderRequestError(f"{label} error: {exc}", provider="google") from exc

    if response.status_code != 200:
        try:
            message = (response.json().get("error") or {}).get("message")
        except ValueError:
            message = None
        raise ProviderRequestError(
            f"{label} error: {message or 'Unknown error'}",
            provider="google",
            status_code=response.status_code,
        )
    return response.json()


def _first_prediction_bytes(payload: Mapping[str, Any]) -> Optional[str]:
    predictions = payload.get("predictions") or []
    if not predictions or not isinstance(predictions[0], Mapping):
        return None
    return predictions[0].get("bytesBase64Encoded")


def _parse_size(size: Optional[str]) -> tuple[int, int]:
    width, _, height = (size or "").partition("x")
    try:
        return int(width), int(height)
    except ValueError:
        return 1024, 1024


def _notify(on_generated: Optional[GenerationCallback], entry: dict[str, Any]) -> None:
    if on_generated is None:
        return
    try:
        on_generated(entry)
    except Exception as exc:
        log.warning("Failed to add generated %s to library: %s", entry.get("type"), exc)


def generate_image(
    provider: str,
    prompt: str,
    options: Optional[Mapping[str, Any]] = None,
    *,
    api_key: Optional[str] = None,
    vertex: Optional[VertexSettings] = None,
    on_generated: Optional[GenerationCallback] = None,
) -> str:
    """Generate one image and return its URL (a data URL for Imagen)."""

    options = dict(options or {})
    log.info("Generating image with %s", provider)

    if provider == "openai":
        if not api_key:
            raise ProviderRequestError("OpenAI DALL-E error: API key is missing", provider="openai")
        client = OpenAI(api_key=api_key)
        try:
            response = client.images.generate(
                model="dall-e-3",
                prompt=prompt,
                n=1,
                size=options.get("size") or "1024x1024",
                quality=options.get("quality") or "standard",
                style=options.get("style") or "natural",
            )
        except Exception as exc:
            raise ProviderRequestError(f"OpenAI DALL-E error: {exc}", provider="openai") from exc
        image_url = response.data[0].url if response.data else None
        if not image_url:
            raise ProviderRequestError("No image URL returned from OpenAI", provider="openai")
        description, model = "AI-generated image using DALL-E 3", "dall-e-3"

    elif provider == "google":
        width, height = _parse_size(options.get("size"))
        body = {
            "instances": [{"prompt": prompt, "image": {"width": width, "height": height}}],
            "parameters": {"sampleCount": 1},
        }
        payload = _vertex_predict(vertex or VertexSettings(None, None), IMAGEN_MODEL, body, "Google Imagen")
        image_base64 = _first_prediction_bytes(payload)
        if not image_base64:
            raise ProviderRequestError("No image data returned from Google Imagen", provider="google")
        image_url = f"data:image/png;base64,{image_base64}"
        description, model = "AI-generated image using Google Imagen", "imagen"

    else:
        raise UnsupportedFeatureError(f"Image generation not supported for provider: {provider}", provider=provider)

    _notify(
        on_generated,
        {
            "type": "image",
            "title": f"Generated Image: {prompt[:50]}...",
            "description": description,
            "externalUrl": image_url,
            "prompt": prompt,
            "model": model,
            "generationParams": options,
        },
    )
    return image_url


def _resolution(aspect_ratio: Optional[str]) -> str:
    return "1280x720" if aspect_ratio == "16:9" else "720x720"


def generate_video(
    provider: str,
    prompt: str,
    options: Optional[Mapping[str, Any]] = None,
    *,
    vertex: Optional[VertexSettings] = None,
    on_generated: Optional[GenerationCallback] = None,
) -> VideoResult:
    """Generate a short video. Failures come back as a result with ``status="error"``."""

    options = dict(options or {})
    seconds = options.get("duration") or 5
    aspect_ratio = options.get("aspectRatio") or "16:9"
    log.info("Generating video with %s", provider)

    try:
        if provider == "openai":
            raise UnsupportedFeatureError(
                "OpenAI Sora video generation is not yet publicly available. Please use Google Veo instead.",
                provider="openai",
            )
        if provider != "google":
            raise UnsupportedFeatureError(
                f"Video generation not supported for provider: {provider}", provider=provider
            )

        body = {
            "instances": [
                {"prompt": prompt, "video": {"duration": f"{seconds}s", "aspectRatio": aspect_ratio}}
            ],
            "parameters": {"quality": options.get("quality") or "standard"},
        }
        payload = _vertex_predict(vertex or VertexSettings(None, None), VEO_MODEL, body, "Google Veo")
        video_base64 = _first_prediction_bytes(payload)
        if not video_base64:
            raise ProviderRequestError("No video data returned from Google Veo", provider="google")
    except (ProviderRequestError, UnsupportedFeatureError) as exc:
        log.warning("Video generation failed: %s", exc)
        return VideoResult(
            video_url=None,
            duration=f"{seconds}s",
            resolution=_resolution(aspect_ratio),
            status="error",
            provider=provider,
            error=f"Video generation failed: {exc}",
        )

    result = VideoResult(
        video_url=f"data:video/mp4;base64,{video_base64}",
        duration=f"{seconds}s",
        resolution=_resolution(aspect_ratio),
        status="success",
        provider="google",
    )
    _notify(
        on_generated,
        {
            "type": "video",
            "title": f"Generated Video: {prompt[:50]}...",
            "description": "AI-generated video using Google Veo",
            "externalUrl": result.video_url,
            "prompt": prompt,
            "model": "veo-3.0",
            "generationParams": options,
            "metadata": {"duration": seconds, "resolution": result.resolution, "aspectRatio": aspect_ratio},
        },
    )
    return result


def generate_structured_output(
    adapter: ProviderAdapter,
    model: str,
    messages: Sequence[ModelMessage],
    settings: AISettings,
    *,
    web_search: bool = False,
) -> dict[str, Any]:
    """Ask ``adapter`` for a canvas object and validate its shape."""

    log.info("Generating structured output with %s/%s", adapter.name, model)
    payload = adapter.generate_structured(
        model,
        messages,
        settings,
        required_keys=CANVAS_SCHEMA["required"],
        web_search=web_search,
    )

    artifacts = payload.get("artifacts")
    if not isinstance(artifacts, list):
        raise ProviderRequestError("Structured output field 'artifacts' must be a list.", provider=adapter.name)
    cleaned: list[dict[str, str]] = []
    for index, item in enumerate(artifacts, start=1):
        if not isinstance(item, Mapping):
            raise ProviderRequestError(f"Artifact {index} is not an object.", provider=adapter.name)
        missing = [key for key in CANVAS_ARTIFACT_KEYS if key not in item]
        if missing:
            raise ProviderRequestError(
                f"Artifact {index} is missing keys: {', '.join(missing)}", provider=adapter.name
            )
        cleaned.append({key: str(item[key]) for key in CANVAS_ARTIFACT_KEYS})
    payload["artifacts"] = cleaned
    return payload


def format_canvas_response(payload: Mapping[str, Any]) -> str:
    """Render a canvas object as the assistant's chat text."""

    if not isinstance(payload.get("artifacts"), list) or "intro" not in payload:
        return json.dumps(payload, indent=2)

    blocks = [
        f"**Artifact {index}: {artifact.get('filename', '')}**\n{artifact.get('description', '')}"
        for index, artifact in enumerate(payload["artifacts"], start=1)
    ]
    text = str(payload.get("intro") or "")
    if blocks:
        text = f"{text}\n\n" + "\n\n".join(blocks)
    summary = payload.get("summary")
    if summary:
        text = f"{text}\n\n{summary}"
    return text


_NUMBERED_RE = re.compile(r"\[(\d+)\]\s*([^\[\n]+)")
_SOURCE_RE = re.compile(r"Source:\s*([^\n]+)", re.IGNORECASE)
_URL_RE = re.compile(r"https?://[^\s]+")


def _title_from_url(url: str) -> str:
    try:
        parsed = urlparse(url)
    except ValueError:
        return url
    domain = (parsed.hostname or "").replace("www.", "")
    segments = [segment for segment in parsed.path.split("/") if segment]
    tail = segments[-1] if segments else ""
    tail = re.sub(r"\.(html|php|aspx?)$", "", re.sub(r"[-_]", " ", tail), flags=re.IGNORECASE)
    title = " ".join(word[:1].upper() + word[1:] for word in tail.split(" "))
    return title.strip() or domain or url


def extract_citations(text: str, limit: int = 10) -> list[dict[str, Any]]:
    """Collect citation-like references from a grounded reply."""

    citations: list[dict[str, Any]] = []
    counter = 1

    for match in _NUMBERED_RE.finditer(text or ""):
        label = match.group(2).strip()
        url_match = _URL_RE.search(label)
        number = int(match.group(1))
        if not number:
            number = counter
            counter += 1
        citations.append(
            {
                "number": number,
                "title": label or "Web Source",
                "citedText": label,
                "url": url_match.group(0) if url_match else "#",
            }
        )

    for match in _SOURCE_RE.finditer(text or ""):
        source = match.group(1)
        citations.append({"number": counter, "url": source, "title": source, "citedText": f"Source: {source}"})
        counter += 1

    for match in _URL_RE.finditer(text or ""):
        url = match.group(0)
        citations.append(
            {"number": counter, "url": url, "title": _title_from_url(url), "citedText": f"Information from {url}"}
        )
        counter += 1

    unique: list[dict[str, Any]] = []
    for citation in citations:
        if any(seen["url"] == citation["url"] or seen["title"] == citation["title"] for seen in unique):
            continue
        unique.append(citation)
    return unique[:limit]
