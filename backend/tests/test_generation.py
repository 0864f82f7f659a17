from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest
import requests

from omni_backend.ai.errors import ProviderRequestError, UnsupportedFeatureError
from omni_backend.ai.generation import (
    VertexSettings,
    _title_from_url,
    extract_citations,
    format_canvas_response,
    generate_image,
    generate_structured_output,
    generate_video,
)
from omni_backend.ai.settings import AISettings

VERTEX = VertexSettings(project="demo-project", access_token="token-1")


def _vertex_response(status_code=200, payload=None):
    response = MagicMock()
    response.status_code = status_code
    response.json.return_value = payload if payload is not None else {}
    return response


def test_openai_image_is_reported_to_library():
    generated = []
    fake_client = MagicMock()
    fake_client.images.generate.return_value = SimpleNamespace(data=[SimpleNamespace(url="https://img.example/1.png")])

    with patch("omni_backend.ai.generation.OpenAI", return_value=fake_client) as mock_openai:
        url = generate_image(
            "openai", "a lighthouse at dusk", {"size": "1792x1024"}, api_key="sk-test", on_generated=generated.append
        )

    assert url == "https://img.example/1.png"
    mock_openai.assert_called_once_with(api_key="sk-test")
    kwargs = fake_client.images.generate.call_args.kwargs
    assert kwargs["model"] == "dall-e-3"
    assert kwargs["size"] == "1792x1024"
    assert kwargs["style"] == "natural"
    assert generated[0]["type"] == "image"
    assert generated[0]["model"] == "dall-e-3"
    assert generated[0]["title"] == "Generated Image: a lighthouse at dusk..."


def test_openai_image_requires_key_and_url():
    with pytest.raises(ProviderRequestError, match="API key is missing"):
        generate_image("openai", "x")

    fake_client = MagicMock()
    fake_client.images.generate.return_value = SimpleNamespace(data=[])
    with patch("omni_backend.ai.generation.OpenAI", return_value=fake_client):
        with pytest.raises(ProviderRequestError, match="No image URL"):
            generate_image("openai", "x", api_key="sk-test")


def test_google_image_posts_to_vertex():
    response = _vertex_response(payload={"predictions": [{"bytesBase64Encoded": "iVBOR"}]})

    with patch("omni_backend.ai.generation.requests.post", return_value=response) as mock_post:
        url = generate_image("google", "a fox", {"size": "512x768"}, vertex=VERTEX)

    assert url == "data:image/png;base64,iVBOR"
    args, kwargs = mock_post.call_args
    assert args[0].endswith("/projects/demo-project/locations/us-central1/publishers/google/models/imagegeneration:predict")
    assert kwargs["headers"]["Authorization"] == "Bearer token-1"
    assert kwargs["json"]["instances"][0]["image"] == {"width": 512, "height": 768}


def test_google_image_errors():
    denied = _vertex_response(403, {"error": {"message": "permission denied"}})
    with patch("omni_backend.ai.generation.requests.post", return_value=denied):
        with pytest.raises(ProviderRequestError) as excinfo:
            generate_image("google", "a fox", vertex=VERTEX)
    assert str(excinfo.value) == "Google Imagen error: permission denied"
    assert excinfo.value.status_code == 403

    with patch("omni_backend.ai.generation.requests.post", side_effect=requests.ConnectionError("offline")):
        with pytest.raises(ProviderRequestError, match="offline"):
            generate_image("google", "a fox", vertex=VERTEX)

    with pytest.raises(UnsupportedFeatureError, match="GOOGLE_CLOUD_PROJECT"):
        generate_image("google", "a fox")

    with pytest.raises(UnsupportedFeatureError, match="not supported for provider: deepseek"):
        generate_image("deepseek", "a fox")


def test_video_generation_success_and_callback():
    generated = []
    response = _vertex_response(payload={"predictions": [{"bytesBase64Encoded": "AAAA"}]})

    with patch("omni_backend.ai.generation.requests.post", return_value=response) as mock_post:
        result = generate_video(
            "google", "waves", {"duration": 8, "aspectRatio": "1:1"}, vertex=VERTEX, on_generated=generated.append
        )

    assert result.ok
    assert result.to_dict() == {
        "videoUrl": "data:video/mp4;base64,AAAA",
        "thumbnailUrl": None,
        "duration": "8s",
        "resolution": "720x720",
        "status": "success",
        "error": None,
        "provider": "google",
    }
    assert mock_post.call_args.kwargs["json"]["instances"][0]["video"] == {"duration": "8s", "aspectRatio": "1:1"}
    assert generated[0]["metadata"] == {"duration": 8, "resolution": "720x720", "aspectRatio": "1:1"}


@pytest.mark.parametrize(
    ("provider", "vertex", "expected"),
    [
        ("openai", VERTEX, "Sora video generation is not yet publicly available"),
        ("anthropic", VERTEX, "not supported for provider: anthropic"),
        ("google", None, "GOOGLE_CLOUD_PROJECT"),
    ],
)
def test_video_generation_failures_are_results(provider, vertex, expected):
    generated = []
    result = generate_video(provider, "waves", vertex=vertex, on_generated=generated.append)

    assert not result.ok
    assert result.status == "error"
    assert result.duration == "5s"
    assert result.resolution == "1280x720"
    assert result.error.startswith("Video generation failed: ")
    assert expected in result.error
    assert generated == []


def test_callback_failures_do_not_break_generation():
    response = _vertex_response(payload={"predictions": [{"bytesBase64Encoded": "AAAA"}]})

    def explode(entry):
        raise RuntimeError("library offline")

    with patch("omni_backend.ai.generation.requests.post", return_value=response):
        assert generate_image("google", "a fox", vertex=VERTEX, on_generated=explode).startswith("data:image/png")


def _structured_adapter(payload):
    adapter = MagicMock()
    adapter.name = "fake"
    adapter.generate_structured.return_value = payload
    return adapter


def test_structured_output_keeps_canvas_fields():
    adapter = _structured_adapter(
        {
            "intro": "Here you go.",
            "artifacts": [
                {"id": "a1", "filename": "main.py", "language": "python", "content": "print(1)", "description": "Entry", "x": 1}
            ],
            "summary": "Done.",
        }
    )

    payload = generate_structured_output(adapter, "gpt-4o", [], AISettings(), web_search=True)

    assert payload["artifacts"] == [
        {"id": "a1", "filename": "main.py", "language": "python", "content": "print(1)", "description": "Entry"}
    ]
    kwargs = adapter.generate_structured.call_args.kwargs
    assert kwargs["required_keys"] == ["intro", "artifacts", "summary"]
    assert kwargs["web_search"] is True


@pytest.mark.parametrize(
    ("artifacts", "message"),
    [
        ("nope", "must be a list"),
        (["text"], "Artifact 1 is not an object"),
        ([{"id": "a1", "filename": "x"}], "Artifact 1 is missing keys: language, content, description"),
    ],
)
def test_structured_output_rejects_bad_artifacts(artifacts, message):
    adapter = _structured_adapter({"intro": "", "artifacts": artifacts, "summary": ""})
    with pytest.raises(ProviderRequestError, match=message):
        generate_structured_output(adapter, "gpt-4o", [], AISettings())


def test_format_canvas_response():
    payload = {
        "intro": "Two files.",
        "artifacts": [
            {"filename": "a.py", "description": "First"},
            {"filename": "b.py", "description": "Second"},
        ],
        "summary": "Run a.py.",
    }
    assert format_canvas_response(payload) == (
        "Two files.\n\n**Artifact 1: a.py**\nFirst\n\n**Artifact 2: b.py**\nSecond\n\nRun a.py."
    )
    assert format_canvas_response({"unexpected": True}) == '{\n  "unexpected": true\n}'


def test_extract_citations_dedupes_and_titles_urls():
    text = (
        "See [1] Lisbon guide https://example.com/lisbon-travel_guide.html for more.\n"
        "Source: Wikipedia\n"
        "Also https://docs.example.org/tram-28 and https://docs.example.org/tram-28"
    )

    citations = extract_citations(text)

    assert [c["url"] for c in citations] == [
        "https://example.com/lisbon-travel_guide.html",
        "Wikipedia",
        "https://docs.example.org/tram-28",
    ]
    assert citations[0]["number"] == 1
    assert citations[2]["title"] == "Tram 28"
    assert citations[2]["citedText"] == "Information from https://docs.example.org/tram-28"
    assert extract_citations(text, limit=1) == citations[:1]
    assert extract_citations("") == []


def test_title_from_url():
    assert _title_from_url("https://www.example.com/lisbon-travel_guide.html") == "Lisbon Travel Guide"
    assert _title_from_url("https://www.example.com/") == "example.com"
