from __future__ import annotations

import io
import json
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest
from google.api_core import exceptions as google_exceptions

from conftest import API_KEY_SECRET, AUTH_HEADERS
from omni_backend.ai.pipeline import ReplyOutcome
from omni_backend.ai.providers.base import GenerationResult
from omni_backend.chats.history import get_chat_history, get_recent_messages
from omni_backend.chats.migrations import migrate_raw_parts
from omni_backend.chats.replies import ReplyEnvironment, UserKeys, resolve_model, resolve_route, update_chat_title
from omni_backend.preferences.service import update_preferences

T0 = datetime(2024, 6, 1, 9, 0, tzinfo=timezone.utc)


class FakePipeline:
    """Stands in for ``ReplyPipeline``; fills the outcome the way the real one does."""

    def __init__(self, deltas=("Hel", "lo"), error=None, failing_models=()):
        self.deltas = list(deltas)
        self.error = error
        self.failing_models = set(failing_models)
        self.requests = []

    def stream(self, request, outcome):
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        if request.model in self.failing_models:
            outcome.fail("Error generating response: boom")
            outcome.finish()
            return
        for delta in self.deltas:
            yield delta
        suffix = f" from {request.model}" if request.multi else ""
        outcome.content = "".join(self.deltas) + suffix
        outcome.finish_reason = "stop"
        outcome.usage = {"promptTokens": 1, "completionTokens": 2, "totalTokens": 3}
        outcome.finish()


def _seed_chat(fake_db, chat_id="chat-1", uid="user123", **fields):
    data = {"uid": uid, "title": "New chat", "createdAt": T0, "updatedAt": T0}
    data.update(fields)
    fake_db.add(f"chats/{chat_id}", data)
    return data


def _seed_message(fake_db, message_id, chat_id="chat-1", minutes=0, **fields):
    data = {"uid": "user123", "role": "user", "content": f"message {message_id}", "createdAt": T0 + timedelta(minutes=minutes)}
    data.update(fields)
    fake_db.add(f"chats/{chat_id}/messages/{message_id}", data)
    return data


def _events(response):
    events = []
    for block in response.get_data(as_text=True).split("\n\n"):
        lines = [line[len("data: ") :] for line in block.splitlines() if line.startswith("data: ")]
        if lines:
            events.append(json.loads("\n".join(lines)))
    return events


# --------------------------------------------------------------------------
# Chats
# --------------------------------------------------------------------------


def test_create_and_list_chats(client, fake_db):
    response = client.post(
        "/chats",
        json={"title": " Trip ideas ", "aiSettings": {"temperature": 0.4}},
        headers=AUTH_HEADERS,
    )
    assert response.status_code == 201
    created = response.get_json()
    assert created["title"] == "Trip ideas"
    assert created["aiSettings"] == {"temperature": 0.4}

    _seed_chat(fake_db, "older", updatedAt=T0 - timedelta(days=1))
    _seed_chat(fake_db, "theirs", uid="someone-else")

    response = client.get("/chats?limit=5", headers=AUTH_HEADERS)
    ids = [item["id"] for item in response.get_json()["items"]]
    assert ids == [created["id"], "older"]

    assert client.get("/chats?limit=0", headers=AUTH_HEADERS).status_code == 400
    assert client.post("/chats", json={"aiSettings": {"temperature": 7}}, headers=AUTH_HEADERS).status_code == 400


def test_get_chat_returns_messages_and_files(client, fake_db):
    _seed_chat(fake_db)
    _seed_message(fake_db, "m2", minutes=2)
    _seed_message(fake_db, "m1", minutes=1)
    fake_db.add("chats/chat-1/files/f1", {"uid": "user123", "fileName": "a.txt", "storage": "x", "createdAt": T0})

    response = client.get("/chats/chat-1", headers=AUTH_HEADERS)

    assert response.status_code == 200
    payload = response.get_json()
    assert [message["id"] for message in payload["messages"]] == ["m1", "m2"]
    assert payload["files"][0]["downloadPath"] == "/chats/chat-1/files/f1/download"


def test_chat_access_errors(client, fake_db):
    _seed_chat(fake_db, uid="someone-else")

    response = client.get("/chats/chat-1", headers=AUTH_HEADERS)
    assert response.status_code == 403
    assert response.get_json()["error"] == "forbidden"
    assert client.get("/chats/nope", headers=AUTH_HEADERS).status_code == 404

    fake_db.failures["get"] = google_exceptions.PermissionDenied("Cloud Firestore API has not been used")
    response = client.get("/chats/chat-1", headers=AUTH_HEADERS)
    assert response.status_code == 503
    assert response.get_json()["error"] == "firestore_unavailable"


def test_update_chat_and_ai_settings(client, fake_db):
    _seed_chat(fake_db)

    response = client.patch("/chats/chat-1", json={"title": "Renamed", "defaultModel": "gpt-4o"}, headers=AUTH_HEADERS)
    assert response.status_code == 200
    assert response.get_json()["title"] == "Renamed"
    assert fake_db.data("chats/chat-1")["defaultModel"] == "gpt-4o"

    assert client.patch("/chats/chat-1", json={}, headers=AUTH_HEADERS).status_code == 400
    assert client.patch("/chats/chat-1", json={"defaultModel": 3}, headers=AUTH_HEADERS).status_code == 400

    response = client.patch("/chats/chat-1/ai-settings", json={"aiSettings": {"responseMode": "concise"}}, headers=AUTH_HEADERS)
    assert response.get_json()["aiSettings"] == {"responseMode": "concise"}

    response = client.patch("/chats/chat-1/ai-settings", json={"aiSettings": None}, headers=AUTH_HEADERS)
    assert response.status_code == 200
    assert fake_db.data("chats/chat-1")["aiSettings"] is None

    assert client.patch("/chats/chat-1/ai-settings", json={}, headers=AUTH_HEADERS).status_code == 400
    assert client.patch("/chats/chat-1/ai-settings", json={"aiSettings": {"topP": 3}}, headers=AUTH_HEADERS).status_code == 400


def test_delete_chat_removes_messages_files_and_artifacts(client, fake_db):
    _seed_chat(fake_db)
    _seed_chat(fake_db, "chat-2")
    _seed_message(fake_db, "m1")
    _seed_message(fake_db, "m2", chat_id="chat-2")
    fake_db.add("chats/chat-1/files/f1", {"uid": "user123"})
    fake_db.add("artifacts/a1", {"uid": "user123", "chatId": "chat-1"})
    fake_db.add("artifacts/a2", {"uid": "user123", "chatId": "chat-2"})

    response = client.delete("/chats/chat-1", headers=AUTH_HEADERS)

    assert response.status_code == 204
    assert fake_db.paths("chats/chat-1") == []
    assert fake_db.data("artifacts/a1") is None
    assert fake_db.data("artifacts/a2") is not None
    assert fake_db.data("chats/chat-2/messages/m2") is not None
    assert fake_db.commits == [4]


def test_delete_chat_commits_in_chunks(client, fake_db):
    _seed_chat(fake_db)
    for index in range(401):
        _seed_message(fake_db, f"m{index:03d}", minutes=index)

    assert client.delete("/chats/chat-1", headers=AUTH_HEADERS).status_code == 204
    assert fake_db.commits == [400, 2]
    assert fake_db.paths("chats/chat-1") == []


# --------------------------------------------------------------------------
# Files
# --------------------------------------------------------------------------


def test_upload_list_and_download_file(client, fake_db, app):
    _seed_chat(fake_db)

    response = client.post(
        "/chats/chat-1/files",
        data={"file": (io.BytesIO(b"hello world"), "notes.txt")},
        content_type="multipart/form-data",
        headers=AUTH_HEADERS,
    )

    assert response.status_code == 201
    file_info = response.get_json()["file"]
    assert file_info["fileName"] == "notes.txt"
    assert file_info["type"] == "file"
    assert file_info["size"] == 11
    assert file_info["storage"].startswith("user123/chat-1/")
    assert file_info["libraryId"]
    assert fake_db.data(f"attachmentLibrary/{file_info['libraryId']}")["originalName"] == "notes.txt"

    response = client.get("/chats/chat-1/files", headers=AUTH_HEADERS)
    assert [item["id"] for item in response.get_json()["items"]] == [file_info["id"]]

    response = client.get(file_info["downloadPath"], headers=AUTH_HEADERS)
    assert response.status_code == 200
    assert response.data == b"hello world"
    assert "attachment" in response.headers["Content-Disposition"]

    response = client.get("/files", headers=AUTH_HEADERS)
    assert response.get_json()["items"][0]["chat"]["id"] == "chat-1"
    assert client.get("/files?type=image", headers=AUTH_HEADERS).get_json()["items"] == []


def test_upload_rejects_bad_requests(client, fake_db):
    _seed_chat(fake_db)

    response = client.post("/chats/chat-1/files", json={"file": "x"}, headers=AUTH_HEADERS)
    assert response.status_code == 400

    response = client.post(
        "/chats/chat-1/files",
        data={"file": (io.BytesIO(b""), "empty.txt")},
        content_type="multipart/form-data",
        headers=AUTH_HEADERS,
    )
    assert response.status_code == 400
    assert response.get_json()["message"] == "Uploaded file is empty."

    response = client.post(
        "/chats/chat-1/files",
        data={"file": (io.BytesIO(b"x" * (1024 * 1024 + 1)), "big.bin")},
        content_type="multipart/form-data",
        headers=AUTH_HEADERS,
    )
    assert response.status_code == 400

    assert client.get("/chats/chat-1/files/missing/download", headers=AUTH_HEADERS).status_code == 404


# --------------------------------------------------------------------------
# Messages
# --------------------------------------------------------------------------


def test_add_message_returns_both_messages_and_names_chat(client, fake_db):
    _seed_chat(fake_db, systemPrompt="Answer like a pirate.")
    pipeline = FakePipeline()

    with patch("omni_backend.chats.routes.build_pipeline", return_value=pipeline):
        response = client.post(
            "/chats/chat-1/messages",
            json={"content": "Plan a weekend in Lisbon.", "commands": ["/search"]},
            headers=AUTH_HEADERS,
        )

    assert response.status_code == 201
    payload = response.get_json()
    user_message = payload["userMessage"]
    assert user_message["rawParts"] == [{"type": "text", "text": "Plan a weekend in Lisbon."}]
    assert user_message["contentFormatVersion"] == 2
    assert user_message["commands"] == ["search"]
    assistant = payload["assistantMessage"]
    assert assistant["content"] == "Hello"
    assert assistant["responseMetadata"]["provider"] == "google"
    assert payload["chatTitle"] == "Plan a weekend in Lisbon"

    request = pipeline.requests[0]
    assert request.api_key == "server-gemini-key"
    assert request.chat_system_prompt == "Answer like a pirate."
    assert [message["content"] for message in request.history] == ["Plan a weekend in Lisbon."]
    assert len(fake_db.paths("chats/chat-1/messages/")) == 2
    assert fake_db.data("chats/chat-1")["title"] == "Plan a weekend in Lisbon"


def test_add_message_keeps_existing_title_and_stores_errors(client, fake_db):
    _seed_chat(fake_db, title="Holiday")

    with patch(
        "omni_backend.chats.routes.build_pipeline",
        return_value=FakePipeline(error=RuntimeError("network unreachable")),
    ):
        response = client.post("/chats/chat-1/messages", json={"content": "Hi"}, headers=AUTH_HEADERS)

    assert response.status_code == 201
    payload = response.get_json()
    assert "chatTitle" not in payload
    assistant = payload["assistantMessage"]
    assert assistant["content"] == "Error generating response: Network error occurred. Please check your connection and try again."
    assert assistant["metadata"]["error"] is True
    assert assistant["responseMetadata"]["finishReason"] == "error"


def test_add_message_validation_and_routing_errors(client, fake_db):
    _seed_chat(fake_db)

    assert client.post("/chats/chat-1/messages", json={"content": "  "}, headers=AUTH_HEADERS).status_code == 400
    assert client.post("/chats/chat-1/messages", json={"content": "hi", "role": "tool"}, headers=AUTH_HEADERS).status_code == 400
    response = client.post(
        "/chats/chat-1/messages",
        json={"content": "hi", "referencedLibraryItems": [{"type": "folder", "id": "x"}]},
        headers=AUTH_HEADERS,
    )
    assert response.status_code == 400

    response = client.post("/chats/chat-1/messages", json={"content": "hi", "model": "gpt-4o"}, headers=AUTH_HEADERS)
    assert response.status_code == 400
    assert response.get_json()["error"] == "missing_api_key"

    response = client.post("/chats/chat-1/messages", json={"content": "hi", "model": "mystery"}, headers=AUTH_HEADERS)
    assert response.status_code == 400
    assert response.get_json()["error"] == "unsupported_model"

    response = client.post("/chats/chat-1/messages", json={"content": "hi", "attachments": ["nope"]}, headers=AUTH_HEADERS)
    assert response.status_code == 400
    assert response.get_json()["missingFileIds"] == ["nope"]

    fake_db.add("chats/chat-1/files/theirs", {"uid": "someone-else", "fileName": "x.txt"})
    response = client.post("/chats/chat-1/messages", json={"content": "hi", "attachments": ["theirs"]}, headers=AUTH_HEADERS)
    assert response.status_code == 403

    assert fake_db.paths("chats/chat-1/messages/") == []


def test_add_message_uses_user_key_and_attachments(client, fake_db):
    _seed_chat(fake_db)
    update_preferences("user123", {"apiKeys": {"openai": "sk-user-1234"}, "defaultModel": "gpt-4o-mini"}, secret=API_KEY_SECRET)
    fake_db.add(
        "chats/chat-1/files/f1",
        {"uid": "user123", "fileName": "cat.png", "mimeType": "image/png", "type": "image", "size": 3, "storage": "user123/chat-1/f1_cat.png"},
    )
    fake_db.add("attachmentLibrary/lib-1", {"uid": "user123", "type": "file", "usageCount": 0})
    pipeline = FakePipeline()

    with patch("omni_backend.chats.routes.build_pipeline", return_value=pipeline):
        response = client.post(
            "/chats/chat-1/messages",
            json={
                "content": "What is this?",
                "attachments": ["f1"],
                "referencedLibraryItems": [{"type": "attachment", "id": "lib-1", "name": "notes.txt"}],
            },
            headers=AUTH_HEADERS,
        )

    assert response.status_code == 201
    user_message = response.get_json()["userMessage"]
    assert user_message["attachments"][0]["type"] == "image"
    assert user_message["rawParts"][1]["type"] == "image"
    assert user_message["referencedLibraryItems"] == [{"type": "attachment", "id": "lib-1", "name": "notes.txt"}]
    assert pipeline.requests[0].model == "gpt-4o-mini"
    assert pipeline.requests[0].api_key == "sk-user-1234"
    assert fake_db.data("attachmentLibrary/lib-1")["usageCount"] == 1


def test_add_message_streams_server_sent_events(client, fake_db):
    _seed_chat(fake_db)

    with patch("omni_backend.chats.routes.build_pipeline", return_value=FakePipeline(deltas=["Hi", " there"])):
        response = client.post(
            "/chats/chat-1/messages",
            json={"content": "Say hi"},
            headers={**AUTH_HEADERS, "Accept": "text/event-stream"},
        )
        events = _events(response)

    assert response.mimetype == "text/event-stream"
    assert response.headers["Cache-Control"] == "no-cache"
    assert [event["type"] for event in events] == ["user_message", "token", "token", "assistant_message", "chat_title", "done"]
    assert events[2]["text"] == "Hi there"
    assistant = events[3]["message"]
    assert assistant["content"] == "Hi there"
    assert assistant["isStreaming"] is False
    assert events[4]["title"] == "Say hi"
    stored = fake_db.data(f"chats/chat-1/messages/{assistant['id']}")
    assert stored["isStreaming"] is False


def test_streaming_failure_emits_error_event(client, fake_db):
    _seed_chat(fake_db)

    with patch("omni_backend.chats.routes.build_pipeline", return_value=FakePipeline(error=RuntimeError("quota reached"))):
        response = client.post("/chats/chat-1/messages", json={"content": "Hi", "stream": True}, headers=AUTH_HEADERS)
        events = _events(response)

    types = [event["type"] for event in events]
    assert types == ["user_message", "error", "assistant_message", "done"]
    assert events[1]["error"] == "provider_error"
    assert events[1]["message"] == "API quota exceeded. Please check your account limits or try a different model."


def test_multi_model_message(client, fake_db):
    _seed_chat(fake_db)
    pipeline = FakePipeline(failing_models={"gemini-1.5-pro"})

    with patch("omni_backend.chats.routes.build_pipeline", return_value=pipeline):
        response = client.post(
            "/chats/chat-1/messages/multi",
            json={"content": "Compare", "models": ["gemini-1.5-pro", "gemini-2.0-flash", "gpt-4o", "gemini-2.0-flash"]},
            headers=AUTH_HEADERS,
        )

    assert response.status_code == 201
    assistant = response.get_json()["assistantMessage"]
    multi = assistant["multiAIResponses"]
    assert multi["selectedModels"] == ["gemini-1.5-pro", "gemini-2.0-flash", "gpt-4o"]
    assert multi["selectedResponseId"] is None
    by_model = {entry["model"]: entry for entry in multi["responses"]}
    assert by_model["gemini-2.0-flash"]["content"] == "Hello from gemini-2.0-flash"
    assert by_model["gemini-1.5-pro"]["metadata"]["error"] is True
    assert by_model["gpt-4o"]["content"].startswith("Error generating response: API key is missing")
    assert assistant["content"] == "Hello from gemini-2.0-flash"
    assert assistant["model"] == "gemini-2.0-flash"
    assert assistant["metadata"] == {"multiAI": True}
    assert all(request.multi for request in pipeline.requests)


@pytest.mark.parametrize(
    "models",
    [["gemini-2.0-flash"], ["a", "b", "c", "d", "e"], "gemini-2.0-flash", ["gemini-2.0-flash", ""]],
)
def test_multi_model_message_validates_models(client, fake_db, models):
    _seed_chat(fake_db)
    response = client.post("/chats/chat-1/messages/multi", json={"content": "x", "models": models}, headers=AUTH_HEADERS)
    assert response.status_code == 400


def test_resume_and_complete_streaming_message(client, fake_db):
    _seed_chat(fake_db)
    _seed_message(fake_db, "a1", role="assistant", content="Partial answer", isStreaming=True)

    response = client.post("/chats/chat-1/messages/a1/resume", json={"fromPosition": 8}, headers=AUTH_HEADERS)
    assert response.get_json() == {"content": "answer", "isComplete": False, "totalLength": 14}

    assert client.post("/chats/chat-1/messages/a1/resume", json={"fromPosition": -1}, headers=AUTH_HEADERS).status_code == 400
    assert client.post("/chats/chat-1/messages/zz/resume", json={}, headers=AUTH_HEADERS).status_code == 404

    response = client.post("/chats/chat-1/messages/a1/complete", headers=AUTH_HEADERS)
    assert response.status_code == 200
    assert response.get_json()["isStreaming"] is False
    assert fake_db.data("chats/chat-1/messages/a1")["isStreaming"] is False


# --------------------------------------------------------------------------
# History, titles, migration
# --------------------------------------------------------------------------


def test_chat_history_filters_placeholders_and_empty_messages(fake_db):
    _seed_chat(fake_db)
    _seed_message(fake_db, "m1", minutes=1)
    _seed_message(fake_db, "m2", minutes=2, role="assistant", content="", isStreaming=True)
    _seed_message(fake_db, "m3", minutes=3, content="  ")
    _seed_message(fake_db, "m4", minutes=4, content="", referencedLibraryItems=[{"type": "media", "id": "x"}])
    _seed_message(fake_db, "m5", minutes=5)
    chat_ref = fake_db.collection("chats").document("chat-1")

    assert [message["id"] for message in get_chat_history(chat_ref)] == ["m1", "m4", "m5"]
    assert [message["id"] for message in get_chat_history(chat_ref, exclude_message_id="m3")] == ["m1", "m2"]
    assert len(get_chat_history(chat_ref, exclude_message_id="unknown")) == 5
    assert [message["id"] for message in get_recent_messages(chat_ref, 2)] == ["m4", "m5"]


def test_resolve_model_precedence():
    assert resolve_model(" gpt-4o ", {"defaultModel": "x"}, {}, "d") == "gpt-4o"
    assert resolve_model(None, {"defaultModel": "claude-3-haiku"}, {"defaultModel": "y"}, "d") == "claude-3-haiku"
    assert resolve_model("", {}, {"defaultModel": "deepseek-chat"}, "d") == "deepseek-chat"
    assert resolve_model(None, {}, {}, "gemini-2.0-flash") == "gemini-2.0-flash"


def test_ai_generated_title_uses_the_reply_model(fake_db):
    _seed_chat(fake_db)
    chat_ref = fake_db.collection("chats").document("chat-1")
    chat_data = fake_db.data("chats/chat-1")
    outcome = ReplyOutcome(
        model="gemini-2.0-flash", provider="google", content="Here is a <b>plan</b>\n\n\n\nEnjoy", finish_reason="stop"
    )

    class TitleAdapter:
        def generate_reply(self, model, messages, settings):
            assert messages[1].text == "User: plan my trip\nAssistant: Here is a plan\n\nEnjoy"
            return GenerationResult(text='"Weekend Trip Plan."\nextra line')

    with patch("omni_backend.chats.replies.get_adapter", return_value=TitleAdapter()):
        title = update_chat_title(
            chat_ref, chat_data, mode="ai-generated", user_text="plan my trip", outcome=outcome, api_key="k"
        )

    assert title == "Weekend Trip Plan"
    assert fake_db.data("chats/chat-1")["title"] == "Weekend Trip Plan"
    assert update_chat_title(chat_ref, chat_data, mode="first-message", user_text="again", outcome=outcome, api_key="k") is None


def test_resolve_route_notes_unlisted_models(tmp_path, caplog):
    env = ReplyEnvironment(upload_root=tmp_path, fallback_keys={"openai": "server-openai"})
    keys = UserKeys(keys={}, toggles={})

    with caplog.at_level("INFO", logger="omni_backend.chats.replies"):
        assert resolve_route("gpt-4o", keys, env) == ("openai", "server-openai")
        assert not caplog.records
        assert resolve_route("gpt-5-preview", keys, env) == ("openai", "server-openai")

    assert "not in the known openai model list" in caplog.records[0].getMessage()


def test_migrate_raw_parts_backfills_legacy_messages(fake_db):
    _seed_chat(fake_db)
    _seed_chat(fake_db, "theirs", uid="someone-else")
    _seed_message(fake_db, "legacy", content="See attached", attachments=[{"name": "a.pdf", "type": "pdf", "storage": "u/a.pdf"}])
    _seed_message(fake_db, "legacy2", content="Plain")
    _seed_message(fake_db, "modern", rawParts=[{"type": "text", "text": "done"}])
    _seed_message(fake_db, "other", chat_id="theirs")

    preview = migrate_raw_parts("user123", dry_run=True)
    assert preview == {"processed": 3, "migrated": 2, "skipped": 1, "errors": 0}
    assert "rawParts" not in fake_db.data("chats/chat-1/messages/legacy")

    result = migrate_raw_parts("user123", batch_size=1)
    assert result == preview
    assert fake_db.commits == [1, 1]
    migrated = fake_db.data("chats/chat-1/messages/legacy")
    assert migrated["contentFormatVersion"] == 2
    assert migrated["renderedText"] == "See attached"
    assert [part["type"] for part in migrated["rawParts"]] == ["text", "file"]
    assert "rawParts" not in fake_db.data("chats/theirs/messages/other")


def test_migration_route(client, fake_db):
    _seed_chat(fake_db)
    _seed_message(fake_db, "legacy")

    response = client.post("/chats/migrations/raw-parts", json={"dryRun": True}, headers=AUTH_HEADERS)
    assert response.status_code == 200
    assert response.get_json()["migrated"] == 1

    assert client.post("/chats/migrations/raw-parts", json={"batchSize": 0}, headers=AUTH_HEADERS).status_code == 400


def test_migration_route_caps_batch_size(client, fake_db):
    with patch("omni_backend.chats.routes.migrate_raw_parts") as mock_migrate:
        mock_migrate.return_value = {"processed": 0, "migrated": 0, "skipped": 0, "errors": 0}
        response = client.post("/chats/migrations/raw-parts", json={"batchSize": 5000}, headers=AUTH_HEADERS)

    assert response.status_code == 200
    assert mock_migrate.call_args.kwargs["batch_size"] == 500
