from __future__ import annotations

import logging
import mimetypes
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from http import HTTPStatus
from typing import Any, Iterable, Optional
from uuid import uuid4

from firebase_admin import firestore as firebase_firestore
from flask import Blueprint, Response, current_app, jsonify, request, send_file, stream_with_context
from google.api_core import exceptions as google_exceptions
from google.cloud.firestore_v1 import FieldFilter
from werkzeug.utils import secure_filename

from ..ai.canonical import (
    FilePart,
    ImagePart,
    TextPart,
    attachment_type_for_mime,
    part_to_raw,
    render_text,
)
from ..ai.errors import MissingApiKeyError, ProviderError, describe_provider_error
from ..ai.pipeline import ReplyOutcome, ReplyRequest, normalize_commands
from ..ai.settings import SettingsValidationError, validate_ai_settings
from ..artifacts.service import ArtifactStoreError, delete_chat_artifacts
from ..auth.utils import current_uid, firebase_user_required
from ..firebase import get_firestore_client
from ..library.service import ITEM_TYPES, LibraryStoreError, add_to_attachment_library, track_usages
from ..preferences.service import PreferencesStoreError, get_combined_ai_settings, get_preferences, get_user_api_keys
from ..utils import now_utc
from .helpers import (
    FirestoreAccessError,
    chat_access_error,
    error_response,
    firestore_error_response,
    get_chat_for_user,
    get_upload_root,
    not_found,
    parse_json_body,
    parse_limit,
    resolve_storage_path,
    serialize_chat,
    serialize_file,
    serialize_message,
    sse_message,
    store_unavailable,
    validation_error,
)
from .history import get_chat_history
from .migrations import MAX_BATCH_SIZE, migrate_raw_parts
from .replies import (
    ReplyEnvironment,
    UserKeys,
    assistant_message_data,
    build_pipeline,
    multi_response_entry,
    resolve_model,
    resolve_route,
    update_chat_title,
)

chats_bp = Blueprint("chats", __name__, url_prefix="/chats")
log = logging.getLogger(__name__)

_GOOGLE_ERRORS = (google_exceptions.PermissionDenied, google_exceptions.GoogleAPICallError)

CONTENT_FORMAT_VERSION = 2
STREAM_FLUSH_EVERY = 20
MIN_MULTI_MODELS = 2
MAX_MULTI_MODELS = 4
BATCH_LIMIT = 400


class _BatchDeleter:
    """Queue deletes on Firestore write batches, committing before the write limit."""

    def __init__(self, db) -> None:
        self._db = db
        self._batch = db.batch()
        self._pending = 0
        self.deleted = 0

    def delete(self, ref) -> None:
        self._batch.delete(ref)
        self._pending += 1
        self.deleted += 1
        if self._pending >= BATCH_LIMIT:
            self.commit()

    def commit(self) -> None:
        if self._pending:
            self._batch.commit()
        self._batch = self._db.batch()
        self._pending = 0


@dataclass(slots=True)
class MessageInput:
    content: str
    role: str = "user"
    file_ids: list[str] = field(default_factory=list)
    library_items: list[dict[str, Any]] = field(default_factory=list)
    commands: list[str] = field(default_factory=list)
    model: Optional[str] = None


def _parse_message_input(payload: dict[str, Any]) -> MessageInput:
    content = payload.get("content") or ""
    if not isinstance(content, str):
        raise ValueError("content must be a string.")
    content = content.strip()

    role = str(payload.get("role") or "user").lower()
    if role not in {"user", "system"}:
        raise ValueError("role must be 'user' or 'system'.")

    raw_file_ids = payload.get("attachments") or []
    if not isinstance(raw_file_ids, list):
        raise ValueError("attachments must be a list of file ids.")
    file_ids: list[str] = []
    for fid in raw_file_ids:
        if not isinstance(fid, str):
            raise ValueError("attachments must be a list of file ids.")
        fid = fid.strip()
        if fid and fid not in file_ids:
            file_ids.append(fid)

    raw_items = payload.get("referencedLibraryItems") or []
    if not isinstance(raw_items, list):
        raise ValueError("referencedLibraryItems must be a list.")
    library_items: list[dict[str, Any]] = []
    for item in raw_items:
        if not isinstance(item, dict) or item.get("type") not in ITEM_TYPES or not isinstance(item.get("id"), str):
            raise ValueError("Each referenced library item needs a type and an id.")
        entry = {"type": item["type"], "id": item["id"], "name": str(item.get("name") or item["id"])}
        for optional in ("size", "mimeType"):
            if item.get(optional) is not None:
                entry[optional] = item[optional]
        library_items.append(entry)

    raw_commands = payload.get("commands") or []
    if not isinstance(raw_commands, list):
        raise ValueError("commands must be a list.")

    model = payload.get("model")
    if model is not None and (not isinstance(model, str) or not model.strip()):
        raise ValueError("model must be a non-empty string.")

    if not content and not file_ids and not library_items:
        raise ValueError("content is required when nothing is attached.")

    return MessageInput(
        content=content,
        role=role,
        file_ids=file_ids,
        library_items=library_items,
        commands=normalize_commands(raw_commands),
        model=model.strip() if model else None,
    )


def _get_files_metadata(chat_ref, file_ids: Iterable[str]) -> dict[str, dict[str, Any]]:
    files_collection = chat_ref.collection("files")
    metadata: dict[str, dict[str, Any]] = {}
    for fid in file_ids:
        try:
            snapshot = files_collection.document(fid).get()
        except _GOOGLE_ERRORS as exc:
            raise FirestoreAccessError(exc) from exc
        if snapshot.exists:
            metadata[fid] = snapshot.to_dict() or {}
    return metadata


def _build_user_message(uid: str, message: MessageInput, files: dict[str, dict[str, Any]]) -> dict[str, Any]:
    parts: list = [TextPart(text=message.content)] if message.content else []
    attachments: list[dict[str, Any]] = []
    for fid in message.file_ids:
        meta = files[fid]
        name = str(meta.get("fileName") or fid)
        attachment_type = meta.get("type") or attachment_type_for_mime(meta.get("mimeType"))
        common = {"name": name, "storage": meta.get("storage"), "size": meta.get("size"), "mime_type": meta.get("mimeType")}
        if attachment_type == "image":
            parts.append(ImagePart(**common))
        else:
            parts.append(FilePart(attachment_type=attachment_type, **common))
        attachments.append(
            {
                "id": fid,
                "name": name,
                "type": attachment_type,
                "mimeType": meta.get("mimeType"),
                "size": meta.get("size"),
                "storage": meta.get("storage"),
            }
        )

    return {
        "uid": uid,
        "role": message.role,
        "content": message.content,
        "rawParts": [part_to_raw(part) for part in parts],
        "renderedText": render_text(parts),
        "contentFormatVersion": CONTENT_FORMAT_VERSION,
        "attachments": attachments,
        "referencedLibraryItems": message.library_items,
        "commands": message.commands,
        "createdAt": now_utc(),
    }


def _load_user_keys(uid: str) -> UserKeys:
    keys, toggles = get_user_api_keys(uid, secret=current_app.config["API_KEY_SECRET"])
    return UserKeys(keys=keys, toggles=toggles)


def _reply_environment() -> ReplyEnvironment:
    return ReplyEnvironment.from_config(current_app.config, get_upload_root())


# --------------------------------------------------------------------------
# Chats
# --------------------------------------------------------------------------


@chats_bp.post("")
@firebase_user_required
def create_chat() -> tuple[Any, int]:
    payload = parse_json_body()
    title = str(payload.get("title") or "New chat").strip()
    ai_settings = payload.get("aiSettings")
    if ai_settings is not None:
        if not isinstance(ai_settings, dict):
            return validation_error("aiSettings must be an object or null.")
        try:
            ai_settings = validate_ai_settings(ai_settings)
        except SettingsValidationError as exc:
            return validation_error(str(exc))

    now = now_utc()
    chat_data = {
        "uid": current_uid(),
        "title": title,
        "systemPrompt": payload.get("systemPrompt"),
        "defaultModel": payload.get("defaultModel"),
        "aiSettings": ai_settings,
        "createdAt": now,
        "updatedAt": now,
    }

    chat_ref = get_firestore_client().collection("chats").document()
    try:
        chat_ref.set(chat_data)
    except _GOOGLE_ERRORS as exc:
        return firestore_error_response(exc)

    return jsonify(serialize_chat(chat_ref.id, chat_data)), HTTPStatus.CREATED


@chats_bp.get("")
@firebase_user_required
def list_chats() -> tuple[Any, int]:
    try:
        limit = parse_limit(request.args.get("limit"), 100, maximum=500)
    except ValueError:
        return validation_error("limit must be a positive integer.")

    query = (
        get_firestore_client()
        .collection("chats")
        .where(filter=FieldFilter("uid", "==", current_uid()))
        .order_by("updatedAt", direction=firebase_firestore.Query.DESCENDING)
        .limit(limit)
    )
    try:
        chat_docs = list(query.stream())
    except _GOOGLE_ERRORS as exc:
        return firestore_error_response(exc)

    return jsonify({"items": [serialize_chat(doc.id, doc.to_dict() or {}) for doc in chat_docs]}), HTTPStatus.OK


@chats_bp.get("/<chat_id>")
@firebase_user_required
def get_chat(chat_id: str) -> tuple[Any, int]:
    try:
        chat_ref, chat_data = get_chat_for_user(chat_id, current_uid())
    except FirestoreAccessError as exc:
        return firestore_error_response(exc)
    error = chat_access_error(chat_ref, chat_data)
    if error is not None:
        return error

    try:
        message_docs = list(chat_ref.collection("messages").order_by("createdAt").stream())
        file_docs = list(chat_ref.collection("files").order_by("createdAt").stream())
    except _GOOGLE_ERRORS as exc:
        return firestore_error_response(exc)

    return (
        jsonify(
            {
                "chat": serialize_chat(chat_ref.id, chat_data),
                "messages": [serialize_message(doc.id, doc.to_dict() or {}) for doc in message_docs],
                "files": [serialize_file(chat_ref.id, doc.id, doc.to_dict() or {}) for doc in file_docs],
            }
        ),
        HTTPStatus.OK,
    )


@chats_bp.patch("/<chat_id>")
@firebase_user_required
def update_chat(chat_id: str) -> tuple[Any, int]:
    payload = parse_json_body()
    try:
        chat_ref, chat_data = get_chat_for_user(chat_id, current_uid())
    except FirestoreAccessError as exc:
        return firestore_error_response(exc)
    error = chat_access_error(chat_ref, chat_data)
    if error is not None:
        return error

    updates: dict[str, Any] = {}
    if "title" in payload:
        updates["title"] = str(payload.get("title") or "").strip()
    if "systemPrompt" in payload:
        updates["systemPrompt"] = payload.get("systemPrompt")
    if "defaultModel" in payload:
        model = payload.get("defaultModel")
        if model is not None and not isinstance(model, str):
            return validation_error("defaultModel must be a string or null.")
        updates["defaultModel"] = model
    if not updates:
        return validation_error("Nothing to update.")

    updates["updatedAt"] = now_utc()
    try:
        chat_ref.update(updates)
    except _GOOGLE_ERRORS as exc:
        return firestore_error_response(exc)

    chat_data.update(updates)
    return jsonify(serialize_chat(chat_ref.id, chat_data)), HTTPStatus.OK


@chats_bp.patch("/<chat_id>/ai-settings")
@firebase_user_required
def update_chat_ai_settings(chat_id: str) -> tuple[Any, int]:
    payload = parse_json_body()
    if "aiSettings" not in payload:
        return validation_error("aiSettings is required (use null to clear).")
    settings = payload["aiSettings"]

    try:
        chat_ref, chat_data = get_chat_for_user(chat_id, current_uid())
    except FirestoreAccessError as exc:
        return firestore_error_response(exc)
    error = chat_access_error(chat_ref, chat_data)
    if error is not None:
        return error

    if settings is not None:
        if not isinstance(settings, dict):
            return validation_error("aiSettings must be an object or null.")
        try:
            settings = validate_ai_settings(settings)
        except SettingsValidationError as exc:
            return validation_error(str(exc))

    updates = {"aiSettings": settings, "updatedAt": now_utc()}
    try:
        chat_ref.update(updates)
    except _GOOGLE_ERRORS as exc:
        return firestore_error_response(exc)

    chat_data.update(updates)
    return jsonify(serialize_chat(chat_ref.id, chat_data)), HTTPStatus.OK


@chats_bp.delete("/<chat_id>")
@firebase_user_required
def delete_chat(chat_id: str):
    uid = current_uid()
    try:
        chat_ref, chat_data = get_chat_for_user(chat_id, uid)
    except FirestoreAccessError as exc:
        return firestore_error_response(exc)
    error = chat_access_error(chat_ref, chat_data)
    if error is not None:
        return error

    deleter = _BatchDeleter(get_firestore_client())
    try:
        for collection in ("messages", "files"):
            for doc in chat_ref.collection(collection).stream():
                deleter.delete(doc.reference)
        delete_chat_artifacts(uid, chat_id, deleter)
        deleter.delete(chat_ref)
        deleter.commit()
    except ArtifactStoreError as exc:
        return store_unavailable("artifact_store_unavailable", exc)
    except _GOOGLE_ERRORS as exc:
        return firestore_error_response(exc)

    log.info("Deleted chat %s (%d documents)", chat_id, deleter.deleted)
    return "", HTTPStatus.NO_CONTENT


# --------------------------------------------------------------------------
# Files
# --------------------------------------------------------------------------


@chats_bp.post("/<chat_id>/files")
@firebase_user_required
def upload_file(chat_id: str) -> tuple[Any, int]:
    if request.content_type and "multipart/form-data" not in request.content_type:
        return validation_error("Request must be multipart/form-data.")

    uid = current_uid()
    try:
        chat_ref, chat_data = get_chat_for_user(chat_id, uid)
    except FirestoreAccessError as exc:
        return firestore_error_response(exc)
    error = chat_access_error(chat_ref, chat_data)
    if error is not None:
        return error

    file = request.files.get("file")
    if file is None or not file.filename:
        return validation_error("file is required.")

    max_size = int(current_app.config.get("MAX_UPLOAD_SIZE", 10 * 1024 * 1024))
    if request.content_length and request.content_length > max_size:
        return validation_error("File exceeds maximum allowed size.")

    filename = secure_filename(file.filename) or "upload"
    upload_root = get_upload_root()
    chat_dir = upload_root / uid / chat_ref.id
    chat_dir.mkdir(parents=True, exist_ok=True)

    file_id = uuid4().hex
    destination = chat_dir / f"{file_id}_{filename}"
    try:
        file.save(destination)
    except OSError as exc:
        destination.unlink(missing_ok=True)
        return error_response("upload_failed", "Unable to store file.", HTTPStatus.INTERNAL_SERVER_ERROR, detail=str(exc))

    size = destination.stat().st_size
    if size == 0:
        destination.unlink(missing_ok=True)
        return validation_error("Uploaded file is empty.")
    if size > max_size:
        destination.unlink(missing_ok=True)
        return validation_error("File exceeds maximum allowed size.")

    mime_type = file.mimetype
    if not mime_type or mime_type == "application/octet-stream":
        mime_type = mimetypes.guess_type(filename)[0] or "application/octet-stream"
    attachment_type = attachment_type_for_mime(mime_type)
    storage = destination.relative_to(upload_root).as_posix()
    now = now_utc()

    library_id = None
    try:
        library_id = add_to_attachment_library(
            uid,
            storage=storage,
            original_name=filename,
            attachment_type=attachment_type,
            mime_type=mime_type,
            size=size,
        )["id"]
    except (LibraryStoreError, ValueError) as exc:
        log.warning("Failed to add %s to the attachment library: %s", filename, exc)

    file_data = {
        "uid": uid,
        "fileName": filename,
        "mimeType": mime_type,
        "type": attachment_type,
        "size": size,
        "storage": storage,
        "libraryId": library_id,
        "createdAt": now,
    }
    file_ref = chat_ref.collection("files").document(file_id)
    try:
        file_ref.set(file_data)
        chat_ref.update({"updatedAt": now})
    except _GOOGLE_ERRORS as exc:
        destination.unlink(missing_ok=True)
        return firestore_error_response(exc)

    return jsonify({"file": serialize_file(chat_ref.id, file_ref.id, file_data)}), HTTPStatus.CREATED


@chats_bp.get("/<chat_id>/files")
@firebase_user_required
def list_files(chat_id: str) -> tuple[Any, int]:
    try:
        chat_ref, chat_data = get_chat_for_user(chat_id, current_uid())
    except FirestoreAccessError as exc:
        return firestore_error_response(exc)
    error = chat_access_error(chat_ref, chat_data)
    if error is not None:
        return error

    try:
        file_docs = list(chat_ref.collection("files").order_by("createdAt").stream())
    except _GOOGLE_ERRORS as exc:
        return firestore_error_response(exc)

    return jsonify({"items": [serialize_file(chat_ref.id, doc.id, doc.to_dict() or {}) for doc in file_docs]}), HTTPStatus.OK


@chats_bp.get("/<chat_id>/files/<file_id>/download")
@firebase_user_required
def download_file(chat_id: str, file_id: str):
    try:
        chat_ref, chat_data = get_chat_for_user(chat_id, current_uid())
    except FirestoreAccessError as exc:
        return firestore_error_response(exc)
    error = chat_access_error(chat_ref, chat_data)
    if error is not None:
        return error

    try:
        snapshot = chat_ref.collection("files").document(file_id).get()
    except _GOOGLE_ERRORS as exc:
        return firestore_error_response(exc)
    if not snapshot.exists:
        return not_found("File not found.")

    data = snapshot.to_dict() or {}
    storage = data.get("storage")
    if not storage:
        return not_found("File metadata incomplete.")
    try:
        absolute_path = resolve_storage_path(storage)
    except RuntimeError:
        return not_found("File not available.")
    if not absolute_path.exists():
        return not_found("File not available.")

    download_name = data.get("fileName") or absolute_path.name
    return send_file(
        absolute_path,
        mimetype=data.get("mimeType") or mimetypes.guess_type(download_name)[0],
        as_attachment=True,
        download_name=download_name,
        conditional=True,
    )


# --------------------------------------------------------------------------
# Messages
# --------------------------------------------------------------------------


def _run_reply(pipeline, reply_request: ReplyRequest) -> ReplyOutcome:
    outcome = ReplyOutcome(model=reply_request.model, provider=reply_request.provider)
    try:
        for _ in pipeline.stream(reply_request, outcome):
            pass
    except Exception as exc:
        log.exception("Reply generation with %s failed: %s", reply_request.model, exc)
        outcome.fail(f"Error generating response: {describe_provider_error(exc)}", exc)
    return outcome


def _store_user_message(uid: str, chat_ref, message: MessageInput):
    """Validate attachments and persist the user's message; returns ``(ref, data)`` or an error response."""

    files: dict[str, dict[str, Any]] = {}
    if message.file_ids:
        files = _get_files_metadata(chat_ref, message.file_ids)
        missing = [fid for fid in message.file_ids if fid not in files]
        if missing:
            return None, error_response(
                "validation_error",
                "One or more files could not be found for this chat.",
                HTTPStatus.BAD_REQUEST,
                missingFileIds=missing,
            )
        unauthorised = [fid for fid, meta in files.items() if meta.get("uid") != uid]
        if unauthorised:
            return None, error_response(
                "forbidden",
                "You do not have access to one or more attached files.",
                HTTPStatus.FORBIDDEN,
                fileIds=unauthorised,
            )

    user_message_data = _build_user_message(uid, message, files)
    user_message_ref = chat_ref.collection("messages").document()
    try:
        user_message_ref.set(user_message_data)
        chat_ref.update({"updatedAt": user_message_data["createdAt"]})
    except _GOOGLE_ERRORS as exc:
        raise FirestoreAccessError(exc) from exc

    if message.library_items:
        track_usages(uid, message.library_items, chat_ref.id)
    return (user_message_ref, user_message_data), None


@chats_bp.post("/<chat_id>/messages")
@firebase_user_required
def add_message(chat_id: str):
    payload = parse_json_body()
    try:
        message = _parse_message_input(payload)
    except ValueError as exc:
        return validation_error(str(exc))

    uid = current_uid()
    try:
        chat_ref, chat_data = get_chat_for_user(chat_id, uid)
    except FirestoreAccessError as exc:
        return firestore_error_response(exc)
    error = chat_access_error(chat_ref, chat_data)
    if error is not None:
        return error

    env = _reply_environment()
    try:
        preferences = get_preferences(uid, secret=current_app.config["API_KEY_SECRET"])
        user_keys = _load_user_keys(uid)
        settings = get_combined_ai_settings(uid, chat_data.get("aiSettings"))
    except PreferencesStoreError as exc:
        return store_unavailable("preferences_store_unavailable", exc)

    model = resolve_model(message.model, chat_data, preferences, env.default_model)
    try:
        provider, api_key = resolve_route(model, user_keys, env)
    except ProviderError as exc:
        code = "missing_api_key" if isinstance(exc, MissingApiKeyError) else "unsupported_model"
        return error_response(code, describe_provider_error(exc), HTTPStatus.BAD_REQUEST, model=model)

    try:
        stored, error = _store_user_message(uid, chat_ref, message)
        if error is not None:
            return error
        user_message_ref, user_message_data = stored
        history = get_chat_history(chat_ref)
    except FirestoreAccessError as exc:
        return firestore_error_response(exc)

    messages_ref = chat_ref.collection("messages")
    assistant_ref = messages_ref.document()
    pipeline = build_pipeline(uid, chat_id, assistant_ref.id, user_keys, env)
    reply_request = ReplyRequest(
        model=model,
        provider=provider,
        api_key=api_key,
        settings=settings,
        history=history,
        commands=message.commands,
        chat_system_prompt=chat_data.get("systemPrompt") or "",
    )
    title_mode = str(preferences.get("chatTitleGeneration") or "first-message")
    serialized_user = serialize_message(user_message_ref.id, user_message_data)

    accept_header = (request.headers.get("Accept") or "").lower()
    wants_stream = bool(payload.get("stream")) or "text/event-stream" in accept_header

    if wants_stream:

        def event_stream():
            yield sse_message({"type": "user_message", "message": serialized_user})

            placeholder = {
                "uid": uid,
                "role": "assistant",
                "content": "",
                "model": model,
                "isStreaming": True,
                "createdAt": now_utc(),
            }
            try:
                assistant_ref.set(placeholder)
            except _GOOGLE_ERRORS as exc:
                yield sse_message(
                    {"type": "error", "message": "Unable to store assistant message.", "detail": str(exc), "error": "firestore_unavailable"}
                )
                return

            outcome = ReplyOutcome(model=model, provider=provider)
            aggregated: list[str] = []
            try:
                for delta in pipeline.stream(reply_request, outcome):
                    aggregated.append(delta)
                    yield sse_message({"type": "token", "token": delta, "text": "".join(aggregated)})
                    if len(aggregated) % STREAM_FLUSH_EVERY == 0:
                        try:
                            assistant_ref.update({"content": "".join(aggregated)})
                        except _GOOGLE_ERRORS as exc:
                            log.warning("Failed to flush streamed content: %s", exc)
            except Exception as exc:
                log.exception("Streaming reply from %s failed: %s", model, exc)
                outcome.fail(f"Error generating response: {describe_provider_error(exc)}", exc)

            if outcome.finish_reason == "error":
                yield sse_message({"type": "error", "message": outcome.error or outcome.content, "error": "provider_error"})

            assistant_data = assistant_message_data(uid, outcome)
            assistant_data["createdAt"] = placeholder["createdAt"]
            try:
                assistant_ref.set(assistant_data)
                chat_ref.update({"updatedAt": now_utc()})
            except _GOOGLE_ERRORS as exc:
                yield sse_message(
                    {"type": "error", "message": "Unable to store assistant message.", "detail": str(exc), "error": "firestore_unavailable"}
                )
                return
            yield sse_message({"type": "assistant_message", "message": serialize_message(assistant_ref.id, assistant_data)})

            title = update_chat_title(
                chat_ref,
                chat_data,
                mode=title_mode,
                user_text=message.content,
                outcome=outcome,
                api_key=api_key,
                server_url=env.server_url,
            )
            if title:
                yield sse_message({"type": "chat_title", "title": title})
            yield sse_message({"type": "done"})

        response = Response(stream_with_context(event_stream()), mimetype="text/event-stream")
        response.headers["Cache-Control"] = "no-cache"
        response.headers["X-Accel-Buffering"] = "no"
        return response

    outcome = _run_reply(pipeline, reply_request)
    assistant_data = assistant_message_data(uid, outcome)
    try:
        assistant_ref.set(assistant_data)
        chat_ref.update({"updatedAt": assistant_data["createdAt"]})
    except _GOOGLE_ERRORS as exc:
        return firestore_error_response(exc)

    title = update_chat_title(
        chat_ref,
        chat_data,
        mode=title_mode,
        user_text=message.content,
        outcome=outcome,
        api_key=api_key,
        server_url=env.server_url,
    )

    body: dict[str, Any] = {
        "userMessage": serialized_user,
        "assistantMessage": serialize_message(assistant_ref.id, assistant_data),
    }
    if title:
        body["chatTitle"] = title
    return jsonify(body), HTTPStatus.CREATED


@chats_bp.post("/<chat_id>/messages/multi")
@firebase_user_required
def add_multi_message(chat_id: str) -> tuple[Any, int]:
    payload = parse_json_body()
    models = payload.get("models")
    if not isinstance(models, list) or not all(isinstance(m, str) and m.strip() for m in models):
        return validation_error("models must be a list of model names.")
    models = list(dict.fromkeys(m.strip() for m in models))
    if not MIN_MULTI_MODELS <= len(models) <= MAX_MULTI_MODELS:
        return validation_error(f"Select between {MIN_MULTI_MODELS} and {MAX_MULTI_MODELS} distinct models.")
    try:
        message = _parse_message_input(payload)
    except ValueError as exc:
        return validation_error(str(exc))

    uid = current_uid()
    try:
        chat_ref, chat_data = get_chat_for_user(chat_id, uid)
    except FirestoreAccessError as exc:
        return firestore_error_response(exc)
    error = chat_access_error(chat_ref, chat_data)
    if error is not None:
        return error

    env = _reply_environment()
    try:
        user_keys = _load_user_keys(uid)
        settings = get_combined_ai_settings(uid, chat_data.get("aiSettings"))
    except PreferencesStoreError as exc:
        return store_unavailable("preferences_store_unavailable", exc)

    try:
        stored, error = _store_user_message(uid, chat_ref, message)
        if error is not None:
            return error
        user_message_ref, user_message_data = stored
        history = get_chat_history(chat_ref)
    except FirestoreAccessError as exc:
        return firestore_error_response(exc)

    assistant_ref = chat_ref.collection("messages").document()
    pipeline = build_pipeline(uid, chat_id, assistant_ref.id, user_keys, env)

    def generate(model: str) -> ReplyOutcome:
        try:
            provider, api_key = resolve_route(model, user_keys, env)
        except ProviderError as exc:
            outcome = ReplyOutcome(model=model, provider="unknown")
            outcome.fail(f"Error generating response: {describe_provider_error(exc)}", exc)
            outcome.finish()
            return outcome
        reply_request = ReplyRequest(
            model=model,
            provider=provider,
            api_key=api_key,
            settings=settings,
            history=history,
            commands=message.commands,
            chat_system_prompt=chat_data.get("systemPrompt") or "",
            multi=True,
        )
        return _run_reply(pipeline, reply_request)

    with ThreadPoolExecutor(max_workers=len(models)) as executor:
        outcomes = list(executor.map(generate, models))

    responses = [multi_response_entry(uuid4().hex, outcome) for outcome in outcomes]
    primary = next((outcome for outcome in outcomes if outcome.finish_reason != "error"), outcomes[0])
    assistant_data = {
        "uid": uid,
        "role": "assistant",
        "content": primary.content,
        "model": primary.model,
        "isStreaming": False,
        "metadata": {"multiAI": True},
        "responseMetadata": primary.response_metadata(),
        "multiAIResponses": {"selectedModels": models, "responses": responses, "selectedResponseId": None},
        "createdAt": now_utc(),
    }
    try:
        assistant_ref.set(assistant_data)
        chat_ref.update({"updatedAt": assistant_data["createdAt"]})
    except _GOOGLE_ERRORS as exc:
        return firestore_error_response(exc)

    log.info(
        "Multi-model reply in chat %s: %d/%d succeeded",
        chat_id,
        sum(1 for outcome in outcomes if outcome.finish_reason != "error"),
        len(outcomes),
    )
    return (
        jsonify(
            {
                "userMessage": serialize_message(user_message_ref.id, user_message_data),
                "assistantMessage": serialize_message(assistant_ref.id, assistant_data),
            }
        ),
        HTTPStatus.CREATED,
    )


def _get_owned_message(chat_id: str, message_id: str):
    chat_ref, chat_data = get_chat_for_user(chat_id, current_uid())
    error = chat_access_error(chat_ref, chat_data)
    if error is not None:
        return None, None, error
    message_ref = chat_ref.collection("messages").document(message_id)
    try:
        snapshot = message_ref.get()
    except _GOOGLE_ERRORS as exc:
        raise FirestoreAccessError(exc) from exc
    if not snapshot.exists:
        return None, None, not_found("Message not found.")
    return message_ref, snapshot.to_dict() or {}, None


@chats_bp.post("/<chat_id>/messages/<message_id>/resume")
@firebase_user_required
def resume_message(chat_id: str, message_id: str) -> tuple[Any, int]:
    payload = parse_json_body()
    from_position = payload.get("fromPosition", 0)
    if isinstance(from_position, bool) or not isinstance(from_position, int) or from_position < 0:
        return validation_error("fromPosition must be a non-negative integer.")

    try:
        message_ref, data, error = _get_owned_message(chat_id, message_id)
    except FirestoreAccessError as exc:
        return firestore_error_response(exc)
    if error is not None:
        return error

    content = str(data.get("content") or "")
    return (
        jsonify(
            {
                "content": content[from_position:],
                "isComplete": not data.get("isStreaming", False),
                "totalLength": len(content),
            }
        ),
        HTTPStatus.OK,
    )


@chats_bp.post("/<chat_id>/messages/<message_id>/complete")
@firebase_user_required
def complete_message(chat_id: str, message_id: str) -> tuple[Any, int]:
    try:
        message_ref, data, error = _get_owned_message(chat_id, message_id)
    except FirestoreAccessError as exc:
        return firestore_error_response(exc)
    if error is not None:
        return error

    try:
        message_ref.update({"isStreaming": False})
    except _GOOGLE_ERRORS as exc:
        return firestore_error_response(exc)
    data["isStreaming"] = False
    return jsonify(serialize_message(message_ref.id, data)), HTTPStatus.OK


# --------------------------------------------------------------------------
# Migrations
# --------------------------------------------------------------------------


@chats_bp.post("/migrations/raw-parts")
@firebase_user_required
def migrate_raw_parts_route() -> tuple[Any, int]:
    payload = parse_json_body()
    batch_size = payload.get("batchSize", 100)
    if isinstance(batch_size, bool) or not isinstance(batch_size, int) or batch_size <= 0:
        return validation_error("batchSize must be a positive integer.")
    dry_run = bool(payload.get("dryRun", False))

    try:
        result = migrate_raw_parts(current_uid(), batch_size=min(batch_size, MAX_BATCH_SIZE), dry_run=dry_run)
    except FirestoreAccessError as exc:
        return firestore_error_response(exc)
    return jsonify(result), HTTPStatus.OK
