from __future__ import annotations

import json
import logging
import re
from http import HTTPStatus
from pathlib import Path
from typing import Any, Mapping

from flask import current_app, jsonify, request, url_for
from google.api_core import exceptions as google_exceptions

from ..firebase import get_firestore_client
from ..utils import to_iso

log = logging.getLogger(__name__)


class FirestoreAccessError(Exception):
    """Internal sentinel to indicate a Firestore access issue occurred."""


def parse_json_body() -> dict[str, Any]:
    if request.is_json:
        payload = request.get_json(silent=True) or {}
    else:
        payload = {}
    return payload if isinstance(payload, dict) else {}


def error_response(error: str, message: str, status: HTTPStatus, **extra: Any) -> tuple[Any, int]:
    body = {"error": error, "message": message}
    body.update(extra)
    return jsonify(body), status


def validation_error(message: str) -> tuple[Any, int]:
    return error_response("validation_error", message, HTTPStatus.BAD_REQUEST)


def not_found(message: str) -> tuple[Any, int]:
    return error_response("not_found", message, HTTPStatus.NOT_FOUND)


def forbidden(message: str = "You do not have access to this chat.") -> tuple[Any, int]:
    return error_response("forbidden", message, HTTPStatus.FORBIDDEN)


def store_unavailable(error: str, exc: Exception) -> tuple[Any, int]:
    return error_response(
        error,
        "The data store is temporarily unavailable. Please retry.",
        HTTPStatus.SERVICE_UNAVAILABLE,
        detail=str(exc),
    )


def firestore_error_response(exc: Exception) -> tuple[Any, int]:
    exc_text = str(exc) or ""
    lower = exc_text.lower()

    if isinstance(exc, google_exceptions.NotFound) or "does not exist" in lower:
        match = re.search(r"project\s+([\w-]+)", exc_text)
        project = match.group(1) if match else None
        setup_url = (
            f"https://console.cloud.google.com/datastore/setup?project={project}"
            if project
            else "https://console.cloud.google.com/datastore/setup"
        )
        message = (
            "No Cloud Firestore database exists for the configured Google Cloud project. "
            f"Create a database in the Google Cloud Console and retry. Setup: {setup_url}. "
            "If you've created a named Firestore database, set FIRESTORE_DATABASE_ID to that database ID."
        )
    else:
        message = (
            "Cloud Firestore API is disabled for the configured Google Cloud project "
            "or the service account does not have permission."
        )
    return error_response("firestore_unavailable", message, HTTPStatus.SERVICE_UNAVAILABLE, detail=exc_text)


def sse_message(payload: dict[str, Any], event: str | None = None) -> str:
    body = json.dumps(payload, ensure_ascii=False, default=str)
    lines: list[str] = []
    if event:
        lines.append(f"event: {event}")
    for line in body.splitlines() or [""]:
        lines.append(f"data: {line}")
    return "\n".join(lines) + "\n\n"


def get_chat_ref(chat_id: str):
    db = get_firestore_client()
    return db.collection("chats").document(chat_id)


def get_chat_for_user(chat_id: str, uid: str):
    """Return ``(ref, data)``; ``(None, None)`` when missing and ``(ref, None)`` when not owned."""

    chat_ref = get_chat_ref(chat_id)
    try:
        chat_snapshot = chat_ref.get()
    except (google_exceptions.PermissionDenied, google_exceptions.GoogleAPICallError) as exc:
        raise FirestoreAccessError(exc) from exc
    if not chat_snapshot.exists:
        return None, None

    data = chat_snapshot.to_dict() or {}
    if data.get("uid") != uid:
        return chat_ref, None

    return chat_ref, data


def chat_access_error(chat_ref: Any, chat_data: Any) -> tuple[Any, int] | None:
    if chat_ref is None:
        return not_found("Chat not found.")
    if chat_data is None:
        return forbidden()
    return None


def parse_limit(raw: Any, default: int, maximum: int = 200) -> int:
    """Parse a ``limit`` query argument; raises ``ValueError`` for bad input."""

    if raw in (None, ""):
        return default
    value = int(raw)
    if value <= 0:
        raise ValueError("limit must be positive.")
    return min(value, maximum)


def serialize_chat(doc_id: str, data: Mapping[str, Any]) -> dict[str, Any]:
    return {
        "id": doc_id,
        "uid": data.get("uid"),
        "title": data.get("title"),
        "systemPrompt": data.get("systemPrompt"),
        "defaultModel": data.get("defaultModel"),
        "aiSettings": data.get("aiSettings"),
        "createdAt": to_iso(data.get("createdAt")),
        "updatedAt": to_iso(data.get("updatedAt")),
    }


def serialize_message(doc_id: str, data: Mapping[str, Any]) -> dict[str, Any]:
    return {
        "id": doc_id,
        "role": data.get("role"),
        "content": data.get("content"),
        "rawParts": data.get("rawParts") or [],
        "renderedText": data.get("renderedText"),
        "contentFormatVersion": data.get("contentFormatVersion"),
        "attachments": data.get("attachments") or [],
        "referencedLibraryItems": data.get("referencedLibraryItems") or [],
        "commands": data.get("commands") or [],
        "model": data.get("model"),
        "isStreaming": bool(data.get("isStreaming", False)),
        "metadata": data.get("metadata") or {},
        "responseMetadata": data.get("responseMetadata"),
        "multiAIResponses": data.get("multiAIResponses"),
        "createdAt": to_iso(data.get("createdAt")),
    }


def serialize_file(chat_id: str, doc_id: str, data: Mapping[str, Any]) -> dict[str, Any]:
    return {
        "id": doc_id,
        "fileName": data.get("fileName"),
        "mimeType": data.get("mimeType"),
        "type": data.get("type"),
        "size": data.get("size"),
        "storage": data.get("storage"),
        "libraryId": data.get("libraryId"),
        "createdAt": to_iso(data.get("createdAt")),
        "downloadPath": url_for("chats.download_file", chat_id=chat_id, file_id=doc_id, _external=False),
    }


def get_upload_root() -> Path:
    upload_dir = current_app.config.get("UPLOADS_DIR")
    if not upload_dir:
        raise RuntimeError("UPLOADS_DIR is not configured for the application.")
    root = Path(upload_dir).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def resolve_storage_path(relative_path: str, root: Path | None = None) -> Path:
    root = (root or get_upload_root()).resolve()
    candidate = (root / relative_path).resolve()
    if candidate != root and root not in candidate.parents:
        raise RuntimeError("Resolved file path is outside the uploads directory.")
    return candidate


def make_storage_loader(root: Path):
    """Bytes loader bound to ``root``; usable outside the request context."""

    def load(relative_path: str) -> bytes:
        return resolve_storage_path(relative_path, root).read_bytes()

    return load
