from __future__ import annotations

import logging
import uuid
from datetime import datetime
from typing import Any, Callable, Iterable, Mapping, Optional

from google.api_core import exceptions as google_exceptions
from google.cloud.firestore_v1 import FieldFilter

from ..ai.canonical import ArtifactRefPart, get_mime_type
from ..ai.file_cache import ensure_provider_file
from ..ai.providers.base import ProviderAdapter
from ..firebase import get_firestore_client
from ..utils import MIN_DATETIME, now_utc, normalize_string_list, to_datetime, to_iso

log = logging.getLogger(__name__)

__all__ = [
    "ArtifactNotFoundError",
    "ArtifactPermissionError",
    "ArtifactStoreError",
    "PREVIEWABLE_LANGUAGES",
    "create_artifact",
    "create_artifacts",
    "delete_artifact",
    "delete_chat_artifacts",
    "get_artifact",
    "list_chat_artifacts",
    "list_message_artifacts",
    "make_artifact_hook",
    "serialize_artifact",
    "update_artifact",
]

COLLECTION = "artifacts"
PREVIEWABLE_LANGUAGES = frozenset(
    {"html", "css", "javascript", "typescript", "react", "vue", "svelte", "markdown"}
)
_GOOGLE_ERRORS = (google_exceptions.PermissionDenied, google_exceptions.GoogleAPICallError)


class ArtifactStoreError(Exception):
    """Raised when artifacts cannot be read from or written to Firestore."""


class ArtifactNotFoundError(ArtifactStoreError):
    """Raised when an artifact does not exist."""


class ArtifactPermissionError(ArtifactStoreError):
    """Raised when an artifact belongs to another user."""


def _collection():
    return get_firestore_client().collection(COLLECTION)


def _sort_key(data: Mapping[str, Any]) -> datetime:
    return to_datetime(data.get("createdAt")) or MIN_DATETIME


def serialize_artifact(doc_id: str, data: Mapping[str, Any], *, include_content: bool = True) -> dict[str, Any]:
    payload = {
        "id": doc_id,
        "artifactId": data.get("artifactId"),
        "chatId": data.get("chatId"),
        "messageId": data.get("messageId"),
        "filename": data.get("filename"),
        "language": data.get("language"),
        "description": data.get("description") or "",
        "editCount": int(data.get("editCount") or 0),
        "isPreviewable": bool(data.get("isPreviewable")),
        "fileSize": data.get("fileSize"),
        "mimeType": data.get("mimeType"),
        "tags": list(data.get("tags") or []),
        "isFavorited": bool(data.get("isFavorited")),
        "usageCount": int(data.get("usageCount") or 0),
        "referenceCount": int(data.get("referenceCount") or 0),
        "providers": sorted((data.get("providerFiles") or {}).keys()),
        "lastReferencedAt": to_iso(data.get("lastReferencedAt")),
        "createdAt": to_iso(data.get("createdAt")),
        "updatedAt": to_iso(data.get("updatedAt")),
    }
    if include_content:
        payload["content"] = data.get("content") or ""
        payload["originalContent"] = data.get("originalContent")
    return payload


def _query(*filters: tuple[str, str, Any]) -> list[tuple[Any, dict[str, Any]]]:
    query = _collection()
    for field, op, value in filters:
        query = query.where(filter=FieldFilter(field, op, value))
    try:
        docs = list(query.stream())
    except _GOOGLE_ERRORS as exc:
        raise ArtifactStoreError(str(exc)) from exc
    return [(doc, doc.to_dict() or {}) for doc in docs]


def create_artifact(
    uid: str,
    chat_id: str,
    message_id: Optional[str],
    *,
    filename: str,
    language: str,
    content: str,
    description: str = "",
    artifact_id: Optional[str] = None,
) -> dict[str, Any]:
    """Store a generated artifact and return its serialized form."""

    now = now_utc()
    language = (language or "text").strip().lower()
    data = {
        "uid": uid,
        "chatId": chat_id,
        "messageId": message_id,
        "artifactId": artifact_id or uuid.uuid4().hex,
        "filename": filename,
        "language": language,
        "content": content,
        "originalContent": content,
        "description": description or "",
        "editCount": 0,
        "isPreviewable": language in PREVIEWABLE_LANGUAGES,
        "fileSize": len(content.encode("utf-8")),
        "mimeType": get_mime_type(filename, "file"),
        "providerFiles": {},
        "usageCount": 0,
        "referenceCount": 0,
        "referencedInChats": [],
        "tags": [],
        "isFavorited": False,
        "createdAt": now,
        "updatedAt": now,
    }
    doc_ref = _collection().document()
    try:
        doc_ref.set(data)
    except _GOOGLE_ERRORS as exc:
        raise ArtifactStoreError(str(exc)) from exc
    log.info("Created artifact %s (%s) in chat %s", data["artifactId"], filename, chat_id)
    return serialize_artifact(doc_ref.id, data)


def create_artifacts(
    uid: str,
    chat_id: str,
    message_id: Optional[str],
    artifacts: Iterable[Mapping[str, Any]],
) -> list[dict[str, Any]]:
    created = []
    for item in artifacts:
        created.append(
            create_artifact(
                uid,
                chat_id,
                message_id,
                artifact_id=str(item.get("id") or "") or None,
                filename=str(item.get("filename") or "untitled"),
                language=str(item.get("language") or "text"),
                content=str(item.get("content") or ""),
                description=str(item.get("description") or ""),
            )
        )
    return created


def _find_artifact(uid: str, artifact_id: str) -> tuple[Any, dict[str, Any]]:
    """Look an artifact up by document id first, then by its ``artifactId``."""

    doc_ref = _collection().document(artifact_id)
    try:
        snapshot = doc_ref.get()
    except _GOOGLE_ERRORS as exc:
        raise ArtifactStoreError(str(exc)) from exc

    if snapshot.exists:
        data = snapshot.to_dict() or {}
        if data.get("uid") != uid:
            raise ArtifactPermissionError("You do not have access to this artifact.")
        return doc_ref, data

    matches = _query(("uid", "==", uid), ("artifactId", "==", artifact_id))
    if not matches:
        raise ArtifactNotFoundError("Artifact not found.")
    doc, data = max(matches, key=lambda item: _sort_key(item[1]))
    return doc.reference, data


def get_artifact(uid: str, artifact_id: str) -> dict[str, Any]:
    doc_ref, data = _find_artifact(uid, artifact_id)
    return serialize_artifact(doc_ref.id, data)


def list_chat_artifacts(uid: str, chat_id: str) -> list[dict[str, Any]]:
    rows = _query(("uid", "==", uid), ("chatId", "==", chat_id))
    rows.sort(key=lambda item: _sort_key(item[1]), reverse=True)
    return [serialize_artifact(doc.id, data) for doc, data in rows]


def list_message_artifacts(uid: str, chat_id: str, message_id: str) -> list[dict[str, Any]]:
    rows = _query(("uid", "==", uid), ("chatId", "==", chat_id), ("messageId", "==", message_id))
    rows.sort(key=lambda item: _sort_key(item[1]))
    return [serialize_artifact(doc.id, data) for doc, data in rows]


def update_artifact(uid: str, artifact_id: str, changes: Mapping[str, Any]) -> dict[str, Any]:
    """Apply content, filename, description or language edits.

    A content change bumps ``editCount`` and drops cached provider uploads.
    """

    doc_ref, data = _find_artifact(uid, artifact_id)
    updates: dict[str, Any] = {}

    if "content" in changes:
        content = changes["content"]
        if not isinstance(content, str):
            raise ValueError("content must be a string.")
        if content != data.get("content"):
            updates["content"] = content
            updates["fileSize"] = len(content.encode("utf-8"))
            updates["editCount"] = int(data.get("editCount") or 0) + 1
            updates["providerFiles"] = {}

    for field in ("filename", "description", "language"):
        if field in changes:
            value = changes[field]
            if not isinstance(value, str):
                raise ValueError(f"{field} must be a string.")
            updates[field] = value.strip()

    if "filename" in updates:
        if not updates["filename"]:
            raise ValueError("filename must not be empty.")
        updates["mimeType"] = get_mime_type(updates["filename"], "file")
    if "language" in updates:
        updates["language"] = updates["language"].lower() or "text"
        updates["isPreviewable"] = updates["language"] in PREVIEWABLE_LANGUAGES

    if "tags" in changes:
        updates["tags"] = normalize_string_list(changes.get("tags"), max_items=20)
    if "isFavorited" in changes:
        updates["isFavorited"] = bool(changes["isFavorited"])

    if not updates:
        return serialize_artifact(doc_ref.id, data)

    updates["updatedAt"] = now_utc()
    try:
        doc_ref.update(updates)
    except _GOOGLE_ERRORS as exc:
        raise ArtifactStoreError(str(exc)) from exc
    data.update(updates)
    return serialize_artifact(doc_ref.id, data)


def delete_artifact(uid: str, artifact_id: str) -> None:
    doc_ref, _ = _find_artifact(uid, artifact_id)
    try:
        doc_ref.delete()
    except _GOOGLE_ERRORS as exc:
        raise ArtifactStoreError(str(exc)) from exc


def delete_chat_artifacts(uid: str, chat_id: str, batch: Any) -> int:
    """Queue deletes for every artifact of a chat on ``batch``."""
    rows = _query(("uid", "==", uid), ("chatId", "==", chat_id))
    for doc, _ in rows:
        batch.delete(doc.reference)
    return len(rows)


def make_artifact_hook(uid: str, adapter: ProviderAdapter, provider: str) -> Callable[[ArtifactRefPart], None]:
    """Fill artifact references with stored content and provider file handles."""

    def hook(part: ArtifactRefPart) -> None:
        try:
            doc_ref, data = _find_artifact(uid, part.artifact_id)
        except ArtifactStoreError as exc:
            log.info("Artifact %s unavailable for prompt: %s", part.artifact_id, exc)
            return
        part.content = data.get("content") or part.content
        part.description = data.get("description") or part.description
        part.filename = data.get("filename") or part.filename
        part.language = data.get("language") or part.language
        try:
            part.provider_file_uri = ensure_provider_file(doc_ref, data, provider, adapter)
        except _GOOGLE_ERRORS as exc:
            log.warning("Failed to record provider file for artifact %s: %s", part.artifact_id, exc)

    return hook
