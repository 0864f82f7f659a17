from __future__ import annotations

import logging
from collections import Counter
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Iterable, Mapping, Optional

from google.api_core import exceptions as google_exceptions
from google.cloud.firestore_v1 import ArrayUnion, FieldFilter, Increment

from ..firebase import get_firestore_client
from ..utils import MIN_DATETIME, now_utc, normalize_string_list, to_datetime, to_iso

log = logging.getLogger(__name__)

__all__ = [
    "ATTACHMENT_TYPES",
    "ITEM_TYPES",
    "LibraryNotFoundError",
    "LibraryPermissionError",
    "LibraryStoreError",
    "MEDIA_TYPES",
    "add_to_attachment_library",
    "add_to_media_library",
    "delete_attachment",
    "delete_media",
    "get_item",
    "get_library_stats",
    "list_attachments",
    "list_library_artifacts",
    "list_media",
    "make_library_resolver",
    "serialize_attachment",
    "serialize_library_artifact",
    "serialize_media",
    "track_usage",
    "track_usages",
    "update_attachment",
    "update_library_artifact",
    "update_media",
]

ATTACHMENTS = "attachmentLibrary"
MEDIA = "mediaLibrary"
ARTIFACTS = "artifacts"

ATTACHMENT_TYPES = ("image", "pdf", "file", "audio", "video")
MEDIA_TYPES = ("image", "video", "audio")
ITEM_TYPES = ("attachment", "artifact", "media")

_GOOGLE_ERRORS = (google_exceptions.PermissionDenied, google_exceptions.GoogleAPICallError)


class LibraryStoreError(Exception):
    """Raised when library records cannot be read from or written to Firestore."""


class LibraryNotFoundError(LibraryStoreError):
    """Raised when a library item does not exist."""


class LibraryPermissionError(LibraryStoreError):
    """Raised when a library item belongs to another user."""


def _collection(name: str):
    return get_firestore_client().collection(name)


def _updated_at(data: Mapping[str, Any]) -> datetime:
    return to_datetime(data.get("updatedAt")) or to_datetime(data.get("createdAt")) or MIN_DATETIME


def _stream_user_docs(name: str, uid: str, *extra: tuple[str, str, Any]) -> list[tuple[Any, dict[str, Any]]]:
    query = _collection(name).where(filter=FieldFilter("uid", "==", uid))
    for field, op, value in extra:
        query = query.where(filter=FieldFilter(field, op, value))
    try:
        docs = list(query.stream())
    except _GOOGLE_ERRORS as exc:
        raise LibraryStoreError(str(exc)) from exc
    return [(doc, doc.to_dict() or {}) for doc in docs]


def _get_owned(name: str, uid: str, item_id: str) -> tuple[Any, dict[str, Any]]:
    doc_ref = _collection(name).document(item_id)
    try:
        snapshot = doc_ref.get()
    except _GOOGLE_ERRORS as exc:
        raise LibraryStoreError(str(exc)) from exc
    if not snapshot.exists:
        raise LibraryNotFoundError("Library item not found.")
    data = snapshot.to_dict() or {}
    if data.get("uid") != uid:
        raise LibraryPermissionError("You do not have access to this library item.")
    return doc_ref, data


def _get_owned_artifact(uid: str, artifact_id: str) -> tuple[Any, dict[str, Any]]:
    """Artifacts are addressed by their ``artifactId``, falling back to the document id."""

    rows = _stream_user_docs(ARTIFACTS, uid, ("artifactId", "==", artifact_id))
    if rows:
        doc, data = max(rows, key=lambda item: _updated_at(item[1]))
        return doc.reference, data
    return _get_owned(ARTIFACTS, uid, artifact_id)


def _write(action: Callable[[], Any]) -> Any:
    try:
        return action()
    except _GOOGLE_ERRORS as exc:
        raise LibraryStoreError(str(exc)) from exc


def _contains(needle: str, *values: Any) -> bool:
    for value in values:
        if isinstance(value, (list, tuple)):
            if any(needle in str(tag).lower() for tag in value):
                return True
        elif value and needle in str(value).lower():
            return True
    return False


def _apply_common_edits(changes: Mapping[str, Any], text_fields: Iterable[str]) -> dict[str, Any]:
    updates: dict[str, Any] = {}
    for field in text_fields:
        if field in changes:
            value = changes[field]
            if value is not None and not isinstance(value, str):
                raise ValueError(f"{field} must be a string.")
            updates[field] = (value or "").strip()
    if "tags" in changes:
        if changes["tags"] is not None and not isinstance(changes["tags"], (list, tuple)):
            raise ValueError("tags must be a list of strings.")
        updates["tags"] = normalize_string_list(changes.get("tags"), max_items=20)
    if "isFavorited" in changes:
        if not isinstance(changes["isFavorited"], bool):
            raise ValueError("isFavorited must be a boolean.")
        updates["isFavorited"] = changes["isFavorited"]
    return updates


# --------------------------------------------------------------------------
# Serializers
# --------------------------------------------------------------------------


def serialize_attachment(doc_id: str, data: Mapping[str, Any]) -> dict[str, Any]:
    return {
        "id": doc_id,
        "type": data.get("type"),
        "originalName": data.get("originalName"),
        "displayName": data.get("displayName"),
        "mimeType": data.get("mimeType"),
        "size": int(data.get("size") or 0),
        "storage": data.get("storage"),
        "description": data.get("description") or "",
        "tags": list(data.get("tags") or []),
        "isFavorited": bool(data.get("isFavorited")),
        "usageCount": int(data.get("usageCount") or 0),
        "usedInChats": list(data.get("usedInChats") or []),
        "lastUsedAt": to_iso(data.get("lastUsedAt")),
        "createdAt": to_iso(data.get("createdAt")),
        "updatedAt": to_iso(data.get("updatedAt")),
    }


def serialize_media(doc_id: str, data: Mapping[str, Any]) -> dict[str, Any]:
    return {
        "id": doc_id,
        "type": data.get("type"),
        "title": data.get("title"),
        "description": data.get("description") or "",
        "sourceChatId": data.get("sourceChatId"),
        "sourceMessageId": data.get("sourceMessageId"),
        "storage": data.get("storage"),
        "externalUrl": data.get("externalUrl"),
        "thumbnailUrl": data.get("thumbnailUrl"),
        "prompt": data.get("prompt"),
        "model": data.get("model"),
        "generationParams": data.get("generationParams"),
        "metadata": data.get("metadata"),
        "tags": list(data.get("tags") or []),
        "isFavorited": bool(data.get("isFavorited")),
        "referenceCount": int(data.get("referenceCount") or 0),
        "referencedInChats": list(data.get("referencedInChats") or []),
        "lastReferencedAt": to_iso(data.get("lastReferencedAt")),
        "createdAt": to_iso(data.get("createdAt")),
        "updatedAt": to_iso(data.get("updatedAt")),
    }


def serialize_library_artifact(doc_id: str, data: Mapping[str, Any]) -> dict[str, Any]:
    return {
        "id": doc_id,
        "artifactId": data.get("artifactId"),
        "chatId": data.get("chatId"),
        "messageId": data.get("messageId"),
        "filename": data.get("filename"),
        "language": data.get("language"),
        "description": data.get("description") or "",
        "content": data.get("content") or "",
        "fileSize": data.get("fileSize"),
        "tags": list(data.get("tags") or []),
        "isFavorited": bool(data.get("isFavorited")),
        "usageCount": int(data.get("usageCount") or 0),
        "referenceCount": int(data.get("referenceCount") or 0),
        "referencedInChats": list(data.get("referencedInChats") or []),
        "lastReferencedAt": to_iso(data.get("lastReferencedAt")),
        "createdAt": to_iso(data.get("createdAt")),
        "updatedAt": to_iso(data.get("updatedAt")),
    }


# --------------------------------------------------------------------------
# Attachments
# --------------------------------------------------------------------------


def add_to_attachment_library(
    uid: str,
    *,
    storage: str,
    original_name: str,
    attachment_type: str,
    mime_type: str,
    size: int,
    display_name: Optional[str] = None,
    description: Optional[str] = None,
    tags: Optional[Iterable[str]] = None,
) -> dict[str, Any]:
    if attachment_type not in ATTACHMENT_TYPES:
        raise ValueError(f"type must be one of: {', '.join(ATTACHMENT_TYPES)}.")
    now = now_utc()
    data = {
        "uid": uid,
        "storage": storage,
        "originalName": original_name,
        "displayName": display_name,
        "type": attachment_type,
        "mimeType": mime_type,
        "size": int(size),
        "description": description,
        "tags": normalize_string_list(list(tags or []), max_items=20),
        "isFavorited": False,
        "usageCount": 0,
        "usedInChats": [],
        "createdAt": now,
        "updatedAt": now,
    }
    doc_ref = _collection(ATTACHMENTS).document()
    _write(lambda: doc_ref.set(data))
    log.info("Added %s to attachment library for %s", original_name, uid)
    return serialize_attachment(doc_ref.id, data)


def list_attachments(
    uid: str,
    *,
    attachment_type: Optional[str] = None,
    sort_by: str = "recent",
    favorite_only: bool = False,
    search_query: Optional[str] = None,
) -> list[dict[str, Any]]:
    filters = []
    if attachment_type and attachment_type != "all":
        filters.append(("type", "==", attachment_type))
    if favorite_only:
        filters.append(("isFavorited", "==", True))
    rows = _stream_user_docs(ATTACHMENTS, uid, *filters)

    if search_query:
        needle = search_query.lower()
        rows = [
            (doc, data)
            for doc, data in rows
            if _contains(needle, data.get("displayName") or data.get("originalName"), data.get("description"), data.get("tags"))
        ]

    if sort_by == "name":
        rows.sort(key=lambda item: str(item[1].get("displayName") or item[1].get("originalName") or "").lower())
    elif sort_by == "size":
        rows.sort(key=lambda item: int(item[1].get("size") or 0), reverse=True)
    elif sort_by == "usage":
        rows.sort(key=lambda item: int(item[1].get("usageCount") or 0), reverse=True)
    else:
        rows.sort(key=lambda item: _updated_at(item[1]), reverse=True)
    return [serialize_attachment(doc.id, data) for doc, data in rows]


def update_attachment(uid: str, attachment_id: str, changes: Mapping[str, Any]) -> dict[str, Any]:
    doc_ref, data = _get_owned(ATTACHMENTS, uid, attachment_id)
    updates = _apply_common_edits(changes, ("displayName", "description"))
    updates["updatedAt"] = now_utc()
    _write(lambda: doc_ref.update(updates))
    data.update(updates)
    return serialize_attachment(doc_ref.id, data)


def delete_attachment(uid: str, attachment_id: str, *, upload_root: Optional[Path] = None) -> None:
    """Remove the library entry and, when ``upload_root`` is given, the stored file."""

    doc_ref, data = _get_owned(ATTACHMENTS, uid, attachment_id)
    storage = data.get("storage")
    if upload_root is not None and storage:
        root = upload_root.resolve()
        path = (root / storage).resolve()
        if root in path.parents:
            try:
                path.unlink(missing_ok=True)
            except OSError as exc:
                log.warning("Failed to remove stored file %s: %s", path, exc)
    _write(doc_ref.delete)


# --------------------------------------------------------------------------
# Media
# --------------------------------------------------------------------------


def add_to_media_library(uid: str, entry: Mapping[str, Any]) -> dict[str, Any]:
    """Store generated media; ``entry`` uses the wire field names."""

    media_type = entry.get("type")
    if media_type not in MEDIA_TYPES:
        raise ValueError(f"type must be one of: {', '.join(MEDIA_TYPES)}.")
    title = str(entry.get("title") or "").strip()
    if not title:
        raise ValueError("title is required.")

    now = now_utc()
    data = {
        "uid": uid,
        "type": media_type,
        "title": title,
        "description": entry.get("description"),
        "sourceMessageId": entry.get("sourceMessageId"),
        "sourceChatId": entry.get("sourceChatId"),
        "storage": entry.get("storage"),
        "externalUrl": entry.get("externalUrl"),
        "thumbnailUrl": entry.get("thumbnailUrl"),
        "prompt": entry.get("prompt"),
        "model": entry.get("model"),
        "generationParams": dict(entry.get("generationParams") or {}),
        "metadata": dict(entry.get("metadata") or {}),
        "tags": normalize_string_list(entry.get("tags"), max_items=20),
        "isFavorited": False,
        "referenceCount": 0,
        "referencedInChats": [],
        "createdAt": now,
        "updatedAt": now,
    }
    doc_ref = _collection(MEDIA).document()
    _write(lambda: doc_ref.set(data))
    log.info("Added generated %s to media library for %s", media_type, uid)
    return serialize_media(doc_ref.id, data)


def list_media(
    uid: str,
    *,
    media_type: Optional[str] = None,
    sort_by: str = "recent",
    favorite_only: bool = False,
    search_query: Optional[str] = None,
) -> list[dict[str, Any]]:
    filters = []
    if media_type and media_type != "all":
        filters.append(("type", "==", media_type))
    if favorite_only:
        filters.append(("isFavorited", "==", True))
    rows = _stream_user_docs(MEDIA, uid, *filters)

    if search_query:
        needle = search_query.lower()
        rows = [
            (doc, data)
            for doc, data in rows
            if _contains(needle, data.get("title"), data.get("description"), data.get("prompt"), data.get("tags"))
        ]

    if sort_by == "name":
        rows.sort(key=lambda item: str(item[1].get("title") or "").lower())
    elif sort_by == "usage":
        rows.sort(key=lambda item: int(item[1].get("referenceCount") or 0), reverse=True)
    else:
        rows.sort(key=lambda item: _updated_at(item[1]), reverse=True)
    return [serialize_media(doc.id, data) for doc, data in rows]


def update_media(uid: str, media_id: str, changes: Mapping[str, Any]) -> dict[str, Any]:
    doc_ref, data = _get_owned(MEDIA, uid, media_id)
    updates = _apply_common_edits(changes, ("title", "description"))
    if "title" in updates and not updates["title"]:
        raise ValueError("title must not be empty.")
    updates["updatedAt"] = now_utc()
    _write(lambda: doc_ref.update(updates))
    data.update(updates)
    return serialize_media(doc_ref.id, data)


def delete_media(uid: str, media_id: str) -> None:
    doc_ref, _ = _get_owned(MEDIA, uid, media_id)
    _write(doc_ref.delete)


# --------------------------------------------------------------------------
# Artifacts
# --------------------------------------------------------------------------


def list_library_artifacts(
    uid: str,
    *,
    sort_by: str = "recent",
    favorite_only: bool = False,
    search_query: Optional[str] = None,
    language: Optional[str] = None,
) -> list[dict[str, Any]]:
    filters = [("isFavorited", "==", True)] if favorite_only else []
    rows = _stream_user_docs(ARTIFACTS, uid, *filters)

    if language:
        rows = [(doc, data) for doc, data in rows if data.get("language") == language]
    if search_query:
        needle = search_query.lower()
        rows = [
            (doc, data)
            for doc, data in rows
            if _contains(needle, data.get("filename"), data.get("description"), data.get("content"), data.get("tags"))
        ]

    if sort_by == "name":
        rows.sort(key=lambda item: str(item[1].get("filename") or "").lower())
    elif sort_by == "usage":
        rows.sort(key=lambda item: int(item[1].get("referenceCount") or 0), reverse=True)
    elif sort_by == "language":
        rows.sort(key=lambda item: str(item[1].get("language") or ""))
    else:
        rows.sort(key=lambda item: _updated_at(item[1]), reverse=True)
    return [serialize_library_artifact(doc.id, data) for doc, data in rows]


def update_library_artifact(uid: str, artifact_id: str, changes: Mapping[str, Any]) -> dict[str, Any]:
    doc_ref, data = _get_owned_artifact(uid, artifact_id)
    updates = _apply_common_edits(changes, ("filename", "description"))
    if "filename" in updates and not updates["filename"]:
        raise ValueError("filename must not be empty.")
    updates["updatedAt"] = now_utc()
    _write(lambda: doc_ref.update(updates))
    data.update(updates)
    return serialize_library_artifact(doc_ref.id, data)


# --------------------------------------------------------------------------
# Usage and lookups
# --------------------------------------------------------------------------


def _lookup(uid: str, item_type: str, item_id: str) -> tuple[Any, dict[str, Any]]:
    if item_type == "attachment":
        return _get_owned(ATTACHMENTS, uid, item_id)
    if item_type == "media":
        return _get_owned(MEDIA, uid, item_id)
    if item_type == "artifact":
        return _get_owned_artifact(uid, item_id)
    raise ValueError(f"type must be one of: {', '.join(ITEM_TYPES)}.")


def get_item(uid: str, item_type: str, item_id: str) -> dict[str, Any]:
    doc_ref, data = _lookup(uid, item_type, item_id)
    if item_type == "attachment":
        return serialize_attachment(doc_ref.id, data)
    if item_type == "media":
        return serialize_media(doc_ref.id, data)
    return serialize_library_artifact(doc_ref.id, data)


def track_usage(uid: str, item_type: str, item_id: str, chat_id: str) -> None:
    """Record that a library item was referenced from ``chat_id``.

    Missing items and items owned by someone else are ignored.
    """

    try:
        doc_ref, _ = _lookup(uid, item_type, item_id)
    except (LibraryNotFoundError, LibraryPermissionError):
        log.info("Skipping usage tracking for unknown %s %s", item_type, item_id)
        return

    now = now_utc()
    if item_type == "attachment":
        updates = {"usedInChats": ArrayUnion([chat_id]), "usageCount": Increment(1), "lastUsedAt": now}
    else:
        updates = {
            "referencedInChats": ArrayUnion([chat_id]),
            "referenceCount": Increment(1),
            "lastReferencedAt": now,
        }
    _write(lambda: doc_ref.update(updates))


def track_usages(uid: str, items: Iterable[Mapping[str, Any]], chat_id: str) -> None:
    """Track every referenced item; individual failures are logged."""

    for item in items or []:
        item_type = str(item.get("type") or "")
        item_id = str(item.get("id") or "")
        if item_type not in ITEM_TYPES or not item_id:
            continue
        try:
            track_usage(uid, item_type, item_id, chat_id)
        except LibraryStoreError as exc:
            log.warning("Failed to track usage of %s %s: %s", item_type, item_id, exc)


def make_library_resolver(uid: str) -> Callable[[Mapping[str, Any]], Optional[dict[str, Any]]]:
    """Resolve ``referencedLibraryItems`` entries to their stored records."""

    def resolve(item: Mapping[str, Any]) -> Optional[dict[str, Any]]:
        item_type = str(item.get("type") or "")
        item_id = str(item.get("id") or "")
        if item_type not in ITEM_TYPES or not item_id:
            return None
        try:
            _, data = _lookup(uid, item_type, item_id)
        except LibraryStoreError as exc:
            log.info("Library item %s %s unavailable: %s", item_type, item_id, exc)
            return None
        return data

    return resolve


def get_library_stats(uid: str) -> dict[str, Any]:
    attachments = [data for _, data in _stream_user_docs(ATTACHMENTS, uid)]
    artifacts = [data for _, data in _stream_user_docs(ARTIFACTS, uid)]
    media = [data for _, data in _stream_user_docs(MEDIA, uid)]

    attachment_types = Counter(data.get("type") for data in attachments)
    media_types = Counter(data.get("type") for data in media)
    languages = Counter(str(data.get("language") or "text") for data in artifacts)

    return {
        "attachments": {
            "total": len(attachments),
            "favorites": sum(1 for data in attachments if data.get("isFavorited")),
            "totalSize": sum(int(data.get("size") or 0) for data in attachments),
            "byType": {kind: attachment_types.get(kind, 0) for kind in ATTACHMENT_TYPES},
        },
        "artifacts": {
            "total": len(artifacts),
            "favorites": sum(1 for data in artifacts if data.get("isFavorited")),
            "totalReferences": sum(int(data.get("referenceCount") or 0) for data in artifacts),
            "byLanguage": dict(languages),
        },
        "media": {
            "total": len(media),
            "favorites": sum(1 for data in media if data.get("isFavorited")),
            "totalReferences": sum(int(data.get("referenceCount") or 0) for data in media),
            "byType": {kind: media_types.get(kind, 0) for kind in MEDIA_TYPES},
        },
    }
