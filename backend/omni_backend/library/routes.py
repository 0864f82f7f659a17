from __future__ import annotations

import logging
from http import HTTPStatus
from typing import Any

from flask import Blueprint, jsonify, request

from ..artifacts.service import ArtifactNotFoundError, ArtifactPermissionError, ArtifactStoreError, delete_artifact
from ..auth.utils import current_uid, firebase_user_required
from ..chats.helpers import (
    FirestoreAccessError,
    chat_access_error,
    forbidden,
    get_chat_for_user,
    get_upload_root,
    not_found,
    parse_json_body,
    parse_limit,
    store_unavailable,
    validation_error,
)
from ..chats.history import get_recent_messages
from .search import CONTEXT_MESSAGES, DEFAULT_LIMIT, search_library
from .service import (
    ITEM_TYPES,
    LibraryNotFoundError,
    LibraryPermissionError,
    LibraryStoreError,
    add_to_media_library,
    delete_attachment,
    delete_media,
    get_item,
    get_library_stats,
    list_attachments,
    list_library_artifacts,
    list_media,
    track_usage,
    update_attachment,
    update_library_artifact,
    update_media,
)

library_bp = Blueprint("library", __name__, url_prefix="/library")
log = logging.getLogger(__name__)


def _flag(name: str) -> bool:
    return request.args.get(name, "false").lower() in ("true", "1", "yes")


def _store_error_response(exc: LibraryStoreError) -> tuple[Any, int]:
    if isinstance(exc, LibraryNotFoundError):
        return not_found(str(exc))
    if isinstance(exc, LibraryPermissionError):
        return forbidden(str(exc))
    log.exception("Library store failure: %s", exc)
    return store_unavailable("library_store_unavailable", exc)


# --------------------------------------------------------------------------
# Attachments
# --------------------------------------------------------------------------


@library_bp.get("/attachments")
@firebase_user_required
def list_attachment_library() -> tuple[Any, int]:
    try:
        items = list_attachments(
            current_uid(),
            attachment_type=request.args.get("type"),
            sort_by=request.args.get("sortBy", "recent"),
            favorite_only=_flag("favoriteOnly"),
            search_query=request.args.get("q"),
        )
    except LibraryStoreError as exc:
        return _store_error_response(exc)
    return jsonify({"items": items}), HTTPStatus.OK


@library_bp.patch("/attachments/<attachment_id>")
@firebase_user_required
def update_attachment_route(attachment_id: str) -> tuple[Any, int]:
    try:
        item = update_attachment(current_uid(), attachment_id, parse_json_body())
    except ValueError as exc:
        return validation_error(str(exc))
    except LibraryStoreError as exc:
        return _store_error_response(exc)
    return jsonify(item), HTTPStatus.OK


@library_bp.delete("/attachments/<attachment_id>")
@firebase_user_required
def delete_attachment_route(attachment_id: str):
    try:
        delete_attachment(current_uid(), attachment_id, upload_root=get_upload_root())
    except LibraryStoreError as exc:
        return _store_error_response(exc)
    return "", HTTPStatus.NO_CONTENT


# --------------------------------------------------------------------------
# Media
# --------------------------------------------------------------------------


@library_bp.get("/media")
@firebase_user_required
def list_media_library() -> tuple[Any, int]:
    try:
        items = list_media(
            current_uid(),
            media_type=request.args.get("type"),
            sort_by=request.args.get("sortBy", "recent"),
            favorite_only=_flag("favoriteOnly"),
            search_query=request.args.get("q"),
        )
    except LibraryStoreError as exc:
        return _store_error_response(exc)
    return jsonify({"items": items}), HTTPStatus.OK


@library_bp.post("/media")
@firebase_user_required
def add_media_route() -> tuple[Any, int]:
    try:
        item = add_to_media_library(current_uid(), parse_json_body())
    except ValueError as exc:
        return validation_error(str(exc))
    except LibraryStoreError as exc:
        return _store_error_response(exc)
    return jsonify(item), HTTPStatus.CREATED


@library_bp.patch("/media/<media_id>")
@firebase_user_required
def update_media_route(media_id: str) -> tuple[Any, int]:
    try:
        item = update_media(current_uid(), media_id, parse_json_body())
    except ValueError as exc:
        return validation_error(str(exc))
    except LibraryStoreError as exc:
        return _store_error_response(exc)
    return jsonify(item), HTTPStatus.OK


@library_bp.delete("/media/<media_id>")
@firebase_user_required
def delete_media_route(media_id: str):
    try:
        delete_media(current_uid(), media_id)
    except LibraryStoreError as exc:
        return _store_error_response(exc)
    return "", HTTPStatus.NO_CONTENT


# --------------------------------------------------------------------------
# Artifacts
# --------------------------------------------------------------------------


@library_bp.get("/artifacts")
@firebase_user_required
def list_artifact_library() -> tuple[Any, int]:
    try:
        items = list_library_artifacts(
            current_uid(),
            sort_by=request.args.get("sortBy", "recent"),
            favorite_only=_flag("favoriteOnly"),
            search_query=request.args.get("q"),
            language=request.args.get("language"),
        )
    except LibraryStoreError as exc:
        return _store_error_response(exc)
    return jsonify({"items": items}), HTTPStatus.OK


@library_bp.patch("/artifacts/<artifact_id>")
@firebase_user_required
def update_library_artifact_route(artifact_id: str) -> tuple[Any, int]:
    try:
        item = update_library_artifact(current_uid(), artifact_id, parse_json_body())
    except ValueError as exc:
        return validation_error(str(exc))
    except LibraryStoreError as exc:
        return _store_error_response(exc)
    return jsonify(item), HTTPStatus.OK


@library_bp.delete("/artifacts/<artifact_id>")
@firebase_user_required
def delete_library_artifact_route(artifact_id: str):
    try:
        delete_artifact(current_uid(), artifact_id)
    except ArtifactNotFoundError as exc:
        return not_found(str(exc))
    except ArtifactPermissionError as exc:
        return forbidden(str(exc))
    except ArtifactStoreError as exc:
        log.exception("Artifact store failure: %s", exc)
        return store_unavailable("artifact_store_unavailable", exc)
    return "", HTTPStatus.NO_CONTENT


# --------------------------------------------------------------------------
# Lookup, search, usage, stats
# --------------------------------------------------------------------------


@library_bp.get("/items/<item_type>/<item_id>")
@firebase_user_required
def get_item_route(item_type: str, item_id: str) -> tuple[Any, int]:
    if item_type not in ITEM_TYPES:
        return validation_error(f"type must be one of: {', '.join(ITEM_TYPES)}.")
    try:
        item = get_item(current_uid(), item_type, item_id)
    except LibraryStoreError as exc:
        return _store_error_response(exc)
    return jsonify(item), HTTPStatus.OK


@library_bp.get("/search")
@firebase_user_required
def search_library_route() -> tuple[Any, int]:
    uid = current_uid()
    item_type = request.args.get("type", "all")
    if item_type not in ("all", *ITEM_TYPES):
        return validation_error("type must be one of: all, attachment, artifact, media.")
    try:
        limit = parse_limit(request.args.get("limit"), DEFAULT_LIMIT)
    except ValueError:
        return validation_error("limit must be a positive integer.")

    context_messages: list[dict[str, Any]] = []
    chat_id = (request.args.get("chatId") or "").strip()
    if chat_id:
        try:
            chat_ref, chat_data = get_chat_for_user(chat_id, uid)
            error = chat_access_error(chat_ref, chat_data)
            if error is not None:
                return error
            context_messages = get_recent_messages(chat_ref, CONTEXT_MESSAGES)
        except FirestoreAccessError as exc:
            log.warning("Failed to load chat context for library search: %s", exc)

    try:
        result = search_library(
            uid,
            query=request.args.get("q"),
            item_type=item_type,
            limit=limit,
            context_messages=context_messages,
            include_recently_used=_flag("recentlyUsed"),
            include_popular=_flag("popular"),
        )
    except LibraryStoreError as exc:
        return _store_error_response(exc)
    return jsonify(result), HTTPStatus.OK


@library_bp.post("/usage")
@firebase_user_required
def track_usage_route():
    payload = parse_json_body()
    item_type = payload.get("type")
    item_id = payload.get("id")
    chat_id = payload.get("chatId")
    if item_type not in ITEM_TYPES:
        return validation_error(f"type must be one of: {', '.join(ITEM_TYPES)}.")
    if not isinstance(item_id, str) or not item_id.strip():
        return validation_error("id is required.")
    if not isinstance(chat_id, str) or not chat_id.strip():
        return validation_error("chatId is required.")

    try:
        track_usage(current_uid(), item_type, item_id.strip(), chat_id.strip())
    except LibraryStoreError as exc:
        return _store_error_response(exc)
    return "", HTTPStatus.NO_CONTENT


@library_bp.get("/stats")
@firebase_user_required
def library_stats_route() -> tuple[Any, int]:
    try:
        stats = get_library_stats(current_uid())
    except LibraryStoreError as exc:
        return _store_error_response(exc)
    return jsonify(stats), HTTPStatus.OK
