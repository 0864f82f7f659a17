from __future__ import annotations

import logging
from http import HTTPStatus
from typing import Any

from flask import Blueprint, jsonify, request

from ..auth.utils import current_uid, firebase_user_required
from ..chats.helpers import error_response, forbidden, not_found, parse_limit, validation_error
from .service import (
    DEFAULT_MESSAGE_LIMIT,
    SearchNotFoundError,
    SearchPermissionError,
    SearchServiceError,
    search_chats,
    search_messages_in_chat,
    search_user_messages,
)

search_bp = Blueprint("search", __name__)
log = logging.getLogger(__name__)

_SEARCH_TYPES = ("chats", "messages", "all")


def _search_error(exc: SearchServiceError) -> tuple[Any, int]:
    log.exception("Search failed: %s", exc)
    return error_response(
        "search_error",
        "Search operation failed.",
        HTTPStatus.SERVICE_UNAVAILABLE,
        detail=str(exc),
    )


@search_bp.get("/search")
@firebase_user_required
def search() -> tuple[Any, int]:
    """
    Search the user's chats and messages.

    Query Parameters:
    - q (required): Search query string
    - type (optional): chats, messages or all (default)
    - limit (optional): Maximum results per type. Default: 50, Max: 200
    """
    query = (request.args.get("q") or "").strip()
    if not query:
        return validation_error("q query parameter is required.")

    search_type = request.args.get("type", "all")
    if search_type not in _SEARCH_TYPES:
        return validation_error(f"type must be one of: {', '.join(_SEARCH_TYPES)}.")

    try:
        limit = parse_limit(request.args.get("limit"), DEFAULT_MESSAGE_LIMIT)
    except ValueError:
        return validation_error("limit must be a positive integer.")

    uid = current_uid()
    body: dict[str, Any] = {"query": query}
    try:
        if search_type in ("chats", "all"):
            body["chats"] = search_chats(uid, query, limit)
        if search_type in ("messages", "all"):
            body["messages"] = search_user_messages(uid, query, limit)
    except SearchServiceError as exc:
        return _search_error(exc)

    return jsonify(body), HTTPStatus.OK


@search_bp.get("/chats/<chat_id>/search")
@firebase_user_required
def search_chat(chat_id: str) -> tuple[Any, int]:
    query = (request.args.get("q") or "").strip()
    if not query:
        return validation_error("q query parameter is required.")

    try:
        limit = parse_limit(request.args.get("limit"), DEFAULT_MESSAGE_LIMIT)
    except ValueError:
        return validation_error("limit must be a positive integer.")

    try:
        results = search_messages_in_chat(current_uid(), chat_id, query, limit)
    except SearchNotFoundError as exc:
        return not_found(str(exc))
    except SearchPermissionError as exc:
        return forbidden(str(exc))
    except SearchServiceError as exc:
        return _search_error(exc)

    return jsonify({"items": results}), HTTPStatus.OK
