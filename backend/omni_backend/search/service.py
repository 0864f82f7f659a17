from __future__ import annotations

import logging
import math
from typing import Any, Optional

from firebase_admin import firestore as firebase_firestore
from google.api_core import exceptions as google_exceptions
from google.cloud.firestore_v1 import FieldFilter

from ..chats.helpers import FirestoreAccessError, get_chat_for_user
from ..firebase import get_firestore_client
from ..utils import MIN_DATETIME, to_datetime, to_iso

log = logging.getLogger(__name__)

SNIPPET_RADIUS = 60
DEFAULT_MESSAGE_LIMIT = 50

_GOOGLE_ERRORS = (google_exceptions.PermissionDenied, google_exceptions.GoogleAPICallError)


class SearchServiceError(Exception):
    pass


class SearchNotFoundError(SearchServiceError):
    pass


class SearchPermissionError(SearchServiceError):
    pass


def fuzzy_search(query: str, text: str) -> float:
    """
    Calculate fuzzy match score for a query against text.
    Returns a score between 0 and 1, where 1 is perfect match.
    """
    if not text or not query:
        return 0.0

    query = query.lower()
    text_lower = text.lower()

    if query == text_lower:
        return 1.0
    if text_lower.startswith(query):
        return 0.8
    if query in text_lower:
        return 0.6

    query_words = set(query.split())
    text_words = set(text_lower.split())
    if query_words:
        intersection = query_words & text_words
        if intersection:
            return 0.4 + (len(intersection) / len(query_words)) * 0.3

    return 0.0


def _find(content: str, query: str) -> Optional[tuple[int, str]]:
    idx = content.lower().find(query.lower())
    if idx == -1:
        return None
    start = max(0, idx - SNIPPET_RADIUS)
    end = min(len(content), idx + len(query) + SNIPPET_RADIUS)
    return idx, content[start:end]


def _stream(query) -> list:
    try:
        return list(query.stream())
    except _GOOGLE_ERRORS as exc:
        raise SearchServiceError(str(exc)) from exc


def _chat_messages(chat_ref) -> list:
    return _stream(chat_ref.collection("messages").order_by("createdAt"))


def search_messages_in_chat(uid: str, chat_id: str, query: str, limit: Optional[int] = None) -> list[dict[str, Any]]:
    """Case-insensitive substring search over one chat, oldest match first."""

    q = (query or "").strip()
    if not q:
        return []

    try:
        chat_ref, chat_data = get_chat_for_user(chat_id, uid)
    except FirestoreAccessError as exc:
        raise SearchServiceError(str(exc)) from exc
    if chat_ref is None:
        raise SearchNotFoundError("Chat not found.")
    if chat_data is None:
        raise SearchPermissionError("You do not have access to this chat.")

    results: list[dict[str, Any]] = []
    for doc in _chat_messages(chat_ref):
        data = doc.to_dict() or {}
        content = str(data.get("content") or "")
        found = _find(content, q)
        if found is not None:
            _, snippet = found
            results.append(
                {
                    "messageId": doc.id,
                    "chatId": chat_id,
                    "role": data.get("role") or "user",
                    "timestamp": data.get("createdAt"),
                    "snippet": snippet,
                    "fullMatch": len(content.strip()) == len(q),
                }
            )
        if limit and len(results) >= limit:
            break

    results.sort(key=lambda item: to_datetime(item["timestamp"]) or MIN_DATETIME)
    for item in results:
        item["timestamp"] = to_iso(item["timestamp"])
    return results


def _message_score(idx: int, query_length: int, content_length: int, message_count: int) -> float:
    distance_from_end = content_length - (idx + query_length)
    score = (
        100
        - min(90, idx)
        - min(10, math.log10(message_count + 1) * 4)
        - min(20, distance_from_end / 10)
    )
    return round(score, 2)


def _user_chats(uid: str) -> list:
    return _stream(
        get_firestore_client()
        .collection("chats")
        .where(filter=FieldFilter("uid", "==", uid))
        .order_by("updatedAt", direction=firebase_firestore.Query.DESCENDING)
    )


def search_user_messages(uid: str, query: str, limit: int = DEFAULT_MESSAGE_LIMIT) -> list[dict[str, Any]]:
    """Search every chat the user owns; early, short matches in small chats rank first."""

    q = (query or "").strip()
    if not q:
        return []

    results: list[dict[str, Any]] = []
    for chat_doc in _user_chats(uid):
        chat = chat_doc.to_dict() or {}
        messages = _chat_messages(chat_doc.reference)
        if not messages:
            continue
        for doc in messages:
            data = doc.to_dict() or {}
            content = str(data.get("content") or "")
            found = _find(content, q)
            if found is not None:
                idx, snippet = found
                results.append(
                    {
                        "messageId": doc.id,
                        "chatId": chat_doc.id,
                        "chatTitle": chat.get("title") or "",
                        "role": data.get("role") or "user",
                        "timestamp": data.get("createdAt"),
                        "snippet": snippet,
                        "score": _message_score(idx, len(q), len(content), len(messages)),
                    }
                )
            if len(results) >= limit:
                break
        if len(results) >= limit:
            break

    results.sort(key=lambda item: (item["score"], to_datetime(item["timestamp"]) or MIN_DATETIME), reverse=True)
    for item in results:
        item["timestamp"] = to_iso(item["timestamp"])
    return results


def search_chats(uid: str, query: str, limit: int = 20) -> list[dict[str, Any]]:
    q = (query or "").strip()
    if not q:
        return []

    scored: list[tuple[float, dict[str, Any]]] = []
    for chat_doc in _user_chats(uid):
        chat = chat_doc.to_dict() or {}
        title = str(chat.get("title") or "")
        score = fuzzy_search(q, title)
        if score > 0:
            scored.append(
                (
                    score,
                    {
                        "type": "chat",
                        "id": chat_doc.id,
                        "title": title or "Untitled Chat",
                        "preview": title[:80],
                        "updatedAt": to_iso(chat.get("updatedAt")),
                        "score": score,
                    },
                )
            )

    # Chats already arrive newest first and sort() is stable.
    scored.sort(key=lambda pair: pair[0], reverse=True)
    return [item for _, item in scored[:limit]]
