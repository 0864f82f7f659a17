from __future__ import annotations

import logging
from typing import Any, Optional

from google.api_core import exceptions as google_exceptions

from .helpers import FirestoreAccessError

log = logging.getLogger(__name__)

__all__ = ["get_chat_history", "get_recent_messages"]


def _load_messages(chat_ref) -> list[dict[str, Any]]:
    messages_ref = chat_ref.collection("messages").order_by("createdAt")
    try:
        docs = list(messages_ref.stream())
    except (google_exceptions.PermissionDenied, google_exceptions.GoogleAPICallError) as exc:
        raise FirestoreAccessError(exc) from exc
    messages = []
    for doc in docs:
        data = doc.to_dict() or {}
        data["id"] = doc.id
        messages.append(data)
    return messages


def _has_content(message: dict[str, Any]) -> bool:
    content = message.get("content")
    if isinstance(content, str) and content.strip():
        return True
    return bool(message.get("rawParts") or message.get("attachments") or message.get("referencedLibraryItems"))


def get_chat_history(chat_ref, exclude_message_id: Optional[str] = None) -> list[dict[str, Any]]:
    """Messages in creation order, ready for the reply pipeline.

    With ``exclude_message_id`` the history stops right before that message;
    an unknown id keeps the whole history. Without it, streaming placeholders
    and empty messages are dropped.
    """

    messages = _load_messages(chat_ref)
    if exclude_message_id:
        index = next((i for i, message in enumerate(messages) if message["id"] == exclude_message_id), None)
        history = messages[:index] if index is not None else messages
    else:
        history = [message for message in messages if not message.get("isStreaming") and _has_content(message)]

    log.debug("Loaded %d of %d messages for chat %s", len(history), len(messages), chat_ref.id)
    return history


def get_recent_messages(chat_ref, limit: int = 10) -> list[dict[str, Any]]:
    return _load_messages(chat_ref)[-limit:]
