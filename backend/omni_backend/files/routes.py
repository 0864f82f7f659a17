from __future__ import annotations

from http import HTTPStatus
from typing import Any

from flask import Blueprint, jsonify, request
from google.api_core import exceptions as google_exceptions
from google.cloud.firestore_v1 import FieldFilter

from ..auth.utils import current_uid, firebase_user_required
from ..chats.helpers import firestore_error_response, serialize_chat, serialize_file
from ..firebase import get_firestore_client

files_bp = Blueprint("files", __name__, url_prefix="/files")


@files_bp.get("")
@firebase_user_required
def list_user_files() -> tuple[Any, int]:
    """Return all files owned by the authenticated user across their chats."""

    uid = current_uid()
    type_filter = (request.args.get("type") or "").strip().lower()
    db = get_firestore_client()
    try:
        chat_docs = list(db.collection("chats").where(filter=FieldFilter("uid", "==", uid)).stream())
    except (google_exceptions.PermissionDenied, google_exceptions.GoogleAPICallError) as exc:
        return firestore_error_response(exc)

    items: list[dict[str, Any]] = []
    for chat_doc in chat_docs:
        chat_data = chat_doc.to_dict() or {}
        if chat_data.get("uid") != uid:
            continue

        try:
            file_docs = list(chat_doc.reference.collection("files").order_by("createdAt").stream())
        except (google_exceptions.PermissionDenied, google_exceptions.GoogleAPICallError) as exc:
            return firestore_error_response(exc)

        serialized_chat = serialize_chat(chat_doc.id, chat_data)
        for file_doc in file_docs:
            file_data = file_doc.to_dict() or {}
            if file_data.get("uid") != uid:
                continue
            if type_filter and file_data.get("type") != type_filter:
                continue
            items.append({"chat": serialized_chat, "file": serialize_file(chat_doc.id, file_doc.id, file_data)})

    return jsonify({"items": items}), HTTPStatus.OK
