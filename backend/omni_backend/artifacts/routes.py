from __future__ import annotations

import logging
from http import HTTPStatus
from typing import Any

from flask import Blueprint, jsonify, request

from ..auth.utils import current_uid, firebase_user_required
from ..chats.helpers import (
    FirestoreAccessError,
    chat_access_error,
    firestore_error_response,
    forbidden,
    get_chat_for_user,
    not_found,
    parse_json_body,
    store_unavailable,
    validation_error,
)
from .service import (
    ArtifactNotFoundError,
    ArtifactPermissionError,
    ArtifactStoreError,
    delete_artifact,
    get_artifact,
    list_chat_artifacts,
    list_message_artifacts,
    update_artifact,
)

artifacts_bp = Blueprint("artifacts", __name__)
log = logging.getLogger(__name__)


def _store_error_response(exc: ArtifactStoreError) -> tuple[Any, int]:
    if isinstance(exc, ArtifactNotFoundError):
        return not_found(str(exc))
    if isinstance(exc, ArtifactPermissionError):
        return forbidden(str(exc))
    log.exception("Artifact store failure: %s", exc)
    return store_unavailable("artifact_store_unavailable", exc)


def _owned_chat_error(chat_id: str, uid: str) -> tuple[Any, int] | None:
    try:
        chat_ref, chat_data = get_chat_for_user(chat_id, uid)
    except FirestoreAccessError as exc:
        return firestore_error_response(exc)
    return chat_access_error(chat_ref, chat_data)


@artifacts_bp.get("/chats/<chat_id>/artifacts")
@firebase_user_required
def list_artifacts_for_chat(chat_id: str) -> tuple[Any, int]:
    uid = current_uid()
    error = _owned_chat_error(chat_id, uid)
    if error is not None:
        return error
    try:
        items = list_chat_artifacts(uid, chat_id)
    except ArtifactStoreError as exc:
        return _store_error_response(exc)
    return jsonify({"items": items}), HTTPStatus.OK


@artifacts_bp.get("/messages/<message_id>/artifacts")
@firebase_user_required
def list_artifacts_for_message(message_id: str) -> tuple[Any, int]:
    uid = current_uid()
    chat_id = (request.args.get("chatId") or "").strip()
    if not chat_id:
        return validation_error("chatId query parameter is required.")
    error = _owned_chat_error(chat_id, uid)
    if error is not None:
        return error
    try:
        items = list_message_artifacts(uid, chat_id, message_id)
    except ArtifactStoreError as exc:
        return _store_error_response(exc)
    return jsonify({"items": items}), HTTPStatus.OK


@artifacts_bp.get("/artifacts/<artifact_id>")
@firebase_user_required
def get_artifact_route(artifact_id: str) -> tuple[Any, int]:
    try:
        artifact = get_artifact(current_uid(), artifact_id)
    except ArtifactStoreError as exc:
        return _store_error_response(exc)
    return jsonify(artifact), HTTPStatus.OK


@artifacts_bp.patch("/artifacts/<artifact_id>")
@firebase_user_required
def update_artifact_route(artifact_id: str) -> tuple[Any, int]:
    payload = parse_json_body()
    if not payload:
        return validation_error("Provide at least one field to update.")
    try:
        artifact = update_artifact(current_uid(), artifact_id, payload)
    except ValueError as exc:
        return validation_error(str(exc))
    except ArtifactStoreError as exc:
        return _store_error_response(exc)
    return jsonify(artifact), HTTPStatus.OK


@artifacts_bp.delete("/artifacts/<artifact_id>")
@firebase_user_required
def delete_artifact_route(artifact_id: str):
    try:
        delete_artifact(current_uid(), artifact_id)
    except ArtifactStoreError as exc:
        return _store_error_response(exc)
    return "", HTTPStatus.NO_CONTENT
