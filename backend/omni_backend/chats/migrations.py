"""Backfill canonical ``rawParts`` on messages stored before content format v2."""

from __future__ import annotations

import logging
from typing import Any

from google.api_core import exceptions as google_exceptions
from google.cloud.firestore_v1 import FieldFilter

from ..ai.canonical import part_to_raw, parts_from_legacy, render_text
from ..firebase import get_firestore_client
from .helpers import FirestoreAccessError

log = logging.getLogger(__name__)

_GOOGLE_ERRORS = (google_exceptions.PermissionDenied, google_exceptions.GoogleAPICallError)


# Firestore rejects batches with more than 500 writes.
MAX_BATCH_SIZE = 500


def _migration_update(data: dict[str, Any]) -> dict[str, Any]:
    parts = parts_from_legacy(data.get("content"), data.get("attachments"))
    return {
        "rawParts": [part_to_raw(part) for part in parts],
        "renderedText": render_text(parts),
        "contentFormatVersion": 2,
    }


def migrate_raw_parts(uid: str, batch_size: int = 100, dry_run: bool = False) -> dict[str, int]:
    batch_size = max(1, min(batch_size, MAX_BATCH_SIZE))
    db = get_firestore_client()
    stats = {"processed": 0, "migrated": 0, "skipped": 0, "errors": 0}

    try:
        chat_docs = list(db.collection("chats").where(filter=FieldFilter("uid", "==", uid)).stream())
    except _GOOGLE_ERRORS as exc:
        raise FirestoreAccessError(exc) from exc

    batch = db.batch()
    pending = 0

    def flush() -> None:
        nonlocal batch, pending
        if pending and not dry_run:
            try:
                batch.commit()
            except _GOOGLE_ERRORS as exc:
                log.error("Failed to commit migration batch of %d messages: %s", pending, exc)
                stats["migrated"] -= pending
                stats["errors"] += pending
        batch = db.batch()
        pending = 0

    for chat_doc in chat_docs:
        try:
            message_docs = list(chat_doc.reference.collection("messages").stream())
        except _GOOGLE_ERRORS as exc:
            log.warning("Skipping chat %s during migration: %s", chat_doc.id, exc)
            stats["errors"] += 1
            continue

        for doc in message_docs:
            stats["processed"] += 1
            data = doc.to_dict() or {}
            if data.get("rawParts"):
                stats["skipped"] += 1
                continue
            try:
                update = _migration_update(data)
            except (TypeError, ValueError) as exc:
                log.warning("Cannot migrate message %s in chat %s: %s", doc.id, chat_doc.id, exc)
                stats["errors"] += 1
                continue
            stats["migrated"] += 1
            if dry_run:
                continue
            batch.update(doc.reference, update)
            pending += 1
            if pending >= batch_size:
                flush()

    flush()
    log.info("rawParts migration for %s%s: %s", uid, " (dry run)" if dry_run else "", stats)
    return stats
