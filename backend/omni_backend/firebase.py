from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Optional

import firebase_admin
from firebase_admin import credentials, firestore
from google.cloud import firestore as gcloud_firestore

log = logging.getLogger(__name__)

firebase_app: Optional[firebase_admin.App] = None
_firestore_client: Optional[firestore.Client] = None
_firestore_database_id: Optional[str] = None
_firestore_project_id: Optional[str] = None

_DEFAULT_DATABASE_IDS = {"(default)", "default", ""}


def _normalize_database_id(database_id: Optional[str]) -> Optional[str]:
    value = (database_id or "").strip()
    return None if value in _DEFAULT_DATABASE_IDS else value


def _project_from_credentials(credentials_path: Path) -> Optional[str]:
    try:
        with open(credentials_path, "r", encoding="utf-8") as fh:
            return json.load(fh).get("project_id")
    except (OSError, ValueError) as exc:
        log.debug("Unable to read project_id from %s: %s", credentials_path, exc)
        return None


def init_firebase(
    credentials_path: Path,
    *,
    database_id: Optional[str] = None,
    project_id: Optional[str] = None,
) -> firebase_admin.App:
    """Initialise the Firebase app once; later calls may only switch the database."""

    global firebase_app, _firestore_client, _firestore_database_id, _firestore_project_id

    database_id = _normalize_database_id(database_id)
    if firebase_app is not None:
        if database_id != _firestore_database_id:
            _firestore_database_id = database_id
            _firestore_client = None
        return firebase_app

    project_id = project_id or _project_from_credentials(credentials_path)
    if firebase_admin._apps:
        firebase_app = firebase_admin.get_app()
    else:
        options = {"projectId": project_id} if project_id else None
        firebase_app = firebase_admin.initialize_app(credentials.Certificate(str(credentials_path)), options=options)

    _firestore_database_id = database_id
    _firestore_project_id = project_id or getattr(firebase_app, "project_id", None)
    log.info(
        "Firebase ready (project=%s, database=%s)",
        _firestore_project_id or "<auto>",
        _firestore_database_id or "(default)",
    )
    return firebase_app


def get_firestore_client() -> firestore.Client:
    """The shared Firestore client for the configured database."""

    global _firestore_client

    if firebase_app is None:
        raise RuntimeError("Firebase app has not been initialised. Call init_firebase() first.")
    if _firestore_client is not None:
        return _firestore_client

    if _firestore_database_id is None:
        _firestore_client = firestore.client(app=firebase_app)
        return _firestore_client

    # Named databases need a google-cloud client; firebase-admin only opens "(default)".
    if not _firestore_project_id:
        raise RuntimeError("Unable to determine Firebase project ID for Firestore client.")
    _firestore_client = gcloud_firestore.Client(
        project=_firestore_project_id,
        credentials=firebase_app.credential.get_credential(),
        database=_firestore_database_id,
    )
    log.debug("Created Firestore client for database '%s'", _firestore_database_id)
    return _firestore_client
