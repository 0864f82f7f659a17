import sys
from pathlib import Path
from unittest.mock import patch

import pytest

BACKEND_ROOT = Path(__file__).resolve().parents[1]
BACKEND_PATH = str(BACKEND_ROOT)
if BACKEND_PATH not in sys.path:
    sys.path.insert(0, BACKEND_PATH)

TESTS_PATH = str(Path(__file__).resolve().parent)
if TESTS_PATH not in sys.path:
    sys.path.insert(0, TESTS_PATH)

from fake_firestore import FakeFirestore  # noqa: E402

AUTH_HEADERS = {"Authorization": "Bearer test-token"}
API_KEY_SECRET = "test-secret"


@pytest.fixture
def fake_db(monkeypatch):
    from omni_backend import firebase

    db = FakeFirestore()
    monkeypatch.setattr(firebase, "firebase_app", object())
    monkeypatch.setattr(firebase, "_firestore_client", db)
    return db


@pytest.fixture
def app(fake_db, tmp_path):
    from flask import Flask

    from omni_backend.artifacts import artifacts_bp
    from omni_backend.chats import chats_bp
    from omni_backend.files import files_bp
    from omni_backend.library import library_bp
    from omni_backend.preferences import preferences_bp
    from omni_backend.search import search_bp

    flask_app = Flask(__name__)
    flask_app.config.update(
        TESTING=True,
        UPLOADS_DIR=str(tmp_path / "uploads"),
        MAX_UPLOAD_SIZE=1024 * 1024,
        MAX_INLINE_ATTACHMENT_BYTES=350_000,
        API_KEY_SECRET=API_KEY_SECRET,
        PROVIDER_KEYS={"google": "server-gemini-key"},
        DEFAULT_MODEL="gemini-2.0-flash",
        OPENROUTER_SERVER_URL=None,
        GOOGLE_CLOUD_PROJECT=None,
        GOOGLE_CLOUD_LOCATION="us-central1",
        GOOGLE_ACCESS_TOKEN=None,
    )
    for blueprint in (chats_bp, files_bp, artifacts_bp, library_bp, preferences_bp, search_bp):
        flask_app.register_blueprint(blueprint)
    return flask_app


@pytest.fixture
def client(app):
    with patch("omni_backend.auth.utils.firebase_auth.verify_id_token") as mock_verify:
        mock_verify.return_value = {"uid": "user123"}
        yield app.test_client()
