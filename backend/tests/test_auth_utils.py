import pytest
from flask import Flask, jsonify

from omni_backend.auth import utils
from omni_backend.auth.utils import AuthError, current_uid, firebase_user_required


@pytest.fixture
def flask_app():
    app = Flask(__name__)

    @app.get("/whoami")
    @firebase_user_required
    def whoami():
        return jsonify({"uid": current_uid()})

    return app


def _make_headers(token: str = "test_token") -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


def test_require_firebase_user_handles_expired_token(monkeypatch, flask_app):
    def fake_verify(token: str):
        raise utils.firebase_auth.ExpiredIdTokenError("expired", None)

    monkeypatch.setattr(utils.firebase_auth, "verify_id_token", fake_verify)

    with flask_app.test_request_context("/chats", headers=_make_headers()):
        with pytest.raises(AuthError) as excinfo:
            utils.require_firebase_user()

    assert excinfo.value.error == "token_expired"
    assert excinfo.value.status.value == 401


def test_require_firebase_user_returns_context(monkeypatch, flask_app):
    def fake_verify(token: str):
        assert token == "valid_token"
        return {"uid": "user-123"}

    monkeypatch.setattr(utils.firebase_auth, "verify_id_token", fake_verify)

    with flask_app.test_request_context("/chats", headers=_make_headers("valid_token")):
        ctx = utils.require_firebase_user()

    assert ctx.uid == "user-123"
    assert ctx.token == "valid_token"
    assert ctx.decoded_token == {"uid": "user-123"}


@pytest.mark.parametrize(
    "headers",
    [{}, {"Authorization": "Basic abc"}, {"Authorization": "Bearer "}, {"Authorization": "Bearer a b"}],
)
def test_malformed_authorization_headers_are_rejected(flask_app, headers):
    with flask_app.test_request_context("/chats", headers=headers):
        with pytest.raises(AuthError) as excinfo:
            utils.require_firebase_user()

    assert excinfo.value.error == "unauthorized"


def test_token_without_uid_is_rejected(monkeypatch, flask_app):
    monkeypatch.setattr(utils.firebase_auth, "verify_id_token", lambda token: {"email": "x@example.com"})

    with flask_app.test_request_context("/chats", headers=_make_headers()):
        with pytest.raises(AuthError) as excinfo:
            utils.require_firebase_user()

    assert excinfo.value.error == "invalid_token"


def test_decorator_exposes_uid_and_rejects_anonymous_calls(monkeypatch, flask_app):
    monkeypatch.setattr(utils.firebase_auth, "verify_id_token", lambda token: {"uid": "user-9"})
    client = flask_app.test_client()

    response = client.get("/whoami", headers=_make_headers())
    assert response.get_json() == {"uid": "user-9"}

    response = client.get("/whoami")
    assert response.status_code == 401
    assert response.get_json()["error"] == "unauthorized"


def test_current_uid_outside_authenticated_request(flask_app):
    with flask_app.test_request_context("/chats"):
        with pytest.raises(RuntimeError):
            current_uid()
