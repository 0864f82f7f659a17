from __future__ import annotations

import logging
import threading
import time

from flask import Flask, jsonify, request
from flask_cors import CORS

from .config import AppConfig, ConfigError, load_config
from .firebase import init_firebase
from .artifacts import artifacts_bp
from .chats import chats_bp
from .files import files_bp
from .library import library_bp
from .preferences import preferences_bp
from .search import search_bp

log = logging.getLogger(__name__)

_API_USAGE = {
    "minute_count": 0,
    "minute_reset_time": 0,
    "hour_count": 0,
    "hour_reset_time": 0,
    "shutdown_until": 0,
    "lock": threading.Lock(),
}

API_USAGE_MINUTE_THRESHOLD = 1000
API_USAGE_HOUR_THRESHOLD = 20000
API_SHUTDOWN_MINUTE_DURATION = 60
API_SHUTDOWN_HOUR_DURATION = 360

# Blueprints backed by Firestore; only these count toward the overuse guard.
GUARDED_BLUEPRINTS = frozenset({"chats", "files", "artifacts", "library", "preferences", "search"})


def _check_api_overuse() -> tuple[bool, int | None]:
    now = time.time()
    with _API_USAGE["lock"]:
        if _API_USAGE["shutdown_until"] > now:
            return False, int(_API_USAGE["shutdown_until"] - now)
        if now > _API_USAGE["minute_reset_time"]:
            _API_USAGE["minute_count"] = 0
            _API_USAGE["minute_reset_time"] = now + 60
        if now > _API_USAGE["hour_reset_time"]:
            _API_USAGE["hour_count"] = 0
            _API_USAGE["hour_reset_time"] = now + 3600
        _API_USAGE["minute_count"] += 1
        _API_USAGE["hour_count"] += 1
        if _API_USAGE["minute_count"] > API_USAGE_MINUTE_THRESHOLD:
            _API_USAGE["shutdown_until"] = now + API_SHUTDOWN_MINUTE_DURATION
            log.warning(
                "API usage exceeded %d requests per minute; pausing for %d seconds",
                API_USAGE_MINUTE_THRESHOLD,
                API_SHUTDOWN_MINUTE_DURATION,
            )
            return False, API_SHUTDOWN_MINUTE_DURATION
        if _API_USAGE["hour_count"] > API_USAGE_HOUR_THRESHOLD:
            _API_USAGE["shutdown_until"] = now + API_SHUTDOWN_HOUR_DURATION
            log.warning(
                "API usage exceeded %d requests per hour; pausing for %d seconds",
                API_USAGE_HOUR_THRESHOLD,
                API_SHUTDOWN_HOUR_DURATION,
            )
            return False, API_SHUTDOWN_HOUR_DURATION
        return True, None


def create_app(config: AppConfig | None = None) -> Flask:
    """Application factory for the Omni backend."""
    if config is None:
        try:
            config = load_config()
        except ConfigError as exc:
            raise RuntimeError(f"Configuration error: {exc}") from exc

    app = Flask(__name__)

    @app.before_request
    def api_overuse_guard():
        if request.blueprint in GUARDED_BLUEPRINTS:
            ok, wait = _check_api_overuse()
            if not ok:
                return jsonify({
                    "error": "api_overuse",
                    "message": f"API temporarily disabled due to overuse. Try again in {wait} seconds.",
                }), 429

    app.config.update(
        PORT=config.port,
        FIREBASE_CREDENTIALS_PATH=str(config.firebase_credentials_path),
        FIRESTORE_DATABASE_ID=config.firestore_database_id,
        UPLOADS_DIR=str(config.uploads_dir),
        MAX_UPLOAD_SIZE=config.max_upload_size,
        MAX_INLINE_ATTACHMENT_BYTES=config.max_inline_attachment_bytes,
        API_KEY_SECRET=config.api_key_secret,
        PROVIDER_KEYS=config.provider_keys(),
        OPENROUTER_SERVER_URL=config.openrouter_server_url,
        DEFAULT_MODEL=config.default_model,
        GOOGLE_CLOUD_PROJECT=config.google_cloud_project,
        GOOGLE_CLOUD_LOCATION=config.google_cloud_location,
        GOOGLE_ACCESS_TOKEN=config.google_access_token,
    )

    CORS(app,
         resources={r"/*": {
             "origins": list(config.cors_origins),
             "methods": ["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
             "allow_headers": ["Content-Type", "Authorization", "Accept"],
             "expose_headers": ["Content-Type"],
             "supports_credentials": True,
             "max_age": 3600,
         }})

    init_firebase(
        config.firebase_credentials_path,
        database_id=config.firestore_database_id,
        project_id=config.firebase_project_id,
    )

    app.register_blueprint(chats_bp)
    app.register_blueprint(files_bp)
    app.register_blueprint(artifacts_bp)
    app.register_blueprint(library_bp)
    app.register_blueprint(preferences_bp)
    app.register_blueprint(search_bp)

    @app.get("/health")
    def health_check() -> dict[str, str]:
        return {"status": "ok"}

    return app
