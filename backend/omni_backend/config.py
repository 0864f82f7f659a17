from __future__ import annotations

import hashlib
import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

log = logging.getLogger(__name__)

DEFAULT_CORS_ORIGINS: tuple[str, ...] = (
    r"^https?://localhost(:[0-9]+)?$",
    r"^https?://127\.0\.0\.1(:[0-9]+)?$",
)


class ConfigError(Exception):
    """Raised when required configuration is missing or invalid."""


@dataclass(slots=True)
class AppConfig:
    port: int
    firebase_credentials_path: Path
    uploads_dir: Path
    max_inline_attachment_bytes: int
    api_key_secret: str
    firestore_database_id: Optional[str] = None
    firebase_project_id: Optional[str] = None
    max_upload_size: int = 10 * 1024 * 1024
    default_model: str = "gemini-2.0-flash"
    openai_api_key: Optional[str] = None
    anthropic_api_key: Optional[str] = None
    gemini_api_key: Optional[str] = None
    deepseek_api_key: Optional[str] = None
    openrouter_api_key: Optional[str] = None
    together_api_key: Optional[str] = None
    openrouter_server_url: Optional[str] = None
    google_cloud_project: Optional[str] = None
    google_cloud_location: str = "us-central1"
    google_access_token: Optional[str] = None
    cors_origins: tuple[str, ...] = field(default_factory=lambda: DEFAULT_CORS_ORIGINS)

    def provider_keys(self) -> dict[str, Optional[str]]:
        """Server-side fallback keys indexed by provider name."""
        return {
            "openai": self.openai_api_key,
            "anthropic": self.anthropic_api_key,
            "google": self.gemini_api_key,
            "deepseek": self.deepseek_api_key,
            "openrouter": self.openrouter_api_key,
            "together": self.together_api_key,
        }


def _resolve_path(path_str: str, base_dir: Path) -> Path:
    # Normalize Windows-style backslashes to forward slashes so paths work across OSes.
    path_str = path_str.strip().replace("\\", "/")
    candidate = Path(path_str).expanduser()
    if candidate.is_absolute():
        return candidate

    for root in (base_dir, base_dir.parent):
        resolved = (root / candidate).resolve()
        if resolved.exists():
            return resolved

    return (base_dir / candidate).resolve()


def _int_env(name: str, default: str, *, minimum: int = 1) -> int:
    raw = os.getenv(name, default)
    try:
        value = int(raw)
    except ValueError as exc:
        raise ConfigError(f"{name} must be an integer, got '{raw}'") from exc
    if value < minimum:
        raise ConfigError(f"{name} must be at least {minimum}")
    return value


def _optional_env(name: str, *aliases: str) -> Optional[str]:
    for key in (name, *aliases):
        value = (os.getenv(key) or "").strip()
        if value:
            return value
    return None


def _split_origins(raw: str) -> tuple[str, ...]:
    tokens = [token.strip() for token in re.split(r"[\s,]+", raw) if token.strip()]
    return tuple(tokens) or DEFAULT_CORS_ORIGINS


def load_config() -> AppConfig:
    """Load configuration from environment variables/.env file."""
    backend_dir = Path(__file__).resolve().parent.parent
    load_dotenv(backend_dir / ".env")

    port = _int_env("PORT", "5000")

    credentials_path_raw = os.getenv("FIREBASE_CREDENTIALS_PATH")
    if not credentials_path_raw:
        raise ConfigError("FIREBASE_CREDENTIALS_PATH is required")

    credentials_path = _resolve_path(credentials_path_raw, backend_dir)
    if not credentials_path.exists():
        raise ConfigError(
            "Firebase credentials file not found at resolved path: "
            f"{credentials_path}"
        )

    uploads_dir_raw = os.getenv("UPLOADS_DIR")
    if uploads_dir_raw:
        uploads_dir = _resolve_path(uploads_dir_raw, backend_dir)
    else:
        uploads_dir = (backend_dir / "uploads").resolve()
    uploads_dir.mkdir(parents=True, exist_ok=True)

    try:
        max_inline_attachment_bytes = max(1, int(os.getenv("MAX_INLINE_ATTACHMENT_BYTES", "350000")))
    except ValueError as exc:
        raise ConfigError(
            "MAX_INLINE_ATTACHMENT_BYTES must be an integer representing bytes"
        ) from exc

    max_upload_size = _int_env("MAX_UPLOAD_SIZE", str(10 * 1024 * 1024))

    api_key_secret = _optional_env("API_KEY_SECRET")
    if not api_key_secret:
        # Stable per deployment, but anyone with the credentials path can derive it.
        api_key_secret = hashlib.sha256(str(credentials_path).encode("utf-8")).hexdigest()
        log.warning("API_KEY_SECRET is not set; deriving one from the credentials path")

    default_model = _optional_env("DEFAULT_MODEL") or "gemini-2.0-flash"

    return AppConfig(
        port=port,
        firebase_credentials_path=credentials_path,
        uploads_dir=uploads_dir,
        max_inline_attachment_bytes=max_inline_attachment_bytes,
        api_key_secret=api_key_secret,
        firestore_database_id=_optional_env("FIRESTORE_DATABASE_ID"),
        firebase_project_id=_optional_env("FIREBASE_PROJECT_ID"),
        max_upload_size=max_upload_size,
        default_model=default_model,
        openai_api_key=_optional_env("OPENAI_API_KEY"),
        anthropic_api_key=_optional_env("ANTHROPIC_API_KEY"),
        gemini_api_key=_optional_env("GEMINI_API_KEY", "GOOGLE_AI_API_KEY"),
        deepseek_api_key=_optional_env("DEEPSEEK_API_KEY"),
        openrouter_api_key=_optional_env("OPENROUTER_API_KEY"),
        together_api_key=_optional_env("TOGETHER_API_KEY"),
        openrouter_server_url=_optional_env("OPENROUTER_SERVER_URL"),
        google_cloud_project=_optional_env("GOOGLE_CLOUD_PROJECT"),
        google_cloud_location=_optional_env("GOOGLE_CLOUD_LOCATION") or "us-central1",
        google_access_token=_optional_env("GOOGLE_ACCESS_TOKEN"),
        cors_origins=_split_origins(os.getenv("CORS_ORIGINS", "")),
    )
