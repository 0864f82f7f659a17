from __future__ import annotations

import logging
import threading
from datetime import datetime, timedelta
from typing import Any, Mapping, Optional

from google.cloud.firestore_v1 import Increment

from ..utils import now_utc, to_datetime
from .errors import ProviderError, UnsupportedFeatureError
from .providers.base import ProviderAdapter

log = logging.getLogger(__name__)

GOOGLE_FILE_TTL = timedelta(hours=48)
DEFAULT_FILE_TTL = timedelta(days=30)

_UPLOAD_LOCKS: dict[tuple[Any, str], threading.Lock] = {}
_UPLOAD_LOCKS_GUARD = threading.Lock()


def file_ttl(provider: str) -> timedelta:
    return GOOGLE_FILE_TTL if provider == "google" else DEFAULT_FILE_TTL


def cached_provider_file(
    artifact: Mapping[str, Any],
    provider: str,
    now: Optional[datetime] = None,
) -> Optional[dict[str, Any]]:
    """Return the cached upload for ``provider`` while it has not expired."""

    entry = (artifact.get("providerFiles") or {}).get(provider)
    if not isinstance(entry, Mapping) or not entry.get("fileId"):
        return None
    expires_at = to_datetime(entry.get("expiresAt"))
    if expires_at is None or expires_at <= (now or now_utc()):
        return None
    return dict(entry)


def _upload_lock(artifact_ref: Any, provider: str) -> threading.Lock:
    key = (getattr(artifact_ref, "path", None) or id(artifact_ref), provider)
    with _UPLOAD_LOCKS_GUARD:
        return _UPLOAD_LOCKS.setdefault(key, threading.Lock())


def _current_provider_file(artifact_ref: Any, provider: str, now: datetime) -> Optional[dict[str, Any]]:
    snapshot = artifact_ref.get()
    if not snapshot.exists:
        return None
    return cached_provider_file(snapshot.to_dict() or {}, provider, now)


def ensure_provider_file(
    artifact_ref: Any,
    artifact: Mapping[str, Any],
    provider: str,
    adapter: ProviderAdapter,
    now: Optional[datetime] = None,
) -> Optional[str]:
    """Reuse or create the provider upload for an artifact.

    Returns the file URI to reference, or ``None`` when the artifact has to be
    sent inline. Usage counters are bumped on every call.
    """

    now = now or now_utc()
    updates: dict[str, Any] = {"usageCount": Increment(1), "lastReferencedAt": now}
    file_uri: Optional[str] = None

    if adapter.accepts_file_references:
        # Re-read under the lock so parallel replies share one upload.
        with _upload_lock(artifact_ref, provider):
            cached = cached_provider_file(artifact, provider, now) or _current_provider_file(artifact_ref, provider, now)
            if cached is not None:
                updates[f"providerFiles.{provider}.lastUsedAt"] = now
                file_uri = cached.get("fileUri") or cached.get("fileId")
            else:
                entry = _upload(artifact, provider, adapter, now)
                if entry is not None:
                    updates[f"providerFiles.{provider}"] = entry
                    file_uri = entry["fileUri"]
            artifact_ref.update(updates)
        return file_uri

    artifact_ref.update(updates)
    return file_uri


def _upload(
    artifact: Mapping[str, Any],
    provider: str,
    adapter: ProviderAdapter,
    now: datetime,
) -> Optional[dict[str, Any]]:
    filename = f"{artifact.get('filename') or 'artifact'}.{artifact.get('language') or 'txt'}"
    content = str(artifact.get("content") or "").encode("utf-8")
    try:
        uploaded = adapter.upload_file(filename, content, "text/plain")
    except UnsupportedFeatureError:
        return None
    except ProviderError as exc:
        log.warning("Uploading artifact %s to %s failed: %s", artifact.get("artifactId"), provider, exc)
        return None
    if not uploaded:
        return None
    return {
        "fileId": uploaded["fileId"],
        "fileUri": uploaded.get("fileUri") or uploaded["fileId"],
        "uploadedAt": now,
        "lastUsedAt": now,
        "expiresAt": now + file_ttl(provider),
    }
