"""Provider-agnostic message content.

Chat messages reach this module in three shapes: legacy documents that only
carry ``content`` plus an ``attachments`` list, newer documents with a
structured ``rawParts`` list, and ad-hoc ``referencedLibraryItems`` pointing at
the user's library. Everything is reduced to :data:`CanonicalPart` values and
then to :class:`ModelMessage` objects that each provider adapter knows how to
send.
"""

from __future__ import annotations

import base64
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Mapping, Optional, Sequence, Union

log = logging.getLogger(__name__)

__all__ = [
    "ArtifactRefPart",
    "CanonicalPart",
    "FilePart",
    "FileReference",
    "ImagePart",
    "InlineImage",
    "ModelMessage",
    "TextPart",
    "build_model_messages",
    "clean_message_content",
    "get_mime_type",
    "message_parts",
    "part_to_raw",
    "parts_from_legacy",
    "parts_from_library_items",
    "parts_from_raw",
    "process_attachment",
    "render_text",
]

BytesLoader = Callable[[str], bytes]
LibraryResolver = Callable[[Mapping[str, Any]], Optional[dict[str, Any]]]

DEFAULT_MAX_INLINE_BYTES = 350_000

_DATA_URL_RE = re.compile(r"^data:(?P<mime>[\w.+-]+/[\w.+-]+);base64,(?P<data>.+)$", re.DOTALL)


@dataclass(slots=True)
class TextPart:
    text: str
    type: str = field(default="text", init=False)


@dataclass(slots=True)
class ImagePart:
    name: str
    storage: Optional[str] = None
    size: Optional[int] = None
    mime_type: Optional[str] = None
    url: Optional[str] = None
    type: str = field(default="image", init=False)


@dataclass(slots=True)
class FilePart:
    name: str
    storage: Optional[str] = None
    size: Optional[int] = None
    mime_type: Optional[str] = None
    attachment_type: str = "file"
    type: str = field(default="file", init=False)


@dataclass(slots=True)
class ArtifactRefPart:
    artifact_id: str
    filename: str
    language: str
    content: str = ""
    description: str = ""
    provider_file_uri: Optional[str] = None
    type: str = field(default="artifact_ref", init=False)


CanonicalPart = Union[TextPart, ImagePart, FilePart, ArtifactRefPart]


@dataclass(slots=True)
class InlineImage:
    mime_type: str
    data: Optional[bytes] = None
    url: Optional[str] = None

    @property
    def base64_data(self) -> str:
        return base64.b64encode(self.data or b"").decode("ascii")

    @property
    def data_url(self) -> str:
        if self.data is None:
            return self.url or ""
        return f"data:{self.mime_type};base64,{self.base64_data}"


@dataclass(slots=True)
class FileReference:
    uri: str
    mime_type: str


@dataclass(slots=True)
class ModelMessage:
    role: str
    text: str
    images: list[InlineImage] = field(default_factory=list)
    files: list[FileReference] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        """Plain ``{"role", "content"}`` form with OpenAI-style multimodal content."""
        if not self.images:
            return {"role": self.role, "content": self.text}
        content: list[dict[str, Any]] = [{"type": "text", "text": self.text}]
        for image in self.images:
            content.append({"type": "image_url", "image_url": {"url": image.data_url}})
        return {"role": self.role, "content": content}


# --------------------------------------------------------------------------
# Mime types and single attachments
# --------------------------------------------------------------------------

_MIME_TABLE: dict[str, tuple[dict[str, str], str]] = {
    "image": (
        {"jpg": "image/jpeg", "jpeg": "image/jpeg", "png": "image/png", "gif": "image/gif", "webp": "image/webp"},
        "image/jpeg",
    ),
    "pdf": ({}, "application/pdf"),
    "file": (
        {
            "txt": "text/plain",
            "md": "text/markdown",
            "js": "text/javascript",
            "ts": "text/typescript",
            "json": "application/json",
            "csv": "text/csv",
            "xml": "application/xml",
            "html": "text/html",
            "css": "text/css",
        },
        "text/plain",
    ),
    "audio": (
        {"mp3": "audio/mpeg", "wav": "audio/wav", "ogg": "audio/ogg", "m4a": "audio/mp4"},
        "audio/mpeg",
    ),
    "video": (
        {"mp4": "video/mp4", "webm": "video/webm", "ogg": "video/ogg", "avi": "video/x-msvideo"},
        "video/mp4",
    ),
}


def get_mime_type(file_name: str, attachment_type: str) -> str:
    entry = _MIME_TABLE.get(attachment_type)
    if entry is None:
        return "application/octet-stream"
    by_extension, default = entry
    extension = (file_name or "").lower().rsplit(".", 1)[-1]
    return by_extension.get(extension, default)


def attachment_type_for_mime(mime_type: str | None) -> str:
    mime = (mime_type or "").lower()
    if mime.startswith("image/"):
        return "image"
    if mime == "application/pdf":
        return "pdf"
    if mime.startswith("audio/"):
        return "audio"
    if mime.startswith("video/"):
        return "video"
    return "file"


def _kilobytes(size: Any) -> int:
    try:
        return int(float(size) / 1024 + 0.5)
    except (TypeError, ValueError):
        return 0


def _is_text_like(name: str, mime_type: str) -> bool:
    return (
        mime_type.startswith("text/")
        or mime_type == "application/json"
        or name.endswith(".md")
        or name.endswith(".txt")
    )


def process_attachment(attachment: Mapping[str, Any], loader: BytesLoader) -> dict[str, Any]:
    """Load one stored attachment and turn it into model-ready content.

    Images become a data URL. Text-like files are decoded. PDFs and binary
    files are summarised as a short bracketed description because their bytes
    are not forwarded.
    """

    name = str(attachment.get("name") or "attachment")
    attachment_type = str(attachment.get("type") or "file")
    storage = attachment.get("storage")
    if not storage:
        raise ValueError(f"Attachment '{name}' has no storage location")

    mime_type = attachment.get("mimeType") or get_mime_type(name, attachment_type)
    raw = loader(str(storage))
    size = attachment.get("size")
    if size is None:
        size = len(raw)

    if attachment_type == "image" or mime_type.startswith("image/"):
        image = InlineImage(mime_type=mime_type, data=raw)
        return {"type": "image", "name": name, "mimeType": mime_type, "content": image.data_url}

    try:
        if mime_type == "application/pdf":
            text = f"[PDF File: {name}, Size: {_kilobytes(size)}KB]"
        elif _is_text_like(name, mime_type):
            text = raw.decode("utf-8", errors="replace")
        else:
            text = f"[File: {name}, Type: {mime_type}, Size: {_kilobytes(size)}KB]"
    except (AttributeError, UnicodeError):
        text = f"[File: {name} - Unable to process content]"

    return {"type": "file", "name": name, "mimeType": mime_type, "content": text}


def clean_message_content(content: str | None) -> str:
    text = re.sub(r"<[^>]*>", "", content or "")
    text = re.sub(r"\n\s*\n\s*\n", "\n\n", text)
    return text.strip()


# --------------------------------------------------------------------------
# Canonical parts
# --------------------------------------------------------------------------

def part_to_raw(part: CanonicalPart) -> dict[str, Any]:
    """Serialise a part into the ``rawParts`` shape stored on messages."""

    if isinstance(part, TextPart):
        return {"type": "text", "text": part.text}
    if isinstance(part, ImagePart):
        payload = {"storage": part.storage, "name": part.name, "size": part.size, "mimeType": part.mime_type}
        if part.url:
            payload["url"] = part.url
        return {"type": "image", "image": payload}
    if isinstance(part, FilePart):
        return {
            "type": "file",
            "file": {
                "storage": part.storage,
                "name": part.name,
                "size": part.size,
                "mimeType": part.mime_type,
                "attachmentType": part.attachment_type,
            },
        }
    return {
        "type": "artifact_ref",
        "artifact": {
            "artifactId": part.artifact_id,
            "filename": part.filename,
            "language": part.language,
        },
    }


def parts_from_raw(raw_parts: Iterable[Mapping[str, Any]] | None) -> list[CanonicalPart]:
    parts: list[CanonicalPart] = []
    for raw in raw_parts or []:
        if not isinstance(raw, Mapping):
            continue
        kind = raw.get("type")
        if kind == "text":
            parts.append(TextPart(text=str(raw.get("text") or "")))
        elif kind == "image":
            image = raw.get("image") or {}
            parts.append(
                ImagePart(
                    name=str(image.get("name") or "image"),
                    storage=image.get("storage"),
                    size=image.get("size"),
                    mime_type=image.get("mimeType"),
                    url=image.get("url"),
                )
            )
        elif kind in {"file", "audio", "video"}:
            payload = raw.get(kind) or {}
            name = str(payload.get("name") or "file")
            attachment_type = payload.get("attachmentType") or ("file" if kind == "file" else kind)
            parts.append(
                FilePart(
                    name=name,
                    storage=payload.get("storage"),
                    size=payload.get("size"),
                    mime_type=payload.get("mimeType") or get_mime_type(name, attachment_type),
                    attachment_type=attachment_type,
                )
            )
        elif kind == "artifact_ref":
            artifact = raw.get("artifact") or {}
            parts.append(
                ArtifactRefPart(
                    artifact_id=str(artifact.get("artifactId") or ""),
                    filename=str(artifact.get("filename") or "artifact"),
                    language=str(artifact.get("language") or "text"),
                )
            )
        else:
            log.debug("Skipping unknown raw part type %r", kind)
    return parts


def parts_from_legacy(content: str | None, attachments: Iterable[Mapping[str, Any]] | None) -> list[CanonicalPart]:
    parts: list[CanonicalPart] = [TextPart(text=content or "")]
    for attachment in attachments or []:
        name = str(attachment.get("name") or "attachment")
        attachment_type = str(attachment.get("type") or "file")
        storage = attachment.get("storage") or attachment.get("storagePath")
        mime_type = attachment.get("mimeType") or get_mime_type(name, attachment_type)
        if attachment_type == "image":
            parts.append(ImagePart(name=name, storage=storage, size=attachment.get("size"), mime_type=mime_type))
        else:
            parts.append(
                FilePart(
                    name=name,
                    storage=storage,
                    size=attachment.get("size"),
                    mime_type=mime_type,
                    attachment_type=attachment_type,
                )
            )
    return parts


def parts_from_library_items(
    items: Iterable[Mapping[str, Any]] | None,
    resolver: LibraryResolver | None,
) -> list[CanonicalPart]:
    """Resolve ``referencedLibraryItems`` through ``resolver``.

    Items the resolver cannot find are replaced by a text note so the model
    still knows something was referenced.
    """

    parts: list[CanonicalPart] = []
    for item in items or []:
        item_type = item.get("type")
        name = str(item.get("name") or item.get("id") or "library item")
        record = resolver(item) if resolver is not None else None
        if not record:
            parts.append(TextPart(text=f"[Referenced {item_type or 'item'}: {name} (unavailable)]"))
            continue

        if item_type == "attachment":
            attachment_type = record.get("type") or "file"
            mime_type = item.get("mimeType") or record.get("mimeType") or get_mime_type(name, attachment_type)
            if attachment_type == "image" or str(mime_type).startswith("image/"):
                parts.append(
                    ImagePart(name=name, storage=record.get("storage"), size=record.get("size"), mime_type=mime_type)
                )
            else:
                parts.append(
                    FilePart(
                        name=name,
                        storage=record.get("storage"),
                        size=record.get("size"),
                        mime_type=mime_type,
                        attachment_type=attachment_type,
                    )
                )
        elif item_type == "artifact":
            parts.append(
                ArtifactRefPart(
                    artifact_id=str(record.get("artifactId") or item.get("id")),
                    filename=str(record.get("filename") or name),
                    language=str(record.get("language") or "text"),
                    content=str(record.get("content") or ""),
                    description=str(record.get("description") or ""),
                )
            )
        elif item_type == "media":
            media_type = record.get("type")
            url = record.get("externalUrl")
            if media_type == "image" and (url or record.get("storage")):
                parts.append(
                    ImagePart(
                        name=str(record.get("title") or name),
                        storage=record.get("storage"),
                        mime_type=item.get("mimeType") or "image/png",
                        url=url,
                    )
                )
            else:
                description = record.get("prompt") or record.get("description") or ""
                parts.append(
                    TextPart(text=f"[Referenced {media_type or 'media'}: {record.get('title') or name} {description}]".strip())
                )
        else:
            log.debug("Skipping library item with unknown type %r", item_type)
    return parts


def message_parts(message: Mapping[str, Any], resolver: LibraryResolver | None = None) -> list[CanonicalPart]:
    raw_parts = message.get("rawParts")
    if raw_parts:
        parts = parts_from_raw(raw_parts)
    else:
        parts = parts_from_legacy(message.get("content"), message.get("attachments"))
    parts.extend(parts_from_library_items(message.get("referencedLibraryItems"), resolver))
    return parts


def render_text(parts: Iterable[CanonicalPart]) -> str:
    return "\n\n".join(part.text for part in parts if isinstance(part, TextPart) and part.text).strip()


# --------------------------------------------------------------------------
# Model messages
# --------------------------------------------------------------------------

def _decode_data_url(url: str) -> tuple[str, bytes] | None:
    match = _DATA_URL_RE.match(url)
    if not match:
        return None
    try:
        return match.group("mime"), base64.b64decode(match.group("data"))
    except (ValueError, TypeError):
        return None


def _load_image(part: ImagePart, loader: BytesLoader, max_inline_bytes: int) -> InlineImage | None:
    mime_type = part.mime_type or get_mime_type(part.name, "image")
    if part.url:
        decoded = _decode_data_url(part.url)
        if decoded is not None:
            mime_type, data = decoded
            if len(data) > max_inline_bytes:
                return None
            return InlineImage(mime_type=mime_type, data=data)
        return InlineImage(mime_type=mime_type, url=part.url)
    if not part.storage:
        return None
    data = loader(part.storage)
    if len(data) > max_inline_bytes:
        return None
    return InlineImage(mime_type=mime_type, data=data)


def _render_artifact(part: ArtifactRefPart) -> str:
    header = f"Artifact `{part.filename}`"
    if part.description:
        header = f"{header}: {part.description}"
    if part.provider_file_uri:
        return f"{header} (attached as file)"
    return f"{header}\n```{part.language}\n{part.content}\n```"


def build_model_messages(
    history: Sequence[Mapping[str, Any]],
    *,
    loader: BytesLoader,
    system_prompt: str | None = None,
    resolver: LibraryResolver | None = None,
    max_inline_bytes: int = DEFAULT_MAX_INLINE_BYTES,
    artifact_hook: Callable[[ArtifactRefPart], None] | None = None,
) -> list[ModelMessage]:
    """Turn stored chat messages into provider-agnostic model messages.

    Only the most recent user message carries image bytes; images in earlier
    turns are described in text. ``artifact_hook`` lets the caller fill in
    artifact content or a provider file handle before rendering.
    """

    messages: list[ModelMessage] = []
    if system_prompt and system_prompt.strip():
        messages.append(ModelMessage(role="system", text=system_prompt.strip()))

    last_user_index = next(
        (index for index in range(len(history) - 1, -1, -1) if history[index].get("role") == "user"),
        None,
    )

    for index, message in enumerate(history):
        role = str(message.get("role") or "user")
        is_latest_user = index == last_user_index
        chunks: list[str] = []
        images: list[InlineImage] = []
        files: list[FileReference] = []

        for part in message_parts(message, resolver):
            if isinstance(part, TextPart):
                if part.text.strip():
                    chunks.append(part.text)
            elif isinstance(part, ImagePart):
                if not is_latest_user:
                    chunks.append(f"[Image: {part.name}]")
                    continue
                try:
                    image = _load_image(part, loader, max_inline_bytes)
                except (OSError, RuntimeError, ValueError) as exc:
                    log.warning("Unable to load image %s: %s", part.name, exc)
                    image = None
                if image is None:
                    chunks.append(f"[Image: {part.name} - Unable to attach]")
                else:
                    images.append(image)
            elif isinstance(part, FilePart):
                attachment = {
                    "name": part.name,
                    "type": part.attachment_type,
                    "storage": part.storage,
                    "size": part.size,
                    "mimeType": part.mime_type,
                }
                try:
                    processed = process_attachment(attachment, loader)
                except (OSError, RuntimeError, ValueError) as exc:
                    log.warning("Unable to process attachment %s: %s", part.name, exc)
                    chunks.append(f"[File: {part.name} - Unable to process content]")
                    continue
                chunks.append(processed["content"])
            elif isinstance(part, ArtifactRefPart):
                if artifact_hook is not None:
                    artifact_hook(part)
                if part.provider_file_uri:
                    files.append(FileReference(uri=part.provider_file_uri, mime_type="text/plain"))
                chunks.append(_render_artifact(part))

        text = "\n\n".join(chunks).strip()
        if not text and not images and not files:
            continue
        messages.append(ModelMessage(role=role, text=text, images=images, files=files))

    return messages
