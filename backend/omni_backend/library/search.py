"""Relevance-ranked search across attachments, artifacts and generated media.

Used by the ``#`` library picker: items are pre-filtered by substring, then
scored by usage, recency, query match quality, chat context and favourites.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterable, Mapping, Optional

from ..utils import now_utc, to_datetime, to_iso
from .service import ARTIFACTS, ATTACHMENTS, MEDIA, _stream_user_docs, _updated_at

__all__ = ["ChatContext", "build_chat_context", "score_item", "search_library"]

CONTEXT_MESSAGES = 10
CONTEXT_WORDS_PER_MESSAGE = 5
DEFAULT_LIMIT = 20


@dataclass(slots=True)
class ChatContext:
    words: list[str] = field(default_factory=list)
    recently_used: set[str] = field(default_factory=set)

    @property
    def active(self) -> bool:
        return bool(self.words)


def build_chat_context(messages: Iterable[Mapping[str, Any]]) -> ChatContext:
    """Keywords and referenced item ids from the last few chat messages."""

    context = ChatContext()
    for message in list(messages)[-CONTEXT_MESSAGES:]:
        content = message.get("content")
        if isinstance(content, str) and content:
            words = [word for word in re.split(r"\s+", content.lower()) if len(word) > 3]
            context.words.extend(words[:CONTEXT_WORDS_PER_MESSAGE])
        for item in message.get("referencedLibraryItems") or []:
            if item.get("id"):
                context.recently_used.add(str(item["id"]))
    return context


@dataclass(slots=True)
class _Scored:
    score: float
    contextual_match: bool = False
    recently_used: bool = False
    popular: bool = False


def score_item(
    data: Mapping[str, Any],
    *,
    name: str,
    item_key: str,
    query: str,
    context: ChatContext,
    now: datetime,
) -> _Scored:
    usage = int(data.get("usageCount") or data.get("referenceCount") or 0)
    score = float(min(usage * 2, 20))

    updated = _updated_at(data)
    days_since_update = (now - updated).total_seconds() / 86400
    score += max(10 - days_since_update, 0)

    description = str(data.get("description") or "")
    tags = " ".join(str(tag) for tag in data.get("tags") or [])
    if query:
        all_text = f"{name} {description} {tags}".lower()
        if name.lower() == query:
            score += 50
        elif query in name.lower():
            score += 30
        elif query in description.lower():
            score += 20
        elif query in tags.lower():
            score += 15
        elif query in all_text:
            score += 10

        text_words = all_text.split(" ")
        fuzzy = sum(
            1
            for search_word in query.split(" ")
            for text_word in text_words
            if search_word in text_word or text_word in search_word
        )
        score += fuzzy * 2
    else:
        if usage > 5:
            score += 15
        if days_since_update < 7:
            score += 10

    result = _Scored(score=score)
    if context.active:
        item_text = f"{name} {description}".lower()
        matches = sum(1 for word in context.words if word in item_text)
        result.score += matches * 5
        result.contextual_match = matches > 0

    if item_key in context.recently_used:
        result.score += 25
        result.recently_used = True
    if data.get("isFavorited"):
        result.score += 15
    if usage > 10:
        result.score += 10
        result.popular = True
    return result


def _result(kind: str, item_id: str, name: str, data: Mapping[str, Any], scored: _Scored, **extra: Any) -> dict[str, Any]:
    payload = {
        "type": kind,
        "id": item_id,
        "name": name,
        "filename": name,
        "createdAt": to_iso(data.get("createdAt")),
        "updatedAt": to_iso(data.get("updatedAt")),
        "tags": list(data.get("tags") or []),
        "relevanceScore": round(scored.score, 2),
        "isRecentlyUsed": scored.recently_used,
        "isPopular": scored.popular,
        "contextualMatch": scored.contextual_match,
    }
    payload.update(extra)
    payload["_sortUpdated"] = _updated_at(data)
    return payload


def search_library(
    uid: str,
    *,
    query: Optional[str] = None,
    item_type: str = "all",
    limit: int = DEFAULT_LIMIT,
    context_messages: Optional[Iterable[Mapping[str, Any]]] = None,
    include_recently_used: bool = False,
    include_popular: bool = False,
    now: Optional[datetime] = None,
) -> dict[str, Any]:
    needle = (query or "").lower()
    now = to_datetime(now) or now_utc()
    context = build_chat_context(context_messages or [])
    results: list[dict[str, Any]] = []

    def score(data: Mapping[str, Any], name: str, key: str) -> _Scored:
        return score_item(data, name=name, item_key=key, query=needle, context=context, now=now)

    if item_type in ("all", "attachment"):
        for doc, data in _stream_user_docs(ATTACHMENTS, uid):
            searchable = (
                f"{data.get('originalName') or ''} {data.get('displayName') or ''} "
                f"{data.get('description') or ''} {' '.join(data.get('tags') or [])}"
            ).lower()
            if needle and needle not in searchable:
                continue
            name = str(data.get("displayName") or data.get("originalName") or "")
            scored = score(data, str(data.get("originalName") or name), doc.id)
            results.append(
                _result(
                    "attachment",
                    doc.id,
                    name,
                    data,
                    scored,
                    description=data.get("description") or f"{data.get('type')} file",
                    size=data.get("size"),
                    mimeType=data.get("mimeType"),
                    fileType=data.get("type"),
                    usageCount=int(data.get("usageCount") or 0),
                )
            )

    if item_type in ("all", "artifact"):
        for doc, data in _stream_user_docs(ARTIFACTS, uid):
            content = str(data.get("content") or "")
            searchable = (
                f"{data.get('filename') or ''} {data.get('description') or ''} {data.get('language') or ''} "
                f"{' '.join(data.get('tags') or [])} {content[:200]}"
            ).lower()
            if needle and needle not in searchable:
                continue
            artifact_id = str(data.get("artifactId") or doc.id)
            name = str(data.get("filename") or "")
            scored = score(data, name, artifact_id)
            results.append(
                _result(
                    "artifact",
                    artifact_id,
                    name,
                    data,
                    scored,
                    description=data.get("description") or f"{data.get('language')} file",
                    language=data.get("language"),
                    usageCount=int(data.get("usageCount") or 0),
                    referenceCount=int(data.get("referenceCount") or 0),
                    contentPreview=content[:100] + "...",
                )
            )

    if item_type in ("all", "media"):
        for doc, data in _stream_user_docs(MEDIA, uid):
            searchable = (
                f"{data.get('title') or ''} {data.get('description') or ''} "
                f"{data.get('prompt') or ''} {' '.join(data.get('tags') or [])}"
            ).lower()
            if needle and needle not in searchable:
                continue
            name = str(data.get("title") or "")
            scored = score(data, name, doc.id)
            results.append(
                _result(
                    "media",
                    doc.id,
                    name,
                    data,
                    scored,
                    description=data.get("description") or f"{data.get('type')} media",
                    mediaType=data.get("type"),
                    referenceCount=int(data.get("referenceCount") or 0),
                    prompt=data.get("prompt"),
                    model=data.get("model"),
                    externalUrl=data.get("externalUrl"),
                )
            )

    results.sort(key=lambda item: (item["relevanceScore"], item["_sortUpdated"]), reverse=True)

    if include_recently_used or include_popular:
        results = [
            item
            for item in results
            if (include_recently_used and item["isRecentlyUsed"]) or (include_popular and item["isPopular"])
        ]

    for item in results:
        item.pop("_sortUpdated", None)

    return {
        "results": results[:limit],
        "metadata": {
            "totalResults": len(results),
            "hasContextualMatches": any(item["contextualMatch"] for item in results),
            "hasRecentlyUsed": any(item["isRecentlyUsed"] for item in results),
            "hasPopular": any(item["isPopular"] for item in results),
            "searchQuery": needle,
            "chatContext": context.active,
        },
    }
