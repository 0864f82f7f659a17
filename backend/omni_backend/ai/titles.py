from __future__ import annotations

import logging

from .canonical import ModelMessage, clean_message_content
from .errors import ProviderError
from .prompts import TITLE_INSTRUCTION
from .providers.base import ProviderAdapter
from .settings import AISettings

log = logging.getLogger(__name__)

DEFAULT_TITLE = "New chat"
MAX_TITLE_LENGTH = 80


def clean_title(raw: str) -> str:
    lines = (raw or "").strip().splitlines()
    title = lines[0].strip().strip("\"'").strip().rstrip(".;:").strip() if lines else ""
    if len(title) > MAX_TITLE_LENGTH:
        title = title[:MAX_TITLE_LENGTH].rstrip()
    return title or DEFAULT_TITLE


def generate_chat_title(
    user_message: str,
    assistant_message: str,
    adapter: ProviderAdapter,
    model: str,
) -> str:
    """Produce a concise chat title based on the opening exchange."""

    conversation = (
        f"User: {clean_message_content(user_message)}\n"
        f"Assistant: {clean_message_content(assistant_message)}"
    )
    messages = [
        ModelMessage(role="system", text=TITLE_INSTRUCTION),
        ModelMessage(role="user", text=conversation),
    ]
    try:
        result = adapter.generate_reply(model, messages, AISettings(temperature=0.3, max_tokens=32))
    except ProviderError as exc:
        log.warning("Failed to generate chat title with %s: %s", model, exc)
        return DEFAULT_TITLE
    return clean_title(result.text)
