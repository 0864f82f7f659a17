from __future__ import annotations

DEFAULT_SYSTEM_INSTRUCTION = (
    "You are a helpful assistant inside a chat application. "
    "Respond in the same language as the most recent user message. "
    "Use Markdown for formatting when it improves readability."
)

RESPONSE_MODE_INSTRUCTIONS: dict[str, str] = {
    "concise": "Keep answers short and to the point. Avoid unnecessary elaboration.",
    "detailed": "Give thorough, well-structured answers with explanations and examples where useful.",
    "creative": "Be imaginative and original. Offer unexpected angles and vivid language.",
    "analytical": "Reason step by step. Compare options, state assumptions and back conclusions with evidence.",
    "friendly": "Use a warm, conversational and encouraging tone.",
    "professional": "Use a formal, precise and business-appropriate tone.",
}

TITLE_INSTRUCTION = (
    "Create a short, descriptive title for this conversation in six words or fewer. "
    "Always write the title in the same language as the user's message. "
    "Return only the title text without punctuation at the end."
)

CANVAS_INSTRUCTION = (
    "Respond with a single JSON object and nothing else. The object must have the keys "
    '"intro" (a brief introduction to the created content), '
    '"artifacts" (a list of objects with the keys "id", "filename", "language", "content" and "description") and '
    '"summary" (a summary of the created artifacts). '
    "Put complete, runnable file contents into each artifact."
)

CANVAS_SEARCH_NOTE = (
    "\n\nNote: Use web search to find current information if needed for creating accurate "
    "and up-to-date artifacts."
)

JSON_ONLY_INSTRUCTION = "Respond with valid JSON only. Do not wrap it in Markdown code fences."


def response_mode_instruction(mode: str | None) -> str | None:
    return RESPONSE_MODE_INSTRUCTIONS.get((mode or "balanced").lower())


def compose_system_prompt(*parts: str | None) -> str:
    return "\n\n".join(part.strip() for part in parts if part and part.strip())
