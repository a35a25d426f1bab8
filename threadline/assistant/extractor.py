"""Pick the assistant's latest reply out of a thread listing."""

from typing import Any


def _segment_text(segment: Any) -> str | None:
    if not isinstance(segment, dict) or segment.get("type") != "text":
        return None
    text = segment.get("text")
    if isinstance(text, dict):
        value = text.get("value")
        return value if isinstance(value, str) else None
    return text if isinstance(text, str) else None


def extract_latest(messages: list[dict[str, Any]]) -> str | None:
    """
    Return the text of the most recent assistant message.

    ``messages`` must be ordered most-recent-first, as the backend lists them
    with ``order=desc``. Text segments of the selected message are joined with
    newlines; non-text segments are skipped. Returns None when there is no
    assistant message or it carries no text.
    """
    assistant_messages = [m for m in messages if m.get("role") == "assistant"]
    if not assistant_messages:
        return None

    parts = [
        text
        for text in (_segment_text(seg) for seg in assistant_messages[0].get("content") or [])
        if text is not None
    ]
    if not parts:
        return None
    return "\n".join(parts)
