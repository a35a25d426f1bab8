"""Build user message payloads for thread creation and appends."""

from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True)
class MessageContent:
    """Text and/or one uploaded attachment from a single chat message."""

    text: str = ""
    file_id: str | None = None

    @property
    def is_empty(self) -> bool:
        return not self.text and not self.file_id


def compose(content: MessageContent) -> dict[str, Any]:
    """
    Build a role-tagged user message.

    The text segment (if any) comes first, then the image attachment (if any).
    The same shape is accepted by thread creation and message append.

    Raises:
        ValueError: if the content has neither text nor an attachment.
    """
    if content.is_empty:
        raise ValueError("cannot compose a message without text or attachment")

    segments: list[dict[str, Any]] = []
    if content.text:
        segments.append({"type": "text", "text": content.text})
    if content.file_id:
        segments.append({"type": "image_file", "image_file": {"file_id": content.file_id}})
    return {"role": "user", "content": segments}
