"""Event types for the message bus."""

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

MediaLoader = Callable[[], Awaitable[bytes]]


@dataclass
class InboundMessage:
    """Message received from a chat channel."""

    channel: str  # whatsapp
    sender_id: str  # User identifier
    chat_id: str  # Chat JID, also the contact identifier replies go to
    content: str  # Message text
    timestamp: datetime = field(default_factory=datetime.now)
    media: list[str] = field(default_factory=list)  # Local media paths
    metadata: dict[str, Any] = field(default_factory=dict)  # Channel-specific data
    media_loader: MediaLoader | None = field(default=None, repr=False, compare=False)

    @property
    def session_key(self) -> str:
        """Unique key for session identification."""
        return f"{self.channel}:{self.chat_id}"

    @property
    def has_media(self) -> bool:
        return self.media_loader is not None or bool(self.media)

    async def download_media(self) -> bytes:
        """Return the raw bytes of the first attachment."""
        if self.media_loader is not None:
            return await self.media_loader()
        if not self.media:
            raise ValueError("message has no media attached")
        return await asyncio.to_thread(Path(self.media[0]).read_bytes)


@dataclass
class OutboundMessage:
    """Message to send to a chat channel."""

    channel: str
    chat_id: str
    content: str
    reply_to: str | None = None
    media: list[str] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)
