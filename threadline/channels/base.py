"""Base channel interface for chat transports."""

import re
from abc import ABC, abstractmethod
from typing import Any

from loguru import logger

from threadline.bus.events import InboundMessage, MediaLoader, OutboundMessage
from threadline.bus.queue import MessageBus


class BaseChannel(ABC):
    """
    Abstract base class for chat transports.

    A channel turns platform events into ``InboundMessage`` objects on the bus
    and delivers ``OutboundMessage`` objects back to the platform.
    """

    name: str = "base"

    def __init__(self, config: Any, bus: MessageBus):
        self.config = config
        self.bus = bus
        self._running = False

    @abstractmethod
    async def start(self) -> None:
        """
        Connect to the platform and keep forwarding messages.

        Long-running; returns when the channel is stopped or the connection
        ends for good.
        """
        pass

    @abstractmethod
    async def stop(self) -> None:
        """Stop the channel and clean up resources."""
        pass

    @abstractmethod
    async def send(self, msg: OutboundMessage) -> None:
        """Deliver one outbound message."""
        pass

    def is_allowed(self, sender_id: str) -> bool:
        """True when ``sender_id`` passes the ``allow_from`` list (empty list allows all)."""
        allow_list = getattr(self.config, "allow_from", [])
        if not allow_list:
            return True

        sender_variants = self._identity_variants(sender_id)
        return any(sender_variants & self._identity_variants(allowed) for allowed in allow_list)

    def _identity_variants(self, raw: str) -> set[str]:
        """Comparable forms of a JID or phone number."""
        text = str(raw or "").strip()
        variants = {text}
        if "@" in text:
            variants.add(text.split("@", 1)[0])
        digits = re.sub(r"\D+", "", text)
        if digits:
            variants.add(digits)
            variants.add(digits.lstrip("0"))
        return {v for v in variants if v}

    async def _handle_message(
        self,
        sender_id: str,
        chat_id: str,
        content: str,
        media: list[str] | None = None,
        metadata: dict[str, Any] | None = None,
        media_loader: MediaLoader | None = None,
    ) -> None:
        """Check the allowlist and publish the message to the bus."""
        if not self.is_allowed(sender_id):
            logger.warning(
                f"Access denied for sender {sender_id} on channel {self.name}; "
                f"add them to allowFrom to grant access"
            )
            return

        await self.bus.publish_inbound(
            InboundMessage(
                channel=self.name,
                sender_id=str(sender_id),
                chat_id=str(chat_id),
                content=content,
                media=media or [],
                metadata=metadata or {},
                media_loader=media_loader,
            )
        )

    @property
    def is_running(self) -> bool:
        return self._running
