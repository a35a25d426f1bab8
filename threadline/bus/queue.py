"""Async message queue for decoupled channel-dispatcher communication."""

import asyncio

from loguru import logger

from threadline.bus.events import InboundMessage, OutboundMessage


class MessageBus:
    """
    Async message bus that decouples chat channels from the dispatcher.

    Channels push inbound messages; the dispatcher consumes them and pushes
    replies to the outbound queue, which the channel manager drains.
    """

    def __init__(self):
        self.inbound: asyncio.Queue[InboundMessage] = asyncio.Queue()
        self.outbound: asyncio.Queue[OutboundMessage] = asyncio.Queue()
        self._running = True

    async def publish_inbound(self, msg: InboundMessage) -> None:
        """Publish a message from a channel to the dispatcher."""
        if not self._running:
            logger.debug(f"Bus stopped; dropping inbound from {msg.session_key}")
            return
        await self.inbound.put(msg)

    async def consume_inbound(self) -> InboundMessage:
        """Consume the next inbound message (blocks until available)."""
        return await self.inbound.get()

    async def publish_outbound(self, msg: OutboundMessage) -> None:
        """Publish a reply from the dispatcher to channels."""
        await self.outbound.put(msg)

    async def consume_outbound(self) -> OutboundMessage:
        """Consume the next outbound message (blocks until available)."""
        return await self.outbound.get()

    def stop(self) -> None:
        """Stop accepting new inbound messages."""
        self._running = False

    @property
    def inbound_size(self) -> int:
        """Number of pending inbound messages."""
        return self.inbound.qsize()

    @property
    def outbound_size(self) -> int:
        """Number of pending outbound messages."""
        return self.outbound.qsize()
