"""Keeps the WhatsApp bridge connected and delivers assistant replies to it."""

import asyncio
import time

from loguru import logger

from threadline.bus.events import OutboundMessage
from threadline.bus.queue import MessageBus
from threadline.channels.base import BaseChannel
from threadline.channels.whatsapp import WhatsAppChannel
from threadline.config.schema import Config

RESTART_DELAY_S = 5.0
RESTART_BACKOFF_MAX_S = 60.0
STABLE_RESET_S = 180.0


class ChannelManager:
    """
    Owns the transport side of the gateway.

    threadline relays a single WhatsApp bridge; ``channels`` is keyed by name
    so replies are routed by ``OutboundMessage.channel``. The bridge
    connection runs under a supervisor that restarts it with capped
    exponential backoff, and a reply pump drains the outbound queue. A reply
    that cannot be delivered is logged and dropped; the assistant thread
    already holds it.
    """

    def __init__(self, config: Config, bus: MessageBus):
        self.config = config
        self.bus = bus
        self.channels: dict[str, BaseChannel] = {}
        self._reply_task: asyncio.Task | None = None
        self._supervisors: dict[str, asyncio.Task[None]] = {}
        self._running = False

        wa_config = config.channels.whatsapp
        if wa_config.enabled:
            self.channels[WhatsAppChannel.name] = WhatsAppChannel(wa_config, bus)
            logger.info(f"WhatsApp bridge channel enabled ({wa_config.bridge_url})")

    async def start_all(self) -> None:
        """Run the bridge supervisor(s) and the reply pump until ``stop_all``."""
        if not self.channels:
            logger.warning("No channels enabled; replies will not be delivered")
            return
        if self._running:
            logger.warning("Channel manager already running")
            return

        self._running = True
        self._reply_task = asyncio.create_task(self._deliver_replies())
        for name, channel in self.channels.items():
            logger.info(f"Starting {name} channel...")
            self._supervisors[name] = asyncio.create_task(self._run_channel_supervisor(name, channel))

        await asyncio.gather(*self._supervisors.values(), return_exceptions=True)

    async def stop_all(self) -> None:
        """Stop the reply pump, close every channel and cancel supervisors."""
        logger.info("Stopping channels...")
        self._running = False

        if self._reply_task:
            self._reply_task.cancel()
            try:
                await self._reply_task
            except asyncio.CancelledError:
                logger.debug("Reply pump cancelled")
            self._reply_task = None

        for name, channel in self.channels.items():
            try:
                await channel.stop()
                logger.info(f"Stopped {name} channel")
            except Exception as e:
                logger.error(f"Error stopping {name}: {e}")

        for task in self._supervisors.values():
            task.cancel()
        await asyncio.gather(*self._supervisors.values(), return_exceptions=True)
        self._supervisors.clear()

    async def _run_channel_supervisor(self, name: str, channel: BaseChannel) -> None:
        """Restart ``channel`` whenever it returns or crashes while running."""
        backoff = RESTART_DELAY_S
        while self._running:
            started_at = time.monotonic()
            try:
                await channel.start()
                if not self._running:
                    break
                logger.warning(f"{name} channel stopped unexpectedly; restarting in {backoff:.1f}s")
            except asyncio.CancelledError:
                break
            except Exception as exc:
                if not self._running:
                    break
                logger.error(f"{name} channel crashed: {exc}; restarting in {backoff:.1f}s")

            # A long healthy session earns a fresh backoff.
            if time.monotonic() - started_at >= STABLE_RESET_S:
                backoff = RESTART_DELAY_S
            await asyncio.sleep(backoff)
            backoff = min(backoff * 2, RESTART_BACKOFF_MAX_S)

    async def _deliver_replies(self) -> None:
        logger.info("Reply pump started")
        while True:
            try:
                reply = await asyncio.wait_for(self.bus.consume_outbound(), timeout=1.0)
            except asyncio.TimeoutError:
                continue
            except asyncio.CancelledError:
                break
            await self._deliver(reply)

    async def _deliver(self, reply: OutboundMessage) -> None:
        channel = self.channels.get(reply.channel)
        if channel is None:
            logger.warning(f"Dropping reply for unknown channel {reply.channel}:{reply.chat_id}")
            return
        try:
            await channel.send(reply)
            logger.debug(f"Delivered reply to {reply.chat_id}")
        except Exception as e:
            logger.error(f"Could not deliver reply to {reply.channel}:{reply.chat_id}: {e}")

    def get_status(self) -> dict[str, dict[str, bool]]:
        """Running state of every channel."""
        return {name: {"running": channel.is_running} for name, channel in self.channels.items()}
