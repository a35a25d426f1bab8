"""WhatsApp channel implementation using a Node.js bridge."""

import asyncio
import base64
import binascii
import json
from pathlib import Path
from typing import Any

from loguru import logger

from threadline.bus.events import MediaLoader, OutboundMessage
from threadline.bus.queue import MessageBus
from threadline.channels.base import BaseChannel
from threadline.config.schema import WhatsAppConfig

RECONNECT_DELAY_S = 5


def _file_loader(path: Path) -> MediaLoader:
    async def load() -> bytes:
        return await asyncio.to_thread(path.read_bytes)

    return load


def _base64_loader(encoded: str) -> MediaLoader:
    async def load() -> bytes:
        try:
            return base64.b64decode(encoded, validate=True)
        except (binascii.Error, ValueError) as e:
            raise ValueError(f"invalid base64 media payload: {e}") from e

    return load


class WhatsAppChannel(BaseChannel):
    """
    WhatsApp channel that talks to a WhatsApp Web bridge over WebSocket.

    The bridge owns QR pairing and the WhatsApp session; this side only sees
    JSON frames (``message``, ``status``, ``qr``, ``error``) and sends
    ``send`` frames back.
    """

    name = "whatsapp"

    def __init__(self, config: WhatsAppConfig, bus: MessageBus):
        super().__init__(config, bus)
        self.config: WhatsAppConfig = config
        self._ws = None
        self._connected = False

    async def start(self) -> None:
        """Connect to the bridge, reconnecting until stopped."""
        import websockets

        bridge_url = self.config.bridge_url
        logger.info(f"Connecting to WhatsApp bridge at {bridge_url}...")
        self._running = True

        while self._running:
            try:
                async with websockets.connect(bridge_url) as ws:
                    self._ws = ws
                    self._connected = True
                    logger.info("Connected to WhatsApp bridge")

                    if self.config.bridge_token:
                        await ws.send(json.dumps({"type": "auth", "token": self.config.bridge_token}))

                    async for raw in ws:
                        try:
                            await self._handle_bridge_message(raw)
                        except Exception as e:
                            logger.error(f"Error handling bridge message: {e}")

            except asyncio.CancelledError:
                break
            except Exception as e:
                self._connected = False
                self._ws = None
                logger.warning(f"WhatsApp bridge connection error: {e}")

                if self._running:
                    logger.info(f"Reconnecting in {RECONNECT_DELAY_S} seconds...")
                    await asyncio.sleep(RECONNECT_DELAY_S)

    async def stop(self) -> None:
        """Stop the WhatsApp channel."""
        self._running = False
        self._connected = False

        if self._ws:
            await self._ws.close()
            self._ws = None

    async def send(self, msg: OutboundMessage) -> None:
        """Send a plain-text reply through the bridge."""
        if not self._ws or not self._connected:
            raise RuntimeError("WhatsApp bridge not connected")

        payload = {"type": "send", "to": msg.chat_id, "text": msg.content}
        await self._ws.send(json.dumps(payload))

    async def _handle_bridge_message(self, raw: str) -> None:
        """Handle one frame from the bridge."""
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning(f"Invalid JSON from bridge: {raw[:100]}")
            return

        msg_type = data.get("type")

        if msg_type == "message":
            await self._handle_incoming(data)

        elif msg_type == "status":
            status = data.get("status")
            logger.info(f"WhatsApp status: {status}")
            if status in {"connected", "ready"}:
                self._connected = True
            elif status == "disconnected":
                self._connected = False

        elif msg_type == "qr":
            logger.info("Scan the QR code in the bridge terminal to pair WhatsApp")

        elif msg_type == "error":
            logger.error(f"WhatsApp bridge error: {data.get('error')}")

    async def _handle_incoming(self, data: dict[str, Any]) -> None:
        sender_jid = str(data.get("sender", "") or "")
        chat_jid = str(data.get("chatId", "") or sender_jid)
        content = str(data.get("content", "") or "")
        media_paths: list[str] = []
        media_loader = None

        media_path = str(data.get("mediaPath", "") or "")
        media_data = str(data.get("mediaData", "") or "")
        if media_path:
            path_obj = Path(media_path)
            if path_obj.is_file():
                media_paths.append(str(path_obj))
                media_loader = _file_loader(path_obj)
            else:
                logger.warning(f"WhatsApp media path not found: {media_path}")
        elif media_data:
            media_loader = _base64_loader(media_data)

        await self._handle_message(
            sender_id=self._jid_to_identity(sender_jid or chat_jid),
            chat_id=chat_jid,  # Full JID, used for replies and thread lookup
            content=content,
            media=media_paths,
            media_loader=media_loader,
            metadata={
                "message_id": data.get("id"),
                "timestamp": data.get("timestamp"),
                "is_group": bool(data.get("isGroup", False)),
                "from_me": bool(data.get("fromMe", False)),
                "mime_type": data.get("mimeType"),
            },
        )

    def _jid_to_identity(self, jid: str) -> str:
        """Convert a JID into the phone-number identity used by the allowlist."""
        left = (jid or "").strip().split("@", 1)[0]
        return left.split(":", 1)[0]
