"""Tests for the WhatsApp bridge frames and token authentication."""

from __future__ import annotations

import asyncio
import base64
import json
from unittest.mock import patch

import pytest

from threadline.bus.events import OutboundMessage
from threadline.bus.queue import MessageBus
from threadline.channels.whatsapp import WhatsAppChannel
from threadline.config.loader import convert_keys, convert_to_camel
from threadline.config.schema import WhatsAppConfig

# ── Schema tests ──────────────────────────────────────────────────────


def test_whatsapp_config_bridge_token_default_empty():
    config = WhatsAppConfig()
    assert config.bridge_token == ""


def test_whatsapp_config_bridge_token_roundtrip_camel_case():
    config = WhatsAppConfig(bridge_token="my-secret")
    data = convert_to_camel(config.model_dump())
    assert data["bridgeToken"] == "my-secret"

    restored = WhatsAppConfig.model_validate(convert_keys(data))
    assert restored.bridge_token == "my-secret"


# ── Connection tests ──────────────────────────────────────────────────


class _FakeWS:
    """Minimal fake WebSocket that records sent frames and ends after one iteration."""

    def __init__(self):
        self.sent: list[str] = []

    async def send(self, data):
        self.sent.append(data)

    def __aiter__(self):
        return self

    async def __anext__(self):
        raise StopAsyncIteration

    async def close(self):
        pass


def _connect_once(channel: WhatsAppChannel, fake_ws: _FakeWS):
    class _FakeCM:
        async def __aenter__(self):
            return fake_ws

        async def __aexit__(self, *args):
            channel._running = False
            return False

    return _FakeCM()


@pytest.mark.asyncio
async def test_whatsapp_channel_sends_auth_on_connect():
    channel = WhatsAppChannel(WhatsAppConfig(bridge_token="test-secret"), MessageBus())
    fake_ws = _FakeWS()

    with patch("websockets.connect", return_value=_connect_once(channel, fake_ws)):
        await asyncio.wait_for(channel.start(), timeout=5)

    assert json.loads(fake_ws.sent[0]) == {"type": "auth", "token": "test-secret"}


@pytest.mark.asyncio
async def test_whatsapp_channel_skips_auth_without_token():
    channel = WhatsAppChannel(WhatsAppConfig(), MessageBus())
    fake_ws = _FakeWS()

    with patch("websockets.connect", return_value=_connect_once(channel, fake_ws)):
        await asyncio.wait_for(channel.start(), timeout=5)

    assert fake_ws.sent == []


# ── Frame handling ────────────────────────────────────────────────────


def test_incoming_text_frame_is_published_with_full_jid():
    bus = MessageBus()
    channel = WhatsAppChannel(WhatsAppConfig(), bus)
    frame = {
        "type": "message",
        "id": "ABC123",
        "sender": "6281234567890@s.whatsapp.net",
        "chatId": "6281234567890@s.whatsapp.net",
        "content": "Hello",
        "timestamp": 1700000000,
        "isGroup": False,
    }

    asyncio.run(channel._handle_bridge_message(json.dumps(frame)))

    msg = bus.inbound.get_nowait()
    assert msg.channel == "whatsapp"
    assert msg.chat_id == "6281234567890@s.whatsapp.net"
    assert msg.sender_id == "6281234567890"
    assert msg.content == "Hello"
    assert msg.has_media is False
    assert msg.metadata["message_id"] == "ABC123"
    assert msg.metadata["from_me"] is False


def test_incoming_base64_media_is_downloadable():
    bus = MessageBus()
    channel = WhatsAppChannel(WhatsAppConfig(), bus)
    frame = {
        "type": "message",
        "sender": "1@s.whatsapp.net",
        "content": "",
        "mediaData": base64.b64encode(b"\xff\xd8img").decode(),
        "mimeType": "image/jpeg",
    }

    async def run_case() -> bytes:
        await channel._handle_bridge_message(json.dumps(frame))
        msg = bus.inbound.get_nowait()
        assert msg.has_media
        assert msg.metadata["mime_type"] == "image/jpeg"
        return await msg.download_media()

    assert asyncio.run(run_case()) == b"\xff\xd8img"


def test_incoming_media_path_is_downloadable(tmp_path):
    media = tmp_path / "photo.jpg"
    media.write_bytes(b"jpeg")
    bus = MessageBus()
    channel = WhatsAppChannel(WhatsAppConfig(), bus)
    frame = {"type": "message", "sender": "1@s.whatsapp.net", "mediaPath": str(media)}

    async def run_case() -> bytes:
        await channel._handle_bridge_message(json.dumps(frame))
        msg = bus.inbound.get_nowait()
        assert msg.media == [str(media)]
        return await msg.download_media()

    assert asyncio.run(run_case()) == b"jpeg"


def test_invalid_base64_media_fails_on_download():
    bus = MessageBus()
    channel = WhatsAppChannel(WhatsAppConfig(), bus)
    frame = {"type": "message", "sender": "1@s.whatsapp.net", "mediaData": "***not base64***"}

    async def run_case() -> None:
        await channel._handle_bridge_message(json.dumps(frame))
        msg = bus.inbound.get_nowait()
        with pytest.raises(ValueError):
            await msg.download_media()

    asyncio.run(run_case())


def test_sender_outside_allowlist_is_dropped():
    bus = MessageBus()
    channel = WhatsAppChannel(WhatsAppConfig(allow_from=["+62 811 0000"]), bus)

    async def run_case() -> None:
        await channel._handle_bridge_message(
            json.dumps({"type": "message", "sender": "999@s.whatsapp.net", "content": "hi"})
        )
        await channel._handle_bridge_message(
            json.dumps({"type": "message", "sender": "628110000@s.whatsapp.net", "content": "ok"})
        )

    asyncio.run(run_case())

    assert bus.inbound_size == 1
    assert bus.inbound.get_nowait().content == "ok"


def test_status_frames_track_connection_state():
    channel = WhatsAppChannel(WhatsAppConfig(), MessageBus())

    asyncio.run(channel._handle_bridge_message(json.dumps({"type": "status", "status": "connected"})))
    assert channel._connected is True

    asyncio.run(
        channel._handle_bridge_message(json.dumps({"type": "status", "status": "disconnected"}))
    )
    assert channel._connected is False


def test_send_requires_connection():
    channel = WhatsAppChannel(WhatsAppConfig(), MessageBus())
    with pytest.raises(RuntimeError):
        asyncio.run(channel.send(OutboundMessage(channel="whatsapp", chat_id="1@s", content="x")))


def test_send_writes_send_frame():
    channel = WhatsAppChannel(WhatsAppConfig(), MessageBus())
    fake_ws = _FakeWS()
    channel._ws = fake_ws
    channel._connected = True

    asyncio.run(
        channel.send(OutboundMessage(channel="whatsapp", chat_id="1@s.whatsapp.net", content="Hi there"))
    )

    assert json.loads(fake_ws.sent[0]) == {"type": "send", "to": "1@s.whatsapp.net", "text": "Hi there"}
