"""Message bus module for decoupled channel-dispatcher communication."""

from threadline.bus.events import InboundMessage, OutboundMessage
from threadline.bus.queue import MessageBus

__all__ = ["MessageBus", "InboundMessage", "OutboundMessage"]
