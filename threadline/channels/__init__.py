"""Chat channels module."""

from threadline.channels.base import BaseChannel
from threadline.channels.manager import ChannelManager

__all__ = ["BaseChannel", "ChannelManager"]
