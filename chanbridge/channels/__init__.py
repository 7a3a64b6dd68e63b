from chanbridge.channels.base import ChannelAdapter, InboundHandler
from chanbridge.channels.errors import ChannelConnectionError, ChannelError, NotConnectedError

__all__ = [
    "ChannelAdapter",
    "InboundHandler",
    "ChannelConnectionError",
    "ChannelError",
    "NotConnectedError",
]
