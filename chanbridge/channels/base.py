from __future__ import annotations
import abc
from typing import Awaitable, Callable, Optional

from chanbridge.channels.errors import ChannelError
from chanbridge.domain.models import ChannelStatusReport, InboundEnvelope, OutboundEnvelope, ProviderSetupSpec

InboundHandler = Callable[[InboundEnvelope], Awaitable[None]]


class ChannelAdapter(abc.ABC):
    """Channel adapter interface.

    One instance owns one external connection. The host registers a single
    inbound handler, then drives the lifecycle with start()/stop(). Adapters
    are pure async and never block the event loop.
    """

    id: str = "channel"

    def __init__(self) -> None:
        self._inbound_handler: Optional[InboundHandler] = None
        self.connected = False
        self.last_error: Optional[str] = None
        self.should_run = False

    def set_inbound_handler(self, handler: InboundHandler) -> None:
        self._inbound_handler = handler

    def _record_error(self, error: ChannelError) -> ChannelError:
        """Keep a recoverable condition as last_error instead of raising it."""
        self.last_error = error.code
        return error

    @abc.abstractmethod
    async def start(self) -> None:
        ...

    @abc.abstractmethod
    async def stop(self) -> None:
        ...

    @abc.abstractmethod
    async def send(self, envelope: OutboundEnvelope) -> None:
        ...

    @abc.abstractmethod
    def get_status(self) -> ChannelStatusReport:
        ...

    @classmethod
    @abc.abstractmethod
    def get_setup_spec(cls) -> ProviderSetupSpec:
        """Static description of the settings this channel reads."""
        ...
