from __future__ import annotations
import uuid
from typing import Awaitable, Callable, Optional

from chanbridge.channels.base import ChannelAdapter
from chanbridge.channels.errors import ChannelError
from chanbridge.config import Settings
from chanbridge.domain.models import ChannelStatusReport, InboundEnvelope, OutboundEnvelope, ProviderSetupSpec
from chanbridge.observability.logging import bind_correlation_id, get_logger

log = get_logger("hub")

HostHandler = Callable[[InboundEnvelope], Awaitable[Optional[OutboundEnvelope]]]

def gen_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:12]}"

def build_channels(
    settings: Settings,
    whatsapp_transport=None,
    whatsapp_store=None,
    qr_sink: Optional[Callable[[str], None]] = None,
    discord_client_factory=None,
) -> list[ChannelAdapter]:
    """Create the adapters enabled in settings.

    The WhatsApp transport and credential store are supplied by the host; an
    enabled WhatsApp channel without them is a configuration error.
    """
    channels: list[ChannelAdapter] = []
    if settings.whatsapp_enabled:
        if whatsapp_transport is None or whatsapp_store is None:
            raise ValueError("whatsapp_enabled requires a transport and a credential store")
        from chanbridge.channels.whatsapp import WhatsAppChannel
        channels.append(WhatsAppChannel(
            transport=whatsapp_transport,
            store=whatsapp_store,
            auth_key=settings.whatsapp_auth_dir,
            print_qr=settings.whatsapp_print_qr,
            qr_sink=qr_sink,
            reconnect_delay_s=settings.whatsapp_reconnect_delay_s,
        ))
    if settings.discord_enabled:
        if settings.discord_token is None:
            raise ValueError("discord_enabled requires CHB_DISCORD_TOKEN")
        from chanbridge.channels.discord import DiscordChannel
        channels.append(DiscordChannel(
            token=settings.discord_token.get_secret_value(),
            client_factory=discord_client_factory,
            thread_name_prefix=settings.discord_thread_name_prefix,
            thread_auto_archive_minutes=settings.discord_thread_auto_archive_minutes,
            fetch_retries=settings.discord_fetch_retries,
        ))
    return channels

class ChannelHub:
    """Host-side owner of the channel adapters.

    Wires one inbound handler per adapter, stamps a correlation id on every
    envelope, and sends the handler's reply (if any) back through the adapter
    the message came from.
    """
    def __init__(self, handler: HostHandler, channels: Optional[list[ChannelAdapter]] = None):
        self.handler = handler
        self.channels: dict[str, ChannelAdapter] = {}
        for adapter in channels or []:
            self.register(adapter)

    def register(self, adapter: ChannelAdapter) -> None:
        if adapter.id in self.channels:
            raise ValueError(f"channel already registered: {adapter.id}")
        self.channels[adapter.id] = adapter
        adapter.set_inbound_handler(self.dispatch_inbound)

    async def start(self) -> dict[str, BaseException]:
        """Start every adapter; a fatal start error is logged and returned, not raised."""
        failures: dict[str, BaseException] = {}
        for cid, adapter in self.channels.items():
            try:
                await adapter.start()
            except Exception as e:
                failures[cid] = e
                log.error("channel_start_failed", channel=cid, error=str(e), error_type=type(e).__name__)
        return failures

    async def stop(self) -> None:
        for a in self.channels.values():
            await a.stop()

    async def dispatch_inbound(self, env: InboundEnvelope) -> None:
        if env.correlation_id is None:
            env = env.model_copy(update={"correlation_id": gen_id("cor")})
        bind_correlation_id(env.correlation_id)
        try:
            reply = await self.handler(env)
        except Exception:
            log.exception("inbound_handler_failed", channel=env.channel_id, source_id=env.source_id)
            return
        finally:
            bind_correlation_id(None)
        if reply is None:
            return
        if reply.channel_id is None:
            reply = reply.model_copy(update={"channel_id": env.channel_id})
        try:
            await self.send(reply)
        except ChannelError as e:
            log.warning("reply_failed", channel=reply.channel_id, error=str(e), code=e.code)
        except Exception as e:
            log.warning("reply_failed", channel=reply.channel_id, error=str(e), error_type=type(e).__name__)

    async def send(self, envelope: OutboundEnvelope) -> None:
        adapter = self.channels.get(envelope.channel_id or "")
        if adapter is None:
            raise ChannelError(f"unknown channel: {envelope.channel_id}", code="unknown_channel")
        await adapter.send(envelope)

    def statuses(self) -> list[ChannelStatusReport]:
        return [a.get_status() for a in self.channels.values()]

    def setup_specs(self) -> list[ProviderSetupSpec]:
        return [a.get_setup_spec() for a in self.channels.values()]
