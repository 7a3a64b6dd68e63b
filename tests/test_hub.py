import pytest
from pydantic import SecretStr

from chanbridge.channels.base import ChannelAdapter
from chanbridge.channels.discord import DiscordChannel
from chanbridge.channels.errors import ChannelError, NotConnectedError
from chanbridge.channels.whatsapp import WhatsAppChannel
from chanbridge.config import Settings
from chanbridge.core.hub import ChannelHub, build_channels
from chanbridge.domain.models import (
    ChannelStatusReport,
    InboundEnvelope,
    OutboundEnvelope,
    ProviderSetupSpec,
)
from conftest import FakeClientFactory, FakeTransport, MemoryStore, wa_message


class FakeAdapter(ChannelAdapter):
    id = "fake"

    def __init__(self, start_error=None, send_error=None):
        super().__init__()
        self.start_error = start_error
        self.send_error = send_error
        self.sent = []
        self.stopped = False

    async def start(self):
        if self.start_error is not None:
            raise self.start_error
        self.should_run = True
        self.connected = True

    async def stop(self):
        self.stopped = True
        self.connected = False

    async def send(self, envelope):
        if self.send_error is not None:
            raise self.send_error
        self.sent.append(envelope)

    def get_status(self):
        return ChannelStatusReport(channel_id=self.id, connected=self.connected, last_error=self.last_error)

    @classmethod
    def get_setup_spec(cls):
        return ProviderSetupSpec(provider_id=cls.id, title="Fake", summary="test double")


def inbound(content="ping"):
    return InboundEnvelope(channel_id="fake", source_id="room", sender_id="u1", content=content)


@pytest.mark.asyncio
async def test_dispatch_stamps_correlation_id_and_routes_reply():
    seen = []

    async def handler(env):
        seen.append(env)
        return OutboundEnvelope(source_id=env.source_id, content="pong")

    adapter = FakeAdapter()
    hub = ChannelHub(handler, [adapter])
    await adapter._inbound_handler(inbound())

    assert seen[0].correlation_id.startswith("cor_")
    assert len(adapter.sent) == 1
    assert adapter.sent[0].channel_id == "fake"
    assert adapter.sent[0].content == "pong"

@pytest.mark.asyncio
async def test_dispatch_keeps_existing_correlation_id():
    seen = []

    async def handler(env):
        seen.append(env.correlation_id)
        return None

    hub = ChannelHub(handler, [FakeAdapter()])
    await hub.dispatch_inbound(inbound().model_copy(update={"correlation_id": "cor_fixed"}))
    assert seen == ["cor_fixed"]

@pytest.mark.asyncio
async def test_handler_failure_does_not_propagate():
    async def handler(env):
        raise RuntimeError("boom")

    adapter = FakeAdapter()
    hub = ChannelHub(handler, [adapter])
    await hub.dispatch_inbound(inbound())
    assert adapter.sent == []

@pytest.mark.asyncio
async def test_reply_failure_is_logged_not_raised():
    async def handler(env):
        return OutboundEnvelope.reply_to(env, "pong")

    adapter = FakeAdapter(send_error=NotConnectedError("fake"))
    hub = ChannelHub(handler, [adapter])
    await hub.dispatch_inbound(inbound())
    assert adapter.sent == []

@pytest.mark.asyncio
async def test_platform_send_failure_does_not_reach_the_adapter():
    async def handler(env):
        return OutboundEnvelope.reply_to(env, "pong")

    adapter = FakeAdapter(send_error=OSError("socket closed"))
    hub = ChannelHub(handler, [adapter])
    await hub.dispatch_inbound(inbound("first"))
    await hub.dispatch_inbound(inbound("second"))
    assert adapter.sent == []

@pytest.mark.asyncio
async def test_failed_reply_does_not_drop_rest_of_whatsapp_batch(transport, store):
    seen = []

    async def handler(env):
        seen.append(env.content)
        return OutboundEnvelope.reply_to(env, "pong")

    wa = WhatsAppChannel(transport=transport, store=store, reconnect_delay_s=0.01)
    hub = ChannelHub(handler, [wa])
    assert await hub.start() == {}
    sock = transport.sockets[0]
    sock.send_error = OSError("write failed")

    batch = {"messages": [wa_message({"conversation": "one"}, msg_id="A"), wa_message({"conversation": "two"}, msg_id="B")]}
    await sock.emit("messages.upsert", batch)

    assert seen == ["one", "two"]
    await hub.stop()

@pytest.mark.asyncio
async def test_send_to_unknown_channel():
    async def handler(env):
        return None

    hub = ChannelHub(handler, [FakeAdapter()])
    with pytest.raises(ChannelError) as exc:
        await hub.send(OutboundEnvelope(channel_id="telegram", source_id="x", content="hi"))
    assert exc.value.code == "unknown_channel"

@pytest.mark.asyncio
async def test_start_collects_failures_and_stop_reaches_all():
    async def handler(env):
        return None

    good = FakeAdapter()
    bad = FakeAdapter(start_error=ConnectionError("refused"))
    bad.id = "bad"
    hub = ChannelHub(handler, [good, bad])

    failures = await hub.start()
    assert list(failures) == ["bad"]
    assert isinstance(failures["bad"], ConnectionError)
    assert [s.connected for s in hub.statuses()] == [True, False]
    assert [s.provider_id for s in hub.setup_specs()] == ["fake", "fake"]

    await hub.stop()
    assert good.stopped and bad.stopped

def test_duplicate_registration_rejected():
    async def handler(env):
        return None

    hub = ChannelHub(handler, [FakeAdapter()])
    with pytest.raises(ValueError):
        hub.register(FakeAdapter())


# ----------------------------------------------------------------------------
# build_channels
# ----------------------------------------------------------------------------

def test_build_channels_nothing_enabled():
    assert build_channels(Settings(_env_file=None)) == []

def test_build_channels_requires_whatsapp_collaborators():
    with pytest.raises(ValueError):
        build_channels(Settings(_env_file=None, whatsapp_enabled=True))

def test_build_channels_requires_discord_token():
    with pytest.raises(ValueError):
        build_channels(Settings(_env_file=None, discord_enabled=True))

def test_build_channels_creates_enabled_adapters():
    settings = Settings(
        _env_file=None,
        whatsapp_enabled=True,
        whatsapp_reconnect_delay_s=0.5,
        discord_enabled=True,
        discord_token=SecretStr("tok"),
        discord_thread_name_prefix="bot",
    )
    wa, dc = build_channels(
        settings,
        whatsapp_transport=FakeTransport(),
        whatsapp_store=MemoryStore(),
        discord_client_factory=FakeClientFactory(),
    )
    assert isinstance(wa, WhatsAppChannel) and wa.reconnect_delay_s == 0.5
    assert isinstance(dc, DiscordChannel) and dc.token == "tok" and dc.thread_name_prefix == "bot"
