"""Fakes for the platform collaborators. Nothing here touches the network."""
from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from types import SimpleNamespace
from typing import Any

import discord
import pytest

BOT_ID = 999


# ----------------------------------------------------------------------------
# WhatsApp-style collaborators
# ----------------------------------------------------------------------------


class FakeSocket:
    def __init__(self):
        self.handlers: dict[str, Any] = {}
        self.sent: list[tuple[str, str]] = []
        self.closed = False
        self.send_error: Exception | None = None

    def on(self, event, callback):
        self.handlers[event] = callback

    async def emit(self, event, payload):
        await self.handlers[event](payload)

    async def send_text(self, jid, text):
        if self.send_error is not None:
            raise self.send_error
        self.sent.append((jid, text))

    async def close(self):
        self.closed = True


class FakeTransport:
    def __init__(self, fail: Exception | None = None):
        self.fail = fail
        self.sockets: list[FakeSocket] = []
        self.connect_calls: list[tuple[Any, Any]] = []

    async def latest_version(self):
        return (2, 3000, 1015901307)

    async def connect(self, state, version):
        self.connect_calls.append((state, version))
        if self.fail is not None:
            raise self.fail
        sock = FakeSocket()
        self.sockets.append(sock)
        return sock


class MemoryStore:
    def __init__(self, initial: Any = None):
        self.data: dict[str, Any] = {}
        self.initial = initial
        self.saves: list[tuple[str, Any]] = []

    async def load(self, key):
        return self.data.get(key, self.initial)

    async def save(self, key, state):
        self.saves.append((key, state))
        self.data[key] = state


def wa_message(text_field: dict | None, jid="15551234567@s.whatsapp.net", *, from_me=False, participant=None, msg_id="M1", **extra):
    key = {"remoteJid": jid, "fromMe": from_me, "id": msg_id}
    if participant:
        key["participant"] = participant
    return {"key": key, "message": text_field, **extra}


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def store():
    return MemoryStore(initial={"creds": "seed"})


# ----------------------------------------------------------------------------
# Discord-style collaborators
# ----------------------------------------------------------------------------


def http_error(cls=discord.HTTPException, code: int = 0, message: str = "error", status: int = 400):
    response = SimpleNamespace(status=status, reason="Bad Request")
    return cls(response, {"code": code, "message": message})


class FakeClient:
    def __init__(self, intents, *, connect_error=None, login_error=None):
        self.intents = intents
        self.connect_error = connect_error
        self.login_error = login_error
        self.events: dict[str, Any] = {}
        self.user = SimpleNamespace(id=BOT_ID)
        self.channels: dict[int, Any] = {}
        self.closed = False
        self.token = None
        self._ready = asyncio.Event()
        self._dropped = asyncio.Event()
        self.gateway_error = None

    def event(self, coro):
        self.events[coro.__name__] = coro
        return coro

    async def login(self, token):
        self.token = token
        if self.login_error is not None:
            raise self.login_error

    async def connect(self, *, reconnect=True):
        if self.connect_error is not None:
            raise self.connect_error
        self._ready.set()
        await self._dropped.wait()
        if self.gateway_error is not None:
            raise self.gateway_error

    def drop(self, error=None):
        """End the gateway connection after it was ready."""
        self.gateway_error = error
        self._dropped.set()

    async def wait_until_ready(self):
        await self._ready.wait()

    async def close(self):
        self.closed = True

    def get_channel(self, channel_id):
        return self.channels.get(channel_id)

    async def fetch_channel(self, channel_id):
        raise http_error(discord.NotFound, code=10003, message="Unknown Channel", status=404)


class FakeClientFactory:
    """Hands out FakeClients; the n-th client gets the n-th queued connect error."""

    def __init__(self, *connect_errors, login_error=None):
        self.connect_errors = list(connect_errors)
        self.login_error = login_error
        self.clients: list[FakeClient] = []

    def __call__(self, intents):
        err = self.connect_errors.pop(0) if self.connect_errors else None
        client = FakeClient(intents, connect_error=err, login_error=self.login_error)
        self.clients.append(client)
        return client

    @property
    def current(self) -> FakeClient:
        return self.clients[-1]


class FakeThread(discord.abc.Messageable):
    def __init__(self, thread_id):
        self.id = thread_id
        self.type = discord.ChannelType.public_thread
        self.sent: list[tuple[Any, dict]] = []
        self.send_error = None

    async def _get_channel(self):
        return self

    async def send(self, content=None, **kwargs):
        if self.send_error is not None:
            raise self.send_error
        self.sent.append((content, kwargs))


class FakeTextChannel(discord.abc.Messageable):
    def __init__(self, channel_id, *, guild=None, messages=None, threads=None):
        self.id = channel_id
        self.guild = guild
        self.type = discord.ChannelType.text
        self.sent: list[tuple[Any, dict]] = []
        self._messages = messages or {}
        self._threads = threads or {}

    async def _get_channel(self):
        return self

    async def send(self, content=None, **kwargs):
        self.sent.append((content, kwargs))

    async def fetch_message(self, message_id):
        if message_id in self._messages:
            return self._messages[message_id]
        raise http_error(discord.NotFound, code=10008, message="Unknown Message", status=404)

    def get_thread(self, thread_id):
        return self._threads.get(thread_id)


class FakeForumChannel:
    """Not Messageable; records a send the adapter should never make."""

    def __init__(self, channel_id):
        self.id = channel_id
        self.type = discord.ChannelType.forum
        self.sent: list[tuple[Any, dict]] = []

    async def send(self, content=None, **kwargs):
        self.sent.append((content, kwargs))


class FakeGuild:
    def __init__(self, guild_id=1, active=None):
        self.id = guild_id
        self.active = active or []

    async def active_threads(self):
        return list(self.active)


class FakeParentMessage:
    def __init__(self, message_id, *, thread=None, error=None):
        self.id = message_id
        self.thread = thread or FakeThread(message_id)
        self.error = error
        self.thread_calls: list[dict] = []

    async def create_thread(self, *, name, auto_archive_duration):
        self.thread_calls.append({"name": name, "auto_archive_duration": auto_archive_duration})
        if self.error is not None:
            raise self.error
        return self.thread


def discord_message(
    content="hello",
    *,
    message_id=555,
    author_id=42,
    bot=False,
    channel_id=100,
    channel_type=discord.ChannelType.text,
    parent_id=None,
    guild_id: int | None = 1,
    mentions=(),
    global_name=None,
    name="alice",
):
    return SimpleNamespace(
        id=message_id,
        content=content,
        author=SimpleNamespace(id=author_id, bot=bot, global_name=global_name, name=name),
        channel=SimpleNamespace(id=channel_id, type=channel_type, parent_id=parent_id),
        guild=SimpleNamespace(id=guild_id) if guild_id is not None else None,
        mentions=list(mentions),
        created_at=datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc),
    )


class Recorder:
    """Inbound handler that records every envelope it receives."""

    def __init__(self):
        self.envelopes = []

    async def __call__(self, envelope):
        self.envelopes.append(envelope)
