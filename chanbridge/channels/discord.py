"""Discord-style channel adapter built on discord.py.

Handles login with degraded DM-only fallback, inbound normalization with
mention detection, and outbound thread routing with conflict resolution.
"""
from __future__ import annotations

import asyncio
import time
from typing import Any, Callable, Optional

import discord

from chanbridge.channels.base import ChannelAdapter
from chanbridge.channels.discord_threads import (
    THREAD_ALREADY_EXISTS,
    decide_thread_route,
    describe_thread_error,
    error_code,
)
from chanbridge.channels.errors import (
    CapabilityRejectedError,
    ChannelConnectionError,
    NotConnectedError,
    ThreadRoutingError,
)
from chanbridge.core.retry import retry_async
from chanbridge.domain.models import (
    ChannelId,
    ChannelMode,
    ChannelStatusReport,
    DiscordMeta,
    InboundEnvelope,
    LastError,
    OutboundEnvelope,
    ProviderSetupSpec,
    SetupField,
    ThreadDecision,
    now_ms,
    parse_discord_meta,
)
from chanbridge.observability import metrics
from chanbridge.observability.logging import get_logger

ClientFactory = Callable[[discord.Intents], discord.Client]

THREAD_CHANNEL_TYPES = frozenset(
    {discord.ChannelType.public_thread, discord.ChannelType.private_thread, discord.ChannelType.news_thread}
)
DIRECT_CHANNEL_TYPES = frozenset({discord.ChannelType.private, discord.ChannelType.group})
TRANSIENT_ERRORS = (discord.DiscordServerError, asyncio.TimeoutError)

THREAD_FAILURE_PREFIX = "thread_create_failed"


def full_intents() -> discord.Intents:
    intents = discord.Intents.none()
    intents.guilds = True
    intents.guild_messages = True
    intents.message_content = True
    intents.dm_messages = True
    return intents


def dm_only_intents() -> discord.Intents:
    intents = discord.Intents.none()
    intents.dm_messages = True
    return intents


def _default_client_factory(intents: discord.Intents) -> discord.Client:
    return discord.Client(intents=intents)


def _snowflake(value: Any) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _type_name(channel_type: Any) -> Optional[str]:
    if channel_type is None:
        return None
    return getattr(channel_type, "name", str(channel_type))


def is_text_channel(channel: Any) -> bool:
    return isinstance(channel, discord.abc.Messageable)


def mentions_bot(message: discord.Message, bot_id: Optional[int]) -> bool:
    """Structured mention list OR either textual mention encoding."""
    if bot_id is None:
        return False
    if any(getattr(user, "id", None) == bot_id for user in (message.mentions or [])):
        return True
    content = message.content or ""
    return f"<@{bot_id}>" in content or f"<@!{bot_id}>" in content


class DiscordChannel(ChannelAdapter):
    id = ChannelId.discord.value

    def __init__(
        self,
        token: str,
        client_factory: Optional[ClientFactory] = None,
        thread_name_prefix: str = "chanbridge",
        thread_auto_archive_minutes: int = 60,
        fetch_retries: int = 3,
    ):
        super().__init__()
        self.token = token
        self.client_factory = client_factory or _default_client_factory
        self.thread_name_prefix = thread_name_prefix
        self.thread_auto_archive_minutes = thread_auto_archive_minutes
        self.fetch_retries = fetch_retries

        self.degraded_dm_only = False
        self._client: Optional[discord.Client] = None
        self._connect_task: Optional[asyncio.Task] = None
        self._inbound_lock = asyncio.Lock()
        self._log = get_logger("channels", channel=self.id)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        if self.should_run and self.connected:
            return
        await self._close_client()
        self.should_run = True
        self.degraded_dm_only = False
        try:
            await self._login(full_intents(), self._on_message)
        except discord.PrivilegedIntentsRequired as e:
            await self._fallback_dm_only(e)
            return
        except Exception as e:
            await self._fail_login(e)
            raise
        self.connected = True
        self.last_error = None
        self._log.info("connection_open", mode=ChannelMode.native.value)

    async def _fallback_dm_only(self, error: discord.PrivilegedIntentsRequired) -> None:
        self._log.warning("login_degraded", reason=LastError.disallowed_intents_dm_only_fallback.value, error=str(error))
        await self._close_client()
        self.degraded_dm_only = True
        try:
            await self._login(dm_only_intents(), self._on_direct_message)
        except Exception as e:
            await self._fail_login(e)
            raise
        self.connected = True
        self._record_error(CapabilityRejectedError(str(error)))
        self._log.info("connection_open", mode=ChannelMode.dm_only.value, reason=self.last_error)

    async def _fail_login(self, error: BaseException) -> None:
        self.connected = False
        self.should_run = False
        self.last_error = str(error) or type(error).__name__
        self._log.error("login_failed", error=self.last_error, error_type=type(error).__name__)
        await self._close_client()

    async def _login(self, intents: discord.Intents, handler: Callable[[discord.Message], Any]) -> None:
        client = self.client_factory(intents)
        self._client = client

        async def on_message(message: discord.Message) -> None:
            await handler(message)

        client.event(on_message)

        await client.login(self.token)
        task = asyncio.ensure_future(client.connect())
        self._connect_task = task
        ready = asyncio.ensure_future(client.wait_until_ready())
        try:
            done, _ = await asyncio.wait({ready, task}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            if not ready.done():
                ready.cancel()
        if task in done and ready not in done:
            exc = task.exception()
            if exc is not None:
                raise exc
            raise ChannelConnectionError("gateway connection closed before ready")
        task.add_done_callback(self._on_gateway_done)

    def _on_gateway_done(self, task: asyncio.Future) -> None:
        """The gateway connection ended on its own while the adapter should be running."""
        if task.cancelled():
            detail = "cancelled"
        else:
            error = task.exception()
            detail = (str(error) or type(error).__name__) if error is not None else "closed"
        if task is not self._connect_task or not self.should_run:
            return
        self.connected = False
        self.last_error = f"gateway_closed:{detail}"
        self._log.warning("gateway_closed", reason=self.last_error)

    async def stop(self) -> None:
        self.should_run = False
        self.connected = False
        await self._close_client()

    async def _close_client(self) -> None:
        client, self._client = self._client, None
        task, self._connect_task = self._connect_task, None
        if client is not None:
            try:
                await client.close()
            except Exception as e:
                self._log.warning("client_close_failed", error=str(e))
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                self._log.debug("connect_task_ended", error=str(e), error_type=type(e).__name__)

    def get_status(self) -> ChannelStatusReport:
        return ChannelStatusReport(
            channel_id=self.id,
            connected=self.connected,
            last_error=self.last_error,
            mode=ChannelMode.dm_only if self.degraded_dm_only else ChannelMode.native,
        )

    @classmethod
    def get_setup_spec(cls) -> ProviderSetupSpec:
        return ProviderSetupSpec(
            provider_id=cls.id,
            title="Discord Bot",
            summary="Connect a Discord bot token; enable the Message Content intent for guild messages.",
            fields=[
                SetupField(key="CHB_DISCORD_ENABLED", label="Enable channel", required=True, example="true"),
                SetupField(key="CHB_DISCORD_TOKEN", label="Bot token", required=True, secret=True),
                SetupField(key="CHB_DISCORD_THREAD_NAME_PREFIX", label="Thread name prefix", example="chanbridge"),
                SetupField(key="CHB_DISCORD_THREAD_AUTO_ARCHIVE_MINUTES", label="Thread auto-archive (minutes)", example="60"),
            ],
            docs_url="https://discord.com/developers/applications",
        )

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    @property
    def bot_id(self) -> Optional[int]:
        user = self._client.user if self._client is not None else None
        return getattr(user, "id", None)

    async def _on_message(self, message: discord.Message) -> None:
        await self._forward(self.to_envelope(message))

    async def _on_direct_message(self, message: discord.Message) -> None:
        await self._forward(self.to_dm_envelope(message))

    async def _forward(self, envelope: Optional[InboundEnvelope]) -> None:
        if envelope is None or self._inbound_handler is None:
            return
        async with self._inbound_lock:
            if not self.should_run:
                return
            self._log.info(
                "inbound",
                source_id=envelope.source_id,
                sender_id=envelope.sender_id,
                is_group=envelope.is_group,
                thread_id=envelope.thread_id or "none",
                mentioned_bot=envelope.raw.get("mentioned_bot", False),
                content=envelope.content,
            )
            metrics.inbound_envelopes.labels(channel=self.id).inc()
            await self._inbound_handler(envelope)

    def _accepts(self, message: discord.Message) -> bool:
        if getattr(message.author, "bot", False):
            return False
        if self.degraded_dm_only and message.guild is not None:
            return False
        return bool((message.content or "").strip())

    def to_envelope(self, message: discord.Message) -> Optional[InboundEnvelope]:
        """Normalize a full-capability message, or None when it does not qualify."""
        if not self._accepts(message):
            return None
        channel = message.channel
        channel_type = getattr(channel, "type", None)
        in_thread = channel_type in THREAD_CHANNEL_TYPES
        parent_id = getattr(channel, "parent_id", None) if in_thread else None
        source_id = str(parent_id if parent_id is not None else channel.id)
        mentioned = mentions_bot(message, self.bot_id)
        meta = DiscordMeta(
            message_id=str(message.id),
            guild_id=str(message.guild.id) if message.guild is not None else None,
            channel_type=_type_name(channel_type),
            mentioned_bot=mentioned,
        )
        return InboundEnvelope(
            channel_id=self.id,
            source_id=source_id,
            sender_id=str(message.author.id),
            sender_name=self._display_name(message.author),
            content=message.content,
            timestamp=self._timestamp(message),
            is_group=channel_type not in DIRECT_CHANNEL_TYPES,
            thread_id=str(channel.id) if in_thread else None,
            raw=meta.model_dump(),
        )

    def to_dm_envelope(self, message: discord.Message) -> Optional[InboundEnvelope]:
        """Normalize a direct message in DM-only mode; guild context is never accepted."""
        if message.guild is not None or not self._accepts(message):
            return None
        meta = DiscordMeta(
            message_id=str(message.id),
            channel_type=_type_name(getattr(message.channel, "type", None)),
        )
        return InboundEnvelope(
            channel_id=self.id,
            source_id=str(message.channel.id),
            sender_id=str(message.author.id),
            sender_name=self._display_name(message.author),
            content=message.content,
            timestamp=self._timestamp(message),
            is_group=False,
            raw=meta.model_dump(),
        )

    @staticmethod
    def _display_name(author: Any) -> str:
        return getattr(author, "global_name", None) or getattr(author, "name", None) or str(author.id)

    @staticmethod
    def _timestamp(message: discord.Message) -> int:
        created = getattr(message, "created_at", None)
        if created is None:
            return now_ms()
        return int(created.timestamp() * 1000)

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    async def send(self, envelope: OutboundEnvelope) -> None:
        client = self._client
        if client is None or not self.connected:
            raise NotConnectedError(self.id)

        meta = parse_discord_meta(envelope.raw)
        reply_to = meta.message_id
        decision = decide_thread_route(bool(envelope.thread_id), meta.mentioned_bot, bool(reply_to))
        metrics.thread_decisions.labels(decision=decision.value).inc()
        self._log.info(
            "thread_decision",
            channel_id=envelope.source_id,
            thread_id=envelope.thread_id or "none",
            reply_to_message_id=reply_to or "none",
            mentioned_bot=meta.mentioned_bot,
            decision=decision.value,
        )

        if decision is ThreadDecision.create_thread and reply_to is not None:
            if await self._send_in_new_thread(client, envelope, reply_to):
                return
        await self._send_direct(client, envelope, reply_to)

    async def _fetch_channel(self, client: discord.Client, channel_id: str) -> Any:
        snowflake = _snowflake(channel_id)
        if snowflake is None:
            return None
        channel = client.get_channel(snowflake)
        if channel is not None:
            return channel
        try:
            return await retry_async(
                client.fetch_channel,
                snowflake,
                max_attempts=self.fetch_retries,
                retryable_exceptions=TRANSIENT_ERRORS,
            )
        except (discord.NotFound, discord.Forbidden, discord.InvalidData):
            return None

    async def _fetch_message(self, channel: Any, message_id: str) -> Any:
        snowflake = _snowflake(message_id)
        fetch = getattr(channel, "fetch_message", None)
        if snowflake is None or fetch is None:
            return None
        try:
            return await retry_async(
                fetch,
                snowflake,
                max_attempts=self.fetch_retries,
                retryable_exceptions=TRANSIENT_ERRORS,
            )
        except discord.HTTPException:
            return None

    async def _send_in_new_thread(self, client: discord.Client, envelope: OutboundEnvelope, reply_to: str) -> bool:
        parent = await self._fetch_channel(client, envelope.source_id)
        if parent is None or not is_text_channel(parent):
            self._log.info("thread_skipped", channel_id=envelope.source_id, reason="parent_channel_not_text")
            return False
        parent_message = await self._fetch_message(parent, reply_to)
        if parent_message is None or not callable(getattr(parent_message, "create_thread", None)):
            self._log.info(
                "thread_skipped",
                channel_id=envelope.source_id,
                reason="parent_message_not_found_or_not_threadable",
            )
            return False

        try:
            thread = await parent_message.create_thread(
                name=f"{self.thread_name_prefix}-{int(time.time() * 1000)}",
                auto_archive_duration=self.thread_auto_archive_minutes,
            )
            await thread.send(envelope.content)
        except discord.HTTPException as e:
            code = error_code(e)
            if code == THREAD_ALREADY_EXISTS and await self._send_in_existing_thread(parent, envelope, reply_to):
                return True
            self._record_thread_failure(envelope.source_id, reply_to, code, getattr(e, "text", None) or str(e))
            return False
        except Exception as e:
            # e.g. ValueError from discord.py when the message has no guild
            self._record_thread_failure(envelope.source_id, reply_to, None, str(e) or type(e).__name__)
            return False

        metrics.outbound_sends.labels(channel=self.id, method="thread_created").inc()
        self._log.info("thread_created", channel_id=envelope.source_id, message_id=reply_to)
        return True

    async def _send_in_existing_thread(self, parent: Any, envelope: OutboundEnvelope, reply_to: str) -> bool:
        """Reuse a thread another actor created first: local cache, then the active listing."""
        thread_id = _snowflake(reply_to)
        thread, source = None, None
        get_thread = getattr(parent, "get_thread", None)
        if callable(get_thread):
            thread = get_thread(thread_id)
            source = "cache"
        if thread is None:
            guild = getattr(parent, "guild", None)
            active = []
            if guild is not None:
                try:
                    active = await guild.active_threads()
                except discord.HTTPException as e:
                    self._log.warning("active_threads_failed", channel_id=envelope.source_id, error=str(e))
            thread = next((t for t in active if getattr(t, "id", None) == thread_id), None)
            source = "active"
        if thread is None:
            return False

        try:
            await thread.send(envelope.content)
        except discord.HTTPException as e:
            self._record_thread_failure(envelope.source_id, reply_to, error_code(e), getattr(e, "text", None) or str(e))
            return False
        metrics.outbound_sends.labels(channel=self.id, method="thread_reused").inc()
        self._log.info("thread_reused", source=source, channel_id=envelope.source_id, message_id=reply_to)
        return True

    def _record_thread_failure(self, channel_id: str, message_id: str, code: Optional[int], text: str) -> None:
        self._record_error(ThreadRoutingError(
            describe_thread_error(THREAD_FAILURE_PREFIX, channel_id, message_id, code, text),
            platform_code=code,
        ))
        metrics.thread_failures.labels(code=str(code) if code is not None else "na").inc()
        self._log.info("thread_create_failed", channel_id=channel_id, message_id=message_id, reason=self.last_error)

    async def _send_direct(self, client: discord.Client, envelope: OutboundEnvelope, reply_to: Optional[str]) -> None:
        if envelope.thread_id and envelope.thread_id != envelope.source_id:
            target_id = envelope.thread_id
        else:
            target_id = envelope.source_id
        channel = await self._fetch_channel(client, target_id)
        if channel is None or not is_text_channel(channel):
            # TODO: surface undeliverable targets to the caller once the host defines a delivery receipt.
            self._log.info("send_dropped", channel_id=target_id, reason="target_not_text")
            return

        reply_snowflake = _snowflake(reply_to)
        if reply_snowflake is not None and target_id == envelope.source_id:
            reference = discord.MessageReference(
                message_id=reply_snowflake,
                channel_id=int(target_id),
                fail_if_not_exists=False,
            )
            await channel.send(envelope.content, reference=reference)
            metrics.outbound_sends.labels(channel=self.id, method="reply").inc()
            self._log.info("reply_in_channel", channel_id=target_id, message_id=reply_to)
            return

        await channel.send(envelope.content)
        metrics.outbound_sends.labels(channel=self.id, method="plain").inc()
        self._log.info("send", channel_id=target_id, thread_id=envelope.thread_id or "none")
