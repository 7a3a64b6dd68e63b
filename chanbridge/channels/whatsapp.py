"""WhatsApp-style channel adapter (multi-device protocol, QR pairing).

The socket library, the credential store and version discovery are external
collaborators described by the Protocols below. The adapter owns the
connection state machine, the reconnect timer and inbound normalization.
"""
from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Mapping, Optional, Protocol, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from chanbridge.channels.base import ChannelAdapter
from chanbridge.channels.errors import (
    ChannelConnectionError,
    NotConnectedError,
    SessionInvalidatedError,
    TransientDisconnectError,
)
from chanbridge.domain.models import (
    ChannelId,
    ChannelMode,
    ChannelStatusReport,
    ConnectionState,
    InboundEnvelope,
    LastError,
    OutboundEnvelope,
    ProviderSetupSpec,
    SetupField,
    WhatsAppMeta,
    now_ms,
)
from chanbridge.observability import metrics
from chanbridge.observability.logging import get_logger

# DisconnectReason.loggedOut on the multi-device protocol.
LOGGED_OUT_STATUS = 401
GROUP_JID_SUFFIX = "@g.us"

EVENT_CREDS_UPDATE = "creds.update"
EVENT_CONNECTION_UPDATE = "connection.update"
EVENT_MESSAGES_UPSERT = "messages.upsert"

EventCallback = Callable[[Any], Awaitable[None]]


class CredentialStore(Protocol):
    async def load(self, key: str) -> Any: ...

    async def save(self, key: str, state: Any) -> None: ...


class WhatsAppSocket(Protocol):
    """Live connection. Callbacks registered with on() are awaited in emit order."""

    def on(self, event: str, callback: EventCallback) -> None: ...

    async def send_text(self, jid: str, text: str) -> None: ...

    async def close(self) -> None: ...


class WhatsAppTransport(Protocol):
    async def latest_version(self) -> Any: ...

    async def connect(self, state: Any, version: Any) -> WhatsAppSocket: ...


class WAMessageKey(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    remote_jid: Optional[str] = Field(default=None, alias="remoteJid")
    from_me: Optional[bool] = Field(default=False, alias="fromMe")
    participant: Optional[str] = None
    id: Optional[str] = None


class WAMessage(BaseModel):
    """The subset of a multi-device message the adapter reads."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    key: WAMessageKey = Field(default_factory=WAMessageKey)
    message: Optional[dict[str, Any]] = None
    push_name: Optional[str] = Field(default=None, alias="pushName")
    message_timestamp: Optional[Union[int, float, str]] = Field(default=None, alias="messageTimestamp")


def extract_text(payload: Optional[Mapping[str, Any]]) -> str:
    """Return the first non-empty text field of a message payload.

    Priority: conversation, extendedTextMessage.text, imageMessage.caption,
    videoMessage.caption. Empty string when none carries text.
    """
    if not payload:
        return ""
    candidates = (
        payload.get("conversation"),
        (payload.get("extendedTextMessage") or {}).get("text"),
        (payload.get("imageMessage") or {}).get("caption"),
        (payload.get("videoMessage") or {}).get("caption"),
    )
    for value in candidates:
        if isinstance(value, str) and value:
            return value
    return ""


def _timestamp_ms(value: Union[int, float, str, None]) -> int:
    if value is None:
        return now_ms()
    try:
        return int(float(value)) * 1000
    except (TypeError, ValueError):
        return now_ms()


class WhatsAppChannel(ChannelAdapter):
    id = ChannelId.whatsapp.value

    def __init__(
        self,
        transport: WhatsAppTransport,
        store: CredentialStore,
        auth_key: str = "./data/credentials/whatsapp",
        print_qr: bool = True,
        qr_sink: Optional[Callable[[str], None]] = None,
        reconnect_delay_s: float = 2.0,
    ):
        super().__init__()
        self.transport = transport
        self.store = store
        self.auth_key = auth_key
        self.print_qr = print_qr
        self.qr_sink = qr_sink
        self.reconnect_delay_s = reconnect_delay_s

        self.state = ConnectionState.disconnected
        self.qr_challenge: Optional[str] = None
        self._socket: Optional[WhatsAppSocket] = None
        self._reconnect_timer: Optional[asyncio.TimerHandle] = None
        self._background: set[asyncio.Task] = set()
        self._connecting = False
        self._log = get_logger("channels", channel=self.id)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        if self.should_run and (self._socket is not None or self._connecting):
            return
        self.should_run = True
        try:
            await self._connect()
        except Exception as e:
            self.should_run = False
            self.last_error = f"connect_failed:{e}"
            self._set_state(ConnectionState.disconnected)
            self._log.error("connect_failed", error=str(e), error_type=type(e).__name__)
            raise ChannelConnectionError(str(e)) from e

    async def stop(self) -> None:
        self.should_run = False
        self._cancel_reconnect()
        self.connected = False
        socket, self._socket = self._socket, None
        if socket is not None:
            await self._close_socket(socket)
        self._set_state(ConnectionState.disconnected)

    async def _close_socket(self, socket: WhatsAppSocket) -> None:
        try:
            await socket.close()
        except Exception as e:
            self._log.warning("socket_close_failed", error=str(e))

    async def send(self, envelope: OutboundEnvelope) -> None:
        socket = self._socket
        if socket is None:
            raise NotConnectedError(self.id)
        await socket.send_text(envelope.source_id, envelope.content)
        metrics.outbound_sends.labels(channel=self.id, method="text").inc()
        self._log.info("send", source_id=envelope.source_id)

    def get_status(self) -> ChannelStatusReport:
        return ChannelStatusReport(
            channel_id=self.id,
            connected=self.connected,
            last_error=self.last_error,
            mode=ChannelMode.native,
            qr_challenge=self.qr_challenge,
        )

    @classmethod
    def get_setup_spec(cls) -> ProviderSetupSpec:
        return ProviderSetupSpec(
            provider_id=cls.id,
            title="WhatsApp (multi-device QR pairing)",
            summary="Pair by scanning the QR challenge; session credentials persist in the credential store.",
            fields=[
                SetupField(key="CHB_WHATSAPP_ENABLED", label="Enable channel", required=True, example="true"),
                SetupField(key="CHB_WHATSAPP_AUTH_DIR", label="Credential store key", example="./data/credentials/whatsapp"),
                SetupField(key="CHB_WHATSAPP_PRINT_QR", label="Forward QR challenge to the sink", example="true"),
                SetupField(key="CHB_WHATSAPP_RECONNECT_DELAY_S", label="Reconnect delay (seconds)", example="2.0"),
            ],
        )

    # ------------------------------------------------------------------
    # Connection
    # ------------------------------------------------------------------

    async def _connect(self) -> None:
        if self._connecting:
            return
        self._connecting = True
        self._set_state(ConnectionState.connecting)
        try:
            state = await self.store.load(self.auth_key)
            version = await self.transport.latest_version()
            socket = await self.transport.connect(state, version)
        finally:
            self._connecting = False

        if not self.should_run:
            # stop() ran while the attempt was in flight.
            await socket.close()
            return

        self._socket = socket
        socket.on(EVENT_CREDS_UPDATE, lambda creds: self._on_creds_update(socket, creds))
        socket.on(EVENT_CONNECTION_UPDATE, lambda update: self._on_connection_update(socket, update))
        socket.on(EVENT_MESSAGES_UPSERT, lambda batch: self._on_messages_upsert(socket, batch))
        self._log.info("connection_dispatched", version=str(version))

    async def _on_creds_update(self, socket: WhatsAppSocket, creds: Any) -> None:
        if socket is not self._socket:
            return
        self._spawn(self._save_creds(creds))

    async def _save_creds(self, creds: Any) -> None:
        try:
            await self.store.save(self.auth_key, creds)
        except Exception as e:
            self._log.warning("creds_save_failed", error=str(e), error_type=type(e).__name__)
            return
        self._log.debug("creds_saved")

    async def _on_connection_update(self, socket: WhatsAppSocket, update: Mapping[str, Any]) -> None:
        if socket is not self._socket:
            return
        self.handle_connection_update(update)

    def handle_connection_update(self, update: Mapping[str, Any]) -> ConnectionState:
        """Apply one connection.update event and return the resulting state."""
        qr = update.get("qr")
        if qr:
            self._enter_qr_required(str(qr))
        connection = update.get("connection")
        if connection == "open":
            self._enter_connected()
        elif connection == "close":
            self._enter_disconnected(update.get("status_code"))
        return self.state

    def _enter_qr_required(self, challenge: str) -> None:
        self.qr_challenge = challenge
        self.last_error = LastError.qr_scan_required.value
        self._set_state(ConnectionState.qr_required)
        self._log.info("qr_required", reason=self.last_error)
        if self.print_qr and self.qr_sink is not None:
            self.qr_sink(challenge)

    def _enter_connected(self) -> None:
        self.connected = True
        self.last_error = None
        self.qr_challenge = None
        self._set_state(ConnectionState.connected)
        self._log.info("connection_open")

    def _enter_disconnected(self, status_code: Any) -> None:
        self.connected = False
        self._set_state(ConnectionState.disconnected)
        if status_code == LOGGED_OUT_STATUS:
            self._record_error(SessionInvalidatedError())
            self._cancel_reconnect()
            # Terminal: a later start() re-pairs with a fresh socket.
            self.should_run = False
            socket, self._socket = self._socket, None
            if socket is not None:
                self._spawn(self._close_socket(socket))
            self._log.info("connection_closed", reason=self.last_error, status_code=status_code)
            return
        if not self.should_run:
            self._log.info("connection_closed", status_code=status_code)
            return
        self._record_error(TransientDisconnectError())
        self._log.info("connection_closed", reason=self.last_error, status_code=status_code)
        self._schedule_reconnect()

    # ------------------------------------------------------------------
    # Reconnect timer: at most one pending at any time
    # ------------------------------------------------------------------

    def _schedule_reconnect(self) -> None:
        self._cancel_reconnect()
        loop = asyncio.get_running_loop()
        self._reconnect_timer = loop.call_later(self.reconnect_delay_s, self._fire_reconnect)
        metrics.reconnects_scheduled.labels(channel=self.id).inc()
        self._log.info("reconnect_scheduled", delay_s=self.reconnect_delay_s)

    def _cancel_reconnect(self) -> None:
        if self._reconnect_timer is not None:
            self._reconnect_timer.cancel()
            self._reconnect_timer = None

    def _fire_reconnect(self) -> None:
        self._reconnect_timer = None
        if not self.should_run:
            return
        self._spawn(self._reconnect())

    async def _reconnect(self) -> None:
        if not self.should_run:
            return
        try:
            await self._connect()
        except Exception as e:
            self._record_error(TransientDisconnectError(str(e)))
            self._set_state(ConnectionState.disconnected)
            self._log.warning("reconnect_failed", error=str(e), error_type=type(e).__name__)
            if self.should_run:
                self._schedule_reconnect()

    def _spawn(self, coro: Awaitable[None]) -> None:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    def _set_state(self, state: ConnectionState) -> None:
        if state is self.state:
            return
        self.state = state
        metrics.connection_transitions.labels(channel=self.id, state=state.value).inc()
        metrics.channel_connected.labels(channel=self.id).set(1 if state is ConnectionState.connected else 0)

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    async def _on_messages_upsert(self, socket: WhatsAppSocket, batch: Any) -> None:
        if socket is not self._socket:
            return
        messages = batch.get("messages", []) if isinstance(batch, Mapping) else batch
        await self.handle_messages(messages or [])

    async def handle_messages(self, messages: list[Any]) -> int:
        """Normalize a batch in order and forward qualifying envelopes. Returns the count forwarded."""
        if self._inbound_handler is None:
            return 0
        forwarded = 0
        for item in messages:
            envelope = self.to_envelope(item)
            if envelope is None:
                continue
            if not self.should_run:
                break
            self._log.info(
                "inbound",
                source_id=envelope.source_id,
                sender_id=envelope.sender_id,
                is_group=envelope.is_group,
                content=envelope.content,
            )
            metrics.inbound_envelopes.labels(channel=self.id).inc()
            await self._inbound_handler(envelope)
            forwarded += 1
        return forwarded

    def to_envelope(self, item: Any) -> Optional[InboundEnvelope]:
        try:
            msg = WAMessage.model_validate(item)
        except ValidationError:
            metrics.inbound_skipped.labels(channel=self.id, reason="malformed").inc()
            return None
        if msg.key.from_me:
            metrics.inbound_skipped.labels(channel=self.id, reason="from_me").inc()
            return None
        content = extract_text(msg.message).strip()
        if not content:
            metrics.inbound_skipped.labels(channel=self.id, reason="no_text").inc()
            return None

        source_id = msg.key.remote_jid or "unknown"
        sender_id = msg.key.participant or source_id
        meta = WhatsAppMeta(remote_jid=source_id, message_id=msg.key.id)
        return InboundEnvelope(
            channel_id=self.id,
            source_id=source_id,
            sender_id=sender_id,
            sender_name=msg.push_name or sender_id,
            content=content,
            timestamp=_timestamp_ms(msg.message_timestamp),
            is_group=source_id.endswith(GROUP_JID_SUFFIX),
            raw=meta.model_dump(),
        )
