"""Domain models shared by every channel adapter and the host."""
from __future__ import annotations

import time
from enum import Enum
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator


# ============================================================================
# Enums
# ============================================================================


class ChannelId(str, Enum):
    """Supported channel tags."""

    whatsapp = "whatsapp"
    discord = "discord"


class ConnectionState(str, Enum):
    """Connection state of a single adapter instance."""

    disconnected = "disconnected"
    connecting = "connecting"
    qr_required = "qr_required"
    connected = "connected"


class ChannelMode(str, Enum):
    """Operating mode reported by get_status()."""

    native = "native"
    dm_only = "dm_only"


class LastError(str, Enum):
    """Error codes recorded in an adapter's last_error."""

    qr_scan_required = "qr_scan_required"
    logged_out_repair_required = "logged_out_repair_required"
    disconnected_reconnecting = "disconnected_reconnecting"
    disallowed_intents_dm_only_fallback = "disallowed_intents_dm_only_fallback"


class ThreadDecision(str, Enum):
    """Outcome of the outbound thread-routing decision."""

    thread_present = "thread_present"
    not_mentioned = "not_mentioned"
    missing_reply_context = "missing_reply_context"
    create_thread = "create_thread"


def now_ms() -> int:
    return int(time.time() * 1000)


# ============================================================================
# Routing metadata (serialized into Envelope.raw)
# ============================================================================


class WhatsAppMeta(BaseModel):
    """Routing context captured from a WhatsApp-style message."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["whatsapp"] = "whatsapp"
    remote_jid: str
    message_id: Optional[str] = None


class DiscordMeta(BaseModel):
    """Routing context captured from a Discord-style message."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["discord"] = "discord"
    message_id: Optional[str] = None
    guild_id: Optional[str] = None
    channel_type: Optional[str] = None
    mentioned_bot: bool = False


def parse_discord_meta(raw: Any) -> DiscordMeta:
    """Read Discord routing context from an envelope's raw bag.

    Anything unparseable means "no reply context, not mentioned".
    """
    if not isinstance(raw, dict):
        return DiscordMeta()
    data = dict(raw)
    data["kind"] = "discord"
    # Only strings are valid message references; a stray int or bool is ignored.
    if not isinstance(data.get("message_id"), str):
        data.pop("message_id", None)
    if data.get("mentioned_bot") is not True:
        data["mentioned_bot"] = False
    try:
        return DiscordMeta.model_validate(data)
    except ValidationError:
        return DiscordMeta()


# ============================================================================
# Envelopes
# ============================================================================


class InboundEnvelope(BaseModel):
    """Normalized inbound message, produced by an adapter and consumed once by the host."""

    model_config = ConfigDict(frozen=True)

    channel_id: str = Field(description="Adapter that produced the envelope")
    source_id: str = Field(description="Conversation/channel the message arrived on")
    sender_id: str = Field(description="Author identifier")
    sender_name: str = Field(default="", description="Display name; falls back to sender_id")
    content: str = Field(description="Plain-text body, never blank")
    timestamp: int = Field(default_factory=now_ms, description="Milliseconds since epoch")
    is_group: bool = Field(default=False)
    thread_id: Optional[str] = Field(default=None, description="Sub-thread id, when the message came from one")
    raw: dict[str, Any] = Field(default_factory=dict, description="JSON-safe routing metadata")
    correlation_id: Optional[str] = None

    @field_validator("content")
    @classmethod
    def _content_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("content must not be empty or whitespace-only")
        return v

    @model_validator(mode="before")
    @classmethod
    def _default_sender_name(cls, data: Any) -> Any:
        if isinstance(data, dict):
            name = data.get("sender_name")
            if not isinstance(name, str) or not name.strip():
                data = {**data, "sender_name": data.get("sender_id", "")}
        return data


class OutboundEnvelope(BaseModel):
    """Host-constructed reply, consumed by exactly one adapter's send()."""

    channel_id: Optional[str] = Field(default=None, description="Target adapter, used by ChannelHub routing")
    source_id: str
    content: str
    thread_id: Optional[str] = None
    raw: Optional[dict[str, Any]] = Field(default=None, description="Echo of the inbound raw bag")
    correlation_id: Optional[str] = None

    @classmethod
    def reply_to(cls, inbound: InboundEnvelope, content: str) -> "OutboundEnvelope":
        return cls(
            channel_id=inbound.channel_id,
            source_id=inbound.source_id,
            content=content,
            thread_id=inbound.thread_id,
            raw=dict(inbound.raw),
            correlation_id=inbound.correlation_id,
        )


# ============================================================================
# Status / setup reporting
# ============================================================================


class ChannelStatusReport(BaseModel):
    """In-memory status snapshot returned by get_status()."""

    channel_id: str
    enabled: bool = True
    connected: bool = False
    last_error: Optional[str] = None
    mode: ChannelMode = ChannelMode.native
    qr_challenge: Optional[str] = None


class SetupField(BaseModel):
    key: str
    label: str
    required: bool = False
    secret: bool = False
    example: Optional[str] = None


class ProviderSetupSpec(BaseModel):
    """Static description of the configuration a channel needs."""

    provider_id: str
    title: str
    summary: str
    fields: list[SetupField] = Field(default_factory=list)
    docs_url: Optional[str] = None
