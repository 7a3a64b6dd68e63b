"""Error taxonomy for channel adapters.

Only NotConnectedError and ChannelConnectionError are raised to callers.
The remaining kinds describe recoverable conditions: adapters record their
`code` in last_error and keep running.
"""
from __future__ import annotations

from chanbridge.domain.models import LastError


class ChannelError(Exception):
    """Base exception for channel adapter failures."""

    code: str = "channel_error"

    def __init__(self, message: str | None = None, *, code: str | None = None):
        if code is not None:
            self.code = code
        super().__init__(message or self.code)


class NotConnectedError(ChannelError):
    """send() was called without a live connection."""

    def __init__(self, channel_id: str):
        self.channel_id = channel_id
        super().__init__(f"{channel_id}_not_connected", code=f"{channel_id}_not_connected")


class ChannelConnectionError(ChannelError, ConnectionError):
    """The transport rejected the first connection attempt synchronously."""

    code = "connection_failed"


class SessionInvalidatedError(ChannelError):
    """Session logged out server-side; requires re-pairing."""

    code = LastError.logged_out_repair_required.value


class TransientDisconnectError(ChannelError):
    """Connection dropped; recovered by the reconnect loop."""

    code = LastError.disconnected_reconnecting.value


class CapabilityRejectedError(ChannelError):
    """Requested capability set rejected; recovered by downgrading."""

    code = LastError.disallowed_intents_dm_only_fallback.value


class ThreadRoutingError(ChannelError):
    """Thread creation/reuse failed; delivery falls through to a plain send."""

    code = "thread_create_failed"

    def __init__(self, description: str, *, platform_code: int | None = None):
        self.platform_code = platform_code
        super().__init__(description, code=description)
