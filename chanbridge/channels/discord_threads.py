"""Pure thread-routing helpers for the Discord adapter.

Nothing in this module performs I/O; the adapter feeds it booleans and
platform error codes and acts on the result.
"""
from __future__ import annotations

from typing import Optional

from chanbridge.domain.models import ThreadDecision

# Discord JSON error codes seen when starting a thread from a message.
THREAD_ALREADY_EXISTS = 160004
THREAD_LOCKED = 160005
THREAD_MAX_ACTIVE = 160006
THREAD_MAX_ACTIVE_ANNOUNCEMENT = 160007
THREAD_ARCHIVED_INVALID_ACTION = 50083
MISSING_PERMISSIONS = 50013

_THREAD_ERROR_REASONS: dict[int, str] = {
    MISSING_PERMISSIONS: "missing_permissions",
    THREAD_LOCKED: "thread_locked",
    THREAD_MAX_ACTIVE: "thread_limit_reached",
    THREAD_MAX_ACTIVE_ANNOUNCEMENT: "thread_limit_reached",
    THREAD_ARCHIVED_INVALID_ACTION: "archived_thread_action",
}


def decide_thread_route(has_thread_id: bool, mentioned_bot: bool, has_reply_context: bool) -> ThreadDecision:
    """First match wins: known thread, then mention, then reply anchor."""
    if has_thread_id:
        return ThreadDecision.thread_present
    if not mentioned_bot:
        return ThreadDecision.not_mentioned
    if not has_reply_context:
        return ThreadDecision.missing_reply_context
    return ThreadDecision.create_thread


def thread_error_reason(code: Optional[int]) -> Optional[str]:
    if code is None:
        return None
    return _THREAD_ERROR_REASONS.get(code)


def describe_thread_error(
    prefix: str,
    channel_id: str,
    message_id: str,
    code: Optional[int],
    message: str,
) -> str:
    reason = thread_error_reason(code)
    if reason is not None:
        return f"{prefix}:code={code}:{reason} channel={channel_id} message={message_id}"
    shown = code if code is not None else "na"
    return f"{prefix}:code={shown}:{message} channel={channel_id} message={message_id}"


def error_code(error: BaseException) -> Optional[int]:
    """Platform error code carried by an exception, if any."""
    code = getattr(error, "code", None)
    if isinstance(code, bool):
        return None
    if isinstance(code, int):
        return code
    if isinstance(code, str) and code.isdigit():
        return int(code)
    return None
