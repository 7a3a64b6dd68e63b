from __future__ import annotations
import json
import re
from typing import Any

_WS_RE = re.compile(r"\s+")

def _compact(value: Any) -> str:
    if isinstance(value, str):
        return value
    try:
        return json.dumps(value, default=str, separators=(",", ":"))
    except (TypeError, ValueError):
        return str(value)

def sanitize_inline(value: Any, limit: int = 220) -> str:
    """Flatten a value into a single log-safe line.

    - strips control chars
    - collapses any whitespace run (newlines included) to one space
    - truncates to `limit` characters with a trailing ellipsis
    """
    text = _compact(value)
    text = "".join(ch if ch >= " " or ch.isspace() else "" for ch in text)
    text = _WS_RE.sub(" ", text).strip()
    if len(text) <= limit:
        return text
    return text[: max(limit - 3, 0)] + "..."
