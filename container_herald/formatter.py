"""
Container Herald — Formatter
═══════════════════════════════════════════════════
Turns a Workload into the message shown in its Discord channel.

Pure functions only: no I/O, no shared state, never raises on bad log
bytes. Log text is tail-truncated so the newest output always survives.
"""

import re
import unicodedata
from datetime import datetime, timezone
from typing import Iterable, Optional

from . import __version__
from .models import Embed, LogChunk, MessagePayload, Workload

PACKAGE_NAME = "container-herald"
EMBED_COLOR = 0x3772FF

DEFAULT_EMBED_LOG_LIMIT = 3900
DEFAULT_TEXT_LOG_LIMIT = 1800

# Display clipping for the free-text fields around the log block
IMAGE_DISPLAY_LIMIT = 60
COMMAND_DISPLAY_LIMIT = 80
NAME_DISPLAY_LIMIT = 80

CHANNEL_NAME_LIMIT = 100

# Discord caps
EMBED_DESCRIPTION_MAX = 4096
CONTENT_MAX = 2000

# Largest log limits that keep a fully clipped payload under the caps
EMBED_LOG_LIMIT_MAX = EMBED_DESCRIPTION_MAX - (
    len("Image ``\nRunning ``:\n``````") + IMAGE_DISPLAY_LIMIT + COMMAND_DISPLAY_LIMIT
)
TEXT_LOG_LIMIT_MAX = CONTENT_MAX - (
    len("**** · \n``````") + 2 * NAME_DISPLAY_LIMIT
)

_ANSI_RE = re.compile(
    r"""
    \x1b\][^\x07\x1b]*(?:\x07|\x1b\\)   # OSC, terminated by BEL or ST
    | \x1b\[[0-?]*[ -/]*[@-~]           # CSI (colors, cursor movement)
    | \x1b[@-Z\\-_]                     # two-character escapes
    """,
    re.VERBOSE,
)
_KEEP_CONTROL = {"\n", "\t"}
FENCE_SAFE_BACKTICK = "\u02cb"  # modifier letter grave accent, one char like "`"
_CHANNEL_INVALID_RE = re.compile(r"[^a-z0-9_-]+")


# ── Log Text ───────────────────────────────────────────────

def decode_chunk(chunk: LogChunk) -> str:
    """Decode one chunk as UTF-8. Undecodable chunks become a visible placeholder."""
    try:
        return chunk.data.decode("utf-8")
    except UnicodeDecodeError as e:
        return f"-- Failed to parse bytes as utf8: {e}\n"


def sanitize(text: str) -> str:
    """Strip ANSI escape sequences and non-printable characters."""
    text = _ANSI_RE.sub("", text)
    return "".join(
        ch for ch in text
        if ch in _KEEP_CONTROL or unicodedata.category(ch) not in ("Cc", "Cf", "Cs")
    )


def tail_text(text: str, limit: int) -> str:
    """Keep the final `limit` characters of `text`."""
    if limit <= 0:
        return ""
    if len(text) <= limit:
        return text
    return text[-limit:]


def escape_fences(text: str) -> str:
    """Swap backticks for a look-alike so log text cannot close the code block."""
    return text.replace("`", FENCE_SAFE_BACKTICK)


def render_logs(chunks: Iterable[LogChunk], limit: int) -> str:
    """Concatenate chunks in order, sanitize, keep the tail, escape fences."""
    joined = "".join(decode_chunk(c) for c in chunks)
    return escape_fences(tail_text(sanitize(joined), limit))


def _clip(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return text[: limit - 1] + "…"


# ── Payloads ───────────────────────────────────────────────

def build_embed(workload: Workload, limit: int = DEFAULT_EMBED_LOG_LIMIT,
                now: Optional[datetime] = None) -> Embed:
    logs = render_logs(workload.log_tail, min(limit, EMBED_LOG_LIMIT_MAX))
    image = escape_fences(_clip(sanitize(workload.image), IMAGE_DISPLAY_LIMIT))
    command = escape_fences(_clip(sanitize(workload.command), COMMAND_DISPLAY_LIMIT))
    return Embed(
        author_name=f"{_clip(workload.name, NAME_DISPLAY_LIMIT)} ({workload.id})",
        title=_clip(workload.status, 256),
        description=f"Image `{image}`\nRunning `{command}`:\n```{logs}```",
        footer_text=f"{PACKAGE_NAME} ({__version__})",
        color=EMBED_COLOR,
        timestamp=now or datetime.now(timezone.utc),
    )


def build_text(workload: Workload, limit: int = DEFAULT_TEXT_LOG_LIMIT) -> str:
    logs = render_logs(workload.log_tail, min(limit, TEXT_LOG_LIMIT_MAX))
    name = _clip(workload.name, NAME_DISPLAY_LIMIT)
    status = _clip(workload.status, NAME_DISPLAY_LIMIT)
    return f"**{name}** · {status}\n```{logs}```"


def format_workload(
    workload: Workload,
    style: str = "embed",
    embed_limit: int = DEFAULT_EMBED_LOG_LIMIT,
    text_limit: int = DEFAULT_TEXT_LOG_LIMIT,
    now: Optional[datetime] = None,
) -> MessagePayload:
    """
    Build the display payload for a workload.

    Args:
        workload: Workload from the current snapshot
        style: "embed" for a rich embed, "text" for plain message content
        embed_limit: Max log characters inside an embed description
        text_limit: Max log characters inside plain content
        now: Timestamp shown on the embed (defaults to current UTC time)

    Returns:
        MessagePayload ready for create_message / update_message
    """
    if style == "text":
        return MessagePayload(content=build_text(workload, text_limit))
    return MessagePayload(embed=build_embed(workload, embed_limit, now))


def channel_name_for(name: str) -> str:
    """Normalize a workload name the way Discord stores text channel names."""
    normalized = _CHANNEL_INVALID_RE.sub("-", name.lower()).strip("-")
    return normalized[:CHANNEL_NAME_LIMIT] or "workload"
