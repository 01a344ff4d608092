"""
Container Herald — Data Models
═══════════════════════════════════════════════════════════════
Defines the data structures for:
- Workload: one container as seen by the last poll (read-only once published)
- LogChunk: one raw piece of log output, tagged with its stream
- ResourceHandle: the Reconciler's link from a workload to its channel/message
- Channel / Embed / MessagePayload: the Discord side of things
"""

from __future__ import annotations
from typing import Optional, List, Dict, Any
from pydantic import BaseModel, ConfigDict, Field
from enum import Enum
from datetime import datetime

from .errors import MalformedWorkload


# ── Enums ──────────────────────────────────────────────────

class LogStream(str, Enum):
    OUT = "out"            # stdout
    ERR = "err"            # stderr
    IN = "in"              # stdin (attached containers only)
    CONSOLE = "console"    # TTY output, streams not separated


# ── Workload ───────────────────────────────────────────────

class LogChunk(BaseModel):
    """A raw piece of log output. Bytes are decoded by the formatter only."""
    model_config = ConfigDict(frozen=True)

    stream: LogStream = LogStream.OUT
    data: bytes = b""


REQUIRED_FIELDS = ("id", "name", "image", "command", "status")


class Workload(BaseModel):
    """
    One container from the most recent poll cycle.
    Rebuilt from scratch every cycle, never merged field by field.
    """
    model_config = ConfigDict(frozen=True)

    id: str = Field(..., description="Opaque, stable id from the runtime")
    name: str = Field(..., description="Display name, may collide across ids")
    image: str
    command: str
    status: str
    log_tail: List[LogChunk] = Field(default_factory=list)

    @classmethod
    def from_record(cls, record: Dict[str, Any], log_tail: Optional[List[LogChunk]] = None) -> "Workload":
        """Build a workload from a raw source record. Raises MalformedWorkload."""
        missing = [f for f in REQUIRED_FIELDS if record.get(f) is None]
        if missing:
            raise MalformedWorkload(missing, record)
        return cls(
            id=str(record["id"]),
            name=str(record["name"]).lstrip("/"),
            image=str(record["image"]),
            command=str(record["command"]),
            status=str(record["status"]),
            log_tail=list(log_tail or []),
        )

    def with_logs(self, log_tail: List[LogChunk]) -> "Workload":
        return self.model_copy(update={"log_tail": list(log_tail)})


# ── Resource Handle ────────────────────────────────────────

class ResourceHandle(BaseModel):
    """Reconciler-private record of the channel + message for one workload."""
    workload_id: str
    channel_id: str
    channel_name: str
    message_id: Optional[str] = None  # set after the first message create


# ── Discord Side ───────────────────────────────────────────

class Channel(BaseModel):
    """A guild channel as listed by the sink."""
    id: str
    name: str
    parent_id: Optional[str] = None


class Embed(BaseModel):
    """Rich embed body for a status message."""
    title: str = ""
    description: str = ""
    footer_text: str = ""
    color: int = 0x3772FF
    timestamp: Optional[datetime] = None
    author_name: str = ""

    def to_discord(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "type": "rich",
            "title": self.title,
            "description": self.description,
            "color": self.color,
        }
        if self.author_name:
            body["author"] = {"name": self.author_name}
        if self.footer_text:
            body["footer"] = {"text": self.footer_text}
        if self.timestamp is not None:
            body["timestamp"] = self.timestamp.isoformat()
        return body


class MessagePayload(BaseModel):
    """Either plain text or a single embed."""
    content: Optional[str] = None
    embed: Optional[Embed] = None

    def to_body(self) -> Dict[str, Any]:
        """Render the JSON body for create/update message calls."""
        if self.embed is not None:
            # content=None clears a placeholder left on the message
            return {"content": None, "embeds": [self.embed.to_discord()]}
        return {"content": self.content or "", "embeds": []}
