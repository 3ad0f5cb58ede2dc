"""Pydantic models and typed chunks shared by the relay components."""
from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


# ---------------- Inbound requests ----------------

class AgentModel(BaseModel):
    """Agent-to-model mapping for multi-agent requests."""

    model_config = ConfigDict(extra="ignore")

    agent: Optional[str] = None
    model: Optional[str] = None


class QuestionRequest(BaseModel):
    """
    Question submitted by the client, for both the streaming and the
    long-poll endpoints. Fields are optional at this layer so that
    validate_question_request can report the client-facing 400 messages.
    """

    model_config = ConfigDict(extra="ignore")

    question: Optional[str] = None
    type: Optional[str] = None
    sessionkey: Optional[str] = None
    searching: Optional[bool] = False
    aiModel: Optional[str] = None
    agentModels: Optional[List[AgentModel]] = None
    file: Optional[Any] = None


class CancelRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    sessionkey: Optional[str] = None


# ---------------- Upstream payload ----------------

class UpstreamMetadata(BaseModel):
    type: str
    aiModel: str = ""
    agentModels: Optional[List[Dict[str, Any]]] = None
    file: Optional[Any] = None
    searching: Optional[bool] = False
    userId: str = "streaming_user"


class UpstreamRequest(BaseModel):
    """Body posted to the automation backend to start a streaming answer."""

    action: str = "sendMessage"
    sessionId: str
    chatInput: str
    metadata: UpstreamMetadata


# ---------------- Upstream chunks ----------------

class UpstreamChunkKind(str, Enum):
    BEGIN = "begin"
    CHUNK = "chunk"
    ITEM = "item"
    END = "end"
    COMPLETE = "complete"
    ERROR = "error"


@dataclass(frozen=True)
class UpstreamChunk:
    kind: UpstreamChunkKind
    content: Any = None
    has_content: bool = False

    @property
    def is_content(self) -> bool:
        return self.kind in (UpstreamChunkKind.CHUNK, UpstreamChunkKind.ITEM)

    @property
    def is_end(self) -> bool:
        return self.kind in (UpstreamChunkKind.END, UpstreamChunkKind.COMPLETE)

    @property
    def message(self) -> str:
        """Error text carried by an ``error`` chunk."""
        if not self.has_content or self.content in (None, ""):
            return "Unknown error occurred"
        return content_to_text(self.content)

    @classmethod
    def from_record(cls, record: Any) -> Optional["UpstreamChunk"]:
        """Build a chunk from a decoded record, or None if it is not a chunk."""
        if not isinstance(record, dict):
            return None
        raw_type = record.get("type")
        if not isinstance(raw_type, str):
            return None
        try:
            kind = UpstreamChunkKind(raw_type)
        except ValueError:
            return None
        return cls(kind=kind, content=record.get("content"), has_content="content" in record)


def content_to_text(content: Any) -> str:
    """Coerce a chunk payload to the string form sent to the client."""
    if isinstance(content, str):
        return content
    return json.dumps(content, separators=(",", ":"), ensure_ascii=False)


# ---------------- Outbound events ----------------

class OutboundEventType(str, Enum):
    CONNECTING = "connecting"
    BEGIN = "begin"
    CHUNK = "chunk"
    COMPLETE = "complete"
    ERROR = "error"


TERMINAL_EVENT_TYPES = frozenset({OutboundEventType.COMPLETE, OutboundEventType.ERROR})


class OutboundEvent(BaseModel):
    """One event of the client-facing stream."""

    content: str = ""
    type: OutboundEventType
    timestamp: str = Field(default_factory=utc_now_iso)

    @property
    def is_terminal(self) -> bool:
        return self.type in TERMINAL_EVENT_TYPES

    def to_sse(self) -> str:
        return f"data: {self.model_dump_json()}\n\n"


# ---------------- Long-poll responses ----------------

class AnswerPayload(BaseModel):
    message: Any = None
    type: Optional[str] = None
    timestamp: str = Field(default_factory=utc_now_iso)
    sessionkey: Optional[str] = None
