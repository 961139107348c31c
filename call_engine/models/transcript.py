from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Literal, Optional, Union

from pydantic import BaseModel, Field

Role = Literal["user", "assistant"]
ToolStatus = Literal["pending", "success", "error"]
TranscriptChange = Literal["created", "updated", "completed", "interrupted", "tool_started", "tool_resolved"]

INTERRUPTED_MARKER = " [interrupted]"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SpeechTurn(BaseModel):
    kind: Literal["speech"] = "speech"
    id: str
    role: Role
    text: str
    is_partial: bool
    created_at: datetime = Field(frozen=True, description="First observation of the turn; never changes.")
    timestamp: datetime = Field(default_factory=utcnow, description="Last update, for staleness display only.")
    sequence_number: int = Field(frozen=True, ge=1)
    turn_id: Optional[str] = None
    item_id: Optional[str] = None


class ToolInvocation(BaseModel):
    kind: Literal["tool"] = "tool"
    id: str
    call_id: str
    function_name: str
    arguments: Any = None
    result: Any = None
    status: ToolStatus = "pending"
    execution_time_ms: Optional[float] = None
    error_message: Optional[str] = None
    created_at: datetime = Field(frozen=True)
    timestamp: datetime = Field(default_factory=utcnow)
    sequence_number: int = Field(frozen=True, ge=1)


TranscriptEntry = Union[SpeechTurn, ToolInvocation]


class TranscriptSnapshot(BaseModel):
    stream_sid: Optional[str] = None
    entries: list[TranscriptEntry] = Field(default_factory=list)
