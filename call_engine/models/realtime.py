from __future__ import annotations

from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field

from call_engine.models.transcript import ToolStatus


class TwilioMediaPayload(BaseModel):
    event: str
    media: Optional[Dict[str, Any]] = None
    streamSid: Optional[str] = Field(default=None, alias="streamSid")
    start: Optional[Dict[str, Any]] = None
    mark: Optional[Dict[str, Any]] = None
    stop: Optional[Dict[str, Any]] = None

    model_config = ConfigDict(populate_by_name=True)


class ToolCallRequest(BaseModel):
    name: str
    arguments: Dict[str, Any] = Field(default_factory=dict)
    call_id: str


class ToolOutcome(BaseModel):
    result: Any = None
    status: ToolStatus
    execution_time_ms: float
    error: Optional[str] = None
