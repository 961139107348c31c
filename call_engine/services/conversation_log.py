from __future__ import annotations

import itertools
import json
import uuid
from datetime import datetime
from typing import Any, Dict, Optional

import logging
import httpx

from call_engine.models.transcript import utcnow

logger = logging.getLogger(__name__)


class ConversationLogger:
    """Persistence hooks invoked at transcript completion points.

    The base class only logs; subclasses write somewhere durable.
    """

    async def start_conversation(
        self,
        provider: str,
        phone_number: Optional[str] = None,
        direction: str = "inbound",
        call_sid: Optional[str] = None,
    ) -> str:
        conversation_id = f"CONV-{uuid.uuid4().hex[:12]}"
        logger.info("conversation.started id=%s provider=%s direction=%s", conversation_id, provider, direction)
        return conversation_id

    async def log_turn(
        self,
        conversation_id: str,
        role: str,
        text: str,
        turn_number: int,
        speech_start_time: Optional[datetime] = None,
    ) -> Any:
        logger.info("conversation.turn id=%s turn=%s role=%s preview=%s", conversation_id, turn_number, role, text[:80])
        return turn_number

    async def log_function_call(self, conversation_id: str, call_id: str, function_name: str, arguments: Any) -> Any:
        logger.info("conversation.function_call id=%s call_id=%s name=%s", conversation_id, call_id, function_name)
        return call_id

    async def update_function_result(
        self,
        function_call_id: Any,
        result: Any,
        status: str,
        execution_time_ms: Optional[float] = None,
        error_message: Optional[str] = None,
    ) -> None:
        logger.info("conversation.function_result call=%s status=%s", function_call_id, status)

    async def end_conversation(self, conversation_id: str, outcome: str = "completed", details: Optional[Dict[str, Any]] = None) -> None:
        logger.info("conversation.ended id=%s outcome=%s", conversation_id, outcome)


class HttpConversationLogger(ConversationLogger):
    """Writes conversations to the database API; without a base URL it only logs."""

    def __init__(self, base_url: Optional[str] = None, transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
        self.base_url = base_url.rstrip("/") if base_url else None
        self.transport = transport
        self._started: Dict[str, datetime] = {}
        self._local_ids = itertools.count(1)

    @property
    def configured(self) -> bool:
        return bool(self.base_url)

    async def _request(self, method: str, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        async with httpx.AsyncClient(
            base_url=self.base_url or "",
            timeout=httpx.Timeout(10.0, connect=5.0),
            transport=self.transport,
        ) as client:
            response = await client.request(method, path, json=payload)
        response.raise_for_status()
        if not response.content:
            return {}
        return response.json()

    async def start_conversation(
        self,
        provider: str,
        phone_number: Optional[str] = None,
        direction: str = "inbound",
        call_sid: Optional[str] = None,
    ) -> str:
        conversation_id = await super().start_conversation(provider, phone_number, direction, call_sid)
        started_at = utcnow()
        self._started[conversation_id] = started_at
        if not self.configured:
            logger.info("conversation.stub phone=%s", _redact(phone_number))
            return conversation_id
        await self._request(
            "POST",
            "/conversations",
            {
                "id": conversation_id,
                "phone_number": phone_number,
                "direction": direction,
                "provider": provider,
                "call_sid": call_sid,
                "started_at": started_at.isoformat(),
            },
        )
        return conversation_id

    async def log_turn(
        self,
        conversation_id: str,
        role: str,
        text: str,
        turn_number: int,
        speech_start_time: Optional[datetime] = None,
    ) -> Any:
        if not self.configured:
            return await super().log_turn(conversation_id, role, text, turn_number, speech_start_time)
        data = await self._request(
            "POST",
            f"/conversations/{conversation_id}/turns",
            {
                "conversation_id": conversation_id,
                "turn_number": turn_number,
                "role": role,
                "content_type": "text",
                "content_text": text,
                "timestamp": (speech_start_time or utcnow()).isoformat(),
            },
        )
        return data.get("id", turn_number)

    async def log_function_call(self, conversation_id: str, call_id: str, function_name: str, arguments: Any) -> Any:
        if not self.configured:
            await super().log_function_call(conversation_id, call_id, function_name, arguments)
            return next(self._local_ids)
        data = await self._request(
            "POST",
            "/function-calls",
            {
                "conversation_id": conversation_id,
                "call_id": call_id,
                "function_name": function_name,
                "arguments": json.dumps(arguments, default=str),
                "status": "pending",
                "timestamp": utcnow().isoformat(),
            },
        )
        return data.get("id")

    async def update_function_result(
        self,
        function_call_id: Any,
        result: Any,
        status: str,
        execution_time_ms: Optional[float] = None,
        error_message: Optional[str] = None,
    ) -> None:
        if not self.configured or function_call_id is None:
            await super().update_function_result(function_call_id, result, status, execution_time_ms, error_message)
            return
        await self._request(
            "PUT",
            f"/function-calls/{function_call_id}/result",
            {
                "result": json.dumps(result, default=str),
                "status": status,
                "execution_time_ms": execution_time_ms,
                "error_message": error_message,
            },
        )

    async def end_conversation(self, conversation_id: str, outcome: str = "completed", details: Optional[Dict[str, Any]] = None) -> None:
        started_at = self._started.pop(conversation_id, None)
        if not self.configured:
            await super().end_conversation(conversation_id, outcome, details)
            return
        ended_at = utcnow()
        duration = int((ended_at - started_at).total_seconds()) if started_at else None
        await self._request(
            "PUT",
            f"/conversations/{conversation_id}/end",
            {
                "ended_at": ended_at.isoformat(),
                "duration_seconds": duration,
                "outcome": outcome,
                "outcome_details": json.dumps(details) if details else None,
            },
        )


def _redact(phone: Optional[str]) -> str:
    if not phone:
        return ""
    if len(phone) <= 4:
        return "***"
    return f"***{phone[-4:]}"
