from __future__ import annotations

import base64
import binascii
import json
from datetime import datetime
from typing import Any, Dict, List, Optional, Set

import logging
from openai import AsyncOpenAI

from call_engine.config import SessionConfig
from call_engine.errors import TransportError
from call_engine.models.transcript import utcnow
from call_engine.services.providers.base import VoiceProvider

logger = logging.getLogger(__name__)

_IGNORED_EVENTS = {
    "response.audio.done",
    "response.output_item.added",
    "response.output_item.done",
    "response.content_part.added",
    "response.content_part.done",
    "input_audio_buffer.committed",
    "input_audio_buffer.speech_stopped",
    "rate_limits.updated",
}


class OpenAIRealtimeProvider(VoiceProvider):
    """OpenAI Realtime API over the SDK's websocket connection."""

    name = "openai"

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self._client: Optional[AsyncOpenAI] = None
        self._connection: Any = None
        self._speech_start_times: Dict[str, datetime] = {}
        self._function_args: Dict[str, str] = {}
        self._active_response_id: Optional[str] = None
        self._cut_off_responses: Set[str] = set()

    async def _open(self, config: SessionConfig) -> None:
        if not config.api_key:
            raise TransportError("OPENAI_API_KEY not configured")
        self._speech_start_times.clear()
        self._function_args.clear()
        self._active_response_id = None
        self._cut_off_responses.clear()
        self._client = AsyncOpenAI(api_key=config.api_key)
        self._connection = await self._client.beta.realtime.connect(model=config.model).enter()
        await self._connection.session.update(session=self.session_payload(config))

    def session_payload(self, config: SessionConfig) -> Dict[str, Any]:
        session: Dict[str, Any] = {
            "modalities": ["text", "audio"],
            "instructions": config.system_instruction,
            "voice": config.voice,
            "input_audio_format": "pcm16",
            "output_audio_format": "pcm16",
            "input_audio_transcription": {"model": "whisper-1"},
            "turn_detection": {"type": "server_vad"},
            "temperature": 0.8,
            "max_response_output_tokens": 4096,
        }
        tools = self._tools(config)
        if tools:
            session["tools"] = tools
            session["tool_choice"] = "auto"
        return session

    def _tools(self, config: SessionConfig) -> List[Dict[str, Any]]:
        tools = []
        for schema in self.dispatcher.get_tool_schemas(config.enabled_tools):
            function = schema["function"]
            tools.append(
                {
                    "type": "function",
                    "name": function["name"],
                    "description": function.get("description", ""),
                    "parameters": function.get("parameters", {"type": "object", "properties": {}}),
                }
            )
        return tools

    async def _receive(self) -> None:
        async for event in self._connection:
            await self.handle_event(event.model_dump())

    async def handle_event(self, event: Dict[str, Any]) -> None:
        event_type = event.get("type")
        callbacks = self.callbacks
        if callbacks is None:
            return

        if event_type in {"session.created", "session.updated"}:
            self.recorder.log("PROVIDER", event_type, provider=self.name)
        elif event_type == "response.created":
            response_id = (event.get("response") or {}).get("id")
            if response_id:
                self._speech_start_times[response_id] = utcnow()
                self._active_response_id = response_id
        elif event_type == "response.done":
            response = event.get("response") or {}
            response_id = response.get("id")
            if response_id:
                self._cut_off_responses.discard(response_id)
                self._speech_start_times.pop(response_id, None)
                if self._active_response_id == response_id:
                    self._active_response_id = None
            for item in response.get("output") or []:
                if item.get("id"):
                    self._speech_start_times.pop(item["id"], None)
        elif event_type == "conversation.item.created":
            item_id = (event.get("item") or {}).get("id")
            if item_id:
                self._speech_start_times[item_id] = utcnow()
        elif event_type == "response.audio.delta":
            delta = event.get("delta")
            if not delta:
                return
            response_id = event.get("response_id")
            if response_id in self._cut_off_responses:
                self.recorder.log("PROVIDER", "audio_cut_off", response_id=response_id)
                return
            try:
                chunk = base64.b64decode(delta, validate=True)
            except (binascii.Error, ValueError) as exc:
                self.recorder.log("PROVIDER", "audio_delta_undecodable", level=logging.WARNING, error=str(exc))
                return
            await callbacks.on_audio_chunk(chunk)
        elif event_type == "input_audio_buffer.speech_started":
            # the response being talked over is cut off
            if self._active_response_id is not None:
                self._cut_off_responses.add(self._active_response_id)
            callbacks.on_interrupt()
        elif event_type == "response.audio_transcript.delta":
            response_id = event.get("response_id")
            if event.get("delta") and response_id:
                callbacks.on_transcript_delta(
                    "assistant",
                    event["delta"],
                    response_id,
                    event.get("item_id"),
                    self._speech_start_times.get(response_id),
                )
        elif event_type == "response.audio_transcript.done":
            response_id = event.get("response_id")
            if event.get("transcript") and response_id:
                callbacks.on_transcript_complete(
                    "assistant",
                    event["transcript"],
                    self._speech_start_times.pop(response_id, None),
                    response_id,
                )
        elif event_type == "conversation.item.input_audio_transcription.delta":
            item_id = event.get("item_id")
            if event.get("delta") and item_id:
                callbacks.on_transcript_delta(
                    "user",
                    event["delta"],
                    item_id,
                    None,
                    self._speech_start_times.get(item_id),
                )
        elif event_type == "conversation.item.input_audio_transcription.completed":
            item_id = event.get("item_id")
            if event.get("transcript") and item_id:
                callbacks.on_transcript_complete(
                    "user",
                    event["transcript"],
                    self._speech_start_times.pop(item_id, None),
                    item_id,
                )
        elif event_type == "conversation.item.input_audio_transcription.failed":
            item_id = event.get("item_id")
            self._speech_start_times.pop(item_id, None)
            self.recorder.log("PROVIDER", "transcription_failed", level=logging.WARNING, item_id=item_id)
        elif event_type == "response.function_call_arguments.delta":
            call_id = event.get("call_id")
            if call_id and event.get("delta"):
                self._function_args[call_id] = self._function_args.get(call_id, "") + event["delta"]
        elif event_type == "response.function_call_arguments.done":
            call_id = event.get("call_id")
            name = event.get("name")
            if call_id and name:
                raw = self._function_args.pop(call_id, None) or event.get("arguments") or "{}"
                self._spawn(self._execute_function_call(call_id, name, raw))
        elif event_type == "error":
            error = event.get("error") or {}
            raise TransportError(error.get("message") or "OpenAI realtime error")
        elif event_type not in _IGNORED_EVENTS:
            logger.debug("openai.unhandled_event type=%s", event_type)

    async def _execute_function_call(self, call_id: str, name: str, raw_arguments: str) -> None:
        try:
            arguments: Any = json.loads(raw_arguments)
        except json.JSONDecodeError:
            logger.warning("openai.bad_function_arguments name=%s call_id=%s", name, call_id)
            arguments = raw_arguments
        outcome = await self._run_tool(call_id, name, arguments)
        if outcome.status == "success":
            output = outcome.result
        else:
            output = {"error": True, "message": f"Unable to execute {name}: {outcome.error}", "fallback": True}
        self._enqueue(lambda: self._send_function_output(call_id, output))

    async def _send_function_output(self, call_id: str, output: Any) -> None:
        await self._connection.conversation.item.create(
            item={"type": "function_call_output", "call_id": call_id, "output": json.dumps(output, default=str)}
        )
        await self._connection.response.create()

    async def _send_audio(self, pcm: bytes) -> None:
        await self._connection.input_audio_buffer.append(audio=base64.b64encode(pcm).decode())

    async def _send_text(self, text: str) -> None:
        await self._connection.conversation.item.create(
            item={"type": "message", "role": "user", "content": [{"type": "input_text", "text": text}]}
        )
        await self._connection.response.create()

    async def _close(self) -> None:
        connection, self._connection = self._connection, None
        client, self._client = self._client, None
        if connection is not None:
            await connection.close()
        if client is not None:
            await client.close()
