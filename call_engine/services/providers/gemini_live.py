from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

import logging
from google import genai
from google.genai import types

from call_engine.config import SessionConfig
from call_engine.errors import TransportError
from call_engine.models.transcript import Role, utcnow
from call_engine.services.providers.base import VoiceProvider

logger = logging.getLogger(__name__)


@dataclass
class _LocalTurn:
    turn_id: str
    started_at: datetime = field(default_factory=utcnow)
    text: str = ""


class GeminiLiveProvider(VoiceProvider):
    """Gemini Live API through ``google-genai``.

    Gemini has no turn ids, so turns are numbered locally. The caller's turn
    ends when the model starts answering; the model's turn ends on
    ``turn_complete`` or is abandoned on ``interrupted``.
    """

    name = "gemini"

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self._client: Optional[genai.Client] = None
        self._session_manager: Any = None
        self._session: Any = None
        self._turn_counter = 0
        self._user_turn: Optional[_LocalTurn] = None
        self._assistant_turn: Optional[_LocalTurn] = None

    async def _open(self, config: SessionConfig) -> None:
        if not config.api_key:
            raise TransportError("GEMINI_API_KEY not configured")
        self._user_turn = None
        self._assistant_turn = None
        self._client = genai.Client(api_key=config.api_key)
        self._session_manager = self._client.aio.live.connect(model=config.model, config=self.live_config(config))
        self._session = await self._session_manager.__aenter__()

    def live_config(self, config: SessionConfig) -> types.LiveConnectConfig:
        declarations = [
            types.FunctionDeclaration(
                name=schema["function"]["name"],
                description=schema["function"].get("description", ""),
                parameters_json_schema=schema["function"].get("parameters"),
            )
            for schema in self.dispatcher.get_tool_schemas(config.enabled_tools)
        ]
        return types.LiveConnectConfig(
            response_modalities=[types.Modality.AUDIO],
            speech_config=types.SpeechConfig(
                voice_config=types.VoiceConfig(
                    prebuilt_voice_config=types.PrebuiltVoiceConfig(voice_name=config.voice)
                )
            ),
            system_instruction=config.system_instruction,
            input_audio_transcription=types.AudioTranscriptionConfig(),
            output_audio_transcription=types.AudioTranscriptionConfig(),
            tools=[types.Tool(function_declarations=declarations)] if declarations else None,
        )

    async def _receive(self) -> None:
        # receive() ends after every model turn; an empty pass means the socket closed
        while self._session is not None:
            received = False
            async for message in self._session.receive():
                received = True
                await self.handle_message(message)
            if not received:
                return

    async def handle_message(self, message: types.LiveServerMessage) -> None:
        callbacks = self.callbacks
        if callbacks is None:
            return

        content = message.server_content
        if content is not None:
            if content.interrupted:
                self._assistant_turn = None
                callbacks.on_interrupt()

            if content.input_transcription is not None and content.input_transcription.text:
                turn = self._open_turn("user")
                turn.text += content.input_transcription.text
                callbacks.on_transcript_delta(
                    "user", content.input_transcription.text, turn.turn_id, None, turn.started_at
                )

            if content.model_turn is not None:
                for part in content.model_turn.parts or []:
                    if part.inline_data is not None and part.inline_data.data:
                        self._finish_user_turn()
                        await callbacks.on_audio_chunk(part.inline_data.data)

            if content.output_transcription is not None and content.output_transcription.text:
                self._finish_user_turn()
                turn = self._open_turn("assistant")
                turn.text += content.output_transcription.text
                callbacks.on_transcript_delta(
                    "assistant", content.output_transcription.text, turn.turn_id, None, turn.started_at
                )

            if content.turn_complete:
                self._finish_user_turn()
                self._finish_assistant_turn()

        if message.tool_call is not None:
            for call in message.tool_call.function_calls or []:
                self._spawn(self._execute_function_call(call))

    def _open_turn(self, role: Role) -> _LocalTurn:
        current = self._user_turn if role == "user" else self._assistant_turn
        if current is not None:
            return current
        self._turn_counter += 1
        turn = _LocalTurn(turn_id=f"{role}-{self._turn_counter}")
        if role == "user":
            self._user_turn = turn
        else:
            self._assistant_turn = turn
        return turn

    def _finish_user_turn(self) -> None:
        turn, self._user_turn = self._user_turn, None
        if turn is not None and turn.text.strip() and self.callbacks is not None:
            self.callbacks.on_transcript_complete("user", turn.text.strip(), turn.started_at, turn.turn_id)

    def _finish_assistant_turn(self) -> None:
        turn, self._assistant_turn = self._assistant_turn, None
        if turn is not None and turn.text.strip() and self.callbacks is not None:
            self.callbacks.on_transcript_complete("assistant", turn.text.strip(), turn.started_at, turn.turn_id)

    async def _execute_function_call(self, call: types.FunctionCall) -> None:
        call_id = call.id or f"call-{self._turn_counter}"
        name = call.name or ""
        outcome = await self._run_tool(call_id, name, dict(call.args or {}))
        if outcome.status == "success":
            response: Dict[str, Any] = {"result": outcome.result}
        else:
            response = {"error": f"Unable to execute {name}: {outcome.error}"}
        self._enqueue(lambda: self._send_tool_response([types.FunctionResponse(id=call.id, name=name, response=response)]))

    async def _send_tool_response(self, responses: List[types.FunctionResponse]) -> None:
        await self._session.send_tool_response(function_responses=responses)

    async def _send_audio(self, pcm: bytes) -> None:
        await self._session.send_realtime_input(
            audio=types.Blob(data=pcm, mime_type=f"audio/pcm;rate={self.input_sample_rate}")
        )

    async def _send_text(self, text: str) -> None:
        await self._session.send_client_content(
            turns=types.Content(role="user", parts=[types.Part(text=text)]),
            turn_complete=True,
        )

    async def _close(self) -> None:
        manager, self._session_manager = self._session_manager, None
        self._session = None
        self._client = None
        if manager is not None:
            await manager.__aexit__(None, None, None)
