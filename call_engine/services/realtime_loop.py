from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Set

import logging
import numpy as np
from fastapi import WebSocket

from call_engine.config import SessionConfig
from call_engine.errors import DecodeError, EngineError
from call_engine.logging.flight_recorder import FlightRecorder
from call_engine.models.realtime import TwilioMediaPayload
from call_engine.models.transcript import Role, SpeechTurn, ToolInvocation, ToolStatus, TranscriptChange, TranscriptEntry
from call_engine.services.audio_codec import pcm16_to_float, rms
from call_engine.services.audio_output import AmbientBed, AudioOutput, TwilioMediaOutput
from call_engine.services.capture import AudioCapturePath, TwilioMediaSource
from call_engine.services.conversation_log import ConversationLogger
from call_engine.services.interrupt import InterruptHandler
from call_engine.services.playback import PlaybackScheduler
from call_engine.services.providers.base import ProviderCallbacks, VoiceProvider
from call_engine.services.session_state import SessionState
from call_engine.services.timing import CallLater, TranscriptTimingController
from call_engine.services.transcript_assembler import TranscriptAssembler, TranscriptListener

logger = logging.getLogger(__name__)


class CaptureSource(Protocol):
    def start(self, loop: asyncio.AbstractEventLoop, on_frame: Callable[[np.ndarray], Any]) -> None: ...

    def stop(self) -> None: ...


class RealtimeLoop(ProviderCallbacks):
    """One live call: capture -> provider -> playback + transcript.

    Owns the per-session state and wires the provider's normalized events
    into the playback scheduler, the transcript timing controller and the
    interrupt handler. ``disconnect`` is a hard teardown; a transport error
    records ``error`` and tears the call down the same way.
    """

    def __init__(
        self,
        recorder: FlightRecorder,
        provider: VoiceProvider,
        conversation_logger: Optional[ConversationLogger] = None,
        call_later: Optional[CallLater] = None,
        on_transcript: Optional[TranscriptListener] = None,
        config: Optional[SessionConfig] = None,
        ambient: Optional[AmbientBed] = None,
    ) -> None:
        self.recorder = recorder
        self.provider = provider
        self.conversation_logger = conversation_logger
        self.on_transcript = on_transcript
        self.state = SessionState()
        self.assembler = TranscriptAssembler(self.state, listener=self._on_entry_changed)
        self.timing = TranscriptTimingController(
            self.assembler,
            self.state,
            lambda: self.scheduler.lead_time if self.scheduler is not None else 0.0,
            recorder,
            call_later,
        )
        self.config = config
        self.ambient = ambient
        self.scheduler: Optional[PlaybackScheduler] = None
        self.capture: Optional[AudioCapturePath] = None
        self.interrupts: Optional[InterruptHandler] = None
        self.source: Optional[CaptureSource] = None
        self.connected = False
        self.error: Optional[str] = None
        self.input_volume = 0.0
        self.output_volume = 0.0
        self.call_sid: Optional[str] = None
        self.stream_sid: Optional[str] = None
        self.conversation_id: Optional[str] = None
        self._turns_logged = 0
        self._conversation_started: Optional[asyncio.Task] = None
        self._tool_log_ids: Dict[str, asyncio.Task] = {}
        self._background: Set[asyncio.Task] = set()
        self._disconnect_task: Optional[asyncio.Task] = None
        self._disconnecting = False

    @property
    def muted(self) -> bool:
        return self.capture.muted if self.capture is not None else False

    @property
    def transcript_items(self) -> List[TranscriptEntry]:
        return self.assembler.entries

    async def connect(
        self,
        config: SessionConfig,
        source: CaptureSource,
        output: AudioOutput,
        phone_number: Optional[str] = None,
        call_sid: Optional[str] = None,
    ) -> None:
        if self.connected:
            raise EngineError("session already connected")
        self.config = config
        self.error = None
        self.state.begin()
        self.recorder.log("PROVIDER", "connecting", provider=config.provider, model=config.model)
        try:
            await output.resume()
            self.scheduler = PlaybackScheduler(
                output,
                self.recorder,
                sample_rate=config.output_sample_rate,
                on_error=self.on_error,
            )
            self.interrupts = InterruptHandler(self.scheduler, self.timing, self.recorder)
            self.capture = AudioCapturePath(self.provider.send_audio, self.recorder, on_volume=self._set_input_volume)
            await self.provider.connect(config, self)
            source.start(asyncio.get_running_loop(), self.capture.process_frame)
            self.source = source
        except Exception as exc:
            self.error = f"Connection failed: {exc}"
            self.recorder.log("PROVIDER", "connect_failed", level=logging.ERROR, error=str(exc))
            await self._teardown(output)
            raise

        self.connected = True
        if self.conversation_logger is not None:
            self._conversation_started = self._spawn(self._start_conversation(config.provider, phone_number, call_sid))
        if config.greeting:
            self.provider.send_text(config.greeting)
        logger.info("realtime.connected provider=%s session=%s", config.provider, self.state.session_id)

    async def disconnect(self) -> None:
        if self._disconnecting:
            return
        self._disconnecting = True
        try:
            was_connected = self.connected
            await self._teardown(None)
            if was_connected and self._conversation_started is not None:
                self._log_write(lambda conversation_id: self.conversation_logger.end_conversation(
                    conversation_id, "error" if self.error else "completed"
                ))
            pending = [task for task in self._background if task is not asyncio.current_task()]
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
            self._conversation_started = None
            self._tool_log_ids.clear()
            logger.info("realtime.disconnected session=%s error=%s", self.state.session_id, self.error)
        finally:
            self._disconnecting = False

    async def _teardown(self, output: Optional[AudioOutput]) -> None:
        self.state.end()
        self.timing.cancel_pending()
        if self.source is not None:
            source, self.source = self.source, None
            source.stop()
        await self.provider.disconnect()
        if self.scheduler is not None:
            scheduler, self.scheduler = self.scheduler, None
            await scheduler.close()
        elif output is not None:
            await output.close()
        self.interrupts = None
        self.capture = None
        self.connected = False
        self.input_volume = 0.0
        self.output_volume = 0.0

    def toggle_mute(self) -> bool:
        if self.capture is None:
            return False
        return self.capture.toggle_mute()

    def clear_transcripts(self) -> None:
        self.timing.cancel_pending()
        self.assembler.clear()
        self.state.reset_transcript()
        self.recorder.log("TRANSCRIPT", "cleared")

    def _set_input_volume(self, volume: float) -> None:
        self.input_volume = volume

    # provider callbacks

    def on_open(self) -> None:
        self.recorder.log("PROVIDER", "open", provider=self.provider.name)

    async def on_audio_chunk(self, chunk: bytes) -> None:
        scheduler = self.scheduler
        if scheduler is None:
            return
        if chunk:
            self.output_volume = rms(pcm16_to_float(chunk[: len(chunk) - len(chunk) % 2]))
        await scheduler.on_audio_chunk(chunk)

    def on_transcript_delta(
        self,
        role: Role,
        delta: str,
        turn_id: Optional[str],
        item_id: Optional[str] = None,
        speech_start_time: Optional[datetime] = None,
    ) -> None:
        self.timing.on_transcript_delta(role, delta, turn_id, item_id, speech_start_time)

    def on_transcript_complete(
        self,
        role: Role,
        text: str,
        speech_start_time: Optional[datetime] = None,
        turn_id: Optional[str] = None,
    ) -> None:
        self.timing.on_transcript_complete(role, text, speech_start_time, turn_id)

    def on_interrupt(self) -> None:
        if self.interrupts is not None:
            self.interrupts.handle()

    def on_function_call(self, call_id: str, name: str, arguments: Any) -> None:
        self.timing.on_function_call(call_id, name, arguments)

    def on_function_result(
        self,
        call_id: str,
        name: str,
        result: Any,
        execution_time_ms: Optional[float],
        status: ToolStatus,
        error: Optional[str] = None,
    ) -> None:
        self.timing.on_function_result(call_id, name, result, execution_time_ms, status, error)

    def on_close(self) -> None:
        if self.connected and not self._disconnecting:
            self.recorder.log("PROVIDER", "closed_by_remote")
            self._schedule_disconnect()

    def on_error(self, exc: Exception) -> None:
        self.error = f"Connection failed: {exc}"
        self.recorder.log("PROVIDER", "session_error", level=logging.ERROR, error=str(exc))
        self._schedule_disconnect()

    def _schedule_disconnect(self) -> None:
        if self._disconnect_task is not None and not self._disconnect_task.done():
            return
        self._disconnect_task = asyncio.create_task(self.disconnect())

    async def wait_closed(self) -> None:
        if self._disconnect_task is not None:
            await self._disconnect_task

    # transcript side effects

    def _on_entry_changed(self, entry: TranscriptEntry, change: TranscriptChange) -> None:
        if self.on_transcript is not None:
            self.on_transcript(entry, change)
        if self.conversation_logger is None or self._conversation_started is None:
            return
        if isinstance(entry, SpeechTurn) and change in ("completed", "interrupted"):
            self._turns_logged += 1
            turn_number = self._turns_logged
            role, text, spoken_at = entry.role, entry.text, entry.created_at
            self._log_write(lambda conversation_id: self.conversation_logger.log_turn(
                conversation_id, role, text, turn_number, spoken_at
            ))
        elif isinstance(entry, ToolInvocation) and change == "tool_started":
            self._tool_log_ids[entry.call_id] = self._log_write(
                lambda conversation_id: self.conversation_logger.log_function_call(
                    conversation_id, entry.call_id, entry.function_name, entry.arguments
                )
            )
        elif isinstance(entry, ToolInvocation) and change == "tool_resolved":
            call_task = self._tool_log_ids.pop(entry.call_id, None)
            result, status = entry.result, entry.status
            execution_time_ms, error_message = entry.execution_time_ms, entry.error_message

            async def update(conversation_id: str) -> None:
                function_call_id = await call_task if call_task is not None else None
                await self.conversation_logger.update_function_result(
                    function_call_id, result, status, execution_time_ms, error_message
                )

            self._log_write(update)

    async def _start_conversation(self, provider: str, phone_number: Optional[str], call_sid: Optional[str]) -> Optional[str]:
        try:
            self.conversation_id = await self.conversation_logger.start_conversation(
                provider, phone_number=phone_number, call_sid=call_sid
            )
        except Exception as exc:  # noqa: BLE001
            self.recorder.log("LOGGER", "start_failed", level=logging.WARNING, error=str(exc))
            return None
        return self.conversation_id

    def _log_write(self, write: Callable[[str], Awaitable[Any]]) -> asyncio.Task:
        started = self._conversation_started

        async def run() -> Any:
            conversation_id = await started if started is not None else None
            if conversation_id is None:
                return None
            try:
                return await write(conversation_id)
            except Exception as exc:  # noqa: BLE001
                self.recorder.log("LOGGER", "write_failed", level=logging.WARNING, error=str(exc))
                return None

        return self._spawn(run())

    def _spawn(self, coro: Awaitable[Any]) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    # telephony bridge

    async def handle_event(self, payload: TwilioMediaPayload, websocket: WebSocket) -> None:
        if payload.event == "start":
            start_payload = payload.start or {}
            self.call_sid = start_payload.get("callSid")
            self.stream_sid = start_payload.get("streamSid") or payload.streamSid
            custom = start_payload.get("customParameters") or {}
            logger.info("realtime.call_started call_sid=%s stream_sid=%s", self.call_sid, self.stream_sid)
            config = self.config or SessionConfig.for_provider(self.provider.name)
            await self.connect(
                config,
                TwilioMediaSource(config.input_sample_rate),
                TwilioMediaOutput(websocket, self.stream_sid or "", ambient=self.ambient),
                phone_number=custom.get("from"),
                call_sid=self.call_sid,
            )
            return
        if payload.event == "media" and payload.media:
            audio_b64 = payload.media.get("payload")
            if audio_b64 and isinstance(self.source, TwilioMediaSource):
                try:
                    self.source.push(audio_b64)
                except DecodeError as exc:
                    self.recorder.log("CAPTURE", "media_dropped", level=logging.WARNING, reason=str(exc))
            return
        if payload.event == "mark" and payload.mark:
            self.recorder.log("WS", "mark_played", mark=payload.mark.get("name"))
            return
        if payload.event == "stop":
            logger.info("realtime.call_stopped call_sid=%s", self.call_sid)
            await self.disconnect()
            return
        logger.debug("realtime.twilio_event_ignored event=%s", payload.event)
