from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Awaitable, Callable, Coroutine, Optional, Set

import logging

from call_engine.config import SessionConfig
from call_engine.errors import TransportError
from call_engine.logging.flight_recorder import FlightRecorder
from call_engine.models.realtime import ToolCallRequest, ToolOutcome
from call_engine.models.transcript import Role, ToolStatus
from call_engine.services.tool_dispatcher import ToolDispatcher

logger = logging.getLogger(__name__)


class ProviderCallbacks:
    """Normalized events a voice provider emits. Subclasses override what they need."""

    def on_open(self) -> None:
        pass

    async def on_audio_chunk(self, chunk: bytes) -> None:
        pass

    def on_transcript_delta(
        self,
        role: Role,
        delta: str,
        turn_id: Optional[str],
        item_id: Optional[str] = None,
        speech_start_time: Optional[datetime] = None,
    ) -> None:
        pass

    def on_transcript_complete(
        self,
        role: Role,
        text: str,
        speech_start_time: Optional[datetime] = None,
        turn_id: Optional[str] = None,
    ) -> None:
        pass

    def on_interrupt(self) -> None:
        pass

    def on_function_call(self, call_id: str, name: str, arguments: Any) -> None:
        pass

    def on_function_result(
        self,
        call_id: str,
        name: str,
        result: Any,
        execution_time_ms: Optional[float],
        status: ToolStatus,
        error: Optional[str] = None,
    ) -> None:
        pass

    def on_close(self) -> None:
        pass

    def on_error(self, exc: Exception) -> None:
        pass


class VoiceProvider(ABC):
    """One speech-to-speech vendor behind a common interface.

    Outbound traffic goes through a queue drained by a sender task, so
    ``send_audio`` never blocks the capture path. A transport failure after
    connect is reported once through ``on_error``; there is no reconnect.
    """

    name = "base"

    def __init__(self, dispatcher: Optional[ToolDispatcher] = None, recorder: Optional[FlightRecorder] = None) -> None:
        self.recorder = recorder or FlightRecorder()
        self.dispatcher = dispatcher or ToolDispatcher(self.recorder)
        self.config: Optional[SessionConfig] = None
        self.callbacks: Optional[ProviderCallbacks] = None
        self._connected = False
        self._closing = False
        self._failed = False
        self._outbox: Optional[asyncio.Queue] = None
        self._tasks: Set[asyncio.Task] = set()

    @property
    def input_sample_rate(self) -> int:
        return self.config.input_sample_rate if self.config else 24000

    @property
    def output_sample_rate(self) -> int:
        return self.config.output_sample_rate if self.config else 24000

    def is_connected(self) -> bool:
        return self._connected

    async def connect(self, config: SessionConfig, callbacks: ProviderCallbacks) -> None:
        if self._connected:
            raise TransportError(f"{self.name} provider is already connected")
        self.config = config
        self.callbacks = callbacks
        self._closing = False
        self._failed = False
        with self.recorder.stage("PROVIDER", provider=self.name, model=config.model):
            try:
                await self._open(config)
            except Exception as exc:  # noqa: BLE001
                await self._close()
                if isinstance(exc, TransportError):
                    raise
                raise TransportError(f"{self.name} connect failed: {exc}") from exc
        self._connected = True
        self._outbox = asyncio.Queue()
        self._spawn(self._send_loop())
        self._spawn(self._receive_loop())
        logger.info("provider.connected provider=%s model=%s", self.name, config.model)
        callbacks.on_open()

    def send_audio(self, pcm: bytes) -> None:
        if not self._connected:
            return
        self._enqueue(lambda: self._send_audio(pcm))

    def send_text(self, text: str) -> None:
        if not self._connected:
            return
        self._enqueue(lambda: self._send_text(text))

    async def disconnect(self) -> None:
        self._closing = True
        self._connected = False
        current = asyncio.current_task()
        tasks = [task for task in self._tasks if task is not current]
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        await self._close()
        self._outbox = None
        self.callbacks = None
        logger.info("provider.disconnected provider=%s", self.name)

    def _enqueue(self, send: Callable[[], Awaitable[Any]]) -> None:
        if self._outbox is not None:
            self._outbox.put_nowait(send)

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _send_loop(self) -> None:
        outbox = self._outbox
        while outbox is not None:
            send = await outbox.get()
            try:
                await send()
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # noqa: BLE001
                self._fail(exc)
                return

    async def _receive_loop(self) -> None:
        try:
            await self._receive()
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001
            self._fail(exc)
            return
        if not self._closing and not self._failed:
            self._connected = False
            self.recorder.log("PROVIDER", "remote_closed", provider=self.name)
            if self.callbacks is not None:
                self.callbacks.on_close()

    def _fail(self, exc: Exception) -> None:
        if self._failed or self._closing:
            return
        self._failed = True
        self._connected = False
        error = exc if isinstance(exc, TransportError) else TransportError(str(exc))
        self.recorder.log("PROVIDER", "transport_error", level=logging.ERROR, provider=self.name, error=str(exc))
        if self.callbacks is not None:
            self.callbacks.on_error(error)

    async def _run_tool(self, call_id: str, name: str, arguments: Any) -> ToolOutcome:
        if self.callbacks is not None:
            self.callbacks.on_function_call(call_id, name, arguments)
        if isinstance(arguments, dict):
            outcome = await self.dispatcher.execute(ToolCallRequest(name=name, arguments=arguments, call_id=call_id))
        else:
            outcome = ToolOutcome(status="error", execution_time_ms=0.0, error=f"Invalid arguments for {name}")
        if self.callbacks is not None:
            self.callbacks.on_function_result(
                call_id,
                name,
                outcome.result,
                outcome.execution_time_ms,
                outcome.status,
                outcome.error,
            )
        return outcome

    @abstractmethod
    async def _open(self, config: SessionConfig) -> None:
        """Open the vendor session; raise on failure."""

    @abstractmethod
    async def _receive(self) -> None:
        """Consume server events until the session ends."""

    @abstractmethod
    async def _send_audio(self, pcm: bytes) -> None: ...

    @abstractmethod
    async def _send_text(self, text: str) -> None: ...

    @abstractmethod
    async def _close(self) -> None:
        """Release vendor resources; must tolerate a half-open session."""
