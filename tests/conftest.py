import asyncio
import itertools
from typing import Any, Callable, List, Optional

import numpy as np
import pytest

from call_engine.config import SessionConfig
from call_engine.errors import TransportError
from call_engine.logging.flight_recorder import FlightRecorder
from call_engine.services.audio_codec import AudioBuffer
from call_engine.services.audio_output import ScheduledSource
from call_engine.services.providers.base import ProviderCallbacks, VoiceProvider


def pcm_silence(seconds, sample_rate=24000):
    return b"\x00\x00" * int(round(seconds * sample_rate))


class ManualOutput:
    """Audio output with a hand-driven clock."""

    def __init__(self, now=0.0, suspended=False):
        self.now = now
        self._suspended = suspended
        self.resume_error: Optional[Exception] = None
        self.resume_gate: Optional[asyncio.Event] = None
        self.resume_calls = 0
        self.started: List[ScheduledSource] = []
        self.buffers: List[AudioBuffer] = []
        self.closed = False

    @property
    def current_time(self):
        return self.now

    @property
    def suspended(self):
        return self._suspended

    def suspend(self):
        self._suspended = True

    async def resume(self):
        self.resume_calls += 1
        if self.resume_gate is not None:
            await self.resume_gate.wait()
        if self.resume_error is not None:
            raise self.resume_error
        self._suspended = False

    def start(self, buffer, when, on_ended=None):
        source = ScheduledSource(when, buffer.duration, on_ended)
        self.started.append(source)
        self.buffers.append(buffer)
        return source

    def advance(self, seconds):
        self.now += seconds
        for source in self.started:
            if not source.ended and source.end_time <= self.now + 1e-9:
                source.finish()

    async def close(self):
        self.closed = True


class _ManualTimer:
    def __init__(self, due, order, callback):
        self.due = due
        self.order = order
        self.callback = callback
        self.cancelled = False

    def cancel(self):
        self.cancelled = True


class ManualTimers:
    """Stand-in for ``loop.call_later`` that only fires on ``advance``."""

    def __init__(self):
        self.now = 0.0
        self._timers: List[_ManualTimer] = []
        self._order = itertools.count()

    def call_later(self, delay, callback):
        timer = _ManualTimer(self.now + delay, next(self._order), callback)
        self._timers.append(timer)
        return timer

    @property
    def pending(self):
        return [timer for timer in self._timers if not timer.cancelled]

    @property
    def delays_ms(self):
        return [round((timer.due - self.now) * 1000) for timer in self.pending]

    def advance(self, seconds):
        target = self.now + seconds
        while True:
            ready = sorted(
                (timer for timer in self.pending if timer.due <= target + 1e-9),
                key=lambda timer: (timer.due, timer.order),
            )
            if not ready:
                break
            timer = ready[0]
            self._timers.remove(timer)
            self.now = timer.due
            timer.callback()
        self.now = target


class FakeProvider(VoiceProvider):
    """Provider that records outbound traffic and lets tests inject server events."""

    name = "fake"

    def __init__(self, fail_on_open=False, reply=None, **kwargs):
        super().__init__(**kwargs)
        self.fail_on_open = fail_on_open
        self.reply = reply
        self.audio_sent: List[bytes] = []
        self.text_sent: List[str] = []
        self.opened = 0
        self.closed = 0
        self._remote_closed: Optional[asyncio.Event] = None
        self._remote_error: Optional[Exception] = None

    async def _open(self, config):
        self.opened += 1
        if self.fail_on_open:
            raise TransportError("handshake refused")
        self._remote_closed = asyncio.Event()
        self._remote_error = None

    async def _receive(self):
        await self._remote_closed.wait()
        if self._remote_error is not None:
            raise self._remote_error

    async def _send_audio(self, pcm):
        self.audio_sent.append(pcm)

    async def _send_text(self, text):
        self.text_sent.append(text)
        if self.reply is not None:
            await self.reply(self, text)

    async def _close(self):
        self.closed += 1

    def drop(self, error=None):
        self._remote_error = error
        self._remote_closed.set()


class RecordingCallbacks(ProviderCallbacks):
    def __init__(self):
        self.events: List[tuple] = []
        self.audio: List[bytes] = []

    def on_open(self):
        self.events.append(("open",))

    async def on_audio_chunk(self, chunk):
        self.audio.append(chunk)

    def on_transcript_delta(self, role, delta, turn_id, item_id=None, speech_start_time=None):
        self.events.append(("delta", role, delta, turn_id))

    def on_transcript_complete(self, role, text, speech_start_time=None, turn_id=None):
        self.events.append(("complete", role, text, turn_id))

    def on_interrupt(self):
        self.events.append(("interrupt",))

    def on_function_call(self, call_id, name, arguments):
        self.events.append(("function_call", call_id, name, arguments))

    def on_function_result(self, call_id, name, result, execution_time_ms, status, error=None):
        self.events.append(("function_result", call_id, name, result, status, error))

    def on_close(self):
        self.events.append(("close",))

    def on_error(self, exc):
        self.events.append(("error", str(exc)))

    def of(self, kind):
        return [event for event in self.events if event[0] == kind]


class FakeSource:
    def __init__(self):
        self.on_frame: Optional[Callable[[np.ndarray], Any]] = None
        self.stopped = False

    def start(self, loop, on_frame):
        self.on_frame = on_frame

    def stop(self):
        self.stopped = True
        self.on_frame = None

    def feed(self, samples):
        return self.on_frame(np.asarray(samples, dtype=np.float32))


async def settle(rounds=5):
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.fixture
def recorder():
    return FlightRecorder()


@pytest.fixture
def timers():
    return ManualTimers()


@pytest.fixture
def session_config():
    return SessionConfig(
        provider="openai",
        api_key="test-key",
        model="gpt-realtime",
        voice="alloy",
        greeting="Hello",
    )
