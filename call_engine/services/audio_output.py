from __future__ import annotations

import asyncio
import base64
import itertools
import threading
import wave
from typing import Any, Callable, Dict, List, Optional, Protocol, Tuple, Union

import logging
import numpy as np
from fastapi import WebSocket

from call_engine.errors import DecodeError, DeviceError
from call_engine.services.audio_codec import (
    TWILIO_SAMPLE_RATE,
    AudioBuffer,
    decode_pcm16,
    float_to_twilio_payload,
    resample,
)

logger = logging.getLogger(__name__)

TWILIO_FRAME_BYTES = 160
AMBIENT_TICK_SECONDS = 0.02


def load_sounddevice() -> Any:
    """Import sounddevice on first use; it needs the PortAudio system library."""
    try:
        import sounddevice
    except OSError as exc:
        raise DeviceError(f"PortAudio is not available: {exc}") from exc
    return sounddevice


class ScheduledSource:
    """One buffer handed to an output at a fixed start time on the output clock."""

    _ids = itertools.count(1)

    def __init__(
        self,
        start_time: float,
        duration: float,
        on_ended: Optional[Callable[["ScheduledSource"], None]] = None,
        stopper: Optional[Callable[["ScheduledSource"], None]] = None,
    ) -> None:
        self.id = next(self._ids)
        self.start_time = start_time
        self.duration = duration
        self.stopped = False
        self.ended = False
        self._on_ended = on_ended
        self._stopper = stopper

    @property
    def end_time(self) -> float:
        return self.start_time + self.duration

    def stop(self) -> None:
        if self.ended:
            return
        self.stopped = True
        if self._stopper is not None:
            self._stopper(self)
        self.finish()

    def finish(self) -> None:
        if self.ended:
            return
        self.ended = True
        if self._on_ended is not None:
            self._on_ended(self)


class AudioOutput(Protocol):
    @property
    def current_time(self) -> float: ...

    @property
    def suspended(self) -> bool: ...

    async def resume(self) -> None: ...

    def start(
        self,
        buffer: AudioBuffer,
        when: float,
        on_ended: Optional[Callable[[ScheduledSource], None]] = None,
    ) -> ScheduledSource: ...

    async def close(self) -> None: ...


class _Voice:
    __slots__ = ("source", "samples", "start_frame")

    def __init__(self, source: ScheduledSource, samples: np.ndarray, start_frame: int) -> None:
        self.source = source
        self.samples = samples
        self.start_frame = start_frame

    @property
    def end_frame(self) -> int:
        return self.start_frame + self.samples.shape[0]


class SoundDeviceOutput:
    """Local speaker output.

    The clock is the number of frames the device callback has rendered; every
    scheduled buffer is mixed in at its frame position from the callback
    thread, and end notifications are marshalled back onto the event loop.
    """

    def __init__(
        self,
        sample_rate: int = 24000,
        channels: int = 1,
        device: Union[int, str, None] = None,
        blocksize: int = 0,
    ) -> None:
        self.sample_rate = sample_rate
        self.channels = channels
        self.device = device
        self.blocksize = blocksize
        self._stream: Any = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._lock = threading.Lock()
        self._voices: List[_Voice] = []
        self._frames_rendered = 0

    @property
    def current_time(self) -> float:
        with self._lock:
            return self._frames_rendered / float(self.sample_rate)

    @property
    def suspended(self) -> bool:
        return self._stream is None or not self._stream.active

    async def resume(self) -> None:
        if not self.suspended:
            return
        self._loop = asyncio.get_running_loop()
        sd = load_sounddevice()
        try:
            if self._stream is None:
                self._stream = sd.OutputStream(
                    samplerate=self.sample_rate,
                    channels=self.channels,
                    dtype="float32",
                    device=self.device,
                    blocksize=self.blocksize,
                    callback=self._render,
                )
            self._stream.start()
        except sd.PortAudioError as exc:
            self._stream = None
            raise DeviceError(f"Could not open audio output: {exc}") from exc
        logger.info("audio_output.started device=%s sample_rate=%s", self.device, self.sample_rate)

    def start(
        self,
        buffer: AudioBuffer,
        when: float,
        on_ended: Optional[Callable[[ScheduledSource], None]] = None,
    ) -> ScheduledSource:
        samples = buffer.samples
        if buffer.channels != self.channels:
            samples = np.repeat(buffer.mono()[:, None], self.channels, axis=1)
        source = ScheduledSource(when, buffer.duration, on_ended, stopper=self._remove)
        with self._lock:
            start_frame = max(int(round(when * self.sample_rate)), self._frames_rendered)
            self._voices.append(_Voice(source, samples, start_frame))
        return source

    def _remove(self, source: ScheduledSource) -> None:
        with self._lock:
            self._voices = [voice for voice in self._voices if voice.source is not source]

    def _render(self, outdata: np.ndarray, frames: int, time_info: Any, status: Any) -> None:
        if status:
            logger.warning("audio_output.status %s", status)
        outdata.fill(0)
        finished: List[ScheduledSource] = []
        with self._lock:
            block_start = self._frames_rendered
            block_end = block_start + frames
            remaining: List[_Voice] = []
            for voice in self._voices:
                lo = max(block_start, voice.start_frame)
                hi = min(block_end, voice.end_frame)
                if hi > lo:
                    outdata[lo - block_start : hi - block_start] += voice.samples[lo - voice.start_frame : hi - voice.start_frame]
                if voice.end_frame <= block_end:
                    finished.append(voice.source)
                else:
                    remaining.append(voice)
            self._voices = remaining
            self._frames_rendered = block_end
        np.clip(outdata, -1.0, 1.0, out=outdata)
        loop = self._loop
        if finished and loop is not None and not loop.is_closed():
            for source in finished:
                loop.call_soon_threadsafe(source.finish)

    async def close(self) -> None:
        with self._lock:
            voices, self._voices = self._voices, []
        for voice in voices:
            voice.source.stopped = True
            voice.source.finish()
        if self._stream is not None:
            stream, self._stream = self._stream, None
            stream.stop()
            stream.close()
            logger.info("audio_output.closed device=%s", self.device)


class AmbientBed:
    """Looping background sound at 8 kHz, already scaled to its playback volume."""

    def __init__(self, samples: np.ndarray, volume: float = 0.3) -> None:
        samples = np.asarray(samples, dtype=np.float32)
        if samples.size == 0:
            raise ValueError("ambient audio is empty")
        self.samples = samples * float(min(max(volume, 0.0), 1.0))
        self.position = 0

    @classmethod
    def from_wav(cls, path: str, volume: float = 0.3) -> "AmbientBed":
        try:
            with wave.open(path, "rb") as wav_file:
                if wav_file.getsampwidth() != 2:
                    raise DeviceError(f"ambient audio {path} must be 16-bit PCM")
                channels = wav_file.getnchannels()
                sample_rate = wav_file.getframerate()
                pcm = wav_file.readframes(wav_file.getnframes())
            buffer = decode_pcm16(pcm, sample_rate, channels)
        except (OSError, EOFError, wave.Error, DecodeError) as exc:
            raise DeviceError(f"Could not load ambient audio {path}: {exc}") from exc
        logger.info("ambient.loaded path=%s seconds=%.1f volume=%s", path, buffer.duration, volume)
        return cls(resample(buffer.mono(), sample_rate, TWILIO_SAMPLE_RATE), volume)

    def take(self, count: int) -> np.ndarray:
        indices = (self.position + np.arange(count)) % self.samples.shape[0]
        self.position = (self.position + count) % self.samples.shape[0]
        return self.samples[indices]

    def mix(self, samples: np.ndarray) -> np.ndarray:
        """Add the next stretch of the bed under 8 kHz ``samples``."""
        return samples + self.take(samples.shape[0])


class TwilioMediaOutput:
    """Plays buffers into a Twilio media stream.

    The clock is the event-loop clock since ``resume()``. Buffers are
    converted to mu-law @ 8 kHz and queued as ``media`` frames; a writer task
    drains the queue. Stopping a buffer discards its unsent frames and asks
    Twilio to ``clear`` whatever it has already buffered.

    With an ``ambient`` bed the bed is mixed under every buffer, and fills the
    line in 20 ms frames whenever nothing else is playing.
    """

    def __init__(self, websocket: WebSocket, stream_sid: str, ambient: Optional[AmbientBed] = None) -> None:
        self.websocket = websocket
        self.stream_sid = stream_sid
        self.ambient = ambient
        self._origin: Optional[float] = None
        self._outbox: "asyncio.Queue[Tuple[Optional[ScheduledSource], Dict[str, Any]]]" = asyncio.Queue()
        self._writer: Optional[asyncio.Task] = None
        self._ambient_task: Optional[asyncio.Task] = None
        self._timers: Dict[int, asyncio.TimerHandle] = {}
        self._clear_pending = False
        self.frames_sent = 0

    @property
    def current_time(self) -> float:
        if self._origin is None:
            return 0.0
        return asyncio.get_running_loop().time() - self._origin

    @property
    def suspended(self) -> bool:
        return self._writer is None or self._writer.done()

    async def resume(self) -> None:
        if not self.suspended:
            return
        loop = asyncio.get_running_loop()
        if self._origin is None:
            self._origin = loop.time()
        self._writer = asyncio.create_task(self._drain())
        if self.ambient is not None and (self._ambient_task is None or self._ambient_task.done()):
            self._ambient_task = asyncio.create_task(self._fill_with_ambient())

    def start(
        self,
        buffer: AudioBuffer,
        when: float,
        on_ended: Optional[Callable[[ScheduledSource], None]] = None,
    ) -> ScheduledSource:
        source = ScheduledSource(when, buffer.duration, on_ended, stopper=self._discard)
        if self.ambient is not None:
            mulaw = float_to_twilio_payload(
                self.ambient.mix(resample(buffer.mono(), buffer.sample_rate, TWILIO_SAMPLE_RATE)), TWILIO_SAMPLE_RATE
            )
        else:
            mulaw = float_to_twilio_payload(buffer.mono(), buffer.sample_rate)
        for offset in range(0, len(mulaw), TWILIO_FRAME_BYTES):
            frame = mulaw[offset : offset + TWILIO_FRAME_BYTES]
            self._outbox.put_nowait(
                (
                    source,
                    {
                        "event": "media",
                        "streamSid": self.stream_sid,
                        "media": {"payload": base64.b64encode(frame).decode()},
                    },
                )
            )
        self._outbox.put_nowait(
            (source, {"event": "mark", "streamSid": self.stream_sid, "mark": {"name": f"chunk-{source.id}"}})
        )
        loop = asyncio.get_running_loop()
        origin = self._origin if self._origin is not None else loop.time()
        self._timers[source.id] = loop.call_at(origin + source.end_time, self._ended, source)
        return source

    def _ended(self, source: ScheduledSource) -> None:
        self._timers.pop(source.id, None)
        source.finish()

    def _discard(self, source: ScheduledSource) -> None:
        timer = self._timers.pop(source.id, None)
        if timer is not None:
            timer.cancel()
        if not self._clear_pending:
            self._clear_pending = True
            self._outbox.put_nowait((None, {"event": "clear", "streamSid": self.stream_sid}))

    async def _fill_with_ambient(self) -> None:
        while True:
            await asyncio.sleep(AMBIENT_TICK_SECONDS)
            if self.suspended:
                return
            if self._timers or not self._outbox.empty():
                continue
            frame = float_to_twilio_payload(self.ambient.take(TWILIO_FRAME_BYTES), TWILIO_SAMPLE_RATE)
            self._outbox.put_nowait(
                (
                    None,
                    {
                        "event": "media",
                        "streamSid": self.stream_sid,
                        "media": {"payload": base64.b64encode(frame).decode()},
                    },
                )
            )

    async def _drain(self) -> None:
        while True:
            source, message = await self._outbox.get()
            if source is not None and source.stopped:
                continue
            if message["event"] == "clear":
                self._clear_pending = False
            elif message["event"] == "media":
                self.frames_sent += 1
            try:
                await self.websocket.send_json(message)
            except Exception as exc:  # noqa: BLE001
                logger.warning("twilio_output.send_failed stream_sid=%s err=%s", self.stream_sid, exc)
                return

    async def close(self) -> None:
        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()
        if self._ambient_task is not None:
            self._ambient_task.cancel()
            try:
                await self._ambient_task
            except asyncio.CancelledError:
                pass
            self._ambient_task = None
        if self._writer is not None:
            self._writer.cancel()
            try:
                await self._writer
            except asyncio.CancelledError:
                pass
            self._writer = None
        self._origin = None
