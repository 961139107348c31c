from __future__ import annotations

import asyncio
from typing import Callable, Optional, Set

import logging

from call_engine.errors import DecodeError
from call_engine.logging.flight_recorder import FlightRecorder
from call_engine.services.audio_codec import decode_pcm16
from call_engine.services.audio_output import AudioOutput, ScheduledSource

logger = logging.getLogger(__name__)


class PlaybackScheduler:
    """Schedules synthesized audio chunks back to back on an output clock.

    ``cursor`` is the output time at which the next chunk starts, ``lead_time``
    how far ahead of the clock the last chunk was scheduled. Chunks are placed
    strictly in arrival order so playback never gaps or overlaps.
    """

    def __init__(
        self,
        output: AudioOutput,
        recorder: FlightRecorder,
        sample_rate: int = 24000,
        channels: int = 1,
        on_error: Optional[Callable[[Exception], None]] = None,
    ) -> None:
        self.output = output
        self.recorder = recorder
        self.sample_rate = sample_rate
        self.channels = channels
        self.on_error = on_error
        self.cursor = output.current_time
        self.lead_time = 0.0
        self._sources: Set[ScheduledSource] = set()
        self._lock = asyncio.Lock()
        self._epoch = 0
        self._closed = False

    @property
    def scheduled_count(self) -> int:
        return len(self._sources)

    async def on_audio_chunk(self, chunk: bytes) -> Optional[ScheduledSource]:
        epoch = self._epoch
        async with self._lock:
            if self._closed or epoch != self._epoch:
                logger.debug("playback.chunk_discarded reason=flushed")
                return None
            if self.output.suspended:
                try:
                    await self.output.resume()
                except Exception as exc:  # noqa: BLE001
                    self.recorder.log("PLAYBACK", "resume_failed", level=logging.ERROR, error=str(exc))
                    if self.on_error is not None:
                        self.on_error(exc)
                    return None
                if self._closed or epoch != self._epoch:
                    return None
            try:
                buffer = decode_pcm16(chunk, self.sample_rate, self.channels)
            except DecodeError as exc:
                self.recorder.log("PLAYBACK", "chunk_dropped", level=logging.WARNING, reason=str(exc))
                return None

            now = self.output.current_time
            start = max(self.cursor, now)
            source = self.output.start(buffer, start, self._on_source_ended)
            self._sources.add(source)
            self.cursor = start + buffer.duration
            self.lead_time = max(0.0, start - now)
            logger.debug(
                "playback.scheduled start=%.3f duration=%.3f lead=%.3f",
                start,
                buffer.duration,
                self.lead_time,
            )
            return source

    def _on_source_ended(self, source: ScheduledSource) -> None:
        self._sources.discard(source)

    def flush(self) -> int:
        """Stop everything scheduled and snap the cursor back to the clock."""
        sources = list(self._sources)
        self._sources.clear()
        for source in sources:
            source.stop()
        self.cursor = self.output.current_time
        self.lead_time = 0.0
        self._epoch += 1
        self.recorder.log("PLAYBACK", "flushed", stopped=len(sources))
        return len(sources)

    async def close(self) -> None:
        if self._closed:
            return
        self.flush()
        self._closed = True
        await self.output.close()
