from __future__ import annotations

from dataclasses import dataclass

from call_engine.logging.flight_recorder import FlightRecorder
from call_engine.services.playback import PlaybackScheduler
from call_engine.services.timing import TranscriptTimingController


@dataclass
class InterruptReport:
    stopped_sources: int
    terminated_entries: int


class InterruptHandler:
    """Barge-in: silence playback and close the assistant's open turns in one step."""

    def __init__(self, scheduler: PlaybackScheduler, timing: TranscriptTimingController, recorder: FlightRecorder) -> None:
        self.scheduler = scheduler
        self.timing = timing
        self.recorder = recorder

    def handle(self) -> InterruptReport:
        with self.recorder.stage("INTERRUPT"):
            stopped = self.scheduler.flush()
            terminated = self.timing.interrupt()
        report = InterruptReport(stopped_sources=stopped, terminated_entries=len(terminated))
        self.recorder.log(
            "INTERRUPT",
            "handled",
            stopped_sources=report.stopped_sources,
            terminated_entries=report.terminated_entries,
        )
        return report
