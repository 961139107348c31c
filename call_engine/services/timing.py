from __future__ import annotations

import asyncio
import itertools
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

import logging

from call_engine.errors import CorrelationError
from call_engine.logging.flight_recorder import FlightRecorder
from call_engine.models.transcript import Role, SpeechTurn, ToolStatus
from call_engine.services.session_state import SessionState
from call_engine.services.transcript_assembler import TranscriptAssembler

logger = logging.getLogger(__name__)

DELTA_PACING_MS = 60

CallLater = Callable[[float, Callable[[], None]], Any]


@dataclass
class _PendingUpdate:
    token: int
    role: Role
    kind: str
    due: float
    apply: Callable[[], Any]
    handle: Any = None


class TranscriptTimingController:
    """Holds transcript updates back until the matching audio is audible.

    Identity (sequence number, created_at) is reserved when an event arrives;
    only the visible update is delayed, by the scheduler's current lead time
    plus a per-delta pacing step.
    """

    def __init__(
        self,
        assembler: TranscriptAssembler,
        state: SessionState,
        lead_time: Callable[[], float],
        recorder: FlightRecorder,
        call_later: Optional[CallLater] = None,
    ) -> None:
        self.assembler = assembler
        self.state = state
        self.lead_time = lead_time
        self.recorder = recorder
        self._call_later = call_later or _loop_call_later
        self._pending: Dict[int, _PendingUpdate] = {}
        self._tokens = itertools.count(1)

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def _lead_ms(self) -> int:
        return int(max(0.0, self.lead_time()) * 1000 + 0.5)

    def on_transcript_delta(
        self,
        role: Role,
        delta: str,
        turn_id: Optional[str],
        item_id: Optional[str] = None,
        speech_start_time: Optional[datetime] = None,
    ) -> None:
        observation = self.state.observe(role, turn_id, speech_start_time)
        count = self.state.bump_delta_count(turn_id) if turn_id is not None else 0
        delay_ms = self._lead_ms() + DELTA_PACING_MS * count
        self._schedule(
            delay_ms,
            role,
            "delta",
            lambda: self.assembler.apply_delta(role, delta, turn_id, observation, item_id),
        )

    def on_transcript_complete(
        self,
        role: Role,
        text: str,
        speech_start_time: Optional[datetime] = None,
        turn_id: Optional[str] = None,
    ) -> None:
        observation = self.state.observe(role, turn_id, speech_start_time)
        if turn_id is not None:
            self.state.delta_counts.pop(turn_id, None)
        self._schedule(
            self._lead_ms(),
            role,
            "complete",
            lambda: self.assembler.apply_complete(role, text, turn_id, observation),
        )

    def on_function_call(self, call_id: str, name: str, arguments: Any) -> None:
        self.assembler.begin_tool_call(call_id, name, arguments)
        self.recorder.log("TOOL", "call_started", call_id=call_id, function=name)

    def on_function_result(
        self,
        call_id: str,
        name: str,
        result: Any,
        execution_time_ms: Optional[float],
        status: ToolStatus,
        error: Optional[str] = None,
    ) -> None:
        self.assembler.resolve_tool_call(call_id, result, status, execution_time_ms, error)
        self.recorder.log("TOOL", "call_resolved", call_id=call_id, function=name, status=status)

    def interrupt(self) -> List[SpeechTurn]:
        """Flush pending assistant deltas now, then finalize open assistant turns."""
        flushed = sorted(
            (update for update in self._pending.values() if update.role == "assistant" and update.kind == "delta"),
            key=lambda update: (update.due, update.token),
        )
        for update in flushed:
            self._pending.pop(update.token, None)
            if update.handle is not None:
                update.handle.cancel()
            self._run(update.apply)
        terminated = self.assembler.terminate_partials("assistant")
        self.recorder.log("TRANSCRIPT", "interrupted", flushed=len(flushed), terminated=len(terminated))
        return terminated

    def cancel_pending(self) -> int:
        updates = list(self._pending.values())
        self._pending.clear()
        for update in updates:
            if update.handle is not None:
                update.handle.cancel()
        return len(updates)

    def _schedule(self, delay_ms: int, role: Role, kind: str, apply: Callable[[], Any]) -> None:
        if delay_ms <= 0:
            self._run(apply)
            return
        generation = self.state.generation
        update = _PendingUpdate(
            token=next(self._tokens),
            role=role,
            kind=kind,
            due=time.monotonic() + delay_ms / 1000.0,
            apply=apply,
        )

        def fire() -> None:
            if self._pending.pop(update.token, None) is None:
                return
            if not self.state.is_current(generation):
                logger.debug("timing.stale_update_skipped kind=%s role=%s", kind, role)
                return
            self._run(apply)

        self._pending[update.token] = update
        update.handle = self._call_later(delay_ms / 1000.0, fire)

    def _run(self, apply: Callable[[], Any]) -> None:
        try:
            apply()
        except CorrelationError as exc:
            self.recorder.log("TRANSCRIPT", "event_dropped", level=logging.WARNING, reason=str(exc))


def _loop_call_later(delay: float, callback: Callable[[], None]) -> asyncio.TimerHandle:
    return asyncio.get_running_loop().call_later(delay, callback)
