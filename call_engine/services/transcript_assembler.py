from __future__ import annotations

import uuid
from typing import Any, Callable, List, Optional

import logging

from call_engine.errors import CorrelationError
from call_engine.models.transcript import (
    INTERRUPTED_MARKER,
    Role,
    SpeechTurn,
    ToolInvocation,
    ToolStatus,
    TranscriptChange,
    TranscriptEntry,
    utcnow,
)
from call_engine.services.session_state import Observation, SessionState

logger = logging.getLogger(__name__)

TranscriptListener = Callable[[TranscriptEntry, TranscriptChange], None]


class TranscriptAssembler:
    """Builds the ordered transcript out of streamed delta/complete events.

    Each ``(role, turn_id)`` moves through absent -> partial -> complete.
    A complete turn is written once; duplicate completes and late deltas for
    it are ignored. Entries are kept sorted by ``sequence_number`` and are only
    ever updated in place, never reordered or removed (``clear`` aside).
    """

    def __init__(self, state: SessionState, listener: Optional[TranscriptListener] = None) -> None:
        self.state = state
        self.listener = listener
        self._entries: List[TranscriptEntry] = []

    @property
    def entries(self) -> List[TranscriptEntry]:
        return list(self._entries)

    def get(self, entry_id: str) -> Optional[TranscriptEntry]:
        for entry in self._entries:
            if entry.id == entry_id:
                return entry
        return None

    def apply_delta(
        self,
        role: Role,
        delta: str,
        turn_id: Optional[str],
        observation: Observation,
        item_id: Optional[str] = None,
    ) -> Optional[SpeechTurn]:
        if turn_id is not None:
            if self._find_complete(turn_id) is not None:
                logger.debug("transcript.late_delta_dropped role=%s turn_id=%s", role, turn_id)
                return None
            partial = self._find_partial(role, turn_id)
        else:
            partial = self._latest_partial(role)
            if partial is None:
                raise CorrelationError(f"{role} delta has no turn id and no open {role} turn")

        if partial is not None:
            partial.text += delta
            partial.timestamp = utcnow()
            if item_id and not partial.item_id:
                partial.item_id = item_id
            self._emit(partial, "updated")
            return partial

        entry = SpeechTurn(
            id=self._entry_id(turn_id),
            role=role,
            text=delta,
            is_partial=True,
            created_at=observation.created_at,
            sequence_number=observation.sequence_number,
            turn_id=turn_id,
            item_id=item_id,
        )
        self._insert(entry)
        self._emit(entry, "created")
        return entry

    def apply_complete(
        self,
        role: Role,
        text: str,
        turn_id: Optional[str],
        observation: Observation,
    ) -> Optional[SpeechTurn]:
        if turn_id is not None and self._find_complete(turn_id) is not None:
            logger.debug("transcript.duplicate_complete role=%s turn_id=%s", role, turn_id)
            return None

        partial = self._find_partial(role, turn_id) if turn_id is not None else None
        if partial is None:
            # best effort: the most recent open turn of this role
            partial = self._latest_partial(role)

        if partial is not None:
            partial.text = text
            partial.is_partial = False
            partial.turn_id = turn_id or partial.turn_id
            partial.timestamp = utcnow()
            self._emit(partial, "completed")
            return partial

        entry = SpeechTurn(
            id=self._entry_id(turn_id),
            role=role,
            text=text,
            is_partial=False,
            created_at=observation.created_at,
            sequence_number=observation.sequence_number,
            turn_id=turn_id,
        )
        self._insert(entry)
        self._emit(entry, "completed")
        return entry

    def begin_tool_call(self, call_id: str, function_name: str, arguments: Any) -> ToolInvocation:
        existing = self._find_tool(call_id)
        if existing is not None:
            logger.warning("transcript.duplicate_tool_call call_id=%s", call_id)
            return existing
        now = utcnow()
        entry = ToolInvocation(
            id=self._entry_id(call_id),
            call_id=call_id,
            function_name=function_name,
            arguments=arguments,
            created_at=now,
            timestamp=now,
            sequence_number=self.state.next_sequence(),
        )
        self._insert(entry)
        self._emit(entry, "tool_started")
        return entry

    def resolve_tool_call(
        self,
        call_id: str,
        result: Any,
        status: ToolStatus,
        execution_time_ms: Optional[float] = None,
        error: Optional[str] = None,
    ) -> Optional[ToolInvocation]:
        entry = self._find_tool(call_id)
        if entry is None:
            logger.warning("transcript.unknown_tool_result call_id=%s", call_id)
            return None
        if entry.status != "pending":
            logger.warning("transcript.tool_already_resolved call_id=%s status=%s", call_id, entry.status)
            return None
        entry.result = result
        entry.status = status
        entry.execution_time_ms = execution_time_ms
        entry.error_message = error
        entry.timestamp = utcnow()
        self._emit(entry, "tool_resolved")
        return entry

    def terminate_partials(self, role: Role = "assistant", marker: str = INTERRUPTED_MARKER) -> List[SpeechTurn]:
        terminated = []
        for entry in self._entries:
            if isinstance(entry, SpeechTurn) and entry.role == role and entry.is_partial:
                entry.text += marker
                entry.is_partial = False
                entry.timestamp = utcnow()
                terminated.append(entry)
                self._emit(entry, "interrupted")
        return terminated

    def clear(self) -> None:
        self._entries.clear()

    def _emit(self, entry: TranscriptEntry, change: TranscriptChange) -> None:
        if self.listener is not None:
            self.listener(entry, change)

    def _insert(self, entry: TranscriptEntry) -> None:
        index = len(self._entries)
        while index > 0 and self._entries[index - 1].sequence_number > entry.sequence_number:
            index -= 1
        self._entries.insert(index, entry)

    def _entry_id(self, preferred: Optional[str]) -> str:
        if preferred and self.get(preferred) is None:
            return preferred
        return uuid.uuid4().hex

    def _find_complete(self, turn_id: str) -> Optional[SpeechTurn]:
        for entry in self._entries:
            if isinstance(entry, SpeechTurn) and entry.turn_id == turn_id and not entry.is_partial:
                return entry
        return None

    def _find_partial(self, role: Role, turn_id: str) -> Optional[SpeechTurn]:
        for entry in self._entries:
            if isinstance(entry, SpeechTurn) and entry.is_partial and entry.role == role and entry.turn_id == turn_id:
                return entry
        return None

    def _latest_partial(self, role: Role) -> Optional[SpeechTurn]:
        for entry in reversed(self._entries):
            if isinstance(entry, SpeechTurn) and entry.is_partial and entry.role == role:
                return entry
        return None

    def _find_tool(self, call_id: str) -> Optional[ToolInvocation]:
        for entry in self._entries:
            if isinstance(entry, ToolInvocation) and entry.call_id == call_id:
                return entry
        return None
