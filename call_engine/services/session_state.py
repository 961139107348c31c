from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Optional, Tuple

from call_engine.models.transcript import utcnow


@dataclass(frozen=True)
class Observation:
    """Identity fields reserved for a transcript entry when its first event arrives."""

    sequence_number: int
    created_at: datetime


class SessionState:
    """Mutable bookkeeping shared by the transcript components of one call.

    ``generation`` changes whenever a session starts, ends, or the transcript
    is cleared; delayed callbacks capture it and become no-ops once it moves.
    """

    def __init__(self) -> None:
        self.session_id = uuid.uuid4().hex
        self.generation = 0
        self.active = False
        self.delta_counts: Dict[str, int] = {}
        self._sequence = 0
        self._observations: Dict[Tuple[str, str], Observation] = {}

    def begin(self) -> int:
        self.session_id = uuid.uuid4().hex
        self.active = True
        self.generation += 1
        self.delta_counts.clear()
        self._observations.clear()
        return self.generation

    def end(self) -> None:
        self.active = False
        self.generation += 1
        self.delta_counts.clear()

    def is_current(self, generation: int) -> bool:
        return self.active and generation == self.generation

    def next_sequence(self) -> int:
        self._sequence += 1
        return self._sequence

    @property
    def last_sequence(self) -> int:
        return self._sequence

    def observe(self, role: str, turn_id: Optional[str], speech_start_time: Optional[datetime] = None) -> Observation:
        """Reserve (or return the existing) identity for ``(role, turn_id)``.

        Anonymous events (no ``turn_id``) always get a fresh reservation.
        """
        if turn_id is None:
            return Observation(self.next_sequence(), speech_start_time or utcnow())
        key = (role, turn_id)
        observation = self._observations.get(key)
        if observation is None:
            observation = Observation(self.next_sequence(), speech_start_time or utcnow())
            self._observations[key] = observation
        return observation

    def bump_delta_count(self, turn_id: str) -> int:
        """Return how many deltas were seen for ``turn_id`` before this one."""
        count = self.delta_counts.get(turn_id, 0)
        self.delta_counts[turn_id] = count + 1
        return count

    def reset_transcript(self) -> None:
        self._sequence = 0
        self._observations.clear()
        self.delta_counts.clear()
        self.generation += 1
