from __future__ import annotations

from fastapi import APIRouter, HTTPException

from call_engine.models.transcript import TranscriptSnapshot
from call_engine.routes.ws import ACTIVE_CALLS

router = APIRouter()


@router.get("/{stream_sid}/transcript", response_model=TranscriptSnapshot)
def get_transcript(stream_sid: str) -> TranscriptSnapshot:
    call = ACTIVE_CALLS.get(stream_sid)
    if call is None:
        raise HTTPException(status_code=404, detail=f"No active call for stream {stream_sid}")
    return TranscriptSnapshot(stream_sid=stream_sid, entries=call.transcript_items)
