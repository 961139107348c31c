from __future__ import annotations

from typing import Any, Dict, Optional

import httpx
from fastapi import APIRouter, HTTPException

from call_engine.config import SessionConfig

router = APIRouter()

OPENAI_REALTIME_SESSIONS_URL = "https://api.openai.com/v1/realtime/sessions"


@router.post("/realtime-session")
async def create_realtime_session(body: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Mint an ephemeral realtime session for a client that talks to OpenAI directly."""
    body = body or {}
    config = SessionConfig.for_provider("openai", model=body.get("model"), voice=body.get("voice"))
    if not config.api_key:
        raise HTTPException(status_code=500, detail="OPENAI_API_KEY not configured")

    payload = {
        "model": config.model,
        "voice": config.voice,
        "modalities": body.get("modalities") or ["audio", "text"],
        "instructions": body.get("instructions") or config.system_instruction,
        "input_audio_transcription": {"model": "whisper-1"},
        "turn_detection": {"type": "server_vad"},
    }
    headers = {
        "Authorization": f"Bearer {config.api_key}",
        "Content-Type": "application/json",
    }

    async with httpx.AsyncClient(timeout=httpx.Timeout(10.0, connect=5.0)) as client:
        resp = await client.post(OPENAI_REALTIME_SESSIONS_URL, json=payload, headers=headers)
    try:
        resp.raise_for_status()
    except httpx.HTTPStatusError as exc:
        raise HTTPException(status_code=exc.response.status_code, detail=exc.response.text) from exc

    return resp.json()
