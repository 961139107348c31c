from __future__ import annotations

import json
import logging
from typing import Dict, Optional

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from pydantic import ValidationError

from call_engine import config as call_config
from call_engine.errors import DeviceError
from call_engine.logging.flight_recorder import FlightRecorder
from call_engine.models.realtime import TwilioMediaPayload
from call_engine.services.audio_output import AmbientBed
from call_engine.services.conversation_log import HttpConversationLogger
from call_engine.services.providers import factory
from call_engine.services.realtime_loop import RealtimeLoop

router = APIRouter()

ACTIVE_CALLS: Dict[str, RealtimeLoop] = {}


def _ambient_bed(recorder: FlightRecorder) -> Optional[AmbientBed]:
    path = call_config.ambient_audio_path()
    if path is None:
        return None
    try:
        return AmbientBed.from_wav(path, call_config.ambient_volume())
    except DeviceError as exc:
        recorder.log("WS", "ambient_unavailable", level=logging.WARNING, error=str(exc))
        return None


def build_call(recorder: FlightRecorder) -> RealtimeLoop:
    provider_name = call_config.default_provider()
    return RealtimeLoop(
        recorder,
        factory.create_voice_provider(provider_name, recorder=recorder),
        conversation_logger=HttpConversationLogger(call_config.conversation_log_url()),
        config=call_config.SessionConfig.for_provider(provider_name),
        ambient=_ambient_bed(recorder),
    )


@router.websocket("/twilio/media-stream")
async def twilio_media_stream(websocket: WebSocket) -> None:
    await websocket.accept()
    recorder = FlightRecorder()
    realtime_loop = build_call(recorder)
    recorder.log("WS", "connection_accepted", remote_addr=str(websocket.client))
    try:
        while True:
            message = await websocket.receive()
            message_type = message.get("type")

            if message_type in {"websocket.disconnect", "websocket.close"}:
                recorder.log("WS", "disconnect", code=message.get("code"))
                break
            elif "text" in message and message["text"] is not None:
                try:
                    payload = TwilioMediaPayload.model_validate(json.loads(message["text"]))
                except (json.JSONDecodeError, ValidationError) as exc:
                    recorder.log("WS", "invalid_message", error=str(exc))
                    continue
                await realtime_loop.handle_event(payload, websocket)
                if payload.event == "start" and realtime_loop.stream_sid:
                    ACTIVE_CALLS[realtime_loop.stream_sid] = realtime_loop
                elif payload.event == "stop":
                    break
            elif "bytes" in message and message["bytes"] is not None:
                recorder.log("WS", "binary_ignored", bytes=len(message["bytes"]))
            else:
                recorder.log("WS", "unknown_message", keys=list(message.keys()))
    except WebSocketDisconnect:
        recorder.log("WS", "websocket_disconnect")
    except Exception as e:
        recorder.log("WS", "error", error=str(e))
        raise
    finally:
        if realtime_loop.stream_sid:
            ACTIVE_CALLS.pop(realtime_loop.stream_sid, None)
        await realtime_loop.disconnect()
