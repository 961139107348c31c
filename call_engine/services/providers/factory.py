from __future__ import annotations

from typing import Optional

from call_engine.logging.flight_recorder import FlightRecorder
from call_engine.services.providers.base import VoiceProvider
from call_engine.services.providers.gemini_live import GeminiLiveProvider
from call_engine.services.providers.openai_realtime import OpenAIRealtimeProvider
from call_engine.services.tool_dispatcher import ToolDispatcher

PROVIDERS = {
    "openai": OpenAIRealtimeProvider,
    "gemini": GeminiLiveProvider,
}


def create_voice_provider(
    name: str,
    dispatcher: Optional[ToolDispatcher] = None,
    recorder: Optional[FlightRecorder] = None,
) -> VoiceProvider:
    provider_cls = PROVIDERS.get(name.lower())
    if provider_cls is None:
        raise ValueError(f"Unknown voice provider: {name}")
    return provider_cls(dispatcher=dispatcher, recorder=recorder)
