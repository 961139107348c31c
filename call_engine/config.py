from __future__ import annotations

import os
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

DEFAULT_GREETING = "Hello"
DEFAULT_SYSTEM_INSTRUCTION = "You are a helpful voice assistant on a phone call. Keep answers short and conversational."

_PROVIDER_DEFAULTS: Dict[str, Dict[str, Any]] = {
    "openai": {
        "model": "gpt-realtime",
        "voice": "alloy",
        "input_sample_rate": 24000,
        "output_sample_rate": 24000,
    },
    "gemini": {
        "model": "gemini-2.5-flash-native-audio-preview-09-2025",
        "voice": "Zephyr",
        "input_sample_rate": 16000,
        "output_sample_rate": 24000,
    },
}


class SessionConfig(BaseModel):
    provider: str
    api_key: Optional[str] = None
    model: str
    voice: str
    system_instruction: str = DEFAULT_SYSTEM_INSTRUCTION
    enabled_tools: List[str] = Field(default_factory=list)
    input_sample_rate: int = 24000
    output_sample_rate: int = 24000
    greeting: Optional[str] = DEFAULT_GREETING

    @classmethod
    def for_provider(cls, name: str, **overrides: Any) -> "SessionConfig":
        """Build a config for ``name`` from the environment; keyword overrides win."""
        if name not in _PROVIDER_DEFAULTS:
            raise ValueError(f"Unknown voice provider: {name}")
        values: Dict[str, Any] = {"provider": name, **_PROVIDER_DEFAULTS[name]}
        if name == "openai":
            values["api_key"] = os.getenv("OPENAI_API_KEY")
            values["model"] = os.getenv("OPENAI_REALTIME_MODEL") or values["model"]
            values["voice"] = os.getenv("OPENAI_REALTIME_VOICE") or values["voice"]
        else:
            values["api_key"] = os.getenv("GEMINI_API_KEY") or os.getenv("GOOGLE_API_KEY")
            values["model"] = os.getenv("GEMINI_LIVE_MODEL") or values["model"]
            values["voice"] = os.getenv("GEMINI_LIVE_VOICE") or values["voice"]

        instruction = os.getenv("CALL_SYSTEM_INSTRUCTION")
        if instruction:
            values["system_instruction"] = instruction
        greeting = os.getenv("CALL_GREETING")
        if greeting is not None:
            values["greeting"] = greeting or None
        tools = os.getenv("CALL_ENABLED_TOOLS")
        if tools:
            values["enabled_tools"] = [tool.strip() for tool in tools.split(",") if tool.strip()]

        values.update({key: value for key, value in overrides.items() if value is not None})
        return cls(**values)


def default_provider() -> str:
    return os.getenv("CALL_PROVIDER", "openai").lower()


def conversation_log_url() -> Optional[str]:
    return os.getenv("CONVERSATION_LOG_URL") or None


def ambient_audio_path() -> Optional[str]:
    return os.getenv("CALL_AMBIENT_AUDIO") or None


def ambient_volume() -> float:
    return float(os.getenv("CALL_AMBIENT_VOLUME", "0.3"))
