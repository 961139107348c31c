from __future__ import annotations

import asyncio
from typing import Any, Callable, Dict, List, Optional, Union

import logging
import numpy as np

from call_engine.errors import DeviceError
from call_engine.logging.flight_recorder import FlightRecorder
from call_engine.services.audio_codec import CAPTURE_FRAME_SIZE, float_to_pcm16, rms, twilio_payload_to_float
from call_engine.services.audio_output import load_sounddevice

logger = logging.getLogger(__name__)

FrameHandler = Callable[[np.ndarray], Any]


class AudioCapturePath:
    """Turns captured float frames into PCM16 for the provider.

    Volume is metered on every frame; mute only gates forwarding, capture
    keeps running underneath.
    """

    def __init__(
        self,
        send: Callable[[bytes], None],
        recorder: FlightRecorder,
        on_volume: Optional[Callable[[float], None]] = None,
    ) -> None:
        self.send = send
        self.recorder = recorder
        self.on_volume = on_volume
        self.volume = 0.0
        self.frames_captured = 0
        self.frames_forwarded = 0
        self._muted = False

    @property
    def muted(self) -> bool:
        return self._muted

    def mute(self) -> None:
        self._muted = True
        self.recorder.log("CAPTURE", "muted")

    def unmute(self) -> None:
        self._muted = False
        self.recorder.log("CAPTURE", "unmuted")

    def toggle_mute(self) -> bool:
        if self._muted:
            self.unmute()
        else:
            self.mute()
        return self._muted

    def process_frame(self, samples: np.ndarray) -> bool:
        self.frames_captured += 1
        self.volume = rms(samples)
        if self.on_volume is not None:
            self.on_volume(self.volume)
        if self._muted:
            return False
        self.send(float_to_pcm16(samples))
        self.frames_forwarded += 1
        return True


def list_input_devices() -> List[Dict[str, Any]]:
    devices = []
    for index, info in enumerate(load_sounddevice().query_devices()):
        if info.get("max_input_channels", 0) > 0:
            devices.append(
                {
                    "index": index,
                    "name": info.get("name"),
                    "channels": info.get("max_input_channels"),
                    "default_samplerate": info.get("default_samplerate"),
                }
            )
    return devices


def resolve_device(device: Union[int, str, None]) -> Optional[int]:
    """Map a device index, name fragment, or ``"default"`` to a sounddevice index."""
    if device is None or device == "default":
        return None
    if isinstance(device, int):
        return device
    if device.isdigit():
        return int(device)
    needle = device.lower()
    for candidate in list_input_devices():
        if needle in str(candidate["name"]).lower():
            return candidate["index"]
    raise DeviceError(f"No input device matching {device!r}")


class MicrophoneSource:
    def __init__(
        self,
        sample_rate: int,
        device: Union[int, str, None] = None,
        frame_size: int = CAPTURE_FRAME_SIZE,
    ) -> None:
        self.sample_rate = sample_rate
        self.device = device
        self.frame_size = frame_size
        self._stream: Any = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._on_frame: Optional[FrameHandler] = None

    @property
    def running(self) -> bool:
        return self._stream is not None

    def start(self, loop: asyncio.AbstractEventLoop, on_frame: FrameHandler) -> None:
        self._loop = loop
        self._on_frame = on_frame
        sd = load_sounddevice()
        try:
            stream = sd.InputStream(
                samplerate=self.sample_rate,
                channels=1,
                dtype="float32",
                blocksize=self.frame_size,
                device=resolve_device(self.device),
                callback=self._callback,
            )
            stream.start()
        except sd.PortAudioError as exc:
            raise DeviceError(f"Could not open microphone: {exc}") from exc
        self._stream = stream
        logger.info("capture.microphone_started device=%s sample_rate=%s", self.device, self.sample_rate)

    def _callback(self, indata: np.ndarray, frames: int, time_info: Any, status: Any) -> None:
        if status:
            logger.warning("capture.status %s", status)
        loop = self._loop
        if loop is None or loop.is_closed() or self._on_frame is None:
            return
        loop.call_soon_threadsafe(self._on_frame, indata[:, 0].copy())

    def stop(self) -> None:
        if self._stream is None:
            return
        stream, self._stream = self._stream, None
        stream.stop()
        stream.close()
        self._on_frame = None
        logger.info("capture.microphone_stopped device=%s", self.device)


class TwilioMediaSource:
    """Capture source fed by Twilio ``media`` events instead of a device."""

    def __init__(self, sample_rate: int) -> None:
        self.sample_rate = sample_rate
        self._on_frame: Optional[FrameHandler] = None

    @property
    def running(self) -> bool:
        return self._on_frame is not None

    def start(self, loop: asyncio.AbstractEventLoop, on_frame: FrameHandler) -> None:
        self._on_frame = on_frame

    def push(self, payload_b64: str) -> None:
        if self._on_frame is None:
            return
        samples = twilio_payload_to_float(payload_b64, self.sample_rate)
        if samples.size:
            self._on_frame(samples)

    def stop(self) -> None:
        self._on_frame = None
