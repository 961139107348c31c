from __future__ import annotations

import base64
from dataclasses import dataclass

import numpy as np

from call_engine.errors import DecodeError

TWILIO_SAMPLE_RATE = 8000
CAPTURE_FRAME_SIZE = 4096

_ULAW_BIAS = 0x84
_ULAW_CLIP = 32635


@dataclass
class AudioBuffer:
    """Decoded audio ready for an output; ``samples`` is float32 shaped (frames, channels)."""

    samples: np.ndarray
    sample_rate: int

    @property
    def frames(self) -> int:
        return int(self.samples.shape[0])

    @property
    def channels(self) -> int:
        return int(self.samples.shape[1])

    @property
    def duration(self) -> float:
        return self.frames / float(self.sample_rate)

    def mono(self) -> np.ndarray:
        if self.channels == 1:
            return self.samples[:, 0]
        return self.samples.mean(axis=1)


def decode_pcm16(chunk: bytes, sample_rate: int, channels: int = 1) -> AudioBuffer:
    """Decode little-endian 16-bit PCM into an ``AudioBuffer``."""
    if not chunk:
        raise DecodeError("empty audio chunk")
    frame_bytes = 2 * channels
    if len(chunk) % frame_bytes:
        raise DecodeError(f"audio chunk of {len(chunk)} bytes is not a whole number of {channels}-channel frames")
    pcm = np.frombuffer(chunk, dtype="<i2")
    samples = (pcm.astype(np.float32) / 32768.0).reshape(-1, channels)
    return AudioBuffer(samples=samples, sample_rate=sample_rate)


def float_to_pcm16(samples: np.ndarray) -> bytes:
    """Quantize float samples to PCM16 LE, clamping to [-1, 1] first."""
    clipped = np.clip(np.asarray(samples, dtype=np.float32), -1.0, 1.0)
    scaled = np.where(clipped < 0, clipped * 32768.0, clipped * 32767.0)
    return scaled.astype("<i2").tobytes()


def pcm16_to_float(pcm_bytes: bytes) -> np.ndarray:
    return np.frombuffer(pcm_bytes, dtype="<i2").astype(np.float32) / 32768.0


def rms(samples: np.ndarray) -> float:
    data = np.asarray(samples, dtype=np.float64)
    if data.size == 0:
        return 0.0
    return float(min(np.sqrt(np.mean(np.square(data))), 1.0))


def mulaw_to_pcm16(mulaw_bytes: bytes) -> np.ndarray:
    """G.711 mu-law decode to int16 samples."""
    if not mulaw_bytes:
        return np.zeros(0, dtype=np.int16)
    u_value = ~np.frombuffer(mulaw_bytes, dtype=np.uint8).astype(np.int32) & 0xFF
    sign = u_value & 0x80
    exponent = (u_value >> 4) & 0x07
    mantissa = u_value & 0x0F
    magnitude = (((mantissa << 3) + _ULAW_BIAS) << exponent) - _ULAW_BIAS
    return np.where(sign != 0, -magnitude, magnitude).astype(np.int16)


def pcm16_to_mulaw(samples: np.ndarray) -> bytes:
    """G.711 mu-law encode of int16 samples."""
    pcm = np.asarray(samples, dtype=np.int32)
    if pcm.size == 0:
        return b""
    sign = np.where(pcm < 0, 0x80, 0x00)
    magnitude = np.minimum(np.abs(pcm), _ULAW_CLIP) + _ULAW_BIAS
    exponent = np.clip(np.floor(np.log2(magnitude)).astype(np.int32) - 7, 0, 7)
    mantissa = (magnitude >> (exponent + 3)) & 0x0F
    encoded = ~(sign | (exponent << 4) | mantissa) & 0xFF
    return encoded.astype(np.uint8).tobytes()


def resample(samples: np.ndarray, from_rate: int, to_rate: int) -> np.ndarray:
    """Linear-interpolation resampler; keeps the input dtype."""
    if from_rate == to_rate or len(samples) == 0:
        return samples
    ratio = to_rate / from_rate
    output_length = int(len(samples) * ratio)
    positions = np.arange(output_length) / ratio
    resampled = np.interp(positions, np.arange(len(samples)), samples.astype(np.float64))
    if np.issubdtype(samples.dtype, np.integer):
        return np.round(resampled).astype(samples.dtype)
    return resampled.astype(samples.dtype)


def twilio_payload_to_float(payload_b64: str, sample_rate: int) -> np.ndarray:
    """Twilio media payload (base64 mu-law @ 8 kHz) to float samples at ``sample_rate``."""
    try:
        mulaw = base64.b64decode(payload_b64, validate=True)
    except (ValueError, TypeError) as exc:
        raise DecodeError(f"invalid Twilio media payload: {exc}") from exc
    pcm = resample(mulaw_to_pcm16(mulaw), TWILIO_SAMPLE_RATE, sample_rate)
    return pcm.astype(np.float32) / 32768.0


def float_to_twilio_payload(samples: np.ndarray, sample_rate: int) -> bytes:
    """Float samples at ``sample_rate`` to raw mu-law @ 8 kHz."""
    pcm = np.frombuffer(float_to_pcm16(samples), dtype="<i2")
    return pcm16_to_mulaw(resample(pcm, sample_rate, TWILIO_SAMPLE_RATE))
