import base64

import numpy as np
import pytest

from call_engine.errors import DecodeError
from call_engine.services.audio_codec import (
    decode_pcm16,
    float_to_pcm16,
    float_to_twilio_payload,
    mulaw_to_pcm16,
    pcm16_to_float,
    pcm16_to_mulaw,
    resample,
    rms,
    twilio_payload_to_float,
)


def test_decode_pcm16_reports_duration():
    buffer = decode_pcm16(b"\x00\x00" * 12000, 24000)
    assert buffer.frames == 12000
    assert buffer.channels == 1
    assert buffer.duration == pytest.approx(0.5)


def test_decode_pcm16_rejects_empty_and_odd_chunks():
    with pytest.raises(DecodeError):
        decode_pcm16(b"", 24000)
    with pytest.raises(DecodeError):
        decode_pcm16(b"\x00\x00\x00", 24000)
    with pytest.raises(DecodeError):
        decode_pcm16(b"\x00\x00", 24000, channels=2)


def test_float_to_pcm16_clamps_and_scales_asymmetrically():
    pcm = np.frombuffer(float_to_pcm16(np.array([1.5, -1.5, 1.0, -1.0, 0.0])), dtype="<i2")
    assert pcm.tolist() == [32767, -32768, 32767, -32768, 0]


def test_pcm16_to_float_is_normalized():
    samples = pcm16_to_float(np.array([-32768, 0, 16384], dtype="<i2").tobytes())
    assert samples.tolist() == pytest.approx([-1.0, 0.0, 0.5])


def test_rms_levels():
    assert rms(np.zeros(16)) == 0.0
    assert rms(np.ones(16)) == pytest.approx(1.0)
    assert rms(np.array([])) == 0.0


def test_mulaw_decode_reference_values():
    pcm = mulaw_to_pcm16(bytes([0x00, 0x7F, 0xFF, 0x80]))
    assert pcm.tolist() == [-32124, 0, 0, 32124]


def test_mulaw_encode_reference_values():
    encoded = pcm16_to_mulaw(np.array([0, 32767, -32768], dtype=np.int16))
    assert list(encoded) == [0xFF, 0x80, 0x00]


def test_mulaw_roundtrip_stays_close():
    original = np.array([-20000, -1000, -50, 50, 1000, 20000], dtype=np.int16)
    decoded = mulaw_to_pcm16(pcm16_to_mulaw(original))
    assert np.all(np.abs(decoded.astype(int) - original.astype(int)) <= np.abs(original.astype(int)) * 0.07 + 8)


def test_resample_changes_length_by_rate_ratio():
    samples = np.arange(160, dtype=np.int16)
    up = resample(samples, 8000, 24000)
    assert len(up) == 480
    assert up.dtype == np.int16
    assert up[0] == 0
    assert up[3] == 1
    assert resample(samples, 8000, 8000) is samples


def test_twilio_payload_conversion():
    payload = base64.b64encode(bytes([0xFF]) * 160).decode()
    samples = twilio_payload_to_float(payload, 16000)
    assert samples.shape == (320,)
    assert np.all(samples == 0)

    mulaw = float_to_twilio_payload(np.zeros(480, dtype=np.float32), 24000)
    assert len(mulaw) == 160
    assert set(mulaw) == {0xFF}


def test_twilio_payload_rejects_garbage():
    with pytest.raises(DecodeError):
        twilio_payload_to_float("not base64!", 16000)
