import asyncio

import pytest

from call_engine.services.playback import PlaybackScheduler
from conftest import ManualOutput, pcm_silence


async def test_chunks_play_back_to_back_without_gaps(recorder):
    output = ManualOutput(now=0.0)
    scheduler = PlaybackScheduler(output, recorder, sample_rate=24000)

    first = await scheduler.on_audio_chunk(pcm_silence(1.0))
    assert first.start_time == pytest.approx(0.0)
    assert scheduler.cursor == pytest.approx(1.0)
    assert scheduler.lead_time == pytest.approx(0.0)

    output.advance(0.3)
    second = await scheduler.on_audio_chunk(pcm_silence(0.5))
    assert second.start_time == pytest.approx(1.0)
    assert scheduler.cursor == pytest.approx(1.5)
    assert scheduler.lead_time == pytest.approx(0.7)

    output.advance(4.7)
    third = await scheduler.on_audio_chunk(pcm_silence(2.0))
    assert third.start_time == pytest.approx(5.0)
    assert scheduler.cursor == pytest.approx(7.0)
    assert scheduler.lead_time == pytest.approx(0.0)


async def test_finished_sources_leave_the_scheduled_set(recorder):
    output = ManualOutput()
    scheduler = PlaybackScheduler(output, recorder)
    await scheduler.on_audio_chunk(pcm_silence(0.5))
    await scheduler.on_audio_chunk(pcm_silence(0.5))
    assert scheduler.scheduled_count == 2

    output.advance(0.5)
    assert scheduler.scheduled_count == 1
    output.advance(0.5)
    assert scheduler.scheduled_count == 0


async def test_undecodable_chunks_are_dropped(recorder):
    output = ManualOutput()
    scheduler = PlaybackScheduler(output, recorder)
    assert await scheduler.on_audio_chunk(b"") is None
    assert await scheduler.on_audio_chunk(b"\x00\x00\x00") is None
    assert output.started == []
    assert scheduler.cursor == 0.0
    assert recorder.messages("PLAYBACK") == ["chunk_dropped", "chunk_dropped"]


async def test_suspended_output_is_resumed_first(recorder):
    output = ManualOutput(suspended=True)
    scheduler = PlaybackScheduler(output, recorder)
    source = await scheduler.on_audio_chunk(pcm_silence(0.25))
    assert output.resume_calls == 1
    assert source is not None
    assert scheduler.cursor == pytest.approx(0.25)


async def test_resume_failure_drops_chunk_and_reports(recorder):
    errors = []
    output = ManualOutput(now=2.0, suspended=True)
    output.resume_error = RuntimeError("device gone")
    scheduler = PlaybackScheduler(output, recorder, on_error=errors.append)
    scheduler.cursor = 2.5

    assert await scheduler.on_audio_chunk(pcm_silence(0.25)) is None
    assert output.started == []
    assert scheduler.cursor == 2.5
    assert [str(error) for error in errors] == ["device gone"]
    assert "resume_failed" in recorder.messages("PLAYBACK")


async def test_flush_stops_everything_and_resets_cursor(recorder):
    output = ManualOutput()
    scheduler = PlaybackScheduler(output, recorder)
    for _ in range(3):
        await scheduler.on_audio_chunk(pcm_silence(1.0))
    output.advance(0.4)

    assert scheduler.flush() == 3
    assert all(source.stopped for source in output.started)
    assert scheduler.scheduled_count == 0
    assert scheduler.cursor == pytest.approx(0.4)
    assert scheduler.lead_time == 0.0

    source = await scheduler.on_audio_chunk(pcm_silence(0.1))
    assert source.start_time == pytest.approx(0.4)


async def test_chunk_in_flight_during_flush_is_discarded(recorder):
    output = ManualOutput(suspended=True)
    output.resume_gate = asyncio.Event()
    scheduler = PlaybackScheduler(output, recorder)

    pending = asyncio.create_task(scheduler.on_audio_chunk(pcm_silence(0.5)))
    await asyncio.sleep(0)
    scheduler.flush()
    output.resume_gate.set()

    assert await pending is None
    assert output.started == []


async def test_close_flushes_and_closes_output(recorder):
    output = ManualOutput()
    scheduler = PlaybackScheduler(output, recorder)
    await scheduler.on_audio_chunk(pcm_silence(0.5))
    await scheduler.close()
    assert output.closed
    assert output.started[0].stopped
    assert await scheduler.on_audio_chunk(pcm_silence(0.5)) is None
