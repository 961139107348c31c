import base64

import numpy as np
import pytest

from call_engine.errors import TransportError
from call_engine.models.realtime import TwilioMediaPayload
from call_engine.models.transcript import INTERRUPTED_MARKER
from call_engine.services.conversation_log import ConversationLogger
from call_engine.services.realtime_loop import RealtimeLoop
from call_engine.services.tool_dispatcher import ToolDispatcher
from conftest import FakeProvider, FakeSource, ManualOutput, pcm_silence, settle


class RecordingLogger(ConversationLogger):
    def __init__(self):
        self.calls = []

    async def start_conversation(self, provider, phone_number=None, direction="inbound", call_sid=None):
        self.calls.append(("start", provider, phone_number, call_sid))
        return "CONV-1"

    async def log_turn(self, conversation_id, role, text, turn_number, speech_start_time=None):
        self.calls.append(("turn", conversation_id, role, text, turn_number))

    async def log_function_call(self, conversation_id, call_id, function_name, arguments):
        self.calls.append(("function_call", conversation_id, call_id, function_name))
        return 77

    async def update_function_result(self, function_call_id, result, status, execution_time_ms=None, error_message=None):
        self.calls.append(("function_result", function_call_id, status))

    async def end_conversation(self, conversation_id, outcome="completed", details=None):
        self.calls.append(("end", conversation_id, outcome))


async def _connected(recorder, timers, session_config, provider=None, **kwargs):
    provider = provider or FakeProvider(recorder=recorder)
    loop = RealtimeLoop(recorder, provider, call_later=timers.call_later, **kwargs)
    output = ManualOutput(suspended=True)
    source = FakeSource()
    await loop.connect(session_config, source, output)
    return loop, provider, output, source


async def test_connect_resumes_output_and_sends_greeting(recorder, timers, session_config):
    loop, provider, output, source = await _connected(recorder, timers, session_config)
    assert loop.connected
    assert loop.error is None
    assert output.resume_calls == 1
    assert provider.opened == 1

    await settle()
    assert provider.text_sent == ["Hello"]

    source.feed(np.zeros(4096))
    await settle()
    assert len(provider.audio_sent) == 1
    assert len(provider.audio_sent[0]) == 4096 * 2
    await loop.disconnect()


async def test_provider_audio_is_scheduled_and_paces_transcript(recorder, timers, session_config):
    loop, _, output, _ = await _connected(recorder, timers, session_config)
    await loop.on_audio_chunk(pcm_silence(0.5))
    await loop.on_audio_chunk(pcm_silence(0.5))
    assert [source.start_time for source in output.started] == [0.0, 0.5]
    assert loop.scheduler.lead_time == pytest.approx(0.5)

    loop.on_transcript_delta("assistant", "Hi", "resp_1")
    assert timers.delays_ms == [500]
    timers.advance(0.5)
    assert [entry.text for entry in loop.transcript_items] == ["Hi"]
    await loop.disconnect()


async def test_interrupt_silences_playback_and_closes_assistant_turn(recorder, timers, session_config):
    loop, _, output, _ = await _connected(recorder, timers, session_config)
    await loop.on_audio_chunk(pcm_silence(1.0))
    await loop.on_audio_chunk(pcm_silence(1.0))
    loop.on_transcript_delta("assistant", "Your appointment", "resp_1")
    output.advance(0.25)

    loop.on_interrupt()
    assert all(source.stopped for source in output.started)
    assert loop.scheduler.cursor == pytest.approx(0.25)
    [entry] = loop.transcript_items
    assert entry.text == "Your appointment" + INTERRUPTED_MARKER
    assert not entry.is_partial
    assert "handled" in recorder.messages("INTERRUPT")
    await loop.disconnect()


async def test_transport_error_tears_the_call_down(recorder, timers, session_config):
    loop, provider, output, source = await _connected(recorder, timers, session_config)
    loop.on_transcript_delta("assistant", "pending", "resp_1")
    await loop.on_audio_chunk(pcm_silence(0.5))

    provider.drop(RuntimeError("socket reset"))
    await settle()
    await loop.wait_closed()

    assert loop.error == "Connection failed: socket reset"
    assert not loop.connected
    assert provider.closed == 1
    assert output.closed
    assert source.stopped
    assert loop.timing.pending_count == 0


async def test_remote_close_disconnects_without_error(recorder, timers, session_config):
    loop, provider, _, _ = await _connected(recorder, timers, session_config)
    provider.drop()
    await settle()
    await loop.wait_closed()
    assert not loop.connected
    assert loop.error is None
    assert "closed_by_remote" in recorder.messages("PROVIDER")


async def test_connect_failure_reports_and_cleans_up(recorder, timers, session_config):
    provider = FakeProvider(fail_on_open=True, recorder=recorder)
    loop = RealtimeLoop(recorder, provider, call_later=timers.call_later)
    output = ManualOutput()
    source = FakeSource()

    with pytest.raises(TransportError):
        await loop.connect(session_config, source, output)

    assert loop.error == "Connection failed: handshake refused"
    assert not loop.connected
    assert output.closed
    assert source.on_frame is None
    assert provider.text_sent == []


async def test_mute_stops_forwarding(recorder, timers, session_config):
    loop = RealtimeLoop(recorder, FakeProvider(recorder=recorder), call_later=timers.call_later)
    assert loop.toggle_mute() is False

    loop, provider, _, source = await _connected(recorder, timers, session_config)
    assert loop.toggle_mute() is True
    assert loop.muted
    source.feed(np.full(4096, 0.25))
    await settle()
    assert provider.audio_sent == []
    assert loop.input_volume == pytest.approx(0.25)
    await loop.disconnect()


async def test_clear_transcripts_restarts_numbering(recorder, timers, session_config):
    loop, _, _, _ = await _connected(recorder, timers, session_config)
    loop.on_transcript_complete("user", "first", turn_id="item_1")
    loop.on_transcript_complete("assistant", "second", turn_id="resp_1")
    assert [entry.sequence_number for entry in loop.transcript_items] == [1, 2]

    loop.clear_transcripts()
    assert loop.transcript_items == []
    loop.on_transcript_complete("user", "third", turn_id="item_2")
    assert [entry.sequence_number for entry in loop.transcript_items] == [1]
    await loop.disconnect()


async def test_completed_turns_and_tools_reach_the_conversation_log(recorder, timers, session_config):
    dispatcher = ToolDispatcher(recorder)
    dispatcher.register("lookup", lambda args: {"found": args["q"]})
    conversation_logger = RecordingLogger()
    provider = FakeProvider(recorder=recorder, dispatcher=dispatcher)
    loop, provider, _, _ = await _connected(
        recorder, timers, session_config, provider=provider, conversation_logger=conversation_logger
    )

    loop.on_transcript_complete("user", "Find the order", turn_id="item_1")
    outcome = await provider._run_tool("call_1", "lookup", {"q": "order"})
    assert outcome.result == {"found": "order"}
    await settle()
    await loop.disconnect()

    assert conversation_logger.calls == [
        ("start", "openai", None, None),
        ("turn", "CONV-1", "user", "Find the order", 1),
        ("function_call", "CONV-1", "call_1", "lookup"),
        ("function_result", 77, "success"),
        ("end", "CONV-1", "completed"),
    ]
    assert loop.conversation_id == "CONV-1"


async def test_logger_failures_do_not_break_the_call(recorder, timers, session_config):
    class BrokenLogger(RecordingLogger):
        async def log_turn(self, *args, **kwargs):
            raise RuntimeError("database down")

    loop, _, _, _ = await _connected(recorder, timers, session_config, conversation_logger=BrokenLogger())
    loop.on_transcript_complete("user", "hello", turn_id="item_1")
    await settle()
    assert loop.connected
    assert "write_failed" in recorder.messages("LOGGER")
    await loop.disconnect()


class FakeTwilioSocket:
    def __init__(self):
        self.messages = []

    async def send_json(self, message):
        self.messages.append(message)


async def test_twilio_events_drive_the_call(recorder, session_config):
    provider = FakeProvider(recorder=recorder)
    loop = RealtimeLoop(recorder, provider, config=session_config.model_copy(update={"greeting": None}))
    websocket = FakeTwilioSocket()

    await loop.handle_event(
        TwilioMediaPayload(
            event="start",
            streamSid="MZ1",
            start={"streamSid": "MZ1", "callSid": "CA1", "customParameters": {"from": "+15550001111"}},
        ),
        websocket,
    )
    assert loop.connected
    assert (loop.call_sid, loop.stream_sid) == ("CA1", "MZ1")

    silence = base64.b64encode(bytes([0xFF]) * 160).decode()
    for _ in range(3):
        await loop.handle_event(TwilioMediaPayload(event="media", media={"payload": silence}), websocket)
    await loop.handle_event(TwilioMediaPayload(event="media", media={"payload": "%%%"}), websocket)
    await settle()
    # 160 mu-law samples @ 8 kHz become 480 PCM16 samples @ 24 kHz
    assert [len(chunk) for chunk in provider.audio_sent] == [960, 960, 960]
    assert "media_dropped" in recorder.messages("CAPTURE")

    await loop.on_audio_chunk(pcm_silence(0.02))
    await settle()
    assert [message["event"] for message in websocket.messages] == ["media", "mark"]

    await loop.handle_event(TwilioMediaPayload(event="stop"), websocket)
    assert not loop.connected
    assert provider.closed == 1
