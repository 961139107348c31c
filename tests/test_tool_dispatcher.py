import pytest

from call_engine.models.realtime import ToolCallRequest
from call_engine.services.providers.factory import create_voice_provider
from call_engine.services.providers.gemini_live import GeminiLiveProvider
from call_engine.services.providers.openai_realtime import OpenAIRealtimeProvider
from call_engine.services.tool_dispatcher import ToolDispatcher


def _dispatcher(recorder):
    dispatcher = ToolDispatcher(recorder)

    def check_availability(args):
        return {"date": args["date"], "slots": ["10:00", "11:30"]}

    async def cancel_booking(args):
        if not args.get("booking_id"):
            raise ValueError("booking_id is required")
        return {"cancelled": args["booking_id"]}

    dispatcher.register(
        "check_availability",
        check_availability,
        "List open slots for a date",
        {"type": "object", "properties": {"date": {"type": "string"}}, "required": ["date"]},
    )
    dispatcher.register("cancel_booking", cancel_booking, "Cancel a booking")
    return dispatcher


def test_schemas_follow_registration(recorder):
    dispatcher = _dispatcher(recorder)
    schemas = dispatcher.get_tool_schemas()
    assert [schema["name"] for schema in schemas] == ["check_availability", "cancel_booking"]
    assert schemas[1]["function"]["parameters"] == {"type": "object", "properties": {}}
    assert [schema["name"] for schema in dispatcher.get_tool_schemas(["cancel_booking", "unknown"])] == [
        "cancel_booking"
    ]
    assert dispatcher.has_tool("check_availability")
    assert not dispatcher.has_tool("transfer_call")


async def test_sync_and_async_handlers_succeed(recorder):
    dispatcher = _dispatcher(recorder)
    outcome = await dispatcher.execute(
        ToolCallRequest(name="check_availability", arguments={"date": "2025-03-01"}, call_id="call_1")
    )
    assert outcome.status == "success"
    assert outcome.result["slots"] == ["10:00", "11:30"]
    assert outcome.execution_time_ms >= 0

    outcome = await dispatcher.execute(
        ToolCallRequest(name="cancel_booking", arguments={"booking_id": "B-7"}, call_id="call_2")
    )
    assert outcome.result == {"cancelled": "B-7"}
    assert recorder.messages("TOOL") == ["executed", "executed"]


async def test_failures_become_error_outcomes(recorder):
    dispatcher = _dispatcher(recorder)
    outcome = await dispatcher.execute(ToolCallRequest(name="cancel_booking", call_id="call_1"))
    assert outcome.status == "error"
    assert outcome.result is None
    assert outcome.error == "booking_id is required"

    outcome = await dispatcher.execute(ToolCallRequest(name="transfer_call", call_id="call_2"))
    assert outcome.status == "error"
    assert "Unknown tool" in outcome.error
    assert recorder.messages("TOOL") == ["failed", "failed"]


async def test_dispatch_raises_for_unknown_tool(recorder):
    with pytest.raises(ValueError):
        await _dispatcher(recorder).dispatch("transfer_call", {})


def test_factory_builds_known_providers(recorder):
    dispatcher = ToolDispatcher(recorder)
    provider = create_voice_provider("OpenAI", dispatcher=dispatcher, recorder=recorder)
    assert isinstance(provider, OpenAIRealtimeProvider)
    assert provider.dispatcher is dispatcher
    assert isinstance(create_voice_provider("gemini"), GeminiLiveProvider)
    with pytest.raises(ValueError):
        create_voice_provider("acme")
