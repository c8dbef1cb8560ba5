import pytest

from jarvis.store import ConversationStore
from jarvis.tools import (
    ToolArgumentError,
    ToolEventRecorder,
    ToolFailure,
    ToolRunner,
    ToolSuccess,
    format_tool_name,
    make_tool_schema,
)
from tests.fakes import FakeSearchClient


def test_format_tool_name_title_cases_segments():
    assert format_tool_name("describe_scene") == "Describe Scene"
    assert format_tool_name("create_calendar_event") == "Create Calendar Event"
    assert format_tool_name("open__link") == "Open  Link"


def test_recorder_appends_success_turn():
    store = ConversationStore()
    recorder = ToolEventRecorder(store)
    turn = recorder.record("describe_scene", {"detailLevel": "normal"}, ToolSuccess({"summary": "ok"}))
    assert store.messages == [turn]
    assert turn.role == "tool"
    assert turn.text == "**Describe Scene executed.** Output captured in the timeline."
    assert turn.tool_name == "describe_scene"
    assert turn.tool_call.name == "describe_scene"
    assert turn.tool_call.args == {"detailLevel": "normal"}
    assert turn.tool_result == {"summary": "ok"}


def test_recorder_appends_failure_turn():
    store = ConversationStore()
    recorder = ToolEventRecorder(store)
    turn = recorder.record("search_web", {"query": "jarvis"}, ToolFailure("provider down"))
    assert turn.text == "**Search Web failed.** provider down"
    assert turn.tool_result == {"error": "provider down"}


@pytest.mark.asyncio
async def test_describe_scene_placeholder():
    runner = ToolRunner()
    detailed = await runner.run("describe_scene", {"detailLevel": "detailed"})
    assert detailed["summary"].startswith("Vision analysis placeholder")
    assert detailed["items"] == []
    assert detailed["ocrText"] is None
    brief = await runner.run("describe_scene", {"detailLevel": "brief"})
    assert brief["summary"] == "Vision analysis pending"


@pytest.mark.asyncio
async def test_calendar_event_echoes_with_generated_id():
    runner = ToolRunner()
    args = {"title": "Standup", "startISO": "2024-05-01T09:00:00Z", "endISO": "2024-05-01T09:15:00Z"}
    event = await runner.run("create_calendar_event", args)
    assert event["id"].startswith("evt_")
    assert len(event["id"]) == 11
    assert event["title"] == "Standup"
    assert event["startISO"] == args["startISO"]
    assert event["attendees"] is None


@pytest.mark.asyncio
async def test_open_link_and_search():
    search = FakeSearchClient()
    runner = ToolRunner(search)
    assert await runner.run("open_link", {"url": "https://example.com"}) == {"opened": True}
    result = await runner.run("search_web", {"query": "weather"})
    assert result["results"][0]["title"] == "Result for weather"
    assert search.queries == ["weather"]


@pytest.mark.parametrize(
    "name,args",
    [
        ("describe_scene", {"detailLevel": "extreme"}),
        ("open_link", {"url": "not a url"}),
        ("search_web", {"query": "ab"}),
        ("create_calendar_event", {"title": "Standup"}),
        ("launch_rockets", {}),
    ],
)
def test_invalid_arguments_are_rejected(name, args):
    with pytest.raises(ToolArgumentError):
        ToolRunner().validate(name, args)


@pytest.mark.asyncio
async def test_run_and_record_turns_failures_into_tool_turns():
    store = ConversationStore()
    runner = ToolRunner(FakeSearchClient(error=RuntimeError("search offline")))
    recorder = ToolEventRecorder(store)
    first = await runner.run_and_record(recorder, "search_web", {"query": "weather"})
    second = await runner.run_and_record(recorder, "open_link", {"url": "https://example.com"})
    assert [t.id for t in store.messages] == [first.id, second.id]
    assert first.text == "**Search Web failed.** search offline"
    assert second.tool_result == {"opened": True}


def test_tool_schema_shape():
    schema = make_tool_schema("search_web")
    assert schema["type"] == "function"
    assert schema["name"] == "search_web"
    assert schema["parameters"]["required"] == ["query"]
    with pytest.raises(ValueError):
        make_tool_schema("unknown")
