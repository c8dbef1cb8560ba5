import asyncio

import pytest

from jarvis.dispatcher import DispatchError, ModelDispatcher, aggregate_replies, normalize_model_list
from jarvis.schemas import ChatTurn, ModelError, ModelRefusal, ModelSuccess
from tests.fakes import FakeGeminiClient


@pytest.mark.asyncio
async def test_primary_is_first_success_when_first_model_fails():
    fake = FakeGeminiClient(
        replies={
            "gemini-2.5-flash": ModelError(model="gemini-2.5-flash", error="quota exceeded"),
            "gemini-2.5-pro": "From pro",
        }
    )
    dispatcher = ModelDispatcher(fake)
    result = await dispatcher.dispatch(ChatTurn(text="hello"), [], ["gemini-2.5-flash", "gemini-2.5-pro"])
    assert result.primary.model == "gemini-2.5-pro"
    assert result.primary.text == "From pro"
    assert result.alternatives == []
    assert [(f.model, f.error) for f in result.failures] == [("gemini-2.5-flash", "quota exceeded")]


@pytest.mark.asyncio
async def test_primary_follows_request_order_not_completion_order():
    fake = FakeGeminiClient(
        replies={"gemini-2.5-flash": "slow", "gemini-2.5-pro": "fast"},
        delays={"gemini-2.5-flash": 0.05},
    )
    result = await ModelDispatcher(fake).dispatch(
        ChatTurn(text="hi"), [], ["gemini-2.5-flash", "gemini-2.5-pro"]
    )
    assert result.primary.model == "gemini-2.5-flash"
    assert [alt.model for alt in result.alternatives] == ["gemini-2.5-pro"]


@pytest.mark.asyncio
async def test_calls_run_concurrently():
    fake = FakeGeminiClient(delays={"gemini-2.5-flash": 0.2, "gemini-2.5-pro": 0.2})
    loop = asyncio.get_running_loop()
    started = loop.time()
    await ModelDispatcher(fake).dispatch(ChatTurn(text="hi"), [], ["gemini-2.5-flash", "gemini-2.5-pro"])
    assert loop.time() - started < 0.35


@pytest.mark.asyncio
async def test_all_failures_raise_first_failure_message():
    fake = FakeGeminiClient(
        replies={
            "gemini-2.5-flash": ModelRefusal(model="gemini-2.5-flash", reason="SAFETY"),
            "gemini-2.5-pro": RuntimeError("connection reset"),
        }
    )
    with pytest.raises(DispatchError) as excinfo:
        await ModelDispatcher(fake).dispatch(ChatTurn(text="hi"), [], ["gemini-2.5-flash", "gemini-2.5-pro"])
    assert str(excinfo.value) == "Gemini refused the request: SAFETY"
    assert [f.model for f in excinfo.value.failures] == ["gemini-2.5-flash", "gemini-2.5-pro"]
    assert excinfo.value.failures[1].error == "connection reset"


@pytest.mark.asyncio
async def test_successes_plus_failures_cover_every_model():
    fake = FakeGeminiClient(
        replies={"gemini-2.5-pro": ModelError(model="gemini-2.5-pro", error="boom")}
    )
    models = ["gemini-2.5-flash", "gemini-2.5-pro", "gemini-2.0-flash"]
    result = await ModelDispatcher(fake).dispatch(ChatTurn(text="hi"), [], models)
    assert 1 + len(result.alternatives) + len(result.failures) == 3


@pytest.mark.asyncio
async def test_empty_turn_is_rejected():
    fake = FakeGeminiClient()
    with pytest.raises(ValueError, match="Nothing to send"):
        await ModelDispatcher(fake).dispatch(ChatTurn(text="   "), [], [])
    assert fake.calls == []


@pytest.mark.asyncio
async def test_image_only_turn_is_sent():
    fake = FakeGeminiClient()
    result = await ModelDispatcher(fake).dispatch(ChatTurn(image_base64="aGVsbG8="), [], [])
    assert result.primary.model == "gemini-2.5-flash"
    assert fake.calls[0]["turn"].image_base64 == "aGVsbG8="


@pytest.mark.asyncio
async def test_models_are_normalized_and_deduplicated():
    fake = FakeGeminiClient()
    await ModelDispatcher(fake).dispatch(
        ChatTurn(text="hi"), [], ["models/Gemini-2.5-Flash", "gemini-2.5-flash", "gpt-4o", "gemini-2.5-pro"]
    )
    assert [call["model"] for call in fake.calls] == ["gemini-2.5-flash", "gemini-2.5-pro"]


def test_normalize_model_list_defaults_when_empty():
    assert normalize_model_list([]) == ["gemini-2.5-flash"]
    assert normalize_model_list([None, "  "]) == ["gemini-2.5-flash"]
    assert normalize_model_list(["gemini-1.5-pro"]) == ["gemini-2.5-flash"]


def test_alternatives_never_repeat_the_primary_pair():
    result = aggregate_replies(
        [
            ModelSuccess(model="gemini-2.5-flash", text="same"),
            ModelSuccess(model="gemini-2.5-flash", text="same"),
            ModelSuccess(model="gemini-2.5-pro", text="same"),
        ]
    )
    assert [(alt.model, alt.text) for alt in result.alternatives] == [("gemini-2.5-pro", "same")]


def test_aggregate_without_replies_raises():
    with pytest.raises(DispatchError):
        aggregate_replies([])
