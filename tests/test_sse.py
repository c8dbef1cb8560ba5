import asyncio
import json

import pytest
from asgi_lifespan import LifespanManager

from jarvis.main import stream_events
from jarvis.schemas import Turn


def decode(chunk) -> dict:
    line = chunk.decode("utf-8") if isinstance(chunk, (bytes, bytearray)) else chunk
    return json.loads(line.replace("data:", "").strip())


@pytest.mark.asyncio
async def test_sse_stream_starts_with_current_phase(app_factory):
    app, _, _, _ = app_factory()
    async with LifespanManager(app):
        store = app.state.store
        store.set_phase("thinking")
        response = await stream_events(store=store)
        payload = decode(await asyncio.wait_for(response.body_iterator.__anext__(), timeout=1))
        assert payload == {"event_type": "phase", "payload": {"phase": "thinking"}}
        await response.body_iterator.aclose()
        assert store.subscribers == []


@pytest.mark.asyncio
async def test_sse_stream_receives_turn_events(app_factory):
    app, _, _, _ = app_factory()
    async with LifespanManager(app):
        store = app.state.store
        response = await stream_events(store=store)
        await asyncio.wait_for(response.body_iterator.__anext__(), timeout=1)

        async def add_turn():
            await asyncio.sleep(0.01)
            store.append(Turn(role="user", text="hello"))

        task = asyncio.create_task(add_turn())
        payload = decode(await asyncio.wait_for(response.body_iterator.__anext__(), timeout=1))
        assert payload["event_type"] == "turn_added"
        assert payload["payload"]["text"] == "hello"
        assert payload["payload"]["role"] == "user"
        await task
        await response.body_iterator.aclose()
