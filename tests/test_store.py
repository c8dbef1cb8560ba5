import pytest

from jarvis.db import Database
from jarvis.schemas import Turn
from jarvis.store import ConversationStore, MemoryStore, trim_messages


def test_append_and_update_publish_events():
    store = ConversationStore()
    queue = store.subscribe()
    turn = store.append(Turn(role="assistant", text="hello", display_text="", partial=True))
    store.update(turn.id, {"display_text": "he"})
    store.update(turn.id, lambda current: current.model_copy(update={"display_text": "hello", "partial": False}))
    events = [queue.get_nowait() for _ in range(3)]
    assert [ev["event_type"] for ev in events] == ["turn_added", "turn_updated", "turn_updated"]
    assert events[1]["payload"]["displayText"] == "he"
    assert events[2]["payload"]["partial"] is False
    assert store.get(turn.id).display_text == "hello"


def test_update_unknown_turn_is_a_no_op():
    store = ConversationStore()
    assert store.update("missing", {"text": "x"}) is None
    assert store.messages == []


def test_render_order_sorts_by_timestamp_stably():
    store = ConversationStore()
    late = store.append(Turn(role="user", text="late", ts=300))
    first = store.append(Turn(role="user", text="first", ts=100))
    tie = store.append(Turn(role="system", text="tie", ts=300))
    assert [t.id for t in store.messages] == [late.id, first.id, tie.id]
    assert [t.id for t in store.render_order()] == [first.id, late.id, tie.id]


def test_history_keeps_user_and_assistant_turns():
    store = ConversationStore()
    store.append(Turn(role="user", text="hi", image_thumbnail="data:image/jpeg;base64,QUJD"))
    store.append(Turn(role="system", text="warning"))
    store.append(Turn(role="tool", text="tool ran", tool_name="open_link"))
    reply = store.append(Turn(role="assistant", text="hello"))
    history = store.history()
    assert [(h.role, h.text, h.image) for h in history] == [("user", "hi", "QUJD"), ("assistant", "hello", None)]
    assert len(store.history(exclude=reply.id)) == 1


def test_clear_and_phase_events():
    store = ConversationStore()
    queue = store.subscribe()
    store.append(Turn(role="user", text="hi"))
    store.set_phase("thinking")
    store.clear()
    events = [queue.get_nowait() for _ in range(3)]
    assert [ev["event_type"] for ev in events] == ["turn_added", "phase", "cleared"]
    assert events[1]["payload"] == {"phase": "thinking"}
    assert store.messages == []
    store.unsubscribe(queue)
    assert store.subscribers == []


def test_trim_keeps_most_recent():
    turns = [Turn(role="user", text=str(i)) for i in range(205)]
    kept = trim_messages(turns)
    assert len(kept) == 200
    assert kept[0].text == "5"
    assert kept[-1].text == "204"
    assert trim_messages(turns[:3]) == turns[:3]


@pytest.mark.asyncio
async def test_memory_round_trip(tmp_path):
    db = Database(str(tmp_path / "memory.db"))
    await db.init()
    memory = MemoryStore(db, max_messages=2)
    turns = [
        Turn(role="user", text="one"),
        Turn(role="assistant", text="two", primary_model="gemini-2.5-flash"),
        Turn(role="tool", text="three", tool_name="open_link", tool_result={"opened": True}),
    ]
    await memory.persist(turns)
    loaded = await memory.load()
    assert [t.text for t in loaded] == ["two", "three"]
    assert loaded[0].primary_model == "gemini-2.5-flash"
    assert loaded[1].tool_result == {"opened": True}
    await memory.clear()
    assert await memory.load() == []


@pytest.mark.asyncio
async def test_memory_ignores_corrupt_entries(tmp_path):
    db = Database(str(tmp_path / "memory.db"))
    await db.init()
    await db.kv_set("jarvis-memory-v1", [{"role": "nobody"}, {"role": "user", "text": "ok"}])
    loaded = await MemoryStore(db).load()
    assert [t.text for t in loaded] == ["ok"]
