import asyncio
from typing import Any, Callable, Dict, List, Optional, Union

from pydantic import ValidationError

from .db import Database
from .llm import strip_data_url
from .schemas import AgentPhase, HistoryEntry, Turn


MEMORY_KEY = "jarvis-memory-v1"
DEFAULT_MAX_MESSAGES = 200

TurnPatch = Union[Dict[str, Any], Callable[[Turn], Turn]]


def trim_messages(messages: List[Turn], max_messages: int = DEFAULT_MAX_MESSAGES) -> List[Turn]:
    if len(messages) <= max_messages:
        return list(messages)
    return list(messages[len(messages) - max_messages:])


class ConversationStore:
    """Ordered log of turns plus the assistant phase.

    The store is the only writer of turns; every change is fanned out to
    subscriber queues as ``{"event_type", "payload"}`` dicts.
    """

    def __init__(self, messages: Optional[List[Turn]] = None):
        self.messages: List[Turn] = list(messages or [])
        self.phase: AgentPhase = "idle"
        self.subscribers: List[asyncio.Queue] = []

    def subscribe(self) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue()
        self.subscribers.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        if queue in self.subscribers:
            self.subscribers.remove(queue)

    def _publish(self, event_type: str, payload: dict) -> None:
        event = {"event_type": event_type, "payload": payload}
        for queue in list(self.subscribers):
            queue.put_nowait(event)

    def get(self, turn_id: str) -> Optional[Turn]:
        for turn in self.messages:
            if turn.id == turn_id:
                return turn
        return None

    def append(self, turn: Turn) -> Turn:
        self.messages.append(turn)
        self._publish("turn_added", turn.to_public_dict())
        return turn

    def update(self, turn_id: str, patch: TurnPatch) -> Optional[Turn]:
        for idx, current in enumerate(self.messages):
            if current.id != turn_id:
                continue
            if callable(patch):
                updated = patch(current)
            else:
                updated = current.model_copy(update=dict(patch))
            self.messages[idx] = updated
            self._publish("turn_updated", updated.to_public_dict())
            return updated
        return None

    def clear(self) -> None:
        self.messages = []
        self._publish("cleared", {})

    def replace_all(self, messages: List[Turn]) -> None:
        self.messages = list(messages)
        self._publish("cleared", {})

    def set_phase(self, phase: AgentPhase) -> None:
        self.phase = phase
        self._publish("phase", {"phase": phase})

    def render_order(self) -> List[Turn]:
        return sorted(self.messages, key=lambda turn: turn.timestamp)

    def history(self, exclude: Optional[str] = None) -> List[HistoryEntry]:
        """User/assistant turns in the shape the chat endpoint expects."""
        entries: List[HistoryEntry] = []
        for turn in self.messages:
            if turn.role not in ("user", "assistant") or turn.id == exclude:
                continue
            entries.append(
                HistoryEntry(role=turn.role, text=turn.text, image=strip_data_url(turn.image_thumbnail))
            )
        return entries


class MemoryStore:
    """Persist the recent conversation in the key-value table."""

    def __init__(self, db: Database, max_messages: int = DEFAULT_MAX_MESSAGES, key: str = MEMORY_KEY):
        self.db = db
        self.max_messages = max_messages
        self.key = key

    async def load(self) -> List[Turn]:
        raw = await self.db.kv_get(self.key)
        if not isinstance(raw, list):
            return []
        turns: List[Turn] = []
        for item in raw:
            try:
                turns.append(Turn.model_validate(item))
            except ValidationError:
                continue
        return turns

    async def persist(self, messages: List[Turn]) -> None:
        kept = trim_messages(messages, self.max_messages)
        await self.db.kv_set(self.key, [turn.model_dump(by_alias=True, mode="json") for turn in kept])

    async def clear(self) -> None:
        await self.db.kv_delete(self.key)
