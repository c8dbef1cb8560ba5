import logging
import secrets
import string
from dataclasses import dataclass
from typing import Any, Dict, Optional, Union

from pydantic import BaseModel, ValidationError

from .schemas import TOOL_ARG_MODELS, ToolCall, Turn
from .search import WebSearchClient
from .store import ConversationStore


logger = logging.getLogger("uvicorn.error")

TOOL_DESCRIPTIONS = {
    "describe_scene": "Summarise the most recent camera frame",
    "open_link": "Request the client to open a link",
    "search_web": "Perform a web search and return top results",
    "create_calendar_event": "Create a calendar event stub for the user",
}

TOOL_PARAMETERS: Dict[str, Dict[str, Any]] = {
    "describe_scene": {
        "type": "object",
        "properties": {
            "detailLevel": {
                "type": "string",
                "enum": ["brief", "normal", "detailed"],
                "description": "Level of detail for the scene description.",
            }
        },
        "required": ["detailLevel"],
        "additionalProperties": False,
    },
    "open_link": {
        "type": "object",
        "properties": {
            "url": {"type": "string", "format": "uri", "description": "URL to open on the client after confirmation."}
        },
        "required": ["url"],
        "additionalProperties": False,
    },
    "search_web": {
        "type": "object",
        "properties": {
            "query": {"type": "string", "minLength": 3, "description": "Search query for the web lookup."}
        },
        "required": ["query"],
        "additionalProperties": False,
    },
    "create_calendar_event": {
        "type": "object",
        "properties": {
            "title": {"type": "string", "minLength": 3},
            "startISO": {"type": "string", "format": "date-time"},
            "endISO": {"type": "string", "format": "date-time"},
            "attendees": {
                "type": "array",
                "items": {"type": "string", "format": "email"},
                "description": "Optional attendee email addresses.",
            },
        },
        "required": ["title", "startISO", "endISO"],
        "additionalProperties": False,
    },
}


class ToolArgumentError(ValueError):
    pass


@dataclass
class ToolSuccess:
    result: Any


@dataclass
class ToolFailure:
    error: str


ToolOutcome = Union[ToolSuccess, ToolFailure]


def format_tool_name(name: str) -> str:
    return " ".join(part[:1].upper() + part[1:] if part else part for part in name.split("_"))


def make_tool_schema(name: str) -> Dict[str, Any]:
    if name not in TOOL_PARAMETERS:
        raise ValueError(f"Unknown tool schema for {name}")
    return {
        "type": "function",
        "name": name,
        "description": TOOL_DESCRIPTIONS[name],
        "parameters": TOOL_PARAMETERS[name],
    }


class ToolEventRecorder:
    """Append exactly one tool turn per invocation, in call order."""

    def __init__(self, store: ConversationStore):
        self.store = store

    def record(self, name: str, args: Any, outcome: ToolOutcome) -> Turn:
        label = format_tool_name(name)
        if isinstance(outcome, ToolSuccess):
            text = f"**{label} executed.** Output captured in the timeline."
            tool_result = outcome.result
        else:
            text = f"**{label} failed.** {outcome.error}"
            tool_result = {"error": outcome.error}
            logger.warning("Tool %s failed: %s", name, outcome.error)
        return self.store.append(
            Turn(
                role="tool",
                text=text,
                tool_name=name,
                tool_call=ToolCall(name=name, args=args),
                tool_result=tool_result,
            )
        )


def _event_id() -> str:
    alphabet = string.ascii_lowercase + string.digits
    return "evt_" + "".join(secrets.choice(alphabet) for _ in range(7))


class ToolRunner:
    """Server-side stubs behind the assistant's auxiliary tools."""

    def __init__(self, search_client: Optional[WebSearchClient] = None):
        self.search_client = search_client

    def validate(self, name: str, args: Any) -> BaseModel:
        model = TOOL_ARG_MODELS.get(name)
        if model is None:
            raise ToolArgumentError(f"Unknown tool: {name}")
        try:
            return model.model_validate(args or {})
        except ValidationError as exc:
            raise ToolArgumentError("Invalid parameters") from exc

    async def run(self, name: str, args: Any) -> Dict[str, Any]:
        parsed = self.validate(name, args)
        if name == "describe_scene":
            return self.describe_scene(parsed.detail_level)
        if name == "open_link":
            return {"opened": True}
        if name == "search_web":
            if self.search_client is None:
                raise RuntimeError("search_web is not available")
            return await self.search_client.search(parsed.query)
        return {
            "id": _event_id(),
            "title": parsed.title,
            "startISO": parsed.start_iso,
            "endISO": parsed.end_iso,
            "attendees": parsed.attendees,
        }

    def describe_scene(self, detail_level: str) -> Dict[str, Any]:
        # TODO: route frames to an OCR/object detection backend once one is configured.
        if detail_level == "detailed":
            summary = "Vision analysis placeholder: integrate OCR/object detection in future milestone."
        else:
            summary = "Vision analysis pending"
        return {"summary": summary, "items": [], "ocrText": None}

    async def run_and_record(self, recorder: ToolEventRecorder, name: str, args: Any) -> Turn:
        """Run a tool and log its outcome; failures never propagate."""
        try:
            result = await self.run(name, args)
        except Exception as exc:
            message = str(exc) or f"{name} tool failed"
            return recorder.record(name, args, ToolFailure(message))
        return recorder.record(name, args, ToolSuccess(result))
