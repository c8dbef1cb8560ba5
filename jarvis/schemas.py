import time
import uuid
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


TurnRole = Literal["user", "assistant", "system", "tool"]
AgentPhase = Literal["idle", "listening", "transcribing", "thinking", "speaking", "error"]
DetailLevel = Literal["brief", "normal", "detailed"]


def new_turn_id() -> str:
    return str(uuid.uuid4())


def now_ms() -> int:
    return int(time.time() * 1000)


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, protected_namespaces=())


class ModelOutput(BaseModel):
    model: str
    text: str

    model_config = {"protected_namespaces": ()}


class ModelFailure(BaseModel):
    model: str
    error: str

    model_config = {"protected_namespaces": ()}


class ToolCall(BaseModel):
    name: str
    args: Any = None


class Turn(_CamelModel):
    id: str = Field(default_factory=new_turn_id)
    role: TurnRole
    text: Optional[str] = None
    display_text: Optional[str] = None
    timestamp: int = Field(default_factory=now_ms, alias="ts")
    partial: bool = False
    primary_model: Optional[str] = None
    comparisons: List[ModelOutput] = Field(default_factory=list)
    tool_call: Optional[ToolCall] = None
    tool_result: Any = None
    tool_name: Optional[str] = None
    image_thumbnail: Optional[str] = None

    def to_public_dict(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True)


class DispatchResult(BaseModel):
    primary: ModelOutput
    alternatives: List[ModelOutput] = Field(default_factory=list)
    failures: List[ModelFailure] = Field(default_factory=list)


# Per-model call outcome. Exactly one of these is produced for every model
# queried in a dispatch.
class ModelSuccess(BaseModel):
    kind: Literal["success"] = "success"
    model: str
    text: str

    model_config = {"protected_namespaces": ()}


class ModelRefusal(BaseModel):
    kind: Literal["refusal"] = "refusal"
    model: str
    reason: str

    model_config = {"protected_namespaces": ()}

    @property
    def error(self) -> str:
        return f"Gemini refused the request: {self.reason}"


class ModelError(BaseModel):
    kind: Literal["error"] = "error"
    model: str
    error: str

    model_config = {"protected_namespaces": ()}


ModelReply = Union[ModelSuccess, ModelRefusal, ModelError]


class ChatTurn(BaseModel):
    text: Optional[str] = None
    image_base64: Optional[str] = None

    @property
    def is_empty(self) -> bool:
        return not (self.text or "").strip() and not self.image_base64


class HistoryEntry(BaseModel):
    role: Literal["user", "assistant"]
    text: Optional[str] = None
    image: Optional[str] = None


class ChatRequest(_CamelModel):
    text: Optional[str] = None
    image_base64: Optional[str] = None
    history: List[HistoryEntry] = Field(default_factory=list)
    model: Optional[str] = None
    models: List[str] = Field(default_factory=list)


class UserTextRequest(BaseModel):
    text: str


class TTSRequest(_CamelModel):
    text: str = Field(min_length=1)
    voice_id: Optional[str] = None


class RegionOfInterest(BaseModel):
    x: int
    y: int
    width: int
    height: int


# Tool argument schemas.
class DescribeSceneArgs(_CamelModel):
    detail_level: DetailLevel


class OpenLinkArgs(BaseModel):
    url: str = Field(pattern=r"^[a-zA-Z][a-zA-Z0-9+.-]*://\S+$")


class SearchWebArgs(BaseModel):
    query: str = Field(min_length=3)


class CreateCalendarEventArgs(_CamelModel):
    title: str = Field(min_length=3)
    start_iso: str = Field(alias="startISO")
    end_iso: str = Field(alias="endISO")
    attendees: Optional[List[str]] = None


class SearchResult(BaseModel):
    title: str
    url: str
    snippet: str


TOOL_ARG_MODELS: Dict[str, type] = {
    "describe_scene": DescribeSceneArgs,
    "open_link": OpenLinkArgs,
    "search_web": SearchWebArgs,
    "create_calendar_event": CreateCalendarEventArgs,
}
