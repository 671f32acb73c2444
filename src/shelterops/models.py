from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Annotated, Dict, Iterator, List, Literal, Union

from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Turn:
    """One message in a session's history. Never mutated once appended."""

    role: Literal["user", "assistant"]
    content: str
    timestamp: datetime = field(default_factory=utcnow)
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "role": self.role,
            "content": self.content,
            "timestamp": self.timestamp.isoformat(),
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Turn":
        raw_ts = data.get("timestamp")
        timestamp = datetime.fromisoformat(raw_ts) if raw_ts else utcnow()
        return cls(
            role=data["role"],
            content=str(data.get("content", "")),
            timestamp=timestamp,
            metadata=dict(data.get("metadata") or {}),
        )


class History:
    """Bounded, chronologically ordered ring buffer of turns.

    Appending past ``maxlen`` drops the oldest turns first.
    """

    def __init__(self, turns: List[Turn] | None = None, maxlen: int = 20) -> None:
        self._turns: deque[Turn] = deque(turns or [], maxlen=maxlen)

    def append(self, turn: Turn) -> None:
        self._turns.append(turn)

    def recent(self, n: int) -> List[Turn]:
        """Return the last ``n`` turns, oldest first."""
        if n <= 0:
            return []
        return list(self._turns)[-n:]

    def to_list(self) -> List[Dict[str, Any]]:
        return [t.to_dict() for t in self._turns]

    @classmethod
    def from_list(cls, items: List[Dict[str, Any]], maxlen: int = 20) -> "History":
        return cls([Turn.from_dict(item) for item in items], maxlen=maxlen)

    def __iter__(self) -> Iterator[Turn]:
        return iter(self._turns)

    def __len__(self) -> int:
        return len(self._turns)


@dataclass
class Session:
    """Per-session conversation state, the only state that spans turns."""

    session_id: str
    user_id: str | None = None
    last_intent: str | None = None
    last_agent: str | None = None
    updated_at: datetime | None = None
    history: History = field(default_factory=History)
    context_data: Dict[str, Any] = field(default_factory=dict)


# Tool calls: a closed union discriminated on ``kind``.


class _ToolCallBase(BaseModel):
    result: Any = None
    error: str | None = None


class DataQueryParams(BaseModel):
    query: str
    params: List[Any] = Field(default_factory=list)


class DataQueryCall(_ToolCallBase):
    kind: Literal["dataQuery"] = "dataQuery"
    parameters: DataQueryParams


class SemanticSearchParams(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    query: str
    namespace: str = "entities"
    top_k: int = Field(default=5, alias="topK", ge=1, le=50)


class SemanticSearchCall(_ToolCallBase):
    kind: Literal["semanticSearch"] = "semanticSearch"
    parameters: SemanticSearchParams


class CreateEntityParams(BaseModel):
    entity_type: str
    data: Dict[str, Any] = Field(default_factory=dict)
    context: Dict[str, Any] = Field(default_factory=dict)


class CreateEntityCall(_ToolCallBase):
    kind: Literal["createEntity"] = "createEntity"
    parameters: CreateEntityParams


class UpdateEntityParams(BaseModel):
    entity_type: str
    entity_id: str
    data: Dict[str, Any] = Field(default_factory=dict)
    context: Dict[str, Any] = Field(default_factory=dict)


class UpdateEntityCall(_ToolCallBase):
    kind: Literal["updateEntity"] = "updateEntity"
    parameters: UpdateEntityParams


ToolCall = Annotated[
    Union[DataQueryCall, SemanticSearchCall, CreateEntityCall, UpdateEntityCall],
    Field(discriminator="kind"),
]


class RoutingDecision(BaseModel):
    """Structured output of the intent router, produced fresh for every turn."""

    model_config = ConfigDict(populate_by_name=True)

    intent: str
    workflow: str
    agent: str
    confidence: float = Field(ge=0.0, le=1.0)
    parameters: Dict[str, Any] = Field(default_factory=dict)
    tool_calls: List[ToolCall] = Field(default_factory=list, alias="toolCalls")
    reasoning: str = ""


class Action(BaseModel):
    type: str
    label: str
    data: Dict[str, Any] | None = None


class WorkflowResponse(BaseModel):
    message: str
    agent: str
    confidence: float
    actions: List[Action] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    tool_calls: List[ToolCall] = Field(default_factory=list)


class ChatRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)

    message: str = Field(min_length=1)
    session_id: str | None = Field(default=None, alias="sessionId")
    user_id: str | None = Field(default=None, alias="userId")
    context: Dict[str, Any] | None = None
    municipality_id: str | None = Field(default=None, alias="municipalityId")


class ChatResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    success: bool = True
    response: str
    agent: str
    confidence: float
    actions: List[Action] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    tool_calls: List[ToolCall] = Field(default_factory=list, alias="toolCalls")

    @classmethod
    def from_workflow(cls, reply: WorkflowResponse) -> "ChatResponse":
        return cls(
            response=reply.message,
            agent=reply.agent,
            confidence=reply.confidence,
            actions=reply.actions,
            metadata=reply.metadata,
            tool_calls=reply.tool_calls,
        )
