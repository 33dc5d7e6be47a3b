from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, Field

from .agents import AgentAction, AgentMetadata, AgentOutput, Followup


class MessageType(str, Enum):
    REQUEST = "request"
    RESPONSE = "response"
    NOTIFICATION = "notification"


def _message_id() -> str:
    return f"msg_{uuid4().hex[:12]}"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class A2AMessage(BaseModel):
    id: str = Field(default_factory=_message_id)
    from_agent: str
    to_agent: str
    type: MessageType
    content: Any = None
    timestamp: datetime = Field(default_factory=_utcnow)
    session_id: str | None = None


class TimelineEntry(BaseModel):
    step: str
    ms: float = Field(..., ge=0.0)
    intent: str | None = None
    route: str | None = None
    usage_total_tokens: int | None = None


class CollaborationRecord(BaseModel):
    strategy: str
    rules: list[str]
    succeeded: list[str] = Field(default_factory=list)
    failed: list[str] = Field(default_factory=list)


class GraphContext(BaseModel):
    intent: str | None = None
    entities: dict[str, Any] = Field(default_factory=dict)
    shared_data: dict[str, Any] = Field(default_factory=dict)
    multi_agent_request: bool = False
    additional_agents: list[str] = Field(default_factory=list)
    collaboration_history: list[CollaborationRecord] = Field(default_factory=list)


class GraphState(BaseModel):
    """Per-request state threaded through the orchestration stages.

    Stages never mutate a state in place; they return ``model_copy`` updates
    with freshly built lists so a state handed to a concurrent branch stays
    stable.
    """

    user_id: str
    session_id: str
    original_message: str
    metadata: AgentMetadata = Field(default_factory=AgentMetadata)
    messages: list[A2AMessage] = Field(default_factory=list)
    current_agent: str = "router"
    final_output: AgentOutput | None = None
    context: GraphContext = Field(default_factory=GraphContext)
    error: str | None = None
    timeline: list[TimelineEntry] = Field(default_factory=list)
    report_ingested: bool = False


class GraphResponse(BaseModel):
    """Caller-facing projection of a finished ``GraphState``."""

    reply: str
    actions: list[AgentAction] = Field(default_factory=list)
    followups: list[Followup] = Field(default_factory=list)
    route: str | None = None
    intent: str | None = None
    current_agent: str
    shared_data: dict[str, Any] = Field(default_factory=dict)
    timeline: list[TimelineEntry] = Field(default_factory=list)
    error: str | None = None

    @classmethod
    def from_state(cls, state: GraphState) -> "GraphResponse":
        output = state.final_output or AgentOutput(reply="")
        return cls(
            reply=output.reply,
            actions=list(output.actions),
            followups=list(output.followups),
            route=output.route,
            intent=state.context.intent or output.intent,
            current_agent=state.current_agent,
            shared_data=dict(state.context.shared_data),
            timeline=list(state.timeline),
            error=state.error,
        )
