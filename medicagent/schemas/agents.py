from __future__ import annotations

from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


class HandlerName(str, Enum):
    ROUTER = "router"
    APPOINTMENT = "appointment"
    REPORT = "report"
    NOTIFICATION = "notification"
    GP = "gp"


class ActionStatus(str, Enum):
    PENDING = "pending"
    DONE = "done"
    FAILED = "failed"


class AgentMetadata(BaseModel):
    """Per-request hints supplied by the caller."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    timezone: str | None = None
    locale: str | None = None
    google_access_token: str | None = Field(default=None, alias="googleAccessToken")


class AgentInput(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user_id: str = Field(..., alias="userId", min_length=1)
    session_id: str = Field(..., alias="sessionId", min_length=1)
    message: str
    metadata: AgentMetadata = Field(default_factory=AgentMetadata)
    intent: str | None = None
    entities: dict[str, Any] = Field(default_factory=dict)
    shared_data: dict[str, Any] = Field(default_factory=dict, alias="sharedData")
    interaction_recorded: bool = Field(default=False, exclude=True)


class AgentAction(BaseModel):
    type: str
    status: ActionStatus
    payload: dict[str, Any] = Field(default_factory=dict)


class Followup(BaseModel):
    type: Literal["question", "confirm", "info"]
    text: str


class AgentOutput(BaseModel):
    reply: str
    actions: list[AgentAction] = Field(default_factory=list)
    followups: list[Followup] = Field(default_factory=list)
    shared_data: dict[str, Any] | None = None
    usage_total_tokens: int | None = None
    route: str | None = None
    intent: str | None = None


def error_action(reason: str, details: str | None = None) -> AgentAction:
    payload: dict[str, Any] = {"reason": reason}
    if details is not None:
        payload["details"] = details
    return AgentAction(type="error", status=ActionStatus.FAILED, payload=payload)
