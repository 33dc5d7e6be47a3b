from __future__ import annotations

from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator


class NotificationOperation(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    CANCEL = "cancel"
    QUERY = "query"


class PlanStatus(str, Enum):
    SCHEDULED = "scheduled"
    CANCELED = "canceled"
    COMPLETED = "completed"
    FAILED = "failed"


class Recipient(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    phone_e164: str = Field(..., alias="phoneE164")
    name: str | None = None


class NowSchedule(BaseModel):
    type: Literal["now"] = "now"


class DateTimeSchedule(BaseModel):
    type: Literal["datetime"] = "datetime"
    iso: str
    timezone: str | None = None


class RelativeSchedule(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    type: Literal["relative"] = "relative"
    duration: str = Field(..., alias="durationISO8601")


class CronSchedule(BaseModel):
    type: Literal["cron"] = "cron"
    expr: str
    timezone: str | None = None
    limit: int | None = Field(default=None, ge=1)


Schedule = Annotated[
    Union[NowSchedule, DateTimeSchedule, RelativeSchedule, CronSchedule],
    Field(discriminator="type"),
]


class ParsedIntent(BaseModel):
    """Structured scheduling request extracted from free text."""

    model_config = ConfigDict(populate_by_name=True)

    intent: Literal["notify", "remind", "follow_up"] = "notify"
    channel: str = "sms"
    recipients: list[Recipient] = Field(default_factory=list)
    schedule: Schedule = Field(default_factory=NowSchedule)
    template_key: str | None = Field(default=None, alias="templateKey")
    message: str | None = None
    variables: dict[str, str | int | float] = Field(default_factory=dict)
    timezone: str | None = None
    operation: NotificationOperation = NotificationOperation.CREATE
    notification_id: str | None = Field(default=None, alias="notificationId")


class RepeatSpec(BaseModel):
    cron: str
    tz: str
    limit: int | None = None


class RetrySpec(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    attempts: int = Field(3, ge=1)
    backoff_ms: int = Field(2000, ge=0, alias="backoffMs")


class NotificationPlan(BaseModel):
    """A fully resolved job description ready for the queue."""

    model_config = ConfigDict(populate_by_name=True)

    channel: Literal["sms"] = "sms"
    to: list[str]
    body: str
    schedule_at: str | None = Field(default=None, alias="scheduleAt")
    repeat: RepeatSpec | None = None
    retry: RetrySpec = Field(default_factory=RetrySpec)  # type: ignore[arg-type]
    idempotency_key: str = Field(..., alias="idempotencyKey", min_length=1)
    labels: list[str] = Field(default_factory=list)
    policy_notes: list[str] = Field(default_factory=list, alias="policyNotes")

    @model_validator(mode="after")
    def _exactly_one_timing(self) -> "NotificationPlan":
        if (self.schedule_at is None) == (self.repeat is None):
            raise ValueError("plan requires exactly one of schedule_at or repeat")
        return self


class PolicyResult(BaseModel):
    ok: bool
    plan: NotificationPlan | None = None
    notes: list[str] = Field(default_factory=list)
    error: str | None = None


class StoredPlan(BaseModel):
    """Plan persisted in the plan store alongside its job bookkeeping."""

    notification_id: str
    user_id: str
    job_id: str | None = None
    status: PlanStatus = PlanStatus.SCHEDULED
    plan: NotificationPlan
    updated_at: str | None = None

    def when_iso(self) -> str | None:
        return self.plan.schedule_at


class DeadLetter(BaseModel):
    reason: str
    payload: dict[str, Any]
    timestamp: str
