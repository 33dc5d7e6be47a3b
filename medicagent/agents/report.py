from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, time, timedelta, timezone
from typing import Any, ClassVar

from ..core.logging import get_logger
from ..schemas.agents import (
    ActionStatus,
    AgentAction,
    AgentInput,
    AgentOutput,
    Followup,
    HandlerName,
    error_action,
)
from ..services.llm import generate_tracked, usage_total
from ..services.reports import InMemoryInteractionStore, InteractionStore, build_interaction
from .base import BaseHandler

logger = get_logger(name=__name__)

_REPORT_REQUEST = re.compile(r"report|summary|status", re.IGNORECASE)

ASSISTANT_PROMPT = (
    "You are a helpful health report assistant. Help users understand their health data and generate "
    "meaningful reports. Ask which health metrics they want to see."
)

SUMMARY_PROMPT = """Summarise the user's {focus} health trends for {label} in a short, encouraging paragraph.
Mention notable patterns and one suggestion. Interactions:
{rows}

Summary:"""


@dataclass(slots=True)
class Timeframe:
    start: datetime
    end: datetime
    label: str

    def as_payload(self) -> dict[str, str]:
        return {"start": self.start.isoformat(), "end": self.end.isoformat(), "label": self.label}


def _day_bounds(day: datetime) -> tuple[datetime, datetime]:
    start = datetime.combine(day.date(), time.min, tzinfo=timezone.utc)
    return start, start + timedelta(days=1) - timedelta(seconds=1)


def parse_timeframe(text: str, *, now: datetime) -> Timeframe | None:
    lowered = text.lower()
    if "yesterday" in lowered:
        start, end = _day_bounds(now - timedelta(days=1))
        return Timeframe(start, end, "yesterday")
    if "last month" in lowered:
        first_this = now.replace(day=1)
        last_prev = first_this - timedelta(days=1)
        start, _ = _day_bounds(last_prev.replace(day=1))
        _, end = _day_bounds(last_prev)
        return Timeframe(start, end, "last_month")
    if re.search(r"daily|today|\bday\b", lowered):
        start, end = _day_bounds(now)
        return Timeframe(start, end, "today")
    if re.search(r"weekly|\bweek\b", lowered):
        monday = now - timedelta(days=now.weekday())
        start, _ = _day_bounds(monday)
        _, end = _day_bounds(monday + timedelta(days=6))
        return Timeframe(start, end, "this_week")
    if re.search(r"monthly|\bmonth\b", lowered):
        first = now.replace(day=1)
        next_first = (first + timedelta(days=32)).replace(day=1)
        start, _ = _day_bounds(first)
        _, end = _day_bounds(next_first - timedelta(days=1))
        return Timeframe(start, end, "this_month")
    return None


def parse_focus(text: str) -> str:
    lowered = text.lower()
    if re.search(r"cognitive|memory|brain", lowered):
        return "cognitive"
    if re.search(r"mental|mood|stress", lowered):
        return "mental"
    if re.search(r"physical|fitness|exercise|\bbp\b|blood pressure|heart", lowered):
        return "physical"
    return "overall"


@dataclass
class ReportHandler(BaseHandler):
    name: ClassVar[HandlerName] = HandlerName.REPORT
    capabilities: ClassVar[tuple[str, ...]] = ("aggregate_metrics", "generate_summary")

    interactions: InteractionStore = field(default_factory=InMemoryInteractionStore)
    clock: Any = field(default=None, repr=False)

    def _now(self) -> datetime:
        return self.clock() if self.clock is not None else datetime.now(timezone.utc)

    async def process(self, agent_input: AgentInput) -> AgentOutput:
        try:
            return await self._process(agent_input)
        except Exception as exc:
            logger.exception(
                "report_processing_failed",
                user_id=agent_input.user_id,
                session_id=agent_input.session_id,
                error=str(exc),
            )
            return AgentOutput(
                reply="I'm sorry, I encountered an error while processing your report request. Please try again.",
                route=self.name.value,
                intent="report.error",
                actions=[error_action("REPORT_PROCESSING_ERROR", str(exc))],
                followups=[Followup(type="question", text="Is there anything else I can help you with?")],
            )

    async def _process(self, agent_input: AgentInput) -> AgentOutput:
        now = self._now()
        if not agent_input.interaction_recorded:
            await self.interactions.save(
                build_interaction(agent_input.user_id, agent_input.session_id, agent_input.message, now)
            )

        if not _REPORT_REQUEST.search(agent_input.message):
            reply = await generate_tracked(
                self.llm,
                f"{ASSISTANT_PROMPT}\n\nUser: {agent_input.message}\n\nAssistant:",
                temperature=0.7,
            )
            return AgentOutput(
                reply=reply.text.strip(),
                route=self.name.value,
                intent="report.clarification",
                actions=[AgentAction(type="request_report_type", status=ActionStatus.PENDING)],
                followups=[
                    Followup(
                        type="question",
                        text="What timeframe (daily, weekly, monthly) and focus (cognitive, mental, physical) do you prefer?",
                    )
                ],
                usage_total_tokens=usage_total(reply),
            )

        focus = parse_focus(agent_input.message)
        timeframe = parse_timeframe(agent_input.message, now=now) or Timeframe(
            datetime.fromtimestamp(0, tz=timezone.utc), now, "all_history"
        )
        rows = await self.interactions.query(agent_input.user_id, timeframe.start, timeframe.end, limit=500)
        listing = "\n".join(f"- [{row.category}] {row.text}" for row in rows) or "- (no interactions recorded)"
        try:
            summary = await generate_tracked(
                self.llm,
                SUMMARY_PROMPT.format(focus=focus, label=timeframe.label.replace("_", " "), rows=listing),
                temperature=0.3,
            )
        except Exception as exc:
            logger.warning("report_summary_failed", error=str(exc), focus=focus, timeframe=timeframe.label)
            return AgentOutput(
                reply=f"Unable to generate {focus} report for {timeframe.label.replace('_', ' ')} right now.",
                route=self.name.value,
                intent=f"report.{focus}.{timeframe.label}",
                actions=[
                    AgentAction(
                        type="generate_report",
                        status=ActionStatus.FAILED,
                        payload={"timeframe": timeframe.as_payload(), "focus": focus},
                    )
                ],
            )
        return AgentOutput(
            reply=summary.text.strip(),
            route=self.name.value,
            intent=f"report.{focus}.{timeframe.label}",
            actions=[
                AgentAction(
                    type="generate_report",
                    status=ActionStatus.DONE,
                    payload={"timeframe": timeframe.as_payload(), "focus": focus},
                )
            ],
            shared_data={
                "report_schedule": {
                    "focus": focus,
                    "timeframe": timeframe.as_payload(),
                    "interaction_count": len(rows),
                    "user_id": agent_input.user_id,
                    "timestamp": now.isoformat(),
                }
            },
            usage_total_tokens=usage_total(summary),
        )
