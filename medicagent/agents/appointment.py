from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, ClassVar, Protocol

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
from ..schemas.graph import A2AMessage, MessageType
from ..services.calendar import CalendarError, TimeSlot, event_start
from ..services.llm import generate_tracked, usage_total
from ..utils.json_extract import JSONExtractionError, extract_json_object
from ..utils.nltime import infer_datetime, resolve_zone
from .base import BaseHandler

logger = get_logger(name=__name__)

PLACEHOLDER_TOKENS = frozenset({"test-token"})

SYSTEM_PROMPT = """You are a helpful medical appointment booking assistant with access to the user's Google Calendar.
You can find available time slots, book appointments, check existing appointments and cancel appointments.
Extract date and time information from requests and confirm appointment details before booking."""

SUB_INTENTS = ("BOOK_APPOINTMENT", "FIND_SLOTS", "GET_EVENTS", "CANCEL_EVENT", "GENERAL_CHAT")

EXTRACT_PROMPT = """Extract appointment details from this message: "{message}"

Return ONLY a valid JSON object with these fields:
{{"summary": "appointment title", "description": "appointment description",
  "natural_datetime": "the date/time phrase, e.g. 'tomorrow at 3pm'", "duration": 30}}

If the message lacks clear appointment details, return: {{"error": "insufficient_info"}}"""

FOLLOWUPS = {
    "BOOK_APPOINTMENT": "Would you like to set a reminder for this appointment?",
    "FIND_SLOTS": "Would you like me to book one of these available time slots?",
    "GET_EVENTS": "Would you like to modify or cancel any of these appointments?",
}
DEFAULT_FOLLOWUP = "How else can I help you with your calendar management?"

_BARE_WEEKDAY = re.compile(r"(?<!next )\b(monday|tuesday|wednesday|thursday|friday|saturday|sunday)\b")


class CalendarClient(Protocol):
    async def list_events(self, access_token: str, time_min: datetime, time_max: datetime) -> list[dict[str, Any]]:
        ...

    async def create_event(self, access_token: str, event: dict[str, Any]) -> dict[str, Any]:
        ...

    async def find_free_slots(
        self,
        access_token: str,
        time_min: datetime,
        time_max: datetime,
        *,
        duration_minutes: int,
    ) -> list[TimeSlot]:
        ...


def has_calendar_access(token: str | None) -> bool:
    return bool(token) and token not in PLACEHOLDER_TOKENS


def classify_sub_intent(text: str) -> str:
    upper = text.strip().upper()
    for label in SUB_INTENTS:
        if label in upper:
            return label
    return "GENERAL_CHAT"


def _format_moment(moment: datetime) -> str:
    return moment.strftime("%a %d %b %Y at %H:%M")


@dataclass
class _BookingOutcome:
    reply: str
    status: ActionStatus
    event: dict[str, Any] | None = None
    start: datetime | None = None
    end: datetime | None = None


@dataclass
class AppointmentHandler(BaseHandler):
    """Books and reviews appointments in the user's Google Calendar."""

    name: ClassVar[HandlerName] = HandlerName.APPOINTMENT
    capabilities: ClassVar[tuple[str, ...]] = ("find_free_slots", "create_event", "cancel_event", "get_events")

    calendar: CalendarClient | None = None
    default_duration_minutes: int = 30
    default_tz: str = "UTC"
    clock: Any = field(default=None, repr=False)

    def _now(self) -> datetime:
        return self.clock() if self.clock is not None else datetime.now(timezone.utc)

    async def process(self, agent_input: AgentInput) -> AgentOutput:
        token = agent_input.metadata.google_access_token
        if not has_calendar_access(token) or self.calendar is None:
            return AgentOutput(
                reply=(
                    "To manage your calendar appointments, please connect your Google account first. "
                    "I can share appointment information, but I need calendar access to book appointments directly."
                ),
                actions=[AgentAction(type="auth_required", status=ActionStatus.PENDING)],
                followups=[
                    Followup(type="question", text="Would you like me to guide you through connecting your Google Calendar?")
                ],
            )

        try:
            schedule = agent_input.shared_data.get("notification_schedule")
            if schedule and "appointment_schedule" not in agent_input.shared_data:
                return await self._mirror_notification(agent_input, str(token), schedule)
            return await self._dispatch(agent_input, str(token))
        except Exception as exc:
            logger.exception(
                "appointment_processing_failed",
                user_id=agent_input.user_id,
                session_id=agent_input.session_id,
                error=str(exc),
            )
            return AgentOutput(
                reply=(
                    "I'm sorry, I encountered an error while processing your request. "
                    "Please try again or check your Google account connection."
                ),
                actions=[error_action("APPOINTMENT_PROCESSING_ERROR", str(exc))],
                followups=[Followup(type="question", text="Is there anything else I can help you with?")],
            )

    async def _dispatch(self, agent_input: AgentInput, token: str) -> AgentOutput:
        prompt = (
            f"{SYSTEM_PROMPT}\n\nAnalyze this user message and determine the intent:\n\"{agent_input.message}\"\n\n"
            f"Respond with one of: {', '.join(SUB_INTENTS)}"
        )
        classified = await generate_tracked(self.llm, prompt, temperature=0.1)
        usage = usage_total(classified)
        sub_intent = classify_sub_intent(classified.text)
        logger.info("appointment_sub_intent", sub_intent=sub_intent, user_id=agent_input.user_id)
        tz = agent_input.metadata.timezone or self.default_tz
        followups = [Followup(type="question", text=FOLLOWUPS.get(sub_intent, DEFAULT_FOLLOWUP))]

        if sub_intent == "BOOK_APPOINTMENT":
            outcome = await self._book(agent_input.message, token, tz)
            shared: dict[str, Any] | None = None
            if outcome.event is not None and outcome.start is not None and outcome.end is not None:
                shared = {
                    "appointment_schedule": {
                        "event_id": outcome.event.get("id"),
                        "summary": outcome.event.get("summary"),
                        "start": outcome.start.isoformat(),
                        "end": outcome.end.isoformat(),
                        "user_id": agent_input.user_id,
                        "timestamp": self._now().isoformat(),
                    }
                }
            return AgentOutput(
                reply=outcome.reply,
                actions=[AgentAction(type="create_event", status=outcome.status)],
                followups=followups,
                shared_data=shared,
                usage_total_tokens=usage,
            )
        if sub_intent == "FIND_SLOTS":
            reply, status = await self._find_slots(token, tz)
            return AgentOutput(
                reply=reply,
                actions=[AgentAction(type="find_free_slots", status=status)],
                followups=followups,
                usage_total_tokens=usage,
            )
        if sub_intent == "GET_EVENTS":
            reply, status = await self._get_events(token, tz)
            return AgentOutput(
                reply=reply,
                actions=[AgentAction(type="get_events", status=status)],
                followups=followups,
                usage_total_tokens=usage,
            )
        if sub_intent == "CANCEL_EVENT":
            return AgentOutput(
                reply=(
                    "To cancel an appointment, please tell me which one you mean. "
                    "You can reference it by date, time or appointment type."
                ),
                actions=[AgentAction(type="cancel_event", status=ActionStatus.PENDING)],
                followups=followups,
                usage_total_tokens=usage,
            )

        chat = await generate_tracked(
            self.llm,
            f"{SYSTEM_PROMPT}\n\nUser: {agent_input.message}\n\nAssistant:",
            temperature=0.7,
        )
        return AgentOutput(
            reply=chat.text.strip(),
            actions=[AgentAction(type="general_chat", status=ActionStatus.DONE)],
            followups=followups,
            usage_total_tokens=usage_total(chat) or usage,
        )

    def resolve_start(self, phrase: str, tz: str) -> datetime | None:
        normalised = _BARE_WEEKDAY.sub(r"next \1", phrase.lower())
        inferred = infer_datetime(normalised, now=self._now(), tz=tz, require_at=False)
        if inferred is not None:
            return inferred
        try:
            moment = datetime.fromisoformat(phrase.strip().replace("Z", "+00:00"))
        except ValueError:
            return None
        return moment if moment.tzinfo else moment.replace(tzinfo=resolve_zone(tz))

    async def _book(self, message: str, token: str, tz: str) -> _BookingOutcome:
        raw = await self.llm.generate(EXTRACT_PROMPT.format(message=message), temperature=0.1)
        try:
            details = extract_json_object(raw)
        except JSONExtractionError:
            logger.info("appointment_extraction_unparseable")
            return _BookingOutcome(
                reply=(
                    "I need more specific information to book your appointment. Please give the type of appointment "
                    "and a date and time, for example 'Book a GP appointment for Tuesday at 5pm'."
                ),
                status=ActionStatus.PENDING,
            )
        if details.get("error") == "insufficient_info":
            return _BookingOutcome(
                reply=(
                    "I need more details to book your appointment. Please specify the type of appointment "
                    "and your preferred date and time."
                ),
                status=ActionStatus.PENDING,
            )

        phrase = str(details.get("natural_datetime") or details.get("naturalDateTime") or message)
        start = self.resolve_start(phrase, tz) or self.resolve_start(message, tz)
        if start is None:
            return _BookingOutcome(
                reply=(
                    "I couldn't understand the date and time you specified. "
                    "Please try again with something like 'Tuesday at 5pm' or 'next Monday at 2pm'."
                ),
                status=ActionStatus.PENDING,
            )
        try:
            duration = int(details.get("duration") or self.default_duration_minutes)
        except (TypeError, ValueError):
            duration = self.default_duration_minutes
        end = start + timedelta(minutes=duration)

        try:
            conflicts = await self.calendar.list_events(token, start, end)
            if conflicts:
                return _BookingOutcome(
                    reply=(
                        f"I found a conflict in your calendar on {_format_moment(start)}. "
                        "Would you like me to suggest alternative times?"
                    ),
                    status=ActionStatus.PENDING,
                )
            summary = str(details.get("summary") or "Medical Appointment")
            event = await self.calendar.create_event(
                token,
                {
                    "summary": summary,
                    "description": str(details.get("description") or "Appointment booked via MedicAgent"),
                    "start": {"dateTime": start.isoformat(), "timeZone": tz},
                    "end": {"dateTime": end.isoformat(), "timeZone": tz},
                },
            )
        except CalendarError as exc:
            if exc.auth_failed:
                return _BookingOutcome(
                    reply="Your Google Calendar access has expired. Please reconnect your Google account to book appointments.",
                    status=ActionStatus.FAILED,
                )
            raise
        event.setdefault("summary", summary)
        return _BookingOutcome(
            reply=(
                f"Appointment booked: {summary} on {_format_moment(start)} for {duration} minutes. "
                f"It has been added to your Google Calendar. Event ID: {event.get('id')}"
            ),
            status=ActionStatus.DONE,
            event=event,
            start=start,
            end=end,
        )

    async def _find_slots(self, token: str, tz: str) -> tuple[str, ActionStatus]:
        now = self._now()
        try:
            slots = await self.calendar.find_free_slots(
                token,
                now,
                now + timedelta(days=7),
                duration_minutes=self.default_duration_minutes,
            )
        except CalendarError as exc:
            logger.warning("appointment_find_slots_failed", error=str(exc))
            return "I encountered an error while checking your calendar availability. Please try again.", ActionStatus.FAILED
        if not slots:
            return (
                "I couldn't find any available 30-minute slots in your calendar for the next week. "
                "Would you like me to check a different period?",
                ActionStatus.DONE,
            )
        zone = resolve_zone(tz)
        lines = [
            f"{index}. {_format_moment(slot.start.astimezone(zone))} - {slot.end.astimezone(zone):%H:%M}"
            for index, slot in enumerate(slots[:5], start=1)
        ]
        listing = "\n".join(lines)
        return (
            f"Here are some available time slots in your calendar:\n\n{listing}\n\n"
            "Would you like me to book one of these slots?",
            ActionStatus.DONE,
        )

    async def _get_events(self, token: str, tz: str) -> tuple[str, ActionStatus]:
        now = self._now()
        try:
            events = await self.calendar.list_events(token, now, now + timedelta(days=7))
        except CalendarError as exc:
            logger.warning("appointment_get_events_failed", error=str(exc))
            return "I encountered an error while retrieving your calendar events. Please try again.", ActionStatus.FAILED
        if not events:
            return "You don't have any upcoming appointments in your calendar for the next week.", ActionStatus.DONE
        zone = resolve_zone(tz)
        lines = []
        for index, event in enumerate(events, start=1):
            start = event_start(event)
            when = _format_moment(start.astimezone(zone)) if start else "time unknown"
            lines.append(f"{index}. {event.get('summary') or 'Untitled Event'} - {when}")
        listing = "\n".join(lines)
        return f"Your upcoming appointments:\n\n{listing}", ActionStatus.DONE

    def reminder_event(self, start: datetime, *, title: str, details: str | None = None) -> dict[str, Any]:
        end = start + timedelta(minutes=self.default_duration_minutes)
        return {
            "summary": f"Reminder: {title}",
            "description": details or "Reminder created by MedicAgent",
            "start": {"dateTime": start.isoformat(), "timeZone": "UTC"},
            "end": {"dateTime": end.isoformat(), "timeZone": "UTC"},
            "reminders": {
                "useDefault": False,
                "overrides": [{"method": "popup", "minutes": 15}, {"method": "email", "minutes": 60}],
            },
        }

    def _reminder_start(self, plan: dict[str, Any]) -> datetime:
        raw = plan.get("scheduleAt")
        if raw:
            try:
                return datetime.fromisoformat(str(raw).replace("Z", "+00:00"))
            except ValueError:
                logger.info("appointment_reminder_time_unparseable", schedule_at=raw)
        return self._now() + timedelta(days=1)

    async def _mirror_notification(self, agent_input: AgentInput, token: str, schedule: dict[str, Any]) -> AgentOutput:
        """Add a calendar entry for a reminder the notification handler just scheduled."""
        plan = schedule.get("plan") or {}
        start = self._reminder_start(plan)
        try:
            event = await self.calendar.create_event(
                token,
                self.reminder_event(start, title=str(plan.get("body") or "Reminder"), details=schedule.get("message")),
            )
        except CalendarError as exc:
            logger.warning("appointment_reminder_event_failed", status_code=exc.status_code)
            return AgentOutput(
                reply="I scheduled your reminder but could not add it to your Google Calendar.",
                actions=[AgentAction(type="create_event", status=ActionStatus.FAILED)],
            )
        end = start + timedelta(minutes=self.default_duration_minutes)
        return AgentOutput(
            reply=f"I also added the reminder to your Google Calendar for {_format_moment(start)}.",
            actions=[AgentAction(type="create_event", status=ActionStatus.DONE, payload={"eventId": event.get("id")})],
            shared_data={
                "appointment_schedule": {
                    "event_id": event.get("id"),
                    "summary": event.get("summary"),
                    "start": start.isoformat(),
                    "end": end.isoformat(),
                    "user_id": agent_input.user_id,
                    "timestamp": self._now().isoformat(),
                    "source": "notification",
                }
            },
        )

    async def handle_a2a_request(self, message: A2AMessage) -> None:
        content = message.content if isinstance(message.content, dict) else {}
        if content.get("action") != "create_reminder_event":
            await super().handle_a2a_request(message)
            return
        token = content.get("access_token")
        if not has_calendar_access(token) or self.calendar is None:
            await self.send_a2a_message(
                message.from_agent,
                MessageType.RESPONSE,
                {"success": False, "error": "Calendar access is not available"},
            )
            return
        data = content.get("data") or {}
        start = self._reminder_start(data)
        try:
            event = await self.calendar.create_event(
                token,
                self.reminder_event(start, title=str(data.get("title") or "Medication"), details=data.get("details")),
            )
        except CalendarError as exc:
            logger.warning("a2a_reminder_event_failed", status_code=exc.status_code)
            await self.send_a2a_message(
                message.from_agent,
                MessageType.RESPONSE,
                {"success": False, "error": "Failed to create reminder event"},
            )
            return
        await self.send_a2a_message(
            message.from_agent,
            MessageType.RESPONSE,
            {"success": True, "message": "Reminder added to calendar", "event_id": event.get("id")},
        )
