from __future__ import annotations

import hashlib
import json
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Mapping

from ...core.logging import get_logger
from ...schemas.agents import AgentInput
from ...schemas.notifications import (
    CronSchedule,
    DateTimeSchedule,
    NotificationPlan,
    ParsedIntent,
    PolicyResult,
    RelativeSchedule,
    RepeatSpec,
    RetrySpec,
)
from ...utils.nltime import infer_datetime, parse_duration, resolve_zone, to_utc_iso

logger = get_logger(name=__name__)

SUPPORTED_CHANNEL = "sms"
E164_PATTERN = re.compile(r"^\+[1-9]\d{6,14}$")
_PLACEHOLDER = re.compile(r"\{\{\s*(\w+)\s*\}\}")

TEMPLATES: dict[str, str] = {
    "reminder.simple": "Hi{{name}}, this is your reminder: {{text}}",
    "medication.simple": "Hi{{name}}, it's time to take {{medication}}.",
    "appointment.upcoming": "Hi{{name}}, you have an appointment {{when}}.",
}

NOTE_CHANNEL_FORCED = "Channel forced to sms."
NOTE_UTTERANCE_FALLBACK = "Using original message as fallback."
NOTE_RELATIVE = "Relative schedule converted to absolute time."
NOTE_RELATIVE_INVALID = "Relative schedule could not be parsed; scheduling now."
NOTE_DATETIME_INVALID = "Scheduled time could not be parsed; scheduling now."
NOTE_INFERRED = "Natural language schedule inferred from utterance."

ERROR_NO_RECIPIENTS = "No valid recipient phone numbers found."
ERROR_EMPTY_BODY = "Message body is empty."


@dataclass(slots=True)
class PolicyContext:
    default_tz: str
    input: AgentInput
    now: datetime | None = None
    default_hour: int = 9
    default_recipient: str | None = None
    retry: RetrySpec = field(default_factory=RetrySpec)


@dataclass(slots=True)
class ScheduleDecision:
    schedule_at: str | None = None
    repeat: RepeatSpec | None = None
    notes: list[str] = field(default_factory=list)


def evaluate_policy(intent: ParsedIntent, ctx: PolicyContext) -> PolicyResult:
    """Turn a parsed intent into an idempotent plan, or explain why it cannot be scheduled."""
    notes: list[str] = []

    channel = force_channel(intent, notes)
    recipients = pick_recipients(intent, ctx)
    if not recipients:
        return PolicyResult(ok=False, error=ERROR_NO_RECIPIENTS, notes=notes)

    body = pick_body(intent, ctx, notes)
    if not body:
        return PolicyResult(ok=False, error=ERROR_EMPTY_BODY, notes=notes)

    tz = pick_timezone(intent, ctx)
    decision = pick_schedule(intent, tz, ctx)
    notes.extend(decision.notes)

    key = idempotency_key(
        to=recipients,
        body=body,
        schedule_at=decision.schedule_at,
        repeat=decision.repeat.model_dump(exclude_none=True) if decision.repeat else None,
    )
    plan = NotificationPlan(
        channel=channel,
        to=recipients,
        body=body,
        schedule_at=decision.schedule_at,
        repeat=decision.repeat,
        retry=ctx.retry.model_copy(),
        idempotency_key=key,
        labels=[intent.intent],
        policy_notes=list(notes),
    )
    return PolicyResult(ok=True, plan=plan, notes=notes)


def force_channel(intent: ParsedIntent, notes: list[str]) -> str:
    if intent.channel != SUPPORTED_CHANNEL:
        notes.append(NOTE_CHANNEL_FORCED)
    return SUPPORTED_CHANNEL


def pick_recipients(intent: ParsedIntent, ctx: PolicyContext) -> list[str]:
    recipients: list[str] = []
    for recipient in intent.recipients:
        number = recipient.phone_e164.replace(" ", "")
        if E164_PATTERN.match(number) and number not in recipients:
            recipients.append(number)
        else:
            logger.info("notification_recipient_rejected", recipient=recipient.phone_e164)
    if not recipients and ctx.default_recipient and E164_PATTERN.match(ctx.default_recipient):
        recipients.append(ctx.default_recipient)
    return recipients


def render_template(key: str, variables: Mapping[str, Any]) -> str:
    template = TEMPLATES.get(key, "")
    return _PLACEHOLDER.sub(lambda match: str(variables.get(match.group(1), "")), template)


def pick_body(intent: ParsedIntent, ctx: PolicyContext, notes: list[str]) -> str:
    direct = (intent.message or "").strip()
    if direct:
        return direct
    if intent.template_key:
        rendered = render_template(intent.template_key, intent.variables).strip()
        if rendered:
            notes.append(f"Template({intent.template_key}) has been applied.")
            return rendered
        logger.warning("notification_template_unknown", template_key=intent.template_key)
    fallback = ctx.input.message.strip()
    if fallback:
        notes.append(NOTE_UTTERANCE_FALLBACK)
        return fallback
    return ""


def pick_timezone(intent: ParsedIntent, ctx: PolicyContext) -> str:
    return intent.timezone or ctx.input.metadata.timezone or ctx.default_tz


def pick_schedule(intent: ParsedIntent, tz: str, ctx: PolicyContext) -> ScheduleDecision:
    now = ctx.now or datetime.now(timezone.utc)
    schedule = intent.schedule

    if isinstance(schedule, DateTimeSchedule):
        try:
            moment = datetime.fromisoformat(schedule.iso.replace("Z", "+00:00"))
        except ValueError:
            return ScheduleDecision(schedule_at=to_utc_iso(now), notes=[NOTE_DATETIME_INVALID])
        if moment.tzinfo is None:
            moment = moment.replace(tzinfo=resolve_zone(schedule.timezone or tz))
        return ScheduleDecision(schedule_at=to_utc_iso(moment))

    if isinstance(schedule, RelativeSchedule):
        try:
            delta = parse_duration(schedule.duration)
        except ValueError:
            logger.warning("notification_duration_invalid", duration=schedule.duration)
            return ScheduleDecision(schedule_at=to_utc_iso(now), notes=[NOTE_RELATIVE_INVALID])
        return ScheduleDecision(schedule_at=to_utc_iso(now + delta), notes=[NOTE_RELATIVE])

    if isinstance(schedule, CronSchedule):
        return ScheduleDecision(
            repeat=RepeatSpec(cron=schedule.expr, tz=schedule.timezone or tz, limit=schedule.limit)
        )

    inferred = infer_datetime(ctx.input.message, now=now, tz=tz, default_hour=ctx.default_hour)
    if inferred is not None and inferred > now:
        return ScheduleDecision(schedule_at=to_utc_iso(inferred), notes=[NOTE_INFERRED])
    return ScheduleDecision(schedule_at=to_utc_iso(now))


def idempotency_key(
    *,
    to: list[str],
    body: str,
    schedule_at: str | None,
    repeat: Mapping[str, Any] | None,
) -> str:
    """Stable digest over the identity-relevant plan fields."""
    identity: dict[str, Any] = {"to": list(to), "body": body}
    if schedule_at is not None:
        identity["scheduleAt"] = schedule_at
    if repeat is not None:
        identity["repeat"] = dict(repeat)
    encoded = json.dumps(identity, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()[:32]
