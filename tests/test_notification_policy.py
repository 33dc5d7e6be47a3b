from __future__ import annotations

from datetime import datetime, timezone

from medicagent.agents.notification.planner import fallback_intent
from medicagent.agents.notification.policy import (
    ERROR_EMPTY_BODY,
    ERROR_NO_RECIPIENTS,
    NOTE_CHANNEL_FORCED,
    NOTE_INFERRED,
    NOTE_RELATIVE,
    NOTE_RELATIVE_INVALID,
    NOTE_UTTERANCE_FALLBACK,
    PolicyContext,
    evaluate_policy,
    render_template,
)
from medicagent.schemas.notifications import ParsedIntent, RetrySpec
from tests.helpers.stubs import make_input

NOW = datetime(2024, 5, 1, 0, 0, tzinfo=timezone.utc)
PHONE = "+61412345678"


def _ctx(message: str, **kwargs) -> PolicyContext:
    return PolicyContext(default_tz="Australia/Sydney", input=make_input(message), now=NOW, **kwargs)


def _intent(**payload) -> ParsedIntent:
    payload.setdefault("recipients", [{"phoneE164": PHONE}])
    return ParsedIntent.model_validate(payload)


def test_now_schedule_infers_tomorrow_from_utterance() -> None:
    result = evaluate_policy(_intent(message="Take your meds"), _ctx("remind me tomorrow to take meds"))

    assert result.ok
    assert result.plan.schedule_at == "2024-05-01T23:00:00Z"
    assert result.plan.to == [PHONE]
    assert NOTE_INFERRED in result.notes


def test_now_schedule_infers_relative_and_clock_times() -> None:
    relative = evaluate_policy(_intent(message="Stretch"), _ctx("remind me in 15 minutes"))
    evening = evaluate_policy(_intent(message="Stretch"), _ctx("remind me at 7pm"))

    assert relative.plan.schedule_at == "2024-05-01T00:15:00Z"
    assert evening.plan.schedule_at == "2024-05-01T09:00:00Z"


def test_now_schedule_without_time_words_sends_immediately() -> None:
    result = evaluate_policy(_intent(message="Hello"), _ctx("send a hello"))

    assert result.plan.schedule_at == "2024-05-01T00:00:00Z"
    assert NOTE_INFERRED not in result.notes


def test_relative_duration() -> None:
    result = evaluate_policy(
        _intent(message="Check sugar", schedule={"type": "relative", "durationISO8601": "PT30M"}),
        _ctx("check sugar soon"),
    )

    assert result.plan.schedule_at == "2024-05-01T00:30:00Z"
    assert NOTE_RELATIVE in result.notes


def test_invalid_relative_duration_schedules_now_with_note() -> None:
    result = evaluate_policy(
        _intent(message="Check sugar", schedule={"type": "relative", "durationISO8601": "soonish"}),
        _ctx("check sugar"),
    )

    assert result.ok
    assert result.plan.schedule_at == "2024-05-01T00:00:00Z"
    assert NOTE_RELATIVE_INVALID in result.notes


def test_naive_datetime_uses_request_timezone() -> None:
    result = evaluate_policy(
        _intent(message="Dentist", schedule={"type": "datetime", "iso": "2024-05-02T08:00:00"}),
        _ctx("dentist reminder"),
    )

    assert result.plan.schedule_at == "2024-05-01T22:00:00Z"


def test_cron_schedule_becomes_repeat() -> None:
    result = evaluate_policy(
        _intent(message="Vitamins", schedule={"type": "cron", "expr": "0 8 * * *", "limit": 5}),
        _ctx("vitamins every morning"),
    )

    assert result.plan.schedule_at is None
    assert result.plan.repeat.cron == "0 8 * * *"
    assert result.plan.repeat.tz == "Australia/Sydney"
    assert result.plan.repeat.limit == 5


def test_non_sms_channel_is_forced() -> None:
    result = evaluate_policy(_intent(message="Hi", channel="whatsapp"), _ctx("hi"))

    assert result.plan.channel == "sms"
    assert NOTE_CHANNEL_FORCED in result.notes


def test_template_rendering_and_unknown_template_fallback() -> None:
    rendered = evaluate_policy(
        _intent(templateKey="medication.simple", variables={"name": " Sam", "medication": "aspirin"}),
        _ctx("aspirin reminder"),
    )
    unknown = evaluate_policy(_intent(templateKey="does.not.exist"), _ctx("original words"))

    assert rendered.plan.body == "Hi Sam, it's time to take aspirin."
    assert "Template(medication.simple) has been applied." in rendered.notes
    assert unknown.plan.body == "original words"
    assert NOTE_UTTERANCE_FALLBACK in unknown.notes


def test_render_template_blanks_missing_variables() -> None:
    assert render_template("reminder.simple", {"text": "stretch"}) == "Hi, this is your reminder: stretch"
    assert render_template("nope", {}) == ""


def test_invalid_recipients_fail_without_default() -> None:
    result = evaluate_policy(_intent(message="Hi", recipients=[{"phoneE164": "0412345678"}]), _ctx("hi"))

    assert not result.ok
    assert result.error == ERROR_NO_RECIPIENTS
    assert result.plan is None


def test_default_recipient_is_used_when_none_valid() -> None:
    result = evaluate_policy(_intent(message="Hi", recipients=[]), _ctx("hi", default_recipient="+61400000000"))

    assert result.plan.to == ["+61400000000"]


def test_recipients_are_normalised_and_deduplicated() -> None:
    result = evaluate_policy(
        _intent(message="Hi", recipients=[{"phoneE164": "+61 412 345 678"}, {"phoneE164": PHONE}]),
        _ctx("hi"),
    )

    assert result.plan.to == [PHONE]


def test_empty_body_fails() -> None:
    result = evaluate_policy(_intent(message="  "), _ctx("   "))

    assert not result.ok
    assert result.error == ERROR_EMPTY_BODY


def test_identical_requests_share_idempotency_key() -> None:
    first = evaluate_policy(_intent(message="Take meds"), _ctx("tomorrow"))
    second = evaluate_policy(_intent(message="Take meds"), _ctx("tomorrow"))
    other = evaluate_policy(_intent(message="Take other meds"), _ctx("tomorrow"))

    assert first.plan.idempotency_key == second.plan.idempotency_key
    assert first.plan.idempotency_key != other.plan.idempotency_key


def test_retry_settings_are_copied_into_plan() -> None:
    result = evaluate_policy(_intent(message="Hi"), _ctx("hi", retry=RetrySpec(attempts=5, backoffMs=100)))

    assert result.plan.retry.attempts == 5
    assert result.plan.retry.backoff_ms == 100


def test_fallback_intent_scenario() -> None:
    message = "notify +61412345678 tomorrow to take meds"
    intent = fallback_intent(message).model_copy(update={"message": "Take meds"})

    result = evaluate_policy(intent, _ctx(message))

    assert result.ok
    assert result.plan.to == [PHONE]
    assert result.plan.schedule_at == "2024-05-01T23:00:00Z"
    assert result.plan.labels == ["notify"]
