from __future__ import annotations

import re

from pydantic import ValidationError

from ...core.logging import get_logger
from ...schemas.notifications import NowSchedule, ParsedIntent, Recipient
from ...services.llm import LLMCapability
from ...utils.json_extract import JSONExtractionError, extract_json_object

logger = get_logger(name=__name__)

_PHONE_TOKEN = re.compile(r"\+[1-9]\d{6,14}\b")

EXTRACTION_PROMPT = """You are a strict JSON information extractor.
Return ONLY valid JSON matching this shape (no comments, no markdown):
{
  "intent": "notify" | "remind" | "follow_up",
  "channel": "sms" | "whatsapp",
  "recipients": [{"phoneE164": string, "name"?: string}],
  "schedule":
    {"type": "now"}
    | {"type": "datetime", "iso": string, "timezone"?: string}
    | {"type": "relative", "durationISO8601": string}
    | {"type": "cron", "expr": string, "timezone"?: string, "limit"?: number},
  "templateKey"?: string,
  "message"?: string,
  "variables"?: {string: string | number},
  "timezone"?: string,
  "operation"?: "create" | "update" | "cancel" | "query",
  "notificationId"?: string
}

Rules:
- Use E.164 for phone numbers (e.g. +61412345678). If none is given, leave recipients empty.
- If unsure about the schedule, use {"type": "now"}.
- Prefer channel "sms".
- Do not invent data."""


def fallback_intent(message: str) -> ParsedIntent:
    """Conservative intent used when the model output cannot be parsed."""
    recipients = [Recipient(phone_e164=token) for token in dict.fromkeys(_PHONE_TOKEN.findall(message))]
    return ParsedIntent(intent="notify", channel="sms", recipients=recipients, schedule=NowSchedule())


async def extract_intent(llm: LLMCapability, message: str) -> ParsedIntent:
    prompt = f"{EXTRACTION_PROMPT}\n\nUser: {message}\nJSON:"
    raw = await llm.generate(prompt, temperature=0.0)
    try:
        parsed = ParsedIntent.model_validate(extract_json_object(raw))
    except (JSONExtractionError, ValidationError) as exc:
        logger.info("notification_intent_fallback", error=str(exc))
        return fallback_intent(message)
    if not parsed.recipients:
        parsed = parsed.model_copy(update={"recipients": fallback_intent(message).recipients})
    return parsed
