from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Sequence

from ..schemas.agents import AgentMetadata, HandlerName

FALLBACK_INTENT = "health.advice"
DEFAULT_ROUTE = HandlerName.GP

INTENT_ROUTES: Mapping[str, HandlerName] = {
    "appointment.book": HandlerName.APPOINTMENT,
    "appointment.check": HandlerName.APPOINTMENT,
    "report.cognitive.weekly": HandlerName.REPORT,
    "report.generate": HandlerName.REPORT,
    "report.summary": HandlerName.REPORT,
    "report.status": HandlerName.REPORT,
    "health.advice": HandlerName.GP,
    "notification.schedule": HandlerName.NOTIFICATION,
}

KNOWN_INTENTS: tuple[str, ...] = tuple(INTENT_ROUTES)

# Intent used when a multi-target classification names a handler directly.
HANDLER_INTENTS: Mapping[str, str] = {
    "notification": "notification.schedule",
    "appointment": "appointment.book",
    "medication": "notification.schedule",
    "report": "report.cognitive.weekly",
    "gp": "health.advice",
}

PLACEHOLDER_ACCESS_TOKENS = frozenset({"test-token"})


def resolve_route(intent: str | None) -> HandlerName:
    """Total mapping from any intent string onto a registered handler."""
    if not intent:
        return DEFAULT_ROUTE
    return INTENT_ROUTES.get(intent, DEFAULT_ROUTE)


def normalise_intent(intent: str | None) -> str:
    candidate = (intent or "").strip().lower()
    return candidate if candidate in INTENT_ROUTES else FALLBACK_INTENT


@dataclass(frozen=True, slots=True)
class GuardDecision:
    blocked: bool
    reason: str | None = None
    guard: str | None = None


ALLOW = GuardDecision(blocked=False)

Guard = Callable[[str, Mapping[str, Any], AgentMetadata], GuardDecision]

_APPOINTMENT_INTENT = re.compile(r"^appointment\.")


def calendar_access_guard(intent: str, entities: Mapping[str, Any], metadata: AgentMetadata) -> GuardDecision:
    if not _APPOINTMENT_INTENT.match(intent):
        return ALLOW
    token = metadata.google_access_token
    if token and token not in PLACEHOLDER_ACCESS_TOKENS:
        return ALLOW
    return GuardDecision(
        blocked=True,
        reason="Google Calendar access is required to manage appointments.",
        guard="calendar_access",
    )


BLOCK_GUARDS: tuple[Guard, ...] = (calendar_access_guard,)


def evaluate_guards(
    intent: str,
    entities: Mapping[str, Any],
    metadata: AgentMetadata,
    guards: Sequence[Guard] = BLOCK_GUARDS,
) -> GuardDecision:
    """First blocking guard wins."""
    for guard in guards:
        decision = guard(intent, entities, metadata)
        if decision.blocked:
            return decision
    return ALLOW
