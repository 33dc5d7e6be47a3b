from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, ClassVar

from ..agents.base import BaseHandler
from ..core.logging import get_logger
from ..core.metrics import record_guard_block, record_route_decision
from ..schemas.agents import AgentInput, AgentOutput, HandlerName, error_action
from ..services.llm import generate_tracked, usage_total
from ..utils.json_extract import JSONExtractionError, extract_json_array, extract_json_object
from .intent_routing import (
    FALLBACK_INTENT,
    HANDLER_INTENTS,
    KNOWN_INTENTS,
    GuardDecision,
    evaluate_guards,
    normalise_intent,
    resolve_route,
)
from .registry import HandlerRegistry

logger = get_logger(name=__name__)

BLOCKED_ROUTE = "none"
BLOCKED_INTENT = "blocked"

MULTI_TARGET_PROMPT = """You are an intent classifier for a medical assistant system.
Decide which agent(s) should handle the user's message.

Available agents:
- notification: scheduling SMS/notification reminders (includes medication reminders)
- appointment: booking or managing medical appointments
- report: generating health reports
- gp: general practitioner style advice and conversation

Return ONLY a JSON array of agent names, in priority order.

Examples:
- "Send me a blood pressure medication reminder tomorrow at 2pm" -> ["notification"]
- "Book a doctor appointment" -> ["appointment"]
- "Generate my health status report" -> ["report"]
- "I have a cold" -> ["gp"]
- "Book GP appointment tomorrow at 1:30pm and send SMS reminder" -> ["appointment", "notification"]
- "Set medication schedule and add to calendar" -> ["notification", "appointment"]

Rules:
- Only include agents that are actually needed.
- Single-purpose requests name one agent.
- If the message mentions a GP, doctor or appointment AND a notification, SMS or reminder, return ["appointment", "notification"]."""

HYBRID_PROMPT = """You are an intent classifier. Return the most appropriate intent label with a confidence score.

Priority order (highest to lowest):
1. notification.schedule - SMS/push notifications, alarms, reminders (includes medication reminders)
2. appointment.book - booking medical appointments
3. report.cognitive.weekly - health reports and summaries
4. health.advice - general health questions and advice

Available labels: {labels}

User: {message}

Respond with JSON:
{{"intent": "chosen_intent", "confidence": 0.95, "topK": [{{"intent": "intent1", "score": 0.95}}, {{"intent": "intent2", "score": 0.85}}]}}"""

SIMPLE_PROMPT = """You are an intent classifier. Return one label only from this set:
{labels}

User: {message}
Label:"""

_NOTIFY_WORDS = re.compile(r"(sms|notification|notify|push|message|text)")
_REMINDER_WORDS = re.compile(r"(remind|reminder|take|medication|pill|dose|medicine)")
_BOOKING_WORDS = re.compile(r"(book|schedule|appointment|gp|doctor)")
_WHEN_WORDS = re.compile(r"(today|tomorrow|mon|tue|wed|thu|fri|sat|sun|am|pm|:\d\d|\d ?(am|pm)|next|this)")
_REPORT_WORDS = re.compile(r"(report|summary|status)")


class ClassificationError(ValueError):
    """A classification tier produced output it could not interpret."""


@dataclass(slots=True)
class Classification:
    intent: str
    method: str
    entities: dict[str, Any] = field(default_factory=dict)
    confidence: float | None = None
    top_k: list[dict[str, Any]] = field(default_factory=list)
    usage_total_tokens: int | None = None
    multi_agent_request: bool = False
    additional_agents: list[str] = field(default_factory=list)


@dataclass(slots=True)
class RouteDecision:
    classification: Classification
    route: HandlerName | None
    guard: GuardDecision

    @property
    def blocked(self) -> bool:
        return self.guard.blocked

    @property
    def route_name(self) -> str:
        return self.route.value if self.route is not None else BLOCKED_ROUTE


def rule_based_intent(message: str) -> str | None:
    """Deterministic keyword classification; first matching rule wins."""
    text = message.lower()
    if _NOTIFY_WORDS.search(text) and _REMINDER_WORDS.search(text):
        return "notification.schedule"
    if _BOOKING_WORDS.search(text) and _WHEN_WORDS.search(text):
        return "appointment.book"
    if _REMINDER_WORDS.search(text):
        return "notification.schedule"
    if _REPORT_WORDS.search(text):
        return "report.generate"
    return None


def _add_usage(total: int | None, extra: int | None) -> int | None:
    if extra is None:
        return total
    return (total or 0) + extra


@dataclass
class RouterAgent(BaseHandler):
    """Classifies a request, applies block guards and dispatches to one handler."""

    name: ClassVar[HandlerName] = HandlerName.ROUTER
    capabilities: ClassVar[tuple[str, ...]] = ("route", "classify", "plan")

    registry: HandlerRegistry | None = None

    async def classify(self, message: str) -> Classification:
        usage: int | None = None
        try:
            multi, usage = await self._classify_multi_target(message)
            if multi is not None:
                multi.usage_total_tokens = usage
                return self._record(multi)

            quick = rule_based_intent(message)
            if quick is not None:
                return self._record(Classification(intent=quick, method="rule_based", usage_total_tokens=usage))

            hybrid = await self._classify_hybrid(message)
            hybrid.usage_total_tokens = _add_usage(usage, hybrid.usage_total_tokens)
            return self._record(hybrid)
        except Exception as exc:
            logger.exception("router_classify_failed", error=str(exc))
            return self._record(Classification(intent=FALLBACK_INTENT, method="fallback", usage_total_tokens=usage))

    def _record(self, classification: Classification) -> Classification:
        route = resolve_route(classification.intent)
        record_route_decision(intent=classification.intent, route=route.value, method=classification.method)
        logger.info(
            "router_classified",
            intent=classification.intent,
            method=classification.method,
            confidence=classification.confidence,
            multi_agent=classification.multi_agent_request,
            additional_agents=classification.additional_agents,
        )
        return classification

    async def _classify_multi_target(self, message: str) -> tuple[Classification | None, int | None]:
        prompt = f'{MULTI_TARGET_PROMPT}\n\nUser message: "{message}"\n\nAgents:'
        result = await generate_tracked(self.llm, prompt, temperature=0.1)
        usage = usage_total(result)
        try:
            agents = [str(agent).strip().lower() for agent in extract_json_array(result.text)]
        except JSONExtractionError as exc:
            logger.info("router_multi_target_unparseable", error=str(exc))
            return None, usage
        if not agents or agents[0] not in HANDLER_INTENTS:
            return None, usage
        additional = [agent for agent in agents[1:] if agent in HANDLER_INTENTS]
        return (
            Classification(
                intent=HANDLER_INTENTS[agents[0]],
                method="llm_multi_target",
                multi_agent_request=bool(additional),
                additional_agents=additional,
            ),
            usage,
        )

    async def _classify_hybrid(self, message: str) -> Classification:
        prompt = HYBRID_PROMPT.format(labels=", ".join(KNOWN_INTENTS), message=message)
        result = await generate_tracked(self.llm, prompt, temperature=0.1)
        try:
            payload = extract_json_object(result.text)
            if "intent" not in payload:
                raise ClassificationError("hybrid response carried no intent")
        except (JSONExtractionError, ClassificationError) as exc:
            logger.info("router_hybrid_unparseable", error=str(exc))
            simple = await self._classify_simple(message)
            simple.usage_total_tokens = _add_usage(usage_total(result), simple.usage_total_tokens)
            return simple

        intent = normalise_intent(str(payload.get("intent")))
        try:
            confidence = float(payload.get("confidence") or 0.5)
        except (TypeError, ValueError):
            confidence = 0.5
        top_k = payload.get("topK")
        if not isinstance(top_k, list):
            top_k = [{"intent": intent, "score": confidence}]
        return Classification(
            intent=intent,
            method="hybrid",
            confidence=confidence,
            top_k=top_k,
            usage_total_tokens=usage_total(result),
        )

    async def _classify_simple(self, message: str) -> Classification:
        prompt = SIMPLE_PROMPT.format(labels=", ".join(KNOWN_INTENTS), message=message)
        result = await generate_tracked(self.llm, prompt, temperature=0.0)
        intent = normalise_intent(result.text.strip().splitlines()[0] if result.text.strip() else "")
        return Classification(
            intent=intent,
            method="simple",
            confidence=0.5,
            top_k=[{"intent": intent, "score": 0.5}],
            usage_total_tokens=usage_total(result),
        )

    async def decide(self, agent_input: AgentInput) -> RouteDecision:
        """Classify and apply guards without dispatching."""
        classification = await self.classify(agent_input.message)
        guard = evaluate_guards(classification.intent, classification.entities, agent_input.metadata)
        if guard.blocked:
            record_guard_block(intent=classification.intent)
            logger.info("router_request_blocked", intent=classification.intent, guard=guard.guard)
            return RouteDecision(classification=classification, route=None, guard=guard)
        return RouteDecision(classification=classification, route=resolve_route(classification.intent), guard=guard)

    @staticmethod
    def blocked_output(decision: RouteDecision) -> AgentOutput:
        return AgentOutput(
            reply=decision.guard.reason or "Request is blocked by guard rule.",
            route=BLOCKED_ROUTE,
            intent=BLOCKED_INTENT,
            usage_total_tokens=decision.classification.usage_total_tokens,
        )

    async def process(self, agent_input: AgentInput) -> AgentOutput:
        try:
            decision = await self.decide(agent_input)
            if decision.blocked or decision.route is None:
                return self.blocked_output(decision)
            if self.registry is None:
                return AgentOutput(
                    reply="I'm not sure how to help with that yet.",
                    route=decision.route.value,
                    intent=decision.classification.intent,
                )
            handler = self.registry.get(decision.route)
            result = await handler.process(
                agent_input.model_copy(
                    update={
                        "intent": decision.classification.intent,
                        "entities": dict(decision.classification.entities),
                    }
                )
            )
            return result.model_copy(
                update={
                    "route": decision.route.value,
                    "intent": decision.classification.intent,
                    "usage_total_tokens": _add_usage(
                        decision.classification.usage_total_tokens, result.usage_total_tokens
                    ),
                }
            )
        except Exception as exc:
            logger.exception(
                "router_processing_failed",
                user_id=agent_input.user_id,
                session_id=agent_input.session_id,
                error=str(exc),
            )
            return AgentOutput(
                reply="I'm sorry, I encountered an error while processing your request. Please try again.",
                route=HandlerName.GP.value,
                intent="error",
                actions=[error_action("ROUTER_PROCESSING_ERROR", str(exc))],
            )
