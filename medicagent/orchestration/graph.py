"""
Agent Orchestration Graph

Drives one request through four stages:

    router -> ingest -> handler -> collaboration -> done

Each stage takes a ``GraphState`` and returns a new one built with
``model_copy`` so unrelated fields carry through untouched. A failure in any
stage lands in ``error_handler``: the error is recorded, an apologetic reply
replaces the output and later stages are skipped. ``process`` never raises.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from ..core.logging import get_logger
from ..core.metrics import observe_stage_latency, record_graph_run
from ..schemas.agents import AgentAction, AgentInput, AgentOutput, ActionStatus
from ..schemas.graph import A2AMessage, GraphContext, GraphResponse, GraphState, MessageType, TimelineEntry
from ..services.reports import InteractionStore, build_interaction, is_report_candidate
from .collaboration import CollaborationEngine, ConcurrencyLimiter, ExecutionStrategy
from .event_bus import AgentEventBus
from .registry import HandlerRegistry
from .router import BLOCKED_ROUTE, RouterAgent

logger = get_logger(name=__name__)

ERROR_AGENT = "error_handler"
ROUTER_AGENT = "router"
FALLBACK_REPLY = "I'm sorry, I encountered an error. Please try again."


def initial_state(agent_input: AgentInput) -> GraphState:
    return GraphState(
        user_id=agent_input.user_id,
        session_id=agent_input.session_id,
        original_message=agent_input.message,
        metadata=agent_input.metadata,
        context=GraphContext(
            intent=agent_input.intent,
            entities=dict(agent_input.entities),
            shared_data=dict(agent_input.shared_data),
        ),
    )


def error_state(state: GraphState, stage: str, exc: BaseException) -> GraphState:
    output = AgentOutput(
        reply=FALLBACK_REPLY,
        route=state.final_output.route if state.final_output else None,
        intent=state.context.intent,
        actions=[
            AgentAction(
                type="error",
                status=ActionStatus.FAILED,
                payload={"reason": f"{stage.upper()}_FAILED", "details": str(exc)},
            )
        ],
    )
    return state.model_copy(update={"current_agent": ERROR_AGENT, "error": str(exc), "final_output": output})


def _with_timeline(state: GraphState, step: str, started: float, usage: int | None) -> GraphState:
    elapsed = time.perf_counter() - started
    observe_stage_latency(stage=step.split(":", 1)[0], latency=elapsed)
    entry = TimelineEntry(
        step=step,
        ms=round(elapsed * 1000, 3),
        intent=state.context.intent,
        route=state.final_output.route if state.final_output else None,
        usage_total_tokens=usage,
    )
    return state.model_copy(update={"timeline": [*state.timeline, entry]})


def handler_input(state: GraphState) -> AgentInput:
    return AgentInput(
        user_id=state.user_id,
        session_id=state.session_id,
        message=state.original_message,
        metadata=state.metadata,
        intent=state.context.intent,
        entities=dict(state.context.entities),
        shared_data=dict(state.context.shared_data),
        interaction_recorded=state.report_ingested,
    )


@dataclass
class AgentGraph:
    router: RouterAgent
    registry: HandlerRegistry
    event_bus: AgentEventBus | None = None
    limiter: ConcurrencyLimiter = field(default_factory=ConcurrencyLimiter)
    collaboration_enabled: bool = True
    collaboration_strategy: ExecutionStrategy | None = None
    interactions: InteractionStore | None = None
    clock: Any = field(default=None, repr=False)
    collaboration: CollaborationEngine = field(init=False, repr=False)

    def __post_init__(self) -> None:
        self.collaboration = CollaborationEngine(executor=self.invoke_handler, limiter=self.limiter)

    async def process(self, agent_input: AgentInput) -> GraphState:
        state = initial_state(agent_input)
        logger.info("graph_run_started", user_id=state.user_id, session_id=state.session_id)
        for name, stage in (
            ("router", self.router_stage),
            ("ingest", self.ingest_stage),
            ("handler", self.handler_stage),
            ("collaboration", self.collaboration_stage),
        ):
            try:
                state = await stage(state)
            except Exception as exc:
                logger.exception("graph_stage_failed", stage=name, session_id=state.session_id, error=str(exc))
                state = error_state(state, name, exc)
                record_graph_run(status="error")
                return state
        record_graph_run(status="blocked" if state.final_output and state.final_output.route == BLOCKED_ROUTE else "ok")
        logger.info(
            "graph_run_completed",
            session_id=state.session_id,
            current_agent=state.current_agent,
            steps=[entry.step for entry in state.timeline],
        )
        return state

    async def respond(self, agent_input: AgentInput) -> GraphResponse:
        return GraphResponse.from_state(await self.process(agent_input))

    @staticmethod
    def _blocked(state: GraphState) -> bool:
        return state.final_output is not None and state.final_output.route == BLOCKED_ROUTE

    async def router_stage(self, state: GraphState) -> GraphState:
        started = time.perf_counter()
        decision = await self.router.decide(handler_input(state))
        classification = decision.classification
        context = state.context.model_copy(
            update={
                "intent": classification.intent,
                "entities": {**state.context.entities, **classification.entities},
                "multi_agent_request": classification.multi_agent_request,
                "additional_agents": list(classification.additional_agents),
            }
        )
        if decision.blocked:
            next_state = state.model_copy(
                update={
                    "current_agent": ROUTER_AGENT,
                    "context": context,
                    "final_output": self.router.blocked_output(decision),
                }
            )
            return _with_timeline(next_state, "router", started, classification.usage_total_tokens)

        route = decision.route_name
        message = A2AMessage(
            from_agent=ROUTER_AGENT,
            to_agent=route,
            type=MessageType.REQUEST,
            content={
                "intent": classification.intent,
                "entities": dict(context.entities),
                "original_message": state.original_message,
            },
            session_id=state.session_id,
        )
        next_state = state.model_copy(
            update={
                "current_agent": route,
                "context": context,
                "messages": [*state.messages, message],
                "final_output": AgentOutput(reply="", route=route, intent=classification.intent),
            }
        )
        return _with_timeline(next_state, "router", started, classification.usage_total_tokens)

    async def ingest_stage(self, state: GraphState) -> GraphState:
        """Keep health-signal utterances for later reports, whatever the route; at most once per run."""
        if self.interactions is None or state.report_ingested or self._blocked(state):
            return state
        if not is_report_candidate(state.original_message):
            return state
        now = self.clock() if self.clock is not None else datetime.now(timezone.utc)
        record = build_interaction(state.user_id, state.session_id, state.original_message, now)
        try:
            await self.interactions.save(record)
        except Exception as exc:
            logger.warning("report_ingest_failed", session_id=state.session_id, error=str(exc))
            return state
        logger.info("report_interaction_ingested", session_id=state.session_id, category=record.category)
        return state.model_copy(update={"report_ingested": True})

    async def invoke_handler(self, state: GraphState) -> GraphState:
        """Run the handler named by ``current_agent``; errors propagate."""
        handler = self.registry.get(state.current_agent)
        output = await handler.process(handler_input(state))
        output = output.model_copy(
            update={
                "route": output.route or state.current_agent,
                "intent": output.intent or state.context.intent,
            }
        )
        response = A2AMessage(
            from_agent=state.current_agent,
            to_agent=ROUTER_AGENT,
            type=MessageType.RESPONSE,
            content={"reply": output.reply, "actions": [action.model_dump(mode="json") for action in output.actions]},
            session_id=state.session_id,
        )
        shared = dict(state.context.shared_data)
        if output.shared_data:
            shared.update(output.shared_data)
        return state.model_copy(
            update={
                "final_output": output,
                "messages": [*state.messages, response],
                "context": state.context.model_copy(update={"shared_data": shared}),
            }
        )

    async def handler_stage(self, state: GraphState) -> GraphState:
        if self._blocked(state):
            return state
        started = time.perf_counter()
        agent = state.current_agent
        next_state = await self.invoke_handler(state)
        usage = next_state.final_output.usage_total_tokens if next_state.final_output else None
        return _with_timeline(next_state, f"agent:{agent}", started, usage)

    async def collaboration_stage(self, state: GraphState) -> GraphState:
        if self._blocked(state) or not self.collaboration_enabled:
            return state
        if state.context.multi_agent_request:
            logger.info(
                "collaboration_skipped_multi_agent",
                session_id=state.session_id,
                additional_agents=state.context.additional_agents,
            )
            return state
        rules = self.collaboration.applicable_rules(state)
        if not rules:
            return state

        started = time.perf_counter()
        session_id = await self._open_session(state, [rule.target_agent.value for rule in rules])
        next_state = await self.collaboration.run(state, strategy=self.collaboration_strategy)
        await self._close_session(session_id, next_state)
        usage = None
        if next_state.current_agent != state.current_agent and next_state.final_output is not None:
            usage = next_state.final_output.usage_total_tokens
        return _with_timeline(next_state, "collaboration", started, usage)

    async def _open_session(self, state: GraphState, participants: list[str]) -> str | None:
        if self.event_bus is None:
            return None
        return await self.event_bus.start_collaboration(
            state.current_agent,
            participants,
            f"cascade from {state.current_agent}",
        )

    async def _close_session(self, session_id: str | None, state: GraphState) -> None:
        if self.event_bus is None or session_id is None:
            return
        result: dict[str, Any] = {"current_agent": state.current_agent}
        if state.context.collaboration_history:
            result["strategy"] = state.context.collaboration_history[-1].strategy
        await self.event_bus.end_collaboration(session_id, result)
