from __future__ import annotations

from datetime import datetime, timezone

import pytest

from medicagent.agents.report import ReportHandler
from medicagent.orchestration.event_bus import AgentEventBus
from medicagent.orchestration.graph import ERROR_AGENT, FALLBACK_REPLY, AgentGraph
from medicagent.orchestration.registry import HandlerRegistry
from medicagent.orchestration.router import RouterAgent
from medicagent.schemas.agents import HandlerName
from medicagent.schemas.graph import MessageType
from medicagent.services.reports import InMemoryInteractionStore
from tests.helpers.stubs import FixedClock, StubHandler, StubLLM, StubUsageLLM, make_input, stub_handlers

NOW = datetime(2024, 5, 1, 9, 0, tzinfo=timezone.utc)


def _graph(llm, *, event_bus: AgentEventBus | None = None, **handlers: StubHandler) -> AgentGraph:
    registry = HandlerRegistry(stub_handlers(**handlers))
    return AgentGraph(router=RouterAgent(llm, registry=registry), registry=registry, event_bus=event_bus)


@pytest.mark.asyncio
async def test_graph_records_timeline_and_messages() -> None:
    gp = StubHandler(HandlerName.GP, reply="Rest and fluids.", usage=5)
    graph = _graph(StubUsageLLM(['["gp"]'], tokens=7), gp=gp)

    state = await graph.process(make_input("I have a cold", metadata={"timezone": "Australia/Sydney"}))

    assert state.error is None
    assert state.current_agent == "gp"
    assert state.final_output is not None and state.final_output.reply == "Rest and fluids."
    assert [entry.step for entry in state.timeline] == ["router", "agent:gp"]
    assert state.timeline[0].usage_total_tokens == 7
    assert state.timeline[1].usage_total_tokens == 5
    assert all(entry.ms >= 0 for entry in state.timeline)
    assert [(m.from_agent, m.to_agent, m.type) for m in state.messages] == [
        ("router", "gp", MessageType.REQUEST),
        ("gp", "router", MessageType.RESPONSE),
    ]
    assert state.messages[0].content["original_message"] == "I have a cold"
    assert state.metadata.timezone == "Australia/Sydney"
    assert state.context.intent == "health.advice"


@pytest.mark.asyncio
async def test_handler_failure_lands_in_error_handler() -> None:
    gp = StubHandler(HandlerName.GP, error=RuntimeError("boom"))
    graph = _graph(StubLLM(['["gp"]']), gp=gp)

    state = await graph.process(make_input("I have a cold"))

    assert state.current_agent == ERROR_AGENT
    assert state.error == "boom"
    assert state.final_output is not None
    assert state.final_output.reply == FALLBACK_REPLY
    action = state.final_output.actions[0]
    assert action.type == "error"
    assert action.status.value == "failed"
    assert action.payload == {"reason": "HANDLER_FAILED", "details": "boom"}
    assert [entry.step for entry in state.timeline] == ["router"]


@pytest.mark.asyncio
async def test_blocked_route_skips_handler() -> None:
    appointment = StubHandler(HandlerName.APPOINTMENT)
    graph = _graph(StubLLM(['["appointment"]']), appointment=appointment)

    response = await graph.respond(make_input("book a doctor tomorrow at 9am"))

    assert response.route == "none"
    assert "Google Calendar access" in response.reply
    assert appointment.calls == []
    assert [entry.step for entry in response.timeline] == ["router"]
    assert response.error is None


@pytest.mark.asyncio
async def test_notification_cascades_into_appointment() -> None:
    notification = StubHandler(
        HandlerName.NOTIFICATION,
        reply="Notification scheduled.",
        shared_data={"notification_schedule": {"job_id": "job-1"}},
    )
    appointment = StubHandler(
        HandlerName.APPOINTMENT,
        reply="Reminder added to calendar.",
        shared_data={"appointment_schedule": {"event_id": "evt-1"}},
    )
    report = StubHandler(HandlerName.REPORT)
    bus = AgentEventBus()
    graph = _graph(
        StubLLM(['["notification"]']),
        event_bus=bus,
        notification=notification,
        appointment=appointment,
        report=report,
    )

    state = await graph.process(make_input("text me a pill reminder tomorrow at 8am"))

    assert state.current_agent == "appointment"
    assert state.final_output is not None and state.final_output.reply == "Reminder added to calendar."
    assert set(state.context.shared_data) == {"notification_schedule", "appointment_schedule"}
    assert appointment.calls[0].shared_data["notification_schedule"] == {"job_id": "job-1"}
    assert report.calls == []
    assert [entry.step for entry in state.timeline] == ["router", "agent:notification", "collaboration"]
    assert state.context.collaboration_history[0].strategy == "sequential"
    assert bus.active_sessions() == []


@pytest.mark.asyncio
async def test_multi_agent_request_skips_collaboration() -> None:
    notification = StubHandler(HandlerName.NOTIFICATION, shared_data={"notification_schedule": {"job_id": "job-1"}})
    appointment = StubHandler(HandlerName.APPOINTMENT)
    graph = _graph(StubLLM(['["notification", "appointment"]']), notification=notification, appointment=appointment)

    state = await graph.process(make_input("set a medication schedule and add it to my calendar"))

    assert state.context.multi_agent_request is True
    assert state.context.additional_agents == ["appointment"]
    assert state.current_agent == "notification"
    assert appointment.calls == []


@pytest.mark.asyncio
async def test_collaboration_failure_keeps_handler_result() -> None:
    notification = StubHandler(
        HandlerName.NOTIFICATION,
        reply="Notification scheduled.",
        shared_data={"notification_schedule": {"job_id": "job-1"}},
    )
    appointment = StubHandler(HandlerName.APPOINTMENT, error=RuntimeError("calendar down"))
    graph = _graph(StubLLM(['["notification"]']), notification=notification, appointment=appointment)

    response = await graph.respond(make_input("remind me to take my pills at 8pm"))

    assert response.error is None
    assert response.current_agent == "notification"
    assert response.reply == "Notification scheduled."
    assert response.timeline[-1].step == "collaboration"


@pytest.mark.asyncio
async def test_collaboration_can_be_disabled() -> None:
    notification = StubHandler(HandlerName.NOTIFICATION, shared_data={"notification_schedule": {"job_id": "job-1"}})
    appointment = StubHandler(HandlerName.APPOINTMENT)
    graph = _graph(StubLLM(['["notification"]']), notification=notification, appointment=appointment)
    graph.collaboration_enabled = False

    state = await graph.process(make_input("remind me at 8pm"))

    assert state.current_agent == "notification"
    assert appointment.calls == []


class FailingInteractionStore(InMemoryInteractionStore):
    async def save(self, record) -> None:
        raise RuntimeError("store offline")


def _reporting_graph(llm: StubLLM, store: InMemoryInteractionStore) -> AgentGraph:
    report = ReportHandler(llm, interactions=store, clock=FixedClock(NOW))
    registry = HandlerRegistry(stub_handlers(report=report))
    return AgentGraph(
        router=RouterAgent(llm, registry=registry),
        registry=registry,
        interactions=store,
        clock=FixedClock(NOW),
    )


@pytest.mark.asyncio
async def test_health_signals_from_other_routes_reach_reports() -> None:
    store = InMemoryInteractionStore()
    llm = StubLLM(['["gp"]', '["report"]', "Your mood dipped this week."])
    graph = _reporting_graph(llm, store)

    first = await graph.process(make_input("I've been sleeping poorly and my mood is low"))
    second = await graph.process(make_input("Give me my weekly mood report"))

    assert first.current_agent == "gp"
    assert first.report_ingested is True
    assert second.final_output is not None
    assert second.final_output.reply == "Your mood dipped this week."
    assert second.final_output.shared_data["report_schedule"]["interaction_count"] == 2
    assert "sleeping poorly" in llm.calls[-1][0]


@pytest.mark.asyncio
async def test_messages_without_health_signals_are_not_ingested() -> None:
    store = InMemoryInteractionStore()
    graph = _reporting_graph(StubLLM(['["gp"]']), store)

    state = await graph.process(make_input("What are your opening hours?"))

    assert state.report_ingested is False
    assert await store.query("user-1", datetime(2000, 1, 1, tzinfo=timezone.utc), NOW) == []


@pytest.mark.asyncio
async def test_ingest_failure_does_not_fail_the_request() -> None:
    graph = _reporting_graph(StubLLM(['["gp"]']), FailingInteractionStore())

    state = await graph.process(make_input("My back pain is worse today"))

    assert state.error is None
    assert state.current_agent == "gp"
    assert state.report_ingested is False
    assert [entry.step for entry in state.timeline] == ["router", "agent:gp"]
