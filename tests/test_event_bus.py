from __future__ import annotations

import pytest

from medicagent.agents.general import GeneralPractitionerHandler
from medicagent.orchestration.event_bus import AgentEventBus, BusEvent, BusEventType
from medicagent.schemas.graph import A2AMessage, MessageType
from tests.helpers.stubs import StubLLM


@pytest.mark.asyncio
async def test_messages_reach_typed_subscribers_only() -> None:
    bus = AgentEventBus()
    requests: list[A2AMessage] = []
    responses: list[A2AMessage] = []

    async def on_request(message: A2AMessage) -> None:
        requests.append(message)

    async def on_response(message: A2AMessage) -> None:
        responses.append(message)

    bus.subscribe_to_agent("report", on_request=on_request, on_response=on_response)

    await bus.send_message("router", "report", MessageType.REQUEST, {"q": 1})
    await bus.send_message("router", "report", "notification", {"q": 2})
    await bus.send_message("router", "gp", MessageType.REQUEST, {"q": 3})

    assert [m.content for m in requests] == [{"q": 1}]
    assert responses == []
    assert requests[0].id.startswith("msg_")


@pytest.mark.asyncio
async def test_history_is_bounded_and_filterable() -> None:
    bus = AgentEventBus(max_history=3)
    for index in range(5):
        await bus.send_message("router", "gp" if index % 2 else "report", MessageType.NOTIFICATION, index)

    history = bus.get_message_history()
    assert [m.content for m in history] == [2, 3, 4]
    assert [m.content for m in bus.get_message_history("gp")] == [3]
    assert [m.content for m in bus.get_message_history(limit=2)] == [3, 4]
    assert bus.get_message_history(limit=0) == []

    bus.clear_history()
    assert bus.get_message_history() == []


@pytest.mark.asyncio
async def test_failing_subscriber_does_not_break_delivery() -> None:
    bus = AgentEventBus()
    delivered: list[str] = []

    async def broken(message: A2AMessage) -> None:
        raise RuntimeError("subscriber exploded")

    async def healthy(message: A2AMessage) -> None:
        delivered.append(message.id)

    bus.subscribe("gp", MessageType.REQUEST, broken)
    bus.subscribe("gp", MessageType.REQUEST, healthy)

    message = await bus.send_message("router", "gp", MessageType.REQUEST, {})

    assert delivered == [message.id]


@pytest.mark.asyncio
async def test_unsubscribe_stops_delivery() -> None:
    bus = AgentEventBus()
    seen: list[A2AMessage] = []

    async def on_request(message: A2AMessage) -> None:
        seen.append(message)

    subscriptions = bus.subscribe_to_agent("gp", on_request=on_request)
    bus.unsubscribe(subscriptions)
    await bus.send_message("router", "gp", MessageType.REQUEST, {})

    assert seen == []


@pytest.mark.asyncio
async def test_collaboration_sessions_emit_events() -> None:
    bus = AgentEventBus()
    events: list[BusEvent] = []

    async def listener(event: BusEvent) -> None:
        events.append(event)

    bus.add_listener(listener)

    session_id = await bus.start_collaboration("notification", ["appointment"], "cascade")
    assert session_id.startswith("collab_")
    assert [s.session_id for s in bus.active_sessions()] == [session_id]

    await bus.end_collaboration(session_id, {"ok": True})

    session = bus.get_session(session_id)
    assert session is not None and session.active is False
    assert session.result == {"ok": True}
    assert [event.type for event in events] == [
        BusEventType.SESSION_CREATED,
        BusEventType.COLLABORATION_START,
        BusEventType.SESSION_ENDED,
        BusEventType.COLLABORATION_END,
    ]


@pytest.mark.asyncio
async def test_ending_unknown_session_is_harmless() -> None:
    bus = AgentEventBus()
    assert await bus.end_session("collab_missing") is None


@pytest.mark.asyncio
async def test_handler_a2a_wiring() -> None:
    bus = AgentEventBus()
    gp = GeneralPractitionerHandler(StubLLM())
    received: list[A2AMessage] = []

    async def on_response(message: A2AMessage) -> None:
        received.append(message)

    bus.subscribe_to_agent("report", on_response=on_response)
    gp.set_event_bus(bus)

    sent = await gp.send_a2a_message("report", MessageType.RESPONSE, {"advice": "rest"})

    assert sent is not None and sent.from_agent == "gp"
    assert received[0].content == {"advice": "rest"}
    session_id = await gp.start_collaboration(["report"], "follow-up")
    assert session_id is not None
    await gp.end_collaboration(session_id, "done")
    assert bus.active_sessions() == []


@pytest.mark.asyncio
async def test_handler_without_bus_degrades_quietly() -> None:
    gp = GeneralPractitionerHandler(StubLLM())

    assert await gp.send_a2a_message("report", MessageType.REQUEST, {}) is None
    assert await gp.start_collaboration(["report"], "topic") is None
