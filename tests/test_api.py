from __future__ import annotations

import json

import httpx
import pytest

from medicagent import main
from medicagent.core.config import get_settings
from medicagent.dependencies import NotificationBackends, build_graph, get_agent_graph, get_job_queue
from medicagent.queue.manager import InMemoryDeadLetterSink, InMemoryNotificationQueue
from medicagent.queue.store import InMemoryPlanStore
from tests.helpers.stubs import StubCalendar, StubLLM

ROUTER_PROMPT = "intent classifier for a medical assistant"
EXTRACTOR_PROMPT = "strict JSON information extractor"


def _install_graph(llm: StubLLM, calendar: StubCalendar | None = None) -> NotificationBackends:
    backends = NotificationBackends(
        queue=InMemoryNotificationQueue(),
        store=InMemoryPlanStore(),
        dead_letters=InMemoryDeadLetterSink(),
    )
    graph = build_graph(get_settings(), llm=llm, backends=backends, calendar=calendar or StubCalendar())
    main.app.dependency_overrides[get_agent_graph] = lambda: graph
    main.app.dependency_overrides[get_job_queue] = lambda: backends.queue
    return backends


@pytest.fixture(autouse=True)
def _clear_overrides():
    yield
    main.app.dependency_overrides.clear()


async def _post_chat(payload: dict) -> httpx.Response:
    transport = httpx.ASGITransport(app=main.app)
    try:
        async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
            return await client.post("/api/agents/chat", json=payload)
    finally:
        await transport.aclose()


@pytest.mark.asyncio
async def test_health_endpoint() -> None:
    transport = httpx.ASGITransport(app=main.app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
        response = await client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


@pytest.mark.asyncio
async def test_chat_routes_to_gp() -> None:
    _install_graph(StubLLM(rules=[(ROUTER_PROMPT, '["gp"]')], default="Drink plenty of water."))

    response = await _post_chat({"userId": "user-1", "sessionId": "session-1", "message": "I have a cold"})

    assert response.status_code == 200
    body = response.json()
    assert body["reply"] == "Drink plenty of water."
    assert body["current_agent"] == "gp"
    assert body["intent"] == "health.advice"
    assert [entry["step"] for entry in body["timeline"]] == ["router", "agent:gp"]
    assert body["error"] is None


@pytest.mark.asyncio
async def test_chat_blocks_appointment_without_calendar_token() -> None:
    _install_graph(StubLLM(rules=[(ROUTER_PROMPT, '["appointment"]')]))

    response = await _post_chat({"userId": "user-1", "sessionId": "session-1", "message": "Book a GP tomorrow at 3pm"})

    body = response.json()
    assert body["route"] == "none"
    assert body["current_agent"] == "router"
    assert body["reply"] == "Google Calendar access is required to manage appointments."


@pytest.mark.asyncio
async def test_chat_reminder_cascades_into_calendar() -> None:
    extraction = json.dumps(
        {
            "intent": "remind",
            "channel": "sms",
            "recipients": [{"phoneE164": "+61412345678"}],
            "schedule": {"type": "datetime", "iso": "2099-01-01T09:00:00Z"},
            "message": "Take your blood pressure tablet",
        }
    )
    calendar = StubCalendar()
    backends = _install_graph(
        StubLLM(rules=[(ROUTER_PROMPT, '["notification"]'), (EXTRACTOR_PROMPT, extraction)]),
        calendar,
    )

    response = await _post_chat(
        {
            "userId": "user-1",
            "sessionId": "session-1",
            "message": "Remind me on 1 Jan to take my blood pressure tablet",
            "metadata": {"googleAccessToken": "ya29.real-token"},
        }
    )

    body = response.json()
    assert body["current_agent"] == "appointment"
    assert set(body["shared_data"]) == {"notification_schedule", "appointment_schedule"}
    assert [entry["step"] for entry in body["timeline"]] == ["router", "agent:notification", "collaboration"]
    assert calendar.created[0]["summary"] == "Reminder: Take your blood pressure tablet"
    assert len(backends.queue.jobs) == 1


@pytest.mark.asyncio
async def test_chat_rejects_missing_identifiers() -> None:
    _install_graph(StubLLM())

    response = await _post_chat({"message": "hello"})

    assert response.status_code == 422


@pytest.mark.asyncio
async def test_queue_health_reports_counts() -> None:
    _install_graph(StubLLM())

    transport = httpx.ASGITransport(app=main.app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
        response = await client.get("/api/health/queue")

    assert response.status_code == 200
    assert response.json() == {
        "status": "ok",
        "counts": {"waiting": 0, "active": 0, "completed": 0, "failed": 0, "delayed": 0},
    }


@pytest.mark.asyncio
async def test_metrics_endpoint_exposes_route_decisions() -> None:
    _install_graph(StubLLM(rules=[(ROUTER_PROMPT, '["gp"]')]))
    await _post_chat({"userId": "user-1", "sessionId": "session-1", "message": "hello"})

    transport = httpx.ASGITransport(app=main.app)
    try:
        async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
            response = await client.get("/metrics")
    finally:
        await transport.aclose()

    assert response.status_code == 200
    assert response.headers.get("content-type", "").startswith("text/plain")
    assert "medicagent_route_decisions_total" in response.text
    assert "medicagent_graph_runs_total" in response.text


@pytest.mark.asyncio
async def test_lifespan_releases_singletons(monkeypatch: pytest.MonkeyPatch) -> None:
    closed: list[bool] = []

    async def fake_close() -> None:
        closed.append(True)

    monkeypatch.setattr(main, "close_singletons", fake_close)

    async with main.app.router.lifespan_context(main.app):
        assert closed == []

    assert closed == [True]
