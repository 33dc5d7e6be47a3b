from __future__ import annotations

import json

import pytest

from medicagent.agents.notification import NotificationAgent
from medicagent.agents.notification.policy import ERROR_NO_RECIPIENTS
from medicagent.queue.manager import EnqueueError, InMemoryDeadLetterSink, InMemoryNotificationQueue, QueueCounts
from medicagent.queue.store import InMemoryPlanStore
from medicagent.schemas.agents import ActionStatus
from medicagent.schemas.notifications import PlanStatus
from tests.helpers.stubs import StubLLM, make_input

PHONE = "+61412345678"


def _extraction(**payload) -> str:
    payload.setdefault("intent", "remind")
    payload.setdefault("channel", "sms")
    payload.setdefault("recipients", [{"phoneE164": PHONE}])
    payload.setdefault("schedule", {"type": "datetime", "iso": "2099-01-01T09:00:00Z"})
    return json.dumps(payload)


class RefusingQueue(InMemoryNotificationQueue):
    async def enqueue(self, plan, idempotency_key):
        raise EnqueueError("redis unavailable")


def _agent(llm: StubLLM, *, queue: InMemoryNotificationQueue | None = None) -> NotificationAgent:
    return NotificationAgent(
        llm,
        queue=queue or InMemoryNotificationQueue(),
        store=InMemoryPlanStore(),
        dead_letters=InMemoryDeadLetterSink(),
    )


def test_agent_requires_backends() -> None:
    with pytest.raises(ValueError):
        NotificationAgent(StubLLM())


@pytest.mark.asyncio
async def test_create_schedules_and_persists_plan() -> None:
    agent = _agent(StubLLM([_extraction(message="Take your blood pressure tablet")]))

    output = await agent.process(make_input("remind me on 1 Jan to take my blood pressure tablet"))

    job_id = next(iter(agent.queue.jobs))
    assert output.reply == f"Notification scheduled. jobId={job_id}"
    assert output.actions[0].status is ActionStatus.DONE
    stored = await agent.store.get_plan(job_id)
    assert stored is not None and stored.status is PlanStatus.SCHEDULED
    assert stored.plan.schedule_at == "2099-01-01T09:00:00Z"
    schedule = output.shared_data["notification_schedule"]
    assert schedule["job_id"] == job_id
    assert schedule["plan"]["to"] == [PHONE]


@pytest.mark.asyncio
async def test_repeated_request_is_idempotent() -> None:
    reply = _extraction(message="Take meds")
    agent = _agent(StubLLM([reply, reply]))

    first = await agent.process(make_input("remind me to take meds"))
    second = await agent.process(make_input("remind me to take meds"))

    assert first.reply == second.reply
    assert len(agent.queue.jobs) == 1
    assert agent.queue.enqueue_calls == 2


@pytest.mark.asyncio
async def test_missing_message_is_generated() -> None:
    llm = StubLLM(
        rules=[
            ("strict JSON information extractor", _extraction()),
            ("notification message generator", "Vitamin reminder (morning)"),
        ]
    )
    agent = _agent(llm)

    await agent.process(make_input("vitamin reminder in the morning"))

    payload = next(iter(agent.queue.jobs.values()))
    assert payload["plan"]["body"] == "Vitamin reminder (morning)"


@pytest.mark.asyncio
async def test_policy_rejection_goes_to_dead_letters() -> None:
    agent = _agent(StubLLM([_extraction(message="Hello", recipients=[])]))

    output = await agent.process(make_input("text my mum hello"))

    assert output.reply == f"Unable to schedule notification: {ERROR_NO_RECIPIENTS}"
    assert output.actions[0].status is ActionStatus.FAILED
    assert agent.queue.jobs == {}
    assert [entry.reason for entry in agent.dead_letters.entries] == [ERROR_NO_RECIPIENTS]


@pytest.mark.asyncio
async def test_enqueue_failure_is_reported_and_dead_lettered() -> None:
    agent = _agent(StubLLM([_extraction(message="Hello")]), queue=RefusingQueue())

    output = await agent.process(make_input("remind me hello"))

    assert output.reply == "An error occurred while enqueuing. Please try again later."
    assert output.actions[0].payload["reason"].startswith("ENQUEUE_FAILED")
    assert agent.dead_letters.entries[0].reason.startswith("ENQUEUE_FAILED")
    assert await agent.store.list_plans("user-1") == []


@pytest.mark.asyncio
async def test_unparseable_extraction_uses_phone_numbers_from_message() -> None:
    agent = _agent(StubLLM(["not json at all", "Ping"]))

    output = await agent.process(make_input(f"Please notify {PHONE} now about checkup"))

    assert output.reply.startswith("Notification scheduled.")
    assert agent.queue.enqueue_calls == 1
    payload = next(iter(agent.queue.jobs.values()))
    assert payload["plan"]["to"] == [PHONE]


@pytest.mark.asyncio
async def test_query_counts_scheduled_plans() -> None:
    agent = _agent(
        StubLLM(
            [
                _extraction(message="One"),
                _extraction(message="Two"),
                _extraction(operation="query"),
            ]
        )
    )
    await agent.process(make_input("first"))
    await agent.process(make_input("second"))

    output = await agent.process(make_input("list my notifications"))

    assert output.reply == "You have 2 notifications."
    assert output.actions[0].payload == {"count": 2}


@pytest.mark.asyncio
async def test_cancel_by_identifier() -> None:
    agent = _agent(StubLLM([_extraction(message="One")]))
    await agent.process(make_input("first"))
    job_id = next(iter(agent.queue.jobs))
    agent.llm = StubLLM([_extraction(operation="cancel", notificationId=job_id)])

    output = await agent.process(make_input(f"cancel notification {job_id}"))

    assert output.reply == "The notification has been canceled."
    assert agent.queue.jobs == {}
    stored = await agent.store.get_plan(job_id)
    assert stored.status is PlanStatus.CANCELED


@pytest.mark.asyncio
async def test_cancel_by_date_match() -> None:
    agent = _agent(StubLLM([_extraction(message="One")]))
    await agent.process(make_input("first"))
    agent.llm = StubLLM([_extraction(operation="cancel")])

    # 09:00Z on 1 Jan is 20:00 the same day in Sydney.
    output = await agent.process(make_input("cancel my reminder on 1/1"))

    assert output.reply == "The notification has been canceled."
    assert output.actions[0].status is ActionStatus.DONE


@pytest.mark.asyncio
async def test_cancel_with_ambiguous_date_asks_for_clarification() -> None:
    agent = _agent(
        StubLLM(
            [
                _extraction(message="One"),
                _extraction(message="Two", schedule={"type": "datetime", "iso": "2099-01-01T10:00:00Z"}),
                _extraction(operation="cancel"),
            ]
        )
    )
    await agent.process(make_input("first"))
    await agent.process(make_input("second"))

    output = await agent.process(make_input("cancel the reminder on 1/1"))

    assert output.reply == "I found multiple matching notifications. Please specify which one you want to cancel."
    assert len(output.actions[0].payload["candidates"]) == 2
    assert output.followups[0].type == "question"
    assert len(agent.queue.jobs) == 2


@pytest.mark.asyncio
async def test_cancel_without_match() -> None:
    agent = _agent(StubLLM([_extraction(operation="cancel")]))

    output = await agent.process(make_input("cancel the reminder on 3/3"))

    assert output.reply.startswith("I couldn't find a matching notification to cancel.")
    assert output.actions[0].status is ActionStatus.FAILED


@pytest.mark.asyncio
async def test_update_reschedules_under_same_identifier() -> None:
    agent = _agent(StubLLM([_extraction(message="One")]))
    await agent.process(make_input("first"))
    original_job = next(iter(agent.queue.jobs))
    agent.llm = StubLLM(
        [
            _extraction(
                operation="update",
                notificationId=original_job,
                message="One, but later",
                schedule={"type": "datetime", "iso": "2099-01-02T09:00:00Z"},
            )
        ]
    )

    output = await agent.process(make_input("move it to the next day"))

    assert list(agent.queue.jobs) == [original_job]
    assert agent.queue.jobs[original_job]["plan"]["body"] == "One, but later"
    assert output.reply == f"Notification scheduled. jobId={original_job}"
    stored = await agent.store.get_plan(original_job)
    assert stored.job_id == original_job
    assert stored.plan.schedule_at == "2099-01-02T09:00:00Z"


@pytest.mark.asyncio
async def test_in_memory_queue_counts() -> None:
    agent = _agent(StubLLM([_extraction(message="One")]))
    await agent.process(make_input("first"))

    assert await agent.queue.counts() == QueueCounts(delayed=1)


@pytest.mark.asyncio
async def test_rejected_update_keeps_existing_job() -> None:
    agent = _agent(StubLLM([_extraction(message="One")]))
    await agent.process(make_input("first"))
    original_job = next(iter(agent.queue.jobs))
    agent.llm = StubLLM([_extraction(operation="update", notificationId=original_job, recipients=[])])

    output = await agent.process(make_input("send it to nobody instead"))

    assert output.reply == f"Unable to schedule notification: {ERROR_NO_RECIPIENTS}"
    assert list(agent.queue.jobs) == [original_job]
    assert agent.queue.jobs[original_job]["plan"]["body"] == "One"
    stored = await agent.store.get_plan(original_job)
    assert stored.status is PlanStatus.SCHEDULED
    assert stored.job_id == original_job


class FlakyQueue(InMemoryNotificationQueue):
    def __init__(self) -> None:
        super().__init__()
        self.refuse = False

    async def enqueue(self, plan, idempotency_key):
        if self.refuse:
            raise EnqueueError("redis unavailable")
        return await super().enqueue(plan, idempotency_key)


@pytest.mark.asyncio
async def test_update_enqueue_failure_marks_plan_failed() -> None:
    queue = FlakyQueue()
    agent = _agent(StubLLM([_extraction(message="One")]), queue=queue)
    await agent.process(make_input("first"))
    original_job = next(iter(queue.jobs))
    queue.refuse = True
    agent.llm = StubLLM(
        [
            _extraction(
                operation="update",
                notificationId=original_job,
                message="Later",
                schedule={"type": "datetime", "iso": "2099-01-02T09:00:00Z"},
            )
        ]
    )

    output = await agent.process(make_input("move it to the next day"))

    assert output.reply == "An error occurred while enqueuing. Please try again later."
    assert queue.jobs == {}
    stored = await agent.store.get_plan(original_job)
    assert stored.status is PlanStatus.FAILED
