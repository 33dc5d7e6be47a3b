from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, ClassVar

from ...core.logging import get_logger
from ...core.metrics import record_notification_plan
from ...queue.manager import DeadLetterSink, EnqueueError, JobQueue
from ...queue.store import PlanStore
from ...schemas.agents import ActionStatus, AgentAction, AgentInput, AgentOutput, Followup, HandlerName
from ...schemas.notifications import (
    NotificationOperation,
    NotificationPlan,
    ParsedIntent,
    PlanStatus,
    RetrySpec,
)
from ..base import BaseHandler
from .matching import MatchStatus, find_matching_plan
from .planner import extract_intent
from .policy import PolicyContext, evaluate_policy

logger = get_logger(name=__name__)

MESSAGE_PROMPT = """You are a notification message generator.
Write one concise, friendly notification message for the user's request.

Rules:
- Keep it short and clear
- Friendly but professional
- Focus on the key information (medication, time, etc.)
- No emojis

Examples:
- User: "Please send me a blood pressure medication reminder tomorrow at 2pm"
  Message: "Blood pressure medication reminder (tomorrow at 2pm)"
- User: "Vitamin reminder in the morning"
  Message: "Vitamin reminder (morning)"

Intent: {intent}
Original message: {message}
Schedule: {schedule}

Message:"""


@dataclass
class NotificationAgent(BaseHandler):
    """Plans, schedules, updates and cancels SMS reminders."""

    name: ClassVar[HandlerName] = HandlerName.NOTIFICATION
    capabilities: ClassVar[tuple[str, ...]] = ("plan_notification", "schedule_notification")

    queue: JobQueue | None = None
    store: PlanStore | None = None
    dead_letters: DeadLetterSink | None = None
    default_tz: str = "Australia/Sydney"
    default_hour: int = 9
    default_recipient: str | None = None
    retry: RetrySpec | None = None

    def __post_init__(self) -> None:
        if self.queue is None or self.store is None or self.dead_letters is None:
            raise ValueError("NotificationAgent requires a queue, plan store and dead-letter sink")

    async def process(self, agent_input: AgentInput) -> AgentOutput:
        parsed = await extract_intent(self.llm, agent_input.message)
        logger.info(
            "notification_intent_parsed",
            user_id=agent_input.user_id,
            operation=parsed.operation.value,
            schedule=parsed.schedule.type,
        )

        if parsed.operation is NotificationOperation.CANCEL:
            return await self._cancel(agent_input, parsed)
        if parsed.operation is NotificationOperation.QUERY:
            return await self._query(agent_input)
        if parsed.operation is NotificationOperation.UPDATE:
            resolved = await self._resolve_target(agent_input, parsed, action_type="update_notification")
            if isinstance(resolved, AgentOutput):
                return resolved
            parsed = parsed.model_copy(update={"notification_id": resolved})
            return await self._schedule(agent_input, parsed, replaces_job=await self.store.get_job_id(resolved))
        return await self._schedule(agent_input, parsed)

    async def _resolve_target(
        self,
        agent_input: AgentInput,
        parsed: ParsedIntent,
        *,
        action_type: str,
    ) -> str | AgentOutput:
        if parsed.notification_id:
            return parsed.notification_id
        verb = "cancel" if action_type == "cancel_notification" else "update"
        plans = await self.store.list_plans(agent_input.user_id)
        result = find_matching_plan(
            agent_input.message,
            plans,
            tz=agent_input.metadata.timezone or self.default_tz,
        )
        if result.status is MatchStatus.MATCHED and result.notification_id:
            return result.notification_id
        if result.status is MatchStatus.AMBIGUOUS:
            return AgentOutput(
                reply=f"I found multiple matching notifications. Please specify which one you want to {verb}.",
                actions=[
                    AgentAction(
                        type=action_type,
                        status=ActionStatus.PENDING,
                        payload={"candidates": [c.record.notification_id for c in result.candidates]},
                    )
                ],
                followups=[
                    Followup(
                        type="question",
                        text="I found several notifications around that date. Can you clarify which one?",
                    )
                ],
            )
        return AgentOutput(
            reply=(
                f"I couldn't find a matching notification to {verb}. "
                "You can say 'list my notifications' to review them."
            ),
            actions=[AgentAction(type=action_type, status=ActionStatus.FAILED)],
        )

    async def _cancel(self, agent_input: AgentInput, parsed: ParsedIntent) -> AgentOutput:
        resolved = await self._resolve_target(agent_input, parsed, action_type="cancel_notification")
        if isinstance(resolved, AgentOutput):
            return resolved
        canceled = await self.cancel_by_id(resolved)
        record_notification_plan(operation="cancel", outcome="done" if canceled else "failed")
        return AgentOutput(
            reply="The notification has been canceled." if canceled else "Could not find a notification to cancel.",
            actions=[
                AgentAction(
                    type="cancel_notification",
                    status=ActionStatus.DONE if canceled else ActionStatus.FAILED,
                    payload={"notificationId": resolved},
                )
            ],
        )

    async def cancel_by_id(self, notification_id: str) -> bool:
        record = await self.store.get_plan(notification_id)
        if record is None:
            return False
        job_id = await self.store.get_job_id(notification_id)
        if job_id:
            await self.queue.remove(job_id)
        await self.store.set_status(notification_id, PlanStatus.CANCELED)
        return True

    async def _query(self, agent_input: AgentInput) -> AgentOutput:
        plans = await self.store.list_plans(agent_input.user_id)
        active = [record for record in plans if record.status is PlanStatus.SCHEDULED]
        return AgentOutput(
            reply=f"You have {len(active)} notifications.",
            actions=[
                AgentAction(type="query_notification", status=ActionStatus.DONE, payload={"count": len(active)})
            ],
        )

    async def _generate_message(self, parsed: ParsedIntent, original: str) -> str:
        prompt = MESSAGE_PROMPT.format(
            intent=parsed.intent,
            message=original,
            schedule=parsed.schedule.model_dump_json(by_alias=True),
        )
        try:
            generated = (await self.llm.generate(prompt, temperature=0.3)).strip()
        except Exception as exc:
            logger.warning("notification_message_generation_failed", error=str(exc))
            return f"Notification: {original}"
        return generated or f"Notification: {original}"

    async def _schedule(
        self,
        agent_input: AgentInput,
        parsed: ParsedIntent,
        *,
        replaces_job: str | None = None,
    ) -> AgentOutput:
        """Validate, then enqueue; an update's prior job is dropped only once the new plan passes policy."""
        operation = parsed.operation.value
        if not (parsed.message or "").strip() and not parsed.template_key:
            parsed = parsed.model_copy(update={"message": await self._generate_message(parsed, agent_input.message)})

        policy = evaluate_policy(
            parsed,
            PolicyContext(
                default_tz=self.default_tz,
                input=agent_input,
                default_hour=self.default_hour,
                default_recipient=self.default_recipient,
                retry=self.retry or RetrySpec(),
            ),
        )
        if not policy.ok or policy.plan is None:
            error = policy.error or "Policy evaluation failed."
            await self.dead_letters.put(error, {"input": _input_payload(agent_input), "parsed": _dump(parsed)})
            record_notification_plan(operation=operation, outcome="rejected")
            return AgentOutput(
                reply=f"Unable to schedule notification: {error}",
                actions=[
                    AgentAction(type="plan_notification", status=ActionStatus.FAILED, payload={"reason": error})
                ],
            )

        plan = policy.plan
        notification_id = parsed.notification_id or plan.idempotency_key
        if replaces_job:
            await self.queue.remove(replaces_job)
        try:
            job_id = await self.queue.enqueue(plan, notification_id)
        except EnqueueError as exc:
            reason = f"ENQUEUE_FAILED: {exc}"
            if replaces_job:
                await self.store.set_status(notification_id, PlanStatus.FAILED)
            logger.error(
                "notification_enqueue_failed",
                user_id=agent_input.user_id,
                session_id=agent_input.session_id,
                notification_id=notification_id,
                reason=reason,
            )
            await self.dead_letters.put(reason, {"input": _input_payload(agent_input), "plan": _dump(plan)})
            record_notification_plan(operation=operation, outcome="enqueue_failed")
            return AgentOutput(
                reply="An error occurred while enqueuing. Please try again later.",
                actions=[
                    AgentAction(type="schedule_notification", status=ActionStatus.FAILED, payload={"reason": reason})
                ],
            )

        await self.store.save_plan(agent_input.user_id, notification_id, plan, job_id, PlanStatus.SCHEDULED)
        record_notification_plan(operation=operation, outcome="scheduled")
        logger.info("notification_scheduled", job_id=job_id, notification_id=notification_id)

        followups = [Followup(type="info", text=" \n".join(plan.policy_notes))] if plan.policy_notes else []
        return AgentOutput(
            reply=f"Notification scheduled. jobId={job_id}",
            actions=[AgentAction(type="schedule_notification", status=ActionStatus.DONE, payload={"jobId": job_id})],
            followups=followups,
            shared_data={
                "notification_schedule": {
                    "job_id": job_id,
                    "plan": _dump(plan),
                    "notification_id": notification_id,
                    "user_id": agent_input.user_id,
                    "message": agent_input.message,
                    "timestamp": datetime.now(timezone.utc).isoformat(),
                }
            },
        )


def _dump(model: NotificationPlan | ParsedIntent) -> dict[str, Any]:
    return model.model_dump(mode="json", by_alias=True, exclude_none=True)


def _input_payload(agent_input: AgentInput) -> dict[str, Any]:
    return agent_input.model_dump(mode="json", include={"user_id", "session_id", "message", "intent"})
