from __future__ import annotations

import json
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, Protocol

from redis.asyncio import Redis
from redis.exceptions import RedisError

from ..core.config import Settings
from ..core.logging import get_logger
from ..core.metrics import record_dead_letter
from ..schemas.notifications import DeadLetter, NotificationPlan

logger = get_logger(name=__name__)


class EnqueueError(RuntimeError):
    """The job queue refused or could not accept a plan."""


@dataclass(slots=True)
class QueueCounts:
    waiting: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0
    delayed: int = 0

    def as_dict(self) -> dict[str, int]:
        return asdict(self)


class JobQueue(Protocol):
    async def enqueue(self, plan: NotificationPlan, idempotency_key: str) -> str:
        ...

    async def remove(self, job_id: str) -> bool:
        ...

    async def counts(self) -> QueueCounts:
        ...


class DeadLetterSink(Protocol):
    async def put(self, reason: str, payload: dict[str, Any]) -> None:
        ...


def compute_delay_ms(
    plan: NotificationPlan,
    *,
    now: datetime | None = None,
    min_delay_seconds: int = 20,
) -> int:
    """Milliseconds until the plan is due; past or immediate plans get the minimum delay."""
    if plan.schedule_at is None:
        return 0
    moment = now or datetime.now(timezone.utc)
    due = datetime.fromisoformat(plan.schedule_at.replace("Z", "+00:00"))
    if due.tzinfo is None:
        due = due.replace(tzinfo=timezone.utc)
    delay = max(0, int((due - moment).total_seconds() * 1000))
    if delay == 0:
        delay = min_delay_seconds * 1000
    return delay


def build_job_payload(plan: NotificationPlan, *, delay_ms: int) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "plan": plan.model_dump(mode="json", by_alias=True, exclude_none=True),
        "attempts": plan.retry.attempts,
        "backoff": {"type": "exponential", "delay": plan.retry.backoff_ms},
        "delay": delay_ms,
    }
    if plan.repeat is not None:
        payload["repeat"] = {
            "pattern": plan.repeat.cron,
            "tz": plan.repeat.tz,
            **({"limit": plan.repeat.limit} if plan.repeat.limit is not None else {}),
        }
    return payload


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


class RedisNotificationQueue:
    """Delayed-job queue on Redis keyed by idempotency key."""

    def __init__(self, redis: Redis, *, queue_name: str = "notifications", min_delay_seconds: int = 20) -> None:
        self._redis = redis
        self._queue_name = queue_name
        self._min_delay_seconds = min_delay_seconds

    def _key(self, suffix: str) -> str:
        return f"{self._queue_name}:{suffix}"

    async def enqueue(self, plan: NotificationPlan, idempotency_key: str) -> str:
        job_id = idempotency_key
        delay_ms = compute_delay_ms(plan, min_delay_seconds=self._min_delay_seconds)
        payload = build_job_payload(plan, delay_ms=delay_ms)
        job_key = self._key(f"job:{job_id}")
        try:
            created = await self._redis.hsetnx(job_key, "data", json.dumps(payload))
        except RedisError as exc:
            raise EnqueueError(str(exc)) from exc
        if not created:
            logger.info("notification_job_exists", job_id=job_id)
            return job_id
        try:
            if plan.repeat is not None:
                await self._redis.sadd(self._key("repeat"), job_id)
            else:
                due_ms = int(datetime.now(timezone.utc).timestamp() * 1000) + delay_ms
                await self._redis.zadd(self._key("delayed"), {job_id: due_ms})
        except RedisError as exc:
            # a job hash must never outlive a failed schedule write
            await self._discard_job(job_key, job_id)
            raise EnqueueError(str(exc)) from exc
        logger.info("notification_job_enqueued", job_id=job_id, delay_ms=delay_ms, repeat=plan.repeat is not None)
        return job_id

    async def _discard_job(self, job_key: str, job_id: str) -> None:
        try:
            await self._redis.delete(job_key)
        except RedisError as exc:
            logger.error("notification_job_rollback_failed", job_id=job_id, error=str(exc))

    async def remove(self, job_id: str) -> bool:
        try:
            removed = await self._redis.delete(self._key(f"job:{job_id}"))
            await self._redis.zrem(self._key("delayed"), job_id)
            await self._redis.srem(self._key("repeat"), job_id)
            await self._redis.lrem(self._key("wait"), 0, job_id)
        except RedisError as exc:
            logger.warning("notification_job_remove_failed", job_id=job_id, error=str(exc))
            return False
        return bool(removed)

    async def counts(self) -> QueueCounts:
        return QueueCounts(
            waiting=int(await self._redis.llen(self._key("wait"))),
            active=int(await self._redis.llen(self._key("active"))),
            completed=int(await self._redis.llen(self._key("completed"))),
            failed=int(await self._redis.llen(self._key("failed"))),
            delayed=int(await self._redis.zcard(self._key("delayed"))) + int(await self._redis.scard(self._key("repeat"))),
        )

    async def close(self) -> None:
        await self._redis.aclose()

    @classmethod
    def from_settings(cls, settings: Settings, *, redis: Redis | None = None) -> "RedisNotificationQueue":
        client = redis or Redis.from_url(str(settings.redis.url), decode_responses=True)
        return cls(
            client,
            queue_name=settings.notifications.queue_name,
            min_delay_seconds=settings.notifications.min_delay_seconds,
        )


class RedisDeadLetterSink:
    def __init__(self, redis: Redis, *, queue_name: str = "notifications_dlq") -> None:
        self._redis = redis
        self._queue_name = queue_name

    async def put(self, reason: str, payload: dict[str, Any]) -> None:
        entry = DeadLetter(reason=reason, payload=payload, timestamp=_timestamp())
        try:
            await self._redis.rpush(self._queue_name, entry.model_dump_json())
        except RedisError as exc:
            logger.error("dead_letter_write_failed", reason=reason, error=str(exc))
            return
        record_dead_letter(reason=reason)
        logger.warning("dead_letter_written", reason=reason)

    @classmethod
    def from_settings(cls, settings: Settings, *, redis: Redis | None = None) -> "RedisDeadLetterSink":
        client = redis or Redis.from_url(str(settings.redis.url), decode_responses=True)
        return cls(client, queue_name=settings.notifications.dead_letter_queue_name)


class InMemoryNotificationQueue:
    """Process-local queue honouring the same idempotency contract."""

    def __init__(self, *, min_delay_seconds: int = 20) -> None:
        self._min_delay_seconds = min_delay_seconds
        self.jobs: dict[str, dict[str, Any]] = {}
        self.enqueue_calls = 0

    async def enqueue(self, plan: NotificationPlan, idempotency_key: str) -> str:
        self.enqueue_calls += 1
        job_id = idempotency_key
        if job_id in self.jobs:
            return job_id
        delay_ms = compute_delay_ms(plan, min_delay_seconds=self._min_delay_seconds)
        self.jobs[job_id] = build_job_payload(plan, delay_ms=delay_ms)
        return job_id

    async def remove(self, job_id: str) -> bool:
        return self.jobs.pop(job_id, None) is not None

    async def counts(self) -> QueueCounts:
        return QueueCounts(delayed=len(self.jobs))


class InMemoryDeadLetterSink:
    def __init__(self) -> None:
        self.entries: list[DeadLetter] = []

    async def put(self, reason: str, payload: dict[str, Any]) -> None:
        self.entries.append(DeadLetter(reason=reason, payload=payload, timestamp=_timestamp()))
        record_dead_letter(reason=reason)
