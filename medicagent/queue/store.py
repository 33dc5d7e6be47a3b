from __future__ import annotations

from datetime import datetime, timezone
from typing import Protocol

from redis.asyncio import Redis

from ..core.config import Settings
from ..core.logging import get_logger
from ..schemas.notifications import NotificationPlan, PlanStatus, StoredPlan

logger = get_logger(name=__name__)


class PlanStore(Protocol):
    async def save_plan(
        self,
        user_id: str,
        notification_id: str,
        plan: NotificationPlan,
        job_id: str | None,
        status: PlanStatus,
    ) -> None:
        ...

    async def list_plans(self, user_id: str) -> list[StoredPlan]:
        ...

    async def get_plan(self, notification_id: str) -> StoredPlan | None:
        ...

    async def get_job_id(self, notification_id: str) -> str | None:
        ...

    async def set_status(self, notification_id: str, status: PlanStatus) -> None:
        ...


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class RedisPlanStore:
    """Key-value plan persistence: one JSON document per plan plus per-user index sets."""

    def __init__(self, redis: Redis, *, namespace: str = "app:notifications") -> None:
        self._redis = redis
        self._namespace = namespace

    def _plan_key(self, notification_id: str) -> str:
        return f"{self._namespace}:plan:{notification_id}"

    def _index_key(self, user_id: str) -> str:
        return f"{self._namespace}:index:{user_id}"

    def _job_key(self, notification_id: str) -> str:
        return f"{self._namespace}:job:{notification_id}"

    async def save_plan(
        self,
        user_id: str,
        notification_id: str,
        plan: NotificationPlan,
        job_id: str | None,
        status: PlanStatus,
    ) -> None:
        record = StoredPlan(
            notification_id=notification_id,
            user_id=user_id,
            job_id=job_id,
            status=status,
            plan=plan,
            updated_at=_now_iso(),
        )
        await self._redis.set(self._plan_key(notification_id), record.model_dump_json(by_alias=True))
        await self._redis.sadd(self._index_key(user_id), notification_id)
        if job_id:
            await self._redis.set(self._job_key(notification_id), job_id)
        logger.info("notification_plan_saved", notification_id=notification_id, status=status.value)

    async def get_plan(self, notification_id: str) -> StoredPlan | None:
        raw = await self._redis.get(self._plan_key(notification_id))
        if raw is None:
            return None
        return StoredPlan.model_validate_json(raw)

    async def list_plans(self, user_id: str) -> list[StoredPlan]:
        ids = await self._redis.smembers(self._index_key(user_id))
        plans: list[StoredPlan] = []
        for notification_id in sorted(ids):
            record = await self.get_plan(notification_id)
            if record is not None:
                plans.append(record)
        return plans

    async def get_job_id(self, notification_id: str) -> str | None:
        return await self._redis.get(self._job_key(notification_id))

    async def set_status(self, notification_id: str, status: PlanStatus) -> None:
        record = await self.get_plan(notification_id)
        if record is None:
            logger.warning("notification_plan_missing", notification_id=notification_id)
            return
        updated = record.model_copy(update={"status": status, "updated_at": _now_iso()})
        await self._redis.set(self._plan_key(notification_id), updated.model_dump_json(by_alias=True))

    @classmethod
    def from_settings(cls, settings: Settings, *, redis: Redis | None = None) -> "RedisPlanStore":
        client = redis or Redis.from_url(str(settings.redis.url), decode_responses=True)
        return cls(client, namespace=settings.notifications.key_namespace)


class InMemoryPlanStore:
    def __init__(self) -> None:
        self._plans: dict[str, StoredPlan] = {}

    async def save_plan(
        self,
        user_id: str,
        notification_id: str,
        plan: NotificationPlan,
        job_id: str | None,
        status: PlanStatus,
    ) -> None:
        self._plans[notification_id] = StoredPlan(
            notification_id=notification_id,
            user_id=user_id,
            job_id=job_id,
            status=status,
            plan=plan,
            updated_at=_now_iso(),
        )

    async def get_plan(self, notification_id: str) -> StoredPlan | None:
        return self._plans.get(notification_id)

    async def list_plans(self, user_id: str) -> list[StoredPlan]:
        return [record for record in self._plans.values() if record.user_id == user_id]

    async def get_job_id(self, notification_id: str) -> str | None:
        record = self._plans.get(notification_id)
        return record.job_id if record else None

    async def set_status(self, notification_id: str, status: PlanStatus) -> None:
        record = self._plans.get(notification_id)
        if record is not None:
            self._plans[notification_id] = record.model_copy(update={"status": status, "updated_at": _now_iso()})
