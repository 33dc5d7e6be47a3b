from __future__ import annotations

from dataclasses import dataclass

from fastapi import Depends
from redis.asyncio import Redis

from .agents.appointment import AppointmentHandler
from .agents.general import GeneralPractitionerHandler
from .agents.notification import NotificationAgent
from .agents.report import ReportHandler
from .core.config import Settings, get_settings
from .orchestration.collaboration import ConcurrencyLimiter
from .orchestration.event_bus import AgentEventBus
from .orchestration.graph import AgentGraph
from .orchestration.registry import HandlerRegistry
from .orchestration.router import RouterAgent
from .queue.manager import DeadLetterSink, JobQueue, RedisDeadLetterSink, RedisNotificationQueue
from .queue.store import PlanStore, RedisPlanStore
from .schemas.notifications import RetrySpec
from .services.calendar import GoogleCalendarClient
from .services.llm import LLMCapability, LLMService
from .services.reports import InMemoryInteractionStore, InteractionStore


@dataclass
class NotificationBackends:
    queue: JobQueue
    store: PlanStore
    dead_letters: DeadLetterSink


_backends_singleton: NotificationBackends | None = None
_graph_singleton: AgentGraph | None = None
_event_bus_singleton: AgentEventBus | None = None


def build_graph(
    settings: Settings,
    *,
    llm: LLMCapability,
    backends: NotificationBackends,
    event_bus: AgentEventBus | None = None,
    calendar: GoogleCalendarClient | None = None,
    interactions: InteractionStore | None = None,
) -> AgentGraph:
    """Wire handlers, registry, router and graph for one process."""
    notifications = settings.notifications
    if interactions is None:
        interactions = InMemoryInteractionStore()
    handlers = [
        AppointmentHandler(
            llm,
            calendar=calendar or GoogleCalendarClient(settings.calendar),
            default_duration_minutes=settings.calendar.default_duration_minutes,
            default_tz=notifications.default_timezone,
        ),
        ReportHandler(llm, interactions=interactions),
        NotificationAgent(
            llm,
            queue=backends.queue,
            store=backends.store,
            dead_letters=backends.dead_letters,
            default_tz=notifications.default_timezone,
            default_hour=notifications.default_hour,
            default_recipient=notifications.default_recipient,
            retry=RetrySpec(attempts=notifications.retry_attempts, backoff_ms=notifications.retry_backoff_ms),
        ),
        GeneralPractitionerHandler(llm),
    ]
    registry = HandlerRegistry(handlers)
    if event_bus is not None:
        registry.attach_event_bus(event_bus)
    router = RouterAgent(llm, registry=registry)
    return AgentGraph(
        router=router,
        registry=registry,
        event_bus=event_bus,
        limiter=ConcurrencyLimiter(settings.collaboration.max_concurrent_executions),
        collaboration_enabled=settings.collaboration.enabled,
        interactions=interactions,
    )


def get_notification_backends_singleton(settings: Settings) -> NotificationBackends:
    global _backends_singleton
    if _backends_singleton is None:
        redis = Redis.from_url(str(settings.redis.url), decode_responses=True)
        _backends_singleton = NotificationBackends(
            queue=RedisNotificationQueue.from_settings(settings, redis=redis),
            store=RedisPlanStore.from_settings(settings, redis=redis),
            dead_letters=RedisDeadLetterSink.from_settings(settings, redis=redis),
        )
    return _backends_singleton


def get_event_bus_singleton() -> AgentEventBus:
    global _event_bus_singleton
    if _event_bus_singleton is None:
        _event_bus_singleton = AgentEventBus()
    return _event_bus_singleton


def get_graph_singleton(settings: Settings) -> AgentGraph:
    global _graph_singleton
    if _graph_singleton is None:
        _graph_singleton = build_graph(
            settings,
            llm=LLMService.from_settings(settings),
            backends=get_notification_backends_singleton(settings),
            event_bus=get_event_bus_singleton(),
        )
    return _graph_singleton


async def close_singletons() -> None:
    global _backends_singleton, _graph_singleton
    if _backends_singleton is not None:
        queue = _backends_singleton.queue
        if isinstance(queue, RedisNotificationQueue):
            await queue.close()
    _backends_singleton = None
    _graph_singleton = None


def get_app_settings() -> Settings:
    return get_settings()


def get_agent_graph(settings: Settings = Depends(get_app_settings)) -> AgentGraph:
    return get_graph_singleton(settings)


def get_job_queue(settings: Settings = Depends(get_app_settings)) -> JobQueue:
    return get_notification_backends_singleton(settings).queue
