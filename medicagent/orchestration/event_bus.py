"""
Agent-to-agent event bus

Handlers publish A2A messages onto typed channels keyed by
``(recipient, message type)``. The bus keeps a bounded history for
observability and tags named collaboration sessions. It never drives the
collaboration stage itself; cascades are direct calls.
"""

from __future__ import annotations

import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Iterable
from uuid import uuid4

from ..core.logging import get_logger
from ..schemas.graph import A2AMessage, MessageType

logger = get_logger(name=__name__)

DEFAULT_HISTORY_LIMIT = 1000

MessageCallback = Callable[[A2AMessage], Awaitable[None]]


class BusEventType(str, Enum):
    MESSAGE = "message"
    COLLABORATION_START = "collaboration_start"
    COLLABORATION_END = "collaboration_end"
    SESSION_CREATED = "session_created"
    SESSION_ENDED = "session_ended"


@dataclass(slots=True)
class BusEvent:
    type: BusEventType
    payload: dict[str, Any]
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


EventCallback = Callable[[BusEvent], Awaitable[None]]


@dataclass
class CollaborationSession:
    session_id: str
    initiator: str
    participants: list[str]
    topic: str
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    ended_at: datetime | None = None
    result: Any = None

    @property
    def active(self) -> bool:
        return self.ended_at is None


@dataclass(frozen=True, slots=True)
class Subscription:
    agent: str
    message_type: MessageType
    callback: MessageCallback


class AgentEventBus:
    """Process-scoped publish/subscribe channel for A2A messages."""

    def __init__(self, *, max_history: int = DEFAULT_HISTORY_LIMIT) -> None:
        self._history: deque[A2AMessage] = deque(maxlen=max_history)
        self._channels: dict[tuple[str, MessageType], list[MessageCallback]] = {}
        self._listeners: list[EventCallback] = []
        self._sessions: dict[str, CollaborationSession] = {}
        self._lock = threading.Lock()

    async def send_message(
        self,
        from_agent: str,
        to_agent: str,
        message_type: MessageType | str,
        content: Any,
        *,
        session_id: str | None = None,
    ) -> A2AMessage:
        message = A2AMessage(
            from_agent=from_agent,
            to_agent=to_agent,
            type=MessageType(message_type),
            content=content,
            session_id=session_id,
        )
        with self._lock:
            self._history.append(message)
            callbacks = list(self._channels.get((to_agent, message.type), ()))
        logger.debug(
            "a2a_message_sent",
            message_id=message.id,
            from_agent=from_agent,
            to_agent=to_agent,
            type=message.type.value,
        )
        for callback in callbacks:
            try:
                await callback(message)
            except Exception as exc:
                logger.exception(
                    "a2a_subscriber_failed",
                    message_id=message.id,
                    to_agent=to_agent,
                    error=str(exc),
                )
        await self._emit(BusEvent(type=BusEventType.MESSAGE, payload={"message_id": message.id}))
        return message

    def subscribe(self, agent: str, message_type: MessageType, callback: MessageCallback) -> Subscription:
        with self._lock:
            self._channels.setdefault((agent, message_type), []).append(callback)
        return Subscription(agent=agent, message_type=message_type, callback=callback)

    def subscribe_to_agent(
        self,
        agent: str,
        *,
        on_request: MessageCallback | None = None,
        on_response: MessageCallback | None = None,
        on_notification: MessageCallback | None = None,
    ) -> list[Subscription]:
        """Register the per-type callbacks addressed to ``agent``."""
        pairs = (
            (MessageType.REQUEST, on_request),
            (MessageType.RESPONSE, on_response),
            (MessageType.NOTIFICATION, on_notification),
        )
        return [self.subscribe(agent, message_type, callback) for message_type, callback in pairs if callback]

    def unsubscribe(self, subscriptions: Iterable[Subscription]) -> None:
        with self._lock:
            for subscription in subscriptions:
                callbacks = self._channels.get((subscription.agent, subscription.message_type), [])
                if subscription.callback in callbacks:
                    callbacks.remove(subscription.callback)

    def add_listener(self, callback: EventCallback) -> None:
        self._listeners.append(callback)

    def get_message_history(self, agent: str | None = None, limit: int | None = None) -> list[A2AMessage]:
        with self._lock:
            messages = list(self._history)
        if agent is not None:
            messages = [m for m in messages if m.from_agent == agent or m.to_agent == agent]
        if limit is not None:
            messages = messages[-limit:] if limit > 0 else []
        return messages

    def clear_history(self) -> None:
        with self._lock:
            self._history.clear()

    async def create_session(self, session_id: str, *, initiator: str, participants: list[str], topic: str) -> CollaborationSession:
        session = CollaborationSession(
            session_id=session_id,
            initiator=initiator,
            participants=list(participants),
            topic=topic,
        )
        self._sessions[session_id] = session
        logger.info("collaboration_session_created", session_id=session_id, participants=participants, topic=topic)
        await self._emit(
            BusEvent(
                type=BusEventType.SESSION_CREATED,
                payload={"session_id": session_id, "participants": list(participants), "topic": topic},
            )
        )
        return session

    async def end_session(self, session_id: str, *, result: Any = None) -> CollaborationSession | None:
        session = self._sessions.get(session_id)
        if session is None:
            logger.warning("collaboration_session_unknown", session_id=session_id)
            return None
        session.ended_at = datetime.now(timezone.utc)
        session.result = result
        self._prune_sessions()
        logger.info("collaboration_session_ended", session_id=session_id)
        await self._emit(BusEvent(type=BusEventType.SESSION_ENDED, payload={"session_id": session_id}))
        return session

    async def start_collaboration(self, initiator: str, participants: list[str], topic: str) -> str:
        session_id = f"collab_{uuid4().hex[:12]}"
        await self.create_session(session_id, initiator=initiator, participants=participants, topic=topic)
        await self._emit(
            BusEvent(
                type=BusEventType.COLLABORATION_START,
                payload={"session_id": session_id, "initiator": initiator, "participants": list(participants)},
            )
        )
        return session_id

    async def end_collaboration(self, session_id: str, result: Any = None) -> None:
        await self.end_session(session_id, result=result)
        await self._emit(BusEvent(type=BusEventType.COLLABORATION_END, payload={"session_id": session_id}))

    def get_session(self, session_id: str) -> CollaborationSession | None:
        return self._sessions.get(session_id)

    def active_sessions(self) -> list[CollaborationSession]:
        return [session for session in self._sessions.values() if session.active]

    def _prune_sessions(self) -> None:
        limit = self._history.maxlen or DEFAULT_HISTORY_LIMIT
        ended = [key for key, session in self._sessions.items() if not session.active]
        for key in ended[: max(0, len(self._sessions) - limit)]:
            del self._sessions[key]

    async def _emit(self, event: BusEvent) -> None:
        for listener in list(self._listeners):
            try:
                await listener(event)
            except Exception as exc:
                logger.exception("bus_listener_failed", event_type=event.type.value, error=str(exc))
