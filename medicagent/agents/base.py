from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, ClassVar, Protocol

from ..core.logging import get_logger
from ..schemas.agents import AgentInput, AgentOutput, HandlerName
from ..schemas.graph import A2AMessage, MessageType
from ..services.llm import LLMCapability

if TYPE_CHECKING:  # pragma: no cover - typing only
    from ..orchestration.event_bus import AgentEventBus, Subscription

logger = get_logger(name=__name__)


class Handler(Protocol):
    name: ClassVar[HandlerName]

    async def process(self, agent_input: AgentInput) -> AgentOutput:
        ...

    def get_capabilities(self) -> list[str]:
        ...


@dataclass
class BaseHandler:
    """Shared A2A wiring for concrete handlers."""

    name: ClassVar[HandlerName]
    capabilities: ClassVar[tuple[str, ...]] = ()

    llm: LLMCapability
    event_bus: "AgentEventBus | None" = field(default=None, kw_only=True)
    _subscriptions: list["Subscription"] = field(default_factory=list, init=False, repr=False)

    async def process(self, agent_input: AgentInput) -> AgentOutput:
        raise NotImplementedError

    def get_capabilities(self) -> list[str]:
        return list(self.capabilities)

    def set_event_bus(self, bus: "AgentEventBus") -> None:
        if self.event_bus is not None and self._subscriptions:
            self.event_bus.unsubscribe(self._subscriptions)
        self.event_bus = bus
        self._subscriptions = bus.subscribe_to_agent(
            self.name.value,
            on_request=self.handle_a2a_request,
            on_response=self.handle_a2a_response,
            on_notification=self.handle_a2a_notification,
        )

    async def send_a2a_message(self, to: str, message_type: MessageType, content: Any) -> A2AMessage | None:
        if self.event_bus is None:
            logger.warning("a2a_bus_unavailable", agent=self.name.value, to_agent=to)
            return None
        return await self.event_bus.send_message(self.name.value, to, message_type, content)

    async def start_collaboration(self, participants: list[str], topic: str) -> str | None:
        if self.event_bus is None:
            return None
        return await self.event_bus.start_collaboration(self.name.value, participants, topic)

    async def end_collaboration(self, session_id: str | None, result: Any = None) -> None:
        if self.event_bus is None or session_id is None:
            return
        await self.event_bus.end_collaboration(session_id, result)

    async def handle_a2a_request(self, message: A2AMessage) -> None:
        logger.info("a2a_request_received", agent=self.name.value, from_agent=message.from_agent, message_id=message.id)

    async def handle_a2a_response(self, message: A2AMessage) -> None:
        logger.info("a2a_response_received", agent=self.name.value, from_agent=message.from_agent, message_id=message.id)

    async def handle_a2a_notification(self, message: A2AMessage) -> None:
        logger.info(
            "a2a_notification_received",
            agent=self.name.value,
            from_agent=message.from_agent,
            message_id=message.id,
        )
