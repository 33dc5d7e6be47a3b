from __future__ import annotations

from typing import TYPE_CHECKING, Iterable, Iterator

from ..core.logging import get_logger
from ..schemas.agents import HandlerName

if TYPE_CHECKING:  # pragma: no cover - typing only
    from ..agents.base import Handler
    from .event_bus import AgentEventBus

logger = get_logger(name=__name__)

ROUTABLE_HANDLERS: frozenset[HandlerName] = frozenset(
    {HandlerName.APPOINTMENT, HandlerName.REPORT, HandlerName.NOTIFICATION, HandlerName.GP}
)


class HandlerNotRegisteredError(LookupError):
    """Raised for a handler name outside the registration table."""


class HandlerRegistry:
    """Registration table built once at startup.

    Construction fails when any routable handler is missing, so lookups for
    routes produced by ``resolve_route`` cannot fail at request time.
    """

    def __init__(
        self,
        handlers: Iterable["Handler"],
        *,
        required: Iterable[HandlerName] = ROUTABLE_HANDLERS,
    ) -> None:
        self._handlers: dict[HandlerName, "Handler"] = {}
        for handler in handlers:
            name = HandlerName(handler.name)
            if name in self._handlers:
                raise ValueError(f"handler '{name.value}' registered twice")
            self._handlers[name] = handler
        missing = sorted(name.value for name in set(required) - set(self._handlers))
        if missing:
            raise HandlerNotRegisteredError(f"missing handlers: {', '.join(missing)}")
        logger.info("handler_registry_built", handlers=[name.value for name in self._handlers])

    def get(self, name: HandlerName | str) -> "Handler":
        try:
            return self._handlers[HandlerName(name)]
        except (KeyError, ValueError) as exc:
            raise HandlerNotRegisteredError(f"no handler registered for '{name}'") from exc

    def __contains__(self, name: object) -> bool:
        try:
            return HandlerName(name) in self._handlers  # type: ignore[arg-type]
        except ValueError:
            return False

    def __iter__(self) -> Iterator["Handler"]:
        return iter(self._handlers.values())

    def names(self) -> list[str]:
        return [name.value for name in self._handlers]

    def attach_event_bus(self, bus: "AgentEventBus") -> None:
        for handler in self._handlers.values():
            setter = getattr(handler, "set_event_bus", None)
            if setter is not None:
                setter(bus)
