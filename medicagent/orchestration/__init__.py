"""
Orchestration Package

Core orchestration components for the assistant:
- Intent routing tables and block guards
- Router with tiered classification
- Orchestration graph (router, handler, collaboration stages)
- Collaboration rules and execution strategies
- Agent-to-agent event bus
"""

from .collaboration import (
    DEFAULT_RULES,
    CollaborationEngine,
    CollaborationRule,
    ConcurrencyLimiter,
    ExecutionStrategy,
    RulePriority,
    select_strategy,
)
from .event_bus import AgentEventBus
from .graph import AgentGraph
from .intent_routing import evaluate_guards, resolve_route
from .registry import HandlerNotRegisteredError, HandlerRegistry
from .router import RouterAgent

__all__ = [
    "AgentEventBus",
    "AgentGraph",
    "CollaborationEngine",
    "CollaborationRule",
    "ConcurrencyLimiter",
    "DEFAULT_RULES",
    "ExecutionStrategy",
    "HandlerNotRegisteredError",
    "HandlerRegistry",
    "RouterAgent",
    "RulePriority",
    "evaluate_guards",
    "resolve_route",
    "select_strategy",
]
