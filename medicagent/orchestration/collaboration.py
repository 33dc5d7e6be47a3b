"""
Collaboration Rule Engine

After a handler finishes, the engine inspects the shared data on its output
and decides whether other handlers should pick the request up. Qualifying
rules run under one of four execution strategies:

- sequential: rules in list order, each seeing the state left by the last
- parallel: concurrent, bounded by the shared limiter, results merged
- winner_take_all: concurrent, first success in rule order is adopted
- all_finish_merge: concurrent, every success folded in rule order

Every concurrent branch holds a slot of one process-wide limiter.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Mapping, Sequence

from ..core.logging import get_logger
from ..core.metrics import record_collaboration_rule, record_collaboration_run
from ..schemas.agents import HandlerName
from ..schemas.graph import CollaborationRecord, GraphState

logger = get_logger(name=__name__)

DEFAULT_MAX_CONCURRENT_EXECUTIONS = 2


class RulePriority(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class ExecutionStrategy(str, Enum):
    SEQUENTIAL = "sequential"
    PARALLEL = "parallel"
    WINNER_TAKE_ALL = "winner_take_all"
    ALL_FINISH_MERGE = "all_finish_merge"


RulePredicate = Callable[[Mapping[str, Any], str | None, str], bool]
HandlerExecutor = Callable[[GraphState], Awaitable[GraphState]]


@dataclass(frozen=True)
class CollaborationRule:
    """A cascade from the current handler to ``target_agent``.

    ``should_execute`` must turn false once the target's own shared data is
    present, otherwise the cascade would repeat.
    """

    name: str
    priority: RulePriority
    target_agent: HandlerName
    should_execute: RulePredicate
    cost: int = 1
    latency: int = 1000


def _notification_to_appointment(shared_data: Mapping[str, Any], intent: str | None, current_agent: str) -> bool:
    return (
        current_agent == HandlerName.NOTIFICATION.value
        and bool(shared_data.get("notification_schedule"))
        and "appointment_schedule" not in shared_data
    )


def _appointment_to_report(shared_data: Mapping[str, Any], intent: str | None, current_agent: str) -> bool:
    return (
        current_agent == HandlerName.APPOINTMENT.value
        and bool(shared_data.get("appointment_schedule"))
        and "report_schedule" not in shared_data
    )


DEFAULT_RULES: tuple[CollaborationRule, ...] = (
    CollaborationRule(
        name="notification-to-appointment",
        priority=RulePriority.HIGH,
        target_agent=HandlerName.APPOINTMENT,
        should_execute=_notification_to_appointment,
        cost=1,
        latency=1000,
    ),
    CollaborationRule(
        name="appointment-to-report",
        priority=RulePriority.LOW,
        target_agent=HandlerName.REPORT,
        should_execute=_appointment_to_report,
        cost=2,
        latency=2000,
    ),
)


def select_strategy(rules: Sequence[CollaborationRule]) -> ExecutionStrategy:
    """Deterministic strategy choice; parallel is only used on request."""
    if len(rules) <= 1:
        return ExecutionStrategy.SEQUENTIAL
    if len({rule.priority for rule in rules}) > 1:
        return ExecutionStrategy.WINNER_TAKE_ALL
    return ExecutionStrategy.ALL_FINISH_MERGE


class ConcurrencyLimiter:
    """Counting semaphore shared by every in-flight collaboration.

    ``asyncio.Semaphore`` wakes waiters in FIFO order.
    """

    def __init__(self, permits: int = DEFAULT_MAX_CONCURRENT_EXECUTIONS) -> None:
        if permits < 1:
            raise ValueError("permits must be at least 1")
        self.permits = permits
        self._semaphore = asyncio.Semaphore(permits)
        self._in_use = 0

    @property
    def in_use(self) -> int:
        return self._in_use

    async def run(self, factory: Callable[[], Awaitable[GraphState]]) -> GraphState:
        async with self._semaphore:
            self._in_use += 1
            try:
                return await factory()
            finally:
                self._in_use -= 1


@dataclass(slots=True)
class RuleOutcome:
    rule: CollaborationRule
    state: GraphState | None = None
    error: BaseException | None = None

    @property
    def succeeded(self) -> bool:
        return self.error is None and self.state is not None


def _shared_data(state: GraphState) -> dict[str, Any]:
    merged = dict(state.context.shared_data)
    if state.final_output is not None and state.final_output.shared_data:
        merged.update(state.final_output.shared_data)
    return merged


def merge_results(base: GraphState, results: Sequence[GraphState]) -> GraphState:
    """Fold successful branch states into ``base`` in the given order.

    Messages a branch appended after ``base`` are concatenated; shared data is
    shallow-merged with later results overriding earlier ones.
    """
    if not results:
        return base
    messages = list(base.messages)
    shared = dict(base.context.shared_data)
    merged = base
    known = len(base.messages)
    for result in results:
        messages.extend(result.messages[known:])
        shared.update(_shared_data(result))
        merged = merged.model_copy(
            update={
                "current_agent": result.current_agent,
                "final_output": result.final_output,
            }
        )
    context = merged.context.model_copy(update={"shared_data": shared})
    return merged.model_copy(update={"messages": messages, "context": context})


@dataclass
class CollaborationEngine:
    executor: HandlerExecutor
    rules: Sequence[CollaborationRule] = DEFAULT_RULES
    limiter: ConcurrencyLimiter = field(default_factory=ConcurrencyLimiter)

    def applicable_rules(self, state: GraphState) -> list[CollaborationRule]:
        if state.final_output is None or state.final_output.shared_data is None:
            return []
        shared = _shared_data(state)
        return [
            rule
            for rule in self.rules
            if rule.should_execute(shared, state.context.intent, state.current_agent)
        ]

    async def run(
        self,
        state: GraphState,
        *,
        strategy: ExecutionStrategy | None = None,
    ) -> GraphState:
        rules = self.applicable_rules(state)
        if not rules:
            return state
        chosen = strategy or select_strategy(rules)
        record_collaboration_run(strategy=chosen.value)
        logger.info(
            "collaboration_started",
            strategy=chosen.value,
            rules=[rule.name for rule in rules],
            current_agent=state.current_agent,
        )

        if chosen is ExecutionStrategy.SEQUENTIAL:
            result, outcomes = await self._run_sequential(state, rules)
        elif chosen is ExecutionStrategy.WINNER_TAKE_ALL:
            result, outcomes = await self._run_winner_take_all(state, rules)
        else:
            outcomes = await self._run_concurrent(state, rules)
            result = merge_results(state, [outcome.state for outcome in outcomes if outcome.succeeded])

        record = CollaborationRecord(
            strategy=chosen.value,
            rules=[rule.name for rule in rules],
            succeeded=[outcome.rule.name for outcome in outcomes if outcome.succeeded],
            failed=[outcome.rule.name for outcome in outcomes if not outcome.succeeded],
        )
        history = [*result.context.collaboration_history, record]
        logger.info(
            "collaboration_completed",
            strategy=chosen.value,
            succeeded=record.succeeded,
            failed=record.failed,
            current_agent=result.current_agent,
        )
        return result.model_copy(
            update={"context": result.context.model_copy(update={"collaboration_history": history})}
        )

    def _branch_state(self, state: GraphState, rule: CollaborationRule) -> GraphState:
        context = state.context.model_copy(update={"shared_data": _shared_data(state)})
        return state.model_copy(update={"current_agent": rule.target_agent.value, "context": context})

    async def _execute_rule(self, state: GraphState, rule: CollaborationRule) -> GraphState:
        logger.info(
            "collaboration_rule_started",
            rule=rule.name,
            from_agent=state.current_agent,
            to_agent=rule.target_agent.value,
        )
        result = await self.executor(self._branch_state(state, rule))
        context = result.context.model_copy(update={"shared_data": _shared_data(result)})
        return result.model_copy(update={"context": context})

    def _log_failure(self, rule: CollaborationRule, state: GraphState, exc: BaseException) -> None:
        record_collaboration_rule(rule=rule.name, outcome="failed")
        logger.warning(
            "collaboration_rule_failed",
            rule=rule.name,
            from_agent=state.current_agent,
            to_agent=rule.target_agent.value,
            error=str(exc),
        )

    async def _run_sequential(
        self, state: GraphState, rules: Sequence[CollaborationRule]
    ) -> tuple[GraphState, list[RuleOutcome]]:
        current = state
        outcomes: list[RuleOutcome] = []
        for rule in rules:
            try:
                current = await self._execute_rule(current, rule)
            except Exception as exc:
                self._log_failure(rule, state, exc)
                outcomes.append(RuleOutcome(rule=rule, error=exc))
                continue
            record_collaboration_rule(rule=rule.name, outcome="succeeded")
            outcomes.append(RuleOutcome(rule=rule, state=current))
        return current, outcomes

    async def _run_concurrent(self, state: GraphState, rules: Sequence[CollaborationRule]) -> list[RuleOutcome]:
        async def branch(rule: CollaborationRule) -> RuleOutcome:
            try:
                result = await self.limiter.run(lambda: self._execute_rule(state, rule))
            except Exception as exc:
                self._log_failure(rule, state, exc)
                return RuleOutcome(rule=rule, error=exc)
            record_collaboration_rule(rule=rule.name, outcome="succeeded")
            return RuleOutcome(rule=rule, state=result)

        return list(await asyncio.gather(*(branch(rule) for rule in rules)))

    async def _run_winner_take_all(
        self, state: GraphState, rules: Sequence[CollaborationRule]
    ) -> tuple[GraphState, list[RuleOutcome]]:
        outcomes = await self._run_concurrent(state, rules)
        for outcome in outcomes:
            if outcome.succeeded and outcome.state is not None:
                logger.info("collaboration_winner_selected", rule=outcome.rule.name, total_rules=len(rules))
                return outcome.state, outcomes
        logger.warning("collaboration_no_winner", total_rules=len(rules))
        return state, outcomes
