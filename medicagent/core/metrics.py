from __future__ import annotations

from prometheus_client import Counter, Histogram

ROUTE_DECISIONS_TOTAL = Counter(
    "medicagent_route_decisions_total",
    "Router classifications grouped by resolved intent, route and classification method",
    labelnames=("intent", "route", "method"),
)

GUARD_BLOCKS_TOTAL = Counter(
    "medicagent_guard_blocks_total",
    "Requests blocked by a routing guard before dispatch",
    labelnames=("intent",),
)

GRAPH_STAGE_LATENCY_SECONDS = Histogram(
    "medicagent_graph_stage_latency_seconds",
    "Wall-clock latency of each orchestration graph stage",
    labelnames=("stage",),
    buckets=(0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10, 30, 60, float("inf")),
)

GRAPH_RUNS_TOTAL = Counter(
    "medicagent_graph_runs_total",
    "Orchestration graph runs by terminal status",
    labelnames=("status",),
)

COLLABORATION_RUNS_TOTAL = Counter(
    "medicagent_collaboration_runs_total",
    "Collaboration cascades by execution strategy",
    labelnames=("strategy",),
)

COLLABORATION_RULE_TOTAL = Counter(
    "medicagent_collaboration_rule_total",
    "Collaboration rule executions by outcome",
    labelnames=("rule", "outcome"),
)

NOTIFICATION_PLANS_TOTAL = Counter(
    "medicagent_notification_plans_total",
    "Notification plan operations by outcome",
    labelnames=("operation", "outcome"),
)

DEAD_LETTERS_TOTAL = Counter(
    "medicagent_dead_letters_total",
    "Payloads written to the notification dead-letter sink",
    labelnames=("reason",),
)


def record_route_decision(*, intent: str, route: str, method: str) -> None:
    ROUTE_DECISIONS_TOTAL.labels(intent=intent, route=route, method=method).inc()


def record_guard_block(*, intent: str) -> None:
    GUARD_BLOCKS_TOTAL.labels(intent=intent).inc()


def observe_stage_latency(*, stage: str, latency: float) -> None:
    GRAPH_STAGE_LATENCY_SECONDS.labels(stage=stage).observe(max(latency, 0.0))


def record_graph_run(*, status: str) -> None:
    GRAPH_RUNS_TOTAL.labels(status=status).inc()


def record_collaboration_run(*, strategy: str) -> None:
    COLLABORATION_RUNS_TOTAL.labels(strategy=strategy).inc()


def record_collaboration_rule(*, rule: str, outcome: str) -> None:
    COLLABORATION_RULE_TOTAL.labels(rule=rule, outcome=outcome).inc()


def record_notification_plan(*, operation: str, outcome: str) -> None:
    NOTIFICATION_PLANS_TOTAL.labels(operation=operation, outcome=outcome).inc()


def record_dead_letter(*, reason: str) -> None:
    # Reasons may embed free text after a colon; keep label cardinality bounded.
    DEAD_LETTERS_TOTAL.labels(reason=reason.split(":", 1)[0].strip() or "unknown").inc()
