from __future__ import annotations

from prometheus_client import Counter, Histogram

AGENT_STEP_LATENCY_SECONDS = Histogram(
    "planwright_agent_step_latency_seconds",
    "Latency of each agent step driven by the coordinator",
    labelnames=("agent",),
    buckets=(0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10, 30, 60, 120, float("inf")),
)

AGENT_STEP_TOTAL = Counter(
    "planwright_agent_step_total",
    "Agent steps grouped by outcome (completed/failed/timeout)",
    labelnames=("agent", "outcome"),
)

PIPELINE_RUNS_TOTAL = Counter(
    "planwright_pipeline_runs_total",
    "Pipeline runs grouped by final outcome",
    labelnames=("outcome",),
)

PLAN_VERSIONS_TOTAL = Counter(
    "planwright_plan_versions_total",
    "Plan versions minted grouped by origin",
    labelnames=("origin",),
)

PLAN_VERSION_CONFLICTS_TOTAL = Counter(
    "planwright_plan_version_conflicts_total",
    "Plan version allocation races detected on write",
)

CRITIQUES_TOTAL = Counter(
    "planwright_critiques_total",
    "Critique versions produced grouped by path and recommendation",
    labelnames=("path", "recommendation"),
)

CRITIQUE_QUESTIONS = Histogram(
    "planwright_critique_follow_up_questions",
    "Follow-up questions emitted per critique",
    buckets=(0, 1, 2, 3, 5, 8, 13),
)

CRITIQUE_FEEDBACK_REGRESSIONS_TOTAL = Counter(
    "planwright_critique_feedback_regressions_total",
    "Feedback merges that neither raised the score nor reduced the questions",
)

CONFIDENCE_DECISIONS_TOTAL = Counter(
    "planwright_confidence_decisions_total",
    "Confidence router decisions",
    labelnames=("decision",),
)

CONFIDENCE_SCORE = Histogram(
    "planwright_confidence_score",
    "Distribution of aggregated confidence scores",
    buckets=(0.0, 0.2, 0.4, 0.65, 0.85, 1.0),
)

STORAGE_WRITE_FAILURES_TOTAL = Counter(
    "planwright_storage_write_failures_total",
    "Artifact writes that failed and were downgraded to warnings",
    labelnames=("kind",),
)


def observe_agent_step(*, agent: str, outcome: str, latency: float) -> None:
    AGENT_STEP_TOTAL.labels(agent=agent, outcome=outcome).inc()
    AGENT_STEP_LATENCY_SECONDS.labels(agent=agent).observe(max(0.0, latency))


def record_pipeline_outcome(*, outcome: str) -> None:
    PIPELINE_RUNS_TOTAL.labels(outcome=outcome).inc()


def increment_plan_version(*, origin: str) -> None:
    PLAN_VERSIONS_TOTAL.labels(origin=origin).inc()


def increment_version_conflict() -> None:
    PLAN_VERSION_CONFLICTS_TOTAL.inc()


def record_critique(*, path: str, recommendation: str, questions: int) -> None:
    CRITIQUES_TOTAL.labels(path=path, recommendation=recommendation).inc()
    CRITIQUE_QUESTIONS.observe(max(0, questions))


def increment_feedback_regression() -> None:
    CRITIQUE_FEEDBACK_REGRESSIONS_TOTAL.inc()


def record_confidence_decision(*, decision: str, confidence: float) -> None:
    CONFIDENCE_DECISIONS_TOTAL.labels(decision=decision).inc()
    CONFIDENCE_SCORE.observe(max(0.0, min(1.0, confidence)))


def increment_storage_write_failure(*, kind: str) -> None:
    STORAGE_WRITE_FAILURES_TOTAL.labels(kind=kind).inc()
