from __future__ import annotations

import pytest

from planwright.core.config import ConfidenceSettings
from planwright.core.exceptions import EmptyScoreSet, ValidationError
from planwright.schemas.confidence import AgentScore, Decision, ScorePattern, ThresholdTable
from planwright.services.confidence import ConfidenceRouter, decide


def _scores(*values: float) -> list[AgentScore]:
    return [AgentScore(agent_name=f"agent-{index}", score=value) for index, value in enumerate(values, start=1)]


@pytest.mark.parametrize(
    ("confidence", "expected"),
    [
        (1.0, Decision.EXECUTE),
        (0.85, Decision.EXECUTE),
        (0.849999, Decision.REVIEW),
        (0.65, Decision.REVIEW),
        (0.649999, Decision.RETHINK),
        (0.4, Decision.RETHINK),
        (0.39999, Decision.ESCALATE),
        (0.0, Decision.ESCALATE),
    ],
)
def test_decision_buckets_include_their_lower_bound(confidence: float, expected: Decision) -> None:
    router = ConfidenceRouter()

    assert router.score(_scores(confidence)).decision is expected
    assert decide(confidence, ThresholdTable()) is expected


def test_weighted_mean_is_not_rounded_before_routing() -> None:
    router = ConfidenceRouter(ConfidenceSettings(agent_weights={"agent-1": 3.0, "agent-2": 1.0}))

    result = router.score(_scores(0.9, 0.6))

    assert result.overall_confidence == pytest.approx(0.825)
    assert result.decision is Decision.REVIEW
    assert result.weights == {"agent-1": 3.0, "agent-2": 1.0}


def test_custom_thresholds_are_reported() -> None:
    table = ThresholdTable(execute=0.7, review=0.5, rethink=0.3)

    result = ConfidenceRouter().score(_scores(0.72), table)

    assert result.decision is Decision.EXECUTE
    assert result.threshold_used == table


def test_thresholds_must_descend() -> None:
    with pytest.raises(ValueError):
        ThresholdTable(execute=0.5, review=0.6, rethink=0.3)


def test_empty_score_set_is_a_validation_error() -> None:
    router = ConfidenceRouter()

    with pytest.raises(EmptyScoreSet):
        router.score([])
    with pytest.raises(ValidationError):
        ConfidenceRouter(ConfidenceSettings(agent_weights={"agent-1": 0.0})).score(_scores(0.9))


def test_score_analysis_fields() -> None:
    router = ConfidenceRouter()

    mixed = router.score(_scores(0.95, 0.3, 0.9))
    high = router.score(_scores(0.9, 0.88))
    low = router.score(_scores(0.2, 0.3))

    assert mixed.score_pattern is ScorePattern.MIXED
    assert mixed.lowest_agent == "agent-2"
    assert mixed.highest_agent == "agent-1"
    assert mixed.concerns == ["agent-2 scored 0.30"]
    assert high.score_pattern is ScorePattern.CONSISTENT_HIGH
    assert low.score_pattern is ScorePattern.CONSISTENT_LOW
    assert low.decision is Decision.ESCALATE
    assert "escalating" in low.reasoning
