from __future__ import annotations

from dataclasses import dataclass
from statistics import pvariance
from typing import Sequence

from ..core.config import ConfidenceSettings
from ..core.exceptions import EmptyScoreSet
from ..core.logging import get_logger
from ..core.metrics import record_confidence_decision
from ..schemas.confidence import AgentScore, ConfidenceScore, Decision, ScorePattern, ThresholdTable

logger = get_logger(name=__name__)

_DECISION_NOTES = {
    Decision.EXECUTE: "confidence is high enough to execute the plan",
    Decision.REVIEW: "confidence warrants a review before execution",
    Decision.RETHINK: "confidence is low; the plan should be reworked",
    Decision.ESCALATE: "confidence is too low for automated handling; escalating to a human",
}


@dataclass(slots=True)
class ScoreStats:
    weighted_mean: float
    variance: float
    lowest: AgentScore
    highest: AgentScore

    def as_dict(self) -> dict[str, object]:
        return {
            "weighted_mean": round(self.weighted_mean, 4),
            "variance": round(self.variance, 4),
            "lowest_agent": self.lowest.agent_name,
            "highest_agent": self.highest.agent_name,
        }


def decide(confidence: float, thresholds: ThresholdTable) -> Decision:
    """Map ``confidence`` to the first bucket whose lower bound it reaches."""
    for lower_bound, decision in thresholds.buckets():
        if confidence >= lower_bound:
            return decision
    return Decision.ESCALATE


class ConfidenceRouter:
    """Aggregate per-agent scores into one confidence value and route on it."""

    def __init__(self, settings: ConfidenceSettings | None = None) -> None:
        self._settings = settings or ConfidenceSettings()

    @property
    def default_thresholds(self) -> ThresholdTable:
        configured = self._settings.thresholds
        return ThresholdTable(execute=configured.execute, review=configured.review, rethink=configured.rethink)

    def weight_for(self, agent_name: str) -> float:
        return self._settings.agent_weights.get(agent_name, self._settings.default_weight)

    def aggregate(self, agent_scores: Sequence[AgentScore]) -> ScoreStats:
        if not agent_scores:
            raise EmptyScoreSet("at least one agent score is required")
        weights = [max(self.weight_for(item.agent_name), 0.0) for item in agent_scores]
        total_weight = sum(weights)
        if total_weight <= 0:
            raise EmptyScoreSet("every supplied agent score has zero weight")
        values = [item.score for item in agent_scores]
        weighted_mean = sum(value * weight for value, weight in zip(values, weights)) / total_weight
        variance = pvariance(values)
        return ScoreStats(
            weighted_mean=max(0.0, min(1.0, weighted_mean)),
            variance=variance,
            lowest=min(agent_scores, key=lambda item: item.score),
            highest=max(agent_scores, key=lambda item: item.score),
        )

    def score(
        self,
        agent_scores: Sequence[AgentScore],
        thresholds: ThresholdTable | None = None,
        *,
        request_id: str | None = None,
    ) -> ConfidenceScore:
        table = thresholds or self.default_thresholds
        stats = self.aggregate(agent_scores)
        decision = decide(stats.weighted_mean, table)
        pattern = self._pattern(agent_scores, stats)
        concerns = [
            f"{item.agent_name} scored {item.score:.2f}"
            for item in agent_scores
            if item.score < self._settings.low_score_ceiling
        ]
        result = ConfidenceScore(
            request_id=request_id,
            overall_confidence=stats.weighted_mean,
            decision=decision,
            threshold_used=table,
            reasoning=self._reasoning(stats, decision, pattern, len(agent_scores)),
            agent_scores=list(agent_scores),
            weights={item.agent_name: self.weight_for(item.agent_name) for item in agent_scores},
            score_variance=round(stats.variance, 4),
            score_pattern=pattern,
            lowest_agent=stats.lowest.agent_name,
            highest_agent=stats.highest.agent_name,
            concerns=concerns,
        )
        record_confidence_decision(decision=decision.value, confidence=stats.weighted_mean)
        logger.info(
            "confidence_routed",
            request_id=request_id,
            overall_confidence=round(stats.weighted_mean, 4),
            decision=decision.value,
            pattern=pattern.value,
            agents=len(agent_scores),
        )
        return result

    def _pattern(self, agent_scores: Sequence[AgentScore], stats: ScoreStats) -> ScorePattern:
        if stats.variance > self._settings.mixed_variance:
            return ScorePattern.MIXED
        if all(item.score >= self._settings.high_score_floor for item in agent_scores):
            return ScorePattern.CONSISTENT_HIGH
        if all(item.score < self._settings.low_score_ceiling for item in agent_scores):
            return ScorePattern.CONSISTENT_LOW
        return ScorePattern.CONSISTENT

    @staticmethod
    def _reasoning(stats: ScoreStats, decision: Decision, pattern: ScorePattern, count: int) -> str:
        parts = [
            f"Weighted confidence {stats.weighted_mean:.3f} across {count} agent(s); {_DECISION_NOTES[decision]}.",
            f"Scores are {pattern.value} (variance {stats.variance:.3f}).",
        ]
        if stats.lowest.agent_name != stats.highest.agent_name:
            parts.append(
                f"Lowest: {stats.lowest.agent_name} ({stats.lowest.score:.2f}); "
                f"highest: {stats.highest.agent_name} ({stats.highest.score:.2f})."
            )
        return " ".join(parts)
