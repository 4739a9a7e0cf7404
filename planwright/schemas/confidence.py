from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, Field, model_validator


class Decision(str, Enum):
    EXECUTE = "execute"
    REVIEW = "review"
    RETHINK = "rethink"
    ESCALATE = "escalate"


class ScorePattern(str, Enum):
    CONSISTENT_HIGH = "consistent-high"
    CONSISTENT_LOW = "consistent-low"
    CONSISTENT = "consistent"
    MIXED = "mixed"


class AgentScore(BaseModel):
    agent_name: str = Field(min_length=1)
    score: float = Field(ge=0.0, le=1.0)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class ThresholdTable(BaseModel):
    """Lower bounds of each decision bucket, evaluated high to low."""

    execute: float = Field(0.85, ge=0.0, le=1.0)
    review: float = Field(0.65, ge=0.0, le=1.0)
    rethink: float = Field(0.4, ge=0.0, le=1.0)

    @model_validator(mode="after")
    def _descending(self) -> "ThresholdTable":
        if not self.execute >= self.review >= self.rethink:
            raise ValueError("thresholds must satisfy execute >= review >= rethink")
        return self

    def buckets(self) -> list[tuple[float, Decision]]:
        return [
            (self.execute, Decision.EXECUTE),
            (self.review, Decision.REVIEW),
            (self.rethink, Decision.RETHINK),
        ]


class ConfidenceScore(BaseModel):
    request_id: str | None = None
    overall_confidence: float = Field(ge=0.0, le=1.0)
    decision: Decision
    threshold_used: ThresholdTable
    reasoning: str
    agent_scores: list[AgentScore] = Field(default_factory=list)
    weights: dict[str, float] = Field(default_factory=dict)
    score_variance: float = Field(0.0, ge=0.0)
    score_pattern: ScorePattern = ScorePattern.CONSISTENT
    lowest_agent: str | None = None
    highest_agent: str | None = None
    concerns: list[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
