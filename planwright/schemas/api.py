from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field

from .confidence import AgentScore, ThresholdTable
from .critiques import UserFeedback


class RunRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    user_query: str = Field(min_length=1)
    request_id: str | None = None


class FeedbackRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    plan_id: str = Field(min_length=1)
    user_feedback: list[UserFeedback] = Field(default_factory=list)
    refined_user_query: str | None = None


class ConfidenceRequest(BaseModel):
    agent_scores: list[AgentScore]
    thresholds: ThresholdTable | None = None


class ArtifactCount(BaseModel):
    count: int = Field(ge=0)
