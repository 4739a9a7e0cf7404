from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .plans import Plan


class Recommendation(str, Enum):
    APPROVE = "approve"
    APPROVE_WITH_DYNAMIC_FIX = "approve-with-dynamic-fix"
    REVISE = "revise"
    REJECT = "reject"


class IssueSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class QuestionCategory(str, Enum):
    MISSING_INFO = "missing-info"
    AMBIGUITY = "ambiguity"
    RISK = "risk"
    CLARIFICATION = "clarification"


class QuestionPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class CritiqueState(str, Enum):
    SCORING = "scoring"
    AWAITING_FEEDBACK = "awaiting_feedback"
    REGENERATING = "regenerating"
    RESOLVED = "resolved"


def _clamp_unit(value: Any) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError) as exc:
        raise ValueError("score must be numeric") from exc
    return max(0.0, min(1.0, number))


class CritiqueIssue(BaseModel):
    model_config = ConfigDict(extra="ignore", str_strip_whitespace=True)

    severity: IssueSeverity
    description: str = Field(min_length=1)
    affected_steps: list[int] = Field(default_factory=list)
    category: str | None = None

    @field_validator("severity", mode="before")
    @classmethod
    def _normalise_severity(cls, value: Any) -> Any:
        return value.strip().lower() if isinstance(value, str) else value


class AssessedQuestion(BaseModel):
    """A question raised by the reasoning step rather than the parameter scan."""

    model_config = ConfigDict(extra="ignore", str_strip_whitespace=True)

    question: str = Field(min_length=1)
    category: QuestionCategory = QuestionCategory.AMBIGUITY
    priority: QuestionPriority = QuestionPriority.MEDIUM
    step_order: int | None = None


class CritiqueAssessment(BaseModel):
    """Structured output of the critic reasoning step for one plan version."""

    model_config = ConfigDict(extra="ignore", str_strip_whitespace=True)

    feasibility: float
    correctness: float
    efficiency: float
    safety: float
    rationale: str = ""
    strengths: list[str] = Field(default_factory=list)
    issues: list[CritiqueIssue] = Field(default_factory=list)
    questions: list[AssessedQuestion] = Field(default_factory=list)

    @field_validator("feasibility", "correctness", "efficiency", "safety", mode="before")
    @classmethod
    def _clamp(cls, value: Any) -> float:
        return _clamp_unit(value)


class FollowUpQuestion(BaseModel):
    id: str = Field(min_length=1)
    category: QuestionCategory
    priority: QuestionPriority
    question: str = Field(min_length=1)
    step_order: int | None = None
    parameter: str | None = None
    user_answer: str | None = None


class UserFeedback(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    question_id: str = Field(min_length=1)
    answer: str = Field(min_length=1)


class Critique(BaseModel):
    request_id: str = Field(min_length=1)
    critique_version: int = Field(ge=1)
    plan_id: str = Field(min_length=1)
    plan_version: int = Field(ge=1)
    overall_score: float = Field(ge=0.0, le=1.0)
    feasibility: float = Field(ge=0.0, le=1.0)
    correctness: float = Field(ge=0.0, le=1.0)
    efficiency: float = Field(ge=0.0, le=1.0)
    safety: float = Field(ge=0.0, le=1.0)
    recommendation: Recommendation
    rationale: str = ""
    strengths: list[str] = Field(default_factory=list)
    issues: list[CritiqueIssue] = Field(default_factory=list)
    follow_up_questions: list[FollowUpQuestion] = Field(default_factory=list)
    dynamic_references: list[dict[str, Any]] = Field(default_factory=list)
    assessment: CritiqueAssessment
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @model_validator(mode="after")
    def _approve_has_no_questions(self) -> "Critique":
        if self.recommendation is Recommendation.APPROVE and self.follow_up_questions:
            raise ValueError("an approved critique cannot carry follow-up questions")
        return self

    @property
    def state(self) -> CritiqueState:
        if self.follow_up_questions:
            return CritiqueState.AWAITING_FEEDBACK
        return CritiqueState.RESOLVED

    def question(self, question_id: str) -> FollowUpQuestion | None:
        for candidate in self.follow_up_questions:
            if candidate.id == question_id:
                return candidate
        return None

    def has_severity(self, severity: IssueSeverity) -> bool:
        return any(issue.severity is severity for issue in self.issues)


class CritiqueOutcome(BaseModel):
    """Result of one critique engine call: the new critique and the plan it scored."""

    critique: Critique
    plan: Plan
    previous_plan_id: str | None = None
    transitions: list[tuple[CritiqueState, CritiqueState]] = Field(default_factory=list)
    regression: bool = False
    warnings: list[dict[str, Any]] = Field(default_factory=list)

    @property
    def plan_id(self) -> str:
        return self.plan.plan_id

    @property
    def critique_version(self) -> int:
        return self.critique.critique_version

    @property
    def state(self) -> CritiqueState:
        return self.critique.state


class CritiqueRequest(BaseModel):
    """Input of the critique feedback contract."""

    model_config = ConfigDict(str_strip_whitespace=True)

    request_id: str = Field(min_length=1)
    plan_id: str = Field(min_length=1)
    user_query: str | None = None
    user_feedback: list[UserFeedback] = Field(default_factory=list)
    refined_user_query: str | None = None

    @field_validator("refined_user_query", "user_query")
    @classmethod
    def _blank_is_absent(cls, value: str | None) -> str | None:
        return value or None

    @model_validator(mode="after")
    def _unique_question_ids(self) -> "CritiqueRequest":
        ids = [item.question_id for item in self.user_feedback]
        if len(ids) != len(set(ids)):
            raise ValueError("each question may be answered once per request")
        return self
