from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from .plans import StepStatus


class ComplexityResult(BaseModel):
    score: float = Field(ge=0.0, le=1.0)
    reasoning_passes: int = Field(ge=1, le=3)
    factors: dict[str, float | bool] = Field(default_factory=dict)
    detected_keywords: list[str] = Field(default_factory=list)


class ThoughtResult(BaseModel):
    model_config = ConfigDict(extra="ignore", str_strip_whitespace=True)

    primary_approach: str = Field(min_length=1)
    reasoning: list[str] = Field(default_factory=list)
    key_insights: list[str] = Field(default_factory=list)
    recommended_tools: list[str] = Field(default_factory=list)
    confidence: float = Field(0.5, ge=0.0, le=1.0)


class StepOutcome(BaseModel):
    model_config = ConfigDict(extra="ignore")

    order: int = Field(ge=1)
    status: StepStatus
    output: Any = None
    error: str | None = None


class ExecutionReport(BaseModel):
    model_config = ConfigDict(extra="ignore")

    plan_id: str = ""
    plan_version: int = Field(0, ge=0)
    overall_success: bool
    steps: list[StepOutcome] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)


class SummaryResult(BaseModel):
    model_config = ConfigDict(extra="ignore", str_strip_whitespace=True)

    summary: str = Field(min_length=1)
    key_points: list[str] = Field(default_factory=list)
    confidence: float = Field(0.5, ge=0.0, le=1.0)
