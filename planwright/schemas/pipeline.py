from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from .agents import ComplexityResult, ExecutionReport, SummaryResult, ThoughtResult
from .confidence import ConfidenceScore
from .critiques import Critique
from .plans import MetaGuidance, Plan, ReplanOutput
from .requests import RequestContext


class PipelineOutcome(str, Enum):
    COMPLETED = "completed"
    AWAITING_REVIEW = "awaiting_review"
    ESCALATED = "escalated"
    FAILED = "failed"


class PipelineResult(BaseModel):
    request: RequestContext
    outcome: PipelineOutcome
    complexity: ComplexityResult | None = None
    thought: ThoughtResult | None = None
    plan: Plan | None = None
    critique: Critique | None = None
    confidence: ConfidenceScore | None = None
    meta_guidance: list[MetaGuidance] = Field(default_factory=list)
    replans: list[ReplanOutput] = Field(default_factory=list)
    execution: ExecutionReport | None = None
    summary: SummaryResult | None = None
    warnings: list[dict[str, Any]] = Field(default_factory=list)
