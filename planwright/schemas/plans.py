"""Plan data model.

Step parameters are a tagged union so that "is this parameter bound?" is
answered by type rather than by inspecting strings:

* ``LiteralValue``  - a concrete value, ready to use;
* ``Placeholder``   - unbound, needs input from the user;
* ``StepReference`` - bound at execution time to an earlier step's output.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Literal, Union
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class LiteralValue(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["literal"] = "literal"
    value: Any

    @property
    def is_bound(self) -> bool:
        return True


class Placeholder(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["placeholder"] = "placeholder"
    reason: str = "missing"
    raw: Any = None

    @property
    def is_bound(self) -> bool:
        return False


class StepReference(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["step_reference"] = "step_reference"
    step_order: int = Field(ge=1)
    field: str | None = None

    @property
    def is_bound(self) -> bool:
        return False


ParameterValue = Annotated[Union[LiteralValue, Placeholder, StepReference], Field(discriminator="kind")]


class StepStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class PlanStep(BaseModel):
    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)

    order: int = Field(ge=1)
    action: str = Field(min_length=1)
    description: str = ""
    parameters: dict[str, ParameterValue] = Field(default_factory=dict)
    dependencies: list[int] = Field(default_factory=list)
    expected_outcome: str = ""
    status: StepStatus = StepStatus.PENDING

    @model_validator(mode="after")
    def _dependencies_precede_step(self) -> "PlanStep":
        for dependency in self.dependencies:
            if dependency >= self.order:
                raise ValueError(f"step {self.order} depends on non-prior step {dependency}")
        return self

    def literal_parameters(self) -> dict[str, Any]:
        return {
            name: value.value for name, value in self.parameters.items() if isinstance(value, LiteralValue)
        }


class PlanDraft(BaseModel):
    """Plan content before the versioner assigns identity and a version."""

    model_config = ConfigDict(extra="ignore", str_strip_whitespace=True)

    goal: str = Field(min_length=1)
    steps: list[PlanStep] = Field(default_factory=list)
    confidence: float = Field(0.5, ge=0.0, le=1.0)
    estimated_complexity: float = Field(0.5, ge=0.0, le=1.0)
    rationale: str = ""

    @field_validator("steps")
    @classmethod
    def _unique_orders(cls, steps: list[PlanStep]) -> list[PlanStep]:
        orders = [step.order for step in steps]
        if len(orders) != len(set(orders)):
            raise ValueError("step orders must be unique within a plan")
        return sorted(steps, key=lambda step: step.order)

    def step(self, order: int) -> PlanStep | None:
        for candidate in self.steps:
            if candidate.order == order:
                return candidate
        return None

    def content(self) -> "PlanDraft":
        return PlanDraft(
            goal=self.goal,
            steps=[step.model_copy(deep=True) for step in self.steps],
            confidence=self.confidence,
            estimated_complexity=self.estimated_complexity,
            rationale=self.rationale,
        )


def new_plan_id() -> str:
    return f"plan-{uuid4().hex}"


class Plan(PlanDraft):
    plan_id: str = Field(default_factory=new_plan_id)
    request_id: str = Field(min_length=1)
    plan_version: int = Field(ge=1)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def from_draft(cls, draft: PlanDraft, *, request_id: str, plan_version: int) -> "Plan":
        return cls(
            request_id=request_id,
            plan_version=plan_version,
            **draft.content().model_dump(),
        )


class MetaGuidance(BaseModel):
    model_config = ConfigDict(extra="ignore", str_strip_whitespace=True)

    should_replan: bool = True
    replan_strategy: str = ""
    focus_steps: list[int] = Field(default_factory=list)
    directives: list[str] = Field(default_factory=list)
    rationale: str = ""


class PlanChanges(BaseModel):
    steps_added: list[int] = Field(default_factory=list)
    steps_removed: list[int] = Field(default_factory=list)
    steps_modified: list[int] = Field(default_factory=list)

    @property
    def touched(self) -> set[int]:
        return set(self.steps_added) | set(self.steps_removed) | set(self.steps_modified)

    @property
    def has_changes(self) -> bool:
        return bool(self.touched)


class ReplanOutput(BaseModel):
    request_id: str
    plan: Plan
    original_plan_id: str
    plan_version: int = Field(ge=2)
    changes_from_original: PlanChanges
    addresses_critic_issues: bool
    addresses_meta_guidance: bool
    rationale: str = ""
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @model_validator(mode="after")
    def _version_matches_plan(self) -> "ReplanOutput":
        if self.plan_version != self.plan.plan_version:
            raise ValueError("plan_version must match the wrapped plan")
        return self
