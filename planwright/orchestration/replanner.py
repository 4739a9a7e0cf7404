"""
Replanning

Produces the next plan version from the current one when the confidence router
asks for a rethink or a critique rejects the plan. The new plan is diffed
against its predecessor by step order so callers can check that the steps the
critique and the meta guidance pointed at actually changed.
"""

from __future__ import annotations

from typing import Any, Iterable

from ..core.exceptions import NoBasePlan, NotFoundError, StorageWriteWarning
from ..core.logging import get_logger
from ..schemas.confidence import ConfidenceScore
from ..schemas.critiques import Critique
from ..schemas.plans import MetaGuidance, Plan, PlanChanges, PlanStep, ReplanOutput
from ..services.reasoning import AgentKind, ReasoningBackend, invoke_parsed
from .placeholders import draft_from_payload
from .store import ArtifactKey, ArtifactKind, ArtifactStore, persist_artifact
from .versioning import PlanVersioner

logger = get_logger(name=__name__)


def _signature(step: PlanStep) -> dict[str, Any]:
    return step.model_dump(mode="json", exclude={"status"})


def diff_plans(previous: Plan, current: Plan) -> PlanChanges:
    before = {step.order: step for step in previous.steps}
    after = {step.order: step for step in current.steps}
    return PlanChanges(
        steps_added=sorted(set(after) - set(before)),
        steps_removed=sorted(set(before) - set(after)),
        steps_modified=sorted(
            order for order in set(before) & set(after) if _signature(before[order]) != _signature(after[order])
        ),
    )


def critique_targets(critique: Critique | None) -> set[int]:
    if critique is None:
        return set()
    targets: set[int] = set()
    for issue in critique.issues:
        targets.update(issue.affected_steps)
    for question in critique.follow_up_questions:
        if question.step_order is not None:
            targets.add(question.step_order)
    return targets


def _all_changed(targets: Iterable[int], changes: PlanChanges) -> bool:
    touched = changes.touched
    return all(order in touched for order in targets)


class Replanner:
    def __init__(
        self,
        *,
        store: ArtifactStore,
        versioner: PlanVersioner,
        backend: ReasoningBackend,
    ) -> None:
        self._store = store
        self._versioner = versioner
        self._backend = backend

    async def replan(
        self,
        previous_plan: Plan | None,
        critique: Critique | None,
        meta_guidance: MetaGuidance | None = None,
        *,
        confidence: ConfidenceScore | None = None,
        user_query: str | None = None,
        warnings: list[StorageWriteWarning] | None = None,
    ) -> ReplanOutput:
        if previous_plan is None:
            raise NoBasePlan("cannot replan without a previous plan")
        request_id = previous_plan.request_id
        context: dict[str, Any] = {
            "request_id": request_id,
            "user_query": user_query,
            "previous_plan": previous_plan.model_dump(mode="json"),
            "critique": None
            if critique is None
            else critique.model_dump(mode="json", exclude={"assessment", "dynamic_references"}),
            "meta_guidance": None if meta_guidance is None else meta_guidance.model_dump(mode="json"),
            "confidence": None
            if confidence is None
            else {"overall_confidence": confidence.overall_confidence, "decision": confidence.decision.value},
        }
        draft = await invoke_parsed(self._backend, AgentKind.REPLAN, context, draft_from_payload, request_id=request_id)
        plan = await self._versioner.create_plan(
            request_id,
            draft,
            expected_previous=previous_plan.plan_version,
            origin="replan",
        )
        changes = diff_plans(previous_plan, plan)
        output = ReplanOutput(
            request_id=request_id,
            plan=plan,
            original_plan_id=previous_plan.plan_id,
            plan_version=plan.plan_version,
            changes_from_original=changes,
            addresses_critic_issues=_all_changed(critique_targets(critique), changes),
            addresses_meta_guidance=meta_guidance is not None and _all_changed(meta_guidance.focus_steps, changes),
            rationale=draft.rationale,
        )
        await persist_artifact(
            self._store,
            ArtifactKey(request_id, ArtifactKind.REPLAN, plan.plan_version),
            output.model_dump(mode="json"),
            warnings=warnings,
        )
        logger.info(
            "plan_replanned",
            request_id=request_id,
            original_plan_id=previous_plan.plan_id,
            plan_id=plan.plan_id,
            plan_version=plan.plan_version,
            added=changes.steps_added,
            removed=changes.steps_removed,
            modified=changes.steps_modified,
            addresses_critic_issues=output.addresses_critic_issues,
            addresses_meta_guidance=output.addresses_meta_guidance,
        )
        return output

    async def replan_current(
        self,
        request_id: str,
        critique: Critique | None,
        meta_guidance: MetaGuidance | None = None,
        **kwargs: Any,
    ) -> ReplanOutput:
        try:
            previous = await self._versioner.current_plan(request_id)
        except NotFoundError as exc:
            raise NoBasePlan(f"request {request_id} has no plan to revise") from exc
        return await self.replan(previous, critique, meta_guidance, **kwargs)

    async def history(self, request_id: str) -> list[ReplanOutput]:
        records = await self._store.get_all_versions(request_id, ArtifactKind.REPLAN)
        return [ReplanOutput.model_validate(record.payload) for record in records]
