"""Critique engine and its feedback state machine.

States::

    SCORING -> AWAITING_FEEDBACK -> REGENERATING -> SCORING (next plan version)
            -> RESOLVED

Every call mints exactly one critique version for the request. The reasoning
step runs once per plan version; a re-score of the same plan reuses the stored
assessment so that scores and questions are reproduced exactly.
"""

from __future__ import annotations

import asyncio
import weakref
from typing import Any, Mapping, Protocol, Sequence

from ..core.config import CritiqueSettings
from ..core.exceptions import StorageWriteWarning, ValidationError
from ..core.logging import get_logger
from ..core.metrics import increment_feedback_regression, record_critique
from ..schemas.critiques import (
    Critique,
    CritiqueAssessment,
    CritiqueIssue,
    CritiqueOutcome,
    CritiqueRequest,
    CritiqueState,
    FollowUpQuestion,
    IssueSeverity,
    QuestionCategory,
    QuestionPriority,
    Recommendation,
    UserFeedback,
)
from ..schemas.plans import Plan
from ..services.reasoning import AgentKind, ReasoningBackend, invoke_structured
from .placeholders import FindingKind, ParameterFinding, bind_parameters, scan_plan
from .store import ArtifactKey, ArtifactKind, ArtifactStore, persist_artifact
from .versioning import PlanVersioner

logger = get_logger(name=__name__)


class PlanRegenerator(Protocol):
    async def __call__(
        self,
        request_id: str,
        refined_query: str,
        *,
        warnings: list[StorageWriteWarning],
    ) -> Plan:
        ...


def weighted_overall(assessment: Mapping[str, float], settings: CritiqueSettings) -> float:
    weights = settings.weights
    total = weights.feasibility + weights.correctness + weights.efficiency + weights.safety
    value = (
        assessment["feasibility"] * weights.feasibility
        + assessment["correctness"] * weights.correctness
        + assessment["efficiency"] * weights.efficiency
        + assessment["safety"] * weights.safety
    ) / total
    return round(max(0.0, min(1.0, value)), 4)


def recommend(
    issues: Sequence[CritiqueIssue],
    questions: Sequence[FollowUpQuestion],
    deferred: Sequence[ParameterFinding],
) -> Recommendation:
    if any(issue.severity is IssueSeverity.CRITICAL for issue in issues):
        return Recommendation.REJECT
    if questions or any(issue.severity is IssueSeverity.HIGH for issue in issues):
        return Recommendation.REVISE
    if deferred:
        return Recommendation.APPROVE_WITH_DYNAMIC_FIX
    return Recommendation.APPROVE


def _question_text(finding: ParameterFinding) -> str:
    if finding.kind is FindingKind.MISSING:
        return f"Step {finding.step_order} ({finding.action}) requires '{finding.parameter}'. What value should it use?"
    if finding.kind is FindingKind.DANGLING_REFERENCE:
        return (
            f"Step {finding.step_order} ({finding.action}) takes '{finding.parameter}' from a step that has not run yet. "
            "What value should it use?"
        )
    return f"What value should step {finding.step_order} ({finding.action}) use for '{finding.parameter}'?"


class CritiqueEngine:
    def __init__(
        self,
        *,
        store: ArtifactStore,
        versioner: PlanVersioner,
        backend: ReasoningBackend,
        settings: CritiqueSettings | None = None,
        regenerator: PlanRegenerator | None = None,
    ) -> None:
        self._store = store
        self._versioner = versioner
        self._backend = backend
        self._settings = settings or CritiqueSettings()
        self._regenerator = regenerator
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()

    def bind_regenerator(self, regenerator: PlanRegenerator) -> None:
        self._regenerator = regenerator

    # Queries ------------------------------------------------------------------------

    async def history(self, request_id: str) -> list[Critique]:
        records = await self._store.get_all_versions(request_id, ArtifactKind.CRITIQUE)
        return [Critique.model_validate(record.payload) for record in records]

    async def latest(self, request_id: str) -> Critique | None:
        record = await self._store.current(request_id, ArtifactKind.CRITIQUE)
        return None if record is None else Critique.model_validate(record.payload)

    async def latest_for_plan(self, request_id: str, plan_id: str) -> Critique | None:
        for critique in reversed(await self.history(request_id)):
            if critique.plan_id == plan_id:
                return critique
        return None

    # Transitions --------------------------------------------------------------------

    async def critique(self, plan: Plan, *, user_query: str | None = None) -> CritiqueOutcome:
        """Score ``plan`` and report whether it awaits feedback or is resolved."""
        warnings: list[StorageWriteWarning] = []
        critique = await self._score(plan, path="initial", user_query=user_query, warnings=warnings)
        return CritiqueOutcome(
            critique=critique,
            plan=plan,
            transitions=[(CritiqueState.SCORING, critique.state)],
            warnings=[warning.as_dict() for warning in warnings],
        )

    async def process(self, request: CritiqueRequest) -> CritiqueOutcome:
        """Apply the feedback contract to the plan named in ``request``."""
        plan = await self._versioner.get_plan(request.request_id, request.plan_id)
        prior = await self.latest_for_plan(request.request_id, plan.plan_id)
        warnings: list[StorageWriteWarning] = []
        transitions: list[tuple[CritiqueState, CritiqueState]] = []
        entry_state = prior.state if prior is not None else CritiqueState.SCORING
        regression = False

        if request.user_feedback:
            if prior is None:
                raise ValidationError(f"plan {plan.plan_id} has no critique to answer")
            prior = await self._record_answers(prior, request.user_feedback, warnings)

        if request.refined_user_query:
            if self._regenerator is None:
                raise ValidationError("refined queries require a plan regenerator")
            transitions.append((entry_state, CritiqueState.REGENERATING))
            scored_plan = await self._regenerator(request.request_id, request.refined_user_query, warnings=warnings)
            transitions.append((CritiqueState.REGENERATING, CritiqueState.SCORING))
            critique = await self._score(
                scored_plan,
                path="refined_query",
                user_query=request.refined_user_query,
                warnings=warnings,
            )
        elif request.user_feedback:
            transitions.append((entry_state, CritiqueState.REGENERATING))
            bindings = {
                (question.step_order, question.parameter): question.user_answer
                for question in prior.follow_up_questions
                if question.user_answer is not None and question.step_order is not None and question.parameter
            }
            scored_plan = await self._versioner.create_plan(
                request.request_id,
                bind_parameters(plan, bindings),
                origin="feedback",
            )
            transitions.append((CritiqueState.REGENERATING, CritiqueState.SCORING))
            critique = await self._score(
                scored_plan,
                path="feedback",
                user_query=request.user_query,
                answers=[question for question in prior.follow_up_questions if question.user_answer is not None],
                warnings=warnings,
            )
            regression = self._is_regression(prior, critique)
        else:
            transitions.append((entry_state, CritiqueState.SCORING))
            scored_plan = plan
            critique = await self._score(plan, path="rescore", user_query=request.user_query, warnings=warnings)

        transitions.append((CritiqueState.SCORING, critique.state))
        return CritiqueOutcome(
            critique=critique,
            plan=scored_plan,
            previous_plan_id=plan.plan_id,
            transitions=transitions,
            regression=regression,
            warnings=[warning.as_dict() for warning in warnings],
        )

    # Internals ----------------------------------------------------------------------

    def _lock_for(self, request_id: str) -> asyncio.Lock:
        lock = self._locks.get(request_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[request_id] = lock
        return lock

    async def _assess(
        self,
        plan: Plan,
        findings: Sequence[ParameterFinding],
        *,
        user_query: str | None,
        answers: Sequence[FollowUpQuestion],
    ) -> CritiqueAssessment:
        previous = await self.latest_for_plan(plan.request_id, plan.plan_id)
        if previous is not None:
            return previous.assessment.model_copy(deep=True)
        context: dict[str, Any] = {
            "request_id": plan.request_id,
            "user_query": user_query,
            "plan": plan.model_dump(mode="json"),
            "unresolved_parameters": [finding.as_dict() for finding in findings],
            "answered_questions": [
                {"question": question.question, "answer": question.user_answer} for question in answers
            ],
        }
        return await invoke_structured(
            self._backend,
            AgentKind.CRITIC,
            context,
            CritiqueAssessment,
            request_id=plan.request_id,
        )

    async def _score(
        self,
        plan: Plan,
        *,
        path: str,
        user_query: str | None,
        warnings: list[StorageWriteWarning],
        answers: Sequence[FollowUpQuestion] = (),
    ) -> Critique:
        findings = scan_plan(plan, self._settings.required_parameters)
        assessment = await self._assess(plan, findings, user_query=user_query, answers=answers)
        async with self._lock_for(plan.request_id):
            version = await self._store.latest_version(plan.request_id, ArtifactKind.CRITIQUE) + 1
            critique = self._build(plan, assessment, findings, version)
            await persist_artifact(
                self._store,
                ArtifactKey(plan.request_id, ArtifactKind.CRITIQUE, version),
                critique.model_dump(mode="json"),
                warnings=warnings,
            )
        record_critique(
            path=path,
            recommendation=critique.recommendation.value,
            questions=len(critique.follow_up_questions),
        )
        logger.info(
            "critique_scored",
            request_id=plan.request_id,
            critique_version=critique.critique_version,
            plan_id=plan.plan_id,
            plan_version=plan.plan_version,
            overall_score=critique.overall_score,
            recommendation=critique.recommendation.value,
            questions=len(critique.follow_up_questions),
            path=path,
        )
        return critique

    def _build(
        self,
        plan: Plan,
        assessment: CritiqueAssessment,
        findings: Sequence[ParameterFinding],
        version: int,
    ) -> Critique:
        blocking = [finding for finding in findings if finding.needs_user_input]
        deferred = [finding for finding in findings if not finding.needs_user_input]

        feasibility = max(0.0, assessment.feasibility - self._settings.placeholder_penalty * len(blocking))
        scores = {
            "feasibility": round(feasibility, 4),
            "correctness": assessment.correctness,
            "efficiency": assessment.efficiency,
            "safety": assessment.safety,
        }

        questions: list[FollowUpQuestion] = []
        for finding in blocking:
            questions.append(
                FollowUpQuestion(
                    id=f"q{len(questions) + 1}",
                    category=QuestionCategory.MISSING_INFO,
                    priority=QuestionPriority.HIGH,
                    question=_question_text(finding),
                    step_order=finding.step_order,
                    parameter=finding.parameter,
                )
            )
        for extra in assessment.questions:
            questions.append(
                FollowUpQuestion(
                    id=f"q{len(questions) + 1}",
                    category=extra.category,
                    priority=extra.priority,
                    question=extra.question,
                    step_order=extra.step_order,
                )
            )

        issues = list(assessment.issues)
        issues.extend(
            CritiqueIssue(
                severity=IssueSeverity.MEDIUM,
                description=f"Step {finding.step_order} parameter '{finding.parameter}' is unresolved ({finding.reason})",
                affected_steps=[finding.step_order],
                category=QuestionCategory.MISSING_INFO.value,
            )
            for finding in blocking
        )

        recommendation = recommend(issues, questions, deferred)
        rationale = assessment.rationale or (
            f"{len(blocking)} unresolved parameter(s), {len(deferred)} deferred reference(s), "
            f"{len(assessment.issues)} reported issue(s)."
        )
        return Critique(
            request_id=plan.request_id,
            critique_version=version,
            plan_id=plan.plan_id,
            plan_version=plan.plan_version,
            overall_score=weighted_overall(scores, self._settings),
            recommendation=recommendation,
            rationale=rationale,
            strengths=list(assessment.strengths),
            issues=issues,
            follow_up_questions=questions,
            dynamic_references=[finding.as_dict() for finding in deferred],
            assessment=assessment,
            **scores,
        )

    async def _record_answers(
        self,
        critique: Critique,
        feedback: Sequence[UserFeedback],
        warnings: list[StorageWriteWarning],
    ) -> Critique:
        answers = {item.question_id: item.answer for item in feedback}
        unknown = sorted(set(answers) - {question.id for question in critique.follow_up_questions})
        if unknown:
            raise ValidationError(
                f"critique v{critique.critique_version} has no question(s) {', '.join(unknown)}"
            )
        updated = critique.model_copy(deep=True)
        for question in updated.follow_up_questions:
            if question.id in answers:
                question.user_answer = answers[question.id]
        await persist_artifact(
            self._store,
            ArtifactKey(critique.request_id, ArtifactKind.CRITIQUE, critique.critique_version),
            updated.model_dump(mode="json"),
            warnings=warnings,
        )
        return updated

    @staticmethod
    def _is_regression(prior: Critique, current: Critique) -> bool:
        improved = current.overall_score > prior.overall_score or len(current.follow_up_questions) < len(
            prior.follow_up_questions
        )
        if improved:
            return False
        increment_feedback_regression()
        logger.warning(
            "critique_feedback_regression",
            request_id=current.request_id,
            prior_version=prior.critique_version,
            critique_version=current.critique_version,
            prior_score=prior.overall_score,
            overall_score=current.overall_score,
            prior_questions=len(prior.follow_up_questions),
            questions=len(current.follow_up_questions),
        )
        return True
