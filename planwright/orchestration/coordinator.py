"""Pipeline coordinator.

Drives one request through complexity detection, thought, planning, critique
and confidence scoring, then routes on the confidence decision:

* ``execute``  - run the executor and the summary agent, complete the request;
* ``review``   - stop and wait for feedback on the critique's questions;
* ``rethink``  - ask the meta agent for guidance, replan, critique and score again;
* ``escalate`` - stop and hand the request to a human.

The coordinator is the only writer of request status and agent chain. Each
successful step appends its agent name exactly once; an upstream failure or a
step timeout marks the request failed and stops it.
"""

from __future__ import annotations

import asyncio
import time
import weakref
from contextvars import ContextVar
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Mapping, Sequence, TypeVar

from pydantic import BaseModel, ValidationError as PydanticValidationError

from ..core.config import Settings, get_settings
from ..core.exceptions import (
    ArtifactStoreError,
    NoBasePlan,
    StepTimeout,
    StorageWriteWarning,
    UpstreamError,
    ValidationError,
)
from ..core.logging import get_logger, request_log_context
from ..core.metrics import increment_storage_write_failure, observe_agent_step, record_pipeline_outcome
from ..schemas.agents import ComplexityResult, ExecutionReport, SummaryResult, ThoughtResult
from ..schemas.confidence import AgentScore, ConfidenceScore, Decision, ThresholdTable
from ..schemas.critiques import Critique, CritiqueOutcome, CritiqueRequest, UserFeedback
from ..schemas.pipeline import PipelineOutcome, PipelineResult
from ..schemas.plans import MetaGuidance, Plan, ReplanOutput
from ..services.complexity import detect_complexity
from ..services.confidence import ConfidenceRouter
from ..services.reasoning import AgentKind, ReasoningBackend, invoke_parsed, invoke_structured
from .critique import CritiqueEngine
from .placeholders import draft_from_payload
from .replanner import Replanner
from .store import ArtifactKey, ArtifactKind, ArtifactStore, InMemoryArtifactStore, persist_artifact
from .tracker import RequestContextTracker
from .versioning import PlanVersioner

logger = get_logger(name=__name__)

T = TypeVar("T")


@dataclass(slots=True)
class _RunState:
    request_id: str
    user_query: str | None
    complexity: ComplexityResult | None = None
    thought: ThoughtResult | None = None
    plan: Plan | None = None
    critique: Critique | None = None
    confidence: ConfidenceScore | None = None
    execution: ExecutionReport | None = None
    summary: SummaryResult | None = None
    meta_guidance: list[MetaGuidance] = field(default_factory=list)
    replans: list[ReplanOutput] = field(default_factory=list)
    warnings: list[StorageWriteWarning] = field(default_factory=list)


@dataclass(slots=True)
class _StepFence:
    """Marks a step the coordinator stopped waiting for.

    A fence is bound through a context variable when the step's task is
    created, so the task and anything it awaits see it. Nested steps chain to
    the enclosing fence.
    """

    agent: str
    parent: _StepFence | None = None
    abandoned: bool = False

    def is_abandoned(self) -> bool:
        fence: _StepFence | None = self
        while fence is not None:
            if fence.abandoned:
                return True
            fence = fence.parent
        return False


_current_fence: ContextVar[_StepFence | None] = ContextVar("planwright_step_fence", default=None)


class _StepAbandoned(Exception):
    pass


def _check_fence(action: str) -> None:
    fence = _current_fence.get()
    if fence is not None and fence.is_abandoned():
        raise _StepAbandoned(f"{fence.agent} timed out; dropping {action}")


class _FencedBackend:
    """Refuses to hand a late reply to a step that has already timed out."""

    def __init__(self, backend: ReasoningBackend) -> None:
        self._backend = backend

    async def invoke(self, kind: AgentKind, context: Mapping[str, Any]) -> Mapping[str, Any]:
        response = await self._backend.invoke(kind, context)
        _check_fence(f"{kind.value} reply")
        return response


def _log_abandoned(task: asyncio.Future[Any]) -> None:
    if task.cancelled():
        return
    error = task.exception()
    if isinstance(error, _StepAbandoned):
        logger.info("abandoned_step_discarded", reason=str(error))
    elif error is not None:
        logger.warning("abandoned_step_failed", error=str(error))


class PipelineCoordinator:
    def __init__(
        self,
        *,
        store: ArtifactStore,
        backend: ReasoningBackend,
        settings: Settings | None = None,
        router: ConfidenceRouter | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._store = store
        self._backend = _FencedBackend(backend)
        self._tracker = RequestContextTracker(store)
        self._versioner = PlanVersioner(store, self._settings.versioning)
        self._critique = CritiqueEngine(
            store=store,
            versioner=self._versioner,
            backend=self._backend,
            settings=self._settings.critique,
            regenerator=self._regenerate_plan,
        )
        self._router = router or ConfidenceRouter(self._settings.confidence)
        self._replanner = Replanner(store=store, versioner=self._versioner, backend=self._backend)
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        store: ArtifactStore | None = None,
        backend: ReasoningBackend | None = None,
    ) -> "PipelineCoordinator":
        if backend is None:
            from ..services.llm import LLMService
            from ..services.reasoning import LLMReasoningBackend

            backend = LLMReasoningBackend(LLMService.from_settings(settings))
        return cls(store=store or InMemoryArtifactStore(), backend=backend, settings=settings)

    @property
    def store(self) -> ArtifactStore:
        return self._store

    @property
    def tracker(self) -> RequestContextTracker:
        return self._tracker

    @property
    def versioner(self) -> PlanVersioner:
        return self._versioner

    @property
    def critique_engine(self) -> CritiqueEngine:
        return self._critique

    @property
    def router(self) -> ConfidenceRouter:
        return self._router

    @property
    def replanner(self) -> Replanner:
        return self._replanner

    # Entry points -------------------------------------------------------------------

    async def run(self, user_query: str, *, request_id: str | None = None) -> PipelineResult:
        context = await self._tracker.create(request_id, user_query)
        state = _RunState(request_id=context.request_id, user_query=context.user_query)
        async with self._lock_for(state.request_id):
            with request_log_context(state.request_id):
                await self._tracker.start(state.request_id)
                logger.info("pipeline_started", query_length=len(user_query))

                state.complexity = await self._step(state, AgentKind.COMPLEXITY, lambda: self._detect(state))
                state.thought = await self._step(state, AgentKind.THOUGHT, lambda: self._think(state, user_query))
                state.plan = await self._step(state, AgentKind.PLANNER, lambda: self._plan(state, user_query))
                outcome = await self._step(
                    state, AgentKind.CRITIC, lambda: self._critique.critique(state.plan, user_query=user_query)
                )
                self._absorb(state, outcome)
                return await self._route(state)

    async def submit_feedback(
        self,
        request_id: str,
        plan_id: str,
        *,
        user_feedback: Sequence[UserFeedback | Mapping[str, Any]] | None = None,
        refined_user_query: str | None = None,
        user_query: str | None = None,
    ) -> CritiqueOutcome:
        context = await self._tracker.get(request_id)
        if context.is_terminal:
            raise ValidationError(f"request {request_id} is already {context.status.value}")
        try:
            request = CritiqueRequest(
                request_id=request_id,
                plan_id=plan_id,
                user_query=user_query or context.user_query,
                user_feedback=list(user_feedback or []),
                refined_user_query=refined_user_query,
            )
        except PydanticValidationError as exc:
            raise ValidationError(str(exc)) from exc
        state = _RunState(request_id=request_id, user_query=request.user_query)
        async with self._lock_for(request_id):
            with request_log_context(request_id):
                outcome = await self._step(state, AgentKind.CRITIC, lambda: self._critique.process(request))
                logger.info(
                    "feedback_processed",
                    plan_id=outcome.plan_id,
                    previous_plan_id=outcome.previous_plan_id,
                    state=outcome.state.value,
                    regression=outcome.regression,
                )
                return outcome

    async def resume(self, request_id: str) -> PipelineResult:
        """Score confidence on the current plan and continue routing."""
        context = await self._tracker.get(request_id)
        if context.is_terminal:
            raise ValidationError(f"request {request_id} is already {context.status.value}")
        state = _RunState(request_id=request_id, user_query=context.user_query)
        async with self._lock_for(request_id):
            with request_log_context(request_id):
                state.plan = await self._versioner.current_plan(request_id)
                state.thought = await self._load(request_id, ArtifactKind.THOUGHT, ThoughtResult)
                state.complexity = await self._load(request_id, ArtifactKind.COMPLEXITY, ComplexityResult)
                state.critique = await self._critique.latest_for_plan(request_id, state.plan.plan_id)
                if state.critique is None:
                    outcome = await self._step(
                        state,
                        AgentKind.CRITIC,
                        lambda: self._critique.critique(state.plan, user_query=state.user_query),
                    )
                    self._absorb(state, outcome)
                return await self._route(state)

    def score_confidence(
        self,
        agent_scores: Sequence[AgentScore],
        thresholds: ThresholdTable | None = None,
    ) -> ConfidenceScore:
        return self._router.score(agent_scores, thresholds)

    # Routing ------------------------------------------------------------------------

    async def _route(self, state: _RunState) -> PipelineResult:
        replans = 0
        while True:
            state.confidence = await self._step(state, AgentKind.CONFIDENCE, lambda: self._score(state))
            decision = state.confidence.decision
            if decision is Decision.EXECUTE:
                return await self._execute(state)
            if decision is Decision.REVIEW:
                return await self._finish(state, PipelineOutcome.AWAITING_REVIEW)
            if decision is Decision.ESCALATE:
                return await self._finish(state, PipelineOutcome.ESCALATED)
            if replans >= self._settings.pipeline.max_replans:
                logger.warning("replan_limit_reached", replans=replans)
                return await self._finish(state, PipelineOutcome.ESCALATED)

            guidance = await self._step(state, AgentKind.META, lambda: self._guide(state))
            state.meta_guidance.append(guidance)
            if not guidance.should_replan:
                return await self._finish(state, PipelineOutcome.AWAITING_REVIEW)
            replan = await self._step(
                state,
                AgentKind.REPLAN,
                lambda: self._replanner.replan(
                    state.plan,
                    state.critique,
                    guidance,
                    confidence=state.confidence,
                    user_query=state.user_query,
                    warnings=state.warnings,
                ),
            )
            replans += 1
            state.replans.append(replan)
            state.plan = replan.plan
            outcome = await self._step(
                state, AgentKind.CRITIC, lambda: self._critique.critique(replan.plan, user_query=state.user_query)
            )
            self._absorb(state, outcome)

    async def _execute(self, state: _RunState) -> PipelineResult:
        state.execution = await self._step(state, AgentKind.EXECUTOR, lambda: self._run_executor(state))
        state.summary = await self._step(state, AgentKind.SUMMARY, lambda: self._summarise(state))
        if state.execution.overall_success:
            await self._tracker.complete(state.request_id)
            return await self._finish(state, PipelineOutcome.COMPLETED)
        await self._tracker.fail(state.request_id, "execution reported failed steps")
        return await self._finish(state, PipelineOutcome.FAILED)

    async def _finish(self, state: _RunState, outcome: PipelineOutcome) -> PipelineResult:
        record_pipeline_outcome(outcome=outcome.value)
        logger.info(
            "pipeline_finished",
            outcome=outcome.value,
            plan_version=None if state.plan is None else state.plan.plan_version,
            decision=None if state.confidence is None else state.confidence.decision.value,
            warnings=len(state.warnings),
        )
        return PipelineResult(
            request=await self._tracker.get(state.request_id),
            outcome=outcome,
            complexity=state.complexity,
            thought=state.thought,
            plan=state.plan,
            critique=state.critique,
            confidence=state.confidence,
            meta_guidance=state.meta_guidance,
            replans=state.replans,
            execution=state.execution,
            summary=state.summary,
            warnings=[warning.as_dict() for warning in state.warnings],
        )

    # Steps --------------------------------------------------------------------------

    async def _step(self, state: _RunState, kind: AgentKind, operation: Callable[[], Awaitable[T]]) -> T:
        started = time.perf_counter()
        try:
            result = await self._call(kind, state.request_id, operation())
        except UpstreamError as exc:
            outcome = "timeout" if isinstance(exc, StepTimeout) else "failed"
            observe_agent_step(agent=kind.value, outcome=outcome, latency=time.perf_counter() - started)
            # a nested step may already have failed the request
            if not (await self._tracker.get(state.request_id)).is_terminal:
                logger.error("agent_step_failed", step=kind.value, **exc.context())
                await self._tracker.fail(state.request_id, f"{kind.value}: {exc}")
                record_pipeline_outcome(outcome=PipelineOutcome.FAILED.value)
            raise
        _check_fence(f"{kind.value} advance")
        await self._tracker.advance(state.request_id, kind.value)
        observe_agent_step(agent=kind.value, outcome="completed", latency=time.perf_counter() - started)
        return result

    async def _call(self, kind: AgentKind, request_id: str, operation: Awaitable[T]) -> T:
        timeout = self._settings.pipeline.step_timeout_seconds
        fence = _StepFence(agent=kind.value, parent=_current_fence.get())
        token = _current_fence.set(fence)
        try:
            task = asyncio.ensure_future(operation)
        finally:
            _current_fence.reset(token)
        if timeout is None:
            return await task
        try:
            return await asyncio.wait_for(asyncio.shield(task), timeout=timeout)
        except asyncio.TimeoutError:
            fence.abandoned = True
            task.add_done_callback(_log_abandoned)
            raise StepTimeout(
                f"{kind.value} timed out after {timeout}s",
                timeout=timeout,
                agent=kind.value,
                request_id=request_id,
            ) from None

    async def _detect(self, state: _RunState) -> ComplexityResult:
        result = detect_complexity(state.user_query or "")
        await self._persist(state, ArtifactKind.COMPLEXITY, result)
        return result

    async def _think(self, state: _RunState, query: str) -> ThoughtResult:
        context = {
            "request_id": state.request_id,
            "user_query": query,
            "complexity": None if state.complexity is None else state.complexity.model_dump(),
        }
        thought = await invoke_structured(
            self._backend, AgentKind.THOUGHT, context, ThoughtResult, request_id=state.request_id
        )
        await self._persist(state, ArtifactKind.THOUGHT, thought)
        return thought

    async def _plan(self, state: _RunState, query: str) -> Plan:
        context = {
            "request_id": state.request_id,
            "user_query": query,
            "thought": None if state.thought is None else state.thought.model_dump(),
        }
        draft = await invoke_parsed(
            self._backend, AgentKind.PLANNER, context, draft_from_payload, request_id=state.request_id
        )
        return await self._versioner.create_plan(state.request_id, draft, origin="planner")

    async def _regenerate_plan(
        self,
        request_id: str,
        refined_query: str,
        *,
        warnings: list[StorageWriteWarning],
    ) -> Plan:
        state = _RunState(request_id=request_id, user_query=refined_query, warnings=warnings)
        state.thought = await self._step(state, AgentKind.THOUGHT, lambda: self._think(state, refined_query))
        return await self._step(state, AgentKind.PLANNER, lambda: self._plan(state, refined_query))

    async def _score(self, state: _RunState) -> ConfidenceScore:
        scores: list[AgentScore] = []
        if state.thought is not None:
            scores.append(AgentScore(agent_name=AgentKind.THOUGHT.value, score=state.thought.confidence))
        if state.plan is not None:
            scores.append(AgentScore(agent_name=AgentKind.PLANNER.value, score=state.plan.confidence))
        if state.critique is not None:
            scores.append(AgentScore(agent_name=AgentKind.CRITIC.value, score=state.critique.overall_score))
        confidence = self._router.score(scores, request_id=state.request_id)
        await self._persist(state, ArtifactKind.CONFIDENCE, confidence)
        return confidence

    async def _guide(self, state: _RunState) -> MetaGuidance:
        context = {
            "request_id": state.request_id,
            "user_query": state.user_query,
            "plan": None if state.plan is None else state.plan.model_dump(mode="json"),
            "critique": None
            if state.critique is None
            else state.critique.model_dump(mode="json", exclude={"assessment"}),
            "confidence": None if state.confidence is None else state.confidence.model_dump(mode="json"),
        }
        guidance = await invoke_structured(
            self._backend, AgentKind.META, context, MetaGuidance, request_id=state.request_id
        )
        await self._persist(state, ArtifactKind.META, guidance)
        return guidance

    async def _run_executor(self, state: _RunState) -> ExecutionReport:
        if state.plan is None:
            raise NoBasePlan(f"request {state.request_id} has no plan to execute")
        context = {
            "request_id": state.request_id,
            "user_query": state.user_query,
            "plan": state.plan.model_dump(mode="json"),
            "recommendation": None if state.critique is None else state.critique.recommendation.value,
            "dynamic_references": [] if state.critique is None else state.critique.dynamic_references,
        }
        report = await invoke_structured(
            self._backend, AgentKind.EXECUTOR, context, ExecutionReport, request_id=state.request_id
        )
        report = report.model_copy(update={"plan_id": state.plan.plan_id, "plan_version": state.plan.plan_version})
        await self._persist(state, ArtifactKind.EXECUTION, report)
        return report

    async def _summarise(self, state: _RunState) -> SummaryResult:
        context = {
            "request_id": state.request_id,
            "user_query": state.user_query,
            "execution": None if state.execution is None else state.execution.model_dump(mode="json"),
        }
        summary = await invoke_structured(
            self._backend, AgentKind.SUMMARY, context, SummaryResult, request_id=state.request_id
        )
        await self._persist(state, ArtifactKind.SUMMARY, summary)
        return summary

    # Helpers ------------------------------------------------------------------------

    def _lock_for(self, request_id: str) -> asyncio.Lock:
        lock = self._locks.get(request_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[request_id] = lock
        return lock

    @staticmethod
    def _absorb(state: _RunState, outcome: CritiqueOutcome) -> None:
        state.critique = outcome.critique
        state.plan = outcome.plan
        state.warnings.extend(StorageWriteWarning(**item) for item in outcome.warnings)

    async def _persist(self, state: _RunState, kind: ArtifactKind, artifact: BaseModel) -> None:
        _check_fence(f"{kind.value} write")
        try:
            version = await self._store.latest_version(state.request_id, kind) + 1
        except ArtifactStoreError as exc:
            warning = StorageWriteWarning(request_id=state.request_id, kind=kind.value, version=0, reason=str(exc))
            logger.warning("artifact_persist_failed", **warning.as_dict())
            increment_storage_write_failure(kind=kind.value)
            state.warnings.append(warning)
            return
        await persist_artifact(
            self._store,
            ArtifactKey(state.request_id, kind, version),
            artifact.model_dump(mode="json"),
            warnings=state.warnings,
        )

    async def _load(self, request_id: str, kind: ArtifactKind, model: type[Any]) -> Any:
        record = await self._store.current(request_id, kind)
        return None if record is None else model.model_validate(record.payload)
