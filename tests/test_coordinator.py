from __future__ import annotations

import asyncio
import gc
from typing import Any

import pytest

from planwright.core.config import get_settings
from planwright.core.exceptions import DuplicateRequest, NoBasePlan, StepTimeout, UpstreamError, ValidationError
from planwright.orchestration.coordinator import PipelineCoordinator, _RunState
from planwright.orchestration.store import ArtifactKind, ArtifactStore, InMemoryArtifactStore
from planwright.schemas.confidence import Decision
from planwright.schemas.critiques import Recommendation
from planwright.schemas.pipeline import PipelineOutcome
from planwright.schemas.plans import LiteralValue
from planwright.schemas.requests import RequestStatus
from planwright.services.reasoning import AgentKind
from tests.helpers.stubs import (
    FailingArtifactStore,
    StubReasoningBackend,
    critic_payload,
    default_responses,
    plan_payload,
    step_payload,
)

QUERY = "Which facility is HAN and what does it store?"


def _coordinator(
    backend: StubReasoningBackend,
    *,
    store: ArtifactStore | None = None,
    **overrides: Any,
) -> PipelineCoordinator:
    settings = get_settings({"environment": "test", **overrides})
    return PipelineCoordinator(store=store or InMemoryArtifactStore(), backend=backend, settings=settings)


def _thought(confidence: float) -> dict[str, Any]:
    thought = dict(default_responses()[AgentKind.THOUGHT])  # type: ignore[arg-type]
    thought["confidence"] = confidence
    return thought


def _material_plan() -> dict[str, Any]:
    return plan_payload(
        step_payload(1, "get_material_properties", material=None),
        step_payload(2, "calculate_heating_value", dependencies=[1], properties="{{step_1.properties}}"),
    )


@pytest.mark.asyncio
async def test_confident_run_executes_and_completes() -> None:
    backend = StubReasoningBackend()
    coordinator = _coordinator(backend)

    result = await coordinator.run(QUERY, request_id="req-1")

    assert result.outcome is PipelineOutcome.COMPLETED
    assert result.request.status is RequestStatus.COMPLETED
    assert result.request.agent_chain == [
        "complexity-detector",
        "thought-agent",
        "planner-agent",
        "critic-agent",
        "confidence-scorer",
        "executor-agent",
        "summary-agent",
    ]
    assert result.confidence is not None and result.confidence.decision is Decision.EXECUTE
    assert result.critique is not None
    assert result.critique.recommendation is Recommendation.APPROVE_WITH_DYNAMIC_FIX
    assert result.execution is not None and result.execution.plan_id == result.plan.plan_id  # type: ignore[union-attr]
    assert result.summary is not None
    assert result.warnings == []
    executor_context = [context for kind, context in backend.calls if kind is AgentKind.EXECUTOR][0]
    assert executor_context["recommendation"] == "approve-with-dynamic-fix"
    assert [item["parameter"] for item in executor_context["dynamic_references"]] == ["source"]
    assert await coordinator.store.latest_version("req-1", ArtifactKind.SUMMARY) == 1


@pytest.mark.asyncio
async def test_review_then_feedback_then_resume() -> None:
    backend = StubReasoningBackend(
        {
            AgentKind.PLANNER: _material_plan(),
            AgentKind.CRITIC: [critic_payload(0.45), critic_payload(0.9)],
        }
    )
    coordinator = _coordinator(backend)

    first = await coordinator.run("What is the heating value of the material?", request_id="r1")

    assert first.outcome is PipelineOutcome.AWAITING_REVIEW
    assert first.request.status is RequestStatus.IN_PROGRESS
    assert first.critique is not None
    assert first.critique.overall_score == pytest.approx(0.42)
    assert [question.parameter for question in first.critique.follow_up_questions] == ["material"]

    feedback = await coordinator.submit_feedback(
        "r1",
        first.plan.plan_id,  # type: ignore[union-attr]
        user_feedback=[{"question_id": "q1", "answer": "plastic"}],
    )

    assert feedback.plan.plan_version == 2
    assert feedback.plan.step(1).parameters["material"] == LiteralValue(value="plastic")  # type: ignore[union-attr]
    assert feedback.critique.follow_up_questions == []

    resumed = await coordinator.resume("r1")

    assert resumed.outcome is PipelineOutcome.COMPLETED
    assert resumed.plan is not None and resumed.plan.plan_version == 2
    assert resumed.request.agent_chain.count("critic-agent") == 2
    assert backend.counts[AgentKind.CRITIC] == 2


@pytest.mark.asyncio
async def test_refined_query_runs_thought_and_planning_again() -> None:
    backend = StubReasoningBackend({AgentKind.PLANNER: _material_plan(), AgentKind.CRITIC: critic_payload(0.45)})
    coordinator = _coordinator(backend)
    first = await coordinator.run("What is the heating value?", request_id="r1")
    backend.script(
        AgentKind.PLANNER,
        plan_payload(step_payload(1, "get_material_properties", material="plastic")),
    )

    outcome = await coordinator.submit_feedback(
        "r1", first.plan.plan_id, refined_user_query="Heating value of plastic"  # type: ignore[union-attr]
    )

    assert outcome.plan_id != first.plan.plan_id  # type: ignore[union-attr]
    assert outcome.plan.plan_version == 2
    context = await coordinator.tracker.get("r1")
    assert context.agent_chain[-3:] == ["thought-agent", "planner-agent", "critic-agent"]
    thought_contexts = [ctx for kind, ctx in backend.calls if kind is AgentKind.THOUGHT]
    assert thought_contexts[-1]["user_query"] == "Heating value of plastic"


@pytest.mark.asyncio
async def test_rethink_replans_and_scores_again() -> None:
    backend = StubReasoningBackend(
        {
            AgentKind.PLANNER: plan_payload(
                step_payload(1, "get_facility", facility_id="HAN"),
                step_payload(2, "summarize", dependencies=[1], source="{{step_1.name}}"),
                confidence=0.6,
            ),
            AgentKind.CRITIC: [critic_payload(0.3), critic_payload(0.9)],
        }
    )
    coordinator = _coordinator(backend)

    result = await coordinator.run(QUERY, request_id="r1")

    assert result.outcome is PipelineOutcome.COMPLETED
    assert len(result.meta_guidance) == 1
    assert len(result.replans) == 1
    assert result.replans[0].original_plan_id != result.plan.plan_id  # type: ignore[union-attr]
    assert result.plan is not None and result.plan.plan_version == 2
    chain = result.request.agent_chain
    assert chain.count("confidence-scorer") == 2
    assert chain.index("meta-agent") < chain.index("replan-agent")
    assert await coordinator.store.latest_version("r1", ArtifactKind.CONFIDENCE) == 2


@pytest.mark.asyncio
async def test_rethink_limit_escalates() -> None:
    low_plan = plan_payload(step_payload(1, "get_facility", facility_id="HAN"), confidence=0.6)
    backend = StubReasoningBackend(
        {
            AgentKind.PLANNER: low_plan,
            AgentKind.REPLAN: low_plan,
            AgentKind.CRITIC: critic_payload(0.3),
        }
    )
    coordinator = _coordinator(backend, pipeline={"max_replans": 1})

    result = await coordinator.run(QUERY, request_id="r1")

    assert result.outcome is PipelineOutcome.ESCALATED
    assert len(result.replans) == 1
    assert result.confidence is not None and result.confidence.decision is Decision.RETHINK
    assert result.request.status is RequestStatus.IN_PROGRESS


@pytest.mark.asyncio
async def test_meta_guidance_can_decline_to_replan() -> None:
    backend = StubReasoningBackend(
        {
            AgentKind.PLANNER: plan_payload(step_payload(1, "get_facility", facility_id="HAN"), confidence=0.6),
            AgentKind.CRITIC: critic_payload(0.3),
            AgentKind.META: {"should_replan": False, "rationale": "needs a human"},
        }
    )
    coordinator = _coordinator(backend)

    result = await coordinator.run(QUERY, request_id="r1")

    assert result.outcome is PipelineOutcome.AWAITING_REVIEW
    assert result.replans == []
    assert backend.counts[AgentKind.REPLAN] == 0


@pytest.mark.asyncio
async def test_very_low_confidence_escalates() -> None:
    backend = StubReasoningBackend(
        {
            AgentKind.THOUGHT: _thought(0.1),
            AgentKind.PLANNER: plan_payload(step_payload(1, "get_facility", facility_id="HAN"), confidence=0.1),
            AgentKind.CRITIC: critic_payload(0.1),
        }
    )
    coordinator = _coordinator(backend)

    result = await coordinator.run(QUERY, request_id="r1")

    assert result.outcome is PipelineOutcome.ESCALATED
    assert result.confidence is not None and result.confidence.decision is Decision.ESCALATE
    assert backend.counts[AgentKind.EXECUTOR] == 0


@pytest.mark.asyncio
async def test_upstream_failure_marks_request_failed() -> None:
    backend = StubReasoningBackend({AgentKind.PLANNER: UpstreamError("model unavailable")})
    coordinator = _coordinator(backend)

    with pytest.raises(UpstreamError) as excinfo:
        await coordinator.run(QUERY, request_id="r1")

    context = await coordinator.tracker.get("r1")
    assert excinfo.value.agent == "planner-agent"
    assert context.status is RequestStatus.FAILED
    assert context.failure_reason is not None and context.failure_reason.startswith("planner-agent")
    assert context.agent_chain == ["complexity-detector", "thought-agent"]


@pytest.mark.asyncio
async def test_malformed_plan_is_an_upstream_failure() -> None:
    backend = StubReasoningBackend({AgentKind.PLANNER: {"goal": "x", "steps": [{"order": 1, "action": "a", "dependencies": [3]}]}})
    coordinator = _coordinator(backend)

    with pytest.raises(UpstreamError):
        await coordinator.run(QUERY, request_id="r1")

    assert (await coordinator.tracker.get("r1")).status is RequestStatus.FAILED


@pytest.mark.asyncio
async def test_step_timeout_marks_request_failed() -> None:
    backend = StubReasoningBackend(delays={AgentKind.THOUGHT: 0.3})
    coordinator = _coordinator(backend, pipeline={"step_timeout_seconds": 0.05})

    with pytest.raises(StepTimeout):
        await coordinator.run(QUERY, request_id="r1")

    context = await coordinator.tracker.get("r1")
    assert context.status is RequestStatus.FAILED
    assert "timed out" in (context.failure_reason or "")
    assert context.agent_chain == ["complexity-detector"]
    await asyncio.sleep(0.4)
    late = await coordinator.tracker.get("r1")
    assert late.status is RequestStatus.FAILED
    assert late.agent_chain == ["complexity-detector"]
    assert await coordinator.store.latest_version("r1", ArtifactKind.THOUGHT) == 0


@pytest.mark.asyncio
async def test_timed_out_planner_never_mints_a_plan() -> None:
    backend = StubReasoningBackend(delays={AgentKind.PLANNER: 0.2})
    coordinator = _coordinator(backend, pipeline={"step_timeout_seconds": 0.05})

    with pytest.raises(StepTimeout):
        await coordinator.run(QUERY, request_id="r1")
    await asyncio.sleep(0.3)

    context = await coordinator.tracker.get("r1")
    assert context.status is RequestStatus.FAILED
    assert context.agent_chain == ["complexity-detector", "thought-agent"]
    assert await coordinator.versioner.all_versions("r1") == []


@pytest.mark.asyncio
async def test_failed_execution_fails_the_request() -> None:
    backend = StubReasoningBackend(
        {AgentKind.EXECUTOR: {"overall_success": False, "errors": ["step 1 failed"], "steps": []}}
    )
    coordinator = _coordinator(backend)

    result = await coordinator.run(QUERY, request_id="r1")

    assert result.outcome is PipelineOutcome.FAILED
    assert result.request.status is RequestStatus.FAILED
    assert result.summary is not None


@pytest.mark.asyncio
async def test_storage_failures_become_warnings() -> None:
    store = FailingArtifactStore({ArtifactKind.CONFIDENCE, ArtifactKind.SUMMARY})
    coordinator = _coordinator(StubReasoningBackend(), store=store)

    result = await coordinator.run(QUERY, request_id="r1")

    assert result.outcome is PipelineOutcome.COMPLETED
    assert sorted(warning["kind"] for warning in result.warnings) == ["confidence", "summary"]
    assert result.confidence is not None


@pytest.mark.asyncio
async def test_duplicate_and_terminal_requests_are_rejected() -> None:
    coordinator = _coordinator(StubReasoningBackend())
    await coordinator.run(QUERY, request_id="r1")

    with pytest.raises(DuplicateRequest):
        await coordinator.run(QUERY, request_id="r1")
    with pytest.raises(ValidationError):
        await coordinator.resume("r1")


@pytest.mark.asyncio
async def test_concurrent_requests_do_not_share_state() -> None:
    coordinator = _coordinator(StubReasoningBackend())

    results = await asyncio.gather(*(coordinator.run(f"{QUERY} #{index}") for index in range(4)))

    assert len({result.request.request_id for result in results}) == 4
    assert all(result.plan is not None and result.plan.plan_version == 1 for result in results)
    assert all(result.outcome is PipelineOutcome.COMPLETED for result in results)


@pytest.mark.asyncio
async def test_feedback_on_finished_request_is_rejected() -> None:
    backend = StubReasoningBackend()
    coordinator = _coordinator(backend)
    result = await coordinator.run(QUERY, request_id="r1")

    with pytest.raises(ValidationError):
        await coordinator.submit_feedback("r1", result.plan.plan_id)  # type: ignore[union-attr]

    context = await coordinator.tracker.get("r1")
    assert context.status is RequestStatus.COMPLETED
    assert context.agent_chain[-1] == "summary-agent"
    assert backend.counts[AgentKind.CRITIC] == 1


@pytest.mark.asyncio
async def test_execution_requires_a_plan() -> None:
    backend = StubReasoningBackend()
    coordinator = _coordinator(backend)
    await coordinator.tracker.create("r1", QUERY)

    with pytest.raises(NoBasePlan):
        await coordinator._execute(_RunState(request_id="r1", user_query=QUERY))

    assert backend.counts[AgentKind.EXECUTOR] == 0
    assert (await coordinator.tracker.get("r1")).agent_chain == []


@pytest.mark.asyncio
async def test_request_locks_are_released_once_idle() -> None:
    backend = StubReasoningBackend({AgentKind.PLANNER: _material_plan(), AgentKind.CRITIC: critic_payload(0.45)})
    coordinator = _coordinator(backend)
    first = await coordinator.run("What is the heating value?", request_id="r1")
    await coordinator.submit_feedback("r1", first.plan.plan_id)  # type: ignore[union-attr]

    gc.collect()

    assert "r1" not in coordinator._locks
    assert "r1" not in coordinator.versioner._locks
    assert "r1" not in coordinator.critique_engine._locks
