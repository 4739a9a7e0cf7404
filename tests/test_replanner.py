from __future__ import annotations

import pytest

from planwright.core.exceptions import NoBasePlan, UpstreamError, VersionConflict
from planwright.orchestration.critique import CritiqueEngine
from planwright.orchestration.placeholders import draft_from_payload
from planwright.orchestration.replanner import Replanner, diff_plans
from planwright.orchestration.store import ArtifactKind, InMemoryArtifactStore
from planwright.orchestration.versioning import PlanVersioner
from planwright.schemas.plans import MetaGuidance, Plan
from planwright.services.reasoning import AgentKind
from tests.helpers.stubs import StubReasoningBackend, critic_payload, plan_payload, step_payload


def _plan(*steps: dict, version: int = 1) -> Plan:
    return Plan.from_draft(draft_from_payload(plan_payload(*steps)), request_id="r1", plan_version=version)


def test_diff_plans_compares_steps_by_order() -> None:
    before = _plan(
        step_payload(1, "get_facility", facility_id="HAN"),
        step_payload(2, "summarize", source="{{step_1.name}}"),
        step_payload(3, "notify"),
    )
    after = _plan(
        step_payload(1, "get_facility", facility_id="HAN"),
        step_payload(2, "summarize", source="{{step_1.name}}", style="brief"),
        step_payload(4, "archive"),
        version=2,
    )

    changes = diff_plans(before, after)

    assert changes.steps_added == [4]
    assert changes.steps_removed == [3]
    assert changes.steps_modified == [2]
    assert changes.touched == {2, 3, 4}
    assert not diff_plans(before, before).has_changes


@pytest.mark.asyncio
async def test_replan_mints_next_version_and_reports_changes() -> None:
    backend = StubReasoningBackend(
        {
            AgentKind.CRITIC: critic_payload(
                0.5, issues=[{"severity": "high", "description": "facility unknown", "affected_steps": [1]}]
            ),
        }
    )
    store = InMemoryArtifactStore()
    versioner = PlanVersioner(store)
    engine = CritiqueEngine(store=store, versioner=versioner, backend=backend)
    replanner = Replanner(store=store, versioner=versioner, backend=backend)
    original = await versioner.create_plan(
        "r1",
        draft_from_payload(
            plan_payload(
                step_payload(1, "get_facility", facility_id="HAN"),
                step_payload(2, "summarize", dependencies=[1], source="{{step_1.name}}"),
            )
        ),
    )
    critique = (await engine.critique(original)).critique
    guidance = MetaGuidance(replan_strategy="narrow the lookup", focus_steps=[1])

    output = await replanner.replan(original, critique, guidance, user_query="Which facility is HAN?")

    assert output.plan_version == 2
    assert output.plan.plan_version == 2
    assert output.original_plan_id == original.plan_id
    assert output.plan.plan_id != original.plan_id
    assert output.changes_from_original.steps_modified == [1]
    assert output.addresses_critic_issues
    assert output.addresses_meta_guidance
    replan_context = [context for kind, context in backend.calls if kind is AgentKind.REPLAN][0]
    assert replan_context["meta_guidance"]["focus_steps"] == [1]
    assert "assessment" not in replan_context["critique"]
    assert [item.plan_version for item in await replanner.history("r1")] == [2]
    assert await store.latest_version("r1", ArtifactKind.REPLAN) == 2


@pytest.mark.asyncio
async def test_replan_without_guidance_does_not_claim_to_follow_it() -> None:
    store = InMemoryArtifactStore()
    versioner = PlanVersioner(store)
    replanner = Replanner(store=store, versioner=versioner, backend=StubReasoningBackend())
    original = await versioner.create_plan(
        "r1", draft_from_payload(plan_payload(step_payload(1, "get_facility", facility_id="HAN")))
    )

    output = await replanner.replan(original, None)

    assert output.addresses_critic_issues
    assert not output.addresses_meta_guidance


@pytest.mark.asyncio
async def test_replan_requires_a_base_plan() -> None:
    store = InMemoryArtifactStore()
    replanner = Replanner(store=store, versioner=PlanVersioner(store), backend=StubReasoningBackend())

    with pytest.raises(NoBasePlan):
        await replanner.replan(None, None)
    with pytest.raises(NoBasePlan):
        await replanner.replan_current("r1", None)


@pytest.mark.asyncio
async def test_replan_from_a_stale_plan_conflicts() -> None:
    store = InMemoryArtifactStore()
    versioner = PlanVersioner(store)
    replanner = Replanner(store=store, versioner=versioner, backend=StubReasoningBackend())
    stale = await versioner.create_plan("r1", draft_from_payload(plan_payload(step_payload(1, "a"))))
    await versioner.create_plan("r1", draft_from_payload(plan_payload(step_payload(1, "b"))))

    with pytest.raises(VersionConflict):
        await replanner.replan(stale, None)


@pytest.mark.asyncio
async def test_invalid_replan_output_is_an_upstream_error() -> None:
    store = InMemoryArtifactStore()
    versioner = PlanVersioner(store)
    backend = StubReasoningBackend({AgentKind.REPLAN: {"goal": "", "steps": []}})
    replanner = Replanner(store=store, versioner=versioner, backend=backend)
    original = await versioner.create_plan("r1", draft_from_payload(plan_payload(step_payload(1, "a"))))

    with pytest.raises(UpstreamError) as excinfo:
        await replanner.replan(original, None)

    assert excinfo.value.agent == "replan-agent"
    assert excinfo.value.request_id == "r1"
    assert await versioner.current_plan("r1") == original
