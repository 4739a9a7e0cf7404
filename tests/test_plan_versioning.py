from __future__ import annotations

import asyncio

import pytest

from planwright.core.exceptions import ArtifactStoreError, NotFoundError, ValidationError, VersionConflict
from planwright.core.config import VersioningSettings
from planwright.orchestration.placeholders import draft_from_payload
from planwright.orchestration.store import ArtifactKind, InMemoryArtifactStore
from planwright.orchestration.versioning import PlanVersioner
from planwright.schemas.plans import Plan
from tests.helpers.stubs import FailingArtifactStore, plan_payload, step_payload


def _draft(goal: str = "Look up HAN"):
    return draft_from_payload(plan_payload(step_payload(1, "get_facility", facility_id="HAN"), goal=goal))


@pytest.mark.asyncio
async def test_versions_are_contiguous_from_one() -> None:
    versioner = PlanVersioner(InMemoryArtifactStore())

    plans = [await versioner.create_plan("req-1", _draft(f"goal {index}")) for index in range(3)]

    assert [plan.plan_version for plan in plans] == [1, 2, 3]
    assert len({plan.plan_id for plan in plans}) == 3
    assert (await versioner.current_plan("req-1")).plan_id == plans[-1].plan_id
    assert [plan.plan_version for plan in await versioner.all_versions("req-1")] == [1, 2, 3]


@pytest.mark.asyncio
async def test_concurrent_regenerations_get_distinct_versions() -> None:
    versioner = PlanVersioner(InMemoryArtifactStore())

    plans = await asyncio.gather(*(versioner.create_plan("req-1", _draft(f"goal {index}")) for index in range(8)))

    assert sorted(plan.plan_version for plan in plans) == list(range(1, 9))


@pytest.mark.asyncio
async def test_requests_version_independently() -> None:
    versioner = PlanVersioner(InMemoryArtifactStore())
    await versioner.create_plan("req-1", _draft())
    await versioner.create_plan("req-1", _draft())

    other = await versioner.create_plan("req-2", _draft())

    assert other.plan_version == 1


@pytest.mark.asyncio
async def test_two_writers_for_the_same_version_conflict() -> None:
    versioner = PlanVersioner(InMemoryArtifactStore())
    first = Plan.from_draft(_draft("writer a"), request_id="req-1", plan_version=1)
    second = Plan.from_draft(_draft("writer b"), request_id="req-1", plan_version=1)

    await versioner.save(first)
    with pytest.raises(VersionConflict) as excinfo:
        await versioner.save(second)

    assert excinfo.value.retryable
    assert excinfo.value.version == 1
    assert (await versioner.current_plan("req-1")).goal == "writer a"


@pytest.mark.asyncio
async def test_identical_resubmission_is_a_no_op() -> None:
    store = InMemoryArtifactStore()
    versioner = PlanVersioner(store)
    plan = Plan.from_draft(_draft(), request_id="req-1", plan_version=1)

    await versioner.save(plan)
    await versioner.save(plan.model_copy(deep=True))

    assert await store.latest_version("req-1", ArtifactKind.PLAN) == 1
    assert len(await versioner.all_versions("req-1")) == 1


@pytest.mark.asyncio
async def test_gaps_are_rejected() -> None:
    versioner = PlanVersioner(InMemoryArtifactStore())
    with pytest.raises(ValidationError):
        await versioner.save(Plan.from_draft(_draft(), request_id="req-1", plan_version=3))


@pytest.mark.asyncio
async def test_expected_previous_detects_a_moved_request() -> None:
    versioner = PlanVersioner(InMemoryArtifactStore(), VersioningSettings(max_conflict_retries=0))
    await versioner.create_plan("req-1", _draft())
    await versioner.create_plan("req-1", _draft())

    with pytest.raises(VersionConflict):
        await versioner.create_plan("req-1", _draft(), expected_previous=1)
    replanned = await versioner.create_plan("req-1", _draft(), expected_previous=2)

    assert replanned.plan_version == 3


@pytest.mark.asyncio
async def test_failed_plan_write_never_hands_out_a_version() -> None:
    store = FailingArtifactStore({ArtifactKind.PLAN})
    versioner = PlanVersioner(store)

    for _ in range(2):
        with pytest.raises(ArtifactStoreError):
            await versioner.create_plan("req-1", _draft())
    store.failing_kinds.clear()
    first = await versioner.create_plan("req-1", _draft("first"))
    second = await versioner.create_plan("req-1", _draft("second"))

    assert [first.plan_version, second.plan_version] == [1, 2]
    assert (await versioner.get_plan("req-1", first.plan_id)).goal == "first"


@pytest.mark.asyncio
async def test_lookups_raise_not_found() -> None:
    versioner = PlanVersioner(InMemoryArtifactStore())
    with pytest.raises(NotFoundError):
        await versioner.current_plan("req-1")
    await versioner.create_plan("req-1", _draft())
    with pytest.raises(NotFoundError):
        await versioner.get_plan("req-1", "plan-unknown")
