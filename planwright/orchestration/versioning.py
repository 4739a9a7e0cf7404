from __future__ import annotations

import asyncio
import weakref

from ..core.config import VersioningSettings
from ..core.exceptions import ArtifactExists, NotFoundError, ValidationError, VersionConflict
from ..core.logging import get_logger
from ..core.metrics import increment_plan_version, increment_version_conflict
from ..schemas.plans import Plan, PlanDraft
from .store import ArtifactKey, ArtifactKind, ArtifactStore

logger = get_logger(name=__name__)


class PlanVersioner:
    """Sole allocator of plan versions.

    Versions for a request form the contiguous run ``1..N``. Allocation reads the
    store on every call and runs under a per-request lock together with the
    write, so two regeneration paths cannot mint the same number. A plan write
    that fails raises :class:`ArtifactStoreError`; a version is only handed out
    once it is stored.
    """

    def __init__(self, store: ArtifactStore, settings: VersioningSettings | None = None) -> None:
        self._store = store
        self._settings = settings or VersioningSettings()
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()

    def _lock_for(self, request_id: str) -> asyncio.Lock:
        lock = self._locks.get(request_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[request_id] = lock
        return lock

    async def allocate_version(self, request_id: str) -> int:
        return await self._store.latest_version(request_id, ArtifactKind.PLAN) + 1

    async def save(self, plan: Plan) -> Plan:
        latest = await self._store.latest_version(plan.request_id, ArtifactKind.PLAN)
        if plan.plan_version > latest + 1:
            raise ValidationError(
                f"plan version {plan.plan_version} would leave a gap after v{latest} for {plan.request_id}"
            )
        key = ArtifactKey(plan.request_id, ArtifactKind.PLAN, plan.plan_version)
        payload = plan.model_dump(mode="json")
        try:
            await self._store.insert(key, payload)
        except ArtifactExists:
            existing = await self._store.get_by_key(key)
            if existing is not None and existing.payload == payload:
                logger.debug("plan_resubmitted", request_id=plan.request_id, plan_version=plan.plan_version)
                return plan
            increment_version_conflict()
            raise VersionConflict(
                f"plan v{plan.plan_version} already exists for {plan.request_id} with different content",
                request_id=plan.request_id,
                version=plan.plan_version,
            ) from None
        return plan

    async def create_plan(
        self,
        request_id: str,
        draft: PlanDraft,
        *,
        expected_previous: int | None = None,
        origin: str = "planner",
    ) -> Plan:
        """Mint the next plan version from ``draft``.

        With ``expected_previous`` the write is optimistic: if another writer has
        already moved the request past that version a :class:`VersionConflict`
        is raised instead of retrying.
        """
        async with self._lock_for(request_id):
            attempt = 0
            while True:
                version = await self.allocate_version(request_id)
                if expected_previous is not None and version != expected_previous + 1:
                    increment_version_conflict()
                    raise VersionConflict(
                        f"expected plan v{expected_previous} to be current for {request_id}, found v{version - 1}",
                        request_id=request_id,
                        version=version,
                    )
                plan = Plan.from_draft(draft, request_id=request_id, plan_version=version)
                try:
                    await self.save(plan)
                except VersionConflict:
                    if expected_previous is not None or attempt >= self._settings.max_conflict_retries:
                        raise
                    attempt += 1
                    logger.warning("plan_version_retry", request_id=request_id, plan_version=version, attempt=attempt)
                    continue
                break
        increment_plan_version(origin=origin)
        logger.info(
            "plan_version_created",
            request_id=request_id,
            plan_id=plan.plan_id,
            plan_version=plan.plan_version,
            origin=origin,
            steps=len(plan.steps),
        )
        return plan

    async def current_plan(self, request_id: str) -> Plan:
        record = await self._store.current(request_id, ArtifactKind.PLAN)
        if record is None:
            raise NotFoundError(f"no plan recorded for request {request_id}")
        return Plan.model_validate(record.payload)

    async def all_versions(self, request_id: str) -> list[Plan]:
        records = await self._store.get_all_versions(request_id, ArtifactKind.PLAN)
        return [Plan.model_validate(record.payload) for record in records]

    async def get_plan(self, request_id: str, plan_id: str) -> Plan:
        for plan in await self.all_versions(request_id):
            if plan.plan_id == plan_id:
                return plan
        raise NotFoundError(f"unknown plan {plan_id} for request {request_id}")
