from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status

from ..core.exceptions import (
    ArtifactStoreError,
    DuplicateRequest,
    NoBasePlan,
    NotFoundError,
    PipelineError,
    UpstreamError,
    ValidationError,
    VersionConflict,
)
from ..core.logging import get_logger
from ..dependencies import get_coordinator
from ..orchestration.coordinator import PipelineCoordinator
from ..schemas.api import ArtifactCount, ConfidenceRequest, FeedbackRequest, RunRequest
from ..schemas.confidence import ConfidenceScore
from ..schemas.critiques import Critique, CritiqueOutcome
from ..schemas.pipeline import PipelineResult
from ..schemas.plans import Plan
from ..schemas.requests import RequestContext

logger = get_logger(name=__name__)

router = APIRouter()

_STATUS_BY_ERROR: tuple[tuple[type[PipelineError], int], ...] = (
    (ValidationError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (DuplicateRequest, status.HTTP_409_CONFLICT),
    (VersionConflict, status.HTTP_409_CONFLICT),
    (NoBasePlan, status.HTTP_409_CONFLICT),
    (UpstreamError, status.HTTP_502_BAD_GATEWAY),
    (ArtifactStoreError, status.HTTP_503_SERVICE_UNAVAILABLE),
)


def _http_error(exc: PipelineError) -> HTTPException:
    for error_type, status_code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            break
    else:
        status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    if status_code >= 500:
        logger.error("pipeline_request_failed", error=str(exc), error_type=type(exc).__name__)
    return HTTPException(status_code=status_code, detail=str(exc))


@router.post("/requests", response_model=PipelineResult, tags=["requests"])
async def run_request(
    payload: RunRequest,
    coordinator: PipelineCoordinator = Depends(get_coordinator),
) -> PipelineResult:
    try:
        return await coordinator.run(payload.user_query, request_id=payload.request_id)
    except PipelineError as exc:
        raise _http_error(exc) from exc


@router.get("/requests/{request_id}", response_model=RequestContext, tags=["requests"])
async def get_request(
    request_id: str,
    coordinator: PipelineCoordinator = Depends(get_coordinator),
) -> RequestContext:
    try:
        return await coordinator.tracker.get(request_id)
    except PipelineError as exc:
        raise _http_error(exc) from exc


@router.get("/requests/{request_id}/plans", response_model=list[Plan], tags=["plans"])
async def list_plans(
    request_id: str,
    coordinator: PipelineCoordinator = Depends(get_coordinator),
) -> list[Plan]:
    try:
        await coordinator.tracker.get(request_id)
        return await coordinator.versioner.all_versions(request_id)
    except PipelineError as exc:
        raise _http_error(exc) from exc


@router.get("/requests/{request_id}/plans/current", response_model=Plan, tags=["plans"])
async def current_plan(
    request_id: str,
    coordinator: PipelineCoordinator = Depends(get_coordinator),
) -> Plan:
    try:
        return await coordinator.versioner.current_plan(request_id)
    except PipelineError as exc:
        raise _http_error(exc) from exc


@router.get("/requests/{request_id}/critiques", response_model=list[Critique], tags=["critiques"])
async def list_critiques(
    request_id: str,
    coordinator: PipelineCoordinator = Depends(get_coordinator),
) -> list[Critique]:
    try:
        await coordinator.tracker.get(request_id)
        return await coordinator.critique_engine.history(request_id)
    except PipelineError as exc:
        raise _http_error(exc) from exc


@router.post("/requests/{request_id}/critiques", response_model=CritiqueOutcome, tags=["critiques"])
async def submit_feedback(
    request_id: str,
    payload: FeedbackRequest,
    coordinator: PipelineCoordinator = Depends(get_coordinator),
) -> CritiqueOutcome:
    try:
        return await coordinator.submit_feedback(
            request_id,
            payload.plan_id,
            user_feedback=payload.user_feedback,
            refined_user_query=payload.refined_user_query,
        )
    except PipelineError as exc:
        raise _http_error(exc) from exc


@router.post("/requests/{request_id}/resume", response_model=PipelineResult, tags=["requests"])
async def resume_request(
    request_id: str,
    coordinator: PipelineCoordinator = Depends(get_coordinator),
) -> PipelineResult:
    try:
        return await coordinator.resume(request_id)
    except PipelineError as exc:
        raise _http_error(exc) from exc


@router.post("/confidence", response_model=ConfidenceScore, tags=["confidence"])
async def score_confidence(
    payload: ConfidenceRequest,
    coordinator: PipelineCoordinator = Depends(get_coordinator),
) -> ConfidenceScore:
    try:
        return coordinator.score_confidence(payload.agent_scores, payload.thresholds)
    except PipelineError as exc:
        raise _http_error(exc) from exc


@router.get("/artifacts/count", response_model=ArtifactCount, tags=["artifacts"])
async def count_artifacts(coordinator: PipelineCoordinator = Depends(get_coordinator)) -> ArtifactCount:
    return ArtifactCount(count=await coordinator.store.count())


@router.delete("/artifacts", status_code=status.HTTP_204_NO_CONTENT, tags=["artifacts"])
async def clear_artifacts(coordinator: PipelineCoordinator = Depends(get_coordinator)) -> None:
    await coordinator.store.clear()
    logger.warning("artifacts_cleared")
