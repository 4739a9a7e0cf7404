from __future__ import annotations

from datetime import datetime, timezone

from ..core.exceptions import ArtifactExists, DuplicateRequest, NotFoundError, ValidationError
from ..core.logging import get_logger
from ..schemas.requests import RequestContext, RequestStatus, new_request_id
from .store import ArtifactKey, ArtifactKind, ArtifactStore

logger = get_logger(name=__name__)

_CONTEXT_VERSION = 1


def _context_key(request_id: str) -> ArtifactKey:
    return ArtifactKey(request_id, ArtifactKind.REQUEST, _CONTEXT_VERSION)


class RequestContextTracker:
    """Owns the lifecycle record of each request.

    Every mutation rewrites the whole record (last write wins). Only the
    pipeline coordinator should call the mutating methods.
    """

    def __init__(self, store: ArtifactStore) -> None:
        self._store = store

    async def create(self, request_id: str | None, user_query: str | None) -> RequestContext:
        if user_query is not None and not user_query.strip():
            raise ValidationError("user_query must not be blank")
        context = RequestContext(
            request_id=request_id or new_request_id(),
            user_query=user_query.strip() if user_query else None,
        )
        try:
            await self._store.insert(_context_key(context.request_id), context.model_dump(mode="json"))
        except ArtifactExists as exc:
            raise DuplicateRequest(f"request {context.request_id} already exists") from exc
        logger.info("request_created", request_id=context.request_id)
        return context

    async def get(self, request_id: str) -> RequestContext:
        record = await self._store.get_by_key(_context_key(request_id))
        if record is None:
            raise NotFoundError(f"unknown request {request_id}")
        return RequestContext.model_validate(record.payload)

    async def exists(self, request_id: str) -> bool:
        return await self._store.get_by_key(_context_key(request_id)) is not None

    async def start(self, request_id: str) -> RequestContext:
        context = await self.get(request_id)
        context.status = RequestStatus.IN_PROGRESS
        return await self._write(context)

    async def advance(self, request_id: str, agent_name: str) -> RequestContext:
        if not agent_name:
            raise ValidationError("agent_name is required")
        context = await self.get(request_id)
        context.agent_chain.append(agent_name)
        context.status = RequestStatus.IN_PROGRESS
        return await self._write(context)

    async def complete(self, request_id: str) -> RequestContext:
        context = await self.get(request_id)
        context.status = RequestStatus.COMPLETED
        context.failure_reason = None
        context = await self._write(context)
        logger.info("request_completed", request_id=request_id, agent_chain=context.agent_chain)
        return context

    async def fail(self, request_id: str, reason: str) -> RequestContext:
        context = await self.get(request_id)
        context.status = RequestStatus.FAILED
        context.failure_reason = reason
        context = await self._write(context)
        logger.warning("request_failed", request_id=request_id, reason=reason)
        return context

    async def _write(self, context: RequestContext) -> RequestContext:
        context.updated_at = datetime.now(timezone.utc)
        await self._store.save(_context_key(context.request_id), context.model_dump(mode="json"))
        return context
