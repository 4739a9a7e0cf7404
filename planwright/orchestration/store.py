"""Versioned artifact storage.

Every agent output is appended to a log keyed by ``(request_id, kind, version)``.
A separate current pointer per ``(request_id, kind)`` names the highest version
written so far. Records are never removed except by :meth:`ArtifactStore.clear`.
"""

from __future__ import annotations

import asyncio
import copy
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Mapping, TypeVar

from ..core.exceptions import ArtifactExists, ArtifactStoreError, PipelineError, StorageWriteWarning
from ..core.logging import get_logger
from ..core.metrics import increment_storage_write_failure

logger = get_logger(name=__name__)

T = TypeVar("T")


class ArtifactKind(str, Enum):
    REQUEST = "request"
    COMPLEXITY = "complexity"
    THOUGHT = "thought"
    PLAN = "plan"
    CRITIQUE = "critique"
    CONFIDENCE = "confidence"
    META = "meta"
    REPLAN = "replan"
    EXECUTION = "execution"
    SUMMARY = "summary"


@dataclass(frozen=True, slots=True)
class ArtifactKey:
    request_id: str
    kind: ArtifactKind
    version: int

    def __post_init__(self) -> None:
        if not self.request_id:
            raise ValueError("artifact key requires a request_id")
        if self.version < 1:
            raise ValueError("artifact versions start at 1")

    def label(self) -> str:
        return f"{self.request_id}/{self.kind.value}/v{self.version}"


@dataclass(slots=True)
class ArtifactRecord:
    key: ArtifactKey
    payload: dict[str, Any]
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class ArtifactStore:
    """Storage contract consumed by the pipeline.

    Subclasses implement the ``_``-prefixed hooks; the public methods add
    argument normalisation shared by every backend and report any backend
    failure as :class:`ArtifactStoreError`.
    """

    async def save(self, key: ArtifactKey, payload: Mapping[str, Any]) -> ArtifactRecord:
        """Upsert ``payload`` under ``key``."""
        return await self._guard("save", key.label(), self._upsert(key, dict(payload)))

    async def insert(self, key: ArtifactKey, payload: Mapping[str, Any]) -> ArtifactRecord:
        """Write ``payload`` only if ``key`` is free, else raise :class:`ArtifactExists`."""
        return await self._guard("insert", key.label(), self._insert(key, dict(payload)))

    async def get_by_key(self, key: ArtifactKey) -> ArtifactRecord | None:
        return await self._guard("get", key.label(), self._get(key))

    async def get_all_versions(self, request_id: str, kind: ArtifactKind) -> list[ArtifactRecord]:
        records = await self._guard("list", f"{request_id}/{kind.value}", self._list(request_id, kind))
        return sorted(records, key=lambda record: record.key.version)

    async def latest_version(self, request_id: str, kind: ArtifactKind) -> int:
        return await self._guard("latest", f"{request_id}/{kind.value}", self._latest_version(request_id, kind))

    async def current(self, request_id: str, kind: ArtifactKind) -> ArtifactRecord | None:
        version = await self.latest_version(request_id, kind)
        if version == 0:
            return None
        return await self.get_by_key(ArtifactKey(request_id, kind, version))

    async def list_requests(self, kind: ArtifactKind = ArtifactKind.REQUEST) -> list[str]:
        return await self._guard("list_requests", kind.value, self._list_requests(kind))

    async def count(self) -> int:
        return await self._guard("count", "*", self._count())

    async def clear(self) -> None:
        await self._guard("clear", "*", self._clear())

    @staticmethod
    async def _guard(operation: str, target: str, call: Awaitable[T]) -> T:
        try:
            return await call
        except (PipelineError, NotImplementedError):
            raise
        except Exception as exc:
            logger.warning("artifact_store_backend_error", operation=operation, target=target, error=str(exc))
            raise ArtifactStoreError(f"{operation} {target} failed: {exc}") from exc

    # Abstract hooks -----------------------------------------------------------------

    async def _upsert(self, key: ArtifactKey, payload: dict[str, Any]) -> ArtifactRecord:
        raise NotImplementedError

    async def _insert(self, key: ArtifactKey, payload: dict[str, Any]) -> ArtifactRecord:
        raise NotImplementedError

    async def _get(self, key: ArtifactKey) -> ArtifactRecord | None:
        raise NotImplementedError

    async def _list(self, request_id: str, kind: ArtifactKind) -> list[ArtifactRecord]:
        raise NotImplementedError

    async def _latest_version(self, request_id: str, kind: ArtifactKind) -> int:
        raise NotImplementedError

    async def _list_requests(self, kind: ArtifactKind) -> list[str]:
        raise NotImplementedError

    async def _count(self) -> int:
        raise NotImplementedError

    async def _clear(self) -> None:
        raise NotImplementedError


class InMemoryArtifactStore(ArtifactStore):
    """Arena of records plus a key index and a current-version pointer."""

    def __init__(self) -> None:
        self._arena: list[ArtifactRecord] = []
        self._index: dict[ArtifactKey, int] = {}
        self._current: dict[tuple[str, ArtifactKind], int] = {}
        self._lock = asyncio.Lock()

    async def _upsert(self, key: ArtifactKey, payload: dict[str, Any]) -> ArtifactRecord:
        async with self._lock:
            slot = self._index.get(key)
            if slot is None:
                record = self._append(key, payload)
            else:
                existing = self._arena[slot]
                record = ArtifactRecord(
                    key=key,
                    payload=copy.deepcopy(payload),
                    created_at=existing.created_at,
                )
                self._arena[slot] = record
            return self._clone(record)

    async def _insert(self, key: ArtifactKey, payload: dict[str, Any]) -> ArtifactRecord:
        async with self._lock:
            if key in self._index:
                raise ArtifactExists(f"artifact {key.label()} already exists")
            return self._clone(self._append(key, payload))

    async def _get(self, key: ArtifactKey) -> ArtifactRecord | None:
        async with self._lock:
            slot = self._index.get(key)
            return None if slot is None else self._clone(self._arena[slot])

    async def _list(self, request_id: str, kind: ArtifactKind) -> list[ArtifactRecord]:
        async with self._lock:
            return [
                self._clone(self._arena[slot])
                for key, slot in self._index.items()
                if key.request_id == request_id and key.kind is kind
            ]

    async def _latest_version(self, request_id: str, kind: ArtifactKind) -> int:
        async with self._lock:
            return self._current.get((request_id, kind), 0)

    async def _list_requests(self, kind: ArtifactKind) -> list[str]:
        async with self._lock:
            return list(dict.fromkeys(request_id for request_id, candidate in self._current if candidate is kind))

    async def _count(self) -> int:
        async with self._lock:
            return len(self._index)

    async def _clear(self) -> None:
        async with self._lock:
            self._arena.clear()
            self._index.clear()
            self._current.clear()

    def _append(self, key: ArtifactKey, payload: dict[str, Any]) -> ArtifactRecord:
        record = ArtifactRecord(key=key, payload=copy.deepcopy(payload))
        self._arena.append(record)
        self._index[key] = len(self._arena) - 1
        pointer = (key.request_id, key.kind)
        if key.version > self._current.get(pointer, 0):
            self._current[pointer] = key.version
        return record

    @staticmethod
    def _clone(record: ArtifactRecord) -> ArtifactRecord:
        return ArtifactRecord(
            key=record.key,
            payload=copy.deepcopy(record.payload),
            created_at=record.created_at,
            updated_at=record.updated_at,
        )


async def persist_artifact(
    store: ArtifactStore,
    key: ArtifactKey,
    payload: Mapping[str, Any],
    *,
    warnings: list[StorageWriteWarning] | None = None,
) -> bool:
    """Upsert an artifact, downgrading store failures to a :class:`StorageWriteWarning`."""
    try:
        await store.save(key, payload)
    except ArtifactStoreError as exc:
        warning = StorageWriteWarning(
            request_id=key.request_id,
            kind=key.kind.value,
            version=key.version,
            reason=str(exc) or exc.__class__.__name__,
        )
        logger.warning("artifact_persist_failed", **warning.as_dict())
        increment_storage_write_failure(kind=key.kind.value)
        if warnings is not None:
            warnings.append(warning)
        return False
    return True
