from __future__ import annotations

from typing import Any


class PipelineError(RuntimeError):
    """Base class for failures raised by the pipeline coordination core."""


class ValidationError(PipelineError):
    """Raised when an input is malformed or a required field is missing."""


class EmptyScoreSet(ValidationError):
    """Raised when the confidence router receives no agent scores."""


class NotFoundError(PipelineError):
    """Raised when a request, plan or critique cannot be located."""


class DuplicateRequest(PipelineError):
    """Raised when a request id is registered twice."""


class VersionConflict(PipelineError):
    """Raised when two writers race for the same plan version.

    Callers may retry after re-reading the current version.
    """

    retryable = True

    def __init__(self, message: str, *, request_id: str, version: int) -> None:
        super().__init__(message)
        self.request_id = request_id
        self.version = version


class UpstreamError(PipelineError):
    """Raised when the reasoning backend fails or returns an unusable result."""

    def __init__(self, message: str, *, agent: str | None = None, request_id: str | None = None) -> None:
        super().__init__(message)
        self.agent = agent
        self.request_id = request_id

    def context(self) -> dict[str, Any]:
        return {"agent": self.agent, "request_id": self.request_id, "error": str(self)}


class StepTimeout(UpstreamError):
    """Raised when an agent step does not finish within the configured timeout."""

    def __init__(self, message: str, *, timeout: float, agent: str | None = None, request_id: str | None = None) -> None:
        super().__init__(message, agent=agent, request_id=request_id)
        self.timeout = timeout


class NoBasePlan(PipelineError):
    """Raised when a replan is requested for a request that has no plan."""


class ArtifactStoreError(PipelineError):
    """Raised by artifact store backends when a read or write fails."""


class ArtifactExists(ArtifactStoreError):
    """Raised by a conditional insert when the key is already taken."""


class StorageWriteWarning(UserWarning):
    """An artifact could not be persisted; the computed result is still valid.

    Never raised. Instances are collected on results so callers can surface them.
    """

    def __init__(self, *, request_id: str, kind: str, version: int, reason: str) -> None:
        super().__init__(f"failed to persist {kind} v{version} for {request_id}: {reason}")
        self.request_id = request_id
        self.kind = kind
        self.version = version
        self.reason = reason

    def as_dict(self) -> dict[str, Any]:
        return {
            "request_id": self.request_id,
            "kind": self.kind,
            "version": self.version,
            "reason": self.reason,
        }
