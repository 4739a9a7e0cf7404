"""Coordination core for a multi-agent planning pipeline."""

from .orchestration.coordinator import PipelineCoordinator
from .orchestration.store import ArtifactKey, ArtifactKind, InMemoryArtifactStore

__all__ = ["ArtifactKey", "ArtifactKind", "InMemoryArtifactStore", "PipelineCoordinator"]
