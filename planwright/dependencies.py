from __future__ import annotations

from collections.abc import AsyncIterator

from fastapi import Depends

from .core.config import Settings, get_settings
from .orchestration.coordinator import PipelineCoordinator

_coordinator_singleton: PipelineCoordinator | None = None


def get_coordinator_singleton(settings: Settings) -> PipelineCoordinator:
    global _coordinator_singleton
    if _coordinator_singleton is None:
        _coordinator_singleton = PipelineCoordinator.from_settings(settings)
    return _coordinator_singleton


def set_coordinator(coordinator: PipelineCoordinator | None) -> None:
    """Replace the process-wide coordinator (``None`` resets it)."""
    global _coordinator_singleton
    _coordinator_singleton = coordinator


async def get_app_settings() -> AsyncIterator[Settings]:
    yield get_settings()


async def get_coordinator(
    settings: Settings = Depends(get_app_settings),
) -> AsyncIterator[PipelineCoordinator]:
    yield get_coordinator_singleton(settings)
