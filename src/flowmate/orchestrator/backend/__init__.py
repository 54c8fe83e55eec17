"""Worker backend implementations."""

from __future__ import annotations

from flowmate.config import Settings
from flowmate.orchestrator.backend.base import (
    BackendLaunchError,
    RunCallbacks,
    RunHandle,
    WorkerBackend,
)
from flowmate.orchestrator.backend.container import ContainerBackend
from flowmate.orchestrator.backend.local import LocalProcessBackend


def build_backend(settings: Settings) -> ContainerBackend | LocalProcessBackend:
    """Local subprocess workers in dev mode, containers otherwise."""

    if settings.dev_mode:
        return LocalProcessBackend()
    return ContainerBackend(settings.container)


__all__ = [
    "BackendLaunchError",
    "ContainerBackend",
    "LocalProcessBackend",
    "RunCallbacks",
    "RunHandle",
    "WorkerBackend",
    "build_backend",
]
