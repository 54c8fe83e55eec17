"""Backend interface for launching and supervising worker processes."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass
from typing import Protocol

from flowmate.ipc import IpcMessage
from flowmate.models import TaskPayload


class BackendLaunchError(RuntimeError):
    """Worker could not be started, with retryability hint."""

    def __init__(self, message: str, *, transient: bool) -> None:
        super().__init__(message)
        self.transient = transient


@dataclass(slots=True)
class RunCallbacks:
    """Hooks invoked while a worker runs.

    ``on_message`` fires once per valid side-channel message, in emission order.
    ``on_exit`` fires exactly once, after both output pipes reached EOF and the
    process was reaped, so it always follows the last ``on_message`` call.
    """

    on_message: Callable[[IpcMessage], None]
    on_exit: Callable[[int | None, str | None], None]


@dataclass(slots=True)
class RunHandle:
    """Launched worker: its id and the supervision task."""

    worker_id: str
    done: asyncio.Task[None]


class WorkerBackend(Protocol):
    """Protocol implemented by worker backends."""

    async def launch(self, payload: TaskPayload, callbacks: RunCallbacks) -> RunHandle:
        """Start a worker for ``payload``; returns once the process is spawned."""

    async def kill(self, worker_id: str) -> None:
        """Stop a worker gracefully, then forcibly. Unknown ids are a no-op."""

    async def image_exists(self, image: str) -> bool:
        """Whether the runtime image needed by this backend is available."""
