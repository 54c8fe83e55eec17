"""Periodic sweep that stops runner containers left behind by a crash or restart."""

from __future__ import annotations

import asyncio
import logging
import re
from contextlib import suppress
from typing import Protocol

from flowmate.orchestrator.backend.container import ContainerCommandError, ContainerInfo

logger = logging.getLogger(__name__)

DEFAULT_SWEEP_INTERVAL_SECONDS = 60.0

_UNIT_MS = {
    "week": 7 * 86_400_000,
    "day": 86_400_000,
    "hour": 3_600_000,
    "minute": 60_000,
    "second": 1_000,
}
_AMOUNT_RE = re.compile(r"\b(\d+|an?)\s*(week|day|hour|minute|second)s?\b", re.IGNORECASE)


class ContainerInventory(Protocol):
    """Subset of the container backend the reaper needs."""

    async def list_containers(self) -> list[ContainerInfo]: ...

    async def kill(self, worker_id: str) -> None: ...


def parse_running_for(value: str) -> int:
    """Convert a ``ps`` "RunningFor" string (``"2 hours ago"``) into milliseconds.

    Unparseable text counts as zero so that unknown formats are never reaped.
    """

    total = 0
    for amount, unit in _AMOUNT_RE.findall(value):
        count = 1 if amount.lower() in {"a", "an"} else int(amount)
        total += count * _UNIT_MS[unit.lower()]
    return total


class OrphanReaper:
    """Kills ``flowmate-`` containers older than twice the task timeout."""

    def __init__(
        self,
        backend: ContainerInventory,
        *,
        task_timeout_ms: int,
        interval_seconds: float = DEFAULT_SWEEP_INTERVAL_SECONDS,
    ) -> None:
        self._backend = backend
        self._max_age_ms = task_timeout_ms * 2
        self._interval_seconds = interval_seconds
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._loop(), name="orphan-reaper")
        logger.info(
            "Orphan reaper started (interval=%.0fs, max_age=%dms)",
            self._interval_seconds,
            self._max_age_ms,
        )

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task

    async def sweep(self) -> list[str]:
        """Run one pass; returns the names of containers that were stopped."""

        try:
            containers = await self._backend.list_containers()
        except (ContainerCommandError, OSError) as error:
            logger.debug("Container listing failed, skipping sweep: %s", error)
            return []

        killed: list[str] = []
        for container in containers:
            age_ms = parse_running_for(container.running_for)
            if age_ms <= self._max_age_ms:
                continue
            logger.warning(
                "Killing orphan container %s (running for %s)",
                container.name,
                container.running_for,
            )
            await self._backend.kill(container.name)
            killed.append(container.name)
        return killed

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self._interval_seconds)
            try:
                await self.sweep()
            except Exception:
                logger.exception("Orphan container sweep failed")
