"""Local subprocess backend for development without a container runtime."""

from __future__ import annotations

import asyncio
import logging
import os
import sys
from collections.abc import Sequence

from flowmate.models import TaskPayload
from flowmate.orchestrator.backend.base import BackendLaunchError, RunCallbacks, RunHandle
from flowmate.orchestrator.backend.stream import (
    STREAM_LIMIT_BYTES,
    PayloadTransport,
    SideChannelReader,
    supervise,
    terminate_process,
)

logger = logging.getLogger(__name__)

DEFAULT_WORKER_COMMAND: tuple[str, ...] = (sys.executable, "-m", "flowmate.runner")

# Set by the agent CLI inside its own sessions; a nested agent refuses to start when it sees it.
_STRIPPED_ENV_VARS = frozenset({"CLAUDECODE"})


class LocalProcessBackend:
    """Run the worker entrypoint as a child process of the orchestrator."""

    def __init__(
        self,
        *,
        worker_command: Sequence[str] = DEFAULT_WORKER_COMMAND,
        kill_grace_seconds: float = 5.0,
        transport: PayloadTransport | None = None,
        stream_limit_bytes: int = STREAM_LIMIT_BYTES,
    ) -> None:
        if not worker_command:
            raise ValueError("worker_command must not be empty.")
        self._worker_command = tuple(worker_command)
        self._kill_grace_seconds = kill_grace_seconds
        self._transport = transport or PayloadTransport()
        self._stream_limit_bytes = stream_limit_bytes
        self._processes: dict[str, asyncio.subprocess.Process] = {}

    @property
    def active_worker_ids(self) -> list[str]:
        return list(self._processes)

    async def launch(self, payload: TaskPayload, callbacks: RunCallbacks) -> RunHandle:
        worker_id = f"local-{payload.execution_id}"
        prepared = self._transport.prepare(payload)
        env = {key: value for key, value in os.environ.items() if key not in _STRIPPED_ENV_VARS}
        env.update(prepared.env())

        try:
            process = await asyncio.create_subprocess_exec(
                *self._worker_command,
                cwd=payload.working_directory,
                env=env,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=self._stream_limit_bytes,
            )
        except FileNotFoundError as error:
            prepared.cleanup()
            raise BackendLaunchError(
                f"Worker command or working directory not found: {error}",
                transient=False,
            ) from error
        except OSError as error:
            prepared.cleanup()
            raise BackendLaunchError(f"Worker failed to start: {error}", transient=True) from error

        self._processes[worker_id] = process
        logger.info("Started local worker %s (pid=%s)", worker_id, process.pid)
        reader = SideChannelReader(worker_id=worker_id, on_message=callbacks.on_message)

        def on_exit(code: int | None, signal: str | None) -> None:
            self._processes.pop(worker_id, None)
            if code != 0:
                logger.error(
                    "Local worker %s exited with code=%s signal=%s; stderr tail:\n%s",
                    worker_id,
                    code,
                    signal,
                    reader.tail() or "<empty>",
                )
            else:
                logger.info("Local worker %s exited cleanly", worker_id)
            callbacks.on_exit(code, signal)

        done = asyncio.create_task(
            supervise(
                process,
                worker_id=worker_id,
                reader=reader,
                on_exit=on_exit,
                cleanup=prepared.cleanup,
            ),
            name=f"supervise-{worker_id}",
        )
        return RunHandle(worker_id=worker_id, done=done)

    async def kill(self, worker_id: str) -> None:
        process = self._processes.get(worker_id)
        if process is None:
            return
        logger.info("Stopping local worker %s", worker_id)
        await terminate_process(process, grace_seconds=self._kill_grace_seconds)

    async def image_exists(self, image: str) -> bool:  # noqa: ARG002
        return True
