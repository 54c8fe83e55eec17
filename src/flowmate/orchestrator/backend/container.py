"""Container backend: each execution runs in a throwaway runner container."""

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass

from flowmate.config import ContainerSettings
from flowmate.models import TaskPayload
from flowmate.orchestrator.backend.base import BackendLaunchError, RunCallbacks, RunHandle
from flowmate.orchestrator.backend.stream import (
    STREAM_LIMIT_BYTES,
    TASK_CONFIG_ENV,
    TASK_CONFIG_FILE_ENV,
    PayloadTransport,
    PreparedPayload,
    SideChannelReader,
    supervise,
)

logger = logging.getLogger(__name__)

CONTAINER_NAME_PREFIX = "flowmate-"
CONTAINER_HOME = "/home/flowmate"
CONTAINER_PAYLOAD_PATH = "/task-config.json"
_CLI_TIMEOUT_SECONDS = 30.0


class ContainerCommandError(RuntimeError):
    """A short-lived container CLI call (stop, ps, inspect) failed."""


@dataclass(slots=True, frozen=True)
class ContainerInfo:
    """One row of ``<runtime> ps`` output."""

    container_id: str
    name: str
    running_for: str


class ContainerBackend:
    """Launch workers with podman, docker or nerdctl."""

    def __init__(
        self,
        settings: ContainerSettings,
        *,
        transport: PayloadTransport | None = None,
        stop_timeout_seconds: int = 5,
    ) -> None:
        self._settings = settings
        self._transport = transport or PayloadTransport()
        self._stop_timeout_seconds = stop_timeout_seconds

    @property
    def command(self) -> str:
        return self._settings.command

    def build_run_args(self, payload: TaskPayload, prepared: PreparedPayload) -> list[str]:
        """Argument vector for ``<runtime> run`` (without the runtime itself)."""

        args = [
            "run",
            "--rm",
            "--name",
            container_name(payload.execution_id),
            "--user",
            f"{os.getuid()}:{os.getgid()}",
            "-e",
            f"HOME={CONTAINER_HOME}",
            "--memory",
            str(self._settings.memory_limit),
            "--cpus",
            f"{self._settings.cpu_limit / 1e9:g}",
            "-e",
            "ANTHROPIC_API_KEY",
        ]
        if prepared.file_path is not None:
            args += [
                "-v",
                f"{prepared.file_path}:{CONTAINER_PAYLOAD_PATH}:ro",
                "-e",
                f"{TASK_CONFIG_FILE_ENV}={CONTAINER_PAYLOAD_PATH}",
            ]
        else:
            args += ["-e", f"{TASK_CONFIG_ENV}={prepared.inline_json}"]
        for directory in payload.allowed_directories:
            args += ["-v", f"{directory}:{directory}"]
        args += ["-w", payload.working_directory, self._settings.runner_image]
        return args

    async def launch(self, payload: TaskPayload, callbacks: RunCallbacks) -> RunHandle:
        name = container_name(payload.execution_id)
        prepared = self._transport.prepare(payload)
        args = self.build_run_args(payload, prepared)

        try:
            process = await asyncio.create_subprocess_exec(
                self.command,
                *args,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=STREAM_LIMIT_BYTES,
            )
        except FileNotFoundError as error:
            prepared.cleanup()
            raise BackendLaunchError(
                f"Container command not found: {self.command}",
                transient=False,
            ) from error
        except OSError as error:
            prepared.cleanup()
            raise BackendLaunchError(
                f"Container failed to start: {error}",
                transient=True,
            ) from error

        logger.info("Started container %s (image=%s)", name, self._settings.runner_image)
        reader = SideChannelReader(worker_id=name, on_message=callbacks.on_message)

        def on_exit(code: int | None, signal: str | None) -> None:
            if code != 0:
                logger.error(
                    "Container %s exited with code=%s signal=%s; stderr tail:\n%s",
                    name,
                    code,
                    signal,
                    reader.tail() or "<empty>",
                )
            callbacks.on_exit(code, signal)

        done = asyncio.create_task(
            supervise(
                process,
                worker_id=name,
                reader=reader,
                on_exit=on_exit,
                cleanup=prepared.cleanup,
            ),
            name=f"supervise-{name}",
        )
        return RunHandle(worker_id=name, done=done)

    async def kill(self, worker_id: str) -> None:
        logger.info("Stopping container %s", worker_id)
        try:
            await self._run_cli("stop", f"--time={self._stop_timeout_seconds}", worker_id)
        except (ContainerCommandError, OSError) as error:
            # Already exited and removed by --rm.
            logger.debug("Stop of container %s failed: %s", worker_id, error)

    async def image_exists(self, image: str) -> bool:
        try:
            await self._run_cli("image", "inspect", image)
        except ContainerCommandError:
            return False
        except OSError:
            logger.warning("Container command %s is not available", self.command)
            return False
        return True

    async def list_containers(self, prefix: str = CONTAINER_NAME_PREFIX) -> list[ContainerInfo]:
        """Running containers whose name starts with ``prefix``."""

        output = await self._run_cli(
            "ps",
            "--filter",
            f"name={prefix}",
            "--format",
            "{{.ID}}\t{{.Names}}\t{{.RunningFor}}",
        )
        containers: list[ContainerInfo] = []
        for line in output.splitlines():
            parts = line.strip().split("\t")
            if len(parts) != 3 or not parts[1].startswith(prefix):
                continue
            containers.append(
                ContainerInfo(container_id=parts[0], name=parts[1], running_for=parts[2]),
            )
        return containers

    async def _run_cli(self, *args: str) -> str:
        process = await asyncio.create_subprocess_exec(
            self.command,
            *args,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(),
                timeout=_CLI_TIMEOUT_SECONDS,
            )
        except TimeoutError as error:
            process.kill()
            await process.wait()
            raise ContainerCommandError(
                f"{self.command} {args[0]} timed out after {_CLI_TIMEOUT_SECONDS:.0f}s",
            ) from error
        if process.returncode != 0:
            raise ContainerCommandError(
                f"{self.command} {' '.join(args[:2])} exited with {process.returncode}: "
                f"{stderr.decode('utf-8', errors='replace').strip()}",
            )
        return stdout.decode("utf-8", errors="replace")


def container_name(execution_id: int) -> str:
    return f"{CONTAINER_NAME_PREFIX}{execution_id}"
