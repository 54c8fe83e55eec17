"""Worker I/O shared by all backends: payload hand-off and side-channel supervision."""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import tempfile
from collections import deque
from collections.abc import Callable
from contextlib import suppress
from dataclasses import dataclass
from pathlib import Path

from flowmate.ipc import IpcMessage, LineKind, decode_side_channel_line
from flowmate.models import TaskPayload

logger = logging.getLogger(__name__)

PAYLOAD_FILE_THRESHOLD_BYTES = 128 * 1024
DIAGNOSTIC_TAIL_BYTES = 10 * 1024
STREAM_LIMIT_BYTES = 16 * 1024 * 1024

TASK_CONFIG_ENV = "TASK_CONFIG"
TASK_CONFIG_FILE_ENV = "TASK_CONFIG_FILE"


@dataclass(slots=True)
class PreparedPayload:
    """Serialized payload, either inline or spilled to a temp file."""

    inline_json: str | None = None
    file_path: Path | None = None

    def env(self, *, file_path: str | None = None) -> dict[str, str]:
        """Environment variables pointing the worker at its payload.

        ``file_path`` overrides the path the worker sees (e.g. a container mount).
        """

        if self.file_path is not None:
            return {TASK_CONFIG_FILE_ENV: file_path or str(self.file_path)}
        return {TASK_CONFIG_ENV: self.inline_json or ""}

    def cleanup(self) -> None:
        if self.file_path is None:
            return
        try:
            self.file_path.unlink()
        except FileNotFoundError:
            pass
        except OSError:
            logger.warning("Failed to remove payload file %s", self.file_path, exc_info=True)


class PayloadTransport:
    """Chooses between inline and file hand-off based on payload size.

    Environment variables have platform size limits, so large payloads (long
    history, image attachments) go through a temp file instead.
    """

    def __init__(
        self,
        *,
        threshold_bytes: int = PAYLOAD_FILE_THRESHOLD_BYTES,
        temp_dir: Path | None = None,
    ) -> None:
        self._threshold_bytes = threshold_bytes
        self._temp_dir = temp_dir

    def prepare(self, payload: TaskPayload) -> PreparedPayload:
        serialized = payload.to_json()
        if len(serialized.encode("utf-8")) <= self._threshold_bytes:
            return PreparedPayload(inline_json=serialized)

        directory = self._temp_dir or Path(tempfile.gettempdir())
        path = directory / f"flowmate-task-{payload.execution_id}.json"
        _write_private(path, serialized)
        logger.debug(
            "Payload for execution %s is %d bytes, passing via %s",
            payload.execution_id,
            len(serialized),
            path,
        )
        return PreparedPayload(file_path=path)


def _write_private(path: Path, text: str) -> None:
    """Create ``path`` readable by the owner only; a leftover file is replaced."""

    flags = os.O_CREAT | os.O_WRONLY | os.O_EXCL
    try:
        fd = os.open(path, flags, 0o600)
    except FileExistsError:
        logger.warning("Replacing stale payload file %s", path)
        path.unlink()
        fd = os.open(path, flags, 0o600)
    with os.fdopen(fd, "w", encoding="utf-8") as handle:
        handle.write(text)


class SideChannelReader:
    """Turns worker stderr lines into IPC messages and a diagnostic tail."""

    def __init__(
        self,
        *,
        worker_id: str,
        on_message: Callable[[IpcMessage], None],
        tail_bytes: int = DIAGNOSTIC_TAIL_BYTES,
    ) -> None:
        self._worker_id = worker_id
        self._on_message = on_message
        self._tail_bytes = tail_bytes
        self._tail: deque[str] = deque()
        self._tail_size = 0

    def feed(self, line: str) -> None:
        decoded = decode_side_channel_line(line)
        if decoded.kind is LineKind.MESSAGE and decoded.message is not None:
            try:
                self._on_message(decoded.message)
            except Exception:
                logger.exception("Message handler failed for worker %s", self._worker_id)
            return
        if decoded.kind is LineKind.MALFORMED:
            logger.warning(
                "Discarding malformed side-channel line from %s: %s",
                self._worker_id,
                decoded.raw[:500],
            )
            return
        if not decoded.raw:
            return
        logger.debug("[%s] %s", self._worker_id, decoded.raw)
        self._remember(decoded.raw)

    def tail(self) -> str:
        """Most recent diagnostic lines, bounded by ``tail_bytes``."""

        return "\n".join(self._tail)

    async def consume(self, stream: asyncio.StreamReader) -> None:
        while True:
            try:
                raw = await stream.readline()
            except ValueError:
                # readline already dropped the overlong chunk from its buffer.
                logger.warning(
                    "Discarding side-channel line from %s longer than the stream limit",
                    self._worker_id,
                )
                continue
            if not raw:
                return
            self.feed(raw.decode("utf-8", errors="replace"))

    def _remember(self, line: str) -> None:
        line = line[-self._tail_bytes :]
        self._tail.append(line)
        self._tail_size += len(line) + 1
        while self._tail_size > self._tail_bytes and len(self._tail) > 1:
            dropped = self._tail.popleft()
            self._tail_size -= len(dropped) + 1


def describe_returncode(returncode: int | None) -> tuple[int | None, str | None]:
    """Split a subprocess return code into ``(code, signal name)``."""

    if returncode is None or returncode >= 0:
        return returncode, None
    try:
        return None, signal.Signals(-returncode).name
    except ValueError:
        return None, f"SIG{-returncode}"


async def supervise(  # noqa: PLR0913
    process: asyncio.subprocess.Process,
    *,
    worker_id: str,
    reader: SideChannelReader,
    on_exit: Callable[[int | None, str | None], None],
    cleanup: Callable[[], None] | None = None,
) -> None:
    """Drain both pipes, reap the process, then report the exit exactly once."""

    returncode: int | None = None
    try:
        streams = []
        if process.stdout is not None:
            streams.append(_drain_stdout(process.stdout, worker_id))
        if process.stderr is not None:
            streams.append(reader.consume(process.stderr))
        try:
            await asyncio.gather(*streams)
        except Exception:
            logger.exception("Lost output of worker %s, stopping it", worker_id)
            with suppress(ProcessLookupError):
                process.kill()
        returncode = await process.wait()
    finally:
        if cleanup is not None:
            cleanup()
        code, signal_name = describe_returncode(returncode)
        try:
            on_exit(code, signal_name)
        except Exception:
            logger.exception("Exit handler failed for worker %s", worker_id)


async def terminate_process(
    process: asyncio.subprocess.Process,
    *,
    grace_seconds: float,
) -> None:
    """SIGTERM, wait ``grace_seconds``, then SIGKILL."""

    if process.returncode is not None:
        return
    try:
        process.terminate()
    except ProcessLookupError:
        return
    try:
        await asyncio.wait_for(process.wait(), timeout=grace_seconds)
    except TimeoutError:
        logger.warning("Process %s ignored SIGTERM, sending SIGKILL", process.pid)
        with suppress(ProcessLookupError):
            process.kill()
        await process.wait()


async def _drain_stdout(stream: asyncio.StreamReader, worker_id: str) -> None:
    while True:
        raw = await stream.readline()
        if not raw:
            return
        line = raw.decode("utf-8", errors="replace").rstrip()
        if line:
            logger.debug("[%s stdout] %s", worker_id, line)
