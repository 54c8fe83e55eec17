"""Execution service: budget admission, worker launch and exactly-once settlement."""

from __future__ import annotations

import asyncio
import inspect
import logging
import sys
import time
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from functools import partial
from typing import Any

from sqlalchemy.exc import SQLAlchemyError

from flowmate.config import Settings
from flowmate.ipc import ErrorMessage, IpcMessage, ProgressMessage, ResultMessage, TokenUsage
from flowmate.models import (
    Attachment,
    ConversationMessage,
    ConversationView,
    ExecutionFinish,
    ExecutionResult,
    ExecutionStatus,
    MessageRole,
    TaskLimits,
    TaskPayload,
    ToolServerConfig,
)
from flowmate.orchestrator.backend.base import RunCallbacks, WorkerBackend
from flowmate.orchestrator.cost_tracker import CostTracker
from flowmate.orchestrator.errors import (
    BudgetExceededError,
    ExecutionError,
    ExecutionFailedError,
    TaskTimeoutError,
    WorkerCrashedError,
)
from flowmate.storage.common import utc_now
from flowmate.storage.repository import FlowmateRepository

logger = logging.getLogger(__name__)

PROGRESS_DEBOUNCE_SECONDS = 3.0
DEFAULT_DRAIN_TIMEOUT_SECONDS = 10.0
STATS_SERVER_NAME = "flowmate"

ProgressCallback = Callable[[str], Awaitable[None] | None]


def truncate_history(
    history: Sequence[ConversationMessage],
    max_messages: int,
) -> list[ConversationMessage]:
    """Keep the ``max_messages`` most recent entries behind an omission note."""

    if len(history) <= max_messages:
        return list(history)
    omitted = len(history) - max_messages
    note = ConversationMessage(
        role=MessageRole.SYSTEM,
        content=f"[{omitted} earlier messages omitted for context window efficiency]",
    )
    return [note, *history[-max_messages:]]


def stats_server_config(settings: Settings, *, python: str = sys.executable) -> ToolServerConfig:
    """Read-only statistics tool server injected into every task."""

    return ToolServerConfig(
        command=python,
        args=(
            "-m",
            "flowmate.stats.server",
            "--db",
            str(settings.db_path.resolve()),
            "--budget",
            str(settings.limits.daily_budget_limit),
            "--timezone",
            settings.timezone,
        ),
    )


@dataclass(slots=True)
class _InFlight:
    execution_id: int
    future: asyncio.Future[ExecutionResult]
    on_progress: ProgressCallback | None
    started_monotonic: float
    worker_id: str | None = None
    done: asyncio.Task[None] | None = None
    timer: asyncio.TimerHandle | None = None
    settled: bool = False
    last_progress_at: float | None = None


class ExecutionService:
    """Turns prompts into supervised worker executions.

    Every execution ends in exactly one terminal state. Three sources race to
    decide it: a result/error message from the worker, the timeout timer, and
    the worker's exit. Whichever reaches ``_settle`` first writes the row and
    resolves the caller's future; the others are ignored.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: FlowmateRepository,
        backend: WorkerBackend,
        settings: Settings,
        cost_tracker: CostTracker | None = None,
        stats_server: ToolServerConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._repository = repository
        self._backend = backend
        self._settings = settings
        self._cost_tracker = cost_tracker or CostTracker(repository, settings.timezone)
        self._stats_server = stats_server or stats_server_config(settings)
        self._clock = clock
        self._active: dict[int, _InFlight] = {}
        self._background: set[asyncio.Task[Any]] = set()

    @property
    def cost_tracker(self) -> CostTracker:
        return self._cost_tracker

    @property
    def active_count(self) -> int:
        return len(self._active)

    async def execute(
        self,
        conversation: ConversationView,
        prompt: str,
        *,
        attachments: Sequence[Attachment] | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> ExecutionResult:
        """Run one prompt to completion.

        Raises ``BudgetExceededError`` before any record is created when the
        daily budget cannot cover another task, and an ``ExecutionError``
        subclass for failed, timed-out or crashed executions.
        """

        limits = self._settings.limits
        check = self._cost_tracker.check_budget(
            limits.daily_budget_limit,
            limits.max_budget_per_task,
        )
        if not check.allowed:
            raise BudgetExceededError(check.remaining)

        release = self._cost_tracker.reserve()
        try:
            return await self._run(
                conversation=conversation,
                prompt=prompt,
                attachments=list(attachments or []),
                on_progress=on_progress,
                remaining_budget=check.remaining,
            )
        finally:
            release()

    async def drain(self, timeout_seconds: float = DEFAULT_DRAIN_TIMEOUT_SECONDS) -> None:
        """Wait for in-flight executions, force-killing whatever is left at the deadline."""

        pending = list(self._active.values())
        if pending:
            logger.info(
                "Waiting up to %.1fs for %d in-flight execution(s)",
                timeout_seconds,
                len(pending),
            )
            await asyncio.wait([state.future for state in pending], timeout=timeout_seconds)

        for state in list(self._active.values()):
            if state.settled:
                continue
            logger.warning(
                "Force-killed execution on shutdown: execution=%s worker=%s",
                state.execution_id,
                state.worker_id,
            )
            if state.worker_id is not None:
                try:
                    await self._backend.kill(state.worker_id)
                except Exception:
                    logger.exception("Failed to kill worker %s", state.worker_id)
            if state.done is not None and not state.done.done():
                await asyncio.wait([state.done], timeout=1.0)
            if state.settled:
                continue
            self._settle(
                state,
                self._finish(state, ExecutionStatus.ERROR, error_message="Killed on shutdown"),
                error=ExecutionError("Killed on shutdown"),
            )

        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)

    async def _run(
        self,
        *,
        conversation: ConversationView,
        prompt: str,
        attachments: list[Attachment],
        on_progress: ProgressCallback | None,
        remaining_budget: float,
    ) -> ExecutionResult:
        limits = self._settings.limits
        history = truncate_history(
            self._repository.get_conversation_history(conversation.id),
            limits.max_history_messages,
        )
        execution = self._repository.create_execution(
            conversation_id=conversation.id,
            model=self._settings.model,
            prompt=prompt,
        )

        loop = asyncio.get_running_loop()
        state = _InFlight(
            execution_id=execution.id,
            future=loop.create_future(),
            on_progress=on_progress,
            started_monotonic=self._clock(),
        )
        self._active[execution.id] = state
        logger.info(
            "Execution %s started for conversation %s (history=%d, attachments=%d)",
            execution.id,
            conversation.thread_key,
            len(history),
            len(attachments),
        )

        try:
            self._repository.mark_execution_running(execution.id)
            payload = self._build_payload(
                execution_id=execution.id,
                history=history,
                prompt=prompt,
                attachments=attachments,
                remaining_budget=remaining_budget,
            )
            try:
                handle = await self._backend.launch(
                    payload,
                    RunCallbacks(
                        on_message=partial(self._on_message, state),
                        on_exit=partial(self._on_exit, state),
                    ),
                )
            except Exception as error:
                logger.exception("Failed to launch worker for execution %s", execution.id)
                self._settle(
                    state,
                    self._finish(state, ExecutionStatus.ERROR, error_message=str(error)),
                    error=error,
                )
            else:
                state.worker_id = handle.worker_id
                state.done = handle.done
                if not state.settled:
                    state.timer = loop.call_later(
                        limits.task_timeout_ms / 1000,
                        self._on_timeout,
                        state,
                    )
                self._record_worker(state)
            return await state.future
        except BaseException as error:
            if not state.settled:
                self._abort(state, error)
            raise
        finally:
            self._active.pop(execution.id, None)

    def _record_worker(self, state: _InFlight) -> None:
        if state.worker_id is None:
            return
        try:
            self._repository.set_execution_container(
                execution_id=state.execution_id,
                container_id=state.worker_id,
            )
        except SQLAlchemyError:
            logger.exception(
                "Failed to record worker %s for execution %s",
                state.worker_id,
                state.execution_id,
            )

    def _abort(self, state: _InFlight, error: BaseException) -> None:
        """Settle an execution whose caller is leaving early and stop its worker."""

        if isinstance(error, asyncio.CancelledError):
            reason = "Execution cancelled"
        else:
            reason = f"Execution aborted: {error}"
        logger.error("Execution %s: %s", state.execution_id, reason)
        self._settle(state, self._finish(state, ExecutionStatus.ERROR, error_message=reason))
        if not state.future.done():
            state.future.cancel()
        if state.worker_id is not None:
            self._spawn(self._backend.kill(state.worker_id), name=f"kill-{state.worker_id}")

    def _build_payload(
        self,
        *,
        execution_id: int,
        history: list[ConversationMessage],
        prompt: str,
        attachments: list[Attachment],
        remaining_budget: float,
    ) -> TaskPayload:
        settings = self._settings
        tool_servers = {
            name: ToolServerConfig(command=server.command, args=server.args, env=dict(server.env))
            for name, server in settings.mcp_servers.items()
        }
        tool_servers[STATS_SERVER_NAME] = self._stats_server
        return TaskPayload(
            execution_id=execution_id,
            model=settings.model,
            conversation_messages=history,
            prompt=prompt,
            working_directory=settings.default_working_directory,
            allowed_directories=list(settings.allowed_directories),
            tool_servers=tool_servers,
            limits=TaskLimits(
                max_budget_per_task=min(settings.limits.max_budget_per_task, remaining_budget),
                max_turns_per_task=settings.limits.max_turns_per_task,
                task_timeout_ms=settings.limits.task_timeout_ms,
            ),
            tools=list(settings.tools),
            skills_enabled=settings.skills_enabled,
            attachments=attachments,
        )

    def _on_message(self, state: _InFlight, message: IpcMessage) -> None:
        if state.settled:
            logger.debug(
                "Ignoring %s for settled execution %s",
                type(message).__name__,
                state.execution_id,
            )
            return
        if isinstance(message, ProgressMessage):
            self._forward_progress(state, message.text)
        elif isinstance(message, ResultMessage):
            self._settle(
                state,
                self._finish(
                    state,
                    ExecutionStatus.COMPLETED,
                    result_text=message.text,
                    cost_usd=message.cost_usd,
                    usage=message.tokens_used,
                    duration_ms=message.duration_ms,
                    num_turns=message.num_turns,
                ),
                result=ExecutionResult(
                    text=message.text,
                    cost_usd=message.cost_usd,
                    execution_id=state.execution_id,
                ),
            )
        elif isinstance(message, ErrorMessage):
            self._settle(
                state,
                self._finish(
                    state,
                    ExecutionStatus.FAILED,
                    error_message=message.message,
                    cost_usd=message.cost_usd,
                    usage=message.tokens_used,
                    duration_ms=message.duration_ms,
                    num_turns=message.num_turns,
                ),
                error=ExecutionFailedError(message.message, cost_usd=message.cost_usd),
            )

    def _on_exit(self, state: _InFlight, code: int | None, signal: str | None) -> None:
        if state.settled:
            return
        error = WorkerCrashedError(code=code, signal=signal, worker_id=state.worker_id)
        logger.error("Execution %s: %s", state.execution_id, error)
        self._settle(
            state,
            self._finish(state, ExecutionStatus.ERROR, error_message=str(error)),
            error=error,
        )

    def _on_timeout(self, state: _InFlight) -> None:
        state.timer = None
        if state.settled:
            return
        timeout_ms = self._settings.limits.task_timeout_ms
        logger.warning("Execution %s timed out after %d ms", state.execution_id, timeout_ms)
        error = TaskTimeoutError()
        self._settle(
            state,
            self._finish(state, ExecutionStatus.TIMEOUT, error_message=str(error)),
            error=error,
        )
        if state.worker_id is not None:
            self._spawn(self._backend.kill(state.worker_id), name=f"kill-{state.worker_id}")

    def _forward_progress(self, state: _InFlight, text: str) -> None:
        if state.on_progress is None:
            return
        now = self._clock()
        if (
            state.last_progress_at is not None
            and now - state.last_progress_at < PROGRESS_DEBOUNCE_SECONDS
        ):
            return
        state.last_progress_at = now
        try:
            outcome = state.on_progress(text)
        except Exception:
            logger.exception("Progress callback failed for execution %s", state.execution_id)
            return
        if inspect.isawaitable(outcome):
            self._spawn(outcome, name=f"progress-{state.execution_id}")

    def _finish(  # noqa: PLR0913
        self,
        state: _InFlight,
        status: ExecutionStatus,
        *,
        result_text: str | None = None,
        error_message: str | None = None,
        cost_usd: float | None = None,
        usage: TokenUsage | None = None,
        duration_ms: int | None = None,
        num_turns: int | None = None,
    ) -> ExecutionFinish:
        if duration_ms is None:
            duration_ms = int((self._clock() - state.started_monotonic) * 1000)
        return ExecutionFinish(
            status=status,
            finished_at=utc_now(),
            result_text=result_text,
            error_message=error_message,
            cost_usd=cost_usd,
            input_tokens=usage.input if usage else None,
            output_tokens=usage.output if usage else None,
            cache_read_tokens=usage.cache_read if usage else None,
            cache_write_tokens=usage.cache_write if usage else None,
            duration_ms=duration_ms,
            num_turns=num_turns,
        )

    def _settle(
        self,
        state: _InFlight,
        finish: ExecutionFinish,
        *,
        result: ExecutionResult | None = None,
        error: BaseException | None = None,
    ) -> bool:
        if state.settled:
            logger.debug(
                "Execution %s already settled, ignoring %s",
                state.execution_id,
                finish.status.value,
            )
            return False
        state.settled = True
        if state.timer is not None:
            state.timer.cancel()
            state.timer = None

        try:
            self._repository.finish_execution(execution_id=state.execution_id, finish=finish)
        except SQLAlchemyError:
            logger.exception("Failed to persist terminal state of execution %s", state.execution_id)

        logger.info(
            "Execution %s settled: status=%s cost=%s duration_ms=%s",
            state.execution_id,
            finish.status.value,
            finish.cost_usd,
            finish.duration_ms,
        )
        if not state.future.done():
            if error is not None:
                state.future.set_exception(error)
            elif result is not None:
                state.future.set_result(result)
        return True

    def _spawn(self, awaitable: Awaitable[Any], *, name: str) -> None:
        task = asyncio.ensure_future(awaitable)
        task.set_name(name)
        self._background.add(task)
        task.add_done_callback(self._on_background_done)

    def _on_background_done(self, task: asyncio.Task[Any]) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error("Background task %s failed: %s", task.get_name(), error, exc_info=error)


__all__ = [
    "DEFAULT_DRAIN_TIMEOUT_SECONDS",
    "PROGRESS_DEBOUNCE_SECONDS",
    "ExecutionService",
    "ProgressCallback",
    "stats_server_config",
    "truncate_history",
]
