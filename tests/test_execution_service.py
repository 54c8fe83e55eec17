from __future__ import annotations

import asyncio
from pathlib import Path

import allure
import pytest
from sqlalchemy.exc import OperationalError

from flowmate.config import LimitsSettings, Settings
from flowmate.ipc import ErrorMessage, ProgressMessage, ResultMessage, TokenUsage
from flowmate.models import (
    ConversationMessage,
    ConversationView,
    ExecutionStatus,
    MessageRole,
    TaskPayload,
    ToolServerConfig,
)
from flowmate.orchestrator.backend import BackendLaunchError, RunCallbacks, RunHandle
from flowmate.orchestrator.errors import (
    BudgetExceededError,
    ExecutionError,
    ExecutionFailedError,
    TaskTimeoutError,
    WorkerCrashedError,
)
from flowmate.orchestrator.execution import (
    STATS_SERVER_NAME,
    ExecutionService,
    stats_server_config,
    truncate_history,
)
from flowmate.storage.repository import FlowmateRepository

pytestmark = [
    allure.epic("Execution Runtime"),
    allure.feature("Execution Lifecycle"),
]

_STATS = ToolServerConfig(command="stats-server")


class FakeBackend:
    """In-memory backend; tests drive the callbacks by hand."""

    def __init__(self, *, launch_error: Exception | None = None, exit_on_kill: bool = True):
        self.launch_error = launch_error
        self.exit_on_kill = exit_on_kill
        self.payloads: list[TaskPayload] = []
        self.callbacks: RunCallbacks | None = None
        self.killed: list[str] = []
        self.launched = asyncio.Event()
        self._exited = asyncio.Event()

    async def launch(self, payload: TaskPayload, callbacks: RunCallbacks) -> RunHandle:
        if self.launch_error is not None:
            raise self.launch_error
        self.payloads.append(payload)
        self.callbacks = callbacks
        self.launched.set()
        return RunHandle(
            worker_id=f"fake-{payload.execution_id}",
            done=asyncio.create_task(self._exited.wait()),
        )

    async def kill(self, worker_id: str) -> None:
        self.killed.append(worker_id)
        if self.exit_on_kill:
            self.exit(None, "SIGTERM")

    async def image_exists(self, image: str) -> bool:
        return True

    def send(self, message) -> None:
        assert self.callbacks is not None
        self.callbacks.on_message(message)

    def exit(self, code: int | None, signal: str | None = None) -> None:
        assert self.callbacks is not None
        self.callbacks.on_exit(code, signal)
        self._exited.set()


def _result(text: str = "done", cost: float = 0.3) -> ResultMessage:
    return ResultMessage(
        text=text,
        cost_usd=cost,
        tokens_used=TokenUsage(input=100, output=50, cache_read=5, cache_write=1),
        duration_ms=1200,
        num_turns=4,
    )


def _service(
    repository: FlowmateRepository,
    backend: FakeBackend,
    settings: Settings,
    **kwargs,
) -> ExecutionService:
    return ExecutionService(
        repository=repository,
        backend=backend,
        settings=settings,
        stats_server=_STATS,
        **kwargs,
    )


async def _start(service: ExecutionService, backend: FakeBackend, conversation, **kwargs):
    task = asyncio.create_task(service.execute(conversation, "do the thing", **kwargs))
    await asyncio.wait_for(backend.launched.wait(), timeout=5)
    return task


@pytest.mark.asyncio
async def test_result_completes_execution(
    repository: FlowmateRepository,
    conversation: ConversationView,
    settings: Settings,
) -> None:
    backend = FakeBackend()
    service = _service(repository, backend, settings)

    task = await _start(service, backend, conversation)
    assert service.active_count == 1
    assert service.cost_tracker.pending_reservations == 1
    backend.send(_result())
    backend.exit(0)
    result = await task

    assert result.text == "done"
    assert result.cost_usd == 0.3
    stored = repository.get_execution(result.execution_id)
    assert stored is not None
    assert stored.status is ExecutionStatus.COMPLETED
    assert stored.container_id == f"fake-{result.execution_id}"
    assert stored.input_tokens == 100
    assert stored.cache_write_tokens == 1
    assert stored.duration_ms == 1200
    assert stored.num_turns == 4
    assert service.active_count == 0
    assert service.cost_tracker.pending_reservations == 0


@pytest.mark.asyncio
async def test_payload_carries_settings_and_stats_server(
    repository: FlowmateRepository,
    conversation: ConversationView,
    settings: Settings,
) -> None:
    backend = FakeBackend()
    service = _service(repository, backend, settings)

    task = await _start(service, backend, conversation)
    backend.send(_result())
    await task

    payload = backend.payloads[0]
    assert payload.prompt == "do the thing"
    assert payload.model == settings.model
    assert payload.working_directory == settings.default_working_directory
    assert payload.tool_servers[STATS_SERVER_NAME] == _STATS
    assert payload.limits.task_timeout_ms == settings.limits.task_timeout_ms


@pytest.mark.asyncio
async def test_error_message_fails_execution(
    repository: FlowmateRepository,
    conversation: ConversationView,
    settings: Settings,
) -> None:
    backend = FakeBackend()
    service = _service(repository, backend, settings)

    task = await _start(service, backend, conversation)
    backend.send(
        ErrorMessage(
            message="error_max_turns",
            cost_usd=0.9,
            tokens_used=TokenUsage(input=1),
            duration_ms=10,
        ),
    )
    backend.exit(1)

    with pytest.raises(ExecutionFailedError, match="error_max_turns") as excinfo:
        await task
    assert excinfo.value.cost_usd == 0.9
    stored = repository.list_executions()[0]
    assert stored.status is ExecutionStatus.FAILED
    assert stored.error_message == "error_max_turns"
    assert stored.cost_usd == 0.9


@pytest.mark.asyncio
async def test_exit_without_result_is_crash(
    repository: FlowmateRepository,
    conversation: ConversationView,
    settings: Settings,
) -> None:
    backend = FakeBackend()
    service = _service(repository, backend, settings)

    task = await _start(service, backend, conversation)
    backend.exit(137, None)

    with pytest.raises(WorkerCrashedError) as excinfo:
        await task
    assert "code=137" in str(excinfo.value)
    assert "containerId=fake-" in str(excinfo.value)
    stored = repository.list_executions()[0]
    assert stored.status is ExecutionStatus.ERROR
    assert stored.error_message == str(excinfo.value)


@pytest.mark.asyncio
async def test_timeout_settles_and_kills_worker(
    repository: FlowmateRepository,
    conversation: ConversationView,
    settings: Settings,
) -> None:
    settings.limits = LimitsSettings(task_timeout_ms=50)
    backend = FakeBackend()
    service = _service(repository, backend, settings)

    task = await _start(service, backend, conversation)

    with pytest.raises(TaskTimeoutError, match="Task timed out"):
        await asyncio.wait_for(task, timeout=5)
    await service.drain(timeout_seconds=1)

    stored = repository.list_executions()[0]
    assert stored.status is ExecutionStatus.TIMEOUT
    assert backend.killed == [f"fake-{stored.id}"]


@pytest.mark.asyncio
async def test_messages_after_settlement_are_ignored(
    repository: FlowmateRepository,
    conversation: ConversationView,
    settings: Settings,
) -> None:
    backend = FakeBackend()
    service = _service(repository, backend, settings)

    task = await _start(service, backend, conversation)
    backend.send(_result("first"))
    backend.send(_result("second", cost=5.0))
    backend.send(
        ErrorMessage(message="late", cost_usd=1.0, tokens_used=TokenUsage(), duration_ms=1),
    )
    backend.exit(1)
    result = await task

    assert result.text == "first"
    stored = repository.get_execution(result.execution_id)
    assert stored is not None
    assert stored.status is ExecutionStatus.COMPLETED
    assert stored.result_text == "first"
    assert stored.cost_usd == 0.3


@pytest.mark.asyncio
async def test_launch_failure_records_error(
    repository: FlowmateRepository,
    conversation: ConversationView,
    settings: Settings,
) -> None:
    backend = FakeBackend(launch_error=BackendLaunchError("no runtime", transient=False))
    service = _service(repository, backend, settings)

    with pytest.raises(BackendLaunchError, match="no runtime"):
        await service.execute(conversation, "prompt")

    stored = repository.list_executions()[0]
    assert stored.status is ExecutionStatus.ERROR
    assert stored.error_message == "no runtime"
    assert service.cost_tracker.pending_reservations == 0


@pytest.mark.asyncio
async def test_failed_worker_bookkeeping_does_not_orphan_execution(
    repository: FlowmateRepository,
    conversation: ConversationView,
    settings: Settings,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    def locked(**_kwargs) -> None:
        raise OperationalError("UPDATE executions", {}, Exception("database is locked"))

    monkeypatch.setattr(repository, "set_execution_container", locked)
    settings.limits = LimitsSettings(task_timeout_ms=50)
    backend = FakeBackend()
    service = _service(repository, backend, settings)

    task = await _start(service, backend, conversation)
    with pytest.raises(TaskTimeoutError):
        await task
    await service.drain(timeout_seconds=1)

    stored = repository.list_executions()[0]
    assert stored.status is ExecutionStatus.TIMEOUT
    assert stored.container_id is None
    assert backend.killed == [f"fake-{stored.id}"]
    assert service.active_count == 0


@pytest.mark.asyncio
async def test_error_before_launch_settles_execution(
    repository: FlowmateRepository,
    conversation: ConversationView,
    settings: Settings,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    def broken(_execution_id: int) -> bool:
        raise RuntimeError("disk gone")

    monkeypatch.setattr(repository, "mark_execution_running", broken)
    backend = FakeBackend()
    service = _service(repository, backend, settings)

    with pytest.raises(RuntimeError, match="disk gone"):
        await service.execute(conversation, "prompt")

    stored = repository.list_executions()[0]
    assert stored.status is ExecutionStatus.ERROR
    assert stored.error_message == "Execution aborted: disk gone"
    assert backend.payloads == []
    assert service.active_count == 0
    assert service.cost_tracker.pending_reservations == 0


@pytest.mark.asyncio
async def test_cancelled_caller_settles_and_kills_worker(
    repository: FlowmateRepository,
    conversation: ConversationView,
    settings: Settings,
) -> None:
    backend = FakeBackend()
    service = _service(repository, backend, settings)
    task = await _start(service, backend, conversation)

    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
    await service.drain(timeout_seconds=1)

    stored = repository.list_executions()[0]
    assert stored.status is ExecutionStatus.ERROR
    assert stored.error_message == "Execution cancelled"
    assert backend.killed == [f"fake-{stored.id}"]
    assert service.active_count == 0
    assert service.cost_tracker.pending_reservations == 0

@pytest.mark.asyncio
async def test_budget_rejection_creates_no_record(
    repository: FlowmateRepository,
    conversation: ConversationView,
    settings: Settings,
) -> None:
    settings.limits = LimitsSettings(daily_budget_limit=1.0, max_budget_per_task=2.0)
    backend = FakeBackend()
    service = _service(repository, backend, settings)

    with pytest.raises(BudgetExceededError, match=r"Remaining: \$1\.00"):
        await service.execute(conversation, "prompt")

    assert repository.list_executions() == []
    assert backend.payloads == []
    assert service.cost_tracker.pending_reservations == 0


@pytest.mark.asyncio
async def test_per_task_cap_never_exceeds_remaining_budget(
    repository: FlowmateRepository,
    conversation: ConversationView,
    settings: Settings,
) -> None:
    settings.limits = LimitsSettings(daily_budget_limit=2.5, max_budget_per_task=2.0)
    backend = FakeBackend()
    service = _service(repository, backend, settings)

    task = await _start(service, backend, conversation)
    backend.send(_result(cost=0.5))
    await task
    backend.launched.clear()
    task = await _start(service, backend, conversation)
    backend.send(_result())
    await task

    assert [payload.limits.max_budget_per_task for payload in backend.payloads] == [2.0, 2.0]
    with pytest.raises(BudgetExceededError, match=r"Remaining: \$1\.70"):
        await service.execute(conversation, "third")


@pytest.mark.asyncio
async def test_history_is_truncated_with_note(
    repository: FlowmateRepository,
    conversation: ConversationView,
    settings: Settings,
) -> None:
    for index in range(25):
        repository.save_message(
            conversation_id=conversation.id,
            role=MessageRole.USER if index % 2 == 0 else MessageRole.ASSISTANT,
            content=f"message {index}",
        )
    backend = FakeBackend()
    service = _service(repository, backend, settings)

    task = await _start(service, backend, conversation)
    backend.send(_result())
    await task

    history = backend.payloads[0].conversation_messages
    assert len(history) == 21
    assert history[0].role is MessageRole.SYSTEM
    assert "5 earlier messages omitted" in history[0].content
    assert history[1].content == "message 5"
    assert history[-1].content == "message 24"


@pytest.mark.asyncio
async def test_progress_is_debounced(
    repository: FlowmateRepository,
    conversation: ConversationView,
    settings: Settings,
) -> None:
    now = [100.0]
    backend = FakeBackend()
    service = _service(repository, backend, settings, clock=lambda: now[0])
    seen: list[str] = []

    async def on_progress(text: str) -> None:
        seen.append(text)

    task = await _start(service, backend, conversation, on_progress=on_progress)
    backend.send(ProgressMessage(text="one"))
    now[0] += 1.0
    backend.send(ProgressMessage(text="two"))
    now[0] += 2.5
    backend.send(ProgressMessage(text="three"))
    backend.send(_result())
    await task
    await service.drain(timeout_seconds=1)

    assert seen == ["one", "three"]


@pytest.mark.asyncio
async def test_failing_progress_callback_does_not_break_execution(
    repository: FlowmateRepository,
    conversation: ConversationView,
    settings: Settings,
) -> None:
    backend = FakeBackend()
    service = _service(repository, backend, settings)

    def on_progress(text: str) -> None:
        raise RuntimeError("chat platform down")

    task = await _start(service, backend, conversation, on_progress=on_progress)
    backend.send(ProgressMessage(text="working"))
    backend.send(_result())

    assert (await task).text == "done"


@pytest.mark.asyncio
async def test_drain_waits_for_inflight_execution(
    repository: FlowmateRepository,
    conversation: ConversationView,
    settings: Settings,
) -> None:
    backend = FakeBackend()
    service = _service(repository, backend, settings)
    task = await _start(service, backend, conversation)

    async def finish_soon() -> None:
        await asyncio.sleep(0.05)
        backend.send(_result())

    finisher = asyncio.create_task(finish_soon())
    await service.drain(timeout_seconds=5)
    await finisher

    assert (await task).text == "done"
    assert backend.killed == []


@pytest.mark.asyncio
async def test_drain_force_kills_stragglers(
    repository: FlowmateRepository,
    conversation: ConversationView,
    settings: Settings,
) -> None:
    backend = FakeBackend(exit_on_kill=False)
    service = _service(repository, backend, settings)
    task = await _start(service, backend, conversation)

    await service.drain(timeout_seconds=0.05)

    with pytest.raises(ExecutionError, match="Killed on shutdown"):
        await task
    stored = repository.list_executions()[0]
    assert stored.status is ExecutionStatus.ERROR
    assert stored.error_message == "Killed on shutdown"
    assert backend.killed == [f"fake-{stored.id}"]


def test_truncate_history_keeps_short_history() -> None:
    history = [ConversationMessage(role=MessageRole.USER, content="hi")]

    assert truncate_history(history, 20) == history


def test_stats_server_config_points_at_database(settings: Settings, tmp_path: Path) -> None:
    config = stats_server_config(settings, python="python3")

    assert config.command == "python3"
    assert config.args[:2] == ("-m", "flowmate.stats.server")
    assert str(tmp_path / "flowmate.db") in config.args
    assert config.args[-2:] == ("--timezone", "UTC")
