"""CLI controllers: build services from settings and run one command."""

from __future__ import annotations

import asyncio
import logging
import signal
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from flowmate.config import Settings
from flowmate.logging_config import setup_logging
from flowmate.models import ConversationView, MessageRole
from flowmate.orchestrator.backend import (
    BackendLaunchError,
    ContainerBackend,
    LocalProcessBackend,
    build_backend,
)
from flowmate.orchestrator.cleanup import OrphanReaper
from flowmate.orchestrator.errors import ExecutionError
from flowmate.orchestrator.execution import (
    DEFAULT_DRAIN_TIMEOUT_SECONDS,
    ExecutionService,
    stats_server_config,
)
from flowmate.stats.queries import StatsQueries
from flowmate.storage.repository import FlowmateRepository
from flowmate.timezone import parse_day

logger = logging.getLogger(__name__)

CLI_CHANNEL = "dev-cli"
CLI_USER = "dev-user"
CLI_PROGRESS_PREVIEW_LIMIT = 120
CONTAINER_PYTHON = "python"


@dataclass(slots=True)
class ServeCommand:
    """CLI input for the Slack bot."""

    db_path: Path | None
    verbose: bool


@dataclass(slots=True)
class ChatCommand:
    """CLI input for the local chat loop."""

    db_path: Path | None
    prompt: str | None
    verbose: bool


@dataclass(slots=True)
class StatsDailyCommand:
    db_path: Path | None
    day: str | None


@dataclass(slots=True)
class StatsHistoryCommand:
    db_path: Path | None
    days: int


@dataclass(slots=True)
class StatsExecutionsCommand:
    db_path: Path | None
    limit: int
    status: str | None
    since: str | None


@dataclass(slots=True)
class StatsModelsCommand:
    db_path: Path | None
    since: str | None


@dataclass(slots=True)
class ImageCheckCommand:
    image: str | None


@dataclass(slots=True)
class ImageCheckResult:
    lines: list[str]
    found: bool


class FlowmateCliController:
    """Coordinates bot, chat, statistics and maintenance CLI operations."""

    def serve(self, command: ServeCommand) -> None:
        settings = Settings.from_env(db_path=command.db_path)
        settings.validate()
        settings.validate_for_slack()
        setup_logging(settings.log_dir, verbose=command.verbose)
        asyncio.run(_serve(settings))

    def chat(
        self,
        command: ChatCommand,
        *,
        read_prompt: Callable[[], str | None],
        echo: Callable[[str], None],
    ) -> None:
        """One-shot when ``command.prompt`` is set, otherwise loop until ``read_prompt`` returns None."""

        settings = Settings.from_env(db_path=command.db_path)
        settings.dev_mode = True
        settings.validate()
        setup_logging(settings.log_dir, verbose=command.verbose)
        with _repository(settings) as repository:
            service = ExecutionService(
                repository=repository,
                backend=LocalProcessBackend(),
                settings=settings,
                stats_server=stats_server_config(settings),
            )
            asyncio.run(
                _chat(
                    repository=repository,
                    service=service,
                    prompt=command.prompt,
                    read_prompt=read_prompt,
                    echo=echo,
                ),
            )

    def stats_daily(self, command: StatsDailyCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _stats(settings) as queries:
            stats = queries.daily_stats(parse_day(command.day) if command.day else None)
        average = f"{stats.avg_duration_ms} ms" if stats.avg_duration_ms is not None else "n/a"
        return [
            f"Date: {stats.day.isoformat()} ({settings.timezone})",
            f"Cost: ${stats.total_cost_usd:.4f} of ${stats.daily_budget_limit:.2f} "
            f"(remaining ${stats.remaining_budget:.2f})",
            f"Executions: {stats.total_executions}",
            f"Average duration: {average}",
        ]

    def stats_history(self, command: StatsHistoryCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _stats(settings) as queries:
            history = queries.cost_history(command.days)
        return [
            f"{entry.day.isoformat()}  ${entry.total_cost_usd:>9.4f}  "
            f"executions={entry.total_executions}"
            for entry in history
        ]

    def stats_executions(self, command: StatsExecutionsCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _stats(settings) as queries:
            rows = queries.execution_history(
                limit=command.limit,
                status=command.status,
                since=parse_day(command.since) if command.since else None,
            )
        if not rows:
            return ["No executions found."]
        return [
            f"#{row.id} {row.status:<9} {row.model or '-'} "
            f"cost=${row.cost_usd or 0.0:.4f} duration_ms={row.duration_ms} "
            f"started_at={row.started_at} prompt={row.prompt!r}"
            for row in rows
        ]

    def stats_models(self, command: StatsModelsCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _stats(settings) as queries:
            rows = queries.model_usage(parse_day(command.since) if command.since else None)
        if not rows:
            return ["No finished executions in range."]
        return [
            f"{row.model or '-'}: executions={row.execution_count} "
            f"cost=${row.total_cost_usd:.4f} avg_duration_ms={row.avg_duration_ms} "
            f"tokens_in={row.total_input_tokens} tokens_out={row.total_output_tokens}"
            for row in rows
        ]

    def image_check(self, command: ImageCheckCommand) -> ImageCheckResult:
        settings = Settings.from_env()
        image = command.image or settings.container.runner_image
        backend = ContainerBackend(settings.container)
        found = asyncio.run(backend.image_exists(image))
        if found:
            return ImageCheckResult(
                lines=[f"Runner image {image} is available ({settings.container.command})."],
                found=True,
            )
        return ImageCheckResult(
            lines=[f"Runner image {image} not found ({settings.container.command})."],
            found=False,
        )


async def _serve(settings: Settings) -> None:
    # Imported here so the chat and stats commands do not need the Slack stack.
    from slack_bolt.adapter.socket_mode.async_handler import AsyncSocketModeHandler

    from flowmate.chat.handler import ChatMessageHandler
    from flowmate.slack.app import create_slack_app, register_handlers
    from flowmate.slack.client import SlackChatClient

    logger.info("Starting FlowMate orchestrator...")
    repository = FlowmateRepository(settings.db_path)
    repository.init_schema()
    logger.info("Database initialized at %s", settings.db_path)

    backend = build_backend(settings)
    reaper: OrphanReaper | None = None
    if isinstance(backend, ContainerBackend):
        image = settings.container.runner_image
        if not await backend.image_exists(image):
            logger.warning("Runner image %s not found. Build it before serving tasks.", image)
        reaper = OrphanReaper(backend, task_timeout_ms=settings.limits.task_timeout_ms)
        stats_server = stats_server_config(settings, python=CONTAINER_PYTHON)
    else:
        logger.info("Dev mode: using local worker processes (no container)")
        stats_server = stats_server_config(settings)

    service = ExecutionService(
        repository=repository,
        backend=backend,
        settings=settings,
        stats_server=stats_server,
    )
    app, bot_user_id = await create_slack_app(settings)
    handler = ChatMessageHandler(
        repository=repository,
        execution_service=service,
        client=SlackChatClient(app.client),
    )
    register_handlers(app, handler=handler, bot_user_id=bot_user_id, settings=settings)

    stop_requested = asyncio.Event()
    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(signum, stop_requested.set)

    socket_handler = AsyncSocketModeHandler(app, settings.slack.app_token)
    if reaper is not None:
        reaper.start()
    await socket_handler.connect_async()
    logger.info("FlowMate orchestrator is running")
    try:
        await stop_requested.wait()
    finally:
        logger.info("Shutting down...")
        if reaper is not None:
            await reaper.stop()
        await socket_handler.close_async()
        await service.drain(DEFAULT_DRAIN_TIMEOUT_SECONDS)
        repository.close()
        logger.info("Shutdown complete")


async def _chat(
    *,
    repository: FlowmateRepository,
    service: ExecutionService,
    prompt: str | None,
    read_prompt: Callable[[], str | None],
    echo: Callable[[str], None],
) -> None:
    conversation = repository.get_or_create_conversation(
        channel_id=CLI_CHANNEL,
        thread_ts=f"cli-{int(time.time() * 1000)}",
        user_id=CLI_USER,
    )
    if prompt:
        await _run_prompt(repository, service, conversation, prompt, echo)
        return

    echo("FlowMate chat (type 'exit' or press Ctrl-D to quit)\n")
    while True:
        line = await asyncio.to_thread(read_prompt)
        if line is None:
            return
        text = line.strip()
        if text == "exit":
            return
        if not text:
            continue
        await _run_prompt(repository, service, conversation, text, echo)


async def _run_prompt(
    repository: FlowmateRepository,
    service: ExecutionService,
    conversation: ConversationView,
    prompt: str,
    echo: Callable[[str], None],
) -> None:
    repository.save_message(conversation_id=conversation.id, role=MessageRole.USER, content=prompt)
    echo("\n--- executing ---")
    started = time.monotonic()

    def on_progress(text: str) -> None:
        preview = text
        if len(preview) > CLI_PROGRESS_PREVIEW_LIMIT:
            preview = preview[:CLI_PROGRESS_PREVIEW_LIMIT] + "..."
        echo(f"  [progress] {preview}")

    try:
        result = await service.execute(conversation, prompt, on_progress=on_progress)
    except (ExecutionError, BackendLaunchError) as error:
        echo(f"\n--- error ---\n{error}\n")
        repository.save_message(
            conversation_id=conversation.id,
            role=MessageRole.ASSISTANT,
            content=f"Error: {error}",
        )
        return

    elapsed = time.monotonic() - started
    echo(f"\n--- result ({elapsed:.1f}s, ${result.cost_usd:.4f}) ---")
    echo(result.text)
    echo("")
    repository.save_message(
        conversation_id=conversation.id,
        role=MessageRole.ASSISTANT,
        content=result.text,
        execution_id=result.execution_id,
    )


@contextmanager
def _repository(settings: Settings) -> Iterator[FlowmateRepository]:
    repository = FlowmateRepository(settings.db_path)
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()


@contextmanager
def _stats(settings: Settings) -> Iterator[StatsQueries]:
    with _repository(settings):
        pass
    queries = StatsQueries(
        settings.db_path,
        daily_budget_limit=settings.limits.daily_budget_limit,
        timezone=settings.timezone,
    )
    try:
        yield queries
    finally:
        queries.close()


__all__ = [
    "ChatCommand",
    "FlowmateCliController",
    "ImageCheckCommand",
    "ServeCommand",
    "StatsDailyCommand",
    "StatsExecutionsCommand",
    "StatsHistoryCommand",
    "StatsModelsCommand",
]
