"""CLI entrypoint for FlowMate."""

from pathlib import Path

import rich_click as click
from dotenv import find_dotenv, load_dotenv

from flowmate import __version__
from flowmate.controllers import (
    ChatCommand,
    FlowmateCliController,
    ImageCheckCommand,
    ServeCommand,
    StatsDailyCommand,
    StatsExecutionsCommand,
    StatsHistoryCommand,
    StatsModelsCommand,
)
from flowmate.models import TERMINAL_STATUSES

click.rich_click.USE_MARKDOWN = True
CONTROLLER = FlowmateCliController()
PROMPT_MARKER = "you> "


@click.group()
@click.version_option(version=__version__, prog_name="flowmate")
def flowmate() -> None:
    """FlowMate assistant CLI.

    Settings come from environment variables; a `.env` file in the current
    directory is loaded first.
    """

    load_dotenv(find_dotenv(usecwd=True))


@flowmate.command("serve")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--verbose", is_flag=True, help="Show debug logs on the console.")
def serve(db_path: Path | None, verbose: bool) -> None:
    """Run the Slack bot until SIGINT or SIGTERM."""

    try:
        CONTROLLER.serve(ServeCommand(db_path=db_path, verbose=verbose))
    except ValueError as error:
        raise click.ClickException(str(error)) from error


@flowmate.command("chat")
@click.argument("prompt", nargs=-1)
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--verbose", is_flag=True, help="Show debug logs on the console.")
def chat(prompt: tuple[str, ...], db_path: Path | None, verbose: bool) -> None:
    """Run tasks locally without Slack.

    With a PROMPT runs it once; otherwise reads prompts until `exit`.
    """

    try:
        CONTROLLER.chat(
            ChatCommand(db_path=db_path, prompt=" ".join(prompt) or None, verbose=verbose),
            read_prompt=_read_prompt,
            echo=click.echo,
        )
    except ValueError as error:
        raise click.ClickException(str(error)) from error


@flowmate.group()
def stats() -> None:
    """Cost and execution statistics."""


@stats.command("daily")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--date", "day", default=None, help="Day (YYYY-MM-DD), defaults to today.")
def stats_daily(db_path: Path | None, day: str | None) -> None:
    """Show cost and executions for one day."""

    _emit_lines(CONTROLLER.stats_daily(StatsDailyCommand(db_path=db_path, day=day)))


@stats.command("history")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--days",
    type=click.IntRange(min=1, max=90),
    default=7,
    show_default=True,
    help="Number of days to look back.",
)
def stats_history(db_path: Path | None, days: int) -> None:
    """Show the daily cost trend."""

    _emit_lines(CONTROLLER.stats_history(StatsHistoryCommand(db_path=db_path, days=days)))


@stats.command("executions")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=50),
    default=10,
    show_default=True,
    help="How many executions to display.",
)
@click.option(
    "--status",
    type=click.Choice(sorted(status.value for status in TERMINAL_STATUSES)),
    default=None,
    help="Only executions with this status.",
)
@click.option("--since", default=None, help="Only executions since this day (YYYY-MM-DD).")
def stats_executions(
    db_path: Path | None,
    limit: int,
    status: str | None,
    since: str | None,
) -> None:
    """List recent executions."""

    _emit_lines(
        CONTROLLER.stats_executions(
            StatsExecutionsCommand(db_path=db_path, limit=limit, status=status, since=since),
        ),
    )


@stats.command("models")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--since", default=None, help="Since this day (YYYY-MM-DD), defaults to today.")
def stats_models(db_path: Path | None, since: str | None) -> None:
    """Show usage grouped by model."""

    _emit_lines(CONTROLLER.stats_models(StatsModelsCommand(db_path=db_path, since=since)))


@flowmate.command("image-check")
@click.option("--image", default=None, help="Image reference, defaults to FLOWMATE_RUNNER_IMAGE.")
def image_check(image: str | None) -> None:
    """Check that the runner image exists in the container runtime."""

    result = CONTROLLER.image_check(ImageCheckCommand(image=image))
    _emit_lines(result.lines)
    if not result.found:
        raise click.ClickException("Runner image is missing.")


def _read_prompt() -> str | None:
    try:
        return input(PROMPT_MARKER)
    except EOFError:
        return None


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    flowmate()
