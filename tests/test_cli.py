from __future__ import annotations

import shlex
import sys
import textwrap
from datetime import UTC, datetime
from pathlib import Path

import allure
import pytest
from click.testing import CliRunner

from flowmate.main import flowmate
from flowmate.models import ExecutionFinish, ExecutionStatus, MessageRole
from flowmate.runner.agent import AGENT_COMMAND_ENV
from flowmate.storage.repository import FlowmateRepository

pytestmark = [
    allure.epic("Operations"),
    allure.feature("Command Line"),
]


@pytest.fixture()
def cli_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("FLOWMATE_ALLOWED_DIRECTORIES", str(tmp_path))
    monkeypatch.setenv("FLOWMATE_WORKING_DIRECTORY", str(tmp_path))
    monkeypatch.setenv("FLOWMATE_LOG_DIR", str(tmp_path / "logs"))
    monkeypatch.setenv("FLOWMATE_DAILY_BUDGET_LIMIT", "20")
    monkeypatch.delenv("FLOWMATE_DEV", raising=False)
    return tmp_path / "cli.db"


def _seed(db_path: Path) -> None:
    repository = FlowmateRepository(db_path)
    repository.init_schema()
    conversation = repository.get_or_create_conversation(
        channel_id="D1",
        thread_ts="1.0",
        user_id="U1",
    )
    execution = repository.create_execution(
        conversation_id=conversation.id,
        model="sonnet",
        prompt="check the logs",
    )
    repository.finish_execution(
        execution_id=execution.id,
        finish=ExecutionFinish(
            status=ExecutionStatus.COMPLETED,
            finished_at=datetime.now(tz=UTC),
            cost_usd=1.25,
            duration_ms=4000,
            input_tokens=10,
            output_tokens=20,
        ),
    )
    repository.close()


def test_stats_daily_reports_cost_and_remaining(cli_env: Path) -> None:
    _seed(cli_env)

    result = CliRunner().invoke(flowmate, ["stats", "daily", "--db-path", str(cli_env)])

    assert result.exit_code == 0, result.output
    assert "Cost: $1.2500 of $20.00 (remaining $18.75)" in result.output
    assert "Executions: 1" in result.output
    assert "Average duration: 4000 ms" in result.output


def test_stats_executions_and_models(cli_env: Path) -> None:
    _seed(cli_env)
    runner = CliRunner()

    executions = runner.invoke(
        flowmate,
        ["stats", "executions", "--db-path", str(cli_env), "--status", "completed"],
    )
    models = runner.invoke(flowmate, ["stats", "models", "--db-path", str(cli_env)])

    assert executions.exit_code == 0, executions.output
    assert "#1 completed" in executions.output
    assert "prompt='check the logs'" in executions.output
    assert models.exit_code == 0, models.output
    assert "sonnet: executions=1 cost=$1.2500" in models.output


def test_stats_history_on_fresh_database(cli_env: Path) -> None:
    result = CliRunner().invoke(
        flowmate,
        ["stats", "history", "--db-path", str(cli_env), "--days", "2"],
    )

    assert result.exit_code == 0, result.output
    assert result.output.count("executions=0") == 2


def test_stats_rejects_unknown_status(cli_env: Path) -> None:
    result = CliRunner().invoke(
        flowmate,
        ["stats", "executions", "--db-path", str(cli_env), "--status", "running"],
    )

    assert result.exit_code != 0


def test_chat_one_shot_runs_local_worker(
    cli_env: Path,
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    agent = tmp_path / "fake_agent.py"
    agent.write_text(
        textwrap.dedent(
            """
            import json, sys
            prompt = sys.stdin.read()
            print(json.dumps({"type": "result", "subtype": "success",
                              "result": "echo: " + prompt, "total_cost_usd": 0.02}))
            """,
        ),
        "utf-8",
    )
    monkeypatch.setenv(
        AGENT_COMMAND_ENV,
        f"{shlex.quote(sys.executable)} {shlex.quote(str(agent))}",
    )

    result = CliRunner().invoke(
        flowmate,
        ["chat", "--db-path", str(cli_env), "hello", "there"],
    )

    assert result.exit_code == 0, result.output
    assert "--- result (" in result.output
    assert "$0.0200) ---" in result.output
    assert "echo: hello there" in result.output

    repository = FlowmateRepository(cli_env)
    executions = repository.list_executions()
    history = repository.get_conversation_history(executions[0].conversation_id)
    repository.close()
    assert executions[0].status is ExecutionStatus.COMPLETED
    assert [m.role for m in history] == [MessageRole.USER, MessageRole.ASSISTANT]


def test_serve_requires_slack_credentials(
    cli_env: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    for name in ("SLACK_BOT_TOKEN", "SLACK_APP_TOKEN", "ANTHROPIC_API_KEY"):
        monkeypatch.delenv(name, raising=False)

    result = CliRunner().invoke(flowmate, ["serve", "--db-path", str(cli_env)])

    assert result.exit_code != 0
    assert "Missing required environment variables" in result.output
