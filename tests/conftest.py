"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path

import pytest

from flowmate.config import LimitsSettings, Settings
from flowmate.models import ConversationView, TaskLimits, TaskPayload
from flowmate.storage.repository import FlowmateRepository


@pytest.fixture()
def repository(tmp_path: Path) -> Iterator[FlowmateRepository]:
    repo = FlowmateRepository(tmp_path / "flowmate.db")
    repo.init_schema()
    try:
        yield repo
    finally:
        repo.close()


@pytest.fixture()
def conversation(repository: FlowmateRepository) -> ConversationView:
    return repository.get_or_create_conversation(
        channel_id="D123",
        thread_ts="1700000000.000100",
        user_id="U1",
    )


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    workdir = tmp_path / "work"
    workdir.mkdir()
    return Settings(
        db_path=tmp_path / "flowmate.db",
        log_dir=tmp_path / "logs",
        timezone="UTC",
        dev_mode=True,
        allowed_directories=(str(tmp_path),),
        default_working_directory=str(workdir),
        limits=LimitsSettings(
            max_budget_per_task=2.0,
            max_turns_per_task=10,
            task_timeout_ms=60_000,
            daily_budget_limit=50.0,
            max_history_messages=20,
        ),
    )


@pytest.fixture()
def make_payload(tmp_path: Path):
    """Factory for task payloads rooted in ``tmp_path``."""

    def _make(execution_id: int = 1, *, prompt: str = "hello", **overrides) -> TaskPayload:
        values = {
            "execution_id": execution_id,
            "model": "sonnet",
            "conversation_messages": [],
            "prompt": prompt,
            "working_directory": str(tmp_path),
            "allowed_directories": [str(tmp_path)],
            "tool_servers": {},
            "limits": TaskLimits(
                max_budget_per_task=2.0,
                max_turns_per_task=10,
                task_timeout_ms=60_000,
            ),
            "tools": ["Read"],
            "skills_enabled": False,
        }
        values.update(overrides)
        return TaskPayload(**values)

    return _make
