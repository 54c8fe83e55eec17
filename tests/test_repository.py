from __future__ import annotations

from datetime import UTC, datetime, timedelta

import allure
import pytest

from flowmate.models import (
    ConversationStatus,
    ConversationView,
    ExecutionFinish,
    ExecutionStatus,
    MessageRole,
)
from flowmate.storage.repository import FlowmateRepository

pytestmark = [
    allure.epic("Persistence"),
    allure.feature("Conversation Store"),
]


def test_get_or_create_conversation_reuses_thread(repository: FlowmateRepository) -> None:
    first = repository.get_or_create_conversation(channel_id="D1", thread_ts="1.0", user_id="U1")
    again = repository.get_or_create_conversation(channel_id="D1", thread_ts="1.0", user_id="U2")
    other = repository.get_or_create_conversation(channel_id="D1", thread_ts="2.0", user_id="U1")

    assert again == first
    assert again.user_id == "U1"
    assert other.id != first.id
    assert first.status is ConversationStatus.ACTIVE
    assert first.thread_key == "D1:1.0"


def test_update_conversation_title_and_status(
    repository: FlowmateRepository,
    conversation: ConversationView,
) -> None:
    assert repository.update_conversation(conversation_id=conversation.id, title="Refactor")
    assert repository.update_conversation(
        conversation_id=conversation.id,
        status=ConversationStatus.ARCHIVED,
    )
    assert not repository.update_conversation(conversation_id=9999, title="x")
    assert not repository.update_conversation(conversation_id=conversation.id)

    stored = repository.get_conversation(conversation.id)
    assert stored is not None
    assert stored.title == "Refactor"
    assert stored.status is ConversationStatus.ARCHIVED


def test_history_is_chronological(
    repository: FlowmateRepository,
    conversation: ConversationView,
) -> None:
    base = datetime(2026, 4, 1, 12, 0, tzinfo=UTC)
    repository.save_message(
        conversation_id=conversation.id,
        role=MessageRole.ASSISTANT,
        content="second",
        created_at=base + timedelta(seconds=5),
    )
    repository.save_message(
        conversation_id=conversation.id,
        role=MessageRole.USER,
        content="first",
        created_at=base,
    )

    history = repository.get_conversation_history(conversation.id)

    assert [(m.role, m.content) for m in history] == [
        (MessageRole.USER, "first"),
        (MessageRole.ASSISTANT, "second"),
    ]


def test_execution_lifecycle_and_terminal_state_is_final(
    repository: FlowmateRepository,
    conversation: ConversationView,
) -> None:
    execution = repository.create_execution(
        conversation_id=conversation.id,
        model="sonnet",
        prompt="do it",
    )
    assert execution.status is ExecutionStatus.PENDING
    assert repository.mark_execution_running(execution.id)
    assert not repository.mark_execution_running(execution.id)
    repository.set_execution_container(execution_id=execution.id, container_id="flowmate-1")

    finished_at = datetime.now(tz=UTC)
    assert repository.finish_execution(
        execution_id=execution.id,
        finish=ExecutionFinish(
            status=ExecutionStatus.COMPLETED,
            finished_at=finished_at,
            result_text="ok",
            cost_usd=0.5,
            input_tokens=10,
            output_tokens=20,
            duration_ms=1234,
            num_turns=3,
        ),
    )
    assert not repository.finish_execution(
        execution_id=execution.id,
        finish=ExecutionFinish(status=ExecutionStatus.ERROR, finished_at=finished_at),
    )

    stored = repository.get_execution(execution.id)
    assert stored is not None
    assert stored.status is ExecutionStatus.COMPLETED
    assert stored.container_id == "flowmate-1"
    assert stored.result_text == "ok"
    assert stored.cost_usd == 0.5
    assert stored.output_tokens == 20
    assert stored.finished_at is not None
    assert stored.finished_at.tzinfo is not None


def test_finish_execution_rejects_non_terminal_status(
    repository: FlowmateRepository,
    conversation: ConversationView,
) -> None:
    execution = repository.create_execution(
        conversation_id=conversation.id,
        model="sonnet",
        prompt="x",
    )

    with pytest.raises(ValueError, match="running"):
        repository.finish_execution(
            execution_id=execution.id,
            finish=ExecutionFinish(
                status=ExecutionStatus.RUNNING,
                finished_at=datetime.now(tz=UTC),
            ),
        )


def test_list_executions_filters_newest_first(
    repository: FlowmateRepository,
    conversation: ConversationView,
) -> None:
    ids = [
        repository.create_execution(
            conversation_id=conversation.id,
            model="sonnet",
            prompt=f"p{index}",
        ).id
        for index in range(3)
    ]
    repository.finish_execution(
        execution_id=ids[1],
        finish=ExecutionFinish(status=ExecutionStatus.TIMEOUT, finished_at=datetime.now(tz=UTC)),
    )

    assert [e.id for e in repository.list_executions()] == list(reversed(ids))
    assert [e.id for e in repository.list_executions(status=ExecutionStatus.TIMEOUT)] == [ids[1]]
    assert len(repository.list_executions(conversation_id=conversation.id, limit=2)) == 2


def test_sum_cost_between_is_half_open(
    repository: FlowmateRepository,
    conversation: ConversationView,
) -> None:
    start = datetime(2026, 6, 1, tzinfo=UTC)
    end = start + timedelta(days=1)
    for started_at, cost in ((start, 1.0), (end - timedelta(seconds=1), 2.0), (end, 4.0)):
        execution = repository.create_execution(
            conversation_id=conversation.id,
            model="sonnet",
            prompt="x",
            started_at=started_at,
        )
        repository.finish_execution(
            execution_id=execution.id,
            finish=ExecutionFinish(
                status=ExecutionStatus.FAILED,
                finished_at=started_at,
                cost_usd=cost,
            ),
        )

    assert repository.sum_cost_between(start=start, end=end) == 3.0
