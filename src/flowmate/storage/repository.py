"""Conversation, message and execution persistence backed by SQLModel + SQLite."""

from __future__ import annotations

from datetime import datetime
from pathlib import Path

from sqlalchemy import func
from sqlalchemy import update as sa_update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from flowmate.models import (
    TERMINAL_STATUSES,
    ConversationMessage,
    ConversationStatus,
    ConversationView,
    ExecutionFinish,
    ExecutionStatus,
    ExecutionView,
    MessageRole,
)
from flowmate.storage.alembic_runner import upgrade_head
from flowmate.storage.common import (
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from flowmate.storage.sqlmodel_models import Conversation, Execution, Message


class FlowmateRepository:
    """Persistence facade used by the orchestrator and chat handlers."""

    def __init__(self, db_path: Path, *, sqlite_busy_timeout_ms: int = 5000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Create the database directory and run schema migrations."""

        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        upgrade_head(self.db_path)

    # -- conversations ------------------------------------------------------

    def get_or_create_conversation(
        self,
        *,
        channel_id: str,
        thread_ts: str,
        user_id: str,
    ) -> ConversationView:
        """Find a conversation by thread key, or create it on first message."""

        existing = self._find_conversation(channel_id=channel_id, thread_ts=thread_ts)
        if existing is not None:
            return existing

        with Session(self.engine) as session:
            row = Conversation(
                channel_id=channel_id,
                thread_ts=thread_ts,
                user_id=user_id,
                status=ConversationStatus.ACTIVE.value,
                created_at=to_db_datetime(utc_now()),
            )
            session.add(row)
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                raced = self._find_conversation(channel_id=channel_id, thread_ts=thread_ts)
                if raced is None:
                    raise
                return raced
            session.refresh(row)
            return _to_conversation_view(row)

    def get_conversation(self, conversation_id: int) -> ConversationView | None:
        with Session(self.engine) as session:
            row = session.get(Conversation, conversation_id)
            return _to_conversation_view(row) if row is not None else None

    def update_conversation(
        self,
        *,
        conversation_id: int,
        title: str | None = None,
        status: ConversationStatus | None = None,
    ) -> bool:
        """Update title and/or status; returns False for unknown ids."""

        values: dict[str, str] = {}
        if title is not None:
            values["title"] = title
        if status is not None:
            values["status"] = status.value
        if not values:
            return False
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Conversation)
                .where(col(Conversation.id) == conversation_id)
                .values(**values),
            )
            session.commit()
            return result.rowcount == 1

    def _find_conversation(self, *, channel_id: str, thread_ts: str) -> ConversationView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(Conversation).where(
                    Conversation.channel_id == channel_id,
                    Conversation.thread_ts == thread_ts,
                ),
            ).one_or_none()
            return _to_conversation_view(row) if row is not None else None

    # -- messages -------------------------------------------------------------

    def save_message(  # noqa: PLR0913
        self,
        *,
        conversation_id: int,
        role: MessageRole,
        content: str,
        slack_ts: str | None = None,
        execution_id: int | None = None,
        created_at: datetime | None = None,
    ) -> int:
        """Append a message to the conversation log."""

        with Session(self.engine) as session:
            row = Message(
                conversation_id=conversation_id,
                role=role.value,
                content=content,
                slack_ts=slack_ts,
                execution_id=execution_id,
                created_at=to_db_datetime(created_at or utc_now()),
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            if row.id is None:
                raise RuntimeError("Message insert did not return an id.")
            return row.id

    def get_conversation_history(self, conversation_id: int) -> list[ConversationMessage]:
        """All messages of a conversation in chronological order."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(Message)
                .where(Message.conversation_id == conversation_id)
                .order_by(col(Message.created_at).asc(), col(Message.id).asc()),
            ).all()
            return [
                ConversationMessage(role=MessageRole(row.role), content=row.content)
                for row in rows
            ]

    # -- executions -------------------------------------------------------------

    def create_execution(
        self,
        *,
        conversation_id: int,
        model: str,
        prompt: str,
        started_at: datetime | None = None,
    ) -> ExecutionView:
        """Insert an execution in ``pending`` state."""

        with Session(self.engine) as session:
            row = Execution(
                conversation_id=conversation_id,
                model=model,
                status=ExecutionStatus.PENDING.value,
                prompt=prompt,
                started_at=to_db_datetime(started_at or utc_now()),
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_execution_view(row)

    def mark_execution_running(self, execution_id: int) -> bool:
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Execution)
                .where(
                    col(Execution.id) == execution_id,
                    col(Execution.status) == ExecutionStatus.PENDING.value,
                )
                .values(status=ExecutionStatus.RUNNING.value),
            )
            session.commit()
            return result.rowcount == 1

    def set_execution_container(self, *, execution_id: int, container_id: str) -> None:
        with Session(self.engine) as session:
            session.exec(
                sa_update(Execution)
                .where(col(Execution.id) == execution_id)
                .values(container_id=container_id),
            )
            session.commit()

    def finish_execution(self, *, execution_id: int, finish: ExecutionFinish) -> bool:
        """Write the terminal state; a row that is already terminal is left untouched."""

        if finish.status not in TERMINAL_STATUSES:
            raise ValueError(f"Not a terminal execution status: {finish.status.value}")
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Execution)
                .where(
                    col(Execution.id) == execution_id,
                    col(Execution.status).notin_([status.value for status in TERMINAL_STATUSES]),
                )
                .values(
                    status=finish.status.value,
                    result_text=finish.result_text,
                    error_message=finish.error_message,
                    cost_usd=finish.cost_usd,
                    input_tokens=finish.input_tokens,
                    output_tokens=finish.output_tokens,
                    cache_read_tokens=finish.cache_read_tokens,
                    cache_write_tokens=finish.cache_write_tokens,
                    duration_ms=finish.duration_ms,
                    num_turns=finish.num_turns,
                    finished_at=to_db_datetime(finish.finished_at),
                ),
            )
            session.commit()
            return result.rowcount == 1

    def get_execution(self, execution_id: int) -> ExecutionView | None:
        with Session(self.engine) as session:
            row = session.get(Execution, execution_id)
            return _to_execution_view(row) if row is not None else None

    def list_executions(
        self,
        *,
        conversation_id: int | None = None,
        status: ExecutionStatus | None = None,
        limit: int = 50,
    ) -> list[ExecutionView]:
        """Most recent executions first."""

        with Session(self.engine) as session:
            statement = select(Execution)
            if conversation_id is not None:
                statement = statement.where(Execution.conversation_id == conversation_id)
            if status is not None:
                statement = statement.where(Execution.status == status.value)
            rows = session.exec(
                statement.order_by(col(Execution.id).desc()).limit(limit),
            ).all()
            return [_to_execution_view(row) for row in rows]

    def sum_cost_between(self, *, start: datetime, end: datetime) -> float:
        """Total recorded cost of executions started in ``[start, end)``."""

        with Session(self.engine) as session:
            total = session.exec(
                select(func.coalesce(func.sum(Execution.cost_usd), 0.0)).where(
                    col(Execution.started_at) >= to_db_datetime(start),
                    col(Execution.started_at) < to_db_datetime(end),
                ),
            ).one()
            return float(total or 0.0)


def _to_conversation_view(row: Conversation) -> ConversationView:
    if row.id is None:
        raise RuntimeError("Conversation row has no id.")
    return ConversationView(
        id=row.id,
        channel_id=row.channel_id,
        thread_ts=row.thread_ts,
        user_id=row.user_id,
        title=row.title,
        status=ConversationStatus(row.status),
    )


def _to_execution_view(row: Execution) -> ExecutionView:
    if row.id is None:
        raise RuntimeError("Execution row has no id.")
    return ExecutionView(
        id=row.id,
        conversation_id=row.conversation_id,
        container_id=row.container_id,
        model=row.model,
        status=ExecutionStatus(row.status),
        prompt=row.prompt,
        result_text=row.result_text,
        error_message=row.error_message,
        cost_usd=row.cost_usd,
        input_tokens=row.input_tokens,
        output_tokens=row.output_tokens,
        cache_read_tokens=row.cache_read_tokens,
        cache_write_tokens=row.cache_write_tokens,
        duration_ms=row.duration_ms,
        num_turns=row.num_turns,
        started_at=to_utc_aware_datetime(row.started_at) if row.started_at is not None else None,
        finished_at=(
            to_utc_aware_datetime(row.finished_at) if row.finished_at is not None else None
        ),
    )
