"""SQLModel ORM tables for conversations, messages and executions."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, Text, UniqueConstraint
from sqlmodel import Field, SQLModel


class Conversation(SQLModel, table=True):
    __tablename__ = "conversations"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint("channel_id", "thread_ts", name="uq_conversations_channel_thread"),
    )

    id: int | None = Field(default=None, primary_key=True)
    channel_id: str = Field(index=True)
    thread_ts: str
    user_id: str
    title: str | None = Field(default=None)
    status: str = Field(default="active", index=True)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class Execution(SQLModel, table=True):
    __tablename__ = "executions"  # type: ignore[bad-override]

    id: int | None = Field(default=None, primary_key=True)
    conversation_id: int = Field(
        sa_column=Column(
            Integer,
            ForeignKey("conversations.id"),
            nullable=False,
            index=True,
        ),
    )
    container_id: str | None = Field(default=None)
    model: str | None = Field(default=None)
    status: str = Field(default="pending", index=True)
    prompt: str = Field(sa_column=Column(Text, nullable=False))
    result_text: str | None = Field(default=None, sa_column=Column(Text))
    error_message: str | None = Field(default=None, sa_column=Column(Text))
    cost_usd: float | None = Field(default=None)
    input_tokens: int | None = Field(default=None)
    output_tokens: int | None = Field(default=None)
    cache_read_tokens: int | None = Field(default=None)
    cache_write_tokens: int | None = Field(default=None)
    duration_ms: int | None = Field(default=None)
    num_turns: int | None = Field(default=None)
    started_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), index=True),
    )
    finished_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))


class Message(SQLModel, table=True):
    __tablename__ = "messages"  # type: ignore[bad-override]
    __table_args__ = (Index("ix_messages_conversation_created", "conversation_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    conversation_id: int = Field(
        sa_column=Column(Integer, ForeignKey("conversations.id"), nullable=False),
    )
    role: str
    content: str = Field(sa_column=Column(Text, nullable=False))
    slack_ts: str | None = Field(default=None)
    execution_id: int | None = Field(
        default=None,
        sa_column=Column(Integer, ForeignKey("executions.id"), nullable=True),
    )
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
