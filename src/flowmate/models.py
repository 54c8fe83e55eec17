"""Domain models shared by the orchestrator, storage and runner."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class ConversationStatus(str, Enum):
    """Lifecycle state of a chat thread."""

    ACTIVE = "active"
    ARCHIVED = "archived"


class ExecutionStatus(str, Enum):
    """Durable execution lifecycle states."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    ERROR = "error"
    TIMEOUT = "timeout"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {
        ExecutionStatus.COMPLETED,
        ExecutionStatus.FAILED,
        ExecutionStatus.ERROR,
        ExecutionStatus.TIMEOUT,
    },
)


class MessageRole(str, Enum):
    """Role of a message in conversation history."""

    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


@dataclass(slots=True, frozen=True)
class ConversationMessage:
    """One history entry passed to the worker."""

    role: MessageRole
    content: str

    def to_payload(self) -> dict[str, str]:
        return {"role": self.role.value, "content": self.content}


@dataclass(slots=True, frozen=True)
class Attachment:
    """Image attachment encoded as base64."""

    filename: str
    mime_type: str
    base64: str

    def to_payload(self) -> dict[str, str]:
        return {"filename": self.filename, "mimeType": self.mime_type, "base64": self.base64}


@dataclass(slots=True, frozen=True)
class ToolServerConfig:
    """Auxiliary tool server (MCP) configuration handed to the agent."""

    command: str
    args: tuple[str, ...] = ()
    env: dict[str, str] = field(default_factory=dict)

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"command": self.command}
        if self.args:
            payload["args"] = list(self.args)
        if self.env:
            payload["env"] = dict(self.env)
        return payload


@dataclass(slots=True, frozen=True)
class TaskLimits:
    """Per-execution resource limits."""

    max_budget_per_task: float
    max_turns_per_task: int
    task_timeout_ms: int


@dataclass(slots=True)
class TaskPayload:
    """Everything a worker needs to run one execution."""

    execution_id: int
    model: str
    conversation_messages: list[ConversationMessage]
    prompt: str
    working_directory: str
    allowed_directories: list[str]
    tool_servers: dict[str, ToolServerConfig]
    limits: TaskLimits
    tools: list[str]
    skills_enabled: bool
    attachments: list[Attachment] = field(default_factory=list)

    def to_payload(self) -> dict[str, Any]:
        """Wire representation understood by the runner."""

        payload: dict[str, Any] = {
            "executionId": self.execution_id,
            "model": self.model,
            "conversationMessages": [m.to_payload() for m in self.conversation_messages],
            "prompt": self.prompt,
            "workingDirectory": self.working_directory,
            "allowedDirectories": list(self.allowed_directories),
            "mcpServers": {name: s.to_payload() for name, s in self.tool_servers.items()},
            "limits": {
                "maxBudgetPerTask": self.limits.max_budget_per_task,
                "maxTurnsPerTask": self.limits.max_turns_per_task,
                "taskTimeoutMs": self.limits.task_timeout_ms,
            },
            "tools": list(self.tools),
            "skills": {"enabled": self.skills_enabled},
        }
        if self.attachments:
            payload["attachments"] = [a.to_payload() for a in self.attachments]
        return payload

    def to_json(self) -> str:
        return json.dumps(self.to_payload(), ensure_ascii=False, separators=(",", ":"))


@dataclass(slots=True, frozen=True)
class ConversationView:
    """Minimal conversation record used throughout the orchestrator."""

    id: int
    channel_id: str
    thread_ts: str
    user_id: str
    title: str | None = None
    status: ConversationStatus = ConversationStatus.ACTIVE

    @property
    def thread_key(self) -> str:
        return f"{self.channel_id}:{self.thread_ts}"


@dataclass(slots=True)
class ExecutionView:
    """Readable execution record."""

    id: int
    conversation_id: int
    container_id: str | None
    model: str | None
    status: ExecutionStatus
    prompt: str
    result_text: str | None
    error_message: str | None
    cost_usd: float | None
    input_tokens: int | None
    output_tokens: int | None
    cache_read_tokens: int | None
    cache_write_tokens: int | None
    duration_ms: int | None
    num_turns: int | None
    started_at: datetime | None
    finished_at: datetime | None


@dataclass(slots=True)
class ExecutionFinish:
    """Terminal update for an execution row."""

    status: ExecutionStatus
    finished_at: datetime
    result_text: str | None = None
    error_message: str | None = None
    cost_usd: float | None = None
    input_tokens: int | None = None
    output_tokens: int | None = None
    cache_read_tokens: int | None = None
    cache_write_tokens: int | None = None
    duration_ms: int | None = None
    num_turns: int | None = None


@dataclass(slots=True, frozen=True)
class ExecutionResult:
    """Successful execution outcome returned to the caller."""

    text: str
    cost_usd: float
    execution_id: int
