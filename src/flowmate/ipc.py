"""JSON Lines side channel between a worker and the orchestrator.

The agent CLI owns the worker's stdout, so structured events travel over
stderr. A structured line is ``IPC_PREFIX`` followed by one JSON object;
every other stderr line is diagnostic text.
"""

from __future__ import annotations

import json
import sys
from dataclasses import dataclass
from enum import Enum
from typing import Any, TextIO

IPC_PREFIX = "@flowmate "
RUNNER_DEBUG_PREFIX = "[runner] "

_IPC_TYPES = frozenset({"progress", "result", "error"})


@dataclass(slots=True, frozen=True)
class TokenUsage:
    """Token consumption breakdown for a single execution."""

    input: int = 0
    output: int = 0
    cache_read: int = 0
    cache_write: int = 0

    def to_payload(self) -> dict[str, int]:
        return {
            "input": self.input,
            "output": self.output,
            "cacheRead": self.cache_read,
            "cacheWrite": self.cache_write,
        }

    @classmethod
    def from_payload(cls, raw: dict[str, Any]) -> TokenUsage:
        return cls(
            input=_as_int(raw.get("input")),
            output=_as_int(raw.get("output")),
            cache_read=_as_int(raw.get("cacheRead")),
            cache_write=_as_int(raw.get("cacheWrite")),
        )


@dataclass(slots=True, frozen=True)
class ProgressMessage:
    """Intermediate progress update emitted during execution."""

    text: str
    timestamp: str = ""


@dataclass(slots=True, frozen=True)
class ResultMessage:
    """Final success result with cost and usage metrics."""

    text: str
    cost_usd: float
    tokens_used: TokenUsage
    duration_ms: int
    num_turns: int = 0


@dataclass(slots=True, frozen=True)
class ErrorMessage:
    """Error outcome with partial cost and usage metrics."""

    message: str
    cost_usd: float
    tokens_used: TokenUsage
    duration_ms: int
    num_turns: int = 0


IpcMessage = ProgressMessage | ResultMessage | ErrorMessage


class LineKind(str, Enum):
    """Classification of one side-channel line."""

    MESSAGE = "message"
    MALFORMED = "malformed"
    DIAGNOSTIC = "diagnostic"


@dataclass(slots=True, frozen=True)
class SideChannelLine:
    """Decoded side-channel line."""

    kind: LineKind
    raw: str
    message: IpcMessage | None = None


def serialize_ipc(message: IpcMessage) -> str:
    """Serialize an IPC message to a single JSON line (no trailing newline)."""

    return json.dumps(_to_payload(message), ensure_ascii=False, separators=(",", ":"))


def encode_ipc_line(message: IpcMessage) -> str:
    """Full side-channel line: prefix, JSON and newline."""

    return f"{IPC_PREFIX}{serialize_ipc(message)}\n"


def parse_ipc_line(text: str) -> IpcMessage | None:
    """Parse a JSON IPC message whose prefix was already stripped.

    Returns ``None`` for empty, malformed, or structurally invalid input.
    """

    trimmed = text.strip()
    if not trimmed:
        return None
    try:
        raw = json.loads(trimmed)
    except json.JSONDecodeError:
        return None
    return _from_payload(raw)


def decode_side_channel_line(line: str) -> SideChannelLine:
    """Classify a raw stderr line from a worker."""

    stripped = line.rstrip("\r\n")
    if not stripped.startswith(IPC_PREFIX):
        return SideChannelLine(kind=LineKind.DIAGNOSTIC, raw=stripped)
    message = parse_ipc_line(stripped[len(IPC_PREFIX) :])
    if message is None:
        return SideChannelLine(kind=LineKind.MALFORMED, raw=stripped)
    return SideChannelLine(kind=LineKind.MESSAGE, raw=stripped, message=message)


def emit(message: IpcMessage, stream: TextIO | None = None) -> None:
    """Write one IPC message to the side channel and flush it."""

    target = stream or sys.stderr
    target.write(encode_ipc_line(message))
    target.flush()


def debug(text: str, stream: TextIO | None = None) -> None:
    """Write a diagnostic line that the orchestrator logs but never parses."""

    target = stream or sys.stderr
    target.write(f"{RUNNER_DEBUG_PREFIX}{text}\n")
    target.flush()


def _to_payload(message: IpcMessage) -> dict[str, Any]:
    if isinstance(message, ProgressMessage):
        return {"type": "progress", "text": message.text, "timestamp": message.timestamp}
    if isinstance(message, ResultMessage):
        return {
            "type": "result",
            "text": message.text,
            "costUsd": message.cost_usd,
            "tokensUsed": message.tokens_used.to_payload(),
            "durationMs": message.duration_ms,
            "numTurns": message.num_turns,
        }
    return {
        "type": "error",
        "message": message.message,
        "costUsd": message.cost_usd,
        "tokensUsed": message.tokens_used.to_payload(),
        "durationMs": message.duration_ms,
        "numTurns": message.num_turns,
    }


def _from_payload(raw: object) -> IpcMessage | None:  # noqa: PLR0911
    if not isinstance(raw, dict):
        return None
    message_type = raw.get("type")
    if message_type not in _IPC_TYPES:
        return None

    if message_type == "progress":
        text = raw.get("text")
        if not isinstance(text, str):
            return None
        timestamp = raw.get("timestamp", "")
        return ProgressMessage(text=text, timestamp=timestamp if isinstance(timestamp, str) else "")

    cost = raw.get("costUsd")
    duration = raw.get("durationMs")
    tokens = raw.get("tokensUsed")
    if not _is_number(cost) or not _is_number(duration):
        return None
    if not isinstance(tokens, dict):
        return None
    usage = TokenUsage.from_payload(tokens)
    num_turns = _as_int(raw.get("numTurns"))

    if message_type == "result":
        text = raw.get("text")
        if not isinstance(text, str):
            return None
        return ResultMessage(
            text=text,
            cost_usd=float(cost),
            tokens_used=usage,
            duration_ms=int(duration),
            num_turns=num_turns,
        )

    error_text = raw.get("message")
    if not isinstance(error_text, str):
        return None
    return ErrorMessage(
        message=error_text,
        cost_usd=float(cost),
        tokens_used=usage,
        duration_ms=int(duration),
        num_turns=num_turns,
    )


def _is_number(value: object) -> bool:
    return isinstance(value, int | float) and not isinstance(value, bool)


def _as_int(value: object) -> int:
    if _is_number(value):
        return int(value)  # type: ignore[arg-type]
    return 0
