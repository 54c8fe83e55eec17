"""Agent CLI invocation and translation of its stream-json events into side-channel messages."""

from __future__ import annotations

import json
import shlex
from collections.abc import Mapping
from typing import Any

from flowmate.ipc import ErrorMessage, IpcMessage, ProgressMessage, ResultMessage, TokenUsage

AGENT_COMMAND_ENV = "FLOWMATE_AGENT_COMMAND"
SYSTEM_PROMPT_APPENDIX = (
    "You are FlowMate, a personal AI assistant. Respond in the same language as the user."
)


class AgentCommandError(ValueError):
    """Agent command template cannot be rendered."""


def build_agent_command(
    config: Mapping[str, Any],
    *,
    template: str | None = None,
    multimodal: bool = False,
) -> list[str]:
    """Argument vector for the agent CLI.

    ``template`` replaces the default ``claude`` invocation; it may use the
    ``{model}``, ``{max_turns}`` and ``{max_budget}`` placeholders. The prompt
    is always written to stdin.
    """

    limits = config.get("limits") or {}
    values = {
        "model": str(config["model"]),
        "max_turns": str(limits.get("maxTurnsPerTask", "")),
        "max_budget": str(limits.get("maxBudgetPerTask", "")),
    }
    if template is not None and template.strip():
        try:
            rendered = template.strip().format(
                **{key: shlex.quote(value) for key, value in values.items()},
            )
        except (KeyError, IndexError) as error:
            raise AgentCommandError(
                f"Unsupported agent command placeholder: {error}",
            ) from error
        argv = shlex.split(rendered)
        if not argv:
            raise AgentCommandError("Agent command template rendered empty command.")
        return argv

    argv = [
        "claude",
        "-p",
        "--output-format",
        "stream-json",
        "--verbose",
        "--model",
        values["model"],
        "--permission-mode",
        "bypassPermissions",
        "--append-system-prompt",
        SYSTEM_PROMPT_APPENDIX,
    ]
    if values["max_turns"]:
        argv += ["--max-turns", values["max_turns"]]
    if values["max_budget"]:
        argv += ["--max-budget-usd", values["max_budget"]]
    tools = config.get("tools") or []
    if tools:
        argv += ["--allowedTools", ",".join(str(tool) for tool in tools)]
    mcp_servers = config.get("mcpServers") or {}
    if mcp_servers:
        argv += ["--mcp-config", json.dumps({"mcpServers": mcp_servers})]
    if (config.get("skills") or {}).get("enabled"):
        argv += ["--setting-sources", "project"]
    if multimodal:
        argv += ["--input-format", "stream-json"]
    return argv


class StreamTranslator:
    """Converts agent stream-json events to IPC messages.

    Assistant text becomes ``progress``; the final ``result`` event becomes
    ``result`` (subtype ``success``) or ``error``.
    """

    def __init__(self, *, started_monotonic: float) -> None:
        self._started = started_monotonic
        self.finished = False

    def translate(self, line: str, *, now: float, timestamp: str) -> IpcMessage | None:
        stripped = line.strip()
        if not stripped:
            return None
        try:
            event = json.loads(stripped)
        except json.JSONDecodeError:
            return None
        if not isinstance(event, dict):
            return None

        event_type = event.get("type")
        if event_type == "assistant":
            text = extract_text(event)
            return ProgressMessage(text=text, timestamp=timestamp) if text else None
        if event_type != "result":
            return None

        self.finished = True
        duration_ms = int((now - self._started) * 1000)
        usage = _usage_from_event(event.get("usage"))
        cost = _as_float(event.get("total_cost_usd"))
        num_turns = _as_int(event.get("num_turns"))
        if event.get("subtype") == "success":
            return ResultMessage(
                text=str(event.get("result") or ""),
                cost_usd=cost,
                tokens_used=usage,
                duration_ms=duration_ms,
                num_turns=num_turns,
            )
        errors = event.get("errors")
        if isinstance(errors, list) and errors:
            message = "; ".join(str(item) for item in errors)
        else:
            message = str(event.get("result") or event.get("subtype") or "unknown error")
        return ErrorMessage(
            message=message,
            cost_usd=cost,
            tokens_used=usage,
            duration_ms=duration_ms,
            num_turns=num_turns,
        )


def extract_text(event: Mapping[str, Any]) -> str:
    message = event.get("message")
    if not isinstance(message, dict):
        return ""
    content = message.get("content")
    if not isinstance(content, list):
        return ""
    parts = [
        block["text"]
        for block in content
        if isinstance(block, dict) and isinstance(block.get("text"), str)
    ]
    return "\n".join(parts)


def _usage_from_event(raw: object) -> TokenUsage:
    if not isinstance(raw, dict):
        return TokenUsage()
    return TokenUsage(
        input=_as_int(raw.get("input_tokens")),
        output=_as_int(raw.get("output_tokens")),
        cache_read=_as_int(raw.get("cache_read_input_tokens")),
        cache_write=_as_int(raw.get("cache_creation_input_tokens")),
    )


def _as_int(value: object) -> int:
    if isinstance(value, int | float) and not isinstance(value, bool):
        return int(value)
    return 0


def _as_float(value: object) -> float:
    if isinstance(value, int | float) and not isinstance(value, bool):
        return float(value)
    return 0.0
