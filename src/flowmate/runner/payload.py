"""Task payload loading and prompt assembly on the worker side."""

from __future__ import annotations

import json
import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from flowmate.orchestrator.backend.stream import TASK_CONFIG_ENV, TASK_CONFIG_FILE_ENV

DEFAULT_IMAGE_PROMPT = "Analyze this image."

_REQUIRED_STRINGS = ("model", "prompt", "workingDirectory")


class TaskConfigError(ValueError):
    """Payload is missing or structurally invalid."""


def load_task_config(environ: Mapping[str, str] | None = None) -> dict[str, Any]:
    """Read the payload from ``TASK_CONFIG_FILE`` (preferred) or ``TASK_CONFIG``."""

    env = os.environ if environ is None else environ
    file_path = env.get(TASK_CONFIG_FILE_ENV)
    if file_path:
        raw_text = Path(file_path).read_text("utf-8")
    elif env.get(TASK_CONFIG_ENV):
        raw_text = env[TASK_CONFIG_ENV]
    else:
        raise TaskConfigError(f"No {TASK_CONFIG_ENV} or {TASK_CONFIG_FILE_ENV} provided")

    try:
        config = json.loads(raw_text)
    except json.JSONDecodeError as error:
        raise TaskConfigError(f"Task config is not valid JSON: {error}") from error
    validate_task_config(config)
    return config


def validate_task_config(config: object) -> None:
    if not isinstance(config, dict):
        raise TaskConfigError("Task config must be a JSON object")
    for name in _REQUIRED_STRINGS:
        if not isinstance(config.get(name), str):
            raise TaskConfigError(f"Task config missing or invalid field: {name}")
    execution_id = config.get("executionId")
    if not isinstance(execution_id, int) or isinstance(execution_id, bool):
        raise TaskConfigError("Task config missing or invalid field: executionId")
    for name in ("conversationMessages", "allowedDirectories"):
        if not isinstance(config.get(name), list):
            raise TaskConfigError(f"Task config missing or invalid field: {name}")
    for name in ("limits", "mcpServers"):
        if not isinstance(config.get(name), dict):
            raise TaskConfigError(f"Task config missing or invalid field: {name}")


def build_context_prompt(config: Mapping[str, Any]) -> str:
    """Fold prior turns into the prompt; the last history entry is the current request."""

    history = config.get("conversationMessages") or []
    prompt = str(config["prompt"])
    if len(history) <= 1:
        return prompt

    parts = ["Previous conversation:\n"]
    for entry in history[:-1]:
        role = entry.get("role")
        content = entry.get("content", "")
        if role == "system":
            parts.append(f"{content}\n\n")
        else:
            speaker = "User" if role == "user" else "Assistant"
            parts.append(f"{speaker}: {content}\n\n")
    parts.append(f"---\nCurrent request:\n{prompt}")
    return "".join(parts)


def build_multimodal_message(prompt: str, attachments: list[Mapping[str, Any]]) -> dict[str, Any]:
    """One stream-json user message carrying images followed by the text prompt."""

    content: list[dict[str, Any]] = [
        {
            "type": "image",
            "source": {
                "type": "base64",
                "media_type": attachment["mimeType"],
                "data": attachment["base64"],
            },
        }
        for attachment in attachments
    ]
    content.append({"type": "text", "text": prompt or DEFAULT_IMAGE_PROMPT})
    return {"type": "user", "message": {"role": "user", "content": content}}
