"""Run one task: load payload, drive the agent CLI, report over the side channel."""

from __future__ import annotations

import json
import os
import signal
import subprocess
import threading
import time
from collections.abc import Mapping
from datetime import UTC, datetime
from types import FrameType
from typing import IO, Any

from flowmate.ipc import ErrorMessage, TokenUsage, debug, emit
from flowmate.runner.agent import AGENT_COMMAND_ENV, StreamTranslator, build_agent_command
from flowmate.runner.payload import (
    build_context_prompt,
    build_multimodal_message,
    load_task_config,
)


def main(environ: Mapping[str, str] | None = None) -> int:
    """Entrypoint; returns the process exit code."""

    env = os.environ if environ is None else environ
    started = time.monotonic()
    try:
        config = load_task_config(env)
        debug(f"Execution #{config['executionId']} starting")
        exit_code = run_task(config, env=env, started=started)
        debug(f"Execution #{config['executionId']} finished")
        return exit_code
    except Exception as error:  # noqa: BLE001
        debug(f"runner failed: {error}")
        emit(_error_message(str(error), started=started))
        return 1


def run_task(config: Mapping[str, Any], *, env: Mapping[str, str], started: float) -> int:
    attachments = config.get("attachments") or []
    prompt = build_context_prompt(config)
    argv = build_agent_command(
        config,
        template=env.get(AGENT_COMMAND_ENV),
        multimodal=bool(attachments),
    )
    if attachments:
        stdin_text = json.dumps(build_multimodal_message(prompt, attachments)) + "\n"
    else:
        stdin_text = prompt
    debug(f"agent command: {argv[0]} ({len(argv) - 1} args), attachments={len(attachments)}")

    child_env = {key: value for key, value in env.items() if key != "CLAUDECODE"}
    process = subprocess.Popen(  # noqa: S603
        argv,
        cwd=str(config["workingDirectory"]),
        env=child_env,
        stdin=subprocess.PIPE,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        text=True,
        encoding="utf-8",
        errors="replace",
    )
    previous_handler = signal.signal(signal.SIGTERM, _forward_termination(process))
    stderr_thread = threading.Thread(
        target=_forward_stderr,
        args=(process.stderr,),
        name="agent-stderr",
        daemon=True,
    )
    stderr_thread.start()

    translator = StreamTranslator(started_monotonic=started)
    try:
        _write_stdin(process, stdin_text)
        for line in process.stdout or ():
            message = translator.translate(
                line,
                now=time.monotonic(),
                timestamp=datetime.now(tz=UTC).isoformat(),
            )
            if message is not None:
                emit(message)
        returncode = process.wait()
    finally:
        signal.signal(signal.SIGTERM, previous_handler)
        stderr_thread.join(timeout=5)

    if not translator.finished:
        emit(
            _error_message(
                f"Agent exited with code {returncode} without a result",
                started=started,
            ),
        )
        return 1
    return 0 if returncode == 0 else 1


def _write_stdin(process: subprocess.Popen[str], text: str) -> None:
    if process.stdin is None:
        return
    try:
        process.stdin.write(text)
        process.stdin.close()
    except BrokenPipeError:
        debug("agent closed stdin before the prompt was written")


def _forward_stderr(stream: IO[str] | None) -> None:
    if stream is None:
        return
    for line in stream:
        text = line.rstrip()
        if text:
            debug(f"agent-stderr: {text}")


def _forward_termination(process: subprocess.Popen[str]):  # noqa: ANN202
    def handler(signum: int, _frame: FrameType | None) -> None:
        debug(f"received signal {signum}, stopping agent")
        if process.poll() is None:
            process.terminate()

    return handler


def _error_message(message: str, *, started: float) -> ErrorMessage:
    return ErrorMessage(
        message=message,
        cost_usd=0.0,
        tokens_used=TokenUsage(),
        duration_ms=int((time.monotonic() - started) * 1000),
        num_turns=0,
    )

