"""Errors raised by the execution service."""

from __future__ import annotations


class ExecutionError(RuntimeError):
    """Base class for execution outcomes that did not produce a result."""


class BudgetExceededError(ExecutionError):
    """Daily budget does not cover another task."""

    def __init__(self, remaining: float) -> None:
        super().__init__(f"Daily budget exceeded. Remaining: ${remaining:.2f}")
        self.remaining = remaining


class TaskTimeoutError(ExecutionError):
    """Worker did not report a result before the task timeout."""

    def __init__(self, message: str = "Task timed out") -> None:
        super().__init__(message)


class ExecutionFailedError(ExecutionError):
    """Worker reported an error message over the side channel."""

    def __init__(self, message: str, *, cost_usd: float = 0.0) -> None:
        super().__init__(message)
        self.cost_usd = cost_usd


class WorkerCrashedError(ExecutionError):
    """Worker exited without reporting a result or an error."""

    def __init__(self, *, code: int | None, signal: str | None, worker_id: str | None) -> None:
        super().__init__(
            "Runner exited without IPC result "
            f"(code={code}, signal={signal}, containerId={worker_id})",
        )
        self.code = code
        self.signal = signal
        self.worker_id = worker_id
