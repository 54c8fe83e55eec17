"""Read-only operational statistics over the executions table."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, timedelta
from pathlib import Path
from typing import Any

from flowmate.models import TERMINAL_STATUSES
from flowmate.storage.common import connect_sqlite_readonly, from_db_text, to_db_text
from flowmate.timezone import date_range_in_tz, today_in_tz

MAX_HISTORY_DAYS = 90
MAX_EXECUTION_ROWS = 50
PROMPT_PREVIEW_LIMIT = 100

_KNOWN_STATUSES = frozenset(status.value for status in TERMINAL_STATUSES)


@dataclass(slots=True, frozen=True)
class DailyStats:
    day: date
    total_cost_usd: float
    daily_budget_limit: float
    remaining_budget: float
    total_executions: int
    avg_duration_ms: int | None

    def to_payload(self) -> dict[str, Any]:
        return {
            "date": self.day.isoformat(),
            "totalCostUsd": self.total_cost_usd,
            "dailyBudgetLimit": self.daily_budget_limit,
            "remainingBudget": self.remaining_budget,
            "totalExecutions": self.total_executions,
            "avgDurationMs": self.avg_duration_ms,
        }


@dataclass(slots=True, frozen=True)
class DailyCost:
    day: date
    total_cost_usd: float
    total_executions: int

    def to_payload(self) -> dict[str, Any]:
        return {
            "date": self.day.isoformat(),
            "totalCostUsd": self.total_cost_usd,
            "totalExecutions": self.total_executions,
        }


@dataclass(slots=True, frozen=True)
class ExecutionSummary:
    id: int
    model: str | None
    status: str
    prompt: str
    cost_usd: float | None
    duration_ms: int | None
    num_turns: int | None
    started_at: str | None

    def to_payload(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "model": self.model,
            "status": self.status,
            "prompt": self.prompt,
            "costUsd": self.cost_usd,
            "durationMs": self.duration_ms,
            "numTurns": self.num_turns,
            "startedAt": self.started_at,
        }


@dataclass(slots=True, frozen=True)
class ModelUsage:
    model: str | None
    execution_count: int
    total_cost_usd: float
    avg_duration_ms: int | None
    total_input_tokens: int
    total_output_tokens: int

    def to_payload(self) -> dict[str, Any]:
        return {
            "model": self.model,
            "executionCount": self.execution_count,
            "totalCostUsd": self.total_cost_usd,
            "avgDurationMs": self.avg_duration_ms,
            "totalInputTokens": self.total_input_tokens,
            "totalOutputTokens": self.total_output_tokens,
        }


class StatsQueries:
    """Statistics with day boundaries in the configured timezone.

    Opens the database read-only, so it is safe to run inside a worker while
    the orchestrator keeps writing.
    """

    def __init__(self, db_path: Path, *, daily_budget_limit: float, timezone: str) -> None:
        self._connection = connect_sqlite_readonly(db_path)
        self.daily_budget_limit = daily_budget_limit
        self.timezone = timezone

    def close(self) -> None:
        self._connection.close()

    def daily_stats(self, day: date | None = None) -> DailyStats:
        target = day or today_in_tz(self.timezone)
        start, end = date_range_in_tz(target, self.timezone)
        row = self._connection.execute(
            """
            SELECT
                COALESCE(SUM(cost_usd), 0) AS total_cost_usd,
                COUNT(*) AS total_executions,
                AVG(CASE WHEN status IN ('completed', 'failed') THEN duration_ms END)
                    AS avg_duration_ms
            FROM executions
            WHERE started_at >= ? AND started_at < ?
            """,
            (to_db_text(start), to_db_text(end)),
        ).fetchone()
        total_cost = float(row["total_cost_usd"])
        return DailyStats(
            day=target,
            total_cost_usd=total_cost,
            daily_budget_limit=self.daily_budget_limit,
            remaining_budget=max(0.0, self.daily_budget_limit - total_cost),
            total_executions=int(row["total_executions"]),
            avg_duration_ms=_round_or_none(row["avg_duration_ms"]),
        )

    def cost_history(self, days: int = 7) -> list[DailyCost]:
        """One entry per day, newest first, ``days`` days back including today."""

        if not 1 <= days <= MAX_HISTORY_DAYS:
            raise ValueError(f"days must be between 1 and {MAX_HISTORY_DAYS}, got {days}")
        today = today_in_tz(self.timezone)
        history: list[DailyCost] = []
        for offset in range(days):
            day = today - timedelta(days=offset)
            start, end = date_range_in_tz(day, self.timezone)
            row = self._connection.execute(
                """
                SELECT COALESCE(SUM(cost_usd), 0) AS total_cost_usd, COUNT(*) AS total_executions
                FROM executions
                WHERE started_at >= ? AND started_at < ?
                """,
                (to_db_text(start), to_db_text(end)),
            ).fetchone()
            history.append(
                DailyCost(
                    day=day,
                    total_cost_usd=float(row["total_cost_usd"]),
                    total_executions=int(row["total_executions"]),
                ),
            )
        return history

    def execution_history(
        self,
        *,
        limit: int = 10,
        status: str | None = None,
        since: date | None = None,
    ) -> list[ExecutionSummary]:
        if not 1 <= limit <= MAX_EXECUTION_ROWS:
            raise ValueError(f"limit must be between 1 and {MAX_EXECUTION_ROWS}, got {limit}")
        if status is not None and status not in _KNOWN_STATUSES:
            raise ValueError(
                f"Unknown status {status!r}. Expected one of: {', '.join(sorted(_KNOWN_STATUSES))}",
            )

        conditions: list[str] = []
        params: list[Any] = []
        if status is not None:
            conditions.append("status = ?")
            params.append(status)
        if since is not None:
            start, _ = date_range_in_tz(since, self.timezone)
            conditions.append("started_at >= ?")
            params.append(to_db_text(start))
        where = f"WHERE {' AND '.join(conditions)}" if conditions else ""

        rows = self._connection.execute(
            f"""
            SELECT id, model, status, prompt, cost_usd, duration_ms, num_turns, started_at
            FROM executions
            {where}
            ORDER BY started_at DESC, id DESC
            LIMIT ?
            """,  # noqa: S608
            (*params, limit),
        ).fetchall()
        return [
            ExecutionSummary(
                id=int(row["id"]),
                model=row["model"],
                status=row["status"],
                prompt=_preview(row["prompt"]),
                cost_usd=row["cost_usd"],
                duration_ms=row["duration_ms"],
                num_turns=row["num_turns"],
                started_at=_iso_or_none(row["started_at"]),
            )
            for row in rows
        ]

    def model_usage(self, since: date | None = None) -> list[ModelUsage]:
        """Per-model totals for finished executions since ``since`` (default: today)."""

        start, _ = date_range_in_tz(since or today_in_tz(self.timezone), self.timezone)
        rows = self._connection.execute(
            """
            SELECT
                model,
                COUNT(*) AS execution_count,
                COALESCE(SUM(cost_usd), 0) AS total_cost_usd,
                AVG(duration_ms) AS avg_duration_ms,
                COALESCE(SUM(input_tokens), 0) AS total_input_tokens,
                COALESCE(SUM(output_tokens), 0) AS total_output_tokens
            FROM executions
            WHERE started_at >= ? AND status IN ('completed', 'failed')
            GROUP BY model
            ORDER BY total_cost_usd DESC
            """,
            (to_db_text(start),),
        ).fetchall()
        return [
            ModelUsage(
                model=row["model"],
                execution_count=int(row["execution_count"]),
                total_cost_usd=float(row["total_cost_usd"]),
                avg_duration_ms=_round_or_none(row["avg_duration_ms"]),
                total_input_tokens=int(row["total_input_tokens"]),
                total_output_tokens=int(row["total_output_tokens"]),
            )
            for row in rows
        ]


def _round_or_none(value: float | None) -> int | None:
    return round(value) if value else None


def _preview(prompt: str) -> str:
    if len(prompt) <= PROMPT_PREVIEW_LIMIT:
        return prompt
    return prompt[:PROMPT_PREVIEW_LIMIT] + "..."


def _iso_or_none(value: str | None) -> str | None:
    parsed = from_db_text(value)
    return parsed.isoformat() if parsed is not None else None
