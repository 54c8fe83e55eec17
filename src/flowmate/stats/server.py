"""Statistics tool server handed to every worker (stdio MCP).

Run: python -m flowmate.stats.server --db data/flowmate.db --budget 50 --timezone UTC
"""

from __future__ import annotations

import json
import logging
import sys
from pathlib import Path

import rich_click as click
from mcp.server.fastmcp import FastMCP

from flowmate.stats.queries import StatsQueries
from flowmate.timezone import parse_day

SERVER_NAME = "flowmate"


def build_server(queries: StatsQueries) -> FastMCP:
    """FastMCP server exposing ``queries`` as tools."""

    mcp = FastMCP(SERVER_NAME)

    @mcp.tool()
    def get_daily_stats(date: str | None = None) -> str:
        """Get a day's operational stats: cost, budget remaining, execution count, average duration.

        Args:
            date: Date (YYYY-MM-DD) in the configured timezone, defaults to today
        """
        day = parse_day(date) if date else None
        return _dump(queries.daily_stats(day).to_payload())

    @mcp.tool()
    def get_cost_history(days: int = 7) -> str:
        """Get the daily cost trend over recent days.

        Args:
            days: Number of days to look back (default 7, max 90)
        """
        return _dump([entry.to_payload() for entry in queries.cost_history(days)])

    @mcp.tool()
    def get_execution_history(
        limit: int = 10,
        status: str | None = None,
        since: str | None = None,
    ) -> str:
        """Get recent execution records with optional filtering by status or date.

        Args:
            limit: Number of records (default 10, max 50)
            status: Filter by status: completed, failed, error, timeout
            since: Only executions since this date (YYYY-MM-DD) in the configured timezone
        """
        rows = queries.execution_history(
            limit=limit,
            status=status,
            since=parse_day(since) if since else None,
        )
        return _dump([row.to_payload() for row in rows])

    @mcp.tool()
    def get_model_usage(since: str | None = None) -> str:
        """Get usage stats grouped by model: execution count, cost, tokens.

        Args:
            since: Only executions since this date (YYYY-MM-DD), defaults to today
        """
        rows = queries.model_usage(parse_day(since) if since else None)
        return _dump([row.to_payload() for row in rows])

    return mcp


def _dump(payload: object) -> str:
    return json.dumps(payload, indent=2)


@click.command()
@click.option(
    "--db",
    "db_path",
    type=click.Path(path_type=Path, exists=True, dir_okay=False),
    required=True,
    help="SQLite database path",
)
@click.option("--budget", type=float, default=50.0, show_default=True, help="Daily budget (USD)")
@click.option("--timezone", default="UTC", show_default=True, help="IANA timezone for day bounds")
def main(db_path: Path, budget: float, timezone: str) -> None:
    """Serve FlowMate statistics over stdio."""

    # stdout carries JSON-RPC; diagnostics go to stderr.
    logging.basicConfig(stream=sys.stderr, level=logging.WARNING)
    queries = StatsQueries(db_path, daily_budget_limit=budget, timezone=timezone)
    try:
        build_server(queries).run()
    finally:
        queries.close()


if __name__ == "__main__":
    main()
