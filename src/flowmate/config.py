"""Runtime configuration for the orchestrator, workers and Slack bot."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

ALL_TOOLS: tuple[str, ...] = (
    "Read",
    "Edit",
    "Write",
    "Bash",
    "Glob",
    "Grep",
    "Task",
    "WebSearch",
    "WebFetch",
)

SUPPORTED_CONTAINER_COMMANDS = frozenset({"podman", "docker", "nerdctl"})


@dataclass(slots=True)
class McpServerSettings:
    """One auxiliary tool server handed to the agent."""

    command: str
    args: tuple[str, ...] = ()
    env: dict[str, str] = field(default_factory=dict)


@dataclass(slots=True)
class LimitsSettings:
    """Budget and execution limits."""

    max_budget_per_task: float = 2.0
    max_turns_per_task: int = 100
    task_timeout_ms: int = 600_000
    daily_budget_limit: float = 50.0
    max_history_messages: int = 20


@dataclass(slots=True)
class ContainerSettings:
    """Container runtime used by the isolated worker backend."""

    command: str = "podman"
    runner_image: str = "flowmate-runner:latest"
    memory_limit: int = 4_294_967_296
    cpu_limit: int = 2_000_000_000


@dataclass(slots=True)
class SlackSettings:
    """Slack credentials and access control."""

    bot_token: str = ""
    app_token: str = ""
    allowed_user_ids: frozenset[str] = frozenset()


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path("data/flowmate.db")
    log_dir: Path = Path("logs")
    model: str = "sonnet"
    timezone: str = "UTC"
    dev_mode: bool = False
    allowed_directories: tuple[str, ...] = ()
    default_working_directory: str = ""
    tools: tuple[str, ...] = ALL_TOOLS
    skills_enabled: bool = True
    mcp_servers: dict[str, McpServerSettings] = field(default_factory=dict)
    limits: LimitsSettings = field(default_factory=LimitsSettings)
    container: ContainerSettings = field(default_factory=ContainerSettings)
    slack: SlackSettings = field(default_factory=SlackSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        home = str(Path.home())
        allowed = _split_csv(os.getenv("FLOWMATE_ALLOWED_DIRECTORIES", home))
        return cls(
            db_path=db_path or Path(os.getenv("FLOWMATE_DB_PATH", "data/flowmate.db")),
            log_dir=Path(os.getenv("FLOWMATE_LOG_DIR", "logs")),
            model=os.getenv("FLOWMATE_MODEL", "sonnet"),
            timezone=os.getenv("FLOWMATE_TIMEZONE", "UTC"),
            dev_mode=_env_bool("FLOWMATE_DEV", default=False),
            allowed_directories=allowed,
            default_working_directory=os.getenv(
                "FLOWMATE_WORKING_DIRECTORY",
                allowed[0] if allowed else home,
            ),
            tools=_split_csv(os.getenv("FLOWMATE_TOOLS", "")) or ALL_TOOLS,
            skills_enabled=_env_bool("FLOWMATE_SKILLS_ENABLED", default=True),
            mcp_servers=_parse_mcp_servers(os.getenv("FLOWMATE_MCP_SERVERS", "")),
            limits=LimitsSettings(
                max_budget_per_task=float(os.getenv("FLOWMATE_MAX_BUDGET_PER_TASK", "2.0")),
                max_turns_per_task=int(os.getenv("FLOWMATE_MAX_TURNS_PER_TASK", "100")),
                task_timeout_ms=int(os.getenv("FLOWMATE_TASK_TIMEOUT_MS", "600000")),
                daily_budget_limit=float(os.getenv("FLOWMATE_DAILY_BUDGET_LIMIT", "50.0")),
                max_history_messages=int(os.getenv("FLOWMATE_MAX_HISTORY_MESSAGES", "20")),
            ),
            container=ContainerSettings(
                command=os.getenv("FLOWMATE_CONTAINER_COMMAND", "podman"),
                runner_image=os.getenv("FLOWMATE_RUNNER_IMAGE", "flowmate-runner:latest"),
                memory_limit=int(os.getenv("FLOWMATE_CONTAINER_MEMORY_LIMIT", "4294967296")),
                cpu_limit=int(os.getenv("FLOWMATE_CONTAINER_CPU_LIMIT", "2000000000")),
            ),
            slack=SlackSettings(
                bot_token=os.getenv("SLACK_BOT_TOKEN", ""),
                app_token=os.getenv("SLACK_APP_TOKEN", ""),
                allowed_user_ids=frozenset(_split_csv(os.getenv("ALLOWED_USER_IDS", ""))),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error if paths, limits or names are inconsistent."""

        if not self.allowed_directories:
            raise ValueError("At least one allowed directory is required.")
        for directory in self.allowed_directories:
            if not os.path.isabs(directory):
                raise ValueError(f"allowed directory must be an absolute path: {directory!r}")
        if not os.path.isabs(self.default_working_directory):
            raise ValueError(
                "FLOWMATE_WORKING_DIRECTORY must be an absolute path: "
                f"{self.default_working_directory!r}",
            )
        if not any(
            _is_within(self.default_working_directory, directory)
            for directory in self.allowed_directories
        ):
            raise ValueError(
                "FLOWMATE_WORKING_DIRECTORY must be within one of the allowed directories.",
            )
        if self.container.command not in SUPPORTED_CONTAINER_COMMANDS:
            raise ValueError(
                f"Unsupported container command: {self.container.command!r}. "
                f"Expected one of: {', '.join(sorted(SUPPORTED_CONTAINER_COMMANDS))}",
            )
        unknown_tools = [tool for tool in self.tools if tool not in ALL_TOOLS]
        if unknown_tools:
            raise ValueError(f"Unknown tool names: {', '.join(unknown_tools)}")
        try:
            ZoneInfo(self.timezone)
        except (ZoneInfoNotFoundError, ValueError) as error:
            raise ValueError(f"Invalid FLOWMATE_TIMEZONE: {self.timezone!r}") from error

        limits = self.limits
        if limits.max_budget_per_task <= 0:
            raise ValueError("FLOWMATE_MAX_BUDGET_PER_TASK must be > 0.")
        if limits.daily_budget_limit <= 0:
            raise ValueError("FLOWMATE_DAILY_BUDGET_LIMIT must be > 0.")
        if limits.max_turns_per_task <= 0:
            raise ValueError("FLOWMATE_MAX_TURNS_PER_TASK must be > 0.")
        if limits.task_timeout_ms <= 0:
            raise ValueError("FLOWMATE_TASK_TIMEOUT_MS must be > 0.")
        if limits.max_history_messages <= 0:
            raise ValueError("FLOWMATE_MAX_HISTORY_MESSAGES must be > 0.")

    def validate_for_slack(self) -> None:
        """Raise configuration error if Slack or agent credentials are missing."""

        missing = [
            name
            for name, value in (
                ("ANTHROPIC_API_KEY", os.getenv("ANTHROPIC_API_KEY", "")),
                ("SLACK_BOT_TOKEN", self.slack.bot_token),
                ("SLACK_APP_TOKEN", self.slack.app_token),
            )
            if not value
        ]
        if missing:
            raise ValueError(f"Missing required environment variables: {', '.join(missing)}")


def _split_csv(raw: str) -> tuple[str, ...]:
    return tuple(part.strip() for part in raw.split(",") if part.strip())


def _is_within(path: str, directory: str) -> bool:
    base = directory.rstrip("/")
    return path in (directory, base) or path.startswith(base + "/")


def _parse_mcp_servers(raw: str) -> dict[str, McpServerSettings]:
    """Parse `FLOWMATE_MCP_SERVERS`.

    Format: JSON object ``{"name": {"command": "...", "args": [...], "env": {...}}}``.
    """

    if not raw.strip():
        return {}
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as error:
        raise ValueError(f"FLOWMATE_MCP_SERVERS is not valid JSON: {error}") from error
    if not isinstance(payload, dict):
        raise TypeError("FLOWMATE_MCP_SERVERS must be a JSON object")

    servers: dict[str, McpServerSettings] = {}
    for name, entry in payload.items():
        if not isinstance(entry, dict) or not isinstance(entry.get("command"), str):
            raise ValueError(f"FLOWMATE_MCP_SERVERS[{name!r}] requires a string 'command'")
        args = entry.get("args", [])
        env = entry.get("env", {})
        if not isinstance(args, list) or not all(isinstance(arg, str) for arg in args):
            raise TypeError(f"FLOWMATE_MCP_SERVERS[{name!r}].args must be a list of strings")
        if not isinstance(env, dict) or not all(
            isinstance(key, str) and isinstance(value, str) for key, value in env.items()
        ):
            raise TypeError(f"FLOWMATE_MCP_SERVERS[{name!r}].env must map strings to strings")
        servers[name] = McpServerSettings(command=entry["command"], args=tuple(args), env=env)
    return servers


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
