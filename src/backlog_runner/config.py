"""Runtime configuration for board access, agent execution and the scheduling loop."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

SUPPORTED_QUEUE_ORDERS = ("alphabetical", "priority_then_alphabetical")


@dataclass(slots=True)
class BoardSettings:
    """Local markdown board settings."""

    board_dir: Path = Path("Board")


@dataclass(slots=True)
class QueueSettings:
    """Scheduling loop settings."""

    debounce_seconds: float = 1.5
    max_tasks_per_run: int = 50
    order: str = "alphabetical"
    run_on_startup: bool = True
    poll_interval_seconds: float = 60.0


@dataclass(slots=True)
class AgentSettings:
    """External coding agent settings."""

    command_template: str = "claude --print"
    workdir: Path = Path()
    timeout_seconds: int = 75 * 60
    extra_prompt: str = ""
    full_access: bool = False
    oauth_token: str = ""
    log_prompt: bool = False
    review_enabled: bool = False
    epic_review_enabled: bool = False
    review_model: str = "claude-opus-4-6"
    epic_review_timeout_seconds: int = 30 * 60
    force_test_creation: bool = False
    force_test_run: bool = False
    force_commit: bool = False


@dataclass(slots=True)
class WatchdogSettings:
    """Staleness timer and consecutive failure ledger settings."""

    enabled: bool = True
    interval_seconds: float = 20 * 60
    max_warnings: int = 3
    max_consecutive_failures: int = 3


@dataclass(slots=True)
class StateSettings:
    """Durable state and failure policy settings."""

    db_path: Path = Path(".backlog_runner/runs.db")
    logs_dir: Path = Path(".backlog_runner/logs")
    auto_reset_failed_task: bool = False


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    board: BoardSettings = field(default_factory=BoardSettings)
    queue: QueueSettings = field(default_factory=QueueSettings)
    agent: AgentSettings = field(default_factory=AgentSettings)
    watchdog: WatchdogSettings = field(default_factory=WatchdogSettings)
    state: StateSettings = field(default_factory=StateSettings)

    @classmethod
    def from_env(cls, board_dir: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            board=BoardSettings(
                board_dir=board_dir or Path(os.getenv("BACKLOG_RUNNER_BOARD_DIR", "Board")),
            ),
            queue=QueueSettings(
                debounce_seconds=_env_float("BACKLOG_RUNNER_QUEUE_DEBOUNCE_SECONDS", 1.5),
                max_tasks_per_run=_env_int("BACKLOG_RUNNER_MAX_TASKS_PER_RUN", 50),
                order=os.getenv("BACKLOG_RUNNER_QUEUE_ORDER", "alphabetical").strip().lower(),
                run_on_startup=_env_bool("BACKLOG_RUNNER_QUEUE_RUN_ON_STARTUP", default=True),
                poll_interval_seconds=_env_float(
                    "BACKLOG_RUNNER_QUEUE_POLL_INTERVAL_SECONDS",
                    60.0,
                ),
            ),
            agent=AgentSettings(
                command_template=os.getenv("BACKLOG_RUNNER_AGENT_COMMAND", "claude --print"),
                workdir=Path(os.getenv("BACKLOG_RUNNER_AGENT_WORKDIR", ".")).resolve(),
                timeout_seconds=_env_int("BACKLOG_RUNNER_AGENT_TIMEOUT_SECONDS", 75 * 60),
                extra_prompt=os.getenv("BACKLOG_RUNNER_AGENT_EXTRA_PROMPT", ""),
                full_access=_env_bool("BACKLOG_RUNNER_AGENT_FULL_ACCESS", default=False),
                oauth_token=os.getenv("CLAUDE_CODE_OAUTH_TOKEN", ""),
                log_prompt=_env_bool("BACKLOG_RUNNER_AGENT_LOG_PROMPT", default=False),
                review_enabled=_env_bool("BACKLOG_RUNNER_REVIEW_ENABLED", default=False),
                epic_review_enabled=_env_bool(
                    "BACKLOG_RUNNER_EPIC_REVIEW_ENABLED",
                    default=False,
                ),
                review_model=os.getenv("BACKLOG_RUNNER_REVIEW_MODEL", "claude-opus-4-6"),
                epic_review_timeout_seconds=_env_int(
                    "BACKLOG_RUNNER_EPIC_REVIEW_TIMEOUT_SECONDS",
                    30 * 60,
                ),
                force_test_creation=_env_bool(
                    "BACKLOG_RUNNER_FORCE_TEST_CREATION",
                    default=False,
                ),
                force_test_run=_env_bool("BACKLOG_RUNNER_FORCE_TEST_RUN", default=False),
                force_commit=_env_bool("BACKLOG_RUNNER_FORCE_COMMIT", default=False),
            ),
            watchdog=WatchdogSettings(
                enabled=_env_bool("BACKLOG_RUNNER_WATCHDOG_ENABLED", default=True),
                interval_seconds=_env_float("BACKLOG_RUNNER_WATCHDOG_INTERVAL_SECONDS", 1200.0),
                max_warnings=_env_int("BACKLOG_RUNNER_WATCHDOG_MAX_WARNINGS", 3),
                max_consecutive_failures=_env_int(
                    "BACKLOG_RUNNER_WATCHDOG_MAX_CONSECUTIVE_FAILURES",
                    3,
                ),
            ),
            state=StateSettings(
                db_path=Path(os.getenv("BACKLOG_RUNNER_DB_PATH", ".backlog_runner/runs.db")),
                logs_dir=Path(os.getenv("BACKLOG_RUNNER_LOGS_DIR", ".backlog_runner/logs")),
                auto_reset_failed_task=_env_bool(
                    "BACKLOG_RUNNER_AUTO_RESET_FAILED_TASK",
                    default=False,
                ),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error if any setting is out of range."""

        if self.queue.order not in SUPPORTED_QUEUE_ORDERS:
            raise ValueError(
                f"Unsupported BACKLOG_RUNNER_QUEUE_ORDER: {self.queue.order!r}. "
                f"Expected one of: {', '.join(SUPPORTED_QUEUE_ORDERS)}.",
            )
        if self.queue.debounce_seconds < 0:
            raise ValueError("BACKLOG_RUNNER_QUEUE_DEBOUNCE_SECONDS must be >= 0.")
        if self.queue.max_tasks_per_run <= 0:
            raise ValueError("BACKLOG_RUNNER_MAX_TASKS_PER_RUN must be > 0.")
        if self.queue.poll_interval_seconds < 0:
            raise ValueError("BACKLOG_RUNNER_QUEUE_POLL_INTERVAL_SECONDS must be >= 0.")
        if not self.agent.command_template.strip():
            raise ValueError("BACKLOG_RUNNER_AGENT_COMMAND must not be empty.")
        if self.agent.timeout_seconds <= 0:
            raise ValueError("BACKLOG_RUNNER_AGENT_TIMEOUT_SECONDS must be > 0.")
        if self.agent.epic_review_timeout_seconds <= 0:
            raise ValueError("BACKLOG_RUNNER_EPIC_REVIEW_TIMEOUT_SECONDS must be > 0.")
        if self.watchdog.interval_seconds <= 0:
            raise ValueError("BACKLOG_RUNNER_WATCHDOG_INTERVAL_SECONDS must be > 0.")
        if self.watchdog.max_warnings <= 0:
            raise ValueError("BACKLOG_RUNNER_WATCHDOG_MAX_WARNINGS must be > 0.")
        if self.watchdog.max_consecutive_failures <= 0:
            raise ValueError("BACKLOG_RUNNER_WATCHDOG_MAX_CONSECUTIVE_FAILURES must be > 0.")


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value)
    except ValueError as error:
        raise ValueError(f"Invalid integer value for {name}: {value!r}") from error


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return float(value)
    except ValueError as error:
        raise ValueError(f"Invalid numeric value for {name}: {value!r}") from error


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
