"""Runtime configuration for the job queue, scheduler, execution units and agent loop."""

from __future__ import annotations

import logging
import os
import shlex
import socket
import sys
import tempfile
from dataclasses import dataclass, field
from pathlib import Path

DEFAULT_ALLOWED_COMMANDS: tuple[str, ...] = (
    "cargo",
    "npm",
    "yarn",
    "pnpm",
    "phpstan",
    "mago lint",
    "eslint",
    "prettier",
    "black",
    "ruff",
    "mypy",
    "pytest",
    "go test",
    "go vet",
    "golangci-lint",
    "cat",
    "head",
    "tail",
    "wc",
    "grep",
    "rg",
    "ls",
    "find",
    "php -l",
    "jq",
    "git status",
    "git diff",
    "git log",
    "git show",
    "git add",
    "git commit",
    "git push",
)

DEFAULT_ENV_PASSTHROUGH: tuple[str, ...] = (
    "PATH",
    "LANG",
    "LC_ALL",
    "PYTHONPATH",
    "AGENT_DISPATCH_LOG_LEVEL",
    "AGENT_DISPATCH_AGENT_*",
)

NETWORK_ISOLATION_MODES: tuple[str, ...] = ("auto", "enforce", "off")

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def _default_unit_command() -> str:
    return f"{shlex.quote(sys.executable)} -m agent_dispatch.unit.entrypoint"


def _default_engine_command() -> str:
    return f"{shlex.quote(sys.executable)} -m agent_dispatch.agent.echo_engine {{messages_file}}"


@dataclass(slots=True)
class QueueSettings:
    """Job store and dequeue settings."""

    max_attempts: int = 3
    dequeue_timeout_seconds: float = 30.0
    poll_interval_seconds: float = 0.5
    manual_retry_resets_attempts: bool = False
    busy_timeout_ms: int = 5000


@dataclass(slots=True)
class SchedulerSettings:
    """Scheduler loop, deadline and reconciliation settings."""

    scheduler_id: str = "scheduler"
    unit_deadline_seconds: float = 900.0
    max_unit_lifetime_seconds: float = 1200.0
    reconcile_interval_seconds: float = 60.0
    capacity: int = 1
    store_retry_base_seconds: float = 1.0
    store_retry_max_seconds: float = 30.0
    store_retry_max_attempts: int = 8
    graceful_shutdown_seconds: float = 30.0
    idle_sleep_seconds: float = 10.0


@dataclass(slots=True)
class UnitSettings:
    """Execution unit isolation and resource settings."""

    sandbox_root: Path = field(
        default_factory=lambda: Path(tempfile.gettempdir()) / "agent-dispatch-units",
    )
    unit_command: str = field(default_factory=_default_unit_command)
    allowed_hosts: tuple[str, ...] = ()
    env_passthrough: tuple[str, ...] = DEFAULT_ENV_PASSTHROUGH
    memory_limit_mb: int = 4096
    cpu_limit_seconds: int = 0
    disk_limit_mb: int = 2048
    transient_exit_codes: tuple[int, ...] = (137, 143)
    network_isolation: str = "auto"

    def command_argv(self) -> list[str]:
        return shlex.split(self.unit_command)


@dataclass(slots=True)
class AgentSettings:
    """Agent loop, reasoning engine and action executor settings."""

    max_iterations: int = 100
    engine_command_template: str = field(default_factory=_default_engine_command)
    engine_timeout_seconds: float = 300.0
    engine_max_retries: int = 3
    engine_retry_backoff_seconds: float = 2.0
    allowed_commands: tuple[str, ...] = DEFAULT_ALLOWED_COMMANDS
    command_timeout_seconds: float = 300.0
    max_observation_chars: int = 20_000
    clone_depth: int = 50


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".agent_dispatch.db")
    log_level: str = "INFO"
    queue: QueueSettings = field(default_factory=QueueSettings)
    scheduler: SchedulerSettings = field(default_factory=SchedulerSettings)
    unit: UnitSettings = field(default_factory=UnitSettings)
    agent: AgentSettings = field(default_factory=AgentSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            db_path=db_path or Path(os.getenv("AGENT_DISPATCH_DB_PATH", ".agent_dispatch.db")),
            log_level=os.getenv("AGENT_DISPATCH_LOG_LEVEL", "INFO").strip().upper(),
            queue=QueueSettings(
                max_attempts=int(os.getenv("AGENT_DISPATCH_MAX_ATTEMPTS", "3")),
                dequeue_timeout_seconds=float(
                    os.getenv("AGENT_DISPATCH_DEQUEUE_TIMEOUT_SECONDS", "30"),
                ),
                poll_interval_seconds=float(
                    os.getenv("AGENT_DISPATCH_POLL_INTERVAL_SECONDS", "0.5"),
                ),
                manual_retry_resets_attempts=_env_bool(
                    "AGENT_DISPATCH_MANUAL_RETRY_RESETS_ATTEMPTS",
                    default=False,
                ),
                busy_timeout_ms=int(os.getenv("AGENT_DISPATCH_BUSY_TIMEOUT_MS", "5000")),
            ),
            scheduler=SchedulerSettings(
                scheduler_id=os.getenv(
                    "AGENT_DISPATCH_SCHEDULER_ID",
                    f"{socket.gethostname()}:{os.getpid()}",
                ),
                unit_deadline_seconds=float(
                    os.getenv("AGENT_DISPATCH_UNIT_DEADLINE_SECONDS", "900"),
                ),
                max_unit_lifetime_seconds=float(
                    os.getenv("AGENT_DISPATCH_MAX_UNIT_LIFETIME_SECONDS", "1200"),
                ),
                reconcile_interval_seconds=float(
                    os.getenv("AGENT_DISPATCH_RECONCILE_INTERVAL_SECONDS", "60"),
                ),
                capacity=int(os.getenv("AGENT_DISPATCH_CAPACITY", "1")),
                store_retry_base_seconds=float(
                    os.getenv("AGENT_DISPATCH_STORE_RETRY_BASE_SECONDS", "1"),
                ),
                store_retry_max_seconds=float(
                    os.getenv("AGENT_DISPATCH_STORE_RETRY_MAX_SECONDS", "30"),
                ),
                store_retry_max_attempts=int(
                    os.getenv("AGENT_DISPATCH_STORE_RETRY_MAX_ATTEMPTS", "8"),
                ),
                graceful_shutdown_seconds=float(
                    os.getenv("AGENT_DISPATCH_GRACEFUL_SHUTDOWN_SECONDS", "30"),
                ),
                idle_sleep_seconds=float(os.getenv("AGENT_DISPATCH_IDLE_SLEEP_SECONDS", "10")),
            ),
            unit=UnitSettings(
                sandbox_root=Path(
                    os.getenv(
                        "AGENT_DISPATCH_SANDBOX_ROOT",
                        str(Path(tempfile.gettempdir()) / "agent-dispatch-units"),
                    ),
                ),
                unit_command=os.getenv("AGENT_DISPATCH_UNIT_COMMAND", _default_unit_command()),
                allowed_hosts=_env_csv("AGENT_DISPATCH_ALLOWED_HOSTS"),
                env_passthrough=(
                    _env_csv("AGENT_DISPATCH_ENV_PASSTHROUGH") or DEFAULT_ENV_PASSTHROUGH
                ),
                memory_limit_mb=int(os.getenv("AGENT_DISPATCH_MEMORY_LIMIT_MB", "4096")),
                cpu_limit_seconds=int(os.getenv("AGENT_DISPATCH_CPU_LIMIT_SECONDS", "0")),
                disk_limit_mb=int(os.getenv("AGENT_DISPATCH_DISK_LIMIT_MB", "2048")),
                transient_exit_codes=_env_int_tuple(
                    "AGENT_DISPATCH_TRANSIENT_EXIT_CODES",
                    default=(137, 143),
                ),
                network_isolation=(
                    os.getenv("AGENT_DISPATCH_NETWORK_ISOLATION", "auto").strip().lower()
                ),
            ),
            agent=AgentSettings(
                max_iterations=int(os.getenv("AGENT_DISPATCH_AGENT_MAX_ITERATIONS", "100")),
                engine_command_template=os.getenv(
                    "AGENT_DISPATCH_AGENT_ENGINE_COMMAND",
                    _default_engine_command(),
                ),
                engine_timeout_seconds=float(
                    os.getenv("AGENT_DISPATCH_AGENT_ENGINE_TIMEOUT_SECONDS", "300"),
                ),
                engine_max_retries=int(os.getenv("AGENT_DISPATCH_AGENT_ENGINE_MAX_RETRIES", "3")),
                engine_retry_backoff_seconds=float(
                    os.getenv("AGENT_DISPATCH_AGENT_ENGINE_RETRY_BACKOFF_SECONDS", "2"),
                ),
                allowed_commands=(
                    _env_csv("AGENT_DISPATCH_AGENT_ALLOWED_COMMANDS") or DEFAULT_ALLOWED_COMMANDS
                ),
                command_timeout_seconds=float(
                    os.getenv("AGENT_DISPATCH_AGENT_COMMAND_TIMEOUT_SECONDS", "300"),
                ),
                max_observation_chars=int(
                    os.getenv("AGENT_DISPATCH_AGENT_MAX_OBSERVATION_CHARS", "20000"),
                ),
                clone_depth=int(os.getenv("AGENT_DISPATCH_AGENT_CLONE_DEPTH", "50")),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for limits the scheduler cannot honour."""

        if self.queue.max_attempts < 1:
            raise ValueError("AGENT_DISPATCH_MAX_ATTEMPTS must be >= 1.")
        if self.queue.dequeue_timeout_seconds < 0:
            raise ValueError("AGENT_DISPATCH_DEQUEUE_TIMEOUT_SECONDS must be >= 0.")
        if self.queue.poll_interval_seconds <= 0:
            raise ValueError("AGENT_DISPATCH_POLL_INTERVAL_SECONDS must be > 0.")
        if self.scheduler.unit_deadline_seconds <= 0:
            raise ValueError("AGENT_DISPATCH_UNIT_DEADLINE_SECONDS must be > 0.")
        if self.scheduler.max_unit_lifetime_seconds < self.scheduler.unit_deadline_seconds:
            raise ValueError(
                "AGENT_DISPATCH_MAX_UNIT_LIFETIME_SECONDS must be >= "
                "AGENT_DISPATCH_UNIT_DEADLINE_SECONDS.",
            )
        if self.scheduler.reconcile_interval_seconds <= 0:
            raise ValueError("AGENT_DISPATCH_RECONCILE_INTERVAL_SECONDS must be > 0.")
        if self.scheduler.capacity < 1:
            raise ValueError("AGENT_DISPATCH_CAPACITY must be >= 1.")
        if self.scheduler.store_retry_max_attempts < 1:
            raise ValueError("AGENT_DISPATCH_STORE_RETRY_MAX_ATTEMPTS must be >= 1.")
        if not self.unit.command_argv():
            raise ValueError("AGENT_DISPATCH_UNIT_COMMAND must not be empty.")
        for name, value in (
            ("AGENT_DISPATCH_MEMORY_LIMIT_MB", self.unit.memory_limit_mb),
            ("AGENT_DISPATCH_CPU_LIMIT_SECONDS", self.unit.cpu_limit_seconds),
            ("AGENT_DISPATCH_DISK_LIMIT_MB", self.unit.disk_limit_mb),
        ):
            if value < 0:
                raise ValueError(f"{name} must be >= 0.")
        if self.unit.network_isolation not in NETWORK_ISOLATION_MODES:
            raise ValueError(
                "AGENT_DISPATCH_NETWORK_ISOLATION must be one of "
                f"{', '.join(NETWORK_ISOLATION_MODES)}.",
            )
        if self.agent.max_iterations < 1:
            raise ValueError("AGENT_DISPATCH_AGENT_MAX_ITERATIONS must be >= 1.")
        if self.agent.max_observation_chars <= 0:
            raise ValueError("AGENT_DISPATCH_AGENT_MAX_OBSERVATION_CHARS must be > 0.")
        if not self.agent.engine_command_template.strip():
            raise ValueError("AGENT_DISPATCH_AGENT_ENGINE_COMMAND must not be empty.")


def configure_logging(level: str = "INFO") -> None:
    """Install a stderr handler for CLI entry points."""

    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
        stream=sys.stderr,
    )


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


def _env_csv(name: str) -> tuple[str, ...]:
    raw = os.getenv(name, "")
    return tuple(item.strip() for item in raw.split(",") if item.strip())


def _env_int_tuple(name: str, *, default: tuple[int, ...]) -> tuple[int, ...]:
    items = _env_csv(name)
    if not items:
        return default
    try:
        return tuple(int(item) for item in items)
    except ValueError as error:
        raise ValueError(f"Invalid integer list for {name}: {os.getenv(name)!r}") from error
