"""Execution unit interface shared by the scheduler and unit implementations."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol

from agent_dispatch.orchestrator.models import JobView

RESULT_STATUS_SUCCEEDED = "succeeded"
RESULT_STATUS_FAILED = "failed"

# Environment contract between a unit host and the process it runs.
ENV_JOB_ID = "AGENT_DISPATCH_JOB_ID"
ENV_UNIT_ID = "AGENT_DISPATCH_UNIT_ID"
ENV_JOB_PAYLOAD = "AGENT_DISPATCH_JOB_PAYLOAD"
ENV_ALLOWED_HOSTS = "AGENT_DISPATCH_ALLOWED_HOSTS"
ENV_RESULT_PATH = "AGENT_DISPATCH_RESULT_PATH"
ENV_WORKSPACE = "AGENT_DISPATCH_WORKSPACE"

# Unit exit codes: 0 succeeded, EXIT_RETRYABLE or any other non-zero is retryable.
EXIT_RETRYABLE = 1


class UnitState(str, Enum):
    """Execution unit lifecycle states."""

    CREATED = "created"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    DESTROYED = "destroyed"


class UnitProvisioningError(RuntimeError):
    """Unit could not be created or started, with retryability hint."""

    def __init__(self, message: str, *, transient: bool) -> None:
        super().__init__(message)
        self.transient = transient


@dataclass(slots=True)
class UnitOutcome:
    """Single observed outcome of one unit run."""

    state: UnitState
    exit_code: int | None
    timed_out: bool = False
    interrupted: bool = False
    result: dict[str, Any] | None = None
    reason: str | None = None
    stderr_preview: str = ""
    duration_seconds: float = 0.0
    details: dict[str, Any] = field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return self.state is UnitState.SUCCEEDED

    @property
    def result_failure_class(self) -> str | None:
        if self.result is None:
            return None
        value = self.result.get("failure_class")
        return str(value) if value else None

    @property
    def result_retryable(self) -> bool | None:
        if self.result is None or "retryable" not in self.result:
            return None
        return bool(self.result["retryable"])

    def describe_failure(self) -> str:
        """Human-readable failure reason for ``last_error``."""

        if self.reason:
            return self.reason
        if self.result is not None and self.result.get("reason"):
            return str(self.result["reason"])
        preview = self.stderr_preview.strip()
        if preview:
            return f"unit exited with code {self.exit_code}: {preview}"
        return f"unit exited with code {self.exit_code}"


class ExecutionUnit(Protocol):
    """Create -> run -> destroy lifecycle for one job."""

    unit_id: str
    state: UnitState | None

    def create(self) -> None:
        """Set up the isolated environment and materialize the job payload."""

    def run(
        self,
        *,
        deadline_seconds: float,
        shutdown_requested: Callable[[], bool] | None = None,
        graceful_shutdown_seconds: float = 0,
    ) -> UnitOutcome:
        """Run the hosted session until it exits or the deadline elapses."""

    def destroy(self) -> None:
        """Release every resource held by the unit. Safe to call repeatedly."""

    def is_alive(self) -> bool:
        """Whether the hosted process is still running."""


UnitFactory = Callable[[JobView], ExecutionUnit]
