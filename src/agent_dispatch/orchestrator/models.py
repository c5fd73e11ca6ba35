"""Domain models for the job queue and scheduler."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum


class JobStatus(str, Enum):
    """Durable job lifecycle states."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class FailureClass(str, Enum):
    """Normalized failure classes used by retry policy."""

    TIMEOUT = "timeout"
    UNIT_TRANSIENT = "unit_transient"
    UNIT_ERROR = "unit_error"
    ITERATION_LIMIT = "iteration_limit"
    ENGINE_UNAVAILABLE = "engine_unavailable"
    MALFORMED_PAYLOAD = "malformed_payload"
    PROVISIONING_FAILED = "provisioning_failed"
    ORPHANED = "orphaned"


# Non-terminal states; an idempotency key is "in use" while a job sits in one of these.
ACTIVE_STATUSES = (JobStatus.PENDING, JobStatus.PROCESSING)


@dataclass(slots=True)
class JobCreate:
    """Input payload for submitting a job."""

    payload: bytes
    idempotency_key: str | None = None
    max_attempts: int | None = None
    job_id: str | None = None


@dataclass(slots=True)
class JobView:
    """Readable job view for CLI and scheduler logic."""

    job_id: str
    idempotency_key: str | None
    payload: bytes
    status: JobStatus
    attempt: int
    max_attempts: int
    queue_position: int
    unit_id: str | None
    failure_class: FailureClass | None
    last_error: str | None
    created_at: datetime
    started_at: datetime | None
    finished_at: datetime | None
    last_transition_at: datetime


@dataclass(slots=True)
class JobStats:
    """Per-collection job counts."""

    pending: int = 0
    processing: int = 0
    failed: int = 0
    completed: int = 0

    def as_dict(self) -> dict[str, int]:
        return {
            "pending": self.pending,
            "processing": self.processing,
            "failed": self.failed,
            "completed": self.completed,
        }
