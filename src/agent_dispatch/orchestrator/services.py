"""Use-case services for job submission."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from agent_dispatch.orchestrator.models import JobCreate
from agent_dispatch.orchestrator.repository import JobRepository

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class JobSubmission:
    """Canonical job submission shape produced by ingress adapters."""

    payload: bytes
    idempotency_key: str | None = None
    max_attempts: int | None = None


@dataclass(slots=True)
class SubmissionResult:
    job_id: str
    created: bool


class JobSubmissionService:
    """Deduplicates submissions by idempotency key before enqueue."""

    def __init__(self, *, repository: JobRepository) -> None:
        self.repository = repository

    def submit(self, submission: JobSubmission) -> SubmissionResult:
        if submission.idempotency_key:
            existing = self.repository.find_active_by_key(submission.idempotency_key)
            if existing is not None:
                logger.info(
                    "Skipping duplicate submission key=%s existing_job=%s",
                    submission.idempotency_key,
                    existing.job_id,
                )
                return SubmissionResult(job_id=existing.job_id, created=False)

        job_id = self.repository.submit(
            JobCreate(
                payload=submission.payload,
                idempotency_key=submission.idempotency_key,
                max_attempts=submission.max_attempts,
            ),
        )
        return SubmissionResult(job_id=job_id, created=True)
