"""Persistent job store backed by SQLModel + SQLite."""

from __future__ import annotations

import logging
import time
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from uuid import uuid4

from sqlalchemy import delete as sa_delete
from sqlalchemy import func
from sqlalchemy import insert as sa_insert
from sqlalchemy import select as sa_select
from sqlalchemy import update as sa_update
from sqlalchemy.exc import OperationalError
from sqlmodel import Session, col, select

from agent_dispatch.orchestrator.errors import (
    JobNotFoundError,
    JobStateError,
    JobStoreUnavailableError,
)
from agent_dispatch.orchestrator.models import (
    ACTIVE_STATUSES,
    FailureClass,
    JobCreate,
    JobStats,
    JobStatus,
    JobView,
)
from agent_dispatch.storage.alembic_runner import upgrade_head
from agent_dispatch.storage.common import (
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from agent_dispatch.storage.sqlmodel_models import JobRow

logger = logging.getLogger(__name__)


class JobRepository:
    """Queue persistence facade: pending/processing/failed collections over one table.

    Every status transition is a single conditional UPDATE guarded by the
    expected current status, so a job is always in exactly one collection and
    two schedulers can never both claim the same job.
    """

    def __init__(
        self,
        db_path: Path,
        *,
        max_attempts: int = 3,
        poll_interval_seconds: float = 0.5,
        manual_retry_resets_attempts: bool = False,
        busy_timeout_ms: int = 5000,
    ) -> None:
        self.db_path = db_path
        self.max_attempts = max_attempts
        self.poll_interval_seconds = poll_interval_seconds
        self.manual_retry_resets_attempts = manual_retry_resets_attempts
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    def submit(self, create: JobCreate) -> str:
        """Create a pending job at the tail of the queue and return its id."""

        now = to_db_datetime(utc_now())
        job_id = create.job_id or str(uuid4())
        with self._session() as session:
            session.exec(
                sa_insert(JobRow).values(
                    job_id=job_id,
                    idempotency_key=create.idempotency_key,
                    payload=create.payload,
                    status=JobStatus.PENDING.value,
                    attempt=0,
                    max_attempts=create.max_attempts or self.max_attempts,
                    queue_position=_tail_position(),
                    created_at=now,
                    last_transition_at=now,
                ),
            )
            session.commit()
        logger.info("Submitted job %s", job_id)
        return job_id

    def find_active_by_key(self, idempotency_key: str) -> JobView | None:
        """Return the pending/processing job holding this idempotency key, if any."""

        with self._session() as session:
            row = session.exec(
                select(JobRow)
                .where(
                    JobRow.idempotency_key == idempotency_key,
                    col(JobRow.status).in_([status.value for status in ACTIVE_STATUSES]),
                )
                .order_by(col(JobRow.queue_position).asc())
                .limit(1),
            ).one_or_none()
            return _to_job_view(row) if row is not None else None

    def dequeue(self, *, timeout: float) -> JobView | None:
        """Claim the oldest pending job, waiting up to ``timeout`` seconds for one."""

        deadline = time.monotonic() + max(0.0, timeout)
        while True:
            job = self._claim_next()
            if job is not None:
                return job
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return None
            time.sleep(min(self.poll_interval_seconds, remaining))

    def _claim_next(self) -> JobView | None:
        while True:
            now = to_db_datetime(utc_now())
            with self._session() as session:
                candidate = session.exec(
                    select(JobRow)
                    .where(JobRow.status == JobStatus.PENDING.value)
                    .order_by(
                        col(JobRow.queue_position).asc(),
                        col(JobRow.created_at).asc(),
                    )
                    .limit(1),
                ).one_or_none()
                if candidate is None:
                    return None

                result = session.exec(
                    sa_update(JobRow)
                    .where(
                        col(JobRow.job_id) == candidate.job_id,
                        col(JobRow.status) == JobStatus.PENDING.value,
                    )
                    .values(
                        status=JobStatus.PROCESSING.value,
                        attempt=col(JobRow.attempt) + 1,
                        started_at=now,
                        finished_at=None,
                        unit_id=None,
                        last_transition_at=now,
                    ),
                )
                if result.rowcount != 1:
                    session.rollback()
                    continue

                session.commit()

                claimed = _to_job_view(
                    session.exec(
                        select(JobRow).where(JobRow.job_id == candidate.job_id),
                    ).one(),
                )
                logger.info("Dequeued job %s (attempt %d)", claimed.job_id, claimed.attempt)
                return claimed

    def attach_unit(self, *, job_id: str, unit_id: str) -> bool:
        """Record which execution unit hosts a processing job."""

        with self._session() as session:
            result = session.exec(
                sa_update(JobRow)
                .where(
                    col(JobRow.job_id) == job_id,
                    col(JobRow.status) == JobStatus.PROCESSING.value,
                )
                .values(unit_id=unit_id),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def complete(self, *, job_id: str) -> JobStatus:
        """Transition a processing job to completed."""

        now = to_db_datetime(utc_now())
        with self._session() as session:
            result = session.exec(
                sa_update(JobRow)
                .where(
                    col(JobRow.job_id) == job_id,
                    col(JobRow.status) == JobStatus.PROCESSING.value,
                )
                .values(
                    status=JobStatus.COMPLETED.value,
                    finished_at=now,
                    last_transition_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                raise JobNotFoundError(f"Job is not processing: {job_id}")
            session.commit()
        logger.info("Completed job %s", job_id)
        return JobStatus.COMPLETED

    def fail(
        self,
        *,
        job_id: str,
        reason: str,
        retry: bool,
        failure_class: FailureClass | None = None,
    ) -> JobStatus:
        """Requeue a processing job at the tail, or mark it failed.

        Requeue happens only when ``retry`` is set and the attempt counter is
        still below the job's retry limit. Returns the resulting status.
        """

        now = to_db_datetime(utc_now())
        with self._session() as session:
            row = session.exec(
                select(JobRow).where(
                    JobRow.job_id == job_id,
                    JobRow.status == JobStatus.PROCESSING.value,
                ),
            ).one_or_none()
            if row is None:
                raise JobNotFoundError(f"Job is not processing: {job_id}")

            attempt = row.attempt
            if retry and attempt < row.max_attempts:
                values: dict[str, object] = {
                    "status": JobStatus.PENDING.value,
                    "queue_position": _tail_position(),
                    "unit_id": None,
                    "started_at": None,
                    "last_transition_at": now,
                }
                target = JobStatus.PENDING
            else:
                last_error = reason
                if retry:
                    last_error = f"{reason} (retry limit reached after {attempt} attempts)"
                values = {
                    "status": JobStatus.FAILED.value,
                    "failure_class": (failure_class or FailureClass.UNIT_ERROR).value,
                    "last_error": last_error,
                    "finished_at": now,
                    "last_transition_at": now,
                }
                target = JobStatus.FAILED

            result = session.exec(
                sa_update(JobRow)
                .where(
                    col(JobRow.job_id) == job_id,
                    col(JobRow.status) == JobStatus.PROCESSING.value,
                    col(JobRow.attempt) == attempt,
                )
                .values(**values),
            )
            if result.rowcount != 1:
                session.rollback()
                raise JobNotFoundError(f"Job changed state concurrently: {job_id}")
            session.commit()

        if target is JobStatus.PENDING:
            logger.warning("Requeued job %s after attempt %d: %s", job_id, attempt, reason)
        else:
            logger.error("Failed job %s after attempt %d: %s", job_id, attempt, reason)
        return target

    def retry(self, *, job_id: str, reset_attempts: bool | None = None) -> JobView:
        """Manual operator retry: move a failed job back to the pending tail."""

        reset = self.manual_retry_resets_attempts if reset_attempts is None else reset_attempts
        now = to_db_datetime(utc_now())
        with self._session() as session:
            row = session.exec(select(JobRow).where(JobRow.job_id == job_id)).one_or_none()
            if row is None:
                raise JobNotFoundError(f"Job not found: {job_id}")
            if row.status != JobStatus.FAILED.value:
                raise JobStateError(
                    f"Only failed jobs can be retried manually, got {row.status}.",
                )

            values: dict[str, object] = {
                "status": JobStatus.PENDING.value,
                "queue_position": _tail_position(),
                "failure_class": None,
                "last_error": None,
                "finished_at": None,
                "started_at": None,
                "unit_id": None,
                "last_transition_at": now,
            }
            if reset:
                values["attempt"] = 0
            result = session.exec(
                sa_update(JobRow)
                .where(
                    col(JobRow.job_id) == job_id,
                    col(JobRow.status) == JobStatus.FAILED.value,
                )
                .values(**values),
            )
            if result.rowcount != 1:
                session.rollback()
                raise JobStateError(
                    "Job state changed concurrently while retrying; "
                    f"please retry command (job_id={job_id}).",
                )
            session.commit()
            refreshed = _to_job_view(
                session.exec(select(JobRow).where(JobRow.job_id == job_id)).one(),
            )
        logger.info("Manually retried job %s (reset_attempts=%s)", job_id, reset)
        return refreshed

    def clear_failed(self) -> int:
        """Delete every failed job and return how many were removed."""

        with self._session() as session:
            result = session.exec(
                sa_delete(JobRow).where(col(JobRow.status) == JobStatus.FAILED.value),
            )
            session.commit()
            return int(result.rowcount or 0)

    def get_job(self, *, job_id: str) -> JobView | None:
        with self._session() as session:
            row = session.exec(select(JobRow).where(JobRow.job_id == job_id)).one_or_none()
            return _to_job_view(row) if row is not None else None

    def list_jobs(self, *, status: JobStatus | None = None, limit: int = 50) -> list[JobView]:
        """List jobs in queue order, optionally filtered by status."""

        with self._session() as session:
            statement = select(JobRow).order_by(col(JobRow.queue_position).asc()).limit(limit)
            if status is not None:
                statement = statement.where(JobRow.status == status.value)
            rows = session.exec(statement).all()
        return [_to_job_view(row) for row in rows]

    def list_failed(self, *, limit: int = 50) -> list[JobView]:
        """List failed jobs, most recent failure first."""

        with self._session() as session:
            rows = session.exec(
                select(JobRow)
                .where(JobRow.status == JobStatus.FAILED.value)
                .order_by(col(JobRow.last_transition_at).desc())
                .limit(limit),
            ).all()
        return [_to_job_view(row) for row in rows]

    def list_processing(self, *, started_before: datetime | None = None) -> list[JobView]:
        """List processing jobs, optionally only those started before a cutoff."""

        with self._session() as session:
            statement = select(JobRow).where(JobRow.status == JobStatus.PROCESSING.value)
            if started_before is not None:
                statement = statement.where(
                    col(JobRow.started_at) <= to_db_datetime(started_before),
                )
            rows = session.exec(statement.order_by(col(JobRow.started_at).asc())).all()
        return [_to_job_view(row) for row in rows]

    def count_processing(self) -> int:
        return self.stats().processing

    def stats(self) -> JobStats:
        """Count jobs per collection."""

        with self._session() as session:
            rows = session.exec(
                select(JobRow.status, func.count()).group_by(col(JobRow.status)),
            ).all()
        counts = {str(status): int(count) for status, count in rows}
        return JobStats(
            pending=counts.get(JobStatus.PENDING.value, 0),
            processing=counts.get(JobStatus.PROCESSING.value, 0),
            failed=counts.get(JobStatus.FAILED.value, 0),
            completed=counts.get(JobStatus.COMPLETED.value, 0),
        )

    @contextmanager
    def _session(self) -> Iterator[Session]:
        try:
            with Session(self.engine) as session:
                yield session
        except OperationalError as error:
            raise JobStoreUnavailableError(f"Job store unavailable: {error}") from error


def _tail_position():  # noqa: ANN202
    tail = JobRow.__table__.alias("tail")  # type: ignore[attr-defined]
    return sa_select(func.coalesce(func.max(tail.c.queue_position), 0) + 1).scalar_subquery()


def _to_job_view(row: JobRow) -> JobView:
    return JobView(
        job_id=row.job_id,
        idempotency_key=row.idempotency_key,
        payload=bytes(row.payload),
        status=JobStatus(row.status),
        attempt=row.attempt,
        max_attempts=row.max_attempts,
        queue_position=row.queue_position,
        unit_id=row.unit_id,
        failure_class=FailureClass(row.failure_class) if row.failure_class is not None else None,
        last_error=row.last_error,
        created_at=to_utc_aware_datetime(row.created_at),
        started_at=to_utc_aware_datetime(row.started_at) if row.started_at is not None else None,
        finished_at=(
            to_utc_aware_datetime(row.finished_at) if row.finished_at is not None else None
        ),
        last_transition_at=to_utc_aware_datetime(row.last_transition_at),
    )
