"""Controllers for job queue and scheduler CLI commands."""

from __future__ import annotations

import json
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from agent_dispatch.config import Settings
from agent_dispatch.orchestrator.models import JobStatus, JobView
from agent_dispatch.orchestrator.payload import JobPayload, MalformedPayloadError
from agent_dispatch.orchestrator.repository import JobRepository
from agent_dispatch.orchestrator.scheduler import Scheduler, SchedulerRunSummary
from agent_dispatch.orchestrator.services import JobSubmission, JobSubmissionService
from agent_dispatch.unit.subprocess_unit import SubprocessUnitFactory


@dataclass(slots=True)
class SubmitJobCommand:
    """CLI input for job submission."""

    db_path: Path | None
    payload_file: Path | None
    kind: str | None
    project: str | None
    repo_path: str | None
    clone_url: str | None
    branch: str
    target_branch: str
    title: str
    prompt: str
    targets: tuple[str, ...]
    idempotency_key: str | None
    max_attempts: int | None


@dataclass(slots=True)
class ListJobsCommand:
    """CLI input for job listing."""

    db_path: Path | None
    status: str | None
    limit: int


@dataclass(slots=True)
class InspectJobCommand:
    db_path: Path | None
    job_id: str


@dataclass(slots=True)
class RetryJobCommand:
    """CLI input for manual retry of a failed job."""

    db_path: Path | None
    job_id: str
    reset_attempts: bool | None


@dataclass(slots=True)
class StoreCommand:
    """CLI input for commands that only need the store."""

    db_path: Path | None


@dataclass(slots=True)
class SchedulerRunCommand:
    """CLI input for scheduler execution."""

    db_path: Path | None
    once: bool
    max_jobs: int | None
    max_idle_polls: int | None = 1


class DispatchCliController:
    """Coordinates job queue, scheduler, and inspection CLI operations."""

    def submit(self, command: SubmitJobCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        payload = _build_payload(command)
        with _repository(settings) as repository:
            result = JobSubmissionService(repository=repository).submit(
                JobSubmission(
                    payload=payload.to_bytes(),
                    idempotency_key=command.idempotency_key,
                    max_attempts=command.max_attempts,
                ),
            )
        if not result.created:
            return [f"Job already active: job_id={result.job_id} ({payload.describe()})"]
        return [f"Job submitted: job_id={result.job_id} ({payload.describe()})"]

    def stats(self, command: StoreCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            stats = repository.stats()
        return [
            "Job stats: "
            f"pending={stats.pending} processing={stats.processing} "
            f"failed={stats.failed} completed={stats.completed}",
        ]

    def list_failed(self, command: ListJobsCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            jobs = repository.list_failed(limit=command.limit)
        lines = [f"Failed jobs: {len(jobs)}"]
        for job in jobs:
            failure_class = job.failure_class.value if job.failure_class else "-"
            lines.append(
                f"  {job.job_id} attempt={job.attempt}/{job.max_attempts} "
                f"class={failure_class} failed_at={job.last_transition_at.isoformat()} "
                f"error={job.last_error or '-'}",
            )
        return lines

    def list_jobs(self, command: ListJobsCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        status_filter = _parse_status(command.status)
        with _repository(settings) as repository:
            jobs = repository.list_jobs(status=status_filter, limit=command.limit)
        lines = [f"Jobs: {len(jobs)}"]
        for job in jobs:
            lines.append(
                f"  {job.job_id} status={job.status.value} "
                f"attempt={job.attempt}/{job.max_attempts} position={job.queue_position} "
                f"summary={_payload_summary(job)}",
            )
        return lines

    def inspect(self, command: InspectJobCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            job = repository.get_job(job_id=command.job_id)
        if job is None:
            return [f"Job not found: {command.job_id}"]

        return [
            f"Job: {job.job_id}",
            f"Summary: {_payload_summary(job)}",
            f"Status: {job.status.value}",
            f"Attempt: {job.attempt}/{job.max_attempts}",
            f"Idempotency key: {job.idempotency_key or '-'}",
            f"Unit: {job.unit_id or '-'}",
            f"Failure class: {job.failure_class.value if job.failure_class else '-'}",
            f"Error: {job.last_error or '-'}",
            f"Created: {job.created_at.isoformat()}",
            f"Started: {job.started_at.isoformat() if job.started_at else '-'}",
            f"Finished: {job.finished_at.isoformat() if job.finished_at else '-'}",
            f"Last transition: {job.last_transition_at.isoformat()}",
        ]

    def retry(self, command: RetryJobCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            job = repository.retry(job_id=command.job_id, reset_attempts=command.reset_attempts)
        return [f"Job re-queued: {job.job_id} attempt={job.attempt}/{job.max_attempts}"]

    def clear_failed(self, command: StoreCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            removed = repository.clear_failed()
        return [f"Cleared failed jobs: {removed}"]

    def run_scheduler(self, command: SchedulerRunCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        settings.validate()
        with _repository(settings) as repository:
            scheduler = _scheduler(settings, repository)
            summary = (
                scheduler.run_once()
                if command.once
                else scheduler.run_loop(
                    max_jobs=command.max_jobs,
                    max_idle_polls=command.max_idle_polls,
                )
            )
        return [_render_summary(summary)]

    def reconcile(self, command: StoreCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        settings.validate()
        with _repository(settings) as repository:
            recovered = _scheduler(settings, repository).reconcile()
        lines = [f"Orphaned jobs recovered: {len(recovered)}"]
        lines.extend(f"  {job_id}" for job_id in recovered)
        return lines


def _scheduler(settings: Settings, repository: JobRepository) -> Scheduler:
    return Scheduler(
        repository=repository,
        unit_factory=SubprocessUnitFactory(settings.unit),
        settings=settings.scheduler,
        dequeue_timeout_seconds=settings.queue.dequeue_timeout_seconds,
        transient_exit_codes=settings.unit.transient_exit_codes,
    )


def _render_summary(summary: SchedulerRunSummary) -> str:
    return (
        "Scheduler summary: "
        f"processed={summary.processed} completed={summary.completed} "
        f"requeued={summary.requeued} failed={summary.failed} "
        f"timeouts={summary.timeouts} orphans_recovered={summary.orphans_recovered} "
        f"idle_polls={summary.idle_polls}"
    )


def _build_payload(command: SubmitJobCommand) -> JobPayload:
    data: dict[str, Any] = {}
    if command.payload_file is not None:
        try:
            loaded = json.loads(command.payload_file.read_text("utf-8"))
        except json.JSONDecodeError as error:
            raise MalformedPayloadError(f"Payload file is not valid JSON: {error}") from error
        if not isinstance(loaded, dict):
            raise MalformedPayloadError("Payload file must contain a JSON object.")
        data.update(loaded)

    overrides: dict[str, Any] = {
        "kind": command.kind,
        "project": command.project,
        "repo_path": command.repo_path,
        "clone_url": command.clone_url,
        "branch": command.branch,
        "target_branch": command.target_branch,
        "title": command.title,
        "prompt": command.prompt,
        "targets": list(command.targets),
    }
    data.update({key: value for key, value in overrides.items() if value})
    return JobPayload.from_mapping(data)


def _payload_summary(job: JobView) -> str:
    try:
        return JobPayload.from_bytes(job.payload).describe()
    except MalformedPayloadError:
        return f"<opaque payload, {len(job.payload)} bytes>"


def _parse_status(value: str | None) -> JobStatus | None:
    if value is None:
        return None
    try:
        return JobStatus(value.lower())
    except ValueError as error:
        raise ValueError(f"Unsupported job status: {value!r}") from error


@contextmanager
def _repository(settings: Settings) -> Iterator[JobRepository]:
    repository = JobRepository(
        settings.db_path,
        max_attempts=settings.queue.max_attempts,
        poll_interval_seconds=settings.queue.poll_interval_seconds,
        manual_retry_resets_attempts=settings.queue.manual_retry_resets_attempts,
        busy_timeout_ms=settings.queue.busy_timeout_ms,
    )
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()
