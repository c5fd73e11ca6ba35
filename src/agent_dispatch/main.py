"""CLI entrypoint for agent-dispatch."""

from collections.abc import Callable
from pathlib import Path

import rich_click as click

from agent_dispatch import __version__
from agent_dispatch.config import configure_logging
from agent_dispatch.orchestrator.controllers import (
    DispatchCliController,
    InspectJobCommand,
    ListJobsCommand,
    RetryJobCommand,
    SchedulerRunCommand,
    StoreCommand,
    SubmitJobCommand,
)
from agent_dispatch.orchestrator.errors import JobStoreError
from agent_dispatch.orchestrator.payload import SUPPORTED_JOB_KINDS, MalformedPayloadError

click.rich_click.USE_MARKDOWN = True
DISPATCH_CONTROLLER = DispatchCliController()


@click.group()
@click.version_option(version=__version__, prog_name="agent-dispatch")
@click.option(
    "--log-level",
    envvar="AGENT_DISPATCH_LOG_LEVEL",
    default="WARNING",
    show_default=True,
    help="Logging level for stderr output.",
)
def agent_dispatch(log_level: str) -> None:
    """Job queue and scheduler for sandboxed agent sessions."""

    configure_logging(log_level)


@agent_dispatch.group()
def jobs() -> None:
    """Submit and administer jobs."""


@jobs.command("submit")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--payload-file",
    type=click.Path(path_type=Path, exists=True, dir_okay=False),
    default=None,
    help="JSON file with the job payload; flags below override its fields.",
)
@click.option(
    "--kind",
    type=click.Choice(SUPPORTED_JOB_KINDS),
    default=None,
    help="Job kind (default: review, or the payload file value).",
)
@click.option("--project", default=None, help="Project path or id.")
@click.option("--repo-path", default=None, help="Local repository to copy into the unit.")
@click.option("--clone-url", default=None, help="Repository URL to shallow-clone in the unit.")
@click.option("--branch", default="", help="Source branch.")
@click.option("--target-branch", default="", help="Target branch for the diff.")
@click.option("--title", default="", help="Change request / issue title.")
@click.option("--prompt", default="", help="Extra instructions for the agent.")
@click.option(
    "--target",
    "targets",
    multiple=True,
    help="Review target the agent may comment on or approve (repeatable).",
)
@click.option("--idempotency-key", default=None, help="Skip if an active job has this key.")
@click.option(
    "--max-attempts",
    type=click.IntRange(min=1, max=20),
    default=None,
    help="Retry limit override for this job.",
)
def jobs_submit(  # noqa: PLR0913
    db_path: Path | None,
    payload_file: Path | None,
    kind: str | None,
    project: str | None,
    repo_path: str | None,
    clone_url: str | None,
    branch: str,
    target_branch: str,
    title: str,
    prompt: str,
    targets: tuple[str, ...],
    idempotency_key: str | None,
    max_attempts: int | None,
) -> None:
    """Submit a job to the pending queue."""

    _run(
        lambda: DISPATCH_CONTROLLER.submit(
            SubmitJobCommand(
                db_path=db_path,
                payload_file=payload_file,
                kind=kind,
                project=project,
                repo_path=repo_path,
                clone_url=clone_url,
                branch=branch,
                target_branch=target_branch,
                title=title,
                prompt=prompt,
                targets=targets,
                idempotency_key=idempotency_key,
                max_attempts=max_attempts,
            ),
        ),
    )


@jobs.command("stats")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def jobs_stats(db_path: Path | None) -> None:
    """Show pending / processing / failed / completed counts."""

    _run(lambda: DISPATCH_CONTROLLER.stats(StoreCommand(db_path=db_path)))


@jobs.command("failed")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=50,
    show_default=True,
    help="Max jobs to print.",
)
def jobs_failed(db_path: Path | None, limit: int) -> None:
    """List failed jobs with their last error."""

    _run(
        lambda: DISPATCH_CONTROLLER.list_failed(
            ListJobsCommand(db_path=db_path, status=None, limit=limit),
        ),
    )


@jobs.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--status",
    type=click.Choice(["pending", "processing", "completed", "failed"], case_sensitive=False),
    default=None,
    help="Optional status filter.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=50,
    show_default=True,
    help="Max jobs to print.",
)
def jobs_list(db_path: Path | None, status: str | None, limit: int) -> None:
    """List jobs in queue order."""

    _run(
        lambda: DISPATCH_CONTROLLER.list_jobs(
            ListJobsCommand(db_path=db_path, status=status, limit=limit),
        ),
    )


@jobs.command("inspect")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--job-id", required=True, help="Job id.")
def jobs_inspect(db_path: Path | None, job_id: str) -> None:
    """Inspect one job."""

    _run(lambda: DISPATCH_CONTROLLER.inspect(InspectJobCommand(db_path=db_path, job_id=job_id)))


@jobs.command("retry")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--job-id", required=True, help="Job id.")
@click.option(
    "--reset-attempts/--keep-attempts",
    default=None,
    help="Reset the attempt counter (default: AGENT_DISPATCH_MANUAL_RETRY_RESETS_ATTEMPTS).",
)
def jobs_retry(db_path: Path | None, job_id: str, reset_attempts: bool | None) -> None:
    """Manually re-queue a failed job at the tail of the queue."""

    _run(
        lambda: DISPATCH_CONTROLLER.retry(
            RetryJobCommand(db_path=db_path, job_id=job_id, reset_attempts=reset_attempts),
        ),
    )


@jobs.command("clear-failed")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def jobs_clear_failed(db_path: Path | None) -> None:
    """Delete all failed jobs."""

    _run(lambda: DISPATCH_CONTROLLER.clear_failed(StoreCommand(db_path=db_path)))


@agent_dispatch.group()
def scheduler() -> None:
    """Run the scheduler loop and reconciliation."""


@scheduler.command("run")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--once/--loop",
    default=True,
    show_default=True,
    help="Run one dequeue-execute cycle or loop.",
)
@click.option(
    "--max-jobs",
    type=click.IntRange(min=1),
    default=None,
    help="Optional cap for processed jobs in loop mode.",
)
@click.option(
    "--max-idle-polls",
    type=click.IntRange(min=0),
    default=0,
    show_default=True,
    help="Exit after this many consecutive empty polls (0 = run until stopped).",
)
def scheduler_run(
    db_path: Path | None,
    once: bool,
    max_jobs: int | None,
    max_idle_polls: int,
) -> None:
    """Run the scheduler."""

    _run(
        lambda: DISPATCH_CONTROLLER.run_scheduler(
            SchedulerRunCommand(
                db_path=db_path,
                once=once,
                max_jobs=max_jobs,
                max_idle_polls=max_idle_polls or None,
            ),
        ),
    )


@scheduler.command("reconcile")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def scheduler_reconcile(db_path: Path | None) -> None:
    """Recover jobs left processing with no live execution unit."""

    _run(lambda: DISPATCH_CONTROLLER.reconcile(StoreCommand(db_path=db_path)))


def _run(action: Callable[[], list[str]]) -> None:
    try:
        lines = action()
    except (JobStoreError, MalformedPayloadError, ValueError) as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    agent_dispatch()
