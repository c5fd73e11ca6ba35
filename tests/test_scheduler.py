from __future__ import annotations

from collections.abc import Callable
from pathlib import Path

import allure
import pytest

from agent_dispatch.config import SchedulerSettings
from agent_dispatch.orchestrator.admission import CapacityAdmission
from agent_dispatch.orchestrator.errors import JobStoreUnavailableError
from agent_dispatch.orchestrator.models import FailureClass, JobStatus, JobView
from agent_dispatch.orchestrator.repository import JobRepository
from agent_dispatch.orchestrator.scheduler import Scheduler
from agent_dispatch.unit.base import UnitOutcome, UnitProvisioningError, UnitState
from conftest import submit_job

pytestmark = [
    allure.epic("Job Queue"),
    allure.feature("Scheduler"),
]


class _FakeUnit:
    def __init__(
        self,
        job: JobView,
        outcome: UnitOutcome | Exception,
        *,
        create_error: Exception | None = None,
    ) -> None:
        self.job = job
        self.unit_id = f"unit-{job.job_id[:8]}"
        self.state: UnitState | None = None
        self.outcome = outcome
        self.create_error = create_error
        self.destroyed = False
        self.deadline: float | None = None

    def create(self) -> None:
        if self.create_error is not None:
            raise self.create_error
        self.state = UnitState.CREATED

    def run(
        self,
        *,
        deadline_seconds: float,
        shutdown_requested: Callable[[], bool] | None = None,
        graceful_shutdown_seconds: float = 0,
    ) -> UnitOutcome:
        self.deadline = deadline_seconds
        self.state = UnitState.RUNNING
        if isinstance(self.outcome, Exception):
            raise self.outcome
        self.state = self.outcome.state
        return self.outcome

    def destroy(self) -> None:
        self.destroyed = True
        self.state = UnitState.DESTROYED

    def is_alive(self) -> bool:
        return self.state is UnitState.RUNNING


class _Factory:
    def __init__(
        self,
        *outcomes: UnitOutcome | Exception,
        create_error: Exception | None = None,
    ) -> None:
        self.outcomes = list(outcomes)
        self.create_error = create_error
        self.units: list[_FakeUnit] = []

    def __call__(self, job: JobView) -> _FakeUnit:
        outcome = self.outcomes.pop(0) if len(self.outcomes) > 1 else self.outcomes[0]
        unit = _FakeUnit(job, outcome, create_error=self.create_error)
        self.units.append(unit)
        return unit


class _FlakyCompleteRepository(JobRepository):
    """Fails the first ``complete`` calls as if the store were briefly unreachable."""

    def __init__(self, *args: object, failures: int, **kwargs: object) -> None:
        super().__init__(*args, **kwargs)  # type: ignore[arg-type]
        self.failures = failures

    def complete(self, *, job_id: str) -> JobStatus:
        if self.failures > 0:
            self.failures -= 1
            raise JobStoreUnavailableError("database is locked")
        return super().complete(job_id=job_id)


class _FlakyCountRepository(JobRepository):
    """Fails the first ``count_processing`` calls, as on a locked database."""

    def __init__(self, *args: object, failures: int, **kwargs: object) -> None:
        super().__init__(*args, **kwargs)  # type: ignore[arg-type]
        self.failures = failures

    def count_processing(self) -> int:
        if self.failures > 0:
            self.failures -= 1
            raise JobStoreUnavailableError("database is locked")
        return super().count_processing()


def _succeeded() -> UnitOutcome:
    return UnitOutcome(
        state=UnitState.SUCCEEDED,
        exit_code=0,
        result={"status": "succeeded", "result": {"decision": "approve"}},
    )


def _failed(exit_code: int = 1, **kwargs: object) -> UnitOutcome:
    return UnitOutcome(state=UnitState.FAILED, exit_code=exit_code, **kwargs)  # type: ignore[arg-type]


def _scheduler(
    repository: JobRepository,
    factory: _Factory,
    *,
    sleeps: list[float] | None = None,
    **settings: object,
) -> Scheduler:
    recorded = sleeps if sleeps is not None else []
    return Scheduler(
        repository=repository,
        unit_factory=factory,
        settings=SchedulerSettings(**settings),  # type: ignore[arg-type]
        dequeue_timeout_seconds=0,
        sleep=recorded.append,
    )


def test_successful_unit_completes_job(repository: JobRepository) -> None:
    job_id = submit_job(repository)
    factory = _Factory(_succeeded())

    summary = _scheduler(repository, factory, unit_deadline_seconds=42).run_once()

    assert summary.processed == 1
    assert summary.completed == 1
    job = repository.get_job(job_id=job_id)
    assert job is not None
    assert job.status is JobStatus.COMPLETED
    assert job.unit_id == factory.units[0].unit_id
    assert factory.units[0].destroyed
    assert factory.units[0].deadline == 42


def test_retryable_failure_requeues_job(repository: JobRepository) -> None:
    job_id = submit_job(repository)
    factory = _Factory(_failed(stderr_preview="connection reset by peer"))

    summary = _scheduler(repository, factory).run_once()

    assert summary.requeued == 1
    assert summary.failed == 0
    job = repository.get_job(job_id=job_id)
    assert job is not None
    assert job.status is JobStatus.PENDING
    assert job.attempt == 1
    assert factory.units[0].destroyed


def test_timeout_fails_job_without_retry(repository: JobRepository) -> None:
    job_id = submit_job(repository)
    factory = _Factory(
        UnitOutcome(
            state=UnitState.TIMED_OUT,
            exit_code=124,
            timed_out=True,
            reason="deadline exceeded after 900s",
        ),
    )

    summary = _scheduler(repository, factory).run_once()

    assert summary.timeouts == 1
    assert summary.failed == 1
    job = repository.get_job(job_id=job_id)
    assert job is not None
    assert job.status is JobStatus.FAILED
    assert job.failure_class is FailureClass.TIMEOUT
    assert job.last_error == "deadline exceeded after 900s"


def test_permanent_result_failure_is_not_retried(repository: JobRepository) -> None:
    job_id = submit_job(repository)
    factory = _Factory(
        _failed(
            exit_code=3,
            result={
                "status": "failed",
                "reason": "iteration limit exceeded",
                "failure_class": "iteration_limit",
                "retryable": False,
            },
        ),
    )

    summary = _scheduler(repository, factory).run_once()

    assert summary.failed == 1
    job = repository.get_job(job_id=job_id)
    assert job is not None
    assert job.failure_class is FailureClass.ITERATION_LIMIT
    assert job.last_error == "iteration limit exceeded"


def test_retries_exhaust_into_failed(repository: JobRepository) -> None:
    job_id = submit_job(repository, max_attempts=2)
    factory = _Factory(_failed())
    scheduler = _scheduler(repository, factory)

    summary = scheduler.run_loop(max_idle_polls=1)

    assert summary.processed == 2
    assert summary.requeued == 1
    assert summary.failed == 1
    job = repository.get_job(job_id=job_id)
    assert job is not None
    assert job.status is JobStatus.FAILED
    assert job.attempt == 2
    assert job.last_error is not None
    assert "retry limit reached after 2 attempts" in job.last_error


def test_unit_crash_is_recorded_and_unit_destroyed(repository: JobRepository) -> None:
    job_id = submit_job(repository)
    factory = _Factory(RuntimeError("runtime vanished"))

    summary = _scheduler(repository, factory).run_once()

    assert summary.requeued == 1
    job = repository.get_job(job_id=job_id)
    assert job is not None
    assert job.status is JobStatus.PENDING
    assert factory.units[0].destroyed


@pytest.mark.parametrize(("transient", "expected"), [(True, 1), (False, 0)])
def test_provisioning_failure_uses_transient_hint(
    repository: JobRepository,
    transient: bool,
    expected: int,
) -> None:
    job_id = submit_job(repository)
    factory = _Factory(
        _succeeded(),
        create_error=UnitProvisioningError("no sandbox", transient=transient),
    )

    summary = _scheduler(repository, factory).run_once()

    assert summary.requeued == expected
    assert summary.failed == 1 - expected
    job = repository.get_job(job_id=job_id)
    assert job is not None
    if not transient:
        assert job.failure_class is FailureClass.PROVISIONING_FAILED
    assert factory.units[0].destroyed


def test_interrupted_unit_is_requeued(repository: JobRepository) -> None:
    job_id = submit_job(repository)
    factory = _Factory(
        _failed(exit_code=-15, interrupted=True, reason="interrupted by scheduler shutdown"),
    )

    summary = _scheduler(repository, factory).run_once()

    assert summary.requeued == 1
    job = repository.get_job(job_id=job_id)
    assert job is not None
    assert job.status is JobStatus.PENDING


def test_loop_keeps_going_after_a_failing_job(repository: JobRepository) -> None:
    first = submit_job(repository, "group/a")
    second = submit_job(repository, "group/b")
    factory = _Factory(
        _failed(exit_code=3),
        _succeeded(),
    )

    summary = _scheduler(repository, factory).run_loop(max_idle_polls=1)

    assert summary.processed == 2
    assert summary.failed == 1
    assert summary.completed == 1
    assert summary.idle_polls == 1
    first_job = repository.get_job(job_id=first)
    second_job = repository.get_job(job_id=second)
    assert first_job is not None and first_job.status is JobStatus.FAILED
    assert second_job is not None and second_job.status is JobStatus.COMPLETED


def test_run_loop_respects_max_jobs(repository: JobRepository) -> None:
    for index in range(3):
        submit_job(repository, f"group/{index}")

    summary = _scheduler(repository, _Factory(_succeeded())).run_loop(
        max_jobs=2,
        max_idle_polls=None,
    )

    assert summary.processed == 2
    assert repository.stats().pending == 1


def test_store_outage_is_retried_with_backoff(tmp_path: Path) -> None:
    repository = _FlakyCompleteRepository(
        tmp_path / "flaky.db",
        poll_interval_seconds=0.01,
        failures=2,
    )
    repository.init_schema()
    job_id = submit_job(repository)
    sleeps: list[float] = []

    summary = _scheduler(
        repository,
        _Factory(_succeeded()),
        sleeps=sleeps,
        store_retry_base_seconds=0.5,
        store_retry_max_seconds=30,
    ).run_once()

    assert summary.completed == 1
    assert sleeps == [0.5, 1.0]
    job = repository.get_job(job_id=job_id)
    assert job is not None
    assert job.status is JobStatus.COMPLETED
    repository.close()


def test_terminal_write_outlasts_retry_budget(tmp_path: Path) -> None:
    repository = _FlakyCompleteRepository(tmp_path / "down.db", failures=5)
    repository.init_schema()
    job_id = submit_job(repository)
    sleeps: list[float] = []

    summary = _scheduler(
        repository,
        _Factory(_succeeded()),
        sleeps=sleeps,
        store_retry_base_seconds=0.5,
        store_retry_max_seconds=2,
        store_retry_max_attempts=2,
    ).run_once()

    assert summary.completed == 1
    assert sleeps == [0.5, 1.0, 2.0, 2.0, 2.0]
    job = repository.get_job(job_id=job_id)
    assert job is not None
    assert job.status is JobStatus.COMPLETED
    assert job.attempt == 1
    repository.close()


def test_loop_survives_store_outage_and_resumes(tmp_path: Path) -> None:
    repository = _FlakyCountRepository(tmp_path / "outage.db", failures=5)
    repository.init_schema()
    job_id = submit_job(repository)
    sleeps: list[float] = []

    summary = _scheduler(
        repository,
        _Factory(_succeeded()),
        sleeps=sleeps,
        store_retry_base_seconds=0.5,
        store_retry_max_seconds=2,
        store_retry_max_attempts=2,
    ).run_loop(max_jobs=1, max_idle_polls=None)

    assert repository.failures == 0
    assert summary.processed == 1
    assert summary.completed == 1
    assert sleeps == [0.5, 0.5, 0.5, 1.0, 0.5]
    job = repository.get_job(job_id=job_id)
    assert job is not None
    assert job.status is JobStatus.COMPLETED
    repository.close()


def test_bounded_run_stops_on_persistent_store_outage(tmp_path: Path) -> None:
    repository = _FlakyCountRepository(tmp_path / "outage.db", failures=100)
    repository.init_schema()
    submit_job(repository)

    summary = _scheduler(
        repository,
        _Factory(_succeeded()),
        store_retry_max_attempts=1,
    ).run_loop(max_idle_polls=3)

    assert summary.processed == 0
    assert repository.failures == 97
    assert repository.stats().pending == 1
    repository.close()


def test_capacity_defers_when_jobs_already_processing(repository: JobRepository) -> None:
    submit_job(repository, "group/a")
    submit_job(repository, "group/b")
    repository.dequeue(timeout=0)

    scheduler = _scheduler(repository, _Factory(_succeeded()), capacity=1)
    summary = scheduler.run_once()

    assert summary.processed == 0
    assert summary.deferred == 1
    assert repository.stats().pending == 1


def test_admission_policy_rejection_defers(repository: JobRepository) -> None:
    submit_job(repository)
    admission = CapacityAdmission(capacity=1)
    assert admission.try_acquire()

    scheduler = Scheduler(
        repository=repository,
        unit_factory=_Factory(_succeeded()),
        admission=admission,
        dequeue_timeout_seconds=0,
    )
    summary = scheduler.run_once()

    assert summary.deferred == 1
    assert repository.stats().pending == 1
    admission.release()


def test_stop_request_prevents_new_dequeues(repository: JobRepository) -> None:
    submit_job(repository)
    scheduler = _scheduler(repository, _Factory(_succeeded()))
    scheduler.request_stop()

    summary = scheduler.run_loop(max_idle_polls=None)

    assert scheduler.stop_requested
    assert summary.processed == 0
    assert repository.stats().pending == 1


def test_empty_queue_counts_idle_poll(repository: JobRepository) -> None:
    summary = _scheduler(repository, _Factory(_succeeded())).run_once()

    assert summary.processed == 0
    assert summary.idle_polls == 1
