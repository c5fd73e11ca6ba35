"""Scheduler loop: dequeue a job, run one execution unit, reconcile the outcome."""

from __future__ import annotations

import logging
import signal
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, fields
from typing import TypeVar

from agent_dispatch.config import SchedulerSettings
from agent_dispatch.orchestrator.admission import AdmissionPolicy, CapacityAdmission
from agent_dispatch.orchestrator.errors import JobNotFoundError, JobStoreUnavailableError
from agent_dispatch.orchestrator.failure_classifier import classify_unit_failure
from agent_dispatch.orchestrator.models import FailureClass, JobStatus, JobView
from agent_dispatch.orchestrator.reconciler import OrphanReconciler, UnitRegistry
from agent_dispatch.orchestrator.repository import JobRepository
from agent_dispatch.unit.base import UnitFactory, UnitOutcome, UnitProvisioningError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(slots=True)
class SchedulerRunSummary:
    """Aggregate scheduler counters for CLI reporting."""

    processed: int = 0
    completed: int = 0
    requeued: int = 0
    failed: int = 0
    timeouts: int = 0
    orphans_recovered: int = 0
    idle_polls: int = 0
    deferred: int = 0

    def merge(self, other: SchedulerRunSummary) -> None:
        for item in fields(self):
            setattr(self, item.name, getattr(self, item.name) + getattr(other, item.name))


class Scheduler:
    """Consumes pending jobs and supervises one execution unit per job."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: JobRepository,
        unit_factory: UnitFactory,
        settings: SchedulerSettings | None = None,
        admission: AdmissionPolicy | None = None,
        registry: UnitRegistry | None = None,
        reconciler: OrphanReconciler | None = None,
        dequeue_timeout_seconds: float = 30.0,
        transient_exit_codes: tuple[int, ...] = (137, 143),
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.repository = repository
        self.unit_factory = unit_factory
        self.settings = settings or SchedulerSettings()
        self.admission = admission or CapacityAdmission(self.settings.capacity)
        self.registry = registry or UnitRegistry()
        self.reconciler = reconciler or OrphanReconciler(
            repository=repository,
            registry=self.registry,
            max_unit_lifetime_seconds=self.settings.max_unit_lifetime_seconds,
        )
        self.dequeue_timeout_seconds = dequeue_timeout_seconds
        self.transient_exit_codes = transient_exit_codes
        self._sleep = sleep
        self._stop_requested = False
        self._stop_signal_name: str | None = None
        self._current_job_id: str | None = None
        self._last_reconcile_at: float | None = None

    @property
    def stop_requested(self) -> bool:
        return self._stop_requested

    def run_once(self) -> SchedulerRunSummary:
        """Process at most one job from the queue."""

        summary = SchedulerRunSummary()
        if self._stop_requested:
            summary.idle_polls = 1
            return summary

        self._maybe_reconcile(summary)
        if not self.admission.try_acquire():
            summary.deferred = 1
            return summary
        try:
            processing = self._store_call("count_processing", self.repository.count_processing)
            if processing >= self.admission.capacity:
                logger.debug(
                    "Admission deferred: %d job(s) processing, capacity %d",
                    processing,
                    self.admission.capacity,
                )
                summary.deferred = 1
                return summary

            job = self._store_call(
                "dequeue",
                lambda: self.repository.dequeue(timeout=self.dequeue_timeout_seconds),
            )
            if job is None:
                summary.idle_polls = 1
                return summary

            summary.processed = 1
            self._execute(job=job, summary=summary)
            return summary
        finally:
            self.admission.release()

    def run_loop(
        self,
        *,
        max_jobs: int | None = None,
        max_idle_polls: int | None = 1,
    ) -> SchedulerRunSummary:
        """Run the scheduler loop until stopped, idle, or ``max_jobs`` reached.

        Args:
            max_jobs: Stop after processing this many jobs (None = unlimited).
            max_idle_polls: How many consecutive empty polls before exiting
                (None = never exit on idle).
        """

        aggregate = SchedulerRunSummary()
        consecutive_idle = 0
        outages = 0
        logger.info(
            "Scheduler %s started (capacity=%d, deadline=%.0fs)",
            self.settings.scheduler_id,
            self.admission.capacity,
            self.settings.unit_deadline_seconds,
        )
        with self._signal_handlers():
            while True:
                if self._stop_requested:
                    logger.info(
                        "Scheduler %s stopped by %s after %d job(s)",
                        self.settings.scheduler_id,
                        self._stop_signal_name or "request",
                        aggregate.processed,
                    )
                    return aggregate
                if max_jobs is not None and aggregate.processed >= max_jobs:
                    return aggregate

                try:
                    summary = self.run_once()
                except JobStoreUnavailableError as error:
                    outages += 1
                    delay = self._compute_store_retry_delay(retry_number=outages)
                    logger.warning(
                        "Scheduler %s: job store unavailable (poll %d), retrying in %.1fs: %s",
                        self.settings.scheduler_id,
                        outages,
                        delay,
                        error,
                    )
                    consecutive_idle += 1
                    if max_idle_polls is not None and consecutive_idle >= max_idle_polls:
                        return aggregate
                    self._sleep(delay)
                    continue
                if outages:
                    logger.info(
                        "Scheduler %s: job store reachable again",
                        self.settings.scheduler_id,
                    )
                    outages = 0
                aggregate.merge(summary)

                if summary.processed == 0:
                    consecutive_idle += 1
                    if max_idle_polls is not None and consecutive_idle >= max_idle_polls:
                        return aggregate
                    if summary.deferred:
                        self._sleep_with_stop(self.settings.idle_sleep_seconds)
                    continue

                consecutive_idle = 0

    def reconcile(self) -> list[str]:
        """Run one reconciliation sweep now."""

        recovered = self._store_call("reconcile", self.reconciler.sweep)
        self._last_reconcile_at = time.monotonic()
        return recovered

    def _maybe_reconcile(self, summary: SchedulerRunSummary) -> None:
        now = time.monotonic()
        if (
            self._last_reconcile_at is not None
            and now - self._last_reconcile_at < self.settings.reconcile_interval_seconds
        ):
            return
        summary.orphans_recovered += len(self.reconcile())

    def _execute(self, *, job: JobView, summary: SchedulerRunSummary) -> None:
        self._current_job_id = job.job_id
        try:
            unit = self.unit_factory(job)
        except UnitProvisioningError as error:
            self._record_failure(
                job=job,
                reason=f"unit provisioning failed: {error}",
                retry=error.transient,
                failure_class=FailureClass.PROVISIONING_FAILED,
                summary=summary,
            )
            self._current_job_id = None
            return

        self.registry.register(job.job_id, unit)
        try:
            try:
                unit.create()
                self._attach_unit(job=job, unit_id=unit.unit_id)
                outcome = unit.run(
                    deadline_seconds=self.settings.unit_deadline_seconds,
                    shutdown_requested=lambda: self._stop_requested,
                    graceful_shutdown_seconds=self.settings.graceful_shutdown_seconds,
                )
            except UnitProvisioningError as error:
                self._record_failure(
                    job=job,
                    reason=f"unit provisioning failed: {error}",
                    retry=error.transient,
                    failure_class=FailureClass.PROVISIONING_FAILED,
                    summary=summary,
                )
                return
            except Exception as error:  # noqa: BLE001
                logger.exception("Execution unit for job %s crashed", job.job_id)
                self._record_failure(
                    job=job,
                    reason=f"unit crashed: {error}",
                    retry=True,
                    failure_class=FailureClass.UNIT_ERROR,
                    summary=summary,
                )
                return

            self._reconcile_outcome(job=job, outcome=outcome, summary=summary)
        finally:
            unit.destroy()
            self.registry.unregister(job.job_id)
            self._current_job_id = None

    def _attach_unit(self, *, job: JobView, unit_id: str) -> None:
        try:
            self._store_call(
                "attach_unit",
                lambda: self.repository.attach_unit(job_id=job.job_id, unit_id=unit_id),
            )
        except JobStoreUnavailableError as error:
            logger.warning(
                "Could not record unit %s for job %s, running it anyway: %s",
                unit_id,
                job.job_id,
                error,
            )

    def _reconcile_outcome(
        self,
        *,
        job: JobView,
        outcome: UnitOutcome,
        summary: SchedulerRunSummary,
    ) -> None:
        if outcome.succeeded:
            status = self._store_write(
                "complete",
                job.job_id,
                lambda: self.repository.complete(job_id=job.job_id),
            )
            if status is JobStatus.COMPLETED:
                summary.completed = 1
            return

        if outcome.interrupted:
            self._record_failure(
                job=job,
                reason=outcome.describe_failure(),
                retry=True,
                failure_class=FailureClass.UNIT_TRANSIENT,
                summary=summary,
            )
            return

        classification = classify_unit_failure(
            exit_code=outcome.exit_code,
            timed_out=outcome.timed_out,
            result_failure_class=outcome.result_failure_class,
            result_retryable=outcome.result_retryable,
            stderr=outcome.stderr_preview,
            transient_exit_codes=self.transient_exit_codes,
        )
        if outcome.timed_out:
            summary.timeouts = 1
        logger.info(
            "Job %s unit failure classified as %s (rule=%s, retryable=%s)",
            job.job_id,
            classification.failure_class.value,
            classification.matched_rule,
            classification.retryable,
        )
        self._record_failure(
            job=job,
            reason=outcome.describe_failure(),
            retry=classification.retryable,
            failure_class=classification.failure_class,
            summary=summary,
        )

    def _record_failure(  # noqa: PLR0913
        self,
        *,
        job: JobView,
        reason: str,
        retry: bool,
        failure_class: FailureClass,
        summary: SchedulerRunSummary,
    ) -> None:
        status = self._store_write(
            "fail",
            job.job_id,
            lambda: self.repository.fail(
                job_id=job.job_id,
                reason=reason,
                retry=retry,
                failure_class=failure_class,
            ),
        )
        if status is JobStatus.PENDING:
            summary.requeued = 1
        elif status is JobStatus.FAILED:
            summary.failed = 1

    def _store_write(self, operation: str, job_id: str, call: Callable[[], T]) -> T | None:
        """Run a terminal job transition, retrying until the store accepts it.

        A missing job after a retry means the write was already applied.
        """

        retried: list[bool] = []
        try:
            return self._store_call(
                operation,
                call,
                on_retry=lambda: retried.append(True),
                bounded=False,
            )
        except JobNotFoundError as error:
            if retried:
                logger.info(
                    "Store %s for job %s was already applied before the retry: %s",
                    operation,
                    job_id,
                    error,
                )
            else:
                logger.error("Store %s for job %s skipped: %s", operation, job_id, error)
            return None

    def _store_call(
        self,
        operation: str,
        call: Callable[[], T],
        *,
        on_retry: Callable[[], None] | None = None,
        bounded: bool = True,
    ) -> T:
        """Call the store, backing off on outages; unbounded calls never give up."""

        attempt = 0
        limit = self.settings.store_retry_max_attempts if bounded else None
        while True:
            try:
                return call()
            except JobStoreUnavailableError as error:
                attempt += 1
                if limit is not None and attempt >= limit:
                    logger.error(
                        "Job store unavailable during %s; giving up after %d attempts",
                        operation,
                        attempt,
                    )
                    raise
                delay = self._compute_store_retry_delay(retry_number=attempt)
                logger.warning(
                    "Job store unavailable during %s (attempt %d/%s), retrying in %.1fs: %s",
                    operation,
                    attempt,
                    limit if limit is not None else "unbounded",
                    delay,
                    error,
                )
                if on_retry is not None:
                    on_retry()
                self._sleep(delay)

    def _compute_store_retry_delay(self, *, retry_number: int) -> float:
        return min(
            self.settings.store_retry_max_seconds,
            self.settings.store_retry_base_seconds * (2 ** max(retry_number - 1, 0)),
        )

    def _sleep_with_stop(self, seconds: float) -> None:
        deadline = time.monotonic() + seconds
        while not self._stop_requested and time.monotonic() < deadline:
            time.sleep(min(0.1, max(0.0, deadline - time.monotonic())))

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if not hasattr(signal, "SIGINT"):
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            self.request_stop(signal_name=name)

        installed = True
        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
        except ValueError:
            # Signal handlers can only be installed in main thread.
            installed = False
        try:
            yield
        finally:
            if installed:
                signal.signal(signal.SIGINT, original_sigint)
                signal.signal(signal.SIGTERM, original_sigterm)

    def request_stop(self, *, signal_name: str = "manual") -> None:
        """Ask the loop to stop after the current job."""

        if self._stop_requested:
            return
        self._stop_requested = True
        self._stop_signal_name = signal_name
        if self._current_job_id is None:
            logger.info("Stop requested (%s); scheduler is idle", signal_name)
            return
        logger.warning(
            "Stop requested (%s); job %s gets %.0fs to finish",
            signal_name,
            self._current_job_id,
            self.settings.graceful_shutdown_seconds,
        )
