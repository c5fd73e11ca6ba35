"""Orphan reconciliation: recover jobs left processing with no live execution unit."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from datetime import datetime, timedelta

from agent_dispatch.orchestrator.errors import JobNotFoundError
from agent_dispatch.orchestrator.models import FailureClass
from agent_dispatch.orchestrator.repository import JobRepository
from agent_dispatch.storage.common import utc_now
from agent_dispatch.unit.base import ExecutionUnit, UnitState

logger = logging.getLogger(__name__)

_LIVE_STATES = (UnitState.CREATED, UnitState.RUNNING)


class UnitRegistry:
    """In-process map of job id to the execution unit currently hosting it."""

    def __init__(self) -> None:
        self._units: dict[str, ExecutionUnit] = {}
        self._lock = threading.Lock()

    def register(self, job_id: str, unit: ExecutionUnit) -> None:
        with self._lock:
            self._units[job_id] = unit

    def unregister(self, job_id: str) -> None:
        with self._lock:
            self._units.pop(job_id, None)

    def is_live(self, job_id: str) -> bool:
        with self._lock:
            unit = self._units.get(job_id)
        if unit is None:
            return False
        return unit.state in _LIVE_STATES or unit.is_alive()

    def live_job_ids(self) -> list[str]:
        with self._lock:
            job_ids = list(self._units)
        return [job_id for job_id in job_ids if self.is_live(job_id)]

    def __len__(self) -> int:
        with self._lock:
            return len(self._units)


class OrphanReconciler:
    """Compares jobs marked processing against units known to be alive.

    A job processing for longer than ``max_unit_lifetime_seconds`` with no
    registered live unit is forced back through the failure path with
    ``retry=True``; the retry limit still applies.
    """

    def __init__(
        self,
        *,
        repository: JobRepository,
        registry: UnitRegistry,
        max_unit_lifetime_seconds: float,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.repository = repository
        self.registry = registry
        self.max_unit_lifetime_seconds = max_unit_lifetime_seconds
        self.clock = clock

    def sweep(self) -> list[str]:
        """Recover orphaned jobs and return their ids."""

        cutoff = self.clock() - timedelta(seconds=self.max_unit_lifetime_seconds)
        recovered: list[str] = []
        for job in self.repository.list_processing(started_before=cutoff):
            if self.registry.is_live(job.job_id):
                continue
            started = job.started_at.isoformat() if job.started_at is not None else "unknown"
            try:
                status = self.repository.fail(
                    job_id=job.job_id,
                    reason=(
                        f"orphaned: processing since {started} with no live unit"
                        f" (unit={job.unit_id or '-'})"
                    ),
                    retry=True,
                    failure_class=FailureClass.ORPHANED,
                )
            except JobNotFoundError:
                logger.info("Orphan candidate %s changed state during sweep", job.job_id)
                continue
            logger.warning(
                "Recovered orphaned job %s (attempt %d) -> %s",
                job.job_id,
                job.attempt,
                status.value,
            )
            recovered.append(job.job_id)
        if recovered:
            logger.info("Reconciliation sweep recovered %d job(s)", len(recovered))
        return recovered
