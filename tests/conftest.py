"""Shared test fixtures."""

from __future__ import annotations

import json
from collections.abc import Iterator
from pathlib import Path

import pytest

from agent_dispatch.orchestrator.models import JobCreate
from agent_dispatch.orchestrator.repository import JobRepository


@pytest.fixture()
def repository(tmp_path: Path) -> Iterator[JobRepository]:
    repo = JobRepository(tmp_path / "jobs.db", max_attempts=3, poll_interval_seconds=0.01)
    repo.init_schema()
    try:
        yield repo
    finally:
        repo.close()


def make_payload(project: str = "group/service", **fields: object) -> bytes:
    data: dict[str, object] = {"kind": "review", "project": project}
    data.update(fields)
    return json.dumps(data).encode("utf-8")


def submit_job(
    repository: JobRepository,
    project: str = "group/service",
    *,
    idempotency_key: str | None = None,
    max_attempts: int | None = None,
) -> str:
    return repository.submit(
        JobCreate(
            payload=make_payload(project),
            idempotency_key=idempotency_key,
            max_attempts=max_attempts,
        ),
    )
