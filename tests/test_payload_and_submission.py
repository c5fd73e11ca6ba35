from __future__ import annotations

import json

import allure
import pytest

from agent_dispatch.agent.prompts import (
    REVIEW_SYSTEM_PROMPT,
    SENTRY_FIX_SYSTEM_PROMPT,
    build_initial_context,
    system_prompt_for,
)
from agent_dispatch.orchestrator.payload import (
    JobPayload,
    MalformedPayloadError,
    decode_from_env,
    encode_for_env,
)
from agent_dispatch.orchestrator.repository import JobRepository
from agent_dispatch.orchestrator.services import JobSubmission, JobSubmissionService
from conftest import make_payload

pytestmark = [
    allure.epic("Job Queue"),
    allure.feature("Submission"),
]


def test_payload_from_bytes_applies_defaults() -> None:
    payload = JobPayload.from_bytes(b'{"project": "group/service", "targets": ["!42"]}')

    assert payload.kind == "review"
    assert payload.project == "group/service"
    assert payload.targets == ["!42"]
    assert payload.clone_url is None
    assert payload.describe() == "review group/service!!42"


@pytest.mark.parametrize(
    "raw",
    [
        b"not json",
        b"[1, 2]",
        b'{"kind": "review"}',
        b'{"kind": "deploy", "project": "x"}',
        b'{"project": "x", "targets": "!42"}',
        b'{"project": "x", "metadata": []}',
        b"\xff\xfe",
    ],
)
def test_malformed_payloads_are_rejected(raw: bytes) -> None:
    with pytest.raises(MalformedPayloadError):
        JobPayload.from_bytes(raw)


def test_payload_bytes_are_stable() -> None:
    payload = JobPayload(kind="sentry_fix", project="group/api", metadata={"issue": "API-1"})

    encoded = payload.to_bytes()

    assert json.loads(encoded)["metadata"] == {"issue": "API-1"}
    assert JobPayload.from_bytes(encoded) == payload
    assert decode_from_env(encode_for_env(encoded)) == encoded


def test_invalid_base64_is_malformed() -> None:
    with pytest.raises(MalformedPayloadError):
        decode_from_env("***not-base64***")


def test_submission_deduplicates_active_idempotency_key(repository: JobRepository) -> None:
    service = JobSubmissionService(repository=repository)
    submission = JobSubmission(payload=make_payload(), idempotency_key="gitlab:mr:42:abc")

    first = service.submit(submission)
    second = service.submit(submission)

    assert first.created is True
    assert second.created is False
    assert second.job_id == first.job_id
    assert repository.stats().pending == 1


def test_submission_after_completion_creates_new_job(repository: JobRepository) -> None:
    service = JobSubmissionService(repository=repository)
    submission = JobSubmission(payload=make_payload(), idempotency_key="key-1")
    first = service.submit(submission)
    repository.dequeue(timeout=0)
    repository.complete(job_id=first.job_id)

    second = service.submit(submission)

    assert second.created is True
    assert second.job_id != first.job_id


def test_submission_max_attempts_override(repository: JobRepository) -> None:
    result = JobSubmissionService(repository=repository).submit(
        JobSubmission(payload=make_payload(), max_attempts=7),
    )

    job = repository.get_job(job_id=result.job_id)
    assert job is not None
    assert job.max_attempts == 7


def test_system_prompt_per_kind() -> None:
    assert system_prompt_for("review") == REVIEW_SYSTEM_PROMPT
    assert system_prompt_for("sentry_fix") == SENTRY_FIX_SYSTEM_PROMPT
    assert "finish" in system_prompt_for("jira_ticket")


def test_initial_context_includes_diff_and_changed_files() -> None:
    payload = JobPayload(
        kind="review",
        project="group/service",
        branch="feature/x",
        target_branch="main",
        title="Fix race",
        targets=["!42"],
        prompt="Focus on locking.",
    )

    context = build_initial_context(
        payload,
        diff="+added line\n",
        changed_files=["src/lock.py"],
    )

    assert context.startswith("# Review: Fix race\n")
    assert "Target branch: main" in context
    assert "- src/lock.py" in context
    assert "+added line" in context
    assert "Focus on locking." in context


def test_initial_context_truncates_large_diffs() -> None:
    payload = JobPayload(kind="review", project="p")

    context = build_initial_context(payload, diff="x" * 70_000)

    assert "(diff truncated, 10000 more characters)" in context
