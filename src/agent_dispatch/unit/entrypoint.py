"""Process entry point run inside an execution unit: one job, one agent session."""

from __future__ import annotations

import json
import logging
import os
import sys
from pathlib import Path
from typing import Any

from agent_dispatch.agent.engine import CliReasoningEngine, RetryingReasoningEngine
from agent_dispatch.agent.executor import DryRunPublisher, WorkspaceActionExecutor
from agent_dispatch.agent.prompts import build_initial_context, system_prompt_for
from agent_dispatch.agent.session import AgentSession, SessionResult
from agent_dispatch.config import Settings, configure_logging
from agent_dispatch.orchestrator.failure_classifier import EXIT_PERMANENT
from agent_dispatch.orchestrator.models import FailureClass
from agent_dispatch.orchestrator.payload import (
    JobPayload,
    MalformedPayloadError,
    decode_from_env,
)
from agent_dispatch.unit.base import (
    ENV_ALLOWED_HOSTS,
    ENV_JOB_ID,
    ENV_JOB_PAYLOAD,
    ENV_RESULT_PATH,
    ENV_WORKSPACE,
    EXIT_RETRYABLE,
    RESULT_STATUS_FAILED,
    RESULT_STATUS_SUCCEEDED,
)
from agent_dispatch.unit.workspace import WorkspaceError, prepare_workspace

logger = logging.getLogger(__name__)


def main() -> int:
    """Decode the job, prepare the workspace, run the session, write the result."""

    configure_logging(os.getenv("AGENT_DISPATCH_LOG_LEVEL", "INFO"))
    result_path = Path(os.getenv(ENV_RESULT_PATH) or "result.json")
    workspace = Path(os.getenv(ENV_WORKSPACE) or "workspace")
    job_id = os.getenv(ENV_JOB_ID, "-")

    try:
        payload = JobPayload.from_bytes(decode_from_env(os.getenv(ENV_JOB_PAYLOAD, "")))
    except MalformedPayloadError as error:
        logger.error("Job %s has a malformed payload: %s", job_id, error)
        write_result(
            result_path,
            status=RESULT_STATUS_FAILED,
            reason=f"malformed payload: {error}",
            failure_class=FailureClass.MALFORMED_PAYLOAD,
            retryable=False,
        )
        return EXIT_PERMANENT

    logger.info("Job %s: %s", job_id, payload.describe())
    settings = Settings.from_env()
    allowed_hosts = tuple(
        host.strip().lower()
        for host in os.getenv(ENV_ALLOWED_HOSTS, "").split(",")
        if host.strip()
    )
    workspace.mkdir(parents=True, exist_ok=True)
    try:
        prepared = prepare_workspace(
            payload,
            workspace=workspace,
            allowed_hosts=allowed_hosts,
            clone_depth=settings.agent.clone_depth,
        )
    except WorkspaceError as error:
        logger.error("Job %s workspace preparation failed: %s", job_id, error)
        write_result(
            result_path,
            status=RESULT_STATUS_FAILED,
            reason=f"workspace preparation failed: {error}",
            failure_class=(
                FailureClass.UNIT_TRANSIENT if error.transient else FailureClass.UNIT_ERROR
            ),
            retryable=error.transient,
        )
        return EXIT_RETRYABLE if error.transient else EXIT_PERMANENT

    engine = RetryingReasoningEngine(
        CliReasoningEngine(
            command_template=settings.agent.engine_command_template,
            system_prompt=system_prompt_for(payload.kind),
            timeout_seconds=settings.agent.engine_timeout_seconds,
        ),
        max_retries=settings.agent.engine_max_retries,
        backoff_seconds=settings.agent.engine_retry_backoff_seconds,
    )
    executor = WorkspaceActionExecutor(
        workspace=prepared.repo_dir,
        allowed_commands=settings.agent.allowed_commands,
        allowed_targets=tuple(payload.targets),
        publisher=DryRunPublisher(),
        command_timeout_seconds=settings.agent.command_timeout_seconds,
        max_observation_chars=settings.agent.max_observation_chars,
    )
    session = AgentSession(
        engine=engine,
        executor=executor,
        max_iterations=settings.agent.max_iterations,
    )
    result = session.run(
        build_initial_context(
            payload,
            diff=prepared.diff,
            changed_files=prepared.changed_files,
        ),
    )
    write_session_result(result_path, result)
    if result.succeeded:
        logger.info("Job %s finished after %d iteration(s)", job_id, result.iterations)
        return 0
    logger.error("Job %s session failed: %s", job_id, result.reason)
    return EXIT_RETRYABLE if result.retryable else EXIT_PERMANENT


def write_session_result(path: Path, result: SessionResult) -> None:
    if result.succeeded:
        write_result(
            path,
            status=RESULT_STATUS_SUCCEEDED,
            result=result.result,
            iterations=result.iterations,
        )
        return
    write_result(
        path,
        status=RESULT_STATUS_FAILED,
        reason=result.reason,
        failure_class=result.failure_class,
        retryable=result.retryable,
        iterations=result.iterations,
    )


def write_result(  # noqa: PLR0913
    path: Path,
    *,
    status: str,
    result: dict[str, Any] | None = None,
    reason: str | None = None,
    failure_class: FailureClass | None = None,
    retryable: bool = False,
    iterations: int = 0,
) -> None:
    """Write the structured terminal result read back by the unit host."""

    payload = {
        "status": status,
        "result": result or {},
        "reason": reason,
        "failure_class": failure_class.value if failure_class is not None else None,
        "retryable": retryable,
        "iterations": iterations,
    }
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_suffix(".tmp")
    tmp_path.write_text(json.dumps(payload, ensure_ascii=False, indent=2), "utf-8")
    tmp_path.replace(path)


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
