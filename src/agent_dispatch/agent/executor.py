"""Capability-scoped action executor for one unit workspace."""

from __future__ import annotations

import logging
import os
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol, assert_never

from agent_dispatch.agent.actions import (
    Action,
    Approve,
    Finish,
    Observation,
    PostComment,
    ReadFile,
    RequestChanges,
    RunCommand,
)

logger = logging.getLogger(__name__)


class ActionExecutor(Protocol):
    """Performs one allowlisted side effect and reports an observation."""

    def execute(self, action: Action) -> Observation:
        """Execute ``action``; never raises for policy or effect failures."""


class ReviewPublisher(Protocol):
    """Posts review feedback to the code host for an allowlisted target."""

    def post_comment(self, target: str, body: str) -> str:
        """Post a comment and return its id."""

    def approve(self, target: str) -> None:
        """Approve the change request."""

    def request_changes(self, target: str, body: str) -> None:
        """Request changes with an explanation."""


@dataclass(slots=True)
class PublishedReview:
    kind: str
    target: str
    body: str = ""


@dataclass(slots=True)
class DryRunPublisher:
    """Publisher used when no code-host client is configured; records and logs only."""

    published: list[PublishedReview] = field(default_factory=list)

    def post_comment(self, target: str, body: str) -> str:
        logger.info("Would post comment on %s (%d chars)", target, len(body))
        self.published.append(PublishedReview(kind="comment", target=target, body=body))
        return f"dry-run-{len(self.published)}"

    def approve(self, target: str) -> None:
        logger.info("Would approve %s", target)
        self.published.append(PublishedReview(kind="approve", target=target))

    def request_changes(self, target: str, body: str) -> None:
        logger.info("Would request changes on %s: %s", target, body)
        self.published.append(PublishedReview(kind="request_changes", target=target, body=body))


def is_allowed_command(display: str, allowed_prefixes: tuple[str, ...]) -> bool:
    """Whole-word prefix match of a rendered command line against the allowlist."""

    normalized = " ".join(display.lower().split())
    for prefix in allowed_prefixes:
        candidate = " ".join(prefix.lower().split())
        if not candidate:
            continue
        if normalized == candidate or normalized.startswith(f"{candidate} "):
            return True
    return False


class WorkspaceActionExecutor:
    """Executes actions against a checked-out workspace.

    Reads are confined to the workspace, commands must match the allowlist
    and run without a shell, and review actions may only address the job's
    own targets. Anything else yields a ``Forbidden`` observation without
    touching the underlying effect.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        workspace: Path,
        allowed_commands: tuple[str, ...],
        allowed_targets: tuple[str, ...] = (),
        publisher: ReviewPublisher | None = None,
        command_timeout_seconds: float = 300.0,
        max_observation_chars: int = 20_000,
        env: dict[str, str] | None = None,
    ) -> None:
        self.workspace = workspace.resolve()
        self.allowed_commands = allowed_commands
        self.allowed_targets = allowed_targets
        self.publisher = publisher or DryRunPublisher()
        self.command_timeout_seconds = command_timeout_seconds
        self.max_observation_chars = max_observation_chars
        self.env = env if env is not None else dict(os.environ)

    def execute(self, action: Action) -> Observation:
        if isinstance(action, ReadFile):
            return self._read_file(action)
        if isinstance(action, RunCommand):
            return self._run_command(action)
        if isinstance(action, PostComment):
            return self._post_comment(action)
        if isinstance(action, Approve):
            return self._approve(action)
        if isinstance(action, RequestChanges):
            return self._request_changes(action)
        if isinstance(action, Finish):
            return Observation.error("finish is handled by the session, not the executor")
        assert_never(action)

    def _read_file(self, action: ReadFile) -> Observation:
        candidate = (self.workspace / action.path).resolve()
        if not candidate.is_relative_to(self.workspace):
            logger.warning("Blocked read outside workspace: %s", action.path)
            return Observation.forbidden(f"path {action.path!r} is outside the workspace")
        if not candidate.is_file():
            return Observation.error(f"File not found: {action.path}")
        try:
            content = candidate.read_text("utf-8", errors="replace")
        except OSError as error:
            return Observation.error(f"Failed to read file: {error}")
        return Observation.ok(content, max_chars=self.max_observation_chars)

    def _run_command(self, action: RunCommand) -> Observation:
        try:
            argv = action.argv()
        except ValueError as error:
            return Observation.error(f"Command is not parseable: {error}")
        display = action.display()
        if not argv or not is_allowed_command(display, self.allowed_commands):
            logger.warning("Blocked command outside allowlist: %s", display)
            return Observation.forbidden(f"command {display!r} is not allowed")

        logger.info("Running command: %s", display)
        try:
            completed = subprocess.run(  # noqa: S603
                argv,
                cwd=self.workspace,
                env=self.env,
                capture_output=True,
                text=True,
                errors="replace",
                timeout=self.command_timeout_seconds,
                check=False,
            )
        except subprocess.TimeoutExpired:
            return Observation.error(
                f"Command timed out after {self.command_timeout_seconds:g}s: {display}",
            )
        except OSError as error:
            return Observation.error(f"Command failed to start: {error}")

        output = (
            f"exit_code: {completed.returncode}\n"
            f"stdout:\n{completed.stdout}\n"
            f"stderr:\n{completed.stderr}"
        )
        if completed.returncode == 0:
            return Observation.ok(output, max_chars=self.max_observation_chars)
        return Observation.error(output, max_chars=self.max_observation_chars)

    def _post_comment(self, action: PostComment) -> Observation:
        target = self._resolve_target(action.target)
        if target is None:
            return Observation.forbidden(f"target {action.target!r} is not part of this job")
        try:
            comment_id = self.publisher.post_comment(target, action.body)
        except Exception as error:  # noqa: BLE001
            logger.warning("Failed to post comment on %s: %s", target, error)
            return Observation.error(f"Failed to post comment: {error}")
        return Observation.ok(f"Comment posted: {comment_id}")

    def _approve(self, action: Approve) -> Observation:
        target = self._resolve_target(action.target)
        if target is None:
            return Observation.forbidden(f"target {action.target!r} is not part of this job")
        try:
            self.publisher.approve(target)
        except Exception as error:  # noqa: BLE001
            logger.warning("Failed to approve %s: %s", target, error)
            return Observation.error(f"Failed to approve: {error}")
        return Observation.ok(f"Approved {target}")

    def _request_changes(self, action: RequestChanges) -> Observation:
        target = self._resolve_target(action.target)
        if target is None:
            return Observation.forbidden(f"target {action.target!r} is not part of this job")
        try:
            self.publisher.request_changes(target, action.body)
        except Exception as error:  # noqa: BLE001
            logger.warning("Failed to request changes on %s: %s", target, error)
            return Observation.error(f"Failed to request changes: {error}")
        return Observation.ok(f"Changes requested on {target}")

    def _resolve_target(self, target: str) -> str | None:
        if not target:
            return self.allowed_targets[0] if self.allowed_targets else None
        if target in self.allowed_targets:
            return target
        logger.warning("Blocked review action on foreign target: %s", target)
        return None
