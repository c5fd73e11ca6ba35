"""Reasoning engine adapters: turn history into the next response items."""

from __future__ import annotations

import json
import logging
import os
import shlex
import subprocess
import tempfile
import time
from collections.abc import Callable, Sequence
from dataclasses import asdict
from pathlib import Path
from typing import Any, Protocol

from agent_dispatch.agent.actions import (
    InvalidActionError,
    ResponseItem,
    TextItem,
    action_name,
    parse_response_item,
)
from agent_dispatch.agent.history import (
    ROLE_ASSISTANT,
    ROLE_USER,
    ActionTurn,
    History,
    InvalidActionTurn,
    MessageTurn,
)

logger = logging.getLogger(__name__)

TOOL_DEFINITIONS: list[dict[str, Any]] = [
    {
        "name": "read_file",
        "description": "Read a file from the repository workspace.",
        "input_schema": {
            "type": "object",
            "properties": {"path": {"type": "string"}},
            "required": ["path"],
        },
    },
    {
        "name": "run_command",
        "description": "Run an allowlisted command (linters, tests, read-only tools) in the workspace.",
        "input_schema": {
            "type": "object",
            "properties": {"cmd": {"type": "string"}},
            "required": ["cmd"],
        },
    },
    {
        "name": "post_comment",
        "description": "Post a comment on the change request under review.",
        "input_schema": {
            "type": "object",
            "properties": {"body": {"type": "string"}, "target": {"type": "string"}},
            "required": ["body"],
        },
    },
    {
        "name": "approve",
        "description": "Approve the change request.",
        "input_schema": {
            "type": "object",
            "properties": {"target": {"type": "string"}},
        },
    },
    {
        "name": "request_changes",
        "description": "Request changes with an explanation.",
        "input_schema": {
            "type": "object",
            "properties": {"reason": {"type": "string"}, "target": {"type": "string"}},
            "required": ["reason"],
        },
    },
    {
        "name": "finish",
        "description": "Finish the job with a final result (decision, summary, issues).",
        "input_schema": {
            "type": "object",
            "properties": {"result": {"type": "object"}},
            "required": ["result"],
        },
    },
]


class ReasoningEngineError(RuntimeError):
    """Engine call failed, with retryability hint."""

    def __init__(self, message: str, *, transient: bool) -> None:
        super().__init__(message)
        self.transient = transient


class ReasoningEngine(Protocol):
    """Stateless between calls; all context travels in ``history``."""

    def request(self, history: History) -> Sequence[ResponseItem]:
        """Return the next response items for ``history``."""


def render_messages(history: History) -> list[dict[str, Any]]:
    """Convert history into role-tagged messages with tool use / tool result blocks."""

    messages: list[dict[str, Any]] = []
    for index, turn in enumerate(history):
        if isinstance(turn, MessageTurn):
            messages.append({"role": turn.role, "content": turn.content})
            continue
        if isinstance(turn, ActionTurn):
            name = action_name(turn.action)
            arguments = asdict(turn.action)
        elif isinstance(turn, InvalidActionTurn):
            name = turn.name
            arguments = {}
        else:
            continue
        call_id = turn.call_id or f"call_{index}"
        messages.append(
            {
                "role": ROLE_ASSISTANT,
                "content": [{"type": "tool_use", "id": call_id, "name": name, "input": arguments}],
            },
        )
        messages.append(
            {
                "role": ROLE_USER,
                "content": [
                    {
                        "type": "tool_result",
                        "tool_use_id": call_id,
                        "content": turn.observation.output,
                        "is_error": not turn.observation.succeeded,
                        "truncated": turn.observation.truncated,
                    },
                ],
            },
        )
    return messages


def parse_engine_output(stdout: str) -> list[ResponseItem]:
    """Parse JSON-lines engine output; non-JSON lines become plain text items."""

    items: list[ResponseItem] = []
    for line in stdout.splitlines():
        stripped = line.strip()
        if not stripped:
            continue
        try:
            decoded = json.loads(stripped)
        except json.JSONDecodeError:
            items.append(TextItem(text=line))
            continue
        raw_items = decoded if isinstance(decoded, list) else [decoded]
        for raw in raw_items:
            try:
                items.append(parse_response_item(raw))
            except InvalidActionError:
                items.append(TextItem(text=json.dumps(raw, ensure_ascii=False)))
    return items


class CliReasoningEngine:
    """Runs a command per call; the command reads ``{messages_file}`` and prints JSON lines."""

    def __init__(
        self,
        *,
        command_template: str,
        system_prompt: str,
        timeout_seconds: float = 300.0,
        scratch_dir: Path | None = None,
        env: dict[str, str] | None = None,
    ) -> None:
        self.command_template = command_template
        self.system_prompt = system_prompt
        self.timeout_seconds = timeout_seconds
        self.scratch_dir = scratch_dir
        self.env = env

    def request(self, history: History) -> list[ResponseItem]:
        with tempfile.TemporaryDirectory(prefix="engine-", dir=self.scratch_dir) as tmp:
            messages_file = Path(tmp) / "messages.json"
            messages_file.write_text(
                json.dumps(
                    {
                        "system": self.system_prompt,
                        "tools": TOOL_DEFINITIONS,
                        "messages": render_messages(history),
                    },
                    ensure_ascii=False,
                ),
                "utf-8",
            )
            argv = _build_run_args(
                command_template=self.command_template,
                messages_file=messages_file,
            )
            try:
                completed = subprocess.run(  # noqa: S603
                    argv,
                    capture_output=True,
                    text=True,
                    errors="replace",
                    timeout=self.timeout_seconds,
                    env=self.env if self.env is not None else dict(os.environ),
                    check=False,
                )
            except FileNotFoundError as error:
                raise ReasoningEngineError(
                    f"Engine command not found: {argv[0]}",
                    transient=False,
                ) from error
            except subprocess.TimeoutExpired as error:
                raise ReasoningEngineError(
                    f"Engine call timed out after {self.timeout_seconds:g}s",
                    transient=True,
                ) from error
            except OSError as error:
                raise ReasoningEngineError(
                    f"Engine failed to start: {error}",
                    transient=True,
                ) from error

        if completed.returncode != 0:
            raise ReasoningEngineError(
                f"Engine exited with code {completed.returncode}: {completed.stderr.strip()[-500:]}",
                transient=True,
            )
        return parse_engine_output(completed.stdout)


class RetryingReasoningEngine:
    """Retries transient engine failures with exponential backoff."""

    def __init__(
        self,
        inner: ReasoningEngine,
        *,
        max_retries: int = 3,
        backoff_seconds: float = 2.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.inner = inner
        self.max_retries = max_retries
        self.backoff_seconds = backoff_seconds
        self._sleep = sleep

    def request(self, history: History) -> Sequence[ResponseItem]:
        attempt = 0
        while True:
            try:
                return self.inner.request(history)
            except ReasoningEngineError as error:
                if not error.transient:
                    raise
                attempt += 1
                if attempt > self.max_retries:
                    raise ReasoningEngineError(
                        f"{error} (gave up after {attempt} attempts)",
                        transient=True,
                    ) from error
                delay = self.backoff_seconds * (2 ** (attempt - 1))
                logger.warning(
                    "Engine call failed (attempt %d/%d), retrying in %.1fs: %s",
                    attempt,
                    self.max_retries + 1,
                    delay,
                    error,
                )
                self._sleep(delay)


def _build_run_args(*, command_template: str, messages_file: Path) -> list[str]:
    stripped = command_template.strip()
    if not stripped:
        raise ReasoningEngineError("Engine command template is empty.", transient=False)
    if "{messages_file}" not in stripped:
        raise ReasoningEngineError(
            "Engine command template must include {messages_file}.",
            transient=False,
        )
    try:
        rendered = stripped.format(messages_file=shlex.quote(str(messages_file)))
    except (KeyError, IndexError) as error:
        raise ReasoningEngineError(
            f"Unsupported command template placeholder: {error}",
            transient=False,
        ) from error
    argv = shlex.split(rendered)
    if not argv:
        raise ReasoningEngineError("Engine command template rendered empty command.", transient=False)
    return argv
