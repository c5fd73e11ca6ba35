"""Action / observation types exchanged between the agent loop and its collaborators."""

from __future__ import annotations

import shlex
from dataclasses import dataclass, field
from typing import Any

ACTION_READ_FILE = "read_file"
ACTION_RUN_COMMAND = "run_command"
ACTION_POST_COMMENT = "post_comment"
ACTION_APPROVE = "approve"
ACTION_REQUEST_CHANGES = "request_changes"
ACTION_FINISH = "finish"


class InvalidActionError(ValueError):
    """Engine proposed a tool call that does not map to a known action."""


@dataclass(slots=True, frozen=True)
class ReadFile:
    path: str


@dataclass(slots=True, frozen=True)
class RunCommand:
    command: str
    args: tuple[str, ...] = ()

    def argv(self) -> list[str]:
        return [*shlex.split(self.command), *self.args]

    def display(self) -> str:
        return shlex.join(self.argv())


@dataclass(slots=True, frozen=True)
class PostComment:
    target: str
    body: str


@dataclass(slots=True, frozen=True)
class Approve:
    target: str


@dataclass(slots=True, frozen=True)
class RequestChanges:
    target: str
    body: str


@dataclass(slots=True, frozen=True)
class Finish:
    """Terminal action; its ``result`` becomes the session's terminal result."""

    result: dict[str, Any] = field(default_factory=dict)


Action = ReadFile | RunCommand | PostComment | Approve | RequestChanges | Finish

ACTION_NAMES: dict[type, str] = {
    ReadFile: ACTION_READ_FILE,
    RunCommand: ACTION_RUN_COMMAND,
    PostComment: ACTION_POST_COMMENT,
    Approve: ACTION_APPROVE,
    RequestChanges: ACTION_REQUEST_CHANGES,
    Finish: ACTION_FINISH,
}


def action_name(action: Action) -> str:
    return ACTION_NAMES[type(action)]


@dataclass(slots=True, frozen=True)
class Observation:
    """Result of executing one action; always appended to history."""

    succeeded: bool
    output: str
    truncated: bool = False

    @classmethod
    def ok(cls, output: str, *, max_chars: int | None = None) -> Observation:
        return _bounded(True, output, max_chars)

    @classmethod
    def error(cls, output: str, *, max_chars: int | None = None) -> Observation:
        return _bounded(False, output, max_chars)

    @classmethod
    def forbidden(cls, reason: str) -> Observation:
        return cls(succeeded=False, output=f"Forbidden: {reason}")


def _bounded(succeeded: bool, output: str, max_chars: int | None) -> Observation:
    if max_chars is not None and len(output) > max_chars:
        return Observation(succeeded=succeeded, output=output[:max_chars], truncated=True)
    return Observation(succeeded=succeeded, output=output)


@dataclass(slots=True, frozen=True)
class TextItem:
    text: str


@dataclass(slots=True, frozen=True)
class ActionItem:
    action: Action
    call_id: str | None = None


@dataclass(slots=True, frozen=True)
class InvalidActionItem:
    """Tool call that could not be parsed into an action."""

    name: str
    error: str
    call_id: str | None = None


ResponseItem = TextItem | ActionItem | InvalidActionItem


def parse_action(name: str, arguments: dict[str, Any] | None) -> Action:
    """Map a tool call (name + JSON arguments) to an action."""

    args = arguments or {}
    if not isinstance(args, dict):
        raise InvalidActionError(f"Arguments for {name!r} must be an object.")

    if name == ACTION_READ_FILE:
        return ReadFile(path=_required_str(name, args, "path"))
    if name == ACTION_RUN_COMMAND:
        return _parse_run_command(args)
    if name == ACTION_POST_COMMENT:
        return PostComment(
            target=_target(args),
            body=_required_str(name, args, "body"),
        )
    if name == ACTION_APPROVE:
        return Approve(target=_target(args))
    if name == ACTION_REQUEST_CHANGES:
        body = args.get("body", args.get("reason"))
        if not isinstance(body, str) or not body.strip():
            raise InvalidActionError("request_changes requires a non-empty 'body' or 'reason'.")
        return RequestChanges(target=_target(args), body=body)
    if name == ACTION_FINISH:
        result = args.get("result", {})
        if not isinstance(result, dict):
            raise InvalidActionError("finish 'result' must be an object.")
        return Finish(result=dict(result))
    raise InvalidActionError(f"Unknown action {name!r}.")


def parse_response_item(raw: Any) -> ResponseItem:
    """Decode one engine response item: ``{"type": "text"|"action", ...}``."""

    if not isinstance(raw, dict):
        raise InvalidActionError(f"Response item must be an object, got {type(raw).__name__}.")
    kind = raw.get("type")
    if kind == "text":
        return TextItem(text=str(raw.get("text", "")))
    if kind in {"action", "tool_use"}:
        name = str(raw.get("name", ""))
        call_id = raw.get("id")
        try:
            action = parse_action(name, raw.get("input", raw.get("arguments")))
        except InvalidActionError as error:
            return InvalidActionItem(name=name, error=str(error), call_id=call_id)
        return ActionItem(action=action, call_id=call_id)
    raise InvalidActionError(f"Unknown response item type {kind!r}.")


def _parse_run_command(args: dict[str, Any]) -> RunCommand:
    if "cmd" in args and "command" not in args:
        cmd = args["cmd"]
        if not isinstance(cmd, str) or not cmd.strip():
            raise InvalidActionError("run_command 'cmd' must be a non-empty string.")
        try:
            parts = shlex.split(cmd)
        except ValueError as error:
            raise InvalidActionError(f"run_command 'cmd' is not parseable: {error}") from error
        return RunCommand(command=parts[0], args=tuple(parts[1:]))

    command = _required_str(ACTION_RUN_COMMAND, args, "command")
    raw_args = args.get("args", [])
    if not isinstance(raw_args, list) or not all(isinstance(item, str) for item in raw_args):
        raise InvalidActionError("run_command 'args' must be a list of strings.")
    return RunCommand(command=command, args=tuple(raw_args))


def _target(args: dict[str, Any]) -> str:
    value = args.get("target", "")
    if not isinstance(value, str | int):
        raise InvalidActionError("'target' must be a string.")
    return str(value)


def _required_str(name: str, args: dict[str, Any], key: str) -> str:
    value = args.get(key)
    if not isinstance(value, str) or not value.strip():
        raise InvalidActionError(f"{name} requires a non-empty {key!r}.")
    return value
