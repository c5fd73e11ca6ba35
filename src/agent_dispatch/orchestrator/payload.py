"""Normalized job payload shared by ingress, scheduler, and execution unit."""

from __future__ import annotations

import base64
import json
from dataclasses import asdict, dataclass, field
from typing import Any

SUPPORTED_JOB_KINDS = ("review", "sentry_fix", "jira_ticket")


class MalformedPayloadError(ValueError):
    """Job payload cannot be decoded into a runnable job description."""


@dataclass(slots=True)
class JobPayload:
    """Provider-neutral description of one unit of work.

    ``targets`` lists the review targets (merge request / pull request ids,
    issue keys) the agent may comment on, approve, or request changes for.
    """

    kind: str
    project: str
    branch: str = ""
    target_branch: str = ""
    clone_url: str | None = None
    repo_path: str | None = None
    title: str = ""
    description: str | None = None
    author: str = ""
    prompt: str = ""
    targets: list[str] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)

    def describe(self) -> str:
        """Short description for logging."""

        target = self.targets[0] if self.targets else self.branch or "-"
        return f"{self.kind} {self.project}!{target}"

    def to_bytes(self) -> bytes:
        return json.dumps(asdict(self), ensure_ascii=False, sort_keys=True).encode("utf-8")

    @classmethod
    def from_bytes(cls, raw: bytes) -> JobPayload:
        """Decode and validate a payload; raise ``MalformedPayloadError`` on any problem."""

        try:
            data = json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as error:
            raise MalformedPayloadError(f"Payload is not valid JSON: {error}") from error
        if not isinstance(data, dict):
            raise MalformedPayloadError("Payload must be a JSON object.")
        return cls.from_mapping(data)

    @classmethod
    def from_mapping(cls, data: dict[str, Any]) -> JobPayload:
        kind = str(data.get("kind") or "review").strip()
        if kind not in SUPPORTED_JOB_KINDS:
            raise MalformedPayloadError(
                f"Unsupported job kind {kind!r}; expected one of {', '.join(SUPPORTED_JOB_KINDS)}.",
            )
        project = str(data.get("project") or "").strip()
        if not project:
            raise MalformedPayloadError("Payload is missing required field 'project'.")

        targets = data.get("targets") or []
        if not isinstance(targets, list) or not all(isinstance(item, str) for item in targets):
            raise MalformedPayloadError("Payload field 'targets' must be a list of strings.")
        metadata = data.get("metadata") or {}
        if not isinstance(metadata, dict):
            raise MalformedPayloadError("Payload field 'metadata' must be an object.")

        return cls(
            kind=kind,
            project=project,
            branch=str(data.get("branch") or ""),
            target_branch=str(data.get("target_branch") or ""),
            clone_url=_optional_str(data.get("clone_url")),
            repo_path=_optional_str(data.get("repo_path")),
            title=str(data.get("title") or ""),
            description=_optional_str(data.get("description")),
            author=str(data.get("author") or ""),
            prompt=str(data.get("prompt") or ""),
            targets=list(targets),
            metadata=dict(metadata),
        )


def encode_for_env(raw: bytes) -> str:
    """Encode a payload for injection through an environment variable."""

    return base64.b64encode(raw).decode("ascii")


def decode_from_env(value: str) -> bytes:
    try:
        return base64.b64decode(value.encode("ascii"), validate=True)
    except (ValueError, UnicodeEncodeError) as error:
        raise MalformedPayloadError(f"Failed to decode base64 payload: {error}") from error


def _optional_str(value: object) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None
