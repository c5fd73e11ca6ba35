"""Repository checkout inside a unit workdir."""

from __future__ import annotations

import logging
import shutil
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlparse

from agent_dispatch.orchestrator.payload import JobPayload
from agent_dispatch.unit.egress import host_allowed

logger = logging.getLogger(__name__)

_GIT_TIMEOUT_SECONDS = 600


class WorkspaceError(RuntimeError):
    """Workspace could not be prepared, with retryability hint."""

    def __init__(self, message: str, *, transient: bool) -> None:
        super().__init__(message)
        self.transient = transient


@dataclass(slots=True)
class PreparedWorkspace:
    repo_dir: Path
    diff: str = ""
    changed_files: list[str] = field(default_factory=list)


def clone_host(clone_url: str) -> str:
    """Host part of an https/ssh/scp-style clone URL."""

    parsed = urlparse(clone_url)
    if parsed.hostname:
        return parsed.hostname.lower()
    # scp-like syntax: git@host:group/repo.git
    head = clone_url.split(":", 1)[0]
    return head.rsplit("@", 1)[-1].lower()


def prepare_workspace(
    payload: JobPayload,
    *,
    workspace: Path,
    allowed_hosts: tuple[str, ...] = (),
    clone_depth: int = 50,
) -> PreparedWorkspace:
    """Materialize the repository for ``payload`` under ``workspace``."""

    repo_dir = workspace / "repo"
    base_ref = payload.target_branch
    if payload.repo_path:
        source = Path(payload.repo_path)
        if not source.is_dir():
            raise WorkspaceError(f"Repository path does not exist: {source}", transient=False)
        try:
            shutil.copytree(source, repo_dir, symlinks=True)
        except OSError as error:
            raise WorkspaceError(f"Failed to copy repository: {error}", transient=True) from error
    elif payload.clone_url:
        host = clone_host(payload.clone_url)
        if allowed_hosts and not host_allowed(host, allowed_hosts):
            raise WorkspaceError(f"Clone host {host!r} is not in the allowlist", transient=False)
        args = ["git", "clone", "--depth", str(clone_depth)]
        if payload.branch:
            args.extend(["--branch", payload.branch])
        args.extend([payload.clone_url, str(repo_dir)])
        logger.info("Cloning %s (branch=%s)", host, payload.branch or "default")
        _run_git(args, cwd=workspace)
        if payload.target_branch:
            _fetch_target_branch(repo_dir, payload.target_branch, clone_depth)
            base_ref = f"origin/{payload.target_branch}"
    else:
        raise WorkspaceError("Payload has neither repo_path nor clone_url", transient=False)

    if not payload.target_branch:
        return PreparedWorkspace(repo_dir=repo_dir)
    diff = _git_output(["git", "diff", f"{base_ref}...HEAD"], cwd=repo_dir)
    names = _git_output(
        ["git", "diff", "--name-only", f"{base_ref}...HEAD"],
        cwd=repo_dir,
    )
    return PreparedWorkspace(
        repo_dir=repo_dir,
        diff=diff,
        changed_files=[line for line in names.splitlines() if line.strip()],
    )


def _fetch_target_branch(repo_dir: Path, target_branch: str, depth: int) -> None:
    _run_git(
        [
            "git",
            "fetch",
            "--depth",
            str(depth),
            "origin",
            f"{target_branch}:refs/remotes/origin/{target_branch}",
        ],
        cwd=repo_dir,
    )


def _run_git(args: list[str], *, cwd: Path) -> None:
    try:
        completed = subprocess.run(  # noqa: S603
            args,
            cwd=cwd,
            capture_output=True,
            text=True,
            timeout=_GIT_TIMEOUT_SECONDS,
            check=False,
        )
    except FileNotFoundError as error:
        raise WorkspaceError("git executable not found", transient=False) from error
    except subprocess.TimeoutExpired as error:
        raise WorkspaceError(f"{args[1]} timed out", transient=True) from error
    if completed.returncode != 0:
        raise WorkspaceError(
            f"git {args[1]} failed with code {completed.returncode}: {completed.stderr.strip()}",
            transient=True,
        )


def _git_output(args: list[str], *, cwd: Path) -> str:
    """Best-effort git query; the diff is context, not a requirement."""

    try:
        completed = subprocess.run(  # noqa: S603
            args,
            cwd=cwd,
            capture_output=True,
            text=True,
            errors="replace",
            timeout=_GIT_TIMEOUT_SECONDS,
            check=False,
        )
    except (OSError, subprocess.TimeoutExpired) as error:
        logger.warning("git query failed (%s): %s", " ".join(args[1:3]), error)
        return ""
    if completed.returncode != 0:
        logger.warning("git query failed (%s): %s", " ".join(args[1:3]), completed.stderr.strip())
        return ""
    return completed.stdout
