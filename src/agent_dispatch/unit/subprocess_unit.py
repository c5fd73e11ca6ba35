"""Subprocess-backed execution unit with a private workdir and resource ceilings."""

from __future__ import annotations

import json
import logging
import os
import shutil
import signal
import subprocess
import tempfile
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any
from uuid import uuid4

from agent_dispatch.config import NETWORK_ISOLATION_MODES, UnitSettings
from agent_dispatch.orchestrator.models import JobView
from agent_dispatch.orchestrator.payload import encode_for_env
from agent_dispatch.unit.base import (
    ENV_ALLOWED_HOSTS,
    ENV_JOB_ID,
    ENV_JOB_PAYLOAD,
    ENV_RESULT_PATH,
    ENV_UNIT_ID,
    ENV_WORKSPACE,
    RESULT_STATUS_SUCCEEDED,
    UnitOutcome,
    UnitProvisioningError,
    UnitState,
)
from agent_dispatch.unit.egress import EgressProxy, isolated_command, isolation_available

logger = logging.getLogger(__name__)

TIMEOUT_EXIT_CODE = 124
_STDERR_PREVIEW_CHARS = 2000
_POLL_SECONDS = 0.1


@dataclass(slots=True, frozen=True)
class ResourceLimits:
    """POSIX rlimits applied to the unit process; 0 disables a limit."""

    memory_mb: int = 0
    cpu_seconds: int = 0
    disk_mb: int = 0

    def apply(self) -> None:
        """Install limits in the current process (runs in the child before exec)."""

        import resource  # noqa: PLC0415

        if self.memory_mb > 0:
            _set_limit(resource.RLIMIT_AS, self.memory_mb * 1024 * 1024)
        if self.cpu_seconds > 0:
            _set_limit(resource.RLIMIT_CPU, self.cpu_seconds)
        if self.disk_mb > 0:
            _set_limit(resource.RLIMIT_FSIZE, self.disk_mb * 1024 * 1024)

    @property
    def enabled(self) -> bool:
        return self.memory_mb > 0 or self.cpu_seconds > 0 or self.disk_mb > 0


def _set_limit(kind: int, value: int) -> None:
    import resource  # noqa: PLC0415

    _, hard = resource.getrlimit(kind)
    if hard != resource.RLIM_INFINITY:
        value = min(value, hard)
    resource.setrlimit(kind, (value, hard))


class SubprocessExecutionUnit:
    """Runs the unit command as a separate process group in a throwaway workdir.

    The process sees only a scrubbed environment: passthrough variables, the
    base64 job payload, the outbound host allowlist and the result path.
    ``HOME`` and ``TMPDIR`` point inside the workdir, which is removed by
    ``destroy()`` on every exit path.

    With network isolation the process runs in a private network namespace
    and reaches the outside only through an ``EgressProxy`` limited to
    ``allowed_hosts``. ``network_isolation`` is one of:

    - ``enforce``: isolation is required; provisioning fails without it.
    - ``auto``: isolate when the host supports it. Without support, an
      allowlist still fails provisioning and an empty one runs on the host
      network with a warning.
    - ``off``: never isolate.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        job_id: str,
        payload: bytes,
        command: list[str],
        sandbox_root: Path,
        allowed_hosts: tuple[str, ...] = (),
        env_passthrough: tuple[str, ...] = (),
        limits: ResourceLimits | None = None,
        unit_id: str | None = None,
        network_isolation: str = "auto",
    ) -> None:
        if network_isolation not in NETWORK_ISOLATION_MODES:
            raise ValueError(f"Unsupported network isolation mode: {network_isolation!r}")
        self.job_id = job_id
        self.payload = payload
        self.command = list(command)
        self.sandbox_root = sandbox_root
        self.allowed_hosts = allowed_hosts
        self.env_passthrough = env_passthrough
        self.limits = limits or ResourceLimits()
        self.unit_id = unit_id or f"unit-{uuid4().hex[:12]}"
        self.state: UnitState | None = None
        self.workdir: Path | None = None
        self._env: dict[str, str] = {}
        self._process: subprocess.Popen[bytes] | None = None
        self.network_isolation = network_isolation
        self.isolated = False
        self._runtime_dir: Path | None = None
        self._proxy: EgressProxy | None = None

    def __enter__(self) -> SubprocessExecutionUnit:
        self.create()
        return self

    def __exit__(self, *_: object) -> None:
        self.destroy()

    @property
    def result_path(self) -> Path:
        return self._require_workdir() / "result.json"

    @property
    def workspace_path(self) -> Path:
        return self._require_workdir() / "workspace"

    @property
    def stdout_path(self) -> Path:
        return self._require_workdir() / "logs" / "stdout.log"

    @property
    def stderr_path(self) -> Path:
        return self._require_workdir() / "logs" / "stderr.log"

    def create(self) -> None:
        if self.state is not None:
            raise RuntimeError(f"Unit {self.unit_id} already created (state={self.state.value}).")
        if not self.command:
            raise UnitProvisioningError("Unit command is empty.", transient=False)
        self.isolated = self._resolve_isolation()
        try:
            if self.isolated:
                # Holds the proxy socket; Unix socket paths are capped at 108 bytes.
                self._runtime_dir = Path(tempfile.mkdtemp(prefix="adx-"))
            self.sandbox_root.mkdir(parents=True, exist_ok=True)
            self.workdir = Path(tempfile.mkdtemp(prefix=f"{self.unit_id}-", dir=self.sandbox_root))
            for name in ("workspace", "logs", "tmp"):
                (self.workdir / name).mkdir()
        except OSError as error:
            raise UnitProvisioningError(
                f"Failed to prepare unit workdir under {self.sandbox_root}: {error}",
                transient=True,
            ) from error

        self._env = self._build_env()
        self.state = UnitState.CREATED
        logger.info(
            "Created unit %s for job %s at %s (network=%s)",
            self.unit_id,
            self.job_id,
            self.workdir,
            "isolated" if self.isolated else "host",
        )

    def run(
        self,
        *,
        deadline_seconds: float,
        shutdown_requested: Callable[[], bool] | None = None,
        graceful_shutdown_seconds: float = 0,
    ) -> UnitOutcome:
        if self.state is not UnitState.CREATED:
            state = self.state.value if self.state is not None else "new"
            raise RuntimeError(f"Unit {self.unit_id} cannot run from state {state}.")

        workdir = self._require_workdir()
        if shutil.which(self.command[0], path=self._env.get("PATH", os.defpath)) is None:
            self.state = UnitState.FAILED
            raise UnitProvisioningError(
                f"Unit command not found: {self.command[0]}",
                transient=False,
            )
        argv = self._launch_argv()
        started = time.monotonic()
        try:
            with (
                self.stdout_path.open("wb") as stdout_handle,
                self.stderr_path.open("wb") as stderr_handle,
            ):
                self._process = subprocess.Popen(  # noqa: S603, PLW1509
                    argv,
                    cwd=workdir,
                    env=self._env,
                    stdin=subprocess.DEVNULL,
                    stdout=stdout_handle,
                    stderr=stderr_handle,
                    start_new_session=True,
                    preexec_fn=self.limits.apply if self.limits.enabled else None,
                )
        except FileNotFoundError as error:
            self.state = UnitState.FAILED
            raise UnitProvisioningError(
                f"Unit command not found: {self.command[0]}",
                transient=False,
            ) from error
        except (OSError, subprocess.SubprocessError) as error:
            self.state = UnitState.FAILED
            raise UnitProvisioningError(
                f"Unit failed to start: {error}",
                transient=True,
            ) from error

        self.state = UnitState.RUNNING
        logger.info("Started unit %s (pid=%s)", self.unit_id, self._process.pid)
        outcome = self._supervise(
            started=started,
            deadline_seconds=deadline_seconds,
            shutdown_requested=shutdown_requested,
            graceful_shutdown_seconds=graceful_shutdown_seconds,
        )
        self.state = outcome.state
        logger.info(
            "Unit %s finished state=%s exit_code=%s duration=%.1fs",
            self.unit_id,
            outcome.state.value,
            outcome.exit_code,
            outcome.duration_seconds,
        )
        return outcome

    def destroy(self) -> None:
        if self.state is UnitState.DESTROYED:
            return
        if self.is_alive():
            self._terminate_group()
        self._kill_group()
        if self._proxy is not None:
            self._proxy.stop()
            self._proxy = None
        for path in (self.workdir, self._runtime_dir):
            if path is None or not path.exists():
                continue
            try:
                shutil.rmtree(path)
            except OSError as error:
                logger.warning("Failed to remove unit directory %s: %s", path, error)
        self.state = UnitState.DESTROYED
        logger.info("Destroyed unit %s", self.unit_id)

    def is_alive(self) -> bool:
        return self._process is not None and self._process.poll() is None

    def _supervise(
        self,
        *,
        started: float,
        deadline_seconds: float,
        shutdown_requested: Callable[[], bool] | None,
        graceful_shutdown_seconds: float,
    ) -> UnitOutcome:
        process = self._process
        assert process is not None
        shutdown_deadline: float | None = None
        graceful_seconds = max(0.0, graceful_shutdown_seconds)

        while True:
            returncode = process.poll()
            if returncode is not None:
                # Background processes the unit left behind do not outlive it.
                self._kill_group()
                return self._exit_outcome(
                    exit_code=returncode,
                    duration=time.monotonic() - started,
                )

            now = time.monotonic()
            if now - started >= deadline_seconds:
                self._terminate_group()
                return UnitOutcome(
                    state=UnitState.TIMED_OUT,
                    exit_code=TIMEOUT_EXIT_CODE,
                    timed_out=True,
                    reason=f"deadline exceeded after {deadline_seconds:g}s",
                    stderr_preview=self._stderr_preview(),
                    duration_seconds=now - started,
                )

            if shutdown_requested is not None and shutdown_requested():
                if shutdown_deadline is None:
                    shutdown_deadline = now + graceful_seconds
                if now >= shutdown_deadline:
                    self._terminate_group()
                    return UnitOutcome(
                        state=UnitState.FAILED,
                        exit_code=process.returncode,
                        interrupted=True,
                        reason="scheduler shutdown interrupted the unit",
                        stderr_preview=self._stderr_preview(),
                        duration_seconds=now - started,
                    )

            time.sleep(_POLL_SECONDS)

    def _exit_outcome(self, *, exit_code: int, duration: float) -> UnitOutcome:
        stderr_preview = self._stderr_preview()
        result = self._read_result()
        disk_used = _directory_size_bytes(self._require_workdir())
        details: dict[str, Any] = {"disk_used_bytes": disk_used}

        if self.limits.disk_mb > 0 and disk_used > self.limits.disk_mb * 1024 * 1024:
            return UnitOutcome(
                state=UnitState.FAILED,
                exit_code=exit_code,
                result=result,
                reason=f"disk limit exceeded ({disk_used} bytes > {self.limits.disk_mb} MB)",
                stderr_preview=stderr_preview,
                duration_seconds=duration,
                details=details,
            )

        if exit_code == 0 and result is not None:
            if result.get("status") == RESULT_STATUS_SUCCEEDED:
                return UnitOutcome(
                    state=UnitState.SUCCEEDED,
                    exit_code=exit_code,
                    result=result,
                    stderr_preview=stderr_preview,
                    duration_seconds=duration,
                    details=details,
                )

        reason = None
        if exit_code == 0 and result is None:
            reason = "unit exited without a terminal result"
        elif exit_code < 0:
            reason = f"unit killed by signal {-exit_code}"
        return UnitOutcome(
            state=UnitState.FAILED,
            exit_code=exit_code,
            result=result,
            reason=reason,
            stderr_preview=stderr_preview,
            duration_seconds=duration,
            details=details,
        )

    def _read_result(self) -> dict[str, Any] | None:
        path = self.result_path
        if not path.exists():
            return None
        try:
            payload = json.loads(path.read_text("utf-8"))
        except (OSError, json.JSONDecodeError) as error:
            logger.warning("Unit %s wrote an unreadable result file: %s", self.unit_id, error)
            return None
        return payload if isinstance(payload, dict) else None

    def _stderr_preview(self) -> str:
        try:
            text = self.stderr_path.read_text("utf-8", errors="replace")
        except OSError:
            return ""
        return text[-_STDERR_PREVIEW_CHARS:]

    def _terminate_group(self) -> None:
        process = self._process
        if process is None:
            return
        try:
            os.killpg(process.pid, signal.SIGTERM)
        except (ProcessLookupError, PermissionError):
            return
        try:
            process.wait(timeout=2)
        except subprocess.TimeoutExpired:
            try:
                os.killpg(process.pid, signal.SIGKILL)
            except (ProcessLookupError, PermissionError):
                return
            process.wait(timeout=2)

    def _kill_group(self) -> None:
        process = self._process
        if process is None:
            return
        try:
            os.killpg(process.pid, signal.SIGKILL)
        except ProcessLookupError:
            return
        except PermissionError as error:
            logger.warning("Cannot signal process group of unit %s: %s", self.unit_id, error)

    def _resolve_isolation(self) -> bool:
        if self.network_isolation == "off":
            return False
        if isolation_available():
            return True
        if self.network_isolation == "enforce" or self.allowed_hosts:
            raise UnitProvisioningError(
                "Network isolation is unavailable on this host (unprivileged user and "
                "network namespaces via `unshare`); cannot enforce the outbound allowlist.",
                transient=False,
            )
        logger.warning(
            "Network isolation unavailable; unit %s runs with the host network",
            self.unit_id,
        )
        return False

    def _launch_argv(self) -> list[str]:
        if not self.isolated:
            return self.command
        assert self._runtime_dir is not None
        proxy_socket = self._runtime_dir / "egress.sock"
        self._proxy = EgressProxy(proxy_socket, self.allowed_hosts, label=self.unit_id)
        try:
            self._proxy.start()
            return isolated_command(self.command, proxy_socket=proxy_socket)
        except OSError as error:
            self.state = UnitState.FAILED
            raise UnitProvisioningError(
                f"Failed to start egress proxy for unit {self.unit_id}: {error}",
                transient=True,
            ) from error

    def _build_env(self) -> dict[str, str]:
        workdir = self._require_workdir()
        env = _passthrough_env(self.env_passthrough)
        env.update(
            {
                "HOME": str(workdir),
                "TMPDIR": str(workdir / "tmp"),
                ENV_JOB_ID: self.job_id,
                ENV_UNIT_ID: self.unit_id,
                ENV_JOB_PAYLOAD: encode_for_env(self.payload),
                ENV_ALLOWED_HOSTS: ",".join(self.allowed_hosts),
                ENV_RESULT_PATH: str(workdir / "result.json"),
                ENV_WORKSPACE: str(workdir / "workspace"),
            },
        )
        return env

    def _require_workdir(self) -> Path:
        if self.workdir is None:
            raise RuntimeError(f"Unit {self.unit_id} has not been created.")
        return self.workdir


class SubprocessUnitFactory:
    """Builds one ``SubprocessExecutionUnit`` per dequeued job from settings."""

    def __init__(self, settings: UnitSettings) -> None:
        self.settings = settings

    def __call__(self, job: JobView) -> SubprocessExecutionUnit:
        return SubprocessExecutionUnit(
            job_id=job.job_id,
            payload=job.payload,
            command=self.settings.command_argv(),
            sandbox_root=self.settings.sandbox_root,
            allowed_hosts=self.settings.allowed_hosts,
            env_passthrough=self.settings.env_passthrough,
            network_isolation=self.settings.network_isolation,
            limits=ResourceLimits(
                memory_mb=self.settings.memory_limit_mb,
                cpu_seconds=self.settings.cpu_limit_seconds,
                disk_mb=self.settings.disk_limit_mb,
            ),
        )


def _passthrough_env(names: tuple[str, ...]) -> dict[str, str]:
    """Copy selected variables; a trailing ``*`` selects by prefix."""

    env: dict[str, str] = {}
    for name in names:
        if name.endswith("*"):
            prefix = name[:-1]
            env.update({key: value for key, value in os.environ.items() if key.startswith(prefix)})
        elif name in os.environ:
            env[name] = os.environ[name]
    return env


def _directory_size_bytes(root: Path) -> int:
    total = 0
    for path in root.rglob("*"):
        try:
            if path.is_file() and not path.is_symlink():
                total += path.stat().st_size
        except OSError:
            continue
    return total
