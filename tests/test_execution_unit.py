from __future__ import annotations

import base64
import json
import os
import socket
import sys
import threading
import time
from collections.abc import Callable
from pathlib import Path

import allure
import pytest

from agent_dispatch.config import UnitSettings
from agent_dispatch.orchestrator.models import JobStatus, JobView
from agent_dispatch.storage.common import utc_now
from agent_dispatch.unit import (
    ResourceLimits,
    SubprocessExecutionUnit,
    SubprocessUnitFactory,
    UnitProvisioningError,
    UnitState,
)
from agent_dispatch.unit.egress import isolation_available

pytestmark = [
    allure.epic("Execution Units"),
    allure.feature("Subprocess Unit"),
]

WRITE_RESULT = """
import json, os
with open(os.environ["AGENT_DISPATCH_RESULT_PATH"], "w") as handle:
    json.dump({"status": "succeeded", "result": {"decision": "approve"}}, handle)
"""

DUMP_ENV = """
import json, os
with open(os.environ["AGENT_DISPATCH_RESULT_PATH"], "w") as handle:
    json.dump({"status": "succeeded", "result": dict(os.environ)}, handle)
"""

FILL_DISK = """
import os
for index in range(3):
    with open(f"blob-{index}.bin", "wb") as handle:
        handle.write(b"x" * 600_000)
"""

LEAVE_CHILD_BEHIND = """
import json, os, subprocess, sys
child = subprocess.Popen([sys.executable, "-c", "import time; time.sleep(30)"])
with open(PID_FILE, "w") as handle:
    handle.write(str(child.pid))
with open(os.environ["AGENT_DISPATCH_RESULT_PATH"], "w") as handle:
    json.dump({"status": "succeeded", "result": {}}, handle)
"""

NETWORK_REACH = """
import json, os, socket
from urllib.parse import urlsplit


def attempt(call):
    try:
        return call()
    except OSError as error:
        return f"error: {type(error).__name__}"


def direct():
    with socket.create_connection(("127.0.0.1", PORT), timeout=3) as sock:
        sock.sendall(b"direct")
    return "connected"


def tunnel(host):
    proxy = urlsplit(os.environ["HTTPS_PROXY"])
    with socket.create_connection((proxy.hostname, proxy.port), timeout=5) as sock:
        sock.sendall(f"CONNECT {host}:PORT HTTP/1.1\\r\\n\\r\\n".encode())
        status = sock.recv(1024).split(b"\\r\\n", 1)[0].decode()
        if status.endswith("200 Connection established"):
            sock.sendall(b"tunneled")
        return status


result = {
    "direct": attempt(direct),
    "allowed": attempt(lambda: tunnel("127.0.0.1")),
    "denied": attempt(lambda: tunnel("evil.example.net")),
}
with open(os.environ["AGENT_DISPATCH_RESULT_PATH"], "w") as handle:
    json.dump({"status": "succeeded", "result": result}, handle)
"""

requires_netns = pytest.mark.skipif(
    not isolation_available(),
    reason="unprivileged network namespaces are not available",
)


def _process_gone(pid: int) -> bool:
    stat = Path(f"/proc/{pid}/stat")
    if Path("/proc").is_dir():
        try:
            state = stat.read_text("utf-8").rsplit(")", 1)[1].split()[0]
        except (FileNotFoundError, ProcessLookupError):
            return True
        return state in {"Z", "X"}
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return True
    return False


def _eventually(check: Callable[[], bool], timeout: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if check():
            return True
        time.sleep(0.05)
    return check()


class _Listener:
    """Host-side TCP server recording what each connection sent."""

    def __init__(self) -> None:
        self.sock = socket.create_server(("127.0.0.1", 0))
        self.sock.settimeout(0.2)
        self.port: int = self.sock.getsockname()[1]
        self.received: list[bytes] = []
        self._stopped = threading.Event()
        self._thread = threading.Thread(target=self._serve, daemon=True)
        self._thread.start()

    def _serve(self) -> None:
        while not self._stopped.is_set():
            try:
                conn, _ = self.sock.accept()
            except TimeoutError:
                continue
            with conn:
                conn.settimeout(5)
                data = b""
                while chunk := conn.recv(1024):
                    data += chunk
                self.received.append(data)

    def close(self) -> None:
        self._stopped.set()
        self._thread.join(timeout=5)
        self.sock.close()


def _unit(tmp_path: Path, script: str, **kwargs: object) -> SubprocessExecutionUnit:
    options: dict[str, object] = {
        "job_id": "job-1",
        "payload": b'{"kind": "review", "project": "group/service"}',
        "command": [sys.executable, "-c", script],
        "sandbox_root": tmp_path / "units",
    }
    options.update(kwargs)
    return SubprocessExecutionUnit(**options)  # type: ignore[arg-type]


def test_unit_success_reads_structured_result(tmp_path: Path) -> None:
    with _unit(tmp_path, WRITE_RESULT) as unit:
        assert unit.state is UnitState.CREATED
        outcome = unit.run(deadline_seconds=30)

    assert outcome.succeeded
    assert outcome.state is UnitState.SUCCEEDED
    assert outcome.exit_code == 0
    assert outcome.result is not None
    assert outcome.result["result"] == {"decision": "approve"}
    assert unit.state is UnitState.DESTROYED


def test_unit_exit_without_result_fails(tmp_path: Path) -> None:
    with _unit(tmp_path, "pass") as unit:
        outcome = unit.run(deadline_seconds=30)

    assert outcome.state is UnitState.FAILED
    assert outcome.reason == "unit exited without a terminal result"


def test_unit_nonzero_exit_keeps_stderr_preview(tmp_path: Path) -> None:
    script = "import sys; sys.stderr.write('connection refused'); sys.exit(5)"
    with _unit(tmp_path, script) as unit:
        outcome = unit.run(deadline_seconds=30)

    assert outcome.state is UnitState.FAILED
    assert outcome.exit_code == 5
    assert "connection refused" in outcome.stderr_preview
    assert outcome.describe_failure() == "unit exited with code 5: connection refused"


def test_unit_deadline_kills_process(tmp_path: Path) -> None:
    with _unit(tmp_path, "import time; time.sleep(60)") as unit:
        outcome = unit.run(deadline_seconds=0.5)
        assert not unit.is_alive()

    assert outcome.timed_out
    assert outcome.state is UnitState.TIMED_OUT
    assert outcome.exit_code == 124
    assert outcome.reason == "deadline exceeded after 0.5s"


def test_unit_shutdown_request_interrupts_after_grace(tmp_path: Path) -> None:
    with _unit(tmp_path, "import time; time.sleep(60)") as unit:
        outcome = unit.run(
            deadline_seconds=60,
            shutdown_requested=lambda: True,
            graceful_shutdown_seconds=0.2,
        )

    assert outcome.interrupted
    assert outcome.state is UnitState.FAILED
    assert not outcome.timed_out


def test_destroy_removes_workdir_and_is_idempotent(tmp_path: Path) -> None:
    unit = _unit(tmp_path, WRITE_RESULT)
    unit.create()
    workdir = unit.workdir
    assert workdir is not None and workdir.is_dir()
    assert unit.workspace_path.is_dir()

    unit.run(deadline_seconds=30)
    unit.destroy()
    unit.destroy()

    assert not workdir.exists()
    assert unit.state is UnitState.DESTROYED


def test_unit_environment_is_scrubbed(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("SECRET_TOKEN", "do-not-leak")
    monkeypatch.setenv("AGENT_DISPATCH_AGENT_MAX_ITERATIONS", "7")

    with _unit(
        tmp_path,
        DUMP_ENV,
        allowed_hosts=("gitlab.example.com",),
        env_passthrough=("PATH", "AGENT_DISPATCH_AGENT_*"),
        network_isolation="off",
    ) as unit:
        workdir = unit.workdir
        outcome = unit.run(deadline_seconds=30)

    assert outcome.result is not None
    env = outcome.result["result"]
    assert "SECRET_TOKEN" not in env
    assert env["AGENT_DISPATCH_AGENT_MAX_ITERATIONS"] == "7"
    assert env["AGENT_DISPATCH_ALLOWED_HOSTS"] == "gitlab.example.com"
    assert env["AGENT_DISPATCH_JOB_ID"] == "job-1"
    assert env["HOME"] == str(workdir)
    payload = json.loads(base64.b64decode(env["AGENT_DISPATCH_JOB_PAYLOAD"]))
    assert payload["project"] == "group/service"


def test_disk_limit_breach_fails_unit(tmp_path: Path) -> None:
    with _unit(tmp_path, FILL_DISK, limits=ResourceLimits(disk_mb=1)) as unit:
        outcome = unit.run(deadline_seconds=30)

    assert outcome.state is UnitState.FAILED
    assert outcome.reason is not None
    assert outcome.reason.startswith("disk limit exceeded")


def test_missing_command_is_permanent_provisioning_error(tmp_path: Path) -> None:
    unit = _unit(tmp_path, "", command=["/nonexistent/agent-dispatch-unit"])
    unit.create()
    try:
        with pytest.raises(UnitProvisioningError) as excinfo:
            unit.run(deadline_seconds=5)
    finally:
        unit.destroy()

    assert excinfo.value.transient is False


def test_run_requires_create(tmp_path: Path) -> None:
    with pytest.raises(RuntimeError):
        _unit(tmp_path, "pass").run(deadline_seconds=5)


def test_factory_builds_unit_from_settings(tmp_path: Path) -> None:
    now = utc_now()
    job = JobView(
        job_id="job-9",
        idempotency_key=None,
        payload=b"{}",
        status=JobStatus.PROCESSING,
        attempt=1,
        max_attempts=3,
        queue_position=1,
        unit_id=None,
        failure_class=None,
        last_error=None,
        created_at=now,
        started_at=now,
        finished_at=None,
        last_transition_at=now,
    )
    settings = UnitSettings(
        sandbox_root=tmp_path / "units",
        unit_command="runner --flag 'quoted arg'",
        allowed_hosts=("github.com",),
        memory_limit_mb=512,
        disk_limit_mb=64,
    )

    unit = SubprocessUnitFactory(settings)(job)

    assert unit.job_id == "job-9"
    assert unit.command == ["runner", "--flag", "quoted arg"]
    assert unit.allowed_hosts == ("github.com",)
    assert unit.limits == ResourceLimits(memory_mb=512, cpu_seconds=0, disk_mb=64)
    assert unit.sandbox_root == tmp_path / "units"
    assert unit.network_isolation == "auto"


def test_destroy_kills_processes_left_behind(tmp_path: Path) -> None:
    pid_file = tmp_path / "child.pid"
    script = LEAVE_CHILD_BEHIND.replace("PID_FILE", repr(str(pid_file)))

    with _unit(tmp_path, script) as unit:
        outcome = unit.run(deadline_seconds=30)

    assert outcome.succeeded
    child_pid = int(pid_file.read_text("utf-8"))
    assert _eventually(lambda: _process_gone(child_pid))


@pytest.mark.parametrize(
    ("mode", "allowed_hosts"),
    [("auto", ("github.com",)), ("enforce", ())],
)
def test_unenforceable_isolation_fails_provisioning(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
    mode: str,
    allowed_hosts: tuple[str, ...],
) -> None:
    monkeypatch.setattr("agent_dispatch.unit.subprocess_unit.isolation_available", lambda: False)
    unit = _unit(tmp_path, WRITE_RESULT, allowed_hosts=allowed_hosts, network_isolation=mode)

    with pytest.raises(UnitProvisioningError) as excinfo:
        unit.create()
    unit.destroy()

    assert excinfo.value.transient is False
    assert "Network isolation is unavailable" in str(excinfo.value)


def test_auto_isolation_without_support_uses_host_network(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setattr("agent_dispatch.unit.subprocess_unit.isolation_available", lambda: False)

    with _unit(tmp_path, WRITE_RESULT) as unit:
        outcome = unit.run(deadline_seconds=30)

    assert unit.isolated is False
    assert outcome.succeeded


def test_unknown_isolation_mode_is_rejected(tmp_path: Path) -> None:
    with pytest.raises(ValueError, match="isolation"):
        _unit(tmp_path, WRITE_RESULT, network_isolation="maybe")


@requires_netns
def test_isolated_unit_reaches_only_allowlisted_hosts(tmp_path: Path) -> None:
    listener = _Listener()
    try:
        script = NETWORK_REACH.replace("PORT", str(listener.port))
        with _unit(
            tmp_path,
            script,
            allowed_hosts=("127.0.0.1",),
            network_isolation="enforce",
        ) as unit:
            outcome = unit.run(deadline_seconds=60)
        assert _eventually(lambda: len(listener.received) >= 1)
    finally:
        listener.close()

    assert unit.isolated is True
    assert outcome.succeeded, outcome.stderr_preview
    assert outcome.result is not None
    reach = outcome.result["result"]
    assert reach["direct"].startswith("error:")
    assert reach["allowed"] == "HTTP/1.1 200 Connection established"
    assert reach["denied"] == "HTTP/1.1 403 Forbidden"
    assert listener.received == [b"tunneled"]
