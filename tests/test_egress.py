from __future__ import annotations

import shutil
import socket
import tempfile
import threading
from collections.abc import Callable, Iterator
from pathlib import Path

import allure
import pytest

from agent_dispatch.unit import egress
from agent_dispatch.unit.egress import EgressProxy, host_allowed, isolated_command
from agent_dispatch.unit.netns import PROXY_VARIABLES, proxy_environment

pytestmark = [
    allure.epic("Execution Units"),
    allure.feature("Network Egress"),
]


@pytest.fixture
def socket_dir() -> Iterator[Path]:
    path = Path(tempfile.mkdtemp(prefix="adx-test-"))
    try:
        yield path
    finally:
        shutil.rmtree(path, ignore_errors=True)


def _serve_once(handler: Callable[[socket.socket], None]) -> tuple[int, threading.Thread]:
    listener = socket.create_server(("127.0.0.1", 0))
    port = listener.getsockname()[1]

    def _run() -> None:
        with listener:
            listener.settimeout(10)
            conn, _ = listener.accept()
            with conn:
                conn.settimeout(10)
                handler(conn)

    thread = threading.Thread(target=_run, daemon=True)
    thread.start()
    return port, thread


def _read_until(conn: socket.socket, marker: bytes) -> bytes:
    data = b""
    while marker not in data:
        chunk = conn.recv(1024)
        if not chunk:
            break
        data += chunk
    return data


def _read_all(conn: socket.socket) -> bytes:
    data = b""
    while chunk := conn.recv(1024):
        data += chunk
    return data


def _client(proxy: EgressProxy, request: bytes) -> socket.socket:
    client = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    client.settimeout(10)
    client.connect(str(proxy.socket_path))
    client.sendall(request)
    return client


@pytest.mark.parametrize(
    ("host", "allowed", "expected"),
    [
        ("github.com", ("github.com",), True),
        ("GitHub.com.", ("github.com",), True),
        ("api.github.com", ("github.com",), False),
        ("api.github.com", (".github.com",), True),
        ("github.com", (".github.com",), True),
        ("evilgithub.com", (".github.com",), False),
        ("github.com.evil.net", ("github.com",), False),
        ("github.com", (), False),
    ],
)
def test_host_allowed(host: str, allowed: tuple[str, ...], expected: bool) -> None:
    assert host_allowed(host, allowed) is expected


def test_proxy_refuses_host_outside_allowlist(socket_dir: Path) -> None:
    with EgressProxy(socket_dir / "egress.sock", ("github.com",), label="unit-a") as proxy:
        client = _client(proxy, b"CONNECT evil.example.net:443 HTTP/1.1\r\n\r\n")
        with client:
            response = _read_all(client)

    assert response.startswith(b"HTTP/1.1 403 Forbidden\r\n")
    assert proxy.denied == ["evil.example.net"]
    assert not (socket_dir / "egress.sock").exists()


def test_proxy_tunnels_to_allowlisted_host(socket_dir: Path) -> None:
    def _pong(conn: socket.socket) -> None:
        _read_until(conn, b"ping")
        conn.sendall(b"pong")

    port, server = _serve_once(_pong)

    with EgressProxy(socket_dir / "egress.sock", ("127.0.0.1",)) as proxy:
        client = _client(proxy, f"CONNECT 127.0.0.1:{port} HTTP/1.1\r\n\r\nping".encode())
        with client:
            response = _read_all(client)
        server.join(timeout=10)

    assert response == b"HTTP/1.1 200 Connection established\r\n\r\npong"
    assert proxy.denied == []


def test_proxy_forwards_plain_http_in_origin_form(socket_dir: Path) -> None:
    received: list[bytes] = []

    def _respond(conn: socket.socket) -> None:
        received.append(_read_until(conn, b"\r\n\r\n"))
        conn.sendall(b"HTTP/1.1 204 No Content\r\n\r\n")

    port, server = _serve_once(_respond)
    request = (
        f"GET http://127.0.0.1:{port}/status?verbose=1 HTTP/1.1\r\n"
        "Host: 127.0.0.1\r\n\r\n"
    ).encode()

    with EgressProxy(socket_dir / "egress.sock", ("127.0.0.1",)) as proxy:
        client = _client(proxy, request)
        with client:
            response = _read_until(client, b"\r\n\r\n")
        server.join(timeout=10)

    assert response.startswith(b"HTTP/1.1 204 No Content")
    assert received == [b"GET /status?verbose=1 HTTP/1.1\r\nHost: 127.0.0.1\r\n\r\n"]


@pytest.mark.parametrize(
    "request_line",
    [
        b"NONSENSE\r\n\r\n",
        b"CONNECT github.com HTTP/1.1\r\n\r\n",
        b"GET /relative HTTP/1.1\r\n\r\n",
        b"GET ftp://github.com/file HTTP/1.1\r\n\r\n",
    ],
)
def test_proxy_rejects_malformed_requests(socket_dir: Path, request_line: bytes) -> None:
    with EgressProxy(socket_dir / "egress.sock", ("github.com",)) as proxy:
        client = _client(proxy, request_line)
        with client:
            response = _read_all(client)

    assert response.startswith(b"HTTP/1.1 400 Bad Request")


def test_isolated_command_wraps_unit_command(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(egress.shutil, "which", lambda name: f"/usr/bin/{name}")

    argv = isolated_command(["runner", "--flag"], proxy_socket=Path("/tmp/adx-1/egress.sock"))

    assert argv[:5] == ["/usr/bin/unshare", "--user", "--map-root-user", "--net", "--"]
    assert argv[6:] == [
        "-m",
        "agent_dispatch.unit.netns",
        "--proxy-socket",
        "/tmp/adx-1/egress.sock",
        "--",
        "runner",
        "--flag",
    ]


def test_proxy_environment_points_every_client_at_forwarder() -> None:
    env = proxy_environment(4321, {"PATH": "/usr/bin", "HTTPS_PROXY": "http://corp:3128"})

    assert env["PATH"] == "/usr/bin"
    for name in PROXY_VARIABLES:
        assert env[name] == "http://127.0.0.1:4321"
    assert env["NO_PROXY"] == "localhost,127.0.0.1"
