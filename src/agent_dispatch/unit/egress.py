"""Outbound network allowlist for execution units.

An isolated unit runs in its own user and network namespace
(``unshare --user --map-root-user --net``). Nothing outside can connect in, and
its only way out is an HTTP proxy served by the scheduler process on a Unix
socket. The proxy tunnels ``CONNECT`` and plain ``http://`` requests to
allowlisted hosts and answers everything else with 403.
"""

from __future__ import annotations

import contextlib
import functools
import logging
import selectors
import shutil
import socket
import socketserver
import subprocess
import sys
import threading
from pathlib import Path
from urllib.parse import urlsplit

logger = logging.getLogger(__name__)

_MAX_HEADER_LINE = 8192
_MAX_HEADER_LINES = 100
_RELAY_CHUNK = 65536
_CHECK_TIMEOUT_SECONDS = 10


def host_allowed(host: str, allowed_hosts: tuple[str, ...]) -> bool:
    """Exact host match; an entry starting with ``.`` also admits its subdomains."""

    candidate = host.strip().strip("[]").rstrip(".").lower()
    if not candidate:
        return False
    for entry in allowed_hosts:
        allowed = entry.strip().lower()
        if not allowed:
            continue
        if allowed.startswith("."):
            if candidate == allowed[1:] or candidate.endswith(allowed):
                return True
        elif candidate == allowed:
            return True
    return False


@functools.lru_cache(maxsize=1)
def isolation_available() -> bool:
    """Whether this host can start processes in a private network namespace."""

    unshare = shutil.which("unshare")
    if unshare is None:
        return False
    try:
        completed = subprocess.run(  # noqa: S603
            [*_unshare_args(unshare), sys.executable, "-c", "pass"],
            capture_output=True,
            timeout=_CHECK_TIMEOUT_SECONDS,
            check=False,
        )
    except (OSError, subprocess.SubprocessError) as error:
        logger.info("Network namespaces unavailable: %s", error)
        return False
    if completed.returncode != 0:
        logger.info(
            "Network namespaces unavailable: %s",
            completed.stderr.decode("utf-8", errors="replace").strip(),
        )
        return False
    return True


def isolated_command(command: list[str], *, proxy_socket: Path) -> list[str]:
    """Wrap ``command`` so it runs inside a fresh network namespace behind the proxy."""

    unshare = shutil.which("unshare")
    if unshare is None:
        raise FileNotFoundError("unshare")
    return [
        *_unshare_args(unshare),
        sys.executable,
        "-m",
        "agent_dispatch.unit.netns",
        "--proxy-socket",
        str(proxy_socket),
        "--",
        *command,
    ]


def _unshare_args(unshare: str) -> list[str]:
    return [unshare, "--user", "--map-root-user", "--net", "--"]


def relay(left: socket.socket, right: socket.socket) -> None:
    """Copy bytes both ways until both sides have closed."""

    with selectors.DefaultSelector() as selector:
        selector.register(left, selectors.EVENT_READ, right)
        selector.register(right, selectors.EVENT_READ, left)
        open_sides = 2
        while open_sides:
            for key, _ in selector.select():
                source: socket.socket = key.fileobj  # type: ignore[assignment]
                target: socket.socket = key.data
                try:
                    data = source.recv(_RELAY_CHUNK)
                    if data:
                        target.sendall(data)
                        continue
                except OSError as error:
                    logger.debug("Relay closed: %s", error)
                    return
                selector.unregister(source)
                open_sides -= 1
                # Half-close: the peer may already be gone.
                with contextlib.suppress(OSError):
                    target.shutdown(socket.SHUT_WR)


class _ProxyServer(socketserver.ThreadingUnixStreamServer):
    daemon_threads = True

    def __init__(self, socket_path: Path, proxy: EgressProxy) -> None:
        self.proxy = proxy
        super().__init__(str(socket_path), _ProxyHandler)


class _ProxyHandler(socketserver.StreamRequestHandler):
    # Unbuffered so nothing past the request head is read before relaying.
    rbufsize = 0
    server: _ProxyServer

    def handle(self) -> None:
        proxy = self.server.proxy
        request_line = self.rfile.readline(_MAX_HEADER_LINE)
        if not request_line:
            return
        headers: list[bytes] = []
        while True:
            line = self.rfile.readline(_MAX_HEADER_LINE)
            if line in (b"", b"\r\n", b"\n"):
                break
            headers.append(line)
            if len(headers) > _MAX_HEADER_LINES:
                self._reply(431, "Request Header Fields Too Large")
                return

        try:
            method, target, version = request_line.decode("latin-1").split()
        except ValueError:
            self._reply(400, "Bad Request")
            return

        forward_head = b""
        if method.upper() == "CONNECT":
            host, _, port_text = target.rpartition(":")
            if not host or not port_text.isdigit():
                self._reply(400, "Bad Request")
                return
            port = int(port_text)
        else:
            parsed = urlsplit(target)
            if parsed.scheme != "http" or not parsed.hostname:
                self._reply(400, "Bad Request")
                return
            host, port = parsed.hostname, parsed.port or 80
            path = parsed.path or "/"
            if parsed.query:
                path = f"{path}?{parsed.query}"
            forward_head = (
                f"{method} {path} {version}\r\n".encode("latin-1") + b"".join(headers) + b"\r\n"
            )

        if not host_allowed(host, proxy.allowed_hosts):
            proxy.record_denied(host, port)
            self._reply(403, "Forbidden")
            return

        try:
            upstream = socket.create_connection(
                (host.strip("[]"), port),
                timeout=proxy.connect_timeout,
            )
        except OSError as error:
            logger.warning("Egress %s:%d for %s failed: %s", host, port, proxy.label, error)
            self._reply(502, "Bad Gateway")
            return

        with upstream:
            upstream.settimeout(None)
            if forward_head:
                upstream.sendall(forward_head)
            else:
                self.wfile.write(b"HTTP/1.1 200 Connection established\r\n\r\n")
            logger.debug("Egress %s:%d opened for %s", host, port, proxy.label)
            relay(self.connection, upstream)

    def _reply(self, status: int, reason: str) -> None:
        self.wfile.write(
            f"HTTP/1.1 {status} {reason}\r\nContent-Length: 0\r\nConnection: close\r\n\r\n".encode(
                "latin-1",
            ),
        )


class EgressProxy:
    """Allowlisting HTTP proxy bound to a Unix socket, one per unit."""

    def __init__(
        self,
        socket_path: Path,
        allowed_hosts: tuple[str, ...],
        *,
        label: str = "unit",
        connect_timeout: float = 10.0,
    ) -> None:
        self.socket_path = socket_path
        self.allowed_hosts = allowed_hosts
        self.label = label
        self.connect_timeout = connect_timeout
        self.denied: list[str] = []
        self._lock = threading.Lock()
        self._server: _ProxyServer | None = None
        self._thread: threading.Thread | None = None

    def __enter__(self) -> EgressProxy:
        self.start()
        return self

    def __exit__(self, *_: object) -> None:
        self.stop()

    def start(self) -> None:
        if self._server is not None:
            return
        self._server = _ProxyServer(self.socket_path, self)
        self._thread = threading.Thread(
            target=self._server.serve_forever,
            kwargs={"poll_interval": 0.2},
            name=f"egress-{self.label}",
            daemon=True,
        )
        self._thread.start()
        logger.info(
            "Egress proxy for %s on %s (allowed: %s)",
            self.label,
            self.socket_path,
            ", ".join(self.allowed_hosts) or "none",
        )

    def stop(self) -> None:
        server = self._server
        if server is None:
            return
        server.shutdown()
        server.server_close()
        if self._thread is not None:
            self._thread.join(timeout=5)
        self._server = None
        self._thread = None
        self.socket_path.unlink(missing_ok=True)

    def record_denied(self, host: str, port: int) -> None:
        with self._lock:
            self.denied.append(host)
        logger.warning("Egress to %s:%d denied for %s", host, port, self.label)
