"""Launcher that runs inside a unit's private network namespace.

Usage: ``python -m agent_dispatch.unit.netns --proxy-socket PATH -- COMMAND...``

Brings the namespace loopback up, serves a local TCP port that forwards to the
host egress proxy over ``PATH``, points the standard proxy variables at it and
runs ``COMMAND``, exiting with its exit code.
"""

from __future__ import annotations

import fcntl
import logging
import os
import socket
import struct
import subprocess
import sys
import threading
from pathlib import Path

from agent_dispatch.config import configure_logging
from agent_dispatch.orchestrator.failure_classifier import EXIT_PERMANENT
from agent_dispatch.unit.egress import relay

logger = logging.getLogger(__name__)

_SIOCGIFFLAGS = 0x8913
_SIOCSIFFLAGS = 0x8914
_IFF_UP = 0x1
# struct ifreq: 16-byte name followed by a 24-byte union; only the flags are used.
_IFREQ = struct.Struct("16sH22x")

PROXY_VARIABLES = (
    "HTTP_PROXY",
    "HTTPS_PROXY",
    "ALL_PROXY",
    "http_proxy",
    "https_proxy",
    "all_proxy",
)
COMMAND_NOT_FOUND_EXIT_CODE = 127


def bring_loopback_up() -> None:
    with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sock:
        current = fcntl.ioctl(sock.fileno(), _SIOCGIFFLAGS, _IFREQ.pack(b"lo", 0))
        _, flags = _IFREQ.unpack(current)
        fcntl.ioctl(sock.fileno(), _SIOCSIFFLAGS, _IFREQ.pack(b"lo", flags | _IFF_UP))


def proxy_environment(port: int, base: dict[str, str]) -> dict[str, str]:
    env = dict(base)
    proxy_url = f"http://127.0.0.1:{port}"
    for name in PROXY_VARIABLES:
        env[name] = proxy_url
    env["NO_PROXY"] = env["no_proxy"] = "localhost,127.0.0.1"
    return env


def _forward(client: socket.socket, proxy_socket: Path) -> None:
    with client:
        upstream = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        with upstream:
            try:
                upstream.connect(str(proxy_socket))
            except OSError as error:
                logger.warning("Egress proxy %s unreachable: %s", proxy_socket, error)
                return
            relay(client, upstream)


def _serve(listener: socket.socket, proxy_socket: Path) -> None:
    while True:
        client, _ = listener.accept()
        threading.Thread(target=_forward, args=(client, proxy_socket), daemon=True).start()


def _parse_args(argv: list[str]) -> tuple[Path, list[str]]:
    if len(argv) < 4 or argv[0] != "--proxy-socket" or argv[2] != "--":  # noqa: PLR2004
        raise ValueError("usage: netns --proxy-socket PATH -- COMMAND...")
    return Path(argv[1]), argv[3:]


def main(argv: list[str] | None = None) -> int:
    configure_logging(os.getenv("AGENT_DISPATCH_LOG_LEVEL", "INFO"))
    try:
        proxy_socket, command = _parse_args(sys.argv[1:] if argv is None else argv)
    except ValueError as error:
        logger.error("%s", error)
        return EXIT_PERMANENT

    try:
        bring_loopback_up()
        listener = socket.create_server(("127.0.0.1", 0))
    except OSError as error:
        logger.error("Network namespace setup failed: %s", error)
        return EXIT_PERMANENT

    port = listener.getsockname()[1]
    threading.Thread(target=_serve, args=(listener, proxy_socket), daemon=True).start()
    logger.debug("Egress forwarder on 127.0.0.1:%d -> %s", port, proxy_socket)

    try:
        completed = subprocess.run(  # noqa: S603
            command,
            env=proxy_environment(port, dict(os.environ)),
            check=False,
        )
    except FileNotFoundError:
        logger.error("Unit command not found: %s", command[0])
        return COMMAND_NOT_FOUND_EXIT_CODE
    if completed.returncode < 0:
        return 128 - completed.returncode
    return completed.returncode


if __name__ == "__main__":
    raise SystemExit(main())
