"""HTTP endpoint serving the metrics registry and a health check.

The server binds to loopback by default. ``/metrics`` and ``/healthz`` are
unauthenticated, so binding anywhere else logs a warning at start-up: the
beacon's identity, version and counters would otherwise be readable by
anyone who can reach the port.
"""

from __future__ import annotations

import ipaddress
import logging
import socket
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Optional
from urllib.parse import urlsplit

from netbeacon.metrics.registry import REGISTRY, Registry

DEFAULT_BIND_ADDR = "127.0.0.1:9090"

_REQUEST_TIMEOUT = 10.0

_log = logging.getLogger("netbeacon.metrics")


def _split_host_port(addr: str) -> tuple[str, int]:
    """Split "host:port" or "[v6]:port"; raise ValueError if malformed."""
    if addr.startswith("["):
        end = addr.find("]")
        if end < 0 or addr[end + 1 : end + 2] != ":":
            raise ValueError(f"malformed address: {addr!r}")
        host, port_text = addr[1:end], addr[end + 2 :]
    else:
        host, sep, port_text = addr.rpartition(":")
        if not sep or ":" in host:
            raise ValueError(f"malformed address: {addr!r}")
    if not port_text.isdigit() or not 0 <= int(port_text) <= 65535:
        raise ValueError(f"invalid port in address: {addr!r}")
    return host, int(port_text)


def is_loopback_bind(addr: str) -> bool:
    """Report whether addr binds to a loopback interface only.

    An empty host, a wildcard, a non-loopback IP or any hostname other than
    ``localhost`` counts as non-loopback, as does an address that cannot be
    parsed.
    """
    try:
        host, _ = _split_host_port(addr)
    except ValueError:
        return False
    if host == "":
        return False
    if host == "localhost":
        return True
    host = host.split("%", 1)[0]
    try:
        ip = ipaddress.ip_address(host)
    except ValueError:
        return False
    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        ip = ip.ipv4_mapped
    return ip.is_loopback


class _Handler(BaseHTTPRequestHandler):
    timeout = _REQUEST_TIMEOUT
    server: _HTTPServer

    def do_GET(self) -> None:  # noqa: N802
        path = urlsplit(self.path).path
        if path == "/metrics":
            body = self.server.registry.render().encode()
            content_type = "text/plain; version=0.0.4; charset=utf-8"
        elif path == "/healthz":
            body = b"ok\n"
            content_type = "text/plain; charset=utf-8"
        else:
            self.send_error(404)
            return
        self.send_response(200)
        self.send_header("Content-Type", content_type)
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def log_message(self, format: str, *args: object) -> None:
        pass


class _HTTPServer(ThreadingHTTPServer):
    daemon_threads = True
    registry: Registry


class _HTTPServer6(_HTTPServer):
    address_family = socket.AF_INET6


class MetricsServer:
    """Serves ``/metrics`` and ``/healthz``; start() does not block."""

    def __init__(
        self,
        bind_addr: str = "",
        logger: Optional[logging.Logger] = None,
        registry: Optional[Registry] = None,
    ) -> None:
        self.bind_addr = bind_addr or DEFAULT_BIND_ADDR
        self.logger = logger
        self.registry = registry if registry is not None else REGISTRY
        self._server: Optional[_HTTPServer] = None
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        """Open the listener and serve in a background thread.

        Raises OSError if the address cannot be bound.
        """
        try:
            host, port = _split_host_port(self.bind_addr)
        except ValueError as exc:
            raise OSError(f"metrics: bind {self.bind_addr}: {exc}") from exc
        server_cls = _HTTPServer6 if ":" in host else _HTTPServer
        try:
            server = server_cls((host, port), _Handler)
        except OSError as exc:
            raise OSError(exc.errno, f"metrics: bind {self.bind_addr}: {exc.strerror or exc}") from exc
        server.registry = self.registry
        self._server = server

        if not is_loopback_bind(self.bind_addr):
            logger = self.logger if self.logger is not None else _log
            logger.warning(
                "metrics.non_loopback_bind",
                extra={
                    "addr": self.bind_addr,
                    "risk": "unauthenticated_metrics_exposed",
                    "guidance": "front with TLS+auth (nginx, traefik) or restrict via "
                    "firewall before exposing publicly",
                },
            )

        self._thread = threading.Thread(
            target=server.serve_forever, name="metrics-server", daemon=True
        )
        self._thread.start()

    def addr(self) -> str:
        """The bound address, with the real port; bind_addr before start."""
        if self._server is None:
            return self.bind_addr
        host, port = self._server.server_address[:2]
        if ":" in str(host):
            return f"[{host}]:{port}"
        return f"{host}:{port}"

    def close(self) -> None:
        """Stop serving; does nothing if the server is not running."""
        server, thread = self._server, self._thread
        if server is None:
            return
        self._server = None
        self._thread = None
        server.shutdown()
        server.server_close()
        if thread is not None:
            thread.join()