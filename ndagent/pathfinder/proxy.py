"""Routing of streams to local services."""

from __future__ import annotations

import logging
import socket
import threading
from dataclasses import dataclass, replace
from typing import Protocol

from ndagent.pathfinder.httpproxy import HTTPProxy
from ndagent.pathfinder.session import SessionManager
from ndagent.pathfinder.shell import ShellManager

DEFAULT_LOCAL_HOST = "127.0.0.1"
DEFAULT_WEBADMIN_PORT = 443

_IO_CHUNK = 32 * 1024

_log = logging.getLogger("ndagent.pathfinder.proxy")


class ServiceStream(Protocol):
    """The stream operations the TCP proxy relies on."""

    id: int
    service_name: str

    def read(self, size: int = -1) -> bytes: ...

    def write(self, data: bytes) -> int: ...

    def close(self) -> None: ...

    def is_closed(self) -> bool: ...


@dataclass
class ServiceConfig:
    """A local service that streams can be connected to."""

    name: str
    local_host: str = DEFAULT_LOCAL_HOST
    local_port: int = 0


@dataclass
class ProxyConfig:
    """Options for the TCP proxy; empty values select the defaults."""

    shell: str = ""
    webadmin_user: str = ""
    webadmin_session_dir: str = ""
    webadmin_port: int = 0


def default_opnsense_services(webadmin_port: int = 0) -> list[ServiceConfig]:
    """Return the services offered on an OPNsense firewall."""
    port = webadmin_port or DEFAULT_WEBADMIN_PORT
    return [
        ServiceConfig(name="ssh", local_host=DEFAULT_LOCAL_HOST, local_port=22),
        ServiceConfig(name="webadmin", local_host=DEFAULT_LOCAL_HOST, local_port=port),
    ]


class TCPProxy:
    """Connects streams to shells, the web interface or plain TCP services."""

    def __init__(self, config: ProxyConfig | None = None) -> None:
        cfg = config or ProxyConfig()
        port = cfg.webadmin_port or DEFAULT_WEBADMIN_PORT
        session_manager = SessionManager(cfg.webadmin_user, cfg.webadmin_session_dir)
        self.shell_manager = ShellManager(cfg.shell)
        self.http_proxy = HTTPProxy(DEFAULT_LOCAL_HOST, port, session_manager)
        self._services: dict[str, ServiceConfig] = {}
        self._lock = threading.Lock()

    def add_service(self, config: ServiceConfig) -> None:
        """Register a service; an empty host means the loopback address."""
        if not config.local_host:
            config = replace(config, local_host=DEFAULT_LOCAL_HOST)
        with self._lock:
            self._services[config.name] = config
        _log.debug(
            "Registered service name=%s local_host=%s local_port=%s",
            config.name,
            config.local_host,
            config.local_port,
        )

    def get_service(self, name: str) -> ServiceConfig | None:
        """Return the configuration of a registered service, or None."""
        with self._lock:
            return self._services.get(name)

    def proxy_stream_to_local(self, stream: ServiceStream) -> None:
        """Connect ``stream`` to the service it asked for.

        Plain TCP services are relayed in a background thread. Raises
        LookupError for an unknown service and ConnectionError when the
        local service cannot be reached.
        """
        service_name = stream.service_name
        if service_name == "shell":
            self.shell_manager.handle_shell_stream(stream)
            return
        if service_name == "shell-ctl":
            self.shell_manager.handle_shell_ctl_stream(stream)
            return
        if service_name == "webadmin":
            self.http_proxy.handle_stream(stream)
            return

        config = self.get_service(service_name)
        if config is None:
            raise LookupError(f"unknown service: {service_name}")

        addr = f"{config.local_host}:{config.local_port}"
        _log.debug(
            "Proxying stream to local service stream_id=%s service=%s addr=%s",
            stream.id,
            service_name,
            addr,
        )
        try:
            sock = socket.create_connection((config.local_host, config.local_port))
        except OSError as exc:
            raise ConnectionError(f"failed to connect to {addr}: {exc}") from exc

        threading.Thread(
            target=self._proxy_bidirectional,
            args=(stream, sock, service_name),
            daemon=True,
        ).start()

    @staticmethod
    def _proxy_bidirectional(
        stream: ServiceStream, sock: socket.socket, service_name: str
    ) -> None:
        def stream_to_local() -> None:
            total = 0
            try:
                while data := stream.read(_IO_CHUNK):
                    sock.sendall(data)
                    total += len(data)
            except OSError as exc:
                if not stream.is_closed():
                    _log.debug("Stream to local copy ended bytes=%d error=%s", total, exc)
            _log.debug("Stream to local copy ended bytes=%d", total)
            try:
                sock.shutdown(socket.SHUT_WR)
            except OSError:
                pass

        def local_to_stream() -> None:
            total = 0
            try:
                while data := sock.recv(_IO_CHUNK):
                    stream.write(data)
                    total += len(data)
            except Exception as exc:
                if not stream.is_closed():
                    _log.debug("Local to stream copy ended bytes=%d error=%s", total, exc)
            _log.debug("Local to stream copy ended bytes=%d", total)

        workers = [
            threading.Thread(target=stream_to_local, daemon=True),
            threading.Thread(target=local_to_stream, daemon=True),
        ]
        try:
            for worker in workers:
                worker.start()
            for worker in workers:
                worker.join()
        finally:
            try:
                stream.close()
            except Exception as exc:
                _log.debug("Error closing stream: %s", exc)
            sock.close()
        _log.debug(
            "Proxy session ended stream_id=%s service=%s", stream.id, service_name
        )

    def close_all(self) -> None:
        """Close pending shell streams and destroy the web session."""
        self.shell_manager.close_all()
        self.http_proxy.close()