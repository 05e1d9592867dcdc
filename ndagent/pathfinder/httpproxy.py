"""HTTP proxying from a stream to the local web administration interface.

All streams share one PHP session, whose id is injected as the
``PHPSESSID`` cookie of every forwarded request so the browser on the
other end is already logged in.
"""

from __future__ import annotations

import http.client
import io
import logging
import socket
import ssl
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Protocol
from urllib.parse import urlsplit

from ndagent.pathfinder.session import Session, SessionError, SessionManager

CONNECT_TIMEOUT = 10.0
RESPONSE_HEADER_TIMEOUT = 30.0

_MAX_LINE = 64 * 1024
_IO_CHUNK = 32 * 1024
_WATCH_INTERVAL = 0.2
_BODY_METHODS = frozenset({"POST", "PUT", "PATCH"})
_EXCLUDED_REQUEST_HEADERS = frozenset(
    {"host", "content-length", "transfer-encoding", "connection"}
)
_FORWARD_ERRORS = (OSError, http.client.HTTPException, ValueError)

_log = logging.getLogger("ndagent.pathfinder.httpproxy")

ConnectionFactory = Callable[[str, int], http.client.HTTPConnection]


class ProxyStream(Protocol):
    """The stream operations the HTTP proxy relies on."""

    id: int

    def read(self, size: int = -1) -> bytes: ...

    def write(self, data: bytes) -> int: ...

    def is_closed(self) -> bool: ...

    def wait_closed(self, timeout: float | None = None) -> bool: ...


@dataclass
class ProxyRequest:
    """An HTTP request read from a stream.

    ``headers`` holds every header except ``Host``, whose value is kept in
    ``host``. A chunked body is decoded into ``body``.
    """

    method: str
    target: str
    headers: list[tuple[str, str]] = field(default_factory=list)
    body: bytes = b""
    host: str = ""
    version: str = "HTTP/1.1"

    @property
    def path(self) -> str:
        """The path component of the request target."""
        return urlsplit(self.target).path


def _read_line(reader: io.BufferedIOBase) -> bytes:
    line = reader.readline(_MAX_LINE + 1)
    if len(line) > _MAX_LINE:
        raise ValueError("header line too long")
    return line


def _read_exact(reader: io.BufferedIOBase, size: int) -> bytes:
    data = reader.read(size)
    if data is None or len(data) < size:
        raise ValueError("unexpected EOF")
    return data


def _read_chunked(reader: io.BufferedIOBase) -> bytes:
    parts: list[bytes] = []
    while True:
        line = _read_line(reader)
        if not line:
            raise ValueError("unexpected EOF")
        size_text = line.split(b";", 1)[0].strip()
        try:
            size = int(size_text, 16)
        except ValueError as exc:
            raise ValueError(f"invalid chunk size {size_text!r}") from exc
        if size < 0:
            raise ValueError(f"invalid chunk size {size_text!r}")
        if size == 0:
            while True:
                trailer = _read_line(reader)
                if not trailer:
                    raise ValueError("unexpected EOF")
                if trailer in (b"\r\n", b"\n"):
                    return b"".join(parts)
        parts.append(_read_exact(reader, size))
        if _read_line(reader) not in (b"\r\n", b"\n"):
            raise ValueError("malformed chunked encoding")


def read_request(reader: io.BufferedIOBase) -> ProxyRequest | None:
    """Read one HTTP request; return None at a clean end of input.

    Raises ValueError when the request is malformed or cut short.
    """
    line = _read_line(reader)
    if not line:
        return None
    text = line.decode("latin-1").rstrip("\r\n")
    parts = text.split(" ")
    if len(parts) != 3 or not parts[0] or not parts[1]:
        raise ValueError(f"malformed HTTP request {text!r}")
    method, target, version = parts
    if not version.startswith("HTTP/"):
        raise ValueError(f"malformed HTTP version {version!r}")

    headers: list[tuple[str, str]] = []
    while True:
        line = _read_line(reader)
        if not line:
            raise ValueError("unexpected EOF")
        if line in (b"\r\n", b"\n"):
            break
        name, sep, value = line.decode("latin-1").rstrip("\r\n").partition(":")
        if not sep or not name or name != name.strip():
            raise ValueError(f"malformed MIME header line: {line!r}")
        headers.append((name, value.strip()))

    host = next((v for n, v in headers if n.lower() == "host"), "")
    headers = [(n, v) for n, v in headers if n.lower() != "host"]

    if target.startswith(("http://", "https://")):
        parsed = urlsplit(target)
        host = host or parsed.netloc
        target = (parsed.path or "/") + (f"?{parsed.query}" if parsed.query else "")

    encoding = next(
        (v for n, v in headers if n.lower() == "transfer-encoding"), ""
    )
    length_text = next((v for n, v in headers if n.lower() == "content-length"), None)
    body = b""
    if encoding:
        if encoding.strip().lower() != "chunked":
            raise ValueError(f"unsupported transfer encoding {encoding!r}")
        body = _read_chunked(reader)
        headers = [
            (n, v)
            for n, v in headers
            if n.lower() not in ("transfer-encoding", "content-length")
        ]
    elif length_text is not None:
        try:
            length = int(length_text)
        except ValueError as exc:
            raise ValueError(f"bad Content-Length {length_text!r}") from exc
        if length < 0:
            raise ValueError(f"bad Content-Length {length_text!r}")
        body = _read_exact(reader, length) if length else b""

    return ProxyRequest(
        method=method,
        target=target,
        headers=headers,
        body=body,
        host=host,
        version=version,
    )


def remove_existing_phpsessid(cookies: str) -> str:
    """Drop every ``PHPSESSID`` cookie from a Cookie header value."""
    kept = [
        cookie.strip()
        for cookie in cookies.split(";")
        if cookie.strip() and not cookie.strip().startswith("PHPSESSID=")
    ]
    return "; ".join(kept)


def inject_session_cookie(
    headers: list[tuple[str, str]], session: Session
) -> list[tuple[str, str]]:
    """Return ``headers`` with a single Cookie header carrying the session id."""
    session_cookie = f"PHPSESSID={session.id}"
    existing = next((v for n, v in headers if n.lower() == "cookie"), "")
    others = remove_existing_phpsessid(existing) if existing else ""
    value = f"{others}; {session_cookie}" if others else session_cookie

    result: list[tuple[str, str]] = []
    placed = False
    for name, header_value in headers:
        if name.lower() == "cookie":
            if not placed:
                result.append(("Cookie", value))
                placed = True
            continue
        result.append((name, header_value))
    if not placed:
        result.append(("Cookie", value))
    return result


def build_error_response(status_code: int, message: str) -> bytes:
    """Return a complete, body-less HTTP/1.1 error response."""
    return (
        f"HTTP/1.1 {status_code} {message}\r\n"
        "Content-Length: 0\r\n"
        "Connection: close\r\n"
        "Content-Type: text/plain\r\n"
        "\r\n"
    ).encode("latin-1")


def _insecure_context() -> ssl.SSLContext:
    context = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
    context.check_hostname = False
    context.verify_mode = ssl.CERT_NONE
    context.minimum_version = ssl.TLSVersion.TLSv1_2
    return context


class _StreamReader(io.RawIOBase):
    def __init__(self, stream: ProxyStream) -> None:
        self._stream = stream

    def readable(self) -> bool:
        return True

    def readinto(self, buffer) -> int:  # type: ignore[override]
        data = self._stream.read(len(buffer))
        buffer[: len(data)] = data
        return len(data)


class _Inflight:
    """Tracks the upstream socket of the request being forwarded."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._sock: socket.socket | None = None
        self.cancelled = False

    def set(self, sock: socket.socket | None) -> None:
        with self._lock:
            self._sock = sock
            if self.cancelled and sock is not None:
                _shutdown(sock)

    def cancel(self) -> None:
        with self._lock:
            self.cancelled = True
            if self._sock is not None:
                _shutdown(self._sock)


def _shutdown(sock: socket.socket) -> None:
    try:
        sock.shutdown(socket.SHUT_RDWR)
    except OSError:
        pass


def _write_response(
    stream: ProxyStream, response: http.client.HTTPResponse, method: str
) -> None:
    version = "HTTP/1.0" if response.version == 10 else "HTTP/1.1"
    status = response.status
    no_body = method.upper() == "HEAD" or status in (204, 304) or 100 <= status < 200
    headers = response.getheaders()
    rechunk = bool(response.chunked) and not no_body
    if rechunk:
        headers = [
            (n, v)
            for n, v in headers
            if n.lower() not in ("transfer-encoding", "content-length")
        ]
        headers.append(("Transfer-Encoding", "chunked"))

    head = f"{version} {status} {response.reason}\r\n" + "".join(
        f"{n}: {v}\r\n" for n, v in headers
    )
    stream.write((head + "\r\n").encode("latin-1"))
    if no_body:
        return

    while True:
        data = response.read1(_IO_CHUNK)
        if not data:
            break
        if rechunk:
            stream.write(f"{len(data):x}\r\n".encode("ascii") + data + b"\r\n")
        else:
            stream.write(data)
    if rechunk:
        stream.write(b"0\r\n\r\n")


class HTTPProxy:
    """Forwards HTTP requests read from streams to the local web interface."""

    def __init__(self, host: str, port: int, session_manager: SessionManager) -> None:
        self.host = host
        self.port = port
        self.session_manager = session_manager
        self._ssl_context = _insecure_context()
        self.connection_factory: ConnectionFactory = self._https_connection
        self._session: Session | None = None
        self._session_lock = threading.Lock()

    def _https_connection(self, host: str, port: int) -> http.client.HTTPConnection:
        return http.client.HTTPSConnection(
            host, port, timeout=RESPONSE_HEADER_TIMEOUT, context=self._ssl_context
        )

    def _get_or_create_session(self) -> Session:
        with self._session_lock:
            if self._session is None:
                self._session = self.session_manager.create_session()
                _log.debug(
                    "Created shared PHP session for webadmin session_id=%s username=%s",
                    self._session.id,
                    self._session.username,
                )
            return self._session

    def close(self) -> None:
        """Destroy the shared session, if any."""
        with self._session_lock:
            session, self._session = self._session, None
        if session is None:
            return
        try:
            self.session_manager.destroy_session(session.id)
        except SessionError as exc:
            _log.warning(
                "Failed to destroy session session_id=%s error=%s", session.id, exc
            )
        else:
            _log.debug("Destroyed shared PHP session session_id=%s", session.id)

    def _outgoing_headers(
        self, request: ProxyRequest, session: Session
    ) -> list[tuple[str, str]]:
        headers = [
            (n, v)
            for n, v in request.headers
            if n.lower() not in _EXCLUDED_REQUEST_HEADERS
        ]
        headers = inject_session_cookie(headers, session)
        headers.append(("Host", request.host or f"{self.host}:{self.port}"))
        if request.body or request.method.upper() in _BODY_METHODS:
            headers.append(("Content-Length", str(len(request.body))))
        headers.append(("Connection", "close"))
        return headers

    def _send(
        self,
        request: ProxyRequest,
        session: Session,
        inflight: _Inflight | None = None,
    ) -> tuple[http.client.HTTPConnection, http.client.HTTPResponse]:
        conn = self.connection_factory(self.host, self.port)
        try:
            conn.connect()
            sock = conn.sock
            if sock is not None:
                sock.settimeout(RESPONSE_HEADER_TIMEOUT)
            if inflight is not None:
                inflight.set(sock)
            conn.putrequest(
                request.method,
                request.target or "/",
                skip_host=True,
                skip_accept_encoding=True,
            )
            for name, value in self._outgoing_headers(request, session):
                conn.putheader(name, value)
            conn.endheaders(request.body or None)
            response = conn.getresponse()
        except BaseException:
            conn.close()
            raise
        if sock is not None:
            try:
                sock.settimeout(None)
            except OSError:
                pass
        return conn, response

    def forward_request(
        self, request: ProxyRequest, session: Session
    ) -> http.client.HTTPResponse:
        """Send ``request`` to the local web interface with the session cookie."""
        _, response = self._send(request, session)
        return response

    def handle_stream(self, stream: ProxyStream) -> None:
        """Serve HTTP requests read from ``stream`` until it closes."""
        try:
            session = self._get_or_create_session()
        except SessionError as exc:
            raise SessionError(f"failed to get session: {exc}") from exc

        inflight = _Inflight()
        finished = threading.Event()

        def watch() -> None:
            while not finished.is_set():
                if stream.wait_closed(_WATCH_INTERVAL):
                    inflight.cancel()
                    return

        threading.Thread(target=watch, daemon=True).start()
        _log.debug(
            "Started HTTP proxy stream stream_id=%s session_id=%s",
            stream.id,
            session.id,
        )

        reader = io.BufferedReader(_StreamReader(stream))
        try:
            while not stream.is_closed():
                try:
                    request = read_request(reader)
                except ValueError as exc:
                    if stream.is_closed():
                        break
                    _log.error(
                        "Failed to read HTTP request stream_id=%s error=%s",
                        stream.id,
                        exc,
                    )
                    raise ValueError(f"failed to read request: {exc}") from exc
                if request is None:
                    _log.debug(
                        "Stream closed while reading request stream_id=%s", stream.id
                    )
                    break

                _log.debug(
                    "Received HTTP request stream_id=%s method=%s path=%s",
                    stream.id,
                    request.method,
                    request.path,
                )

                try:
                    conn, response = self._send(request, session, inflight)
                except _FORWARD_ERRORS as exc:
                    if inflight.cancelled or stream.is_closed():
                        break
                    _log.error(
                        "Failed to forward request stream_id=%s error=%s",
                        stream.id,
                        exc,
                    )
                    try:
                        stream.write(build_error_response(502, "Bad Gateway"))
                    except Exception as write_exc:
                        _log.debug("Failed to send error response: %s", write_exc)
                    continue

                try:
                    _write_response(stream, response, request.method)
                except Exception as exc:
                    if stream.is_closed():
                        break
                    raise ConnectionError(f"failed to write response: {exc}") from exc
                finally:
                    response.close()
                    conn.close()
                    inflight.set(None)

                _log.debug(
                    "Forwarded response stream_id=%s status=%s location=%s",
                    stream.id,
                    response.status,
                    response.getheader("Location", ""),
                )
        finally:
            finished.set()
        _log.debug("HTTP proxy stream ended stream_id=%s", stream.id)