"""WebSocket client for a Pathfinder relay server.

The client registers as an agent, waits for a peer to pair, and then
relays binary frames in both directions with ping keepalives.
"""

from __future__ import annotations

import json
import logging
import queue
import ssl
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

import websocket

PING_INTERVAL = 30.0
PONG_WAIT = 60.0
WRITE_WAIT = 10.0
HANDSHAKE_TIMEOUT = 30.0
REGISTER_TIMEOUT = 30.0

_POLL_INTERVAL = 0.1
_NETWORK_ERRORS = (websocket.WebSocketException, OSError)

_log = logging.getLogger("ndagent.pathfinder")


class MessageType(str, Enum):
    """Types of JSON signalling messages."""

    REGISTER = "register"
    REGISTERED = "registered"
    PAIRED = "paired"
    ERROR = "error"


class PathfinderError(Exception):
    """Raised when the Pathfinder connection fails or is refused."""


@dataclass
class _Message:
    type: str
    payload: Any = None
    error: str = ""


def _encode_message(msg_type: str, payload: Any = None) -> str:
    doc: dict[str, Any] = {"type": msg_type}
    if payload is not None:
        doc["payload"] = payload
    return json.dumps(doc, separators=(",", ":"))


def _parse_message(data: bytes | str) -> _Message:
    doc = json.loads(data)
    if not isinstance(doc, dict):
        raise ValueError("message is not a JSON object")
    msg_type = doc.get("type", "")
    error = doc.get("error", "")
    if msg_type is None:
        msg_type = ""
    if error is None:
        error = ""
    if not isinstance(msg_type, str) or not isinstance(error, str):
        raise ValueError("message fields have the wrong type")
    return _Message(type=msg_type, payload=doc.get("payload"), error=error)


class PathfinderClient:
    """A WebSocket connection to a Pathfinder server, registered as an agent."""

    def __init__(
        self,
        server_url: str,
        session_key: str,
        device_id: str,
        ssl_context: ssl.SSLContext | None = None,
    ) -> None:
        self.server_url = server_url
        self.session_key = session_key
        self.device_id = device_id
        self.ssl_context = ssl_context

        self._conn: Any = None
        self._closed = False
        self._lock = threading.Lock()
        self._write_lock = threading.Lock()
        self._frame_handler: Callable[[bytes], None] | None = None
        self._handler_lock = threading.Lock()

    def _current_conn(self) -> Any:
        with self._lock:
            conn = self._conn
        if conn is None:
            raise PathfinderError("not connected")
        return conn

    def connect(self) -> None:
        """Open the WebSocket connection and register as an agent."""
        with self._lock:
            if self._closed:
                raise PathfinderError("client is closed")

        _log.info("Connecting to Pathfinder url=%s", self.server_url)

        options: dict[str, Any] = {"timeout": HANDSHAKE_TIMEOUT}
        if self.ssl_context is not None:
            options["sslopt"] = {"context": self.ssl_context}
        try:
            conn = websocket.create_connection(self.server_url, **options)
        except _NETWORK_ERRORS as exc:
            status = getattr(exc, "status_code", None)
            if status is not None:
                _log.error("Pathfinder dial failed status=%s error=%s", status, exc)
            raise PathfinderError(f"dial failed: {exc}") from exc

        with self._lock:
            self._conn = conn

        _log.debug("Connected to Pathfinder, registering as agent")
        try:
            self._register(conn)
        except PathfinderError as exc:
            try:
                conn.close()
            except _NETWORK_ERRORS:
                pass
            with self._lock:
                self._conn = None
            raise PathfinderError(f"registration failed: {exc}") from exc

    def _register(self, conn: Any) -> None:
        message = _encode_message(
            MessageType.REGISTER.value,
            {
                "session_key": self.session_key,
                "role": "agent",
                "device_id": self.device_id,
            },
        )
        conn.settimeout(REGISTER_TIMEOUT)
        try:
            try:
                with self._write_lock:
                    conn.send(message)
            except _NETWORK_ERRORS as exc:
                raise PathfinderError(
                    f"failed to send register message: {exc}"
                ) from exc
            _log.debug("Sent register message")

            try:
                _, data = conn.recv_data()
            except _NETWORK_ERRORS as exc:
                raise PathfinderError(
                    f"failed to read registration response: {exc}"
                ) from exc
        finally:
            conn.settimeout(None)

        try:
            response = _parse_message(data)
        except ValueError as exc:
            raise PathfinderError(
                f"failed to parse registration response: {exc}"
            ) from exc

        if response.type == MessageType.REGISTERED.value:
            payload = response.payload
            if not isinstance(payload, dict):
                raise PathfinderError(
                    "failed to parse registered payload: expected a JSON object"
                )
            _log.info(
                "Registered with Pathfinder role=%s peer_online=%s",
                payload.get("role", ""),
                bool(payload.get("peer_online", False)),
            )
            return
        if response.type == MessageType.ERROR.value:
            raise PathfinderError(f"registration error: {response.error}")
        raise PathfinderError(f"unexpected response type: {response.type}")

    def wait_for_pairing(self, timeout: float) -> None:
        """Block until a client pairs with this agent or ``timeout`` seconds pass."""
        conn = self._current_conn()
        _log.debug("Waiting for client to pair timeout=%s", timeout)

        deadline = time.monotonic() + timeout
        try:
            while True:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise PathfinderError(
                        "read failed while waiting for pairing: timeout"
                    )
                conn.settimeout(remaining)
                try:
                    _, data = conn.recv_data()
                except _NETWORK_ERRORS as exc:
                    raise PathfinderError(
                        f"read failed while waiting for pairing: {exc}"
                    ) from exc

                try:
                    msg = _parse_message(data)
                except ValueError as exc:
                    _log.warning("Failed to parse message: %s", exc)
                    continue

                if msg.type == MessageType.PAIRED.value:
                    _log.info("Client paired successfully")
                    return
                if msg.type == MessageType.ERROR.value:
                    raise PathfinderError(f"pairing error: {msg.error}")
                _log.debug(
                    "Received unexpected message while waiting for pairing type=%s",
                    msg.type,
                )
        finally:
            conn.settimeout(None)

    def run_frame_loop(self, stop_event: threading.Event | None = None) -> None:
        """Relay incoming binary frames to the frame handler.

        Returns when ``stop_event`` is set; raises PathfinderError when the
        connection fails.
        """
        conn = self._current_conn()
        _log.debug("Starting binary frame relay loop")

        errors: queue.Queue[PathfinderError] = queue.Queue(maxsize=1)
        done = threading.Event()

        def stopped() -> bool:
            return stop_event is not None and stop_event.is_set()

        def ping_loop() -> None:
            while not done.wait(PING_INTERVAL):
                if stopped():
                    return
                try:
                    with self._write_lock:
                        conn.ping()
                except _NETWORK_ERRORS as exc:
                    _log.warning("Failed to send ping: %s", exc)
                    return
                _log.debug("Sent ping to Pathfinder")

        def read_loop() -> None:
            while True:
                try:
                    conn.settimeout(PONG_WAIT)
                    opcode, data = conn.recv_data(control_frame=True)
                except _NETWORK_ERRORS as exc:
                    errors.put(PathfinderError(f"read failed: {exc}"))
                    return

                if opcode == websocket.ABNF.OPCODE_BINARY:
                    with self._handler_lock:
                        handler = self._frame_handler
                    if handler is not None:
                        try:
                            handler(data)
                        except Exception:
                            _log.exception("Frame handler failed")
                elif opcode == websocket.ABNF.OPCODE_TEXT:
                    try:
                        msg = _parse_message(data)
                    except ValueError:
                        continue
                    if msg.type == MessageType.ERROR.value:
                        _log.error("Received error from Pathfinder: %s", msg.error)
                elif opcode == websocket.ABNF.OPCODE_PONG:
                    _log.debug("Received pong from Pathfinder")

        threading.Thread(target=ping_loop, daemon=True).start()
        threading.Thread(target=read_loop, daemon=True).start()

        try:
            while True:
                if stopped():
                    _log.debug("Frame loop cancelled")
                    return
                try:
                    error = errors.get(timeout=_POLL_INTERVAL)
                except queue.Empty:
                    continue
                raise error
        finally:
            done.set()

    def send_frame(self, data: bytes) -> None:
        """Send a binary frame to the peer. Safe to call from several threads."""
        with self._lock:
            conn = self._conn
            closed = self._closed
        if closed or conn is None:
            raise PathfinderError("not connected")
        try:
            with self._write_lock:
                conn.send_binary(bytes(data))
        except _NETWORK_ERRORS as exc:
            raise PathfinderError(f"send failed: {exc}") from exc

    def on_frame(self, handler: Callable[[bytes], None] | None) -> None:
        """Set the callback invoked with each incoming binary frame."""
        with self._handler_lock:
            self._frame_handler = handler

    def close(self) -> None:
        """Close the connection with a normal-closure message. Idempotent."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            conn = self._conn
            self._conn = None
        if conn is None:
            return
        try:
            conn.close(status=websocket.STATUS_NORMAL)
        except _NETWORK_ERRORS as exc:
            _log.debug("Error while closing Pathfinder connection: %s", exc)

    def is_connected(self) -> bool:
        """Return True while a registered connection is open."""
        with self._lock:
            return self._conn is not None and not self._closed