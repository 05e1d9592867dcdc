"""Multiplexed streams carried over a single Pathfinder connection."""

from __future__ import annotations

import logging
import queue
import threading
from collections.abc import Callable
from typing import Protocol

from ndagent.pathfinder.frame import (
    Frame,
    FrameError,
    FrameType,
    decode_frame,
    encode_frame,
)

MAX_CHUNK_SIZE = 32 * 1024
READ_BUFFER_FRAMES = 1024

_EOF = object()

_log = logging.getLogger("ndagent.pathfinder.stream")


class FrameTransport(Protocol):
    """What a stream manager needs from the underlying connection."""

    def send_frame(self, data: bytes) -> None: ...

    def on_frame(self, handler: Callable[[bytes], None] | None) -> None: ...


class StreamClosedError(Exception):
    """Raised when writing to a stream that has been closed."""


class Stream:
    """One multiplexed stream, readable and writable like a byte pipe."""

    def __init__(self, stream_id: int, service_name: str, manager: StreamManager) -> None:
        self.id = stream_id
        self.service_name = service_name
        self._manager = manager
        self._buffer: queue.Queue[object] = queue.Queue(maxsize=READ_BUFFER_FRAMES)
        self._pending = b""
        self._closed = False
        self._closed_event = threading.Event()
        self._lock = threading.Lock()

    def __repr__(self) -> str:
        return f"Stream(id={self.id}, service={self.service_name!r})"

    def read(self, size: int = -1) -> bytes:
        """Return up to ``size`` bytes (a whole frame if negative); b"" at end of stream."""
        with self._lock:
            if self._closed and not self._pending:
                return b""
        if size == 0:
            return b""

        if self._pending:
            chunk = self._pending if size < 0 else self._pending[:size]
            self._pending = self._pending[len(chunk):]
            return chunk

        item = self._buffer.get()
        if item is _EOF:
            return b""
        data: bytes = item  # type: ignore[assignment]
        if size < 0 or size >= len(data):
            return data
        self._pending = data[size:]
        return data[:size]

    def write(self, data: bytes) -> int:
        """Send ``data`` to the peer in chunks; return the number of bytes sent."""
        with self._lock:
            if self._closed:
                raise StreamClosedError("stream closed")

        view = memoryview(bytes(data))
        sent = 0
        while sent < len(view):
            chunk = view[sent:sent + MAX_CHUNK_SIZE]
            self._manager._send_frame(
                Frame(type=FrameType.DATA, stream_id=self.id, data=bytes(chunk))
            )
            sent += len(chunk)
        return sent

    def close(self) -> None:
        """Close the stream and tell the peer. Idempotent."""
        if not self._mark_closed():
            return
        _log.debug("Closing stream stream_id=%s service=%s", self.id, self.service_name)
        try:
            self._manager._send_frame(Frame(type=FrameType.CLOSE, stream_id=self.id))
        finally:
            self._manager._remove_stream(self.id)

    def is_closed(self) -> bool:
        """Return True once the stream has been closed by either side."""
        with self._lock:
            return self._closed

    def wait_closed(self, timeout: float | None = None) -> bool:
        """Block until the stream closes; return False if ``timeout`` passed first."""
        return self._closed_event.wait(timeout)

    def _deliver(self, data: bytes) -> None:
        if self.is_closed():
            return
        try:
            self._buffer.put_nowait(data)
        except queue.Full:
            _log.warning(
                "Stream buffer full, dropping data stream_id=%s data_len=%d",
                self.id,
                len(data),
            )

    def _mark_closed(self) -> bool:
        with self._lock:
            if self._closed:
                return False
            self._closed = True
            self._closed_event.set()
        try:
            self._buffer.put_nowait(_EOF)
        except queue.Full:
            pass
        return True


class StreamManager:
    """Routes incoming frames to streams and opens streams on request."""

    def __init__(self, client: FrameTransport) -> None:
        self._client = client
        self._streams: dict[int, Stream] = {}
        self._streams_lock = threading.Lock()
        self._had_streams = False
        self._new_stream_handler: Callable[[Stream], None] | None = None
        self._all_closed_handler: Callable[[], None] | None = None
        self._handler_lock = threading.Lock()
        client.on_frame(self.handle_frame)

    def on_new_stream(self, handler: Callable[[Stream], None] | None) -> None:
        """Set the callback run, in its own thread, for each newly opened stream."""
        with self._handler_lock:
            self._new_stream_handler = handler

    def on_all_streams_closed(self, fn: Callable[[], None] | None) -> None:
        """Set the callback run when the last stream closes.

        It fires only once at least one stream has been opened.
        """
        with self._handler_lock:
            self._all_closed_handler = fn

    def handle_frame(self, data: bytes) -> None:
        """Decode one binary frame and act on it."""
        try:
            frame = decode_frame(data)
        except FrameError as exc:
            _log.error("Failed to decode frame: %s", exc)
            return

        _log.debug(
            "Received frame type=%s stream_id=%s data_len=%d",
            frame.type_string(),
            frame.stream_id,
            len(frame.data),
        )

        if frame.type == FrameType.OPEN:
            self._handle_open(frame)
        elif frame.type == FrameType.DATA:
            self._handle_data(frame)
        elif frame.type == FrameType.CLOSE:
            self._handle_close(frame)
        elif frame.type == FrameType.ACK:
            _log.debug("Received ACK stream_id=%s", frame.stream_id)
        else:
            _log.warning("Unknown frame type type=%s", frame.type)

    def _handle_open(self, frame: Frame) -> None:
        service_name = frame.data.decode("utf-8", errors="replace")
        _log.debug(
            "Received stream open request stream_id=%s service=%s",
            frame.stream_id,
            service_name,
        )
        stream = Stream(frame.stream_id, service_name, self)

        with self._streams_lock:
            self._streams[frame.stream_id] = stream
            self._had_streams = True

        try:
            self._send_frame(Frame(type=FrameType.ACK, stream_id=frame.stream_id))
        except Exception as exc:
            _log.error("Failed to send ACK: %s", exc)
            self._close_quietly(stream)
            return

        _log.debug("Sent ACK for stream stream_id=%s", frame.stream_id)

        with self._handler_lock:
            handler = self._new_stream_handler
        if handler is None:
            _log.warning(
                "No stream handler set, closing stream stream_id=%s", frame.stream_id
            )
            self._close_quietly(stream)
            return
        threading.Thread(target=handler, args=(stream,), daemon=True).start()

    def _handle_data(self, frame: Frame) -> None:
        with self._streams_lock:
            stream = self._streams.get(frame.stream_id)
        if stream is None:
            _log.warning("Received data for unknown stream stream_id=%s", frame.stream_id)
            return
        stream._deliver(frame.data)

    def _handle_close(self, frame: Frame) -> None:
        with self._streams_lock:
            stream = self._streams.pop(frame.stream_id, None)
            remaining = len(self._streams)
            had_streams = self._had_streams

        if stream is not None:
            _log.debug(
                "Received stream close stream_id=%s service=%s",
                frame.stream_id,
                stream.service_name,
            )
            stream._mark_closed()
        else:
            _log.debug(
                "Received stream close for unknown stream stream_id=%s", frame.stream_id
            )

        if remaining == 0 and had_streams:
            self._fire_all_closed()

    def _send_frame(self, frame: Frame) -> None:
        self._client.send_frame(encode_frame(frame))

    def _remove_stream(self, stream_id: int) -> None:
        with self._streams_lock:
            self._streams.pop(stream_id, None)
            remaining = len(self._streams)
            had_streams = self._had_streams
        if remaining == 0 and had_streams:
            self._fire_all_closed()

    def _fire_all_closed(self) -> None:
        with self._handler_lock:
            callback = self._all_closed_handler
        if callback is not None:
            callback()

    @staticmethod
    def _close_quietly(stream: Stream) -> None:
        try:
            stream.close()
        except Exception as exc:
            _log.debug("Error closing stream stream_id=%s: %s", stream.id, exc)

    def close_all(self) -> None:
        """Close every open stream."""
        with self._streams_lock:
            streams = list(self._streams.values())
        for stream in streams:
            self._close_quietly(stream)

    def active_stream_count(self) -> int:
        """Return the number of open streams."""
        with self._streams_lock:
            return len(self._streams)