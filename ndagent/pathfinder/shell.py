"""Remote shell sessions over a pair of streams.

A session needs two streams: one carries terminal data, the other small
control messages such as window resizes. The shell runs on a
pseudo-terminal whose line discipline handles interrupt keys.
"""

from __future__ import annotations

import fcntl
import logging
import os
import pty
import select
import struct
import subprocess
import termios
import threading
from enum import IntEnum
from typing import Protocol

OPNSENSE_SHELL = "/usr/local/sbin/opnsense-shell"
SHELL_HOME = "/root"

_CTL_READ_SIZE = 16
_IO_CHUNK = 32 * 1024
_DRAIN_TIMEOUT = 1.0
_POLL_INTERVAL = 0.1

_RESIZE = struct.Struct(">BHH")
_WINSIZE = struct.Struct("HHHH")

_log = logging.getLogger("ndagent.pathfinder.shell")


class ByteStream(Protocol):
    """The stream operations a shell session relies on."""

    id: int

    def read(self, size: int = -1) -> bytes: ...

    def write(self, data: bytes) -> int: ...

    def close(self) -> None: ...


class ControlMessage(IntEnum):
    """First byte of a message on the control stream."""

    RESIZE = 0x01
    SET_ENV = 0x02
    CLOSE = 0xFF


def parse_resize(data: bytes) -> tuple[int, int]:
    """Return ``(rows, cols)`` from a resize control message."""
    if not data or data[0] != ControlMessage.RESIZE:
        raise ValueError("not a resize message")
    if len(data) < _RESIZE.size:
        raise ValueError("resize message too short")
    _, rows, cols = _RESIZE.unpack_from(data)
    return rows, cols


def encode_resize(rows: int, cols: int) -> bytes:
    """Build a resize control message."""
    try:
        return _RESIZE.pack(ControlMessage.RESIZE, rows, cols)
    except struct.error as exc:
        raise ValueError(f"invalid terminal size {rows}x{cols}: {exc}") from exc


def _set_controlling_tty() -> None:
    request = getattr(termios, "TIOCSCTTY", None)
    if request is None:
        return
    try:
        fcntl.ioctl(0, request, 0)
    except OSError:
        pass


class ShellSession:
    """A shell process on a pseudo-terminal wired to two streams."""

    def __init__(
        self, shell_stream: ByteStream, ctl_stream: ByteStream, shell: str = OPNSENSE_SHELL
    ) -> None:
        self.shell_stream = shell_stream
        self.ctl_stream = ctl_stream
        self.shell = shell
        self._master: int | None = None
        self._master_lock = threading.Lock()

    def run(self) -> int:
        """Run the shell until it exits and return its exit status.

        Both streams are closed when the shell exits or fails to start.
        """
        _log.debug("Starting shell session shell=%s", self.shell)
        env = dict(os.environ)
        env.update(TERM="xterm-256color", HOME=SHELL_HOME, USER="root")

        master, slave = pty.openpty()
        try:
            process = subprocess.Popen(
                [self.shell],
                stdin=slave,
                stdout=slave,
                stderr=slave,
                cwd=SHELL_HOME,
                env=env,
                start_new_session=True,
                preexec_fn=_set_controlling_tty,
            )
        except BaseException:
            os.close(master)
            os.close(slave)
            self._close_streams()
            raise
        os.close(slave)

        with self._master_lock:
            self._master = master
        _log.debug("Started shell session pid=%s shell=%s", process.pid, self.shell)

        stop = threading.Event()
        threading.Thread(target=self._handle_control_stream, daemon=True).start()
        output = threading.Thread(target=self._pump_output, args=(master, stop), daemon=True)
        output.start()
        threading.Thread(target=self._pump_input, daemon=True).start()

        returncode = process.wait()
        _log.debug("Shell process exited pid=%s returncode=%s", process.pid, returncode)

        output.join(_DRAIN_TIMEOUT)
        stop.set()
        output.join()

        self._close_streams()
        with self._master_lock:
            self._master = None
            os.close(master)
        return returncode

    def _pump_output(self, master: int, stop: threading.Event) -> None:
        while not stop.is_set():
            try:
                ready, _, _ = select.select([master], [], [], _POLL_INTERVAL)
            except (OSError, ValueError):
                return
            if not ready:
                continue
            try:
                data = os.read(master, _IO_CHUNK)
            except OSError:
                return
            if not data:
                return
            try:
                self.shell_stream.write(data)
            except Exception:
                return

    def _pump_input(self) -> None:
        while True:
            data = self.shell_stream.read(_IO_CHUNK)
            if not data:
                return
            with self._master_lock:
                if self._master is None:
                    return
                view = memoryview(data)
                try:
                    while view:
                        written = os.write(self._master, view)
                        view = view[written:]
                except OSError:
                    return

    def _handle_control_stream(self) -> None:
        while True:
            message = self.ctl_stream.read(_CTL_READ_SIZE)
            if not message:
                return
            kind = message[0]
            if kind == ControlMessage.RESIZE:
                try:
                    rows, cols = parse_resize(message)
                except ValueError:
                    continue
                self._resize(rows, cols)
            elif kind == ControlMessage.CLOSE:
                return

    def _resize(self, rows: int, cols: int) -> None:
        with self._master_lock:
            if self._master is None:
                return
            try:
                fcntl.ioctl(
                    self._master, termios.TIOCSWINSZ, _WINSIZE.pack(rows, cols, 0, 0)
                )
            except OSError as exc:
                _log.warning("Failed to resize PTY: %s", exc)
                return
        _log.debug("Resized PTY rows=%d cols=%d", rows, cols)

    def _close_streams(self) -> None:
        for stream in (self.shell_stream, self.ctl_stream):
            try:
                stream.close()
            except Exception as exc:
                _log.debug("Error closing shell stream: %s", exc)


class ShellManager:
    """Pairs shell data and control streams and starts a session per pair."""

    def __init__(self, shell: str = "") -> None:
        self.shell = shell or OPNSENSE_SHELL
        self._pending_shell: ByteStream | None = None
        self._pending_ctl: ByteStream | None = None
        self._lock = threading.Lock()

    def handle_shell_stream(self, stream: ByteStream) -> None:
        """Accept the data stream of a shell session."""
        with self._lock:
            _log.debug("Received shell data stream stream_id=%s", stream.id)
            self._pending_shell = stream
            self._try_start()

    def handle_shell_ctl_stream(self, stream: ByteStream) -> None:
        """Accept the control stream of a shell session."""
        with self._lock:
            _log.debug("Received shell control stream stream_id=%s", stream.id)
            self._pending_ctl = stream
            self._try_start()

    def _try_start(self) -> None:
        if self._pending_shell is None or self._pending_ctl is None:
            return
        session = ShellSession(self._pending_shell, self._pending_ctl, self.shell)
        self._pending_shell = None
        self._pending_ctl = None
        _log.debug(
            "Both shell streams received, starting shell session "
            "shell_stream_id=%s ctl_stream_id=%s",
            session.shell_stream.id,
            session.ctl_stream.id,
        )
        threading.Thread(target=self._run_session, args=(session,), daemon=True).start()

    @staticmethod
    def _run_session(session: ShellSession) -> None:
        try:
            returncode = session.run()
        except Exception as exc:
            _log.error("Shell session ended with error: %s", exc)
            return
        if returncode != 0:
            _log.error("Shell session ended with exit status %s", returncode)
        else:
            _log.debug("Shell session ended normally")

    def close_all(self) -> None:
        """Close any stream still waiting for its partner."""
        with self._lock:
            pending = [s for s in (self._pending_shell, self._pending_ctl) if s is not None]
            self._pending_shell = None
            self._pending_ctl = None
        for stream in pending:
            try:
                stream.close()
            except Exception as exc:
                _log.debug("Error closing pending shell stream: %s", exc)