"""Durable agent state persisted across restarts.

Two counters are kept: the id of the last task executed under a verified
dispatch envelope (a replay barrier for inbound work) and a
device-monotonic sequence number placed in every outbound response
envelope. The hash of the most recently consumed rebind token is stored
too, so a restart with the same token still configured does not rotate
the keypair twice.

If the state file is lost, every counter restarts from zero.
"""

from __future__ import annotations

import json
import os
import tempfile
import threading
from dataclasses import dataclass
from typing import Any

DEFAULT_STATE_PATH = "/var/db/ndagent/state"


class StateError(Exception):
    """Raised when agent state cannot be read, updated or persisted."""


def _require_int(doc: dict[str, Any], key: str, *, unsigned: bool = False) -> int:
    value = doc.get(key, 0)
    if value is None:
        return 0
    if not isinstance(value, int) or isinstance(value, bool):
        raise ValueError(f"{key} must be an integer, got {type(value).__name__}")
    if unsigned and value < 0:
        raise ValueError(f"{key} must be non-negative, got {value}")
    return value


@dataclass
class _OnDisk:
    last_executed_task_id: int = 0
    next_response_seq: int = 0
    last_rebind_token_hash: str = ""

    @classmethod
    def from_dict(cls, doc: Any) -> "_OnDisk":
        if not isinstance(doc, dict):
            raise ValueError("state document must be a JSON object")
        token_hash = doc.get("last_rebind_token_hash", "")
        if token_hash is None:
            token_hash = ""
        if not isinstance(token_hash, str):
            raise ValueError("last_rebind_token_hash must be a string")
        return cls(
            last_executed_task_id=_require_int(doc, "last_executed_task_id"),
            next_response_seq=_require_int(doc, "next_response_seq", unsigned=True),
            last_rebind_token_hash=token_hash,
        )

    def to_json(self) -> str:
        doc: dict[str, Any] = {
            "last_executed_task_id": self.last_executed_task_id,
            "next_response_seq": self.next_response_seq,
        }
        if self.last_rebind_token_hash:
            doc["last_rebind_token_hash"] = self.last_rebind_token_hash
        return json.dumps(doc, separators=(",", ":")) + "\n"


class StateStore:
    """Thread-safe view of the agent state file.

    A missing file is treated as zero state; a file that exists but cannot
    be read or decoded raises StateError.
    """

    def __init__(self, path: str = DEFAULT_STATE_PATH) -> None:
        self.path = path
        self._lock = threading.Lock()
        self._data = _OnDisk()
        self._load()

    def _load(self) -> None:
        try:
            with open(self.path, encoding="utf-8") as handle:
                text = handle.read()
        except FileNotFoundError:
            return
        except OSError as exc:
            raise StateError(f"open state file {self.path}: {exc}") from exc
        try:
            self._data = _OnDisk.from_dict(json.loads(text))
        except ValueError as exc:
            raise StateError(f"decode state file {self.path}: {exc}") from exc

    def last_executed_task_id(self) -> int:
        """Return the last task id executed under a verified envelope."""
        with self._lock:
            return self._data.last_executed_task_id

    def set_last_executed_task_id(self, task_id: int) -> None:
        """Advance and persist the last executed task id; never moves backwards."""
        with self._lock:
            current = self._data.last_executed_task_id
            if task_id <= current:
                raise StateError(
                    f"refusing to set last_executed_task_id {task_id} <= current {current}"
                )
            previous = current
            self._data.last_executed_task_id = task_id
            try:
                self._persist()
            except StateError:
                self._data.last_executed_task_id = previous
                raise

    def acquire_next_response_seq(self) -> int:
        """Increment, persist and return the response sequence number.

        On a persistence failure the in-memory counter is rolled back so the
        next call retries the same number.
        """
        with self._lock:
            nxt = self._data.next_response_seq + 1
            self._data.next_response_seq = nxt
            try:
                self._persist()
            except StateError as exc:
                self._data.next_response_seq = nxt - 1
                raise StateError(f"persist next_response_seq: {exc}") from exc
            return nxt

    def current_response_seq(self) -> int:
        """Return the most recently issued response sequence number, or 0."""
        with self._lock:
            return self._data.next_response_seq

    def last_rebind_token_hash(self) -> str:
        """Return the hex SHA-256 of the last consumed rebind token, or ""."""
        with self._lock:
            return self._data.last_rebind_token_hash

    def set_last_rebind_token_hash(self, hash_hex: str) -> None:
        """Persist the hex SHA-256 of a consumed rebind token; "" resets it."""
        with self._lock:
            self._data.last_rebind_token_hash = hash_hex
            self._persist()

    def _persist(self) -> None:
        directory = os.path.dirname(self.path) or "."
        try:
            os.makedirs(directory, mode=0o700, exist_ok=True)
        except OSError as exc:
            raise StateError(f"mkdir {directory}: {exc}") from exc
        try:
            fd, tmp_path = tempfile.mkstemp(prefix=".state.", dir=directory)
        except OSError as exc:
            raise StateError(f"create temp: {exc}") from exc
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(self._data.to_json())
                handle.flush()
                os.fsync(handle.fileno())
            os.chmod(tmp_path, 0o600)
            os.replace(tmp_path, self.path)
        except OSError as exc:
            try:
                os.remove(tmp_path)
            except OSError:
                pass
            raise StateError(f"rename state: {exc}") from exc