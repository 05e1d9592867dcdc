"""Persistent storage of the agent's Ed25519 signing seed.

The seed lives in its own root-only file rather than in the agent's
configuration file, which is regenerated from a template and would lose
any line it does not know about.
"""

from __future__ import annotations

import base64
import os
import tempfile
from enum import IntEnum

from ndagent.signing import (
    SigningError,
    generate_keypair,
    private_key_from_base64,
    seed_from_private_key,
)
from ndagent.state.store import StateError

DEFAULT_DEVICE_KEY_PATH = "/var/db/ndagent/device.key"


class PrivkeyOrigin(IntEnum):
    """Where the private key returned by a load came from."""

    FROM_FILE = 0
    MIGRATED = 1
    GENERATED = 2


def _is_valid_seed(b64: str) -> bool:
    try:
        private_key_from_base64(b64)
    except (SigningError, ValueError):
        return False
    return True


def _fresh_seed() -> str:
    _, priv = generate_keypair()
    return base64.b64encode(seed_from_private_key(priv)).decode("ascii")


def load_or_ensure_device_privkey(
    key_path: str | None = None, conf_fallback: str = ""
) -> tuple[str, PrivkeyOrigin]:
    """Return the base64 device seed and where it came from.

    A valid key file wins. Otherwise a valid seed from ``conf_fallback`` is
    migrated into the file; failing that a fresh keypair is generated and
    persisted.
    """
    path = key_path or DEFAULT_DEVICE_KEY_PATH

    existing = read_key_file(path)
    if existing is not None:
        return existing, PrivkeyOrigin.FROM_FILE

    migrated = (conf_fallback or "").strip()
    if migrated and _is_valid_seed(migrated):
        try:
            write_key_file(path, migrated)
        except StateError as exc:
            raise StateError(f"migrate device_privkey to {path}: {exc}") from exc
        return migrated, PrivkeyOrigin.MIGRATED

    seed = _fresh_seed()
    try:
        write_key_file(path, seed)
    except StateError as exc:
        raise StateError(
            f"persist generated device_privkey to {path}: {exc}"
        ) from exc
    return seed, PrivkeyOrigin.GENERATED


def rotate_device_privkey(key_path: str | None = None) -> str:
    """Generate a fresh keypair, write its seed to the key file and return it."""
    path = key_path or DEFAULT_DEVICE_KEY_PATH
    seed = _fresh_seed()
    try:
        write_key_file(path, seed)
    except StateError as exc:
        raise StateError(f"persist rotated device_privkey to {path}: {exc}") from exc
    return seed


def read_key_file(path: str) -> str | None:
    """Return the trimmed seed stored at ``path``, or None.

    A missing, empty or malformed file yields None so callers fall back to
    migration or generation instead of signing with garbage.
    """
    try:
        with open(path, "rb") as handle:
            raw = handle.read()
    except OSError:
        return None
    trimmed = raw.decode("utf-8", errors="replace").strip()
    if not trimmed or not _is_valid_seed(trimmed):
        return None
    return trimmed


def write_key_file(path: str, seed: str) -> None:
    """Atomically write ``seed`` and a newline to ``path`` with mode 0600."""
    directory = os.path.dirname(path) or "."
    try:
        os.makedirs(directory, mode=0o700, exist_ok=True)
    except OSError as exc:
        raise StateError(f"mkdir {directory}: {exc}") from exc
    try:
        fd, tmp_path = tempfile.mkstemp(prefix=".devkey.", dir=directory)
    except OSError as exc:
        raise StateError(f"create temp: {exc}") from exc
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(seed + "\n")
            handle.flush()
            os.fsync(handle.fileno())
        os.chmod(tmp_path, 0o600)
        if hasattr(os, "geteuid") and os.geteuid() == 0:
            try:
                os.chown(tmp_path, 0, 0)
            except OSError:
                pass
        os.replace(tmp_path, path)
    except OSError as exc:
        try:
            os.remove(tmp_path)
        except OSError:
            pass
        raise StateError(f"write {path}: {exc}") from exc