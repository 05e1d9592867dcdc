"""PHP session files for pre-authenticated webadmin access."""

from __future__ import annotations

import logging
import os
import re
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timezone

DEFAULT_SESSION_DIR = "/var/lib/php/sessions"
DEFAULT_USERNAME = "root"

_CHARSET = "abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789"
_USERNAME_STRIP_RE = re.compile(r"[^a-zA-Z0-9_-]")
_SESSION_ID_RE = re.compile(r"[0-9a-fA-F]{32}")

_log = logging.getLogger("ndagent.pathfinder.session")


class SessionError(Exception):
    """Raised when a session file cannot be created or removed."""


@dataclass
class Session:
    """An active PHP session."""

    id: str
    csrf_token: str = ""
    csrf_key: str = ""
    username: str = ""
    file_path: str = ""
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


def sanitize_username(username: str) -> str:
    """Drop every character other than letters, digits, '_' and '-'."""
    return _USERNAME_STRIP_RE.sub("", username)


def is_valid_session_id(session_id: str) -> bool:
    """Return True for exactly 32 hexadecimal characters."""
    return _SESSION_ID_RE.fullmatch(session_id) is not None


def _random_string(length: int) -> str:
    return "".join(_CHARSET[b % len(_CHARSET)] for b in os.urandom(length))


def _php_string(value: str) -> str:
    return f's:{len(value.encode("utf-8"))}:"{value}";'


class SessionManager:
    """Creates and destroys PHP session files for one user."""

    def __init__(self, username: str = "", session_dir: str = "") -> None:
        self.username = sanitize_username(username or DEFAULT_USERNAME)
        self.session_dir = session_dir or DEFAULT_SESSION_DIR

    def _path_for(self, session_id: str) -> str:
        return os.path.join(self.session_dir, "sess_" + session_id)

    def create_session(self) -> Session:
        """Write a new session file with mode 0600 and return the session."""
        session_id = secrets.token_hex(16)
        session = Session(
            id=session_id,
            csrf_token=_random_string(22),
            csrf_key=_random_string(22),
            username=self.username,
            file_path=self._path_for(session_id),
            created_at=datetime.now(timezone.utc),
        )
        data = self.serialize(session)
        try:
            fd = os.open(
                session.file_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600
            )
            with os.fdopen(fd, "wb") as handle:
                handle.write(data)
        except OSError as exc:
            raise SessionError(f"failed to write session file: {exc}") from exc

        _log.debug(
            "Created PHP session session_id=%s username=%s file=%s",
            session_id,
            self.username,
            session.file_path,
        )
        return session

    def destroy_session(self, session_id: str) -> bool:
        """Remove a session file.

        Returns False if the file was already gone; raises SessionError for
        a malformed id or a failed removal.
        """
        if not is_valid_session_id(session_id):
            raise SessionError("invalid session ID format")
        try:
            os.remove(self._path_for(session_id))
        except FileNotFoundError:
            _log.warning("Session file already removed session_id=%s", session_id)
            return False
        except OSError as exc:
            raise SessionError(f"failed to remove session file: {exc}") from exc
        _log.debug("Destroyed PHP session session_id=%s", session_id)
        return True

    def serialize(self, session: Session) -> bytes:
        """Return the PHP-serialised session data the web interface expects."""
        timestamp = int(session.created_at.timestamp())
        text = (
            "$PHALCON/CSRF$|" + _php_string(session.csrf_token)
            + "$PHALCON/CSRF/KEY$|" + _php_string(session.csrf_key)
            + "Username|" + _php_string(session.username)
            + f"last_access|i:{timestamp};"
            + 'protocol|s:5:"https";'
        )
        return text.encode("utf-8")