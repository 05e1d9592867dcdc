"""Input validation and sanitisation helpers."""

from __future__ import annotations

import os
import re
from collections.abc import Iterable

_PING_TARGET_RE = re.compile(r"[a-zA-Z0-9.-]+")
_CONFIG_FILENAME_RE = re.compile(r"[a-zA-Z0-9._-]+\.conf")

MAX_HOSTNAME_LENGTH = 253
MAX_LOG_MESSAGE_LENGTH = 1000
_TRUNCATED_SUFFIX = "... [TRUNCATED]"


class ValidationError(ValueError):
    """Base class for validation failures."""


class EmptyTargetError(ValidationError):
    def __init__(self) -> None:
        super().__init__("no target specified for ping")


class InvalidTargetFormatError(ValidationError):
    def __init__(self) -> None:
        super().__init__(
            "invalid target format: only alphanumeric characters, dots, "
            "and hyphens are allowed"
        )


class TargetTooLongError(ValidationError):
    def __init__(self) -> None:
        super().__init__("target hostname too long")


class InvalidConfigExtensionError(ValidationError):
    def __init__(self) -> None:
        super().__init__(
            "invalid config file extension: only .conf files are allowed"
        )


class InvalidConfigPathError(ValidationError):
    def __init__(self) -> None:
        super().__init__(
            "invalid config file path: only files in current working "
            "directory are allowed"
        )


class InvalidConfigFilenameError(ValidationError):
    def __init__(self) -> None:
        super().__init__(
            "invalid config filename format: only alphanumeric characters, "
            "dots, hyphens, and underscores allowed"
        )


def validate_ping_target(target: str) -> str:
    """Check a ping target against command injection; return it if valid."""
    if not target:
        raise EmptyTargetError()
    if not _PING_TARGET_RE.fullmatch(target):
        raise InvalidTargetFormatError()
    if len(target) > MAX_HOSTNAME_LENGTH:
        raise TargetTooLongError()
    return target


def validate_config_file_path(config_path: str) -> str:
    """Validate a config path given on the command line; return it if valid."""
    if not config_path.endswith(".conf"):
        raise InvalidConfigExtensionError()
    if ".." in config_path:
        raise InvalidConfigPathError()
    filename = config_path.rsplit("/", 1)[-1]
    if filename.startswith("."):
        raise InvalidConfigPathError()
    if "/" not in config_path and "\\" not in config_path:
        if not _CONFIG_FILENAME_RE.fullmatch(config_path):
            raise InvalidConfigFilenameError()
    return config_path


def validate_full_config_path(config_path: str) -> str:
    """Validate an absolute or relative config path; return it if valid."""
    if not config_path.endswith(".conf"):
        raise InvalidConfigExtensionError()
    if "\x00" in config_path:
        raise ValidationError("invalid config path: contains null bytes")
    clean = os.path.normpath(config_path)
    if ".." in clean.split(os.sep):
        raise ValidationError("invalid config path: path traversal not allowed")
    return config_path


def sanitize_log_message(message: str) -> str:
    """Strip line breaks and null bytes and cap the length of a log message."""
    if not message:
        return ""
    sanitized = (
        message.replace("\n", " ").replace("\r", " ").replace("\x00", "")
    )
    if len(sanitized) > MAX_LOG_MESSAGE_LENGTH:
        sanitized = sanitized[:MAX_LOG_MESSAGE_LENGTH] + _TRUNCATED_SUFFIX
    return sanitized


def _extension(path: str) -> str:
    base = re.split(r"[/\\]" if os.sep == "\\" else "/", path)[-1]
    idx = base.rfind(".")
    return base[idx:] if idx >= 0 else ""


def is_safe_file_path(
    file_path: str, allowed_extensions: Iterable[str] | None = None
) -> bool:
    """Return True if the path has no traversal, no null bytes and an allowed extension."""
    if not file_path:
        return False
    if ".." in file_path or "\x00" in file_path:
        return False
    allowed = [ext.lower() for ext in (allowed_extensions or ())]
    if allowed and _extension(file_path).lower() not in allowed:
        return False
    return True


def validate_ping_count(count: int) -> int:
    """Check that a ping count lies between 1 and 100; return it if valid."""
    if count < 1:
        raise ValidationError("ping count must be at least 1")
    if count > 100:
        raise ValidationError("ping count cannot exceed 100")
    return count