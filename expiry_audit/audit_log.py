"""
Audit log for the password never expires audit.

The audit log is the compliance record of each run: one line per event,
prefixed with a timestamp and the host that produced it, rotated by size.
It is kept separate from the diagnostic logging configured in
``logging_setup`` so its format and rotation stay fixed regardless of how
operators tune console output.
"""

import os
import socket
import logging
from dataclasses import dataclass
from datetime import datetime
from enum import IntEnum
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)

DEFAULT_MAX_BYTES = 10 * 1024 * 1024
DEFAULT_LOG_PATH = os.path.join('logs', 'password_never_expires.log')

ENTRY_TIME_FORMAT = '%Y-%m-%d %H:%M:%S'
ROTATION_SUFFIX_FORMAT = '%Y%m%d%H%M%S'


class AuditLogError(Exception):
    """Describes a failed audit log write. Returned by AuditLogger.log, not raised."""
    pass


class Severity(IntEnum):
    """Audit entry severities, ascending."""

    DEBUG = 10
    INFO = 20
    WARNING = 30
    CRITICAL = 50

    @classmethod
    def from_name(cls, name: str) -> 'Severity':
        """
        Parse a severity name such as ``"info"`` or ``"CRITICAL"``.

        Raises:
            ValueError: If the name is not a known severity
        """
        try:
            return cls[str(name).strip().upper()]
        except KeyError:
            valid = ', '.join(s.name for s in cls)
            raise ValueError(f"Unknown audit log level '{name}' (expected one of: {valid})")


@dataclass
class AuditLogConfig:
    """Settings for an AuditLogger instance."""

    path: str = DEFAULT_LOG_PATH
    min_level: Severity = Severity.INFO
    max_bytes: int = DEFAULT_MAX_BYTES
    host: Optional[str] = None

    def __post_init__(self):
        if not self.host:
            self.host = socket.gethostname()

    @classmethod
    def from_dict(cls, config: Optional[Dict[str, Any]]) -> 'AuditLogConfig':
        """Build from the ``audit_log`` configuration section."""
        config = config or {}
        return cls(
            path=config.get('path') or DEFAULT_LOG_PATH,
            min_level=Severity.from_name(config.get('level', 'INFO')),
            max_bytes=int(config.get('max_bytes', DEFAULT_MAX_BYTES)),
            host=config.get('host')
        )


class LocalFileSystem:
    """File operations used by the audit log sink."""

    def exists(self, path: str) -> bool:
        return os.path.exists(path)

    def size(self, path: str) -> int:
        return os.path.getsize(path)

    def rename(self, src: str, dst: str) -> None:
        os.replace(src, dst)

    def append_text(self, path: str, text: str) -> None:
        directory = os.path.dirname(path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        with open(path, 'a', encoding='utf-8') as f:
            f.write(text)


class SizeRotator:
    """
    Size-based rotation applied before each append.

    When the log file has reached ``max_bytes`` it is renamed to
    ``<path><YYYYMMDDHHMMSS>`` and the next append starts a fresh file.
    """

    def __init__(self, max_bytes: int = DEFAULT_MAX_BYTES,
                 clock: Optional[Callable[[], datetime]] = None,
                 fs: Optional[LocalFileSystem] = None):
        self.max_bytes = max_bytes
        self.clock = clock or datetime.now
        self.fs = fs or LocalFileSystem()

    def should_rotate(self, path: str) -> bool:
        if not self.fs.exists(path):
            return False
        return self.fs.size(path) >= self.max_bytes

    def rotated_name(self, path: str) -> str:
        """
        Name for the rotated file. A numeric suffix is added when a file from an
        earlier rotation in the same second already holds the timestamped name.
        """
        base = f"{path}{self.clock().strftime(ROTATION_SUFFIX_FORMAT)}"
        candidate = base
        counter = 1
        while self.fs.exists(candidate):
            candidate = f"{base}.{counter}"
            counter += 1
        return candidate

    def rotate(self, path: str) -> Optional[str]:
        """
        Rotate the file if it has reached the size threshold.

        Returns:
            Name the file was rotated to, or None if no rotation was needed

        Raises:
            OSError: If the rename fails
        """
        if not self.should_rotate(path):
            return None

        target = self.rotated_name(path)
        self.fs.rename(path, target)
        logger.info(f"Rotated audit log {path} to {target}")
        return target


class FileSink:
    """Appends entries to a file, rotating it first when needed."""

    def __init__(self, path: str, rotator: Optional[SizeRotator] = None,
                 fs: Optional[LocalFileSystem] = None):
        self.path = path
        self.fs = fs or LocalFileSystem()
        self.rotator = rotator or SizeRotator(fs=self.fs)

    def write(self, line: str) -> None:
        self.rotator.rotate(self.path)
        self.fs.append_text(self.path, line + '\n')


class MemorySink:
    """Collects entries in memory."""

    def __init__(self):
        self.lines: List[str] = []

    def write(self, line: str) -> None:
        self.lines.append(line)


class AuditLogger:
    """
    Writes leveled, host-stamped entries to the audit log.

    Writing is best-effort: ``log`` never raises on I/O failure and instead
    returns an AuditLogError so the caller decides what to do with it.
    """

    def __init__(self, config: Optional[AuditLogConfig] = None, sink=None,
                 clock: Optional[Callable[[], datetime]] = None):
        """
        Initialize audit logger.

        Args:
            config: Audit log settings; defaults apply if None
            sink: Object with a ``write(line)`` method. Defaults to a rotating FileSink
            clock: Callable returning the current time, used for entry timestamps
        """
        self.config = config or AuditLogConfig()
        self.clock = clock or datetime.now
        if sink is None:
            sink = FileSink(self.config.path, SizeRotator(self.config.max_bytes, self.clock))
        self.sink = sink

    def format_entry(self, level: Severity, message: str) -> str:
        timestamp = self.clock().strftime(ENTRY_TIME_FORMAT)
        # Entries are line oriented
        message = ' '.join(str(message).splitlines())
        return f"{timestamp} [{self.config.host}] {level.name}: {message}"

    def is_enabled_for(self, level: Severity) -> bool:
        return level >= self.config.min_level

    def log(self, level: Severity, message: str) -> Optional[AuditLogError]:
        """
        Write an entry if ``level`` meets the configured minimum.

        Returns:
            None on success or suppression, an AuditLogError if the write failed
        """
        if not self.is_enabled_for(level):
            return None

        try:
            self.sink.write(self.format_entry(level, message))
        except (OSError, UnicodeError) as e:
            return AuditLogError(f"Failed to write audit log entry to {self.config.path}: {e}")
        return None

    def debug(self, message: str) -> Optional[AuditLogError]:
        return self.log(Severity.DEBUG, message)

    def info(self, message: str) -> Optional[AuditLogError]:
        return self.log(Severity.INFO, message)

    def warning(self, message: str) -> Optional[AuditLogError]:
        return self.log(Severity.WARNING, message)

    def critical(self, message: str) -> Optional[AuditLogError]:
        return self.log(Severity.CRITICAL, message)


def create_audit_logger(config: Optional[Dict[str, Any]] = None) -> AuditLogger:
    """
    Convenience function to build a file-backed audit logger.

    Args:
        config: ``audit_log`` configuration section

    Returns:
        Configured AuditLogger
    """
    return AuditLogger(AuditLogConfig.from_dict(config))
