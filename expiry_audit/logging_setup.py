"""
Diagnostic logging setup for the password never expires audit.

Configures the root logger used by every module for operational messages:
a console handler (the operator channel, written to stderr) and an optional
daily-rotated diagnostic file. The compliance record itself is written by
``expiry_audit.audit_log`` and does not go through these handlers.
"""

import os
import re
import logging
import logging.handlers
from typing import Dict, Any, Optional


class SensitiveDataFilter(logging.Filter):
    """Filter to scrub sensitive data from log messages."""

    SENSITIVE_KEYWORDS = [
        'password', 'bind_password', 'smtp_password', 'token', 'secret',
        'credential', 'pwd', 'authorization'
    ]

    def filter(self, record):
        """Filter out sensitive data from log records."""
        if hasattr(record, 'msg'):
            msg = record.getMessage() if record.args else str(record.msg)

            for keyword in self.SENSITIVE_KEYWORDS:
                # key=value
                msg = re.sub(rf'({keyword}\s*=\s*)[^\s,}}\]]+', r'\1****', msg, flags=re.IGNORECASE)
                # 'key': 'value' as rendered from a dict
                msg = re.sub(rf"(['\"]{keyword}['\"]\s*:\s*['\"])[^'\"]*(['\"])", r'\1****\2', msg,
                             flags=re.IGNORECASE)

            record.msg = msg
            record.args = None

        return True


class LoggingManager:
    """
    Manages diagnostic logging configuration.

    Provides container-friendly console output and, when configured, a file
    handler rotated at midnight.
    """

    def __init__(self):
        self.configured = False
        self.log_file = None

    def setup_logging(self, config: Optional[Dict[str, Any]]) -> None:
        """
        Set up logging based on configuration.

        Args:
            config: ``logging`` configuration section
        """
        if self.configured:
            return

        logging_config = config if config else {}

        log_level = str(logging_config.get('level', 'INFO')).upper()
        console_enabled = logging_config.get('console_output', True)
        console_level = str(logging_config.get('console_level', 'WARNING')).upper()
        self.log_file = logging_config.get('log_file')

        root_logger = logging.getLogger()
        root_logger.setLevel(getattr(logging, log_level, logging.INFO))
        root_logger.handlers.clear()

        sensitive_filter = SensitiveDataFilter()

        if self.log_file:
            file_handler = self._create_file_handler(
                self.log_file, logging_config.get('retention_days', 7)
            )
            file_handler.setLevel(getattr(logging, log_level, logging.INFO))
            file_handler.setFormatter(logging.Formatter(
                '%(asctime)s [%(levelname)s] %(name)s:%(lineno)d - %(message)s',
                datefmt='%Y-%m-%d %H:%M:%S'
            ))
            file_handler.addFilter(sensitive_filter)
            root_logger.addHandler(file_handler)

        if console_enabled:
            console_handler = logging.StreamHandler()
            console_handler.setLevel(getattr(logging, console_level, logging.WARNING))
            console_handler.setFormatter(logging.Formatter(
                '%(asctime)s [%(levelname)s] %(message)s',
                datefmt='%H:%M:%S'
            ))
            console_handler.addFilter(sensitive_filter)
            root_logger.addHandler(console_handler)

        self.configured = True

        logger = logging.getLogger(__name__)
        logger.debug(f"Logging configured: level={log_level}, file={self.log_file}, "
                     f"console={console_enabled}")

    def _create_file_handler(self, log_file: str, retention_days: int) -> logging.Handler:
        """Create a midnight-rotated diagnostic file handler."""
        directory = os.path.dirname(log_file)
        if directory:
            try:
                os.makedirs(directory, exist_ok=True)
            except OSError as e:
                print(f"Warning: Could not create log directory {directory}: {e}")
                log_file = os.path.basename(log_file)

        handler = logging.handlers.TimedRotatingFileHandler(
            filename=log_file,
            when='midnight',
            interval=1,
            backupCount=retention_days,
            encoding='utf-8'
        )
        handler.suffix = '%Y-%m-%d'
        return handler

    def reset(self) -> None:
        """Drop configured handlers so logging can be set up again."""
        root_logger = logging.getLogger()
        for handler in list(root_logger.handlers):
            root_logger.removeHandler(handler)
            handler.close()
        self.configured = False
        self.log_file = None


def console_shows(config: Optional[Dict[str, Any]], level: int) -> bool:
    """
    Whether a console set up from this ``logging`` section emits records at ``level``.

    Both the root level and the console handler level must let the record through.
    """
    logging_config = config if config else {}
    if not logging_config.get('console_output', True):
        return False
    root_level = getattr(logging, str(logging_config.get('level', 'INFO')).upper(), logging.INFO)
    console_level = getattr(logging, str(logging_config.get('console_level', 'WARNING')).upper(), logging.WARNING)
    return level >= root_level and level >= console_level


# Global logging manager instance
_logging_manager = LoggingManager()


def setup_logging(config: Optional[Dict[str, Any]]) -> None:
    """
    Convenience function to set up logging.

    Args:
        config: Logging configuration dictionary
    """
    _logging_manager.setup_logging(config)


def reset_logging() -> None:
    """Remove handlers installed by setup_logging."""
    _logging_manager.reset()
