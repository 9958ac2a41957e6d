"""
Retry policy for directory connection attempts.

Only failures that can clear up without operator action are retried: the
server could not be reached, the socket dropped, or the server answered
busy or unavailable. A rejected bind fails on the first attempt.
"""

import time
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from ldap3.core.exceptions import LDAPCommunicationError

logger = logging.getLogger(__name__)

# LDAP result codes returned while a server is temporarily unable to serve
RESULT_BUSY = 51
RESULT_UNAVAILABLE = 52
TRANSIENT_RESULT_CODES = frozenset({RESULT_BUSY, RESULT_UNAVAILABLE})


class TransientConnectionError(Exception):
    """Raised by a connection attempt that failed in a way worth retrying."""
    pass


TRANSIENT_ERRORS = (TransientConnectionError, LDAPCommunicationError, OSError)


class RetriesExhausted(Exception):
    """Raised when every allowed connection attempt failed transiently."""

    def __init__(self, attempts: int, last_exception: Exception):
        self.attempts = attempts
        self.last_exception = last_exception
        super().__init__(f"Gave up after {attempts} attempts: {last_exception}")


def is_transient_result(result: Any) -> bool:
    """Whether an ldap3 ``connection.result`` reports a temporary server condition."""
    if not isinstance(result, dict):
        return False
    return result.get('result') in TRANSIENT_RESULT_CODES


@dataclass
class ConnectRetryPolicy:
    """
    How many times to attempt a directory connection and how long to wait between attempts.

    ``max_attempts`` counts the first attempt and is never less than one.
    """

    max_attempts: int = 3
    wait_seconds: float = 5.0
    backoff: float = 1.0
    sleep: Optional[Callable[[float], None]] = None

    def __post_init__(self):
        self.max_attempts = max(1, int(self.max_attempts))

    @classmethod
    def from_config(cls, error_handling: Optional[Dict[str, Any]]) -> 'ConnectRetryPolicy':
        """Build from the top-level ``error_handling`` configuration section."""
        error_handling = error_handling or {}
        return cls(
            max_attempts=error_handling.get('max_retries', 3),
            wait_seconds=error_handling.get('retry_wait_seconds', 5)
        )

    @classmethod
    def single_attempt(cls) -> 'ConnectRetryPolicy':
        return cls(max_attempts=1, wait_seconds=0)

    def run(self, attempt: Callable[[], Any], description: str = "LDAP connection") -> Any:
        """
        Call ``attempt`` until it succeeds, a permanent error occurs, or attempts run out.

        Args:
            attempt: Zero-argument callable making one connection attempt
            description: Operation name used in log messages

        Returns:
            Whatever ``attempt`` returns

        Raises:
            RetriesExhausted: If the last allowed attempt failed transiently
            Exception: Any non-transient error from ``attempt``, unchanged
        """
        sleep = self.sleep or time.sleep
        wait = self.wait_seconds

        for number in range(1, self.max_attempts + 1):
            try:
                result = attempt()
            except TRANSIENT_ERRORS as e:
                if number == self.max_attempts:
                    raise RetriesExhausted(number, e)
                logger.warning(f"{description} failed on attempt {number} of {self.max_attempts} "
                               f"({type(e).__name__}: {e}), retrying in {wait:.1f}s")
                sleep(wait)
                wait *= self.backoff
            else:
                if number > 1:
                    logger.info(f"{description} succeeded on attempt {number}")
                return result
