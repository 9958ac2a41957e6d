"""
Persistence of the account baseline between audit runs.

The baseline is a flat UTF-8 text file holding one user principal name per
line. It is rewritten in full on every run.
"""

import os
import logging
import tempfile
from typing import Iterable, Set

logger = logging.getLogger(__name__)


class BaselineError(Exception):
    """Raised when the baseline file cannot be read."""
    pass


class BaselineNotFoundError(BaselineError):
    """Raised when the baseline file has never been initialized."""
    pass


class BaselineWriteError(BaselineError):
    """Raised when the baseline file cannot be replaced."""
    pass


class BaselineStore:
    """Reads and atomically replaces the baseline file."""

    def __init__(self, path: str):
        """
        Initialize baseline store.

        Args:
            path: Location of the baseline file
        """
        self.path = path

    def exists(self) -> bool:
        return os.path.isfile(self.path)

    def load(self) -> Set[str]:
        """
        Read the identifiers recorded by the previous run.

        Returns:
            Set of identifiers; empty if the file exists but has no entries

        Raises:
            BaselineNotFoundError: If the baseline file does not exist
            BaselineError: If the file cannot be read or decoded
        """
        try:
            # utf-8-sig tolerates files written by tools that prepend a BOM
            with open(self.path, 'r', encoding='utf-8-sig') as f:
                identifiers = {line.strip() for line in f if line.strip()}
        except FileNotFoundError:
            raise BaselineNotFoundError(f"Baseline file not found: {self.path}")
        except (OSError, UnicodeDecodeError) as e:
            raise BaselineError(f"Failed to read baseline file {self.path}: {e}")

        logger.debug(f"Loaded {len(identifiers)} identifiers from baseline {self.path}")
        return identifiers

    def save(self, identifiers: Iterable[str]) -> int:
        """
        Replace the baseline file with the given identifiers.

        Identifiers are written one per line, de-duplicated in first-seen order.
        The new content is written to a temporary file next to the baseline and
        renamed over it, so readers never observe a partially written file.

        Args:
            identifiers: Identifiers making up the new baseline

        Returns:
            Number of identifiers written

        Raises:
            BaselineWriteError: If the file cannot be written or replaced
        """
        unique = list(dict.fromkeys(i.strip() for i in identifiers if i and i.strip()))
        directory = os.path.dirname(os.path.abspath(self.path))

        tmp_path = None
        try:
            os.makedirs(directory, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(prefix='.baseline-', suffix='.tmp', dir=directory)
            with os.fdopen(fd, 'w', encoding='utf-8', newline='\n') as f:
                for identifier in unique:
                    f.write(identifier + '\n')
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self.path)
            tmp_path = None
        except OSError as e:
            raise BaselineWriteError(f"Failed to write baseline file {self.path}: {e}")
        finally:
            if tmp_path and os.path.exists(tmp_path):
                try:
                    os.remove(tmp_path)
                except OSError as e:
                    logger.warning(f"Could not remove temporary baseline file {tmp_path}: {e}")

        logger.info(f"Baseline saved with {len(unique)} identifiers to {self.path}")
        return len(unique)
