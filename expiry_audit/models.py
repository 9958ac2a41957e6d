"""
Data types shared by the directory adapter, reconciler and run controller.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional


@dataclass(frozen=True)
class AccountRecord:
    """
    One directory account as observed during a single run.

    Only ``user_principal_name`` takes part in baseline comparison; the other
    fields are carried so new accounts can be described in the audit log.
    """

    user_principal_name: str
    display_name: Optional[str] = None
    sam_account_name: Optional[str] = None
    last_logon: Optional[datetime] = None
    enabled: bool = True
    distinguished_name: Optional[str] = None

    @property
    def identifier(self) -> str:
        return self.user_principal_name

    def describe(self) -> str:
        """Render the record for an audit log line."""
        last_logon = self.last_logon.strftime('%Y-%m-%d %H:%M:%S') if self.last_logon else 'never'
        return (f"user={self.user_principal_name} "
                f"name={self.display_name or ''} "
                f"logon={self.sam_account_name or ''} "
                f"last_logon={last_logon}")
