"""
Baseline reconciliation for the password never expires audit.

Compares the accounts returned by the current directory query with the
identifiers persisted by the previous run. Everything here is pure: no I/O,
no logging, no mutation of the inputs.
"""

from typing import AbstractSet, Iterable, List, Sequence

from expiry_audit.models import AccountRecord


class ReconcileResult:
    """Outcome of comparing a directory snapshot against a baseline."""

    def __init__(self, new_accounts: List[AccountRecord], removed_identifiers: List[str],
                 baseline: List[str]):
        self.new_accounts = new_accounts
        self.removed_identifiers = removed_identifiers
        self.baseline = baseline

    @property
    def has_changes(self) -> bool:
        return bool(self.new_accounts or self.removed_identifiers)

    def __repr__(self):
        return (f"ReconcileResult(new={len(self.new_accounts)}, "
                f"removed={len(self.removed_identifiers)}, baseline={len(self.baseline)})")


def deduplicate_accounts(records: Iterable[AccountRecord]) -> List[AccountRecord]:
    """
    Drop repeated identifiers, keeping the first occurrence.

    Args:
        records: Account records in query order

    Returns:
        Records with unique identifiers, in their original order
    """
    seen = set()
    unique = []
    for record in records:
        if record.identifier in seen:
            continue
        seen.add(record.identifier)
        unique.append(record)
    return unique


def snapshot_identifiers(records: Iterable[AccountRecord]) -> List[str]:
    """Identifiers to persist as the next baseline, unique and in snapshot order."""
    return [record.identifier for record in deduplicate_accounts(records)]


def find_new(previous: AbstractSet[str], current: Sequence[AccountRecord],
             deduplicate: bool = True) -> List[AccountRecord]:
    """
    Find accounts in the current snapshot that the baseline has not seen.

    Args:
        previous: Identifiers from the last persisted baseline
        current: Accounts returned by the current directory query
        deduplicate: Collapse repeated identifiers in ``current`` before comparing.
            When False every occurrence is tested against ``previous`` on its own,
            so a new identifier listed twice is reported twice.

    Returns:
        Records whose identifier is absent from ``previous``, in ``current`` order
    """
    if not isinstance(previous, (set, frozenset)):
        previous = frozenset(previous)

    candidates = deduplicate_accounts(current) if deduplicate else current
    return [record for record in candidates if record.identifier not in previous]


def reconcile(previous: AbstractSet[str], current: Sequence[AccountRecord]) -> ReconcileResult:
    """
    Compare a snapshot with the baseline and compute the replacement baseline.

    The replacement baseline mirrors ``current`` exactly; identifiers that are
    no longer flagged are reported in ``removed_identifiers`` and dropped.
    """
    baseline = snapshot_identifiers(current)
    current_ids = set(baseline)
    removed = sorted(identifier for identifier in previous if identifier not in current_ids)

    return ReconcileResult(
        new_accounts=find_new(previous, current),
        removed_identifiers=removed,
        baseline=baseline
    )
