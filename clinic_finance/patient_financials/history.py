"""Point-in-time lookups over rate and status histories.

Both histories are stored in insertion order. The entry in effect on a date is
the one with the latest effective date not after that date. Ties on the
effective date resolve to the entry inserted first.
"""

from collections.abc import Callable, Sequence
from datetime import date
from typing import TypeVar

from clinic_finance.patient_financials.models import RateHistoryEntry, StatusHistoryEntry

_Entry = TypeVar("_Entry")


def _resolve_as_of(
    entries: Sequence[_Entry], as_of: date, key: Callable[[_Entry], date]
) -> _Entry | None:
    if not entries:
        return None
    # sorted() is stable under reverse=True, so equal dates keep insertion order
    for entry in sorted(entries, key=key, reverse=True):
        if key(entry) <= as_of:
            return entry
    return None


def resolve_rate(rate_history: Sequence[RateHistoryEntry], as_of: date) -> RateHistoryEntry | None:
    """Return the rate entry in effect on as_of, or None if no entry has started yet."""
    return _resolve_as_of(rate_history, as_of, lambda entry: entry.start_date)


def resolve_status(
    status_history: Sequence[StatusHistoryEntry], as_of: date
) -> StatusHistoryEntry | None:
    """Return the status entry in effect on as_of, or None if no entry has started yet."""
    return _resolve_as_of(status_history, as_of, lambda entry: entry.date)
