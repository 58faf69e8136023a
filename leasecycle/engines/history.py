"""History entries record the previous and new value of a tracked field.

Only the latest change per field name is kept. ``commissions`` is the one
exception: every commission change is retained.
"""

from datetime import datetime
from typing import Any, Iterable, List, Optional

from leasecycle.models.contract import HistoryEntry

ACCUMULATING_NAMES = frozenset({"commissions"})


def build_history_entry(
    name: str,
    old_value: Any,
    new_value: Any,
    old_updated_at: Optional[datetime] = None,
    new_updated_at: Optional[datetime] = None,
) -> HistoryEntry:
    return HistoryEntry(
        name=name,
        old_value=old_value,
        new_value=new_value,
        old_updated_at=old_updated_at,
        new_updated_at=new_updated_at,
    )


def replaced_names(entries: Iterable[HistoryEntry]) -> List[str]:
    """Names whose previous entries are dropped when ``entries`` are appended."""
    names: List[str] = []
    for entry in entries:
        if entry.name not in ACCUMULATING_NAMES and entry.name not in names:
            names.append(entry.name)
    return names


def collapse_entries(entries: Iterable[HistoryEntry]) -> List[HistoryEntry]:
    """Keep the last entry per name within one batch; ``commissions`` entries all stay."""
    entries = list(entries)
    last_index = {entry.name: index for index, entry in enumerate(entries)}
    return [
        entry for index, entry in enumerate(entries)
        if entry.name in ACCUMULATING_NAMES or last_index[entry.name] == index
    ]
