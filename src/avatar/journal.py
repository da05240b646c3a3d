"""
Effect journal for the host environment.

Every state write records the value it replaced. Rolling back to a
savepoint undoes the non-durable writes made after it, newest first.
Durable writes stay in place and stay in the journal, so enclosing
rollbacks skip them as well.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Hashable, Union


MISSING = object()


@dataclass
class JournalEntry:
    table: Union[dict, list]
    key: Hashable
    previous: Any
    durable: bool = False

    def undo(self) -> None:
        if isinstance(self.table, list):
            del self.table[self.previous:]
        elif self.previous is MISSING:
            self.table.pop(self.key, None)
        else:
            self.table[self.key] = self.previous


class Journal:
    """Undo log with integer savepoints."""

    def __init__(self) -> None:
        self._entries: list[JournalEntry] = []

    def __len__(self) -> int:
        return len(self._entries)

    def write(self, table: dict, key: Hashable, value: Any, durable: bool = False) -> None:
        """Set ``table[key] = value`` and remember the prior value."""
        self._entries.append(JournalEntry(table, key, table.get(key, MISSING), durable))
        table[key] = value

    def append(self, items: list, item: Any) -> None:
        """Append to a list (event logs); undo truncates it again."""
        self._entries.append(JournalEntry(items, None, len(items)))
        items.append(item)

    def savepoint(self) -> int:
        return len(self._entries)

    def rollback(self, savepoint: int) -> int:
        """Undo non-durable entries after ``savepoint``; returns how many.

        A non-durable write older than a durable write to the same key is
        dropped without being undone, so the durable value stands.
        """
        kept: list[JournalEntry] = []
        pinned: set[tuple[int, Hashable]] = set()
        undone = 0
        for entry in reversed(self._entries[savepoint:]):
            slot = (id(entry.table), entry.key)
            if entry.durable:
                kept.append(entry)
                pinned.add(slot)
                continue
            if slot in pinned:
                continue
            entry.undo()
            undone += 1
        kept.reverse()
        self._entries = self._entries[:savepoint] + kept
        return undone

    def clear(self) -> None:
        self._entries.clear()
