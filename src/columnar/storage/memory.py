"""In-memory storage: one shared table of step records keyed by column name."""

from __future__ import annotations

from columnar.storage.base import StorageProvider


class InMemoryStorage:
    """A column's view onto a shared list of ``{column_name: value}`` step records."""

    def __init__(self, name: str, records: list[dict[str, str]]):
        self.name = name
        self._records = records
        self._length: int | None = None

    def _compute_length(self) -> int:
        n = 0
        while n < len(self._records) and self.name in self._records[n]:
            n += 1
        return n

    def __len__(self) -> int:
        if self._length is None:
            self._length = self._compute_length()
        return self._length

    def get(self, step: int) -> str | None:
        if step < 0 or step >= len(self):
            return None
        return self._records[step].get(self.name)

    def push(self, value: str) -> None:
        step = len(self)
        while len(self._records) <= step:
            self._records.append({})
        self._records[step][self.name] = value
        self._length = step + 1

    def clear(self) -> None:
        for record in self._records:
            record.pop(self.name, None)
        self._length = 0

    def __repr__(self) -> str:
        return f"InMemoryStorage({self.name!r}, length={len(self)})"


def in_memory_storage(store: list[dict[str, str]] | None = None) -> StorageProvider:
    """Return a provider whose columns share one list of step records.

    Pass an existing ``store`` to share (or inspect) the records; each call
    without one creates a fresh, private table.
    """
    records: list[dict[str, str]] = store if store is not None else []

    def provider(name: str) -> InMemoryStorage:
        return InMemoryStorage(name, records)

    return provider
