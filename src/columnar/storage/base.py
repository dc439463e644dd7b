"""Storage contract shared by every column backend."""

from __future__ import annotations

from typing import Callable, Protocol, runtime_checkable


@runtime_checkable
class ColumnStorage(Protocol):
    """Append-only, gapless log of one column's values indexed by step.

    ``push`` always writes at index ``len(storage)``; ``get`` returns None
    for any step outside ``range(len(storage))``.
    """

    def get(self, step: int) -> str | None: ...

    def push(self, value: str) -> None: ...

    def clear(self) -> None: ...

    def __len__(self) -> int: ...


# A factory returning an isolated ColumnStorage for a column name
StorageProvider = Callable[[str], ColumnStorage]
