"""Filesystem storage: one directory per column, one text file per step.

Layout::

    <root>/<column>/0.txt
    <root>/<column>/1.txt
    ...

A column's length is the number of step files present contiguously from 0.
Directories are created lazily on the first push.
"""

from __future__ import annotations

import logging
from pathlib import Path

from columnar.core.errors import StorageError, atomic_write
from columnar.storage.base import StorageProvider

logger = logging.getLogger(__name__)

STEP_EXTENSION = ".txt"


class FileSystemStorage:
    """Step files for a single column inside ``directory``."""

    def __init__(self, directory: str | Path):
        self.directory = Path(directory)
        self._length: int | None = None

    def _step_path(self, step: int) -> Path:
        return self.directory / f"{step}{STEP_EXTENSION}"

    def _count_files(self) -> int:
        n = 0
        while self._step_path(n).exists():
            n += 1
        return n

    def __len__(self) -> int:
        if self._length is None:
            self._length = self._count_files()
        return self._length

    def get(self, step: int) -> str | None:
        if step < 0 or step >= len(self):
            return None
        try:
            return self._step_path(step).read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise StorageError(f"Failed to read {self._step_path(step)}: {exc}") from exc

    def push(self, value: str) -> None:
        step = len(self)
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            atomic_write(self._step_path(step), value)
        except OSError as exc:
            raise StorageError(f"Failed to write {self._step_path(step)}: {exc}") from exc
        self._length = step + 1

    def clear(self) -> None:
        if self.directory.exists():
            for path in self.directory.glob(f"*{STEP_EXTENSION}"):
                if path.stem.isdigit():
                    path.unlink()
            logger.debug("Cleared step files in %s", self.directory)
        self._length = 0

    def __repr__(self) -> str:
        return f"FileSystemStorage({str(self.directory)!r})"


def filesystem_storage(root: str | Path) -> StorageProvider:
    """Return a provider storing each column under ``root/<column name>/``."""
    root_path = Path(root).expanduser()

    def provider(name: str) -> FileSystemStorage:
        return FileSystemStorage(root_path / name)

    return provider
