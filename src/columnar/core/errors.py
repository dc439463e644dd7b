"""Columnar error types and utilities."""

from __future__ import annotations

import os
import tempfile
from pathlib import Path


def atomic_write(path: Path, content: str) -> None:
    """Write content to a file atomically using temp file + rename.

    Writes to a temporary file in the same directory, fsyncs it,
    then atomically replaces the target path.
    """
    fd, tmp = tempfile.mkstemp(dir=path.parent, suffix=".tmp")
    try:
        os.write(fd, content.encode())
        os.fsync(fd)
        os.close(fd)
        os.replace(tmp, str(path))
    except BaseException:
        os.close(fd)
        try:
            os.unlink(tmp)
        except OSError:
            pass
        raise


class ColumnarError(Exception):
    """Base exception for Columnar."""

    pass


class ColumnError(ColumnarError):
    """Error in a column definition."""

    pass


class InvalidDependencyError(ColumnError):
    """A column declares a dependency that can never be satisfied."""

    pass


class FlowError(ColumnarError):
    """Error in flow construction or graph mutation."""

    pass


class DuplicateColumnError(FlowError):
    """Two distinct columns share a name within one flow."""

    pass


class ColumnNotFoundError(FlowError):
    """No column with the given name is registered in the flow."""

    pass


class SourceColumnError(FlowError):
    """Source columns cannot be removed or replaced."""

    pass


class HasDependentsError(FlowError):
    """A column cannot be removed while other columns read from it."""

    def __init__(self, name: str, dependents: list[str]):
        self.name = name
        self.dependents = list(dependents)
        super().__init__(
            f"Cannot remove column '{name}': {', '.join(self.dependents)} depends on it"
        )


class DependencyNotFoundError(FlowError):
    """A dependency refers to a derived column that is not in the flow."""

    pass


class NameMismatchError(FlowError):
    """A replacement column must keep the name of the column it replaces."""

    pass


class CycleDetectedError(FlowError):
    """Current-row dependencies form a cycle."""

    def __init__(self, columns: list[str]):
        self.columns = sorted(columns)
        super().__init__(f"Cycle detected in column dependencies involving: {self.columns}")


class FlowBusyError(FlowError):
    """The graph was modified while a run was in progress."""

    pass


class ComputeError(ColumnarError):
    """Error raised by the LLM compute adapter."""

    pass


class StorageError(ColumnarError):
    """Error in a column storage backend."""

    pass


class ConfigError(ColumnarError):
    """Invalid session configuration."""

    pass
