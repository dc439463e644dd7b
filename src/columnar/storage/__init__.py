"""Pluggable per-column storage backends."""

from columnar.storage.base import ColumnStorage, StorageProvider
from columnar.storage.filesystem import FileSystemStorage, filesystem_storage
from columnar.storage.memory import InMemoryStorage, in_memory_storage
from columnar.storage.sqlite import SQLiteColumnStorage, SQLiteStore, sqlite_storage

__all__ = [
    "ColumnStorage",
    "FileSystemStorage",
    "InMemoryStorage",
    "SQLiteColumnStorage",
    "SQLiteStore",
    "StorageProvider",
    "filesystem_storage",
    "in_memory_storage",
    "sqlite_storage",
]
