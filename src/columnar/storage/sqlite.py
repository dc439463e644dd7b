"""SQLite storage: all columns in one ``column_values`` table.

Each row holds one step of one column. A column's length is the number of
rows present contiguously from step 0, so it is rebuilt correctly when a
database is reopened by a later process.
"""

from __future__ import annotations

from collections.abc import Generator
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, ClassVar

from sqlalchemy import DateTime, Engine, Integer, String, Text, create_engine, delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker
from sqlalchemy.pool import StaticPool
from sqlalchemy.sql import func

from columnar.core.errors import StorageError


class StorageBase(DeclarativeBase):
    """Base class for storage models."""

    type_annotation_map: ClassVar[dict[type, Any]] = {}


class ColumnValue(StorageBase):
    """One step of one column."""

    __tablename__ = "column_values"

    column_name: Mapped[str] = mapped_column(String(256), primary_key=True)
    step: Mapped[int] = mapped_column(Integer, primary_key=True)
    value: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, server_default=func.now()
    )


def _database_url(location: str | Path) -> str:
    text = str(location)
    if "://" in text:
        return text
    if text == ":memory:":
        return "sqlite://"
    path = Path(text).expanduser()
    path.parent.mkdir(parents=True, exist_ok=True)
    return f"sqlite:///{path}"


class SQLiteStore:
    """Shared engine for a database file; calling it yields per-column storages."""

    def __init__(self, location: str | Path = ":memory:"):
        self.url = _database_url(location)
        kwargs: dict[str, Any] = {"echo": False}
        if self.url == "sqlite://":
            # A single connection keeps the in-memory database alive.
            kwargs["poolclass"] = StaticPool
            kwargs["connect_args"] = {"check_same_thread": False}
        else:
            kwargs["pool_pre_ping"] = True
        self.engine: Engine = create_engine(self.url, **kwargs)
        StorageBase.metadata.create_all(self.engine)
        self._session_factory = sessionmaker(bind=self.engine, expire_on_commit=False)

    @contextmanager
    def session(self) -> Generator[Session, None, None]:
        """Yield a session, committing on success and rolling back on error."""
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except SQLAlchemyError as exc:
            session.rollback()
            raise StorageError(f"SQLite storage error: {exc}") from exc
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def __call__(self, name: str) -> SQLiteColumnStorage:
        return SQLiteColumnStorage(self, name)

    def column_names(self) -> list[str]:
        """Names of every column with at least one stored step."""
        with self.session() as session:
            rows = session.execute(
                select(ColumnValue.column_name).distinct().order_by(ColumnValue.column_name)
            )
            return [row[0] for row in rows]

    def dispose(self) -> None:
        self.engine.dispose()


class SQLiteColumnStorage:
    """ColumnStorage over the rows of a single column."""

    def __init__(self, store: SQLiteStore, name: str):
        self.store = store
        self.name = name
        self._length: int | None = None

    def _compute_length(self) -> int:
        with self.store.session() as session:
            steps = session.scalars(
                select(ColumnValue.step)
                .where(ColumnValue.column_name == self.name)
                .order_by(ColumnValue.step)
            ).all()
        n = 0
        for step in steps:
            if step != n:
                break
            n += 1
        return n

    def __len__(self) -> int:
        if self._length is None:
            self._length = self._compute_length()
        return self._length

    def get(self, step: int) -> str | None:
        if step < 0 or step >= len(self):
            return None
        with self.store.session() as session:
            row = session.get(ColumnValue, (self.name, step))
            return row.value if row is not None else None

    def push(self, value: str) -> None:
        step = len(self)
        with self.store.session() as session:
            session.add(ColumnValue(column_name=self.name, step=step, value=value))
        self._length = step + 1

    def clear(self) -> None:
        with self.store.session() as session:
            session.execute(delete(ColumnValue).where(ColumnValue.column_name == self.name))
        self._length = 0

    def __repr__(self) -> str:
        return f"SQLiteColumnStorage({self.name!r}, url={self.store.url!r})"


def sqlite_storage(location: str | Path = ":memory:") -> SQLiteStore:
    """Return a provider backed by a SQLite database file (or in-memory database)."""
    return SQLiteStore(location)
