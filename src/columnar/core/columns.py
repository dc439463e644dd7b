"""Column and dependency model.

Usage:
    from columnar import SELF, column, source

    user = source("user")
    assistant = column(
        "assistant",
        context=[user, SELF],
        compute=reply,
    )
    critic = column("critic", context=[assistant.latest, user.window(3).as_("recent")], compute=review)
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Awaitable, Iterator, Sequence
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import TYPE_CHECKING, Callable, ClassVar, Literal, Union

from columnar.core.errors import ColumnError, InvalidDependencyError
from columnar.core.models import ContextInput, Message

if TYPE_CHECKING:
    from columnar.storage.base import ColumnStorage, StorageProvider


ComputeResult = Union[str, Awaitable[str], AsyncIterator[str], Iterator[str]]
ComputeFunction = Callable[[list[Message]], ComputeResult]
TransformFunction = Callable[[list[ContextInput], int], list[ContextInput]]


class Row(str, Enum):
    """Which step of a dependency is visible when computing step N."""

    CURRENT = "current"    # step N, must be computed first
    PREVIOUS = "previous"  # steps up to N-1, already settled


@dataclass(frozen=True)
class Count:
    """How many qualifying steps a dependency pulls."""

    kind: Literal["all", "single", "window"] = "all"
    n: int | None = None

    def __post_init__(self) -> None:
        if self.kind not in ("all", "single", "window"):
            raise InvalidDependencyError(f"Unknown count mode: {self.kind!r}")
        if self.kind == "window" and (self.n is None or self.n < 1):
            raise InvalidDependencyError(f"Window size must be a positive integer, got {self.n!r}")

    @classmethod
    def parse(cls, value: str, n: int | None = None) -> Count:
        """Parse a config value: 'all', 'single' (alias 'latest') or 'window'."""
        if value == "latest":
            value = "single"
        if value == "window":
            return cls("window", n)
        return cls(value)  # type: ignore[arg-type]

    def describe(self) -> str:
        return f"window({self.n})" if self.kind == "window" else self.kind


ALL = Count("all")
SINGLE = Count("single")


class SelfRef:
    """Marker target meaning 'the column declaring this dependency'."""

    _instance: ClassVar[SelfRef | None] = None

    def __new__(cls) -> SelfRef:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    name: ClassVar[str] = "self"

    def __repr__(self) -> str:
        return "SelfRef()"


SELF_REF = SelfRef()


@dataclass(frozen=True)
class Dependency:
    """What a derived column reads: (target, row, count) plus an optional tag name."""

    target: Union[SourceColumn, DerivedColumn, SelfRef]
    row: Row = Row.CURRENT
    count: Count = ALL
    alias: str | None = None

    def __post_init__(self) -> None:
        try:
            object.__setattr__(self, "row", Row(self.row))
        except ValueError as exc:
            raise InvalidDependencyError(f"Unknown row mode: {self.row!r}") from exc
        if self.is_self:
            if self.row is not Row.PREVIOUS:
                raise InvalidDependencyError("Self dependency must use row 'previous'")
        elif not isinstance(self.target, (SourceColumn, DerivedColumn)):
            raise InvalidDependencyError(
                f"Dependency target must be a column or SELF, got {type(self.target).__name__}"
            )

    @property
    def is_self(self) -> bool:
        return isinstance(self.target, SelfRef)

    @property
    def target_name(self) -> str:
        return self.target.name

    @property
    def tag(self) -> str:
        """Name used when wrapping this dependency's values."""
        return self.alias or self.target.name

    @property
    def latest(self) -> Dependency:
        return replace(self, count=SINGLE)

    @property
    def all(self) -> Dependency:
        return replace(self, count=ALL)

    def window(self, n: int) -> Dependency:
        return replace(self, count=Count("window", n))

    @property
    def previous(self) -> Dependency:
        return replace(self, row=Row.PREVIOUS)

    @property
    def current(self) -> Dependency:
        return replace(self, row=Row.CURRENT)

    def as_(self, name: str) -> Dependency:
        return replace(self, alias=name)

    def describe(self) -> str:
        alias = f" as {self.alias}" if self.alias else ""
        return f"{self.target.name}[{self.row.value}, {self.count.describe()}]{alias}"


SELF = Dependency(SELF_REF, Row.PREVIOUS, ALL)


class _DependencyViews:
    """Fluent helpers letting a column stand in for a dependency on itself."""

    def as_dependency(self) -> Dependency:
        return Dependency(self)  # type: ignore[arg-type]

    @property
    def latest(self) -> Dependency:
        return self.as_dependency().latest

    def window(self, n: int) -> Dependency:
        return self.as_dependency().window(n)

    @property
    def previous(self) -> Dependency:
        return self.as_dependency().previous

    def as_(self, name: str) -> Dependency:
        return self.as_dependency().as_(name)


@dataclass(eq=False)
class SourceColumn(_DependencyViews):
    """An externally fed column; values arrive through ``push``."""

    name: str
    storage: ColumnStorage
    kind: ClassVar[Literal["source"]] = "source"

    def __post_init__(self) -> None:
        if not self.name:
            raise ColumnError("Column name cannot be empty")

    def push(self, value: str) -> None:
        self.storage.push(value)

    def __repr__(self) -> str:
        return f"SourceColumn({self.name!r})"


@dataclass(eq=False)
class DerivedColumn(_DependencyViews):
    """A column computed from its declared context at every step."""

    name: str
    context: tuple[Dependency, ...]
    compute: ComputeFunction
    storage: ColumnStorage
    transform: TransformFunction | None = None
    kind: ClassVar[Literal["derived"]] = "derived"

    def __post_init__(self) -> None:
        if not self.name:
            raise ColumnError("Column name cannot be empty")
        self.context = tuple(as_dependency(item) for item in self.context)
        if not self.context:
            raise InvalidDependencyError(f"Column '{self.name}' must have at least one dependency")

    @property
    def upstream(self) -> list[Dependency]:
        """Dependencies on other columns (everything except self)."""
        return [dep for dep in self.context if not dep.is_self]

    @property
    def wraps_values(self) -> bool:
        """Whether non-self values are tag-wrapped; fixed by the declared context."""
        return len(self.upstream) > 1

    def retarget(self, old: SourceColumn | DerivedColumn, new: SourceColumn | DerivedColumn) -> None:
        """Point every dependency on ``old`` at ``new``, keeping row, count and alias."""
        self.context = tuple(
            replace(dep, target=new) if dep.target is old else dep for dep in self.context
        )

    def __repr__(self) -> str:
        deps = ", ".join(dep.describe() for dep in self.context)
        return f"DerivedColumn({self.name!r}, context=[{deps}])"


Column = Union[SourceColumn, DerivedColumn]


def as_dependency(item: Dependency | SourceColumn | DerivedColumn) -> Dependency:
    """Coerce a context item; a bare column means (column, current, all)."""
    if isinstance(item, Dependency):
        return item
    if isinstance(item, (SourceColumn, DerivedColumn)):
        return item.as_dependency()
    raise InvalidDependencyError(
        f"Context entries must be columns or dependencies, got {type(item).__name__}"
    )


def _default_storage(name: str, storage: StorageProvider | None) -> ColumnStorage:
    if storage is None:
        from columnar.storage.memory import in_memory_storage

        storage = in_memory_storage()
    return storage(name)


def source(name: str, *, storage: StorageProvider | None = None) -> SourceColumn:
    """Create a source column backed by ``storage`` (in-memory by default)."""
    return SourceColumn(name=name, storage=_default_storage(name, storage))


def column(
    name: str,
    *,
    context: Sequence[Dependency | SourceColumn | DerivedColumn],
    compute: ComputeFunction,
    transform: TransformFunction | None = None,
    storage: StorageProvider | None = None,
) -> DerivedColumn:
    """Create a derived column.

    Args:
        name: Unique column name within a flow.
        context: Dependencies, in declaration order. Bare columns read
            every current-or-earlier step; use ``SELF`` for the column's own history.
        compute: Maps the assembled messages to a value (str, awaitable, or
            a sync/async iterator of text fragments).
        transform: Optional hook rewriting resolved inputs before assembly.
        storage: Storage provider (in-memory by default).
    """
    if not context:
        raise InvalidDependencyError(f"Column '{name}' must have at least one dependency")
    return DerivedColumn(
        name=name,
        context=tuple(as_dependency(item) for item in context),
        compute=compute,
        storage=_default_storage(name, storage),
        transform=transform,
    )
