"""DAG resolution: discover columns, level them for scheduling, find dependents."""

from __future__ import annotations

from collections import deque
from collections.abc import Iterable

from columnar.core.columns import Column, DerivedColumn, Row, SourceColumn
from columnar.core.errors import CycleDetectedError, DuplicateColumnError


def discover_columns(leaves: Iterable[Column]) -> tuple[list[SourceColumn], list[DerivedColumn]]:
    """Walk dependencies backward from ``leaves`` and collect every reachable column.

    Returns (sources, derived) in discovery order. Raises DuplicateColumnError
    when two distinct column objects share a name.
    """
    visited: set[int] = set()
    names: dict[str, Column] = {}
    sources: list[SourceColumn] = []
    derived: list[DerivedColumn] = []

    def visit(col: Column) -> None:
        if id(col) in visited:
            return
        visited.add(id(col))

        existing = names.get(col.name)
        if existing is not None and existing is not col:
            raise DuplicateColumnError(f"Duplicate column name: {col.name}")
        names[col.name] = col

        if isinstance(col, SourceColumn):
            sources.append(col)
            return
        derived.append(col)
        for dep in col.upstream:
            visit(dep.target)  # type: ignore[arg-type]

    for leaf in leaves:
        visit(leaf)

    return sources, derived


def resolve_levels(derived: list[DerivedColumn]) -> list[list[DerivedColumn]]:
    """Topological sort of derived columns into levels (Kahn's algorithm).

    Only current-row edges between derived columns constrain ordering;
    previous-row edges read settled values and may even form cycles.
    Columns sharing a level have no ordering constraint among them.
    """
    by_name = {col.name: col for col in derived}
    order = {col.name: i for i, col in enumerate(derived)}

    in_degree: dict[str, int] = {name: 0 for name in by_name}
    children: dict[str, list[str]] = {name: [] for name in by_name}

    for col in derived:
        for dep in col.upstream:
            if dep.row is Row.CURRENT and dep.target_name in by_name:
                children[dep.target_name].append(col.name)
                in_degree[col.name] += 1

    queue = [name for name in by_name if in_degree[name] == 0]
    levels: list[list[DerivedColumn]] = []
    processed = 0

    while queue:
        level = sorted(queue, key=order.__getitem__)
        queue = []
        levels.append([by_name[name] for name in level])
        processed += len(level)
        for name in level:
            for child in children[name]:
                in_degree[child] -= 1
                if in_degree[child] == 0:
                    queue.append(child)

    if processed != len(by_name):
        remaining = [name for name, degree in in_degree.items() if degree > 0]
        raise CycleDetectedError(remaining)

    return levels


def collect_dependents(name: str, levels: list[list[DerivedColumn]]) -> list[str]:
    """Every column that reads ``name`` directly or transitively, in level order.

    Follows all non-self edges regardless of row, so previous-row readers count.
    """
    topo = [col for level in levels for col in level]
    readers: dict[str, list[str]] = {}
    for col in topo:
        for dep in col.upstream:
            readers.setdefault(dep.target_name, []).append(col.name)

    found: set[str] = set()
    queue: deque[str] = deque([name])
    while queue:
        current = queue.popleft()
        for reader in readers.get(current, []):
            if reader != name and reader not in found:
                found.add(reader)
                queue.append(reader)

    return [col.name for col in topo if col.name in found]
