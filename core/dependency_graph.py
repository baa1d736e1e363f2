"""
core/dependency_graph.py
------------------------
Foreign-key dependency graph, topological write order and dependency waves.

Edges point from a dependent table to the table it references: the
referenced table must be populated first. Self-references never become
edges.

Design Decisions:
    * Kahn's algorithm with a FIFO queue seeded in input order, so the
      result is deterministic for a given table list.
    * Cycles are reported, not rejected. Tables left over after Kahn's pass
      are explored with a depth-first search restricted to those tables.
      A leftover table that is only blocked by a cycle is reported inside
      that cycle's group, so every table missing from ``order`` shows up
      in some reported cycle.
"""
from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping

from logger import get_logger
from models.schema import TableDefinition, TableDependency

log = get_logger(__name__)

DependencyGraph = dict[str, list[str]]  # table → tables it depends on


@dataclass
class SortResult:
    """Outcome of :func:`topological_sort`."""
    order: list[str] = field(default_factory=list)
    cycles: list[list[str]] = field(default_factory=list)
    independent: list[str] = field(default_factory=list)

    @property
    def has_cycles(self) -> bool:
        return bool(self.cycles)

    def write_order(self) -> list[str]:
        """Acyclic order followed by cyclic leftovers (best effort)."""
        ordered = list(self.order)
        for cycle in self.cycles:
            for name in cycle:
                if name not in ordered:
                    ordered.append(name)
        return ordered


# ---------------------------------------------------------------------------
# Graph construction
# ---------------------------------------------------------------------------

def _name_and_dependencies(item: Any) -> tuple[str, list[str]]:
    if isinstance(item, TableDefinition):
        return item.name, item.dependencies()
    if isinstance(item, TableDependency):
        return item.table_name, [d for d in item.depends_on if d != item.table_name]
    if isinstance(item, Mapping):
        name = item["name"]
        deps: list[str] = []
        for fk in item.get("foreignKeys", []):
            ref = fk.get("referencedTable") if isinstance(fk, Mapping) else fk.referenced_table
            if ref and ref != name and ref not in deps:
                deps.append(ref)
        return name, deps
    raise TypeError(f"Unsupported table description: {item!r}")


def build_dependency_graph(tables: Iterable[Any]) -> DependencyGraph:
    """
    Build ``{table: [dependencies]}`` from table definitions.

    Accepts :class:`TableDefinition`, :class:`TableDependency`, or mappings
    shaped ``{"name": ..., "foreignKeys": [{"referencedTable": ...}]}``.
    Referenced tables that are not in the input are added as nodes without
    dependencies.
    """
    graph: DependencyGraph = {}
    for item in tables:
        name, deps = _name_and_dependencies(item)
        merged = graph.setdefault(name, [])
        for dep in deps:
            if dep not in merged:
                merged.append(dep)
    for deps in list(graph.values()):
        for dep in deps:
            graph.setdefault(dep, [])
    return graph


# ---------------------------------------------------------------------------
# Sorting
# ---------------------------------------------------------------------------

def topological_sort(tables: Iterable[Any]) -> SortResult:
    """
    Compute a foreign-key-safe write order.

    Returns:
        :class:`SortResult` with ``order`` (acyclic portion), ``cycles``
        (diagnostic groups for everything not in ``order``) and
        ``independent`` (tables with no dependencies).

    Example::

        result = topological_sort(tables)
        for name in result.write_order():
            ...
    """
    graph = build_dependency_graph(tables)
    in_degree = {name: len(deps) for name, deps in graph.items()}
    dependents: dict[str, list[str]] = {name: [] for name in graph}
    for name, deps in graph.items():
        for dep in deps:
            dependents[dep].append(name)

    independent = [name for name, degree in in_degree.items() if degree == 0]
    queue = deque(independent)
    order: list[str] = []
    while queue:
        current = queue.popleft()
        order.append(current)
        for dependent in dependents[current]:
            in_degree[dependent] -= 1
            if in_degree[dependent] == 0:
                queue.append(dependent)

    placed = set(order)
    residual = [name for name in graph if name not in placed]
    cycles = detect_cycles(graph, residual) if residual else []
    if cycles:
        log.warning(
            "Circular foreign-key references detected: %s",
            "; ".join(" -> ".join(c) for c in cycles),
        )
    return SortResult(order=order, cycles=cycles, independent=independent)


def detect_cycles(graph: DependencyGraph, residual: Iterable[str]) -> list[list[str]]:
    """
    Enumerate cycles among *residual* nodes with a depth-first search.

    Residual nodes that are not on a cycle themselves are appended to the
    group of the first cycle they lead to.
    """
    allowed = set(residual)
    nodes = [n for n in graph if n in allowed]
    state: dict[str, int] = {}  # 1 = on stack, 2 = finished
    stack: list[str] = []
    cycles: list[list[str]] = []
    seen_cycles: set[frozenset[str]] = set()

    def visit(node: str) -> None:
        state[node] = 1
        stack.append(node)
        for dep in graph.get(node, []):
            if dep not in allowed:
                continue
            if state.get(dep) == 1:
                cycle = stack[stack.index(dep):]
                key = frozenset(cycle)
                if key not in seen_cycles:
                    seen_cycles.add(key)
                    cycles.append(list(cycle))
            elif dep not in state:
                visit(dep)
        stack.pop()
        state[node] = 2

    for node in nodes:
        if node not in state:
            visit(node)

    # Blocked tables join their cycle's group after everything they depend on.
    placed = {name for cycle in cycles for name in cycle}
    pending = [n for n in nodes if n not in placed]
    while pending:
        ready = [
            n for n in pending
            if all(d in placed for d in graph.get(n, []) if d in allowed)
        ] or pending[:1]
        for node in ready:
            target = _blocking_cycle(graph, node, allowed, cycles)
            if target is None:
                cycles.append([node])
            else:
                target.append(node)
            placed.add(node)
        pending = [n for n in pending if n not in placed]
    return cycles


def _blocking_cycle(
    graph: DependencyGraph, start: str, allowed: set[str], cycles: list[list[str]]
) -> list[str] | None:
    seen = {start}
    frontier = deque([start])
    while frontier:
        current = frontier.popleft()
        for dep in graph.get(current, []):
            if dep not in allowed or dep in seen:
                continue
            for cycle in cycles:
                if dep in cycle:
                    return cycle
            seen.add(dep)
            frontier.append(dep)
    return None


def group_by_dependency_level(tables: Iterable[Any]) -> list[list[str]]:
    """
    Bucket tables into waves whose dependencies are all satisfied by earlier waves.

    Tables in the same wave may be written concurrently. Tables caught in a
    cycle follow as single-table waves in best-effort order, so they are
    never written in parallel.
    """
    items = list(tables)
    graph = build_dependency_graph(items)
    result = topological_sort(items)
    processed: set[str] = set()
    waves: list[list[str]] = []
    remaining = list(result.order)
    while remaining:
        wave = [n for n in remaining if all(d in processed for d in graph[n])]
        waves.append(wave)
        processed.update(wave)
        remaining = [n for n in remaining if n not in processed]
    for name in result.write_order():
        if name not in processed:
            waves.append([name])
            processed.add(name)
    return waves
