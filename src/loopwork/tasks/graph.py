"""Dependency graph helpers."""

from __future__ import annotations

from collections.abc import Mapping, Sequence


def would_create_cycle(
    edges: Mapping[str, Sequence[str]],
    task_id: str,
    depends_on_id: str,
) -> bool:
    """Return True if adding ``task_id -> depends_on_id`` closes a cycle."""

    if task_id == depends_on_id:
        return True
    stack = [depends_on_id]
    seen: set[str] = set()
    while stack:
        current = stack.pop()
        if current == task_id:
            return True
        if current in seen:
            continue
        seen.add(current)
        stack.extend(edges.get(current, ()))
    return False


def find_dependency_cycle(edges: Mapping[str, Sequence[str]]) -> list[str] | None:
    """Return one cycle as ``[a, b, ..., a]`` or None if the graph is acyclic."""

    visiting: list[str] = []
    on_path: set[str] = set()
    done: set[str] = set()

    def visit(node: str) -> list[str] | None:
        if node in on_path:
            return [*visiting[visiting.index(node) :], node]
        if node in done:
            return None
        visiting.append(node)
        on_path.add(node)
        for dependency in edges.get(node, ()):
            cycle = visit(dependency)
            if cycle is not None:
                return cycle
        visiting.pop()
        on_path.discard(node)
        done.add(node)
        return None

    for node in sorted(edges):
        cycle = visit(node)
        if cycle is not None:
            return cycle
    return None
