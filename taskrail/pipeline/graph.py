"""Dependency graph for a pipeline version's tasks.

Nodes live in an arena (``list`` of ids) addressed by integer index. Each node
keeps its outgoing edges (the tasks it depends on) in declaration order, and a
reverse index keeps the tasks that depend on it, so both "parents of" and
"children of" are O(degree) lookups.

Edges are checked incrementally: before ``task -> dependency`` is committed we
walk outgoing edges from ``dependency``; if ``task`` is reachable the edge
would close a cycle and is rejected. Graphs are always rebuilt from scratch per
pipeline version and never mutated after registration.
"""

from __future__ import annotations

from collections.abc import Iterable, Iterator, Mapping

from taskrail.errors import CycleDetectedError, DuplicateTaskError, UnknownTaskError


class PipelineGraph:
    """Acyclic task dependency graph."""

    def __init__(self) -> None:
        self._ids: list[str] = []
        self._index: dict[str, int] = {}
        self._depends_on: list[list[int]] = []
        self._dependents: list[list[int]] = []

    # -- construction ------------------------------------------------------

    def add_node(self, task_id: str) -> None:
        if task_id in self._index:
            raise DuplicateTaskError(task_id)
        self._index[task_id] = len(self._ids)
        self._ids.append(task_id)
        self._depends_on.append([])
        self._dependents.append([])

    def add_edge(self, task_id: str, dependency: str) -> None:
        """Record that *task_id* depends on *dependency*.

        Raises UnknownTaskError if either node is missing and CycleDetectedError
        if the edge would close a cycle; the graph is unchanged in both cases.
        Re-adding an existing edge is a no-op.
        """
        src = self._require(task_id)
        dst = self._index.get(dependency)
        if dst is None:
            raise UnknownTaskError(dependency, referenced_by=task_id)
        if dst in self._depends_on[src]:
            return
        if self._reaches(dst, src):
            raise CycleDetectedError(task_id, dependency)
        self._depends_on[src].append(dst)
        self._dependents[dst].append(src)

    def _reaches(self, start: int, target: int) -> bool:
        """Return True if *target* is reachable from *start* via outgoing edges."""
        if start == target:
            return True
        seen = {start}
        stack = [start]
        while stack:
            node = stack.pop()
            for nxt in self._depends_on[node]:
                if nxt == target:
                    return True
                if nxt not in seen:
                    seen.add(nxt)
                    stack.append(nxt)
        return False

    def _require(self, task_id: str) -> int:
        try:
            return self._index[task_id]
        except KeyError:
            raise UnknownTaskError(task_id) from None

    # -- queries -----------------------------------------------------------

    def exists(self, task_id: str) -> bool:
        return task_id in self._index

    def edges(self, task_id: str) -> list[str]:
        """Tasks that *task_id* depends on, in declaration order."""
        return [self._ids[i] for i in self._depends_on[self._require(task_id)]]

    def dependents(self, task_id: str) -> list[str]:
        """Tasks that declare a dependency on *task_id*."""
        return [self._ids[i] for i in self._dependents[self._require(task_id)]]

    def roots(self) -> list[str]:
        """Tasks with no dependencies, in declaration order."""
        return [tid for i, tid in enumerate(self._ids) if not self._depends_on[i]]

    @property
    def nodes(self) -> list[str]:
        return list(self._ids)

    def edge_count(self) -> int:
        return sum(len(deps) for deps in self._depends_on)

    def tiers(self) -> list[list[str]]:
        """Group tasks into tiers whose dependencies all sit in earlier tiers.

        Kahn's algorithm over the reverse index. Used for display; scheduling
        itself is event driven.
        """
        remaining = [len(deps) for deps in self._depends_on]
        tier = [i for i, n in enumerate(remaining) if n == 0]
        tiers: list[list[str]] = []
        while tier:
            tiers.append(sorted(self._ids[i] for i in tier))
            nxt: list[int] = []
            for node in tier:
                for child in self._dependents[node]:
                    remaining[child] -= 1
                    if remaining[child] == 0:
                        nxt.append(child)
            tier = nxt
        return tiers

    def __contains__(self, task_id: object) -> bool:
        return task_id in self._index

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._ids))

    def __len__(self) -> int:
        return len(self._ids)

    def __repr__(self) -> str:
        return f"PipelineGraph(nodes={len(self._ids)}, edges={self.edge_count()})"


def build_graph(
    tasks: Mapping[str, Iterable[str]] | Iterable[tuple[str, Iterable[str]]],
) -> PipelineGraph:
    """Build and validate a graph from task ids and their dependency ids.

    Accepts ``{task_id: [deps]}`` or a sequence of ``(task_id, deps)`` pairs;
    the latter lets duplicate ids surface as DuplicateTaskError. All nodes are
    inserted before any edge; edges are validated in declaration order and the
    first failing declaration raises.
    """
    pairs = list(tasks.items()) if isinstance(tasks, Mapping) else list(tasks)
    graph = PipelineGraph()
    for task_id, _ in pairs:
        graph.add_node(task_id)
    for task_id, deps in pairs:
        for dep in deps:
            graph.add_edge(task_id, dep)
    return graph
