"""
Dependency graph analysis for work units.

This module builds an immutable directed acyclic graph from work-unit
dependency declarations and answers the scheduling questions the rest of the
orchestration core asks of it:

- Cycle detection over hard edges (construction fails on a cycle)
- Hard-edge depth of every unit
- Critical path: the longest weighted chain of hard dependencies
- Bottlenecks: units with many direct hard dependents
- Parallel groups: units partitioned by depth level

Edge Semantics:
    An edge ``source -> target`` means ``source`` must finish before
    ``target`` starts. HARD edges participate in every computation. SOFT
    edges are advisory and are excluded from cycle detection, depth,
    critical path, bottlenecks and parallel groups; they only appear in the
    export.

Storage:
    Units are stored in an arena: a list of ids in declaration order, an
    id-to-index map, and per-index successor and predecessor lists. All
    derived results are computed once at construction, so every query is a
    pure read and safe to call concurrently.

Example:
    >>> graph = DependencyGraph.build([
    ...     WorkUnit(id="A"),
    ...     WorkUnit(id="B", dependencies=frozenset({"A"})),
    ...     WorkUnit(id="C", dependencies=frozenset({"A"})),
    ...     WorkUnit(id="D", dependencies=frozenset({"B", "C"})),
    ... ])
    >>> graph.critical_path()
    ['A', 'B', 'D']
    >>> graph.parallel_groups()
    [frozenset({'A'}), frozenset({'B', 'C'}), frozenset({'D'})]
"""

from __future__ import annotations

import math
from collections import deque
from collections.abc import Iterable, Mapping

import structlog

from conductor.exceptions import GraphCycleError, GraphValidationError
from conductor.graph.models import GraphEdge, GraphExport, GraphExportMetadata, GraphNode
from conductor.models.domain import DependencyEdge, EdgeKind, WorkflowPhase, WorkUnit

log = structlog.get_logger(__name__)

DEFAULT_BOTTLENECK_THRESHOLD = 3

_WHITE, _GRAY, _BLACK = 0, 1, 2


class DependencyGraph:
    """Immutable DAG of work units.

    Use ``DependencyGraph.build`` to construct an instance. The constructor
    expects already-validated arena storage and is not part of the public
    API.

    Attributes:
        units: Work units in declaration order
    """

    def __init__(
        self,
        units: list[WorkUnit],
        successors: list[list[int]],
        predecessors: list[list[int]],
        soft_edges: list[DependencyEdge],
    ) -> None:
        self._units = units
        self._ids = [unit.id for unit in units]
        self._index = {unit_id: i for i, unit_id in enumerate(self._ids)}
        self._succ = successors
        self._pred = predecessors
        self._soft_edges = soft_edges

        self._order = self._topological_order()
        self._depth = self._compute_depths()
        self._longest_from = self._compute_longest_from()
        self._critical_path = self._trace_critical_path()
        self._groups = self._compute_groups()

    @classmethod
    def build(cls, units: Iterable[WorkUnit], edges: Iterable[DependencyEdge] = ()) -> DependencyGraph:
        """Build a graph from work units and optional explicit edges.

        Edges are collected from each unit's ``dependencies`` (hard),
        ``soft_dependencies`` (soft) and from ``edges``. A pair declared as
        both hard and soft is kept as hard only.

        Args:
            units: Work units to include. Ids must be unique.
            edges: Additional edges between declared units

        Returns:
            The constructed graph.

        Raises:
            GraphValidationError: If ids are duplicated, an edge references an
                undeclared unit, or a weight is negative.
            GraphCycleError: If the hard-edge subgraph contains a cycle. The
                error's ``cycle`` lists every node on the cycle in order.
        """
        unit_list = list(units)
        index: dict[str, int] = {}
        for i, unit in enumerate(unit_list):
            if unit.id in index:
                raise GraphValidationError(f"Duplicate work unit id: {unit.id}")
            if unit.weight < 0 or math.isnan(unit.weight):
                raise GraphValidationError(f"Work unit {unit.id} has invalid weight {unit.weight}")
            index[unit.id] = i

        declared: list[DependencyEdge] = []
        for unit in unit_list:
            declared.extend(DependencyEdge(dep, unit.id, EdgeKind.HARD) for dep in sorted(unit.dependencies))
            declared.extend(DependencyEdge(dep, unit.id, EdgeKind.SOFT) for dep in sorted(unit.soft_dependencies))
        declared.extend(edges)

        hard_pairs: set[tuple[int, int]] = set()
        soft_pairs: set[tuple[int, int]] = set()
        for edge in declared:
            for endpoint in (edge.source, edge.target):
                if endpoint not in index:
                    raise GraphValidationError(
                        f"Dependency {edge.source} -> {edge.target} references unknown work unit: {endpoint}"
                    )
            pair = (index[edge.source], index[edge.target])
            (hard_pairs if edge.blocking else soft_pairs).add(pair)

        successors: list[list[int]] = [[] for _ in unit_list]
        predecessors: list[list[int]] = [[] for _ in unit_list]
        for source, target in hard_pairs:
            successors[source].append(target)
            predecessors[target].append(source)
        for adjacency in (*successors, *predecessors):
            adjacency.sort(key=lambda i: unit_list[i].id)

        cycle = _find_cycle([unit.id for unit in unit_list], successors)
        if cycle:
            log.error("dependency_cycle_detected", cycle=cycle)
            raise GraphCycleError(cycle)

        soft_edges = sorted(
            (
                DependencyEdge(unit_list[s].id, unit_list[t].id, EdgeKind.SOFT)
                for s, t in soft_pairs - hard_pairs
            ),
            key=lambda e: (e.source, e.target),
        )

        graph = cls(unit_list, successors, predecessors, soft_edges)
        log.debug(
            "dependency_graph_built",
            units=len(unit_list),
            hard_edges=len(hard_pairs),
            soft_edges=len(soft_edges),
        )
        return graph

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @property
    def units(self) -> tuple[WorkUnit, ...]:
        return tuple(self._units)

    @property
    def ids(self) -> tuple[str, ...]:
        return tuple(self._ids)

    @property
    def soft_edges(self) -> tuple[DependencyEdge, ...]:
        return tuple(self._soft_edges)

    @property
    def hard_edges(self) -> tuple[DependencyEdge, ...]:
        edges = [
            DependencyEdge(self._ids[s], self._ids[t], EdgeKind.HARD) for s in range(len(self._ids)) for t in self._succ[s]
        ]
        return tuple(sorted(edges, key=lambda e: (e.source, e.target)))

    def __len__(self) -> int:
        return len(self._ids)

    def __contains__(self, unit_id: object) -> bool:
        return unit_id in self._index

    def unit(self, unit_id: str) -> WorkUnit:
        return self._units[self._lookup(unit_id)]

    def hard_dependencies(self, unit_id: str) -> frozenset[str]:
        """Ids of the units that must complete before ``unit_id`` starts."""
        return frozenset(self._ids[i] for i in self._pred[self._lookup(unit_id)])

    def hard_dependents(self, unit_id: str) -> frozenset[str]:
        """Ids of the units that directly wait on ``unit_id``."""
        return frozenset(self._ids[i] for i in self._succ[self._lookup(unit_id)])

    def transitive_dependents(self, unit_id: str) -> frozenset[str]:
        """Ids of every unit reachable from ``unit_id`` through hard edges."""
        return frozenset(self._ids[i] for i in self._reachable(self._lookup(unit_id)))

    def has_hard_path(self, source: str, target: str) -> bool:
        """Return True if ``target`` is reachable from ``source`` through hard edges."""
        return self._lookup(target) in self._reachable(self._lookup(source))

    # ------------------------------------------------------------------
    # Analysis
    # ------------------------------------------------------------------

    def compute_depth(self, unit_id: str) -> int:
        """Hard-edge depth: 0 for units without hard dependencies, otherwise
        one more than the deepest hard dependency."""
        return self._depth[self._lookup(unit_id)]

    def critical_path(self) -> list[str]:
        """Longest weighted chain of hard dependencies.

        Computed by dynamic programming over a topological order. When two
        chains have equal weight, the one whose next node has the
        lexicographically smaller id wins. An empty graph yields an empty
        path.
        """
        return list(self._critical_path)

    def critical_path_length(self) -> float:
        """Summed weight of the critical path."""
        return max(self._longest_from, default=0.0)

    def bottlenecks(self, threshold: int = DEFAULT_BOTTLENECK_THRESHOLD) -> frozenset[str]:
        """Units whose hard out-degree is at least ``threshold``."""
        return frozenset(self._ids[i] for i, succ in enumerate(self._succ) if len(succ) >= threshold)

    def parallel_groups(self) -> list[frozenset[str]]:
        """Units partitioned by depth, in increasing depth order.

        No hard edge connects two units of the same group, so every group is
        mutually schedulable once the previous groups are complete.
        """
        return list(self._groups)

    def export(
        self,
        statuses: Mapping[str, WorkflowPhase] | None = None,
        bottleneck_threshold: int = DEFAULT_BOTTLENECK_THRESHOLD,
    ) -> GraphExport:
        """Build the versioned plan export consumed by external tooling.

        Args:
            statuses: Current lifecycle status per unit, overriding the status
                each unit was declared with
            bottleneck_threshold: Threshold passed to ``bottlenecks``

        Returns:
            GraphExport ready to be serialized with ``to_json``.
        """
        statuses = statuses or {}
        nodes = [
            GraphNode(
                id=unit.id,
                status=statuses.get(unit.id, unit.status),
                weight=unit.weight,
                depth=self._depth[i],
                metadata=dict(unit.metadata),
            )
            for i, unit in enumerate(self._units)
        ]
        edges = [
            GraphEdge(source=edge.source, target=edge.target, kind=edge.kind, blocking=edge.blocking)
            for edge in sorted(
                (*self.hard_edges, *self._soft_edges),
                key=lambda e: (e.source, e.target, e.kind.value),
            )
        ]
        bottlenecks = sorted(self.bottlenecks(bottleneck_threshold))
        groups = [sorted(group) for group in self._groups]

        return GraphExport(
            nodes=nodes,
            edges=edges,
            critical_path=self.critical_path(),
            bottlenecks=bottlenecks,
            parallel_groups=groups,
            metadata=GraphExportMetadata(
                total_units=len(self._ids),
                parallelizable=sum(len(group) for group in groups if len(group) > 1),
                critical_path_length=self.critical_path_length(),
                bottleneck_count=len(bottlenecks),
            ),
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _lookup(self, unit_id: str) -> int:
        try:
            return self._index[unit_id]
        except KeyError:
            raise KeyError(f"Unknown work unit: {unit_id}") from None

    def _reachable(self, start: int) -> set[int]:
        seen: set[int] = set()
        stack = list(self._succ[start])
        while stack:
            node = stack.pop()
            if node not in seen:
                seen.add(node)
                stack.extend(self._succ[node])
        return seen

    def _topological_order(self) -> list[int]:
        in_degree = [len(pred) for pred in self._pred]
        queue = deque(i for i, degree in enumerate(in_degree) if degree == 0)
        order: list[int] = []
        while queue:
            node = queue.popleft()
            order.append(node)
            for succ in self._succ[node]:
                in_degree[succ] -= 1
                if in_degree[succ] == 0:
                    queue.append(succ)
        return order

    def _compute_depths(self) -> list[int]:
        depth = [0] * len(self._ids)
        for node in self._order:
            if self._pred[node]:
                depth[node] = 1 + max(depth[p] for p in self._pred[node])
        return depth

    def _compute_longest_from(self) -> list[float]:
        # Heaviest chain starting at each node, including the node itself
        longest = [0.0] * len(self._ids)
        for node in reversed(self._order):
            tail = max((longest[s] for s in self._succ[node]), default=0.0)
            longest[node] = self._units[node].weight + tail
        return longest

    def _trace_critical_path(self) -> list[str]:
        if not self._ids:
            return []

        best = max(self._longest_from)
        node = min(
            (i for i, value in enumerate(self._longest_from) if math.isclose(value, best)),
            key=lambda i: self._ids[i],
        )
        path = [self._ids[node]]
        while self._succ[node]:
            remaining = self._longest_from[node] - self._units[node].weight
            # successors are sorted by id, so the first match is the tie-break winner
            node = next(
                s
                for s in self._succ[node]
                if math.isclose(self._longest_from[s], remaining, abs_tol=1e-9)
            )
            path.append(self._ids[node])
        return path

    def _compute_groups(self) -> list[frozenset[str]]:
        levels: dict[int, set[str]] = {}
        for i, depth in enumerate(self._depth):
            levels.setdefault(depth, set()).add(self._ids[i])
        return [frozenset(levels[depth]) for depth in sorted(levels)]


def _find_cycle(ids: list[str], successors: list[list[int]]) -> list[str] | None:
    """Iterative three-color DFS returning the first cycle found, or None.

    Start nodes are visited in declaration order and successors in id order,
    so the reported cycle is deterministic.
    """
    color = [_WHITE] * len(ids)
    for start in range(len(ids)):
        if color[start] != _WHITE:
            continue
        color[start] = _GRAY
        path = [start]
        iterators = [iter(successors[start])]
        while iterators:
            nxt = next(iterators[-1], None)
            if nxt is None:
                color[path.pop()] = _BLACK
                iterators.pop()
            elif color[nxt] == _GRAY:
                return [ids[i] for i in path[path.index(nxt) :]]
            elif color[nxt] == _WHITE:
                color[nxt] = _GRAY
                path.append(nxt)
                iterators.append(iter(successors[nxt]))
    return None
