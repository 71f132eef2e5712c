"""
Dependency graph for Ripple builds.

This module provides the in-memory DAG used to order component builds:
- Node/edge storage with forward (dependencies) and reverse (dependents) indexes
- Topological sorting and layering with Kahn's algorithm
- Cycle detection that reports one concrete cycle path
- Transitive dependent queries and subgraph extraction
- JSON export of layers and edges for CI consumption

Edges always point from a dependent to its dependency: ``add_edge("app", "utils")``
means *app depends on utils*, so utils is ordered first. Insertion order is kept
and used as the tie-break whenever several nodes become eligible at once, which
makes every ordering deterministic.
"""

from __future__ import annotations

import json
from collections import deque
from dataclasses import dataclass
from typing import Any, Iterable, Mapping, Optional

from ripple.exceptions import CycleError, UnknownNodeError


@dataclass(frozen=True, slots=True)
class Edge:
    """A directed dependency edge.

    Attributes:
        dependent: Node that requires the other one
        dependency: Node that must be processed first
    """

    dependent: str
    dependency: str

    def __repr__(self) -> str:
        return f"Edge({self.dependent} -> {self.dependency})"


class Graph:
    """
    Directed acyclic graph of build components.

    Example:
        Build a graph and get execution layers::

            graph = Graph.from_table({
                "parent": [],
                "utils": ["parent"],
                "app": ["utils"],
            })

            graph.topological_sort()   # ["parent", "utils", "app"]
            graph.layers()             # [["parent"], ["utils"], ["app"]]
            graph.transitive_dependents_of("parent")  # ["app", "utils"]
    """

    def __init__(self) -> None:
        # insertion index per node, doubles as the ordered node set
        self._index: dict[str, int] = {}
        self._dependencies: dict[str, set[str]] = {}
        self._dependents: dict[str, set[str]] = {}

    @classmethod
    def from_table(cls, table: Mapping[str, Iterable[str]]) -> "Graph":
        """
        Build a fresh graph from a declarative dependency table.

        Args:
            table: Mapping of node id -> ids of the nodes it depends on.
                Each key is added before its dependencies, so table order
                is the graph's insertion order.

        Returns:
            New Graph instance
        """
        graph = cls()
        for node, dependencies in table.items():
            graph.add_node(node)
            for dependency in dependencies or ():
                graph.add_edge(node, dependency)
        return graph

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    def add_node(self, node_id: str) -> None:
        """Add a node. Adding an existing node is a no-op."""
        if node_id in self._index:
            return
        self._index[node_id] = len(self._index)
        self._dependencies[node_id] = set()
        self._dependents[node_id] = set()

    def add_edge(self, dependent: str, dependency: str) -> None:
        """
        Add a dependency edge: ``dependent`` depends on ``dependency``.

        Both endpoints are created if they don't exist yet. Adding the same
        edge twice is a no-op.
        """
        self.add_node(dependent)
        self.add_node(dependency)
        self._dependencies[dependent].add(dependency)
        self._dependents[dependency].add(dependent)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def has_node(self, node_id: str) -> bool:
        return node_id in self._index

    def __contains__(self, node_id: object) -> bool:
        return node_id in self._index

    def __len__(self) -> int:
        return len(self._index)

    @property
    def nodes(self) -> list[str]:
        """All node ids in insertion order."""
        return list(self._index)

    @property
    def edges(self) -> list[Edge]:
        """All edges, grouped by dependent in insertion order."""
        return [
            Edge(node, dependency)
            for node in self._index
            for dependency in self._ordered(self._dependencies[node])
        ]

    def node_count(self) -> int:
        return len(self._index)

    def edge_count(self) -> int:
        return sum(len(deps) for deps in self._dependencies.values())

    def dependencies_of(self, node_id: str) -> list[str]:
        """Direct dependencies of a node in insertion order (empty if unknown)."""
        return self._ordered(self._dependencies.get(node_id, ()))

    def dependents_of(self, node_id: str) -> list[str]:
        """Nodes that directly depend on a node, in insertion order (empty if unknown)."""
        return self._ordered(self._dependents.get(node_id, ()))

    def require(self, node_ids: Iterable[str]) -> None:
        """
        Validate that every id is a node of this graph.

        Raises:
            UnknownNodeError: If any id is missing
        """
        missing = {node_id for node_id in node_ids if node_id not in self._index}
        if missing:
            raise UnknownNodeError(missing)

    def transitive_dependents_of(self, node_id: str) -> list[str]:
        """
        Get every node that directly or indirectly depends on ``node_id``.

        Performs a BFS over reverse edges. The starting node itself is not
        part of the result.

        Args:
            node_id: Node to start from

        Returns:
            Sorted list of dependent node ids; empty if the node is unknown
            or nothing depends on it
        """
        if node_id not in self._index:
            return []

        visited = {node_id}
        queue = deque([node_id])
        result: list[str] = []

        while queue:
            current = queue.popleft()
            for dependent in self._dependents[current]:
                if dependent not in visited:
                    visited.add(dependent)
                    result.append(dependent)
                    queue.append(dependent)

        return sorted(result)

    def transitive_dependencies_of(self, node_id: str) -> list[str]:
        """Get every node that ``node_id`` directly or indirectly depends on (sorted)."""
        if node_id not in self._index:
            return []

        visited = {node_id}
        to_visit = [node_id]
        result: list[str] = []

        while to_visit:
            current = to_visit.pop()
            for dependency in self._dependencies[current]:
                if dependency not in visited:
                    visited.add(dependency)
                    result.append(dependency)
                    to_visit.append(dependency)

        return sorted(result)

    def subgraph(self, node_ids: Iterable[str]) -> "Graph":
        """
        Extract the graph induced by a set of nodes.

        Ids that are not in this graph are ignored. Only edges with both
        endpoints inside the set are kept and the original insertion order
        is preserved.

        Args:
            node_ids: Nodes to keep

        Returns:
            New Graph instance
        """
        keep = set(node_ids)
        sub = Graph()

        for node in self._index:
            if node in keep:
                sub.add_node(node)

        for node in sub.nodes:
            for dependency in self._ordered(self._dependencies[node]):
                if dependency in keep:
                    sub.add_edge(node, dependency)

        return sub

    # ------------------------------------------------------------------
    # Ordering
    # ------------------------------------------------------------------

    def topological_sort(self) -> list[str]:
        """
        Order nodes so every dependency comes before its dependents.

        Uses Kahn's algorithm seeded with dependency-free nodes in insertion
        order.

        Returns:
            List of node ids in build order

        Raises:
            CycleError: If the graph contains a cycle
        """
        in_degree = {node: len(deps) for node, deps in self._dependencies.items()}
        queue = deque(node for node in self._index if in_degree[node] == 0)
        result: list[str] = []

        while queue:
            node = queue.popleft()
            result.append(node)

            for dependent in self._ordered(self._dependents[node]):
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    queue.append(dependent)

        if len(result) != len(self._index):
            raise CycleError(self._detect_cycle())

        return result

    def layers(self) -> list[list[str]]:
        """
        Group nodes into build layers.

        Layer 0 holds nodes without dependencies; layer N holds nodes whose
        dependencies all sit in layers 0..N-1. Nodes within a layer are
        independent of each other.

        Returns:
            List of layers, each an insertion-ordered list of node ids

        Raises:
            CycleError: If the graph contains a cycle
        """
        in_degree = {node: len(deps) for node, deps in self._dependencies.items()}
        current = [node for node in self._index if in_degree[node] == 0]
        layers: list[list[str]] = []
        visited = 0

        while current:
            layers.append(current)
            visited += len(current)

            released: set[str] = set()
            for node in current:
                for dependent in self._dependents[node]:
                    in_degree[dependent] -= 1
                    if in_degree[dependent] == 0:
                        released.add(dependent)
            current = self._ordered(released)

        if visited != len(self._index):
            raise CycleError(self._detect_cycle())

        return layers

    def find_cycle(self) -> Optional[list[str]]:
        """Return one cycle as a closed path, or None if the graph is acyclic."""
        cycle = self._detect_cycle()
        return cycle or None

    def _detect_cycle(self) -> list[str]:
        """
        Find one cycle using DFS with white/gray/black coloring.

        Returns:
            Closed path following dependency edges, e.g. ``["a", "b", "c", "a"]``
            meaning a depends on b, b on c and c on a; empty if acyclic
        """
        white, gray, black = 0, 1, 2
        color = {node: white for node in self._index}
        parent: dict[str, str] = {}

        for root in self._index:
            if color[root] != white:
                continue
            color[root] = gray
            # explicit stack of (node, remaining dependencies) frames
            stack = [(root, iter(self._ordered(self._dependencies[root])))]
            while stack:
                node, dependencies = stack[-1]
                for dependency in dependencies:
                    if color[dependency] == gray:
                        # walk back from node to the gray dependency via parents
                        path = [node]
                        current = node
                        while current != dependency:
                            current = parent[current]
                            path.append(current)
                        path.reverse()
                        return path + [dependency]
                    if color[dependency] == white:
                        parent[dependency] = node
                        color[dependency] = gray
                        stack.append(
                            (dependency, iter(self._ordered(self._dependencies[dependency])))
                        )
                        break
                else:
                    color[node] = black
                    stack.pop()

        return []

    # ------------------------------------------------------------------
    # Export
    # ------------------------------------------------------------------

    def export(self) -> dict[str, Any]:
        """
        Export layers and direct dependencies.

        Returns:
            ``{"layers": [[...], ...], "edges": {node: sorted dependencies}}``;
            nodes without dependencies are left out of ``edges``

        Raises:
            CycleError: If the graph contains a cycle
        """
        edges = {
            node: sorted(self._dependencies[node])
            for node in self._index
            if self._dependencies[node]
        }
        return {"layers": self.layers(), "edges": edges}

    def export_json(self, indent: int = 2) -> str:
        """Export the graph as a JSON document (see ``export``)."""
        return json.dumps(self.export(), indent=indent)

    def _ordered(self, node_ids: Iterable[str]) -> list[str]:
        return sorted(node_ids, key=self._index.__getitem__)

    def __repr__(self) -> str:
        return f"Graph(nodes={self.node_count()}, edges={self.edge_count()})"
