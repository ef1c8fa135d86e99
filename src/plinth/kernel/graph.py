"""Build the dependency graph of declared resources."""

import heapq
from collections import defaultdict
from typing import Any, Dict, List, Optional, Set

from plinth.errors import CycleDetectedError, MissingDependenciesError
from .descriptor import Descriptor, OutputSpec, ResourceNode


class ResourceGraph:
    """Dependency graph for a resource descriptor.

    Edges point from a node to the nodes it depends on; ``reverse_edges``
    holds the dependents. Construction validates references and rejects
    cycles, so every ResourceGraph instance is a DAG.
    """

    def __init__(
        self,
        nodes: List[ResourceNode],
        outputs: Optional[List[OutputSpec]] = None,
        name: str = "descriptor",
        sensitive_values: Optional[Set[str]] = None,
    ):
        self.name = name
        self.outputs: List[OutputSpec] = list(outputs or [])
        self.sensitive_values: Set[str] = set(sensitive_values or ())
        self.nodes: Dict[str, ResourceNode] = {}
        self.edges: Dict[str, Set[str]] = defaultdict(set)  # node -> set of dependencies
        self.reverse_edges: Dict[str, Set[str]] = defaultdict(set)  # dependency -> set of dependents
        self._build(nodes)

    @classmethod
    def from_descriptor(cls, descriptor: Descriptor, values: Optional[Dict[str, Any]] = None) -> "ResourceGraph":
        return cls(
            descriptor.resources,
            descriptor.outputs,
            name=descriptor.name,
            sensitive_values=descriptor.sensitive_values(values or {}),
        )

    def _build(self, nodes: List[ResourceNode]) -> None:
        for node in nodes:
            self.nodes[node.id] = node
            self.edges[node.id] = set(node.depends_on)
            for dep in node.depends_on:
                self.reverse_edges[dep].add(node.id)

        # Ensure all referenced dependencies exist as nodes
        all_deps: Set[str] = set()
        for deps in self.edges.values():
            all_deps.update(deps)
        all_deps.update(o.node for o in self.outputs)
        missing = all_deps - set(self.nodes)
        if missing:
            raise MissingDependenciesError(missing)

        cycle = self._detect_cycle()
        if cycle:
            raise CycleDetectedError(cycle)

    def _detect_cycle(self) -> List[str]:
        """Detect a cycle using DFS over dependency edges.

        Returns:
            The first cycle found as a list of node ids (closing node repeated),
            or an empty list if the graph is acyclic.
        """
        WHITE, GRAY, BLACK = 0, 1, 2
        color = {node: WHITE for node in self.nodes}
        path: List[str] = []

        def dfs(node: str) -> List[str]:
            color[node] = GRAY
            path.append(node)
            for dep in sorted(self.get_dependencies(node)):  # Sort for deterministic order
                if color[dep] == GRAY:
                    start = path.index(dep)
                    return path[start:] + [dep]
                if color[dep] == WHITE:
                    found = dfs(dep)
                    if found:
                        return found
            color[node] = BLACK
            path.pop()
            return []

        for node in sorted(self.nodes):
            if color[node] == WHITE:
                found = dfs(node)
                if found:
                    return found
        return []

    def __contains__(self, node_id: str) -> bool:
        return node_id in self.nodes

    def __len__(self) -> int:
        return len(self.nodes)

    def get(self, node_id: str) -> ResourceNode:
        return self.nodes[node_id]

    def get_dependencies(self, node: str) -> Set[str]:
        """Get direct dependencies of a node."""
        return self.edges.get(node, set())

    def get_dependents(self, node: str) -> Set[str]:
        """Get nodes that depend on this node (reverse edges)."""
        return self.reverse_edges.get(node, set())

    def get_transitive_dependencies(self, node: str) -> Set[str]:
        """Get all transitive dependencies (recursive)."""
        return self._walk(node, self.get_dependencies)

    def get_transitive_dependents(self, node: str) -> Set[str]:
        """Get all transitive dependents (what depends on this node, recursively)."""
        return self._walk(node, self.get_dependents)

    @staticmethod
    def _walk(node: str, step) -> Set[str]:
        visited = set()
        stack = [node]
        while stack:
            current = stack.pop()
            if current in visited:
                continue
            visited.add(current)
            for nxt in step(current):
                if nxt not in visited:
                    stack.append(nxt)
        visited.discard(node)  # Don't include the node itself
        return visited

    def topological_order(self) -> List[str]:
        """Dependencies before dependents; ties broken by node id."""
        indegree = {node: len(self.get_dependencies(node)) for node in self.nodes}
        ready = [node for node, deg in indegree.items() if deg == 0]
        heapq.heapify(ready)
        order: List[str] = []
        while ready:
            node = heapq.heappop(ready)
            order.append(node)
            for dependent in self.get_dependents(node):
                indegree[dependent] -= 1
                if indegree[dependent] == 0:
                    heapq.heappush(ready, dependent)
        return order

    def roots(self) -> List[str]:
        """Nodes with no dependencies."""
        return sorted(n for n in self.nodes if not self.get_dependencies(n))

