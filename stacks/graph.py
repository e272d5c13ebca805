#!/usr/bin/env python3
"""
Resource graph for the preprod topology.

Nodes are named after the CDK construct ids they render to. Edges point
from the resource that must exist first to the resource that needs it.
Reference edges mirror attributes one resource passes to another; ordering
edges are explicit ``DependsOn`` constraints with no attribute flowing.
"""

import heapq
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterable, List, Optional, Tuple

from stacks.errors import TopologyReferenceError


class NodeKind(str, Enum):
    NETWORK = "network"
    SECURITY = "security"
    IDENTITY = "identity"
    KEY_PAIR = "key-pair"
    LAUNCH_TEMPLATE = "launch-template"
    COMPUTE = "compute"
    DATABASE = "database"
    PARAMETER = "parameter"
    EDGE = "edge"
    RELEASE = "release"
    SHARED = "shared"
    ALARM = "alarm"


class EdgeKind(str, Enum):
    REFERENCE = "reference"
    ORDERING = "ordering"


@dataclass(frozen=True)
class Node:
    name: str
    kind: NodeKind


@dataclass(frozen=True)
class Edge:
    source: str
    target: str
    kind: EdgeKind = EdgeKind.REFERENCE


@dataclass(frozen=True)
class ResourceGraph:
    nodes: Tuple[Node, ...]
    edges: Tuple[Edge, ...]

    def names(self) -> List[str]:
        return [node.name for node in self.nodes]

    def node(self, name: str) -> Node:
        for node in self.nodes:
            if node.name == name:
                return node
        raise TopologyReferenceError(f"Unknown resource {name!r}")

    def nodes_of_kind(self, kind: NodeKind) -> List[Node]:
        return [node for node in self.nodes if node.kind == kind]

    def predecessors(self, name: str, kind: Optional[EdgeKind] = None) -> List[str]:
        self.node(name)
        return [
            edge.source
            for edge in self.edges
            if edge.target == name and (kind is None or edge.kind == kind)
        ]

    def ordering_edges(self) -> List[Edge]:
        return [edge for edge in self.edges if edge.kind == EdgeKind.ORDERING]

    def topological_order(self) -> List[str]:
        """Kahn's algorithm; ties broken by name so the order is stable."""
        indegree: Dict[str, int] = {node.name: 0 for node in self.nodes}
        outgoing: Dict[str, List[str]] = {node.name: [] for node in self.nodes}
        for edge in self.edges:
            indegree[edge.target] += 1
            outgoing[edge.source].append(edge.target)

        ready = [name for name, degree in indegree.items() if degree == 0]
        heapq.heapify(ready)
        order = []
        while ready:
            name = heapq.heappop(ready)
            order.append(name)
            for target in outgoing[name]:
                indegree[target] -= 1
                if indegree[target] == 0:
                    heapq.heappush(ready, target)

        if len(order) != len(self.nodes):
            stuck = sorted(name for name, degree in indegree.items() if degree > 0)
            raise TopologyReferenceError(f"Dependency cycle between {', '.join(stuck)}")
        return order


class GraphBuilder:
    """Collects nodes and edges, then validates them into a ResourceGraph."""

    def __init__(self) -> None:
        self._nodes: Dict[str, Node] = {}
        self._edges: List[Edge] = []

    def add_node(self, name: str, kind: NodeKind) -> str:
        if name in self._nodes:
            raise TopologyReferenceError(f"Resource {name!r} declared twice")
        self._nodes[name] = Node(name, kind)
        return name

    def add_edge(self, source: str, target: str, kind: EdgeKind = EdgeKind.REFERENCE) -> None:
        for name in (source, target):
            if name not in self._nodes:
                raise TopologyReferenceError(
                    f"Edge {source!r} -> {target!r} references undeclared resource {name!r}"
                )
        if source == target:
            raise TopologyReferenceError(f"Resource {source!r} cannot depend on itself")
        edge = Edge(source, target, kind)
        if edge not in self._edges:
            self._edges.append(edge)

    def depends_on(self, target: str, sources: Iterable[str], kind: EdgeKind = EdgeKind.REFERENCE) -> None:
        for source in sources:
            self.add_edge(source, target, kind)

    def build(self) -> ResourceGraph:
        graph = ResourceGraph(tuple(self._nodes.values()), tuple(self._edges))
        graph.topological_order()
        return graph
