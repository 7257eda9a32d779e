from __future__ import annotations

import heapq
import logging
import re
from collections import defaultdict
from typing import Any, Iterator

from pydantic import ValidationError

from .catalog import missing_required
from .errors import CycleError, DanglingReferenceError, InvalidNodeError, UnknownOutputNodeError
from .models import Node, OutputSpec, TopologySpec
from .references import iter_references

logger = logging.getLogger(__name__)

# Node ids name state files and appear in "ref:<id>.<path>", so no dots.
_NODE_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_-]*$")


class Graph:
    """Immutable resource graph; edges point from a node to the nodes it depends on."""

    def __init__(self, nodes: list[Node], outputs: list[OutputSpec], *, name: str = "two-tier") -> None:
        self.name = name
        self.nodes: dict[str, Node] = {node.id: node for node in nodes}
        self.outputs = list(outputs)
        self._dependents: dict[str, set[str]] = defaultdict(set)
        for node in nodes:
            for dep in node.depends_on:
                self._dependents[dep].add(node.id)

    def __contains__(self, node_id: object) -> bool:
        return node_id in self.nodes

    def __len__(self) -> int:
        return len(self.nodes)

    def __iter__(self) -> Iterator[Node]:
        return iter(self.nodes.values())

    def get(self, node_id: str) -> Node | None:
        return self.nodes.get(node_id)

    def present_nodes(self) -> list[Node]:
        return [node for node in self.nodes.values() if node.present]

    def dependents(self, node_id: str) -> set[str]:
        return set(self._dependents.get(node_id, ()))

    def topological_order(self) -> list[str]:
        """Dependencies first; ties broken lexicographically on node id."""
        ordered = kahn_order({node_id: node.depends_on for node_id, node in self.nodes.items()})
        if len(ordered) != len(self.nodes):
            raise CycleError(sorted(set(self.nodes) - set(ordered)))
        return ordered

    def depths(self) -> dict[str, int]:
        """Longest dependency chain below each node (roots are depth 0)."""
        depth: dict[str, int] = {}
        for node_id in self.topological_order():
            deps = self.nodes[node_id].depends_on
            depth[node_id] = 1 + max((depth[dep] for dep in deps), default=-1)
        return depth


def kahn_order(dependencies: dict[str, frozenset[str] | set[str]]) -> list[str]:
    indegree = {node_id: 0 for node_id in dependencies}
    edges: dict[str, list[str]] = defaultdict(list)
    for node_id, deps in dependencies.items():
        for dep in deps:
            if dep in dependencies:
                indegree[node_id] += 1
                edges[dep].append(node_id)

    heap = [node_id for node_id, degree in indegree.items() if degree == 0]
    heapq.heapify(heap)
    ordered: list[str] = []
    while heap:
        current = heapq.heappop(heap)
        ordered.append(current)
        for nxt in edges[current]:
            indegree[nxt] -= 1
            if indegree[nxt] == 0:
                heapq.heappush(heap, nxt)
    return ordered


def build_graph(topology: TopologySpec | dict[str, Any]) -> Graph:
    """Validate a topology document and derive its dependency edges.

    Edges come from explicit ``depends_on`` entries and from every ``ref:``
    value found in a node's attributes.

    Raises:
        InvalidNodeError: Duplicate or malformed ids, malformed documents or references,
            or missing required attributes.
        DanglingReferenceError: A reference or ``depends_on`` entry names an
            unknown node, or a present node depends on an absent one.
        CycleError: The dependency graph is not acyclic.
        UnknownOutputNodeError: An output binding names an unknown node.
    """
    if not isinstance(topology, TopologySpec):
        try:
            topology = TopologySpec.model_validate(topology)
        except ValidationError as exc:
            raise InvalidNodeError("<topology>", f"document failed validation: {exc}") from exc

    specs_by_id: dict[str, Any] = {}
    for spec in topology.nodes:
        if not _NODE_ID_RE.match(spec.id):
            raise InvalidNodeError(spec.id, "node ids may only contain letters, digits, '_' and '-'")
        if spec.id in specs_by_id:
            raise InvalidNodeError(spec.id, "duplicate node id")
        specs_by_id[spec.id] = spec

    nodes: list[Node] = []
    for order, spec in enumerate(topology.nodes):
        if spec.present:
            missing = missing_required(spec.kind, spec.attributes)
            if missing:
                raise InvalidNodeError(spec.id, f"missing required attributes: {', '.join(missing)}")

        deps: set[str] = set()
        try:
            references = list(iter_references(spec.attributes))
        except ValueError as exc:
            raise InvalidNodeError(spec.id, str(exc)) from exc
        located = [(location, ref.node_id) for location, ref in references]
        located.extend(("depends_on", dep) for dep in spec.depends_on)

        for location, target in located:
            if target == spec.id:
                raise CycleError([spec.id])
            target_spec = specs_by_id.get(target)
            if target_spec is None:
                raise DanglingReferenceError(spec.id, target, location)
            if spec.present and not target_spec.present:
                raise DanglingReferenceError(spec.id, target, f"{location} (target declared absent)")
            deps.add(target)

        nodes.append(
            Node(
                id=spec.id,
                kind=spec.kind,
                desired_attributes=dict(spec.attributes),
                depends_on=frozenset(deps),
                present=spec.present,
                declaration_order=order,
            )
        )

    for output in topology.outputs:
        if output.node_id not in specs_by_id:
            raise UnknownOutputNodeError(output.name, output.node_id)

    graph = Graph(nodes, topology.outputs, name=topology.name)
    graph.topological_order()
    logger.debug("Built graph %s with %d nodes", graph.name, len(graph))
    return graph
