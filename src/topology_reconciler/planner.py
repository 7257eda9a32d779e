"""Diff the declared graph against observed state and order the resulting actions.

The plan is itself a DAG of actions. Creates and updates run parent before
child; deletes run child before parent. A replace is a delete/create pair for
the same node, and it cascades to every live dependent because their
references to the old resource go stale.
"""

from __future__ import annotations

import heapq
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from enum import Enum
from typing import Mapping

from .catalog import changed_attributes, split_changes
from .errors import PlanError
from .graph import Graph, kahn_order
from .models import Action, ActionKind, ObservedResource, ObservedStatus, ResourceKind

logger = logging.getLogger(__name__)


class Decision(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    REPLACE = "replace"
    DELETE = "delete"
    NOOP = "noop"


@dataclass
class _NodeDecision:
    decision: Decision
    resource_kind: ResourceKind
    changed: list[str] = field(default_factory=list)


class Planner:
    """One planning pass over a graph and a snapshot of observed state."""

    def __init__(self, graph: Graph, observed: Mapping[str, ObservedResource]) -> None:
        self.graph = graph
        self.observed = {
            node_id: record for node_id, record in observed.items() if record.status != ObservedStatus.DELETED
        }
        self.conflicts: list[PlanError] = []
        self.decisions: dict[str, _NodeDecision] = {}

    def plan(self) -> list[Action]:
        self.conflicts = []
        self.decisions = self._decide()
        actions = self._build_actions()
        ordered = self._order(actions)
        logger.info(
            "Planned %d actions (%s)",
            len(ordered),
            ", ".join(f"{kind.value}={count}" for kind, count in self._summary(ordered).items()) or "no changes",
        )
        return ordered

    # ------------------------------------------------------------------
    # Per-node decisions
    # ------------------------------------------------------------------

    def _decide(self) -> dict[str, _NodeDecision]:
        decisions: dict[str, _NodeDecision] = {}
        for node_id in self.graph.topological_order():
            node = self.graph.nodes[node_id]
            record = self.observed.get(node_id)

            if not node.present:
                if record is not None:
                    decisions[node_id] = _NodeDecision(Decision.DELETE, record.kind)
                continue

            if record is None or not record.is_live:
                decisions[node_id] = _NodeDecision(Decision.CREATE, node.kind)
                continue

            if record.kind != node.kind:
                self.conflicts.append(
                    PlanError(node_id, f"kind changed from {record.kind.value} to {node.kind.value}; replacing")
                )
                decisions[node_id] = _NodeDecision(Decision.REPLACE, node.kind, ["kind"])
                continue

            changed = changed_attributes(record.desired_attributes, node.desired_attributes)
            mutable, immutable = split_changes(node.kind, changed)
            if immutable:
                self.conflicts.append(
                    PlanError(node_id, "immutable attributes changed; replacing", attributes=immutable)
                )
                decisions[node_id] = _NodeDecision(Decision.REPLACE, node.kind, changed)
                continue

            recreated = sorted(
                dep
                for dep in node.depends_on
                if decisions.get(dep) is not None
                and decisions[dep].decision in (Decision.CREATE, Decision.REPLACE)
            )
            if recreated:
                self.conflicts.append(
                    PlanError(node_id, f"dependencies recreated ({', '.join(recreated)}); replacing")
                )
                decisions[node_id] = _NodeDecision(Decision.REPLACE, node.kind, changed)
                continue

            if mutable or record.status == ObservedStatus.DEGRADED:
                decisions[node_id] = _NodeDecision(Decision.UPDATE, node.kind, mutable)

        for node_id in sorted(set(self.observed) - set(self.graph.nodes)):
            decisions[node_id] = _NodeDecision(Decision.DELETE, self.observed[node_id].kind)
        return decisions

    # ------------------------------------------------------------------
    # Action DAG
    # ------------------------------------------------------------------

    def _observed_deps(self, node_id: str) -> set[str]:
        record = self.observed.get(node_id)
        if record is not None and record.depends_on:
            return set(record.depends_on)
        node = self.graph.get(node_id)
        return set(node.depends_on) if node is not None else set()

    def _build_actions(self) -> dict[str, Action]:
        deleting = {
            node_id
            for node_id, d in self.decisions.items()
            if d.decision in (Decision.DELETE, Decision.REPLACE)
        }
        creating = {
            node_id
            for node_id, d in self.decisions.items()
            if d.decision in (Decision.CREATE, Decision.REPLACE)
        }
        updating = {node_id for node_id, d in self.decisions.items() if d.decision == Decision.UPDATE}
        applying = creating | updating

        delete_waits: dict[str, set[str]] = defaultdict(set)
        for child in deleting:
            for parent in self._observed_deps(child):
                if parent in deleting:
                    delete_waits[parent].add(Action.make_id(ActionKind.DELETE, child))
        for node_id in updating:
            dropped = self._observed_deps(node_id) - set(self.graph.nodes[node_id].depends_on)
            for parent in dropped & deleting:
                delete_waits[parent].add(Action.make_id(ActionKind.UPDATE, node_id))

        actions: dict[str, Action] = {}
        for node_id in sorted(deleting):
            d = self.decisions[node_id]
            action = Action(
                action_id=Action.make_id(ActionKind.DELETE, node_id),
                node_id=node_id,
                kind=ActionKind.DELETE,
                resource_kind=self.observed[node_id].kind if node_id in self.observed else d.resource_kind,
                depends_on_actions=frozenset(delete_waits[node_id]),
                replace=d.decision == Decision.REPLACE,
                changed_attributes=tuple(d.changed),
            )
            actions[action.action_id] = action

        for node_id in sorted(applying):
            d = self.decisions[node_id]
            kind = ActionKind.UPDATE if node_id in updating else ActionKind.CREATE
            waits = {
                Action.make_id(
                    ActionKind.UPDATE if dep in updating else ActionKind.CREATE,
                    dep,
                )
                for dep in self.graph.nodes[node_id].depends_on
                if dep in applying
            }
            if d.decision == Decision.REPLACE:
                waits.add(Action.make_id(ActionKind.DELETE, node_id))
            action = Action(
                action_id=Action.make_id(kind, node_id),
                node_id=node_id,
                kind=kind,
                resource_kind=d.resource_kind,
                depends_on_actions=frozenset(waits),
                replace=d.decision == Decision.REPLACE,
                changed_attributes=tuple(d.changed),
            )
            actions[action.action_id] = action
        return actions

    def _order(self, actions: dict[str, Action]) -> list[Action]:
        depths, declaration = self._ordering_keys()

        def sort_key(action: Action) -> tuple[int, int, int, str]:
            depth = depths.get(action.node_id, 0)
            order = declaration.get(action.node_id, 0)
            if action.kind == ActionKind.DELETE:
                return (0, -depth, order, action.action_id)
            return (1, depth, order, action.action_id)

        remaining = {action_id: set(action.depends_on_actions) for action_id, action in actions.items()}
        dependents: dict[str, list[str]] = defaultdict(list)
        for action_id, waits in remaining.items():
            for wait in waits:
                dependents[wait].append(action_id)

        heap = [(sort_key(actions[a]), a) for a, waits in remaining.items() if not waits]
        heapq.heapify(heap)
        ordered: list[Action] = []
        while heap:
            _, action_id = heapq.heappop(heap)
            ordered.append(actions[action_id])
            for nxt in dependents[action_id]:
                remaining[nxt].discard(action_id)
                if not remaining[nxt]:
                    heapq.heappush(heap, (sort_key(actions[nxt]), nxt))

        if len(ordered) != len(actions):
            raise ValueError("Action graph contains a cycle")
        return ordered

    def _ordering_keys(self) -> tuple[dict[str, int], dict[str, int]]:
        known = set(self.graph.nodes) | set(self.observed)
        deps_map: dict[str, set[str]] = {}
        for node_id in known:
            node = self.graph.get(node_id)
            deps = set(node.depends_on) if node is not None else self._observed_deps(node_id)
            deps_map[node_id] = deps & known

        depths: dict[str, int] = {}
        for node_id in kahn_order(deps_map):
            depths[node_id] = 1 + max((depths.get(dep, 0) for dep in deps_map[node_id]), default=-1)

        declaration = {node.id: node.declaration_order for node in self.graph}
        for offset, node_id in enumerate(sorted(known - set(self.graph.nodes))):
            declaration[node_id] = len(self.graph) + offset
        return depths, declaration

    @staticmethod
    def _summary(actions: list[Action]) -> dict[ActionKind, int]:
        counts: dict[ActionKind, int] = {}
        for action in actions:
            counts[action.kind] = counts.get(action.kind, 0) + 1
        return counts


def plan(graph: Graph, observed: Mapping[str, ObservedResource]) -> list[Action]:
    """Return the ordered actions that move *observed* toward *graph*; no-ops are omitted."""
    return Planner(graph, observed).plan()
