from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Callable

from .errors import ProviderError, ResourceNotFoundError, StateStoreError
from .executor import Executor, RetryPolicy
from .graph import Graph, build_graph
from .models import Action, ObservedStatus, ReconciliationResult, TopologySpec
from .outputs import resolve_outputs
from .planner import Planner
from .providers.base import ResourceProvider
from .settings import RuntimeSettings
from .state_store import FileStateStore, StateStore

logger = logging.getLogger(__name__)


@dataclass
class PlanReport:
    actions: list[Action]
    conflicts: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "actions": [
                {
                    "id": action.action_id,
                    "node": action.node_id,
                    "kind": action.kind.value,
                    "resource_kind": action.resource_kind.value,
                    "replace": action.replace,
                    "changed": list(action.changed_attributes),
                    "waits_on": sorted(action.depends_on_actions),
                }
                for action in self.actions
            ],
            "conflicts": list(self.conflicts),
        }


@dataclass
class RefreshReport:
    refreshed: list[str] = field(default_factory=list)
    vanished: list[str] = field(default_factory=list)
    drifted: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "refreshed": list(self.refreshed),
            "drifted": list(self.drifted),
            "vanished": list(self.vanished),
            "failed": dict(sorted(self.failed.items())),
        }


class ReconcileOrchestrator:
    """Plan, apply, refresh and destroy one topology against one state store.

    Every mutating entry point holds the store's run lock for its duration.
    """

    def __init__(
        self,
        *,
        topology: TopologySpec,
        provider: ResourceProvider,
        store: StateStore,
        settings: RuntimeSettings | None = None,
        sleep: Callable[[float], None] | None = None,
    ) -> None:
        self.settings = settings or RuntimeSettings()
        self.topology = topology
        self.graph: Graph = build_graph(topology)
        self.provider = provider
        self.store = store
        self._sleep = sleep
        self._cancel_event = threading.Event()

    def plan(self, *, graph: Graph | None = None) -> PlanReport:
        planner = Planner(self.graph if graph is None else graph, self.store.load())
        actions = planner.plan()
        for conflict in planner.conflicts:
            logger.warning("Plan conflict: %s", conflict)
        return PlanReport(actions=actions, conflicts=[str(conflict) for conflict in planner.conflicts])

    def apply(self) -> ReconciliationResult:
        with self.store.run_lock():
            self._cancel_event.clear()
            return self._apply(self.graph)

    def destroy(self) -> ReconciliationResult:
        """Delete every observed resource, children first."""
        empty = Graph([], [], name=self.graph.name)
        with self.store.run_lock():
            self._cancel_event.clear()
            return self._apply(empty)

    def refresh(self) -> RefreshReport:
        """Overwrite stored attributes with live provider reads.

        A resource that no longer exists is dropped from the store so the next
        plan re-creates it. Reads are retried like any provider call; a read
        that still fails is reported for that node and leaves its record as is.
        """
        report = RefreshReport()
        retry = self._retry_policy()
        with self.store.run_lock():
            for node_id, record in self.store.load().items():
                if record.status not in (ObservedStatus.CREATED, ObservedStatus.DEGRADED):
                    continue
                if record.provider_id is None:
                    raise StateStoreError(f"{node_id} is {record.status.value} but has no provider id")
                provider_id = record.provider_id
                try:
                    live = retry.call(f"read:{node_id}", lambda: self.provider.read(record.kind, provider_id))
                except ResourceNotFoundError:
                    logger.warning("%s (%s) no longer exists; dropping it from state", node_id, provider_id)
                    self.store.remove(node_id)
                    report.vanished.append(node_id)
                    continue
                except ProviderError as exc:
                    logger.error("Could not refresh %s (%s): %s", node_id, provider_id, exc)
                    report.failed[node_id] = str(exc)
                    continue
                if live != record.attributes:
                    report.drifted.append(node_id)
                self.store.save(
                    record.model_copy(update={"attributes": live, "last_synced_at": datetime.now(UTC)})
                )
                report.refreshed.append(node_id)
        logger.info(
            "Refreshed %d resources (%d drifted, %d vanished, %d failed)",
            len(report.refreshed),
            len(report.drifted),
            len(report.vanished),
            len(report.failed),
        )
        return report

    def outputs(self) -> dict[str, Any]:
        return resolve_outputs(self.store.load(), self.graph.outputs)

    def cancel(self) -> None:
        """Stop dispatching new actions for the apply or destroy in progress."""
        logger.warning("Cancellation requested")
        self._cancel_event.set()

    def write_report(self, result: ReconciliationResult, *, run_id: str | None = None) -> None:
        if not isinstance(self.store, FileStateStore):
            return
        run_id = run_id or datetime.now(UTC).strftime("%Y%m%dT%H%M%S%fZ")
        path = self.store.write_run_report(run_id=run_id, payload=result.to_dict())
        logger.info("Wrote run report to %s", path)

    def _retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.settings.max_attempts,
            backoff_base_seconds=self.settings.backoff_base_seconds,
            backoff_cap_seconds=self.settings.backoff_cap_seconds,
            sleep=self._sleep or time.sleep,
        )

    def _apply(self, graph: Graph) -> ReconciliationResult:
        report = self.plan(graph=graph)
        executor = Executor(
            self.provider,
            self.store,
            graph.nodes,
            max_workers=self.settings.max_workers,
            max_attempts=self.settings.max_attempts,
            backoff_base_seconds=self.settings.backoff_base_seconds,
            backoff_cap_seconds=self.settings.backoff_cap_seconds,
            sleep=self._sleep or time.sleep,
            cancel_event=self._cancel_event,
        )
        return executor.apply(report.actions)
