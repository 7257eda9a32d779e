"""Apply an ordered action plan against a provider with bounded parallelism.

Actions run as soon as every action they wait on has succeeded. A failure
never aborts the run: the failing node is recorded, everything downstream of
it is skipped without a provider call, and independent branches continue.
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from datetime import UTC, datetime
from typing import Any, Callable, Mapping, TypeVar

from .errors import (
    ProviderError,
    ReconcilerError,
    ResourceNotFoundError,
    StateTransitionError,
    TransientProviderError,
    UnresolvedReferenceError,
)
from .models import (
    NODE_STATE_TRANSITIONS,
    Action,
    ActionKind,
    ActionOutcome,
    Node,
    NodeState,
    ObservedResource,
    ObservedStatus,
    ReconciliationResult,
)
from .providers.base import ResourceProvider
from .references import Reference, lookup_path, resolve_references
from .state_store import StateStore

logger = logging.getLogger(__name__)

T = TypeVar("T")

CANCELLED_REASON = "cancelled"


class NodeStateTracker:
    """Per-node lifecycle state for one apply; rejects illegal transitions."""

    def __init__(self, initial: Mapping[str, NodeState]) -> None:
        self._states = dict(initial)
        self._lock = threading.Lock()

    def get(self, node_id: str) -> NodeState:
        with self._lock:
            return self._states.get(node_id, NodeState.ABSENT)

    def transition(self, node_id: str, target: NodeState) -> None:
        with self._lock:
            current = self._states.get(node_id, NodeState.ABSENT)
            if target not in NODE_STATE_TRANSITIONS[current]:
                raise StateTransitionError(node_id, current.value, target.value)
            self._states[node_id] = target

    def snapshot(self) -> dict[str, NodeState]:
        with self._lock:
            return dict(self._states)


class RetryPolicy:
    """Retry ``TransientProviderError`` with capped exponential backoff."""

    def __init__(
        self,
        *,
        max_attempts: int = 5,
        backoff_base_seconds: float = 0.5,
        backoff_cap_seconds: float = 20.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.max_attempts = max_attempts
        self.backoff_base_seconds = backoff_base_seconds
        self.backoff_cap_seconds = max(backoff_cap_seconds, backoff_base_seconds)
        self._sleep = sleep

    def delay(self, attempt: int) -> float:
        """Delay before retry number ``attempt + 1`` (attempt counts from 0)."""
        return min(self.backoff_cap_seconds, self.backoff_base_seconds * (2**attempt))

    def call(self, label: str, call: Callable[[], T], *, on_attempt: Callable[[], None] | None = None) -> T:
        attempt = 0
        while True:
            if on_attempt is not None:
                on_attempt()
            try:
                return call()
            except TransientProviderError as exc:
                if attempt + 1 >= self.max_attempts:
                    raise
                delay = self.delay(attempt)
                logger.warning(
                    "Transient error on %s (attempt %d/%d), retrying in %.2fs: %s",
                    label,
                    attempt + 1,
                    self.max_attempts,
                    delay,
                    exc,
                )
                self._sleep(delay)
                attempt += 1


class Executor:
    def __init__(
        self,
        provider: ResourceProvider,
        store: StateStore,
        nodes: Mapping[str, Node],
        *,
        max_workers: int = 4,
        max_attempts: int = 5,
        backoff_base_seconds: float = 0.5,
        backoff_cap_seconds: float = 20.0,
        sleep: Callable[[float], None] = time.sleep,
        cancel_event: threading.Event | None = None,
    ) -> None:
        if max_workers < 1:
            raise ValueError("max_workers must be >= 1")
        self.provider = provider
        self.store = store
        self.nodes = dict(nodes)
        self.max_workers = max_workers
        self.retry = RetryPolicy(
            max_attempts=max_attempts,
            backoff_base_seconds=backoff_base_seconds,
            backoff_cap_seconds=backoff_cap_seconds,
            sleep=sleep,
        )
        # Shared with the caller so a cancel issued before apply() still counts.
        self._cancel_event = cancel_event if cancel_event is not None else threading.Event()
        self.tracker = NodeStateTracker({})

    def cancel(self) -> None:
        """Stop dispatching; in-flight actions run to completion."""
        logger.warning("Cancellation requested; no further actions will be dispatched")
        self._cancel_event.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    def backoff_delay(self, attempt: int) -> float:
        return self.retry.delay(attempt)

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    def apply(self, actions: list[Action]) -> ReconciliationResult:
        result = ReconciliationResult()
        if not actions:
            return result

        by_id = {action.action_id: action for action in actions}
        for action in actions:
            unknown = sorted(set(action.depends_on_actions) - set(by_id))
            if unknown:
                raise ValueError(f"Action {action.action_id} waits on unknown actions: {', '.join(unknown)}")

        observed = self.store.load()
        self.tracker = NodeStateTracker(
            {
                node_id: NodeState.CREATED if record.is_live else NodeState.ABSENT
                for node_id, record in observed.items()
            }
        )

        status: dict[str, str] = {}
        pending: list[Action] = list(actions)
        running: dict[Future[ActionOutcome], Action] = {}

        with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="reconcile") as pool:
            while pending or running:
                if not self.cancelled:
                    pending = self._skip_blocked(pending, status, result)
                    for action in list(pending):
                        if len(running) >= self.max_workers:
                            break
                        if all(status.get(dep) == "succeeded" for dep in action.depends_on_actions):
                            pending.remove(action)
                            logger.info("Dispatching %s", action.action_id)
                            running[pool.submit(self._run_action, action)] = action
                if not running:
                    break

                done, _ = wait(list(running), return_when=FIRST_COMPLETED)
                for future in done:
                    action = running.pop(future)
                    outcome = future.result()
                    status[action.action_id] = "succeeded" if outcome.error is None else "failed"
                    result.outcomes[action.action_id] = outcome

        for action in pending:
            reason = CANCELLED_REASON if self.cancelled else "unsatisfiable dependencies"
            self._record_skip(action, reason, status, result)
        result.cancelled = self.cancelled

        self._summarize(actions, result)
        logger.info(
            "Apply finished: %d succeeded, %d failed, %d skipped",
            len(result.succeeded),
            len(result.failed),
            len(result.skipped),
        )
        return result

    def _skip_blocked(
        self,
        pending: list[Action],
        status: dict[str, str],
        result: ReconciliationResult,
    ) -> list[Action]:
        # Plan order puts every action after the actions it waits on, so one
        # pass propagates skips transitively.
        remaining: list[Action] = []
        for action in pending:
            blocker = next(
                (dep for dep in sorted(action.depends_on_actions) if status.get(dep) in ("failed", "skipped")),
                None,
            )
            if blocker is None:
                remaining.append(action)
                continue
            self._record_skip(action, f"dependency {blocker} {status[blocker]}", status, result)
        return remaining

    def _record_skip(
        self,
        action: Action,
        reason: str,
        status: dict[str, str],
        result: ReconciliationResult,
    ) -> None:
        status[action.action_id] = "skipped"
        if self.tracker.get(action.node_id) in (NodeState.ABSENT, NodeState.CREATED):
            self.tracker.transition(action.node_id, NodeState.SKIPPED)
        result.outcomes[action.action_id] = ActionOutcome(
            action_id=action.action_id,
            node_id=action.node_id,
            kind=action.kind,
            state=self.tracker.get(action.node_id),
            reason=reason,
        )
        logger.info("Skipping %s: %s", action.action_id, reason)

    @staticmethod
    def _summarize(actions: list[Action], result: ReconciliationResult) -> None:
        for action in actions:
            outcome = result.outcomes[action.action_id]
            node_id = action.node_id
            if outcome.error is not None:
                result.failed.setdefault(node_id, outcome.error)
            elif outcome.reason is not None:
                result.skipped.add(node_id)
                result.skip_reasons.setdefault(node_id, outcome.reason)
        for action in actions:
            node_id = action.node_id
            if node_id not in result.failed and node_id not in result.skipped:
                result.succeeded.add(node_id)
        result.skipped -= set(result.failed)
        for node_id in list(result.skip_reasons):
            if node_id not in result.skipped:
                del result.skip_reasons[node_id]

    # ------------------------------------------------------------------
    # Single action
    # ------------------------------------------------------------------

    def _run_action(self, action: Action) -> ActionOutcome:
        outcome = ActionOutcome(
            action_id=action.action_id,
            node_id=action.node_id,
            kind=action.kind,
            state=self.tracker.get(action.node_id),
        )
        handlers = {
            ActionKind.CREATE: self._create,
            ActionKind.UPDATE: self._update,
            ActionKind.DELETE: self._delete,
        }
        handler = handlers.get(action.kind)
        if handler is None:
            logger.debug("Nothing to do for %s", action.action_id)
            return outcome

        try:
            handler(action, outcome)
        except ReconcilerError as exc:
            logger.error("Action %s failed after %d attempt(s): %s", action.action_id, outcome.attempts, exc)
            self._mark_failed(action, outcome, exc)
        except Exception as exc:  # noqa: BLE001
            # Store I/O and unclassified client errors fail this node only.
            logger.exception("Action %s failed unexpectedly: %s", action.action_id, exc)
            self._mark_failed(action, outcome, exc)
        else:
            logger.info("Completed %s in %d attempt(s)", action.action_id, outcome.attempts)
        outcome.state = self.tracker.get(action.node_id)
        return outcome

    def _mark_failed(self, action: Action, outcome: ActionOutcome, exc: Exception) -> None:
        current = self.tracker.get(action.node_id)
        if NodeState.FAILED in NODE_STATE_TRANSITIONS[current]:
            self.tracker.transition(action.node_id, NodeState.FAILED)
        outcome.error = exc

    def _create(self, action: Action, outcome: ActionOutcome) -> None:
        self.tracker.transition(action.node_id, NodeState.CREATING)
        self._create_resource(action, outcome)
        self.tracker.transition(action.node_id, NodeState.CREATED)

    def _create_resource(self, action: Action, outcome: ActionOutcome) -> None:
        node = self._node(action)
        spec = self._resolve(node.id, node.desired_attributes)

        previous = self.store.get(node.id)
        if previous is not None and previous.status == ObservedStatus.PENDING and previous.client_token:
            client_token = previous.client_token
        else:
            client_token = uuid.uuid4().hex
        self.store.save(
            ObservedResource(
                node_id=node.id,
                kind=node.kind,
                desired_attributes=node.desired_attributes,
                depends_on=sorted(node.depends_on),
                client_token=client_token,
                status=ObservedStatus.PENDING,
            )
        )

        created = self._with_retry(
            outcome,
            lambda: self.provider.create(node.kind, spec, client_token=client_token),
        )
        self.store.save(
            ObservedResource(
                node_id=node.id,
                kind=node.kind,
                provider_id=created.provider_id,
                attributes=created.attributes,
                desired_attributes=node.desired_attributes,
                depends_on=sorted(node.depends_on),
                client_token=client_token,
                status=ObservedStatus.CREATED,
            )
        )

    def _update(self, action: Action, outcome: ActionOutcome) -> None:
        node = self._node(action)
        self.tracker.transition(node.id, NodeState.UPDATING)
        record = self.store.get(node.id)
        if record is None or record.provider_id is None:
            raise ResourceNotFoundError(f"No observed resource for {node.id}", code="NotFound")

        spec = self._resolve(node.id, node.desired_attributes)
        provider_id = record.provider_id
        try:
            attributes = self._with_retry(
                outcome,
                lambda: self.provider.update(
                    node.kind,
                    provider_id,
                    spec,
                    changed=list(action.changed_attributes),
                ),
            )
        except ResourceNotFoundError:
            logger.warning("%s %s vanished out-of-band; re-creating", node.kind.value, provider_id)
            self._create_resource(action, outcome)
        except ProviderError:
            self.store.save(record.model_copy(update={"status": ObservedStatus.DEGRADED}))
            raise
        else:
            self.store.save(
                record.model_copy(
                    update={
                        "attributes": attributes,
                        "desired_attributes": node.desired_attributes,
                        "depends_on": sorted(node.depends_on),
                        "status": ObservedStatus.CREATED,
                        "last_synced_at": datetime.now(UTC),
                    }
                )
            )
        self.tracker.transition(node.id, NodeState.CREATED)

    def _delete(self, action: Action, outcome: ActionOutcome) -> None:
        record = self.store.get(action.node_id)
        if record is None:
            return
        if record.provider_id is None:
            record = self._settle_pending(record, outcome)
            if record is None:
                self.store.remove(action.node_id)
                return

        self.tracker.transition(action.node_id, NodeState.DELETING)
        provider_id = record.provider_id
        try:
            self._with_retry(outcome, lambda: self.provider.delete(record.kind, provider_id))
        except ResourceNotFoundError:
            logger.info("%s %s already gone", record.kind.value, provider_id)
        self.store.remove(action.node_id)
        self.tracker.transition(action.node_id, NodeState.ABSENT)

    def _settle_pending(self, record: ObservedResource, outcome: ActionOutcome) -> ObservedResource | None:
        """Adopt the resource an unconfirmed create may have made, or None."""
        if not record.client_token:
            return None
        try:
            spec = self._resolve(record.node_id, record.desired_attributes)
        except UnresolvedReferenceError:
            spec = dict(record.desired_attributes)
        try:
            provider_id = self._with_retry(
                outcome,
                lambda: self.provider.find(record.kind, spec, client_token=record.client_token),
            )
        except ResourceNotFoundError:
            provider_id = None
        if provider_id is None:
            logger.info("Pending %s was never created", record.node_id)
            return None

        logger.warning("Pending %s was created as %s; deleting it", record.node_id, provider_id)
        # The create is now confirmed, so walk the node through Created first.
        self.tracker.transition(record.node_id, NodeState.CREATING)
        self.tracker.transition(record.node_id, NodeState.CREATED)
        adopted = record.model_copy(update={"provider_id": provider_id, "status": ObservedStatus.CREATED})
        self.store.save(adopted)
        return adopted

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _node(self, action: Action) -> Node:
        node = self.nodes.get(action.node_id)
        if node is None:
            raise UnresolvedReferenceError(action.node_id, action.action_id, "node is not declared")
        return node

    def _resolve(self, node_id: str, attributes: dict[str, Any]) -> dict[str, Any]:
        def lookup(ref: Reference) -> Any:
            record = self.store.get(ref.node_id)
            if record is None or not record.is_live:
                raise UnresolvedReferenceError(node_id, str(ref), f"{ref.node_id} has no created resource")
            try:
                return lookup_path(record.attributes, ref.attribute)
            except KeyError as exc:
                raise UnresolvedReferenceError(node_id, str(ref), f"attribute {ref.attribute!r} not found") from exc

        return resolve_references(attributes, lookup)

    def _with_retry(self, outcome: ActionOutcome, call: Callable[[], T]) -> T:
        def count() -> None:
            outcome.attempts += 1

        return self.retry.call(outcome.action_id, call, on_attempt=count)
