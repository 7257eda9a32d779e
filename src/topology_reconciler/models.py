from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class ResourceKind(str, Enum):
    VPC = "vpc"
    SUBNET = "subnet"
    INTERNET_GATEWAY = "internet_gateway"
    ROUTE_TABLE = "route_table"
    ROUTE_TABLE_ASSOCIATION = "route_table_association"
    SECURITY_GROUP = "security_group"
    LOAD_BALANCER = "load_balancer"
    TARGET_GROUP = "target_group"
    LISTENER = "listener"
    TARGET_GROUP_ATTACHMENT = "target_group_attachment"
    INSTANCE = "instance"
    DB_SUBNET_GROUP = "db_subnet_group"
    DB_INSTANCE = "db_instance"


class ObservedStatus(str, Enum):
    PENDING = "pending"
    CREATED = "created"
    DEGRADED = "degraded"
    DELETED = "deleted"


class ActionKind(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    NOOP = "noop"


class NodeState(str, Enum):
    ABSENT = "absent"
    CREATING = "creating"
    CREATED = "created"
    UPDATING = "updating"
    DELETING = "deleting"
    FAILED = "failed"
    SKIPPED = "skipped"


NODE_STATE_TRANSITIONS: dict[NodeState, frozenset[NodeState]] = {
    NodeState.ABSENT: frozenset({NodeState.CREATING, NodeState.SKIPPED}),
    NodeState.CREATING: frozenset({NodeState.CREATED, NodeState.FAILED}),
    NodeState.CREATED: frozenset({NodeState.UPDATING, NodeState.DELETING, NodeState.SKIPPED}),
    NodeState.UPDATING: frozenset({NodeState.CREATED, NodeState.FAILED}),
    NodeState.DELETING: frozenset({NodeState.ABSENT, NodeState.FAILED}),
    NodeState.FAILED: frozenset(),
    NodeState.SKIPPED: frozenset(),
}


# ---------------------------------------------------------------------------
# Declared topology (input boundary)
# ---------------------------------------------------------------------------

class NodeSpec(BaseModel):
    """One declared resource as written in a topology document."""

    model_config = ConfigDict(extra="forbid")

    id: str = Field(min_length=1)
    kind: ResourceKind
    attributes: dict[str, Any] = Field(default_factory=dict)
    depends_on: list[str] = Field(default_factory=list)
    present: bool = True


class OutputSpec(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str = Field(min_length=1)
    node_id: str = Field(min_length=1)
    attribute_path: str = Field(min_length=1)


class TopologySpec(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str = "two-tier"
    nodes: list[NodeSpec]
    outputs: list[OutputSpec] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Observed state (owned by the state store)
# ---------------------------------------------------------------------------

class ObservedResource(BaseModel):
    """Last-known provider identity and attributes for one node."""

    node_id: str
    kind: ResourceKind
    provider_id: str | None = None
    attributes: dict[str, Any] = Field(default_factory=dict)
    desired_attributes: dict[str, Any] = Field(default_factory=dict)
    depends_on: list[str] = Field(default_factory=list)
    client_token: str | None = None
    last_synced_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    status: ObservedStatus = ObservedStatus.PENDING

    @property
    def is_live(self) -> bool:
        return self.status in (ObservedStatus.CREATED, ObservedStatus.DEGRADED) and self.provider_id is not None


# ---------------------------------------------------------------------------
# Graph, plan and result structures (in-memory, one reconciliation pass)
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Node:
    id: str
    kind: ResourceKind
    desired_attributes: dict[str, Any]
    depends_on: frozenset[str]
    present: bool = True
    declaration_order: int = 0


@dataclass(frozen=True)
class Action:
    action_id: str
    node_id: str
    kind: ActionKind
    resource_kind: ResourceKind
    depends_on_actions: frozenset[str] = frozenset()
    replace: bool = False
    changed_attributes: tuple[str, ...] = ()

    @staticmethod
    def make_id(kind: ActionKind, node_id: str) -> str:
        return f"{kind.value}:{node_id}"


@dataclass
class ActionOutcome:
    action_id: str
    node_id: str
    kind: ActionKind
    state: NodeState
    attempts: int = 0
    error: Exception | None = None
    reason: str | None = None


@dataclass
class ReconciliationResult:
    """Per-node report of one apply; partial failure never aborts the run."""

    succeeded: set[str] = field(default_factory=set)
    failed: dict[str, Exception] = field(default_factory=dict)
    skipped: set[str] = field(default_factory=set)
    skip_reasons: dict[str, str] = field(default_factory=dict)
    outcomes: dict[str, ActionOutcome] = field(default_factory=dict)
    cancelled: bool = False

    @property
    def ok(self) -> bool:
        return not self.failed and not self.skipped

    def to_dict(self) -> dict[str, Any]:
        return {
            "succeeded": sorted(self.succeeded),
            "failed": {node_id: str(exc) for node_id, exc in sorted(self.failed.items())},
            "skipped": {node_id: self.skip_reasons.get(node_id, "") for node_id in sorted(self.skipped)},
            "cancelled": self.cancelled,
        }
