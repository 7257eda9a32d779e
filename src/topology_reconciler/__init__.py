from importlib.metadata import version

from .errors import (
    AttributePathError,
    CycleError,
    DanglingReferenceError,
    ExecutionError,
    FatalProviderError,
    GraphError,
    InvalidNodeError,
    NodeNotReconciledError,
    OutputError,
    PlanError,
    ProviderError,
    ReconcilerError,
    ResourceNotFoundError,
    StateLockError,
    StateStoreError,
    StateTransitionError,
    TransientProviderError,
    UnknownOutputNodeError,
    UnresolvedReferenceError,
)
from .executor import Executor
from .graph import Graph, build_graph
from .models import (
    Action,
    ActionKind,
    ActionOutcome,
    Node,
    NodeSpec,
    NodeState,
    ObservedResource,
    ObservedStatus,
    OutputSpec,
    ReconciliationResult,
    ResourceKind,
    TopologySpec,
)
from .orchestrator import ReconcileOrchestrator
from .outputs import resolve_outputs
from .planner import Planner, plan
from .settings import RuntimeSettings
from .state_store import FileStateStore, InMemoryStateStore, StateStore
from .topology import load_topology, two_tier_topology


def get_version() -> str:
    try:
        return version("topology-reconciler")
    except Exception:
        return "0.0.0"


__all__ = [
    "Action",
    "ActionKind",
    "ActionOutcome",
    "AttributePathError",
    "CycleError",
    "DanglingReferenceError",
    "ExecutionError",
    "Executor",
    "FatalProviderError",
    "FileStateStore",
    "Graph",
    "GraphError",
    "InMemoryStateStore",
    "InvalidNodeError",
    "Node",
    "NodeNotReconciledError",
    "NodeSpec",
    "NodeState",
    "ObservedResource",
    "ObservedStatus",
    "OutputError",
    "OutputSpec",
    "PlanError",
    "Planner",
    "ProviderError",
    "ReconcileOrchestrator",
    "ReconcilerError",
    "ReconciliationResult",
    "ResourceKind",
    "ResourceNotFoundError",
    "RuntimeSettings",
    "StateLockError",
    "StateStore",
    "StateStoreError",
    "StateTransitionError",
    "TopologySpec",
    "TransientProviderError",
    "UnknownOutputNodeError",
    "UnresolvedReferenceError",
    "build_graph",
    "get_version",
    "load_topology",
    "plan",
    "resolve_outputs",
    "two_tier_topology",
]
