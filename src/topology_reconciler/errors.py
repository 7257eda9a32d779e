from __future__ import annotations


class ReconcilerError(Exception):
    """Base class for every error raised by the reconciler."""


# ---------------------------------------------------------------------------
# Graph construction (fatal, raised before any provider call)
# ---------------------------------------------------------------------------

class GraphError(ReconcilerError):
    pass


class CycleError(GraphError):
    def __init__(self, node_ids: list[str]) -> None:
        self.node_ids = sorted(node_ids)
        super().__init__(f"Dependency cycle among nodes: {', '.join(self.node_ids)}")


class DanglingReferenceError(GraphError):
    def __init__(self, node_id: str, target: str, location: str) -> None:
        self.node_id = node_id
        self.target = target
        self.location = location
        super().__init__(f"Node {node_id} references unknown node {target!r} at {location}")


class InvalidNodeError(GraphError):
    def __init__(self, node_id: str, message: str) -> None:
        self.node_id = node_id
        super().__init__(f"Invalid node {node_id}: {message}")


# ---------------------------------------------------------------------------
# Planning
# ---------------------------------------------------------------------------

class PlanError(ReconcilerError):
    """Conflict the planner resolved by policy; recorded, never raised."""

    def __init__(self, node_id: str, message: str, *, attributes: list[str] | None = None) -> None:
        self.node_id = node_id
        self.attributes = sorted(attributes or [])
        super().__init__(f"{node_id}: {message}")


# ---------------------------------------------------------------------------
# Execution
# ---------------------------------------------------------------------------

class ExecutionError(ReconcilerError):
    pass


class StateTransitionError(ExecutionError):
    def __init__(self, node_id: str, current: str, target: str) -> None:
        self.node_id = node_id
        self.current = current
        self.target = target
        super().__init__(f"Illegal state transition for {node_id}: {current} -> {target}")


class UnresolvedReferenceError(ExecutionError):
    def __init__(self, node_id: str, reference: str, reason: str) -> None:
        self.node_id = node_id
        self.reference = reference
        super().__init__(f"Node {node_id} cannot resolve {reference}: {reason}")


# ---------------------------------------------------------------------------
# Provider
# ---------------------------------------------------------------------------

class ProviderError(ReconcilerError):
    def __init__(self, message: str, *, code: str | None = None) -> None:
        self.code = code
        super().__init__(message)


class TransientProviderError(ProviderError):
    """Rate limiting, eventual consistency and similar retryable failures."""


class FatalProviderError(ProviderError):
    """Invalid parameters, permission errors; never retried."""


class ResourceNotFoundError(ProviderError):
    pass


# ---------------------------------------------------------------------------
# Outputs
# ---------------------------------------------------------------------------

class OutputError(ReconcilerError):
    pass


class UnknownOutputNodeError(OutputError):
    def __init__(self, output_name: str, node_id: str) -> None:
        self.output_name = output_name
        self.node_id = node_id
        super().__init__(f"Output {output_name!r} references unknown node {node_id!r}")


class NodeNotReconciledError(OutputError):
    def __init__(self, output_name: str, node_id: str, status: str | None = None) -> None:
        self.output_name = output_name
        self.node_id = node_id
        self.status = status
        detail = f"status={status}" if status else "no observed resource"
        super().__init__(f"Output {output_name!r}: node {node_id!r} is not reconciled ({detail})")


class AttributePathError(OutputError):
    def __init__(self, output_name: str, node_id: str, attribute_path: str) -> None:
        self.output_name = output_name
        self.node_id = node_id
        self.attribute_path = attribute_path
        super().__init__(f"Output {output_name!r}: attribute path {attribute_path!r} not found on {node_id!r}")


# ---------------------------------------------------------------------------
# State store
# ---------------------------------------------------------------------------

class StateStoreError(ReconcilerError):
    pass


class StateLockError(StateStoreError):
    pass
