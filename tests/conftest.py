from __future__ import annotations

import copy
from typing import Any, Callable

import pytest

from topology_reconciler.models import NodeSpec, OutputSpec, ResourceKind, TopologySpec
from topology_reconciler.providers import InMemoryProvider
from topology_reconciler.settings import RuntimeSettings
from topology_reconciler.state_store import InMemoryStateStore

SMALL_NODES: list[dict[str, Any]] = [
    {"id": "vpc", "kind": ResourceKind.VPC, "attributes": {"cidr_block": "10.0.0.0/16"}},
    {
        "id": "subnet",
        "kind": ResourceKind.SUBNET,
        "attributes": {"vpc_id": "ref:vpc", "cidr_block": "10.0.1.0/24", "availability_zone": "us-east-1a"},
    },
    {
        "id": "sg",
        "kind": ResourceKind.SECURITY_GROUP,
        "attributes": {"name": "demo-sg", "vpc_id": "ref:vpc"},
    },
    {
        "id": "server",
        "kind": ResourceKind.INSTANCE,
        "attributes": {
            "ami": "ami-1",
            "instance_type": "t3.micro",
            "subnet_id": "ref:subnet",
            "vpc_security_group_ids": ["ref:sg"],
            "associate_public_ip_address": True,
        },
    },
]


@pytest.fixture
def make_topology() -> Callable[..., TopologySpec]:
    """Build the four-node vpc/subnet/sg/server topology with optional edits."""

    def _make(
        *,
        overrides: dict[str, dict[str, Any]] | None = None,
        drop: set[str] | None = None,
        absent: set[str] | None = None,
    ) -> TopologySpec:
        nodes = []
        for raw in copy.deepcopy(SMALL_NODES):
            if raw["id"] in (drop or set()):
                continue
            raw["attributes"].update((overrides or {}).get(raw["id"], {}))
            raw["present"] = raw["id"] not in (absent or set())
            nodes.append(NodeSpec(**raw))
        outputs = []
        if "server" not in (drop or set()):
            outputs.append(OutputSpec(name="server_ip", node_id="server", attribute_path="public_ip"))
        return TopologySpec(name="small", nodes=nodes, outputs=outputs)

    return _make


@pytest.fixture
def settings() -> RuntimeSettings:
    return RuntimeSettings()


@pytest.fixture
def provider() -> InMemoryProvider:
    return InMemoryProvider()


@pytest.fixture
def store() -> InMemoryStateStore:
    return InMemoryStateStore()


@pytest.fixture
def sleeps() -> list[float]:
    return []
