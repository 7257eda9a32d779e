from pathlib import Path

import pytest

from topology_reconciler import ReconcileOrchestrator
from topology_reconciler.errors import InvalidNodeError
from topology_reconciler.graph import Graph, build_graph
from topology_reconciler.models import ActionKind, ResourceKind
from topology_reconciler.planner import plan
from topology_reconciler.topology import dump_topology, load_topology, render_user_data, two_tier_topology

SUBNETS = ["public_subnet_1", "public_subnet_2", "private_subnet_1", "private_subnet_2"]


def _positions(actions):
    return {action.node_id: index for index, action in enumerate(actions)}


def test_two_tier_topology_declares_the_fixed_shape(settings) -> None:
    topology = two_tier_topology(settings)
    kinds = [node.kind for node in topology.nodes]

    assert len(topology.nodes) == 21
    assert kinds.count(ResourceKind.SUBNET) == 4
    assert kinds.count(ResourceKind.SECURITY_GROUP) == 3
    assert kinds.count(ResourceKind.ROUTE_TABLE_ASSOCIATION) == 2
    assert kinds.count(ResourceKind.TARGET_GROUP_ATTACHMENT) == 2
    assert kinds.count(ResourceKind.INSTANCE) == 2
    assert [output.name for output in topology.outputs] == [
        "load_balancer_dns_name",
        "web_1_public_ip",
        "web_2_public_ip",
        "database_endpoint",
    ]
    cidrs = [node.attributes["cidr_block"] for node in topology.nodes if node.kind == ResourceKind.SUBNET]
    assert cidrs == ["10.0.1.0/24", "10.0.2.0/24", "10.0.3.0/24", "10.0.4.0/24"]


def test_first_apply_plans_21_creates_in_dependency_order(settings) -> None:
    graph = build_graph(two_tier_topology(settings))
    actions = plan(graph, {})
    position = _positions(actions)

    assert len(actions) == 21
    assert all(action.kind == ActionKind.CREATE for action in actions)
    assert all(position["vpc"] < position[subnet] for subnet in SUBNETS)
    later = ["public_rta_1", "public_rta_2", "web_1", "web_2"]
    assert max(position[subnet] for subnet in SUBNETS) < min(position[node] for node in later)
    assert max(position["web_1"], position["web_2"]) < min(
        position["web_tg_attachment_1"], position["web_tg_attachment_2"]
    )

    db = next(action for action in actions if action.node_id == "db")
    assert db.depends_on_actions == frozenset({"create:db_subnet_group", "create:private_sg"})


def test_user_data_is_generated_per_instance(settings) -> None:
    topology = two_tier_topology(settings)
    web = {node.id: node for node in topology.nodes if node.kind == ResourceKind.INSTANCE}
    assert web["web_1"].attributes["user_data"].startswith("#!/bin/bash")
    assert "two-tier-web-1" in web["web_1"].attributes["user_data"]
    assert web["web_1"].attributes["user_data"] != web["web_2"].attributes["user_data"]
    assert "us-east-1b" in render_user_data(project_id="p", server_name="s", availability_zone="us-east-1b")


def test_db_password_is_managed_unless_configured(settings) -> None:
    db = next(node for node in two_tier_topology(settings).nodes if node.id == "db")
    assert db.attributes["manage_master_user_password"] is True
    assert "password" not in db.attributes


def test_apply_converges_resolves_outputs_and_destroys(settings, provider, store) -> None:
    orchestrator = ReconcileOrchestrator(
        topology=two_tier_topology(settings),
        provider=provider,
        store=store,
        settings=settings,
        sleep=lambda _seconds: None,
    )

    result = orchestrator.apply()
    assert result.ok
    assert len(result.succeeded) == 21
    assert orchestrator.plan().actions == []

    outputs = orchestrator.outputs()
    assert set(outputs) == {"load_balancer_dns_name", "web_1_public_ip", "web_2_public_ip", "database_endpoint"}
    assert outputs["load_balancer_dns_name"].endswith(".elb.amazonaws.com")
    assert outputs["database_endpoint"].endswith(".rds.amazonaws.com")
    assert outputs["web_1_public_ip"] != outputs["web_2_public_ip"]

    destroy_plan = plan(Graph([], []), store.load())
    position = _positions(destroy_plan)
    assert all(action.kind == ActionKind.DELETE for action in destroy_plan)
    for attachment in ("web_tg_attachment_1", "web_tg_attachment_2"):
        assert position[attachment] < position["web_1"]
        assert position[attachment] < position["web_2"]
    for instance in ("web_1", "web_2"):
        assert position[instance] < position["public_sg"]
    for group in ("lb_sg", "public_sg", "private_sg"):
        assert position[group] < position["vpc"]

    destroyed = orchestrator.destroy()
    assert destroyed.ok
    assert store.load() == {}
    assert provider.resources() == {}


def test_yaml_topology_round_trips(settings, tmp_path: Path) -> None:
    topology = two_tier_topology(settings)
    path = tmp_path / "topology.yaml"
    path.write_text(dump_topology(topology), encoding="utf-8")

    loaded = load_topology(path)
    assert loaded == topology


def test_load_topology_rejects_bad_documents(tmp_path: Path) -> None:
    bad_yaml = tmp_path / "bad.yaml"
    bad_yaml.write_text("nodes: [unclosed", encoding="utf-8")
    with pytest.raises(InvalidNodeError):
        load_topology(bad_yaml)

    not_mapping = tmp_path / "list.yaml"
    not_mapping.write_text("- a\n- b\n", encoding="utf-8")
    with pytest.raises(InvalidNodeError):
        load_topology(not_mapping)

    with pytest.raises(FileNotFoundError):
        load_topology(tmp_path / "missing.yaml")
