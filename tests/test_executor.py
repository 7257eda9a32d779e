import pytest

from topology_reconciler.errors import (
    FatalProviderError,
    StateTransitionError,
    TransientProviderError,
)
from topology_reconciler.executor import CANCELLED_REASON, Executor, NodeStateTracker
from topology_reconciler.graph import Graph, build_graph
from topology_reconciler.models import NodeState, ObservedResource, ObservedStatus, ResourceKind
from topology_reconciler.planner import plan
from topology_reconciler.topology import two_tier_topology


def _executor(provider, store, graph, sleeps, **kwargs):
    kwargs.setdefault("backoff_base_seconds", 0.5)
    kwargs.setdefault("backoff_cap_seconds", 4.0)
    return Executor(provider, store, graph.nodes, sleep=sleeps.append, **kwargs)


def _apply(provider, store, graph, sleeps, **kwargs):
    return _executor(provider, store, graph, sleeps, **kwargs).apply(plan(graph, store.load()))


def test_apply_creates_everything_and_resolves_references(make_topology, provider, store, sleeps) -> None:
    graph = build_graph(make_topology())
    result = _apply(provider, store, graph, sleeps)

    assert result.ok
    assert result.succeeded == {"vpc", "subnet", "sg", "server"}
    records = store.load()
    assert all(record.status == ObservedStatus.CREATED for record in records.values())
    server = records["server"]
    assert server.attributes["subnet_id"] == records["subnet"].provider_id
    assert server.attributes["vpc_security_group_ids"] == [records["sg"].provider_id]
    assert server.desired_attributes["subnet_id"] == "ref:subnet"
    assert server.depends_on == ["sg", "subnet"]
    assert result.outcomes["create:server"].state == NodeState.CREATED
    assert sleeps == []


def test_second_apply_is_a_noop(make_topology, provider, store, sleeps) -> None:
    graph = build_graph(make_topology())
    _apply(provider, store, graph, sleeps)
    calls_before = len(provider.calls)
    assert plan(graph, store.load()) == []
    result = _apply(provider, store, graph, sleeps)
    assert result.ok
    assert result.succeeded == set()
    assert len(provider.calls) == calls_before


def test_failure_isolates_the_node_and_skips_dependents(make_topology, provider, store, sleeps) -> None:
    provider.fail(
        "create",
        FatalProviderError("invalid group", code="InvalidParameterValue"),
        kind=ResourceKind.SECURITY_GROUP,
    )
    result = _apply(provider, store, build_graph(make_topology()), sleeps)

    assert not result.ok
    assert set(result.failed) == {"sg"}
    assert isinstance(result.failed["sg"], FatalProviderError)
    assert result.skipped == {"server"}
    assert result.skip_reasons["server"] == "dependency create:sg failed"
    assert result.succeeded == {"vpc", "subnet"}
    assert [call for call in provider.calls_for("create") if call.kind == ResourceKind.INSTANCE] == []
    assert result.outcomes["create:sg"].attempts == 1
    assert store.get("sg").status == ObservedStatus.PENDING


def test_independent_branches_continue_past_a_failure(settings, provider, store, sleeps) -> None:
    graph = build_graph(two_tier_topology(settings))
    provider.fail("create", FatalProviderError("quota", code="InstanceQuotaExceeded"), kind=ResourceKind.DB_INSTANCE)
    result = _apply(provider, store, graph, sleeps)

    assert set(result.failed) == {"db"}
    assert result.skipped == set()
    assert len(result.succeeded) == 20
    assert store.get("web_lb").status == ObservedStatus.CREATED


def test_transient_errors_are_retried_with_exponential_backoff(make_topology, provider, store, sleeps) -> None:
    provider.fail("create", TransientProviderError("slow down", code="Throttling"), kind=ResourceKind.VPC, times=3)
    result = _apply(provider, store, build_graph(make_topology()), sleeps)

    assert result.ok
    assert result.outcomes["create:vpc"].attempts == 4
    assert sleeps == [0.5, 1.0, 2.0]


def test_backoff_delay_is_capped(make_topology, provider, store, sleeps) -> None:
    executor = _executor(provider, store, build_graph(make_topology()), sleeps, backoff_cap_seconds=1.5)
    assert [executor.backoff_delay(attempt) for attempt in range(5)] == [0.5, 1.0, 1.5, 1.5, 1.5]


def test_retries_are_bounded(make_topology, provider, store, sleeps) -> None:
    provider.fail("create", TransientProviderError("still busy", code="RequestLimitExceeded"), kind=ResourceKind.VPC)
    result = _apply(provider, store, build_graph(make_topology()), sleeps, max_attempts=3)

    assert set(result.failed) == {"vpc"}
    assert result.outcomes["create:vpc"].attempts == 3
    assert len(sleeps) == 2
    assert result.skipped == {"subnet", "sg", "server"}
    assert len(provider.calls_for("create")) == 3


def test_cancel_lets_in_flight_work_finish_and_skips_the_rest(make_topology, provider, store, sleeps) -> None:
    graph = build_graph(make_topology())
    executor = _executor(provider, store, graph, sleeps)

    def cancel_on_vpc(operation, kind, name):
        if operation == "create" and kind == ResourceKind.VPC:
            executor.cancel()

    provider.on_call = cancel_on_vpc
    result = executor.apply(plan(graph, store.load()))

    assert result.cancelled
    assert result.succeeded == {"vpc"}
    assert result.skipped == {"subnet", "sg", "server"}
    assert set(result.skip_reasons.values()) == {CANCELLED_REASON}
    assert len(provider.calls_for("create")) == 1
    assert store.get("vpc").status == ObservedStatus.CREATED


def test_worker_pool_bounds_concurrency(settings, store, sleeps) -> None:
    from topology_reconciler.providers import InMemoryProvider

    slow = InMemoryProvider(latency_seconds=0.01)
    result = _apply(slow, store, build_graph(two_tier_topology(settings)), sleeps, max_workers=2)
    assert result.ok
    assert 1 <= slow.max_in_flight <= 2


def test_update_of_vanished_resource_recreates_it(make_topology, provider, store, sleeps) -> None:
    _apply(provider, store, build_graph(make_topology()), sleeps)
    old_id = store.get("server").provider_id
    provider.vanish(old_id)

    graph = build_graph(make_topology(overrides={"server": {"instance_type": "t3.large"}}))
    result = _apply(provider, store, graph, sleeps)

    assert result.ok
    record = store.get("server")
    assert record.provider_id != old_id
    assert record.attributes["instance_type"] == "t3.large"
    assert len([c for c in provider.calls_for("create") if c.kind == ResourceKind.INSTANCE]) == 2


def test_delete_of_vanished_resource_succeeds(make_topology, provider, store, sleeps) -> None:
    _apply(provider, store, build_graph(make_topology()), sleeps)
    provider.vanish(store.get("server").provider_id)

    empty = Graph([], [])
    result = _apply(provider, store, empty, sleeps)

    assert result.ok
    assert result.succeeded == {"vpc", "subnet", "sg", "server"}
    assert store.load() == {}
    assert provider.resources() == {}


def test_replace_recreates_dependents_against_the_new_parent(make_topology, provider, store, sleeps) -> None:
    _apply(provider, store, build_graph(make_topology()), sleeps)
    old_subnet = store.get("subnet").provider_id
    old_server = store.get("server").provider_id

    graph = build_graph(make_topology(overrides={"subnet": {"cidr_block": "10.0.9.0/24"}}))
    result = _apply(provider, store, graph, sleeps)

    assert result.ok
    subnet = store.get("subnet")
    server = store.get("server")
    assert subnet.provider_id != old_subnet
    assert server.provider_id != old_server
    assert server.attributes["subnet_id"] == subnet.provider_id
    assert old_subnet not in provider.resources()


def test_pending_record_reuses_its_client_token(make_topology, provider, store, sleeps) -> None:
    graph = build_graph(make_topology(drop={"subnet", "sg", "server"}))
    vpc = graph.nodes["vpc"]
    # The provider created the VPC but the run died before recording it.
    provider.create(ResourceKind.VPC, dict(vpc.desired_attributes), client_token="tok-1")
    store.save(
        ObservedResource(
            node_id="vpc",
            kind=ResourceKind.VPC,
            desired_attributes=vpc.desired_attributes,
            client_token="tok-1",
            status=ObservedStatus.PENDING,
        )
    )

    result = _apply(provider, store, graph, sleeps)

    assert result.ok
    assert len(provider.resources(ResourceKind.VPC)) == 1
    assert store.get("vpc").client_token == "tok-1"


def test_illegal_state_transition_raises() -> None:
    tracker = NodeStateTracker({"vpc": NodeState.CREATED})
    tracker.transition("vpc", NodeState.UPDATING)
    tracker.transition("vpc", NodeState.CREATED)
    with pytest.raises(StateTransitionError):
        tracker.transition("vpc", NodeState.CREATING)
    with pytest.raises(StateTransitionError):
        tracker.transition("new", NodeState.CREATED)


def test_executor_rejects_actions_waiting_on_unknown_actions(make_topology, provider, store, sleeps) -> None:
    graph = build_graph(make_topology())
    actions = plan(graph, {})
    with pytest.raises(ValueError):
        _executor(provider, store, graph, sleeps).apply(actions[1:])


def test_failed_update_marks_the_record_degraded(make_topology, provider, store, sleeps) -> None:
    _apply(provider, store, build_graph(make_topology()), sleeps)
    error = FatalProviderError("bad size", code="InvalidParameterValue")
    provider.fail("update", error, kind=ResourceKind.INSTANCE, times=1)

    resized = build_graph(make_topology(overrides={"server": {"instance_type": "t3.large"}}))
    result = _apply(provider, store, resized, sleeps)
    assert set(result.failed) == {"server"}
    assert store.get("server").status == ObservedStatus.DEGRADED

    graph = build_graph(make_topology())
    assert [action.action_id for action in plan(graph, store.load())] == ["update:server"]
    assert _apply(provider, store, graph, sleeps).ok
    assert store.get("server").status == ObservedStatus.CREATED


def test_unexpected_errors_fail_only_their_node(make_topology, provider, store, sleeps) -> None:
    def broken_disk(operation, kind, name):
        if operation == "create" and kind == ResourceKind.SECURITY_GROUP:
            raise OSError("No space left on device")

    provider.on_call = broken_disk
    result = _apply(provider, store, build_graph(make_topology()), sleeps)

    assert isinstance(result.failed["sg"], OSError)
    assert result.succeeded == {"vpc", "subnet"}
    assert result.skip_reasons == {"server": "dependency create:sg failed"}
    assert result.outcomes["create:sg"].state == NodeState.FAILED


def _record_unconfirmed_vpc(provider, store, graph, *, created: bool) -> None:
    vpc = graph.nodes["vpc"]
    if created:
        provider.create(ResourceKind.VPC, dict(vpc.desired_attributes), client_token="tok-1")
    store.save(
        ObservedResource(
            node_id="vpc",
            kind=ResourceKind.VPC,
            desired_attributes=vpc.desired_attributes,
            client_token="tok-1",
            status=ObservedStatus.PENDING,
        )
    )


def test_deleting_a_pending_record_deletes_what_its_create_made(make_topology, provider, store, sleeps) -> None:
    graph = build_graph(make_topology(drop={"subnet", "sg", "server"}))
    _record_unconfirmed_vpc(provider, store, graph, created=True)

    result = _apply(provider, store, Graph([], []), sleeps)

    assert result.ok
    assert result.succeeded == {"vpc"}
    assert store.load() == {}
    assert provider.resources() == {}
    assert [call.operation for call in provider.calls if call.kind == ResourceKind.VPC] == ["create", "find", "delete"]


def test_deleting_a_pending_record_without_a_resource_only_forgets_it(
    make_topology, provider, store, sleeps
) -> None:
    graph = build_graph(make_topology(drop={"subnet", "sg", "server"}))
    _record_unconfirmed_vpc(provider, store, graph, created=False)

    result = _apply(provider, store, Graph([], []), sleeps)

    assert result.ok
    assert store.load() == {}
    assert provider.calls_for("delete") == []
    assert len(provider.calls_for("find")) == 1


def test_pending_delete_keeps_the_record_when_the_provider_delete_fails(
    make_topology, provider, store, sleeps
) -> None:
    graph = build_graph(make_topology(drop={"subnet", "sg", "server"}))
    _record_unconfirmed_vpc(provider, store, graph, created=True)
    provider.fail("delete", FatalProviderError("denied", code="UnauthorizedOperation"), kind=ResourceKind.VPC)

    result = _apply(provider, store, Graph([], []), sleeps)

    assert set(result.failed) == {"vpc"}
    record = store.get("vpc")
    assert record.status == ObservedStatus.CREATED
    assert record.provider_id in provider.resources(ResourceKind.VPC)
