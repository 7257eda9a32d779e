import pytest

from topology_reconciler import ReconcileOrchestrator
from topology_reconciler.errors import (
    NodeNotReconciledError,
    StateLockError,
    StateStoreError,
    TransientProviderError,
)
from topology_reconciler.executor import CANCELLED_REASON
from topology_reconciler.models import ObservedResource, ObservedStatus, ResourceKind
from topology_reconciler.state_store import FileStateStore


def _orchestrator(topology, provider, store, settings):
    return ReconcileOrchestrator(
        topology=topology,
        provider=provider,
        store=store,
        settings=settings,
        sleep=lambda _seconds: None,
    )


def test_refresh_records_live_attributes_without_planning_changes(
    make_topology, provider, store, settings
) -> None:
    orchestrator = _orchestrator(make_topology(), provider, store, settings)
    assert orchestrator.apply().ok
    server_id = store.get("server").provider_id
    provider.drift(server_id, instance_type="t3.xlarge")

    report = orchestrator.refresh()

    assert report.drifted == ["server"]
    assert report.vanished == []
    assert sorted(report.refreshed) == ["server", "sg", "subnet", "vpc"]
    assert store.get("server").attributes["instance_type"] == "t3.xlarge"
    assert orchestrator.plan().actions == []


def test_refresh_drops_vanished_resources_so_they_are_recreated(make_topology, provider, store, settings) -> None:
    orchestrator = _orchestrator(make_topology(), provider, store, settings)
    orchestrator.apply()
    provider.vanish(store.get("server").provider_id)

    report = orchestrator.refresh()
    assert report.vanished == ["server"]
    assert store.get("server") is None

    assert [action.action_id for action in orchestrator.plan().actions] == ["create:server"]
    assert orchestrator.apply().ok
    assert store.get("server").status == ObservedStatus.CREATED


def test_mutating_operations_hold_the_run_lock(make_topology, provider, store, settings) -> None:
    orchestrator = _orchestrator(make_topology(), provider, store, settings)
    with store.run_lock():
        with pytest.raises(StateLockError):
            orchestrator.apply()
        with pytest.raises(StateLockError):
            orchestrator.destroy()
        with pytest.raises(StateLockError):
            orchestrator.refresh()
    assert provider.calls == []


def test_outputs_require_a_reconciled_node(make_topology, provider, store, settings) -> None:
    orchestrator = _orchestrator(make_topology(), provider, store, settings)
    with pytest.raises(NodeNotReconciledError):
        orchestrator.outputs()
    orchestrator.apply()
    assert orchestrator.outputs()["server_ip"].startswith("54.0.")


def test_destroy_on_empty_state_does_nothing(make_topology, provider, store, settings) -> None:
    result = _orchestrator(make_topology(), provider, store, settings).destroy()
    assert result.ok
    assert provider.calls == []


def test_run_report_is_persisted_for_file_stores(make_topology, provider, settings, tmp_path) -> None:
    store = FileStateStore(tmp_path, project_id=settings.project_id)
    orchestrator = _orchestrator(make_topology(), provider, store, settings)
    result = orchestrator.apply()
    orchestrator.write_report(result, run_id="first")

    report = store.runs_dir / "first.json"
    assert report.is_file()
    assert '"vpc"' in report.read_text(encoding="utf-8")


def test_refresh_reports_unreadable_nodes_and_keeps_going(make_topology, provider, store, settings) -> None:
    orchestrator = _orchestrator(make_topology(), provider, store, settings)
    assert orchestrator.apply().ok
    subnet_before = store.get("subnet")
    provider.fail("read", TransientProviderError("Rate exceeded", code="Throttling"), kind=ResourceKind.SUBNET)
    provider.fail(
        "read",
        TransientProviderError("Rate exceeded", code="Throttling"),
        kind=ResourceKind.SECURITY_GROUP,
        times=1,
    )

    report = orchestrator.refresh()

    assert list(report.failed) == ["subnet"]
    assert "Rate exceeded" in report.failed["subnet"]
    assert sorted(report.refreshed) == ["server", "sg", "vpc"]
    assert store.get("subnet") == subnet_before
    assert len([call for call in provider.calls_for("read") if call.kind == ResourceKind.SUBNET]) == settings.max_attempts
    assert report.to_dict()["failed"] == {"subnet": report.failed["subnet"]}


def test_refresh_rejects_a_created_record_without_a_provider_id(make_topology, provider, store, settings) -> None:
    store.save(ObservedResource(node_id="vpc", kind=ResourceKind.VPC, status=ObservedStatus.CREATED))
    orchestrator = _orchestrator(make_topology(), provider, store, settings)

    with pytest.raises(StateStoreError):
        orchestrator.refresh()
    assert provider.calls == []


def test_cancel_during_planning_skips_every_action(make_topology, provider, store, settings, monkeypatch) -> None:
    orchestrator = _orchestrator(make_topology(), provider, store, settings)
    real_plan = orchestrator.plan

    def plan_then_interrupt(**kwargs):
        report = real_plan(**kwargs)
        orchestrator.cancel()
        return report

    monkeypatch.setattr(orchestrator, "plan", plan_then_interrupt)
    result = orchestrator.apply()

    assert result.cancelled
    assert provider.calls == []
    assert result.skipped == {"vpc", "subnet", "sg", "server"}
    assert set(result.skip_reasons.values()) == {CANCELLED_REASON}


def test_a_cancel_from_an_earlier_run_does_not_leak_into_the_next(make_topology, provider, store, settings) -> None:
    orchestrator = _orchestrator(make_topology(), provider, store, settings)
    orchestrator.cancel()

    assert orchestrator.apply().ok
