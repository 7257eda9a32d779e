import json
from pathlib import Path

import pytest

from topology_reconciler.__main__ import main
from topology_reconciler.errors import TransientProviderError
from topology_reconciler.models import ResourceKind
from topology_reconciler.providers import InMemoryProvider


@pytest.fixture(autouse=True)
def _isolated_cwd(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    for name in ("RECONCILER_PROVIDER", "RECONCILER_PROJECT_ID", "RECONCILER_TOPOLOGY_PATH", "RECONCILER_STATE_STORE_ROOT"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(tmp_path)


def _args(mode: str, tmp_path: Path, *extra: str) -> list[str]:
    return [mode, "--provider", "memory", "--state-store-root", str(tmp_path / "state"), *extra]


def test_apply_then_plan_is_empty(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    assert main(_args("apply", tmp_path)) == 0
    runs = list((tmp_path / "state" / "projects" / "two-tier" / "runs").glob("*.json"))
    assert len(runs) == 1
    capsys.readouterr()

    assert main(_args("plan", tmp_path)) == 0
    assert json.loads(capsys.readouterr().out) == {"actions": [], "conflicts": []}

    assert main(_args("outputs", tmp_path)) == 0
    outputs = json.loads(capsys.readouterr().out)
    assert sorted(outputs) == [
        "database_endpoint",
        "load_balancer_dns_name",
        "web_1_public_ip",
        "web_2_public_ip",
    ]


def test_first_plan_lists_every_create(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    assert main(_args("plan", tmp_path)) == 0
    report = json.loads(capsys.readouterr().out)
    assert len(report["actions"]) == 21
    assert {action["kind"] for action in report["actions"]} == {"create"}


def test_outputs_before_apply_fail(tmp_path: Path) -> None:
    assert main(_args("outputs", tmp_path)) == 1


def test_invalid_topology_file_fails_setup(tmp_path: Path) -> None:
    topology = tmp_path / "topology.yaml"
    topology.write_text("nodes:\n  - id: vpc\n    kind: teleporter\n", encoding="utf-8")
    assert main(_args("plan", tmp_path, "--topology-file", str(topology))) == 1


def test_missing_env_file_fails_setup(tmp_path: Path) -> None:
    assert main(_args("plan", tmp_path, "--env-file", str(tmp_path / "absent.env"))) == 1


def test_refresh_with_unreadable_nodes_exits_nonzero(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    provider = InMemoryProvider()
    monkeypatch.setattr("topology_reconciler.__main__.build_provider", lambda _settings: provider)
    monkeypatch.setenv("RECONCILER_MAX_ATTEMPTS", "1")
    assert main(_args("apply", tmp_path)) == 0
    capsys.readouterr()

    provider.fail("read", TransientProviderError("Rate exceeded", code="Throttling"), kind=ResourceKind.SUBNET)
    assert main(_args("refresh", tmp_path)) == 1
    report = json.loads(capsys.readouterr().out)

    assert sorted(report["failed"]) == ["private_subnet_1", "private_subnet_2", "public_subnet_1", "public_subnet_2"]
    assert report["vanished"] == []
