from pathlib import Path

import pytest

from topology_reconciler.settings import RuntimeSettings

ENV_VARS = [
    "RECONCILER_STATE_STORE_ROOT",
    "RECONCILER_PROJECT_ID",
    "RECONCILER_REGION",
    "RECONCILER_PROVIDER",
    "RECONCILER_MAX_WORKERS",
    "RECONCILER_MAX_ATTEMPTS",
    "RECONCILER_BACKOFF_BASE_SECONDS",
    "RECONCILER_BACKOFF_CAP_SECONDS",
    "RECONCILER_WAIT_FOR_READY",
    "RECONCILER_TOPOLOGY_PATH",
    "RECONCILER_VPC_CIDR",
    "RECONCILER_DB_PASSWORD",
    "AWS_REGION",
]


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


def test_defaults() -> None:
    settings = RuntimeSettings.from_env()
    assert settings.project_id == "two-tier"
    assert settings.region == "us-east-1"
    assert settings.provider == "memory"
    assert settings.max_workers == 4
    assert settings.availability_zones == ("us-east-1a", "us-east-1b")


def test_runtime_settings_from_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("RECONCILER_PROJECT_ID", "Shop-Prod")
    monkeypatch.setenv("AWS_REGION", "eu-west-2")
    monkeypatch.setenv("RECONCILER_PROVIDER", "AWS")
    monkeypatch.setenv("RECONCILER_MAX_WORKERS", "8")
    monkeypatch.setenv("RECONCILER_BACKOFF_BASE_SECONDS", "2")
    monkeypatch.setenv("RECONCILER_BACKOFF_CAP_SECONDS", "1")
    monkeypatch.setenv("RECONCILER_WAIT_FOR_READY", "no")
    monkeypatch.setenv("RECONCILER_VPC_CIDR", "172.16.0.0/20")

    settings = RuntimeSettings.from_env()
    assert settings.project_id == "shop-prod"
    assert settings.region == "eu-west-2"
    assert settings.provider == "aws"
    assert settings.max_workers == 8
    assert settings.backoff_cap_seconds == 2.0
    assert settings.wait_for_ready is False
    assert settings.vpc_cidr == "172.16.0.0/20"


def test_explicit_region_wins_over_aws_region(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("AWS_REGION", "eu-west-2")
    monkeypatch.setenv("RECONCILER_REGION", "ap-southeast-1")
    assert RuntimeSettings.from_env().region == "ap-southeast-1"


@pytest.mark.parametrize(
    ("name", "value"),
    [
        ("RECONCILER_PROJECT_ID", "9lives"),
        ("RECONCILER_REGION", "mars-north"),
        ("RECONCILER_PROVIDER", "gcp"),
        ("RECONCILER_MAX_WORKERS", "0"),
        ("RECONCILER_MAX_ATTEMPTS", "many"),
        ("RECONCILER_WAIT_FOR_READY", "maybe"),
        ("RECONCILER_VPC_CIDR", "10.0.0.0/8"),
        ("RECONCILER_VPC_CIDR", "not-a-cidr"),
    ],
)
def test_invalid_values_fail_fast(monkeypatch: pytest.MonkeyPatch, name: str, value: str) -> None:
    monkeypatch.setenv(name, value)
    with pytest.raises(ValueError):
        RuntimeSettings.from_env()


def test_paths_resolve_against_repo_root(tmp_path: Path) -> None:
    settings = RuntimeSettings(state_store_root="state", topology_path="topology.yaml")
    assert settings.state_store_path(tmp_path) == tmp_path / "state"
    assert settings.topology_file(tmp_path) == tmp_path / "topology.yaml"
    assert RuntimeSettings().topology_file(tmp_path) is None
    absolute = tmp_path / "abs"
    assert RuntimeSettings(state_store_root=str(absolute)).state_store_path(Path("/elsewhere")) == absolute
