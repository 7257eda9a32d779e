from __future__ import annotations

import ipaddress
import os
import re
from dataclasses import dataclass, replace
from pathlib import Path

_PROJECT_ID_RE = re.compile(r"^[a-z][a-z0-9-]{0,30}[a-z0-9]$")
_REGION_RE = re.compile(r"^[a-z]{2}(-gov)?-[a-z]+-\d$")
_PROVIDERS = frozenset({"memory", "aws"})


@dataclass(frozen=True)
class RuntimeSettings:
    """Runtime settings loaded from environment with fail-fast validation."""

    state_store_root: str = "state_store"
    project_id: str = "two-tier"
    region: str = "us-east-1"
    provider: str = "memory"
    max_workers: int = 4
    max_attempts: int = 5
    backoff_base_seconds: float = 0.5
    backoff_cap_seconds: float = 20.0
    wait_for_ready: bool = True
    topology_path: str = ""
    vpc_cidr: str = "10.0.0.0/16"
    web_ami: str = "ami-0c02fb55956c7d316"
    instance_type: str = "t3.micro"
    db_instance_class: str = "db.t3.micro"
    db_username: str = "appadmin"
    db_password: str = ""

    @classmethod
    def from_env(cls) -> "RuntimeSettings":
        return cls(
            state_store_root=os.getenv("RECONCILER_STATE_STORE_ROOT", "state_store"),
            project_id=os.getenv("RECONCILER_PROJECT_ID", "two-tier"),
            region=os.getenv("RECONCILER_REGION", os.getenv("AWS_REGION", "us-east-1")),
            provider=os.getenv("RECONCILER_PROVIDER", "memory"),
            max_workers=_get_env_int("RECONCILER_MAX_WORKERS", default=4, minimum=1, maximum=64),
            max_attempts=_get_env_int("RECONCILER_MAX_ATTEMPTS", default=5, minimum=1, maximum=50),
            backoff_base_seconds=_get_env_float("RECONCILER_BACKOFF_BASE_SECONDS", default=0.5, minimum=0.0),
            backoff_cap_seconds=_get_env_float("RECONCILER_BACKOFF_CAP_SECONDS", default=20.0, minimum=0.0),
            wait_for_ready=_get_env_bool("RECONCILER_WAIT_FOR_READY", default=True),
            topology_path=os.getenv("RECONCILER_TOPOLOGY_PATH", ""),
            vpc_cidr=os.getenv("RECONCILER_VPC_CIDR", "10.0.0.0/16"),
            web_ami=os.getenv("RECONCILER_WEB_AMI", "ami-0c02fb55956c7d316"),
            instance_type=os.getenv("RECONCILER_INSTANCE_TYPE", "t3.micro"),
            db_instance_class=os.getenv("RECONCILER_DB_INSTANCE_CLASS", "db.t3.micro"),
            db_username=os.getenv("RECONCILER_DB_USERNAME", "appadmin"),
            db_password=os.getenv("RECONCILER_DB_PASSWORD", ""),
        ).normalized()

    def normalized(self) -> "RuntimeSettings":
        """Validate and normalize all fields. Raises ValueError on invalid configuration."""
        project_id = self.project_id.strip().lower()
        if not _PROJECT_ID_RE.match(project_id):
            raise ValueError(
                "RECONCILER_PROJECT_ID must be 2-32 chars of lowercase letters, digits and '-', "
                f"starting with a letter, got: {self.project_id!r}"
            )

        region = self.region.strip().lower()
        if not _REGION_RE.match(region):
            raise ValueError(f"RECONCILER_REGION is not a valid AWS region name: {self.region!r}")

        provider = self.provider.strip().lower()
        if provider not in _PROVIDERS:
            raise ValueError(f"RECONCILER_PROVIDER must be one of: {', '.join(sorted(_PROVIDERS))}")

        if not self.state_store_root.strip():
            raise ValueError("RECONCILER_STATE_STORE_ROOT must be non-empty")

        try:
            network = ipaddress.ip_network(self.vpc_cidr.strip())
        except ValueError as exc:
            raise ValueError(f"RECONCILER_VPC_CIDR is not a valid CIDR block: {self.vpc_cidr!r}") from exc
        if network.version != 4 or not 16 <= network.prefixlen <= 24:
            raise ValueError(f"RECONCILER_VPC_CIDR must be an IPv4 block between /16 and /24, got: {network}")

        for env_name, value in (
            ("RECONCILER_WEB_AMI", self.web_ami),
            ("RECONCILER_INSTANCE_TYPE", self.instance_type),
            ("RECONCILER_DB_INSTANCE_CLASS", self.db_instance_class),
            ("RECONCILER_DB_USERNAME", self.db_username),
        ):
            if not value.strip():
                raise ValueError(f"{env_name} must be non-empty")

        cap = max(self.backoff_cap_seconds, self.backoff_base_seconds)
        return replace(
            self,
            project_id=project_id,
            region=region,
            provider=provider,
            vpc_cidr=str(network),
            web_ami=self.web_ami.strip(),
            instance_type=self.instance_type.strip(),
            db_instance_class=self.db_instance_class.strip(),
            db_username=self.db_username.strip(),
            backoff_cap_seconds=cap,
        )

    @property
    def availability_zones(self) -> tuple[str, str]:
        return (f"{self.region}a", f"{self.region}b")

    def state_store_path(self, repo_root: Path) -> Path:
        path = Path(self.state_store_root)
        return path if path.is_absolute() else repo_root / path

    def topology_file(self, repo_root: Path) -> Path | None:
        if not self.topology_path.strip():
            return None
        path = Path(self.topology_path)
        return path if path.is_absolute() else repo_root / path


def _get_env_int(name: str, default: int, minimum: int, maximum: int = 10_000_000) -> int:
    """Parse an integer from an environment variable with bounds checking.

    Args:
        name: Environment variable name.
        default: Value to return if the variable is unset.
        minimum: Inclusive lower bound.
        maximum: Inclusive upper bound.

    Returns:
        The parsed integer, guaranteed to be within [minimum, maximum].

    Raises:
        ValueError: If the value is not an integer or is outside bounds.
    """
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        parsed = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got: {raw!r}") from exc
    if parsed < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {parsed}")
    if parsed > maximum:
        raise ValueError(f"{name} must be <= {maximum}, got: {parsed}")
    return parsed


def _get_env_float(name: str, default: float, minimum: float, maximum: float = 3_600.0) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        parsed = float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number, got: {raw!r}") from exc
    if not minimum <= parsed <= maximum:
        raise ValueError(f"{name} must be within [{minimum}, {maximum}], got: {parsed}")
    return parsed


def _get_env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    lowered = raw.strip().lower()
    if lowered in {"1", "true", "yes", "on"}:
        return True
    if lowered in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"{name} must be a boolean (true/false), got: {raw!r}")
