from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from .canonical import canonical_equal
from .models import ResourceKind


@dataclass(frozen=True)
class KindSchema:
    """Attribute policy for one resource kind.

    ``immutable`` attributes force a replace (delete then create) when they
    change; every other attribute is updated in place.
    """

    kind: ResourceKind
    required: frozenset[str]
    immutable: frozenset[str]


def _schema(kind: ResourceKind, *, required: set[str], immutable: set[str]) -> KindSchema:
    return KindSchema(kind=kind, required=frozenset(required), immutable=frozenset(immutable))


# Mirrors what the EC2, ELBv2 and RDS APIs allow to be modified in place.
CATALOG: dict[ResourceKind, KindSchema] = {
    schema.kind: schema
    for schema in (
        _schema(ResourceKind.VPC, required={"cidr_block"}, immutable={"cidr_block", "instance_tenancy"}),
        _schema(
            ResourceKind.SUBNET,
            required={"vpc_id", "cidr_block", "availability_zone"},
            immutable={"vpc_id", "cidr_block", "availability_zone"},
        ),
        _schema(ResourceKind.INTERNET_GATEWAY, required={"vpc_id"}, immutable=set()),
        _schema(ResourceKind.ROUTE_TABLE, required={"vpc_id"}, immutable={"vpc_id"}),
        _schema(
            ResourceKind.ROUTE_TABLE_ASSOCIATION,
            required={"subnet_id", "route_table_id"},
            immutable={"subnet_id"},
        ),
        _schema(
            ResourceKind.SECURITY_GROUP,
            required={"name", "vpc_id"},
            immutable={"name", "description", "vpc_id"},
        ),
        _schema(
            ResourceKind.LOAD_BALANCER,
            required={"name", "subnets", "security_groups"},
            immutable={"name", "internal", "load_balancer_type"},
        ),
        _schema(
            ResourceKind.TARGET_GROUP,
            required={"name", "port", "protocol", "vpc_id"},
            immutable={"name", "port", "protocol", "vpc_id", "target_type"},
        ),
        _schema(
            ResourceKind.LISTENER,
            required={"load_balancer_arn", "port", "protocol", "default_actions"},
            immutable={"load_balancer_arn"},
        ),
        _schema(
            ResourceKind.TARGET_GROUP_ATTACHMENT,
            required={"target_group_arn", "target_id"},
            immutable={"target_group_arn", "target_id", "port"},
        ),
        _schema(
            ResourceKind.INSTANCE,
            required={"ami", "instance_type", "subnet_id"},
            immutable={"ami", "subnet_id", "user_data", "key_name", "associate_public_ip_address"},
        ),
        _schema(
            ResourceKind.DB_SUBNET_GROUP,
            required={"name", "subnet_ids"},
            immutable={"name"},
        ),
        _schema(
            ResourceKind.DB_INSTANCE,
            required={"identifier", "engine", "instance_class", "allocated_storage", "db_subnet_group_name"},
            immutable={"identifier", "engine", "db_name", "username", "db_subnet_group_name", "storage_encrypted"},
        ),
    )
}


def schema_for(kind: ResourceKind) -> KindSchema:
    return CATALOG[kind]


def missing_required(kind: ResourceKind, attributes: dict[str, Any]) -> list[str]:
    return sorted(name for name in schema_for(kind).required if name not in attributes)


def changed_attributes(old: dict[str, Any], new: dict[str, Any]) -> list[str]:
    """Top-level attribute names whose canonical values differ (including added/removed)."""
    changed: list[str] = []
    for name in sorted(set(old) | set(new)):
        if name not in old or name not in new or not canonical_equal(old[name], new[name]):
            changed.append(name)
    return changed


def split_changes(kind: ResourceKind, changed: list[str]) -> tuple[list[str], list[str]]:
    """Partition changed attribute names into ``(mutable, immutable)``."""
    immutable = schema_for(kind).immutable
    return (
        [name for name in changed if name not in immutable],
        [name for name in changed if name in immutable],
    )
