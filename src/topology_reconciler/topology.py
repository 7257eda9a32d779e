"""The fixed two-tier topology and YAML topology loading.

One VPC with two public and two private subnets, an internet-facing
application load balancer in front of two web instances, and a database in
the private subnets that only the web tier can reach.
"""

from __future__ import annotations

import ipaddress
import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from .errors import InvalidNodeError
from .models import NodeSpec, OutputSpec, ResourceKind, TopologySpec
from .settings import RuntimeSettings

logger = logging.getLogger(__name__)

_ELB_NAME_LIMIT = 32

_USER_DATA_TEMPLATE = """#!/bin/bash
set -euo pipefail
dnf install -y httpd
TOKEN=$(curl -s -X PUT "http://169.254.169.254/latest/api/token" -H "X-aws-ec2-metadata-token-ttl-seconds: 300")
INSTANCE_ID=$(curl -s -H "X-aws-ec2-metadata-token: $TOKEN" http://169.254.169.254/latest/meta-data/instance-id)
cat > /var/www/html/index.html <<EOF
<html>
  <head><title>{project_id}</title></head>
  <body>
    <h1>{server_name}</h1>
    <p>Instance: $INSTANCE_ID</p>
    <p>Availability zone: {availability_zone}</p>
  </body>
</html>
EOF
systemctl enable --now httpd
"""


def render_user_data(*, project_id: str, server_name: str, availability_zone: str) -> str:
    """Bootstrap script that serves a page identifying the instance."""
    return _USER_DATA_TEMPLATE.format(
        project_id=project_id,
        server_name=server_name,
        availability_zone=availability_zone,
    )


def _limited_name(project_id: str, suffix: str, limit: int = _ELB_NAME_LIMIT) -> str:
    head = project_id[: max(1, limit - len(suffix) - 1)].rstrip("-")
    return f"{head}-{suffix}"


def _subnet_cidrs(vpc_cidr: str) -> list[str]:
    network = ipaddress.ip_network(vpc_cidr)
    new_prefix = min(network.prefixlen + 8, 28)
    blocks = list(network.subnets(new_prefix=new_prefix))
    return [str(block) for block in blocks[1:5]]


def _tags(settings: RuntimeSettings, name: str, tier: str) -> dict[str, str]:
    return {"Name": f"{settings.project_id}-{name}", "Project": settings.project_id, "Tier": tier}


def two_tier_topology(settings: RuntimeSettings) -> TopologySpec:
    """Declare the 21-node two-tier topology for *settings*."""
    project = settings.project_id
    az_a, az_b = settings.availability_zones
    public_a, public_b, private_a, private_b = _subnet_cidrs(settings.vpc_cidr)

    def node(node_id: str, kind: ResourceKind, **attributes: Any) -> NodeSpec:
        return NodeSpec(id=node_id, kind=kind, attributes=attributes)

    nodes = [
        node(
            "vpc",
            ResourceKind.VPC,
            cidr_block=settings.vpc_cidr,
            enable_dns_support=True,
            enable_dns_hostnames=True,
            tags=_tags(settings, "vpc", "network"),
        ),
        node(
            "public_subnet_1",
            ResourceKind.SUBNET,
            vpc_id="ref:vpc",
            cidr_block=public_a,
            availability_zone=az_a,
            map_public_ip_on_launch=True,
            tags=_tags(settings, "public-1", "public"),
        ),
        node(
            "public_subnet_2",
            ResourceKind.SUBNET,
            vpc_id="ref:vpc",
            cidr_block=public_b,
            availability_zone=az_b,
            map_public_ip_on_launch=True,
            tags=_tags(settings, "public-2", "public"),
        ),
        node(
            "private_subnet_1",
            ResourceKind.SUBNET,
            vpc_id="ref:vpc",
            cidr_block=private_a,
            availability_zone=az_a,
            tags=_tags(settings, "private-1", "private"),
        ),
        node(
            "private_subnet_2",
            ResourceKind.SUBNET,
            vpc_id="ref:vpc",
            cidr_block=private_b,
            availability_zone=az_b,
            tags=_tags(settings, "private-2", "private"),
        ),
        node("igw", ResourceKind.INTERNET_GATEWAY, vpc_id="ref:vpc", tags=_tags(settings, "igw", "network")),
        node(
            "public_rt",
            ResourceKind.ROUTE_TABLE,
            vpc_id="ref:vpc",
            routes=[{"destination_cidr_block": "0.0.0.0/0", "gateway_id": "ref:igw"}],
            tags=_tags(settings, "public-rt", "public"),
        ),
        node(
            "public_rta_1",
            ResourceKind.ROUTE_TABLE_ASSOCIATION,
            subnet_id="ref:public_subnet_1",
            route_table_id="ref:public_rt",
        ),
        node(
            "public_rta_2",
            ResourceKind.ROUTE_TABLE_ASSOCIATION,
            subnet_id="ref:public_subnet_2",
            route_table_id="ref:public_rt",
        ),
        node(
            "lb_sg",
            ResourceKind.SECURITY_GROUP,
            name=f"{project}-lb-sg",
            description="HTTP from the internet to the load balancer",
            vpc_id="ref:vpc",
            ingress=[{"protocol": "tcp", "from_port": 80, "to_port": 80, "cidr_blocks": ["0.0.0.0/0"]}],
            tags=_tags(settings, "lb-sg", "public"),
        ),
        node(
            "public_sg",
            ResourceKind.SECURITY_GROUP,
            name=f"{project}-web-sg",
            description="HTTP from the load balancer to the web tier",
            vpc_id="ref:vpc",
            ingress=[{"protocol": "tcp", "from_port": 80, "to_port": 80, "source_security_group_id": "ref:lb_sg"}],
            tags=_tags(settings, "web-sg", "public"),
        ),
        node(
            "private_sg",
            ResourceKind.SECURITY_GROUP,
            name=f"{project}-db-sg",
            description="PostgreSQL from the web tier to the database",
            vpc_id="ref:vpc",
            ingress=[
                {"protocol": "tcp", "from_port": 5432, "to_port": 5432, "source_security_group_id": "ref:public_sg"}
            ],
            tags=_tags(settings, "db-sg", "private"),
        ),
        node(
            "web_lb",
            ResourceKind.LOAD_BALANCER,
            name=_limited_name(project, "alb"),
            load_balancer_type="application",
            internal=False,
            subnets=["ref:public_subnet_1", "ref:public_subnet_2"],
            security_groups=["ref:lb_sg"],
            tags=_tags(settings, "alb", "public"),
        ),
        node(
            "web_tg",
            ResourceKind.TARGET_GROUP,
            name=_limited_name(project, "web-tg"),
            port=80,
            protocol="HTTP",
            target_type="instance",
            vpc_id="ref:vpc",
            health_check={"path": "/", "matcher": "200"},
            tags=_tags(settings, "web-tg", "public"),
        ),
        node(
            "web_listener",
            ResourceKind.LISTENER,
            load_balancer_arn="ref:web_lb.arn",
            port=80,
            protocol="HTTP",
            default_actions=[{"type": "forward", "target_group_arn": "ref:web_tg.arn"}],
        ),
    ]

    for index, (subnet, az) in enumerate((("public_subnet_1", az_a), ("public_subnet_2", az_b)), start=1):
        server_name = f"{project}-web-{index}"
        nodes.append(
            node(
                f"web_{index}",
                ResourceKind.INSTANCE,
                ami=settings.web_ami,
                instance_type=settings.instance_type,
                subnet_id=f"ref:{subnet}",
                vpc_security_group_ids=["ref:public_sg"],
                associate_public_ip_address=True,
                user_data=render_user_data(project_id=project, server_name=server_name, availability_zone=az),
                tags=_tags(settings, f"web-{index}", "public"),
            )
        )
    for index in (1, 2):
        nodes.append(
            node(
                f"web_tg_attachment_{index}",
                ResourceKind.TARGET_GROUP_ATTACHMENT,
                target_group_arn="ref:web_tg.arn",
                target_id=f"ref:web_{index}",
                port=80,
            )
        )

    db_attributes: dict[str, Any] = {
        "identifier": f"{project}-db",
        "engine": "postgres",
        "engine_version": "16",
        "instance_class": settings.db_instance_class,
        "allocated_storage": 20,
        "storage_encrypted": True,
        "db_name": "appdb",
        "username": settings.db_username,
        "db_subnet_group_name": "ref:db_subnet_group.name",
        "vpc_security_group_ids": ["ref:private_sg"],
        "publicly_accessible": False,
        "skip_final_snapshot": True,
        "tags": _tags(settings, "db", "private"),
    }
    if settings.db_password:
        db_attributes["password"] = settings.db_password
    else:
        db_attributes["manage_master_user_password"] = True

    nodes.extend(
        [
            node(
                "db_subnet_group",
                ResourceKind.DB_SUBNET_GROUP,
                name=f"{project}-db-subnets",
                description="Private subnets for the database tier",
                subnet_ids=["ref:private_subnet_1", "ref:private_subnet_2"],
                tags=_tags(settings, "db-subnets", "private"),
            ),
            NodeSpec(id="db", kind=ResourceKind.DB_INSTANCE, attributes=db_attributes),
        ]
    )

    outputs = [
        OutputSpec(name="load_balancer_dns_name", node_id="web_lb", attribute_path="dns_name"),
        OutputSpec(name="web_1_public_ip", node_id="web_1", attribute_path="public_ip"),
        OutputSpec(name="web_2_public_ip", node_id="web_2", attribute_path="public_ip"),
        OutputSpec(name="database_endpoint", node_id="db", attribute_path="address"),
    ]
    return TopologySpec(name=project, nodes=nodes, outputs=outputs)


def load_topology(path: Path) -> TopologySpec:
    """Load a topology document from YAML.

    Raises:
        FileNotFoundError: If *path* does not exist.
        InvalidNodeError: If the document is not valid YAML or fails validation.
    """
    if not path.is_file():
        raise FileNotFoundError(f"topology file not found: {path}")
    with path.open("r", encoding="utf-8") as handle:
        try:
            data = yaml.safe_load(handle)
        except yaml.YAMLError as exc:
            raise InvalidNodeError("<topology>", f"{path} is not valid YAML: {exc}") from exc
    if not isinstance(data, dict):
        raise InvalidNodeError("<topology>", f"{path} must contain a mapping at the top level")
    try:
        topology = TopologySpec.model_validate(data)
    except ValidationError as exc:
        raise InvalidNodeError("<topology>", f"{path} failed validation: {exc}") from exc
    logger.info("Loaded topology %s with %d nodes from %s", topology.name, len(topology.nodes), path)
    return topology


def dump_topology(topology: TopologySpec) -> str:
    """Render *topology* as YAML that ``load_topology`` reads back."""
    return yaml.safe_dump(topology.model_dump(mode="json"), sort_keys=False)
