"""boto3-backed provider for the EC2, ELBv2 and RDS APIs.

Creates are made idempotent per kind. EC2 resources carry the client token
as a tag and are looked up by it, ``RunInstances`` takes the token natively,
and load balancers, target groups and RDS objects are looked up by their
unique names. Every botocore ``ClientError`` is classified into the
provider error hierarchy.
"""

from __future__ import annotations

import logging
from typing import Any, Callable

import boto3
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectionClosedError,
    ConnectTimeoutError,
    EndpointConnectionError,
    ReadTimeoutError,
    WaiterError,
)

from ..errors import FatalProviderError, ProviderError, ResourceNotFoundError, TransientProviderError
from ..models import ResourceKind
from ..references import REF_PREFIX
from .base import ProviderResource, ResourceProvider

logger = logging.getLogger(__name__)

CLIENT_TOKEN_TAG = "reconciler:client-token"

TRANSIENT_CODES = frozenset(
    {
        "Throttling",
        "ThrottlingException",
        "RequestLimitExceeded",
        "RequestThrottled",
        "TooManyRequestsException",
        "ServiceUnavailable",
        "InternalError",
        "InternalFailure",
        "DependencyViolation",
        "IncorrectState",
        "InvalidDBInstanceState",
        "InvalidDBSubnetGroupStateFault",
        "ResourceInUse",
    }
)

NOT_FOUND_CODES = frozenset(
    {
        "DBInstanceNotFound",
        "DBSubnetGroupNotFoundFault",
        "LoadBalancerNotFound",
        "TargetGroupNotFound",
        "ListenerNotFound",
        "InvalidTarget",
    }
)

# EC2 kinds whose create tags the resource with the client token.
_TOKEN_TAGGED_KINDS = frozenset(
    {
        ResourceKind.VPC,
        ResourceKind.SUBNET,
        ResourceKind.INTERNET_GATEWAY,
        ResourceKind.ROUTE_TABLE,
        ResourceKind.SECURITY_GROUP,
    }
)

# Network-level failures raised before any API response arrives.
TRANSIENT_BOTOCORE_ERRORS = (
    EndpointConnectionError,
    ConnectTimeoutError,
    ReadTimeoutError,
    ConnectionClosedError,
)


def classify_client_error(exc: ClientError, *, operation: str) -> ProviderError:
    """Map a botocore error onto the provider error hierarchy.

    Not-found codes returned while creating are treated as eventual
    consistency (a just-created parent is not yet visible) and retried.
    """
    error = exc.response.get("Error", {})
    code = str(error.get("Code", "Unknown"))
    message = f"{operation}: {code}: {error.get('Message', str(exc))}"
    status = exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode", 0)

    not_found = code.endswith(".NotFound") or code in NOT_FOUND_CODES
    if not_found:
        if operation == "create":
            return TransientProviderError(message, code=code)
        return ResourceNotFoundError(message, code=code)
    if code in TRANSIENT_CODES or (isinstance(status, int) and status >= 500):
        return TransientProviderError(message, code=code)
    return FatalProviderError(message, code=code)


def _aws_tags(tags: dict[str, Any] | None, client_token: str | None = None) -> list[dict[str, str]]:
    merged = {str(key): str(value) for key, value in (tags or {}).items()}
    if client_token is not None:
        merged[CLIENT_TOKEN_TAG] = client_token
    return [{"Key": key, "Value": value} for key, value in sorted(merged.items())]


def _tag_dict(tags: list[dict[str, str]] | None) -> dict[str, str]:
    return {
        tag["Key"]: tag["Value"]
        for tag in tags or []
        if tag.get("Key") != CLIENT_TOKEN_TAG
    }


def _ip_permissions(rules: list[dict[str, Any]]) -> list[dict[str, Any]]:
    permissions = []
    for rule in rules:
        permission: dict[str, Any] = {
            "IpProtocol": str(rule.get("protocol", "tcp")),
            "FromPort": int(rule["from_port"]),
            "ToPort": int(rule["to_port"]),
        }
        if rule.get("cidr_blocks"):
            permission["IpRanges"] = [{"CidrIp": cidr} for cidr in rule["cidr_blocks"]]
        if rule.get("source_security_group_id"):
            permission["UserIdGroupPairs"] = [{"GroupId": rule["source_security_group_id"]}]
        permissions.append(permission)
    return permissions


def _default_actions(actions: list[dict[str, Any]]) -> list[dict[str, Any]]:
    return [{"Type": action["type"].lower(), "TargetGroupArn": action["target_group_arn"]} for action in actions]


class AwsProvider(ResourceProvider):
    name = "aws"

    def __init__(
        self,
        *,
        region: str,
        session: boto3.session.Session | None = None,
        wait_for_ready: bool = True,
        ec2_client: Any | None = None,
        elbv2_client: Any | None = None,
        rds_client: Any | None = None,
    ) -> None:
        session = session or boto3.session.Session(region_name=region)
        self.region = region
        self.wait_for_ready = wait_for_ready
        self.ec2 = ec2_client or session.client("ec2", region_name=region)
        self.elbv2 = elbv2_client or session.client("elbv2", region_name=region)
        self.rds = rds_client or session.client("rds", region_name=region)

    # ------------------------------------------------------------------
    # ResourceProvider
    # ------------------------------------------------------------------

    def create(self, kind: ResourceKind, spec: dict[str, Any], *, client_token: str) -> ProviderResource:
        handler = self._handler("create", kind)
        provider_id, attributes = self._guard("create", lambda: handler(spec, client_token))
        logger.info("Created %s %s", kind.value, provider_id)
        return ProviderResource(provider_id, {**spec, **attributes, "id": provider_id})

    def read(self, kind: ResourceKind, provider_id: str) -> dict[str, Any]:
        handler = self._handler("read", kind)
        attributes = self._guard("read", lambda: handler(provider_id))
        if attributes is None:
            raise ResourceNotFoundError(f"{kind.value} {provider_id} not found", code="NotFound")
        return {**attributes, "id": provider_id}

    def find(self, kind: ResourceKind, spec: dict[str, Any], *, client_token: str) -> str | None:
        return self._guard("read", lambda: self._lookup(kind, spec, client_token))

    def update(
        self,
        kind: ResourceKind,
        provider_id: str,
        spec: dict[str, Any],
        *,
        changed: list[str],
    ) -> dict[str, Any]:
        handler = self._handler("update", kind)
        fields = set(changed or spec)
        self._guard("update", lambda: handler(provider_id, spec, fields))
        return {**self.read(kind, provider_id), **spec, "id": provider_id}

    def delete(self, kind: ResourceKind, provider_id: str) -> None:
        handler = self._handler("delete", kind)
        self._guard("delete", lambda: handler(provider_id))
        logger.info("Deleted %s %s", kind.value, provider_id)

    # ------------------------------------------------------------------
    # Plumbing
    # ------------------------------------------------------------------

    def _handler(self, operation: str, kind: ResourceKind) -> Callable[..., Any]:
        handler = getattr(self, f"_{operation}_{kind.value}", None)
        if handler is None:
            if operation == "update":
                return self._update_tags_only
            raise FatalProviderError(f"{operation} is not supported for {kind.value}", code="Unsupported")
        return handler

    @staticmethod
    def _guard(operation: str, call: Callable[[], Any]) -> Any:
        try:
            return call()
        except ClientError as exc:
            raise classify_client_error(exc, operation=operation) from exc
        except WaiterError as exc:
            raise TransientProviderError(f"{operation}: waiter {exc.name} failed: {exc.last_response}", code="WaiterError") from exc
        except TRANSIENT_BOTOCORE_ERRORS as exc:
            raise TransientProviderError(f"{operation}: {exc}", code=type(exc).__name__) from exc
        except BotoCoreError as exc:
            raise FatalProviderError(f"{operation}: {exc}", code=type(exc).__name__) from exc

    def _wait(self, client: Any, waiter_name: str, *, required: bool = False, **kwargs: Any) -> None:
        """Block on a boto3 waiter; ``required`` waits even when readiness waits are disabled."""
        if not (self.wait_for_ready or required):
            return
        client.get_waiter(waiter_name).wait(**kwargs, WaiterConfig={"Delay": 15, "MaxAttempts": 80})

    def _find_tagged(self, client_token: str) -> str | None:
        response = self.ec2.describe_tags(
            Filters=[
                {"Name": "key", "Values": [CLIENT_TOKEN_TAG]},
                {"Name": "value", "Values": [client_token]},
            ]
        )
        for tag in response.get("Tags", []):
            return tag["ResourceId"]
        return None

    def _tag_spec(self, resource_type: str, spec: dict[str, Any], client_token: str) -> list[dict[str, Any]]:
        return [{"ResourceType": resource_type, "Tags": _aws_tags(spec.get("tags"), client_token)}]

    def _update_tags_only(self, provider_id: str, spec: dict[str, Any], fields: set[str]) -> None:
        if "tags" in fields:
            self.ec2.create_tags(Resources=[provider_id], Tags=_aws_tags(spec.get("tags")))

    # ------------------------------------------------------------------
    # Unconfirmed creates
    # ------------------------------------------------------------------

    def _lookup(self, kind: ResourceKind, spec: dict[str, Any], client_token: str) -> str | None:
        if kind in _TOKEN_TAGGED_KINDS:
            return self._find_tagged(client_token)
        if kind == ResourceKind.INSTANCE:
            return self._lookup_instance(client_token)

        # The remaining kinds are identified by a name or by their parents.
        if any(isinstance(value, str) and value.startswith(REF_PREFIX) for value in spec.values()):
            return None
        if kind == ResourceKind.LOAD_BALANCER:
            balancer = self._find_load_balancer(spec["name"])
            return balancer["LoadBalancerArn"] if balancer else None
        if kind == ResourceKind.TARGET_GROUP:
            try:
                groups = self.elbv2.describe_target_groups(Names=[spec["name"]]).get("TargetGroups", [])
            except ClientError as exc:
                if exc.response.get("Error", {}).get("Code") != "TargetGroupNotFound":
                    raise
                return None
            return groups[0]["TargetGroupArn"] if groups else None
        if kind == ResourceKind.LISTENER:
            listeners = self.elbv2.describe_listeners(LoadBalancerArn=spec["load_balancer_arn"]).get("Listeners", [])
            matching = [listener["ListenerArn"] for listener in listeners if listener.get("Port") == int(spec["port"])]
            return matching[0] if matching else None
        if kind == ResourceKind.ROUTE_TABLE_ASSOCIATION:
            tables = self.ec2.describe_route_tables(RouteTableIds=[spec["route_table_id"]]).get("RouteTables", [])
            for association in tables[0].get("Associations", []) if tables else []:
                if association.get("SubnetId") == spec["subnet_id"]:
                    return association["RouteTableAssociationId"]
            return None
        if kind == ResourceKind.TARGET_GROUP_ATTACHMENT:
            attachment_id = self._attachment_id(spec["target_group_arn"], spec["target_id"], spec.get("port"))
            return attachment_id if self._read_target_group_attachment(attachment_id) else None
        if kind == ResourceKind.DB_SUBNET_GROUP:
            return spec["name"] if self._read_db_subnet_group(spec["name"]) else None
        if kind == ResourceKind.DB_INSTANCE:
            return spec["identifier"] if self._read_db_instance(spec["identifier"]) else None
        return None

    def _lookup_instance(self, client_token: str) -> str | None:
        reservations = self.ec2.describe_instances(
            Filters=[{"Name": "client-token", "Values": [client_token[:64]]}]
        ).get("Reservations", [])
        for reservation in reservations:
            for instance in reservation.get("Instances", []):
                if instance.get("State", {}).get("Name") not in ("terminated", "shutting-down"):
                    return instance["InstanceId"]
        return None

    # ------------------------------------------------------------------
    # VPC
    # ------------------------------------------------------------------

    def _create_vpc(self, spec: dict[str, Any], client_token: str) -> tuple[str, dict[str, Any]]:
        vpc_id = self._find_tagged(client_token)
        if vpc_id is None:
            response = self.ec2.create_vpc(
                CidrBlock=spec["cidr_block"],
                InstanceTenancy=spec.get("instance_tenancy", "default"),
                TagSpecifications=self._tag_spec("vpc", spec, client_token),
            )
            vpc_id = response["Vpc"]["VpcId"]
            self._wait(self.ec2, "vpc_available", VpcIds=[vpc_id])
        self._update_vpc(vpc_id, spec, {"enable_dns_support", "enable_dns_hostnames"})
        return vpc_id, {}

    def _read_vpc(self, vpc_id: str) -> dict[str, Any] | None:
        vpcs = self.ec2.describe_vpcs(VpcIds=[vpc_id]).get("Vpcs", [])
        if not vpcs:
            return None
        vpc = vpcs[0]
        return {
            "cidr_block": vpc["CidrBlock"],
            "instance_tenancy": vpc.get("InstanceTenancy", "default"),
            "state": vpc.get("State"),
            "tags": _tag_dict(vpc.get("Tags")),
        }

    def _update_vpc(self, vpc_id: str, spec: dict[str, Any], fields: set[str]) -> None:
        # ModifyVpcAttribute accepts one attribute per call.
        if "enable_dns_support" in fields and "enable_dns_support" in spec:
            self.ec2.modify_vpc_attribute(VpcId=vpc_id, EnableDnsSupport={"Value": bool(spec["enable_dns_support"])})
        if "enable_dns_hostnames" in fields and "enable_dns_hostnames" in spec:
            self.ec2.modify_vpc_attribute(
                VpcId=vpc_id, EnableDnsHostnames={"Value": bool(spec["enable_dns_hostnames"])}
            )
        self._update_tags_only(vpc_id, spec, fields)

    def _delete_vpc(self, vpc_id: str) -> None:
        self.ec2.delete_vpc(VpcId=vpc_id)

    # ------------------------------------------------------------------
    # Subnet
    # ------------------------------------------------------------------

    def _create_subnet(self, spec: dict[str, Any], client_token: str) -> tuple[str, dict[str, Any]]:
        subnet_id = self._find_tagged(client_token)
        if subnet_id is None:
            response = self.ec2.create_subnet(
                VpcId=spec["vpc_id"],
                CidrBlock=spec["cidr_block"],
                AvailabilityZone=spec["availability_zone"],
                TagSpecifications=self._tag_spec("subnet", spec, client_token),
            )
            subnet_id = response["Subnet"]["SubnetId"]
        if spec.get("map_public_ip_on_launch"):
            self._update_subnet(subnet_id, spec, {"map_public_ip_on_launch"})
        return subnet_id, {}

    def _read_subnet(self, subnet_id: str) -> dict[str, Any] | None:
        subnets = self.ec2.describe_subnets(SubnetIds=[subnet_id]).get("Subnets", [])
        if not subnets:
            return None
        subnet = subnets[0]
        return {
            "vpc_id": subnet["VpcId"],
            "cidr_block": subnet["CidrBlock"],
            "availability_zone": subnet["AvailabilityZone"],
            "map_public_ip_on_launch": subnet.get("MapPublicIpOnLaunch", False),
            "tags": _tag_dict(subnet.get("Tags")),
        }

    def _update_subnet(self, subnet_id: str, spec: dict[str, Any], fields: set[str]) -> None:
        if "map_public_ip_on_launch" in fields:
            self.ec2.modify_subnet_attribute(
                SubnetId=subnet_id,
                MapPublicIpOnLaunch={"Value": bool(spec.get("map_public_ip_on_launch", False))},
            )
        self._update_tags_only(subnet_id, spec, fields)

    def _delete_subnet(self, subnet_id: str) -> None:
        self.ec2.delete_subnet(SubnetId=subnet_id)

    # ------------------------------------------------------------------
    # Internet gateway
    # ------------------------------------------------------------------

    def _create_internet_gateway(self, spec: dict[str, Any], client_token: str) -> tuple[str, dict[str, Any]]:
        igw_id = self._find_tagged(client_token)
        if igw_id is None:
            response = self.ec2.create_internet_gateway(
                TagSpecifications=self._tag_spec("internet-gateway", spec, client_token),
            )
            igw_id = response["InternetGateway"]["InternetGatewayId"]
        current = self._read_internet_gateway(igw_id) or {}
        if current.get("vpc_id") != spec["vpc_id"]:
            self.ec2.attach_internet_gateway(InternetGatewayId=igw_id, VpcId=spec["vpc_id"])
        return igw_id, {}

    def _read_internet_gateway(self, igw_id: str) -> dict[str, Any] | None:
        gateways = self.ec2.describe_internet_gateways(InternetGatewayIds=[igw_id]).get("InternetGateways", [])
        if not gateways:
            return None
        gateway = gateways[0]
        attachments = gateway.get("Attachments", [])
        return {
            "vpc_id": attachments[0]["VpcId"] if attachments else None,
            "tags": _tag_dict(gateway.get("Tags")),
        }

    def _update_internet_gateway(self, igw_id: str, spec: dict[str, Any], fields: set[str]) -> None:
        if "vpc_id" in fields:
            current = self._read_internet_gateway(igw_id) or {}
            if current.get("vpc_id"):
                self.ec2.detach_internet_gateway(InternetGatewayId=igw_id, VpcId=current["vpc_id"])
            self.ec2.attach_internet_gateway(InternetGatewayId=igw_id, VpcId=spec["vpc_id"])
        self._update_tags_only(igw_id, spec, fields)

    def _delete_internet_gateway(self, igw_id: str) -> None:
        current = self._read_internet_gateway(igw_id) or {}
        if current.get("vpc_id"):
            self.ec2.detach_internet_gateway(InternetGatewayId=igw_id, VpcId=current["vpc_id"])
        self.ec2.delete_internet_gateway(InternetGatewayId=igw_id)

    # ------------------------------------------------------------------
    # Route table and associations
    # ------------------------------------------------------------------

    def _create_route_table(self, spec: dict[str, Any], client_token: str) -> tuple[str, dict[str, Any]]:
        route_table_id = self._find_tagged(client_token)
        if route_table_id is None:
            response = self.ec2.create_route_table(
                VpcId=spec["vpc_id"],
                TagSpecifications=self._tag_spec("route-table", spec, client_token),
            )
            route_table_id = response["RouteTable"]["RouteTableId"]
        self._update_route_table(route_table_id, spec, {"routes"})
        return route_table_id, {}

    def _read_route_table(self, route_table_id: str) -> dict[str, Any] | None:
        tables = self.ec2.describe_route_tables(RouteTableIds=[route_table_id]).get("RouteTables", [])
        if not tables:
            return None
        table = tables[0]
        routes = [
            {"destination_cidr_block": route["DestinationCidrBlock"], "gateway_id": route["GatewayId"]}
            for route in table.get("Routes", [])
            if route.get("GatewayId", "local") != "local" and "DestinationCidrBlock" in route
        ]
        return {"vpc_id": table["VpcId"], "routes": routes, "tags": _tag_dict(table.get("Tags"))}

    def _update_route_table(self, route_table_id: str, spec: dict[str, Any], fields: set[str]) -> None:
        if "routes" in fields:
            current = self._read_route_table(route_table_id) or {"routes": []}
            existing = {route["destination_cidr_block"]: route["gateway_id"] for route in current["routes"]}
            desired = {route["destination_cidr_block"]: route["gateway_id"] for route in spec.get("routes", [])}
            for destination in sorted(set(existing) - set(desired)):
                self.ec2.delete_route(RouteTableId=route_table_id, DestinationCidrBlock=destination)
            for destination, gateway_id in sorted(desired.items()):
                if destination not in existing:
                    self.ec2.create_route(
                        RouteTableId=route_table_id,
                        DestinationCidrBlock=destination,
                        GatewayId=gateway_id,
                    )
                elif existing[destination] != gateway_id:
                    self.ec2.replace_route(
                        RouteTableId=route_table_id,
                        DestinationCidrBlock=destination,
                        GatewayId=gateway_id,
                    )
        self._update_tags_only(route_table_id, spec, fields)

    def _delete_route_table(self, route_table_id: str) -> None:
        self.ec2.delete_route_table(RouteTableId=route_table_id)

    def _create_route_table_association(self, spec: dict[str, Any], client_token: str) -> tuple[str, dict[str, Any]]:
        tables = self.ec2.describe_route_tables(RouteTableIds=[spec["route_table_id"]]).get("RouteTables", [])
        for association in tables[0].get("Associations", []) if tables else []:
            if association.get("SubnetId") == spec["subnet_id"]:
                return association["RouteTableAssociationId"], {}
        response = self.ec2.associate_route_table(RouteTableId=spec["route_table_id"], SubnetId=spec["subnet_id"])
        return response["AssociationId"], {}

    def _read_route_table_association(self, association_id: str) -> dict[str, Any] | None:
        tables = self.ec2.describe_route_tables(
            Filters=[{"Name": "association.route-table-association-id", "Values": [association_id]}]
        ).get("RouteTables", [])
        for table in tables:
            for association in table.get("Associations", []):
                if association.get("RouteTableAssociationId") == association_id:
                    return {"route_table_id": table["RouteTableId"], "subnet_id": association.get("SubnetId")}
        return None

    def _update_route_table_association(self, association_id: str, spec: dict[str, Any], fields: set[str]) -> None:
        if "route_table_id" in fields:
            self.ec2.replace_route_table_association(AssociationId=association_id, RouteTableId=spec["route_table_id"])

    def _delete_route_table_association(self, association_id: str) -> None:
        self.ec2.disassociate_route_table(AssociationId=association_id)

    # ------------------------------------------------------------------
    # Security group
    # ------------------------------------------------------------------

    def _create_security_group(self, spec: dict[str, Any], client_token: str) -> tuple[str, dict[str, Any]]:
        group_id = self._find_tagged(client_token)
        if group_id is None:
            response = self.ec2.create_security_group(
                GroupName=spec["name"],
                Description=spec.get("description", spec["name"]),
                VpcId=spec["vpc_id"],
                TagSpecifications=self._tag_spec("security-group", spec, client_token),
            )
            group_id = response["GroupId"]
        self._update_security_group(group_id, spec, {"ingress"})
        return group_id, {}

    def _read_security_group(self, group_id: str) -> dict[str, Any] | None:
        groups = self.ec2.describe_security_groups(GroupIds=[group_id]).get("SecurityGroups", [])
        if not groups:
            return None
        group = groups[0]
        return {
            "name": group["GroupName"],
            "description": group.get("Description", ""),
            "vpc_id": group.get("VpcId"),
            "ip_permissions": group.get("IpPermissions", []),
            "tags": _tag_dict(group.get("Tags")),
        }

    def _update_security_group(self, group_id: str, spec: dict[str, Any], fields: set[str]) -> None:
        if "ingress" in fields:
            current = self._read_security_group(group_id) or {"ip_permissions": []}
            if current["ip_permissions"]:
                self.ec2.revoke_security_group_ingress(GroupId=group_id, IpPermissions=current["ip_permissions"])
            permissions = _ip_permissions(spec.get("ingress", []))
            if permissions:
                self.ec2.authorize_security_group_ingress(GroupId=group_id, IpPermissions=permissions)
        self._update_tags_only(group_id, spec, fields)

    def _delete_security_group(self, group_id: str) -> None:
        self.ec2.delete_security_group(GroupId=group_id)

    # ------------------------------------------------------------------
    # Load balancer, target group, listener, attachments
    # ------------------------------------------------------------------

    def _find_load_balancer(self, name: str) -> dict[str, Any] | None:
        try:
            balancers = self.elbv2.describe_load_balancers(Names=[name]).get("LoadBalancers", [])
        except ClientError as exc:
            if exc.response.get("Error", {}).get("Code") == "LoadBalancerNotFound":
                return None
            raise
        return balancers[0] if balancers else None

    def _create_load_balancer(self, spec: dict[str, Any], client_token: str) -> tuple[str, dict[str, Any]]:
        balancer = self._find_load_balancer(spec["name"])
        if balancer is None:
            response = self.elbv2.create_load_balancer(
                Name=spec["name"],
                Subnets=list(spec["subnets"]),
                SecurityGroups=list(spec["security_groups"]),
                Scheme="internal" if spec.get("internal") else "internet-facing",
                Type=spec.get("load_balancer_type", "application"),
                Tags=_aws_tags(spec.get("tags"), client_token),
            )
            balancer = response["LoadBalancers"][0]
        arn = balancer["LoadBalancerArn"]
        self._wait(self.elbv2, "load_balancer_available", LoadBalancerArns=[arn])
        return arn, {"arn": arn, "dns_name": balancer["DNSName"]}

    def _read_load_balancer(self, arn: str) -> dict[str, Any] | None:
        balancers = self.elbv2.describe_load_balancers(LoadBalancerArns=[arn]).get("LoadBalancers", [])
        if not balancers:
            return None
        balancer = balancers[0]
        return {
            "name": balancer["LoadBalancerName"],
            "arn": arn,
            "dns_name": balancer["DNSName"],
            "internal": balancer.get("Scheme") == "internal",
            "load_balancer_type": balancer.get("Type", "application"),
            "subnets": sorted(zone["SubnetId"] for zone in balancer.get("AvailabilityZones", [])),
            "security_groups": sorted(balancer.get("SecurityGroups", [])),
            "state": balancer.get("State", {}).get("Code"),
        }

    def _update_load_balancer(self, arn: str, spec: dict[str, Any], fields: set[str]) -> None:
        if "subnets" in fields:
            self.elbv2.set_subnets(LoadBalancerArn=arn, Subnets=list(spec["subnets"]))
        if "security_groups" in fields:
            self.elbv2.set_security_groups(LoadBalancerArn=arn, SecurityGroups=list(spec["security_groups"]))
        if "tags" in fields:
            self.elbv2.add_tags(ResourceArns=[arn], Tags=_aws_tags(spec.get("tags")))

    def _delete_load_balancer(self, arn: str) -> None:
        self.elbv2.delete_load_balancer(LoadBalancerArn=arn)
        self._wait(self.elbv2, "load_balancers_deleted", LoadBalancerArns=[arn])

    def _create_target_group(self, spec: dict[str, Any], client_token: str) -> tuple[str, dict[str, Any]]:
        try:
            groups = self.elbv2.describe_target_groups(Names=[spec["name"]]).get("TargetGroups", [])
        except ClientError as exc:
            if exc.response.get("Error", {}).get("Code") != "TargetGroupNotFound":
                raise
            groups = []
        if groups:
            arn = groups[0]["TargetGroupArn"]
        else:
            health = spec.get("health_check", {})
            response = self.elbv2.create_target_group(
                Name=spec["name"],
                Protocol=spec["protocol"],
                Port=int(spec["port"]),
                VpcId=spec["vpc_id"],
                TargetType=spec.get("target_type", "instance"),
                HealthCheckPath=health.get("path", "/"),
                Matcher={"HttpCode": str(health.get("matcher", "200"))},
                Tags=_aws_tags(spec.get("tags"), client_token),
            )
            arn = response["TargetGroups"][0]["TargetGroupArn"]
        return arn, {"arn": arn}

    def _read_target_group(self, arn: str) -> dict[str, Any] | None:
        groups = self.elbv2.describe_target_groups(TargetGroupArns=[arn]).get("TargetGroups", [])
        if not groups:
            return None
        group = groups[0]
        return {
            "name": group["TargetGroupName"],
            "arn": arn,
            "port": group.get("Port"),
            "protocol": group.get("Protocol"),
            "vpc_id": group.get("VpcId"),
            "target_type": group.get("TargetType"),
            "health_check": {
                "path": group.get("HealthCheckPath", "/"),
                "matcher": group.get("Matcher", {}).get("HttpCode", "200"),
            },
        }

    def _update_target_group(self, arn: str, spec: dict[str, Any], fields: set[str]) -> None:
        if "health_check" in fields:
            health = spec.get("health_check", {})
            self.elbv2.modify_target_group(
                TargetGroupArn=arn,
                HealthCheckPath=health.get("path", "/"),
                Matcher={"HttpCode": str(health.get("matcher", "200"))},
            )
        if "tags" in fields:
            self.elbv2.add_tags(ResourceArns=[arn], Tags=_aws_tags(spec.get("tags")))

    def _delete_target_group(self, arn: str) -> None:
        self.elbv2.delete_target_group(TargetGroupArn=arn)

    def _create_listener(self, spec: dict[str, Any], client_token: str) -> tuple[str, dict[str, Any]]:
        listeners = self.elbv2.describe_listeners(LoadBalancerArn=spec["load_balancer_arn"]).get("Listeners", [])
        for listener in listeners:
            if listener.get("Port") == int(spec["port"]):
                arn = listener["ListenerArn"]
                return arn, {"arn": arn}
        response = self.elbv2.create_listener(
            LoadBalancerArn=spec["load_balancer_arn"],
            Protocol=spec["protocol"],
            Port=int(spec["port"]),
            DefaultActions=_default_actions(spec["default_actions"]),
        )
        arn = response["Listeners"][0]["ListenerArn"]
        return arn, {"arn": arn}

    def _read_listener(self, arn: str) -> dict[str, Any] | None:
        listeners = self.elbv2.describe_listeners(ListenerArns=[arn]).get("Listeners", [])
        if not listeners:
            return None
        listener = listeners[0]
        return {
            "arn": arn,
            "load_balancer_arn": listener["LoadBalancerArn"],
            "port": listener.get("Port"),
            "protocol": listener.get("Protocol"),
            "default_actions": [
                {"type": action["Type"], "target_group_arn": action.get("TargetGroupArn")}
                for action in listener.get("DefaultActions", [])
            ],
        }

    def _update_listener(self, arn: str, spec: dict[str, Any], fields: set[str]) -> None:
        if fields & {"port", "protocol", "default_actions"}:
            self.elbv2.modify_listener(
                ListenerArn=arn,
                Port=int(spec["port"]),
                Protocol=spec["protocol"],
                DefaultActions=_default_actions(spec["default_actions"]),
            )

    def _delete_listener(self, arn: str) -> None:
        self.elbv2.delete_listener(ListenerArn=arn)

    @staticmethod
    def _attachment_id(target_group_arn: str, target_id: str, port: Any) -> str:
        return f"{target_group_arn}|{target_id}|{port if port is not None else ''}"

    @staticmethod
    def _split_attachment_id(attachment_id: str) -> tuple[str, dict[str, Any]]:
        target_group_arn, target_id, port = attachment_id.split("|", 2)
        target: dict[str, Any] = {"Id": target_id}
        if port:
            target["Port"] = int(port)
        return target_group_arn, target

    def _create_target_group_attachment(self, spec: dict[str, Any], client_token: str) -> tuple[str, dict[str, Any]]:
        attachment_id = self._attachment_id(spec["target_group_arn"], spec["target_id"], spec.get("port"))
        target_group_arn, target = self._split_attachment_id(attachment_id)
        # RegisterTargets is idempotent for an already registered target.
        self.elbv2.register_targets(TargetGroupArn=target_group_arn, Targets=[target])
        return attachment_id, {}

    def _read_target_group_attachment(self, attachment_id: str) -> dict[str, Any] | None:
        target_group_arn, target = self._split_attachment_id(attachment_id)
        descriptions = self.elbv2.describe_target_health(TargetGroupArn=target_group_arn, Targets=[target]).get(
            "TargetHealthDescriptions", []
        )
        for description in descriptions:
            state = description.get("TargetHealth", {}).get("State")
            if state not in (None, "unused", "draining"):
                return {
                    "target_group_arn": target_group_arn,
                    "target_id": target["Id"],
                    "port": target.get("Port"),
                    "health": state,
                }
        return None

    def _delete_target_group_attachment(self, attachment_id: str) -> None:
        target_group_arn, target = self._split_attachment_id(attachment_id)
        self.elbv2.deregister_targets(TargetGroupArn=target_group_arn, Targets=[target])

    # ------------------------------------------------------------------
    # Instance
    # ------------------------------------------------------------------

    def _create_instance(self, spec: dict[str, Any], client_token: str) -> tuple[str, dict[str, Any]]:
        # RunInstances returns the original reservation for a repeated ClientToken.
        response = self.ec2.run_instances(
            ImageId=spec["ami"],
            InstanceType=spec["instance_type"],
            MinCount=1,
            MaxCount=1,
            ClientToken=client_token[:64],
            UserData=spec.get("user_data", ""),
            NetworkInterfaces=[
                {
                    "DeviceIndex": 0,
                    "SubnetId": spec["subnet_id"],
                    "Groups": list(spec.get("vpc_security_group_ids", [])),
                    "AssociatePublicIpAddress": bool(spec.get("associate_public_ip_address", False)),
                }
            ],
            TagSpecifications=self._tag_spec("instance", spec, client_token),
        )
        instance_id = response["Instances"][0]["InstanceId"]
        self._wait(self.ec2, "instance_running", InstanceIds=[instance_id])
        return instance_id, self._read_instance(instance_id) or {}

    def _read_instance(self, instance_id: str) -> dict[str, Any] | None:
        reservations = self.ec2.describe_instances(InstanceIds=[instance_id]).get("Reservations", [])
        instances = [instance for reservation in reservations for instance in reservation.get("Instances", [])]
        if not instances:
            return None
        instance = instances[0]
        state = instance.get("State", {}).get("Name")
        if state in ("terminated", "shutting-down"):
            return None
        attributes: dict[str, Any] = {
            "instance_type": instance.get("InstanceType"),
            "subnet_id": instance.get("SubnetId"),
            "vpc_security_group_ids": sorted(group["GroupId"] for group in instance.get("SecurityGroups", [])),
            "private_ip": instance.get("PrivateIpAddress"),
            "state": state,
            "tags": _tag_dict(instance.get("Tags")),
        }
        if instance.get("PublicIpAddress"):
            attributes["public_ip"] = instance["PublicIpAddress"]
        return attributes

    def _update_instance(self, instance_id: str, spec: dict[str, Any], fields: set[str]) -> None:
        if "vpc_security_group_ids" in fields:
            self.ec2.modify_instance_attribute(InstanceId=instance_id, Groups=list(spec["vpc_security_group_ids"]))
        if "instance_type" in fields:
            self.ec2.stop_instances(InstanceIds=[instance_id])
            # ModifyInstanceAttribute rejects a type change on a running instance.
            self._wait(self.ec2, "instance_stopped", required=True, InstanceIds=[instance_id])
            self.ec2.modify_instance_attribute(InstanceId=instance_id, InstanceType={"Value": spec["instance_type"]})
            self.ec2.start_instances(InstanceIds=[instance_id])
            self._wait(self.ec2, "instance_running", InstanceIds=[instance_id])
        self._update_tags_only(instance_id, spec, fields)

    def _delete_instance(self, instance_id: str) -> None:
        self.ec2.terminate_instances(InstanceIds=[instance_id])
        self._wait(self.ec2, "instance_terminated", InstanceIds=[instance_id])

    # ------------------------------------------------------------------
    # RDS
    # ------------------------------------------------------------------

    def _create_db_subnet_group(self, spec: dict[str, Any], client_token: str) -> tuple[str, dict[str, Any]]:
        name = spec["name"]
        if self._read_db_subnet_group(name) is None:
            self.rds.create_db_subnet_group(
                DBSubnetGroupName=name,
                DBSubnetGroupDescription=spec.get("description", name),
                SubnetIds=list(spec["subnet_ids"]),
                Tags=_aws_tags(spec.get("tags"), client_token),
            )
        return name, self._read_db_subnet_group(name) or {}

    def _read_db_subnet_group(self, name: str) -> dict[str, Any] | None:
        try:
            groups = self.rds.describe_db_subnet_groups(DBSubnetGroupName=name).get("DBSubnetGroups", [])
        except ClientError as exc:
            if exc.response.get("Error", {}).get("Code") == "DBSubnetGroupNotFoundFault":
                return None
            raise
        if not groups:
            return None
        group = groups[0]
        return {
            "name": group["DBSubnetGroupName"],
            "arn": group.get("DBSubnetGroupArn"),
            "description": group.get("DBSubnetGroupDescription", ""),
            "subnet_ids": sorted(subnet["SubnetIdentifier"] for subnet in group.get("Subnets", [])),
        }

    def _update_db_subnet_group(self, name: str, spec: dict[str, Any], fields: set[str]) -> None:
        if fields & {"subnet_ids", "description"}:
            self.rds.modify_db_subnet_group(
                DBSubnetGroupName=name,
                DBSubnetGroupDescription=spec.get("description", name),
                SubnetIds=list(spec["subnet_ids"]),
            )

    def _delete_db_subnet_group(self, name: str) -> None:
        self.rds.delete_db_subnet_group(DBSubnetGroupName=name)

    def _create_db_instance(self, spec: dict[str, Any], client_token: str) -> tuple[str, dict[str, Any]]:
        identifier = spec["identifier"]
        if self._read_db_instance(identifier) is None:
            params: dict[str, Any] = {
                "DBInstanceIdentifier": identifier,
                "Engine": spec["engine"],
                "DBInstanceClass": spec["instance_class"],
                "AllocatedStorage": int(spec["allocated_storage"]),
                "DBSubnetGroupName": spec["db_subnet_group_name"],
                "VpcSecurityGroupIds": list(spec.get("vpc_security_group_ids", [])),
                "PubliclyAccessible": bool(spec.get("publicly_accessible", False)),
                "StorageEncrypted": bool(spec.get("storage_encrypted", False)),
                "Tags": _aws_tags(spec.get("tags"), client_token),
            }
            if spec.get("engine_version"):
                params["EngineVersion"] = str(spec["engine_version"])
            if spec.get("db_name"):
                params["DBName"] = spec["db_name"]
            if spec.get("username"):
                params["MasterUsername"] = spec["username"]
            if spec.get("password"):
                params["MasterUserPassword"] = spec["password"]
            elif spec.get("manage_master_user_password"):
                params["ManageMasterUserPassword"] = True
            self.rds.create_db_instance(**params)
        self._wait(self.rds, "db_instance_available", DBInstanceIdentifier=identifier)
        return identifier, self._read_db_instance(identifier) or {}

    def _read_db_instance(self, identifier: str) -> dict[str, Any] | None:
        try:
            instances = self.rds.describe_db_instances(DBInstanceIdentifier=identifier).get("DBInstances", [])
        except ClientError as exc:
            if exc.response.get("Error", {}).get("Code") == "DBInstanceNotFound":
                return None
            raise
        if not instances:
            return None
        instance = instances[0]
        if instance.get("DBInstanceStatus") == "deleting":
            return None
        attributes: dict[str, Any] = {
            "identifier": identifier,
            "arn": instance.get("DBInstanceArn"),
            "engine": instance.get("Engine"),
            "instance_class": instance.get("DBInstanceClass"),
            "allocated_storage": instance.get("AllocatedStorage"),
            "status": instance.get("DBInstanceStatus"),
            "vpc_security_group_ids": sorted(
                group["VpcSecurityGroupId"] for group in instance.get("VpcSecurityGroups", [])
            ),
        }
        endpoint = instance.get("Endpoint")
        if endpoint:
            attributes.update(
                {
                    "address": endpoint["Address"],
                    "port": endpoint["Port"],
                    "endpoint": f"{endpoint['Address']}:{endpoint['Port']}",
                }
            )
        return attributes

    def _update_db_instance(self, identifier: str, spec: dict[str, Any], fields: set[str]) -> None:
        params: dict[str, Any] = {}
        if "instance_class" in fields:
            params["DBInstanceClass"] = spec["instance_class"]
        if "allocated_storage" in fields:
            params["AllocatedStorage"] = int(spec["allocated_storage"])
        if "vpc_security_group_ids" in fields:
            params["VpcSecurityGroupIds"] = list(spec.get("vpc_security_group_ids", []))
        if "publicly_accessible" in fields:
            params["PubliclyAccessible"] = bool(spec.get("publicly_accessible", False))
        if "password" in fields and spec.get("password"):
            params["MasterUserPassword"] = spec["password"]
        if params:
            self.rds.modify_db_instance(DBInstanceIdentifier=identifier, ApplyImmediately=True, **params)
            self._wait(self.rds, "db_instance_available", DBInstanceIdentifier=identifier)

    def _delete_db_instance(self, identifier: str) -> None:
        self.rds.delete_db_instance(
            DBInstanceIdentifier=identifier,
            SkipFinalSnapshot=True,
            DeleteAutomatedBackups=True,
        )
        self._wait(self.rds, "db_instance_deleted", DBInstanceIdentifier=identifier)
