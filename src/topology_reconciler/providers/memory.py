"""Deterministic in-process cloud used for local runs and tests.

It models the parts of the AWS APIs that matter to reconciliation: provider
assigned identifiers, client-token idempotent creates, references between
resources, and ``DependencyViolation`` when a resource that is still
referenced is deleted. Failures can be injected per operation.
"""

from __future__ import annotations

import copy
import itertools
import logging
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Callable, Iterator

from ..errors import FatalProviderError, ProviderError, ResourceNotFoundError, TransientProviderError
from ..models import ResourceKind
from ..references import REF_PREFIX
from .base import ProviderResource, ResourceProvider

logger = logging.getLogger(__name__)

_ID_PREFIX: dict[ResourceKind, str] = {
    ResourceKind.VPC: "vpc",
    ResourceKind.SUBNET: "subnet",
    ResourceKind.INTERNET_GATEWAY: "igw",
    ResourceKind.ROUTE_TABLE: "rtb",
    ResourceKind.ROUTE_TABLE_ASSOCIATION: "rtbassoc",
    ResourceKind.SECURITY_GROUP: "sg",
    ResourceKind.INSTANCE: "i",
}


@dataclass
class _FakeResource:
    kind: ResourceKind
    provider_id: str
    attributes: dict[str, Any]


@dataclass
class FailureRule:
    operation: str
    error: ProviderError
    kind: ResourceKind | None = None
    name: str | None = None
    times: int | None = None
    hits: int = 0

    def matches(self, operation: str, kind: ResourceKind, name: str | None) -> bool:
        if self.operation != operation:
            return False
        if self.kind is not None and self.kind != kind:
            return False
        if self.name is not None and self.name != name:
            return False
        return self.times is None or self.hits < self.times


@dataclass
class CallRecord:
    operation: str
    kind: ResourceKind
    name: str | None
    provider_id: str | None = None
    error: str | None = None


def _resource_name(attributes: dict[str, Any]) -> str | None:
    for key in ("name", "identifier"):
        value = attributes.get(key)
        if isinstance(value, str):
            return value
    tags = attributes.get("tags")
    if isinstance(tags, dict) and isinstance(tags.get("Name"), str):
        return tags["Name"]
    return None


def _iter_strings(value: Any):
    if isinstance(value, str):
        yield value
    elif isinstance(value, dict):
        for item in value.values():
            yield from _iter_strings(item)
    elif isinstance(value, (list, tuple)):
        for item in value:
            yield from _iter_strings(item)


class InMemoryProvider(ResourceProvider):
    name = "memory"

    def __init__(
        self,
        *,
        region: str = "us-east-1",
        account_id: str = "000000000000",
        latency_seconds: float = 0.0,
    ) -> None:
        self.region = region
        self.account_id = account_id
        self.latency_seconds = latency_seconds
        self.calls: list[CallRecord] = []
        self.max_in_flight = 0
        self.on_call: Callable[[str, ResourceKind, str | None], None] | None = None
        self._resources: dict[str, _FakeResource] = {}
        self._tokens: dict[str, str] = {}
        self._issued: set[str] = set()
        self._rules: list[FailureRule] = []
        self._counter = itertools.count(1)
        self._lock = threading.RLock()
        self._in_flight = 0

    # ------------------------------------------------------------------
    # Test controls
    # ------------------------------------------------------------------

    def fail(
        self,
        operation: str,
        error: ProviderError,
        *,
        kind: ResourceKind | None = None,
        name: str | None = None,
        times: int | None = None,
    ) -> FailureRule:
        """Make matching calls raise *error*; ``times=None`` fails forever."""
        rule = FailureRule(operation=operation, error=error, kind=kind, name=name, times=times)
        with self._lock:
            self._rules.append(rule)
        return rule

    def vanish(self, provider_id: str) -> None:
        """Delete a resource out-of-band, as a console user would."""
        with self._lock:
            self._resources.pop(provider_id, None)

    def drift(self, provider_id: str, **attributes: Any) -> None:
        with self._lock:
            self._resources[provider_id].attributes.update(attributes)

    def resources(self, kind: ResourceKind | None = None) -> dict[str, dict[str, Any]]:
        with self._lock:
            return {
                provider_id: copy.deepcopy(resource.attributes)
                for provider_id, resource in self._resources.items()
                if kind is None or resource.kind == kind
            }

    def calls_for(self, operation: str) -> list[CallRecord]:
        return [call for call in self.calls if call.operation == operation]

    # ------------------------------------------------------------------
    # ResourceProvider
    # ------------------------------------------------------------------

    def create(self, kind: ResourceKind, spec: dict[str, Any], *, client_token: str) -> ProviderResource:
        name = _resource_name(spec)
        with self._call("create", kind, name) as record:
            with self._lock:
                existing_id = self._tokens.get(client_token)
                if existing_id is not None and existing_id in self._resources:
                    logger.debug("Client token %s already created %s", client_token, existing_id)
                    record.provider_id = existing_id
                    existing = self._resources[existing_id]
                    return ProviderResource(existing_id, copy.deepcopy(existing.attributes))

                self._check_references(spec)
                if name is not None and kind in _NAME_UNIQUE_KINDS:
                    for resource in self._resources.values():
                        if resource.kind == kind and _resource_name(resource.attributes) == name:
                            raise FatalProviderError(f"{kind.value} named {name!r} already exists", code="Duplicate")

                provider_id = self._new_id(kind, spec)
                attributes = self._computed_attributes(kind, provider_id, spec)
                self._resources[provider_id] = _FakeResource(kind, provider_id, attributes)
                self._tokens[client_token] = provider_id
                self._issued.add(provider_id)
                if "arn" in attributes:
                    self._issued.add(attributes["arn"])
                record.provider_id = provider_id
                return ProviderResource(provider_id, copy.deepcopy(attributes))

    def read(self, kind: ResourceKind, provider_id: str) -> dict[str, Any]:
        with self._call("read", kind, None, provider_id):
            with self._lock:
                resource = self._resources.get(provider_id)
                if resource is None or resource.kind != kind:
                    raise ResourceNotFoundError(f"{kind.value} {provider_id} not found", code="NotFound")
                return copy.deepcopy(resource.attributes)

    def find(self, kind: ResourceKind, spec: dict[str, Any], *, client_token: str) -> str | None:
        with self._call("find", kind, _resource_name(spec)):
            with self._lock:
                provider_id = self._tokens.get(client_token)
                resource = self._resources.get(provider_id) if provider_id is not None else None
                if resource is None or resource.kind != kind:
                    return None
                return provider_id

    def update(
        self,
        kind: ResourceKind,
        provider_id: str,
        spec: dict[str, Any],
        *,
        changed: list[str],
    ) -> dict[str, Any]:
        with self._call("update", kind, _resource_name(spec), provider_id):
            with self._lock:
                resource = self._resources.get(provider_id)
                if resource is None or resource.kind != kind:
                    raise ResourceNotFoundError(f"{kind.value} {provider_id} not found", code="NotFound")
                self._check_references(spec)
                fields = changed or list(spec)
                for key in fields:
                    if key in spec:
                        resource.attributes[key] = copy.deepcopy(spec[key])
                    else:
                        resource.attributes.pop(key, None)
                return copy.deepcopy(resource.attributes)

    def delete(self, kind: ResourceKind, provider_id: str) -> None:
        with self._call("delete", kind, None, provider_id):
            with self._lock:
                resource = self._resources.get(provider_id)
                if resource is None or resource.kind != kind:
                    raise ResourceNotFoundError(f"{kind.value} {provider_id} not found", code="NotFound")
                identities = {provider_id, resource.attributes.get("arn")}
                identities.discard(None)
                referrers = sorted(
                    other.provider_id
                    for other in self._resources.values()
                    if other.provider_id != provider_id
                    and identities.intersection(_iter_strings(other.attributes))
                )
                if referrers:
                    raise TransientProviderError(
                        f"{provider_id} has dependent objects: {', '.join(referrers)}",
                        code="DependencyViolation",
                    )
                del self._resources[provider_id]

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @contextmanager
    def _call(
        self,
        operation: str,
        kind: ResourceKind,
        name: str | None,
        provider_id: str | None = None,
    ) -> Iterator[CallRecord]:
        record = CallRecord(operation=operation, kind=kind, name=name, provider_id=provider_id)
        with self._lock:
            self.calls.append(record)
            self._in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self._in_flight)
            if name is None and provider_id in self._resources:
                record.name = _resource_name(self._resources[provider_id].attributes)
            rule = next((r for r in self._rules if r.matches(operation, kind, record.name)), None)
            if rule is not None:
                rule.hits += 1
        try:
            if self.on_call is not None:
                self.on_call(operation, kind, record.name)
            if self.latency_seconds:
                time.sleep(self.latency_seconds)
            if rule is not None:
                raise copy.copy(rule.error)
            yield record
        except Exception as exc:
            record.error = type(exc).__name__
            raise
        finally:
            with self._lock:
                self._in_flight -= 1

    def _check_references(self, spec: dict[str, Any]) -> None:
        for value in _iter_strings(spec):
            if value.startswith(REF_PREFIX):
                raise FatalProviderError(f"Unresolved reference passed to provider: {value}", code="InvalidParameterValue")
            if value in self._issued and not self._is_live_identity(value):
                raise FatalProviderError(f"Referenced resource {value} does not exist", code="InvalidParameterValue")

    def _is_live_identity(self, value: str) -> bool:
        if value in self._resources:
            return True
        return any(resource.attributes.get("arn") == value for resource in self._resources.values())

    def _new_id(self, kind: ResourceKind, spec: dict[str, Any]) -> str:
        serial = next(self._counter)
        if kind in _ID_PREFIX:
            return f"{_ID_PREFIX[kind]}-{serial:017x}"
        if kind == ResourceKind.LOAD_BALANCER:
            return f"arn:aws:elasticloadbalancing:{self.region}:{self.account_id}:loadbalancer/app/{spec['name']}/{serial:016x}"
        if kind == ResourceKind.TARGET_GROUP:
            return f"arn:aws:elasticloadbalancing:{self.region}:{self.account_id}:targetgroup/{spec['name']}/{serial:016x}"
        if kind == ResourceKind.LISTENER:
            return f"{spec['load_balancer_arn'].replace(':loadbalancer/', ':listener/')}/{serial:016x}"
        if kind == ResourceKind.TARGET_GROUP_ATTACHMENT:
            return f"{spec['target_group_arn']}|{spec['target_id']}|{spec.get('port', '')}"
        if kind == ResourceKind.DB_SUBNET_GROUP:
            return str(spec["name"])
        if kind == ResourceKind.DB_INSTANCE:
            return str(spec["identifier"])
        raise FatalProviderError(f"Unsupported resource kind: {kind.value}", code="Unsupported")

    def _computed_attributes(self, kind: ResourceKind, provider_id: str, spec: dict[str, Any]) -> dict[str, Any]:
        attributes = copy.deepcopy(spec)
        attributes["id"] = provider_id
        serial = int(provider_id.rsplit("-", 1)[-1], 16) if kind in _ID_PREFIX else next(self._counter)
        if kind in (ResourceKind.LOAD_BALANCER, ResourceKind.TARGET_GROUP, ResourceKind.LISTENER):
            attributes["arn"] = provider_id
        if kind == ResourceKind.LOAD_BALANCER:
            attributes["dns_name"] = f"{spec['name']}-{serial}.{self.region}.elb.amazonaws.com"
        elif kind == ResourceKind.INSTANCE:
            attributes["private_ip"] = f"10.0.{serial // 250}.{serial % 250 + 4}"
            if spec.get("associate_public_ip_address", False):
                attributes["public_ip"] = f"54.0.{serial // 250}.{serial % 250 + 1}"
            attributes["state"] = "running"
        elif kind == ResourceKind.DB_INSTANCE:
            address = f"{spec['identifier']}.c{serial:010x}.{self.region}.rds.amazonaws.com"
            port = 5432 if str(spec.get("engine", "")).startswith("postgres") else 3306
            attributes.update({"address": address, "port": port, "endpoint": f"{address}:{port}"})
        elif kind == ResourceKind.DB_SUBNET_GROUP:
            attributes["arn"] = f"arn:aws:rds:{self.region}:{self.account_id}:subgrp:{spec['name']}"
        return attributes


_NAME_UNIQUE_KINDS = frozenset(
    {
        ResourceKind.LOAD_BALANCER,
        ResourceKind.TARGET_GROUP,
        ResourceKind.DB_SUBNET_GROUP,
        ResourceKind.DB_INSTANCE,
    }
)
