from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

from ..models import ResourceKind


@dataclass(frozen=True)
class ProviderResource:
    """Identity and attributes returned by a successful create."""

    provider_id: str
    attributes: dict[str, Any] = field(default_factory=dict)


class ResourceProvider(ABC):
    """Cloud API boundary used by the executor.

    Every operation must be safe to retry. ``create`` is idempotent for a
    repeated ``client_token``; ``delete`` raises ``ResourceNotFoundError``
    when the resource is already gone, which callers treat as success.
    Implementations raise ``TransientProviderError`` for retryable failures
    and ``FatalProviderError`` for everything that will not succeed on retry.
    """

    name: str = "provider"

    @abstractmethod
    def create(self, kind: ResourceKind, spec: dict[str, Any], *, client_token: str) -> ProviderResource:
        ...

    @abstractmethod
    def read(self, kind: ResourceKind, provider_id: str) -> dict[str, Any]:
        ...

    @abstractmethod
    def find(self, kind: ResourceKind, spec: dict[str, Any], *, client_token: str) -> str | None:
        """Return the id of a live resource made by a create with ``client_token``.

        Used to settle a create that was issued but never confirmed. ``spec``
        is the resolved create spec where its references could be resolved.
        """

    @abstractmethod
    def update(
        self,
        kind: ResourceKind,
        provider_id: str,
        spec: dict[str, Any],
        *,
        changed: list[str],
    ) -> dict[str, Any]:
        ...

    @abstractmethod
    def delete(self, kind: ResourceKind, provider_id: str) -> None:
        ...
