from __future__ import annotations

from ..settings import RuntimeSettings
from .base import ProviderResource, ResourceProvider
from .memory import InMemoryProvider

__all__ = ["InMemoryProvider", "ProviderResource", "ResourceProvider", "build_provider"]


def build_provider(settings: RuntimeSettings) -> ResourceProvider:
    if settings.provider == "memory":
        return InMemoryProvider(region=settings.region)
    if settings.provider == "aws":
        from .aws import AwsProvider

        return AwsProvider(region=settings.region, wait_for_ready=settings.wait_for_ready)
    raise ValueError(f"Unknown provider: {settings.provider!r}")
