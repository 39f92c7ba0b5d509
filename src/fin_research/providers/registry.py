"""Capability registry that routes dispatches to registered providers."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from fin_research.providers.base import (
    Capability,
    FinancialProvider,
    ProviderOperation,
    ProviderResponse,
    UnsupportedCapabilityError,
)

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class CapabilityDescriptor:
    """Capabilities of one provider, computed once at registration."""

    provider_name: str
    capabilities: frozenset[Capability]
    operations: Mapping[Capability, ProviderOperation]


class ProviderRegistry:
    """Registered providers; the first provider supporting a capability serves it."""

    def __init__(self) -> None:
        self._providers: list[FinancialProvider] = []
        self._descriptors: list[CapabilityDescriptor] = []

    def register(self, provider: FinancialProvider) -> CapabilityDescriptor:
        operations = dict(provider.operations())
        descriptor = CapabilityDescriptor(
            provider_name=provider.name,
            capabilities=frozenset(operations),
            operations=operations,
        )
        self._providers.append(provider)
        self._descriptors.append(descriptor)
        logger.info(
            "Registered provider %s with %d capabilities",
            provider.name,
            len(descriptor.capabilities),
        )
        return descriptor

    @property
    def providers(self) -> tuple[FinancialProvider, ...]:
        return tuple(self._providers)

    def capabilities(self) -> frozenset[Capability]:
        supported: set[Capability] = set()
        for descriptor in self._descriptors:
            supported.update(descriptor.capabilities)
        return frozenset(supported)

    def supports(self, capability: Capability) -> bool:
        return self._descriptor_for(capability) is not None

    def provider_for(self, capability: Capability) -> str:
        """Return the name of the provider serving ``capability``."""

        descriptor = self._descriptor_for(capability)
        if descriptor is None:
            raise UnsupportedCapabilityError(capability)
        return descriptor.provider_name

    def dispatch(self, capability: Capability, arguments: Mapping[str, Any]) -> ProviderResponse:
        descriptor = self._descriptor_for(capability)
        if descriptor is None:
            raise UnsupportedCapabilityError(capability)
        return descriptor.operations[capability](arguments)

    def close(self) -> None:
        for provider in self._providers:
            provider.close()

    def _descriptor_for(self, capability: Capability) -> CapabilityDescriptor | None:
        for descriptor in self._descriptors:
            if capability in descriptor.capabilities:
                return descriptor
        return None
