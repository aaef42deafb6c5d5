"""worldkit - ephemeral services and imposters for end-to-end scenarios."""

from __future__ import annotations

from worldkit.constants import ResourceType, TeardownPolicy
from worldkit.core import (
    EnvironmentDeclaration,
    Orchestrator,
    ResourceDeclaration,
    ScenarioRun,
    ScenarioState,
    TeardownReport,
    World,
)
from worldkit.exceptions import (
    ConfigurationError,
    ProvisioningError,
    TeardownError,
    WorldkitError,
)
from worldkit.services import (
    Imposter,
    ImposterManager,
    PortAllocator,
    Service,
    ServiceFactory,
    ServiceLocation,
)

__version__ = "0.1.0"

__all__ = [
    "ConfigurationError",
    "EnvironmentDeclaration",
    "Imposter",
    "ImposterManager",
    "Orchestrator",
    "PortAllocator",
    "ProvisioningError",
    "ResourceDeclaration",
    "ResourceType",
    "ScenarioRun",
    "ScenarioState",
    "Service",
    "ServiceFactory",
    "ServiceLocation",
    "TeardownError",
    "TeardownPolicy",
    "TeardownReport",
    "World",
    "WorldkitError",
]
