"""Building blocks for services and imposters."""

from worldkit.services.factory import (
    ConstructionFunction,
    Service,
    ServiceFactory,
    ServiceHandle,
    ServiceLocation,
)
from worldkit.services.health import (
    HealthChecker,
    HealthReport,
    HealthStatus,
    http_probe,
    tcp_probe,
)
from worldkit.services.imposters import (
    CapturedRequest,
    Imposter,
    ImposterManager,
    load_definition,
)
from worldkit.services.kinds import (
    DockerService,
    ProcessService,
    ServiceCatalog,
    StaticHttpService,
)
from worldkit.services.ports import PortAllocator

__all__ = [
    "CapturedRequest",
    "ConstructionFunction",
    "DockerService",
    "HealthChecker",
    "HealthReport",
    "HealthStatus",
    "Imposter",
    "ImposterManager",
    "PortAllocator",
    "ProcessService",
    "Service",
    "ServiceCatalog",
    "ServiceFactory",
    "ServiceHandle",
    "ServiceLocation",
    "StaticHttpService",
    "http_probe",
    "load_definition",
    "tcp_probe",
]
