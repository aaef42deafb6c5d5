"""Pytest fixtures for worldkit unit tests."""

import os
import sys
from collections.abc import Generator
from pathlib import Path

import pytest

from worldkit.constants import WORKER_COUNT_ENV_VAR, WORKER_INDEX_ENV_VAR
from worldkit.core.world import CredentialsFactory, World
from worldkit.services.factory import ServiceFactory
from worldkit.services.health import HealthChecker
from worldkit.services.imposters import ImposterManager
from worldkit.services.ports import PortAllocator

tests_root = Path(__file__).parent.parent.parent
if str(tests_root) not in sys.path:
    sys.path.insert(0, str(tests_root))

from tests.fakes import FakeBackendSession, FakeHandleFactory  # noqa: E402


@pytest.fixture(autouse=True)
def clean_worker_env() -> Generator[None, None, None]:
    """Make sure worker partitioning variables do not leak into unit tests."""
    saved = {name: os.environ.pop(name, None) for name in (WORKER_INDEX_ENV_VAR, WORKER_COUNT_ENV_VAR)}

    yield

    for name, value in saved.items():
        if value is None:
            os.environ.pop(name, None)
        else:
            os.environ[name] = value


@pytest.fixture
def port_allocator() -> PortAllocator:
    return PortAllocator(start_port=41000, end_port=41999)


@pytest.fixture
def health_checker() -> HealthChecker:
    """Checker with short defaults so failing probes time out quickly."""
    return HealthChecker(timeout=1.0, interval=0.01, backoff_factor=1.5, max_interval=0.05)


@pytest.fixture
def service_factory(port_allocator: PortAllocator, health_checker: HealthChecker) -> ServiceFactory:
    return ServiceFactory(port_allocator, health_checker)


@pytest.fixture
def handles() -> FakeHandleFactory:
    return FakeHandleFactory()


@pytest.fixture
def backend() -> FakeBackendSession:
    return FakeBackendSession()


@pytest.fixture
def imposter_manager(
    backend: FakeBackendSession, port_allocator: PortAllocator, health_checker: HealthChecker
) -> ImposterManager:
    return ImposterManager(
        base_url="http://backend.test:2525",
        port_allocator=port_allocator,
        health_checker=health_checker,
        request_timeout=1.0,
        session=backend,
    )


@pytest.fixture
def credentials_factory() -> CredentialsFactory:
    return CredentialsFactory(seed=42)


@pytest.fixture
def world(
    service_factory: ServiceFactory,
    imposter_manager: ImposterManager,
    credentials_factory: CredentialsFactory,
) -> World:
    return World(
        "scenario",
        service_factory,
        imposter_manager=imposter_manager,
        credentials_factory=credentials_factory,
    )
