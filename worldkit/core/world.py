"""Per-scope context owning the services and imposters of a scenario or process."""

from __future__ import annotations

import asyncio
import itertools
import logging
from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field
from typing import Any

from faker import Faker

from worldkit.constants import TeardownPolicy
from worldkit.core.registry import ResourceRegistry
from worldkit.exceptions import (
    ConfigurationError,
    DuplicateResourceError,
    OwnershipError,
    TeardownError,
    WorldDisposedError,
)
from worldkit.services.factory import ConstructionFunction, Service, ServiceFactory
from worldkit.services.imposters import Imposter, ImposterManager

logger = logging.getLogger(__name__)


class Context(Mapping[str, Service]):
    """Read-only mapping of logical names to live services.

    A scenario context falls back to its parent (the process-wide World's
    context) for lookups; it never writes to the parent.

    Parameters
    ----------
    parent : Context | None
        Context consulted for names this one does not hold
    """

    def __init__(self, parent: Context | None = None) -> None:
        self._services: dict[str, Service] = {}
        self._parent = parent

    def __getitem__(self, name: str) -> Service:
        if name in self._services:
            return self._services[name]
        if self._parent is not None:
            return self._parent[name]
        raise KeyError(name)

    def __iter__(self) -> Iterator[str]:
        yield from self._services
        if self._parent is not None:
            for name in self._parent:
                if name not in self._services:
                    yield name

    def __len__(self) -> int:
        return sum(1 for _ in self)

    def local_names(self) -> list[str]:
        """Names of services held by this context itself, in insertion order."""
        return list(self._services)

    def _add(self, service: Service) -> None:
        self._services[service.name] = service

    def _remove(self, name: str) -> None:
        self._services.pop(name, None)

    def _clear(self) -> None:
        self._services.clear()


@dataclass(frozen=True)
class Credentials:
    """Identity material generated once per World.

    Attributes
    ----------
    username : str
        Unique user name
    email : str
        Email address derived from the user name
    phone : str
        Phone number
    password : str
        Random password
    """

    username: str
    email: str
    phone: str
    password: str


class CredentialsFactory:
    """Generates per-world identity material with Faker.

    Parameters
    ----------
    locale : str
        Faker locale
    seed : int | None
        Seed for reproducible credentials
    """

    def __init__(self, locale: str = "en_US", seed: int | None = None) -> None:
        self._faker = Faker(locale)
        if seed is not None:
            self._faker.seed_instance(seed)
        self._counter = itertools.count(1)

    def generate(self) -> Credentials:
        username = f"{self._faker.user_name()}{next(self._counter)}"
        return Credentials(
            username=username,
            email=f"{username}@{self._faker.safe_domain_name()}",
            phone=self._faker.phone_number(),
            password=self._faker.password(length=16),
        )


@dataclass
class TeardownReport:
    """Outcome of disposing a World.

    Attributes
    ----------
    world : str
        Name of the disposed World
    stopped : list[str]
        Names of resources stopped cleanly, in stop order
    errors : list[tuple[str, Exception]]
        Name and exception of every resource whose stop failed
    """

    world: str
    stopped: list[str] = field(default_factory=list)
    errors: list[tuple[str, Exception]] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors

    def summary(self) -> dict[str, Any]:
        return {
            "world": self.world,
            "stopped": list(self.stopped),
            "errors": {name: str(error) for name, error in self.errors},
        }


class World:
    """Owns every service and imposter created during its lifetime.

    The process-wide World and the per-scenario Worlds are instances of this
    same class; the process-wide one is simply disposed at process shutdown.
    The methods below are the whole surface step implementations may use.

    Parameters
    ----------
    name : str
        World name (scenario name or "global")
    service_factory : ServiceFactory
        Factory creating services
    imposter_manager : ImposterManager | None
        Manager registering imposters; None disables imposters
    parent : World | None
        World whose context this one can read but never modify
    credentials_factory : CredentialsFactory | None
        Source of identity credentials
    teardown_policy : TeardownPolicy
        Whether ``dispose`` raises when stops failed
    """

    def __init__(
        self,
        name: str,
        service_factory: ServiceFactory,
        imposter_manager: ImposterManager | None = None,
        parent: World | None = None,
        credentials_factory: CredentialsFactory | None = None,
        teardown_policy: TeardownPolicy = TeardownPolicy.REPORT,
    ) -> None:
        self.name = name
        self.parent = parent
        self.teardown_policy = TeardownPolicy(teardown_policy)
        self._factory = service_factory
        self._imposters = imposter_manager
        self._credentials_factory = credentials_factory or CredentialsFactory()
        self._context = Context(parent.get_context() if parent is not None else None)
        self._registry = ResourceRegistry()
        self._pending: set[str] = set()
        self._credentials: Credentials | None = None
        self._dispose_task: asyncio.Future[TeardownReport] | None = None

    @property
    def owned_resources(self) -> list[Service]:
        """Owned resources in creation order."""
        return [entry.handle for entry in self._registry]

    @property
    def disposed(self) -> bool:
        return self._dispose_task is not None

    async def create_service(
        self, name: str, construct: ConstructionFunction, **health_options: Any
    ) -> Service:
        """Create a healthy service and record it under ``name``.

        Parameters
        ----------
        name : str
            Logical name, unique in this World and its parent
        construct : ConstructionFunction
            Called with the allocated port; returns the handle to start
        **health_options : Any
            ``timeout``, ``interval``, ``backoff_factor``, ``max_interval``

        Returns
        -------
        Service
            Running service
        """
        self._claim(name)
        try:
            service = await self._factory.create(name, construct, **health_options)
        finally:
            self._pending.discard(name)
        return await self._adopt(service)

    async def register_imposter(
        self, name: str, definition: dict[str, Any], timeout: float | None = None
    ) -> Imposter:
        """Register an imposter and record it under ``name``.

        ``timeout`` bounds the registration call; the backend client's own
        request timeout applies when it is None or larger.

        Raises
        ------
        ConfigurationError
            If no virtualization backend is configured
        """
        if self._imposters is None:
            raise ConfigurationError(
                f"World '{self.name}' has no virtualization backend for imposter '{name}'"
            )

        self._claim(name)
        try:
            imposter = await self._imposters.register(name, definition, timeout=timeout)
        finally:
            self._pending.discard(name)
        return await self._adopt(imposter)

    async def stop_service(self, service: Service) -> None:
        """Stop an owned service before the World is disposed.

        Raises
        ------
        OwnershipError
            If this World did not create the service
        """
        if self._registry.remove(service) is None:
            raise OwnershipError(
                f"World '{self.name}' does not own {service.kind.value} '{service.name}'"
            )
        self._context._remove(service.name)
        await service.stop()

    def get_context(self) -> Context:
        return self._context

    def get_identity_credentials(self) -> Credentials:
        """Return this World's credentials, generating them on first use."""
        if self._credentials is None:
            self._credentials = self._credentials_factory.generate()
        return self._credentials

    async def dispose(self) -> TeardownReport:
        """Stop every owned resource in reverse creation order.

        Every stop is attempted; failures are collected in the report. Later
        calls return the first report without side effects and never raise.

        Returns
        -------
        TeardownReport
            Stopped resources and collected failures

        Raises
        ------
        TeardownError
            On the first call only, if stops failed under the ``raise`` policy
        """
        first_call = self._dispose_task is None
        if first_call:
            self._dispose_task = asyncio.ensure_future(self._dispose())

        report = await asyncio.shield(self._dispose_task)

        if first_call and not report.ok and self.teardown_policy is TeardownPolicy.RAISE:
            raise TeardownError(report)
        return report

    async def _dispose(self) -> TeardownReport:
        stop_order = [entry.label for entry in reversed(self._registry.entries)]
        failures = await self._registry.cleanup_all()
        self._context._clear()

        failed = {name for name, _ in failures}
        report = TeardownReport(
            world=self.name,
            stopped=[name for name in stop_order if name not in failed],
            errors=failures,
        )

        if report.ok:
            logger.debug(f"World '{self.name}' disposed ({len(report.stopped)} resource(s))")
        else:
            logger.warning(
                f"World '{self.name}' disposed with {len(report.errors)} failed stop(s): "
                f"{', '.join(sorted(failed))}"
            )
        return report

    def _claim(self, name: str) -> None:
        if self.disposed:
            raise WorldDisposedError(f"World '{self.name}' is disposed")
        if name in self._context or name in self._pending:
            raise DuplicateResourceError(
                f"Resource name '{name}' already in use in world '{self.name}'"
            )
        self._pending.add(name)

    async def _adopt(self, service: Service) -> Service:
        if self.disposed:
            await service.stop()
            raise WorldDisposedError(
                f"World '{self.name}' was disposed while '{service.name}' was being created"
            )

        self._registry.register(service.kind.value, service.name, service, _stop)
        self._context._add(service)
        return service

    def __repr__(self) -> str:
        return f"<World {self.name!r} resources={self._context.local_names()}>"


async def _stop(service: Service) -> None:
    await service.stop()
