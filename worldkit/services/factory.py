"""Service handles and the factory that turns them into running services."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable
from urllib.parse import urlencode

from worldkit.constants import DEFAULT_HOST, ResourceType
from worldkit.exceptions import ServiceStartFailed, ServiceUnhealthy
from worldkit.services.health import HealthChecker
from worldkit.services.ports import PortAllocator
from worldkit.utils import call_maybe_async, call_to_completion

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ServiceLocation:
    """Addressable endpoint of a service or imposter.

    Attributes
    ----------
    protocol : str
        URL scheme (e.g., "http", "tcp")
    hostname : str
        Host the endpoint listens on
    port : int
        Port the endpoint listens on
    auth : str | None
        Optional ``user:password`` credentials embedded in the URL
    query : dict[str, str] | None
        Optional query parameters appended to the URL
    """

    protocol: str
    hostname: str
    port: int
    auth: str | None = None
    query: dict[str, str] | None = None

    @property
    def url(self) -> str:
        netloc = f"{self.hostname}:{self.port}"
        if self.auth:
            netloc = f"{self.auth}@{netloc}"
        url = f"{self.protocol}://{netloc}"
        if self.query:
            url = f"{url}/?{urlencode(self.query)}"
        return url

    def __hash__(self) -> int:
        query = tuple(sorted(self.query.items())) if self.query else None
        return hash((self.protocol, self.hostname, self.port, self.auth, query))


@runtime_checkable
class ServiceHandle(Protocol):
    """Capability every orchestrable service kind implements.

    Each method may be synchronous or a coroutine function. Handles may also
    expose a ``location`` (ServiceLocation) or a ``protocol`` (str) attribute
    to override the default ``http://<host>:<port>`` location.
    """

    def start(self) -> Any: ...

    def health_probe(self) -> Any: ...

    def stop(self) -> Any: ...


ConstructionFunction = Callable[[int], ServiceHandle]


class Service:
    """A running, health-checked service owned by one World.

    Parameters
    ----------
    name : str
        Logical name in the owning World's context
    location : ServiceLocation
        Where the service can be reached
    handle : ServiceHandle | None
        Underlying handle started by the factory
    release : Callable[[int], None] | None
        Returns the allocated port to the allocator once stopped
    allocated_port : int | None
        Port taken from the allocator; defaults to the location port. Differs
        from it when the handle reports its own location
    """

    kind = ResourceType.SERVICE

    def __init__(
        self,
        name: str,
        location: ServiceLocation,
        handle: ServiceHandle | None = None,
        release: Callable[[int], None] | None = None,
        allocated_port: int | None = None,
    ) -> None:
        self.name = name
        self.location = location
        self.allocated_port = location.port if allocated_port is None else allocated_port
        self._handle = handle
        self._release = release
        self._stopped = False

    @property
    def port(self) -> int:
        return self.location.port

    @property
    def stopped(self) -> bool:
        return self._stopped

    @property
    def handle(self) -> ServiceHandle | None:
        return self._handle

    async def health_probe(self) -> bool:
        """Run the handle's probe once."""
        if self._stopped or self._handle is None:
            return False
        return bool(await call_maybe_async(self._handle.health_probe))

    async def stop(self) -> None:
        """Stop the service; calling it again is a no-op.

        The port is returned to the allocator only after the handle stopped
        cleanly, so a failed stop keeps the port out of circulation.
        """
        if self._stopped:
            return
        self._stopped = True
        await self._shutdown()

    async def _shutdown(self) -> None:
        if self._handle is not None:
            await call_to_completion(self._handle.stop)
        if self._release is not None:
            self._release(self.allocated_port)
        logger.debug(f"Stopped {self.kind.value} '{self.name}' on port {self.port}")

    def __repr__(self) -> str:
        state = "stopped" if self._stopped else "live"
        return f"<{type(self).__name__} {self.name!r} {self.location.url} {state}>"


class ServiceFactory:
    """Allocates a port, starts a handle on it and waits for it to be healthy.

    Parameters
    ----------
    port_allocator : PortAllocator
        Process-wide allocator shared by all worlds
    health_checker : HealthChecker
        Checker used to wait for readiness
    host : str
        Hostname recorded in service locations
    """

    def __init__(
        self,
        port_allocator: PortAllocator,
        health_checker: HealthChecker,
        host: str = DEFAULT_HOST,
    ) -> None:
        self.port_allocator = port_allocator
        self.health_checker = health_checker
        self.host = host

    async def create(
        self,
        name: str,
        construct: ConstructionFunction,
        timeout: float | None = None,
        interval: float | None = None,
        backoff_factor: float | None = None,
        max_interval: float | None = None,
    ) -> Service:
        """Create a running, healthy service.

        Parameters
        ----------
        name : str
            Logical service name
        construct : ConstructionFunction
            Called with the allocated port; returns the handle to start
        timeout : float | None
            Health check deadline in seconds
        interval : float | None
            Initial delay between health probes
        backoff_factor : float | None
            Probe delay multiplier
        max_interval : float | None
            Cap on the probe delay

        Returns
        -------
        Service
            Service whose probe has returned True at least once

        Raises
        ------
        ResourceExhausted
            If no port could be allocated
        ServiceStartFailed
            If the construction function or ``start`` raised
        ServiceUnhealthy
            If the health check timed out
        """
        port = self.port_allocator.allocate()
        handle: ServiceHandle | None = None

        try:
            handle = construct(port)
            await call_to_completion(handle.start)
        except asyncio.CancelledError:
            await self._abandon(name, handle, port)
            raise
        except Exception as exc:
            logger.warning(f"Service '{name}' failed to start on port {port}: {exc}")
            await self._abandon(name, handle, port)
            raise ServiceStartFailed(
                f"Service '{name}' failed to start: {exc}", resource=name
            ) from exc

        try:
            report = await self.health_checker.wait(
                handle.health_probe,
                timeout=timeout,
                interval=interval,
                backoff_factor=backoff_factor,
                max_interval=max_interval,
                name=name,
            )
        except asyncio.CancelledError:
            await self._abandon(name, handle, port)
            raise

        if not report.ready:
            logger.warning(
                f"Service '{name}' not healthy after {report.attempts} probe(s) "
                f"in {report.elapsed:.2f}s"
            )
            await self._abandon(name, handle, port)
            raise ServiceUnhealthy(
                f"Service '{name}' did not become healthy within {report.elapsed:.2f}s",
                resource=name,
                attempts=report.attempts,
                elapsed=report.elapsed,
            )

        location = getattr(handle, "location", None)
        if not isinstance(location, ServiceLocation):
            location = ServiceLocation(
                protocol=getattr(handle, "protocol", "http"),
                hostname=self.host,
                port=port,
            )

        logger.info(f"Service '{name}' ready at {location.url}")
        return Service(
            name, location, handle, release=self.port_allocator.release, allocated_port=port
        )

    async def stop(self, service: Service) -> None:
        """Stop a service; safe to call any number of times."""
        await service.stop()

    async def _abandon(self, name: str, handle: ServiceHandle | None, port: int) -> None:
        """Stop a partially started handle and release its port."""
        if handle is not None:
            try:
                await call_to_completion(handle.stop)
            except Exception as exc:
                logger.warning(f"Failed to stop partially started service '{name}': {exc}")
        self.port_allocator.release(port)
