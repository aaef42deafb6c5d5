"""Client for the mountebank-compatible virtualization backend."""

from __future__ import annotations

import asyncio
import copy
import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any
from urllib.parse import urlparse

import requests
import yaml

from worldkit.constants import IMPOSTER_BACKEND_URL, REGISTRATION_TIMEOUT_SECONDS, ResourceType
from worldkit.exceptions import ConfigurationError, RegistrationFailed
from worldkit.services.factory import Service, ServiceLocation
from worldkit.services.health import HealthChecker
from worldkit.services.ports import PortAllocator

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CapturedRequest:
    """A request received by an imposter, as recorded by the backend.

    Attributes
    ----------
    method : str | None
        HTTP method (None for non-HTTP protocols)
    path : str | None
        Request path
    query : dict[str, Any]
        Parsed query parameters
    headers : dict[str, Any]
        Request headers
    body : Any
        Request body (or raw ``data`` for tcp imposters)
    timestamp : str | None
        Backend-assigned receive time
    request_from : str | None
        Client address
    raw : dict[str, Any]
        Full payload as returned by the backend
    """

    method: str | None
    path: str | None
    query: dict[str, Any] = field(default_factory=dict)
    headers: dict[str, Any] = field(default_factory=dict)
    body: Any = None
    timestamp: str | None = None
    request_from: str | None = None
    raw: dict[str, Any] = field(default_factory=dict, compare=False, hash=False)

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> CapturedRequest:
        body = payload.get("body", payload.get("data"))
        return cls(
            method=payload.get("method"),
            path=payload.get("path"),
            query=dict(payload.get("query") or {}),
            headers=dict(payload.get("headers") or {}),
            body=body,
            timestamp=payload.get("timestamp"),
            request_from=payload.get("requestFrom"),
            raw=payload,
        )

    def json(self) -> Any:
        """Decode the body as JSON."""
        if isinstance(self.body, (dict, list)):
            return self.body
        return json.loads(self.body)


class Imposter(Service):
    """A test double registered with the virtualization backend.

    Parameters
    ----------
    name : str
        Logical name in the owning World's context
    location : ServiceLocation
        Backend host and the port the backend assigned
    definition : dict[str, Any]
        Definition the imposter was registered with
    manager : ImposterManager
        Manager used for request history and deregistration
    """

    kind = ResourceType.IMPOSTER

    def __init__(
        self,
        name: str,
        location: ServiceLocation,
        definition: dict[str, Any],
        manager: ImposterManager,
    ) -> None:
        super().__init__(name, location)
        self.definition = definition
        self.captured: list[CapturedRequest] = []
        self._manager = manager

    async def health_probe(self) -> bool:
        if self.stopped:
            return False
        return await self._manager.exists(self)

    async def requests(self) -> tuple[CapturedRequest, ...]:
        """Return every request captured so far."""
        return await self._manager.get_requests(self)

    async def _shutdown(self) -> None:
        await self._manager.deregister(self)


class ImposterManager:
    """Registers, inspects and removes imposters over the backend's REST API.

    Blocking HTTP calls run in worker threads so registrations for several
    scenarios proceed concurrently. Registration never pins a port: the backend
    picks one atomically, which is the only collision-free option when many
    scenarios create imposters in parallel.

    Parameters
    ----------
    base_url : str
        Backend URL (e.g., ``http://localhost:2525``)
    port_allocator : PortAllocator | None
        Allocator in which backend-assigned ports are reserved while live
    health_checker : HealthChecker | None
        Checker used for backend readiness and request waits
    request_timeout : float
        Per-call timeout in seconds
    session : requests.Session | None
        HTTP session (injectable for tests)
    """

    def __init__(
        self,
        base_url: str = IMPOSTER_BACKEND_URL,
        port_allocator: PortAllocator | None = None,
        health_checker: HealthChecker | None = None,
        request_timeout: float = REGISTRATION_TIMEOUT_SECONDS,
        session: requests.Session | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.hostname = urlparse(self.base_url).hostname or "localhost"
        self.port_allocator = port_allocator
        self.health_checker = health_checker or HealthChecker()
        self.request_timeout = request_timeout
        self.session = session or requests.Session()
        self._live: set[int] = set()
        self._reclaims: set[asyncio.Task] = set()

    async def ensure_backend_ready(self, timeout: float) -> None:
        """Wait until the backend answers.

        Raises
        ------
        RegistrationFailed
            If the backend does not answer within ``timeout``
        """

        def probe() -> bool:
            try:
                response = self.session.get(
                    f"{self.base_url}/config", timeout=self.request_timeout
                )
            except requests.RequestException:
                return False
            return response.ok

        report = await self.health_checker.wait(probe, timeout=timeout, name="imposter-backend")
        if not report.ready:
            raise RegistrationFailed(
                f"Virtualization backend at {self.base_url} unreachable after {report.elapsed:.1f}s"
            )

    async def register(
        self, name: str, definition: dict[str, Any], timeout: float | None = None
    ) -> Imposter:
        """Register an imposter and return it once the backend accepted it.

        Parameters
        ----------
        name : str
            Logical imposter name
        definition : dict[str, Any]
            Imposter definition (protocol, stubs, ...); any ``port`` is dropped
        timeout : float | None
            Registration deadline, capped by ``request_timeout``

        Returns
        -------
        Imposter
            Registered imposter bound to the backend-assigned port

        Raises
        ------
        RegistrationFailed
            If the backend rejected the definition, was unreachable, timed out
            or returned a port already held by a live resource
        """
        payload = copy.deepcopy(definition)
        if payload.pop("port", None) is not None:
            logger.debug(f"Ignoring explicit port in imposter definition '{name}'")
        payload.setdefault("protocol", "http")
        payload.setdefault("name", name)
        payload["recordRequests"] = True

        deadline = self.request_timeout if timeout is None else min(timeout, self.request_timeout)
        post = asyncio.ensure_future(
            asyncio.to_thread(
                self.session.post,
                f"{self.base_url}/imposters",
                json=payload,
                timeout=self.request_timeout,
            )
        )
        try:
            response = await asyncio.wait_for(asyncio.shield(post), timeout=deadline)
        except asyncio.TimeoutError as err:
            self._reclaim_late(name, post)
            raise RegistrationFailed(
                f"Registration of imposter '{name}' timed out after {deadline:.2f}s",
                resource=name,
            ) from err
        except asyncio.CancelledError:
            self._reclaim_late(name, post)
            raise
        except requests.RequestException as err:
            raise RegistrationFailed(
                f"Virtualization backend unreachable for imposter '{name}': {err}",
                resource=name,
            ) from err

        if not response.ok:
            raise RegistrationFailed(
                f"Backend rejected imposter '{name}' ({response.status_code}): {response.text}",
                resource=name,
            )

        port = _assigned_port(response)
        if port is None:
            raise RegistrationFailed(
                f"Backend response for imposter '{name}' carried no port", resource=name
            )

        location = ServiceLocation(
            protocol=payload["protocol"], hostname=self.hostname, port=port
        )
        imposter = Imposter(name, location, payload, self)

        if self.port_allocator is not None and not self.port_allocator.reserve(port):
            await self._delete(port)
            raise RegistrationFailed(
                f"Backend assigned port {port} to imposter '{name}' but it is held "
                f"by another live resource",
                resource=name,
            )

        self._live.add(port)
        logger.info(f"Imposter '{name}' registered at {location.url}")
        return imposter

    async def exists(self, imposter: Imposter) -> bool:
        """Return True if the backend still knows the imposter."""
        try:
            response = await asyncio.to_thread(
                self.session.get,
                f"{self.base_url}/imposters/{imposter.port}",
                timeout=self.request_timeout,
            )
        except requests.RequestException:
            return False
        return response.ok

    async def get_requests(self, imposter: Imposter) -> tuple[CapturedRequest, ...]:
        """Fetch every request the imposter has received so far.

        The returned sequence only ever grows over the imposter's life; a
        backend answer with fewer entries than already seen does not prune
        the local history.

        Raises
        ------
        RegistrationFailed
            If the backend cannot be queried
        """
        history = imposter.captured
        if imposter.stopped:
            return tuple(history)

        try:
            response = await asyncio.to_thread(
                self.session.get,
                f"{self.base_url}/imposters/{imposter.port}",
                timeout=self.request_timeout,
            )
        except requests.RequestException as err:
            raise RegistrationFailed(
                f"Cannot read requests of imposter '{imposter.name}': {err}",
                resource=imposter.name,
            ) from err

        if not response.ok:
            raise RegistrationFailed(
                f"Backend returned {response.status_code} for imposter '{imposter.name}'",
                resource=imposter.name,
            )

        recorded = response.json().get("requests") or []
        if len(recorded) > len(history):
            history.extend(CapturedRequest.from_payload(item) for item in recorded[len(history):])

        return tuple(history)

    async def wait_for_requests(
        self, imposter: Imposter, count: int, timeout: float
    ) -> tuple[CapturedRequest, ...]:
        """Wait until the imposter captured at least ``count`` requests.

        Returns
        -------
        tuple[CapturedRequest, ...]
            Captured requests at the time the condition held or the wait ended
        """

        async def probe() -> bool:
            return len(await self.get_requests(imposter)) >= count

        await self.health_checker.wait(probe, timeout=timeout, name=f"{imposter.name}-requests")
        return tuple(imposter.captured)

    async def deregister(self, imposter: Imposter) -> None:
        """Remove the imposter from the backend; idempotent.

        A 404 from the backend counts as already removed.

        Raises
        ------
        RegistrationFailed
            If the backend could not be reached or refused the deletion
        """
        if imposter.port not in self._live:
            return

        await self._delete(imposter.port)
        self._live.discard(imposter.port)
        if self.port_allocator is not None:
            self.port_allocator.release(imposter.port)
        logger.debug(f"Imposter '{imposter.name}' on port {imposter.port} deregistered")

    async def settle(self) -> None:
        """Wait for pending removals of imposters the backend accepted too late."""
        while self._reclaims:
            await asyncio.gather(*self._reclaims, return_exceptions=True)

    def _reclaim_late(self, name: str, post: asyncio.Future) -> None:
        """Delete the imposter if an abandoned registration still succeeds."""
        task = asyncio.get_running_loop().create_task(self._delete_when_registered(name, post))
        self._reclaims.add(task)
        task.add_done_callback(self._reclaims.discard)

    async def _delete_when_registered(self, name: str, post: asyncio.Future) -> None:
        try:
            response = await post
        except requests.RequestException:
            return

        port = _assigned_port(response) if response.ok else None
        if port is None:
            return

        logger.warning(f"Imposter '{name}' registered after it was abandoned, deleting port {port}")
        try:
            await self._delete(port)
        except RegistrationFailed as e:
            logger.warning(f"Abandoned imposter '{name}' left on port {port}: {e}")

    async def _delete(self, port: int) -> None:
        try:
            response = await asyncio.to_thread(
                self.session.delete,
                f"{self.base_url}/imposters/{port}",
                timeout=self.request_timeout,
            )
        except requests.RequestException as err:
            raise RegistrationFailed(f"Cannot delete imposter on port {port}: {err}") from err

        if not response.ok and response.status_code != 404:
            raise RegistrationFailed(
                f"Backend refused to delete imposter on port {port} ({response.status_code})"
            )


def _assigned_port(response: requests.Response) -> int | None:
    try:
        return int(response.json()["port"])
    except (ValueError, KeyError, TypeError):
        return None


def load_definition(reference: str | Path | dict[str, Any]) -> dict[str, Any]:
    """Resolve an imposter definition reference.

    Parameters
    ----------
    reference : str | Path | dict
        Inline definition or path to a JSON/YAML definition file

    Returns
    -------
    dict[str, Any]
        Deep copy of the definition

    Raises
    ------
    ConfigurationError
        If the file is missing, unparsable or not a mapping
    """
    if isinstance(reference, dict):
        return copy.deepcopy(reference)

    path = Path(reference)
    if not path.exists():
        raise ConfigurationError(f"Imposter definition file not found: {path}")

    try:
        definition = yaml.safe_load(path.read_text())
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid imposter definition in {path}: {e}") from e

    if not isinstance(definition, dict):
        raise ConfigurationError(f"Imposter definition in {path} must be a mapping")

    return definition
