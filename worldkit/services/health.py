"""Polling health checks with backoff for freshly started services."""

from __future__ import annotations

import asyncio
import inspect
import logging
import socket
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum

import requests

from worldkit.constants import (
    HEALTH_BACKOFF_FACTOR,
    HEALTH_INTERVAL_SECONDS,
    HEALTH_MAX_INTERVAL_SECONDS,
    HEALTH_TIMEOUT_SECONDS,
)

logger = logging.getLogger(__name__)

Probe = Callable[[], bool | Awaitable[bool]]

MIN_PROBE_TIMEOUT_SECONDS = 0.05


class HealthStatus(str, Enum):
    """Outcome of a health check."""

    READY = "ready"
    TIMED_OUT = "timed_out"


@dataclass(frozen=True)
class HealthReport:
    """Result of one health check run.

    Attributes
    ----------
    status : HealthStatus
        READY if a probe returned True before the deadline
    attempts : int
        Number of probe invocations
    elapsed : float
        Seconds between the first probe and the final decision
    """

    status: HealthStatus
    attempts: int
    elapsed: float

    @property
    def ready(self) -> bool:
        return self.status is HealthStatus.READY


class HealthChecker:
    """Polls a probe until it reports ready or the deadline passes.

    Waiting is a suspension point, so several services can be checked
    concurrently on one event loop. Synchronous probes run in a worker thread.

    Parameters
    ----------
    timeout : float
        Default deadline in seconds
    interval : float
        Default initial delay between attempts
    backoff_factor : float
        Default multiplier applied to the delay after each failed attempt
    max_interval : float
        Default cap on the delay
    """

    def __init__(
        self,
        timeout: float = HEALTH_TIMEOUT_SECONDS,
        interval: float = HEALTH_INTERVAL_SECONDS,
        backoff_factor: float = HEALTH_BACKOFF_FACTOR,
        max_interval: float = HEALTH_MAX_INTERVAL_SECONDS,
    ) -> None:
        self.timeout = timeout
        self.interval = interval
        self.backoff_factor = backoff_factor
        self.max_interval = max_interval

    async def wait(
        self,
        probe: Probe,
        timeout: float | None = None,
        interval: float | None = None,
        backoff_factor: float | None = None,
        max_interval: float | None = None,
        name: str = "",
    ) -> HealthReport:
        """Poll ``probe`` until it returns True or ``timeout`` elapses.

        Parameters
        ----------
        probe : Probe
            Sync or async callable returning True when the target is ready.
            Exceptions raised by the probe count as "not ready".
        timeout : float | None
            Deadline in seconds (default: checker default)
        interval : float | None
            Initial delay between attempts
        backoff_factor : float | None
            Delay multiplier applied after each failed attempt
        max_interval : float | None
            Cap on the delay between attempts
        name : str
            Label used in log messages

        Returns
        -------
        HealthReport
            READY or TIMED_OUT; timing out is not an exception
        """
        timeout = self.timeout if timeout is None else timeout
        delay = self.interval if interval is None else interval
        factor = self.backoff_factor if backoff_factor is None else backoff_factor
        cap = self.max_interval if max_interval is None else max_interval

        loop = asyncio.get_running_loop()
        started = loop.time()
        deadline = started + timeout
        attempts = 0

        while True:
            attempts += 1
            remaining = deadline - loop.time()
            if await self._invoke(probe, max(remaining, MIN_PROBE_TIMEOUT_SECONDS), name):
                elapsed = loop.time() - started
                logger.debug(
                    "Health check '%s' ready after %d attempt(s) in %.2fs",
                    name,
                    attempts,
                    elapsed,
                )
                return HealthReport(HealthStatus.READY, attempts, elapsed)

            remaining = deadline - loop.time()
            if remaining <= 0:
                elapsed = loop.time() - started
                logger.debug(
                    "Health check '%s' timed out after %d attempt(s) in %.2fs",
                    name,
                    attempts,
                    elapsed,
                )
                return HealthReport(HealthStatus.TIMED_OUT, attempts, elapsed)

            await asyncio.sleep(min(delay, remaining))
            delay = min(delay * factor, cap)

    async def _invoke(self, probe: Probe, timeout: float, name: str) -> bool:
        try:
            if inspect.iscoroutinefunction(probe):
                result = await asyncio.wait_for(probe(), timeout=timeout)
            else:
                result = await asyncio.wait_for(asyncio.to_thread(probe), timeout=timeout)
                if inspect.isawaitable(result):
                    result = await asyncio.wait_for(result, timeout=timeout)
        except asyncio.TimeoutError:
            logger.debug("Health probe '%s' did not answer within %.2fs", name, timeout)
            return False
        except Exception as exc:
            logger.debug("Health probe '%s' raised: %s", name, exc)
            return False

        return bool(result)


def http_probe(
    url: str,
    expected_status: int | None = None,
    request_timeout: float = 2.0,
) -> Callable[[], bool]:
    """Build a probe that succeeds when ``url`` answers over HTTP.

    Parameters
    ----------
    url : str
        URL to GET
    expected_status : int | None
        Exact status required; any status below 500 is accepted when None
    request_timeout : float
        Per-request timeout in seconds

    Returns
    -------
    Callable[[], bool]
        Synchronous probe function
    """

    def probe() -> bool:
        try:
            response = requests.get(url, timeout=request_timeout)
        except requests.RequestException:
            return False

        if expected_status is not None:
            return response.status_code == expected_status
        return response.status_code < 500

    return probe


def tcp_probe(host: str, port: int, connect_timeout: float = 1.0) -> Callable[[], bool]:
    """Build a probe that succeeds when a TCP connection can be opened."""

    def probe() -> bool:
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        sock.settimeout(connect_timeout)
        try:
            return sock.connect_ex((host, port)) == 0
        finally:
            sock.close()

    return probe
