"""Fake service handle for exercising the factory, World and orchestrator."""

import asyncio
import logging
import time

logger = logging.getLogger(__name__)


class FakeHandle:
    """In-memory service handle with scriptable start, health and stop behaviour.

    Parameters
    ----------
    port : int
        Allocated port
    name : str
        Label recorded in the shared event log
    events : list[tuple[str, str]]
        Shared log receiving ``(action, name)`` tuples
    start_delay : float
        Seconds ``start`` takes
    ready_after : int | None
        Probe attempts answering False before the first True; None never ready
    start_error : Exception | None
        Raised by ``start``
    stop_error : Exception | None
        Raised by ``stop``
    """

    protocol = "http"

    def __init__(
        self,
        port: int,
        name: str = "svc",
        events: list[tuple[str, str]] | None = None,
        start_delay: float = 0.0,
        ready_after: int | None = 0,
        start_error: Exception | None = None,
        stop_error: Exception | None = None,
    ) -> None:
        self.port = port
        self.name = name
        self.events = events if events is not None else []
        self.start_delay = start_delay
        self.ready_after = ready_after
        self.start_error = start_error
        self.stop_error = stop_error
        self.probes = 0
        self.started = False
        self.stopped = False

    @property
    def running(self) -> bool:
        return self.started and not self.stopped

    async def start(self) -> None:
        self.events.append(("start", self.name))
        if self.start_delay:
            await asyncio.sleep(self.start_delay)
        if self.start_error is not None:
            raise self.start_error
        self.started = True

    async def health_probe(self) -> bool:
        self.probes += 1
        self.events.append(("probe", self.name))
        if self.ready_after is None:
            return False
        return self.probes > self.ready_after

    async def stop(self) -> None:
        self.events.append(("stop", self.name))
        if self.stop_error is not None:
            raise self.stop_error
        self.stopped = True


class BlockingFakeHandle(FakeHandle):
    """FakeHandle with plain blocking methods, so the factory runs them in threads."""

    def start(self) -> None:
        self.events.append(("start", self.name))
        if self.start_delay:
            time.sleep(self.start_delay)
        if self.start_error is not None:
            raise self.start_error
        self.started = True

    def health_probe(self) -> bool:
        self.probes += 1
        self.events.append(("probe", self.name))
        if self.ready_after is None:
            return False
        return self.probes > self.ready_after

    def stop(self) -> None:
        self.events.append(("stop", self.name))
        if self.stop_error is not None:
            raise self.stop_error
        self.stopped = True


class FakeHandleFactory:
    """Builds construction functions and remembers every handle they produced.

    Attributes
    ----------
    events : list[tuple[str, str]]
        Event log shared by all handles
    handles : dict[str, FakeHandle]
        Last handle built for each name
    """

    def __init__(self) -> None:
        self.events: list[tuple[str, str]] = []
        self.handles: dict[str, FakeHandle] = {}

    def construct(self, name: str, blocking: bool = False, **behaviour):
        handle_class = BlockingFakeHandle if blocking else FakeHandle

        def _construct(port: int) -> FakeHandle:
            handle = handle_class(port, name=name, events=self.events, **behaviour)
            self.handles[name] = handle
            return handle

        return _construct

    def actions(self, action: str) -> list[str]:
        return [name for kind, name in self.events if kind == action]
