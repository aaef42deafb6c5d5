"""Ordered ownership ledger with reverse-order teardown."""

import logging
from collections.abc import Awaitable, Callable, Iterator
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)


@dataclass
class RegistryEntry:
    """One owned resource.

    Attributes
    ----------
    kind : str
        Type of resource (e.g., "service", "imposter")
    label : str
        Name the resource is known by
    handle : Any
        Resource object passed to ``dispose_fn``
    dispose_fn : Callable
        Coroutine function called during cleanup: ``await dispose_fn(handle)``
    """

    kind: str
    label: str
    handle: Any
    dispose_fn: Callable[[Any], Awaitable[None]]


class ResourceRegistry:
    """Tracks owned resources in creation order and disposes them in reverse.

    Cleanup continues past individual failures; every failure is returned to
    the caller rather than raised.

    Attributes
    ----------
    entries : list[RegistryEntry]
        Registered resources in creation order
    """

    def __init__(self) -> None:
        self.entries: list[RegistryEntry] = []

    def register(
        self,
        kind: str,
        label: str,
        handle: Any,
        dispose_fn: Callable[[Any], Awaitable[None]],
    ) -> None:
        """Register a resource for lifecycle management.

        Parameters
        ----------
        kind : str
            Type of resource
        label : str
            Descriptive label for diagnostics
        handle : Any
            Resource handle to pass to dispose_fn
        dispose_fn : Callable
            Coroutine function called during cleanup
        """
        self.entries.append(RegistryEntry(kind, label, handle, dispose_fn))
        logger.debug(f"Registered {kind}: {label}")

    def remove(self, handle: Any) -> RegistryEntry | None:
        """Forget a resource without disposing it.

        Returns
        -------
        RegistryEntry | None
            Removed entry, or None if the handle was not registered
        """
        for index, entry in enumerate(self.entries):
            if entry.handle is handle:
                return self.entries.pop(index)
        return None

    def owns(self, handle: Any) -> bool:
        return any(entry.handle is handle for entry in self.entries)

    def __iter__(self) -> Iterator[RegistryEntry]:
        return iter(list(self.entries))

    def __len__(self) -> int:
        return len(self.entries)

    async def cleanup_all(self) -> list[tuple[str, Exception]]:
        """Dispose all registered resources in reverse creation order.

        Returns
        -------
        list[tuple[str, Exception]]
            Label and exception of every disposal that failed
        """
        failures: list[tuple[str, Exception]] = []

        while self.entries:
            entry = self.entries.pop()
            try:
                await entry.dispose_fn(entry.handle)
                logger.debug(f"Cleaned up {entry.kind}: {entry.label}")
            except Exception as e:
                logger.warning(f"Cleanup failed for {entry.kind} '{entry.label}': {e}")
                failures.append((entry.label, e))

        return failures
