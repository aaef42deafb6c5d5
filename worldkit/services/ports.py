"""Thread-safe port allocation shared by every World in the process."""

from __future__ import annotations

import logging
import os
import socket
import threading

from worldkit.constants import (
    DEFAULT_HOST,
    PORT_PROBE_ATTEMPTS,
    PORT_RANGE_END,
    PORT_RANGE_START,
    WORKER_COUNT_ENV_VAR,
    WORKER_INDEX_ENV_VAR,
)
from worldkit.exceptions import ConfigurationError, ResourceExhausted

logger = logging.getLogger(__name__)


class PortAllocator:
    """Thread-safe port allocator for services started by scenario worlds.

    Maintains the set of ports currently held by live resources and hands out
    ports that are both unheld and bindable on the host. Check-and-claim happens
    under one lock so concurrent allocations never return the same port.

    Attributes
    ----------
    start_port : int
        Starting port number in range
    end_port : int
        Ending port number in range (inclusive)
    host : str
        Interface bind checks are made against
    max_probe_attempts : int
        Candidate ports tried per allocation before giving up
    allocated_ports : set[int]
        Set of currently held ports
    _lock : threading.Lock
        Protects concurrent access to the allocation set and cursor
    """

    def __init__(
        self,
        start_port: int = PORT_RANGE_START,
        end_port: int = PORT_RANGE_END,
        host: str = DEFAULT_HOST,
        max_probe_attempts: int = PORT_PROBE_ATTEMPTS,
    ) -> None:
        if not (1 <= start_port <= end_port <= 65535):
            raise ConfigurationError(
                f"Invalid port range {start_port}-{end_port}"
            )
        if max_probe_attempts < 1:
            raise ConfigurationError("max_probe_attempts must be at least 1")

        self.start_port = start_port
        self.end_port = end_port
        self.host = host
        self.max_probe_attempts = max_probe_attempts
        self.allocated_ports: set[int] = set()
        self._cursor = start_port
        self._lock = threading.Lock()

    @classmethod
    def for_worker(
        cls,
        worker_index: int | None = None,
        worker_count: int | None = None,
        start_port: int = PORT_RANGE_START,
        end_port: int = PORT_RANGE_END,
        **kwargs,
    ) -> PortAllocator:
        """Create an allocator over this worker's slice of the port range.

        Parallel worker processes cannot share a lock, so each one draws from
        a disjoint slice. Index and count default to the
        ``WORLDKIT_WORKER_INDEX`` and ``WORLDKIT_WORKER_COUNT`` variables.

        Parameters
        ----------
        worker_index : int | None
            Zero-based index of this worker
        worker_count : int | None
            Total number of workers
        start_port : int
            First port of the full range
        end_port : int
            Last port of the full range

        Returns
        -------
        PortAllocator
            Allocator restricted to this worker's slice

        Raises
        ------
        ConfigurationError
            If the index is out of range or slices would be empty
        """
        if worker_index is None:
            worker_index = int(os.environ.get(WORKER_INDEX_ENV_VAR, "0"))
        if worker_count is None:
            worker_count = int(os.environ.get(WORKER_COUNT_ENV_VAR, "1"))

        if worker_count < 1 or not (0 <= worker_index < worker_count):
            raise ConfigurationError(
                f"Invalid worker slice {worker_index}/{worker_count}"
            )

        span = (end_port - start_port + 1) // worker_count
        if span < 1:
            raise ConfigurationError(
                f"Port range {start_port}-{end_port} too small for {worker_count} workers"
            )

        slice_start = start_port + worker_index * span
        slice_end = slice_start + span - 1
        if worker_index == worker_count - 1:
            slice_end = end_port

        logger.debug(
            f"Worker {worker_index}/{worker_count} uses ports {slice_start}-{slice_end}"
        )
        return cls(start_port=slice_start, end_port=slice_end, **kwargs)

    def is_port_available(self, port: int) -> bool:
        """Check if a port is available for binding.

        Parameters
        ----------
        port : int
            Port number to check

        Returns
        -------
        bool
            True if port can be bound, False otherwise
        """
        try:
            sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.bind((self.host, port))
            sock.close()
            return True
        except OSError:
            return False

    def allocate(self) -> int:
        """Allocate an unheld, bindable port.

        Returns
        -------
        int
            Allocated port number

        Raises
        ------
        ResourceExhausted
            If no free port was found within ``max_probe_attempts`` candidates
        """
        with self._lock:
            size = self.end_port - self.start_port + 1
            attempts = 0

            for offset in range(size):
                if attempts >= self.max_probe_attempts:
                    break

                port = self.start_port + (self._cursor - self.start_port + offset) % size
                if port in self.allocated_ports:
                    continue

                attempts += 1
                if self.is_port_available(port):
                    self.allocated_ports.add(port)
                    self._cursor = self.start_port + (port - self.start_port + 1) % size
                    logger.debug(f"Allocated port {port}")
                    return port

            raise ResourceExhausted(
                f"No available ports in range {self.start_port}-{self.end_port} "
                f"after {attempts} probe attempts"
            )

    def reserve(self, port: int) -> bool:
        """Mark an externally assigned port as held.

        Used for ports chosen by another party (such as the virtualization
        backend) so they are never handed to a service while in use.

        Parameters
        ----------
        port : int
            Port number to hold

        Returns
        -------
        bool
            True if the port was free and is now held, False if already held
        """
        with self._lock:
            if port in self.allocated_ports:
                return False
            self.allocated_ports.add(port)
            logger.debug(f"Reserved port {port}")
            return True

    def release(self, port: int) -> None:
        """Return a port to the pool.

        Releasing a port that is not held is a no-op.

        Parameters
        ----------
        port : int
            Port number to release
        """
        with self._lock:
            if port in self.allocated_ports:
                self.allocated_ports.discard(port)
                logger.debug(f"Released port {port}")

    def is_held(self, port: int) -> bool:
        """Return True if the port is currently held by a live resource."""
        with self._lock:
            return port in self.allocated_ports

    def reset(self) -> None:
        """Release every held port."""
        with self._lock:
            self.allocated_ports.clear()
            self._cursor = self.start_port
            logger.debug("Reset port allocator")
