"""Default values shared across worldkit components.

Every value here can be overridden through the ``defaults`` section of the
configuration file.
"""

from enum import Enum

DEFAULT_HOST = "127.0.0.1"
"""Interface services bind to and port availability is verified against."""

PORT_RANGE_START = 20000
"""First port of the range handed out by the port allocator."""

PORT_RANGE_END = 30000
"""Last port (inclusive) of the range handed out by the port allocator."""

PORT_PROBE_ATTEMPTS = 200
"""Maximum candidate ports tried by a single allocation.

Bounds the time an allocation can take when most of the range is bound by
other processes on the machine.
"""

HEALTH_TIMEOUT_SECONDS = 30.0
"""Per-service health check deadline in seconds."""

HEALTH_INTERVAL_SECONDS = 0.1
"""Initial delay between health probe attempts in seconds."""

HEALTH_BACKOFF_FACTOR = 1.5
"""Multiplier applied to the probe delay after every failed attempt."""

HEALTH_MAX_INTERVAL_SECONDS = 2.0
"""Upper bound for the probe delay in seconds."""

PROVISIONING_TIMEOUT_SECONDS = 120.0
"""Aggregate deadline for provisioning every resource of one scenario.

Fires even when the individual per-resource timeouts would together exceed it.
"""

IMPOSTER_BACKEND_URL = "http://localhost:2525"
"""Base URL of the mountebank-compatible virtualization backend."""

REGISTRATION_TIMEOUT_SECONDS = 10.0
"""Per-request timeout for calls to the virtualization backend."""

STOP_TIMEOUT_SECONDS = 10.0
"""Grace period given to subprocesses and containers before they are killed."""

CONFIG_ENV_VAR = "WORLDKIT_CONFIG"
"""Environment variable naming the configuration file."""

DEFAULT_CONFIG_FILE = "worldkit.yaml"
"""Configuration file used when no path and no environment variable are given."""

WORKER_INDEX_ENV_VAR = "WORLDKIT_WORKER_INDEX"
"""Zero-based index of this worker when scenarios run in several processes."""

WORKER_COUNT_ENV_VAR = "WORLDKIT_WORKER_COUNT"
"""Total number of parallel worker processes sharing the port range."""


class ResourceType(str, Enum):
    """Kinds of resource an environment declaration can name."""

    SERVICE = "service"
    IMPOSTER = "imposter"


class TeardownPolicy(str, Enum):
    """What to do when one or more resource stops fail during teardown."""

    REPORT = "report"
    RAISE = "raise"
