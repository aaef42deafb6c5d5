"""Exception hierarchy for worldkit.

Provisioning failures derive from ``ProvisioningError`` so that a broken
environment can be told apart from a failing step assertion.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from worldkit.core.world import TeardownReport


class WorldkitError(Exception):
    """Base exception for all worldkit errors."""


class ConfigurationError(WorldkitError, ValueError):
    """Raised when configuration or an environment declaration is invalid."""


class ProvisioningError(WorldkitError):
    """Base exception for failures while a scenario environment is being built.

    Parameters
    ----------
    message : str
        Human-readable error description
    resource : str | None
        Name of the resource that failed, if known
    """

    def __init__(self, message: str, resource: str | None = None) -> None:
        super().__init__(message)
        self.resource = resource


class ResourceExhausted(ProvisioningError):
    """Raised when no free port can be found within the probe budget."""


class ServiceStartFailed(ProvisioningError):
    """Raised when a construction function or handle start raises."""


class ServiceUnhealthy(ProvisioningError):
    """Raised when a service health check never reported ready.

    Parameters
    ----------
    message : str
        Human-readable error description
    resource : str | None
        Name of the service
    attempts : int
        Number of probe attempts made before giving up
    elapsed : float
        Seconds spent probing
    """

    def __init__(
        self,
        message: str,
        resource: str | None = None,
        attempts: int = 0,
        elapsed: float = 0.0,
    ) -> None:
        super().__init__(message, resource)
        self.attempts = attempts
        self.elapsed = elapsed


class RegistrationFailed(ProvisioningError):
    """Raised when the virtualization backend rejects or cannot take a definition."""


class ProvisioningTimedOut(ProvisioningError):
    """Raised when the scenario-level provisioning budget is exhausted."""


class TeardownError(WorldkitError):
    """Raised only under the ``raise`` teardown policy when stops failed.

    Parameters
    ----------
    report : TeardownReport
        Report holding every collected stop failure
    """

    def __init__(self, report: TeardownReport) -> None:
        failed = ", ".join(name for name, _ in report.errors)
        super().__init__(f"Teardown of world '{report.world}' failed for: {failed}")
        self.report = report


class WorldDisposedError(WorldkitError):
    """Raised when a disposed World is asked to create resources."""


class DuplicateResourceError(WorldkitError):
    """Raised when a resource name is already taken in a World's context."""


class OwnershipError(WorldkitError):
    """Raised when a World is asked to stop a resource it does not own."""


class InvalidTransition(WorldkitError):
    """Raised on an illegal scenario state transition."""
