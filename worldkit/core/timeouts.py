"""Timeout budget management for scenario provisioning."""

import logging
import time

from worldkit.exceptions import ProvisioningTimedOut

logger = logging.getLogger(__name__)


class TimeoutBudget:
    """Tracks a scenario-level deadline and carves per-resource sub-budgets.

    Parameters
    ----------
    budget_seconds : float
        Total timeout budget in seconds
    name : str
        Label used in log messages and errors
    """

    def __init__(self, budget_seconds: float, name: str = "provisioning") -> None:
        self.budget_seconds = budget_seconds
        self.name = name
        self.start_time = time.monotonic()
        self.deadline = self.start_time + budget_seconds

    def elapsed_seconds(self) -> float:
        """Get elapsed time since start.

        Returns
        -------
        float
            Elapsed seconds
        """
        return time.monotonic() - self.start_time

    def remaining_seconds(self) -> float:
        """Get remaining time until deadline.

        Returns
        -------
        float
            Remaining seconds (may be negative if deadline passed)
        """
        return self.deadline - time.monotonic()

    def checkpoint(self, description: str) -> None:
        """Log elapsed and remaining time at a checkpoint."""
        logger.debug(
            f"Timeout checkpoint '{self.name}/{description}': "
            f"elapsed={self.elapsed_seconds():.2f}s, remaining={self.remaining_seconds():.2f}s"
        )

    def sub_budget(self, resource: str, max_seconds: float | None) -> float:
        """Allocate a timeout for one resource within the remaining budget.

        Parameters
        ----------
        resource : str
            Resource name (for logging and errors)
        max_seconds : float | None
            Resource's own timeout; the remaining budget is used when None

        Returns
        -------
        float
            Minimum of the remaining budget and the resource's timeout

        Raises
        ------
        ProvisioningTimedOut
            If the budget is already exhausted
        """
        remaining = self.remaining_seconds()
        if remaining <= 0:
            raise ProvisioningTimedOut(
                f"{self.name} budget of {self.budget_seconds}s exhausted "
                f"(elapsed={self.elapsed_seconds():.2f}s)",
                resource=resource,
            )

        allocated = remaining if max_seconds is None else min(remaining, max_seconds)
        logger.debug(
            f"Sub-budget '{resource}': requested={max_seconds}s, allocated={allocated:.2f}s"
        )
        return allocated
