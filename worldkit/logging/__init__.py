"""Logging helpers for worldkit."""

import logging

from worldkit.logging.filters import (
    ScenarioContextFilter,
    current_scenario,
    reset_scenario,
    set_scenario,
)
from worldkit.logging.formatters import ScenarioFormatter

NOISY_LOGGERS = ("urllib3", "docker", "faker")

__all__ = [
    "ScenarioContextFilter",
    "ScenarioFormatter",
    "configure_logging",
    "current_scenario",
    "reset_scenario",
    "set_scenario",
]


def configure_logging(verbose: bool = False) -> logging.Handler:
    """Attach a scenario-aware stream handler to the root logger.

    Parameters
    ----------
    verbose : bool
        Log at DEBUG instead of INFO

    Returns
    -------
    logging.Handler
        The installed handler
    """
    handler = logging.StreamHandler()
    handler.setFormatter(ScenarioFormatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
    handler.addFilter(ScenarioContextFilter())

    root = logging.getLogger()
    root.addHandler(handler)
    root.setLevel(logging.DEBUG if verbose else logging.INFO)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    return handler
