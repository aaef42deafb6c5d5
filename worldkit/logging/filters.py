"""Logging filters attaching the active scenario to records."""

import logging
from contextvars import ContextVar, Token

current_scenario: ContextVar[str | None] = ContextVar("worldkit_scenario", default=None)


def set_scenario(name: str | None) -> Token:
    """Mark the current task (and tasks it spawns) as working for ``name``."""
    return current_scenario.set(name)


def reset_scenario(token: Token) -> None:
    current_scenario.reset(token)


class ScenarioContextFilter(logging.Filter):
    """Adds a ``scenario`` attribute from the task-local scenario name.

    Provisioning tasks copy the context of the task that created them, so
    every line logged while building a scenario's world carries its name even
    when several scenarios provision concurrently.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        if getattr(record, "scenario", None) is None:
            record.scenario = current_scenario.get()
        return True
