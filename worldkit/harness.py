"""behave integration: scenario harnesses driving the orchestrator."""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from collections.abc import Coroutine
from pathlib import Path
from typing import Any

from behave.model import Scenario
from behave.runner import Context

from worldkit.core.config import ConfigLoader
from worldkit.core.orchestrator import Orchestrator, ScenarioRun, ScenarioState
from worldkit.core.world import World
from worldkit.exceptions import ProvisioningError

logger = logging.getLogger(__name__)

ENVIRONMENT_TAG_PREFIX = "env:"


class ScenarioHarness(ABC):
    """Abstract base class providing lifecycle management for test scenarios.

    Parameters
    ----------
    context : Context
        Behave context object for the current scenario
    scenario : Scenario
        Behave scenario object containing metadata and tags
    """

    def __init__(self, context: Context, scenario: Scenario) -> None:
        self.context = context
        self.scenario = scenario

    @abstractmethod
    def setup(self) -> None:
        """Setup scenario-scoped resources. Called in before_scenario."""

    @abstractmethod
    def cleanup(self) -> None:
        """Dispose scenario-scoped resources. Called in after_scenario."""


class LoopRunner:
    """One event loop shared by every hook and step of a behave process.

    Services, imposters and World teardown tasks are bound to the loop they
    were created on, so steps must not spin up a fresh loop per call.
    """

    def __init__(self) -> None:
        self._loop = asyncio.new_event_loop()

    @property
    def closed(self) -> bool:
        return self._loop.is_closed()

    def run(self, coro: Coroutine[Any, Any, Any]) -> Any:
        """Run a coroutine to completion on the shared loop."""
        return self._loop.run_until_complete(coro)

    def close(self) -> None:
        if self._loop.is_closed():
            return
        try:
            self._loop.run_until_complete(self._loop.shutdown_asyncgens())
            self._loop.run_until_complete(self._loop.shutdown_default_executor())
        finally:
            self._loop.close()


def environment_name(scenario: Scenario) -> str | None:
    """Return the environment named by an ``@env:<name>`` tag, if any."""
    for tag in scenario.effective_tags:
        if tag.startswith(ENVIRONMENT_TAG_PREFIX):
            return tag[len(ENVIRONMENT_TAG_PREFIX):]
    return None


def start_worldkit(context: Context, config_path: str | None = None) -> Orchestrator:
    """Build the orchestrator and the process-wide World (behave ``before_all``).

    Sets ``context.worldkit_config``, ``context.worldkit_loop`` and
    ``context.orchestrator``.

    Parameters
    ----------
    context : Context
        Behave root context
    config_path : str | None
        Configuration file; WORLDKIT_CONFIG / worldkit.yaml when None

    Returns
    -------
    Orchestrator
        Orchestrator with the global World provisioned
    """
    loader = ConfigLoader()
    config_file = loader.resolve_path(config_path)
    config = loader.load_config(str(config_file))
    orchestrator = Orchestrator.from_config(config, config_dir=config_file.parent)

    runner = LoopRunner()
    context.worldkit_config = config
    context.worldkit_loop = runner
    context.orchestrator = orchestrator

    if orchestrator.imposter_manager is not None:
        runner.run(
            orchestrator.imposter_manager.ensure_backend_ready(
                orchestrator.settings.backend_ready_timeout
            )
        )

    runner.run(orchestrator.start_global(config.get("global") or []))
    logger.info(f"worldkit ready (config: {Path(config_file).resolve()})")
    return orchestrator


def stop_worldkit(context: Context) -> None:
    """Dispose the process-wide World and close the loop (behave ``after_all``)."""
    runner: LoopRunner | None = getattr(context, "worldkit_loop", None)
    orchestrator: Orchestrator | None = getattr(context, "orchestrator", None)

    if runner is None or runner.closed:
        return

    try:
        if orchestrator is not None:
            runner.run(orchestrator.shutdown())
    finally:
        runner.close()


class WorldHarness(ScenarioHarness):
    """Provisions a scenario World before the scenario and tears it down after.

    The environment comes from an ``@env:<name>`` tag resolved against the
    ``environments`` section of the configuration; untagged scenarios get an
    empty World and may create resources from their steps.

    Attributes
    ----------
    run : ScenarioRun | None
        Lifecycle record of the scenario, None until setup succeeded
    """

    def __init__(self, context: Context, scenario: Scenario) -> None:
        super().__init__(context, scenario)
        self.orchestrator: Orchestrator = context.orchestrator
        self.runner: LoopRunner = context.worldkit_loop
        self.run: ScenarioRun | None = None

    @property
    def world(self) -> World | None:
        return self.run.world if self.run is not None else None

    def setup(self) -> None:
        """Provision the scenario environment and expose it as ``context.world``.

        Raises
        ------
        ProvisioningError
            If the environment could not be built; nothing is left running
        """
        name = environment_name(self.scenario)
        declarations: list[dict[str, Any]] = []
        if name is not None:
            declarations = ConfigLoader().get_environment(self.context.worldkit_config, name)

        try:
            self.run = self.runner.run(self.orchestrator.provision(self.scenario.name, declarations))
        except ProvisioningError as e:
            logger.error(f"Environment for '{self.scenario.name}' could not be provisioned: {e}")
            raise

        self.context.world = self.run.begin()
        self.context.run = self.run

    def cleanup(self) -> None:
        """Tear the scenario World down regardless of the scenario outcome."""
        if self.run is None or self.run.state is not ScenarioState.IN_USE:
            return

        outcome = getattr(self.scenario.status, "name", str(self.scenario.status))
        report = self.runner.run(self.orchestrator.finish(self.run, outcome))
        if not report.ok:
            logger.warning(f"Teardown of '{self.scenario.name}' reported {report.summary()}")

    def call(self, coro: Coroutine[Any, Any, Any]) -> Any:
        """Run a World coroutine from a synchronous step."""
        return self.runner.run(coro)
