"""Scenario orchestration: declared environment in, ready World out."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator, Callable, Iterable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

from worldkit.constants import ResourceType
from worldkit.core.config import HEALTH_OPTION_KEYS, ConfigLoader, HarnessSettings
from worldkit.core.diagnostics import DiagnosticsCollector
from worldkit.core.timeouts import TimeoutBudget
from worldkit.core.world import CredentialsFactory, TeardownReport, World
from worldkit.exceptions import (
    ConfigurationError,
    InvalidTransition,
    ProvisioningError,
    ProvisioningTimedOut,
    TeardownError,
)
from worldkit.logging import reset_scenario, set_scenario
from worldkit.services.factory import ConstructionFunction, Service, ServiceFactory
from worldkit.services.health import HealthChecker
from worldkit.services.imposters import ImposterManager, load_definition
from worldkit.services.kinds import ServiceCatalog
from worldkit.services.ports import PortAllocator
from worldkit.utils import slugify

logger = logging.getLogger(__name__)

GLOBAL_WORLD_NAME = "global"


class ScenarioState(str, Enum):
    """Lifecycle states of one scenario's environment."""

    PENDING = "pending"
    PROVISIONING = "provisioning"
    READY = "ready"
    IN_USE = "in_use"
    TEARING_DOWN = "tearing_down"
    DONE = "done"
    FAILED = "failed"


TRANSITIONS: dict[ScenarioState, frozenset[ScenarioState]] = {
    ScenarioState.PENDING: frozenset({ScenarioState.PROVISIONING}),
    ScenarioState.PROVISIONING: frozenset({ScenarioState.READY, ScenarioState.FAILED}),
    ScenarioState.READY: frozenset({ScenarioState.IN_USE}),
    ScenarioState.IN_USE: frozenset({ScenarioState.TEARING_DOWN}),
    ScenarioState.TEARING_DOWN: frozenset({ScenarioState.DONE, ScenarioState.FAILED}),
    ScenarioState.DONE: frozenset(),
    ScenarioState.FAILED: frozenset(),
}


@dataclass(frozen=True)
class ResourceDeclaration:
    """One resource a scenario needs.

    Attributes
    ----------
    name : str
        Logical name the resource is exposed under
    type : ResourceType
        Service or imposter
    location : Any
        Definition reference: a service catalog name for services; an
        imposter name, definition file path or inline mapping for imposters
    options : dict[str, Any]
        Per-resource health options (services only)
    """

    name: str
    type: ResourceType
    location: Any
    options: dict[str, Any] = field(default_factory=dict, hash=False)

    @classmethod
    def from_dict(cls, entry: dict[str, Any]) -> ResourceDeclaration:
        """Build a declaration from a configuration mapping.

        Raises
        ------
        ConfigurationError
            If required keys are missing or the type is unknown
        """
        missing = [key for key in ("name", "type", "location") if key not in entry]
        if missing:
            raise ConfigurationError(f"Resource declaration missing {missing}: {entry}")

        try:
            resource_type = ResourceType(entry["type"])
        except ValueError:
            raise ConfigurationError(
                f"Resource '{entry['name']}' has unknown type '{entry['type']}'"
            ) from None

        options = dict(entry.get("options") or {})
        unknown = sorted(set(options) - set(HEALTH_OPTION_KEYS))
        if unknown:
            raise ConfigurationError(f"Resource '{entry['name']}' has unknown options {unknown}")

        return cls(entry["name"], resource_type, entry["location"], options)


@dataclass(frozen=True)
class EnvironmentDeclaration:
    """Ordered list of resources a scenario declares.

    Raises
    ------
    ConfigurationError
        If two resources share a name
    """

    resources: tuple[ResourceDeclaration, ...] = ()

    def __post_init__(self) -> None:
        seen: set[str] = set()
        for resource in self.resources:
            if resource.name in seen:
                raise ConfigurationError(
                    f"Resource '{resource.name}' is declared more than once"
                )
            seen.add(resource.name)

    @classmethod
    def from_config(cls, entries: Iterable[dict[str, Any]]) -> EnvironmentDeclaration:
        return cls(tuple(ResourceDeclaration.from_dict(entry) for entry in entries))

    @property
    def names(self) -> list[str]:
        return [resource.name for resource in self.resources]


TransitionListener = Callable[["ScenarioRun", ScenarioState, ScenarioState], None]


class ScenarioRun:
    """State of one scenario's environment through its lifecycle.

    Parameters
    ----------
    name : str
        Scenario name
    world : World
        World built for the scenario
    listener : TransitionListener | None
        Called after every state change
    diagnostics : DiagnosticsCollector | None
        Collector receiving this scenario's events only
    """

    def __init__(
        self,
        name: str,
        world: World,
        listener: TransitionListener | None = None,
        diagnostics: DiagnosticsCollector | None = None,
    ) -> None:
        self.name = name
        self.world = world
        self.state = ScenarioState.PENDING
        self.history: list[tuple[ScenarioState, float]] = [(ScenarioState.PENDING, time.time())]
        self.error: ProvisioningError | None = None
        self.teardown_report: TeardownReport | None = None
        self.outcome: str | None = None
        self.diagnostics = diagnostics
        self._listener = listener

    def transition(self, new_state: ScenarioState) -> None:
        """Move to ``new_state``.

        Raises
        ------
        InvalidTransition
            If the state machine does not allow the move
        """
        old_state = self.state
        if new_state not in TRANSITIONS[old_state]:
            raise InvalidTransition(
                f"Scenario '{self.name}' cannot go from {old_state.value} to {new_state.value}"
            )
        self.state = new_state
        self.history.append((new_state, time.time()))
        if self._listener is not None:
            self._listener(self, old_state, new_state)

    def begin(self) -> World:
        """Hand the ready World to the step runner."""
        self.transition(ScenarioState.IN_USE)
        return self.world

    @property
    def states(self) -> list[ScenarioState]:
        return [state for state, _ in self.history]

    @property
    def provisioning_failed(self) -> bool:
        return self.error is not None

    @property
    def teardown_failed(self) -> bool:
        return self.teardown_report is not None and not self.teardown_report.ok


class Orchestrator:
    """Builds Worlds from environment declarations and tears them down.

    Parameters
    ----------
    service_factory : ServiceFactory
        Factory creating services
    imposter_manager : ImposterManager | None
        Client for the virtualization backend; None disables imposters
    catalog : ServiceCatalog | None
        Resolves service location references
    settings : HarnessSettings | None
        Harness-wide settings
    imposter_definitions : dict[str, Any] | None
        Named imposter definitions (inline mappings or file paths)
    definition_dir : Path | None
        Base directory for relative definition file paths
    diagnostics : DiagnosticsCollector | None
        Collector receiving lifecycle events
    """

    def __init__(
        self,
        service_factory: ServiceFactory,
        imposter_manager: ImposterManager | None = None,
        catalog: ServiceCatalog | None = None,
        settings: HarnessSettings | None = None,
        imposter_definitions: dict[str, Any] | None = None,
        definition_dir: Path | None = None,
        diagnostics: DiagnosticsCollector | None = None,
    ) -> None:
        self.settings = settings or HarnessSettings()
        self.service_factory = service_factory
        self.imposter_manager = imposter_manager
        self.catalog = catalog or ServiceCatalog(host=self.settings.host)
        self.imposter_definitions = dict(imposter_definitions or {})
        self.definition_dir = Path(definition_dir) if definition_dir else Path.cwd()
        self.diagnostics = diagnostics or DiagnosticsCollector()
        self.credentials_factory = CredentialsFactory(
            locale=self.settings.credentials_locale, seed=self.settings.credentials_seed
        )
        self._global_run: ScenarioRun | None = None

    @classmethod
    def from_config(
        cls, config: dict[str, Any], config_dir: Path | None = None
    ) -> Orchestrator:
        """Build an orchestrator and its collaborators from loaded configuration.

        Parameters
        ----------
        config : dict[str, Any]
            Configuration as returned by ``ConfigLoader.load_config``
        config_dir : Path | None
            Directory relative definition paths are resolved against

        Returns
        -------
        Orchestrator
            Orchestrator wired with allocator, checker, factory and backend client
        """
        loader = ConfigLoader()
        loader.validate_config(config)
        settings = loader.get_settings(config)

        port_allocator = PortAllocator.for_worker(
            start_port=settings.port_range_start,
            end_port=settings.port_range_end,
            host=settings.host,
            max_probe_attempts=settings.port_probe_attempts,
        )
        health_checker = HealthChecker(
            timeout=settings.health_timeout,
            interval=settings.health_interval,
            backoff_factor=settings.health_backoff_factor,
            max_interval=settings.health_max_interval,
        )
        factory = ServiceFactory(port_allocator, health_checker, host=settings.host)

        imposter_manager = None
        if settings.imposter_backend:
            imposter_manager = ImposterManager(
                base_url=settings.imposter_backend,
                port_allocator=port_allocator,
                health_checker=health_checker,
                request_timeout=settings.registration_timeout,
            )

        catalog = ServiceCatalog(host=settings.host)
        for name, spec in (config.get("services") or {}).items():
            catalog.register_spec(name, spec)

        return cls(
            service_factory=factory,
            imposter_manager=imposter_manager,
            catalog=catalog,
            settings=settings,
            imposter_definitions=config.get("imposters") or {},
            definition_dir=config_dir,
        )

    @property
    def global_world(self) -> World | None:
        return self._global_run.world if self._global_run is not None else None

    def new_world(self, name: str) -> World:
        """Create an empty World whose context falls back to the global one."""
        return World(
            name,
            self.service_factory,
            imposter_manager=self.imposter_manager,
            parent=self.global_world,
            credentials_factory=self.credentials_factory,
            teardown_policy=self.settings.teardown_policy,
        )

    async def start_global(
        self, environment: EnvironmentDeclaration | Iterable[dict[str, Any]] = ()
    ) -> World:
        """Provision the process-wide World once.

        Returns
        -------
        World
            The process-wide World; later calls return the same instance
        """
        if self._global_run is not None:
            return self._global_run.world

        world = World(
            GLOBAL_WORLD_NAME,
            self.service_factory,
            imposter_manager=self.imposter_manager,
            credentials_factory=self.credentials_factory,
            teardown_policy=self.settings.teardown_policy,
        )
        run = await self._provision(GLOBAL_WORLD_NAME, world, environment)
        run.begin()
        self._global_run = run
        return world

    async def provision(
        self,
        scenario: str,
        environment: EnvironmentDeclaration | Iterable[dict[str, Any]],
    ) -> ScenarioRun:
        """Build a scenario World and wait until every resource is ready.

        Parameters
        ----------
        scenario : str
            Scenario name
        environment : EnvironmentDeclaration | Iterable[dict]
            Declared resources

        Returns
        -------
        ScenarioRun
            Run in the READY state

        Raises
        ------
        ConfigurationError
            If the declaration is invalid; raised before provisioning starts
        ProvisioningError
            If any resource failed or the aggregate deadline passed; resources
            created so far are torn down first
        """
        return await self._provision(scenario, self.new_world(scenario), environment)

    async def finish(self, run: ScenarioRun, outcome: str | None = None) -> TeardownReport:
        """Tear down a scenario World unconditionally.

        The scenario outcome is recorded as given and never changed by
        teardown; teardown failures move the run to FAILED and are reported.

        Parameters
        ----------
        run : ScenarioRun
            Run to tear down
        outcome : str | None
            Scenario result as decided by the step runner

        Returns
        -------
        TeardownReport
            Stopped resources and collected failures

        Raises
        ------
        TeardownError
            After recording, if stops failed under the ``raise`` policy
        """
        if run.state is ScenarioState.READY:
            run.begin()

        run.outcome = outcome
        run.transition(ScenarioState.TEARING_DOWN)

        token = set_scenario(run.name)
        error: TeardownError | None = None
        try:
            try:
                report = await run.world.dispose()
            except TeardownError as err:
                report = err.report
                error = err

            run.teardown_report = report
            run.transition(ScenarioState.DONE if report.ok else ScenarioState.FAILED)

            if not report.ok:
                self._record(run, "teardown-failure", report.summary())
        finally:
            reset_scenario(token)

        if error is not None:
            raise error
        return report

    @asynccontextmanager
    async def scenario(
        self,
        name: str,
        environment: EnvironmentDeclaration | Iterable[dict[str, Any]],
    ) -> AsyncIterator[World]:
        """Provide a ready World for the duration of a ``async with`` block."""
        run = await self.provision(name, environment)
        world = run.begin()
        outcome = "passed"
        try:
            yield world
        except BaseException:
            outcome = "failed"
            raise
        finally:
            await self.finish(run, outcome)

    async def shutdown(self) -> TeardownReport | None:
        """Dispose the process-wide World, if one was started.

        Also waits for the removal of imposters whose abandoned registration
        the backend accepted late.
        """
        try:
            if self._global_run is None:
                return None
            run, self._global_run = self._global_run, None
            return await self.finish(run, outcome="process-exit")
        finally:
            if self.imposter_manager is not None:
                await self.imposter_manager.settle()

    async def _provision(
        self,
        scenario: str,
        world: World,
        environment: EnvironmentDeclaration | Iterable[dict[str, Any]],
    ) -> ScenarioRun:
        if not isinstance(environment, EnvironmentDeclaration):
            environment = EnvironmentDeclaration.from_config(environment)

        plan = [(declaration, self._resolve(declaration)) for declaration in environment.resources]

        run = ScenarioRun(
            scenario,
            world,
            listener=self._on_transition,
            diagnostics=self._scenario_diagnostics(scenario),
        )
        token = set_scenario(scenario)
        try:
            run.transition(ScenarioState.PROVISIONING)
            budget = TimeoutBudget(
                self.settings.provisioning_timeout, name=f"{scenario}/provisioning"
            )
            try:
                failure = await self._create_all(world, plan, budget)
            except asyncio.CancelledError:
                await self._abort(run, "provisioning-cancelled", {})
                raise

            if failure is not None:
                budget.checkpoint("failed")
                run.error = failure
                await self._abort(
                    run,
                    "provisioning-failure",
                    {"resource": failure.resource, "error": str(failure)},
                )
                raise failure

            budget.checkpoint("ready")
            run.transition(ScenarioState.READY)
            return run
        finally:
            reset_scenario(token)

    async def _abort(self, run: ScenarioRun, event_type: str, details: dict[str, Any]) -> None:
        """Dispose a partially provisioned World and mark its run FAILED."""
        try:
            run.teardown_report = await run.world.dispose()
        except TeardownError as err:
            run.teardown_report = err.report
            logger.warning(f"Cleanup of '{run.world.name}' failed: {err}")
        self._record(run, event_type, details)
        run.transition(ScenarioState.FAILED)

    async def _create_all(
        self,
        world: World,
        plan: list[tuple[ResourceDeclaration, Any]],
        budget: TimeoutBudget,
    ) -> ProvisioningError | None:
        """Create every planned resource concurrently.

        Returns the first failure (in declaration order) after cancelling and
        draining the remaining creations, or None when all succeeded.
        """
        if not plan:
            return None

        tasks = {
            asyncio.create_task(
                self._create(world, declaration, target, budget),
                name=f"{world.name}:{declaration.name}",
            ): declaration
            for declaration, target in plan
        }

        try:
            done, pending = await asyncio.wait(
                tasks,
                timeout=max(budget.remaining_seconds(), 0.0),
                return_when=asyncio.FIRST_EXCEPTION,
            )
        except asyncio.CancelledError:
            await self._drain(tasks)
            raise

        failure: ProvisioningError | None = None
        for task, declaration in tasks.items():
            if task in done and not task.cancelled() and task.exception() is not None:
                failure = self._as_provisioning_error(declaration, task.exception())
                break

        if pending:
            if failure is None:
                waiting = sorted(tasks[task].name for task in pending)
                failure = ProvisioningTimedOut(
                    f"Provisioning of '{world.name}' exceeded "
                    f"{budget.budget_seconds}s; still waiting for {waiting}",
                    resource=waiting[0],
                )
            await self._drain(pending)

        if failure is not None:
            logger.error(f"Provisioning of '{world.name}' failed: {failure}")
        return failure

    async def _create(
        self,
        world: World,
        declaration: ResourceDeclaration,
        target: Any,
        budget: TimeoutBudget,
    ) -> Service:
        if declaration.type is ResourceType.IMPOSTER:
            return await world.register_imposter(
                declaration.name, target, timeout=budget.sub_budget(declaration.name, None)
            )

        options = dict(declaration.options)
        options["timeout"] = budget.sub_budget(
            declaration.name, options.get("timeout", self.settings.health_timeout)
        )
        return await world.create_service(declaration.name, target, **options)

    def _resolve(self, declaration: ResourceDeclaration) -> ConstructionFunction | dict[str, Any]:
        """Turn a declaration's location reference into something creatable.

        Raises
        ------
        ConfigurationError
            If the reference cannot be resolved
        """
        if declaration.type is ResourceType.SERVICE:
            if callable(declaration.location):
                return declaration.location
            return self.catalog.resolve(declaration.location)

        if self.imposter_manager is None:
            raise ConfigurationError(
                f"Imposter '{declaration.name}' declared but no imposter_backend is configured"
            )

        reference = declaration.location
        if isinstance(reference, str) and reference in self.imposter_definitions:
            reference = self.imposter_definitions[reference]
        if isinstance(reference, str):
            path = Path(reference)
            reference = path if path.is_absolute() else self.definition_dir / path
        return load_definition(reference)

    async def _drain(self, tasks: Iterable[asyncio.Task]) -> None:
        tasks = list(tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    def _as_provisioning_error(
        self, declaration: ResourceDeclaration, error: BaseException
    ) -> ProvisioningError:
        if isinstance(error, ProvisioningError):
            return error
        wrapped = ProvisioningError(
            f"Creating {declaration.type.value} '{declaration.name}' failed: {error}",
            resource=declaration.name,
        )
        wrapped.__cause__ = error
        return wrapped

    def _on_transition(
        self, run: ScenarioRun, old_state: ScenarioState, new_state: ScenarioState
    ) -> None:
        logger.info(f"Scenario '{run.name}': {old_state.value} -> {new_state.value}")
        self._record(run, "transition", {"from": old_state.value, "to": new_state.value})

    def _record(self, run: ScenarioRun, event_type: str, details: dict[str, Any]) -> None:
        self.diagnostics.record(event_type, run.name, details)
        if run.diagnostics is not None:
            run.diagnostics.record(event_type, run.name, details)

    def _scenario_diagnostics(self, scenario: str) -> DiagnosticsCollector | None:
        if not self.settings.diagnostics_dir:
            return None
        return DiagnosticsCollector(
            log_path=Path(self.settings.diagnostics_dir) / f"{slugify(scenario)}.jsonl"
        )
