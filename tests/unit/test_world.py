"""Unit tests for World, Context and credentials."""

import asyncio

import pytest

from worldkit.constants import TeardownPolicy
from worldkit.core.world import Context, CredentialsFactory, World
from worldkit.exceptions import (
    ConfigurationError,
    DuplicateResourceError,
    OwnershipError,
    ServiceStartFailed,
    TeardownError,
    WorldDisposedError,
)

IMPOSTER = {"protocol": "http", "stubs": []}


class TestWorldCreate:
    """Test creating resources through a World."""

    def test_service_in_context(self, world, handles) -> None:
        """Test a created service is exposed under its name."""
        service = asyncio.run(world.create_service("api", handles.construct("api")))

        assert world.get_context()["api"] is service
        assert world.owned_resources == [service]

    def test_imposter_in_context(self, world) -> None:
        """Test a registered imposter is exposed and owned."""
        imposter = asyncio.run(world.register_imposter("payments", IMPOSTER))

        assert world.get_context()["payments"] is imposter
        assert imposter in world.owned_resources

    def test_duplicate_name_rejected(self, world, handles) -> None:
        """Test a second resource with the same name is refused."""

        async def scenario():
            await world.create_service("api", handles.construct("api"))
            await world.create_service("api", handles.construct("api-2"))

        with pytest.raises(DuplicateResourceError):
            asyncio.run(scenario())

    def test_concurrent_duplicate_rejected(self, world, handles) -> None:
        """Test a name is claimed before creation finishes."""

        async def scenario():
            first = asyncio.create_task(
                world.create_service("api", handles.construct("api", start_delay=0.05))
            )
            await asyncio.sleep(0)
            with pytest.raises(DuplicateResourceError):
                await world.create_service("api", handles.construct("api-2"))
            await first

        asyncio.run(scenario())

    def test_imposter_without_backend(self, service_factory) -> None:
        """Test imposters require a configured backend."""
        world = World("scenario", service_factory)

        with pytest.raises(ConfigurationError):
            asyncio.run(world.register_imposter("payments", IMPOSTER))

    def test_failed_creation_not_owned(self, world, handles) -> None:
        """Test a service that failed to start is neither owned nor visible."""
        with pytest.raises(ServiceStartFailed):
            asyncio.run(
                world.create_service("api", handles.construct("api", start_error=RuntimeError("x")))
            )

        assert world.owned_resources == []
        assert "api" not in world.get_context()


class TestWorldStopService:
    """Test stopping a service mid-scenario."""

    def test_stop_removes_from_context(self, world, handles) -> None:
        """Test a stopped service leaves the context and the owned list."""

        async def scenario():
            service = await world.create_service("api", handles.construct("api"))
            await world.stop_service(service)
            return service

        service = asyncio.run(scenario())

        assert service.stopped
        assert "api" not in world.get_context()
        assert world.owned_resources == []

    def test_stop_foreign_service_refused(self, world, service_factory, handles) -> None:
        """Test a World cannot stop a service owned by another World."""
        other = World("other", service_factory)

        async def scenario():
            service = await other.create_service("api", handles.construct("api"))
            await world.stop_service(service)

        with pytest.raises(OwnershipError):
            asyncio.run(scenario())

        assert handles.actions("stop") == []

    def test_name_reusable_after_stop(self, world, handles) -> None:
        """Test a name can be used again once its service was stopped."""

        async def scenario():
            service = await world.create_service("api", handles.construct("api"))
            await world.stop_service(service)
            return await world.create_service("api", handles.construct("api"))

        assert asyncio.run(scenario()).name == "api"


class TestWorldDispose:
    """Test tearing a World down."""

    def test_reverse_creation_order(self, world, handles) -> None:
        """Test resources are stopped last-created first."""

        async def scenario():
            for name in ("db", "cache", "api"):
                await world.create_service(name, handles.construct(name))
            return await world.dispose()

        report = asyncio.run(scenario())

        assert handles.actions("stop") == ["api", "cache", "db"]
        assert report.stopped == ["api", "cache", "db"]
        assert report.ok

    def test_every_stop_attempted(self, world, handles) -> None:
        """Test one failing stop does not prevent the others."""

        async def scenario():
            await world.create_service("db", handles.construct("db"))
            await world.create_service("cache", handles.construct("cache", stop_error=OSError("stuck")))
            await world.create_service("api", handles.construct("api"))
            return await world.dispose()

        report = asyncio.run(scenario())

        assert handles.actions("stop") == ["api", "cache", "db"]
        assert [name for name, _ in report.errors] == ["cache"]
        assert report.stopped == ["api", "db"]
        assert not report.ok

    def test_dispose_idempotent(self, world, handles) -> None:
        """Test a second dispose returns the same report without stopping again."""

        async def scenario():
            await world.create_service("api", handles.construct("api"))
            first = await world.dispose()
            second = await world.dispose()
            return first, second

        first, second = asyncio.run(scenario())

        assert first is second
        assert handles.actions("stop") == ["api"]

    def test_concurrent_dispose(self, world, handles) -> None:
        """Test simultaneous dispose calls share one teardown."""

        async def scenario():
            await world.create_service("api", handles.construct("api"))
            return await asyncio.gather(world.dispose(), world.dispose())

        first, second = asyncio.run(scenario())

        assert first is second
        assert handles.actions("stop") == ["api"]

    def test_disposed_world_refuses_creation(self, world, handles) -> None:
        """Test a disposed World cannot create resources."""

        async def scenario():
            await world.dispose()
            await world.create_service("api", handles.construct("api"))

        with pytest.raises(WorldDisposedError):
            asyncio.run(scenario())

    def test_dispose_clears_context(self, world, handles) -> None:
        async def scenario():
            await world.create_service("api", handles.construct("api"))
            await world.dispose()

        asyncio.run(scenario())

        assert len(world.get_context()) == 0
        assert world.disposed

    def test_raise_policy(self, service_factory, handles) -> None:
        """Test the raise policy raises once, carrying the report."""
        world = World("scenario", service_factory, teardown_policy=TeardownPolicy.RAISE)

        async def scenario():
            await world.create_service("api", handles.construct("api", stop_error=OSError("stuck")))
            with pytest.raises(TeardownError) as exc_info:
                await world.dispose()
            again = await world.dispose()
            return exc_info.value, again

        error, again = asyncio.run(scenario())

        assert error.report is again
        assert "api" in str(error)


class TestContext:
    """Test context lookups and the global fallback."""

    def test_parent_fallback(self, service_factory, handles) -> None:
        """Test a scenario context sees the global World's services."""
        global_world = World("global", service_factory)
        scenario_world = World("scenario", service_factory, parent=global_world)

        async def scenario():
            shared = await global_world.create_service("db", handles.construct("db"))
            local = await scenario_world.create_service("api", handles.construct("api"))
            return shared, local

        shared, local = asyncio.run(scenario())
        context = scenario_world.get_context()

        assert context["db"] is shared
        assert context["api"] is local
        assert sorted(context) == ["api", "db"]
        assert "api" not in global_world.get_context()
        assert context.local_names() == ["api"]

    def test_cannot_shadow_parent(self, service_factory, handles) -> None:
        """Test a scenario cannot reuse a global resource name."""
        global_world = World("global", service_factory)
        scenario_world = World("scenario", service_factory, parent=global_world)

        async def scenario():
            await global_world.create_service("db", handles.construct("db"))
            await scenario_world.create_service("db", handles.construct("db-2"))

        with pytest.raises(DuplicateResourceError):
            asyncio.run(scenario())

    def test_scenario_dispose_leaves_parent(self, service_factory, handles) -> None:
        """Test disposing a scenario World never stops global services."""
        global_world = World("global", service_factory)
        scenario_world = World("scenario", service_factory, parent=global_world)

        async def scenario():
            await global_world.create_service("db", handles.construct("db"))
            await scenario_world.create_service("api", handles.construct("api"))
            await scenario_world.dispose()

        asyncio.run(scenario())

        assert handles.actions("stop") == ["api"]
        assert "db" in global_world.get_context()

    def test_missing_name(self) -> None:
        with pytest.raises(KeyError):
            Context()["nothing"]


class TestCredentials:
    """Test identity credentials."""

    def test_lazy_and_cached(self, world) -> None:
        """Test credentials are generated once per World."""
        first = world.get_identity_credentials()

        assert world.get_identity_credentials() is first
        assert "@" in first.email
        assert len(first.password) == 16

    def test_unique_per_world(self, service_factory) -> None:
        """Test Worlds sharing a factory receive different usernames."""
        factory = CredentialsFactory(seed=7)
        first = World("a", service_factory, credentials_factory=factory)
        second = World("b", service_factory, credentials_factory=factory)

        assert (
            first.get_identity_credentials().username
            != second.get_identity_credentials().username
        )

    def test_seeded_reproducible(self) -> None:
        """Test the same seed yields the same credentials."""
        assert CredentialsFactory(seed=3).generate() == CredentialsFactory(seed=3).generate()
