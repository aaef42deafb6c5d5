"""Unit tests for built-in service kinds and the service catalog."""

import asyncio
import sys
from functools import partial
from unittest.mock import MagicMock

import docker
import pytest
import requests

from worldkit.exceptions import ConfigurationError
from worldkit.services.kinds import DockerService, ProcessService, ServiceCatalog, StaticHttpService


class TestStaticHttpService:
    """Test the in-process HTTP service through the factory."""

    def test_serves_body(self, service_factory) -> None:
        """Test the service answers with its body until stopped."""

        async def scenario():
            service = await service_factory.create(
                "greeter", partial(StaticHttpService, body="hello")
            )
            response = await asyncio.to_thread(requests.get, service.location.url, timeout=2)
            await service.stop()
            return service, response

        service, response = asyncio.run(scenario())

        assert response.status_code == 200
        assert response.text == "hello"
        with pytest.raises(requests.ConnectionError):
            requests.get(service.location.url, timeout=1)

    def test_stop_before_start_is_noop(self) -> None:
        StaticHttpService(41800).stop()


class TestProcessService:
    """Test the subprocess service kind."""

    def test_placeholders_substituted(self) -> None:
        handle = ProcessService(
            41900,
            "server --port {port} --bind {host}",
            env={"PORT": "{port}"},
            health_path="health",
        )

        assert handle.command == ["server", "--port", "41900", "--bind", "127.0.0.1"]
        assert handle.env == {"PORT": "41900"}

    def test_python_http_server(self, service_factory) -> None:
        """Test a real subprocess is started, probed and terminated."""
        construct = partial(
            ProcessService,
            command=[sys.executable, "-m", "http.server", "{port}", "--bind", "{host}"],
            health_path="/",
        )

        async def scenario():
            service = await service_factory.create("files", construct, timeout=10)
            process = service.handle.process
            await service.stop()
            return process

        process = asyncio.run(scenario())

        assert process.poll() is not None

    def test_exited_process_unhealthy(self) -> None:
        handle = ProcessService(41901, [sys.executable, "-c", "pass"])
        handle.start()
        handle.process.wait(timeout=10)

        assert handle.health_probe() is False


class TestDockerService:
    """Test the docker service kind with a mocked client."""

    def test_run_arguments(self) -> None:
        client = MagicMock()
        handle = DockerService(41950, "nginx:alpine", 80, client=client, name="web-1")

        handle.start()

        kwargs = client.containers.run.call_args.kwargs
        assert client.containers.run.call_args.args == ("nginx:alpine",)
        assert kwargs["ports"] == {"80/tcp": ("127.0.0.1", 41950)}
        assert kwargs["detach"] is True
        assert kwargs["labels"] == {"managed-by": "worldkit"}

    def test_not_running_is_unhealthy(self) -> None:
        client = MagicMock()
        client.containers.run.return_value.status = "created"
        handle = DockerService(41951, "nginx:alpine", 80, client=client)
        handle.start()

        assert handle.health_probe() is False

    def test_stop_tolerates_removed_container(self) -> None:
        client = MagicMock()
        container = client.containers.run.return_value
        container.stop.side_effect = docker.errors.NotFound("gone")
        handle = DockerService(41952, "nginx:alpine", 80, client=client)
        handle.start()

        handle.stop()

        assert handle.container is None


class TestServiceCatalog:
    """Test resolving service references."""

    def test_register_spec(self) -> None:
        catalog = ServiceCatalog(host="127.0.0.1")
        catalog.register_spec("greeter", {"kind": "static", "body": "hi"})

        handle = catalog.resolve("greeter")(41990)

        assert isinstance(handle, StaticHttpService)
        assert handle.body == "hi"
        assert handle.port == 41990
        assert "greeter" in catalog
        assert catalog.names() == ["greeter"]

    def test_unknown_kind(self) -> None:
        with pytest.raises(ConfigurationError, match="unknown kind"):
            ServiceCatalog().register_spec("x", {"kind": "lambda"})

    def test_unknown_reference(self) -> None:
        with pytest.raises(ConfigurationError, match="Unknown service reference"):
            ServiceCatalog().resolve("missing")
