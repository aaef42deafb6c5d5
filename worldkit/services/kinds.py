"""Concrete service kinds and the catalog resolving them by name."""

from __future__ import annotations

import http.server
import logging
import os
import shlex
import subprocess
import threading
from collections.abc import Callable
from functools import partial
from typing import Any

import docker

from worldkit.constants import DEFAULT_HOST, STOP_TIMEOUT_SECONDS
from worldkit.exceptions import ConfigurationError
from worldkit.services.factory import ConstructionFunction
from worldkit.services.health import http_probe, tcp_probe

logger = logging.getLogger(__name__)


class _StaticHandler(http.server.BaseHTTPRequestHandler):
    """Answers every GET with the server's configured status and body."""

    def do_GET(self) -> None:  # noqa: N802
        server = self.server
        body = server.body.encode()
        self.send_response(server.status)
        self.send_header("Content-Type", server.content_type)
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def log_message(self, format: str, *args: Any) -> None:  # noqa: A002
        logger.debug("static-http %s", format % args)


class StaticHttpService:
    """In-process HTTP server answering every request with a fixed response.

    Useful as a stand-in backend and for exercising the orchestration layer
    without external processes.

    Parameters
    ----------
    port : int
        Port to listen on
    host : str
        Interface to bind
    body : str
        Response body
    status : int
        Response status code
    content_type : str
        Response content type
    """

    protocol = "http"

    def __init__(
        self,
        port: int,
        host: str = DEFAULT_HOST,
        body: str = "OK",
        status: int = 200,
        content_type: str = "text/plain",
    ) -> None:
        self.port = port
        self.host = host
        self.body = body
        self.status = status
        self.content_type = content_type
        self._server: http.server.ThreadingHTTPServer | None = None
        self._thread: threading.Thread | None = None

    def start(self) -> None:
        server = http.server.ThreadingHTTPServer((self.host, self.port), _StaticHandler)
        server.daemon_threads = True
        server.body = self.body
        server.status = self.status
        server.content_type = self.content_type
        self._server = server
        self._thread = threading.Thread(
            target=server.serve_forever, name=f"static-http-{self.port}", daemon=True
        )
        self._thread.start()

    def health_probe(self) -> bool:
        return http_probe(f"http://{self.host}:{self.port}/")()

    def stop(self) -> None:
        if self._server is None:
            return
        self._server.shutdown()
        self._server.server_close()
        if self._thread is not None:
            self._thread.join(timeout=STOP_TIMEOUT_SECONDS)
        self._server = None
        self._thread = None


class ProcessService:
    """A service run as a local subprocess.

    ``{port}`` and ``{host}`` placeholders in the command, environment values
    and health path are substituted with the allocated values.

    Parameters
    ----------
    port : int
        Allocated port
    command : str | list[str]
        Command line to execute
    host : str
        Host the service is expected to listen on
    env : dict[str, str] | None
        Extra environment variables
    cwd : str | None
        Working directory
    health_path : str | None
        HTTP path probed for readiness; a TCP connect probe is used when None
    protocol : str
        Scheme recorded in the service location
    """

    def __init__(
        self,
        port: int,
        command: str | list[str],
        host: str = DEFAULT_HOST,
        env: dict[str, str] | None = None,
        cwd: str | None = None,
        health_path: str | None = None,
        protocol: str = "http",
    ) -> None:
        values = {"port": port, "host": host}
        if isinstance(command, str):
            command = shlex.split(command)
        self.port = port
        self.host = host
        self.protocol = protocol
        self.command = [part.format(**values) for part in command]
        self.env = {key: str(value).format(**values) for key, value in (env or {}).items()}
        self.cwd = cwd
        self.health_path = health_path.format(**values) if health_path else None
        self.process: subprocess.Popen | None = None

    def start(self) -> None:
        logger.debug(f"Starting process: {' '.join(self.command)}")
        self.process = subprocess.Popen(
            self.command,
            cwd=self.cwd,
            env={**os.environ, **self.env},
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
        )

    def health_probe(self) -> bool:
        if self.process is None or self.process.poll() is not None:
            return False
        if self.health_path is not None:
            path = self.health_path if self.health_path.startswith("/") else f"/{self.health_path}"
            return http_probe(f"http://{self.host}:{self.port}{path}")()
        return tcp_probe(self.host, self.port)()

    def stop(self) -> None:
        if self.process is None or self.process.poll() is not None:
            return
        self.process.terminate()
        try:
            self.process.wait(timeout=STOP_TIMEOUT_SECONDS)
        except subprocess.TimeoutExpired:
            logger.warning(f"Process {self.process.pid} did not exit, killing")
            self.process.kill()
            self.process.wait(timeout=STOP_TIMEOUT_SECONDS)


class DockerService:
    """A service run as a Docker container with one published port.

    Parameters
    ----------
    port : int
        Allocated host port
    image : str
        Image to run
    container_port : int
        Port the container listens on internally
    host : str
        Host interface the port is published on
    environment : dict[str, str] | None
        Container environment
    command : str | list[str] | None
        Optional command override
    health_path : str | None
        HTTP path probed for readiness; a TCP connect probe is used when None
    name : str | None
        Container name
    client : Any
        Docker client (defaults to ``docker.from_env()``)
    """

    protocol = "http"

    def __init__(
        self,
        port: int,
        image: str,
        container_port: int,
        host: str = DEFAULT_HOST,
        environment: dict[str, str] | None = None,
        command: str | list[str] | None = None,
        health_path: str | None = None,
        name: str | None = None,
        client: Any = None,
    ) -> None:
        self.port = port
        self.image = image
        self.container_port = container_port
        self.host = host
        self.environment = environment or {}
        self.command = command
        self.health_path = health_path
        self.name = name
        self._client = client
        self.container = None

    @property
    def client(self) -> Any:
        if self._client is None:
            self._client = docker.from_env()
        return self._client

    def start(self) -> None:
        logger.debug(f"Starting container from {self.image} on host port {self.port}")
        self.container = self.client.containers.run(
            self.image,
            command=self.command,
            detach=True,
            name=self.name,
            environment=self.environment,
            ports={f"{self.container_port}/tcp": (self.host, self.port)},
            labels={"managed-by": "worldkit"},
        )

    def health_probe(self) -> bool:
        if self.container is None:
            return False
        self.container.reload()
        if self.container.status != "running":
            return False
        if self.health_path is not None:
            return http_probe(f"http://{self.host}:{self.port}{self.health_path}")()
        return tcp_probe(self.host, self.port)()

    def stop(self) -> None:
        if self.container is None:
            return
        try:
            self.container.stop(timeout=int(STOP_TIMEOUT_SECONDS))
            self.container.remove(force=True)
        except docker.errors.NotFound:
            logger.debug(f"Container for port {self.port} already removed")
        self.container = None


KIND_BUILDERS: dict[str, Callable[..., Any]] = {
    "static": StaticHttpService,
    "process": ProcessService,
    "docker": DockerService,
}


class ServiceCatalog:
    """Resolves service location references to construction functions.

    Parameters
    ----------
    host : str
        Host passed to built-in service kinds
    """

    def __init__(self, host: str = DEFAULT_HOST) -> None:
        self.host = host
        self._entries: dict[str, ConstructionFunction] = {}

    def register(self, name: str, construct: ConstructionFunction) -> None:
        """Register a construction function under a reference name."""
        self._entries[name] = construct

    def register_spec(self, name: str, spec: dict[str, Any]) -> None:
        """Register a built-in service kind from a configuration mapping.

        Parameters
        ----------
        name : str
            Reference name
        spec : dict[str, Any]
            Mapping with a ``kind`` key (static, process, docker) plus the
            keyword arguments of that kind

        Raises
        ------
        ConfigurationError
            If the kind is unknown
        """
        options = dict(spec)
        kind = options.pop("kind", None)
        if kind not in KIND_BUILDERS:
            raise ConfigurationError(
                f"Service '{name}' has unknown kind {kind!r}. "
                f"Available kinds: {sorted(KIND_BUILDERS)}"
            )
        options.setdefault("host", self.host)
        self._entries[name] = partial(KIND_BUILDERS[kind], **options)

    def resolve(self, reference: str) -> ConstructionFunction:
        """Return the construction function for a reference.

        Raises
        ------
        ConfigurationError
            If nothing is registered under the reference
        """
        try:
            return self._entries[reference]
        except KeyError:
            raise ConfigurationError(
                f"Unknown service reference '{reference}'. "
                f"Available services: {sorted(self._entries)}"
            ) from None

    def __contains__(self, reference: object) -> bool:
        return reference in self._entries

    def names(self) -> list[str]:
        return sorted(self._entries)
