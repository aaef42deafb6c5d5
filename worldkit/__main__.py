#!/usr/bin/env python3
"""worldkit - ephemeral services and imposters for end-to-end scenarios."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any

from worldkit.core.config import ConfigLoader
from worldkit.core.orchestrator import EnvironmentDeclaration, Orchestrator

logger = logging.getLogger(__name__)


class Worldkit:
    """Command line interface for inspecting and standing up environments."""

    def __init__(self) -> None:
        self._config_loader = ConfigLoader()

    def _load(self, config: str | None) -> tuple[dict[str, Any], Path]:
        config_file = self._config_loader.resolve_path(config)
        loaded = self._config_loader.load_config(str(config_file))
        self._config_loader.validate_config(loaded)
        return loaded, config_file

    def _apply_verbose(self, verbose: bool) -> None:
        if verbose:
            logging.getLogger().setLevel(logging.DEBUG)

    def validate(self, config: str | None = None, verbose: bool = False) -> str:
        """Validate a configuration file and every environment it declares."""
        self._apply_verbose(verbose)
        loaded, config_file = self._load(config)

        environments = loaded.get("environments") or {}
        for resources in environments.values():
            EnvironmentDeclaration.from_config(resources)

        return f"{config_file}: valid ({len(environments)} environment(s))"

    def environments(
        self, config: str | None = None, verbose: bool = False
    ) -> dict[str, list[str]]:
        """List declared environments and the resources each one provisions."""
        self._apply_verbose(verbose)
        loaded, _ = self._load(config)
        return {
            name: [f"{entry['name']} ({entry['type']})" for entry in resources or []]
            for name, resources in (loaded.get("environments") or {}).items()
        }

    def up(
        self,
        env: str,
        config: str | None = None,
        hold: float = 0.0,
        verbose: bool = False,
    ) -> dict[str, str]:
        """Provision an environment, report its endpoints, then tear it down.

        Parameters
        ----------
        env : str
            Environment name from the ``environments`` section
        config : str | None
            Configuration file path
        hold : float
            Seconds to keep the environment up before teardown
        verbose : bool
            Enable debug logging

        Returns
        -------
        dict[str, str]
            Resource name to URL
        """
        self._apply_verbose(verbose)

        loaded, config_file = self._load(config)
        declarations = self._config_loader.get_environment(loaded, env)
        orchestrator = Orchestrator.from_config(loaded, config_dir=config_file.parent)

        return asyncio.run(self._up(orchestrator, env, declarations, hold))

    async def _up(
        self,
        orchestrator: Orchestrator,
        env: str,
        declarations: list[dict[str, Any]],
        hold: float,
    ) -> dict[str, str]:
        if orchestrator.imposter_manager is not None:
            await orchestrator.imposter_manager.ensure_backend_ready(
                orchestrator.settings.backend_ready_timeout
            )

        try:
            async with orchestrator.scenario(env, declarations) as world:
                endpoints = {
                    name: service.location.url for name, service in world.get_context().items()
                }
                for name, url in endpoints.items():
                    logger.info(f"{name}: {url}")
                if hold > 0:
                    logger.info(f"Holding environment '{env}' for {hold}s")
                    await asyncio.sleep(hold)
        finally:
            await orchestrator.shutdown()

        return endpoints


if __name__ == "__main__":
    from worldkit.cli.main import main

    main()
