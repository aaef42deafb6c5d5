"""Behave environment configuration for worldkit scenarios."""

import logging
import os
from pathlib import Path

from behave.model import Scenario
from behave.runner import Context

from worldkit.harness import WorldHarness, start_worldkit, stop_worldkit
from worldkit.logging import configure_logging

logger = logging.getLogger(__name__)

DEFAULT_CONFIG = Path(__file__).parent / "worldkit.yaml"
IMPOSTER_TAG = "imposter"


def before_all(context: Context) -> None:
    """Start the process-wide World shared by every scenario."""
    configure_logging(verbose=os.environ.get("WORLDKIT_DEBUG") == "1")
    config_path = os.environ.get("WORLDKIT_CONFIG", str(DEFAULT_CONFIG))
    start_worldkit(context, config_path)


def before_scenario(context: Context, scenario: Scenario) -> None:
    """Provision the scenario World."""
    if IMPOSTER_TAG in scenario.effective_tags and context.orchestrator.imposter_manager is None:
        scenario.skip("No imposter_backend configured")
        return

    context.harness = WorldHarness(context, scenario)
    context.harness.setup()
    logger.info(f"Provisioned world for scenario: {scenario.name}")


def after_scenario(context: Context, scenario: Scenario) -> None:
    """Tear down the scenario World whatever the outcome."""
    if hasattr(context, "harness"):
        context.harness.cleanup()
        logger.info(f"Cleaned up world for scenario: {scenario.name}")


def after_all(context: Context) -> None:
    """Dispose the process-wide World."""
    stop_worldkit(context)
