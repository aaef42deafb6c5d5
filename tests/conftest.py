"""Pytest configuration and fixtures for worldkit tests."""

import os
from collections.abc import Generator
from pathlib import Path
from typing import Any

import pytest
import yaml


@pytest.fixture
def config_file(tmp_path: Path) -> Generator[Path, None, None]:
    """Create a temporary config file path and point WORLDKIT_CONFIG at it.

    Parameters
    ----------
    tmp_path : Path
        Pytest temporary directory path

    Yields
    ------
    Path
        Path to temporary config file
    """
    config_path = tmp_path / "worldkit.yaml"

    original_env = os.environ.get("WORLDKIT_CONFIG")
    os.environ["WORLDKIT_CONFIG"] = str(config_path)

    yield config_path

    if original_env is not None:
        os.environ["WORLDKIT_CONFIG"] = original_env
    elif "WORLDKIT_CONFIG" in os.environ:
        del os.environ["WORLDKIT_CONFIG"]


@pytest.fixture
def write_config(config_file: Path):
    """Helper fixture to write config data to file.

    Returns
    -------
    callable
        Function that takes config_data dict and writes to file
    """

    def _write(config_data: dict[str, Any]) -> Path:
        with open(config_file, "w") as f:
            yaml.dump(config_data, f)
        return config_file

    return _write
