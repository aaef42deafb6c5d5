import copy
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml
from omegaconf import OmegaConf
from omegaconf.errors import InterpolationResolutionError

from worldkit.constants import (
    CONFIG_ENV_VAR,
    DEFAULT_CONFIG_FILE,
    DEFAULT_HOST,
    HEALTH_BACKOFF_FACTOR,
    HEALTH_INTERVAL_SECONDS,
    HEALTH_MAX_INTERVAL_SECONDS,
    HEALTH_TIMEOUT_SECONDS,
    PORT_PROBE_ATTEMPTS,
    PORT_RANGE_END,
    PORT_RANGE_START,
    PROVISIONING_TIMEOUT_SECONDS,
    REGISTRATION_TIMEOUT_SECONDS,
    ResourceType,
    TeardownPolicy,
)
from worldkit.exceptions import ConfigurationError

logger = logging.getLogger(__name__)

HEALTH_OPTION_KEYS = ("timeout", "interval", "backoff_factor", "max_interval")


@dataclass(frozen=True)
class HarnessSettings:
    """Resolved harness-wide settings.

    Attributes
    ----------
    host : str
        Interface services bind to
    port_range_start : int
        First allocatable port
    port_range_end : int
        Last allocatable port (inclusive)
    port_probe_attempts : int
        Candidate ports tried per allocation
    health_timeout : float
        Default per-service health deadline
    health_interval : float
        Default initial probe delay
    health_backoff_factor : float
        Default probe delay multiplier
    health_max_interval : float
        Default probe delay cap
    provisioning_timeout : float
        Aggregate per-scenario provisioning deadline
    imposter_backend : str | None
        Virtualization backend URL; None disables imposters
    registration_timeout : float
        Per-call timeout for backend requests
    backend_ready_timeout : float
        How long to wait for the backend to answer at startup
    teardown_policy : TeardownPolicy
        Whether teardown failures raise
    credentials_locale : str
        Faker locale for generated credentials
    credentials_seed : int | None
        Seed for reproducible credentials
    diagnostics_dir : str | None
        Directory receiving per-scenario diagnostics logs
    """

    host: str = DEFAULT_HOST
    port_range_start: int = PORT_RANGE_START
    port_range_end: int = PORT_RANGE_END
    port_probe_attempts: int = PORT_PROBE_ATTEMPTS
    health_timeout: float = HEALTH_TIMEOUT_SECONDS
    health_interval: float = HEALTH_INTERVAL_SECONDS
    health_backoff_factor: float = HEALTH_BACKOFF_FACTOR
    health_max_interval: float = HEALTH_MAX_INTERVAL_SECONDS
    provisioning_timeout: float = PROVISIONING_TIMEOUT_SECONDS
    imposter_backend: str | None = None
    registration_timeout: float = REGISTRATION_TIMEOUT_SECONDS
    backend_ready_timeout: float = 30.0
    teardown_policy: TeardownPolicy = TeardownPolicy.REPORT
    credentials_locale: str = "en_US"
    credentials_seed: int | None = None
    diagnostics_dir: str | None = None


class ConfigLoader:
    """Load, merge and validate worldkit YAML configuration."""

    def __init__(self) -> None:
        self.BUILT_IN_DEFAULTS = {
            "host": DEFAULT_HOST,
            "port_range": [PORT_RANGE_START, PORT_RANGE_END],
            "port_probe_attempts": PORT_PROBE_ATTEMPTS,
            "health": {
                "timeout": HEALTH_TIMEOUT_SECONDS,
                "interval": HEALTH_INTERVAL_SECONDS,
                "backoff_factor": HEALTH_BACKOFF_FACTOR,
                "max_interval": HEALTH_MAX_INTERVAL_SECONDS,
            },
            "provisioning_timeout": PROVISIONING_TIMEOUT_SECONDS,
            "imposter_backend": None,
            "registration_timeout": REGISTRATION_TIMEOUT_SECONDS,
            "backend_ready_timeout": 30.0,
            "teardown_policy": TeardownPolicy.REPORT.value,
            "credentials": {"locale": "en_US", "seed": None},
            "diagnostics_dir": None,
        }

    def resolve_path(self, config_path: str | None = None) -> Path:
        """Return the configuration path to use.

        Falls back to the WORLDKIT_CONFIG environment variable, then to
        worldkit.yaml in the working directory.
        """
        if config_path is None:
            config_path = os.environ.get(CONFIG_ENV_VAR, DEFAULT_CONFIG_FILE)
        return Path(config_path)

    def load_config(self, config_path: str | None = None) -> dict[str, Any]:
        """Load configuration from YAML file.

        Parameters
        ----------
        config_path : str | None
            Path to YAML config file. If None, checks WORLDKIT_CONFIG env var,
            then falls back to worldkit.yaml

        Returns
        -------
        dict[str, Any]
            Parsed configuration with all variable interpolations resolved

        Raises
        ------
        ConfigurationError
            If the YAML is invalid or variables cannot be resolved
        """
        config_file = self.resolve_path(config_path)

        if not config_file.exists():
            logger.debug(f"No configuration file at {config_file}, using defaults")
            return {"defaults": {}}

        try:
            cfg = OmegaConf.load(config_file)
        except yaml.YAMLError as e:
            logger.error("Failed to parse YAML config file %s: %s", config_file, e)
            raise ConfigurationError(f"Invalid YAML in {config_file}: {e}") from e
        except OSError as e:
            logger.error("Failed to read config file %s: %s", config_file, e)
            raise ConfigurationError(f"Failed to read config file {config_file}: {e}") from e

        if cfg is None:
            return {"defaults": {}}

        if "vars" in cfg:
            vars_dict = OmegaConf.to_container(cfg.vars, resolve=False)
            for key, value in vars_dict.items():
                if key not in cfg:
                    cfg[key] = value

        try:
            config = OmegaConf.to_container(cfg, resolve=True, throw_on_missing=True)
        except InterpolationResolutionError as e:
            logger.error("Failed to resolve configuration variables: %s", e)
            raise ConfigurationError(f"Configuration variable resolution error: {e}") from e
        except (ValueError, KeyError, AttributeError) as e:
            logger.error("Failed to resolve configuration variables: %s", e)
            raise ConfigurationError(f"Configuration variable resolution error: {e}") from e

        return config

    def get_settings(self, config: dict[str, Any]) -> HarnessSettings:
        """Merge built-in defaults with the ``defaults`` section.

        Parameters
        ----------
        config : dict[str, Any]
            Full configuration from YAML

        Returns
        -------
        HarnessSettings
            Resolved settings
        """
        merged = copy.deepcopy(self.BUILT_IN_DEFAULTS)

        for key, value in (config.get("defaults") or {}).items():
            if isinstance(value, dict) and isinstance(merged.get(key), dict):
                merged[key].update(value)
            else:
                merged[key] = value

        self._validate_defaults(merged)

        start, end = merged["port_range"]
        health = merged["health"]
        credentials = merged["credentials"]
        return HarnessSettings(
            host=merged["host"],
            port_range_start=start,
            port_range_end=end,
            port_probe_attempts=merged["port_probe_attempts"],
            health_timeout=float(health["timeout"]),
            health_interval=float(health["interval"]),
            health_backoff_factor=float(health["backoff_factor"]),
            health_max_interval=float(health["max_interval"]),
            provisioning_timeout=float(merged["provisioning_timeout"]),
            imposter_backend=merged["imposter_backend"],
            registration_timeout=float(merged["registration_timeout"]),
            backend_ready_timeout=float(merged["backend_ready_timeout"]),
            teardown_policy=TeardownPolicy(merged["teardown_policy"]),
            credentials_locale=credentials.get("locale", "en_US"),
            credentials_seed=credentials.get("seed"),
            diagnostics_dir=merged["diagnostics_dir"],
        )

    def get_environment(self, config: dict[str, Any], name: str) -> list[dict[str, Any]]:
        """Get the declaration list of a named environment.

        Raises
        ------
        ConfigurationError
            If the environment is not defined
        """
        environments = config.get("environments") or {}

        if name not in environments:
            available = sorted(environments)
            if not available:
                raise ConfigurationError(
                    f"Environment '{name}' not found in configuration. "
                    f"No environments are defined in the config file."
                )
            raise ConfigurationError(
                f"Environment '{name}' not found in configuration. "
                f"Available environments: {available}"
            )

        return copy.deepcopy(environments[name] or [])

    def validate_config(self, config: dict[str, Any]) -> None:
        """Validate configuration sections.

        Parameters
        ----------
        config : dict[str, Any]
            Configuration to validate

        Raises
        ------
        ConfigurationError
            If configuration is invalid
        """
        self.get_settings(config)
        self._validate_services(config)
        self._validate_imposters(config)

        environments = config.get("environments") or {}
        if not isinstance(environments, dict):
            raise ConfigurationError("environments must be a mapping of name to resource list")

        for env_name, resources in environments.items():
            self._validate_environment(env_name, resources)

        if "global" in config:
            self._validate_environment("global", config["global"])

    def _validate_defaults(self, merged: dict[str, Any]) -> None:
        if not isinstance(merged["host"], str) or not merged["host"]:
            raise ConfigurationError("host must be a non-empty string")

        port_range = merged["port_range"]
        if (
            not isinstance(port_range, list)
            or len(port_range) != 2
            or not all(isinstance(port, int) for port in port_range)
        ):
            raise ConfigurationError("port_range must be a list of two integers")

        start, end = port_range
        if not (1 <= start <= end <= 65535):
            raise ConfigurationError("port_range must satisfy 1 <= start <= end <= 65535")

        if not isinstance(merged["port_probe_attempts"], int) or merged["port_probe_attempts"] < 1:
            raise ConfigurationError("port_probe_attempts must be a positive integer")

        health = merged["health"]
        if not isinstance(health, dict):
            raise ConfigurationError("health must be a mapping")
        for key in HEALTH_OPTION_KEYS:
            value = health.get(key)
            if not isinstance(value, (int, float)) or value <= 0:
                raise ConfigurationError(f"health.{key} must be a positive number")
        if health["backoff_factor"] < 1:
            raise ConfigurationError("health.backoff_factor must be at least 1")

        for key in ("provisioning_timeout", "registration_timeout", "backend_ready_timeout"):
            value = merged[key]
            if not isinstance(value, (int, float)) or value <= 0:
                raise ConfigurationError(f"{key} must be a positive number")

        backend = merged["imposter_backend"]
        if backend is not None and not (
            isinstance(backend, str) and backend.startswith(("http://", "https://"))
        ):
            raise ConfigurationError("imposter_backend must be an http(s) URL")

        policies = [policy.value for policy in TeardownPolicy]
        if merged["teardown_policy"] not in policies:
            raise ConfigurationError(
                f"teardown_policy must be one of {policies}, got '{merged['teardown_policy']}'"
            )

        if not isinstance(merged["credentials"], dict):
            raise ConfigurationError("credentials must be a mapping")

    def _validate_services(self, config: dict[str, Any]) -> None:
        services = config.get("services") or {}
        if not isinstance(services, dict):
            raise ConfigurationError("services must be a mapping")

        for name, spec in services.items():
            if not isinstance(spec, dict):
                raise ConfigurationError(f"service '{name}' must be a mapping")
            if "kind" not in spec:
                raise ConfigurationError(f"service '{name}' must declare a kind")

    def _validate_imposters(self, config: dict[str, Any]) -> None:
        imposters = config.get("imposters") or {}
        if not isinstance(imposters, dict):
            raise ConfigurationError("imposters must be a mapping")

        for name, definition in imposters.items():
            if not isinstance(definition, (dict, str)):
                raise ConfigurationError(
                    f"imposter '{name}' must be an inline definition or a file path"
                )

    def _validate_environment(self, env_name: str, resources: Any) -> None:
        if not isinstance(resources, list):
            raise ConfigurationError(f"environment '{env_name}' must be a list of resources")

        types = [resource_type.value for resource_type in ResourceType]
        seen: set[str] = set()

        for entry in resources:
            if not isinstance(entry, dict):
                raise ConfigurationError(
                    f"environment '{env_name}' entries must be mappings"
                )

            for key in ("name", "type", "location"):
                if key not in entry:
                    raise ConfigurationError(
                        f"environment '{env_name}' entry is missing '{key}'"
                    )

            if entry["type"] not in types:
                raise ConfigurationError(
                    f"environment '{env_name}' entry '{entry['name']}' has type "
                    f"'{entry['type']}', expected one of {types}"
                )

            if entry["name"] in seen:
                raise ConfigurationError(
                    f"environment '{env_name}' declares '{entry['name']}' more than once"
                )
            seen.add(entry["name"])
