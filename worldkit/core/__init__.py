"""Core worldkit functionality."""

from __future__ import annotations

from worldkit.core.config import ConfigLoader, HarnessSettings
from worldkit.core.diagnostics import DiagnosticEvent, DiagnosticsCollector
from worldkit.core.orchestrator import (
    EnvironmentDeclaration,
    Orchestrator,
    ResourceDeclaration,
    ScenarioRun,
    ScenarioState,
)
from worldkit.core.registry import ResourceRegistry
from worldkit.core.timeouts import TimeoutBudget
from worldkit.core.world import (
    Context,
    Credentials,
    CredentialsFactory,
    TeardownReport,
    World,
)

__all__ = [
    "ConfigLoader",
    "Context",
    "Credentials",
    "CredentialsFactory",
    "DiagnosticEvent",
    "DiagnosticsCollector",
    "EnvironmentDeclaration",
    "HarnessSettings",
    "Orchestrator",
    "ResourceDeclaration",
    "ResourceRegistry",
    "ScenarioRun",
    "ScenarioState",
    "TeardownReport",
    "TimeoutBudget",
    "World",
]
