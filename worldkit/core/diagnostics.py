"""Diagnostics collection for orchestration events."""

import json
import logging
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


@dataclass
class DiagnosticEvent:
    """Single diagnostic event.

    Attributes
    ----------
    event_type : str
        Type of event (e.g., "transition", "teardown-failure")
    description : str
        Event description
    details : dict
        Additional event details
    timestamp : float
        Time when event was recorded
    """

    event_type: str
    description: str
    details: dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)


class DiagnosticsCollector:
    """Captures structured events for post-scenario analysis.

    When a log path is provided, events are appended to disk as JSON lines
    immediately so diagnostics survive an abrupt end of the test run.

    Attributes
    ----------
    events : list[DiagnosticEvent]
        List of collected diagnostic events
    """

    def __init__(self, log_path: Path | None = None) -> None:
        self.events: list[DiagnosticEvent] = []
        self._log_path = Path(log_path) if log_path else None
        self._lock = threading.Lock()

    def record(
        self, event_type: str, description: str, details: dict[str, Any] | None = None
    ) -> None:
        """Record a diagnostic event.

        Parameters
        ----------
        event_type : str
            Type of event
        description : str
            Event description
        details : dict, optional
            Additional event details
        """
        event = DiagnosticEvent(event_type, description, details or {})

        with self._lock:
            self.events.append(event)

            if self._log_path is not None:
                payload = {
                    "event_type": event.event_type,
                    "description": event.description,
                    "details": event.details,
                    "timestamp": event.timestamp,
                }
                self._log_path.parent.mkdir(parents=True, exist_ok=True)
                with self._log_path.open("a", encoding="utf-8") as log_file:
                    log_file.write(json.dumps(payload, default=str) + "\n")

    def get_events_by_type(self, event_type: str) -> list[DiagnosticEvent]:
        """Get all events of a specific type."""
        with self._lock:
            return [e for e in self.events if e.event_type == event_type]

    def clear(self) -> None:
        """Clear all recorded events."""
        with self._lock:
            self.events.clear()
