"""Unit tests for DiagnosticsCollector."""

import json

from worldkit.core.diagnostics import DiagnosticsCollector


class TestDiagnosticsCollector:
    """Test event collection."""

    def test_record_and_filter(self) -> None:
        collector = DiagnosticsCollector()

        collector.record("transition", "s1", {"to": "ready"})
        collector.record("teardown-failure", "s1", {"errors": {"api": "stuck"}})

        events = collector.get_events_by_type("transition")
        assert len(events) == 1
        assert events[0].details == {"to": "ready"}

    def test_clear(self) -> None:
        collector = DiagnosticsCollector()
        collector.record("transition", "s1")

        collector.clear()

        assert collector.events == []

    def test_writes_json_lines(self, tmp_path) -> None:
        """Test events are appended to disk as they are recorded."""
        log_path = tmp_path / "nested" / "events.jsonl"
        collector = DiagnosticsCollector(log_path=log_path)

        collector.record("transition", "s1", {"to": "provisioning"})
        collector.record("transition", "s1", {"to": "ready"})

        lines = [json.loads(line) for line in log_path.read_text().splitlines()]
        assert [line["details"]["to"] for line in lines] == ["provisioning", "ready"]
        assert lines[0]["description"] == "s1"
