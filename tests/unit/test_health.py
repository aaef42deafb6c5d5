"""Unit tests for HealthChecker and probe helpers."""

import asyncio
import socket
import time

from worldkit.services.health import HealthChecker, HealthStatus, http_probe, tcp_probe


class TestHealthCheckerReady:
    """Test probes that eventually succeed."""

    def test_immediately_ready(self) -> None:
        """Test a probe answering True on the first call."""
        checker = HealthChecker(timeout=1.0, interval=0.01)

        async def probe() -> bool:
            return True

        report = asyncio.run(checker.wait(probe))

        assert report.status is HealthStatus.READY
        assert report.ready
        assert report.attempts == 1

    def test_ready_after_retries(self) -> None:
        """Test attempts are counted until the probe succeeds."""
        checker = HealthChecker(timeout=2.0, interval=0.01, max_interval=0.02)
        calls = []

        def probe() -> bool:
            calls.append(1)
            return len(calls) >= 4

        report = asyncio.run(checker.wait(probe))

        assert report.ready
        assert report.attempts == 4

    def test_probe_exception_means_not_ready(self) -> None:
        """Test a raising probe is retried instead of propagating."""
        checker = HealthChecker(timeout=2.0, interval=0.01)
        calls = []

        async def probe() -> bool:
            calls.append(1)
            if len(calls) < 3:
                raise ConnectionRefusedError("not yet")
            return True

        report = asyncio.run(checker.wait(probe))

        assert report.ready
        assert report.attempts == 3


class TestHealthCheckerTimeout:
    """Test probes that never succeed."""

    def test_times_out_as_status(self) -> None:
        """Test timing out is a returned status, not an exception."""
        checker = HealthChecker(timeout=0.2, interval=0.02)

        async def probe() -> bool:
            return False

        report = asyncio.run(checker.wait(probe))

        assert report.status is HealthStatus.TIMED_OUT
        assert not report.ready
        assert report.attempts >= 2

    def test_deadline_respected(self) -> None:
        """Test the check ends close to the deadline, neither early nor late."""
        checker = HealthChecker(timeout=0.3, interval=0.05, backoff_factor=3.0, max_interval=5.0)

        async def probe() -> bool:
            return False

        started = time.monotonic()
        report = asyncio.run(checker.wait(probe))
        elapsed = time.monotonic() - started

        assert report.elapsed >= 0.3
        assert elapsed < 0.8

    def test_hanging_probe_bounded(self) -> None:
        """Test a probe that never returns cannot stall the check."""
        checker = HealthChecker(timeout=0.2, interval=0.01)

        async def probe() -> bool:
            await asyncio.sleep(10)
            return True

        started = time.monotonic()
        report = asyncio.run(checker.wait(probe))

        assert not report.ready
        assert time.monotonic() - started < 1.0

    def test_backoff_spaces_attempts(self) -> None:
        """Test growing delays mean fewer attempts than a fixed interval would give."""
        checker = HealthChecker(timeout=0.5, interval=0.01, backoff_factor=2.0, max_interval=1.0)

        async def probe() -> bool:
            return False

        report = asyncio.run(checker.wait(probe))

        # 0.01 doubling reaches the deadline in under ten sleeps
        assert report.attempts <= 10

    def test_overrides_per_call(self) -> None:
        """Test per-call timeout overrides the checker default."""
        checker = HealthChecker(timeout=30.0, interval=0.01)

        async def probe() -> bool:
            return False

        report = asyncio.run(checker.wait(probe, timeout=0.1))

        assert not report.ready
        assert report.elapsed < 1.0


class TestProbeHelpers:
    """Test the http and tcp probe builders."""

    def test_tcp_probe_open_port(self) -> None:
        """Test tcp_probe succeeds against a listening socket."""
        server = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        server.bind(("127.0.0.1", 0))
        server.listen(1)
        port = server.getsockname()[1]

        try:
            assert tcp_probe("127.0.0.1", port)() is True
        finally:
            server.close()

    def test_tcp_probe_closed_port(self) -> None:
        """Test tcp_probe fails when nothing listens."""
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        sock.bind(("127.0.0.1", 0))
        port = sock.getsockname()[1]
        sock.close()

        assert tcp_probe("127.0.0.1", port, connect_timeout=0.2)() is False

    def test_http_probe_unreachable(self) -> None:
        """Test http_probe returns False on connection errors."""
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        sock.bind(("127.0.0.1", 0))
        port = sock.getsockname()[1]
        sock.close()

        assert http_probe(f"http://127.0.0.1:{port}/", request_timeout=0.2)() is False
