"""Test fake implementations for dependency injection testing."""

from tests.fakes.fake_handle import BlockingFakeHandle, FakeHandle, FakeHandleFactory
from tests.fakes.fake_backend import FakeBackendSession, FakeResponse

__all__ = ["BlockingFakeHandle", "FakeBackendSession", "FakeHandle", "FakeHandleFactory", "FakeResponse"]
