"""Pytest configuration and fixtures for the image harvester tests."""

import pytest

from tests.fixtures import FakeClock, FakeRedis, MemorySink, make_image_bytes


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def memory_sink() -> MemorySink:
    return MemorySink()


@pytest.fixture
def png_bytes() -> bytes:
    """128x128 PNG that passes the default validation thresholds."""
    return make_image_bytes((128, 128), "PNG")


@pytest.fixture
def jpeg_bytes() -> bytes:
    return make_image_bytes((256, 256), "JPEG")


@pytest.fixture(autouse=True)
def _no_queue_namespace(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep Redis key names independent of the developer's .env."""
    monkeypatch.delenv("QUEUE_NAMESPACE", raising=False)
