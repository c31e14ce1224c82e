import asyncio
import sys
from pathlib import Path

import pytest


# Ensure backend/src is on sys.path for tests so that imports like `proximity.*` and `models` work.
ROOT = Path(__file__).resolve().parent
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from models import CategoryCount  # noqa: E402


class FakeClock:
    """Manual clock whose sleep advances time instead of waiting."""

    def __init__(self, start: float = 0.0) -> None:
        self.now = start
        self.sleeps = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds
        await asyncio.sleep(0)


class FakeProvider:
    """Stands in for the Overpass provider and records every lookup."""

    def __init__(self, counts=None, failures=(), delay: float = 0.0, raises=None, elements=None) -> None:
        self.counts = counts or {}
        self.elements = elements or {}
        self.failures = set(failures)
        self.delay = delay
        self.raises = raises
        self.calls = []
        self.active = 0
        self.max_active = 0

    async def fetch_count(self, category, lat, lng, radius):
        self.calls.append((category, lat, lng, radius))
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            await asyncio.sleep(self.delay)
        finally:
            self.active -= 1
        if self.raises is not None:
            raise self.raises
        if category in self.failures:
            return CategoryCount(category=category, error="upstream 504: gateway timeout")
        return CategoryCount(category=category, count=self.counts.get(category, 0))

    async def fetch_elements(self, category, lat, lng, radius):
        self.calls.append((category, lat, lng, radius))
        await asyncio.sleep(self.delay)
        if category in self.failures:
            return None
        return list(self.elements.get(category, []))


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock(start=1_000.0)


@pytest.fixture
def make_provider():
    return FakeProvider
