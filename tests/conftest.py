from __future__ import annotations

import pytest

from cloudbot.cache import MemoryCache
from cloudbot.scoring import ScoreAggregator
from tests.fakes import FakeClock, FakeStorage, FakeTelegramClient, Ticker


@pytest.fixture
def ticker() -> Ticker:
    return Ticker()


@pytest.fixture
def cache(ticker: Ticker) -> MemoryCache:
    return MemoryCache(timer=ticker)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def storage() -> FakeStorage:
    return FakeStorage()


@pytest.fixture
def aggregator(storage: FakeStorage, cache: MemoryCache, clock: FakeClock) -> ScoreAggregator:
    return ScoreAggregator(storage, cache, clock=clock)


@pytest.fixture
def client() -> FakeTelegramClient:
    return FakeTelegramClient()
