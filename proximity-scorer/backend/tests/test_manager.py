from __future__ import annotations

import asyncio

import pytest

from config import Configuration
from models import Entity
from proximity.cache import ScoreCache
from proximity.manager import ProximityScoreManager, ScoringSetupError
from proximity.scoring import CATEGORY_NAMES

ALL_EXCELLENT = {"restaurant": 20, "convenience": 10, "school": 6, "health": 10, "transport": 12}


def _cfg(**overrides) -> Configuration:
    values = {"request_delay_ms": 0, "category_delay_ms": 0}
    values.update(overrides)
    return Configuration(**values)


def test_all_excellent_scores_100(make_provider) -> None:
    provider = make_provider(counts=ALL_EXCELLENT)
    got = []

    async def run() -> None:
        mgr = ProximityScoreManager(_cfg(), provider)
        done = asyncio.Event()

        def callback(entity_id, score):
            got.append((entity_id, score))
            done.set()

        mgr.calculate_score(Entity(id=1, latitude=13.75, longitude=100.50), callback)
        await done.wait()

    asyncio.run(run())
    assert got == [(1, 100)]
    assert [c[0] for c in provider.calls] == CATEGORY_NAMES


def test_missing_coordinates_score_zero_without_calls(make_provider) -> None:
    provider = make_provider(counts=ALL_EXCELLENT)
    got = []

    async def run() -> None:
        mgr = ProximityScoreManager(_cfg(), provider)
        mgr.calculate_score(Entity(id=2), lambda i, s: got.append((i, s)))
        mgr.calculate_score(Entity(id=3, latitude=13.75), lambda i, s: got.append((i, s)))
        mgr.calculate_score(Entity(id=4, latitude=95.0, longitude=100.5), lambda i, s: got.append((i, s)))

    asyncio.run(run())
    assert got == [(2, 0), (3, 0), (4, 0)]
    assert provider.calls == []


def test_zero_coordinates_are_valid(make_provider) -> None:
    provider = make_provider(counts=ALL_EXCELLENT)

    async def run() -> int:
        mgr = ProximityScoreManager(_cfg(), provider)
        return await mgr.submit(Entity(id="null-island", latitude=0.0, longitude=0.0))

    assert asyncio.run(run()) == 100
    assert len(provider.calls) == len(CATEGORY_NAMES)


def test_cache_hit_within_ttl(make_provider) -> None:
    provider = make_provider(counts=ALL_EXCELLENT)
    got = []

    async def run() -> None:
        mgr = ProximityScoreManager(_cfg(), provider)
        assert await mgr.submit(Entity(id=1, latitude=13.75, longitude=100.5)) == 100
        calls = len(provider.calls)
        # a different entity at the same spot shares the cached score
        mgr.calculate_score(Entity(id=9, latitude=13.75, longitude=100.5), lambda i, s: got.append((i, s)))
        assert got == [(9, 100)]
        assert len(provider.calls) == calls

    asyncio.run(run())


def test_expired_cache_triggers_recalculation(make_provider, fake_clock) -> None:
    provider = make_provider(counts=ALL_EXCELLENT)
    cfg = _cfg()

    async def run() -> None:
        cache = ScoreCache(cfg.cache_ttl_sec, clock=fake_clock)
        mgr = ProximityScoreManager(cfg, provider, cache=cache)
        entity = Entity(id=1, latitude=13.75, longitude=100.5)
        await mgr.submit(entity)
        assert len(provider.calls) == 5

        fake_clock.now += 60 * 60 + 1
        assert mgr.get_cache_stats().valid_cached == 0
        await mgr.submit(entity)
        assert len(provider.calls) == 10

    asyncio.run(run())


def test_failed_category_excluded_from_average(make_provider) -> None:
    provider = make_provider(counts=ALL_EXCELLENT, failures={"school"})

    async def run() -> int:
        mgr = ProximityScoreManager(_cfg(), provider)
        return await mgr.submit(Entity(id=1, latitude=13.75, longitude=100.5))

    # counting the failure as zero would give 80
    assert asyncio.run(run()) == 100


def test_detailed_score_lists_failures_separately(make_provider) -> None:
    counts = dict(ALL_EXCELLENT, restaurant=1)
    provider = make_provider(counts=counts, failures={"health"})

    async def run():
        mgr = ProximityScoreManager(_cfg(), provider)
        return await mgr.calculate_detailed_score(Entity(id=1, latitude=13.75, longitude=100.5))

    detail = asyncio.run(run())
    assert detail.breakdown == {"restaurant": 40, "convenience": 100, "school": 100, "transport": 100}
    assert detail.counts == {"restaurant": 1, "convenience": 10, "school": 6, "transport": 12}
    assert detail.failed == ["health"]
    assert detail.overall == 85


def test_detailed_score_without_coordinates(make_provider) -> None:
    provider = make_provider()

    async def run():
        mgr = ProximityScoreManager(_cfg(), provider)
        return await mgr.calculate_detailed_score(Entity(id=2))

    detail = asyncio.run(run())
    assert detail.overall == 0
    assert detail.breakdown == {}
    assert detail.counts == {}
    assert provider.calls == []


def test_detailed_score_setup_errors(make_provider) -> None:
    provider = make_provider()

    async def run() -> None:
        mgr = ProximityScoreManager(_cfg(), provider)
        with pytest.raises(ScoringSetupError):
            await mgr.calculate_detailed_score(Entity(id=1, latitude=13.75, longitude=100.5), radius=0)

        empty = ProximityScoreManager(_cfg(), provider, categories=[])
        with pytest.raises(ScoringSetupError):
            await empty.calculate_detailed_score(Entity(id=1, latitude=13.75, longitude=100.5))

    asyncio.run(run())
    assert provider.calls == []


def test_all_categories_failing_scores_zero(make_provider) -> None:
    provider = make_provider(failures=set(CATEGORY_NAMES))

    async def run() -> None:
        mgr = ProximityScoreManager(_cfg(), provider)
        assert await mgr.submit(Entity(id=1, latitude=13.75, longitude=100.5)) == 0
        detail = await mgr.calculate_detailed_score(Entity(id=1, latitude=13.75, longitude=100.5))
        assert detail.overall == 0
        assert detail.failed == CATEGORY_NAMES

    asyncio.run(run())


def test_weighted_score(make_provider) -> None:
    counts = {"restaurant": 20, "convenience": 4, "school": 1, "health": 1, "transport": 12}
    provider = make_provider(counts=counts)

    async def run() -> int:
        mgr = ProximityScoreManager(_cfg(), provider)
        return await mgr.calculate_weighted_score(Entity(id=1, latitude=13.75, longitude=100.5))

    assert asyncio.run(run()) == 78


def test_concurrency_is_bounded(make_provider) -> None:
    provider = make_provider(counts=ALL_EXCELLENT, delay=0.005)
    observed = []

    async def run() -> None:
        mgr = ProximityScoreManager(_cfg(max_concurrent=2), provider)
        entities = [Entity(id=i, latitude=13.0 + i / 100, longitude=100.5) for i in range(7)]
        futures = [mgr.submit(e) for e in entities]
        stats = mgr.get_cache_stats()
        observed.append((stats.processing, stats.queue_length))
        scores = await asyncio.gather(*futures)
        assert scores == [100] * 7

    asyncio.run(run())
    assert observed == [(2, 5)]
    assert provider.max_active == 2


def test_queue_is_fifo(make_provider) -> None:
    provider = make_provider(counts=ALL_EXCELLENT)

    async def run() -> None:
        mgr = ProximityScoreManager(_cfg(max_concurrent=1), provider)
        entities = [Entity(id=i, latitude=10.0 + i, longitude=100.0) for i in range(4)]
        await asyncio.gather(*(mgr.submit(e) for e in entities))

    asyncio.run(run())
    started = []
    for _, lat, _, _ in provider.calls:
        if lat not in started:
            started.append(lat)
    assert started == [10.0, 11.0, 12.0, 13.0]


def test_same_location_in_flight_is_shared(make_provider) -> None:
    provider = make_provider(counts=ALL_EXCELLENT, delay=0.001)
    got = []

    async def run() -> None:
        mgr = ProximityScoreManager(_cfg(), provider)
        first = mgr.submit(Entity(id=1, latitude=13.75, longitude=100.5))
        mgr.calculate_score(Entity(id=2, latitude=13.75, longitude=100.5), lambda i, s: got.append((i, s)))
        await first
        await asyncio.sleep(0)

    asyncio.run(run())
    assert got == [(2, 100)]
    assert len(provider.calls) == len(CATEGORY_NAMES)


def test_internal_error_resolves_to_zero_and_queue_continues(make_provider) -> None:
    provider = make_provider(raises=KeyError("boom"))
    got = []

    async def run() -> None:
        mgr = ProximityScoreManager(_cfg(max_concurrent=1), provider)
        a = mgr.submit(Entity(id=1, latitude=1.0, longitude=1.0))
        b = mgr.submit(Entity(id=2, latitude=2.0, longitude=2.0))
        got.extend(await asyncio.gather(a, b))
        # errors are not cached
        assert mgr.get_cache_stats().total_cached == 0

    asyncio.run(run())
    assert got == [0, 0]


def test_request_delay_between_items(make_provider, fake_clock) -> None:
    provider = make_provider(counts=ALL_EXCELLENT)

    async def run() -> None:
        mgr = ProximityScoreManager(_cfg(max_concurrent=1, request_delay_ms=300), provider, sleep=fake_clock.sleep)
        await asyncio.gather(
            mgr.submit(Entity(id=1, latitude=1.0, longitude=1.0)),
            mgr.submit(Entity(id=2, latitude=2.0, longitude=2.0)),
        )

    asyncio.run(run())
    assert 0.3 in fake_clock.sleeps


def test_score_batch_respects_limit(make_provider) -> None:
    provider = make_provider(counts=ALL_EXCELLENT)

    async def run():
        mgr = ProximityScoreManager(_cfg(), provider)
        entities = [
            Entity(id="a", latitude=13.75, longitude=100.5),
            Entity(id="b"),
            Entity(id="c", latitude=13.8, longitude=100.6),
        ]
        return await mgr.score_batch(entities, max_properties=2)

    assert asyncio.run(run()) == {"a": 100, "b": 0}


def test_stream_scores_reports_progress(make_provider) -> None:
    provider = make_provider(counts=ALL_EXCELLENT, delay=0.001)

    async def run():
        mgr = ProximityScoreManager(_cfg(), provider)
        entities = [
            Entity(id=1, latitude=13.75, longitude=100.5),
            Entity(id=2),
            Entity(id=3, latitude=13.8, longitude=100.6),
        ]
        return [event async for event in mgr.stream_scores(entities)]

    events = asyncio.run(run())
    # the entity without coordinates resolves first
    assert events[0].entity_id == 2
    assert events[0].score == 0
    assert {e.entity_id for e in events} == {1, 2, 3}
    assert [e.completed for e in events] == [1, 2, 3]
    assert [e.percent for e in events] == [33, 67, 100]


def test_clear_expired_cache(make_provider, fake_clock) -> None:
    provider = make_provider(counts=ALL_EXCELLENT)
    cfg = _cfg()

    async def run() -> None:
        mgr = ProximityScoreManager(cfg, provider, cache=ScoreCache(cfg.cache_ttl_sec, clock=fake_clock))
        await mgr.submit(Entity(id=1, latitude=13.75, longitude=100.5))
        assert mgr.clear_expired_cache() == 0
        fake_clock.now += cfg.cache_ttl_sec
        stats = mgr.get_cache_stats()
        assert (stats.total_cached, stats.valid_cached) == (1, 0)
        assert mgr.clear_expired_cache() == 1
        assert mgr.get_cache_stats().total_cached == 0

    asyncio.run(run())


def test_distance_scores_skip_failed_categories(make_provider) -> None:
    near = [{"type": "node", "lat": 13.7505, "lon": 100.5}]
    provider = make_provider(elements={"restaurant": near}, failures={"school"})

    async def run():
        mgr = ProximityScoreManager(_cfg(), provider)
        return await mgr.calculate_distance_scores(Entity(id=1, latitude=13.75, longitude=100.5), radius=800)

    scores = asyncio.run(run())
    assert "school" not in scores
    assert scores["restaurant"] == 100
    assert scores["transport"] == 0
    assert {call[3] for call in provider.calls} == {800}


def test_distance_scores_without_coordinates(make_provider) -> None:
    provider = make_provider()

    async def run():
        mgr = ProximityScoreManager(_cfg(), provider)
        return await mgr.calculate_distance_scores(Entity(id=1, latitude=13.75))

    assert asyncio.run(run()) == {}
    assert provider.calls == []
