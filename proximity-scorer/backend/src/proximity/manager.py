from __future__ import annotations

import asyncio
from collections import deque
from dataclasses import dataclass
from typing import AsyncIterator, Awaitable, Callable, Deque, Dict, Iterable, List, Optional, Set

from loguru import logger

from config import Configuration
from models import CacheStats, CategoryCount, DetailedScore, Entity, EntityId, ScoreProgress
from proximity.cache import CacheKey, ScoreCache
from proximity.overpass import CountProvider
from proximity.scoring import CATEGORY_NAMES, distance_score, overall_score, score_results, weighted_score
from utils import round_half_up, valid_coordinate

ScoreCallback = Callable[[EntityId, int], None]


class ScoringSetupError(ValueError):
    """Raised before any provider call when a detailed calculation cannot start."""


@dataclass
class _QueueItem:
    entity: Entity
    lat: float
    lng: float
    key: CacheKey
    future: "asyncio.Future[int]"


class ProximityScoreManager:
    """Queues score calculations and runs at most ``max_concurrent`` at a time.

    Each item is scored over every category, cached by location and delivered
    through its future. Items leave the queue in submission order; completion
    order is not guaranteed. After an item finishes, its slot is reused only
    after ``request_delay_ms``.
    """

    def __init__(
        self,
        cfg: Configuration,
        provider: CountProvider,
        *,
        cache: Optional[ScoreCache] = None,
        categories: Optional[Iterable[str]] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.cfg = cfg
        self.provider = provider
        self.cache = cache if cache is not None else ScoreCache(cfg.cache_ttl_sec, precision=cfg.cache_precision)
        self.categories: List[str] = list(categories) if categories is not None else list(CATEGORY_NAMES)
        self.radius = cfg.radius
        self.max_concurrent = max(1, cfg.max_concurrent)
        self._sleep = sleep
        self._queue: Deque[_QueueItem] = deque()
        self._processing: Set[CacheKey] = set()
        self._pending: Dict[CacheKey, "asyncio.Future[int]"] = {}
        self._tasks: Set["asyncio.Task[None]"] = set()

    # -- queue -------------------------------------------------------------

    def submit(self, entity: Entity) -> "asyncio.Future[int]":
        """Future resolving to the entity's overall score. Must be called inside a running loop."""
        loop = asyncio.get_running_loop()
        coords = valid_coordinate(entity.latitude, entity.longitude)
        if coords is None:
            future = loop.create_future()
            future.set_result(0)
            return future

        lat, lng = coords
        key = self.cache.make_key(lat, lng, self.radius)
        cached = self.cache.get(key)
        if cached is not None:
            future = loop.create_future()
            future.set_result(cached.score)
            return future

        pending = self._pending.get(key)
        if pending is not None:
            return pending

        future = loop.create_future()
        self._pending[key] = future
        self._queue.append(_QueueItem(entity=entity, lat=lat, lng=lng, key=key, future=future))
        self._drain()
        return future

    def calculate_score(self, entity: Entity, callback: ScoreCallback) -> None:
        """Invoke ``callback(entity.id, score)`` exactly once.

        Cache hits and entities without coordinates call back before returning.
        """
        future = self.submit(entity)
        entity_id = entity.id
        if future.done():
            callback(entity_id, future.result())
        else:
            future.add_done_callback(lambda f: callback(entity_id, f.result()))

    def _drain(self) -> None:
        loop = asyncio.get_running_loop()
        while len(self._processing) < self.max_concurrent and self._queue:
            item = self._queue.popleft()
            self._processing.add(item.key)
            task = loop.create_task(self._run(item))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    async def _run(self, item: _QueueItem) -> None:
        label = item.entity.name or item.entity.id
        logger.info("Processing proximity score for {}", label)
        try:
            score = await self._compute(item.lat, item.lng, self.radius)
        except asyncio.CancelledError:
            self._processing.discard(item.key)
            self._pending.pop(item.key, None)
            item.future.cancel()
            raise
        except Exception as exc:
            logger.exception("Error calculating proximity score for {}: {}", item.entity.id, exc)
            score = 0
        else:
            self.cache.set(item.key, score)
            logger.info("Completed proximity score for {}: {}%", label, score)

        self._processing.discard(item.key)
        self._pending.pop(item.key, None)
        if not item.future.done():
            item.future.set_result(score)

        await self._sleep(self.cfg.request_delay_sec)
        self._drain()

    # -- scoring -----------------------------------------------------------

    async def _fetch_all(self, lat: float, lng: float, radius: float) -> List[CategoryCount]:
        results: list[CategoryCount] = []
        for idx, category in enumerate(self.categories):
            if idx:
                await self._sleep(self.cfg.category_delay_sec)
            results.append(await self.provider.fetch_count(category, lat, lng, radius))
        return results

    async def _compute(self, lat: float, lng: float, radius: float) -> int:
        results = await self._fetch_all(lat, lng, radius)
        return overall_score(score_results(results))

    async def calculate_detailed_score(self, entity: Entity, radius: Optional[float] = None) -> DetailedScore:
        """Per-category breakdown; failed categories are listed in ``failed`` and left out of the average."""
        radius = self.radius if radius is None else radius
        if radius is None or radius <= 0:
            raise ScoringSetupError(f"radius must be positive, got {radius!r}")
        if not self.categories:
            raise ScoringSetupError("no categories configured")

        coords = valid_coordinate(entity.latitude, entity.longitude)
        if coords is None:
            return DetailedScore(overall=0)

        results = await self._fetch_all(coords[0], coords[1], radius)
        breakdown = score_results(results)
        counts = {r.category: r.count for r in results if r.ok and r.count is not None}
        failed = [r.category for r in results if not r.ok]
        return DetailedScore(overall=overall_score(breakdown), breakdown=breakdown, counts=counts, failed=failed)

    async def calculate_weighted_score(self, entity: Entity, radius: Optional[float] = None) -> int:
        coords = valid_coordinate(entity.latitude, entity.longitude)
        if coords is None:
            return 0
        radius = self.radius if radius is None else radius
        results = await self._fetch_all(coords[0], coords[1], radius)
        return weighted_score(score_results(results))

    async def calculate_distance_scores(self, entity: Entity, radius: Optional[float] = None) -> Dict[str, int]:
        """Per-category nearness scores from feature positions; failed categories are left out."""
        coords = valid_coordinate(entity.latitude, entity.longitude)
        if coords is None:
            return {}
        radius = self.radius if radius is None else radius
        lat, lng = coords
        scores: dict[str, int] = {}
        for idx, category in enumerate(self.categories):
            if idx:
                await self._sleep(self.cfg.category_delay_sec)
            elements = await self.provider.fetch_elements(category, lat, lng, radius)
            if elements is None:
                continue
            scores[category] = distance_score(elements, lat, lng)
        return scores

    # -- batches -----------------------------------------------------------

    def _select(self, entities: Iterable[Entity], max_properties: Optional[int]) -> List[Entity]:
        limit = self.cfg.max_properties_per_batch if max_properties is None else max_properties
        return list(entities)[: max(limit, 0)]

    async def score_batch(self, entities: Iterable[Entity], max_properties: Optional[int] = None) -> Dict[EntityId, int]:
        selected = self._select(entities, max_properties)
        futures = [(entity.id, self.submit(entity)) for entity in selected]
        scores: dict[EntityId, int] = {}
        for entity_id, future in futures:
            scores[entity_id] = await future
        return scores

    async def stream_scores(
        self, entities: Iterable[Entity], max_properties: Optional[int] = None
    ) -> AsyncIterator[ScoreProgress]:
        """Yield one progress event per entity, in completion order."""
        selected = self._select(entities, max_properties)
        total = len(selected)
        if not total:
            return
        logger.info("Starting proximity score calculation for {} properties", total)

        done: "asyncio.Queue[tuple[EntityId, int]]" = asyncio.Queue()
        for entity in selected:
            self.calculate_score(entity, lambda entity_id, score: done.put_nowait((entity_id, score)))

        for completed in range(1, total + 1):
            entity_id, score = await done.get()
            yield ScoreProgress(
                entity_id=entity_id,
                score=score,
                completed=completed,
                total=total,
                percent=round_half_up(completed / total * 100),
            )

    # -- maintenance -------------------------------------------------------

    def get_cache_stats(self) -> CacheStats:
        total, valid = self.cache.stats()
        return CacheStats(
            total_cached=total,
            valid_cached=valid,
            queue_length=len(self._queue),
            processing=len(self._processing),
        )

    def clear_expired_cache(self) -> int:
        evicted = self.cache.evict_expired()
        if evicted:
            logger.info("Evicted {} expired proximity scores", evicted)
        return evicted
