from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Protocol

import requests
from loguru import logger

from config import Configuration
from models import CategoryCount
from proximity.queries import build_query
from proximity.rate_limiter import RateLimiter

RETRYABLE_STATUS = frozenset({429, 500, 502, 503, 504})


class OverpassError(RuntimeError):
    pass


@dataclass
class _RetryPolicy:
    retries: int = 0
    base_delay: float = 0.5

    def backoff(self, attempt: int) -> bool:
        """Sleep before the next attempt; False once retries are used up."""
        if attempt > self.retries:
            return False
        time.sleep(self.base_delay * attempt)
        return True


def _elements(payload: Mapping[str, Any]) -> List[Any]:
    elements = payload.get("elements") or []
    if not isinstance(elements, list):
        raise OverpassError("malformed response: elements is not a list")
    return elements


def count_elements(payload: Mapping[str, Any]) -> int:
    """Number of matching features in an Overpass response.

    ``out count`` answers with a single element of type ``count`` whose
    ``total`` tag carries the number; plain responses are counted by length.
    """
    elements = _elements(payload)
    for element in elements:
        if not isinstance(element, dict) or element.get("type") != "count":
            continue
        tags = element.get("tags") or {}
        if not isinstance(tags, Mapping):
            raise OverpassError(f"malformed count element: {tags!r}")
        try:
            total = int(tags.get("total", 0))
        except (TypeError, ValueError):
            raise OverpassError(f"malformed count element: {tags!r}")
        if total < 0:
            raise OverpassError(f"malformed count element: {tags!r}")
        return total
    return len(elements)


class OverpassClient:
    def __init__(self, cfg: Configuration, session: Optional[requests.Session] = None) -> None:
        self.cfg = cfg
        self.url = cfg.overpass_url
        self.session = session or requests.Session()

    def _decode(self, resp: requests.Response) -> dict:
        try:
            payload = resp.json()
        except ValueError:
            raise OverpassError("invalid json response")
        if not isinstance(payload, dict):
            raise OverpassError("invalid json response")
        return payload

    def post_query(self, query: str) -> dict:
        policy = _RetryPolicy(retries=self.cfg.overpass_retries)
        attempt = 0
        while True:
            attempt += 1
            try:
                resp = self.session.post(
                    self.url,
                    data={"data": query},
                    headers={"Accept": "application/json"},
                    timeout=self.cfg.overpass_timeout,
                )
            except requests.RequestException as exc:
                if policy.backoff(attempt):
                    continue
                raise OverpassError(f"request error: {exc}")

            if not resp.ok:
                if resp.status_code in RETRYABLE_STATUS and policy.backoff(attempt):
                    continue
                raise OverpassError(f"upstream {resp.status_code}: {resp.text[:300]}")

            return self._decode(resp)

    def nearby_count(self, category: str, lat: float, lng: float, radius: float) -> int:
        query = build_query(category, lat, lng, radius, timeout=self.cfg.overpass_query_timeout)
        return count_elements(self.post_query(query))

    def nearby_elements(self, category: str, lat: float, lng: float, radius: float) -> List[dict]:
        query = build_query(category, lat, lng, radius, timeout=self.cfg.overpass_query_timeout, output="geom")
        return [e for e in _elements(self.post_query(query)) if isinstance(e, dict)]


class CountProvider(Protocol):
    async def fetch_count(self, category: str, lat: float, lng: float, radius: float) -> CategoryCount:
        ...

    async def fetch_elements(self, category: str, lat: float, lng: float, radius: float) -> Optional[List[dict]]:
        ...


class OverpassProvider:
    """Async, rate-limited front for :class:`OverpassClient`.

    Provider failures come back as values (a failed :class:`CategoryCount`,
    or ``None`` for element lookups), never as an exception.
    """

    def __init__(self, client: OverpassClient, limiter: RateLimiter) -> None:
        self.client = client
        self.limiter = limiter

    async def fetch_count(self, category: str, lat: float, lng: float, radius: float) -> CategoryCount:
        await self.limiter.throttle()
        try:
            count = await asyncio.to_thread(self.client.nearby_count, category, lat, lng, radius)
        except OverpassError as exc:
            logger.warning("Error fetching {} near {},{}: {}", category, lat, lng, exc)
            return CategoryCount(category=category, error=str(exc))
        logger.debug("{} near {},{} r={}m: {}", category, lat, lng, radius, count)
        return CategoryCount(category=category, count=count)

    async def fetch_elements(self, category: str, lat: float, lng: float, radius: float) -> Optional[List[dict]]:
        await self.limiter.throttle()
        try:
            return await asyncio.to_thread(self.client.nearby_elements, category, lat, lng, radius)
        except OverpassError as exc:
            logger.warning("Error fetching {} elements near {},{}: {}", category, lat, lng, exc)
            return None


def build_provider(cfg: Configuration) -> OverpassProvider:
    limiter = RateLimiter(cfg.rate_limit_per_minute, 60.0)
    return OverpassProvider(OverpassClient(cfg), limiter)
