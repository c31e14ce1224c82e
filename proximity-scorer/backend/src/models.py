"""Data models for the proximity scorer."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Union

EntityId = Union[int, str]


@dataclass(frozen=True)
class Entity:
    id: EntityId
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    name: Optional[str] = None


@dataclass
class CategoryCount:
    """Outcome of one provider lookup: either a count or an error message."""

    category: str
    count: Optional[int] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class DetailedScore:
    overall: int
    breakdown: Dict[str, int] = field(default_factory=dict)
    counts: Dict[str, int] = field(default_factory=dict)
    failed: List[str] = field(default_factory=list)


@dataclass
class CacheEntry:
    score: int
    timestamp: float


@dataclass
class CacheStats:
    total_cached: int
    valid_cached: int
    queue_length: int
    processing: int


@dataclass
class ScoreProgress:
    entity_id: EntityId
    score: int
    completed: int
    total: int
    percent: int


@dataclass
class ScoreStatistics:
    count: int = 0
    average: int = 0
    min: int = 0
    max: int = 0
    distribution: Dict[str, int] = field(default_factory=dict)
