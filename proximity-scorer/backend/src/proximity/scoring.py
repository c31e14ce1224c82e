from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Iterable, List, Mapping, Optional

from models import CategoryCount
from utils import haversine_km, round_half_up


@dataclass(frozen=True)
class Thresholds:
    """Minimum feature counts for each tier."""

    excellent: int
    good: int
    fair: int


@dataclass(frozen=True)
class CategorySpec:
    name: str
    label: str
    icon: str
    weight: float
    thresholds: Thresholds


CATEGORIES: Dict[str, CategorySpec] = {
    "restaurant": CategorySpec("restaurant", "ร้านอาหาร", "🍽️", 0.20, Thresholds(excellent=15, good=8, fair=3)),
    "convenience": CategorySpec("convenience", "ร้านสะดวกซื้อ", "🏪", 0.20, Thresholds(excellent=8, good=4, fair=2)),
    "school": CategorySpec("school", "สถานศึกษา", "🎓", 0.15, Thresholds(excellent=5, good=3, fair=1)),
    "health": CategorySpec("health", "สถานพยาบาล", "🏥", 0.20, Thresholds(excellent=8, good=4, fair=2)),
    "transport": CategorySpec("transport", "ขนส่งสาธารณะ", "🚌", 0.25, Thresholds(excellent=10, good=5, fair=2)),
}

CATEGORY_NAMES: List[str] = list(CATEGORIES)

DEFAULT_WEIGHTS: Dict[str, float] = {name: spec.weight for name, spec in CATEGORIES.items()}


def category_score(count: int, category: str) -> int:
    thresholds = (CATEGORIES.get(category) or CATEGORIES["restaurant"]).thresholds
    if count >= thresholds.excellent:
        return 100
    if count >= thresholds.good:
        return 80
    if count >= thresholds.fair:
        return 60
    if count > 0:
        return 40
    return 0


def score_results(results: Iterable[CategoryCount]) -> Dict[str, int]:
    """Per-category scores for the lookups that succeeded; failures are left out."""
    scores: dict[str, int] = {}
    for result in results:
        if not result.ok or result.count is None:
            continue
        scores[result.category] = category_score(result.count, result.category)
    return scores


def overall_score(category_scores: Mapping[str, int]) -> int:
    if not category_scores:
        return 0
    return round_half_up(sum(category_scores.values()) / len(category_scores))


def weighted_score(category_scores: Mapping[str, int], weights: Optional[Mapping[str, float]] = None) -> int:
    """Weighted mean, renormalized over the categories present."""
    weights = DEFAULT_WEIGHTS if weights is None else weights
    total = 0.0
    total_weight = 0.0
    for category, score in category_scores.items():
        weight = weights.get(category, 0.0)
        total += score * weight
        total_weight += weight
    if total_weight <= 0:
        return 0
    return round_half_up(total / total_weight)


def _element_position(element: Mapping) -> Optional[tuple[float, float]]:
    if element.get("type") == "node":
        lat, lon = element.get("lat"), element.get("lon")
    elif element.get("type") == "way" and element.get("geometry"):
        coords = element["geometry"]
        lat = sum(c["lat"] for c in coords) / len(coords)
        lon = sum(c["lon"] for c in coords) / len(coords)
    else:
        return None
    if lat is None or lon is None:
        return None
    return float(lat), float(lon)


def distance_score(elements: Iterable[Mapping], lat: float, lng: float) -> int:
    """Score by how close the nearest features are (for ``out geom`` payloads)."""
    distances: list[float] = []
    for element in elements or []:
        pos = _element_position(element)
        if pos is None:
            continue
        distances.append(haversine_km(lat, lng, pos[0], pos[1]) * 1000.0)

    if not distances:
        return 0

    closest = min(distances)
    average = sum(distances) / len(distances)

    if closest <= 100:
        return 100
    if closest <= 300:
        return 90
    if closest <= 500:
        return 80
    if average <= 600:
        return 70
    if average <= 800:
        return 60
    if len(distances) >= 3:
        return 50
    return 30


def category_display_name(category: str) -> str:
    spec = CATEGORIES.get(category)
    return spec.label if spec else category


def category_icon(category: str) -> str:
    spec = CATEGORIES.get(category)
    return spec.icon if spec else "📍"
