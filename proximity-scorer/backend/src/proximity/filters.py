from __future__ import annotations

from typing import Dict, List, Mapping, Optional, Sequence, Tuple

from models import Entity, EntityId, ScoreStatistics
from utils import round_half_up

FILTER_OPTIONS: List[Dict[str, str]] = [
    {"value": "all", "label": "ทุกระดับ"},
    {"value": "80-100", "label": "ใกล้มาก (80-100%)"},
    {"value": "60-79", "label": "ใกล้ (60-79%)"},
    {"value": "40-59", "label": "ปานกลาง (40-59%)"},
    {"value": "20-39", "label": "ไกล (20-39%)"},
    {"value": "0-19", "label": "ไกลมาก (0-19%)"},
]


def parse_score_range(value: Optional[str]) -> Optional[Tuple[int, Optional[int]]]:
    """``"60-79"`` -> (60, 79); ``"80"`` -> (80, None); ``"all"``/empty -> None."""
    if not value or value == "all":
        return None
    parts = value.split("-", 1)
    try:
        low = int(parts[0])
        high = int(parts[1]) if len(parts) > 1 and parts[1] else None
    except ValueError:
        raise ValueError(f"invalid score range: {value!r}")
    return low, high


def _in_range(score: int, bounds: Tuple[int, Optional[int]]) -> bool:
    low, high = bounds
    if high is None:
        return score >= low
    return low <= score <= high


def filter_by_score(entities: Sequence[Entity], scores: Mapping[EntityId, int], value: Optional[str]) -> List[Entity]:
    bounds = parse_score_range(value)
    if bounds is None:
        return list(entities)
    return [e for e in entities if _in_range(scores.get(e.id) or 0, bounds)]


def filter_statistics(entities: Sequence[Entity], scores: Mapping[EntityId, int]) -> Dict[str, int]:
    stats: dict[str, int] = {}
    for option in FILTER_OPTIONS:
        stats[option["value"]] = len(filter_by_score(entities, scores, option["value"]))
    return stats


def score_statistics(scores: Mapping[EntityId, int]) -> ScoreStatistics:
    values = [s for s in scores.values() if s and s > 0]
    if not values:
        return ScoreStatistics()
    return ScoreStatistics(
        count=len(values),
        average=round_half_up(sum(values) / len(values)),
        min=min(values),
        max=max(values),
        distribution={
            "excellent": sum(1 for s in values if s >= 80),
            "good": sum(1 for s in values if 60 <= s < 80),
            "fair": sum(1 for s in values if 40 <= s < 60),
            "poor": sum(1 for s in values if s < 40),
        },
    )
