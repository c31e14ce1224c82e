"""Overpass QL query templates for the scored amenity categories."""

from __future__ import annotations

from typing import Dict, List, Tuple

DEFAULT_CATEGORY = "restaurant"

# (element types, tag filter) pairs; each becomes one "(around:...)" selector.
CATEGORY_SELECTORS: Dict[str, List[Tuple[Tuple[str, ...], str]]] = {
    "restaurant": [
        (("node", "way"), '["amenity"~"^(restaurant|cafe|fast_food)$"]'),
    ],
    "convenience": [
        (("node", "way"), '["shop"~"^(convenience|supermarket)$"]'),
    ],
    "school": [
        (("node", "way"), '["amenity"~"^(school|university|kindergarten)$"]'),
    ],
    "health": [
        (("node",), '["amenity"~"^(hospital|clinic|doctors|dentist|pharmacy)$"]'),
        (("node",), '["healthcare"]'),
        (("node",), '["shop"="chemist"]'),
        (("way",), '["amenity"~"^(hospital|clinic|doctors|dentist|pharmacy)$"]'),
        (("way",), '["healthcare"]'),
    ],
    "transport": [
        (("node",), '["public_transport"]'),
        (("node",), '["highway"="bus_stop"]'),
        (("node",), '["amenity"="bus_station"]'),
        (("node",), '["railway"="station"]'),
        (("way",), '["public_transport"]'),
        (("way",), '["amenity"="bus_station"]'),
    ],
}


def _selectors(category: str) -> List[Tuple[Tuple[str, ...], str]]:
    return CATEGORY_SELECTORS.get(category) or CATEGORY_SELECTORS[DEFAULT_CATEGORY]


OUTPUT_MODES = ("count", "geom")


def build_query(
    category: str, lat: float, lng: float, radius: float, *, timeout: int = 15, output: str = "count"
) -> str:
    """Build an Overpass query for ``category`` around (lat, lng).

    ``output="count"`` (the default) asks only for the number of matches;
    ``"geom"`` returns node positions and way geometry for distance scoring.
    Unknown categories fall back to the restaurant query.
    """
    if output not in OUTPUT_MODES:
        raise ValueError(f"unsupported output mode: {output!r}")
    around = f"(around:{radius},{lat},{lng})"
    parts: list[str] = []
    for element_types, tag_filter in _selectors(category):
        for element_type in element_types:
            parts.append(f"{element_type}{tag_filter}{around};")
    return f"[out:json][timeout:{timeout}];({''.join(parts)});out {output};"
