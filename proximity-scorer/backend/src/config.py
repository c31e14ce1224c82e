from __future__ import annotations

import os
from typing import Any, Optional

from pydantic import BaseModel, Field


class Configuration(BaseModel):
    # Overpass
    overpass_url: str = Field(default="https://overpass-api.de/api/interpreter")
    overpass_timeout: int = Field(default=30)
    overpass_query_timeout: int = Field(default=15)
    overpass_retries: int = Field(default=0)

    # Scoring
    radius: int = Field(default=1000)  # meters
    max_concurrent: int = Field(default=2)
    request_delay_ms: int = Field(default=300)
    category_delay_ms: int = Field(default=100)
    max_properties_per_batch: int = Field(default=20)
    rate_limit_per_minute: int = Field(default=30)

    # Cache
    cache_timeout_ms: int = Field(default=60 * 60 * 1000)
    cache_precision: Optional[int] = Field(default=None)

    @classmethod
    def from_env(cls, overrides: Optional[dict[str, Any]] = None) -> "Configuration":
        raw: dict[str, Any] = {}

        env_map = {
            "overpass_url": os.getenv("OVERPASS_URL"),
            "overpass_timeout": os.getenv("OVERPASS_TIMEOUT"),
            "overpass_query_timeout": os.getenv("OVERPASS_QUERY_TIMEOUT"),
            "overpass_retries": os.getenv("OVERPASS_RETRIES"),
            "radius": os.getenv("PROXIMITY_RADIUS"),
            "max_concurrent": os.getenv("PROXIMITY_MAX_CONCURRENT"),
            "request_delay_ms": os.getenv("PROXIMITY_REQUEST_DELAY_MS"),
            "category_delay_ms": os.getenv("PROXIMITY_CATEGORY_DELAY_MS"),
            "max_properties_per_batch": os.getenv("PROXIMITY_MAX_PROPERTIES_PER_BATCH"),
            "rate_limit_per_minute": os.getenv("PROXIMITY_RATE_LIMIT_PER_MINUTE"),
            "cache_timeout_ms": os.getenv("PROXIMITY_CACHE_TIMEOUT_MS"),
            "cache_precision": os.getenv("PROXIMITY_CACHE_PRECISION"),
        }

        for k, v in env_map.items():
            if v is None or v == "":
                continue
            raw[k] = v

        if overrides:
            raw.update({k: v for k, v in overrides.items() if v is not None})

        return cls(**raw)

    @property
    def cache_ttl_sec(self) -> float:
        return self.cache_timeout_ms / 1000.0

    @property
    def request_delay_sec(self) -> float:
        return self.request_delay_ms / 1000.0

    @property
    def category_delay_sec(self) -> float:
        return self.category_delay_ms / 1000.0

    def log_summary(self) -> str:
        return (
            "overpass=%s timeout=%s retries=%s radius=%sm concurrent=%s delay=%sms rate=%s/min cache_ttl=%sms precision=%s"
            % (
                self.overpass_url,
                self.overpass_timeout,
                self.overpass_retries,
                self.radius,
                self.max_concurrent,
                self.request_delay_ms,
                self.rate_limit_per_minute,
                self.cache_timeout_ms,
                self.cache_precision,
            )
        )
