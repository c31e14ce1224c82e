from __future__ import annotations

import json
from dataclasses import asdict
from typing import Dict, List, Optional, Union

from dotenv import load_dotenv
from fastapi import Depends, FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse
from loguru import logger
from pydantic import BaseModel, Field

from config import Configuration
from models import Entity
from proximity.filters import FILTER_OPTIONS, filter_by_score, filter_statistics, score_statistics
from proximity.manager import ProximityScoreManager, ScoringSetupError
from proximity.overpass import build_provider
from proximity.scoring import CATEGORIES

load_dotenv()

app = FastAPI(title="Proximity Scorer")
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

_manager: Optional[ProximityScoreManager] = None


def get_manager() -> ProximityScoreManager:
    global _manager
    if _manager is None:
        cfg = Configuration.from_env()
        logger.info("cfg: {}", cfg.log_summary())
        _manager = ProximityScoreManager(cfg, build_provider(cfg))
    return _manager


class EntityPayload(BaseModel):
    id: Union[int, str]
    latitude: Optional[float] = Field(None, description="WGS84 latitude")
    longitude: Optional[float] = Field(None, description="WGS84 longitude")
    name: Optional[str] = None

    def to_entity(self) -> Entity:
        return Entity(id=self.id, latitude=self.latitude, longitude=self.longitude, name=self.name)


class ScoresRequest(BaseModel):
    entities: List[EntityPayload]
    max_properties: Optional[int] = Field(None, description="Defaults to PROXIMITY_MAX_PROPERTIES_PER_BATCH")


class ScoresResponse(BaseModel):
    scores: Dict[str, int]


class DetailedRequest(EntityPayload):
    radius: Optional[float] = Field(None, description="Search radius in meters")


class DetailedScoreResponse(BaseModel):
    id: Union[int, str]
    overall: int
    breakdown: Dict[str, int]
    counts: Dict[str, int]
    failed: List[str]


class FilterRequest(BaseModel):
    entities: List[EntityPayload]
    scores: Dict[str, int] = {}
    range: str = "all"


@app.get("/healthz")
def healthz() -> dict:
    cfg = Configuration.from_env()
    logger.info("cfg: {}", cfg.log_summary())
    return {"status": "ok"}


@app.get("/proximity/categories")
def categories() -> dict:
    return {
        "categories": [
            {
                "name": spec.name,
                "label": spec.label,
                "icon": spec.icon,
                "weight": spec.weight,
                "thresholds": asdict(spec.thresholds),
            }
            for spec in CATEGORIES.values()
        ],
        "filter_options": FILTER_OPTIONS,
    }


@app.post("/proximity/scores", response_model=ScoresResponse)
async def scores(req: ScoresRequest, manager: ProximityScoreManager = Depends(get_manager)) -> ScoresResponse:
    entities = [e.to_entity() for e in req.entities]
    result = await manager.score_batch(entities, req.max_properties)
    return ScoresResponse(scores={str(k): v for k, v in result.items()})


@app.post("/proximity/scores-stream")
async def scores_stream(req: ScoresRequest, manager: ProximityScoreManager = Depends(get_manager)) -> StreamingResponse:
    """
    SSE endpoint for progressive proximity scores.
    Emits one "progress" event per entity as it completes, then "complete".
    """
    entities = [e.to_entity() for e in req.entities]

    async def event_generator():
        try:
            async for progress in manager.stream_scores(entities, req.max_properties):
                event = {"type": "progress", **asdict(progress)}
                yield f"data: {json.dumps(event, ensure_ascii=False)}\n\n"
            yield 'data: {"type":"complete"}\n\n'
        except Exception as exc:
            logger.exception("streaming failed: {}", exc)
            error_data = {"type": "error", "message": str(exc)}
            yield f"data: {json.dumps(error_data)}\n\n"

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "X-Accel-Buffering": "no",
        },
    )


@app.post("/proximity/detailed", response_model=DetailedScoreResponse)
async def detailed(req: DetailedRequest, manager: ProximityScoreManager = Depends(get_manager)) -> DetailedScoreResponse:
    try:
        result = await manager.calculate_detailed_score(req.to_entity(), radius=req.radius)
    except ScoringSetupError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return DetailedScoreResponse(id=req.id, **asdict(result))


@app.post("/proximity/weighted")
async def weighted(req: EntityPayload, manager: ProximityScoreManager = Depends(get_manager)) -> dict:
    score = await manager.calculate_weighted_score(req.to_entity())
    return {"id": req.id, "score": score}


@app.post("/proximity/distance")
async def distance(req: DetailedRequest, manager: ProximityScoreManager = Depends(get_manager)) -> dict:
    scores = await manager.calculate_distance_scores(req.to_entity(), radius=req.radius)
    return {"id": req.id, "scores": scores}


@app.get("/proximity/cache/stats")
def cache_stats(manager: ProximityScoreManager = Depends(get_manager)) -> dict:
    return asdict(manager.get_cache_stats())


@app.post("/proximity/cache/evict")
def cache_evict(manager: ProximityScoreManager = Depends(get_manager)) -> dict:
    return {"evicted": manager.clear_expired_cache()}


@app.post("/proximity/filter")
def filter_entities(req: FilterRequest) -> dict:
    entities = [e.to_entity() for e in req.entities]
    # JSON object keys are strings; match them against str(entity.id)
    by_id = {e.id: req.scores.get(str(e.id), 0) for e in entities}
    try:
        kept = filter_by_score(entities, by_id, req.range)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return {
        "entities": [asdict(e) for e in kept],
        "statistics": filter_statistics(entities, by_id),
        "summary": asdict(score_statistics(by_id)),
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8010, reload=True)
