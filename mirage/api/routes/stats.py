"""Stats and benchmark endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException

from mirage.api.schemas.models import BenchmarkSchema, BenchmarkStartSchema, StatsSchema
from mirage.api.services.engine import VideoEngine
from mirage.api.services.state import get_engine

router = APIRouter()


@router.get("/stats", response_model=StatsSchema)
def stats(engine: VideoEngine = Depends(get_engine)) -> StatsSchema:
    """Return high-level pipeline statistics."""

    latest = engine.latest_stats()
    if latest is None:
        return StatsSchema(frame_id=0, objects=0, fps=0.0, iterations=0, error=engine.last_error)
    return StatsSchema(**latest, error=engine.last_error)


@router.get("/benchmark", response_model=BenchmarkSchema)
def benchmark(engine: VideoEngine = Depends(get_engine)) -> BenchmarkSchema:
    return BenchmarkSchema(**engine.benchmark())


@router.post("/benchmark/start", response_model=BenchmarkSchema)
def start_benchmark(body: BenchmarkStartSchema, engine: VideoEngine = Depends(get_engine)) -> BenchmarkSchema:
    """Start recording per-iteration timings for `duration_s` seconds."""

    try:
        engine.start_benchmark(body.duration_s)
    except RuntimeError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from None
    return BenchmarkSchema(**engine.benchmark())


@router.post("/benchmark/stop", response_model=BenchmarkSchema)
def stop_benchmark(engine: VideoEngine = Depends(get_engine)) -> BenchmarkSchema:
    try:
        engine.stop_benchmark()
    except RuntimeError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from None
    return BenchmarkSchema(**engine.benchmark())
