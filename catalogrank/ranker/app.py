"""Ranker service FastAPI application.

Cron trigger surface for the ranking jobs. Every /cron route requires the
shared secret in the X-Cron-Key header.
"""

import secrets
from typing import Any, Dict, List, Optional

import uvicorn
from fastapi import Depends, FastAPI, Header, HTTPException, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from catalogrank.core.settings import settings
from catalogrank.core.logging import setup_logging, get_logger
from catalogrank.core.repositories import VIEW_COUNTER_COLUMNS
from catalogrank.ranker import pipeline
from catalogrank.ranker.errors import RankingJobError, RunInProgressError

# Setup logging
setup_logging("ranker")
logger = get_logger(__name__)

app = FastAPI(title="CatalogRank Ranker", version="0.1.0", description="Popularity ranking jobs")


class RunStatsModel(BaseModel):
    """Counts for one run."""
    total: int
    updated: int
    errors: int


class RankingRunResponse(BaseModel):
    """Response model for a ranking run."""
    success: bool
    message: str
    entity_class: str
    state: str
    stats: RunStatsModel
    top10: List[Dict[str, Any]]
    failed_ids: List[int] = []
    stage_timings: Dict[str, float] = {}
    runtime_seconds: float
    started_at: str
    completed_at: str


class CounterResetResponse(BaseModel):
    """Response model for a view counter reset."""
    success: bool
    window: str
    rows: int


def verify_cron_key(x_cron_key: Optional[str] = Header(default=None)) -> None:
    """Reject requests without the configured cron key."""
    expected = settings.cron_api_key
    if not expected or not x_cron_key or not secrets.compare_digest(x_cron_key, expected):
        logger.warning("Rejected cron request with missing or invalid X-Cron-Key")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid cron key",
        )


async def _run_job(job, endpoint: str):
    logger.info("Starting ranking job via API", extra={"endpoint": endpoint})
    try:
        return await job()
    except RunInProgressError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    except RankingJobError as e:
        logger.error(f"Ranking job failed: {e}", exc_info=True)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"success": False, "message": str(e), "stage": e.stage},
        )


@app.get("/healthz")
async def health_check():
    """Health check endpoint."""
    return {"status": "ok", "service": "ranker"}


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "service": "ranker",
        "version": "0.1.0",
        "endpoints": {
            "health": "/healthz",
            "anime": "/cron/update-anime-popularity (POST)",
            "manga": "/cron/update-manga-popularity (POST)",
            "reviews": "/cron/reviews/rankings (POST)",
            "counters": "/cron/counters/reset-{daily|weekly|monthly} (POST)",
            "stats": "/cron/stats",
        },
    }


@app.post("/cron/update-anime-popularity", response_model=RankingRunResponse,
          dependencies=[Depends(verify_cron_key)])
async def update_anime_popularity():
    """Recompute anime popularity ranks."""
    return await _run_job(pipeline.recompute_anime_popularity, "/cron/update-anime-popularity")


@app.post("/cron/update-manga-popularity", response_model=RankingRunResponse,
          dependencies=[Depends(verify_cron_key)])
async def update_manga_popularity():
    """Recompute manga popularity ranks."""
    return await _run_job(pipeline.recompute_manga_popularity, "/cron/update-manga-popularity")


@app.post("/cron/reviews/rankings", response_model=RankingRunResponse,
          dependencies=[Depends(verify_cron_key)])
async def update_review_rankings():
    """Recompute review popularity ranks and rank history."""
    return await _run_job(pipeline.recompute_review_rankings, "/cron/reviews/rankings")


@app.post("/cron/counters/reset-{window}", response_model=CounterResetResponse,
          dependencies=[Depends(verify_cron_key)])
async def reset_counters(window: str):
    """Zero review view counters for a daily, weekly or monthly window."""
    if window not in VIEW_COUNTER_COLUMNS:
        raise HTTPException(status_code=404, detail=f"Unknown counter window: {window}")
    try:
        return await pipeline.reset_view_counters(window)
    except Exception as e:
        logger.error(f"Counter reset failed: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=f"Counter reset failed: {str(e)}")


@app.get("/cron/stats", dependencies=[Depends(verify_cron_key)])
async def job_stats():
    """Coverage statistics for review rankings."""
    try:
        return await pipeline.get_job_stats()
    except Exception as e:
        logger.error(f"Stats query failed: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=f"Stats query failed: {str(e)}")


@app.on_event("startup")
async def startup_event():
    """Startup event handler."""
    logger.info(
        "Starting ranker service",
        extra={
            "service": "ranker",
            "version": "0.1.0",
            "cron_key_configured": bool(settings.cron_api_key),
        }
    )


@app.on_event("shutdown")
async def shutdown_event():
    """Shutdown event handler."""
    logger.info("Shutting down ranker service")


if __name__ == "__main__":
    logger.info("Starting ranker service via uvicorn")
    uvicorn.run(
        "catalogrank.ranker.app:app",
        host=settings.service_host,
        port=settings.service_port or 8010,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
    )
