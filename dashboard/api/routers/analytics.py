"""
Funnel Hub — Analytics Router
================================
Pipeline and revenue analytics computed on demand from the CRM tables.

Endpoints:
  GET /api/analytics             - Full AggregateResult for a period + filters
  GET /api/analytics/conversion  - Cohort conversion between two stages
  GET /api/analytics/snapshot    - Latest stored batch snapshot
"""
from __future__ import annotations

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import JSONResponse

from models.pipeline_models import BucketSize, Filters
from dashboard.api.deps import get_engine, get_filters, http_error, resolve_period
from scripts.analytics.engine import AnalyticsEngine
from scripts.lib.errors import HubError
from scripts.lib.logger import setup_logger
from scripts.lib.supabase_client import get_latest_snapshot

logger = setup_logger("analytics_router")

router = APIRouter(prefix="/api/analytics", tags=["analytics"])

SNAPSHOT_SOURCE = "pipeline_analytics"


@router.get("")
async def get_analytics(
    start: Optional[datetime] = Query(None, description="Period start (inclusive)"),
    end: Optional[datetime] = Query(None, description="Period end (exclusive)"),
    bucket_size: Optional[BucketSize] = Query(None, description="Trend bucket: day, week, month"),
    bucket_count: Optional[int] = Query(None, ge=1, le=366, description="Number of trend buckets"),
    filters: Filters = Depends(get_filters),
    engine: AnalyticsEngine = Depends(get_engine),
):
    """Funnel, revenue, trends, breakdowns and insights in one payload."""
    period = resolve_period(engine, start, end)
    try:
        result = engine.compute_analytics(
            period, filters, bucket_size=bucket_size, bucket_count=bucket_count,
        )
        return result.model_dump(mode="json")
    except HubError as e:
        logger.error("Analytics computation failed: %s", e)
        raise http_error(e)


@router.get("/conversion")
async def get_conversion(
    from_stage: str = Query(..., description="Cohort stage"),
    to_stage: str = Query(..., description="Target stage"),
    start: Optional[datetime] = Query(None, description="Cohort window start"),
    end: Optional[datetime] = Query(None, description="Cohort window end"),
    filters: Filters = Depends(get_filters),
    engine: AnalyticsEngine = Depends(get_engine),
):
    """Share of the ``from_stage`` cohort that later reached ``to_stage``."""
    period = resolve_period(engine, start, end)
    try:
        metric = engine.conversion(from_stage, to_stage, period, filters)
        return metric.model_dump(mode="json")
    except HubError as e:
        raise http_error(e)


@router.get("/snapshot")
async def latest_snapshot():
    """Most recent result stored by scripts/run_pipeline_analytics.py."""
    data = get_latest_snapshot(SNAPSHOT_SOURCE)
    if not data:
        raise HTTPException(
            status_code=404,
            detail="No snapshot yet. Run: python scripts/run_pipeline_analytics.py",
        )
    return JSONResponse(content=data)
