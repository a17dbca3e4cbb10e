"""
Funnel Hub — Deals Router
============================
Deal listing and upserts. USD amounts are always derived from the original
currency amount and exchange rate; clients never send them.

Endpoints:
  GET /api/deals  - List deals (filtered by the owning lead's dimensions)
  PUT /api/deals  - Create or update a deal
"""
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query

from models.pipeline_models import DealStatus, DealUpsert, Filters
from dashboard.api.deps import get_engine, get_filters, http_error
from scripts.analytics.engine import AnalyticsEngine
from scripts.lib.errors import HubError
from scripts.lib.logger import setup_logger

logger = setup_logger("deals_router")

router = APIRouter(prefix="/api/deals", tags=["deals"])


@router.get("")
async def list_deals(
    status: Optional[DealStatus] = Query(None, description="Filter by deal status"),
    limit: int = Query(100, ge=1, le=1000, description="Max results"),
    offset: int = Query(0, ge=0, description="Pagination offset"),
    filters: Filters = Depends(get_filters),
    engine: AnalyticsEngine = Depends(get_engine),
):
    """List deals, newest start date first."""
    try:
        deals = engine.repository.fetch_deals(filters)
    except HubError as e:
        logger.error("List deals failed: %s", e)
        raise http_error(e)

    if status is not None:
        deals = [d for d in deals if d.status == status]
    deals = sorted(deals, key=lambda d: d.start_date, reverse=True)
    page = deals[offset:offset + limit]
    return {
        "results": [d.model_dump(mode="json") for d in page],
        "count": len(page),
        "total": len(deals),
        "offset": offset,
        "limit": limit,
    }


@router.put("")
async def upsert_deal(req: DealUpsert, engine: AnalyticsEngine = Depends(get_engine)):
    """Normalise and store a deal; returns it with derived USD fields."""
    try:
        deal = engine.upsert_deal(req.model_dump())
    except HubError as e:
        logger.warning("Deal upsert rejected: %s", e)
        raise http_error(e)
    return deal.model_dump(mode="json")
