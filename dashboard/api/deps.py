"""
Funnel Hub — API Dependencies
================================

Shared request helpers for the routers: the engine held on ``app.state``,
period/filter parsing, and HubError -> HTTP status mapping.
"""
from __future__ import annotations

from datetime import datetime
from typing import Optional

from fastapi import HTTPException, Query, Request

from models.pipeline_models import Channel, Filters, Period, Subchannel
from scripts.analytics.engine import AnalyticsEngine
from scripts.lib.errors import HubError

STATUS_BY_CODE = {
    "STALE_TRANSITION": 409,
    "DATA_INCONSISTENCY": 409,
    "INVALID_STAGE": 422,
    "OUT_OF_ORDER_TRANSITION": 422,
    "MISSING_EXCHANGE_RATE": 422,
    "SCHEMA_INVALID": 422,
    "ENTITY_NOT_FOUND": 404,
    "DATA_FETCH_FAILED": 502,
}


def get_engine(request: Request) -> AnalyticsEngine:
    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        raise HTTPException(status_code=503, detail="Analytics engine not initialised")
    return engine


def http_error(error: HubError) -> HTTPException:
    """Translate a HubError into an HTTPException carrying its code."""
    return HTTPException(
        status_code=STATUS_BY_CODE.get(error.code, 500),
        detail={"code": error.code, "message": error.message, "details": error.details},
    )


def get_filters(
    owner: Optional[str] = Query(None, description="Filter by owner ID"),
    channel: Optional[Channel] = Query(None, description="Filter by acquisition channel"),
    subchannel: Optional[Subchannel] = Query(None, description="Filter by subchannel"),
) -> Filters:
    return Filters(owner=owner, channel=channel, subchannel=subchannel)


def resolve_period(
    engine: AnalyticsEngine,
    start: Optional[datetime],
    end: Optional[datetime],
) -> Period:
    """Explicit ``[start, end)`` or, by default, the current reporting month."""
    if start is None and end is None:
        return engine.current_month()
    if start is None or end is None:
        raise HTTPException(status_code=422, detail="start and end must be given together")
    try:
        return Period(start=start, end=end)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
