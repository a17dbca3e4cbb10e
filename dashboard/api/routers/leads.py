"""
Funnel Hub — Leads Router
============================
Stage transitions and history for pipeline entities.

Endpoints:
  POST /api/leads                                  - Register a lead in its first stage
  POST /api/leads/{entity_id}/transitions          - Move a lead to another stage
  GET  /api/leads/{entity_id}/history              - Ordered stage history
  GET  /api/leads/{entity_id}/time-in-stage/{stage} - Total time spent in a stage
"""
from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException

from models.pipeline_models import EntityCreate, PipelineEntity, TransitionRequest
from dashboard.api.deps import STATUS_BY_CODE, get_engine, http_error
from scripts.analytics.engine import AnalyticsEngine
from scripts.lib.errors import HubError
from scripts.lib.logger import setup_logger
from scripts.lib.utils import SECONDS_PER_DAY, round_pct

logger = setup_logger("leads_router")

router = APIRouter(prefix="/api/leads", tags=["leads"])


@router.post("", status_code=201)
async def create_lead(req: EntityCreate, engine: AnalyticsEngine = Depends(get_engine)):
    """Create a lead together with its creation history record."""
    created_at = req.created_at or engine.now()
    entity = PipelineEntity(
        id=req.id,
        name=req.name,
        stage=req.stage,
        stage_entered_at=created_at,
        owner=req.owner,
        channel=req.channel,
        subchannel=req.subchannel,
        created_at=created_at,
    )
    try:
        stored = engine.create_entity(entity, created_at, req.changed_by)
    except HubError as e:
        raise http_error(e)
    return stored.model_dump(mode="json")


@router.post("/{entity_id}/transitions", status_code=201)
async def record_transition(
    entity_id: str,
    req: TransitionRequest,
    engine: AnalyticsEngine = Depends(get_engine),
):
    """
    Record a stage change. ``from_stage`` must match the lead's current stage;
    on 409 re-read the lead and retry with the fresh stage.
    """
    try:
        result = engine.record_transition(
            entity_id, req.from_stage, req.to_stage, req.at, req.changed_by,
        )
    except HubError as e:
        logger.error("Transition on %s failed: %s", entity_id, e)
        raise http_error(e)

    if not result.ok:
        raise HTTPException(
            status_code=STATUS_BY_CODE.get(result.error_code, 400),
            detail={
                "code": result.error_code,
                "message": result.message,
                "details": result.details,
            },
        )
    return result.record.model_dump(mode="json")


@router.get("/{entity_id}/history")
async def stage_history(entity_id: str, engine: AnalyticsEngine = Depends(get_engine)):
    """Full audit trail, oldest first."""
    try:
        history = engine.history_for(entity_id)
    except HubError as e:
        raise http_error(e)
    return {
        "entity_id": entity_id,
        "results": [r.model_dump(mode="json") for r in history],
        "count": len(history),
    }


@router.get("/{entity_id}/time-in-stage/{stage}")
async def time_in_stage(
    entity_id: str, stage: str, engine: AnalyticsEngine = Depends(get_engine),
):
    """Time spent in ``stage`` over every visit; the current visit runs to now."""
    try:
        duration = engine.time_in_stage(entity_id, stage)
    except HubError as e:
        raise http_error(e)
    seconds = duration.total_seconds()
    return {
        "entity_id": entity_id,
        "stage": stage.upper(),
        "seconds": seconds,
        "days": round_pct(seconds / SECONDS_PER_DAY),
    }
