"""
Funnel Hub — API Server
==========================

Serves pipeline and revenue analytics computed from the CRM tables, and the
stage-transition write path.

Route groups:
  /api/health        - Health check
  /api/analytics/*   - Funnel, revenue, trends, insights
  /api/leads/*       - Stage transitions and history
  /api/deals/*       - Deal listing and upserts
"""

import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from scripts.analytics.engine import AnalyticsEngine
from scripts.lib.config import load_analytics_config
from scripts.lib.repository import CachedRepository, InMemoryRepository, SupabaseRepository

load_dotenv()

logger = logging.getLogger(__name__)

VERSION = "1.0.0"


def build_engine() -> AnalyticsEngine:
    """Engine over Supabase when credentials exist, otherwise an empty in-memory store."""
    config = load_analytics_config()
    if os.getenv("SUPABASE_URL"):
        repository = SupabaseRepository()
    else:
        logger.warning("SUPABASE_URL not set, using an in-memory repository")
        repository = InMemoryRepository()
    return AnalyticsEngine(CachedRepository(repository, config.cache_ttl_seconds), config)


# ─── Lifespan ─────────────────────────────────────────────────

@asynccontextmanager
async def lifespan(app):
    """Application startup and shutdown."""
    logger.info("Starting Funnel Hub...")
    if getattr(app.state, "engine", None) is None:
        app.state.engine = build_engine()
    logger.info("Funnel Hub ready")
    yield
    logger.info("Shutting down Funnel Hub...")


# ─── App Setup ────────────────────────────────────────────────

cors_origins = os.getenv(
    "CORS_ORIGINS", "http://localhost:3000,http://localhost:8001"
).split(",")

app = FastAPI(
    title="Funnel Hub",
    version=VERSION,
    description="Sales pipeline & recurring revenue analytics",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ─── Include Routers ──────────────────────────────────────────

from dashboard.api.routers.analytics import router as analytics_router
from dashboard.api.routers.leads import router as leads_router
from dashboard.api.routers.deals import router as deals_router

app.include_router(analytics_router)
app.include_router(leads_router)
app.include_router(deals_router)


# ─── Health ───────────────────────────────────────────────────

@app.get("/api/health", tags=["system"])
async def health():
    """Health check with service status."""
    engine = getattr(app.state, "engine", None)
    repository = None
    if engine is not None:
        inner = getattr(engine.repository, "inner", engine.repository)
        repository = type(inner).__name__

    return {
        "status": "healthy",
        "service": "Funnel Hub",
        "version": VERSION,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "repository": repository,
        "reporting_timezone": engine.config.reporting_timezone if engine else None,
    }
