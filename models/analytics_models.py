"""
Funnel Hub — Analytics Result Models
=======================================

Output-only records produced by the analytics engine. Built fresh on every
computation and never persisted back into the pipeline tables.
"""
from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from models.pipeline_models import Filters, Period, Stage, StageHistoryRecord


class Severity(str, Enum):
    SUCCESS = "success"
    WARNING = "warning"
    INFO = "info"


# ─── Funnel ─────────────────────────────────────────────────

class ConversionMetric(BaseModel):
    from_stage: Stage
    to_stage: Stage
    cohort_size: int = 0
    converted: int = 0
    rate: float = 0.0
    avg_days: float = 0.0


class StageSummary(BaseModel):
    stage: Stage
    count: int = 0
    value_usd: float = 0.0
    avg_days_in_stage: float = 0.0
    probability: float = 0.0


class VelocityMetrics(BaseModel):
    avg_deal_cycle_days: float = 0.0
    avg_days_by_stage: Dict[Stage, float] = Field(default_factory=dict)
    loss_reasons: Dict[str, int] = Field(default_factory=dict)


class ForecastMetrics(BaseModel):
    pipeline_value: float = 0.0
    weighted_pipeline: float = 0.0
    expected_closes_30d: int = 0
    expected_mrr_30d: float = 0.0
    best_case: float = 0.0
    worst_case: float = 0.0


class FunnelMetrics(BaseModel):
    stage_entries: Dict[Stage, int] = Field(default_factory=dict)
    conversions: List[ConversionMetric] = Field(default_factory=list)
    stages: List[StageSummary] = Field(default_factory=list)
    velocity: VelocityMetrics = Field(default_factory=VelocityMetrics)
    forecast: ForecastMetrics = Field(default_factory=ForecastMetrics)


# ─── Revenue ────────────────────────────────────────────────

class GoalProgress(BaseModel):
    """``ratio`` is uncapped (over-achievement visible); ``display`` caps at 100."""
    goal: float = 0.0
    current: float = 0.0
    ratio: float = 0.0
    display: float = 0.0


class RevenueMetrics(BaseModel):
    current_mrr: float = 0.0
    previous_mrr: float = 0.0
    mrr_growth: float = 0.0
    mrr_growth_pct: float = 0.0
    arr: float = 0.0
    goal: GoalProgress = Field(default_factory=GoalProgress)
    churned_mrr: float = 0.0
    fees_period: float = 0.0
    fees_total: float = 0.0
    avg_mrr: float = 0.0
    active_deals: int = 0
    win_rate: float = 0.0
    won_count: int = 0
    lost_count: int = 0


# ─── Trends ─────────────────────────────────────────────────

class TrendPoint(BaseModel):
    label: str
    start: datetime
    value: float = 0.0


class MrrTrendPoint(BaseModel):
    label: str
    start: datetime
    total: float = 0.0
    new: float = 0.0
    churned: float = 0.0


class TrendSeries(BaseModel):
    bucket_size: str
    bucket_count: int
    new_entities: List[TrendPoint] = Field(default_factory=list)
    won: List[TrendPoint] = Field(default_factory=list)
    lost: List[TrendPoint] = Field(default_factory=list)
    mrr: List[MrrTrendPoint] = Field(default_factory=list)


# ─── Breakdowns & Insights ──────────────────────────────────

class BreakdownRow(BaseModel):
    dimension: str
    value: str
    entities: int = 0
    won: int = 0
    lost: int = 0
    win_rate: float = 0.0
    avg_cycle_days: float = 0.0
    mrr: float = 0.0


class Insight(BaseModel):
    severity: Severity
    title: str
    description: str
    rule: Optional[str] = None


# ─── Composite ──────────────────────────────────────────────

class AggregateResult(BaseModel):
    """Everything the dashboard needs for one period + filter combination."""
    period: Period
    filters: Filters
    generated_at: datetime
    funnel: FunnelMetrics = Field(default_factory=FunnelMetrics)
    revenue: RevenueMetrics = Field(default_factory=RevenueMetrics)
    trends: TrendSeries
    breakdowns: Dict[str, List[BreakdownRow]] = Field(default_factory=dict)
    insights: List[Insight] = Field(default_factory=list)
    excluded_entities: List[str] = Field(default_factory=list)


class TransitionResult(BaseModel):
    """Result value returned by ``record_transition``."""
    ok: bool
    record: Optional[StageHistoryRecord] = None
    error_code: Optional[str] = None
    message: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)
