"""
Funnel Hub — Analytics Engine
================================

Entry points used by the API and the batch runner:

  compute_analytics(period, filters)  -> AggregateResult
  record_transition(entity_id, ...)   -> TransitionResult

The engine loads one consistent snapshot through the repository, then every
aggregator runs as a pure function over it. The only write path is the stage
transition, delegated to the StageLedger.
"""
from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Union

from models.analytics_models import (
    AggregateResult,
    ConversionMetric,
    FunnelMetrics,
    TransitionResult,
    TrendSeries,
)
from models.pipeline_models import (
    LOST_STAGE,
    WON_STAGE,
    BucketSize,
    Deal,
    Dimension,
    Filters,
    Period,
    PipelineEntity,
    Stage,
    StageHistoryRecord,
)
from scripts.analytics.funnel import FunnelAggregator
from scripts.analytics.insights import InsightGenerator
from scripts.analytics.revenue import RevenueAggregator
from scripts.analytics.snapshot import PipelineSnapshot
from scripts.analytics.stage_ledger import StageLedger
from scripts.analytics.trends import COUNT, bucket
from scripts.lib.config import AnalyticsConfig, load_analytics_config
from scripts.lib.errors import EntityNotFoundError, ValidationError
from scripts.lib.logger import setup_logger
from scripts.lib.utils import ensure_aware, now_utc

logger = setup_logger("analytics_engine")


class AnalyticsEngine:
    """Bundles the aggregators around one repository and configuration."""

    def __init__(
        self,
        repository,
        config: Optional[AnalyticsConfig] = None,
        now: Optional[Callable[[], datetime]] = None,
    ):
        self.repository = repository
        self.config = config or load_analytics_config()
        self._now = now or now_utc
        self.ledger = StageLedger(repository, clock=self._now)
        self.funnel = FunnelAggregator(self.config)
        self.revenue = RevenueAggregator(self.config)
        self.insights = InsightGenerator(self.config)

    # ------------------------------------------------------------------
    # Read path
    # ------------------------------------------------------------------

    def now(self) -> datetime:
        return self._now()

    def current_month(self) -> Period:
        """Calendar month containing "now" in the reporting timezone."""
        return Period.month_of(self._now().astimezone(self.config.tz))

    def load_snapshot(self, filters: Optional[Filters] = None) -> PipelineSnapshot:
        filters = filters or Filters()
        entities = self.repository.fetch_entities(filters)
        records = self.repository.fetch_history([e.id for e in entities])
        deals = self.repository.fetch_deals(filters)
        snapshot = PipelineSnapshot.build(entities, records, deals)
        logger.info(
            "Snapshot loaded: %d entities, %d history records, %d deals (%d excluded)",
            len(snapshot.entities), len(records), len(snapshot.deals), len(snapshot.excluded),
        )
        return snapshot

    def mrr_goal(self) -> float:
        goal = self.repository.fetch_mrr_goal()
        return goal if goal is not None else self.config.goal_mrr_usd

    def compute_analytics(
        self,
        period: Period,
        filters: Optional[Filters] = None,
        bucket_size: Optional[Union[BucketSize, str]] = None,
        bucket_count: Optional[int] = None,
        anchor: Optional[datetime] = None,
    ) -> AggregateResult:
        """Every funnel, revenue, trend and insight output for one period + filter set."""
        filters = filters or Filters()
        snapshot = self.load_snapshot(filters)
        return self.aggregate(
            snapshot, period, filters, self.mrr_goal(),
            bucket_size=bucket_size, bucket_count=bucket_count, anchor=anchor,
        )

    def aggregate(
        self,
        snapshot: PipelineSnapshot,
        period: Period,
        filters: Optional[Filters] = None,
        goal: Optional[float] = None,
        bucket_size: Optional[Union[BucketSize, str]] = None,
        bucket_count: Optional[int] = None,
        anchor: Optional[datetime] = None,
    ) -> AggregateResult:
        """Pure computation over an already loaded snapshot."""
        filters = filters or Filters()
        snapshot = snapshot.filtered(filters)
        now = self._now()
        goal = self.config.goal_mrr_usd if goal is None else goal
        bucket_size = BucketSize(bucket_size or self.config.trend.bucket_size)
        bucket_count = bucket_count or self.config.trend.bucket_count
        if anchor is None:
            anchor = min(now, period.end - timedelta(microseconds=1))
        anchor = ensure_aware(anchor)

        revenue = self.revenue.summarize(snapshot, period, goal)
        funnel = FunnelMetrics(
            stage_entries=self.funnel.stage_entries(snapshot, period),
            conversions=self.funnel.conversions(snapshot, period),
            stages=self.funnel.stage_summary(snapshot, now),
            velocity=self.funnel.velocity_metrics(snapshot, period),
            forecast=self.funnel.forecast(snapshot, revenue.win_rate),
        )

        result = AggregateResult(
            period=period,
            filters=filters,
            generated_at=now,
            funnel=funnel,
            revenue=revenue,
            trends=self._trends(snapshot, bucket_size, bucket_count, anchor),
            breakdowns={
                dim.value: self.funnel.breakdown(snapshot, dim, period) for dim in Dimension
            },
            excluded_entities=list(snapshot.excluded),
        )
        return result.model_copy(update={"insights": self.insights.evaluate(result)})

    def _trends(
        self,
        snapshot: PipelineSnapshot,
        bucket_size: BucketSize,
        bucket_count: int,
        anchor: datetime,
    ) -> TrendSeries:
        tz = self.config.tz
        records = [r for h in snapshot.history.values() for r in h]

        def entries_into(stage: Stage) -> List[datetime]:
            return [r.changed_at for r in records if r.to_stage == stage]

        return TrendSeries(
            bucket_size=bucket_size.value,
            bucket_count=bucket_count,
            new_entities=bucket(
                [e.created_at for e in snapshot.entities],
                bucket_size, bucket_count, anchor, tz, COUNT,
            ),
            won=bucket(entries_into(WON_STAGE), bucket_size, bucket_count, anchor, tz, COUNT),
            lost=bucket(entries_into(LOST_STAGE), bucket_size, bucket_count, anchor, tz, COUNT),
            mrr=self.revenue.mrr_trend(snapshot, bucket_count, anchor, bucket_size=bucket_size),
        )

    def conversion(
        self,
        from_stage: Stage,
        to_stage: Stage,
        period: Period,
        filters: Optional[Filters] = None,
    ) -> ConversionMetric:
        snapshot = self.load_snapshot(filters)
        return self.funnel.conversion(snapshot, from_stage, to_stage, period)

    # ------------------------------------------------------------------
    # Write path
    # ------------------------------------------------------------------

    def record_transition(
        self,
        entity_id: str,
        from_stage: Any,
        to_stage: Any,
        at: Optional[datetime] = None,
        changed_by: Optional[str] = None,
    ) -> TransitionResult:
        """
        Wrap ``StageLedger.transition`` into a result value.

        Validation failures (stale, invalid stage, out of order) and unknown
        entities come back as ``ok=False`` with the error code; storage
        failures are raised.
        """
        try:
            record = self.ledger.transition(entity_id, from_stage, to_stage, at, changed_by)
        except (ValidationError, EntityNotFoundError) as e:
            return TransitionResult(
                ok=False, error_code=e.code, message=e.message, details=e.details,
            )
        return TransitionResult(ok=True, record=record)

    def create_entity(
        self,
        entity: PipelineEntity,
        at: Optional[datetime] = None,
        changed_by: Optional[str] = None,
    ) -> PipelineEntity:
        return self.ledger.create(entity, at, changed_by)

    def history_for(self, entity_id: str) -> List[StageHistoryRecord]:
        return self.ledger.history_for(entity_id)

    def time_in_stage(self, entity_id: str, stage: Any) -> timedelta:
        return self.ledger.time_in_stage(entity_id, stage)

    def upsert_deal(self, deal: Union[Deal, Dict[str, Any]]) -> Deal:
        """Normalise and save a deal. USD fields are always re-derived."""
        deal = deal.revise() if isinstance(deal, Deal) else Deal.create(**deal)
        self.repository.get_entity(deal.entity_id)
        saved = self.repository.save_deal(deal)
        logger.info(
            "Deal saved for %s: %s %.2f -> USD %.2f",
            saved.entity_id, saved.currency.value, saved.mrr_original, saved.mrr_usd,
        )
        return saved
