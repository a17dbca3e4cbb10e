"""
Funnel Hub — Revenue Aggregator
==================================

Recurring-revenue and goal metrics. Works only on the already normalised
``mrr_usd`` / ``fee_usd`` deal fields; no currency math happens here.
"""
from __future__ import annotations

from collections import defaultdict
from datetime import datetime, time
from typing import Dict, List, Optional, Tuple, Union

from models.analytics_models import GoalProgress, MrrTrendPoint, RevenueMetrics
from models.pipeline_models import (
    LOST_STAGE,
    WON_STAGE,
    BucketSize,
    Deal,
    DealStatus,
    Dimension,
    Filters,
    Period,
)
from scripts.analytics.funnel import UNASSIGNED
from scripts.analytics.snapshot import PipelineSnapshot
from scripts.analytics.trends import bucket_bounds
from scripts.lib.config import AnalyticsConfig
from scripts.lib.utils import mean, percentage, round_money, round_pct, safe_div


class RevenueAggregator:
    """MRR, ARR, churn, fees, goal progress and win rate."""

    def __init__(self, config: AnalyticsConfig):
        self.config = config

    def _active(self, snapshot: PipelineSnapshot) -> List[Deal]:
        return [d for d in snapshot.deals if d.status == DealStatus.ACTIVE]

    def _started_before(self, deal: Deal, moment: datetime) -> bool:
        # start_date is a calendar date in the reporting timezone
        return datetime.combine(deal.start_date, time.min, tzinfo=self.config.tz) < moment

    # ------------------------------------------------------------------
    # MRR
    # ------------------------------------------------------------------

    def current_mrr(self, snapshot: PipelineSnapshot, filters: Optional[Filters] = None) -> float:
        """Sum of ``mrr_usd`` over ACTIVE deals."""
        return round_money(sum(d.mrr_usd for d in self._active(snapshot.filtered(filters))))

    def arr(self, snapshot: PipelineSnapshot, filters: Optional[Filters] = None) -> float:
        return round_money(self.current_mrr(snapshot, filters) * 12)

    def mrr_at(
        self, snapshot: PipelineSnapshot, as_of: datetime, filters: Optional[Filters] = None
    ) -> float:
        """MRR of ACTIVE deals that had started before ``as_of``."""
        return round_money(sum(
            d.mrr_usd for d in self._active(snapshot.filtered(filters))
            if self._started_before(d, as_of)
        ))

    def churned_mrr(
        self, snapshot: PipelineSnapshot, period: Period, filters: Optional[Filters] = None
    ) -> float:
        """MRR of deals whose status became CHURNED inside ``period``."""
        return round_money(sum(
            d.mrr_usd for d in snapshot.filtered(filters).deals
            if d.status == DealStatus.CHURNED and period.contains(d.status_changed_at)
        ))

    def average_mrr(self, snapshot: PipelineSnapshot, filters: Optional[Filters] = None) -> float:
        return round_money(mean(d.mrr_usd for d in self._active(snapshot.filtered(filters))))

    def active_deal_count(
        self, snapshot: PipelineSnapshot, filters: Optional[Filters] = None
    ) -> int:
        return len(self._active(snapshot.filtered(filters)))

    def mrr_by(
        self,
        snapshot: PipelineSnapshot,
        dimension: Union[Dimension, str],
        filters: Optional[Filters] = None,
    ) -> Dict[str, float]:
        """Current MRR grouped by the owning entity's dimension, highest first."""
        dimension = Dimension(dimension)
        snapshot = snapshot.filtered(filters)
        entities = snapshot.entity_map
        totals: Dict[str, float] = defaultdict(float)
        for deal in self._active(snapshot):
            entity = entities.get(deal.entity_id)
            key = (entity.dimension(dimension) if entity else None) or UNASSIGNED
            totals[key] += deal.mrr_usd
        return {
            k: round_money(v)
            for k, v in sorted(totals.items(), key=lambda kv: (-kv[1], kv[0]))
        }

    def mrr_trend(
        self,
        snapshot: PipelineSnapshot,
        bucket_count: int,
        anchor: datetime,
        filters: Optional[Filters] = None,
        bucket_size: BucketSize = BucketSize.MONTH,
    ) -> List[MrrTrendPoint]:
        """Total, new and churned MRR per bucket; ``new = max(0, total - prev + churned)``."""
        snapshot = snapshot.filtered(filters)
        points = []
        for label, start, end in bucket_bounds(bucket_size, bucket_count, anchor, self.config.tz):
            total = self.mrr_at(snapshot, end)
            previous = self.mrr_at(snapshot, start)
            churned = self.churned_mrr(snapshot, Period(start=start, end=end))
            points.append(MrrTrendPoint(
                label=label,
                start=start,
                total=total,
                new=round_money(max(0.0, total - previous + churned)),
                churned=churned,
            ))
        return points

    # ------------------------------------------------------------------
    # Fees, growth, goal
    # ------------------------------------------------------------------

    def fees(
        self, snapshot: PipelineSnapshot, period: Period, filters: Optional[Filters] = None
    ) -> Tuple[float, float]:
        """(fees of deals started inside ``period``, fees of every deal)."""
        deals = snapshot.filtered(filters).deals
        in_period = sum(
            d.fee_usd for d in deals
            if self._started_before(d, period.end) and not self._started_before(d, period.start)
        )
        return round_money(in_period), round_money(sum(d.fee_usd for d in deals))

    @staticmethod
    def growth_percentage(current: float, previous: float) -> float:
        """Percentage change; 0 when there is no prior baseline."""
        if previous == 0:
            return 0.0
        return round_pct((current - previous) / previous * 100.0)

    @staticmethod
    def goal_progress(current: float, goal: float) -> GoalProgress:
        ratio = round_pct(safe_div(current * 100.0, goal))
        return GoalProgress(
            goal=round_money(goal),
            current=round_money(current),
            ratio=ratio,
            display=min(ratio, 100.0),
        )

    # ------------------------------------------------------------------
    # Win rate
    # ------------------------------------------------------------------

    def closes(
        self, snapshot: PipelineSnapshot, period: Period, filters: Optional[Filters] = None
    ) -> Tuple[int, int]:
        """Distinct entities entering the won / lost stage inside ``period``."""
        snapshot = snapshot.filtered(filters)
        won = lost = 0
        for entity in snapshot.entities:
            entered = {
                r.to_stage for r in snapshot.history_of(entity.id) if period.contains(r.changed_at)
            }
            won += WON_STAGE in entered
            lost += LOST_STAGE in entered
        return won, lost

    def win_rate(
        self, snapshot: PipelineSnapshot, period: Period, filters: Optional[Filters] = None
    ) -> float:
        won, lost = self.closes(snapshot, period, filters)
        return percentage(won, won + lost)

    # ------------------------------------------------------------------
    # Bundle
    # ------------------------------------------------------------------

    def summarize(
        self,
        snapshot: PipelineSnapshot,
        period: Period,
        goal: float,
        filters: Optional[Filters] = None,
    ) -> RevenueMetrics:
        snapshot = snapshot.filtered(filters)
        current = self.current_mrr(snapshot)
        previous = self.mrr_at(snapshot, period.start)
        fees_period, fees_total = self.fees(snapshot, period)
        won, lost = self.closes(snapshot, period)
        return RevenueMetrics(
            current_mrr=current,
            previous_mrr=previous,
            mrr_growth=round_money(current - previous),
            mrr_growth_pct=self.growth_percentage(current, previous),
            arr=round_money(current * 12),
            goal=self.goal_progress(current, goal),
            churned_mrr=self.churned_mrr(snapshot, period),
            fees_period=fees_period,
            fees_total=fees_total,
            avg_mrr=self.average_mrr(snapshot),
            active_deals=self.active_deal_count(snapshot),
            win_rate=percentage(won, won + lost),
            won_count=won,
            lost_count=lost,
        )
