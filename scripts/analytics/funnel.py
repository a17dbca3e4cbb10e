"""
Funnel Hub — Funnel Aggregator
=================================

Stage-flow metrics over a Period and optional filters, computed from a
PipelineSnapshot:

  - stage entries per stage
  - cohort conversion and velocity between two stages
  - weighted pipeline and 30-day forecast
  - current per-stage summary, dwell time, deal cycle, loss reasons
  - owner / channel / subchannel breakdowns

Conversion is cohort based: the cohort is every entity whose first entry into
``from_stage`` inside the period is found; a member converts if it entered
``to_stage`` at any later point (only the first such entry counts).
"""
from __future__ import annotations

import math
from collections import defaultdict
from datetime import datetime
from typing import Dict, List, Optional

from models.analytics_models import (
    BreakdownRow,
    ConversionMetric,
    ForecastMetrics,
    StageSummary,
    VelocityMetrics,
)
from models.pipeline_models import (
    LOST_STAGE,
    OPEN_STAGES,
    STAGE_ORDER,
    WON_STAGE,
    DealStatus,
    Dimension,
    Filters,
    LossReason,
    Period,
    Stage,
)
from scripts.analytics.snapshot import PipelineSnapshot
from scripts.analytics.stage_ledger import first_entry, parse_stage, visits
from scripts.lib.config import AnalyticsConfig
from scripts.lib.utils import days_between, mean, percentage, round_money, round_pct

UNASSIGNED = "UNASSIGNED"


class FunnelAggregator:
    """Stage-flow metrics. Stateless apart from the configuration."""

    def __init__(self, config: AnalyticsConfig):
        self.config = config

    # ------------------------------------------------------------------
    # Entries and conversion
    # ------------------------------------------------------------------

    def stage_entries(
        self, snapshot: PipelineSnapshot, period: Period, filters: Optional[Filters] = None
    ) -> Dict[Stage, int]:
        """Entities with at least one entry into each stage inside ``period``."""
        snapshot = snapshot.filtered(filters)
        counts = {stage: 0 for stage in STAGE_ORDER}
        for entity in snapshot.entities:
            entered = {
                r.to_stage for r in snapshot.history_of(entity.id) if period.contains(r.changed_at)
            }
            for stage in entered:
                counts[stage] += 1
        return counts

    def conversion(
        self,
        snapshot: PipelineSnapshot,
        from_stage: Stage,
        to_stage: Stage,
        period: Period,
        filters: Optional[Filters] = None,
    ) -> ConversionMetric:
        from_stage, to_stage = parse_stage(from_stage), parse_stage(to_stage)
        snapshot = snapshot.filtered(filters)
        cohort = 0
        latencies: List[float] = []

        for entity in snapshot.entities:
            history = snapshot.history_of(entity.id)
            start_idx = next(
                (i for i, r in enumerate(history)
                 if r.to_stage == from_stage and period.contains(r.changed_at)),
                None,
            )
            if start_idx is None:
                continue
            cohort += 1
            entered = history[start_idx].changed_at
            reached = next(
                (r.changed_at for r in history[start_idx + 1:] if r.to_stage == to_stage),
                None,
            )
            if reached is not None:
                latencies.append(days_between(entered, reached))

        return ConversionMetric(
            from_stage=from_stage,
            to_stage=to_stage,
            cohort_size=cohort,
            converted=len(latencies),
            rate=percentage(len(latencies), cohort),
            avg_days=round_pct(mean(latencies)),
        )

    def conversion_rate(self, snapshot, from_stage, to_stage, period, filters=None) -> float:
        return self.conversion(snapshot, from_stage, to_stage, period, filters).rate

    def velocity(self, snapshot, from_stage, to_stage, period, filters=None) -> float:
        """Mean days from ``from_stage`` to ``to_stage`` over members that made it."""
        return self.conversion(snapshot, from_stage, to_stage, period, filters).avg_days

    def conversions(
        self, snapshot: PipelineSnapshot, period: Period, filters: Optional[Filters] = None
    ) -> List[ConversionMetric]:
        return [
            self.conversion(snapshot, a, b, period, filters)
            for a, b in self.config.conversion_pairs
        ]

    # ------------------------------------------------------------------
    # Pipeline value and forecast
    # ------------------------------------------------------------------

    def weighted_pipeline(
        self, snapshot: PipelineSnapshot, filters: Optional[Filters] = None
    ) -> float:
        """Sum of open entity value x stage probability."""
        snapshot = snapshot.filtered(filters)
        return round_money(sum(
            snapshot.entity_value(e.id) * self.config.probability(e.stage)
            for e in snapshot.entities if e.is_open
        ))

    def forecast(
        self, snapshot: PipelineSnapshot, win_rate: float, filters: Optional[Filters] = None
    ) -> ForecastMetrics:
        snapshot = snapshot.filtered(filters)
        open_entities = [e for e in snapshot.entities if e.is_open]
        closeable = [e for e in open_entities if e.stage in self.config.closeable_stages]
        effective = (win_rate if win_rate > 0 else self.config.fallback_win_rate) / 100.0

        closeable_value = sum(snapshot.entity_value(e.id) for e in closeable)
        worst = sum(
            snapshot.entity_value(e.id) * self.config.probability(e.stage) * 0.5
            for e in closeable
        )
        return ForecastMetrics(
            pipeline_value=round_money(sum(snapshot.entity_value(e.id) for e in open_entities)),
            weighted_pipeline=self.weighted_pipeline(snapshot),
            expected_closes_30d=int(math.floor(len(closeable) * effective + 0.5)),
            expected_mrr_30d=round_money(closeable_value * effective),
            best_case=round_money(closeable_value),
            worst_case=round_money(worst),
        )

    # ------------------------------------------------------------------
    # Current state and velocity
    # ------------------------------------------------------------------

    def stage_summary(
        self, snapshot: PipelineSnapshot, now: datetime, filters: Optional[Filters] = None
    ) -> List[StageSummary]:
        snapshot = snapshot.filtered(filters)
        by_stage = defaultdict(list)
        for entity in snapshot.entities:
            by_stage[entity.stage].append(entity)

        summary = []
        for stage in STAGE_ORDER:
            members = by_stage.get(stage, [])
            summary.append(StageSummary(
                stage=stage,
                count=len(members),
                value_usd=round_money(sum(snapshot.entity_value(e.id) for e in members)),
                avg_days_in_stage=round_pct(mean(
                    max(0.0, days_between(e.stage_entered_at, now)) for e in members
                )),
                probability=self.config.probability(stage),
            ))
        return summary

    def average_days_by_stage(
        self, snapshot: PipelineSnapshot, period: Period, filters: Optional[Filters] = None
    ) -> Dict[Stage, float]:
        """Mean dwell time of completed visits to each open stage that ended in ``period``."""
        snapshot = snapshot.filtered(filters)
        durations: Dict[Stage, List[float]] = defaultdict(list)
        for entity in snapshot.entities:
            for stage, entered, left in visits(snapshot.history_of(entity.id)):
                if left is not None and period.contains(left):
                    durations[stage].append(days_between(entered, left))
        return {stage: round_pct(mean(durations.get(stage, ()))) for stage in OPEN_STAGES}

    def _cycle_days(self, snapshot: PipelineSnapshot, period: Period) -> List[float]:
        cycles = []
        for entity in snapshot.entities:
            won_at = first_entry(snapshot.history_of(entity.id), WON_STAGE)
            if won_at is not None and period.contains(won_at):
                cycles.append(max(0.0, days_between(entity.created_at, won_at)))
        return cycles

    def average_deal_cycle(
        self, snapshot: PipelineSnapshot, period: Period, filters: Optional[Filters] = None
    ) -> float:
        """Mean days from creation to the first win, for wins inside ``period``."""
        return round_pct(mean(self._cycle_days(snapshot.filtered(filters), period)))

    def loss_reasons(
        self, snapshot: PipelineSnapshot, period: Period, filters: Optional[Filters] = None
    ) -> Dict[str, int]:
        """Entities that entered the lost stage inside ``period``, counted by reason."""
        snapshot = snapshot.filtered(filters)
        counts: Dict[str, int] = defaultdict(int)
        for entity in snapshot.entities:
            lost = any(
                r.to_stage == LOST_STAGE and period.contains(r.changed_at)
                for r in snapshot.history_of(entity.id)
            )
            if lost:
                reason = entity.loss_reason or LossReason.OTRO
                counts[reason.value] += 1
        return dict(counts)

    def velocity_metrics(
        self, snapshot: PipelineSnapshot, period: Period, filters: Optional[Filters] = None
    ) -> VelocityMetrics:
        return VelocityMetrics(
            avg_deal_cycle_days=self.average_deal_cycle(snapshot, period, filters),
            avg_days_by_stage=self.average_days_by_stage(snapshot, period, filters),
            loss_reasons=self.loss_reasons(snapshot, period, filters),
        )

    # ------------------------------------------------------------------
    # Breakdowns
    # ------------------------------------------------------------------

    def breakdown(
        self,
        snapshot: PipelineSnapshot,
        dimension: Dimension,
        period: Period,
        filters: Optional[Filters] = None,
    ) -> List[BreakdownRow]:
        """Per-value counts: created, won, lost, win rate, cycle and current MRR."""
        dimension = Dimension(dimension)
        snapshot = snapshot.filtered(filters)
        groups: Dict[str, List] = defaultdict(list)
        for entity in snapshot.entities:
            groups[entity.dimension(dimension) or UNASSIGNED].append(entity)

        rows = []
        for value, members in groups.items():
            ids = {e.id for e in members}
            group = PipelineSnapshot(
                entities=tuple(members),
                history={i: snapshot.history_of(i) for i in ids},
                deals=tuple(d for d in snapshot.deals if d.entity_id in ids),
            )
            won = lost = 0
            for entity in members:
                entered = {
                    r.to_stage for r in group.history_of(entity.id)
                    if period.contains(r.changed_at)
                }
                won += WON_STAGE in entered
                lost += LOST_STAGE in entered
            rows.append(BreakdownRow(
                dimension=dimension.value,
                value=value,
                entities=sum(1 for e in members if period.contains(e.created_at)),
                won=won,
                lost=lost,
                win_rate=percentage(won, won + lost),
                avg_cycle_days=round_pct(mean(self._cycle_days(group, period))),
                mrr=round_money(sum(d.mrr_usd for d in group.deals if d.status == DealStatus.ACTIVE)),
            ))
        rows.sort(key=lambda r: (-r.mrr, -r.won, r.value))
        return rows
