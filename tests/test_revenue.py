"""
Tests for MRR, churn, fees, goal progress and win rate.
"""

from datetime import date

import pytest

from models.pipeline_models import Deal, DealStatus, Period, Stage
from scripts.analytics.revenue import RevenueAggregator
from scripts.analytics.snapshot import PipelineSnapshot
from conftest import utc


@pytest.fixture
def revenue(config):
    return RevenueAggregator(config)


@pytest.fixture
def deals():
    return (
        Deal.create(id="d1", entity_id="L1", mrr_original=500, fee_original=300,
                    start_date=date(2026, 1, 10)),
        Deal.create(id="d2", entity_id="L2", mrr_original=1500, fee_original=700,
                    start_date=date(2026, 3, 5)),
        Deal.create(id="d3", entity_id="L3", mrr_original=2000, status=DealStatus.CHURNED,
                    start_date=date(2026, 1, 1), status_changed_at=utc(2026, 2, 15)),
    )


@pytest.fixture
def snapshot(deals):
    return PipelineSnapshot(deals=deals)


class TestMrr:
    def test_current_mrr_counts_active_deals_only(self, revenue, snapshot):
        assert revenue.current_mrr(snapshot) == 2000.0
        assert revenue.arr(snapshot) == 24000.0
        assert revenue.average_mrr(snapshot) == 1000.0
        assert revenue.active_deal_count(snapshot) == 2

    def test_mrr_at_uses_start_date(self, revenue, snapshot):
        assert revenue.mrr_at(snapshot, utc(2026, 3, 1, 0)) == 500.0
        assert revenue.mrr_at(snapshot, utc(2026, 4, 1, 0)) == 2000.0

    def test_churned_mrr_in_period(self, revenue, snapshot, march):
        assert revenue.churned_mrr(snapshot, march) == 0.0
        february = Period(start=utc(2026, 2, 1, 0), end=utc(2026, 3, 1, 0))
        assert revenue.churned_mrr(snapshot, february) == 2000.0

    def test_mrr_trend(self, revenue, snapshot):
        points = revenue.mrr_trend(snapshot, 3, utc(2026, 3, 15))

        assert [p.label for p in points] == ["2026-01", "2026-02", "2026-03"]
        assert [p.total for p in points] == [500.0, 500.0, 2000.0]
        assert [p.churned for p in points] == [0.0, 2000.0, 0.0]
        assert points[0].new == 500.0
        assert points[2].new == 1500.0

    def test_mrr_by_channel(self, revenue, scenario_leads, scenario_repository):
        entities = [e for e, _ in scenario_leads]
        records = [r for _, h in scenario_leads for r in h]
        snapshot = PipelineSnapshot.build(entities, records, scenario_repository.fetch_deals())
        assert revenue.mrr_by(snapshot, "channel") == {"WEBINAR": 1000.0, "PARTNER": 500.0}


class TestFeesAndGrowth:
    def test_fees_in_period_and_total(self, revenue, snapshot, march):
        assert revenue.fees(snapshot, march) == (700.0, 1000.0)

    def test_growth_percentage(self):
        assert RevenueAggregator.growth_percentage(1200, 1000) == 20.0
        assert RevenueAggregator.growth_percentage(750, 1000) == -25.0
        assert RevenueAggregator.growth_percentage(500, 0) == 0.0

    def test_goal_ratio_is_uncapped_but_display_is(self):
        progress = RevenueAggregator.goal_progress(60000, 50000)
        assert progress.ratio == 120.0
        assert progress.display == 100.0

    def test_goal_of_zero(self):
        progress = RevenueAggregator.goal_progress(1000, 0)
        assert (progress.ratio, progress.display) == (0.0, 0.0)


class TestWinRate:
    def test_distinct_closes_inside_period(self, revenue, make_lead, march):
        leads = [
            make_lead("W1", [(Stage.PROSPECTO, utc(2026, 3, 1)),
                             (Stage.CERRADO_GANADO, utc(2026, 3, 5))]),
            make_lead("W2", [(Stage.PROSPECTO, utc(2026, 3, 1)),
                             (Stage.PROPUESTA, utc(2026, 3, 3)),
                             (Stage.CERRADO_GANADO, utc(2026, 3, 9))]),
            make_lead("L1", [(Stage.PROSPECTO, utc(2026, 3, 1)),
                             (Stage.CERRADO_PERDIDO, utc(2026, 3, 2))]),
            make_lead("W0", [(Stage.PROSPECTO, utc(2026, 1, 1)),
                             (Stage.CERRADO_GANADO, utc(2026, 2, 2))]),
        ]
        snapshot = PipelineSnapshot.build(
            [e for e, _ in leads], [r for _, h in leads for r in h], [],
        )
        assert revenue.closes(snapshot, march) == (2, 1)
        assert revenue.win_rate(snapshot, march) == 66.7

    def test_no_closes_is_zero(self, revenue, march):
        assert revenue.win_rate(PipelineSnapshot(), march) == 0.0


class TestSummarize:
    def test_bundle(self, revenue, snapshot, march):
        metrics = revenue.summarize(snapshot, march, goal=50000)

        assert metrics.current_mrr == 2000.0
        assert metrics.previous_mrr == 500.0
        assert metrics.mrr_growth == 1500.0
        assert metrics.mrr_growth_pct == 300.0
        assert metrics.goal.ratio == 4.0
        assert metrics.fees_period == 700.0

    def test_zero_data(self, revenue, march):
        metrics = revenue.summarize(PipelineSnapshot(), march, goal=50000)

        assert metrics.current_mrr == 0.0
        assert metrics.mrr_growth_pct == 0.0
        assert metrics.win_rate == 0.0
        assert metrics.goal.goal == 50000.0
        assert metrics.goal.ratio == 0.0
