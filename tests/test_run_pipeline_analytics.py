"""
Tests for the batch analytics runner.
"""

import json
from datetime import datetime
from unittest.mock import patch

import pytest

from models.pipeline_models import Dimension, Filters
from scripts.analytics.engine import AnalyticsEngine
from scripts.run_pipeline_analytics import (
    compute_by_dimension,
    main,
    resolve_period,
    run_pipeline_analytics,
)


@pytest.fixture
def engine(scenario_repository, config, now):
    return AnalyticsEngine(scenario_repository, config, now=lambda: now)


class TestResolvePeriod:
    def test_defaults_to_current_month(self, engine, march):
        assert resolve_period(engine, None, None) == march

    def test_naive_dates_use_reporting_timezone(self, engine):
        period = resolve_period(engine, "2026-01-01", "2026-02-01")
        assert period.start == datetime(2026, 1, 1, tzinfo=engine.config.tz)

    def test_both_bounds_required(self, engine):
        with pytest.raises(ValueError):
            resolve_period(engine, "2026-01-01", None)


class TestRunPipelineAnalytics:
    def test_writes_output_without_sync(self, engine, march, tmp_path):
        output_path = tmp_path / "pipeline_analytics.json"
        with patch("scripts.run_pipeline_analytics.upsert_snapshot") as upsert:
            output = run_pipeline_analytics(engine, march, output_path=output_path, sync=False)

        upsert.assert_not_called()
        saved = json.loads(output_path.read_text())
        assert saved["revenue"]["current_mrr"] == output["revenue"]["current_mrr"] == 1500.0

    def test_by_dimension_syncs_per_source(self, engine, march, tmp_path):
        with patch("scripts.run_pipeline_analytics.upsert_snapshot", return_value=True) as upsert:
            output = run_pipeline_analytics(
                engine, march, by=Dimension.OWNER, output_path=tmp_path / "by_owner.json",
            )

        assert sorted(output["results"]) == ["ana", "luis"]
        assert output["results"]["luis"]["revenue"]["current_mrr"] == 500.0
        assert upsert.call_args[0][0] == "pipeline_analytics_by_owner"

    @pytest.mark.asyncio
    async def test_compute_by_dimension(self, engine, march):
        results = await compute_by_dimension(engine, march, Filters(), Dimension.CHANNEL)

        assert set(results) == {"WEBINAR", "PARTNER"}
        assert results["WEBINAR"].filters.channel.value == "WEBINAR"
        assert results["WEBINAR"].revenue.current_mrr == 1000.0


class TestMain:
    def test_half_open_period_fails(self):
        assert main(["--start", "2026-03-01", "--no-sync"]) == 1
