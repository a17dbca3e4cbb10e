"""
Tests for calendar bucketing of trend series.
"""

from datetime import datetime, timezone
from zoneinfo import ZoneInfo

import pytest

from models.pipeline_models import BucketSize
from scripts.analytics.trends import SUM, bucket, bucket_bounds, bucket_label
from conftest import utc


class TestBucketBounds:
    def test_monthly_window_ends_at_anchor(self):
        bounds = bucket_bounds(BucketSize.MONTH, 12, utc(2026, 12, 15))
        labels = [label for label, _, _ in bounds]
        assert labels[0] == "2026-01"
        assert labels[-1] == "2026-12"
        assert len(bounds) == 12

    def test_month_shift_crosses_year(self):
        labels = [b[0] for b in bucket_bounds("month", 3, utc(2026, 1, 20))]
        assert labels == ["2025-11", "2025-12", "2026-01"]

    def test_iso_week_labels(self):
        bounds = bucket_bounds(BucketSize.WEEK, 2, utc(2026, 1, 1))
        assert [b[0] for b in bounds] == ["2025-W52", "2026-W01"]
        # ISO weeks start on Monday
        assert bounds[-1][1] == datetime(2025, 12, 29, tzinfo=timezone.utc)

    def test_day_labels(self):
        labels = [b[0] for b in bucket_bounds(BucketSize.DAY, 3, utc(2026, 3, 1))]
        assert labels == ["2026-02-27", "2026-02-28", "2026-03-01"]

    def test_bucket_count_must_be_positive(self):
        with pytest.raises(ValueError):
            bucket_bounds(BucketSize.MONTH, 0, utc(2026, 3, 1))

    def test_label_helper(self):
        assert bucket_label(datetime(2026, 3, 9).date(), BucketSize.WEEK) == "2026-W11"


class TestBucket:
    def test_events_land_in_their_months(self):
        events = [utc(2026, 3, 10), utc(2026, 9, 1), utc(2026, 9, 30, 23)]
        points = bucket(events, BucketSize.MONTH, 12, utc(2026, 12, 15))

        assert len(points) == 12
        assert [i for i, p in enumerate(points) if p.value] == [2, 8]
        assert points[2].value == 1
        assert points[8].value == 2

    def test_empty_input_is_gap_filled(self):
        points = bucket([], BucketSize.WEEK, 6, utc(2026, 3, 15))
        assert len(points) == 6
        assert all(p.value == 0 for p in points)

    def test_events_outside_window_are_ignored(self):
        points = bucket([utc(2025, 1, 5), utc(2027, 1, 5)], "month", 12, utc(2026, 12, 1))
        assert sum(p.value for p in points) == 0

    def test_sum_mode_adds_values(self):
        events = [(utc(2026, 3, 2), 100.5), (utc(2026, 3, 3), 0.25)]
        points = bucket(events, BucketSize.MONTH, 1, utc(2026, 3, 20), mode=SUM)
        assert points[0].value == 100.75

    def test_reporting_timezone_decides_the_bucket(self):
        # 03:00 UTC on Mar 1 is still Feb 28 in Bogota
        events = [datetime(2026, 3, 1, 3, tzinfo=timezone.utc)]
        bogota = ZoneInfo("America/Bogota")

        local = bucket(events, BucketSize.MONTH, 2, utc(2026, 3, 15), tz=bogota)
        plain = bucket(events, BucketSize.MONTH, 2, utc(2026, 3, 15))

        assert [p.value for p in local] == [1, 0]
        assert [p.value for p in plain] == [0, 1]
        assert local[1].start == datetime(2026, 3, 1, tzinfo=bogota)

    def test_unknown_mode(self):
        with pytest.raises(ValueError):
            bucket([], BucketSize.DAY, 1, utc(2026, 3, 1), mode="avg")
