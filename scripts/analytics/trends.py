"""
Funnel Hub — Trend Bucketer
==============================

Fixed-length, gap-filled time series for charting. Buckets follow the
calendar (calendar months, ISO weeks starting Monday, days) in the reporting
timezone, never rolling 30/7-day windows.

Labels:
  day   -> 2026-03-09
  week  -> 2026-W11
  month -> 2026-03
"""
from __future__ import annotations

from datetime import date, datetime, time, timedelta, tzinfo
from typing import Iterable, List, Optional, Tuple, Union

from models.analytics_models import TrendPoint
from models.pipeline_models import BucketSize
from scripts.lib.utils import ensure_aware, round_money

Event = Union[datetime, Tuple[datetime, float]]

COUNT = "count"
SUM = "sum"


def _start_date(d: date, bucket_size: BucketSize) -> date:
    if bucket_size == BucketSize.MONTH:
        return d.replace(day=1)
    if bucket_size == BucketSize.WEEK:
        return d - timedelta(days=d.weekday())
    return d


def _shift(d: date, bucket_size: BucketSize, n: int) -> date:
    if bucket_size == BucketSize.MONTH:
        months = d.year * 12 + (d.month - 1) + n
        return date(months // 12, months % 12 + 1, 1)
    if bucket_size == BucketSize.WEEK:
        return d + timedelta(weeks=n)
    return d + timedelta(days=n)


def bucket_label(start: date, bucket_size: BucketSize) -> str:
    if bucket_size == BucketSize.MONTH:
        return f"{start.year:04d}-{start.month:02d}"
    if bucket_size == BucketSize.WEEK:
        iso = start.isocalendar()
        return f"{iso[0]:04d}-W{iso[1]:02d}"
    return start.isoformat()


def _local_date(ts: datetime, tz: Optional[tzinfo]) -> date:
    ts = ensure_aware(ts)
    return (ts.astimezone(tz) if tz else ts).date()


def bucket_bounds(
    bucket_size: Union[BucketSize, str],
    bucket_count: int,
    anchor: datetime,
    tz: Optional[tzinfo] = None,
) -> List[Tuple[str, datetime, datetime]]:
    """
    ``(label, start, end)`` for ``bucket_count`` consecutive buckets, the last
    one containing ``anchor``. ``start``/``end`` are midnight in ``tz``.
    """
    bucket_size = BucketSize(bucket_size)
    if bucket_count < 1:
        raise ValueError("bucket_count must be >= 1")
    zone = tz or ensure_aware(anchor).tzinfo

    last = _start_date(_local_date(anchor, zone), bucket_size)
    bounds = []
    for offset in range(bucket_count - 1, -1, -1):
        start = _shift(last, bucket_size, -offset)
        end = _shift(start, bucket_size, 1)
        bounds.append((
            bucket_label(start, bucket_size),
            datetime.combine(start, time.min, tzinfo=zone),
            datetime.combine(end, time.min, tzinfo=zone),
        ))
    return bounds


def bucket(
    events: Iterable[Event],
    bucket_size: Union[BucketSize, str],
    bucket_count: int,
    anchor: datetime,
    tz: Optional[tzinfo] = None,
    mode: str = COUNT,
) -> List[TrendPoint]:
    """
    Group events into exactly ``bucket_count`` buckets ending at ``anchor``.

    Args:
        events: Timestamps, or ``(timestamp, value)`` pairs.
        bucket_size: day / week / month.
        bucket_count: Number of buckets to emit.
        anchor: A moment inside the last bucket.
        tz: Calendar timezone (defaults to the anchor's).
        mode: ``"count"`` counts events, ``"sum"`` adds their values.

    Returns:
        One TrendPoint per bucket, oldest first; empty buckets have value 0.
        Events outside the window are ignored.
    """
    if mode not in (COUNT, SUM):
        raise ValueError(f"unknown bucket mode {mode!r}")
    bucket_size = BucketSize(bucket_size)
    bounds = bucket_bounds(bucket_size, bucket_count, anchor, tz)
    zone = tz or ensure_aware(anchor).tzinfo
    index = {start.date(): i for i, (_, start, _) in enumerate(bounds)}
    totals = [0.0] * len(bounds)

    for event in events:
        if isinstance(event, datetime):
            ts, value = event, 1.0
        else:
            ts, value = event
        if ts is None:
            continue
        i = index.get(_start_date(_local_date(ts, zone), bucket_size))
        if i is None:
            continue
        totals[i] += 1.0 if mode == COUNT else float(value)

    return [
        TrendPoint(
            label=label,
            start=start,
            value=round_money(total) if mode == SUM else total,
        )
        for (label, start, _), total in zip(bounds, totals)
    ]
