"""
Funnel Hub — Pipeline Analytics Runner
=========================================
Computes the AggregateResult for a period from the Supabase CRM tables,
writes it to data/processed/pipeline_analytics.json and stores a snapshot for
the dashboard.

With ``--by owner|channel|subchannel`` one result is computed per dimension
value, concurrently, over a single loaded snapshot.

Usage:
    python scripts/run_pipeline_analytics.py                          # current month
    python scripts/run_pipeline_analytics.py --start 2026-01-01 --end 2026-04-01
    python scripts/run_pipeline_analytics.py --channel WEBINAR --no-sync
    python scripts/run_pipeline_analytics.py --by owner
"""
from __future__ import annotations

import argparse
import asyncio
import sys
import time
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv

# ---------------------------------------------------------------------------
# Path setup
# ---------------------------------------------------------------------------
SCRIPT_DIR = Path(__file__).resolve().parent
PROJECT_ROOT = SCRIPT_DIR.parent
sys.path.insert(0, str(PROJECT_ROOT))

load_dotenv(PROJECT_ROOT / ".env")

from models.analytics_models import AggregateResult
from models.pipeline_models import Channel, Dimension, Filters, Period, Subchannel
from scripts.analytics.engine import AnalyticsEngine
from scripts.analytics.snapshot import PipelineSnapshot
from scripts.lib.config import AnalyticsConfig, load_analytics_config
from scripts.lib.errors import HubError
from scripts.lib.logger import setup_logger
from scripts.lib.repository import SupabaseRepository
from scripts.lib.supabase_client import upsert_snapshot
from scripts.lib.utils import atomic_write_json

logger = setup_logger("run_pipeline_analytics")

PROCESSED_DIR = PROJECT_ROOT / "data" / "processed"
DEFAULT_OUTPUT = PROCESSED_DIR / "pipeline_analytics.json"
SNAPSHOT_SOURCE = "pipeline_analytics"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _parse_moment(value: str, config: AnalyticsConfig) -> datetime:
    """ISO date or datetime; naive values are read in the reporting timezone."""
    moment = datetime.fromisoformat(value)
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=config.tz)
    return moment


def resolve_period(
    engine: AnalyticsEngine, start: Optional[str], end: Optional[str]
) -> Period:
    if not start and not end:
        return engine.current_month()
    if not start or not end:
        raise ValueError("--start and --end must be given together")
    return Period(
        start=_parse_moment(start, engine.config),
        end=_parse_moment(end, engine.config),
    )


def dimension_values(snapshot: PipelineSnapshot, dimension: Dimension) -> List[str]:
    values = {e.dimension(dimension) for e in snapshot.entities}
    return sorted(v for v in values if v)


async def compute_by_dimension(
    engine: AnalyticsEngine,
    period: Period,
    filters: Filters,
    dimension: Dimension,
) -> Dict[str, AggregateResult]:
    """One AggregateResult per dimension value, computed in worker threads."""
    snapshot = engine.load_snapshot(filters)
    goal = engine.mrr_goal()
    values = dimension_values(snapshot, dimension)
    logger.info("Computing %d %s breakdowns in parallel", len(values), dimension.value)

    tasks = [
        asyncio.to_thread(
            engine.aggregate,
            snapshot,
            period,
            Filters(**{**filters.model_dump(), dimension.value: value}),
            goal,
        )
        for value in values
    ]
    results = await asyncio.gather(*tasks)
    return dict(zip(values, results))


# ---------------------------------------------------------------------------
# Main entry
# ---------------------------------------------------------------------------

def run_pipeline_analytics(
    engine: AnalyticsEngine,
    period: Period,
    filters: Optional[Filters] = None,
    by: Optional[Dimension] = None,
    output_path: Path = DEFAULT_OUTPUT,
    sync: bool = True,
) -> Dict[str, Any]:
    """Compute, save and optionally sync the analytics output.

    Returns the JSON-ready output dictionary.
    """
    filters = filters or Filters()
    start = time.time()

    if by is None:
        result = engine.compute_analytics(period, filters)
        output = result.model_dump(mode="json")
    else:
        results = asyncio.run(compute_by_dimension(engine, period, filters, by))
        output = {
            "period": period.model_dump(mode="json"),
            "filters": filters.model_dump(mode="json"),
            "by": by.value,
            "results": {k: v.model_dump(mode="json") for k, v in results.items()},
        }

    if not atomic_write_json(output, output_path):
        raise OSError(f"Could not write {output_path}")
    logger.info("Analytics saved to %s in %.1fs", output_path, time.time() - start)

    if sync:
        source = SNAPSHOT_SOURCE if by is None else f"{SNAPSHOT_SOURCE}_by_{by.value}"
        if not upsert_snapshot(source, output):
            logger.warning("Snapshot sync failed (non-fatal)")

    return output


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Funnel Hub pipeline analytics")
    parser.add_argument("--start", help="Period start, ISO date (inclusive)")
    parser.add_argument("--end", help="Period end, ISO date (exclusive)")
    parser.add_argument("--owner", help="Filter by owner ID")
    parser.add_argument("--channel", choices=[c.value for c in Channel])
    parser.add_argument("--subchannel", choices=[s.value for s in Subchannel])
    parser.add_argument(
        "--by", choices=[d.value for d in Dimension],
        help="Compute one result per owner / channel / subchannel",
    )
    parser.add_argument("--output", type=Path, default=DEFAULT_OUTPUT, help="Output JSON path")
    parser.add_argument("--no-sync", action="store_true", help="Skip the Supabase snapshot")
    args = parser.parse_args(argv)

    logger.info("=" * 60)
    logger.info("  FUNNEL HUB — Pipeline Analytics")
    logger.info("=" * 60)

    try:
        config = load_analytics_config()
        engine = AnalyticsEngine(SupabaseRepository(), config)
        period = resolve_period(engine, args.start, args.end)
        filters = Filters(owner=args.owner, channel=args.channel, subchannel=args.subchannel)
        output = run_pipeline_analytics(
            engine,
            period,
            filters,
            by=Dimension(args.by) if args.by else None,
            output_path=args.output,
            sync=not args.no_sync,
        )
    except (HubError, ValueError, OSError) as e:
        logger.critical("Pipeline analytics failed: %s", e, exc_info=True)
        return 1

    if args.by:
        logger.info("Computed %d %s results", len(output["results"]), args.by)
    else:
        revenue = output["revenue"]
        logger.info(
            "MRR $%.2f | win rate %.1f%% | %d insights",
            revenue["current_mrr"], revenue["win_rate"], len(output["insights"]),
        )
    return 0


if __name__ == "__main__":
    sys.exit(main())
