"""
Supabase Client Helper for Funnel Hub.
Provides the shared connection, paginated table reads and analytics snapshots.

Usage:
    from scripts.lib.supabase_client import get_client, fetch_all, upsert_snapshot

    client = get_client()
    rows = fetch_all("leads", filters={"owner_id": "ana"})
    upsert_snapshot("pipeline_analytics", data)
"""
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv

from scripts.lib.errors import DataFetchError
from scripts.lib.logger import setup_logger

logger = setup_logger(__name__)

# Load .env from project root
PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent
load_dotenv(PROJECT_ROOT / ".env")

PAGE_SIZE = 1000
SNAPSHOT_TABLE = "dashboard_snapshots"

_client = None


def get_client():
    """Create and return a Supabase client (singleton)."""
    global _client
    if _client is not None:
        return _client

    url = os.environ.get("SUPABASE_URL", "")
    key = (
        os.environ.get("SUPABASE_SERVICE_ROLE_KEY", "")
        or os.environ.get("SUPABASE_KEY", "")
    )
    if not url or not key:
        raise RuntimeError(
            "SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY must be set in .env"
        )

    from supabase import create_client
    _client = create_client(url, key)
    logger.info("Supabase client connected to %s", url)
    return _client


def fetch_all(
    table: str,
    select: str = "*",
    filters: Dict[str, Any] = None,
    in_filter: Optional[tuple] = None,
    order_by: str = None,
    client=None,
    page_size: int = PAGE_SIZE,
) -> List[Dict]:
    """
    Read every matching row of a table, one page at a time.

    Args:
        table: Table name.
        select: Columns to select (default "*").
        filters: Dict of column=value equality filters.
        in_filter: Optional ``(column, values)`` membership filter.
        order_by: Column to order by (ascending).
        client: Supabase client (defaults to the shared one).
        page_size: Rows per request.

    Returns:
        List of row dicts.

    Raises:
        DataFetchError: the request failed.
    """
    client = client or get_client()
    rows: List[Dict] = []
    offset = 0

    while True:
        try:
            query = client.table(table).select(select)
            for col, val in (filters or {}).items():
                query = query.eq(col, val)
            if in_filter is not None:
                query = query.in_(in_filter[0], list(in_filter[1]))
            if order_by:
                query = query.order(order_by)
            result = query.range(offset, offset + page_size - 1).execute()
        except Exception as e:
            raise DataFetchError(f"Supabase read failed on {table}: {e}", source=table) from e

        page = result.data or []
        rows.extend(page)
        if len(page) < page_size:
            break
        offset += page_size

    logger.debug("Fetched %d rows from %s", len(rows), table)
    return rows


def upsert_snapshot(source: str, data: Dict) -> bool:
    """
    Insert a new analytics snapshot for a given source.

    Args:
        source: Source identifier (e.g. "pipeline_analytics").
        data: Full computed metrics dict.

    Returns:
        True on success, False on failure.
    """
    try:
        client = get_client()
        row = {
            "source": source,
            "data": data,
            "generated_at": datetime.now(timezone.utc).isoformat(),
        }
        client.table(SNAPSHOT_TABLE).insert(row).execute()
        logger.info("Snapshot inserted for source: %s", source)
        return True
    except Exception as e:
        logger.error("Supabase snapshot insert failed for %s: %s", source, e)
        return False


def get_latest_snapshot(source: str) -> Optional[Dict]:
    """
    Fetch the latest snapshot for a source.

    Returns:
        The data dict from the latest snapshot, or None.
    """
    try:
        client = get_client()
        result = (
            client.table(SNAPSHOT_TABLE)
            .select("data, generated_at")
            .eq("source", source)
            .order("generated_at", desc=True)
            .limit(1)
            .execute()
        )
        if result.data:
            return result.data[0].get("data")
        return None
    except Exception as e:
        logger.error("Supabase fetch failed for %s: %s", source, e)
        return None
