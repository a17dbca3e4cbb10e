"""
Utility functions for Funnel Hub.
Atomic file writes, retry logic, rounding rules and timestamp helpers.

Usage:
    from scripts.lib.utils import atomic_write_json, retry_on_exception, round_money
"""
import json
import os
import time
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from functools import wraps
from pathlib import Path
from typing import Any, Callable, Dict, Iterable

from scripts.lib.logger import setup_logger

logger = setup_logger(__name__)

SECONDS_PER_DAY = 86400.0

_CENT = Decimal("0.01")
_TENTH = Decimal("0.1")


# ---------------------------------------------------------------------------
# Rounding (the only place rounding rules are defined)
# ---------------------------------------------------------------------------

def round_money(value: Any) -> float:
    """Round a monetary amount half-up to 2 decimal places."""
    return float(Decimal(str(value)).quantize(_CENT, rounding=ROUND_HALF_UP))


def round_pct(value: Any) -> float:
    """Round a percentage or day average half-up to 1 decimal place."""
    return float(Decimal(str(value)).quantize(_TENTH, rounding=ROUND_HALF_UP))


def safe_div(numerator: float, denominator: float, default: float = 0.0) -> float:
    """Zero-safe division."""
    if denominator == 0:
        return default
    return numerator / denominator


def percentage(part: float, whole: float) -> float:
    """``part / whole * 100`` rounded once, 0 when ``whole`` is 0."""
    return round_pct(safe_div(part * 100.0, whole))


def mean(values: Iterable[float]) -> float:
    """Arithmetic mean, 0 for an empty input."""
    values = list(values)
    return safe_div(sum(values), len(values))


# ---------------------------------------------------------------------------
# Timestamps
# ---------------------------------------------------------------------------

def now_utc() -> datetime:
    """Current UTC time, timezone-aware."""
    return datetime.now(timezone.utc)


def ensure_aware(dt: datetime) -> datetime:
    """Treat naive datetimes as UTC."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def days_between(start: datetime, end: datetime) -> float:
    """Signed number of days from ``start`` to ``end``."""
    return (end - start).total_seconds() / SECONDS_PER_DAY


# ---------------------------------------------------------------------------
# Files and retries
# ---------------------------------------------------------------------------

def atomic_write_json(data: Dict, file_path: str | Path, indent: int = 2) -> bool:
    """
    Write JSON data to file atomically using temp file + rename.
    Prevents data corruption if the program crashes during write.

    Args:
        data: Dictionary to serialize as JSON.
        file_path: Target file path.
        indent: JSON indentation level.

    Returns:
        True if successful, False otherwise.
    """
    file_path = Path(file_path)
    temp_path = file_path.with_suffix(file_path.suffix + ".tmp")

    try:
        file_path.parent.mkdir(parents=True, exist_ok=True)

        with open(temp_path, "w", encoding="utf-8") as f:
            json.dump(data, f, ensure_ascii=False, indent=indent, default=str)

        os.replace(temp_path, file_path)
        logger.debug("Atomically wrote JSON to %s", file_path)
        return True

    except (OSError, TypeError, ValueError) as e:
        logger.error("Failed to write JSON to %s: %s", file_path, e)
        if temp_path.exists():
            try:
                temp_path.unlink()
            except OSError:
                logger.warning("Could not remove temp file %s", temp_path)
        return False


def retry_on_exception(
    max_attempts: int = 3,
    delay: float = 1.0,
    backoff: float = 2.0,
    exceptions: tuple = (Exception,),
):
    """
    Decorator that retries a function on specified exceptions.

    Only used at the storage boundary; validation errors are never retried.

    Args:
        max_attempts: Maximum number of attempts.
        delay: Initial delay between retries in seconds.
        backoff: Multiplier for delay after each retry.
        exceptions: Tuple of exception types to catch.
    """
    def decorator(func: Callable) -> Callable:
        @wraps(func)
        def wrapper(*args, **kwargs) -> Any:
            current_delay = delay
            for attempt in range(1, max_attempts + 1):
                try:
                    return func(*args, **kwargs)
                except exceptions as e:
                    if attempt == max_attempts:
                        logger.error(
                            "%s failed after %d attempts: %s",
                            func.__name__, max_attempts, e, exc_info=True,
                        )
                        raise
                    logger.warning(
                        "%s failed (attempt %d/%d): %s. Retrying in %.1fs...",
                        func.__name__, attempt, max_attempts, e, current_delay,
                    )
                    time.sleep(current_delay)
                    current_delay *= backoff
        return wrapper
    return decorator
