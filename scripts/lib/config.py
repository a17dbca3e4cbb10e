"""
Analytics configuration for Funnel Hub.

Resolution order: DEFAULT_CONFIG -> configs/analytics.yaml (or
ANALYTICS_CONFIG_PATH) -> environment overrides. The merged dict is validated
into an ``AnalyticsConfig`` model; anything invalid raises ``ConfigError``.

Usage:
    from scripts.lib.config import load_analytics_config
    config = load_analytics_config()
    config.probability(Stage.PROPUESTA)  # 0.75
"""
import os
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional, Tuple, Union
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml
from dotenv import load_dotenv
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)

from models.analytics_models import Severity
from models.pipeline_models import (
    OPEN_STAGES,
    STAGE_ORDER,
    WON_STAGE,
    BucketSize,
    Stage,
)
from scripts.lib.errors import ConfigError
from scripts.lib.logger import setup_logger

logger = setup_logger("config")

PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent
load_dotenv(PROJECT_ROOT / ".env")

CONFIG_PATH = PROJECT_ROOT / "configs" / "analytics.yaml"

DEFAULT_CONFIG: Dict[str, Any] = {
    "reporting_timezone": "UTC",
    "goal_mrr_usd": 50_000,
    "stage_probabilities": {
        "PROSPECTO": 0.05,
        "CONTACTADO": 0.15,
        "DESCUBRIMIENTO": 0.30,
        "DEMOSTRACION": 0.50,
        "PROPUESTA": 0.75,
        "CERRADO_GANADO": 1.0,
        "CERRADO_PERDIDO": 0.0,
    },
    "closeable_stages": ["DEMOSTRACION", "PROPUESTA"],
    "fallback_win_rate": 30,
    "trend": {"bucket_size": "month", "bucket_count": 12},
    "conversion_pairs": [
        ["PROSPECTO", "CONTACTADO"],
        ["CONTACTADO", "DESCUBRIMIENTO"],
        ["DESCUBRIMIENTO", "DEMOSTRACION"],
        ["DEMOSTRACION", "PROPUESTA"],
        ["PROPUESTA", "CERRADO_GANADO"],
    ],
    "cache_ttl_seconds": 60,
    "max_insights": None,
    "insight_rules": [
        {
            "name": "high_win_rate",
            "severity": "success",
            "conditions": [{"metric": "win_rate", "op": "gte", "value": 50}],
            "title": "Strong win rate",
            "description": "{win_rate}% of closed deals were won this period.",
        },
        {
            "name": "low_win_rate",
            "severity": "warning",
            "conditions": [
                {"metric": "win_rate", "op": "lt", "value": 30},
                {"metric": "closed_count", "op": "gt", "value": 3},
            ],
            "title": "Win rate below 30%",
            "description": "Only {won_count} of {closed_count} closed deals were won. "
                           "Review qualification and proposal quality.",
        },
        {
            "name": "goal_reached",
            "group": "goal",
            "severity": "success",
            "conditions": [{"metric": "goal_pct", "op": "gte", "value": 100}],
            "title": "MRR goal reached",
            "description": "Current MRR ${current_mrr:,.2f} is {goal_pct}% of the "
                           "${goal:,.0f} goal.",
        },
        {
            "name": "goal_near",
            "group": "goal",
            "severity": "info",
            "conditions": [{"metric": "goal_pct", "op": "gte", "value": 80}],
            "title": "Close to the MRR goal",
            "description": "${goal_remaining:,.2f} of MRR left to reach the goal.",
        },
        {
            "name": "mrr_growth",
            "severity": "success",
            "conditions": [{"metric": "mrr_growth", "op": "gt", "value": 0}],
            "title": "MRR is growing",
            "description": "MRR grew {mrr_growth_pct}% versus the start of the period.",
        },
        {
            "name": "churn_detected",
            "severity": "warning",
            "conditions": [{"metric": "churned_mrr", "op": "gt", "value": 0}],
            "title": "Churned revenue",
            "description": "${churned_mrr:,.2f} of MRR churned this period.",
        },
        {
            "name": "best_channel",
            "severity": "success",
            "conditions": [{"metric": "best_channel_mrr", "op": "gt", "value": 0}],
            "title": "Top channel: {best_channel}",
            "description": "{best_channel} generates ${best_channel_mrr:,.2f} of MRR.",
        },
        {
            "name": "weak_conversion",
            "severity": "info",
            "conditions": [
                {"metric": "weakest_conversion_rate", "op": "lt", "value": 20},
                {"metric": "weakest_conversion_cohort", "op": "gt", "value": 0},
            ],
            "title": "Bottleneck at {weakest_conversion}",
            "description": "Only {weakest_conversion_rate}% of the cohort converted "
                           "from {weakest_conversion}.",
        },
    ],
}

ENV_OVERRIDES = {
    "GOAL_MRR_USD": "goal_mrr_usd",
    "REPORTING_TIMEZONE": "reporting_timezone",
    "ANALYTICS_CACHE_TTL": "cache_ttl_seconds",
}


# ─── Models ─────────────────────────────────────────────────

class InsightCondition(BaseModel):
    metric: str
    op: Literal["gt", "gte", "lt", "lte", "eq", "ne"]
    value: Union[float, str]


class InsightRule(BaseModel):
    name: str
    severity: Severity
    conditions: List[InsightCondition] = Field(default_factory=list)
    title: str
    description: str
    group: Optional[str] = None


class TrendConfig(BaseModel):
    bucket_size: BucketSize = BucketSize.MONTH
    bucket_count: int = Field(12, ge=1)


class AnalyticsConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    reporting_timezone: str = "UTC"
    goal_mrr_usd: float = Field(50_000, ge=0)
    stage_probabilities: Dict[Stage, float]
    closeable_stages: List[Stage]
    fallback_win_rate: float = Field(30, ge=0, le=100)
    trend: TrendConfig = Field(default_factory=TrendConfig)
    conversion_pairs: List[Tuple[Stage, Stage]]
    cache_ttl_seconds: float = Field(60, ge=0)
    insight_rules: List[InsightRule] = Field(default_factory=list)
    max_insights: Optional[int] = Field(None, ge=0)

    @field_validator("reporting_timezone")
    @classmethod
    def _known_zone(cls, v: str) -> str:
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ValueError(f"unknown timezone {v!r}") from e
        return v

    @field_validator("conversion_pairs")
    @classmethod
    def _distinct_pairs(cls, v: List[Tuple[Stage, Stage]]) -> List[Tuple[Stage, Stage]]:
        for from_stage, to_stage in v:
            if from_stage == to_stage:
                raise ValueError(f"conversion pair {from_stage.value} -> itself")
        return v

    @model_validator(mode="after")
    def _probabilities(self) -> "AnalyticsConfig":
        missing = [s.value for s in STAGE_ORDER if s not in self.stage_probabilities]
        if missing:
            raise ValueError(f"stage_probabilities missing {missing}")
        for stage, p in self.stage_probabilities.items():
            if not 0.0 <= p <= 1.0:
                raise ValueError(f"probability for {stage.value} outside [0, 1]")
        # Non-decreasing along the open stages up to the won stage.
        ordered = [self.stage_probabilities[s] for s in (*OPEN_STAGES, WON_STAGE)]
        for prev, cur in zip(ordered, ordered[1:]):
            if cur < prev:
                raise ValueError("stage_probabilities must be non-decreasing by stage order")
        return self

    @property
    def tz(self) -> ZoneInfo:
        return ZoneInfo(self.reporting_timezone)

    def probability(self, stage: Stage) -> float:
        return self.stage_probabilities[stage]


# ─── Loading ────────────────────────────────────────────────

def _merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _read_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        logger.info("No analytics config at %s, using defaults", path)
        return {}
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML: {e}", config_path=str(path)) from e
    if not isinstance(data, dict):
        raise ConfigError("Top level must be a mapping", config_path=str(path))
    logger.info("Loaded analytics config from %s", path)
    return data


def load_analytics_config(
    path: Optional[Union[str, Path]] = None,
    overrides: Optional[Dict[str, Any]] = None,
) -> AnalyticsConfig:
    """
    Build the analytics configuration.

    Args:
        path: YAML file to read (default: ANALYTICS_CONFIG_PATH or
            configs/analytics.yaml). A missing file means defaults.
        overrides: Extra keys applied last (tests, CLI).

    Raises:
        ConfigError: invalid YAML or values.
    """
    path = Path(path or os.environ.get("ANALYTICS_CONFIG_PATH") or CONFIG_PATH)
    merged = _merge(DEFAULT_CONFIG, _read_yaml(path))

    for env_name, key in ENV_OVERRIDES.items():
        raw = os.environ.get(env_name)
        if raw:
            merged[key] = raw
            logger.info("Config %s overridden from %s", key, env_name)

    if overrides:
        merged = _merge(merged, overrides)

    try:
        return AnalyticsConfig.model_validate(merged)
    except ValidationError as e:
        raise ConfigError(f"Invalid analytics config: {e}", config_path=str(path)) from e
