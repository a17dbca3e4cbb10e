"""
Funnel Hub — Insight Generator
=================================

Turns aggregate numbers into success / warning / info signals. Rules are data
(``insight_rules`` in configs/analytics.yaml): every condition must hold, the
title and description are ``str.format`` templates over the flattened metric
view, and within a ``group`` only the first matching rule fires.

Rules referring to metrics the current result does not have are skipped.
"""
from __future__ import annotations

import operator
from typing import Any, Dict, List, Optional

from models.analytics_models import AggregateResult, Insight
from scripts.lib.config import AnalyticsConfig, InsightCondition, InsightRule
from scripts.lib.logger import setup_logger
from scripts.lib.utils import round_money

logger = setup_logger("insights")

_OPS = {
    "gt": operator.gt,
    "gte": operator.ge,
    "lt": operator.lt,
    "lte": operator.le,
    "eq": operator.eq,
    "ne": operator.ne,
}


def metric_view(result: AggregateResult) -> Dict[str, Any]:
    """Flatten an AggregateResult into the names rule conditions refer to."""
    revenue = result.revenue
    funnel = result.funnel
    metrics: Dict[str, Any] = {
        "win_rate": revenue.win_rate,
        "won_count": revenue.won_count,
        "lost_count": revenue.lost_count,
        "closed_count": revenue.won_count + revenue.lost_count,
        "current_mrr": revenue.current_mrr,
        "previous_mrr": revenue.previous_mrr,
        "mrr_growth": revenue.mrr_growth,
        "mrr_growth_pct": revenue.mrr_growth_pct,
        "arr": revenue.arr,
        "goal": revenue.goal.goal,
        "goal_pct": revenue.goal.ratio,
        "goal_remaining": round_money(max(0.0, revenue.goal.goal - revenue.goal.current)),
        "churned_mrr": revenue.churned_mrr,
        "fees_period": revenue.fees_period,
        "avg_mrr": revenue.avg_mrr,
        "active_deals": revenue.active_deals,
        "avg_deal_cycle_days": funnel.velocity.avg_deal_cycle_days,
        "pipeline_value": funnel.forecast.pipeline_value,
        "weighted_pipeline": funnel.forecast.weighted_pipeline,
        "expected_closes_30d": funnel.forecast.expected_closes_30d,
        "expected_mrr_30d": funnel.forecast.expected_mrr_30d,
        "excluded_entities": len(result.excluded_entities),
    }

    channels = [row for row in result.breakdowns.get("channel", []) if row.mrr > 0]
    if channels:
        best = max(channels, key=lambda row: row.mrr)
        metrics["best_channel"] = best.value
        metrics["best_channel_mrr"] = best.mrr

    measured = [c for c in funnel.conversions if c.cohort_size > 0]
    if measured:
        weakest = min(measured, key=lambda c: c.rate)
        metrics["weakest_conversion"] = f"{weakest.from_stage.value} → {weakest.to_stage.value}"
        metrics["weakest_conversion_rate"] = weakest.rate
        metrics["weakest_conversion_cohort"] = weakest.cohort_size

    return metrics


def _holds(condition: InsightCondition, metrics: Dict[str, Any]) -> Optional[bool]:
    """True / False, or None when the metric is unavailable or not comparable."""
    actual = metrics.get(condition.metric)
    if actual is None:
        return None
    expected = condition.value
    if isinstance(actual, (int, float)) and not isinstance(expected, (int, float)):
        try:
            expected = float(expected)
        except ValueError:
            return None
    try:
        return bool(_OPS[condition.op](actual, expected))
    except TypeError:
        return None


class InsightGenerator:
    """Evaluates the configured rule list. No side effects, no I/O."""

    def __init__(self, config: AnalyticsConfig, rules: Optional[List[InsightRule]] = None):
        self.rules = list(rules if rules is not None else config.insight_rules)
        self.max_insights = config.max_insights

    def evaluate(self, result: AggregateResult) -> List[Insight]:
        metrics = metric_view(result)
        insights: List[Insight] = []
        fired_groups = set()

        for rule in self.rules:
            if self.max_insights is not None and len(insights) >= self.max_insights:
                break
            if rule.group and rule.group in fired_groups:
                continue
            outcomes = [_holds(c, metrics) for c in rule.conditions]
            if any(o is None for o in outcomes):
                logger.debug("Insight rule %s skipped: metric unavailable", rule.name)
                continue
            if not all(outcomes):
                continue
            try:
                title = rule.title.format(**metrics)
                description = rule.description.format(**metrics)
            except (KeyError, IndexError, ValueError) as e:
                logger.warning("Insight rule %s has a bad template: %s", rule.name, e)
                continue

            insights.append(Insight(
                severity=rule.severity, title=title, description=description, rule=rule.name,
            ))
            if rule.group:
                fired_groups.add(rule.group)

        return insights
