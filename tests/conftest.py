"""Shared fixtures: a fixed clock, default config and a small March 2026 pipeline."""

import os

os.environ.setdefault("LOG_TO_FILE", "false")

from datetime import date, datetime, timezone

import pytest

from models.pipeline_models import (
    Channel,
    Deal,
    DealStatus,
    PipelineEntity,
    Period,
    Stage,
    StageHistoryRecord,
    Subchannel,
)
from scripts.lib.config import DEFAULT_CONFIG, AnalyticsConfig
from scripts.lib.repository import InMemoryRepository


def utc(year, month, day, hour=12):
    return datetime(year, month, day, hour, tzinfo=timezone.utc)


@pytest.fixture
def config():
    return AnalyticsConfig.model_validate(DEFAULT_CONFIG)


@pytest.fixture
def march():
    return Period(start=utc(2026, 3, 1, 0), end=utc(2026, 4, 1, 0))


@pytest.fixture
def now():
    return utc(2026, 3, 20)


@pytest.fixture
def make_lead():
    """Build an entity and a consistent history from ``[(stage, at), ...]``."""

    def _make(entity_id, path, owner="ana", channel=Channel.WEBINAR,
              subchannel=Subchannel.NINGUNO):
        records = []
        previous = None
        for stage, at in path:
            records.append(StageHistoryRecord(
                entity_id=entity_id, from_stage=previous, to_stage=stage, changed_at=at,
            ))
            previous = stage
        entity = PipelineEntity(
            id=entity_id,
            stage=path[-1][0],
            stage_entered_at=path[-1][1],
            owner=owner,
            channel=channel,
            subchannel=subchannel,
            created_at=path[0][1],
        )
        return entity, records

    return _make


@pytest.fixture
def scenario_leads(make_lead):
    """
    Three leads enter CONTACTADO in March; A and B later reach PROPUESTA.
    D entered CONTACTADO in February and reaches PROPUESTA in March.
    """
    return [
        make_lead("A", [
            (Stage.PROSPECTO, utc(2026, 3, 1)),
            (Stage.CONTACTADO, utc(2026, 3, 2)),
            (Stage.DESCUBRIMIENTO, utc(2026, 3, 5)),
            (Stage.PROPUESTA, utc(2026, 3, 10)),
        ]),
        make_lead("B", [
            (Stage.PROSPECTO, utc(2026, 3, 1)),
            (Stage.CONTACTADO, utc(2026, 3, 3)),
            (Stage.PROPUESTA, utc(2026, 4, 5)),
        ], owner="luis", channel=Channel.PARTNER),
        make_lead("C", [
            (Stage.PROSPECTO, utc(2026, 3, 1)),
            (Stage.CONTACTADO, utc(2026, 3, 4)),
        ]),
        make_lead("D", [
            (Stage.PROSPECTO, utc(2026, 2, 1)),
            (Stage.CONTACTADO, utc(2026, 2, 2)),
            (Stage.PROPUESTA, utc(2026, 3, 6)),
        ], owner="luis", channel=Channel.PARTNER),
    ]


@pytest.fixture
def scenario_repository(scenario_leads):
    entities = [entity for entity, _ in scenario_leads]
    history = [r for _, records in scenario_leads for r in records]
    deals = [
        Deal.create(id="DA", entity_id="A", mrr_original=1000, start_date=date(2026, 3, 10)),
        Deal.create(
            id="DD", entity_id="D", currency="COP", mrr_original=2_100_000,
            exchange_rate=4200, start_date=date(2026, 2, 15),
        ),
        Deal.create(
            id="DX", entity_id="C", mrr_original=300, status=DealStatus.CHURNED,
            start_date=date(2026, 1, 5), status_changed_at=utc(2026, 3, 12),
        ),
    ]
    return InMemoryRepository(entities, history, deals)
