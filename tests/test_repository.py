"""
Tests for the repository implementations: in-memory store, Supabase tables
(mocked client) and the TTL cache decorator.
"""

import threading
from datetime import date
from unittest.mock import MagicMock, patch

import pytest

from models.pipeline_models import Deal, Filters, Stage, StageHistoryRecord
from scripts.analytics.stage_ledger import check_history
from scripts.lib.errors import (
    DataFetchError,
    EntityNotFoundError,
    SchemaValidationError,
    StaleTransitionError,
)
from scripts.lib.repository import CachedRepository, InMemoryRepository, SupabaseRepository
from scripts.lib.supabase_client import fetch_all
from conftest import utc

LEAD_ROW = {
    "id": "L1",
    "company_name": "Acme",
    "stage": "CONTACTADO",
    "stage_entered_at": "2026-03-02T12:00:00+00:00",
    "owner_id": "ana",
    "channel": "WEBINAR",
    "subchannel": "NINGUNO",
    "created_at": "2026-03-01T12:00:00+00:00",
}

DEAL_ROW = {
    "id": "D1",
    "lead_id": "L1",
    "currency": "COP",
    "mrr_original": 4_200_000,
    "implementation_fee_original": 0,
    "exchange_rate": 4200,
    "status": "ACTIVE",
    "start_date": "2026-03-01",
}


def mock_client(*pages):
    """Supabase client whose query builder returns ``pages`` from execute()."""
    query = MagicMock()
    for method in ("select", "eq", "in_", "order", "range", "limit", "insert", "upsert"):
        getattr(query, method).return_value = query
    query.execute.side_effect = [MagicMock(data=page) for page in pages]
    client = MagicMock()
    client.table.return_value = query
    return client, query


class TestInMemoryRepository:
    def test_deals_filtered_by_owning_entity(self, scenario_repository):
        deals = scenario_repository.fetch_deals(Filters(owner="luis"))
        assert [d.id for d in deals] == ["DD"]

    def test_duplicate_entity(self, scenario_repository, make_lead):
        entity, records = make_lead("A", [(Stage.PROSPECTO, utc(2026, 3, 1))])
        with pytest.raises(SchemaValidationError):
            scenario_repository.create_entity(entity, records[0])

    def test_append_transition_checks_expected_stage(self, scenario_repository):
        record = StageHistoryRecord(
            entity_id="C", from_stage=Stage.PROSPECTO, to_stage=Stage.DEMOSTRACION,
            changed_at=utc(2026, 3, 10),
        )
        with pytest.raises(StaleTransitionError):
            scenario_repository.append_transition(record, expected_stage=Stage.PROSPECTO)

    def test_save_deal_assigns_id(self):
        repository = InMemoryRepository()
        deal = repository.save_deal(Deal.create(entity_id="L1", start_date=date(2026, 3, 1)))
        assert deal.id

    def test_reads_wait_for_a_transition_in_progress(self, scenario_repository):
        repository = scenario_repository
        appended, release = threading.Event(), threading.Event()
        append = repository._append

        def slow_append(record):
            stored = append(record)
            appended.set()
            release.wait(timeout=5)
            return stored

        record = StageHistoryRecord(
            entity_id="C", from_stage=Stage.CONTACTADO, to_stage=Stage.PROPUESTA,
            changed_at=utc(2026, 3, 15),
        )
        seen = {}

        def read():
            seen["entity"] = repository.get_entity("C")
            seen["history"] = repository.fetch_history(["C"])

        with patch.object(repository, "_append", side_effect=slow_append):
            writer = threading.Thread(
                target=repository.append_transition, args=(record, Stage.CONTACTADO),
            )
            writer.start()
            assert appended.wait(timeout=5)
            reader = threading.Thread(target=read)
            reader.start()
            reader.join(timeout=0.2)
            assert reader.is_alive()
            release.set()
            writer.join(timeout=5)
            reader.join(timeout=5)

        assert seen["entity"].stage == Stage.PROPUESTA
        assert check_history(seen["entity"], seen["history"])[-1].to_stage == Stage.PROPUESTA


class TestFetchAll:
    def test_pages_until_short_page(self):
        client, query = mock_client([{"id": 1}, {"id": 2}], [{"id": 3}])
        rows = fetch_all("leads", client=client, page_size=2)

        assert [r["id"] for r in rows] == [1, 2, 3]
        query.range.assert_any_call(0, 1)
        query.range.assert_any_call(2, 3)

    def test_wraps_client_errors(self):
        client, query = mock_client()
        query.execute.side_effect = RuntimeError("boom")
        with pytest.raises(DataFetchError) as exc:
            fetch_all("deals", client=client)
        assert exc.value.details["source"] == "deals"


class TestSupabaseRepository:
    def test_fetch_entities_applies_filters(self):
        client, query = mock_client([LEAD_ROW])
        repository = SupabaseRepository(client)

        entities = repository.fetch_entities(Filters(owner="ana"))

        assert entities[0].id == "L1"
        assert entities[0].stage == Stage.CONTACTADO
        query.eq.assert_any_call("owner_id", "ana")

    def test_malformed_row(self):
        client, _ = mock_client([{**LEAD_ROW, "stage": "NEGOCIACION"}])
        with pytest.raises(SchemaValidationError):
            SupabaseRepository(client).fetch_entities()

    def test_fetch_deals_normalises(self):
        client, _ = mock_client([DEAL_ROW])
        deals = SupabaseRepository(client).fetch_deals()
        assert deals[0].mrr_usd == 1000.0

    def test_deal_row_without_rate_is_malformed(self):
        client, _ = mock_client([{**DEAL_ROW, "exchange_rate": None}])
        with pytest.raises(SchemaValidationError):
            SupabaseRepository(client).fetch_deals()

    def test_get_entity_not_found(self):
        client, _ = mock_client([])
        with pytest.raises(EntityNotFoundError):
            SupabaseRepository(client).get_entity("L404")

    def test_fetch_mrr_goal(self):
        client, _ = mock_client([{"value_usd": "65000"}])
        assert SupabaseRepository(client).fetch_mrr_goal() == 65000.0

    def test_create_entity_is_one_rpc(self, make_lead):
        client, query = mock_client()
        entity, records = make_lead("L2", [(Stage.PROSPECTO, utc(2026, 3, 9))])

        SupabaseRepository(client).create_entity(entity, records[0])

        name, params = client.rpc.call_args[0]
        assert name == "create_lead"
        assert params["p_stage"] == "PROSPECTO"
        assert params["p_stage_entered_at"] == utc(2026, 3, 9).isoformat()
        query.insert.assert_not_called()

    def test_create_entity_failure_is_reported(self, make_lead):
        client, query = mock_client()
        client.rpc.return_value.execute.side_effect = RuntimeError("history insert failed")
        entity, records = make_lead("L2", [(Stage.PROSPECTO, utc(2026, 3, 9))])

        with pytest.raises(DataFetchError):
            SupabaseRepository(client).create_entity(entity, records[0])
        query.insert.assert_not_called()

    def test_append_transition_through_rpc(self):
        client, _ = mock_client()
        client.rpc.return_value.execute.return_value = MagicMock(data=[{
            "id": 10, "lead_id": "L1", "from_stage": "CONTACTADO",
            "to_stage": "PROPUESTA", "changed_at": "2026-03-05T12:00:00+00:00",
        }])
        record = StageHistoryRecord(
            entity_id="L1", from_stage=Stage.CONTACTADO, to_stage=Stage.PROPUESTA,
            changed_at=utc(2026, 3, 5),
        )

        stored = SupabaseRepository(client).append_transition(record, Stage.CONTACTADO)

        assert stored.id == 10
        name, params = client.rpc.call_args[0]
        assert name == "record_stage_transition"
        assert params["p_expected_stage"] == "CONTACTADO"
        assert params["p_to_stage"] == "PROPUESTA"

    def test_empty_rpc_result_is_stale(self):
        client, _ = mock_client([LEAD_ROW])
        client.rpc.return_value.execute.return_value = MagicMock(data=[])
        record = StageHistoryRecord(
            entity_id="L1", from_stage=Stage.PROSPECTO, to_stage=Stage.PROPUESTA,
            changed_at=utc(2026, 3, 5),
        )
        with pytest.raises(StaleTransitionError):
            SupabaseRepository(client).append_transition(record, Stage.PROSPECTO)

    def test_reads_are_retried(self):
        client, query = mock_client()
        query.execute.side_effect = [RuntimeError("timeout"), MagicMock(data=[LEAD_ROW])]
        with patch("scripts.lib.utils.time.sleep"):
            entities = SupabaseRepository(client).fetch_entities()
        assert len(entities) == 1

    def test_gives_up_after_three_attempts(self):
        client, query = mock_client()
        query.execute.side_effect = RuntimeError("down")
        with patch("scripts.lib.utils.time.sleep"):
            with pytest.raises(DataFetchError):
                SupabaseRepository(client).fetch_entities()
        assert query.execute.call_count == 3


class TestCachedRepository:
    @pytest.fixture
    def clock(self):
        return MagicMock(return_value=100.0)

    def test_reads_are_cached_until_ttl(self, clock):
        inner = MagicMock()
        inner.fetch_entities.return_value = []
        repository = CachedRepository(inner, ttl_seconds=60, clock=clock)

        repository.fetch_entities()
        repository.fetch_entities(Filters())
        assert inner.fetch_entities.call_count == 1

        clock.return_value = 161.0
        repository.fetch_entities()
        assert inner.fetch_entities.call_count == 2

    def test_filters_are_part_of_the_key(self, clock):
        inner = MagicMock()
        repository = CachedRepository(inner, ttl_seconds=60, clock=clock)
        repository.fetch_deals(Filters(owner="ana"))
        repository.fetch_deals(Filters(owner="luis"))
        assert inner.fetch_deals.call_count == 2

    def test_writes_invalidate(self, clock):
        inner = MagicMock()
        repository = CachedRepository(inner, ttl_seconds=60, clock=clock)
        repository.fetch_mrr_goal()
        repository.append_transition(MagicMock(), Stage.PROSPECTO)
        repository.fetch_mrr_goal()
        assert inner.fetch_mrr_goal.call_count == 2

    def test_zero_ttl_disables_cache(self, clock):
        inner = MagicMock()
        repository = CachedRepository(inner, ttl_seconds=0, clock=clock)
        repository.fetch_history(["L1"])
        repository.fetch_history(["L1"])
        assert inner.fetch_history.call_count == 2

    def test_get_entity_is_never_cached(self, clock):
        inner = MagicMock()
        repository = CachedRepository(inner, ttl_seconds=60, clock=clock)
        repository.get_entity("L1")
        repository.get_entity("L1")
        assert inner.get_entity.call_count == 2

    def test_get_history_is_never_cached(self, clock):
        inner = MagicMock()
        repository = CachedRepository(inner, ttl_seconds=60, clock=clock)
        repository.get_history("L1")
        repository.get_history("L1")
        assert inner.get_history.call_count == 2
