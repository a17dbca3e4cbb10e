"""
Storage boundary for the analytics core.

``PipelineRepository`` is the narrow contract the engine depends on: three
snapshot reads, the MRR goal lookup, and the few writes the ledger and deal
upserts need. Implementations:

  - InMemoryRepository  - snapshot held in process; per-entity locks
  - SupabaseRepository  - leads / lead_stage_history / deals / goals tables
  - CachedRepository    - TTL decorator over any of the above

Usage:
    from scripts.lib.repository import SupabaseRepository, CachedRepository
    repo = CachedRepository(SupabaseRepository(), ttl_seconds=60)
"""
import itertools
import threading
import time
import uuid
from typing import Any, Callable, Dict, Iterable, List, Optional, Protocol

from pydantic import ValidationError as PydanticValidationError

from models.pipeline_models import Deal, Filters, PipelineEntity, Stage, StageHistoryRecord
from scripts.lib.errors import (
    DataFetchError,
    EntityNotFoundError,
    MissingExchangeRateError,
    OutOfOrderTransitionError,
    SchemaValidationError,
    StaleTransitionError,
)
from scripts.lib.logger import setup_logger
from scripts.lib.utils import retry_on_exception

logger = setup_logger("repository")

MRR_GOAL_TYPE = "MRR_GLOBAL_USD"
ID_CHUNK_SIZE = 200


class PipelineRepository(Protocol):
    def fetch_entities(self, filters: Optional[Filters] = None) -> List[PipelineEntity]: ...

    def get_entity(self, entity_id: str) -> PipelineEntity: ...

    def get_history(self, entity_id: str) -> List[StageHistoryRecord]: ...

    def fetch_history(self, entity_ids: Iterable[str]) -> List[StageHistoryRecord]: ...

    def fetch_deals(self, filters: Optional[Filters] = None) -> List[Deal]: ...

    def fetch_mrr_goal(self) -> Optional[float]: ...

    def create_entity(
        self, entity: PipelineEntity, record: StageHistoryRecord
    ) -> PipelineEntity: ...

    def append_transition(
        self, record: StageHistoryRecord, expected_stage: Stage
    ) -> StageHistoryRecord: ...

    def save_deal(self, deal: Deal) -> Deal: ...


def _parse_rows(model, rows: Iterable[Dict[str, Any]], table: str) -> list:
    parsed = []
    for row in rows:
        try:
            parsed.append(model.from_row(row))
        except (PydanticValidationError, KeyError, MissingExchangeRateError) as e:
            raise SchemaValidationError(
                f"Malformed {table} row {row.get('id')!r}: {e}", field=table,
            ) from e
    return parsed


# ---------------------------------------------------------------------------
# In-memory
# ---------------------------------------------------------------------------

class InMemoryRepository:
    """Process-local snapshot. Transitions on one entity are serialized by
    that entity's lock; different entities never contend. The entity map and
    history are only changed together under ``_guard``, and reads take the
    same guard, so a reader never sees a new record with the old stage."""

    def __init__(
        self,
        entities: Iterable[PipelineEntity] = (),
        history: Iterable[StageHistoryRecord] = (),
        deals: Iterable[Deal] = (),
        mrr_goal: Optional[float] = None,
    ):
        self._entities: Dict[str, PipelineEntity] = {e.id: e for e in entities}
        self._history: Dict[str, List[StageHistoryRecord]] = {}
        self._deals: Dict[str, Deal] = {}
        self._mrr_goal = mrr_goal
        self._ids = itertools.count(1)
        self._locks: Dict[str, threading.Lock] = {}
        self._guard = threading.RLock()

        for record in history:
            self._append(record)
        for deal in deals:
            self.save_deal(deal)

    def _lock_for(self, entity_id: str) -> threading.Lock:
        with self._guard:
            return self._locks.setdefault(entity_id, threading.Lock())

    def _append(self, record: StageHistoryRecord) -> StageHistoryRecord:
        if record.id is None:
            record = record.model_copy(update={"id": next(self._ids)})
        self._history.setdefault(record.entity_id, []).append(record)
        return record

    def fetch_entities(self, filters: Optional[Filters] = None) -> List[PipelineEntity]:
        filters = filters or Filters()
        with self._guard:
            return [e for e in self._entities.values() if filters.matches(e)]

    def get_entity(self, entity_id: str) -> PipelineEntity:
        with self._guard:
            entity = self._entities.get(entity_id)
        if entity is None:
            raise EntityNotFoundError(entity_id)
        return entity

    def get_history(self, entity_id: str) -> List[StageHistoryRecord]:
        return self.fetch_history([entity_id])

    def fetch_history(self, entity_ids: Iterable[str]) -> List[StageHistoryRecord]:
        records: List[StageHistoryRecord] = []
        with self._guard:
            for entity_id in entity_ids:
                records.extend(self._history.get(entity_id, ()))
        return sorted(records, key=lambda r: r.changed_at)

    def fetch_deals(self, filters: Optional[Filters] = None) -> List[Deal]:
        filters = filters or Filters()
        with self._guard:
            deals = list(self._deals.values())
            entities = dict(self._entities)
        if filters.is_empty():
            return deals
        return [
            d for d in deals
            if d.entity_id in entities and filters.matches(entities[d.entity_id])
        ]

    def fetch_mrr_goal(self) -> Optional[float]:
        return self._mrr_goal

    def create_entity(
        self, entity: PipelineEntity, record: StageHistoryRecord
    ) -> PipelineEntity:
        with self._lock_for(entity.id):
            with self._guard:
                if entity.id in self._entities:
                    raise SchemaValidationError(f"Entity {entity.id} already exists", field="id")
                self._entities[entity.id] = entity
                self._append(record)
        return entity

    def append_transition(
        self, record: StageHistoryRecord, expected_stage: Stage
    ) -> StageHistoryRecord:
        with self._lock_for(record.entity_id):
            entity = self.get_entity(record.entity_id)
            if entity.stage != expected_stage:
                raise StaleTransitionError(
                    entity.id, Stage(expected_stage).value, entity.stage.value,
                )
            if record.changed_at < entity.stage_entered_at:
                raise OutOfOrderTransitionError(
                    entity.id, record.changed_at, entity.stage_entered_at,
                )
            with self._guard:
                stored = self._append(record)
                self._entities[entity.id] = entity.model_copy(
                    update={"stage": record.to_stage, "stage_entered_at": record.changed_at}
                )
        return stored

    def save_deal(self, deal: Deal) -> Deal:
        if deal.id is None:
            deal = deal.model_copy(update={"id": str(uuid.uuid4())})
        with self._guard:
            self._deals[deal.id] = deal
        return deal


# ---------------------------------------------------------------------------
# Supabase
# ---------------------------------------------------------------------------

class SupabaseRepository:
    """Reads and writes the CRM tables through the Supabase client.

    The transition write goes through the ``record_stage_transition``
    Postgres function, which inserts the history row and updates the lead
    only when the lead is still in the expected stage. An empty result means
    the precondition failed. ``create_lead`` inserts a lead together with its
    creation record, so neither row exists without the other.
    """

    def __init__(self, client=None):
        self._client = client

    @property
    def client(self):
        if self._client is None:
            from scripts.lib.supabase_client import get_client
            self._client = get_client()
        return self._client

    def _fetch(self, table: str, **kwargs) -> List[Dict[str, Any]]:
        from scripts.lib.supabase_client import fetch_all
        return fetch_all(table, client=self.client, **kwargs)

    @retry_on_exception(max_attempts=3, delay=0.5, exceptions=(DataFetchError,))
    def fetch_entities(self, filters: Optional[Filters] = None) -> List[PipelineEntity]:
        filters = filters or Filters()
        eq: Dict[str, Any] = {}
        if filters.owner is not None:
            eq["owner_id"] = filters.owner
        if filters.channel is not None:
            eq["channel"] = filters.channel.value
        if filters.subchannel is not None:
            eq["subchannel"] = filters.subchannel.value
        rows = self._fetch("leads", filters=eq, order_by="created_at")
        return _parse_rows(PipelineEntity, rows, "leads")

    def get_entity(self, entity_id: str) -> PipelineEntity:
        try:
            result = (
                self.client.table("leads").select("*").eq("id", entity_id).limit(1).execute()
            )
        except Exception as e:
            raise DataFetchError(f"Lead lookup failed: {e}", source="leads") from e
        if not result.data:
            raise EntityNotFoundError(entity_id)
        return _parse_rows(PipelineEntity, result.data, "leads")[0]

    def get_history(self, entity_id: str) -> List[StageHistoryRecord]:
        return self.fetch_history([entity_id])

    @retry_on_exception(max_attempts=3, delay=0.5, exceptions=(DataFetchError,))
    def fetch_history(self, entity_ids: Iterable[str]) -> List[StageHistoryRecord]:
        ids = list(dict.fromkeys(entity_ids))
        rows: List[Dict[str, Any]] = []
        for i in range(0, len(ids), ID_CHUNK_SIZE):
            rows.extend(self._fetch(
                "lead_stage_history",
                in_filter=("lead_id", ids[i:i + ID_CHUNK_SIZE]),
                order_by="changed_at",
            ))
        records = _parse_rows(StageHistoryRecord, rows, "lead_stage_history")
        return sorted(records, key=lambda r: r.changed_at)

    @retry_on_exception(max_attempts=3, delay=0.5, exceptions=(DataFetchError,))
    def fetch_deals(self, filters: Optional[Filters] = None) -> List[Deal]:
        filters = filters or Filters()
        deals = _parse_rows(Deal, self._fetch("deals", order_by="start_date"), "deals")
        if filters.is_empty():
            return deals
        allowed = {e.id for e in self.fetch_entities(filters)}
        return [d for d in deals if d.entity_id in allowed]

    def fetch_mrr_goal(self) -> Optional[float]:
        try:
            result = (
                self.client.table("goals")
                .select("value_usd")
                .eq("goal_type", MRR_GOAL_TYPE)
                .eq("period", "GLOBAL")
                .order("effective_from", desc=True)
                .limit(1)
                .execute()
            )
        except Exception as e:
            raise DataFetchError(f"Goal lookup failed: {e}", source="goals") from e
        if result.data and result.data[0].get("value_usd") is not None:
            return float(result.data[0]["value_usd"])
        return None

    def create_entity(
        self, entity: PipelineEntity, record: StageHistoryRecord
    ) -> PipelineEntity:
        """Insert the lead and its creation record in one ``create_lead`` call."""
        params = {
            "p_id": entity.id,
            "p_company_name": entity.name,
            "p_stage": entity.stage.value,
            "p_stage_entered_at": entity.stage_entered_at.isoformat(),
            "p_owner_id": entity.owner,
            "p_channel": entity.channel.value,
            "p_subchannel": entity.subchannel.value,
            "p_created_at": entity.created_at.isoformat(),
            "p_changed_by": record.changed_by,
        }
        try:
            self.client.rpc("create_lead", params).execute()
        except Exception as e:
            raise DataFetchError(f"Lead insert failed: {e}", source="leads") from e
        return entity

    def append_transition(
        self, record: StageHistoryRecord, expected_stage: Stage
    ) -> StageHistoryRecord:
        params = {
            "p_lead_id": record.entity_id,
            "p_expected_stage": Stage(expected_stage).value,
            "p_to_stage": record.to_stage.value,
            "p_changed_at": record.changed_at.isoformat(),
            "p_changed_by": record.changed_by,
        }
        try:
            result = self.client.rpc("record_stage_transition", params).execute()
        except Exception as e:
            raise DataFetchError(f"Transition RPC failed: {e}", source="lead_stage_history") from e

        if result.data:
            row = result.data[0] if isinstance(result.data, list) else result.data
            return StageHistoryRecord.from_row(row)

        current = self.get_entity(record.entity_id)
        if current.stage != expected_stage:
            raise StaleTransitionError(
                current.id, Stage(expected_stage).value, current.stage.value,
            )
        raise OutOfOrderTransitionError(current.id, record.changed_at, current.stage_entered_at)

    def save_deal(self, deal: Deal) -> Deal:
        try:
            result = self.client.table("deals").upsert(deal.to_row()).execute()
        except Exception as e:
            raise DataFetchError(f"Deal upsert failed: {e}", source="deals") from e
        if result.data:
            return _parse_rows(Deal, result.data[:1], "deals")[0]
        return deal


# ---------------------------------------------------------------------------
# TTL cache decorator
# ---------------------------------------------------------------------------

class CachedRepository:
    """Caches the snapshot reads of another repository for ``ttl_seconds``.

    Writes pass through and drop the whole cache. ``get_entity`` and
    ``get_history`` are never cached: the ledger checks one against the other,
    and both must reflect writes made outside this process.
    """

    def __init__(
        self,
        inner: PipelineRepository,
        ttl_seconds: float = 60,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.inner = inner
        self._cache_ttl = ttl_seconds
        self._clock = clock
        self._cache: Dict[tuple, tuple] = {}
        self._lock = threading.Lock()

    def _cached(self, key: tuple, load: Callable[[], Any]) -> Any:
        if self._cache_ttl <= 0:
            return load()
        now = self._clock()
        with self._lock:
            hit = self._cache.get(key)
        if hit and hit[0] > now:
            logger.debug("Cache hit: %s", key[0])
            return hit[1]
        logger.debug("Cache miss: %s", key[0])
        value = load()
        with self._lock:
            self._cache[key] = (now + self._cache_ttl, value)
        return value

    def invalidate(self) -> None:
        with self._lock:
            self._cache.clear()

    def fetch_entities(self, filters: Optional[Filters] = None) -> List[PipelineEntity]:
        filters = filters or Filters()
        return self._cached(
            ("entities", filters.cache_key()), lambda: self.inner.fetch_entities(filters),
        )

    def get_entity(self, entity_id: str) -> PipelineEntity:
        return self.inner.get_entity(entity_id)

    def get_history(self, entity_id: str) -> List[StageHistoryRecord]:
        return self.inner.get_history(entity_id)

    def fetch_history(self, entity_ids: Iterable[str]) -> List[StageHistoryRecord]:
        ids = tuple(sorted(set(entity_ids)))
        return self._cached(("history", ids), lambda: self.inner.fetch_history(ids))

    def fetch_deals(self, filters: Optional[Filters] = None) -> List[Deal]:
        filters = filters or Filters()
        return self._cached(
            ("deals", filters.cache_key()), lambda: self.inner.fetch_deals(filters),
        )

    def fetch_mrr_goal(self) -> Optional[float]:
        return self._cached(("goal",), self.inner.fetch_mrr_goal)

    def create_entity(
        self, entity: PipelineEntity, record: StageHistoryRecord
    ) -> PipelineEntity:
        try:
            return self.inner.create_entity(entity, record)
        finally:
            self.invalidate()

    def append_transition(
        self, record: StageHistoryRecord, expected_stage: Stage
    ) -> StageHistoryRecord:
        stored = self.inner.append_transition(record, expected_stage)
        self.invalidate()
        return stored

    def save_deal(self, deal: Deal) -> Deal:
        stored = self.inner.save_deal(deal)
        self.invalidate()
        return stored
