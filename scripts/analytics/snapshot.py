"""
Funnel Hub — Pipeline Snapshot
=================================

The immutable input every aggregator works on: entities, their verified
stage history, and deals. Entities whose history is inconsistent are dropped
(with a warning) when the snapshot is built, so one bad record never stops
the rest of the dashboard from rendering.
"""
from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Tuple

from models.pipeline_models import (
    Deal,
    DealStatus,
    Filters,
    PipelineEntity,
    StageHistoryRecord,
)
from scripts.analytics.stage_ledger import check_history
from scripts.lib.errors import DataInconsistencyError
from scripts.lib.logger import setup_logger

logger = setup_logger("snapshot")


@dataclass(frozen=True)
class PipelineSnapshot:
    """Consistent view of the pipeline at one moment."""
    entities: Tuple[PipelineEntity, ...] = ()
    history: Dict[str, Tuple[StageHistoryRecord, ...]] = field(default_factory=dict)
    deals: Tuple[Deal, ...] = ()
    excluded: Tuple[str, ...] = ()

    @classmethod
    def build(
        cls,
        entities: Iterable[PipelineEntity],
        records: Iterable[StageHistoryRecord],
        deals: Iterable[Deal],
    ) -> "PipelineSnapshot":
        by_entity: Dict[str, List[StageHistoryRecord]] = defaultdict(list)
        for record in records:
            by_entity[record.entity_id].append(record)

        kept: List[PipelineEntity] = []
        history: Dict[str, Tuple[StageHistoryRecord, ...]] = {}
        excluded: List[str] = []
        for entity in entities:
            try:
                history[entity.id] = tuple(check_history(entity, by_entity.get(entity.id, ())))
            except DataInconsistencyError as e:
                logger.warning("Excluding %s from analytics: %s", e.entity_id, e.message)
                excluded.append(entity.id)
                continue
            kept.append(entity)

        kept_ids = set(history)
        known_ids = kept_ids | set(excluded)
        # Deals of excluded entities go too; deals with no loaded owner are kept.
        kept_deals = tuple(
            d for d in deals if d.entity_id in kept_ids or d.entity_id not in known_ids
        )
        return cls(tuple(kept), history, kept_deals, tuple(excluded))

    def filtered(self, filters: Optional[Filters]) -> "PipelineSnapshot":
        if filters is None or filters.is_empty():
            return self
        entities = tuple(e for e in self.entities if filters.matches(e))
        ids = {e.id for e in entities}
        return PipelineSnapshot(
            entities=entities,
            history={k: v for k, v in self.history.items() if k in ids},
            deals=tuple(d for d in self.deals if d.entity_id in ids),
            excluded=self.excluded,
        )

    def history_of(self, entity_id: str) -> Tuple[StageHistoryRecord, ...]:
        return self.history.get(entity_id, ())

    def entity_value(self, entity_id: str) -> float:
        """Deal value estimate: MRR of the entity's non-churned deals."""
        return sum(
            d.mrr_usd for d in self.deals
            if d.entity_id == entity_id and d.status != DealStatus.CHURNED
        )

    @property
    def entity_map(self) -> Dict[str, PipelineEntity]:
        return {e.id: e for e in self.entities}
