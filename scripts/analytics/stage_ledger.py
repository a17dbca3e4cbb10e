"""
Funnel Hub — Stage Ledger
============================

The state machine for Lead/Project progress and its append-only history.

Any move between stages is allowed (forward, backward, straight to a terminal
stage, or a re-open out of a terminal stage). The guards are:
  - both stages must be recognised values          -> InvalidStageError
  - the move must actually change stage            -> InvalidStageError
  - ``from_stage`` must be the entity's current one -> StaleTransitionError
  - the move cannot predate the current stage entry -> OutOfOrderTransitionError

The pure helpers below work on an entity plus its ordered history; the
``StageLedger`` class binds them to a repository, which performs the
"append history + update current stage" step as one compare-and-set.
"""
from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Iterable, Iterator, List, Optional, Sequence, Tuple

from models.pipeline_models import (
    STAGE_ORDER,
    TERMINAL_STAGES,
    PipelineEntity,
    Stage,
    StageHistoryRecord,
)
from scripts.lib.errors import (
    DataInconsistencyError,
    InvalidStageError,
    OutOfOrderTransitionError,
    StaleTransitionError,
)
from scripts.lib.logger import setup_logger
from scripts.lib.utils import ensure_aware, now_utc

logger = setup_logger("stage_ledger")

_STAGE_INDEX = {stage: i for i, stage in enumerate(STAGE_ORDER)}


# ---------------------------------------------------------------------------
# Stage helpers
# ---------------------------------------------------------------------------

def parse_stage(value: Any) -> Stage:
    """Coerce ``value`` into a Stage or raise InvalidStageError."""
    if isinstance(value, Stage):
        return value
    try:
        return Stage(str(value).strip().upper())
    except ValueError:
        raise InvalidStageError(value, "unrecognised stage") from None


def is_terminal(stage: Stage) -> bool:
    return parse_stage(stage) in TERMINAL_STAGES


def stage_index(stage: Stage) -> int:
    """Position in the display order (terminal stages last)."""
    return _STAGE_INDEX[parse_stage(stage)]


def is_further_along(a: Stage, b: Stage) -> bool:
    """True when ``a`` sits after ``b`` in the stage order."""
    return stage_index(a) > stage_index(b)


# ---------------------------------------------------------------------------
# Pure transition logic
# ---------------------------------------------------------------------------

def create(
    entity: PipelineEntity,
    at: Optional[datetime] = None,
    changed_by: Optional[str] = None,
) -> Tuple[PipelineEntity, StageHistoryRecord]:
    """Creation record for a new entity entering its first stage."""
    at = ensure_aware(at or entity.created_at)
    record = StageHistoryRecord(
        entity_id=entity.id,
        from_stage=None,
        to_stage=entity.stage,
        changed_at=at,
        changed_by=changed_by,
    )
    return entity.model_copy(update={"stage_entered_at": at}), record


def transition(
    entity: PipelineEntity,
    from_stage: Any,
    to_stage: Any,
    at: Optional[datetime] = None,
    changed_by: Optional[str] = None,
) -> Tuple[PipelineEntity, StageHistoryRecord]:
    """
    Validate a move and build its history record plus the updated entity.

    Nothing is persisted here; see ``StageLedger.transition``.
    """
    to_stage = parse_stage(to_stage)
    from_stage = parse_stage(from_stage)
    at = ensure_aware(at) if at else now_utc()

    if entity.stage != from_stage:
        raise StaleTransitionError(entity.id, from_stage.value, entity.stage.value)
    if to_stage == entity.stage:
        raise InvalidStageError(to_stage.value, "entity is already in this stage")
    if at < entity.stage_entered_at:
        raise OutOfOrderTransitionError(entity.id, at, entity.stage_entered_at)

    record = StageHistoryRecord(
        entity_id=entity.id,
        from_stage=from_stage,
        to_stage=to_stage,
        changed_at=at,
        changed_by=changed_by,
    )
    updated = entity.model_copy(update={"stage": to_stage, "stage_entered_at": at})
    return updated, record


def ordered(records: Iterable[StageHistoryRecord]) -> List[StageHistoryRecord]:
    """History sorted by ``changed_at``; ties keep their insertion order."""
    return sorted(records, key=lambda r: r.changed_at)


def check_history(
    entity: PipelineEntity, records: Sequence[StageHistoryRecord]
) -> List[StageHistoryRecord]:
    """
    Verify that ``entity.stage`` is reachable through its recorded history.

    Returns the ordered history. Nothing is repaired.

    Raises:
        DataInconsistencyError: empty history, a broken from/to chain, a
            last record that does not land on the current stage, or a
            ``stage_entered_at`` that differs from that record's timestamp.
    """
    history = ordered(r for r in records if r.entity_id == entity.id)
    if not history:
        raise DataInconsistencyError(entity.id, "no stage history")

    if history[0].from_stage is not None:
        raise DataInconsistencyError(entity.id, "history has no creation record")

    for prev, cur in zip(history, history[1:]):
        if cur.from_stage != prev.to_stage:
            raise DataInconsistencyError(
                entity.id,
                f"record at {cur.changed_at.isoformat()} leaves "
                f"{cur.from_stage.value if cur.from_stage else None} "
                f"but previous record entered {prev.to_stage.value}",
            )

    if history[-1].to_stage != entity.stage:
        raise DataInconsistencyError(
            entity.id,
            f"current stage {entity.stage.value} but history ends in "
            f"{history[-1].to_stage.value}",
        )
    if history[-1].changed_at != entity.stage_entered_at:
        raise DataInconsistencyError(
            entity.id,
            f"stage entered at {entity.stage_entered_at.isoformat()} but last "
            f"transition recorded at {history[-1].changed_at.isoformat()}",
        )
    return history


def visits(
    history: Sequence[StageHistoryRecord],
) -> Iterator[Tuple[Stage, datetime, Optional[datetime]]]:
    """Yield ``(stage, entered_at, left_at)``; ``left_at`` is None for the current stage."""
    for i, record in enumerate(history):
        left = history[i + 1].changed_at if i + 1 < len(history) else None
        yield record.to_stage, record.changed_at, left


def first_entry(
    history: Sequence[StageHistoryRecord], stage: Stage, after: Optional[datetime] = None
) -> Optional[datetime]:
    """Timestamp of the first entry into ``stage`` (at or after ``after``)."""
    for record in history:
        if record.to_stage != stage:
            continue
        if after is not None and record.changed_at < after:
            continue
        return record.changed_at
    return None


def duration_in_stage(
    history: Sequence[StageHistoryRecord], stage: Stage, now: datetime
) -> timedelta:
    """Total time spent in ``stage`` over every visit; an open visit runs to ``now``."""
    total = timedelta(0)
    for visited, entered, left in visits(history):
        if visited != stage:
            continue
        end = left if left is not None else now
        if end > entered:
            total += end - entered
    return total


# ---------------------------------------------------------------------------
# Repository-bound ledger
# ---------------------------------------------------------------------------

class StageLedger:
    """Records transitions through a repository and reads back history."""

    def __init__(self, repository, clock=now_utc):
        self.repository = repository
        self.clock = clock

    def create(
        self, entity: PipelineEntity, at: Optional[datetime] = None,
        changed_by: Optional[str] = None,
    ) -> PipelineEntity:
        parse_stage(entity.stage)
        entity, record = create(entity, at, changed_by)
        stored = self.repository.create_entity(entity, record)
        logger.info("Created %s in %s", entity.id, entity.stage.value)
        return stored

    def transition(
        self,
        entity_id: str,
        from_stage: Any,
        to_stage: Any,
        at: Optional[datetime] = None,
        changed_by: Optional[str] = None,
    ) -> StageHistoryRecord:
        """
        Move ``entity_id`` from ``from_stage`` to ``to_stage``.

        The repository re-checks ``from_stage`` atomically with the append, so
        two writers racing on the same precondition cannot both succeed.
        Failures are raised to the caller and never retried here.
        """
        to_stage = parse_stage(to_stage)
        from_stage = parse_stage(from_stage)
        entity = self.repository.get_entity(entity_id)

        try:
            _, record = transition(
                entity, from_stage, to_stage, at or self.clock(), changed_by,
            )
            stored = self.repository.append_transition(record, expected_stage=from_stage)
        except StaleTransitionError as e:
            logger.warning(
                "Stale transition on %s: expected %s, actual %s",
                entity_id, e.expected, e.actual,
            )
            raise

        logger.info(
            "Transition %s: %s -> %s at %s",
            entity_id, from_stage.value, to_stage.value, stored.changed_at.isoformat(),
        )
        return stored

    def history_for(self, entity_id: str) -> List[StageHistoryRecord]:
        """Full, ordered audit trail. Raises DataInconsistencyError if broken."""
        entity = self.repository.get_entity(entity_id)
        return check_history(entity, self.repository.get_history(entity_id))

    def time_in_stage(
        self, entity_id: str, stage: Any, now: Optional[datetime] = None
    ) -> timedelta:
        stage = parse_stage(stage)
        history = self.history_for(entity_id)
        return duration_in_stage(history, stage, ensure_aware(now) if now else self.clock())
