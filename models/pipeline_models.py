"""
Funnel Hub — Pipeline Domain Models
======================================

Closed enumerations (stage, channel, currency, deal status) and the immutable
records the analytics core works on: pipeline entities, stage history, deals,
periods and filter sets.

Unknown enum values are rejected when a record is built, never defaulted.
"""
from __future__ import annotations

from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


# ─── Enumerations ───────────────────────────────────────────

class Stage(str, Enum):
    PROSPECTO = "PROSPECTO"
    CONTACTADO = "CONTACTADO"
    DESCUBRIMIENTO = "DESCUBRIMIENTO"
    DEMOSTRACION = "DEMOSTRACION"
    PROPUESTA = "PROPUESTA"
    CERRADO_GANADO = "CERRADO_GANADO"
    CERRADO_PERDIDO = "CERRADO_PERDIDO"


# Display / "further along" order; terminal stages last.
STAGE_ORDER: tuple[Stage, ...] = tuple(Stage)
TERMINAL_STAGES: frozenset[Stage] = frozenset({Stage.CERRADO_GANADO, Stage.CERRADO_PERDIDO})
OPEN_STAGES: tuple[Stage, ...] = tuple(s for s in STAGE_ORDER if s not in TERMINAL_STAGES)
WON_STAGE = Stage.CERRADO_GANADO
LOST_STAGE = Stage.CERRADO_PERDIDO


class Channel(str, Enum):
    OUTBOUND_APOLLO = "OUTBOUND_APOLLO"
    OUTBOUND_LINKEDIN = "OUTBOUND_LINKEDIN"
    OUTBOUND_EMAIL = "OUTBOUND_EMAIL"
    WARM_INTRO = "WARM_INTRO"
    INBOUND_REDES = "INBOUND_REDES"
    INBOUND_WEB = "INBOUND_WEB"
    WEBINAR = "WEBINAR"
    PARTNER = "PARTNER"
    OTRO = "OTRO"


class Subchannel(str, Enum):
    NINGUNO = "NINGUNO"
    INSTAGRAM = "INSTAGRAM"
    TIKTOK = "TIKTOK"
    LINKEDIN = "LINKEDIN"
    YOUTUBE = "YOUTUBE"
    TWITTER = "TWITTER"
    FACEBOOK = "FACEBOOK"
    AI_ACADEMY = "AI_ACADEMY"
    WORKSHOP = "WORKSHOP"
    CONFERENCIA = "CONFERENCIA"
    SEO = "SEO"
    BLOG = "BLOG"
    LANDING_PAGE = "LANDING_PAGE"
    OTRO = "OTRO"


class LossReason(str, Enum):
    PRECIO = "PRECIO"
    TIMING = "TIMING"
    COMPETENCIA = "COMPETENCIA"
    SIN_PRESUPUESTO = "SIN_PRESUPUESTO"
    NO_RESPONDE = "NO_RESPONDE"
    NO_NECESIDAD = "NO_NECESIDAD"
    OTRO = "OTRO"


class Currency(str, Enum):
    USD = "USD"
    COP = "COP"
    MXN = "MXN"
    EUR = "EUR"


class DealStatus(str, Enum):
    ACTIVE = "ACTIVE"
    ON_HOLD = "ON_HOLD"
    CHURNED = "CHURNED"


class BucketSize(str, Enum):
    DAY = "day"
    WEEK = "week"
    MONTH = "month"


class Dimension(str, Enum):
    OWNER = "owner"
    CHANNEL = "channel"
    SUBCHANNEL = "subchannel"


def _aware(value: Any) -> Any:
    if isinstance(value, datetime) and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# ─── Period & Filters ───────────────────────────────────────

class Period(BaseModel):
    """Half-open interval ``[start, end)`` scoping every aggregation."""
    model_config = ConfigDict(frozen=True)

    start: datetime
    end: datetime

    @field_validator("start", "end", mode="after")
    @classmethod
    def _tz(cls, v: datetime) -> datetime:
        return _aware(v)

    @model_validator(mode="after")
    def _ordered(self) -> "Period":
        if self.end <= self.start:
            raise ValueError("period end must be after start")
        return self

    def contains(self, ts: Optional[datetime]) -> bool:
        if ts is None:
            return False
        return self.start <= _aware(ts) < self.end

    @classmethod
    def month_of(cls, anchor: datetime) -> "Period":
        """Calendar month containing ``anchor`` (in the anchor's timezone)."""
        start = anchor.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
        if start.month == 12:
            end = start.replace(year=start.year + 1, month=1)
        else:
            end = start.replace(month=start.month + 1)
        return cls(start=start, end=end)


class Filters(BaseModel):
    """Categorical filter set; ``None`` means "any"."""
    model_config = ConfigDict(frozen=True)

    owner: Optional[str] = None
    channel: Optional[Channel] = None
    subchannel: Optional[Subchannel] = None

    def matches(self, entity: "PipelineEntity") -> bool:
        if self.owner is not None and entity.owner != self.owner:
            return False
        if self.channel is not None and entity.channel != self.channel:
            return False
        if self.subchannel is not None and entity.subchannel != self.subchannel:
            return False
        return True

    def is_empty(self) -> bool:
        return self.owner is None and self.channel is None and self.subchannel is None

    def cache_key(self) -> tuple:
        return (
            self.owner,
            self.channel.value if self.channel else None,
            self.subchannel.value if self.subchannel else None,
        )


# ─── Entities & History ─────────────────────────────────────

class PipelineEntity(BaseModel):
    """A Lead or Project moving through the sales stages.

    ``stage`` and ``stage_entered_at`` only change through a recorded
    transition (see ``scripts.analytics.stage_ledger``).
    """
    model_config = ConfigDict(frozen=True)

    id: str
    name: Optional[str] = None
    stage: Stage
    stage_entered_at: datetime
    owner: Optional[str] = None
    channel: Channel = Channel.OTRO
    subchannel: Subchannel = Subchannel.NINGUNO
    created_at: datetime
    loss_reason: Optional[LossReason] = None

    @field_validator("stage_entered_at", "created_at", mode="after")
    @classmethod
    def _tz(cls, v: datetime) -> datetime:
        return _aware(v)

    @property
    def is_open(self) -> bool:
        return self.stage not in TERMINAL_STAGES

    def dimension(self, dimension: Dimension) -> Optional[str]:
        if dimension == Dimension.OWNER:
            return self.owner
        if dimension == Dimension.CHANNEL:
            return self.channel.value
        return self.subchannel.value

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "PipelineEntity":
        """Build from a ``leads`` table row."""
        return cls(
            id=str(row["id"]),
            name=row.get("company_name"),
            stage=row["stage"],
            stage_entered_at=row.get("stage_entered_at") or row["created_at"],
            owner=row.get("owner_id"),
            channel=row.get("channel") or Channel.OTRO,
            subchannel=row.get("subchannel") or Subchannel.NINGUNO,
            created_at=row["created_at"],
            loss_reason=row.get("loss_reason"),
        )


class StageHistoryRecord(BaseModel):
    """One append-only stage transition. ``from_stage`` is None on creation."""
    model_config = ConfigDict(frozen=True)

    entity_id: str
    from_stage: Optional[Stage] = None
    to_stage: Stage
    changed_at: datetime
    changed_by: Optional[str] = None
    id: Optional[int] = None

    @field_validator("changed_at", mode="after")
    @classmethod
    def _tz(cls, v: datetime) -> datetime:
        return _aware(v)

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "StageHistoryRecord":
        """Build from a ``lead_stage_history`` table row."""
        return cls(
            id=row.get("id"),
            entity_id=str(row["lead_id"]),
            from_stage=row.get("from_stage"),
            to_stage=row["to_stage"],
            changed_at=row["changed_at"],
            changed_by=row.get("changed_by"),
        )

    def to_row(self) -> Dict[str, Any]:
        return {
            "lead_id": self.entity_id,
            "from_stage": self.from_stage.value if self.from_stage else None,
            "to_stage": self.to_stage.value,
            "changed_at": self.changed_at.isoformat(),
            "changed_by": self.changed_by,
        }


# ─── Deals ──────────────────────────────────────────────────

class Deal(BaseModel):
    """Contract attached to a won Lead/Project.

    ``mrr_usd`` and ``fee_usd`` are always re-derived from the original amounts
    and exchange rate; values passed in for them are ignored.
    """
    model_config = ConfigDict(frozen=True)

    id: Optional[str] = None
    entity_id: str
    currency: Currency = Currency.USD
    mrr_original: float = Field(0.0, ge=0)
    fee_original: float = Field(0.0, ge=0)
    exchange_rate: Optional[float] = None
    mrr_usd: float = 0.0
    fee_usd: float = 0.0
    status: DealStatus = DealStatus.ACTIVE
    start_date: date
    status_changed_at: Optional[datetime] = None
    notes: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def _derive_usd(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        from scripts.analytics.currency import normalize

        data = dict(data)
        try:
            currency = Currency(data.get("currency") or Currency.USD)
            mrr = float(data.get("mrr_original") or 0)
            fee = float(data.get("fee_original") or 0)
        except (TypeError, ValueError):
            # Leave it to field validation to report the bad value.
            return data
        rate = data.get("exchange_rate")
        if currency == Currency.USD:
            data["exchange_rate"] = None
        data["mrr_usd"] = normalize(mrr, currency, rate)
        data["fee_usd"] = normalize(fee, currency, rate)
        return data

    @field_validator("status_changed_at", mode="after")
    @classmethod
    def _tz(cls, v: Optional[datetime]) -> Optional[datetime]:
        return _aware(v)

    @classmethod
    def create(cls, **fields: Any) -> "Deal":
        return cls(**fields)

    def revise(self, **changes: Any) -> "Deal":
        """Return an updated copy with USD fields re-derived."""
        data = self.model_dump()
        data.update(changes)
        return Deal(**data)

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Deal":
        """Build from a ``deals`` table row."""
        return cls(
            id=str(row["id"]) if row.get("id") is not None else None,
            entity_id=str(row.get("lead_id") or row["project_id"]),
            currency=row.get("currency") or Currency.USD,
            mrr_original=row.get("mrr_original") or 0,
            fee_original=row.get("implementation_fee_original") or 0,
            exchange_rate=row.get("exchange_rate"),
            status=row.get("status") or DealStatus.ACTIVE,
            start_date=row["start_date"],
            status_changed_at=row.get("status_changed_at") or row.get("updated_at"),
            notes=row.get("notes"),
        )

    def to_row(self) -> Dict[str, Any]:
        row = {
            "lead_id": self.entity_id,
            "currency": self.currency.value,
            "mrr_original": self.mrr_original,
            "implementation_fee_original": self.fee_original,
            "exchange_rate": self.exchange_rate,
            "mrr_usd": self.mrr_usd,
            "implementation_fee_usd": self.fee_usd,
            "status": self.status.value,
            "start_date": self.start_date.isoformat(),
            "notes": self.notes,
        }
        if self.id is not None:
            row["id"] = self.id
        if self.status_changed_at is not None:
            row["status_changed_at"] = self.status_changed_at.isoformat()
        return row


# ─── Request Models ─────────────────────────────────────────

class TransitionRequest(BaseModel):
    """Move a lead to another stage. Stages are validated by the ledger."""
    from_stage: str
    to_stage: str
    at: Optional[datetime] = None
    changed_by: Optional[str] = None


class EntityCreate(BaseModel):
    """Register a new lead in its first stage."""
    id: str
    name: Optional[str] = None
    stage: Stage = Stage.PROSPECTO
    owner: Optional[str] = None
    channel: Channel = Channel.OTRO
    subchannel: Subchannel = Subchannel.NINGUNO
    created_at: Optional[datetime] = None
    changed_by: Optional[str] = None


class DealUpsert(BaseModel):
    """Create or update a deal. USD amounts are derived server-side."""
    id: Optional[str] = None
    entity_id: str
    currency: Currency = Currency.USD
    mrr_original: float = Field(0.0, ge=0)
    fee_original: float = Field(0.0, ge=0)
    exchange_rate: Optional[float] = None
    status: DealStatus = DealStatus.ACTIVE
    start_date: date
    status_changed_at: Optional[datetime] = None
    notes: Optional[str] = None
