"""Data model for reconciliation: records, attributes, match state and candidates.

Records are immutable snapshots of a row as fetched. The engine only ever
changes two things about a record, its auxiliary attributes and its match
state, and it does so through ``RecordUpdate`` objects applied by the merger.
"""

from __future__ import annotations

import enum
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, date, datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

from pydantic import BaseModel, ConfigDict, field_validator

# ---------------------------------------------------------------------------
# Lenient field parsing
# ---------------------------------------------------------------------------


def _to_decimal_2(raw: Any) -> Decimal | None:
    if raw is None or isinstance(raw, bool):
        return None
    try:
        d = Decimal(str(raw).strip().replace(",", ""))
    except (InvalidOperation, ValueError):
        return None
    if not d.is_finite():
        return None
    return d.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def _to_date(raw: Any) -> date | None:
    if raw is None:
        return None
    if isinstance(raw, datetime):
        return raw.date()
    if isinstance(raw, date):
        return raw
    s = str(raw).strip()
    if not s:
        return None
    try:
        # Accept YYYY-MM-DD and full ISO timestamps.
        return date.fromisoformat(s[:10])
    except ValueError:
        return None


def _norm_str(v: Any) -> str | None:
    if v is None:
        return None
    s = str(v).strip()
    return s if s else None


# ---------------------------------------------------------------------------
# Auxiliary attributes
# ---------------------------------------------------------------------------


class RecordAttributes(BaseModel):
    """Source-specific side attributes: typed known keys plus residual extras.

    Unknown keys are kept verbatim (``extra="allow"``) so that merges never lose
    data written by other tools.
    """

    model_config = ConfigDict(extra="allow", frozen=True)

    settlement_date: date | None = None
    merchant_account_id: str | None = None
    payment_method: str | None = None
    payment_source: str | None = None
    currency: str | None = None
    exchange_rate: Decimal | None = None
    classification: str | None = None
    matched_target_ids: list[str] | None = None
    matched_external_id: str | None = None
    match_rationale: str | None = None
    needs_review: bool | None = None
    extracted_name: str | None = None
    canonical_name: str | None = None
    entity_code: str | None = None

    @field_validator("settlement_date", mode="before")
    @classmethod
    def _lenient_date(cls, v: Any) -> date | None:
        return _to_date(v)

    @field_validator("exchange_rate", mode="before")
    @classmethod
    def _lenient_rate(cls, v: Any) -> Decimal | None:
        if v is None:
            return None
        try:
            d = Decimal(str(v))
        except (InvalidOperation, ValueError):
            return None
        return d if d.is_finite() else None

    def as_bag(self) -> dict[str, Any]:
        """JSON-safe mapping: unset typed keys dropped, extra keys kept verbatim."""

        extras = self.model_extra or {}
        return {
            k: v
            for k, v in self.model_dump(mode="json").items()
            if v is not None or k in extras
        }

    def merged(self, updates: Mapping[str, Any]) -> RecordAttributes:
        """Shallow merge: ``updates`` win on same-named keys, others are kept."""

        bag = self.as_bag()
        bag.update(updates)
        return RecordAttributes.model_validate(bag)


# ---------------------------------------------------------------------------
# Records and match state
# ---------------------------------------------------------------------------


class Capability(enum.Enum):
    EMAIL = "email"
    NAME = "name"
    EXTERNAL_ID = "external_id"
    SUBSCRIPTION_ID = "subscription_id"
    FREE_TEXT = "free_text"


@dataclass(frozen=True, slots=True)
class MatchState:
    """Persisted outcome of reconciliation for one record."""

    target_id: str | None
    method: str
    confidence: float
    matched_at: datetime

    def __post_init__(self) -> None:
        if not 0.0 <= self.confidence <= 1.0:
            raise ValueError("confidence must be within [0, 1]")


@dataclass(frozen=True, slots=True)
class TransactionRecord:
    id: str
    source: str
    amount: Decimal | None = None
    date: date | None = None
    description: str = ""
    customer_name: str | None = None
    customer_email: str | None = None
    external_id: str | None = None
    subscription_id: str | None = None
    attributes: RecordAttributes = field(default_factory=RecordAttributes)
    match: MatchState | None = None

    @classmethod
    def from_mapping(cls, row: Mapping[str, Any]) -> TransactionRecord:
        """Build a record from a loosely typed row; bad amounts/dates become ``None``."""

        rid = _norm_str(row.get("id"))
        source = _norm_str(row.get("source"))
        if rid is None or source is None:
            raise ValueError("row requires non-empty 'id' and 'source'")
        attrs = row.get("attributes") or {}
        return cls(
            id=rid,
            source=source,
            amount=_to_decimal_2(row.get("amount")),
            date=_to_date(row.get("date")),
            description=_norm_str(row.get("description")) or "",
            customer_name=_norm_str(row.get("customer_name")),
            customer_email=_norm_str(row.get("customer_email")),
            external_id=_norm_str(row.get("external_id")),
            subscription_id=_norm_str(row.get("subscription_id")),
            attributes=RecordAttributes.model_validate(dict(attrs)),
        )

    @property
    def capabilities(self) -> frozenset[Capability]:
        caps: set[Capability] = set()
        if self.customer_email:
            caps.add(Capability.EMAIL)
        if self.customer_name:
            caps.add(Capability.NAME)
        if self.external_id:
            caps.add(Capability.EXTERNAL_ID)
        if self.subscription_id:
            caps.add(Capability.SUBSCRIPTION_ID)
        if self.description:
            caps.add(Capability.FREE_TEXT)
        return frozenset(caps)

    @property
    def effective_date(self) -> date | None:
        """Settlement date when the source reports one, else the event date."""

        return self.attributes.settlement_date or self.date

    @property
    def abs_amount(self) -> Decimal | None:
        return abs(self.amount) if self.amount is not None else None

    @property
    def classification(self) -> str | None:
        return self.attributes.classification

    @property
    def is_matched(self) -> bool:
        return self.match is not None


@dataclass(frozen=True, slots=True)
class MatchCandidate:
    """In-memory pairing produced by a strategy; only the winner is persisted."""

    source_id: str
    target_ids: tuple[str, ...]
    method: str
    confidence: float
    score: float = 0.0
    rationale: str = ""
    classification: str | None = None
    attributes: Mapping[str, Any] = field(default_factory=dict)

    @property
    def primary_target(self) -> str | None:
        return self.target_ids[0] if self.target_ids else None


@dataclass(frozen=True, slots=True)
class RecordUpdate:
    """Field-level update for one record; ``match=None`` leaves match state untouched."""

    record_id: str
    attributes: Mapping[str, Any]
    match: MatchState | None = None


def utcnow() -> datetime:
    return datetime.now(UTC)


__all__ = [
    "Capability",
    "MatchCandidate",
    "MatchState",
    "RecordAttributes",
    "RecordUpdate",
    "TransactionRecord",
    "utcnow",
]
