# ruff: noqa: I001
"""Storage interface for reconciliation and its two implementations.

The engine needs exactly three operations from a backing store:

- ``fetch(source, date_range)``: every record of one source tag, delivered by
  repeated paged reads so collections of any size are tolerated;
- ``get(record_id)``: the current state of one record (read side of a merge);
- ``update(record_id, *, attributes, match)``: replace the attribute bag with
  the already-merged one and, when ``match`` is given, set the match state.

``InMemoryStore`` backs tests and previews; ``SqlTransactionStore`` persists to
``lr_transactions`` through the shared ``db`` library.
"""

from __future__ import annotations

from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass, replace
from datetime import date, timedelta
from decimal import Decimal
from typing import Any, Protocol

from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError

from db import Base, LrTransaction
from db.client import get_engine, session_scope

from .logging_setup import get_logger
from .models import MatchState, RecordAttributes, TransactionRecord

_logger = get_logger("ledger_recon.store")

DEFAULT_PAGE_SIZE = 1000


class FetchError(RuntimeError):
    """A source collection could not be read."""

    def __init__(self, source: str, message: str) -> None:
        super().__init__(f"fetch failed for source {source!r}: {message}")
        self.source = source


class RecordNotFoundError(KeyError):
    """An update addressed a record id the store does not hold."""


@dataclass(frozen=True, slots=True)
class DateRange:
    """Inclusive calendar range; either bound may be open."""

    start: date | None = None
    end: date | None = None

    def __post_init__(self) -> None:
        if self.start is not None and self.end is not None and self.start > self.end:
            raise ValueError("date range start must not be after its end")

    def contains(self, day: date | None) -> bool:
        if day is None:
            return self.start is None and self.end is None
        if self.start is not None and day < self.start:
            return False
        if self.end is not None and day > self.end:
            return False
        return True

    def expanded(self, days: int) -> DateRange:
        return DateRange(
            start=self.start - timedelta(days=days) if self.start else None,
            end=self.end + timedelta(days=days) if self.end else None,
        )


class TransactionStore(Protocol):
    def fetch(self, source: str, date_range: DateRange | None = None) -> list[TransactionRecord]: ...

    def get(self, record_id: str) -> TransactionRecord | None: ...

    def update(
        self,
        record_id: str,
        *,
        attributes: Mapping[str, Any],
        match: MatchState | None = None,
    ) -> None: ...


def _in_range(record: TransactionRecord, date_range: DateRange | None) -> bool:
    return date_range is None or date_range.contains(record.date)


class InMemoryStore:
    """Dict-backed store with the same paging and merge semantics as the SQL store."""

    def __init__(
        self, records: Iterable[TransactionRecord] = (), *, page_size: int = DEFAULT_PAGE_SIZE
    ) -> None:
        if page_size < 1:
            raise ValueError("page_size must be >= 1")
        self.page_size = page_size
        self._records: dict[str, TransactionRecord] = {}
        self.pages_read = 0
        self.updates_applied = 0
        for rec in records:
            self.add(rec)

    def add(self, record: TransactionRecord) -> None:
        if record.id in self._records:
            raise ValueError(f"duplicate record id {record.id!r}")
        self._records[record.id] = record

    def all(self) -> list[TransactionRecord]:
        return list(self._records.values())

    def _page(self, source: str, date_range: DateRange | None, offset: int) -> list[TransactionRecord]:
        rows = sorted(
            (r for r in self._records.values() if r.source == source and _in_range(r, date_range)),
            key=lambda r: (r.date or date.max, r.id),
        )
        self.pages_read += 1
        return rows[offset : offset + self.page_size]

    def fetch(self, source: str, date_range: DateRange | None = None) -> list[TransactionRecord]:
        out: list[TransactionRecord] = []
        while True:
            page = self._page(source, date_range, len(out))
            out.extend(page)
            if len(page) < self.page_size:
                return out

    def get(self, record_id: str) -> TransactionRecord | None:
        return self._records.get(record_id)

    def update(
        self,
        record_id: str,
        *,
        attributes: Mapping[str, Any],
        match: MatchState | None = None,
    ) -> None:
        current = self._records.get(record_id)
        if current is None:
            raise RecordNotFoundError(record_id)
        self._records[record_id] = replace(
            current,
            attributes=RecordAttributes.model_validate(dict(attributes)),
            match=match if match is not None else current.match,
        )
        self.updates_applied += 1


# ---------------------------------------------------------------------------
# SQLAlchemy-backed store
# ---------------------------------------------------------------------------


def _row_to_record(row: LrTransaction) -> TransactionRecord:
    match: MatchState | None = None
    if row.match_method is not None and row.matched_at is not None:
        match = MatchState(
            target_id=row.match_target_id,
            method=row.match_method,
            confidence=float(row.match_confidence or 0),
            matched_at=row.matched_at,
        )
    return TransactionRecord(
        id=row.id,
        source=row.source,
        amount=row.amount,
        date=row.date,
        description=row.description or "",
        customer_name=row.customer_name,
        customer_email=row.customer_email,
        external_id=row.external_id,
        subscription_id=row.subscription_id,
        attributes=RecordAttributes.model_validate(dict(row.attributes or {})),
        match=match,
    )


def _record_to_row(record: TransactionRecord) -> LrTransaction:
    row = LrTransaction(
        id=record.id,
        source=record.source,
        amount=record.amount,
        currency_code=(record.attributes.currency or None),
        date=record.date,
        description=record.description or None,
        customer_name=record.customer_name,
        customer_email=record.customer_email,
        external_id=record.external_id,
        subscription_id=record.subscription_id,
        attributes=record.attributes.as_bag(),
    )
    if record.match is not None:
        row.match_target_id = record.match.target_id
        row.match_method = record.match.method
        row.match_confidence = Decimal(str(record.match.confidence))
        row.matched_at = record.match.matched_at
    return row


class SqlTransactionStore:
    """Store over ``lr_transactions``; each call runs in its own session scope."""

    def __init__(self, database_url: str | None = None, *, page_size: int = DEFAULT_PAGE_SIZE) -> None:
        if page_size < 1:
            raise ValueError("page_size must be >= 1")
        self.database_url = database_url
        self.page_size = page_size

    def init_schema(self) -> None:
        """Create missing tables directly from the ORM metadata (dev and tests)."""

        Base.metadata.create_all(bind=get_engine(database_url=self.database_url))

    def add_records(self, records: Iterable[TransactionRecord]) -> int:
        n = 0
        with session_scope(database_url=self.database_url) as session:
            for rec in records:
                session.add(_record_to_row(rec))
                n += 1
        return n

    def _pages(self, source: str, date_range: DateRange | None) -> Iterator[list[TransactionRecord]]:
        stmt = select(LrTransaction).where(LrTransaction.source == source)
        if date_range is not None:
            if date_range.start is not None:
                stmt = stmt.where(LrTransaction.date >= date_range.start)
            if date_range.end is not None:
                stmt = stmt.where(LrTransaction.date <= date_range.end)
        stmt = stmt.order_by(LrTransaction.date, LrTransaction.id)
        offset = 0
        while True:
            with session_scope(database_url=self.database_url) as session:
                rows = session.scalars(stmt.offset(offset).limit(self.page_size)).all()
                page = [_row_to_record(r) for r in rows]
            yield page
            if len(page) < self.page_size:
                return
            offset += len(page)

    def fetch(self, source: str, date_range: DateRange | None = None) -> list[TransactionRecord]:
        out: list[TransactionRecord] = []
        try:
            for page in self._pages(source, date_range):
                out.extend(page)
        except SQLAlchemyError as e:
            raise FetchError(source, e.__class__.__name__) from e
        _logger.debug("store:fetch source=%s rows=%d", source, len(out))
        return out

    def get(self, record_id: str) -> TransactionRecord | None:
        with session_scope(database_url=self.database_url) as session:
            row = session.get(LrTransaction, record_id)
            return _row_to_record(row) if row is not None else None

    def update(
        self,
        record_id: str,
        *,
        attributes: Mapping[str, Any],
        match: MatchState | None = None,
    ) -> None:
        values: dict[str, Any] = {"attributes": dict(attributes), "updated_at": func.now()}
        if match is not None:
            values.update(
                match_target_id=match.target_id,
                match_method=match.method,
                match_confidence=Decimal(str(match.confidence)),
                matched_at=match.matched_at,
            )
        with session_scope(database_url=self.database_url) as session:
            result = session.execute(
                update(LrTransaction).where(LrTransaction.id == record_id).values(**values)
            )
            if result.rowcount == 0:
                raise RecordNotFoundError(record_id)


__all__ = [
    "DEFAULT_PAGE_SIZE",
    "DateRange",
    "FetchError",
    "InMemoryStore",
    "RecordNotFoundError",
    "SqlTransactionStore",
    "TransactionStore",
]
