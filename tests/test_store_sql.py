from __future__ import annotations

from datetime import UTC, date, datetime
from decimal import Decimal
from pathlib import Path

import pytest

from ledger_recon.models import MatchState
from ledger_recon.store import (
    DateRange,
    FetchError,
    InMemoryStore,
    RecordNotFoundError,
    SqlTransactionStore,
)

from tests.helpers.db import bootstrap_sqlite_db, seed_records
from tests.helpers.records import build_fixture, mk_record


@pytest.fixture()
def sql_store(tmp_path: Path) -> SqlTransactionStore:
    url = bootstrap_sqlite_db(tmp_path / "recon.db")
    seed_records(url, build_fixture())
    return SqlTransactionStore(url, page_size=7)


def test_paged_fetch_returns_whole_collection_in_order(sql_store: SqlTransactionStore) -> None:
    invoices = sql_store.fetch("invoices")
    assert len(invoices) == 30
    keys = [(r.date, r.id) for r in invoices]
    assert keys == sorted(keys)


def test_fetch_honors_date_range(sql_store: SqlTransactionStore) -> None:
    rows = sql_store.fetch("invoices", DateRange(date(2024, 3, 1), date(2024, 3, 2)))
    # Invoices 0, 1, 20 and 21 fall on those two days.
    assert sorted(r.id for r in rows) == ["inv-000", "inv-001", "inv-020", "inv-021"]


def test_rows_round_trip_through_the_table(sql_store: SqlTransactionStore) -> None:
    rec = sql_store.get("str-000")
    assert rec is not None
    assert rec.amount == Decimal("99.50")
    assert rec.external_id == "INV-1000"
    assert rec.attributes.settlement_date == date(2024, 3, 4)
    assert rec.match is None
    assert sql_store.get("missing") is None


def test_update_replaces_bag_and_sets_match(sql_store: SqlTransactionStore) -> None:
    match = MatchState(
        target_id="inv-000",
        method="exact_identifier",
        confidence=1.0,
        matched_at=datetime(2024, 6, 1, tzinfo=UTC),
    )
    sql_store.update("str-000", attributes={"classification": "services"}, match=match)

    rec = sql_store.get("str-000")
    assert rec is not None and rec.match is not None
    assert rec.classification == "services"
    assert (rec.match.target_id, rec.match.method, rec.match.confidence) == (
        "inv-000",
        "exact_identifier",
        1.0,
    )

    # Attributes-only update leaves the match in place.
    sql_store.update("str-000", attributes={"classification": "sales"})
    again = sql_store.get("str-000")
    assert again is not None and again.match is not None
    assert again.classification == "sales"


def test_update_of_unknown_record_raises(sql_store: SqlTransactionStore) -> None:
    with pytest.raises(RecordNotFoundError):
        sql_store.update("nope", attributes={})


def test_fetch_without_schema_raises_fetch_error(tmp_path: Path) -> None:
    store = SqlTransactionStore(f"sqlite+pysqlite:///{tmp_path / 'empty.db'}")
    with pytest.raises(FetchError) as info:
        store.fetch("bank")
    assert info.value.source == "bank"


def test_in_memory_store_pages_and_guards_ids() -> None:
    store = InMemoryStore(build_fixture(), page_size=4)
    assert len(store.fetch("stripe")) == 30
    # 30 rows at 4 per page: 8 pages, the last one short.
    assert store.pages_read == 8
    with pytest.raises(ValueError):
        store.add(mk_record("str-000", "stripe", "1.00", None))
    with pytest.raises(RecordNotFoundError):
        store.update("missing", attributes={})


@pytest.mark.parametrize(
    ("start", "end", "day", "inside"),
    [
        (None, None, None, True),
        (date(2024, 3, 1), None, None, False),
        (date(2024, 3, 1), date(2024, 3, 31), date(2024, 3, 31), True),
        (date(2024, 3, 1), date(2024, 3, 31), date(2024, 4, 1), False),
        (None, date(2024, 3, 31), date(2020, 1, 1), True),
    ],
)
def test_date_range_contains(start, end, day, inside) -> None:
    assert DateRange(start, end).contains(day) is inside


def test_date_range_validation_and_expansion() -> None:
    with pytest.raises(ValueError):
        DateRange(date(2024, 3, 2), date(2024, 3, 1))
    wide = DateRange(date(2024, 3, 10), None).expanded(5)
    assert wide == DateRange(date(2024, 3, 5), None)
