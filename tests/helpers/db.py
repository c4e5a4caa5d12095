"""DB helpers for tests: bootstrap a temporary SQLite DB and seed records."""

from __future__ import annotations

import os
from collections.abc import Iterable
from pathlib import Path

from db import Base
from db.client import get_engine
from sqlalchemy import inspect

from ledger_recon.models import TransactionRecord
from ledger_recon.store import SqlTransactionStore


def bootstrap_sqlite_db(db_file: Path, *, set_default_env: bool = False) -> str:
    """Create a SQLite database file, initialize schema, and return the URL.

    Using a file-backed SQLite DB ensures multiple SQLAlchemy connections share
    the same state (in-memory DBs are per-connection by default).
    """

    url = f"sqlite+pysqlite:///{db_file}"
    db_file.parent.mkdir(parents=True, exist_ok=True)
    engine = get_engine(database_url=url)
    Base.metadata.create_all(bind=engine)
    _assert_schema_in_sync(url)
    if set_default_env:
        os.environ.setdefault("DATABASE_URL", url)
    return url


def seed_records(database_url: str, records: Iterable[TransactionRecord]) -> int:
    return SqlTransactionStore(database_url).add_records(records)


def _assert_schema_in_sync(database_url: str) -> None:
    """ORM column set matches the created table (guards against model drift)."""

    from db.models.ledger import LrTransaction

    expected = {c.name for c in LrTransaction.__table__.columns}
    got = {c["name"] for c in inspect(get_engine(database_url=database_url)).get_columns(
        LrTransaction.__tablename__
    )}
    assert expected == got, f"lr_transactions schema drift: {expected ^ got}"
