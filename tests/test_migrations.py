from __future__ import annotations

from pathlib import Path

import pytest
from alembic import command
from alembic.config import Config
from sqlalchemy import create_engine, inspect

from db.models.ledger import LrTransaction

_ALEMBIC_DIR = Path(__file__).resolve().parents[1] / "libs" / "db" / "alembic"


def _alembic_config() -> Config:
    cfg = Config()
    cfg.set_main_option("script_location", str(_ALEMBIC_DIR))
    return cfg


def test_upgrade_matches_orm_and_downgrade_drops(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.chdir(tmp_path)
    url = f"sqlite+pysqlite:///{tmp_path / 'migrated.db'}"
    monkeypatch.setenv("DATABASE_URL", url)
    cfg = _alembic_config()

    command.upgrade(cfg, "head")

    engine = create_engine(url)
    try:
        insp = inspect(engine)
        columns = {c["name"] for c in insp.get_columns("lr_transactions")}
        assert columns == {c.name for c in LrTransaction.__table__.columns}
        indexes = {i["name"] for i in insp.get_indexes("lr_transactions")}
        assert indexes == {i.name for i in LrTransaction.__table__.indexes}

        command.downgrade(cfg, "base")
        assert "lr_transactions" not in inspect(engine).get_table_names()
    finally:
        engine.dispose()
