from __future__ import annotations

import json
from pathlib import Path

import pytest
from typer.testing import CliRunner

from ledger_recon.cli import app
from ledger_recon.store import SqlTransactionStore

from tests.helpers.db import bootstrap_sqlite_db, seed_records
from tests.helpers.records import build_fixture, mk_record

runner = CliRunner()


@pytest.fixture()
def db_url(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> str:
    # Keep a developer's .env out of the picture and serialize SQLite writes.
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("LEDGER_RECON_WRITE_CONCURRENCY", "1")
    return bootstrap_sqlite_db(tmp_path / "cli.db")


def test_reconcile_requires_a_database_url(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.chdir(tmp_path)
    result = runner.invoke(app, ["reconcile"])
    assert result.exit_code == 2
    assert "DATABASE_URL is not set" in result.output


def test_reconcile_dry_run_then_apply(db_url: str) -> None:
    seed_records(db_url, build_fixture())

    dry = runner.invoke(app, ["reconcile", "--database-url", db_url])
    assert dry.exit_code == 0, dry.output
    assert "Reconciliation report (dry-run" in dry.output
    store = SqlTransactionStore(db_url)
    rec = store.get("str-000")
    assert rec is not None and rec.match is None

    applied = runner.invoke(app, ["reconcile", "--apply", "--json", "--database-url", db_url])
    assert applied.exit_code == 0, applied.output
    report = json.loads(applied.stdout)
    assert report["ok"] is True
    assert report["writes"]["succeeded"] == report["writes"]["planned"] == 65
    rec = store.get("str-000")
    assert rec is not None and rec.match is not None
    assert rec.match.method == "exact_identifier"

    again = runner.invoke(app, ["reconcile", "--apply", "--json", "--database-url", db_url])
    assert again.exit_code == 0, again.output
    assert json.loads(again.stdout)["writes"]["planned"] == 0


def test_reconcile_scope_options(db_url: str) -> None:
    seed_records(db_url, build_fixture())
    result = runner.invoke(
        app,
        [
            "reconcile",
            "--database-url",
            db_url,
            "--since",
            "2024-03-01",
            "--until",
            "2024-03-05",
            "--source",
            "stripe",
            "--no-widen",
            "--json",
        ],
    )
    assert result.exit_code == 0, result.output
    report = json.loads(result.stdout)
    assert set(report["sources"]) == {"stripe"}
    assert [p["name"] for p in report["phases"]] == ["gateway-orders"]


@pytest.mark.parametrize(
    "args",
    [
        ["--since", "2024-03-05", "--until", "2024-03-01"],
        ["--reconsider-below", "1.5"],
    ],
)
def test_reconcile_rejects_invalid_options(db_url: str, args: list[str]) -> None:
    result = runner.invoke(app, ["reconcile", "--database-url", db_url, *args])
    assert result.exit_code == 2


def test_reconcile_reports_fetch_failures(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.chdir(tmp_path)
    url = f"sqlite+pysqlite:///{tmp_path / 'no-schema.db'}"
    result = runner.invoke(app, ["reconcile", "--database-url", url])
    assert result.exit_code == 1
    assert "FETCH FAILED" in result.output


def test_homogenize_names_preview_and_apply(db_url: str) -> None:
    seed_records(
        db_url,
        [
            mk_record("c-1", "crm", "10.00", "2024-03-01", customer_name="Amazon"),
            mk_record("c-2", "crm", "11.00", "2024-03-02", customer_name="AMAZON"),
            mk_record("c-3", "crm", "12.00", "2024-03-03", customer_name="Amazon Marketplace"),
            mk_record("c-4", "crm", "13.00", "2024-03-04", customer_name="Ortho Partners"),
        ],
    )

    preview = runner.invoke(app, ["homogenize-names", "--source", "crm", "--database-url", db_url])
    assert preview.exit_code == 0, preview.output
    assert "Amazon [AMAZON] <- AMAZON | Amazon Marketplace" in preview.output
    assert "Dry run" in preview.output
    store = SqlTransactionStore(db_url)
    before = store.get("c-3")
    assert before is not None and before.attributes.canonical_name is None

    applied = runner.invoke(
        app, ["homogenize-names", "--source", "crm", "--apply", "--database-url", db_url]
    )
    assert applied.exit_code == 0, applied.output
    assert "Updated 4 records; 0 failed." in applied.output
    after = store.get("c-3")
    assert after is not None
    assert after.attributes.canonical_name == "Amazon"
    assert after.attributes.entity_code == "AMAZON"

    # Already recorded canonicals are not rewritten.
    rerun = runner.invoke(
        app, ["homogenize-names", "--source", "crm", "--apply", "--database-url", db_url]
    )
    assert "Updated 0 records; 0 failed." in rerun.output


def test_init_db_creates_schema(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.chdir(tmp_path)
    url = f"sqlite+pysqlite:///{tmp_path / 'fresh.db'}"
    monkeypatch.setenv("DATABASE_URL", url)
    result = runner.invoke(app, ["init-db"])
    assert result.exit_code == 0, result.output
    assert SqlTransactionStore(url).fetch("bank") == []
