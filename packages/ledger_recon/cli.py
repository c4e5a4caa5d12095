# ruff: noqa: I001
"""CLI for the ``ledger_recon`` package.

Command handlers (``cmd_*``) return process exit codes; the Typer commands
wrap them. The root callback loads a local ``.env`` with ``python-dotenv``
(without overriding the environment) and configures logging before any
command runs. Business logic lives in ``ledger_recon.orchestrator`` and
``ledger_recon.entities``.

Exit codes: 0 success, 1 the run hit a run-level error (a collection could
not be fetched), 2 invalid input or configuration.
"""

from __future__ import annotations

import sys
from collections.abc import Sequence
from datetime import date, datetime
from pathlib import Path

import typer
from dotenv import load_dotenv
from typer.models import OptionInfo

from .logging_setup import configure_logging, get_logger

_logger = get_logger("ledger_recon.cli")


def _error(message: str) -> None:
    print(f"Error: {message}", file=sys.stderr)


def _as_date(value: datetime | date | None) -> date | None:
    if value is None:
        return None
    return value.date() if isinstance(value, datetime) else value


def _resolve_database_url(override: str | None) -> str | None:
    from .config import load_settings

    return override or load_settings().database_url


# ---- Command handlers --------------------------------------------------------


def cmd_reconcile(
    *,
    apply: bool,
    since: date | None,
    until: date | None,
    sources: Sequence[str],
    widen: bool,
    reconsider_below: float | None,
    as_json: bool,
    database_url: str | None,
) -> int:
    """Run the reconciliation cascade and print the report."""

    # Deferred imports keep `--help` fast
    from .cascade import default_plans
    from .config import load_settings
    from .orchestrator import Reconciler, RunMode, RunScope
    from .store import DateRange, SqlTransactionStore
    from .tables import load_tables

    settings = load_settings()
    url = database_url or settings.database_url
    if not url:
        _error("DATABASE_URL is not set; pass --database-url or set it in .env")
        return 2
    if reconsider_below is not None and not 0.0 < reconsider_below <= 1.0:
        _error("--reconsider-below must be within (0, 1]")
        return 2
    try:
        date_range = DateRange(since, until) if (since or until) else None
    except ValueError as e:
        _error(str(e))
        return 2
    try:
        tables = load_tables(settings.tables_path)
    except (OSError, ValueError) as e:
        _error(f"cannot load lookup tables: {e}")
        return 2

    store = SqlTransactionStore(url, page_size=settings.page_size)
    reconciler = Reconciler(
        store,
        default_plans(settings, tables),
        settings=settings,
        tables=tables,
        widen=widen,
        reconsider_below=reconsider_below,
    )
    scope = RunScope(date_range=date_range, sources=frozenset(sources) if sources else None)
    report = reconciler.run(RunMode.APPLY if apply else RunMode.DRY_RUN, scope)

    typer.echo(report.model_dump_json(indent=2) if as_json else report.render_text())
    return 0 if report.ok else 1


def cmd_homogenize_names(
    *,
    source: str,
    threshold: float,
    apply: bool,
    transitive: bool,
    database_url: str | None,
) -> int:
    """Cluster the customer names of one source and optionally record canonicals."""

    from .config import load_settings
    from .entities import EntityResolver
    from .merger import WriteBackMerger
    from .models import RecordUpdate
    from .normalizers import NameNormalizer
    from .store import FetchError, SqlTransactionStore
    from .tables import load_tables

    settings = load_settings()
    url = database_url or settings.database_url
    if not url:
        _error("DATABASE_URL is not set; pass --database-url or set it in .env")
        return 2
    if not 0.0 <= threshold <= 1.0:
        _error("--threshold must be within [0, 1]")
        return 2
    try:
        tables = load_tables(settings.tables_path)
    except (OSError, ValueError) as e:
        _error(f"cannot load lookup tables: {e}")
        return 2

    store = SqlTransactionStore(url, page_size=settings.page_size)
    try:
        records = store.fetch(source)
    except FetchError as e:
        _error(str(e))
        return 1

    resolver = EntityResolver(NameNormalizer(tables))
    named = [r for r in records if r.customer_name]
    resolution = resolver.deduplicate(
        [r.customer_name for r in named if r.customer_name], threshold, transitive=transitive
    )

    merged_groups = [g for g in resolution.groups if g.variants]
    typer.echo(
        f"{len(named)} named records, {len(resolution.groups)} entities, "
        f"{len(merged_groups)} with variants"
    )
    for group in merged_groups:
        typer.echo(f"  {group.canonical} [{group.code}] <- " + " | ".join(group.variants))

    if not apply:
        typer.echo("Dry run: nothing written (use --apply to record canonical names).")
        return 0

    code_of = {g.canonical: g.code for g in resolution.groups}
    updates = []
    for rec in named:
        canonical = resolution.canonical(rec.customer_name or "")
        attrs = {"canonical_name": canonical, "entity_code": code_of[canonical]}
        if (rec.attributes.canonical_name, rec.attributes.entity_code) == (
            attrs["canonical_name"],
            attrs["entity_code"],
        ):
            continue
        updates.append(RecordUpdate(record_id=rec.id, attributes=attrs))

    merger = WriteBackMerger(
        store,
        max_attempts=settings.write_retries,
        batch_size=settings.write_batch_size,
        concurrency=settings.write_concurrency,
    )
    outcomes = merger.apply_many(updates)
    failed = [o.record_id for o in outcomes if not o.ok]
    typer.echo(f"Updated {len(outcomes) - len(failed)} records; {len(failed)} failed.")
    for rid in failed:
        typer.echo(f"  failed: {rid}")
    return 0


def cmd_init_db(*, database_url: str | None) -> int:
    """Create the reconciliation tables directly from the ORM models."""

    from .store import SqlTransactionStore

    url = _resolve_database_url(database_url)
    if not url:
        _error("DATABASE_URL is not set; pass --database-url or set it in .env")
        return 2
    SqlTransactionStore(url).init_schema()
    typer.echo("Schema ready.")
    return 0


# ---- Typer-based console interface -------------------------------------------


app = typer.Typer(
    no_args_is_help=True,
    add_completion=False,
    help=(
        "Reconcile gateway, bank and ledger transactions into confidence-scored links. "
        "Loads DATABASE_URL and LEDGER_RECON_* settings from a local .env."
    ),
)


# Module-level option objects to satisfy ruff B008 (no calls in parameter
# defaults).
DATABASE_URL_OPTION: OptionInfo = typer.Option(
    None, "--database-url", help="Override DATABASE_URL (falls back to env var)."
)
DATE_FORMATS = ["%Y-%m-%d"]
SOURCE_OPTION: OptionInfo = typer.Option(
    None,
    "--source",
    help="Restrict the run to these source tags (repeatable).",
)


def _exit(code: int) -> None:
    if code:
        raise typer.Exit(code)


@app.command("reconcile")
def reconcile_cmd(
    *,
    apply: bool = typer.Option(
        False, "--apply/--dry-run", help="Persist matches (default: dry run, nothing written)."
    ),
    since: datetime | None = typer.Option(
        None, formats=DATE_FORMATS, help="Only source records dated on or after this day."
    ),
    until: datetime | None = typer.Option(
        None, formats=DATE_FORMATS, help="Only source records dated on or before this day."
    ),
    source: list[str] | None = SOURCE_OPTION,
    widen: bool = typer.Option(
        True, "--widen/--no-widen", help="Run a second, wider-tolerance pass over leftovers."
    ),
    reconsider_below: float | None = typer.Option(
        None,
        help="Re-run records whose stored confidence is below this value (opt-in).",
    ),
    as_json: bool = typer.Option(False, "--json", help="Emit the report as JSON."),
    database_url: str | None = DATABASE_URL_OPTION,
) -> None:
    """Match transactions across sources and report coverage."""

    _exit(
        cmd_reconcile(
            apply=apply,
            since=_as_date(since),
            until=_as_date(until),
            sources=source or [],
            widen=widen,
            reconsider_below=reconsider_below,
            as_json=as_json,
            database_url=database_url,
        )
    )


@app.command("homogenize-names")
def homogenize_names_cmd(
    *,
    source: str = typer.Option(..., "--source", help="Source tag whose names to cluster."),
    threshold: float = typer.Option(0.85, help="Similarity needed to join a cluster."),
    apply: bool = typer.Option(
        False, "--apply/--dry-run", help="Record canonical names (default: preview only)."
    ),
    transitive: bool = typer.Option(
        False, help="Join clusters transitively instead of against the longest name."
    ),
    database_url: str | None = DATABASE_URL_OPTION,
) -> None:
    """Cluster near-duplicate customer names under one canonical label."""

    _exit(
        cmd_homogenize_names(
            source=source,
            threshold=threshold,
            apply=apply,
            transitive=transitive,
            database_url=database_url,
        )
    )


@app.command("init-db")
def init_db_cmd(*, database_url: str | None = DATABASE_URL_OPTION) -> None:
    """Create the reconciliation tables (use Alembic migrations in production)."""

    _exit(cmd_init_db(database_url=database_url))


@app.callback()
def main() -> None:
    """Root command.

    Loads ``.env`` from the current working directory (without overriding any
    already-set environment variables) and configures logging.
    """

    load_dotenv(dotenv_path=Path.cwd() / ".env", override=False)
    configure_logging()
    _logger.debug("cli:start")


if __name__ == "__main__":  # pragma: no cover - exercised via console script
    app()
