"""clubelo_etl.import_clubelo

Unified CLI entrypoint for ClubElo ingestion.

Modes (--mode):
  snapshot      - ratings of every club on one date (default: yesterday)
  club_history  - complete rating history of one club
  fixtures      - fixtures with predictions for a date, a range, or all upcoming

Usage (snapshot):
    python -m clubelo_etl.import_clubelo \\
        --mode snapshot \\
        --db-dsn "$DB_DSN" \\
        --date 2025-11-18

Usage (club_history):
    python -m clubelo_etl.import_clubelo \\
        --mode club_history \\
        --db-dsn "$DB_DSN" \\
        --club ManCity

Usage (fixtures):
    python -m clubelo_etl.import_clubelo \\
        --mode fixtures \\
        --db-dsn "$DB_DSN" \\
        --date 2025-11-20 --end-date 2025-11-23

Every mode is safe to re-run with the same arguments.
"""

from __future__ import annotations

import logging
import sys
import uuid
from datetime import date, datetime
from pathlib import Path

import click

from clubelo_etl.clubelo_feed import (
    DEFAULT_API_BASE,
    DEFAULT_TIMEOUT,
    ClubEloClient,
    RetryPolicy,
)
from clubelo_etl.import_fixtures import run_fixtures_import
from clubelo_etl.import_snapshot import (
    default_snapshot_date,
    run_club_history_import,
    run_snapshot_import,
)
from clubelo_etl.shared import (
    FeedError,
    ImportCounters,
    RejectWriter,
    StoreUnavailable,
    write_run_report,
)

MODES = ("snapshot", "club_history", "fixtures")


# ---------------------------------------------------------------------------
# Flag validation
# ---------------------------------------------------------------------------

def _validate_club_history_flags(club: str | None, run_id: str) -> None:
    if not club or not club.strip():
        click.echo(
            f"[{run_id}] FATAL: club_history mode requires: --club",
            err=True,
        )
        sys.exit(1)


def _validate_date_flags(
    mode: str,
    start: date | None,
    end: date | None,
    run_id: str,
) -> None:
    if end is None:
        return
    if mode != "fixtures":
        click.echo(
            f"[{run_id}] FATAL: --end-date is only valid in fixtures mode",
            err=True,
        )
        sys.exit(1)
    if start is None:
        click.echo(f"[{run_id}] FATAL: --end-date requires --date", err=True)
        sys.exit(1)
    if end < start:
        click.echo(
            f"[{run_id}] FATAL: --end-date {end} is before --date {start}",
            err=True,
        )
        sys.exit(1)


# ---------------------------------------------------------------------------
# Report
# ---------------------------------------------------------------------------

def build_report(mode: str, counters: ImportCounters, dry_run: bool) -> str:
    lines = [
        f"=== ClubElo {mode} import ===",
        f"dry_run                : {dry_run}",
        "",
        "--- Feed ---",
        f"rows_read              : {counters.rows_read}",
        f"rows_rejected          : {counters.rows_rejected}",
        "",
        "--- Store ---",
        f"rows_imported          : {counters.rows_imported}",
        f"clubs_inserted         : {counters.clubs_inserted}",
        f"clubs_matched_existing : {counters.clubs_matched_existing}",
        f"clubs_insert_races     : {counters.clubs_insert_races}",
        f"ratings_upserted       : {counters.ratings_upserted}",
        f"fixtures_upserted      : {counters.fixtures_upserted}",
        f"db_phase_errors        : {counters.db_phase_errors}",
        "",
        f"success: {counters.success}  errors: {counters.errors}",
    ]
    if counters.warnings:
        lines += ["", "--- Warnings (first 10) ---"]
        lines += [f"  {w}" for w in counters.warnings[:10]]
    return "\n".join(lines)


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

@click.command()
@click.option(
    "--mode",
    type=click.Choice(MODES),
    default="snapshot",
    show_default=True,
    help="Which feed request to import",
)
@click.option("--db-dsn", required=True, envvar="DB_DSN", help="PostgreSQL DSN (env: DB_DSN)")
@click.option(
    "--date", "start_date",
    type=click.DateTime(formats=["%Y-%m-%d"]),
    default=None,
    help="[snapshot] snapshot date (default: yesterday); [fixtures] match date or range start",
)
@click.option(
    "--end-date",
    type=click.DateTime(formats=["%Y-%m-%d"]),
    default=None,
    help="[fixtures] inclusive range end",
)
@click.option("--club", default=None, help="[club_history] Club name as used by the feed, e.g. ManCity")
@click.option(
    "--api-base",
    default=DEFAULT_API_BASE,
    envvar="CLUBELO_API_BASE",
    show_default=True,
    help="Feed base URL (env: CLUBELO_API_BASE)",
)
@click.option(
    "--http-timeout",
    default=DEFAULT_TIMEOUT,
    type=float,
    envvar="HTTP_TIMEOUT",
    show_default=True,
    help="Per-request timeout in seconds (env: HTTP_TIMEOUT)",
)
@click.option(
    "--http-max-retries",
    default=3,
    type=click.IntRange(min=1),
    envvar="HTTP_MAX_RETRIES",
    show_default=True,
    help="Total attempts per request for transient failures (env: HTTP_MAX_RETRIES)",
)
@click.option(
    "--rejects-path",
    default=None,
    type=click.Path(),
    help="CSV of rejected rows (default: ./artifacts/rejects/<mode>_<run_id>.csv)",
)
@click.option("--dry-run", is_flag=True, default=False, help="Perform all writes, then roll back")
@click.option("--run-id", default=None, help="Override UUID for log correlation")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="INFO",
    show_default=True,
)
def main(
    mode: str,
    db_dsn: str,
    start_date: datetime | None,
    end_date: datetime | None,
    club: str | None,
    api_base: str,
    http_timeout: float,
    http_max_retries: int,
    rejects_path: str | None,
    dry_run: bool,
    run_id: str | None,
    log_level: str,
) -> None:
    """Unified ClubElo ingestion CLI."""
    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    run_id = run_id or str(uuid.uuid4())
    started_at = datetime.utcnow().isoformat()
    start = start_date.date() if start_date else None
    end = end_date.date() if end_date else None

    _validate_date_flags(mode, start, end, run_id)
    if mode == "club_history":
        _validate_club_history_flags(club, run_id)

    counters = ImportCounters()
    rejects = RejectWriter(
        Path(rejects_path) if rejects_path
        else Path(f"./artifacts/rejects/{mode}_{run_id}.csv")
    )
    client = ClubEloClient(
        api_base=api_base,
        retry=RetryPolicy(max_attempts=http_max_retries),
        timeout=http_timeout,
    )

    click.echo(f"[{run_id}] Starting {mode} run (dry_run={dry_run})")
    parameters: dict[str, str | None] = {"api_base": api_base}

    try:
        if mode == "snapshot":
            snapshot_date = start or default_snapshot_date()
            parameters["date"] = snapshot_date.isoformat()
            click.echo(f"[{run_id}] Fetching snapshot for {snapshot_date}")
            run_snapshot_import(
                db_dsn, snapshot_date, client=client, counters=counters,
                rejects=rejects, dry_run=dry_run,
            )
        elif mode == "club_history":
            parameters["club"] = club
            click.echo(f"[{run_id}] Fetching full history for {club!r}")
            run_club_history_import(
                db_dsn, club, client=client, counters=counters,  # type: ignore[arg-type]
                rejects=rejects, dry_run=dry_run,
            )
        else:
            parameters["date"] = start.isoformat() if start else None
            parameters["end_date"] = end.isoformat() if end else None
            click.echo(
                f"[{run_id}] Fetching fixtures for "
                + (f"{start}..{end or start}" if start else "all upcoming matches")
            )
            run_fixtures_import(
                db_dsn, start, end, client=client, counters=counters,
                rejects=rejects, dry_run=dry_run,
            )
    except (FeedError, StoreUnavailable) as exc:
        click.echo(f"[{run_id}] FATAL: {type(exc).__name__}: {exc}", err=True)
        sys.exit(1)
    finally:
        rejects.close()

    click.echo(build_report(mode, counters, dry_run))
    if rejects.rows_written:
        click.echo(f"[{run_id}] {rejects.rows_written} rejected rows: {rejects.path}")
    if dry_run:
        click.echo(f"[{run_id}] [dry-run] All changes rolled back.")

    report_path = write_run_report(run_id, started_at, mode, dry_run, parameters, counters)
    click.echo(f"[{run_id}] Run report: {report_path}")

    if counters.db_phase_errors > 0:
        click.echo(
            f"[{run_id}] {counters.db_phase_errors} DB errors; exiting non-zero",
            err=True,
        )
        sys.exit(1)


if __name__ == "__main__":
    main()
