"""clubelo_etl.import_fixtures

Fixtures importer: one fixtures row per (home club, away club, match date).

Each fixture is one all-or-nothing unit (run_in_transaction):
  1.  Resolve home club (find-or-create) and refresh its level
  2.  Resolve away club (find-or-create) and refresh its level
  3.  Upsert fixtures ON CONFLICT (home_club_id, away_club_id, match_date)

If any step fails the unit rolls back, so a club created in step 1 or 2
never outlives a failed fixture write.  Rows with non-finite Elo values
are rejected before a transaction is opened.
"""

from __future__ import annotations

import logging
import math
from datetime import date
from typing import Any, Iterable

import psycopg

from clubelo_etl.clubelo_feed import ClubEloClient, FixtureRow
from clubelo_etl.resolution_club import refresh_club_level, resolve_club
from clubelo_etl.shared import (
    ImportCounters,
    RejectWriter,
    RowRejected,
    StoreUnavailable,
    apply_to_store,
    run_in_transaction,
)

log = logging.getLogger(__name__)

SOURCE = "clubelo"


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

def _is_finite(value: Any) -> bool:
    return isinstance(value, (int, float)) and math.isfinite(value)


def validate_fixture(row: FixtureRow) -> None:
    """Raise RowRejected unless the row can be written as-is."""
    if not isinstance(row.match_date, date):
        raise RowRejected(f"invalid_date:{row.match_date!r}")
    if not row.home_team or not row.away_team:
        raise RowRejected("missing_team_name")
    if not _is_finite(row.home_elo) or not _is_finite(row.away_elo):
        raise RowRejected(f"invalid_elo:home={row.home_elo!r},away={row.away_elo!r}")
    for name in ("home_win_prob", "draw_prob", "away_win_prob"):
        value = getattr(row, name)
        if value is not None and not _is_finite(value):
            raise RowRejected(f"invalid_probability:{name}={value!r}")


# ---------------------------------------------------------------------------
# DB apply layer
# ---------------------------------------------------------------------------

def upsert_fixture(
    conn: psycopg.Connection,
    home_club_id: int,
    away_club_id: int,
    row: FixtureRow,
) -> int:
    result = conn.execute(
        """
        INSERT INTO fixtures
          (home_club_id, away_club_id, match_date, country, competition,
           home_level, away_level, home_elo, away_elo,
           home_win_prob, draw_prob, away_win_prob, source)
        VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
        ON CONFLICT (home_club_id, away_club_id, match_date) DO UPDATE SET
          country = EXCLUDED.country,
          competition = EXCLUDED.competition,
          home_level = EXCLUDED.home_level,
          away_level = EXCLUDED.away_level,
          home_elo = EXCLUDED.home_elo,
          away_elo = EXCLUDED.away_elo,
          home_win_prob = EXCLUDED.home_win_prob,
          draw_prob = EXCLUDED.draw_prob,
          away_win_prob = EXCLUDED.away_win_prob,
          source = EXCLUDED.source,
          updated_at = now()
        RETURNING id
        """,
        (
            home_club_id, away_club_id, row.match_date, row.country, row.competition,
            row.home_level, row.away_level, row.home_elo, row.away_elo,
            row.home_win_prob, row.draw_prob, row.away_win_prob, SOURCE,
        ),
    ).fetchone()
    return int(result[0])


def _write_fixture(
    conn: psycopg.Connection,
    row: FixtureRow,
    counters: ImportCounters,
) -> int:
    home_id = resolve_club(
        conn, row.home_team, row.home_team, row.country, row.home_level, counters
    )
    refresh_club_level(conn, home_id, row.home_level)

    away_id = resolve_club(
        conn, row.away_team, row.away_team, row.country, row.away_level, counters
    )
    refresh_club_level(conn, away_id, row.away_level)

    fixture_id = upsert_fixture(conn, home_id, away_id, row)
    counters.fixtures_upserted += 1
    return fixture_id


def _fixture_to_row(row: FixtureRow) -> dict[str, Any]:
    """Convert a FixtureRow back to a dict for reject writing."""
    return {
        "Date": row.match_date.isoformat() if isinstance(row.match_date, date) else row.match_date,
        "Country": row.country,
        "Competition": row.competition,
        "HomeTeam": row.home_team,
        "AwayTeam": row.away_team,
        "HomeLevel": row.home_level,
        "AwayLevel": row.away_level,
        "HomeElo": row.home_elo,
        "AwayElo": row.away_elo,
        "HomeProbW": row.home_win_prob,
        "ProbD": row.draw_prob,
        "AwayProbW": row.away_win_prob,
    }


def import_fixtures(
    conn: psycopg.Connection,
    rows: Iterable[FixtureRow],
    counters: ImportCounters | None = None,
    rejects: RejectWriter | None = None,
) -> dict[str, int]:
    """Upsert each fixture as its own atomic unit.

    Returns {"success": n, "errors": m} for the rows given.
    """
    counters = counters if counters is not None else ImportCounters()
    rows = list(rows)
    log.info("Importing %d fixtures", len(rows))
    if not rows:
        log.warning("No fixtures to import")
        return {"success": 0, "errors": 0}

    success = 0
    errors = 0
    for row in rows:
        label = f"{row.home_team} vs {row.away_team} on {row.match_date}"
        try:
            validate_fixture(row)
            run_in_transaction(conn, lambda c: _write_fixture(c, row, counters))
        except StoreUnavailable:
            raise
        except RowRejected as exc:
            errors += 1
            counters.rows_rejected += 1
            log.warning("Skipping fixture %s: %s", label, exc)
            if rejects is not None:
                rejects.write(_fixture_to_row(row), str(exc))
        except Exception as exc:
            errors += 1
            counters.db_phase_errors += 1
            counters.warnings.append(f"fixture {label}: {exc}")
            log.warning("Failed to import fixture %s: %s", label, exc)
            if rejects is not None:
                rejects.write(_fixture_to_row(row), f"db_error:{exc}")
        else:
            success += 1
            counters.rows_imported += 1
            if success % 10 == 0:
                log.debug("Processed %d/%d fixtures", success, len(rows))

    log.info("Fixtures import complete: %d success, %d errors", success, errors)
    return {"success": success, "errors": errors}


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def run_fixtures_import(
    db_dsn: str,
    match_date: date | str | None = None,
    end_date: date | str | None = None,
    client: ClubEloClient | None = None,
    counters: ImportCounters | None = None,
    rejects: RejectWriter | None = None,
    dry_run: bool = False,
) -> dict[str, int]:
    """Fetch fixtures (one date, a range, or all upcoming) and import them.

    Feed failures (FeedUnavailable, FeedMalformed) and StoreUnavailable
    propagate.  Rows the feed could not parse count as errors.
    """
    client = client or ClubEloClient()
    counters = counters if counters is not None else ImportCounters()

    batch = client.fetch_fixtures(match_date, end_date, rejects)
    counters.rows_read += batch.rows_read
    counters.rows_rejected += batch.rows_rejected
    if not batch.rows:
        log.warning("No fixtures returned from %s", ", ".join(batch.urls))
        return counters.stats()

    apply_to_store(
        db_dsn,
        lambda conn: import_fixtures(conn, batch.rows, counters, rejects),
        dry_run=dry_run,
    )
    return counters.stats()
