"""clubelo_etl.import_snapshot

Ratings importer: one elo_ratings row per (club, date).

Processing order per row (own transaction block):
  1.  Validate values (finite Elo, integer level, rating date present)
  2.  Resolve club by api_name (find-or-create)
  3.  Refresh club display name / country / level
  4.  Upsert elo_ratings ON CONFLICT (club_id, date) → overwrite values

A failure on one row is counted and written to rejects; the batch
continues.  StoreUnavailable is the only error that aborts the batch.
Re-running the same (rows, date) leaves the store unchanged.
"""

from __future__ import annotations

import logging
import math
from datetime import date, timedelta
from typing import Any, Iterable

import psycopg

from clubelo_etl.clubelo_feed import ClubEloClient, RatingRow
from clubelo_etl.normalize import coerce_date
from clubelo_etl.resolution_club import refresh_club_attributes, resolve_club
from clubelo_etl.shared import (
    ImportCounters,
    RejectWriter,
    RowRejected,
    StoreUnavailable,
    apply_to_store,
    store_lost,
)

log = logging.getLogger(__name__)

SOURCE = "clubelo"


# ---------------------------------------------------------------------------
# DB apply layer
# ---------------------------------------------------------------------------

def upsert_rating(
    conn: psycopg.Connection,
    club_id: int,
    rating_date: date,
    row: RatingRow,
) -> None:
    conn.execute(
        """
        INSERT INTO elo_ratings (club_id, date, rank, country, level, elo, source)
        VALUES (%s, %s, %s, %s, %s, %s, %s)
        ON CONFLICT (club_id, date) DO UPDATE SET
          rank = EXCLUDED.rank,
          country = EXCLUDED.country,
          level = EXCLUDED.level,
          elo = EXCLUDED.elo,
          source = EXCLUDED.source
        """,
        (club_id, rating_date, row.rank, row.country, row.level, row.elo, SOURCE),
    )


def _validate_rating(row: RatingRow, rating_date: date | None) -> None:
    if rating_date is None:
        raise RowRejected("missing_rating_date")
    if not isinstance(row.elo, (int, float)) or not math.isfinite(row.elo):
        raise RowRejected(f"invalid_elo:{row.elo!r}")
    if not isinstance(row.level, int):
        raise RowRejected(f"invalid_level:{row.level!r}")


def _import_rating(
    conn: psycopg.Connection,
    row: RatingRow,
    rating_date: date,
    counters: ImportCounters,
) -> None:
    club_id = resolve_club(
        conn, row.api_name, row.display_name, row.country, row.level, counters
    )
    refresh_club_attributes(conn, club_id, row.display_name, row.country, row.level)
    upsert_rating(conn, club_id, rating_date, row)
    counters.ratings_upserted += 1


def _rating_to_row(row: RatingRow, rating_date: date | None) -> dict[str, Any]:
    """Convert a RatingRow back to a dict for reject writing."""
    return {
        "Club": row.api_name,
        "Rank": "None" if row.rank is None else row.rank,
        "Country": row.country,
        "Level": row.level,
        "Elo": row.elo,
        "date": rating_date.isoformat() if rating_date else "",
    }


def _import_ratings(
    conn: psycopg.Connection,
    items: Iterable[tuple[RatingRow, date | None]],
    counters: ImportCounters,
    rejects: RejectWriter | None,
) -> dict[str, int]:
    success = 0
    errors = 0
    for row, rating_date in items:
        try:
            _validate_rating(row, rating_date)
            with conn.transaction():
                _import_rating(conn, row, rating_date, counters)
        except StoreUnavailable:
            raise
        except RowRejected as exc:
            errors += 1
            counters.rows_rejected += 1
            log.warning("Skipping rating for %s on %s: %s", row.api_name, rating_date, exc)
            if rejects is not None:
                rejects.write(_rating_to_row(row, rating_date), str(exc))
        except Exception as exc:
            if store_lost(conn, exc):
                raise StoreUnavailable(str(exc)) from exc
            errors += 1
            counters.db_phase_errors += 1
            counters.warnings.append(f"rating {row.api_name} {rating_date}: {exc}")
            log.warning("Failed to import rating for %s on %s: %s", row.api_name, rating_date, exc)
            if rejects is not None:
                rejects.write(_rating_to_row(row, rating_date), f"db_error:{exc}")
        else:
            success += 1
            counters.rows_imported += 1
            if success % 50 == 0:
                log.debug("Imported %d ratings", success)
    return {"success": success, "errors": errors}


def import_snapshot(
    conn: psycopg.Connection,
    rows: Iterable[RatingRow],
    snapshot_date: date | str,
    counters: ImportCounters | None = None,
    rejects: RejectWriter | None = None,
) -> dict[str, int]:
    """Upsert one rating per row for ``snapshot_date``.

    Returns {"success": n, "errors": m} for the rows given.
    """
    counters = counters if counters is not None else ImportCounters()
    d = coerce_date(snapshot_date)
    rows = list(rows)
    log.info("Importing %d club ratings for %s", len(rows), d)
    stats = _import_ratings(conn, ((row, d) for row in rows), counters, rejects)
    log.info("Import complete for %s: %d success, %d errors", d, stats["success"], stats["errors"])
    return stats


def import_club_history(
    conn: psycopg.Connection,
    rows: Iterable[RatingRow],
    club_label: str,
    counters: ImportCounters | None = None,
    rejects: RejectWriter | None = None,
) -> dict[str, int]:
    """Upsert every interval of a club's history, dated by its From column."""
    counters = counters if counters is not None else ImportCounters()
    rows = list(rows)
    log.info("Importing %d historical ratings for %s", len(rows), club_label)
    stats = _import_ratings(
        conn, ((row, row.valid_from) for row in rows), counters, rejects
    )
    log.info(
        "Import complete for %s: %d success, %d errors",
        club_label, stats["success"], stats["errors"],
    )
    return stats


# ---------------------------------------------------------------------------
# Entry points
# ---------------------------------------------------------------------------

def default_snapshot_date(today: date | None = None) -> date:
    """Most recent complete snapshot: yesterday."""
    return (today or date.today()) - timedelta(days=1)


def run_snapshot_import(
    db_dsn: str,
    snapshot_date: date | str | None = None,
    client: ClubEloClient | None = None,
    counters: ImportCounters | None = None,
    rejects: RejectWriter | None = None,
    dry_run: bool = False,
) -> dict[str, int]:
    """Fetch the snapshot for ``snapshot_date`` (default yesterday) and import it.

    Feed failures (FeedUnavailable, FeedMalformed) and StoreUnavailable
    propagate.  Rows the feed could not parse count as errors.
    """
    d = coerce_date(snapshot_date) if snapshot_date is not None else default_snapshot_date()
    client = client or ClubEloClient()
    counters = counters if counters is not None else ImportCounters()

    batch = client.fetch_snapshot(d, rejects)
    counters.rows_read += batch.rows_read
    counters.rows_rejected += batch.rows_rejected
    if not batch.rows:
        log.warning("No ratings returned for %s", d)
        return counters.stats()

    apply_to_store(
        db_dsn,
        lambda conn: import_snapshot(conn, batch.rows, d, counters, rejects),
        dry_run=dry_run,
    )
    return counters.stats()


def run_club_history_import(
    db_dsn: str,
    club: str,
    client: ClubEloClient | None = None,
    counters: ImportCounters | None = None,
    rejects: RejectWriter | None = None,
    dry_run: bool = False,
) -> dict[str, int]:
    """Fetch and import the complete rating history of one club."""
    client = client or ClubEloClient()
    counters = counters if counters is not None else ImportCounters()

    batch = client.fetch_club_history(club, rejects)
    counters.rows_read += batch.rows_read
    counters.rows_rejected += batch.rows_rejected
    if not batch.rows:
        log.warning("No history returned for %r (names are case-sensitive)", club)
        return counters.stats()

    apply_to_store(
        db_dsn,
        lambda conn: import_club_history(conn, batch.rows, club, counters, rejects),
        dry_run=dry_run,
    )
    return counters.stats()
