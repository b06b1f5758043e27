"""clubelo_etl.resolution_club

Club find-or-create keyed by the feed's natural key (clubs.api_name).

Resolution is read-mostly: an existing club is returned untouched.  The
import paths call refresh_club_attributes alongside their own write when
they want the reported attributes applied.

Concurrent first sightings of the same api_name race on the UNIQUE
constraint.  The insert runs inside its own savepoint; the loser's
UniqueViolation is rolled back to that savepoint and the winner's row is
re-read, so callers never see the conflict.
"""

from __future__ import annotations

import logging

import psycopg
from psycopg import errors

from clubelo_etl.shared import ImportCounters, StoreUnavailable, store_lost

log = logging.getLogger(__name__)


def find_club_id(conn: psycopg.Connection, api_name: str) -> int | None:
    row = conn.execute(
        "SELECT id FROM clubs WHERE api_name = %s",
        (api_name,),
    ).fetchone()
    return int(row[0]) if row else None


def insert_club(
    conn: psycopg.Connection,
    api_name: str,
    display_name: str,
    country: str,
    level: int,
) -> int:
    row = conn.execute(
        """
        INSERT INTO clubs (api_name, display_name, country, level)
        VALUES (%s, %s, %s, %s)
        RETURNING id
        """,
        (api_name, display_name, country, level),
    ).fetchone()
    return int(row[0])


def resolve_club(
    conn: psycopg.Connection,
    api_name: str,
    display_name: str,
    country: str,
    level: int,
    counters: ImportCounters | None = None,
) -> int:
    """Return the id of the club with ``api_name``, inserting it if absent."""
    counters = counters if counters is not None else ImportCounters()
    try:
        club_id = find_club_id(conn, api_name)
        if club_id is not None:
            counters.clubs_matched_existing += 1
            return club_id

        try:
            with conn.transaction():
                club_id = insert_club(conn, api_name, display_name, country, level)
        except errors.UniqueViolation:
            club_id = find_club_id(conn, api_name)
            if club_id is None:
                raise
            counters.clubs_insert_races += 1
            log.info("Club %r inserted concurrently; reusing id=%s", api_name, club_id)
            return club_id

        counters.clubs_inserted += 1
        log.info("Created club %r (id=%s, %s, level %s)", api_name, club_id, country, level)
        return club_id
    except (psycopg.OperationalError, psycopg.InterfaceError) as exc:
        if store_lost(conn, exc):
            raise StoreUnavailable(f"resolving club {api_name!r}: {exc}") from exc
        raise


def refresh_club_attributes(
    conn: psycopg.Connection,
    club_id: int,
    display_name: str,
    country: str,
    level: int,
) -> bool:
    """Apply reported attributes; returns True when something changed.

    Unchanged rows are not touched, so replaying an import leaves
    updated_at alone.
    """
    cur = conn.execute(
        """
        UPDATE clubs SET
          display_name = %s,
          country = %s,
          level = %s,
          updated_at = now()
        WHERE id = %s
          AND (display_name, country, level)
              IS DISTINCT FROM (%s::varchar, %s::varchar, %s::integer)
        """,
        (display_name, country, level, club_id, display_name, country, level),
    )
    return cur.rowcount > 0


def refresh_club_level(conn: psycopg.Connection, club_id: int, level: int) -> bool:
    """Apply a reported tier only.

    Fixture rows carry the competition's country (EUR for continental
    cups), not the club's, so the fixture path leaves country alone.
    """
    cur = conn.execute(
        """
        UPDATE clubs SET level = %s, updated_at = now()
        WHERE id = %s AND level IS DISTINCT FROM %s::integer
        """,
        (level, club_id, level),
    )
    return cur.rowcount > 0
