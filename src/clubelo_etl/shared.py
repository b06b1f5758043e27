"""clubelo_etl.shared

Shared utilities used by the snapshot and fixtures importers.
Includes the error taxonomy, RejectWriter, ImportCounters, the
transaction primitive and report-writing support.
"""

from __future__ import annotations

import csv
import json
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, TypeVar

import psycopg

T = TypeVar("T")


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class FeedError(Exception):
    """Base class for failures obtaining rows from the ClubElo feed."""


class FeedUnavailable(FeedError):
    """Network/HTTP failure, either non-transient or after retries are exhausted."""


class FeedMalformed(FeedError):
    """Response body could not be parsed as the expected CSV at all."""


class StoreUnavailable(Exception):
    """The PostgreSQL store could not be reached or the connection was lost."""


class RowRejected(Exception):
    """A single row failed validation; recovered locally and counted."""


# ---------------------------------------------------------------------------
# RejectWriter
# ---------------------------------------------------------------------------

class RejectWriter:
    """CSV sink for rows that were not imported, opened on first write.

    Feed rows and typed rows converted back to dicts can share one file;
    the header is taken from the first row and later keys outside it are
    dropped.  No file is created when nothing is rejected.
    """

    REASON_COL = "_reject_reason"

    def __init__(self, path: Path) -> None:
        self.path = path
        self.rows_written = 0
        self._fh = None
        self._writer: csv.DictWriter | None = None

    def _open(self, first_row: dict[str, Any]) -> csv.DictWriter:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._fh = open(self.path, "w", newline="", encoding="utf-8")
        writer = csv.DictWriter(
            self._fh,
            fieldnames=[*first_row.keys(), self.REASON_COL],
            extrasaction="ignore",
        )
        writer.writeheader()
        return writer

    def write(self, row: dict[str, Any], reason: str) -> None:
        if self._writer is None:
            self._writer = self._open(row)
        self._writer.writerow({**row, self.REASON_COL: reason})
        self._fh.flush()
        self.rows_written += 1

    def close(self) -> None:
        if self._fh is not None:
            self._fh.close()
            self._fh = None


# ---------------------------------------------------------------------------
# ImportCounters
# ---------------------------------------------------------------------------

@dataclass
class ImportCounters:
    # Feed phase
    rows_read: int = 0
    rows_rejected: int = 0
    # DB phase
    rows_imported: int = 0
    db_phase_errors: int = 0
    clubs_inserted: int = 0
    clubs_matched_existing: int = 0
    clubs_insert_races: int = 0
    ratings_upserted: int = 0
    fixtures_upserted: int = 0
    warnings: list[str] = field(default_factory=list)

    @property
    def success(self) -> int:
        return self.rows_imported

    @property
    def errors(self) -> int:
        return self.rows_rejected + self.db_phase_errors

    def stats(self) -> dict[str, int]:
        return {"success": self.success, "errors": self.errors}

    def to_dict(self) -> dict[str, Any]:
        d = {k: v for k, v in self.__dict__.items() if k != "warnings"}
        d["success"] = self.success
        d["errors"] = self.errors
        d["warnings"] = self.warnings[:50]
        return d


# ---------------------------------------------------------------------------
# Connection + transaction primitive
# ---------------------------------------------------------------------------

def connect(db_dsn: str) -> psycopg.Connection:
    """Open an autocommit connection.

    Autocommit means each ``conn.transaction()`` block is a real
    BEGIN/COMMIT, so per-row units are durable as soon as they finish.
    """
    try:
        return psycopg.connect(db_dsn, autocommit=True)
    except psycopg.OperationalError as exc:
        raise StoreUnavailable(f"cannot connect to store: {exc}") from exc


def store_lost(conn: psycopg.Connection, exc: BaseException) -> bool:
    """True when ``exc`` means the connection itself is gone.

    Deadlocks, serialization failures and cancelled statements are also
    OperationalErrors but leave the connection usable; those stay scoped
    to the unit that raised them.
    """
    if isinstance(exc, psycopg.InterfaceError):
        return True
    return isinstance(exc, psycopg.OperationalError) and (conn.broken or conn.closed)


def run_in_transaction(
    conn: psycopg.Connection,
    work: Callable[[psycopg.Connection], T],
) -> T:
    """Run ``work(conn)`` as one all-or-nothing unit.

    Commits when ``work`` returns, rolls back and re-raises when it raises.
    Nested inside an open transaction this becomes a savepoint, so only the
    unit's own statements are undone.  A lost connection is re-raised as
    StoreUnavailable.
    """
    try:
        with conn.transaction():
            return work(conn)
    except (psycopg.OperationalError, psycopg.InterfaceError) as exc:
        if store_lost(conn, exc):
            raise StoreUnavailable(str(exc)) from exc
        raise


def apply_to_store(
    db_dsn: str,
    work: Callable[[psycopg.Connection], T],
    dry_run: bool = False,
) -> T:
    """Open a connection, run ``work`` and close it.

    In dry-run mode everything runs inside one outer transaction that is
    rolled back at the end; per-row transaction blocks become savepoints.
    """
    conn = connect(db_dsn)
    try:
        if not dry_run:
            return work(conn)
        with conn.transaction() as tx:
            result = work(conn)
            raise psycopg.Rollback(tx)
        return result
    finally:
        conn.close()


# ---------------------------------------------------------------------------
# Report writer
# ---------------------------------------------------------------------------

def write_run_report(
    run_id: str,
    started_at: str,
    mode: str,
    dry_run: bool,
    parameters: dict[str, Any],
    counters: ImportCounters,
    report_dir: Path = Path("./artifacts/reports"),
) -> Path:
    """Write ``<report_dir>/<run_id>.json`` and return its path.

    ``parameters`` (date, club, api_base ...) are merged at the top level
    next to the run metadata; counters go under "counters".
    """
    report = {
        "run_id": run_id,
        "mode": mode,
        "started_at": started_at,
        "finished_at": datetime.utcnow().isoformat(),
        "dry_run": dry_run,
        **parameters,
        "counters": counters.to_dict(),
    }
    report_path = report_dir / f"{run_id}.json"
    report_path.parent.mkdir(parents=True, exist_ok=True)
    report_path.write_text(json.dumps(report, indent=2, default=str))
    return report_path
