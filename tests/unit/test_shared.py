"""Unit tests for shared: error classification, transactions, reject sink.

No database access required.
"""

from __future__ import annotations

import csv
from unittest.mock import MagicMock

import psycopg
import pytest

from clubelo_etl.shared import (
    ImportCounters,
    RejectWriter,
    StoreUnavailable,
    run_in_transaction,
    store_lost,
)


def _conn(broken: bool = False, closed: bool = False) -> MagicMock:
    conn = MagicMock()
    conn.broken = broken
    conn.closed = closed
    return conn


# ---------------------------------------------------------------------------
# store_lost
# ---------------------------------------------------------------------------

class TestStoreLost:
    def test_interface_error(self):
        assert store_lost(_conn(), psycopg.InterfaceError("connection already closed"))

    def test_deadlock_on_healthy_connection(self):
        exc = psycopg.errors.DeadlockDetected("deadlock detected")
        assert not store_lost(_conn(), exc)

    def test_operational_error_on_broken_connection(self):
        assert store_lost(_conn(broken=True), psycopg.OperationalError("server closed"))

    def test_operational_error_on_closed_connection(self):
        assert store_lost(_conn(closed=True), psycopg.OperationalError("server closed"))

    def test_other_errors(self):
        assert not store_lost(_conn(broken=True), ValueError("bad row"))


# ---------------------------------------------------------------------------
# run_in_transaction
# ---------------------------------------------------------------------------

class TestRunInTransaction:
    def test_returns_work_result(self):
        conn = _conn()
        assert run_in_transaction(conn, lambda c: 42) == 42
        conn.transaction.assert_called_once()

    def test_deadlock_is_reraised_unchanged(self):
        def work(c):
            raise psycopg.errors.DeadlockDetected("deadlock detected")

        with pytest.raises(psycopg.errors.DeadlockDetected):
            run_in_transaction(_conn(), work)

    def test_lost_connection_becomes_store_unavailable(self):
        def work(c):
            raise psycopg.OperationalError("terminating connection")

        with pytest.raises(StoreUnavailable):
            run_in_transaction(_conn(broken=True), work)


# ---------------------------------------------------------------------------
# RejectWriter
# ---------------------------------------------------------------------------

class TestRejectWriter:
    def test_no_file_without_rejects(self, tmp_path):
        writer = RejectWriter(tmp_path / "rejects" / "r.csv")
        writer.close()
        assert writer.rows_written == 0
        assert not writer.path.exists()

    def test_header_from_first_row(self, tmp_path):
        writer = RejectWriter(tmp_path / "rejects" / "r.csv")
        writer.write({"Club": "Alpha", "Elo": "NaN"}, "invalid_elo:nan")
        writer.write({"Club": "Beta", "Elo": "1", "extra": "x"}, "db_error:boom")
        writer.close()

        assert writer.rows_written == 2
        with open(writer.path, newline="", encoding="utf-8") as fh:
            rows = list(csv.DictReader(fh))
        assert list(rows[0].keys()) == ["Club", "Elo", RejectWriter.REASON_COL]
        assert [r[RejectWriter.REASON_COL] for r in rows] == ["invalid_elo:nan", "db_error:boom"]


# ---------------------------------------------------------------------------
# ImportCounters
# ---------------------------------------------------------------------------

class TestImportCounters:
    def test_errors_combine_both_phases(self):
        counters = ImportCounters(rows_rejected=2, db_phase_errors=1, rows_imported=5)
        assert counters.stats() == {"success": 5, "errors": 3}

    def test_to_dict_caps_warnings(self):
        counters = ImportCounters(warnings=[f"w{i}" for i in range(60)])
        d = counters.to_dict()
        assert len(d["warnings"]) == 50
        assert d["success"] == 0
