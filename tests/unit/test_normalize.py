"""Unit tests for clubelo_etl.normalize."""

import pytest
from datetime import date, datetime

from clubelo_etl.normalize import (
    trim,
    normalize_space,
    club_api_name,
    parse_feed_date,
    coerce_date,
    parse_finite_float,
    parse_int,
    parse_rank,
)


# ---------------------------------------------------------------------------
# trim
# ---------------------------------------------------------------------------

class TestTrim:
    def test_strips_whitespace(self):
        assert trim("  hello  ") == "hello"

    def test_empty_string_returns_none(self):
        assert trim("") is None

    def test_whitespace_only_returns_none(self):
        assert trim("   ") is None

    def test_none_returns_none(self):
        assert trim(None) is None


# ---------------------------------------------------------------------------
# normalize_space / club_api_name
# ---------------------------------------------------------------------------

class TestNormalizeSpace:
    def test_collapses_internal_spaces(self):
        assert normalize_space("Real   Madrid") == "Real Madrid"

    def test_tabs_and_newlines(self):
        assert normalize_space("\tReal\n Madrid ") == "Real Madrid"

    def test_none(self):
        assert normalize_space(None) is None


class TestClubApiName:
    def test_case_is_significant(self):
        assert club_api_name("ManCity") == "ManCity"
        assert club_api_name("mancity") == "mancity"

    def test_whitespace_variants_share_a_key(self):
        assert club_api_name(" Real  Madrid ") == club_api_name("Real Madrid")

    def test_blank_is_none(self):
        assert club_api_name("  ") is None


# ---------------------------------------------------------------------------
# parse_feed_date
# ---------------------------------------------------------------------------

class TestParseFeedDate:
    def test_iso(self):
        assert parse_feed_date("2025-11-18") == date(2025, 11, 18)

    def test_us_format(self):
        assert parse_feed_date("11/18/2025") == date(2025, 11, 18)

    def test_us_format_without_padding(self):
        assert parse_feed_date("1/5/1946") == date(1946, 1, 5)

    def test_iso_with_time(self):
        assert parse_feed_date("2025-11-18T00:00:00") == date(2025, 11, 18)

    def test_iso_with_space_time(self):
        assert parse_feed_date("2025-11-18 12:30") == date(2025, 11, 18)

    def test_impossible_date(self):
        assert parse_feed_date("2025-02-30") is None

    def test_junk(self):
        assert parse_feed_date("yesterday") is None

    def test_blank(self):
        assert parse_feed_date("") is None
        assert parse_feed_date(None) is None


# ---------------------------------------------------------------------------
# coerce_date
# ---------------------------------------------------------------------------

class TestCoerceDate:
    def test_date_passthrough(self):
        d = date(2025, 11, 18)
        assert coerce_date(d) is d

    def test_datetime_truncated(self):
        assert coerce_date(datetime(2025, 11, 18, 23, 59)) == date(2025, 11, 18)

    def test_iso_string(self):
        assert coerce_date(" 2025-11-18 ") == date(2025, 11, 18)

    @pytest.mark.parametrize("bad", ["18/11/2025", "2025-1-5", "20251118", "", "2025-02-30"])
    def test_rejects_non_iso(self, bad):
        with pytest.raises(ValueError):
            coerce_date(bad)


# ---------------------------------------------------------------------------
# parse_finite_float
# ---------------------------------------------------------------------------

class TestParseFiniteFloat:
    def test_plain(self):
        assert parse_finite_float("1950.5") == 1950.5

    def test_integer_string(self):
        assert parse_finite_float("2000") == 2000.0

    def test_nan_is_none(self):
        assert parse_finite_float("NaN") is None

    def test_inf_is_none(self):
        assert parse_finite_float("inf") is None
        assert parse_finite_float("-Infinity") is None

    def test_junk_is_none(self):
        assert parse_finite_float("abc") is None

    def test_blank_is_none(self):
        assert parse_finite_float("  ") is None


# ---------------------------------------------------------------------------
# parse_int
# ---------------------------------------------------------------------------

class TestParseInt:
    def test_plain(self):
        assert parse_int("2") == 2

    def test_whole_float(self):
        assert parse_int("1.0") == 1

    def test_fraction_rejected(self):
        assert parse_int("1.5") is None

    def test_junk(self):
        assert parse_int("top") is None

    def test_none(self):
        assert parse_int(None) is None


# ---------------------------------------------------------------------------
# parse_rank
# ---------------------------------------------------------------------------

class TestParseRank:
    def test_integer(self):
        assert parse_rank("12") == (True, 12)

    def test_none_literal(self):
        assert parse_rank("None") == (True, None)

    def test_dash(self):
        assert parse_rank("-") == (True, None)

    def test_blank(self):
        assert parse_rank("") == (True, None)

    def test_junk_not_ok(self):
        assert parse_rank("first") == (False, None)
