"""Normalization functions for ClubElo CSV ingestion.

All functions accept str | None and return the appropriate type or None.
"""

from __future__ import annotations

import math
import re
from datetime import date, datetime

_ISO_DATE_FORMAT = "%Y-%m-%d"
_US_DATE_FORMAT = "%m/%d/%Y"
_NO_RANK = {"none", "-", "n/a"}


# ---------------------------------------------------------------------------
# Rule 1: trim
# ---------------------------------------------------------------------------

def trim(value: str | None) -> str | None:
    """Strip leading/trailing whitespace; treat empty string as None."""
    if value is None:
        return None
    v = value.strip()
    return v if v else None


# ---------------------------------------------------------------------------
# Rule 2: normalize_space
# ---------------------------------------------------------------------------

def normalize_space(value: str | None) -> str | None:
    """Collapse internal runs of whitespace to single spaces, then trim."""
    v = trim(value)
    if v is None:
        return None
    return re.sub(r"\s+", " ", v)


# ---------------------------------------------------------------------------
# Rule 3: club_api_name  (natural key for the clubs table)
# ---------------------------------------------------------------------------

def club_api_name(value: str | None) -> str | None:
    """Return the natural key for a club name as reported by the feed.

    The feed identifies clubs by a short name ("ManCity", "Real Madrid").
    Only whitespace is normalized; case and punctuation are significant.
    """
    return normalize_space(value)


# ---------------------------------------------------------------------------
# Rule 4: parse_feed_date
# ---------------------------------------------------------------------------

def parse_feed_date(value: str | None) -> date | None:
    """Parse 'YYYY-MM-DD' or 'M/D/YYYY'.  Anything else → None.

    A trailing time component ('2025-11-18T00:00:00', '2025-11-18 12:00')
    is ignored.
    """
    v = trim(value)
    if v is None:
        return None
    if "/" in v:
        try:
            return datetime.strptime(v, _US_DATE_FORMAT).date()
        except ValueError:
            return None
    v = re.split(r"[T ]", v, maxsplit=1)[0]
    try:
        return datetime.strptime(v, _ISO_DATE_FORMAT).date()
    except ValueError:
        return None


def coerce_date(value: date | str) -> date:
    """Return a calendar date from a date or a strict 'YYYY-MM-DD' string.

    Raises ValueError for anything else, including impossible dates such
    as '2025-02-30'.
    """
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    v = trim(value)
    if v is None or not re.fullmatch(r"\d{4}-\d{2}-\d{2}", v):
        raise ValueError(f"date must be in YYYY-MM-DD format: {value!r}")
    return datetime.strptime(v, _ISO_DATE_FORMAT).date()


# ---------------------------------------------------------------------------
# Rule 5: parse_finite_float
# ---------------------------------------------------------------------------

def parse_finite_float(value: str | None) -> float | None:
    """Parse a float, returning None when blank, unparseable, NaN or ±inf."""
    v = trim(value)
    if v is None:
        return None
    try:
        f = float(v)
    except ValueError:
        return None
    return f if math.isfinite(f) else None


# ---------------------------------------------------------------------------
# Rule 6: parse_int
# ---------------------------------------------------------------------------

def parse_int(value: str | None) -> int | None:
    """Parse an integer.  '1.0' is accepted; '1.5' and junk → None."""
    v = trim(value)
    if v is None:
        return None
    try:
        return int(v)
    except ValueError:
        pass
    f = parse_finite_float(v)
    if f is None or not f.is_integer():
        return None
    return int(f)


# ---------------------------------------------------------------------------
# Rule 7: parse_rank
# ---------------------------------------------------------------------------

def parse_rank(value: str | None) -> tuple[bool, int | None]:
    """Return (ok, rank).

    The feed reports 'None' for clubs outside the ranking; that is a valid
    value mapping to rank=None.  Any other non-integer is not ok.
    """
    v = trim(value)
    if v is None or v.lower() in _NO_RANK:
        return True, None
    rank = parse_int(v)
    if rank is None:
        return False, None
    return True, rank
