"""clubelo_etl.clubelo_feed

Client for the public ClubElo CSV feed.

Endpoints (relative to the API base, default http://api.clubelo.com):
  /{YYYY-MM-DD}            full ratings snapshot for one date
  /{club}                  complete rating history for one club
  /fixtures                all upcoming fixtures with predictions
  /fixtures/{YYYY-MM-DD}   fixtures for one date

Design decisions:
  - Transient failures (timeouts, connection errors, 429, 5xx) are retried
    with exponential backoff; other 4xx fail immediately.
  - A body that is not the expected CSV at all raises FeedMalformed.
  - A single bad row is excluded and counted; it never aborts the fetch.
"""

from __future__ import annotations

import csv
import io
import logging
import random
import time
import urllib.parse
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Any, Callable

import requests

from clubelo_etl.normalize import (
    club_api_name,
    coerce_date,
    normalize_space,
    parse_feed_date,
    parse_finite_float,
    parse_int,
    parse_rank,
    trim,
)
from clubelo_etl.shared import (
    FeedMalformed,
    FeedUnavailable,
    RejectWriter,
    RowRejected,
)

log = logging.getLogger(__name__)

DEFAULT_API_BASE = "http://api.clubelo.com"
DEFAULT_TIMEOUT = 120.0
USER_AGENT = "clubelo-etl/1.0"

# ---------------------------------------------------------------------------
# Column contracts
# ---------------------------------------------------------------------------

REQUIRED_RATING_COLS = {"Rank", "Club", "Country", "Level", "Elo"}
REQUIRED_FIXTURE_COLS = {
    "Date", "Country", "HomeTeam", "AwayTeam",
    "HomeLevel", "AwayLevel", "HomeElo", "AwayElo",
}
FIXTURE_COL_ALIASES = {"Home": "HomeTeam", "Away": "AwayTeam"}


# ---------------------------------------------------------------------------
# Typed rows
# ---------------------------------------------------------------------------

@dataclass
class RatingRow:
    api_name: str
    display_name: str
    rank: int | None
    country: str
    level: int
    elo: float
    valid_from: date | None = None
    valid_to: date | None = None


@dataclass
class FixtureRow:
    match_date: date
    country: str
    competition: str
    home_team: str
    away_team: str
    home_level: int
    away_level: int
    home_elo: float
    away_elo: float
    home_win_prob: float | None = None
    draw_prob: float | None = None
    away_win_prob: float | None = None


@dataclass
class FeedBatch:
    """Rows decoded from one logical feed request."""

    urls: list[str] = field(default_factory=list)
    rows: list[Any] = field(default_factory=list)
    rows_read: int = 0
    rows_rejected: int = 0
    reject_reasons: list[str] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.rows)


# ---------------------------------------------------------------------------
# Retry policy
# ---------------------------------------------------------------------------

@dataclass
class RetryPolicy:
    """Bounded exponential backoff: base_delay * 2**attempt, capped at max_delay."""

    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 32.0
    jitter: float = 0.0

    def delay(self, attempt: int) -> float:
        d = min(self.base_delay * (2 ** attempt), self.max_delay)
        if self.jitter:
            d += random.uniform(-self.jitter, self.jitter)
        return max(0.0, d)


def _is_transient_status(status_code: int) -> bool:
    return status_code == 429 or status_code >= 500


def fetch_with_retry(
    session: requests.Session,
    url: str,
    retry: RetryPolicy,
    timeout: float = DEFAULT_TIMEOUT,
) -> str:
    """GET url and return the body text.

    Raises FeedUnavailable on a non-transient HTTP error or once
    retry.max_attempts transient failures have occurred.
    """
    last_error = "no attempt made"
    for attempt in range(1, retry.max_attempts + 1):
        log.info("Fetching %s (attempt %d/%d)", url, attempt, retry.max_attempts)
        try:
            resp = session.get(url, timeout=timeout)
        except (requests.Timeout, requests.ConnectionError) as exc:
            last_error = f"{type(exc).__name__}: {exc}"
            log.warning("Attempt %d for %s failed: %s", attempt, url, last_error)
        except requests.RequestException as exc:
            raise FeedUnavailable(f"request for {url} failed: {exc}") from exc
        else:
            if _is_transient_status(resp.status_code):
                last_error = f"HTTP {resp.status_code}"
                log.warning("Attempt %d for %s failed: %s", attempt, url, last_error)
            elif resp.status_code >= 400:
                raise FeedUnavailable(f"HTTP {resp.status_code} from {url}")
            else:
                text = resp.text
                log.info("Fetched %d bytes from %s", len(text), url)
                return text

        if attempt < retry.max_attempts:
            wait = retry.delay(attempt)
            log.debug("Waiting %.1fs before retrying %s", wait, url)
            time.sleep(wait)

    raise FeedUnavailable(
        f"giving up on {url} after {retry.max_attempts} attempts: {last_error}"
    )


# ---------------------------------------------------------------------------
# CSV decoding
# ---------------------------------------------------------------------------

def read_csv_rows(
    text: str,
    required: set[str],
    aliases: dict[str, str] | None = None,
    source: str = "feed",
) -> list[dict[str, str]]:
    """Decode delimited text with a header row into header-keyed dicts.

    Header names are whitespace-stripped and mapped through ``aliases``.
    A whitespace-only body is an empty result, not an error.
    """
    body = text.lstrip("\ufeff")
    if not body.strip():
        return []
    aliases = aliases or {}
    try:
        reader = csv.DictReader(io.StringIO(body))
        raw_fields = reader.fieldnames or []
        fields = [aliases.get(f.strip(), f.strip()) for f in raw_fields]
        missing = required - set(fields)
        if missing:
            preview = body[:80].replace("\n", "\\n")
            raise FeedMalformed(
                f"{source}: missing required columns {sorted(missing)} "
                f"(body starts {preview!r})"
            )
        reader.fieldnames = fields
        rows: list[dict[str, str]] = []
        for raw_row in reader:
            row = {k: v for k, v in raw_row.items() if k is not None}
            if not any(trim(v) for v in row.values()):
                continue
            rows.append(row)
    except csv.Error as exc:
        raise FeedMalformed(f"{source}: unreadable CSV: {exc}") from exc
    return rows


# ---------------------------------------------------------------------------
# Row parsers (staging layer)
# ---------------------------------------------------------------------------

def _require(row: dict[str, str], col: str) -> str:
    v = normalize_space(row.get(col))
    if not v:
        raise RowRejected(f"missing_required_column:{col}")
    return v


def parse_rating_row(row: dict[str, str]) -> RatingRow:
    """Decode one ratings row.  Raises RowRejected on validation failure."""
    display_name = _require(row, "Club")
    api_name = club_api_name(display_name) or display_name
    country = _require(row, "Country")

    level = parse_int(row.get("Level"))
    if level is None:
        raise RowRejected(f"invalid_level:{row.get('Level')!r}")

    ok, rank = parse_rank(row.get("Rank"))
    if not ok:
        raise RowRejected(f"invalid_rank:{row.get('Rank')!r}")

    elo = parse_finite_float(row.get("Elo"))
    if elo is None:
        raise RowRejected(f"invalid_elo:{row.get('Elo')!r}")

    valid_from = parse_feed_date(row.get("From"))
    if trim(row.get("From")) and valid_from is None:
        raise RowRejected(f"invalid_date:From={row.get('From')!r}")
    valid_to = parse_feed_date(row.get("To"))

    return RatingRow(
        api_name=api_name,
        display_name=display_name,
        rank=rank,
        country=country,
        level=level,
        elo=elo,
        valid_from=valid_from,
        valid_to=valid_to,
    )


def parse_fixture_row(row: dict[str, str]) -> FixtureRow:
    """Decode one fixtures row.  Raises RowRejected on validation failure."""
    match_date = parse_feed_date(row.get("Date"))
    if match_date is None:
        raise RowRejected(f"invalid_date:Date={row.get('Date')!r}")
    home_team = _require(row, "HomeTeam")
    away_team = _require(row, "AwayTeam")
    country = _require(row, "Country")

    home_level = parse_int(row.get("HomeLevel"))
    away_level = parse_int(row.get("AwayLevel"))
    if home_level is None or away_level is None:
        raise RowRejected(
            f"invalid_level:home={row.get('HomeLevel')!r},away={row.get('AwayLevel')!r}"
        )

    home_elo = parse_finite_float(row.get("HomeElo"))
    away_elo = parse_finite_float(row.get("AwayElo"))
    if home_elo is None or away_elo is None:
        raise RowRejected(
            f"invalid_elo:home={row.get('HomeElo')!r},away={row.get('AwayElo')!r}"
        )

    return FixtureRow(
        match_date=match_date,
        country=country,
        competition=normalize_space(row.get("Competition")) or "",
        home_team=home_team,
        away_team=away_team,
        home_level=home_level,
        away_level=away_level,
        home_elo=home_elo,
        away_elo=away_elo,
        home_win_prob=parse_finite_float(row.get("HomeProbW")),
        draw_prob=parse_finite_float(row.get("ProbD")),
        away_win_prob=parse_finite_float(row.get("AwayProbW")),
    )


def decode_rows(
    raw_rows: list[dict[str, str]],
    parser: Callable[[dict[str, str]], Any],
    batch: FeedBatch,
    rejects: RejectWriter | None = None,
) -> None:
    """Parse raw rows into ``batch``; failures are counted, not raised."""
    for row in raw_rows:
        batch.rows_read += 1
        try:
            batch.rows.append(parser(row))
        except RowRejected as exc:
            batch.rows_rejected += 1
            batch.reject_reasons.append(str(exc))
            log.warning("Rejected feed row %r: %s", row, exc)
            if rejects is not None:
                rejects.write(row, str(exc))


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------

class ClubEloClient:
    """Stateless wrapper around the three ClubElo request shapes."""

    def __init__(
        self,
        api_base: str = DEFAULT_API_BASE,
        session: requests.Session | None = None,
        retry: RetryPolicy | None = None,
        timeout: float = DEFAULT_TIMEOUT,
    ) -> None:
        self.api_base = api_base.rstrip("/")
        self.retry = retry or RetryPolicy()
        self.timeout = timeout
        if session is None:
            session = requests.Session()
            session.headers.update({"User-Agent": USER_AGENT})
        self.session = session

    def _get_rows(
        self,
        path: str,
        required: set[str],
        aliases: dict[str, str] | None = None,
    ) -> tuple[str, list[dict[str, str]]]:
        url = f"{self.api_base}/{path}"
        text = fetch_with_retry(self.session, url, self.retry, timeout=self.timeout)
        return url, read_csv_rows(text, required, aliases, source=url)

    def fetch_snapshot(
        self,
        snapshot_date: date | str,
        rejects: RejectWriter | None = None,
    ) -> FeedBatch:
        """Ratings of every club on ``snapshot_date``."""
        d = coerce_date(snapshot_date)
        url, raw_rows = self._get_rows(d.isoformat(), REQUIRED_RATING_COLS)
        batch = FeedBatch(urls=[url])
        decode_rows(raw_rows, parse_rating_row, batch, rejects)
        log.info(
            "Snapshot %s: %d rows, %d rejected", d, len(batch), batch.rows_rejected
        )
        return batch

    def fetch_club_history(
        self,
        club: str,
        rejects: RejectWriter | None = None,
    ) -> FeedBatch:
        """Full rating history of one club, one row per rating interval."""
        name = club_api_name(club)
        if not name:
            raise ValueError("club name is required")
        path = urllib.parse.quote(name, safe="")
        url, raw_rows = self._get_rows(path, REQUIRED_RATING_COLS)
        batch = FeedBatch(urls=[url])
        decode_rows(raw_rows, parse_rating_row, batch, rejects)
        log.info(
            "History %s: %d rows, %d rejected", name, len(batch), batch.rows_rejected
        )
        return batch

    def fetch_fixtures(
        self,
        match_date: date | str | None = None,
        end_date: date | str | None = None,
        rejects: RejectWriter | None = None,
    ) -> FeedBatch:
        """Fixtures for one date, an inclusive date range, or all upcoming.

        A range is fetched one day at a time from /fixtures/{date}.
        """
        if match_date is None:
            if end_date is not None:
                raise ValueError("end_date requires a start date")
            paths = ["fixtures"]
        else:
            start = coerce_date(match_date)
            end = coerce_date(end_date) if end_date is not None else start
            if end < start:
                raise ValueError(f"end_date {end} is before start date {start}")
            paths = [
                f"fixtures/{(start + timedelta(days=n)).isoformat()}"
                for n in range((end - start).days + 1)
            ]

        batch = FeedBatch()
        for path in paths:
            url, raw_rows = self._get_rows(
                path, REQUIRED_FIXTURE_COLS, FIXTURE_COL_ALIASES
            )
            batch.urls.append(url)
            decode_rows(raw_rows, parse_fixture_row, batch, rejects)
        log.info(
            "Fixtures (%s): %d rows, %d rejected",
            ", ".join(paths), len(batch), batch.rows_rejected,
        )
        return batch
