"""Tests for the database module."""

import sqlite3
from datetime import UTC, datetime, timedelta, timezone
from pathlib import Path

import pytest

from uptimemon.database import (
    DatabaseError,
    aggregate_checks,
    count_checks,
    fetch_site,
    init_db,
    insert_check,
    next_update_time,
    query_checks,
)
from uptimemon.models import CheckResult, CheckStatus


@pytest.fixture
def db_path(tmp_path: Path) -> str:
    """Create a temporary database path."""
    return str(tmp_path / "test.db")


@pytest.fixture
def db_conn(db_path: str) -> sqlite3.Connection:
    """Create a database connection with initialized tables."""
    conn = init_db(db_path)
    yield conn
    conn.close()


def make_check(
    site_id: str = "site-a",
    up: bool = True,
    response_time_ms: int = 100,
    checked_at: datetime | None = None,
) -> CheckResult:
    """Build a check result with sensible defaults."""
    return CheckResult(
        site_id=site_id,
        url=f"https://{site_id}.example.com",
        status=CheckStatus.UP if up else CheckStatus.DOWN,
        response_time_ms=response_time_ms,
        status_code=200 if up else 503,
        error_message=None if up else "non-success status",
        checked_at=checked_at or datetime.now(UTC),
    )


class TestInitDb:
    """Tests for init_db function."""

    def test_creates_database_file(self, db_path: str) -> None:
        """Database file is created."""
        conn = init_db(db_path)
        conn.close()

        assert Path(db_path).exists()

    def test_creates_parent_directories(self, tmp_path: Path) -> None:
        """Missing parent directories are created."""
        nested = tmp_path / "a" / "b" / "test.db"

        conn = init_db(str(nested))
        conn.close()

        assert nested.exists()

    def test_creates_tables(self, db_conn: sqlite3.Connection) -> None:
        """Sites and checks tables are created."""
        rows = db_conn.execute("SELECT name FROM sqlite_master WHERE type='table'").fetchall()
        tables = {row["name"] for row in rows}

        assert {"sites", "checks"} <= tables

    def test_enables_wal_mode(self, db_conn: sqlite3.Connection) -> None:
        """WAL journal mode is enabled."""
        mode = db_conn.execute("PRAGMA journal_mode").fetchone()[0]

        assert mode == "wal"

    def test_idempotent(self, db_path: str) -> None:
        """Initializing twice keeps existing data."""
        conn = init_db(db_path)
        insert_check(conn, make_check())
        conn.close()

        conn = init_db(db_path)
        assert count_checks(conn) == 1
        conn.close()


class TestInsertAndQueryChecks:
    """Tests for insert_check and query_checks."""

    def test_round_trips_all_fields(self, db_conn: sqlite3.Connection) -> None:
        """Stored check reads back unchanged."""
        check = make_check(up=False, response_time_ms=321)

        insert_check(db_conn, check)

        assert query_checks(db_conn) == [check]

    def test_null_status_code(self, db_conn: sqlite3.Connection) -> None:
        """Network failures are stored without a status code."""
        check = CheckResult(
            site_id="site-a",
            url="https://site-a.example.com",
            status=CheckStatus.DOWN,
            response_time_ms=10000,
            status_code=None,
            error_message="timeout",
            checked_at=datetime.now(UTC),
        )

        insert_check(db_conn, check)

        stored = query_checks(db_conn)[0]
        assert stored.status_code is None
        assert stored.error_message == "timeout"

    def test_newest_first(self, db_conn: sqlite3.Connection) -> None:
        """Checks are returned by checked_at descending."""
        now = datetime.now(UTC)
        for minutes in (30, 10, 20):
            insert_check(db_conn, make_check(checked_at=now - timedelta(minutes=minutes)))

        times = [c.checked_at for c in query_checks(db_conn)]

        assert times == sorted(times, reverse=True)

    def test_filters_by_site(self, db_conn: sqlite3.Connection) -> None:
        """site_id restricts results to one site."""
        insert_check(db_conn, make_check(site_id="site-a"))
        insert_check(db_conn, make_check(site_id="site-b"))

        results = query_checks(db_conn, site_id="site-b")

        assert [c.site_id for c in results] == ["site-b"]

    def test_filters_by_status(self, db_conn: sqlite3.Connection) -> None:
        """status restricts results to up or down checks."""
        insert_check(db_conn, make_check(up=True))
        insert_check(db_conn, make_check(up=False))

        results = query_checks(db_conn, status=CheckStatus.DOWN)

        assert len(results) == 1
        assert results[0].status == CheckStatus.DOWN

    def test_time_range_is_half_open(self, db_conn: sqlite3.Connection) -> None:
        """since is inclusive and until is exclusive."""
        start = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)
        for minutes in (0, 30, 60):
            insert_check(db_conn, make_check(checked_at=start + timedelta(minutes=minutes)))

        results = query_checks(db_conn, since=start, until=start + timedelta(minutes=60))

        assert sorted(c.checked_at for c in results) == [start, start + timedelta(minutes=30)]

    def test_limit_and_offset(self, db_conn: sqlite3.Connection) -> None:
        """limit and offset page through the newest-first list."""
        start = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)
        for i in range(5):
            insert_check(db_conn, make_check(checked_at=start + timedelta(minutes=i)))

        page = query_checks(db_conn, limit=2, offset=1)

        assert [c.checked_at for c in page] == [
            start + timedelta(minutes=3),
            start + timedelta(minutes=2),
        ]

    def test_offset_without_limit(self, db_conn: sqlite3.Connection) -> None:
        """Offset alone skips the newest results."""
        start = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)
        for i in range(3):
            insert_check(db_conn, make_check(checked_at=start + timedelta(minutes=i)))

        assert len(query_checks(db_conn, offset=2)) == 1

    def test_non_utc_timestamps_are_normalized(self, db_conn: sqlite3.Connection) -> None:
        """Timestamps with other offsets are stored as UTC."""
        local = datetime(2026, 3, 1, 14, 0, tzinfo=timezone(timedelta(hours=2)))
        insert_check(db_conn, make_check(checked_at=local))

        stored = query_checks(db_conn)[0]

        assert stored.checked_at == datetime(2026, 3, 1, 12, 0, tzinfo=UTC)
        assert stored.checked_at.utcoffset() == timedelta(0)

    def test_count_checks(self, db_conn: sqlite3.Connection) -> None:
        """count_checks counts all or one site's checks."""
        insert_check(db_conn, make_check(site_id="site-a"))
        insert_check(db_conn, make_check(site_id="site-a"))
        insert_check(db_conn, make_check(site_id="site-b"))

        assert count_checks(db_conn) == 3
        assert count_checks(db_conn, "site-a") == 2

    def test_count_checks_matches_query_filters(self, db_conn: sqlite3.Connection) -> None:
        """count_checks applies the same window and status filters as query_checks."""
        base = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)
        for minutes, up in [(0, True), (10, False), (20, True), (90, True)]:
            insert_check(db_conn, make_check(up=up, checked_at=base - timedelta(minutes=minutes)))
        insert_check(db_conn, make_check(site_id="site-b", checked_at=base - timedelta(minutes=5)))

        since = base - timedelta(hours=1)
        until = base

        assert count_checks(db_conn, "site-a", since=since, until=until) == 2
        assert count_checks(db_conn, "site-a", status=CheckStatus.UP) == 3
        assert count_checks(db_conn, status=CheckStatus.UP, since=since) == 3
        assert count_checks(db_conn, "site-a", since=since, until=until) == len(
            query_checks(db_conn, site_id="site-a", since=since, until=until)
        )

    def test_insert_on_closed_connection_raises(self, db_path: str) -> None:
        """sqlite errors surface as DatabaseError."""
        conn = init_db(db_path)
        conn.close()

        with pytest.raises(DatabaseError):
            insert_check(conn, make_check())


class TestAggregateChecks:
    """Tests for aggregate_checks function."""

    def test_empty_range(self, db_conn: sqlite3.Connection) -> None:
        """No checks yields zero totals and no latency figures."""
        now = datetime.now(UTC)

        result = aggregate_checks(db_conn, "site-a", now - timedelta(days=1), now)

        assert result.total == 0
        assert result.status_counts == {}
        assert result.avg_response_time_ms is None
        assert result.min_response_time_ms is None
        assert result.max_response_time_ms is None
        assert result.hourly == {}

    def test_totals_and_latency(self, db_conn: sqlite3.Connection) -> None:
        """Counts, mean, min and max are computed over the range."""
        base = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)
        insert_check(db_conn, make_check(up=True, response_time_ms=100, checked_at=base))
        insert_check(db_conn, make_check(up=True, response_time_ms=200, checked_at=base + timedelta(minutes=1)))
        insert_check(db_conn, make_check(up=False, response_time_ms=600, checked_at=base + timedelta(minutes=2)))

        result = aggregate_checks(db_conn, "site-a", base, base + timedelta(hours=1))

        assert result.total == 3
        assert result.status_counts == {"up": 2, "down": 1}
        assert result.avg_response_time_ms == pytest.approx(300.0)
        assert result.min_response_time_ms == 100
        assert result.max_response_time_ms == 600

    def test_ignores_other_sites_and_out_of_range(self, db_conn: sqlite3.Connection) -> None:
        """Only the site's checks inside [since, until) are counted."""
        base = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)
        insert_check(db_conn, make_check(site_id="site-a", checked_at=base))
        insert_check(db_conn, make_check(site_id="site-b", checked_at=base))
        insert_check(db_conn, make_check(site_id="site-a", checked_at=base + timedelta(hours=1)))
        insert_check(db_conn, make_check(site_id="site-a", checked_at=base - timedelta(microseconds=1)))

        result = aggregate_checks(db_conn, "site-a", base, base + timedelta(hours=1))

        assert result.total == 1

    def test_groups_by_calendar_hour(self, db_conn: sqlite3.Connection) -> None:
        """Checks are counted per UTC hour with per-status counts."""
        base = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)
        insert_check(db_conn, make_check(up=True, response_time_ms=100, checked_at=base + timedelta(minutes=5)))
        insert_check(db_conn, make_check(up=False, response_time_ms=300, checked_at=base + timedelta(minutes=59)))
        insert_check(db_conn, make_check(up=True, response_time_ms=50, checked_at=base + timedelta(hours=2)))

        result = aggregate_checks(db_conn, "site-a", base, base + timedelta(hours=3))

        assert set(result.hourly) == {base, base + timedelta(hours=2)}
        first = result.hourly[base]
        assert first.count == 2
        assert first.total_response_time_ms == 400
        assert first.status_counts == {"up": 1, "down": 1}
        assert result.hourly[base + timedelta(hours=2)].count == 1


class TestSiteStorage:
    """Tests for site storage helpers."""

    def test_fetch_missing_site(self, db_conn: sqlite3.Connection) -> None:
        """Unknown id returns None."""
        assert fetch_site(db_conn, "missing") is None


class TestNextUpdateTime:
    """Tests for next_update_time function."""

    def test_returns_now_when_later(self) -> None:
        """A later clock value is used as is."""
        previous = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)
        now = previous + timedelta(seconds=1)

        assert next_update_time(previous, now) == now

    @pytest.mark.parametrize("offset", [timedelta(0), timedelta(seconds=-10)])
    def test_bumps_when_clock_not_later(self, offset: timedelta) -> None:
        """Equal or earlier clock values advance by one microsecond."""
        previous = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)

        assert next_update_time(previous, previous + offset) == previous + timedelta(microseconds=1)
