"""SQLite persistence for sites and the append-only check event log."""

import sqlite3
import threading
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from pathlib import Path

from .models import CheckResult, CheckStatus, Site


class DatabaseError(Exception):
    """Raised when a database operation fails."""

    pass


# Global lock for thread-safe database access.
# A single connection is shared by every site loop, the writer pool,
# the registry and the API handlers.
_db_lock = threading.Lock()


def _ts(value: datetime) -> str:
    """Serialize a timestamp as a fixed-width UTC ISO-8601 string.

    Fixed width keeps lexical order equal to chronological order, and the
    first 13 characters are always the calendar hour (``YYYY-MM-DDTHH``).
    """
    return value.astimezone(UTC).isoformat(timespec="microseconds")


def _parse_ts(value: str) -> datetime:
    return datetime.fromisoformat(value)


def next_update_time(previous: datetime, now: datetime) -> datetime:
    """Return an updated_at value strictly greater than ``previous``."""
    if now > previous:
        return now
    return previous + timedelta(microseconds=1)


@dataclass(frozen=True)
class HourlyAggregate:
    """Raw per-hour counters returned by aggregate_checks()."""

    count: int
    total_response_time_ms: int
    status_counts: dict[str, int] = field(default_factory=dict)


@dataclass(frozen=True)
class CheckAggregates:
    """Raw counters for one site over a time range.

    Attributes:
        total: Number of checks in range.
        status_counts: Count per status value ("up"/"down").
        avg_response_time_ms: Mean response time, None when total is 0.
        min_response_time_ms: Fastest response, None when total is 0.
        max_response_time_ms: Slowest response, None when total is 0.
        hourly: Counters keyed by the UTC start of each hour that has checks.
    """

    total: int
    status_counts: dict[str, int]
    avg_response_time_ms: float | None
    min_response_time_ms: int | None
    max_response_time_ms: int | None
    hourly: dict[datetime, HourlyAggregate] = field(default_factory=dict)


def init_db(db_path: str) -> sqlite3.Connection:
    """Initialize the database and create tables if they don't exist.

    Args:
        db_path: Path to the SQLite database file.

    Returns:
        Database connection with WAL mode enabled.

    Raises:
        DatabaseError: If database initialization fails.
    """
    try:
        parent_dir = Path(db_path).parent
        if not parent_dir.exists():
            parent_dir.mkdir(parents=True, exist_ok=True)

        conn = sqlite3.connect(db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row

        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=NORMAL")

        conn.execute("""
            CREATE TABLE IF NOT EXISTS sites (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                url TEXT NOT NULL,
                check_interval_ms INTEGER NOT NULL,
                is_active INTEGER NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)

        conn.execute("""
            CREATE TABLE IF NOT EXISTS checks (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                site_id TEXT NOT NULL,
                url TEXT NOT NULL,
                status TEXT NOT NULL,
                response_time_ms INTEGER NOT NULL,
                status_code INTEGER,
                error_message TEXT,
                checked_at TEXT NOT NULL
            )
        """)

        conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_checks_site_id_checked_at
            ON checks(site_id, checked_at)
        """)
        conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_checks_checked_at
            ON checks(checked_at)
        """)

        conn.commit()
        return conn

    except sqlite3.Error as e:
        raise DatabaseError(f"Failed to initialize database: {e}")
    except OSError as e:
        raise DatabaseError(f"Failed to create database directory: {e}")


# =============================================================================
# CHECK EVENTS (append-only)
# =============================================================================


def insert_check(conn: sqlite3.Connection, result: CheckResult) -> None:
    """Append a check result to the event log.

    Thread-safe: acquires global lock before database access.

    Args:
        conn: Database connection.
        result: Check result to insert.

    Raises:
        DatabaseError: If the insert fails.
    """
    try:
        with _db_lock:
            conn.execute(
                """
                INSERT INTO checks
                (site_id, url, status, response_time_ms, status_code, error_message, checked_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    result.site_id,
                    result.url,
                    result.status.value,
                    result.response_time_ms,
                    result.status_code,
                    result.error_message,
                    _ts(result.checked_at),
                ),
            )
            conn.commit()
    except sqlite3.Error as e:
        raise DatabaseError(f"Failed to insert check result: {e}")


def _row_to_check(row: sqlite3.Row) -> CheckResult:
    return CheckResult(
        site_id=row["site_id"],
        url=row["url"],
        status=CheckStatus(row["status"]),
        response_time_ms=row["response_time_ms"],
        status_code=row["status_code"],
        error_message=row["error_message"],
        checked_at=_parse_ts(row["checked_at"]),
    )


def _check_filters(
    site_id: str | None,
    since: datetime | None,
    until: datetime | None,
    status: CheckStatus | None,
) -> tuple[str, list]:
    """Build the WHERE clause shared by query_checks and count_checks."""
    clauses: list[str] = []
    params: list = []
    if site_id is not None:
        clauses.append("site_id = ?")
        params.append(site_id)
    if since is not None:
        clauses.append("checked_at >= ?")
        params.append(_ts(since))
    if until is not None:
        clauses.append("checked_at < ?")
        params.append(_ts(until))
    if status is not None:
        clauses.append("status = ?")
        params.append(status.value)

    if not clauses:
        return "", params
    return " WHERE " + " AND ".join(clauses), params


def query_checks(
    conn: sqlite3.Connection,
    site_id: str | None = None,
    since: datetime | None = None,
    until: datetime | None = None,
    status: CheckStatus | None = None,
    limit: int | None = None,
    offset: int = 0,
) -> list[CheckResult]:
    """Get check results, newest first.

    Args:
        conn: Database connection.
        site_id: Only return checks for this site (all sites when None).
        since: Only return checks at or after this timestamp.
        until: Only return checks strictly before this timestamp.
        status: Only return checks with this status.
        limit: Maximum number of results to return.
        offset: Number of newest results to skip.

    Returns:
        List of CheckResult objects, ordered by checked_at descending.

    Raises:
        DatabaseError: If the query fails.
    """
    where, params = _check_filters(site_id, since, until, status)
    query = "SELECT site_id, url, status, response_time_ms, status_code, error_message, checked_at FROM checks"
    query += where + " ORDER BY checked_at DESC, id DESC"

    if limit is not None or offset:
        query += " LIMIT ? OFFSET ?"
        params.extend([limit if limit is not None else -1, offset])

    try:
        with _db_lock:
            rows = conn.execute(query, params).fetchall()
        return [_row_to_check(row) for row in rows]

    except sqlite3.Error as e:
        raise DatabaseError(f"Failed to query checks: {e}")


def count_checks(
    conn: sqlite3.Connection,
    site_id: str | None = None,
    since: datetime | None = None,
    until: datetime | None = None,
    status: CheckStatus | None = None,
) -> int:
    """Count stored check results matching the same filters as query_checks."""
    where, params = _check_filters(site_id, since, until, status)
    try:
        with _db_lock:
            row = conn.execute("SELECT COUNT(*) FROM checks" + where, params).fetchone()
        return int(row[0])

    except sqlite3.Error as e:
        raise DatabaseError(f"Failed to count checks: {e}")


def aggregate_checks(
    conn: sqlite3.Connection,
    site_id: str,
    since: datetime,
    until: datetime,
) -> CheckAggregates:
    """Compute raw counters for a site over [since, until).

    Args:
        conn: Database connection.
        site_id: Site to aggregate.
        since: Inclusive start of the range.
        until: Exclusive end of the range.

    Returns:
        CheckAggregates with totals, per-status counts, latency stats and
        per-hour counters (only hours that contain checks).

    Raises:
        DatabaseError: If the query fails.
    """
    params = (site_id, _ts(since), _ts(until))
    try:
        with _db_lock:
            status_rows = conn.execute(
                """
                SELECT
                    status,
                    COUNT(*) as total,
                    SUM(response_time_ms) as total_rt,
                    MIN(response_time_ms) as min_rt,
                    MAX(response_time_ms) as max_rt
                FROM checks
                WHERE site_id = ? AND checked_at >= ? AND checked_at < ?
                GROUP BY status
                """,
                params,
            ).fetchall()

            hourly_rows = conn.execute(
                """
                SELECT
                    substr(checked_at, 1, 13) as hour,
                    status,
                    COUNT(*) as total,
                    SUM(response_time_ms) as total_rt
                FROM checks
                WHERE site_id = ? AND checked_at >= ? AND checked_at < ?
                GROUP BY hour, status
                ORDER BY hour
                """,
                params,
            ).fetchall()

    except sqlite3.Error as e:
        raise DatabaseError(f"Failed to aggregate checks: {e}")

    total = 0
    total_rt = 0
    min_rt: int | None = None
    max_rt: int | None = None
    status_counts: dict[str, int] = {}
    for row in status_rows:
        status_counts[row["status"]] = row["total"]
        total += row["total"]
        total_rt += row["total_rt"]
        min_rt = row["min_rt"] if min_rt is None else min(min_rt, row["min_rt"])
        max_rt = row["max_rt"] if max_rt is None else max(max_rt, row["max_rt"])

    # Merge per-status rows into one counter per hour
    merged: dict[datetime, tuple[int, int, dict[str, int]]] = {}
    for row in hourly_rows:
        hour_start = datetime.fromisoformat(f"{row['hour']}:00:00+00:00")
        count, rt, counts = merged.get(hour_start, (0, 0, {}))
        counts[row["status"]] = row["total"]
        merged[hour_start] = (count + row["total"], rt + row["total_rt"], counts)

    hourly = {
        hour_start: HourlyAggregate(count=count, total_response_time_ms=rt, status_counts=counts)
        for hour_start, (count, rt, counts) in merged.items()
    }

    return CheckAggregates(
        total=total,
        status_counts=status_counts,
        avg_response_time_ms=(total_rt / total) if total else None,
        min_response_time_ms=min_rt,
        max_response_time_ms=max_rt,
        hourly=hourly,
    )


# =============================================================================
# SITES (registry storage)
# =============================================================================


def _row_to_site(row: sqlite3.Row) -> Site:
    return Site(
        id=row["id"],
        name=row["name"],
        url=row["url"],
        check_interval_ms=row["check_interval_ms"],
        is_active=bool(row["is_active"]),
        created_at=_parse_ts(row["created_at"]),
        updated_at=_parse_ts(row["updated_at"]),
    )


def insert_site(conn: sqlite3.Connection, site: Site) -> None:
    """Insert a new site row.

    Raises:
        DatabaseError: If the insert fails.
    """
    try:
        with _db_lock:
            conn.execute(
                """
                INSERT INTO sites (id, name, url, check_interval_ms, is_active, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    site.id,
                    site.name,
                    site.url,
                    site.check_interval_ms,
                    1 if site.is_active else 0,
                    _ts(site.created_at),
                    _ts(site.updated_at),
                ),
            )
            conn.commit()
    except sqlite3.Error as e:
        raise DatabaseError(f"Failed to insert site: {e}")


def fetch_site(conn: sqlite3.Connection, site_id: str) -> Site | None:
    """Get a single site by id, or None if it does not exist."""
    try:
        with _db_lock:
            row = conn.execute("SELECT * FROM sites WHERE id = ?", (site_id,)).fetchone()
        return _row_to_site(row) if row else None

    except sqlite3.Error as e:
        raise DatabaseError(f"Failed to get site {site_id}: {e}")


def fetch_sites(conn: sqlite3.Connection) -> list[Site]:
    """Get all sites, newest first."""
    try:
        with _db_lock:
            rows = conn.execute("SELECT * FROM sites ORDER BY created_at DESC, id").fetchall()
        return [_row_to_site(row) for row in rows]

    except sqlite3.Error as e:
        raise DatabaseError(f"Failed to list sites: {e}")


def update_site(conn: sqlite3.Connection, site: Site) -> bool:
    """Overwrite the mutable fields of an existing site.

    Returns:
        True if a row was updated, False if the site does not exist.
    """
    try:
        with _db_lock:
            cursor = conn.execute(
                """
                UPDATE sites
                SET name = ?, url = ?, check_interval_ms = ?, is_active = ?, updated_at = ?
                WHERE id = ?
                """,
                (
                    site.name,
                    site.url,
                    site.check_interval_ms,
                    1 if site.is_active else 0,
                    _ts(site.updated_at),
                    site.id,
                ),
            )
            conn.commit()
        return cursor.rowcount > 0

    except sqlite3.Error as e:
        raise DatabaseError(f"Failed to update site {site.id}: {e}")


def delete_site(conn: sqlite3.Connection, site_id: str) -> bool:
    """Delete a site row. Its check history is kept.

    Returns:
        True if a row was deleted, False if the site does not exist.
    """
    try:
        with _db_lock:
            cursor = conn.execute("DELETE FROM sites WHERE id = ?", (site_id,))
            conn.commit()
        return cursor.rowcount > 0

    except sqlite3.Error as e:
        raise DatabaseError(f"Failed to delete site {site_id}: {e}")


def set_all_sites_active(conn: sqlite3.Connection, active: bool, now: datetime) -> list[str]:
    """Set is_active on every site whose flag differs, in one transaction.

    Args:
        conn: Database connection.
        active: New value for the flag.
        now: Timestamp written to updated_at of the changed rows.

    Returns:
        Ids of the sites whose flag changed.

    Raises:
        DatabaseError: If the update fails.
    """
    flag = 1 if active else 0
    try:
        with _db_lock:
            try:
                rows = conn.execute("SELECT id, updated_at FROM sites WHERE is_active != ?", (flag,)).fetchall()
                changed = [row["id"] for row in rows]
                conn.executemany(
                    "UPDATE sites SET is_active = ?, updated_at = ? WHERE id = ?",
                    [
                        (flag, _ts(next_update_time(_parse_ts(row["updated_at"]), now)), row["id"])
                        for row in rows
                    ],
                )
                conn.commit()
            except sqlite3.Error:
                conn.rollback()
                raise
        return changed

    except sqlite3.Error as e:
        raise DatabaseError(f"Failed to update all sites: {e}")
