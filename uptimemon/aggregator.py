"""Uptime and latency statistics computed from stored check results.

Everything here is a pure function of the event store: nothing is cached or
persisted, so repeated queries over unchanged data return identical reports.

Precision:
- uptime percentage: rounded to 2 decimal places
- latency figures (overall and per bucket): rounded to integer milliseconds
"""

import sqlite3
from datetime import UTC, datetime, timedelta

from .database import CheckAggregates, aggregate_checks, query_checks
from .models import AggregateReport, CheckResult, CheckStatus, HourlyBucket
from .registry import SiteRegistry

DEFAULT_WINDOW_DAYS = 7
DEFAULT_RECENT_LIMIT = 10

# Longest window accepted by get_stats and get_site_checks.
MAX_WINDOW_DAYS = 365

DEFAULT_FEED_HOURS = 24
DEFAULT_FEED_LIMIT = 1000

_HOUR = timedelta(hours=1)


def uptime_percentage(up_checks: int, total_checks: int) -> float:
    """Return 100 * up / total rounded to 2 decimals, or 0.0 when total is 0."""
    if total_checks <= 0:
        return 0.0
    return round(100 * up_checks / total_checks, 2)


def floor_hour(value: datetime) -> datetime:
    """Truncate a timestamp to the start of its calendar hour (UTC)."""
    return value.astimezone(UTC).replace(minute=0, second=0, microsecond=0)


def hour_starts(since: datetime, until: datetime) -> list[datetime]:
    """Start of every calendar hour intersecting the half-open range [since, until)."""
    starts: list[datetime] = []
    current = floor_hour(since)
    end = until.astimezone(UTC)
    while current < end:
        starts.append(current)
        current += _HOUR
    return starts


def build_hourly_buckets(aggregates: CheckAggregates, since: datetime, until: datetime) -> list[HourlyBucket]:
    """Expand sparse per-hour counters into a contiguous, zero-filled sequence."""
    buckets: list[HourlyBucket] = []
    for start in hour_starts(since, until):
        hourly = aggregates.hourly.get(start)
        if hourly is None or hourly.count == 0:
            buckets.append(HourlyBucket(bucket_start=start, count=0, avg_response_time_ms=0, status_counts={}))
            continue
        buckets.append(
            HourlyBucket(
                bucket_start=start,
                count=hourly.count,
                avg_response_time_ms=round(hourly.total_response_time_ms / hourly.count),
                status_counts=dict(hourly.status_counts),
            )
        )
    return buckets


def get_stats(
    conn: sqlite3.Connection,
    registry: SiteRegistry,
    site_id: str,
    window_days: float = DEFAULT_WINDOW_DAYS,
    now: datetime | None = None,
) -> AggregateReport:
    """Compute the aggregate report for a site over the last ``window_days``.

    Args:
        conn: Database connection.
        registry: Used to confirm the site exists.
        site_id: Site to report on.
        window_days: Window length in days, positive and at most MAX_WINDOW_DAYS.
        now: End of the window (exclusive). Defaults to the current time.

    Returns:
        AggregateReport. A site without checks yields a zero-valued report.

    Raises:
        SiteNotFoundError: If the site does not exist.
        ValueError: If window_days is not in (0, MAX_WINDOW_DAYS].
        DatabaseError: If the store cannot be queried.
    """
    if not 0 < window_days <= MAX_WINDOW_DAYS:
        raise ValueError(f"window_days must be positive and at most {MAX_WINDOW_DAYS} (got {window_days})")

    registry.get(site_id)

    until = (now or datetime.now(UTC)).astimezone(UTC)
    since = until - timedelta(days=window_days)

    aggregates = aggregate_checks(conn, site_id, since, until)

    up_checks = aggregates.status_counts.get(CheckStatus.UP.value, 0)
    down_checks = aggregates.status_counts.get(CheckStatus.DOWN.value, 0)

    return AggregateReport(
        site_id=site_id,
        window_days=window_days,
        window_start=since,
        window_end=until,
        total_checks=aggregates.total,
        up_checks=up_checks,
        down_checks=down_checks,
        uptime_percentage=uptime_percentage(up_checks, aggregates.total),
        avg_response_time_ms=round(aggregates.avg_response_time_ms or 0),
        min_response_time_ms=aggregates.min_response_time_ms or 0,
        max_response_time_ms=aggregates.max_response_time_ms or 0,
        status_distribution=dict(aggregates.status_counts),
        hourly_buckets=build_hourly_buckets(aggregates, since, until),
    )


def get_recent(
    conn: sqlite3.Connection,
    registry: SiteRegistry,
    site_id: str,
    limit: int = DEFAULT_RECENT_LIMIT,
) -> list[CheckResult]:
    """Get the most recent checks of a site, newest first.

    Raises:
        SiteNotFoundError: If the site does not exist.
        ValueError: If limit is not positive.
    """
    if limit < 1:
        raise ValueError(f"limit must be at least 1 (got {limit})")

    registry.get(site_id)
    return query_checks(conn, site_id=site_id, limit=limit)


def get_site_checks(
    conn: sqlite3.Connection,
    registry: SiteRegistry,
    site_id: str,
    hours: float = DEFAULT_FEED_HOURS,
    limit: int = DEFAULT_FEED_LIMIT,
    now: datetime | None = None,
) -> list[CheckResult]:
    """Get a site's checks from the last ``hours``, newest first.

    Feeds response time charts. The window is [now - hours, now).

    Raises:
        SiteNotFoundError: If the site does not exist.
        ValueError: If hours is out of range or limit is not positive.
    """
    if not 0 < hours <= MAX_WINDOW_DAYS * 24:
        raise ValueError(f"hours must be positive and at most {MAX_WINDOW_DAYS * 24} (got {hours})")
    if limit < 1:
        raise ValueError(f"limit must be at least 1 (got {limit})")

    registry.get(site_id)

    until = (now or datetime.now(UTC)).astimezone(UTC)
    since = until - timedelta(hours=hours)
    return query_checks(conn, site_id=site_id, since=since, until=until, limit=limit)
