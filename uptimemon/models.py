"""Data models for monitored sites, probe results and aggregate reports."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class CheckStatus(str, Enum):
    """Outcome of a single probe."""

    UP = "up"
    DOWN = "down"


@dataclass(frozen=True)
class Site:
    """Desired monitoring state for one site, as held by the registry.

    Attributes:
        id: Opaque unique identifier.
        name: Human readable label.
        url: Absolute http(s) URL to probe.
        check_interval_ms: Time between consecutive probes (milliseconds).
        is_active: Whether the site is currently probed.
        created_at: Creation timestamp (UTC).
        updated_at: Timestamp of the last mutation (UTC).
    """

    id: str
    name: str
    url: str
    check_interval_ms: int
    is_active: bool
    created_at: datetime
    updated_at: datetime


@dataclass(frozen=True)
class CheckResult:
    """Result of a single probe. Immutable once recorded.

    Attributes:
        site_id: Identifier of the probed site (weak reference).
        url: URL that was actually probed.
        status: UP or DOWN.
        response_time_ms: Duration of the attempt in milliseconds. Equals the
            timeout for timed out probes.
        status_code: HTTP status code, or None on network-level failures.
        error_message: Diagnostic text for DOWN results, None otherwise.
        checked_at: Instant the probe was initiated.
    """

    site_id: str
    url: str
    status: CheckStatus
    response_time_ms: int
    status_code: int | None
    error_message: str | None
    checked_at: datetime

    def __post_init__(self) -> None:
        if self.response_time_ms < 0:
            raise ValueError(f"response_time_ms must be non-negative (got {self.response_time_ms})")
        if self.status == CheckStatus.UP and (self.status_code is None or not 200 <= self.status_code <= 299):
            raise ValueError(f"An up result requires a 2xx status code (got {self.status_code})")

    @property
    def is_up(self) -> bool:
        return self.status == CheckStatus.UP


@dataclass(frozen=True)
class HourlyBucket:
    """Checks recorded during one calendar hour (UTC)."""

    bucket_start: datetime
    count: int
    avg_response_time_ms: int
    status_counts: dict[str, int] = field(default_factory=dict)


@dataclass(frozen=True)
class AggregateReport:
    """Uptime and latency statistics for one site over a time window.

    Attributes:
        site_id: Site the report describes.
        window_days: Requested window length in days.
        window_start: Inclusive start of the window.
        window_end: Exclusive end of the window.
        total_checks: Number of checks in the window.
        up_checks: Checks with status UP.
        down_checks: Checks with status DOWN.
        uptime_percentage: 100 * up / total rounded to 2 decimals, 0.0 when empty.
        avg_response_time_ms: Mean latency over all checks, integer ms.
        min_response_time_ms: Fastest check, integer ms (0 when empty).
        max_response_time_ms: Slowest check, integer ms (0 when empty).
        status_distribution: Count per status value.
        hourly_buckets: One bucket per calendar hour in the window, zero-filled.
    """

    site_id: str
    window_days: float
    window_start: datetime
    window_end: datetime
    total_checks: int
    up_checks: int
    down_checks: int
    uptime_percentage: float
    avg_response_time_ms: int
    min_response_time_ms: int
    max_response_time_ms: int
    status_distribution: dict[str, int] = field(default_factory=dict)
    hourly_buckets: list[HourlyBucket] = field(default_factory=list)
