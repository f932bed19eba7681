"""HTTP API server exposing sites, checks and uptime statistics."""

import json
import logging
import sqlite3
import threading
from http.server import BaseHTTPRequestHandler, HTTPServer
from typing import Any, Dict, List, Optional
from urllib.parse import parse_qs, urlparse

from .aggregator import (
    DEFAULT_FEED_HOURS,
    DEFAULT_FEED_LIMIT,
    DEFAULT_RECENT_LIMIT,
    DEFAULT_WINDOW_DAYS,
    MAX_WINDOW_DAYS,
    get_recent,
    get_site_checks,
    get_stats,
)
from .config import ApiConfig
from .database import DatabaseError, count_checks, query_checks
from .models import AggregateReport, CheckResult, CheckStatus, Site
from .registry import UPDATABLE_FIELDS, SiteNotFoundError, SiteRegistry, ValidationError

logger = logging.getLogger(__name__)

# Default and maximum page size for GET /checks.
CHECKS_PAGE_SIZE = 100
CHECKS_MAX_PAGE_SIZE = 1000

# Largest request body accepted for POST/PUT.
MAX_BODY_BYTES = 64 * 1024


class ApiError(Exception):
    """Raised when an API operation fails."""
    pass


class _BadRequest(Exception):
    """Malformed request parameters or body."""
    pass


def site_to_dict(site: Site) -> Dict[str, Any]:
    """Convert a Site to a JSON-serializable dictionary."""
    return {
        "id": site.id,
        "name": site.name,
        "url": site.url,
        "check_interval_ms": site.check_interval_ms,
        "is_active": site.is_active,
        "created_at": site.created_at.isoformat(),
        "updated_at": site.updated_at.isoformat(),
    }


def check_to_dict(check: CheckResult) -> Dict[str, Any]:
    """Convert a CheckResult to a JSON-serializable dictionary."""
    return {
        "site_id": check.site_id,
        "url": check.url,
        "status": check.status.value,
        "response_time_ms": check.response_time_ms,
        "status_code": check.status_code,
        "error": check.error_message,
        "timestamp": check.checked_at.isoformat(),
    }


def report_to_dict(report: AggregateReport) -> Dict[str, Any]:
    """Convert an AggregateReport to a JSON-serializable dictionary."""
    return {
        "site_id": report.site_id,
        "window_days": report.window_days,
        "window_start": report.window_start.isoformat(),
        "window_end": report.window_end.isoformat(),
        "total_checks": report.total_checks,
        "up_checks": report.up_checks,
        "down_checks": report.down_checks,
        "uptime_percentage": report.uptime_percentage,
        "avg_response_time_ms": report.avg_response_time_ms,
        "min_response_time_ms": report.min_response_time_ms,
        "max_response_time_ms": report.max_response_time_ms,
        "status_distribution": report.status_distribution,
        "hourly_buckets": [
            {
                "bucket_start": bucket.bucket_start.isoformat(),
                "count": bucket.count,
                "avg_response_time_ms": bucket.avg_response_time_ms,
                "status_counts": bucket.status_counts,
            }
            for bucket in report.hourly_buckets
        ],
    }


def _int_param(params: Dict[str, List[str]], name: str, default: int, minimum: int = 0) -> int:
    values = params.get(name)
    if not values:
        return default
    try:
        value = int(values[0])
    except ValueError:
        raise _BadRequest(f"'{name}' must be an integer")
    if value < minimum:
        raise _BadRequest(f"'{name}' must be at least {minimum}")
    return value


def _float_param(params: Dict[str, List[str]], name: str, default: float, maximum: float) -> float:
    values = params.get(name)
    if not values:
        return default
    try:
        value = float(values[0])
    except ValueError:
        raise _BadRequest(f"'{name}' must be a number")
    if not value > 0:
        raise _BadRequest(f"'{name}' must be positive")
    if value > maximum:
        raise _BadRequest(f"'{name}' must be at most {maximum:g}")
    return value


class ApiHandler(BaseHTTPRequestHandler):
    """HTTP request handler for the JSON API."""

    # Class-level references set by factory
    db_conn: Optional[sqlite3.Connection] = None
    registry: Optional[SiteRegistry] = None

    def log_message(self, format: str, *args: Any) -> None:
        """Override to use Python logging instead of stderr."""
        logger.debug("API %s - %s", self.address_string(), format % args)

    def _send_json(self, code: int, data: Any) -> None:
        """Send a JSON response with the given status code."""
        body = json.dumps(data, indent=2).encode("utf-8")
        self.send_response(code)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(body)))
        self.send_header("Connection", "close")
        self.end_headers()
        self.wfile.write(body)

    def _send_error_json(self, code: int, message: str) -> None:
        """Send a JSON error response."""
        self._send_json(code, {"error": message})

    def _read_json_body(self) -> Dict[str, Any]:
        length = int(self.headers.get("Content-Length") or 0)
        if length > MAX_BODY_BYTES:
            raise _BadRequest("Request body too large")
        raw = self.rfile.read(length) if length else b""
        try:
            data = json.loads(raw or b"{}")
        except (json.JSONDecodeError, UnicodeDecodeError):
            raise _BadRequest("Request body must be valid JSON")
        if not isinstance(data, dict):
            raise _BadRequest("Request body must be a JSON object")
        return data

    def _dispatch(self, method: str) -> None:
        """Route a request and map domain errors to HTTP status codes."""
        if self.db_conn is None or self.registry is None:
            self._send_error_json(503, "Database not available")
            return

        parsed = urlparse(self.path)
        parts = [part for part in parsed.path.split("/") if part]
        params = parse_qs(parsed.query)

        try:
            handled = self._route(method, parts, params)
            if not handled:
                self._send_error_json(404, "Not found")
        except _BadRequest as e:
            self._send_error_json(400, str(e))
        except ValidationError as e:
            self._send_error_json(400, str(e))
        except SiteNotFoundError:
            self._send_error_json(404, "Site not found")
        except DatabaseError as e:
            logger.error("Database error in %s %s: %s", method, parsed.path, e)
            self._send_error_json(500, "Database error")
        except Exception as e:
            logger.exception("Error handling request: %s", e)
            self._send_error_json(500, "Internal server error")

    def _route(self, method: str, parts: List[str], params: Dict[str, List[str]]) -> bool:
        if method == "GET":
            if parts == ["health"]:
                self._send_json(200, {"status": "ok"})
            elif parts == ["sites"]:
                self._handle_list_sites()
            elif len(parts) == 2 and parts[0] == "sites":
                self._send_json(200, site_to_dict(self.registry.get(parts[1])))
            elif parts == ["checks"]:
                self._handle_list_checks(params)
            elif len(parts) == 3 and parts[:2] == ["checks", "stats"]:
                self._handle_stats(parts[2], params)
            elif len(parts) == 3 and parts[:2] == ["checks", "recent"]:
                self._handle_recent(parts[2], params)
            elif len(parts) == 3 and parts[:2] == ["checks", "site"]:
                self._handle_site_checks(parts[2], params)
            else:
                return False
        elif method == "POST":
            if parts == ["sites"]:
                self._handle_create_site()
            elif parts == ["sites", "start-all"]:
                self._send_json(200, {"updated": self.registry.set_active_for_all(True)})
            elif parts == ["sites", "stop-all"]:
                self._send_json(200, {"updated": self.registry.set_active_for_all(False)})
            else:
                return False
        elif method == "PUT":
            if len(parts) == 2 and parts[0] == "sites":
                fields = self._read_json_body()
                unknown = set(fields) - set(UPDATABLE_FIELDS)
                if unknown:
                    raise _BadRequest(f"Unknown site field(s): {', '.join(sorted(unknown))}")
                site = self.registry.update(parts[1], **fields)
                self._send_json(200, site_to_dict(site))
            else:
                return False
        elif method == "DELETE":
            if len(parts) == 2 and parts[0] == "sites":
                self.registry.delete(parts[1])
                self._send_json(200, {"deleted": parts[1]})
            else:
                return False
        else:
            return False
        return True

    def do_GET(self) -> None:
        """Handle GET requests."""
        self._dispatch("GET")

    def do_POST(self) -> None:
        """Handle POST requests."""
        self._dispatch("POST")

    def do_PUT(self) -> None:
        """Handle PUT requests."""
        self._dispatch("PUT")

    def do_DELETE(self) -> None:
        """Handle DELETE requests."""
        self._dispatch("DELETE")

    def _handle_list_sites(self) -> None:
        """Handle GET /sites endpoint."""
        self._send_json(200, [site_to_dict(site) for site in self.registry.list()])

    def _handle_create_site(self) -> None:
        """Handle POST /sites endpoint."""
        data = self._read_json_body()
        if "name" not in data or "url" not in data:
            raise _BadRequest("Name and URL are required")

        kwargs = {key: data[key] for key in ("check_interval_ms", "is_active") if key in data}
        site = self.registry.create(data["name"], data["url"], **kwargs)
        self._send_json(201, site_to_dict(site))

    def _handle_list_checks(self, params: Dict[str, List[str]]) -> None:
        """Handle GET /checks endpoint."""
        site_id = params.get("site_id", [None])[0]
        status_value = params.get("status", [None])[0]
        try:
            status = CheckStatus(status_value) if status_value else None
        except ValueError:
            raise _BadRequest("'status' must be 'up' or 'down'")

        limit = min(_int_param(params, "limit", CHECKS_PAGE_SIZE, minimum=1), CHECKS_MAX_PAGE_SIZE)
        offset = _int_param(params, "offset", 0)

        checks = query_checks(self.db_conn, site_id=site_id, status=status, limit=limit, offset=offset)
        total = count_checks(self.db_conn, site_id=site_id, status=status)
        self._send_json(
            200,
            {
                "checks": [check_to_dict(c) for c in checks],
                "count": len(checks),
                "total": total,
                "limit": limit,
                "offset": offset,
            },
        )

    def _handle_site_checks(self, site_id: str, params: Dict[str, List[str]]) -> None:
        """Handle GET /checks/site/<site_id> endpoint."""
        hours = _float_param(params, "hours", DEFAULT_FEED_HOURS, maximum=MAX_WINDOW_DAYS * 24)
        limit = min(_int_param(params, "limit", DEFAULT_FEED_LIMIT, minimum=1), CHECKS_MAX_PAGE_SIZE)
        checks = get_site_checks(self.db_conn, self.registry, site_id, hours=hours, limit=limit)
        self._send_json(200, [check_to_dict(c) for c in checks])

    def _handle_stats(self, site_id: str, params: Dict[str, List[str]]) -> None:
        """Handle GET /checks/stats/<site_id> endpoint."""
        days = _float_param(params, "days", DEFAULT_WINDOW_DAYS, maximum=MAX_WINDOW_DAYS)
        report = get_stats(self.db_conn, self.registry, site_id, window_days=days)
        self._send_json(200, report_to_dict(report))

    def _handle_recent(self, site_id: str, params: Dict[str, List[str]]) -> None:
        """Handle GET /checks/recent/<site_id> endpoint."""
        limit = min(_int_param(params, "limit", DEFAULT_RECENT_LIMIT, minimum=1), CHECKS_MAX_PAGE_SIZE)
        checks = get_recent(self.db_conn, self.registry, site_id, limit=limit)
        self._send_json(200, [check_to_dict(c) for c in checks])


def _create_handler_class(db_conn: sqlite3.Connection, registry: SiteRegistry) -> type:
    """Create a handler class with the database connection and registry bound."""

    class BoundApiHandler(ApiHandler):
        pass

    BoundApiHandler.db_conn = db_conn
    BoundApiHandler.registry = registry
    return BoundApiHandler


class ApiServer:
    """Threaded HTTP API server for sites and uptime statistics."""

    def __init__(
        self,
        config: ApiConfig,
        db_conn: sqlite3.Connection,
        registry: SiteRegistry,
    ) -> None:
        """Initialize the API server.

        Args:
            config: API configuration.
            db_conn: Database connection for querying checks.
            registry: Site registry for CRUD and bulk start/stop.
        """
        self.config = config
        self.db_conn = db_conn
        self.registry = registry
        self._server: Optional[HTTPServer] = None
        self._thread: Optional[threading.Thread] = None
        self._shutdown_event = threading.Event()

    def start(self) -> None:
        """Start the API server in a background thread.

        Raises:
            ApiError: If the server fails to start.
        """
        if self._thread is not None and self._thread.is_alive():
            logger.warning("API server is already running")
            return

        try:
            handler_class = _create_handler_class(self.db_conn, self.registry)
            self._server = HTTPServer(("", self.config.port), handler_class)
            self._server.timeout = 1.0  # Allow periodic shutdown checks

            self._shutdown_event.clear()
            self._thread = threading.Thread(
                target=self._serve_forever,
                name="api-server",
                daemon=True,
            )
            self._thread.start()

            logger.info("API server started on port %d", self.config.port)

        except OSError as e:
            if e.errno == 98 or e.errno == 48:  # EADDRINUSE (Linux=98, macOS=48)
                raise ApiError(
                    f"Port {self.config.port} is already in use. "
                    f"Another process may be using this port, or uptimemon is already running."
                )
            elif e.errno == 13:  # EACCES - Permission denied
                raise ApiError(
                    f"Permission denied for port {self.config.port}. "
                    f"Ports below 1024 require root privileges."
                )
            else:
                raise ApiError(f"Failed to start API server on port {self.config.port}: {e}")

    def _serve_forever(self) -> None:
        """Server loop that checks for shutdown."""
        while not self._shutdown_event.is_set():
            if self._server:
                self._server.handle_request()

    def stop(self) -> None:
        """Stop the API server gracefully."""
        if self._thread is None:
            return

        logger.info("Stopping API server...")
        self._shutdown_event.set()

        if self._server:
            self._server.server_close()

        if self._thread.is_alive():
            self._thread.join(timeout=5.0)

        self._server = None
        self._thread = None
        logger.info("API server stopped")

    @property
    def is_running(self) -> bool:
        """Check if the server is running."""
        return self._thread is not None and self._thread.is_alive()
