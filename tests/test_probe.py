"""Tests for the probe module."""

import socket
import threading
import time
from datetime import UTC, datetime
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from unittest.mock import MagicMock, patch

import pytest
import requests

from uptimemon.models import CheckResult, CheckStatus, Site
from uptimemon.probe import NON_SUCCESS_MESSAGE, TIMEOUT_MESSAGE, check_site


@pytest.fixture
def site() -> Site:
    """Create a sample site."""
    now = datetime.now(UTC)
    return Site(
        id="site-1",
        name="TEST",
        url="https://example.com/health",
        check_interval_ms=60000,
        is_active=True,
        created_at=now,
        updated_at=now,
    )


def mock_response(status_code: int) -> MagicMock:
    """Create a requests response usable as a context manager."""
    response = MagicMock()
    response.status_code = status_code
    response.__enter__ = MagicMock(return_value=response)
    response.__exit__ = MagicMock(return_value=False)
    return response


def get_free_port() -> int:
    """Get a free port for testing."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("", 0))
        return s.getsockname()[1]


class _SlowHandler(BaseHTTPRequestHandler):
    """Responds after a delay taken from the path, e.g. /sleep/1.5."""

    def log_message(self, format: str, *args: object) -> None:
        pass

    def do_GET(self) -> None:
        parts = self.path.strip("/").split("/")
        if parts[0] == "sleep":
            time.sleep(float(parts[1]))
            code = 200
        else:
            code = int(parts[1])
        self.send_response(code)
        self.send_header("Content-Length", "0")
        self.end_headers()


@pytest.fixture
def local_server() -> str:
    """Run a local HTTP server and return its base URL."""
    server = ThreadingHTTPServer(("127.0.0.1", 0), _SlowHandler)
    server.daemon_threads = True
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    yield f"http://127.0.0.1:{server.server_address[1]}"
    server.shutdown()
    server.server_close()


class TestCheckSite:
    """Tests for check_site with a mocked HTTP client."""

    def test_returns_check_result(self, site: Site) -> None:
        """Returns a CheckResult carrying the site's id and URL."""
        with patch("uptimemon.probe.requests.get") as mock_get:
            mock_get.return_value = mock_response(200)

            result = check_site(site, 5000)

        assert isinstance(result, CheckResult)
        assert result.site_id == "site-1"
        assert result.url == "https://example.com/health"

    def test_success_is_up(self, site: Site) -> None:
        """A 2xx response marks the site as up."""
        with patch("uptimemon.probe.requests.get") as mock_get:
            mock_get.return_value = mock_response(204)

            result = check_site(site, 5000)

        assert result.status == CheckStatus.UP
        assert result.status_code == 204
        assert result.error_message is None

    @pytest.mark.parametrize("status_code", [301, 404, 500, 503])
    def test_non_success_is_down(self, site: Site, status_code: int) -> None:
        """Any final status outside 2xx marks the site as down."""
        with patch("uptimemon.probe.requests.get") as mock_get:
            mock_get.return_value = mock_response(status_code)

            result = check_site(site, 5000)

        assert result.status == CheckStatus.DOWN
        assert result.status_code == status_code
        assert result.error_message == NON_SUCCESS_MESSAGE

    def test_timeout_reports_timeout_value(self, site: Site) -> None:
        """A timed out probe records the timeout as its response time."""
        with patch("uptimemon.probe.requests.get") as mock_get:
            mock_get.side_effect = requests.ReadTimeout("read timed out")

            result = check_site(site, 7500)

        assert result.status == CheckStatus.DOWN
        assert result.response_time_ms == 7500
        assert result.status_code is None
        assert result.error_message == TIMEOUT_MESSAGE

    def test_connect_timeout_is_timeout(self, site: Site) -> None:
        """Connect timeouts are classified the same way as read timeouts."""
        with patch("uptimemon.probe.requests.get") as mock_get:
            mock_get.side_effect = requests.ConnectTimeout("connect timed out")

            result = check_site(site, 3000)

        assert result.error_message == TIMEOUT_MESSAGE
        assert result.response_time_ms == 3000

    def test_connection_error_is_down(self, site: Site) -> None:
        """Network errors are down with the error text and no status code."""
        with patch("uptimemon.probe.requests.get") as mock_get:
            mock_get.side_effect = requests.ConnectionError("Name or service not known")

            result = check_site(site, 5000)

        assert result.status == CheckStatus.DOWN
        assert result.status_code is None
        assert "Name or service not known" in result.error_message
        assert 0 <= result.response_time_ms < 5000

    def test_passes_timeout_and_user_agent(self, site: Site) -> None:
        """Timeout is converted to seconds and the User-Agent header is sent."""
        with patch("uptimemon.probe.requests.get") as mock_get:
            mock_get.return_value = mock_response(200)

            check_site(site, 2500, user_agent="probe-test/1.0")

        _, kwargs = mock_get.call_args
        assert mock_get.call_args.args[0] == "https://example.com/health"
        assert kwargs["timeout"] == 2.5
        assert kwargs["headers"]["User-Agent"] == "probe-test/1.0"
        assert kwargs["stream"] is True

    def test_checked_at_is_probe_start(self, site: Site) -> None:
        """checked_at is taken before the request is made."""
        before = datetime.now(UTC)

        def slow_get(*args: object, **kwargs: object) -> MagicMock:
            time.sleep(0.05)
            return mock_response(200)

        with patch("uptimemon.probe.requests.get", side_effect=slow_get):
            result = check_site(site, 5000)

        assert before <= result.checked_at
        assert (datetime.now(UTC) - result.checked_at).total_seconds() >= 0.05
        assert result.response_time_ms >= 50


class TestCheckSiteLive:
    """Tests for check_site against a local HTTP server."""

    def _site(self, url: str) -> Site:
        now = datetime.now(UTC)
        return Site(
            id="live",
            name="LIVE",
            url=url,
            check_interval_ms=60000,
            is_active=True,
            created_at=now,
            updated_at=now,
        )

    def test_slow_server_times_out(self, local_server: str) -> None:
        """A server slower than the timeout yields a timeout result."""
        result = check_site(self._site(f"{local_server}/sleep/2"), 300)

        assert result.status == CheckStatus.DOWN
        assert result.error_message == TIMEOUT_MESSAGE
        assert result.response_time_ms == 300

    def test_fast_server_is_up(self, local_server: str) -> None:
        """A prompt 200 is up with a small measured response time."""
        result = check_site(self._site(f"{local_server}/status/200"), 2000)

        assert result.status == CheckStatus.UP
        assert result.status_code == 200
        assert result.response_time_ms < 2000

    def test_server_error_is_down(self, local_server: str) -> None:
        """A real 503 is down with the status code recorded."""
        result = check_site(self._site(f"{local_server}/status/503"), 2000)

        assert result.status == CheckStatus.DOWN
        assert result.status_code == 503

    def test_refused_connection_is_down(self) -> None:
        """Nothing listening on the port yields a down result without status."""
        port = get_free_port()

        result = check_site(self._site(f"http://127.0.0.1:{port}/"), 2000)

        assert result.status == CheckStatus.DOWN
        assert result.status_code is None
        assert result.error_message
        assert result.error_message != TIMEOUT_MESSAGE
