"""Probe executor: one HTTP GET per call, classified as up or down."""

import logging
import time
from datetime import UTC, datetime

import requests

from .config import DEFAULT_USER_AGENT
from .models import CheckResult, CheckStatus, Site

logger = logging.getLogger(__name__)

TIMEOUT_MESSAGE = "timeout"
NON_SUCCESS_MESSAGE = "non-success status"


def _is_success_status(status_code: int) -> bool:
    return 200 <= status_code <= 299


def _elapsed_ms(start: float) -> int:
    return max(0, int((time.monotonic() - start) * 1000))


def check_site(site: Site, timeout_ms: int, user_agent: str = DEFAULT_USER_AGENT) -> CheckResult:
    """Perform a single HTTP GET against a site and classify the outcome.

    Redirects are followed and only the response headers are awaited; the body
    is never read. The call has no side effects beyond the network request.

    Args:
        site: Site to probe. Its id and URL are copied into the result.
        timeout_ms: Connect and read timeout in milliseconds.
        user_agent: User-Agent header sent with the request.

    Returns:
        CheckResult with status, response time and any error details.
    """
    checked_at = datetime.now(UTC)
    start = time.monotonic()

    try:
        with requests.get(
            site.url,
            timeout=timeout_ms / 1000,
            headers={"User-Agent": user_agent},
            stream=True,
        ) as response:
            elapsed_ms = _elapsed_ms(start)
            status_code = response.status_code

    except requests.Timeout:
        return CheckResult(
            site_id=site.id,
            url=site.url,
            status=CheckStatus.DOWN,
            response_time_ms=timeout_ms,
            status_code=None,
            error_message=TIMEOUT_MESSAGE,
            checked_at=checked_at,
        )

    except requests.RequestException as e:
        # DNS failure, refused connection, TLS error, malformed response...
        logger.debug("Probe of %s failed: %s", site.url, e)
        return CheckResult(
            site_id=site.id,
            url=site.url,
            status=CheckStatus.DOWN,
            response_time_ms=_elapsed_ms(start),
            status_code=None,
            error_message=str(e) or e.__class__.__name__,
            checked_at=checked_at,
        )

    if _is_success_status(status_code):
        return CheckResult(
            site_id=site.id,
            url=site.url,
            status=CheckStatus.UP,
            response_time_ms=elapsed_ms,
            status_code=status_code,
            error_message=None,
            checked_at=checked_at,
        )

    return CheckResult(
        site_id=site.id,
        url=site.url,
        status=CheckStatus.DOWN,
        response_time_ms=elapsed_ms,
        status_code=status_code,
        error_message=NON_SUCCESS_MESSAGE,
        checked_at=checked_at,
    )
