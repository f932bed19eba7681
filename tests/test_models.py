"""Tests for the data models."""

from datetime import UTC, datetime

import pytest

from uptimemon.models import CheckResult, CheckStatus


def _check(**overrides: object) -> CheckResult:
    fields = {
        "site_id": "site-a",
        "url": "https://example.com",
        "status": CheckStatus.UP,
        "response_time_ms": 120,
        "status_code": 200,
        "error_message": None,
        "checked_at": datetime(2026, 1, 17, 10, 30, tzinfo=UTC),
    }
    fields.update(overrides)
    return CheckResult(**fields)


class TestCheckResult:
    """Tests for CheckResult invariants."""

    def test_up_with_2xx(self) -> None:
        """Up results with a 2xx code are valid."""
        assert _check(status_code=299).is_up

    def test_down_without_status_code(self) -> None:
        """Network failures are down without a status code."""
        check = _check(status=CheckStatus.DOWN, status_code=None, error_message="timeout")

        assert not check.is_up

    @pytest.mark.parametrize("status_code", [None, 199, 301, 500])
    def test_up_requires_2xx(self, status_code: int | None) -> None:
        """Up results must carry a 2xx status code."""
        with pytest.raises(ValueError, match="2xx"):
            _check(status_code=status_code)

    def test_rejects_negative_response_time(self) -> None:
        """Response time cannot be negative."""
        with pytest.raises(ValueError, match="non-negative"):
            _check(response_time_ms=-1)

    def test_is_immutable(self) -> None:
        """Recorded results cannot be modified."""
        check = _check()

        with pytest.raises(AttributeError):
            check.status = CheckStatus.DOWN

    def test_status_is_string_enum(self) -> None:
        """Status values compare equal to their string form."""
        assert CheckStatus.UP == "up"
        assert CheckStatus("down") is CheckStatus.DOWN
