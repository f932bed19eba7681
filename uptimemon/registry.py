"""Site registry: validated CRUD over monitored sites with change notifications."""

import logging
import sqlite3
import threading
import uuid
from collections.abc import Callable
from dataclasses import replace
from datetime import UTC, datetime
from urllib.parse import urlparse

from .database import (
    delete_site,
    fetch_site,
    fetch_sites,
    insert_site,
    next_update_time,
    set_all_sites_active,
    update_site,
)
from .models import Site

logger = logging.getLogger(__name__)

# Bounds for the time between two probes of one site (milliseconds).
MIN_CHECK_INTERVAL_MS = 1000
MAX_CHECK_INTERVAL_MS = 300000
DEFAULT_CHECK_INTERVAL_MS = 60000

MAX_NAME_LENGTH = 100

UPDATABLE_FIELDS = ("name", "url", "check_interval_ms", "is_active")

SiteListener = Callable[[str], None]


class ValidationError(Exception):
    """Raised when site fields are invalid."""

    pass


class SiteNotFoundError(Exception):
    """Raised when a site id does not exist in the registry."""

    def __init__(self, site_id: str) -> None:
        super().__init__(f"Site '{site_id}' not found")
        self.site_id = site_id


def validate_name(name: object) -> str:
    if not isinstance(name, str) or not name.strip():
        raise ValidationError("Site name cannot be empty")
    if len(name) > MAX_NAME_LENGTH:
        raise ValidationError(f"Site name exceeds {MAX_NAME_LENGTH} characters")
    return name


def validate_url(url: object) -> str:
    """Require an absolute http:// or https:// URL with a host."""
    if not isinstance(url, str) or not url:
        raise ValidationError("Site URL cannot be empty")
    try:
        parsed = urlparse(url)
    except ValueError as e:
        raise ValidationError(f"Invalid URL '{url}': {e}")
    if parsed.scheme not in ("http", "https"):
        raise ValidationError(f"URL must start with http:// or https:// (got '{url}')")
    if not parsed.hostname:
        raise ValidationError(f"URL has no host (got '{url}')")
    return url


def validate_check_interval(check_interval_ms: object) -> int:
    # bool is an int subclass, reject it explicitly
    if isinstance(check_interval_ms, bool) or not isinstance(check_interval_ms, int):
        raise ValidationError(f"Check interval must be an integer number of milliseconds (got {check_interval_ms!r})")
    if not MIN_CHECK_INTERVAL_MS <= check_interval_ms <= MAX_CHECK_INTERVAL_MS:
        raise ValidationError(
            f"Check interval must be between {MIN_CHECK_INTERVAL_MS} and {MAX_CHECK_INTERVAL_MS} ms "
            f"(got {check_interval_ms})"
        )
    return check_interval_ms


def validate_is_active(is_active: object) -> bool:
    if not isinstance(is_active, bool):
        raise ValidationError(f"is_active must be a boolean (got {is_active!r})")
    return is_active


_VALIDATORS: dict[str, Callable[[object], object]] = {
    "name": validate_name,
    "url": validate_url,
    "check_interval_ms": validate_check_interval,
    "is_active": validate_is_active,
}


class SiteRegistry:
    """Holds the desired state of every monitored site.

    All mutations are validated before anything is persisted, and every
    committed mutation is announced to subscribers with the affected site id.

    Example:
        registry = SiteRegistry(db_conn)
        registry.subscribe(scheduler.reconcile)
        site = registry.create("Example", "https://example.com", check_interval_ms=30000)
    """

    def __init__(self, db_conn: sqlite3.Connection) -> None:
        self._db_conn = db_conn
        self._listeners: list[SiteListener] = []
        self._listeners_lock = threading.Lock()

    def subscribe(self, listener: SiteListener) -> None:
        """Register a callback invoked with a site id after each mutation."""
        with self._listeners_lock:
            if listener not in self._listeners:
                self._listeners.append(listener)

    def unsubscribe(self, listener: SiteListener) -> None:
        with self._listeners_lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def _notify(self, site_id: str) -> None:
        with self._listeners_lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(site_id)
            except Exception:
                logger.exception("Site listener failed for %s", site_id)

    def create(
        self,
        name: str,
        url: str,
        check_interval_ms: int = DEFAULT_CHECK_INTERVAL_MS,
        is_active: bool = True,
    ) -> Site:
        """Validate and store a new site.

        Raises:
            ValidationError: If any field is invalid.
            DatabaseError: If the site cannot be stored.
        """
        now = datetime.now(UTC)
        site = Site(
            id=uuid.uuid4().hex,
            name=validate_name(name),
            url=validate_url(url),
            check_interval_ms=validate_check_interval(check_interval_ms),
            is_active=validate_is_active(is_active),
            created_at=now,
            updated_at=now,
        )
        insert_site(self._db_conn, site)
        logger.info("Created site %s (%s) every %dms", site.id, site.url, site.check_interval_ms)
        self._notify(site.id)
        return site

    def get(self, site_id: str) -> Site:
        """Get a site by id.

        Raises:
            SiteNotFoundError: If the site does not exist.
        """
        site = fetch_site(self._db_conn, site_id)
        if site is None:
            raise SiteNotFoundError(site_id)
        return site

    def list(self) -> list[Site]:
        """Get all sites, most recently created first."""
        return fetch_sites(self._db_conn)

    def update(self, site_id: str, **fields: object) -> Site:
        """Apply a partial update to a site.

        Args:
            site_id: Site to update.
            **fields: Any of name, url, check_interval_ms, is_active.

        Returns:
            The updated site.

        Raises:
            ValidationError: If a field is unknown or invalid.
            SiteNotFoundError: If the site does not exist.
        """
        unknown = set(fields) - set(UPDATABLE_FIELDS)
        if unknown:
            raise ValidationError(f"Unknown site field(s): {', '.join(sorted(unknown))}")

        changes = {key: _VALIDATORS[key](value) for key, value in fields.items()}

        current = self.get(site_id)
        updated = replace(
            current,
            **changes,
            updated_at=next_update_time(current.updated_at, datetime.now(UTC)),
        )
        if not update_site(self._db_conn, updated):
            raise SiteNotFoundError(site_id)

        logger.info("Updated site %s: %s", site_id, ", ".join(sorted(changes)) or "no changes")
        self._notify(site_id)
        return updated

    def delete(self, site_id: str) -> None:
        """Delete a site. Its recorded checks are kept.

        Raises:
            SiteNotFoundError: If the site does not exist.
        """
        if not delete_site(self._db_conn, site_id):
            raise SiteNotFoundError(site_id)
        logger.info("Deleted site %s", site_id)
        self._notify(site_id)

    def set_active_for_all(self, active: bool) -> int:
        """Activate or deactivate every site in one bulk update.

        Returns:
            Number of sites whose is_active flag changed.
        """
        validate_is_active(active)
        changed = set_all_sites_active(self._db_conn, active, datetime.now(UTC))
        logger.info("%s %d site(s)", "Activated" if active else "Deactivated", len(changed))
        for site_id in changed:
            self._notify(site_id)
        return len(changed)
