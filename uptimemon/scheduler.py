"""Per-site probe scheduling with independent fixed-rate loops."""

import logging
import sqlite3
import time
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from threading import Event, Lock, Thread

from .config import MonitorConfig
from .database import insert_check
from .models import CheckResult, Site
from .probe import check_site
from .registry import SiteNotFoundError, SiteRegistry

logger = logging.getLogger(__name__)

# Workers appending results to the event store. Retries back off inside a
# worker, so a few of them keep one failing write from holding up the rest.
STORE_WORKERS = 4

# Seconds stop() waits for in-flight probes on top of the probe timeout.
STOP_GRACE_SECONDS = 5.0


class _SiteLoop:
    """A cancellable repeating probe task for one site."""

    def __init__(self, site: Site, probe_lock: Lock) -> None:
        self.site = site
        self.interval_ms = site.check_interval_ms
        self.probe_lock = probe_lock
        self.started_at = time.monotonic()
        self.cancelled = Event()
        self.thread: Thread | None = None


class Scheduler:
    """Keeps exactly one probe loop running per active site.

    Each active site gets its own daemon thread firing at a fixed rate of
    ``check_interval_ms`` measured from when the loop started. The first probe
    happens one full interval after the site is picked up, never immediately.
    Results are handed to a shared writer pool so a slow or failing store
    never delays the next probe.

    The scheduler owns no copy of the desired state: every reconcile re-reads
    the site from the registry.

    Example:
        scheduler = Scheduler(registry, db_conn, config.monitor)
        scheduler.start()
        # ... later ...
        scheduler.stop()
    """

    def __init__(
        self,
        registry: SiteRegistry,
        db_conn: sqlite3.Connection,
        config: MonitorConfig,
        on_check: Callable[[CheckResult], None] | None = None,
    ) -> None:
        """Initialize the scheduler.

        Args:
            registry: Source of site state and change notifications.
            db_conn: Database connection for storing results.
            config: Probe timeout, store retry and resync settings.
            on_check: Optional callback invoked after each result is stored.
        """
        self._registry = registry
        self._db_conn = db_conn
        self._config = config
        self._on_check = on_check

        self._lock = Lock()
        self._running = False
        self._loops: dict[str, _SiteLoop] = {}
        # Cancelled loops whose in-flight probe may still be running
        self._retired: list[Thread] = []
        # Outlives loop replacement so one site's probes never overlap
        self._probe_locks: dict[str, Lock] = {}
        # Newest updated_at applied per site, and ids seen deleted. Snapshots
        # older than these are ignored.
        self._applied: dict[str, datetime] = {}
        self._deleted: set[str] = set()

        self._writer: ThreadPoolExecutor | None = None
        self._stop_event = Event()
        self._sync_thread: Thread | None = None

    def start(self) -> None:
        """Subscribe to the registry and start a loop for every active site."""
        with self._lock:
            if self._running:
                logger.warning("Scheduler already running")
                return
            self._running = True
            self._stop_event.clear()
            self._writer = ThreadPoolExecutor(max_workers=STORE_WORKERS, thread_name_prefix="check-store")

        self._registry.subscribe(self.reconcile)
        self.sync()

        if self._config.sync_interval > 0:
            self._sync_thread = Thread(target=self._run_sync_loop, name="registry-sync", daemon=True)
            self._sync_thread.start()

        logger.info("Scheduler started with %d active site(s)", len(self.running_site_ids()))

    def stop(self, timeout: float | None = None) -> None:
        """Cancel every loop and wait for in-flight probes and writes.

        Args:
            timeout: Maximum seconds to wait for probe loops to exit. Defaults
                to the probe timeout plus a small grace period.
        """
        with self._lock:
            if not self._running:
                return
            self._running = False
            loops = list(self._loops.values())
            self._loops.clear()
            threads = [loop.thread for loop in loops if loop.thread is not None] + self._retired
            self._retired = []
            for loop in loops:
                loop.cancelled.set()

        logger.info("Stopping scheduler...")
        self._registry.unsubscribe(self.reconcile)
        self._stop_event.set()

        if timeout is None:
            timeout = self._config.probe_timeout_ms / 1000 + STOP_GRACE_SECONDS
        deadline = time.monotonic() + timeout
        for thread in threads:
            thread.join(timeout=max(0.0, deadline - time.monotonic()))
            if thread.is_alive():
                logger.warning("Probe loop %s did not stop within timeout", thread.name)

        if self._sync_thread is not None:
            self._sync_thread.join(timeout=max(0.0, deadline - time.monotonic()))
            self._sync_thread = None

        with self._lock:
            writer = self._writer
            self._writer = None
        if writer is not None:
            writer.shutdown(wait=True)

        logger.info("Scheduler stopped")

    def is_running(self) -> bool:
        with self._lock:
            return self._running

    def running_site_ids(self) -> set[str]:
        """Ids of the sites that currently have a scheduled loop."""
        with self._lock:
            return set(self._loops)

    def reconcile(self, site_id: str) -> None:
        """Bring one site's loop in line with its current registry state.

        Called by the registry after every create, update, (de)activation or
        delete of the site.
        """
        try:
            site: Site | None = self._registry.get(site_id)
        except SiteNotFoundError:
            site = None
        self._apply(site_id, site)

    def sync(self) -> None:
        """Reconcile every site against the registry's full listing.

        The listing may be older than changes already applied by
        ``reconcile``: snapshots with an older ``updated_at`` are skipped, and
        sites missing from the listing are re-read before being dropped.
        """
        sites = self._registry.list()
        known = {site.id for site in sites}

        with self._lock:
            stale = [site_id for site_id in self._loops if site_id not in known]
        for site_id in stale:
            self.reconcile(site_id)

        for site in sites:
            self._apply(site.id, site)

    def _apply(self, site_id: str, site: Site | None) -> None:
        with self._lock:
            if not self._running:
                return
            self._retired = [thread for thread in self._retired if thread.is_alive()]
            loop = self._loops.get(site_id)

            if site is None:
                self._deleted.add(site_id)
                self._applied.pop(site_id, None)
                if loop is not None:
                    self._cancel(site_id)
                    logger.info("Site %s deleted, probing stopped", site_id)
                self._probe_locks.pop(site_id, None)
                return

            if site_id in self._deleted:
                logger.debug("Ignoring snapshot of deleted site %s", site_id)
                return
            applied = self._applied.get(site_id)
            if applied is not None and site.updated_at < applied:
                logger.debug("Ignoring stale snapshot of site %s", site_id)
                return
            self._applied[site_id] = site.updated_at

            if not site.is_active:
                if loop is not None:
                    self._cancel(site_id)
                    logger.info("Site %s deactivated, probing stopped", site_id)
                return

            if loop is None:
                self._launch(site)
                logger.info("Probing %s (%s) every %dms", site.name, site.url, site.check_interval_ms)
            elif loop.interval_ms != site.check_interval_ms:
                self._cancel(site_id)
                self._launch(site)
                logger.info(
                    "Rescheduled %s from %dms to %dms",
                    site.name,
                    loop.interval_ms,
                    site.check_interval_ms,
                )
            else:
                # URL or name change: next tick probes the new snapshot
                loop.site = site

    def _launch(self, site: Site) -> None:
        """Start a loop for a site. Caller holds self._lock."""
        probe_lock = self._probe_locks.setdefault(site.id, Lock())
        loop = _SiteLoop(site, probe_lock)
        loop.thread = Thread(
            target=self._run_site_loop,
            args=(loop,),
            name=f"probe-{site.id[:8]}",
            daemon=True,
        )
        self._loops[site.id] = loop
        loop.thread.start()

    def _cancel(self, site_id: str) -> None:
        """Cancel the next scheduled probe of a site. Caller holds self._lock.

        A probe already in flight runs to completion and is still recorded.
        """
        loop = self._loops.pop(site_id)
        loop.cancelled.set()
        if loop.thread is not None and loop.thread.is_alive():
            self._retired.append(loop.thread)

    def _run_site_loop(self, loop: _SiteLoop) -> None:
        """Fixed-rate probe loop - runs in its own background thread."""
        interval = loop.interval_ms / 1000
        next_tick = loop.started_at + interval

        while not loop.cancelled.wait(timeout=max(0.0, next_tick - time.monotonic())):
            try:
                self._run_tick(loop)
            except Exception:
                logger.exception("Probe of %s failed unexpectedly, continuing at next tick", loop.site.id)

            next_tick += interval
            now = time.monotonic()
            if now > next_tick:
                # Overran the interval: coalesce missed ticks instead of queueing them
                skipped = int((now - next_tick) // interval) + 1
                next_tick += skipped * interval
                logger.warning("%s: probe overran its interval, skipped %d tick(s)", loop.site.name, skipped)

        logger.debug("Probe loop for %s exited", loop.site.id)

    def _run_tick(self, loop: _SiteLoop) -> None:
        with loop.probe_lock:
            site = loop.site
            result = check_site(site, self._config.probe_timeout_ms, self._config.user_agent)

        logger.debug(
            "%s: %s (%dms)",
            site.name,
            result.status.value.upper(),
            result.response_time_ms,
        )
        self._submit(result)

    def _submit(self, result: CheckResult) -> None:
        with self._lock:
            writer = self._writer
        if writer is not None:
            try:
                writer.submit(self._store_result, result)
                return
            except RuntimeError:
                # Writer shut down while this probe was in flight
                pass
        self._store_result(result)

    def _store_result(self, result: CheckResult) -> None:
        """Store a check result with bounded retries, then invoke the callback."""
        max_retries = self._config.store_retry_attempts
        retry_count = 0

        while True:
            try:
                insert_check(self._db_conn, result)
                break
            except Exception as e:
                retry_count += 1
                if retry_count > max_retries:
                    logger.error(
                        "Dropping check result for %s after %d attempts: %s",
                        result.site_id,
                        retry_count,
                        e,
                    )
                    return
                delay = self._config.store_retry_delay_ms / 1000 * (2 ** (retry_count - 1))
                logger.warning(
                    "Failed to store check result for %s (attempt %d/%d, retrying in %.1fs): %s",
                    result.site_id,
                    retry_count,
                    max_retries + 1,
                    delay,
                    e,
                )
                time.sleep(delay)

        if self._on_check is not None:
            try:
                self._on_check(result)
            except Exception as e:
                logger.error("Check callback failed: %s", e)

    def _run_sync_loop(self) -> None:
        """Periodic full resync - picks up changes made by other processes."""
        while not self._stop_event.wait(timeout=self._config.sync_interval):
            try:
                self.sync()
            except Exception as e:
                logger.error("Registry sync failed: %s", e)
