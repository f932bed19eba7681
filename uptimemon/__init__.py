"""uptimemon - Uptime and latency monitoring for external websites."""

import argparse
import json
import logging
import signal
import sys
from threading import Event
from typing import Optional

__version__ = "0.1.0"

# Global shutdown event for signal handlers
_shutdown_event: Optional[Event] = None

logger = logging.getLogger(__name__)


def _setup_logging(verbose: bool = False) -> None:
    """Configure logging for the application."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        stream=sys.stdout,
    )


def _handle_shutdown(signum: int, frame: object) -> None:
    """Signal handler for graceful shutdown."""
    sig_name = signal.Signals(signum).name
    logger.info("Received %s, initiating shutdown...", sig_name)
    if _shutdown_event is not None:
        _shutdown_event.set()


def _open_registry(config_path: str):
    """Load configuration and open the database. Exits on failure."""
    from .config import ConfigError, load_config
    from .database import DatabaseError, init_db
    from .registry import SiteRegistry

    try:
        config = load_config(config_path)
    except ConfigError as e:
        print(f"Error: {e}")
        sys.exit(1)

    try:
        db_conn = init_db(config.database.path)
    except DatabaseError as e:
        print(f"Error: {e}")
        sys.exit(1)

    return config, db_conn, SiteRegistry(db_conn)


def _seed_sites(config, registry) -> None:
    """Register configured sites whose URL is not known yet."""
    known_urls = {site.url for site in registry.list()}
    for site_config in config.sites:
        if site_config.url in known_urls:
            continue
        registry.create(
            site_config.name,
            site_config.url,
            check_interval_ms=site_config.check_interval_ms,
            is_active=site_config.is_active,
        )


def _cmd_run(args: argparse.Namespace) -> None:
    """Execute the run command - start the scheduler and API server."""
    global _shutdown_event

    _setup_logging(args.verbose)

    logger.info("uptimemon %s starting...", __version__)

    # Import here to avoid circular imports and allow logging setup first
    from .api import ApiError, ApiServer
    from .config import ConfigError, load_config
    from .database import DatabaseError, init_db
    from .registry import SiteRegistry, ValidationError
    from .scheduler import Scheduler

    # 1. Load configuration
    try:
        config = load_config(args.config)
        logger.info("Configuration loaded from %s", args.config)
    except ConfigError as e:
        logger.error("Configuration error: %s", e)
        sys.exit(1)

    # 2. Initialize database and registry
    try:
        db_conn = init_db(config.database.path)
        logger.info("Database initialized at %s", config.database.path)
        registry = SiteRegistry(db_conn)
        _seed_sites(config, registry)
    except (DatabaseError, ValidationError) as e:
        logger.error("Database error: %s", e)
        sys.exit(1)

    # 3. Setup shutdown handler
    _shutdown_event = Event()
    signal.signal(signal.SIGTERM, _handle_shutdown)
    signal.signal(signal.SIGINT, _handle_shutdown)

    # 4. Start components
    scheduler = Scheduler(registry, db_conn, config.monitor)
    api_server: Optional[ApiServer] = None

    try:
        scheduler.start()

        if config.api.enabled:
            try:
                api_server = ApiServer(config.api, db_conn, registry)
                api_server.start()
            except ApiError as e:
                logger.error("Failed to start API server: %s", e)
                logger.warning("Continuing without API server")
                api_server = None

        logger.info("All components started, waiting for shutdown signal...")

        # 5. Wait for shutdown signal
        _shutdown_event.wait()

    except KeyboardInterrupt:
        # Backup handler if signal doesn't work
        logger.info("Keyboard interrupt received")
    finally:
        # 6. Cleanup - stop all components
        logger.info("Shutting down components...")

        if api_server is not None:
            api_server.stop()

        scheduler.stop()

        db_conn.close()
        logger.info("Database connection closed")

        logger.info("Shutdown complete")


def _cmd_sites(args: argparse.Namespace) -> None:
    """Execute the sites command - list registered sites."""
    _, db_conn, registry = _open_registry(args.config)
    sites = registry.list()
    db_conn.close()

    if not sites:
        print("No sites registered.")
        return

    for site in sites:
        state = "active" if site.is_active else "inactive"
        print(f"{site.id}  {state:<8}  {site.check_interval_ms:>6}ms  {site.name}  {site.url}")


def _cmd_set_all(args: argparse.Namespace) -> None:
    """Execute the start-all / stop-all commands."""
    from .database import DatabaseError

    _, db_conn, registry = _open_registry(args.config)
    try:
        updated = registry.set_active_for_all(args.active)
    except DatabaseError as e:
        print(f"Error: {e}")
        sys.exit(1)
    finally:
        db_conn.close()

    verb = "Started" if args.active else "Stopped"
    print(f"{verb} monitoring for {updated} site(s).")


def _cmd_stats(args: argparse.Namespace) -> None:
    """Execute the stats command - print an aggregate report as JSON."""
    from .aggregator import get_stats
    from .api import report_to_dict
    from .registry import SiteNotFoundError

    _, db_conn, registry = _open_registry(args.config)
    try:
        report = get_stats(db_conn, registry, args.site_id, window_days=args.days)
    except (SiteNotFoundError, ValueError) as e:
        print(f"Error: {e}")
        sys.exit(1)
    finally:
        db_conn.close()

    print(json.dumps(report_to_dict(report), indent=2))


def _cmd_recent(args: argparse.Namespace) -> None:
    """Execute the recent command - print the latest checks of a site."""
    from .aggregator import get_recent
    from .registry import SiteNotFoundError

    _, db_conn, registry = _open_registry(args.config)
    try:
        checks = get_recent(db_conn, registry, args.site_id, limit=args.limit)
    except (SiteNotFoundError, ValueError) as e:
        print(f"Error: {e}")
        sys.exit(1)
    finally:
        db_conn.close()

    for check in checks:
        code = check.status_code if check.status_code is not None else "-"
        error = f"  {check.error_message}" if check.error_message else ""
        print(f"{check.checked_at.isoformat()}  {check.status.value:<4}  {code:>3}  {check.response_time_ms}ms{error}")


def main() -> None:
    """Main entry point for the uptimemon package."""
    parser = argparse.ArgumentParser(
        description="uptimemon - Uptime and latency monitoring for external websites"
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"uptimemon {__version__}",
    )

    subparsers = parser.add_subparsers(dest="command")

    def add_config_argument(subparser: argparse.ArgumentParser) -> None:
        subparser.add_argument(
            "-c", "--config",
            default="config.yaml",
            help="Path to configuration file (default: config.yaml)",
        )

    # Run subcommand (default behavior)
    run_parser = subparsers.add_parser(
        "run",
        help="Start the probe scheduler and API server (default)",
    )
    add_config_argument(run_parser)
    run_parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose (debug) logging",
    )
    run_parser.set_defaults(func=_cmd_run)

    # Sites subcommand
    sites_parser = subparsers.add_parser("sites", help="List registered sites")
    add_config_argument(sites_parser)
    sites_parser.set_defaults(func=_cmd_sites)

    # Start-all / stop-all subcommands
    start_all_parser = subparsers.add_parser("start-all", help="Activate monitoring for every site")
    add_config_argument(start_all_parser)
    start_all_parser.set_defaults(func=_cmd_set_all, active=True)

    stop_all_parser = subparsers.add_parser("stop-all", help="Deactivate monitoring for every site")
    add_config_argument(stop_all_parser)
    stop_all_parser.set_defaults(func=_cmd_set_all, active=False)

    # Stats subcommand
    stats_parser = subparsers.add_parser("stats", help="Show uptime and latency statistics for a site")
    add_config_argument(stats_parser)
    stats_parser.add_argument("site_id", help="Site identifier")
    stats_parser.add_argument(
        "--days",
        type=float,
        default=7,
        help="Window length in days (default: 7, at most 365)",
    )
    stats_parser.set_defaults(func=_cmd_stats)

    # Recent subcommand
    recent_parser = subparsers.add_parser("recent", help="Show the most recent checks for a site")
    add_config_argument(recent_parser)
    recent_parser.add_argument("site_id", help="Site identifier")
    recent_parser.add_argument(
        "--limit",
        type=int,
        default=10,
        help="Number of checks to show (default: 10)",
    )
    recent_parser.set_defaults(func=_cmd_recent)

    args = parser.parse_args()

    # Default to 'run' if no command specified
    if args.command is None:
        args.config = "config.yaml"
        args.verbose = False
        args.func = _cmd_run

    args.func(args)
