"""
Command line entry point.

    enrollment-sync run [--incremental]
    enrollment-sync schedule [--interval MINUTES]
    enrollment-sync registry stats|list [--device D]|clear [--device D]|export PATH|rebuild-mirror [--device D]
    enrollment-sync images stats|cleanup [--days N]|integrity|clear
    enrollment-sync lock status|release
"""

import argparse
import json
import logging
import os
import signal
import sys
from pathlib import Path

from dotenv import load_dotenv

from .config import DEFAULT_CONFIG_PATH, ConfigError, SyncConfig, load_config
from .image_cache import ImageCache
from .logging_config import setup_logging
from .pipeline import SyncPipeline
from .roster import RosterError
from .scheduler import RunLock, Scheduler
from .worker import build_registry

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_LOCKED = 2
EXIT_CONFIG = 3


def _print_json(data) -> None:
    print(json.dumps(data, indent=2, ensure_ascii=False, default=str))


def _run_lock(config: SyncConfig) -> RunLock:
    return RunLock(Path(config.lock_path), max_age_seconds=config.lock_max_age_minutes * 60)


def _image_cache(config: SyncConfig) -> ImageCache:
    return ImageCache(config.cache_path / "images", timeout_seconds=config.download_timeout_seconds)


# =============================================================================
# Commands
# =============================================================================

def cmd_run(config: SyncConfig, args) -> int:
    if args.incremental:
        config.incremental = True

    lock = _run_lock(config)
    with lock.hold() as acquired:
        if not acquired:
            record = lock.read()
            logger.warning(f"Another run holds the lock (pid={record.owner_pid if record else '?'}), skipping")
            return EXIT_LOCKED
        try:
            report = SyncPipeline.from_config(config).run()
        except RosterError as e:
            logger.error(f"Cycle aborted: {e}")
            return EXIT_FAILED

    _print_json(report.summary())
    return EXIT_OK if report.success else EXIT_FAILED


def cmd_schedule(config: SyncConfig, args) -> int:
    if args.interval:
        config.interval_minutes = args.interval

    pipeline = SyncPipeline.from_config(config)

    def job():
        try:
            pipeline.run()
        except RosterError as e:
            logger.error(f"Cycle aborted: {e}")

    scheduler = Scheduler(
        job,
        _run_lock(config),
        interval_seconds=config.interval_minutes * 60,
        run_immediately=config.run_immediately,
    )

    # Handle signals for graceful shutdown
    def signal_handler(sig, frame):
        logger.info(f"Received signal {sig}, stopping after the current cycle")
        scheduler.stop()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    scheduler.run_forever()
    return EXIT_OK


def cmd_registry(config: SyncConfig, args) -> int:
    registry = build_registry(config)

    if args.action == "stats":
        _print_json(registry.stats())
    elif args.action == "list":
        _print_json(registry.list_all(args.device))
    elif args.action == "clear":
        dropped = registry.clear(args.device)
        print(f"Cleared {dropped} entries")
    elif args.action == "export":
        count = registry.export(Path(args.path))
        print(f"Exported {count} entries to {args.path}")
    elif args.action == "rebuild-mirror":
        if registry.mirror is None:
            logger.error("No redis_url configured")
            return EXIT_CONFIG
        rebuilt = registry.rebuild_mirror(args.device)
        print(f"Rebuilt mirror for {rebuilt} device(s)")
    return EXIT_OK


def cmd_images(config: SyncConfig, args) -> int:
    cache = _image_cache(config)

    if args.action == "stats":
        _print_json(cache.stats())
    elif args.action == "cleanup":
        removed = cache.cleanup_old_images(args.days)
        print(f"Removed {removed} photos older than {args.days} days")
    elif args.action == "integrity":
        report = cache.check_integrity()
        _print_json(report)
        if report["missing_files"] or report["untracked_files"]:
            return EXIT_FAILED
    elif args.action == "clear":
        removed = cache.clear()
        print(f"Removed {removed} photos")
    return EXIT_OK


def cmd_lock(config: SyncConfig, args) -> int:
    lock = _run_lock(config)
    if args.action == "status":
        _print_json(lock.status())
    elif args.action == "release":
        if not lock.force_release():
            print("No lock file present")
    return EXIT_OK


# =============================================================================
# Parser
# =============================================================================

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="enrollment-sync",
        description="Synchronize face enrollments from the roster to access-control devices",
    )
    parser.add_argument(
        "--config",
        type=str,
        default=os.environ.get("CONFIG_PATH", DEFAULT_CONFIG_PATH),
        help="Path to configuration file",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug logging",
    )
    parser.add_argument(
        "--no-json-logs",
        action="store_true",
        help="Disable JSON structured logging",
    )

    commands = parser.add_subparsers(dest="command", required=True)

    run = commands.add_parser("run", help="Run one sync cycle")
    run.add_argument("--incremental", action="store_true", help="Only identities changed since the last run")
    run.set_defaults(handler=cmd_run, needs_devices=True)

    schedule = commands.add_parser("schedule", help="Run sync cycles on a fixed cadence")
    schedule.add_argument("--interval", type=float, default=None, help="Minutes between cycles")
    schedule.set_defaults(handler=cmd_schedule, needs_devices=True)

    registry = commands.add_parser("registry", help="Inspect or maintain the registry cache")
    registry_actions = registry.add_subparsers(dest="action", required=True)
    registry_actions.add_parser("stats")
    registry_list = registry_actions.add_parser("list")
    registry_list.add_argument("--device", default=None)
    registry_clear = registry_actions.add_parser("clear")
    registry_clear.add_argument("--device", default=None)
    registry_export = registry_actions.add_parser("export")
    registry_export.add_argument("path")
    registry_rebuild = registry_actions.add_parser("rebuild-mirror")
    registry_rebuild.add_argument("--device", default=None)
    registry.set_defaults(handler=cmd_registry, needs_devices=False)

    images = commands.add_parser("images", help="Inspect or maintain the photo cache")
    image_actions = images.add_subparsers(dest="action", required=True)
    image_actions.add_parser("stats")
    image_cleanup = image_actions.add_parser("cleanup")
    image_cleanup.add_argument("--days", type=int, default=30)
    image_actions.add_parser("integrity")
    image_actions.add_parser("clear")
    images.set_defaults(handler=cmd_images, needs_devices=False)

    lock = commands.add_parser("lock", help="Inspect or release the run lock")
    lock_actions = lock.add_subparsers(dest="action", required=True)
    lock_actions.add_parser("status")
    lock_actions.add_parser("release")
    lock.set_defaults(handler=cmd_lock, needs_devices=False)

    return parser


def main(argv=None) -> int:
    """Main entry point."""
    load_dotenv()
    args = build_parser().parse_args(argv)

    try:
        config = load_config(args.config, validate=args.needs_devices)
    except ConfigError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return EXIT_CONFIG

    setup_logging(
        service_id=config.service_id,
        log_dir=config.log_dir,
        console_level=logging.DEBUG if args.debug else logging.INFO,
        json_logs=config.json_logs and not args.no_json_logs,
    )

    return args.handler(config, args)


if __name__ == "__main__":
    sys.exit(main())
