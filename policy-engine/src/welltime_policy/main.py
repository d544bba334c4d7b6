"""Entry point for the Welltime policy engine."""

import argparse
import logging
import sys
import threading
from dataclasses import dataclass
from pathlib import Path

import firebase_admin  # type: ignore[import-untyped]
from firebase_admin import credentials, firestore  # type: ignore[import-untyped]

from .aggregator import UsageAggregator
from .cache import LocalCache
from .config import Config, load_config
from .coordinator import PolicyCoordinator
from .errors import PolicyError
from .firebase_client import FirestorePolicyStore
from .loop import run_sync_loop
from .overrides import OverrideManager, minutes_until_end_of_day
from .store import PolicyStore
from .sync import DeviceUsageSync
from .usage_source import JsonUsageSource

logger = logging.getLogger(__name__)


def setup_logging(verbose: bool, log_file: Path | None = None) -> None:
    """Configure logging for the application."""
    level = logging.DEBUG if verbose else logging.INFO
    handlers: list[logging.Handler] = [logging.StreamHandler()]

    if log_file:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        handlers=handlers,
    )


def init_firebase(config: Config) -> firestore.Client:
    """Initialize Firebase Admin SDK and return Firestore client."""
    cred = credentials.Certificate(str(config.firebase_credentials_path))
    firebase_admin.initialize_app(cred)
    return firestore.client()


@dataclass
class Engine:
    config: Config
    store: PolicyStore
    overrides: OverrideManager
    coordinator: PolicyCoordinator
    sync: DeviceUsageSync


def build_engine(config: Config, store: PolicyStore) -> Engine:
    aggregator = UsageAggregator(store, device_id=config.device_id)
    source = JsonUsageSource(config.usage_export_path or Path("usage-export.json"))
    return Engine(
        config=config,
        store=store,
        overrides=OverrideManager(store),
        coordinator=PolicyCoordinator(store, cache=LocalCache(config.cache_dir)),
        sync=DeviceUsageSync(aggregator, source, store),
    )


def _load_engine(args: argparse.Namespace) -> Engine:
    setup_logging(args.verbose, args.log_file)

    config_path: Path = args.config
    if not config_path.exists():
        logger.error("Configuration file not found: %s", config_path)
        sys.exit(1)

    config = load_config(config_path)
    logger.debug("Loaded configuration for child %s on device %s", config.child_id, config.device_id)

    db = init_firebase(config)
    store = FirestorePolicyStore(db, timeout=config.request_timeout_seconds)
    return build_engine(config, store)


def cmd_run(engine: Engine, args: argparse.Namespace) -> None:
    """Run the sync loop until interrupted."""
    stop = threading.Event()
    try:
        run_sync_loop(
            sync=engine.sync,
            overrides=engine.overrides,
            child_id=engine.config.child_id,
            clock=engine.config.now,
            stop=stop,
            interval_seconds=engine.config.sync_interval_seconds,
            sync_days=engine.config.sync_days,
        )
    except KeyboardInterrupt:
        logger.info("Sync loop interrupted")
        stop.set()


def cmd_sync(engine: Engine, args: argparse.Namespace) -> None:
    days = args.days or engine.config.sync_days
    summary = engine.sync.sync_days(engine.config.child_id, days, engine.config.now())
    print(
        f"access={summary.access_status} apps={summary.apps_synced} rows={summary.usage_rows} "
        f"failed_days={len(summary.failed_days)}"
    )
    if not summary.ok:
        sys.exit(2)


def cmd_decide(engine: Engine, args: argparse.Namespace) -> None:
    decision = engine.coordinator.decide(engine.config.child_id, args.package, engine.config.now())
    print(decision.model_dump_json())
    if not decision.allowed:
        sys.exit(3)


def cmd_streak(engine: Engine, args: argparse.Namespace) -> None:
    status = engine.coordinator.bonus_status(
        engine.config.child_id, args.package, engine.config.now().date()
    )
    print(status.model_dump_json())


def cmd_request(engine: Engine, args: argparse.Namespace) -> None:
    request = engine.overrides.create_request(
        engine.config.child_id, args.package, args.app_name or args.package
    )
    print(request.id)


def cmd_grant(engine: Engine, args: argparse.Namespace) -> None:
    minutes = args.minutes
    if args.until_end_of_day:
        minutes = minutes_until_end_of_day(engine.config.now())
    _, override = engine.overrides.grant(args.request_id, args.parent, minutes, note=args.note)
    print(override.model_dump_json())


def cmd_deny(engine: Engine, args: argparse.Namespace) -> None:
    request = engine.overrides.deny(args.request_id, args.parent, note=args.note)
    print(request.model_dump_json())


def cmd_revoke(engine: Engine, args: argparse.Namespace) -> None:
    override = engine.overrides.revoke(args.override_id, args.parent)
    print(override.model_dump_json())


def cmd_sweep(engine: Engine, args: argparse.Namespace) -> None:
    count = engine.overrides.sweep_expired(child_id=engine.config.child_id)
    print(count)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Welltime screen-time policy engine",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  welltime run                               Sync usage and expire overrides periodically
  welltime sync --days 7                     Sync the last week once
  welltime decide com.roblox.client          Print the access decision for an app
  welltime streak com.roblox.client          Show days in a row under the app limit
  welltime grant REQUEST --parent P --minutes 30
  welltime grant REQUEST --parent P --until-end-of-day
""",
    )
    parser.add_argument(
        "--config", "-c",
        type=Path,
        default=Path("config.json"),
        help="Path to configuration file",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable verbose logging",
    )
    parser.add_argument("--log-file", type=Path, default=None, help="Also log to this file")

    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser("run", help="Run the periodic sync loop")
    run_parser.set_defaults(func=cmd_run)

    sync_parser = subparsers.add_parser("sync", help="Sync device usage once")
    sync_parser.add_argument("--days", type=int, default=None, help="Number of days to sync")
    sync_parser.set_defaults(func=cmd_sync)

    decide_parser = subparsers.add_parser("decide", help="Decide whether an app may be used now")
    decide_parser.add_argument("package")
    decide_parser.set_defaults(func=cmd_decide)

    streak_parser = subparsers.add_parser("streak", help="Show an app's compliance streak and bonus status")
    streak_parser.add_argument("package")
    streak_parser.set_defaults(func=cmd_streak)

    request_parser = subparsers.add_parser("request", help="Ask a parent for more time")
    request_parser.add_argument("package")
    request_parser.add_argument("--app-name", default=None)
    request_parser.set_defaults(func=cmd_request)

    grant_parser = subparsers.add_parser("grant", help="Grant a pending request")
    grant_parser.add_argument("request_id")
    grant_parser.add_argument("--parent", required=True, help="Parent user id")
    duration = grant_parser.add_mutually_exclusive_group(required=True)
    duration.add_argument("--minutes", type=int)
    duration.add_argument("--until-end-of-day", action="store_true")
    grant_parser.add_argument("--note", default=None)
    grant_parser.set_defaults(func=cmd_grant)

    deny_parser = subparsers.add_parser("deny", help="Deny a pending request")
    deny_parser.add_argument("request_id")
    deny_parser.add_argument("--parent", required=True, help="Parent user id")
    deny_parser.add_argument("--note", default=None)
    deny_parser.set_defaults(func=cmd_deny)

    revoke_parser = subparsers.add_parser("revoke", help="Revoke an active override")
    revoke_parser.add_argument("override_id")
    revoke_parser.add_argument("--parent", required=True, help="Parent user id")
    revoke_parser.set_defaults(func=cmd_revoke)

    sweep_parser = subparsers.add_parser("sweep", help="Mark stale overrides as expired")
    sweep_parser.set_defaults(func=cmd_sweep)

    return parser


def main() -> None:
    """Main entry point."""
    args = build_parser().parse_args()
    engine = _load_engine(args)
    try:
        args.func(engine, args)
    except PolicyError as exc:
        logger.error("%s: %s", type(exc).__name__, exc)
        sys.exit(1)


if __name__ == "__main__":
    main()
