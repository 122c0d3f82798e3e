"""CLI entry point for syncgc."""

import argparse
import asyncio
import json
import logging
import sys
from datetime import datetime
from pathlib import Path

from .config import Config, load_config
from .sync import ChangeReclaimer, ChangeStore, compute_watermark


LOG_LEVELS = {
    "warning": logging.WARNING,
    "info": logging.INFO,
    "debug": logging.DEBUG,
}

PLAIN_LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


class JSONFormatter(logging.Formatter):
    """One JSON object per log line."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created).isoformat(),
            "level": record.levelname,
            "component": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def _log_level(args: argparse.Namespace) -> int:
    """Pick the level from --log-level, falling back to -v."""
    if args.log_level:
        return LOG_LEVELS[args.log_level]
    return logging.DEBUG if args.verbose else logging.INFO


def setup_logging(args: argparse.Namespace) -> None:
    """Configure root logging from parsed CLI arguments."""
    handler = logging.StreamHandler()
    if args.json_logs:
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(
            logging.Formatter(PLAIN_LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")
        )

    logging.basicConfig(level=_log_level(args), handlers=[handler])


def _open_store(config: Config) -> ChangeStore:
    store = ChangeStore(
        config.store.db_path,
        busy_timeout=config.store.busy_timeout_seconds,
    )
    store.connect()
    return store


def _make_reclaimer(config: Config, store: ChangeStore) -> ChangeReclaimer:
    return ChangeReclaimer(
        store,
        batch_size=config.reclaim.batch_size,
        continuation_delay=config.reclaim.continuation_delay,
    )


async def cmd_reclaim(args: argparse.Namespace) -> int:
    """Reclaim obsolete changes until none are left."""
    config = load_config(args.config)

    store = _open_store(config)
    try:
        result = await _make_reclaimer(config, store).drain()
    except Exception as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        store.close()

    if args.json:
        print(json.dumps({
            "passes": result.passes,
            "deleted": result.deleted,
            "timestamp": result.timestamp.isoformat() if result.timestamp else None,
        }, indent=2))
    else:
        print(f"Reclaimed {result.deleted} changes in {result.passes} passes")

    return 0


async def cmd_watch(args: argparse.Namespace) -> int:
    """Reclaim obsolete changes periodically."""
    config = load_config(args.config)

    if not config.reclaim.enabled:
        print("Reclamation is disabled in config", file=sys.stderr)
        return 1

    interval = args.interval or config.reclaim.interval_seconds
    print(f"Watching {config.store.db_path} (node: {config.node.name}, every {interval}s)")

    store = _open_store(config)
    try:
        await _make_reclaimer(config, store).watch(interval_seconds=interval)
    except (KeyboardInterrupt, asyncio.CancelledError):
        print("\nShutting down...")
    finally:
        store.close()

    return 0


def cmd_status(args: argparse.Namespace) -> int:
    """Show change-log statistics and the current watermark."""
    config = load_config(args.config)

    try:
        store = _open_store(config)
    except Exception as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    try:
        stats = store.get_stats()
        nodes = store.list_sync_nodes()
        try:
            watermark = compute_watermark(nodes)
            watermark_error = None
        except ValueError as e:
            watermark = None
            watermark_error = str(e)

        oldest = []
        if args.changes > 0:
            oldest = [c.to_dict() for c in store.list_changes(limit=args.changes)]

        eligible = 0
        if watermark is not None and stats["total_changes"]:
            with store.independent_scope() as scope:
                eligible = len(
                    scope.query_change_keys_below(watermark, stats["total_changes"])
                )
    finally:
        store.close()

    status_data = {
        "timestamp": datetime.now().isoformat(),
        "node": {"name": config.node.name},
        "store": {"db_path": config.store.db_path, **stats},
        "sync_nodes": [
            {"id": n.id, "my_revision": n.my_revision, "node_type": n.node_type}
            for n in nodes
        ],
        "watermark": watermark,
        "watermark_error": watermark_error,
        "eligible_changes": eligible,
        "oldest_changes": oldest,
    }

    if args.json:
        print(json.dumps(status_data, indent=2))
        return 0

    print("syncgc Status")
    print("=============")
    print(f"Node: {config.node.name}")
    print(f"Database: {config.store.db_path}")
    print()
    print(f"Changes: {stats['total_changes']}", end="")
    if stats["total_changes"]:
        print(f" (rev {stats['min_rev']}..{stats['max_rev']})")
    else:
        print()
    print(f"Sync nodes: {stats['total_nodes']}")
    for node in status_data["sync_nodes"]:
        print(f"    - {node['id']} ({node['node_type']}, rev {node['my_revision']})")
    print()
    if watermark_error:
        print(f"Watermark: invalid ({watermark_error})")
    elif watermark is None:
        print("Watermark: none (no sync nodes)")
    else:
        print(f"Watermark: {watermark}")
    print(f"Eligible for reclamation: {eligible}")
    if oldest:
        print()
        print("Oldest changes:")
        for change in oldest:
            print(
                f"    - rev {change['rev']}: "
                f"{change['table_name']}/{change['obj_key']} (type {change['change_type']})"
            )

    return 0


def main() -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        prog="syncgc",
        description="Reclaim change-log rows every sync node has consumed",
    )
    parser.add_argument(
        "-c", "--config",
        type=Path,
        default=None,
        help="Path to config file (default: built-in defaults)",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        choices=list(LOG_LEVELS),
        default=None,
        help="Set log level explicitly (overrides -v/--verbose)",
    )
    parser.add_argument(
        "--json-logs",
        action="store_true",
        help="Output logs as JSON for machine parsing",
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # Reclaim command
    reclaim_parser = subparsers.add_parser("reclaim", help="Reclaim obsolete changes once")
    reclaim_parser.add_argument(
        "--json",
        action="store_true",
        help="Output result as JSON",
    )
    reclaim_parser.set_defaults(func=cmd_reclaim)

    # Watch command
    watch_parser = subparsers.add_parser("watch", help="Reclaim obsolete changes periodically")
    watch_parser.add_argument(
        "-i", "--interval",
        type=int,
        default=None,
        help="Seconds between runs (default: reclaim.interval_seconds)",
    )
    watch_parser.set_defaults(func=cmd_watch)

    # Status command
    status_parser = subparsers.add_parser("status", help="Show change-log status")
    status_parser.add_argument(
        "--json",
        action="store_true",
        help="Output status as JSON",
    )
    status_parser.add_argument(
        "--changes",
        type=int,
        default=0,
        metavar="N",
        help="Also list the N oldest changes in the log",
    )
    status_parser.set_defaults(func=cmd_status)

    args = parser.parse_args()

    setup_logging(args)

    if not args.command:
        parser.print_help()
        return 1

    func = args.func
    if asyncio.iscoroutinefunction(func):
        try:
            return asyncio.run(func(args))
        except KeyboardInterrupt:
            return 0
    return func(args)


if __name__ == "__main__":
    sys.exit(main())
