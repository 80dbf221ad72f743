"""CLI entry point for Notesync."""

import argparse
import asyncio
import json
import logging
import sys
import traceback
from datetime import datetime
from pathlib import Path

from .config import load_config
from .session import SyncSession


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_data = {
            "timestamp": datetime.fromtimestamp(record.created).isoformat(),
            "level": record.levelname,
            "component": record.name,
            "message": record.getMessage(),
        }

        if record.exc_info:
            log_data["exception"] = "".join(traceback.format_exception(*record.exc_info))

        try:
            return json.dumps(log_data)
        except (TypeError, ValueError):
            log_data["message"] = str(log_data["message"])
            return json.dumps(log_data)


def setup_logging(verbose: bool = False, log_level: str | None = None, json_output: bool = False) -> None:
    """Configure logging.

    Args:
        verbose: Enable debug logging (ignored if log_level is set).
        log_level: Explicit log level (warning, info, debug).
        json_output: Output logs as JSON lines for machine parsing.
    """
    if log_level:
        level_map = {
            "warning": logging.WARNING,
            "info": logging.INFO,
            "debug": logging.DEBUG,
        }
        level = level_map.get(log_level, logging.INFO)
    else:
        level = logging.DEBUG if verbose else logging.INFO

    handler = logging.StreamHandler()
    if json_output:
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(
            logging.Formatter(
                fmt="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )
        )

    logging.basicConfig(level=level, handlers=[handler])

    # httpx logs every request at info
    if level > logging.DEBUG:
        logging.getLogger("httpx").setLevel(logging.WARNING)


async def cmd_status(args: argparse.Namespace) -> int:
    """Show local state and backend reachability."""
    config = load_config(args.config)
    session = SyncSession(config)
    session.notes.hydrate()

    status_data = session.status()
    status_data["timestamp"] = datetime.now().isoformat()
    status_data["backend"] = {
        "kind": config.backend.kind,
        "url": config.backend.url,
        "reachable": await session.backend.ping(),
    }
    status_data["realtime"] = {
        "enabled": config.realtime.enabled,
        "broker": f"{config.realtime.broker}:{config.realtime.port}",
    }
    await session.close()

    if args.json:
        print(json.dumps(status_data, indent=2))
        return 0

    store = status_data["store"]
    backend = status_data["backend"]
    print("Notesync Status")
    print("===============")
    print(f"Client: {status_data['client']['name']} ({status_data['client']['client_id']})")
    print()
    print(f"Backend ({backend['kind']}{' ' + backend['url'] if backend['url'] else ''}):")
    print(f"  Status: {'Reachable' if backend['reachable'] else 'Not reachable'}")
    print()
    print("Local state:")
    print(f"  Notes: {store['notes']}")
    print(f"  Folders: {store['folders']}")
    print(f"  Pending operations: {store['pending_operations']}")
    print(f"  Synced: {'Yes' if store['is_synced'] else 'No'}")
    for table, cursor in store["cursors"].items():
        print(f"  Last {table} sync: {cursor or 'never'}")
    if store["errors"]:
        print("  Errors:")
        for key, message in store["errors"].items():
            print(f"    - {key}: {message}")
    print()
    print(f"Realtime: {'enabled' if config.realtime.enabled else 'disabled'}")
    return 0


async def cmd_sync(args: argparse.Namespace) -> int:
    """Sign in, reconcile once and exit."""
    config = load_config(args.config)
    session = SyncSession(config)
    try:
        synced = await session.sign_in(args.user)
        await session.settle()
        store = session.notes.status()
        print(
            f"Synced {store['notes']} notes and {store['folders']} folders "
            f"({store['pending_operations']} pending)"
        )
        return 0 if synced else 1
    except Exception as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        await session.close()


async def cmd_flush(args: argparse.Namespace) -> int:
    """Replay queued mutations for a user."""
    config = load_config(args.config)
    session = SyncSession(config)
    session.notes.hydrate()
    session.user_id = args.user
    try:
        result = await session.flush()
        print(f"Flush {result.status.value}: {result.flushed} sent, {result.remaining} remaining")
        if result.error:
            print(f"  Stopped at {result.failed_kind}: {result.error}")
        return 0 if result.remaining == 0 else 1
    finally:
        await session.close()


async def cmd_watch(args: argparse.Namespace) -> int:
    """Stay signed in, applying realtime changes until interrupted."""
    config = load_config(args.config)
    session = SyncSession(config)

    print(f"Watching changes for {args.user} (Ctrl+C to stop)")
    try:
        await session.sign_in(args.user)
        await session.start_monitoring()
        await asyncio.Event().wait()
    except (KeyboardInterrupt, asyncio.CancelledError):
        print("\nShutting down...")
    except Exception as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        await session.close()

    return 0


def main() -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        prog="notesync",
        description="Local-first sync engine for notes, folders and settings",
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
        choices=["warning", "info", "debug"],
        default=None,
        help="Set log level explicitly (overrides -v/--verbose)",
    )
    parser.add_argument(
        "--json-logs",
        action="store_true",
        help="Output logs as JSON for machine parsing",
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    status_parser = subparsers.add_parser("status", help="Show local and backend status")
    status_parser.add_argument(
        "--json",
        action="store_true",
        help="Output status as JSON",
    )
    status_parser.set_defaults(func=cmd_status)

    for name, func, help_text in (
        ("sync", cmd_sync, "Sign in and reconcile notes, folders and settings once"),
        ("flush", cmd_flush, "Replay queued offline mutations"),
        ("watch", cmd_watch, "Stay signed in and apply realtime changes"),
    ):
        command_parser = subparsers.add_parser(name, help=help_text)
        command_parser.add_argument(
            "-u", "--user",
            required=True,
            help="User id to sync for",
        )
        command_parser.set_defaults(func=func)

    args = parser.parse_args()

    setup_logging(args.verbose, args.log_level, args.json_logs)

    if not args.command:
        parser.print_help()
        return 1

    try:
        return asyncio.run(args.func(args))
    except KeyboardInterrupt:
        return 0


if __name__ == "__main__":
    sys.exit(main())
