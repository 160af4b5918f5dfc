#!/usr/bin/env python3
"""
ESL Bridge CLI

Operator commands for the platform sync layer.

Usage:
    esl-bridge init-db            # Create database tables
    esl-bridge test               # Log in and resolve the store
    esl-bridge status             # Token, store and queue status
    esl-bridge process-queue      # Run one queue batch
    esl-bridge poll-buttons       # Ingest button presses from the platform log
    esl-bridge retry-failed       # Requeue terminally failed items
    esl-bridge resolve-store      # Resolve (or re-resolve) the store id
    esl-bridge serve              # Run the webhook / trigger server
"""

import argparse
import sys

from colorama import Fore, Style, init

from esl_bridge.bridge import EslBridge
from esl_bridge.config import load_settings
from esl_bridge.errors import BridgeError, ConfigurationError

init()
GREEN = Fore.GREEN
RED = Fore.RED
YELLOW = Fore.YELLOW
BLUE = Fore.CYAN
RESET = Style.RESET_ALL
BOLD = Style.BRIGHT


def print_banner():
    """Print the banner."""
    print(f"""
{BLUE}╔══════════════════════════════════════════════════════════════╗
║     {BOLD}ESL Bridge{RESET}{BLUE}                                               ║
║     Minew ESL cloud sync and button webhook                  ║
╚══════════════════════════════════════════════════════════════╝{RESET}
""")


def print_success(msg: str):
    print(f"{GREEN}✓ {msg}{RESET}")


def print_error(msg: str):
    print(f"{RED}✗ {msg}{RESET}")


def print_warning(msg: str):
    print(f"{YELLOW}⚠ {msg}{RESET}")


def print_info(msg: str):
    print(f"{BLUE}ℹ {msg}{RESET}")


def positive_int(value: str) -> int:
    number = int(value)
    if number < 1:
        raise argparse.ArgumentTypeError(f"must be a positive integer, got {value}")
    return number


def open_bridge() -> EslBridge | None:
    """Build the bridge from settings, reporting configuration problems."""
    try:
        settings = load_settings()
    except ConfigurationError as e:
        print_error(str(e))
        return None
    return EslBridge.from_settings(settings)


def cmd_init_db(args):
    """Create all tables."""
    bridge = open_bridge()
    if bridge is None:
        return 1
    with bridge:
        bridge.create_schema()
    print_success("Database tables created")
    return 0


def cmd_test(args):
    """Test the platform connection."""
    bridge = open_bridge()
    if bridge is None:
        return 1

    if not bridge.settings.has_credentials:
        print_error("Not configured.")
        print_info("Set environment variables:")
        print("    export MINEW_USERNAME=your-account")
        print("    export MINEW_PASSWORD=your-password")
        return 1

    print_info(f"Connecting to {bridge.settings.api_base}...")

    with bridge:
        bridge.create_schema()
        result = bridge.client.health_check()
        if result["status"] != "healthy":
            print_error(f"Connection failed: {result.get('message', 'Unknown error')}")
            return 1
        print_success("Logged in successfully!")

        store_id = bridge.stores.resolve()
        if not store_id:
            print_warning("No active store found in the platform account")
            return 1
        print_success(f"Default store: {store_id}")
    return 0


def cmd_status(args):
    """Show token, store and queue status."""
    bridge = open_bridge()
    if bridge is None:
        return 1

    print_banner()
    with bridge:
        bridge.create_schema()
        stats = bridge.get_stats()

    print(f"{BOLD}Credentials{RESET}")
    print(f"  Account: {stats['tokens']['account'] or '(not set)'}")
    expires = stats["tokens"]["token_expires_at"]
    if expires:
        print(f"  Token expires: {expires}")
    else:
        print_warning("  No valid cached token")

    print(f"\n{BOLD}Store{RESET}")
    if stats["store_id"]:
        print(f"  Default store: {stats['store_id']}")
    else:
        print_warning("  Store id not resolved yet")

    queue = stats["queue"]
    print(f"\n{BOLD}Sync Queue{RESET}")
    print(f"  Pending: {queue['pending']}")
    print(f"  Processing: {queue['processing']}")
    print(f"  Succeeded: {queue['success']}")
    if queue["failed"]:
        print_warning(f"  Failed: {queue['failed']} (run 'esl-bridge retry-failed')")
    else:
        print("  Failed: 0")
    return 0


def cmd_process_queue(args):
    """Run one queue batch."""
    bridge = open_bridge()
    if bridge is None:
        return 1

    with bridge:
        bridge.create_schema()
        result = bridge.process_queue(args.limit)

    print(f"  Processed: {result.processed}")
    print(f"  Succeeded: {result.succeeded}")
    if result.failed:
        print_warning(f"  Failed: {result.failed}")
    else:
        print_success("No failures")
    return 0


def cmd_poll_buttons(args):
    """Ingest button presses from the platform operation log."""
    bridge = open_bridge()
    if bridge is None:
        return 1

    with bridge:
        bridge.create_schema()
        try:
            result = bridge.poll_button_logs(args.minutes)
        except BridgeError as e:
            print_error(f"Button log poll failed: {e}")
            return 1

    print(f"  Events: {result.total_events}")
    print(f"  Requests created: {result.processed}")
    print(f"  Already recorded: {result.duplicates}")
    print(f"  Skipped: {result.skipped}")
    if result.woken_tags:
        print_info(f"  Woke {result.woken_tags} MIX tag(s)")
    if result.errors:
        print_warning(f"  Errors: {result.errors}")
    else:
        print_success("No errors")
    return 0


def cmd_retry_failed(args):
    """Requeue failed items."""
    bridge = open_bridge()
    if bridge is None:
        return 1

    with bridge:
        bridge.create_schema()
        count = bridge.queue.retry_failed(args.ids or None)
    print_success(f"Requeued {count} item(s)")
    return 0


def cmd_resolve_store(args):
    """Resolve the default store id."""
    bridge = open_bridge()
    if bridge is None:
        return 1

    with bridge:
        bridge.create_schema()
        if args.refresh:
            bridge.stores.clear()
        store_id = bridge.stores.resolve()

    if not store_id:
        print_error("Could not resolve a store id")
        return 1
    print_success(f"Default store: {store_id}")
    return 0


def cmd_serve(args):
    """Run the HTTP server."""
    import uvicorn

    uvicorn.run("esl_bridge.app:app", host=args.host, port=args.port)
    return 0


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="ESL Bridge CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  esl-bridge init-db               Create database tables
  esl-bridge test                  Test your connection
  esl-bridge process-queue --limit 20
  esl-bridge resolve-store --refresh
        """,
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    subparsers.add_parser("init-db", help="Create database tables")
    subparsers.add_parser("test", help="Test your connection")
    subparsers.add_parser("status", help="Show sync status")

    queue_parser = subparsers.add_parser("process-queue", help="Run one queue batch")
    queue_parser.add_argument("--limit", type=positive_int, default=None, help="Max items to process")

    poll_parser = subparsers.add_parser("poll-buttons", help="Ingest button presses from the platform log")
    poll_parser.add_argument("--minutes", type=positive_int, default=None, help="Look-back window")

    retry_parser = subparsers.add_parser("retry-failed", help="Requeue failed items")
    retry_parser.add_argument("ids", nargs="*", type=int, help="Only these queue ids")

    store_parser = subparsers.add_parser("resolve-store", help="Resolve the default store id")
    store_parser.add_argument("--refresh", action="store_true", help="Ignore the cached value")

    serve_parser = subparsers.add_parser("serve", help="Run the webhook / trigger server")
    serve_parser.add_argument("--host", default="0.0.0.0")
    serve_parser.add_argument("--port", type=int, default=8000)

    args = parser.parse_args()

    if args.command is None:
        print_banner()
        parser.print_help()
        return 0

    commands = {
        "init-db": cmd_init_db,
        "test": cmd_test,
        "status": cmd_status,
        "process-queue": cmd_process_queue,
        "poll-buttons": cmd_poll_buttons,
        "retry-failed": cmd_retry_failed,
        "resolve-store": cmd_resolve_store,
        "serve": cmd_serve,
    }

    return commands[args.command](args)


if __name__ == "__main__":
    sys.exit(main())
