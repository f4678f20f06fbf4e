#!/usr/bin/env python3
"""
Listing Sync - Main Entry Point

Usage:
    # Run API server (also runs the cron scheduler)
    python main.py server

    # Reconcile one source now
    python main.py reconcile oldtimerfarm

    # Reconcile every source in sequence
    python main.py reconcile-all

    # Classify a single listing
    python main.py check-status https://example.com/cars/123

    # Re-check listings not confirmed in the last 7 days
    python main.py sweep --days 7

The manual CAPTCHA relay needs the HTTP endpoints, so one-off CLI runs only
get automated solving unless the server is running in the same process.
"""

import sys
import json
import asyncio
import argparse
import logging

from dotenv import load_dotenv

load_dotenv()

from api.config import get_config  # noqa: E402
from api.logging_config import setup_logging  # noqa: E402

logger = logging.getLogger(__name__)


def check_environment() -> bool:
    """Report configuration problems. Returns False if any were found."""
    problems = get_config().validate()
    if problems:
        print("❌ Configuration problems:")
        for problem in problems:
            print(f"  - {problem}")
        return False

    print("✅ Configuration OK")
    return True


def run_server(host: str, port: int, reload: bool = False):
    """Run the FastAPI server."""
    import uvicorn

    print(f"🚀 Starting server on {host}:{port}")
    uvicorn.run(
        "api.main:app",
        host=host,
        port=port,
        reload=reload,
        log_level="info"
    )


async def run_job(command: str, args) -> int:
    from core.engine import ListingSyncEngine, UnknownSourceError

    engine = ListingSyncEngine.from_config(get_config())
    await engine.initialize()

    try:
        if command == "reconcile-all":
            results = await engine.reconcile_all()
            output = {"skipped": True} if results is None else {
                source_tag: result.to_dict() if result is not None else {"aborted": True}
                for source_tag, result in results.items()
            }

        elif command == "reconcile":
            try:
                result = await engine.reconcile_source(args.source)
            except UnknownSourceError:
                logger.error(f"Unknown source: {args.source}. Known: {sorted(engine.extractors)}")
                return 2
            output = {"skipped": True} if result is None else result.to_dict()

        elif command == "check-status":
            change = await engine.check_status(args.url)
            output = {
                "url": change.url,
                "old_status": change.old_status.value if change.old_status else None,
                "status": change.new_status.value,
            }

        else:
            result = await engine.sweep_statuses(days_old=args.days, check_all=args.all)
            output = {"skipped": True} if result is None else result.to_dict()

        print(json.dumps(output, indent=2, ensure_ascii=False))
        return 0
    finally:
        await engine.close()


def main():
    """Main entry point."""
    app_config = get_config()
    parser = argparse.ArgumentParser(
        description="Listing Sync - vehicle listing acquisition and reconciliation"
    )

    subparsers = parser.add_subparsers(dest='command', help='Command to run')

    # Server command
    server_parser = subparsers.add_parser('server', help='Run API server')
    server_parser.add_argument('--host', default=app_config.HOST, help='Host to bind to')
    server_parser.add_argument('--port', type=int, default=app_config.PORT, help='Port to bind to')
    server_parser.add_argument('--reload', action='store_true', help='Enable auto-reload')

    # Reconcile command
    reconcile_parser = subparsers.add_parser('reconcile', help='Crawl a source and mark vanished listings removed')
    reconcile_parser.add_argument('source', help='Source tag from SOURCES_FILE')

    # Full cycle
    subparsers.add_parser('reconcile-all', help='Reconcile every source, one after another')

    # Single status check
    check_parser = subparsers.add_parser('check-status', help='Classify one listing')
    check_parser.add_argument('url', help='Listing URL')

    # Status sweep
    sweep_parser = subparsers.add_parser('sweep', help='Re-check stale listings')
    sweep_parser.add_argument('--days', type=int, default=None, help='Re-check listings older than N days')
    sweep_parser.add_argument('--all', action='store_true', help='Include sold/removed listings')

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        return

    # Check environment
    if not check_environment():
        sys.exit(1)

    if args.command == 'server':
        run_server(args.host, args.port, args.reload)
    else:
        setup_logging()
        sys.exit(asyncio.run(run_job(args.command, args)))


if __name__ == "__main__":
    main()
