"""Command-line interface for the site-discovery crawler."""

import argparse
import asyncio
import json
import signal
import sys
from typing import List, Optional

from a11y_crawler.config import ConfigurationError, load_crawler_config, settings
from a11y_crawler.coordinator import CrawlCoordinator
from a11y_crawler.database import CrawlStore, get_db_client
from a11y_crawler.logging_config import setup_logging
from a11y_crawler.models import CrawlRun
from a11y_crawler.utils.session_manager import SessionStore


async def _run_crawl(store: CrawlStore, config, headless: bool) -> CrawlRun:
    """Run one crawl; Ctrl+C cancels it gracefully."""
    coordinator = CrawlCoordinator(store, SessionStore(store), headless=headless)
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, coordinator.cancel, config.crawler_id)
    except NotImplementedError:
        pass  # Windows event loops

    coordinator.add_progress_listener(
        lambda p: print(
            f"  [{p['pages_discovered']}/{config.max_pages}] depth {p['current_depth']} "
            f"queue {p['queue_size']} {p['current_url'] or ''}"
        )
    )
    run = await coordinator.run(config, triggered_by="cli")
    print_summary(coordinator.summarize(run.run_id))
    return run


def print_summary(summary: dict) -> None:
    """Print a run summary in a formatted way."""
    print(f"\n{'=' * 60}")
    print(f"Run {summary['run_id']}: {summary['status']}")
    print(f"{'=' * 60}")
    print(f"  • Pages: {summary['total_pages']} ({summary['pages_failed']} failed)")
    print(f"  • Max depth reached: {summary['max_depth_reached']}")
    print(f"  • Pages with login form: {summary['pages_with_login_form']}")
    if summary['auth_successful'] is not None:
        print(f"  • Authenticated: {'yes' if summary['auth_successful'] else 'no'}")
    if summary['failed_by_error']:
        print(f"\n⚠️  Failures:")
        for error, count in summary['failed_by_error'].items():
            print(f"  • {count}x {error}")
    print(f"\n{'=' * 60}\n")


def run_command(args) -> int:
    """Run a crawl from a YAML/JSON configuration file."""
    try:
        config = load_crawler_config(args.config)
    except ConfigurationError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 2

    store = get_db_client(args.db)
    try:
        store.save_crawler(config)
        headless = settings.HEADLESS and not args.headed
        run = asyncio.run(_run_crawl(store, config, headless))
    finally:
        store.close()

    print(f"Run id: {run.run_id}")
    return 0 if run.status.value in ("completed", "cancelled") else 1


def pages_command(args) -> int:
    """List the pages discovered by a run."""
    store = get_db_client(args.db)
    try:
        pages = store.get_pages(args.run_id)
    finally:
        store.close()

    if args.output == "json":
        print(json.dumps([page.to_dict() for page in pages], indent=2, default=str))
        return 0

    if not pages:
        print(f"No pages found for run: {args.run_id}")
        return 0
    for page in pages:
        status = page.status_code or "ERR"
        print(f"{status:>4}  d{page.depth}  {page.url}  {page.title or ''}")
        if page.error:
            print(f"        {page.error}")
    return 0


def runs_command(args) -> int:
    """List runs of a crawler, newest first."""
    store = get_db_client(args.db)
    try:
        runs = store.list_runs(args.crawler_id)
    finally:
        store.close()

    if args.output == "json":
        print(json.dumps([run.to_dict() for run in runs], indent=2, default=str))
        return 0

    if not runs:
        print(f"No runs found for crawler: {args.crawler_id}")
        return 0
    for run in runs:
        print(
            f"{run.run_id}  {run.status.value:<10} {run.pages_discovered:>5} pages  "
            f"{run.pages_failed:>4} failed  {run.created_at:%Y-%m-%d %H:%M}"
        )
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Accessibility crawler - discover the pages of a web application for testing"
    )

    # Global flags (before subcommands)
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default=settings.LOG_LEVEL.upper(),
        help="Set logging verbosity (default: INFO)",
    )
    parser.add_argument(
        "--log-file",
        default=settings.LOG_FILE,
        help="Write logs to file in addition to console",
    )
    parser.add_argument(
        "--db",
        default=settings.DATABASE_URL,
        help="Database URL (default: DATABASE_URL or sqlite:///a11y_crawler.db)",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    run_parser = subparsers.add_parser("run", help="Crawl a site from a config file.")
    run_parser.add_argument("config", help="Crawler config (.yaml, .yml or .json)")
    run_parser.add_argument(
        "--headed",
        action="store_true",
        help="Show the browser window",
    )
    run_parser.set_defaults(func=run_command)

    pages_parser = subparsers.add_parser("pages", help="List pages discovered by a run.")
    pages_parser.add_argument("run_id", help="Run id printed by 'run'")
    pages_parser.add_argument(
        "--output", "-o", choices=["text", "json"], default="text",
        help="Output format (default: text)",
    )
    pages_parser.set_defaults(func=pages_command)

    runs_parser = subparsers.add_parser("runs", help="List runs of a crawler.")
    runs_parser.add_argument("crawler_id", help="Crawler id")
    runs_parser.add_argument(
        "--output", "-o", choices=["text", "json"], default="text",
        help="Output format (default: text)",
    )
    runs_parser.set_defaults(func=runs_command)

    args = parser.parse_args(argv)

    # Configure logging based on flags
    setup_logging(level=args.log_level, log_file=args.log_file)

    if hasattr(args, "func"):
        return args.func(args)
    parser.print_help()
    return 1


if __name__ == "__main__":
    sys.exit(main())
