"""CLI commands for the image harvester.

Provides commands for:
- Running a scrape of one page
- Inspecting and resetting distributed admission slots
- Checking Redis connectivity
"""

import argparse
import json
import logging
import sys

import psycopg2
import redis

from crawler.errors import ScrapeError
from crawler.logging_config import setup_logging
from crawler.redis_admission import DistributedAdmissionController, check_redis_available
from env_config import get_log_level, get_redis_url
from processor.domain_canonicalization import resolve_domain

logger = logging.getLogger(__name__)


def _confirm(prompt: str) -> bool:
    try:
        answer = input(f"{prompt} [y/N] ")
    except EOFError:
        return False
    return answer.strip().lower() in {"y", "yes"}


def _redis_controller(redis_url: str) -> DistributedAdmissionController:
    client = redis.from_url(redis_url)  # type: ignore[no-untyped-call]
    return DistributedAdmissionController(client)


def scrape_command(args: argparse.Namespace) -> int:
    """Scrape one page and print the stored references.

    Args:
        args: Command line arguments.

    Returns:
        Exit code (0 for success, 1 for failure).
    """
    from browser.factory import build_session_factory
    from crawler.admission import build_admission_controller
    from crawler.orchestrator import OrchestratorSettings, ScrapeOrchestrator
    from crawler.site_config import (
        JsonFileSiteConfigProvider,
        SiteConfigProvider,
        StaticSiteConfigProvider,
    )
    from env_config import get_storage_dir, get_storage_public_prefix
    from storage.resource_sink import FilesystemResourceSink

    try:
        site_configs: SiteConfigProvider
        if args.site_config:
            site_configs = JsonFileSiteConfigProvider(args.site_config)
        elif args.use_db:
            from storage.website_repository import PostgresSiteConfigProvider

            site_configs = PostgresSiteConfigProvider()
        else:
            site_configs = StaticSiteConfigProvider()

        orchestrator = ScrapeOrchestrator(
            admission=build_admission_controller(),
            session_factory=build_session_factory(),
            site_configs=site_configs,
            sink=FilesystemResourceSink(get_storage_dir(), get_storage_public_prefix()),
            settings=OrchestratorSettings.from_env(),
        )
    except (OSError, ValueError) as e:
        logger.error(f"Could not set up scrape: {e}")
        return 1

    try:
        result = orchestrator.scrape_pages(args.url, min_pages=args.min_pages)
    except ScrapeError as e:
        logger.error(f"Scrape failed: {e}")
        return 1
    except redis.RedisError as e:
        logger.error(f"Scrape failed: Redis error: {e}")
        return 1
    except psycopg2.Error as e:
        logger.error(f"Scrape failed: database error: {e}")
        return 1
    except ValueError as e:
        logger.error(f"Scrape failed: {e}")
        return 1
    finally:
        if args.use_db:
            from storage.db import close_pool

            close_pool()

    if args.json:
        print(
            json.dumps(
                {
                    "url": result.url,
                    "domain": result.domain,
                    "references": result.references,
                    "failed": [{"url": o.url, "error": o.error} for o in result.failed],
                    "skipped": [{"url": o.url, "reason": o.error} for o in result.skipped],
                },
                indent=2,
            )
        )
    else:
        for reference in result.references:
            print(reference)

    logger.info(
        f"Stored {len(result.references)} resources, "
        f"{len(result.failed)} failed, {len(result.skipped)} skipped"
    )
    return 0


def slots_command(args: argparse.Namespace) -> int:
    """Show the number of distributed slots held for a domain."""
    redis_url = args.redis_url or get_redis_url()
    if not check_redis_available(redis_url):
        logger.error("Redis is not available.")
        return 1

    try:
        domain = resolve_domain(args.domain)
        count = _redis_controller(redis_url).get_current_count(domain)
    except Exception as e:
        logger.error(f"Failed to read slots for {args.domain}: {e}")
        return 1

    print(f"{domain}: {count} slot(s) held")
    return 0


def clear_slots_command(args: argparse.Namespace) -> int:
    """Reset the distributed slot counter of a domain."""
    redis_url = args.redis_url or get_redis_url()
    if not check_redis_available(redis_url):
        logger.error("Redis is not available.")
        return 1

    try:
        domain = resolve_domain(args.domain)
    except ValueError as e:
        logger.error(str(e))
        return 1

    if not args.yes and not _confirm(f"Clear all admission slots for {domain}?"):
        logger.info("Aborted.")
        return 1

    try:
        _redis_controller(redis_url).clear_domain(domain)
    except Exception as e:
        logger.error(f"Failed to clear slots for {domain}: {e}")
        return 1

    logger.info(f"Cleared admission slots for {domain}")
    return 0


def check_redis_command(args: argparse.Namespace) -> int:
    """Exit 0 if Redis answers PING."""
    redis_url = args.redis_url or get_redis_url()
    if check_redis_available(redis_url):
        print(f"Redis OK: {redis_url}")
        return 0
    print(f"Redis unavailable: {redis_url}")
    return 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="harvester",
        description="Image harvester management CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--json-logs",
        action="store_true",
        help="Emit structured JSON logs",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default=None,
        help="Log level (default: from LOG_LEVEL env var)",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # scrape command
    scrape_parser = subparsers.add_parser("scrape", help="Scrape images from one page")
    scrape_parser.add_argument("url", help="Page URL")
    scrape_parser.add_argument(
        "--min-pages",
        type=int,
        default=0,
        help="Return nothing unless more than this many images are found (default: 0)",
    )
    scrape_parser.add_argument(
        "--site-config",
        type=str,
        help="JSON file with per-domain site configs",
    )
    scrape_parser.add_argument(
        "--use-db",
        action="store_true",
        help="Read site configs from the websites table",
    )
    scrape_parser.add_argument(
        "--json",
        action="store_true",
        help="Print the result as JSON",
    )
    scrape_parser.set_defaults(func=scrape_command)

    # slots command
    slots_parser = subparsers.add_parser("slots", help="Show distributed slots held for a domain")
    slots_parser.add_argument("domain", help="Domain (hostname or URL)")
    slots_parser.add_argument(
        "--redis-url",
        type=str,
        help="Redis connection URL (default: from REDIS_URL env var)",
    )
    slots_parser.set_defaults(func=slots_command)

    # clear-slots command
    clear_parser = subparsers.add_parser("clear-slots", help="Reset distributed slots for a domain")
    clear_parser.add_argument("domain", help="Domain (hostname or URL)")
    clear_parser.add_argument("--yes", action="store_true", help="Do not ask for confirmation")
    clear_parser.add_argument(
        "--redis-url",
        type=str,
        help="Redis connection URL (default: from REDIS_URL env var)",
    )
    clear_parser.set_defaults(func=clear_slots_command)

    # check-redis command
    check_parser = subparsers.add_parser("check-redis", help="Check Redis connectivity")
    check_parser.add_argument(
        "--redis-url",
        type=str,
        help="Redis connection URL (default: from REDIS_URL env var)",
    )
    check_parser.set_defaults(func=check_redis_command)

    return parser


def main(argv: list[str] | None = None) -> int:
    """Main CLI entry point.

    Returns:
        Exit code.
    """
    parser = build_parser()
    args = parser.parse_args(argv)

    setup_logging(level=args.log_level or get_log_level(), json_format=args.json_logs)

    if not args.command:
        parser.print_help()
        return 1

    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
