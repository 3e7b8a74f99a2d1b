"""Command-line interface for TGV Max availability searches"""

import argparse
import asyncio
import sys
from pathlib import Path
from typing import Any, Dict, Optional

from loguru import logger

from . import __version__
from .browser_driver import CamoufoxSessionDriver
from .cache import ResponseCache
from .config import DEFAULT_PROXY_COOLDOWN_MINUTES, FETCH_MAX_CONCURRENT
from .date_utils import parse_date_list
from .exceptions import BlockedError, TGVMaxError, ValidationError
from .fetcher import AvailabilityFetcher
from .logging_config import setup_logging
from .proxy_pool import ProxyPool
from .session import SessionLifecycleManager
from .storage import save_search_results


class DateAction(argparse.Action):
    """Collects --date and --dates values into one list"""

    def __call__(self, parser, namespace, values, option_string=None):
        if getattr(namespace, self.dest, None) is None:
            setattr(namespace, self.dest, [])

        if isinstance(values, list):
            getattr(namespace, self.dest).extend(values)
        else:
            getattr(namespace, self.dest).append(values)


def parse_month(value: str):
    """argparse type for YYYY-MM"""
    try:
        year_str, month_str = value.split("-")
        year, month = int(year_str), int(month_str)
    except ValueError:
        raise argparse.ArgumentTypeError(f"Invalid month '{value}', expected YYYY-MM")
    if not 1 <= month <= 12:
        raise argparse.ArgumentTypeError(f"Invalid month '{value}', expected YYYY-MM")
    return year, month


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="TGV Max Jeune availability search",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    search_group = parser.add_argument_group("Train Search")
    search_group.add_argument("--origin", type=str, help="Origin station code (e.g. FRPNO)")
    search_group.add_argument("--destination", type=str, help="Destination station code (e.g. FRLYS)")

    when_group = search_group.add_mutually_exclusive_group()
    when_group.add_argument(
        "--date", "--dates",
        dest="dates",
        action=DateAction,
        nargs="+",
        help="Travel date(s) as YYYY-MM-DD or range YYYY-MM-DD:YYYY-MM-DD",
    )
    when_group.add_argument(
        "--month", type=parse_month, help="Whole month as YYYY-MM"
    )
    search_group.add_argument(
        "--refresh", action="store_true", help="Ignore cached results"
    )
    search_group.add_argument(
        "--stations", type=str, metavar="LABEL", help="Look up station codes by name"
    )
    search_group.add_argument(
        "--max-concurrent",
        type=int,
        default=FETCH_MAX_CONCURRENT,
        help=f"Parallel requests per batch (default: {FETCH_MAX_CONCURRENT})",
    )

    session_group = parser.add_argument_group("Browser Session")
    session_group.add_argument(
        "--no-headless", action="store_true", help="Visible browser mode"
    )
    session_group.add_argument(
        "--proxy-file",
        type=str,
        help="Path to proxy file (format: host:port or host:port:username:password per line)",
    )
    session_group.add_argument(
        "--proxy-cooldown",
        type=int,
        default=DEFAULT_PROXY_COOLDOWN_MINUTES,
        help=f"Minutes to rest a blocked proxy (default: {DEFAULT_PROXY_COOLDOWN_MINUTES})",
    )

    config_group = parser.add_argument_group("Configuration")
    config_group.add_argument("--output", type=str, help="Write the result JSON to this file")
    config_group.add_argument("--verbose", action="store_true", help="Debug logging")
    config_group.add_argument("--log-file", type=str, help="Log file path")

    return parser


def build_fetcher(args: argparse.Namespace) -> AvailabilityFetcher:
    """Wire a fetcher backed by a browser session for one CLI run"""
    proxy_pool: Optional[ProxyPool] = None
    if args.proxy_file:
        proxy_pool = ProxyPool(Path(args.proxy_file), cooldown_minutes=args.proxy_cooldown)

    driver = CamoufoxSessionDriver(headless=not args.no_headless)
    session_manager = SessionLifecycleManager(driver, proxy_pool=proxy_pool)
    return AvailabilityFetcher(
        ResponseCache(),
        session_manager,
        max_concurrent=args.max_concurrent,
    )


def log_summary(result: Dict[str, Any]) -> None:
    summary = result.get("summary")
    if not summary:
        return
    logger.info("=" * 60)
    logger.info(f"🚄 {result['origin']} → {result['destination']} ({result['startDate']} to {result['endDate']})")
    logger.info(f"   Days searched:       {summary['totalDays']}")
    logger.info(f"   Days with seats:     {summary['daysWithAvailability']}")
    logger.info(f"   Trains with seats:   {summary['totalTrains']}")
    logger.info(f"   Cache hit rate:      {summary['cacheHitRate']}%")
    if result.get("errors"):
        logger.warning(f"   Days with errors:    {len(result['errors'])}")
    logger.info("=" * 60)


async def run_search(args: argparse.Namespace, fetcher: AvailabilityFetcher) -> Any:
    if args.stations:
        return await fetcher.search_stations(args.stations)

    if not args.origin or not args.destination:
        raise ValidationError("--origin and --destination are required")

    if args.month:
        year, month = args.month
        result = await fetcher.fetch_month(args.origin, args.destination, year, month, args.refresh)
    elif args.dates:
        try:
            days = parse_date_list(args.dates)
        except ValueError as e:
            raise ValidationError(str(e))
        if len(days) == 1:
            return await fetcher.fetch_day(args.origin, args.destination, days[0], args.refresh)
        result = await fetcher.fetch_days(args.origin, args.destination, days, args.refresh)
    else:
        raise ValidationError("One of --date or --month is required")

    log_summary(result)
    return result


def main() -> None:
    """Main CLI entry point"""
    parser = build_parser()
    args = parser.parse_args()

    log_file = Path(args.log_file) if args.log_file else Path("./logs/tgvmax.log")
    setup_logging(verbose=args.verbose, log_file=log_file)

    logger.info(f"TGV Max search (v{__version__})")

    async def run():
        fetcher = None
        try:
            fetcher = build_fetcher(args)
            result = await run_search(args, fetcher)

            if args.output:
                await save_search_results(result, Path(args.output))
            elif isinstance(result, dict) and "data" in result:
                source = "cache" if result.get("fromCache") else "live"
                proposals = (result["data"] or {}).get("proposals") or []
                logger.info(f"🚄 {result['date']}: {len(proposals)} trains with seats ({source})")

        except BlockedError as e:
            logger.error("=" * 60)
            logger.error(f"🚫 BLOCKED BY REMOTE SITE after {e.attempts} attempts")
            logger.error(f"   {e}")
            logger.error("   Wait before retrying or use --proxy-file to rotate IPs")
            logger.error("=" * 60)
            sys.exit(2)
        except (TGVMaxError, FileNotFoundError, ValueError) as e:
            logger.error(f"❌ {e}")
            sys.exit(1)
        except KeyboardInterrupt:
            logger.warning("Interrupted by user")
            sys.exit(1)
        except Exception as e:
            logger.exception(f"Fatal error: {e}")
            sys.exit(1)
        finally:
            if fetcher is not None:
                await fetcher.session_manager.close()

    asyncio.run(run())


if __name__ == "__main__":
    main()
