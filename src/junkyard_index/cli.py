import argparse
import asyncio
import contextlib
import logging
import os
import signal
import sys

# Force UTF-8 output on Windows so Rich tables render correctly
if sys.platform == "win32":
    os.environ.setdefault("PYTHONIOENCODING", "utf-8")
    if hasattr(sys.stdout, "reconfigure"):
        sys.stdout.reconfigure(encoding="utf-8")
    if hasattr(sys.stderr, "reconfigure"):
        sys.stderr.reconfigure(encoding="utf-8")

from rich.console import Console

from .alerts.engine import AlertEngine
from .alerts.notify import DiscordNotifier, EmailNotifier
from .alerts.store import SavedSearchStore
from .alerts.subscriptions import PolarSubscriptions
from .cache.memory import MemoryCache, NullCache
from .cancellation import CancelToken
from .config import Settings, load_settings
from .db import init_db, make_engine, make_session_factory
from .models.search import SORT_OPTIONS, SearchFilters
from .output.terminal import TerminalOutput
from .scrapers.pyp import PypScraper
from .scrapers.row52 import Row52Scraper
from .search.aggregator import Aggregator
from .search.locations import list_locations, locations_by_state

logger = logging.getLogger(__name__)


def build_adapters(settings: Settings, sources: list[str] | None = None):
    adapters = [PypScraper(settings), Row52Scraper(settings)]
    return [a for a in adapters if not sources or a.source in sources]


def filters_from_args(args) -> SearchFilters:
    year_range = None
    if args.year_min is not None or args.year_max is not None:
        year_range = (args.year_min or 0, args.year_max or 9999)
    user_location = None
    if args.lat is not None and args.lng is not None:
        user_location = (args.lat, args.lng)
    return SearchFilters(
        query=args.query,
        makes=args.make or [],
        models=args.model or [],
        colors=args.color or [],
        states=args.state or [],
        sources=args.source or [],
        year_range=year_range,
        max_distance=args.max_distance,
        user_location=user_location,
        sort_by=args.sort,
    )


def _cancel_on_sigint(cancel: CancelToken) -> None:
    try:
        asyncio.get_running_loop().add_signal_handler(signal.SIGINT, cancel.cancel)
    except (NotImplementedError, RuntimeError):
        # Not supported on Windows event loops; KeyboardInterrupt still ends the run
        pass


async def run_search(args, settings: Settings):
    console = Console()
    cancel = CancelToken()
    _cancel_on_sigint(cancel)

    cache = NullCache() if args.no_cache else MemoryCache(settings.vehicle_cache_ttl_seconds)
    async with contextlib.AsyncExitStack() as stack:
        adapters = [
            await stack.enter_async_context(a) for a in build_adapters(settings, args.source)
        ]
        aggregator = Aggregator(adapters, cache=cache, settings=settings)
        with console.status(f"Searching {len(adapters)} sources for '{args.query}'..."):
            result = await aggregator.search(filters_from_args(args), cancel)

    TerminalOutput(console).display_search(args.query, result, limit=args.limit)


async def run_locations(args, settings: Settings):
    console = Console()
    async with contextlib.AsyncExitStack() as stack:
        adapters = [
            await stack.enter_async_context(a) for a in build_adapters(settings, args.source)
        ]
        aggregator = Aggregator(adapters, settings=settings)
        with console.status("Loading locations..."):
            locations = await list_locations(aggregator)

    if args.state:
        locations = locations_by_state(locations, args.state)
    TerminalOutput(console).display_locations(locations)


async def run_check_alerts(args, settings: Settings):
    engine = make_engine(settings.database_url)
    store = SavedSearchStore(make_session_factory(engine))
    cache = MemoryCache(settings.vehicle_cache_ttl_seconds)

    async with contextlib.AsyncExitStack() as stack:
        adapters = [await stack.enter_async_context(a) for a in build_adapters(settings)]
        subscriptions = await stack.enter_async_context(PolarSubscriptions(settings))
        discord = None
        if settings.discord_bot_token:
            discord = await stack.enter_async_context(DiscordNotifier(settings))
        else:
            logger.warning("JUNKYARD_DISCORD_BOT_TOKEN not set; Discord alerts will be skipped")

        alert_engine = AlertEngine(
            store=store,
            aggregator=Aggregator(adapters, cache=cache, settings=settings),
            subscriptions=subscriptions,
            email_sink=EmailNotifier(settings),
            discord_sink=discord,
            settings=settings,
        )
        outcomes = await alert_engine.run_cycle()

    TerminalOutput().display_alert_cycle(outcomes)
    engine.dispose()


def run_init_db(args, settings: Settings):
    engine = make_engine(settings.database_url)
    init_db(engine)
    engine.dispose()
    Console().print(f"[green]Database ready:[/green] {settings.database_url}")


def main():
    parser = argparse.ArgumentParser(
        description="Junkyard Index: search salvage-yard inventory and send saved-search alerts",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=(
            "Examples:\n"
            "  junkyard-index search civic --state CA --sort newest\n"
            "  junkyard-index search 'f-150' --lat 34.05 --lng -118.24 --max-distance 100\n"
            "  junkyard-index locations --state TX\n"
            "  junkyard-index check-alerts    # run from cron every few minutes\n"
        ),
    )
    parser.add_argument(
        "--settings",
        default="config/settings.json",
        help="Path to settings config file",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable verbose logging",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    search = sub.add_parser("search", help="Search every yard for a make/model")
    search.add_argument("query", help="Free-text make/model query, e.g. 'civic'")
    search.add_argument("--make", action="append", help="Only this make (repeatable)")
    search.add_argument("--model", action="append", help="Only this model (repeatable)")
    search.add_argument("--color", action="append", help="Only this color (repeatable)")
    search.add_argument("--state", action="append", help="State name or abbreviation (repeatable)")
    search.add_argument(
        "--source", action="append", choices=["pyp", "row52"], help="Limit to a source (repeatable)"
    )
    search.add_argument("--year-min", type=int, help="Oldest model year")
    search.add_argument("--year-max", type=int, help="Newest model year")
    search.add_argument("--max-distance", type=float, help="Miles from --lat/--lng")
    search.add_argument("--lat", type=float, help="Your latitude")
    search.add_argument("--lng", type=float, help="Your longitude")
    search.add_argument("--sort", choices=SORT_OPTIONS, default="newest", help="Sort order (default: newest)")
    search.add_argument("--limit", type=int, default=50, help="Rows to print (default: 50)")
    search.add_argument("--no-cache", action="store_true", help="Bypass the result cache")

    locations = sub.add_parser("locations", help="List salvage yard locations")
    locations.add_argument("--state", help="State name or abbreviation")
    locations.add_argument(
        "--source", action="append", choices=["pyp", "row52"], help="Limit to a source (repeatable)"
    )

    sub.add_parser("check-alerts", help="Run one alert cycle over saved searches")
    sub.add_parser("init-db", help="Create database tables")

    args = parser.parse_args()

    # Set up logging
    level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        datefmt="%H:%M:%S",
    )
    # Suppress noisy loggers
    logging.getLogger("aiohttp").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)

    settings = load_settings(args.settings)

    if args.command == "init-db":
        run_init_db(args, settings)
        return

    commands = {
        "search": run_search,
        "locations": run_locations,
        "check-alerts": run_check_alerts,
    }
    try:
        asyncio.run(commands[args.command](args, settings))
    except KeyboardInterrupt:
        Console().print("\n[yellow]Cancelled.[/yellow]")
        sys.exit(0)


if __name__ == "__main__":
    main()
