import asyncio
import logging
import time
from dataclasses import dataclass, field, replace
from typing import Sequence

from ..cache.memory import NullCache, ResultCache
from ..cancellation import CancelToken, guarded
from ..config import Settings
from ..errors import SearchCancelled, SourceError
from ..models.location import Location
from ..models.search import SearchFilters, SearchResult
from ..models.vehicle import Vehicle
from ..scrapers.base import BaseScraper
from ..scrapers.limiter import ConcurrencyLimiter
from .dedupe import dedupe
from .filters import apply_filters, sort_vehicles
from .geo import haversine_miles

logger = logging.getLogger(__name__)


@dataclass
class SourceRun:
    """What one source contributed to a search."""
    source: str
    per_location: bool
    vehicles: list[Vehicle] = field(default_factory=list)
    attempted: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def covered(self) -> int:
        if self.per_location:
            return max(self.attempted - len(self.errors), 0)
        return len({v.location.location_code for v in self.vehicles})


class Aggregator:
    """Fans a query out to every source, then merges, dedupes and ranks.

    Adapters must already be entered (``async with``). A failing location
    or source never fails the search; it shows up in
    ``SearchResult.locations_with_errors`` instead.
    """

    def __init__(
        self,
        adapters: Sequence[BaseScraper],
        cache: ResultCache | None = None,
        settings: Settings | None = None,
        priority: Sequence[str] | None = None,
    ):
        self.adapters = list(adapters)
        self.cache = cache if cache is not None else NullCache()
        self.settings = settings or Settings()
        self.priority = tuple(priority or self.settings.source_priority)
        # One outbound budget for every search run on this aggregator
        self.limiter = ConcurrencyLimiter(self.settings.max_concurrent_requests)

    def adapter(self, source: str) -> BaseScraper | None:
        for adapter in self.adapters:
            if adapter.source == source:
                return adapter
        return None

    async def search(
        self, filters: SearchFilters, cancel: CancelToken | None = None
    ) -> SearchResult:
        started = time.perf_counter()
        cancel = cancel or CancelToken()
        adapters = [
            a for a in self.adapters if not filters.sources or a.source in filters.sources
        ]

        runs = await asyncio.gather(
            *(self._run_source(a, filters.query, cancel) for a in adapters)
        )

        vehicles = dedupe([v for run in runs for v in run.vehicles], self.priority)
        origin = filters.user_location or self.settings.default_origin
        vehicles = [
            replace(v, distance=haversine_miles(origin, (v.location.lat, v.location.lng)))
            for v in vehicles
        ]
        vehicles = sort_vehicles(apply_filters(vehicles, filters), filters.sort_by)

        result = SearchResult(
            vehicles=vehicles,
            search_time_ms=(time.perf_counter() - started) * 1000,
            locations_covered=sum(run.covered for run in runs),
            locations_with_errors=[key for run in runs for key in run.errors],
            cancelled=cancel.cancelled,
        )
        if not result.cancelled:
            logger.info(
                f"Search '{filters.query}': {result.total_count} vehicles from "
                f"{result.locations_covered} locations in {result.search_time_ms:.0f}ms"
                + (f", {len(result.locations_with_errors)} errors" if result.locations_with_errors else "")
            )
        return result

    async def locations(
        self, adapter: BaseScraper, cancel: CancelToken | None = None
    ) -> list[Location]:
        """Location table for one source, served from cache when fresh."""
        key = f"locations:{adapter.source}"
        cached = self.cache.get(key)
        if cached is not None:
            adapter.use_locations(cached)
            return cached

        locations = await guarded(adapter.fetch_locations(cancel), cancel)
        if cancel is None or not cancel.cancelled:
            adapter.use_locations(locations)
            self.cache.set(key, locations, ttl=self.settings.location_cache_ttl_seconds)
        return locations

    async def _run_source(
        self, adapter: BaseScraper, query: str, cancel: CancelToken
    ) -> SourceRun:
        run = SourceRun(adapter.source, adapter.per_location)
        try:
            locations = await self.locations(adapter, cancel)
        except SearchCancelled:
            return run
        except SourceError as e:
            if adapter.per_location:
                run.errors.append(e.key)
                return run
            # Bulk sources can still resolve locations embedded in each record
            locations = []

        if cancel.cancelled:
            return run

        if adapter.per_location:
            await self._fan_out(adapter, query, locations, cancel, run)
        else:
            await self._bulk(adapter, query, cancel, run)
        return run

    async def _fan_out(
        self,
        adapter: BaseScraper,
        query: str,
        locations: list[Location],
        cancel: CancelToken,
        run: SourceRun,
    ) -> None:
        run.attempted = len(locations)

        outcomes = await asyncio.gather(
            *(
                self.limiter.run(lambda loc=loc: self._fetch_location(adapter, query, loc, cancel), cancel)
                for loc in locations
            ),
            return_exceptions=True,
        )

        for loc, outcome in zip(locations, outcomes):
            if isinstance(outcome, SearchCancelled):
                continue
            if isinstance(outcome, SourceError):
                run.errors.append(outcome.key)
            elif isinstance(outcome, Exception):
                logger.error(
                    f"Unexpected error at {adapter.source} location {loc.location_code}: {outcome}"
                )
                run.errors.append(f"{adapter.source}-{loc.location_code}")
            elif isinstance(outcome, BaseException):
                raise outcome
            else:
                run.vehicles.extend(outcome)

    async def _fetch_location(
        self, adapter: BaseScraper, query: str, location: Location, cancel: CancelToken
    ) -> list[Vehicle]:
        key = f"vehicles:{adapter.source}:{location.location_code}:{query.strip().lower()}"
        cached = self.cache.get(key)
        if cached is not None:
            return cached

        vehicles = await guarded(adapter.fetch_vehicles(query, location, cancel), cancel)
        if not cancel.cancelled:
            self.cache.set(key, vehicles, ttl=self.settings.vehicle_cache_ttl_seconds)
        return vehicles

    async def _bulk(
        self, adapter: BaseScraper, query: str, cancel: CancelToken, run: SourceRun
    ) -> None:
        key = f"vehicles:{adapter.source}:all:{query.strip().lower()}"
        cached = self.cache.get(key)
        if cached is not None:
            run.vehicles.extend(cached)
            return

        try:
            vehicles = await guarded(adapter.fetch_vehicles(query, None, cancel), cancel)
        except SearchCancelled:
            return
        except SourceError as e:
            run.errors.append(e.key)
            return
        except Exception as e:
            logger.error(f"Unexpected error from {adapter.source}: {e}")
            run.errors.append(f"{adapter.source}-all")
            return

        if not cancel.cancelled:
            self.cache.set(key, vehicles, ttl=self.settings.vehicle_cache_ttl_seconds)
        run.vehicles.extend(vehicles)
