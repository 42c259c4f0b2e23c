"""Location lookups across sources, backed by the Aggregator's cached tables."""
import asyncio
import logging
from collections import Counter
from typing import Sequence

from ..cancellation import CancelToken
from ..errors import SourceError
from ..models.location import Location
from .aggregator import Aggregator

logger = logging.getLogger(__name__)


async def list_locations(
    aggregator: Aggregator,
    sources: Sequence[str] | None = None,
    cancel: CancelToken | None = None,
) -> list[Location]:
    """Every location of the selected sources. A failing source contributes nothing."""
    adapters = [a for a in aggregator.adapters if not sources or a.source in sources]

    async def load(adapter):
        try:
            return await aggregator.locations(adapter, cancel)
        except SourceError as e:
            logger.warning(f"Skipping {adapter.source} locations: {e}")
            return []

    tables = await asyncio.gather(*(load(a) for a in adapters))
    return [loc for table in tables for loc in table]


def locations_by_state(locations: list[Location], state: str) -> list[Location]:
    """Match on state abbreviation or full name, case-insensitively."""
    wanted = state.strip().lower()
    return [
        loc for loc in locations
        if loc.state_abbr.lower() == wanted or loc.state.lower() == wanted
    ]


def find_location(
    locations: list[Location], code: str, source: str | None = None
) -> Location | None:
    for loc in locations:
        if loc.location_code == code and (source is None or loc.source == source):
            return loc
    return None


def search_locations(locations: list[Location], text: str) -> list[Location]:
    """Substring match on name, city or state."""
    needle = text.strip().lower()
    if not needle:
        return list(locations)
    return [
        loc for loc in locations
        if needle in loc.name.lower()
        or needle in loc.city.lower()
        or needle in loc.state.lower()
    ]


def states_summary(locations: list[Location]) -> list[dict]:
    """One entry per state ``{"code", "name", "count"}``, sorted by state name."""
    counts = Counter(loc.state_abbr for loc in locations if loc.state_abbr)
    names: dict[str, str] = {}
    for loc in locations:
        if loc.state_abbr and loc.state_abbr not in names:
            names[loc.state_abbr] = loc.state
    summary = [
        {"code": code, "name": names[code], "count": count}
        for code, count in counts.items()
    ]
    return sorted(summary, key=lambda s: s["name"])
