import logging
from datetime import datetime, timezone

from ..models.search import SearchFilters
from ..models.vehicle import Vehicle
from ..normalize.common import normalize_color

logger = logging.getLogger(__name__)


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def _lowered(values: list[str]) -> set[str]:
    return {v.strip().lower() for v in values if v and v.strip()}


def apply_filters(vehicles: list[Vehicle], filters: SearchFilters) -> list[Vehicle]:
    """Keep vehicles matching every criterion that is set. Empty lists match all."""
    sources = _lowered(filters.sources)
    makes = _lowered(filters.makes)
    models = _lowered(filters.models)
    states = _lowered(filters.states)
    colors = {normalize_color(c) for c in filters.colors} - {None}

    date_range = None
    if filters.date_range:
        start, end = filters.date_range
        date_range = (_aware(start), _aware(end))

    by_distance = filters.max_distance is not None and filters.user_location is not None

    result = []
    for v in vehicles:
        if sources and v.source.lower() not in sources:
            continue
        if makes and v.make.lower() not in makes:
            continue
        if models and v.model.lower() not in models:
            continue
        if colors and normalize_color(v.color) not in colors:
            continue
        if states and not (
            v.location.state.lower() in states or v.location.state_abbr.lower() in states
        ):
            continue
        if filters.year_range:
            low, high = filters.year_range
            if not low <= v.year <= high:
                continue
        if date_range and not date_range[0] <= _aware(v.available_date) <= date_range[1]:
            continue
        if by_distance and v.distance > filters.max_distance:
            continue
        result.append(v)
    return result


def filter_by_salvage_yards(vehicles: list[Vehicle], names: list[str] | None) -> list[Vehicle]:
    """Keep vehicles whose yard name is in ``names``; no names keeps everything."""
    if not names:
        return vehicles
    wanted = set(names)
    return [v for v in vehicles if v.location.name in wanted]


SORT_KEYS = {
    "newest": (lambda v: _aware(v.available_date), True),
    "oldest": (lambda v: _aware(v.available_date), False),
    "year-desc": (lambda v: v.year, True),
    "year-asc": (lambda v: v.year, False),
    "distance": (lambda v: v.distance, False),
}


def sort_vehicles(vehicles: list[Vehicle], sort_by: str | None) -> list[Vehicle]:
    """Stable sort; equal keys keep their input order."""
    if not sort_by:
        return list(vehicles)
    if sort_by not in SORT_KEYS:
        logger.debug(f"Unknown sort '{sort_by}', keeping input order")
        return list(vehicles)
    key, reverse = SORT_KEYS[sort_by]
    return sorted(vehicles, key=key, reverse=reverse)
