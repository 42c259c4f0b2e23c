from dataclasses import dataclass, field
from datetime import datetime

from .vehicle import Vehicle

SORT_OPTIONS = ("newest", "oldest", "year-desc", "year-asc", "distance")


@dataclass
class SearchFilters:
    """Query text plus optional criteria. Every criterion is AND-combined."""
    query: str = ""
    makes: list[str] = field(default_factory=list)
    models: list[str] = field(default_factory=list)
    colors: list[str] = field(default_factory=list)
    states: list[str] = field(default_factory=list)
    salvage_yards: list[str] = field(default_factory=list)
    sources: list[str] = field(default_factory=list)
    year_range: tuple[int, int] | None = None
    date_range: tuple[datetime, datetime] | None = None
    max_distance: float | None = None
    user_location: tuple[float, float] | None = None
    sort_by: str | None = None


@dataclass
class SearchResult:
    """Output of one aggregation run. Never persisted."""
    vehicles: list[Vehicle] = field(default_factory=list)
    search_time_ms: float = 0.0
    locations_covered: int = 0
    locations_with_errors: list[str] = field(default_factory=list)
    cancelled: bool = False

    @property
    def total_count(self) -> int:
        return len(self.vehicles)
