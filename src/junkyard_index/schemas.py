import json
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .errors import FilterBagError
from .models.search import SORT_OPTIONS, SearchFilters

FILTER_BAG_VERSION = 1


class FilterBag(BaseModel):
    """Filters stored with a saved search.

    Stored as camelCase JSON. Rows written before versioning carry no
    ``version`` and read as version 1. New fields must be optional so old
    rows keep validating.
    """
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    version: int = FILTER_BAG_VERSION
    makes: Optional[list[str]] = None
    colors: Optional[list[str]] = None
    states: Optional[list[str]] = None
    salvage_yards: Optional[list[str]] = Field(default=None, alias="salvageYards")
    min_year: Optional[int] = Field(default=None, alias="minYear")
    max_year: Optional[int] = Field(default=None, alias="maxYear")
    sort_by: Optional[str] = Field(default=None, alias="sortBy")

    @field_validator("version")
    @classmethod
    def _known_version(cls, value: int) -> int:
        if value > FILTER_BAG_VERSION:
            raise ValueError(
                f"filter bag version {value} is newer than supported ({FILTER_BAG_VERSION})"
            )
        return value

    @field_validator("sort_by")
    @classmethod
    def _known_sort(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and value not in SORT_OPTIONS:
            raise ValueError(f"unknown sort option '{value}'")
        return value

    def to_search_filters(self, query: str) -> SearchFilters:
        year_range = None
        if self.min_year is not None or self.max_year is not None:
            year_range = (self.min_year or 0, self.max_year or 9999)
        return SearchFilters(
            query=query,
            makes=self.makes or [],
            colors=self.colors or [],
            states=self.states or [],
            salvage_yards=self.salvage_yards or [],
            year_range=year_range,
            sort_by=self.sort_by or "newest",
        )

    def dump(self) -> str:
        return self.model_dump_json(by_alias=True, exclude_none=True)


def parse_filter_bag(raw: str | dict | None) -> FilterBag:
    """Validate a stored filter bag, raising FilterBagError on any problem."""
    if raw is None or raw == "":
        return FilterBag()
    try:
        data = json.loads(raw) if isinstance(raw, str) else raw
    except ValueError as e:
        raise FilterBagError(f"filters are not valid JSON: {e}") from e
    if not isinstance(data, dict):
        raise FilterBagError("filters must be a JSON object")
    try:
        return FilterBag.model_validate(data)
    except ValidationError as e:
        raise FilterBagError(str(e)) from e
