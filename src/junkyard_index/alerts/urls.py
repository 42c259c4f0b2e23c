from urllib.parse import urlencode

from ..schemas import FilterBag


def build_search_url(app_url: str, query: str, bag: FilterBag | None = None) -> str:
    """Link back to the interactive search page with the saved filters applied."""
    params: list[tuple[str, str]] = []
    if query:
        params.append(("q", query))
    if bag is not None:
        for key, values in (
            ("makes", bag.makes),
            ("colors", bag.colors),
            ("states", bag.states),
            ("salvageYards", bag.salvage_yards),
        ):
            if values:
                params.append((key, ",".join(values)))
        if bag.min_year is not None:
            params.append(("minYear", str(bag.min_year)))
        if bag.max_year is not None:
            params.append(("maxYear", str(bag.max_year)))
        if bag.sort_by:
            params.append(("sortBy", bag.sort_by))

    url = f"{app_url.rstrip('/')}/search"
    return f"{url}?{urlencode(params)}" if params else url
