"""Map PYP (Pick Your Part) raw shapes onto the canonical models.

Locations come from the ``_locationList`` literal embedded in the inventory
page (PascalCase keys). Vehicles come from the AJAX inventory fragment and
arrive here already split into fields by the scraper.
"""
from datetime import datetime
from urllib.parse import urlencode

from ..models.location import Location, LocationUrls
from ..models.vehicle import Vehicle, YardLocation
from .common import slugify

SOURCE = "pyp"


def _float(value) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def to_location(raw: dict) -> Location:
    urls = raw.get("Urls") or {}
    return Location(
        location_code=str(raw.get("LocationCode", "")),
        name=raw.get("Name") or "",
        display_name=raw.get("DisplayName") or "",
        source=SOURCE,
        address=raw.get("Address") or "",
        city=raw.get("City") or "",
        state=raw.get("State") or "",
        state_abbr=raw.get("StateAbbr") or "",
        zip_code=str(raw.get("Zip") or ""),
        phone=raw.get("Phone") or "",
        lat=_float(raw.get("Lat")),
        lng=_float(raw.get("Lng")),
        page_url=raw.get("LocationPageURL") or "",
        legacy_code=str(raw.get("LegacyCode") or ""),
        urls=LocationUrls(
            store=urls.get("Store") or "",
            inventory=urls.get("Inventory") or "",
            prices=urls.get("Prices") or "",
            parts=urls.get("Parts") or "",
            directions=urls.get("Directions") or "",
            interchange=urls.get("Interchange") or "",
            deals=urls.get("Deals") or "",
            contact=urls.get("Contact") or "",
        ),
    )


def vehicle_urls(
    base_url: str, year: int, make: str, model: str, location: Location
) -> tuple[str, str, str]:
    """Return (details_url, parts_url, prices_url) from the yard's URL paths."""
    base = base_url.rstrip("/")
    details = f"{base}{location.urls.inventory}{year}-{make.lower()}-{slugify(model)}/"
    query = urlencode({"year": year, "make": make, "model": model})
    parts = f"{base}{location.urls.parts}?{query}"
    prices = f"{base}{location.urls.prices}"
    return details, parts, prices


def split_ymm(text: str) -> tuple[int, str, str]:
    """'2008 HONDA CR V' -> (2008, 'HONDA', 'CR V')."""
    tokens = text.split()
    year_str = tokens[0] if tokens else ""
    make = tokens[1] if len(tokens) > 1 else ""
    model = " ".join(tokens[2:])
    try:
        year = int(year_str)
    except ValueError:
        year = 0
    return year, make, model


def to_vehicle(
    *,
    vehicle_id: str,
    ymm: str,
    color: str,
    vin: str,
    stock_number: str,
    available_date: datetime,
    yard_location: YardLocation,
    images: list[str],
    location: Location,
    base_url: str,
) -> Vehicle:
    year, make, model = split_ymm(ymm)
    details, parts, prices = vehicle_urls(base_url, year, make, model, location)
    return Vehicle(
        id=vehicle_id,
        year=year,
        make=make,
        model=model,
        color=color or "",
        vin=vin or "",
        stock_number=stock_number or "",
        available_date=available_date,
        yard_location=yard_location,
        images=images,
        details_url=details,
        parts_url=parts,
        prices_url=prices,
        location=location,
        source=SOURCE,
    )
