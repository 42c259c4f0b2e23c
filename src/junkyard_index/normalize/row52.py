"""Map Row52 OData records (camelCase JSON) onto the canonical models."""
from urllib.parse import quote_plus

from ..models.location import Location, LocationUrls
from ..models.vehicle import Vehicle, YardLocation
from .common import parse_iso_datetime, utcnow

SOURCE = "row52"
ID_PREFIX = "row52-"
DETAILS_URL = "https://row52.com/Vehicle/Index/{vin}"


def to_location(raw: dict) -> Location:
    state = raw.get("state") or {}
    name = raw.get("name") or ""
    web_url = raw.get("webUrl") or ""
    pricing_url = raw.get("partsPricingUrl") or ""
    address = raw.get("address1") or ""
    city = raw.get("city") or ""
    zip_code = str(raw.get("zipCode") or "")
    destination = quote_plus(f"{address} {city} {state.get('name') or ''} {zip_code}")
    return Location(
        location_code=str(raw.get("id", "")),
        name=name,
        display_name=name.replace("PICK-n-PULL ", ""),
        source=SOURCE,
        address=address,
        city=city,
        state=state.get("name") or "",
        state_abbr=state.get("abbreviation") or "",
        zip_code=zip_code,
        phone=raw.get("phone") or "",
        lat=float(raw.get("latitude") or 0.0),
        lng=float(raw.get("longitude") or 0.0),
        page_url=web_url,
        legacy_code=raw.get("code") or "",
        urls=LocationUrls(
            store=web_url,
            inventory=web_url,
            prices=pricing_url,
            parts=pricing_url,
            directions=(
                "https://www.google.com/maps/dir/?api=1"
                f"&destination={destination}&dir_action=navigate"
            ),
        ),
    )


def image_urls(raw: dict, cdn_url: str) -> list[str]:
    urls = []
    for img in raw.get("images") or []:
        if not img.get("isActive") or not img.get("isVisible"):
            continue
        base = img.get("resourceUrl") or f"{cdn_url.rstrip('/')}/images/"
        ext = img.get("extension") or ".JPG"
        urls.append(f"{base}{img.get('size1', '')}{ext}")
    return urls


def to_vehicle(raw: dict, location: Location, cdn_url: str) -> Vehicle:
    model = raw.get("model") or {}
    make = model.get("make") or {}
    vin = raw.get("vin") or ""
    return Vehicle(
        id=f"{ID_PREFIX}{raw['id']}",
        year=int(raw.get("year") or 0),
        make=make.get("name") or "",
        model=model.get("name") or "",
        color=raw.get("color") or "",
        vin=vin,
        stock_number=raw.get("barCodeNumber") or "",
        available_date=parse_iso_datetime(raw.get("dateAdded")) or utcnow(),
        location=location,
        source=SOURCE,
        yard_location=YardLocation(
            section="",
            row=raw.get("row") or "",
            space=raw.get("slot") or "",
        ),
        images=image_urls(raw, cdn_url),
        details_url=DETAILS_URL.format(vin=vin),
        parts_url=location.urls.parts,
        prices_url=location.urls.prices,
        engine=raw.get("engine"),
        trim=raw.get("trim"),
        transmission=raw.get("transmission"),
    )
