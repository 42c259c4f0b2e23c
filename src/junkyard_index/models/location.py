from dataclasses import dataclass, field


@dataclass
class LocationUrls:
    """Source-specific links for a yard. PYP paths are site-relative."""
    store: str = ""
    inventory: str = ""
    prices: str = ""
    parts: str = ""
    directions: str = ""
    interchange: str = ""
    deals: str = ""
    contact: str = ""


@dataclass
class Location:
    """A physical salvage yard as reported by one source.

    ``location_code`` is unique within a source only; the same yard can
    appear under different codes in different sources.
    """
    location_code: str
    name: str
    source: str
    display_name: str = ""
    address: str = ""
    city: str = ""
    state: str = ""
    state_abbr: str = ""
    zip_code: str = ""
    phone: str = ""
    lat: float = 0.0
    lng: float = 0.0
    page_url: str = ""
    legacy_code: str = ""
    urls: LocationUrls = field(default_factory=LocationUrls)
