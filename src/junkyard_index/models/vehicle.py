from dataclasses import dataclass, field
from datetime import datetime

from .location import Location


@dataclass
class YardLocation:
    section: str = ""
    row: str = ""
    space: str = ""


@dataclass
class Vehicle:
    """One inventory item in canonical form.

    ``id`` is globally unique (row52 ids carry a ``row52-`` prefix);
    ``vin`` is the cross-source dedup key and may be empty.
    """
    id: str
    year: int
    make: str
    model: str
    vin: str
    available_date: datetime
    location: Location
    source: str
    color: str = ""
    stock_number: str = ""
    yard_location: YardLocation = field(default_factory=YardLocation)
    images: list[str] = field(default_factory=list)
    details_url: str = ""
    parts_url: str = ""
    prices_url: str = ""
    engine: str | None = None
    trim: str | None = None
    transmission: str | None = None
    distance: float = 0.0

    @property
    def title(self) -> str:
        return f"{self.year} {self.make} {self.model}".strip()
