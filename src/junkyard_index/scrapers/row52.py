import logging

from ..cancellation import CancelToken
from ..errors import FetchError, SearchCancelled, SourceError
from ..models.location import Location
from ..models.vehicle import Vehicle
from ..normalize import row52 as normalize
from .base import BaseScraper

logger = logging.getLogger(__name__)

LOCATIONS_PATH = "/odata/Locations"
VEHICLES_PATH = "/odata/Vehicles"
MAKES_PATH = "/odata/Makes"

LOCATION_FIELDS = (
    "id,name,code,address1,city,zipCode,phone,hours,latitude,longitude,"
    "isActive,isVisible,isParticipating,webUrl,logoUrl,partsPricingUrl,stateId"
)
MAX_VEHICLES = 1000


def odata_quote(value: str) -> str:
    """Escape a value for use inside a single-quoted OData string literal."""
    return value.replace("'", "''")


def build_vehicle_filter(query: str) -> str:
    filters = ["isActive eq true"]
    term = query.strip().lower()
    if term:
        term = odata_quote(term)
        filters.append(
            f"(contains(tolower(model/name),'{term}') "
            f"or contains(tolower(model/make/name),'{term}'))"
        )
    return " and ".join(filters)


class Row52Scraper(BaseScraper):
    """Row52 OData API. One bulk query covers every participating yard,
    so a failure here is a whole-source failure."""

    source = "row52"
    per_location = False

    @property
    def base_url(self) -> str:
        return self.settings.row52_base_url.rstrip("/")

    async def _odata(self, path: str, params: dict, cancel: CancelToken | None) -> list[dict]:
        resp = await self._get(
            f"{self.base_url}{path}",
            params=params,
            headers={"Accept": "application/json"},
            cancel=cancel,
        )
        try:
            payload = resp.json()
        except ValueError as e:
            raise FetchError(f"Malformed OData response from {path}: {e}") from e
        return payload.get("value") or []

    async def fetch_locations(self, cancel: CancelToken | None = None) -> list[Location]:
        params = {
            "$orderby": "state/name",
            "$select": LOCATION_FIELDS,
            "$expand": "state($select=id,name,abbreviation,countryId)",
            "$filter": "isParticipating eq true",
        }
        try:
            records = await self._odata(LOCATIONS_PATH, params, cancel)
        except SearchCancelled:
            return []
        except FetchError as e:
            logger.error(f"Error fetching locations from Row52: {e}")
            raise SourceError(self.source, "all", e) from e

        locations = [normalize.to_location(r) for r in records]
        self.use_locations(locations)
        logger.info(f"Loaded {len(locations)} Row52 locations")
        return locations

    async def fetch_vehicles(
        self,
        query: str,
        location: Location | None = None,
        cancel: CancelToken | None = None,
    ) -> list[Vehicle]:
        params = {
            "$filter": build_vehicle_filter(query),
            "$expand": "model($expand=make),location($expand=state),images",
            "$orderby": "dateAdded desc",
            "$top": str(MAX_VEHICLES),
        }
        try:
            records = await self._odata(VEHICLES_PATH, params, cancel)
        except SearchCancelled:
            return []
        except FetchError as e:
            logger.error(f"Error fetching vehicles from Row52: {e}")
            raise SourceError(self.source, "all", e) from e

        vehicles = []
        for record in records:
            vehicle = self._to_vehicle(record)
            if vehicle is not None:
                vehicles.append(vehicle)

        dropped = len(records) - len(vehicles)
        if dropped:
            logger.debug(f"Row52: dropped {dropped} vehicles with no resolvable location")
        return vehicles

    def _to_vehicle(self, record: dict) -> Vehicle | None:
        location = self.known_locations.get(str(record.get("locationId", "")))
        if location is None and record.get("location"):
            location = normalize.to_location(record["location"])
        if location is None:
            return None
        try:
            return normalize.to_vehicle(record, location, self.settings.row52_cdn_url)
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(f"Dropping malformed Row52 vehicle {record.get('id')!r}: {e}")
            return None

    async def fetch_makes(self, cancel: CancelToken | None = None) -> list[dict]:
        """List the makes Row52 knows about, as ``{"id", "name"}`` dicts."""
        try:
            records = await self._odata(MAKES_PATH, {"$orderby": "name asc"}, cancel)
        except SearchCancelled:
            return []
        except FetchError as e:
            logger.error(f"Error fetching makes from Row52: {e}")
            raise SourceError(self.source, "makes", e) from e
        return [{"id": r.get("id"), "name": r.get("name") or ""} for r in records]
