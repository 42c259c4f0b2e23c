import asyncio
import json
from datetime import datetime, timezone

import pytest

from conftest import FakeTransport, fast_settings, ok
from junkyard_index.errors import SourceError
from junkyard_index.normalize.row52 import image_urls, to_location
from junkyard_index.scrapers.row52 import Row52Scraper, build_vehicle_filter, odata_quote

CDN = "https://cdn.row52.com"

LOCATION = {
    "id": 9,
    "name": "PICK-n-PULL Sacramento",
    "code": "SAC",
    "address1": "123 Yard Rd",
    "city": "Sacramento",
    "zipCode": "95815",
    "latitude": 38.6,
    "longitude": -121.4,
    "webUrl": "https://www.picknpull.com/sacramento",
    "partsPricingUrl": "https://www.picknpull.com/pricing",
    "state": {"name": "California", "abbreviation": "CA"},
}


def vehicle_record(vid, location_id=9, location=None, vin="1HGCM82633A004352"):
    return {
        "id": vid,
        "year": 2004,
        "model": {"name": "Civic", "make": {"name": "Honda"}},
        "color": "Blue",
        "vin": vin,
        "barCodeNumber": "B1",
        "dateAdded": "2024-02-01T10:00:00Z",
        "locationId": location_id,
        "location": location,
        "row": "5",
        "slot": "3",
        "engine": "1.7L",
        "images": [
            {"isActive": True, "isVisible": True, "size1": "abc", "extension": ".jpg"},
            {"isActive": False, "isVisible": True, "size1": "gone"},
        ],
    }


def odata(*records):
    return ok(json.dumps({"value": list(records)}))


class TestVehicleFilter:
    def test_empty_query_only_filters_active(self):
        assert build_vehicle_filter("  ") == "isActive eq true"

    def test_query_is_lowercased_and_matches_model_or_make(self):
        assert build_vehicle_filter(" Civic ") == (
            "isActive eq true and (contains(tolower(model/name),'civic') "
            "or contains(tolower(model/make/name),'civic'))"
        )

    def test_quotes_are_escaped(self):
        assert odata_quote("o'brien") == "o''brien"
        assert "'o''brien'" in build_vehicle_filter("O'Brien")


class TestNormalize:
    def test_location(self):
        location = to_location(LOCATION)
        assert location.location_code == "9"
        assert location.display_name == "Sacramento"
        assert location.state_abbr == "CA"
        assert location.urls.prices == "https://www.picknpull.com/pricing"
        assert location.urls.directions.startswith("https://www.google.com/maps/dir/?api=1")

    def test_only_active_visible_images(self):
        record = vehicle_record(1)
        record["images"].append(
            {"isActive": True, "isVisible": True, "size1": "own", "resourceUrl": "https://img.example/"}
        )
        assert image_urls(record, CDN) == [
            f"{CDN}/images/abc.jpg",
            "https://img.example/own.JPG",
        ]


class TestRow52Scraper:
    def _scraper(self, handler):
        transport = FakeTransport(handler)
        return Row52Scraper(fast_settings(), transport=transport), transport

    def test_fetch_vehicles_maps_records(self):
        def handler(method, url, params, body):
            if url.endswith("/odata/Locations"):
                return odata(LOCATION)
            return odata(vehicle_record(77))

        scraper, transport = self._scraper(handler)

        async def run():
            await scraper.fetch_locations()
            return await scraper.fetch_vehicles("civic")

        [vehicle] = asyncio.run(run())
        assert vehicle.id == "row52-77"
        assert (vehicle.year, vehicle.make, vehicle.model) == (2004, "Honda", "Civic")
        assert vehicle.source == "row52"
        assert vehicle.location.name == "PICK-n-PULL Sacramento"
        assert vehicle.yard_location.row == "5"
        assert vehicle.yard_location.space == "3"
        assert vehicle.available_date == datetime(2024, 2, 1, 10, tzinfo=timezone.utc)
        assert vehicle.details_url == "https://row52.com/Vehicle/Index/1HGCM82633A004352"
        assert vehicle.engine == "1.7L"
        assert vehicle.trim is None

        params = transport.calls[-1][2]
        assert params["$top"] == "1000"
        assert params["$orderby"] == "dateAdded desc"

    def test_unknown_location_falls_back_to_embedded_one(self):
        embedded = dict(LOCATION, id=42, name="PICK-n-PULL Fresno")
        scraper, _ = self._scraper(
            lambda *a: odata(vehicle_record(1, location_id=42, location=embedded),
                             vehicle_record(2, location_id=43, location=None))
        )
        vehicles = asyncio.run(scraper.fetch_vehicles("civic"))
        assert [v.id for v in vehicles] == ["row52-1"]
        assert vehicles[0].location.location_code == "42"

    def test_failure_is_whole_source(self):
        scraper, transport = self._scraper(lambda *a: ok(status=502))
        with pytest.raises(SourceError) as excinfo:
            asyncio.run(scraper.fetch_vehicles("civic"))
        assert excinfo.value.key == "row52-all"
        assert len(transport.calls) == 3

    def test_malformed_json_is_not_retried(self):
        scraper, transport = self._scraper(lambda *a: ok("<html>maintenance</html>"))
        with pytest.raises(SourceError):
            asyncio.run(scraper.fetch_vehicles("civic"))
        assert len(transport.calls) == 1

    def test_fetch_makes(self):
        scraper, transport = self._scraper(
            lambda *a: odata({"id": 1, "name": "Acura"}, {"id": 2, "name": "BMW"})
        )
        makes = asyncio.run(scraper.fetch_makes())
        assert [m["name"] for m in makes] == ["Acura", "BMW"]
        assert transport.calls[0][2] == {"$orderby": "name asc"}
