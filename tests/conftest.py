import inspect
from datetime import datetime, timezone

import pytest

from junkyard_index.config import Settings
from junkyard_index.db import init_db, make_engine, make_session_factory
from junkyard_index.models.location import Location, LocationUrls
from junkyard_index.models.vehicle import Vehicle
from junkyard_index.scrapers.http import HttpResponse


def fast_settings(**overrides) -> Settings:
    """Settings with every delay zeroed so retry paths run instantly."""
    values = dict(
        request_delay_seconds=0,
        base_retry_delay_seconds=0,
        max_retry_delay_seconds=0,
    )
    values.update(overrides)
    return Settings(**values)


def make_location(code="1", name=None, source="pyp", state="California", state_abbr="CA",
                  lat=34.05, lng=-118.24) -> Location:
    return Location(
        location_code=code,
        name=name or f"Yard {code}",
        source=source,
        city="Los Angeles",
        state=state,
        state_abbr=state_abbr,
        lat=lat,
        lng=lng,
        urls=LocationUrls(
            inventory=f"/inventory/yard-{code}/",
            parts="/parts/",
            prices="/prices/",
        ),
    )


def make_vehicle(vid, vin="", source="pyp", year=2010, make="HONDA", model="CIVIC",
                 color="Black", added=None, location=None, distance=0.0) -> Vehicle:
    return Vehicle(
        id=vid,
        year=year,
        make=make,
        model=model,
        vin=vin,
        color=color,
        available_date=added or datetime(2024, 1, 1, tzinfo=timezone.utc),
        location=location or make_location(source=source),
        source=source,
        distance=distance,
    )


class FakeTransport:
    """Stands in for HttpTransport. ``handler(method, url, params, body)``
    returns an HttpResponse, raises, or returns an awaitable."""

    def __init__(self, handler):
        self.handler = handler
        self.calls = []

    async def _dispatch(self, method, url, params, body, headers):
        self.calls.append((method, url, params, body, headers))
        result = self.handler(method, url, params, body)
        if inspect.isawaitable(result):
            result = await result
        return result

    async def get(self, url, *, params=None, headers=None):
        return await self._dispatch("GET", url, params, None, headers)

    async def post(self, url, *, json_body=None, headers=None):
        return await self._dispatch("POST", url, None, json_body, headers)


def ok(text="", set_cookies=None, status=200) -> HttpResponse:
    return HttpResponse(status=status, text=text, set_cookies=set_cookies or [])


@pytest.fixture
def session_factory(tmp_path):
    engine = make_engine(f"sqlite:///{tmp_path / 'alerts.db'}")
    init_db(engine)
    yield make_session_factory(engine)
    engine.dispose()
