import logging
from abc import ABC, abstractmethod

import aiohttp

from ..cancellation import CancelToken, pause
from ..config import Settings
from ..models.location import Location
from ..models.vehicle import Vehicle
from .http import HttpResponse, HttpTransport, check_status
from .retry import RetryPolicy, with_backoff

logger = logging.getLogger(__name__)


class BaseScraper(ABC):
    """Base class for upstream sources: HTTP session lifecycle, retry and politeness.

    Subclasses set ``source`` and ``per_location`` and implement the two
    fetch methods. ``per_location`` sources get one ``fetch_vehicles`` call
    per Location; bulk sources get one call with no location and resolve
    locations against ``known_locations``.
    """

    source: str = ""
    per_location: bool = False

    def __init__(
        self,
        settings: Settings | None = None,
        transport: HttpTransport | None = None,
    ):
        self.settings = settings or Settings()
        self.transport = transport
        self.retry_policy = RetryPolicy(
            attempts=self.settings.max_retries,
            start_delay=self.settings.base_retry_delay_seconds,
            max_delay=self.settings.max_retry_delay_seconds,
        )
        self._session: aiohttp.ClientSession | None = None
        self.known_locations: dict[str, Location] = {}

    async def __aenter__(self):
        if self.transport is None:
            # Cookies are managed per request; a shared jar would leak
            # one yard's session into another's.
            self._session = aiohttp.ClientSession(
                cookie_jar=aiohttp.DummyCookieJar(),
                headers={"User-Agent": self.settings.user_agent},
            )
            self.transport = HttpTransport(
                self._session, timeout=self.settings.request_timeout_seconds
            )
        return self

    async def __aexit__(self, *args):
        if self._session:
            await self._session.close()
            self._session = None
            self.transport = None

    async def _get(
        self,
        url: str,
        *,
        params: dict | None = None,
        headers: dict | None = None,
        cancel: CancelToken | None = None,
    ) -> HttpResponse:
        if self.transport is None:
            raise RuntimeError(f"{type(self).__name__} used outside 'async with'")

        async def call() -> HttpResponse:
            resp = await self.transport.get(url, params=params, headers=headers)
            return check_status(resp, url)

        return await with_backoff(call, self.retry_policy, cancel=cancel, label=url)

    def use_locations(self, locations: list[Location]) -> None:
        """Remember the location table, e.g. when it was served from cache."""
        self.known_locations = {loc.location_code: loc for loc in locations}

    async def _politeness_pause(self, cancel: CancelToken | None) -> None:
        """Back off after a failed unit of work so the upstream is not hammered."""
        await pause(self.settings.request_delay_seconds, cancel)

    @abstractmethod
    async def fetch_locations(self, cancel: CancelToken | None = None) -> list[Location]:
        ...

    @abstractmethod
    async def fetch_vehicles(
        self,
        query: str,
        location: Location | None = None,
        cancel: CancelToken | None = None,
    ) -> list[Vehicle]:
        ...
