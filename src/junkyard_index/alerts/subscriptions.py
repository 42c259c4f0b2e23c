import logging
from typing import Protocol

import aiohttp

from ..config import Settings
from ..scrapers.http import HttpTransport, check_status

logger = logging.getLogger(__name__)


class SubscriptionOracle(Protocol):
    """Authoritative subscription state. Queried fresh on every alert cycle."""

    async def get_active_subscriptions(self, user_id: str) -> list[dict]: ...


class PolarSubscriptions:
    """Customer state from the Polar API, looked up by our own user id.

    Any failure (including an unknown customer) raises; the alert engine
    treats that as "no subscription".
    """

    def __init__(self, settings: Settings, transport: HttpTransport | None = None):
        self.settings = settings
        self.transport = transport
        self._session: aiohttp.ClientSession | None = None

    async def __aenter__(self):
        if self.transport is None:
            self._session = aiohttp.ClientSession()
            self.transport = HttpTransport(
                self._session, timeout=self.settings.request_timeout_seconds
            )
        return self

    async def __aexit__(self, *args):
        if self._session:
            await self._session.close()
            self._session = None
            self.transport = None

    async def get_active_subscriptions(self, user_id: str) -> list[dict]:
        url = f"{self.settings.polar_api_url.rstrip('/')}/v1/customers/external/{user_id}/state"
        resp = await self.transport.get(
            url,
            headers={
                "Authorization": f"Bearer {self.settings.polar_access_token}",
                "Accept": "application/json",
            },
        )
        check_status(resp, url)
        state = resp.json()
        subscriptions = state.get("active_subscriptions") or []
        logger.debug(f"User {user_id} has {len(subscriptions)} active subscriptions")
        return subscriptions
