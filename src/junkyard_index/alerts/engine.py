import asyncio
import functools
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable

from ..config import Settings
from ..db import SavedSearch, User
from ..errors import FilterBagError
from ..models.vehicle import Vehicle
from ..normalize.common import utcnow
from ..schemas import FilterBag, parse_filter_bag
from ..search.aggregator import Aggregator
from ..search.filters import filter_by_salvage_yards
from .notify import AlertPayload, DiscordSink, EmailSink
from .store import SNOWFLAKE, SavedSearchStore
from .subscriptions import SubscriptionOracle
from .urls import build_search_url

logger = logging.getLogger(__name__)


@dataclass
class SearchOutcome:
    search_id: str
    status: str
    new_vehicles: int = 0


def parse_snapshot(raw: str | None) -> list[str]:
    """Stored vehicle ids; anything unreadable counts as no snapshot."""
    if not raw:
        return []
    try:
        ids = json.loads(raw)
    except ValueError:
        return []
    if not isinstance(ids, list) or not all(isinstance(i, str) for i in ids):
        return []
    return ids


class AlertEngine:
    """One pass over every saved search with alerts on.

    Meant to be triggered periodically from outside (cron). Searches are
    claimed with the row lock, processed in fixed-size batches and always
    released, so overlapping runs skip each other's work.
    """

    def __init__(
        self,
        store: SavedSearchStore,
        aggregator: Aggregator,
        subscriptions: SubscriptionOracle,
        email_sink: EmailSink | None = None,
        discord_sink: DiscordSink | None = None,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.aggregator = aggregator
        self.subscriptions = subscriptions
        self.email_sink = email_sink
        self.discord_sink = discord_sink
        self.settings = settings or Settings()
        self.clock = clock

    async def _db(self, fn, *args, **kwargs):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, functools.partial(fn, *args, **kwargs))

    async def run_cycle(self) -> list[SearchOutcome]:
        stale_before = self.clock() - timedelta(minutes=self.settings.lock_timeout_minutes)
        searches = await self._db(self.store.eligible, stale_before)
        if not searches:
            logger.info("No searches with alerts enabled (or all are locked)")
            return []

        logger.info(f"Processing {len(searches)} searches with alerts enabled")
        outcomes: list[SearchOutcome] = []
        size = max(self.settings.alert_batch_size, 1)
        for i in range(0, len(searches), size):
            batch = searches[i:i + size]
            outcomes.extend(
                await asyncio.gather(*(self._run_one(s, stale_before) for s in batch))
            )

        sent = sum(1 for o in outcomes if o.new_vehicles)
        logger.info(f"Alert cycle done: {len(outcomes)} searches, {sent} with new vehicles")
        return outcomes

    async def _run_one(self, search: SavedSearch, stale_before: datetime) -> SearchOutcome:
        if not await self._db(self.store.claim, search.id, self.clock(), stale_before):
            return SearchOutcome(search.id, "locked")
        try:
            # Another run may have finished this search since eligible() was read
            current = await self._db(self.store.get, search.id)
            if current is None or not (
                current.email_alerts_enabled or current.discord_alerts_enabled
            ):
                return SearchOutcome(search.id, "skipped")
            return await self.process(current)
        except Exception as e:
            logger.error(f"Error processing search {search.id}: {e}")
            return SearchOutcome(search.id, f"error: {e}")
        finally:
            try:
                await self._db(self.store.release, search.id)
            except Exception as e:
                logger.error(f"Failed to release lock on search {search.id}: {e}")

    async def process(self, search: SavedSearch) -> SearchOutcome:
        """Run one claimed search through checks, re-query, diff and dispatch."""
        user = await self._db(self.store.get_user, search.user_id)
        if user is None or not user.email:
            logger.warning(f"No email found for user {search.user_id}, search {search.id}")
            return SearchOutcome(search.id, "no_user_email")

        try:
            subscriptions = await self.subscriptions.get_active_subscriptions(search.user_id)
        except Exception as e:
            logger.warning(f"Subscription lookup failed for user {search.user_id}: {e}")
            await self._db(self.store.disable_alerts, search.id)
            return SearchOutcome(search.id, "no_subscription_disabled")
        if not subscriptions:
            logger.info(f"Subscription expired for user {search.user_id}, disabling alerts")
            await self._db(self.store.disable_alerts, search.id)
            return SearchOutcome(search.id, "subscription_expired_disabled")

        try:
            bag = parse_filter_bag(search.filters)
        except FilterBagError as e:
            logger.error(f"Invalid filters for search {search.id}: {e}")
            return SearchOutcome(search.id, "invalid_filters")

        result = await self.aggregator.search(bag.to_search_filters(search.query))
        vehicles = filter_by_salvage_yards(result.vehicles, bag.salvage_yards)
        current_ids = [v.id for v in vehicles]

        previous = set(parse_snapshot(search.last_vehicle_ids))
        if not previous:
            await self._db(self.store.save_snapshot, search.id, current_ids, self.clock())
            return SearchOutcome(search.id, "first_check_baseline_set")

        new_vehicles = [v for v in vehicles if v.id not in previous]
        if not new_vehicles:
            await self._db(self.store.save_snapshot, search.id, current_ids, self.clock())
            return SearchOutcome(search.id, "no_new_vehicles")

        try:
            status = await self.dispatch(search, user, bag, new_vehicles)
        finally:
            # Delivery failures must not re-alert the same vehicles next cycle
            await self._db(self.store.save_snapshot, search.id, current_ids, self.clock())
        return SearchOutcome(search.id, status, len(new_vehicles))

    async def dispatch(
        self, search: SavedSearch, user: User, bag: FilterBag, new_vehicles: list[Vehicle]
    ) -> str:
        payload = AlertPayload(
            search_name=search.name,
            query=search.query,
            new_vehicles=new_vehicles,
            search_url=build_search_url(self.settings.app_url, search.query, bag),
            search_id=search.id,
        )

        parts = []
        if search.email_alerts_enabled:
            if self.email_sink is None:
                parts.append("email_failed: email not configured")
            else:
                result = await self.email_sink.send_email_alert(user.email, payload)
                parts.append("email_sent" if result.success else f"email_failed: {result.error}")

        if search.discord_alerts_enabled:
            if not user.discord_id or not SNOWFLAKE.match(user.discord_id):
                parts.append("discord_failed: discord not linked")
            elif not user.discord_app_installed:
                parts.append("discord_failed: discord app not installed")
            elif self.discord_sink is None:
                parts.append("discord_failed: discord not configured")
            else:
                result = await self.discord_sink.send_discord_alert(user.discord_id, payload)
                parts.append("discord_sent" if result.success else f"discord_failed: {result.error}")

        return "; ".join(parts) or "no_channels_enabled"
