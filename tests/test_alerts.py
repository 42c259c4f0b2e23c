import asyncio
import json
from datetime import datetime, timedelta, timezone

import pytest

from conftest import make_location, make_vehicle
from junkyard_index.alerts.engine import AlertEngine
from junkyard_index.alerts.notify import DeliveryResult
from junkyard_index.alerts.store import SavedSearchStore
from junkyard_index.config import Settings
from junkyard_index.db import SavedSearch, User
from junkyard_index.errors import AlertPreconditionError
from junkyard_index.models.search import SearchResult
from junkyard_index.schemas import FilterBag

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)
DISCORD_ID = "123456789012345678"


class StubAggregator:
    def __init__(self, vehicles=None, error=None, failing_query=None):
        self.vehicles = vehicles or []
        self.error = error
        self.failing_query = failing_query
        self.filters = []

    async def search(self, filters, cancel=None):
        self.filters.append(filters)
        if self.error and self.failing_query in (None, filters.query):
            raise self.error
        return SearchResult(vehicles=list(self.vehicles), locations_covered=1)


class StubOracle:
    def __init__(self, subscriptions=({"id": "sub_1"},), error=None):
        self.subscriptions = list(subscriptions)
        self.error = error

    async def get_active_subscriptions(self, user_id):
        if self.error:
            raise self.error
        return self.subscriptions


class RecordingSink:
    def __init__(self, result=DeliveryResult(True)):
        self.result = result
        self.sent = []

    async def send_email_alert(self, to, payload):
        self.sent.append((to, payload))
        return self.result

    async def send_discord_alert(self, user_id, payload):
        self.sent.append((user_id, payload))
        return self.result


def fleet(count, yard="PYP Sun Valley"):
    location = make_location("100", name=yard)
    return [make_vehicle(f"v{i}", location=location) for i in range(count)]


@pytest.fixture
def store(session_factory):
    with session_factory.begin() as session:
        session.add(User(id="u1", email="driver@example.com",
                         discord_id=DISCORD_ID, discord_app_installed=True))
        session.add(User(id="u2", email=None))
    return SavedSearchStore(session_factory)


def saved_search(store, user_id="u1", email=True, discord=False, filters=None,
                 last_ids=None, lock=None, raw_filters=None, query="civic"):
    search = store.create(user_id, "Civics", query, filters)
    store.set_email_alerts(search.id, email, subscribed=True)
    if discord:
        store.set_discord_alerts(search.id, True, subscribed=True)
    with store._session_factory.begin() as session:
        row = session.get(SavedSearch, search.id)
        row.last_vehicle_ids = json.dumps(last_ids) if last_ids is not None else None
        row.processing_lock = lock
        if raw_filters is not None:
            row.filters = raw_filters
    return search.id


def engine_for(store, aggregator, oracle=None, email=None, discord=None):
    return AlertEngine(
        store=store,
        aggregator=aggregator,
        subscriptions=oracle or StubOracle(),
        email_sink=email,
        discord_sink=discord,
        settings=Settings(app_url="https://junkyardindex.com"),
        clock=lambda: NOW,
    )


class TestStore:
    def test_claim_is_exclusive(self, store):
        search_id = saved_search(store)
        stale_before = NOW - timedelta(minutes=5)
        assert store.claim(search_id, NOW, stale_before) is True
        assert store.claim(search_id, NOW, stale_before) is False
        store.release(search_id)
        assert store.claim(search_id, NOW, stale_before) is True

    def test_stale_locks_are_ignored(self, store):
        fresh = saved_search(store, lock=(NOW - timedelta(minutes=1)).replace(tzinfo=None))
        stale = saved_search(store, lock=(NOW - timedelta(minutes=10)).replace(tzinfo=None))
        eligible = {s.id for s in store.eligible(NOW - timedelta(minutes=5))}
        assert stale in eligible
        assert fresh not in eligible

    def test_searches_without_alerts_are_not_eligible(self, store):
        quiet = saved_search(store, email=False)
        assert quiet not in {s.id for s in store.eligible(NOW)}

    def test_email_toggle_requires_subscription(self, store):
        search_id = saved_search(store, email=False)
        with pytest.raises(AlertPreconditionError):
            store.set_email_alerts(search_id, True, subscribed=False)
        store.set_email_alerts(search_id, False, subscribed=False)

    def test_discord_toggle_requires_linked_installed_app(self, store, session_factory):
        search_id = saved_search(store)
        with session_factory.begin() as session:
            session.get(User, "u1").discord_app_installed = False
        with pytest.raises(AlertPreconditionError, match="Install"):
            store.set_discord_alerts(search_id, True, subscribed=True)
        with session_factory.begin() as session:
            session.get(User, "u1").discord_id = "not-a-snowflake"
        with pytest.raises(AlertPreconditionError, match="Link"):
            store.set_discord_alerts(search_id, True, subscribed=True)

    def test_crud(self, store):
        first = saved_search(store)
        saved_search(store)
        assert len(store.list_for_user("u1")) == 2
        assert store.delete(first, user_id="u2") is False
        assert store.delete(first, user_id="u1") is True
        assert store.get(first) is None
        assert len(store.list_for_user("u1")) == 1


class TestAlertEngine:
    def test_first_run_sets_baseline_without_notifying(self, store):
        search_id = saved_search(store)
        email = RecordingSink()
        engine = engine_for(store, StubAggregator(fleet(12)), email=email)

        [outcome] = asyncio.run(engine.run_cycle())

        assert outcome.status == "first_check_baseline_set"
        assert email.sent == []
        row = store.get(search_id)
        assert len(json.loads(row.last_vehicle_ids)) == 12
        assert row.last_checked_at is not None
        assert row.processing_lock is None

    def test_only_new_vehicles_are_sent(self, store):
        current = fleet(14)
        search_id = saved_search(store, discord=True, last_ids=[v.id for v in current[:12]])
        email, discord = RecordingSink(), RecordingSink()
        engine = engine_for(store, StubAggregator(current), email=email, discord=discord)

        [outcome] = asyncio.run(engine.run_cycle())

        assert outcome.status == "email_sent; discord_sent"
        assert outcome.new_vehicles == 2
        to, payload = email.sent[0]
        assert to == "driver@example.com"
        assert [v.id for v in payload.new_vehicles] == ["v12", "v13"]
        assert payload.search_url.startswith("https://junkyardindex.com/search?q=civic")
        assert discord.sent[0][0] == DISCORD_ID
        assert len(json.loads(store.get(search_id).last_vehicle_ids)) == 14

    def test_discord_prerequisites_fail_softly(self, store, session_factory):
        current = fleet(3)
        saved_search(store, discord=True, last_ids=["v0"])
        with session_factory.begin() as session:
            session.get(User, "u1").discord_app_installed = False
        email, discord = RecordingSink(), RecordingSink()
        engine = engine_for(store, StubAggregator(current), email=email, discord=discord)

        [outcome] = asyncio.run(engine.run_cycle())

        assert outcome.status == "email_sent; discord_failed: discord app not installed"
        assert len(email.sent) == 1
        assert discord.sent == []

    def test_snapshot_advances_even_when_delivery_fails(self, store):
        search_id = saved_search(store, last_ids=["v0"])
        email = RecordingSink(DeliveryResult(False, "smtp down"))
        engine = engine_for(store, StubAggregator(fleet(2)), email=email)

        [outcome] = asyncio.run(engine.run_cycle())

        assert outcome.status == "email_failed: smtp down"
        assert json.loads(store.get(search_id).last_vehicle_ids) == ["v0", "v1"]

    def test_no_new_vehicles(self, store):
        saved_search(store, last_ids=["v0", "v1", "gone"])
        email = RecordingSink()
        engine = engine_for(store, StubAggregator(fleet(2)), email=email)
        [outcome] = asyncio.run(engine.run_cycle())
        assert outcome.status == "no_new_vehicles"
        assert email.sent == []

    def test_lapsed_subscription_disables_alerts(self, store):
        search_id = saved_search(store, discord=True)
        aggregator = StubAggregator(fleet(2))
        engine = engine_for(store, aggregator, oracle=StubOracle(subscriptions=()))

        [outcome] = asyncio.run(engine.run_cycle())

        assert outcome.status == "subscription_expired_disabled"
        row = store.get(search_id)
        assert not row.email_alerts_enabled
        assert not row.discord_alerts_enabled
        assert row.processing_lock is None
        assert aggregator.filters == []

    def test_unknown_customer_disables_alerts(self, store):
        search_id = saved_search(store)
        engine = engine_for(store, StubAggregator(), oracle=StubOracle(error=RuntimeError("404")))
        [outcome] = asyncio.run(engine.run_cycle())
        assert outcome.status == "no_subscription_disabled"
        assert not store.get(search_id).email_alerts_enabled

    def test_user_without_email(self, store):
        saved_search(store, user_id="u2")
        engine = engine_for(store, StubAggregator())
        [outcome] = asyncio.run(engine.run_cycle())
        assert outcome.status == "no_user_email"

    def test_invalid_filters_skip_the_search(self, store):
        search_id = saved_search(store, raw_filters='{"version": 99}')
        engine = engine_for(store, StubAggregator(fleet(1)))
        [outcome] = asyncio.run(engine.run_cycle())
        assert outcome.status == "invalid_filters"
        assert store.get(search_id).processing_lock is None

    def test_salvage_yard_filter_applies_to_snapshot(self, store):
        bag = FilterBag(salvage_yards=["PYP Houston"], min_year=2000)
        search_id = saved_search(store, filters=bag)
        vehicles = fleet(2) + fleet(1, yard="PYP Houston")
        aggregator = StubAggregator(vehicles)
        engine = engine_for(store, aggregator)

        asyncio.run(engine.run_cycle())

        assert json.loads(store.get(search_id).last_vehicle_ids) == ["v0"]
        assert aggregator.filters[0].year_range == (2000, 9999)

    def test_crash_in_one_search_spares_the_batch(self, store):
        broken = saved_search(store, query="camry")
        healthy = saved_search(store)
        aggregator = StubAggregator(fleet(2), error=RuntimeError("boom"), failing_query="camry")
        engine = engine_for(store, aggregator)

        outcomes = asyncio.run(engine.run_cycle())

        statuses = {o.search_id: o.status for o in outcomes}
        assert statuses == {broken: "error: boom", healthy: "first_check_baseline_set"}
        assert json.loads(store.get(healthy).last_vehicle_ids) == ["v0", "v1"]
        assert store.get(broken).last_vehicle_ids is None
        assert store.get(broken).processing_lock is None
        assert store.get(healthy).processing_lock is None

    def test_overlapping_runs_alert_once(self, store):
        search_id = saved_search(store, last_ids=["v0"])
        stale_before = NOW - timedelta(minutes=5)
        [seen_by_first] = store.eligible(stale_before)

        second_email = RecordingSink()
        second = engine_for(store, StubAggregator(fleet(3)), email=second_email)
        [outcome] = asyncio.run(second.run_cycle())
        assert outcome.status == "email_sent"
        assert [v.id for v in second_email.sent[0][1].new_vehicles] == ["v1", "v2"]

        first_email = RecordingSink()
        first = engine_for(store, StubAggregator(fleet(3)), email=first_email)
        late = asyncio.run(first._run_one(seen_by_first, stale_before))

        assert late.status == "no_new_vehicles"
        assert first_email.sent == []
        assert store.get(search_id).processing_lock is None

    def test_toggle_switched_off_after_listing_is_honored(self, store):
        search_id = saved_search(store, last_ids=["v0"])
        stale_before = NOW - timedelta(minutes=5)
        [seen] = store.eligible(stale_before)
        store.set_email_alerts(search_id, False, subscribed=True)

        email = RecordingSink()
        aggregator = StubAggregator(fleet(3))
        engine = engine_for(store, aggregator, email=email)
        outcome = asyncio.run(engine._run_one(seen, stale_before))

        assert outcome.status == "skipped"
        assert email.sent == []
        assert aggregator.filters == []
        assert store.get(search_id).processing_lock is None

    def test_locked_searches_are_skipped(self, store):
        saved_search(store, lock=(NOW - timedelta(minutes=1)).replace(tzinfo=None))
        engine = engine_for(store, StubAggregator(fleet(1)))
        assert asyncio.run(engine.run_cycle()) == []

    def test_batches_cover_every_search(self, store):
        for _ in range(7):
            saved_search(store)
        engine = engine_for(store, StubAggregator(fleet(1)))
        outcomes = asyncio.run(engine.run_cycle())
        assert len(outcomes) == 7
        assert {o.status for o in outcomes} == {"first_check_baseline_set"}
