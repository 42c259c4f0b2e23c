import json
import logging
import re
from datetime import datetime, timezone

from sqlalchemy import delete, or_, select, update
from sqlalchemy.orm import sessionmaker

from ..db import SavedSearch, User, utcnow_naive
from ..errors import AlertPreconditionError
from ..schemas import FilterBag

logger = logging.getLogger(__name__)

SNOWFLAKE = re.compile(r"^\d{17,20}$")


def _naive_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


class SavedSearchStore:
    """Saved searches and the alert bookkeeping stored on them.

    All methods are blocking; async callers run them in an executor.
    """

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    # ── Alert engine ──

    def eligible(self, stale_before: datetime) -> list[SavedSearch]:
        """Searches with an alert channel on whose lock is absent or stale."""
        stmt = (
            select(SavedSearch)
            .where(
                or_(SavedSearch.email_alerts_enabled, SavedSearch.discord_alerts_enabled),
                or_(
                    SavedSearch.processing_lock.is_(None),
                    SavedSearch.processing_lock < _naive_utc(stale_before),
                ),
            )
            .order_by(SavedSearch.created_at)
        )
        with self._session_factory() as session:
            return list(session.scalars(stmt))

    def claim(self, search_id: str, now: datetime, stale_before: datetime) -> bool:
        """Take the processing lock. Exactly one concurrent caller wins."""
        stmt = (
            update(SavedSearch)
            .where(
                SavedSearch.id == search_id,
                or_(
                    SavedSearch.processing_lock.is_(None),
                    SavedSearch.processing_lock < _naive_utc(stale_before),
                ),
            )
            .values(processing_lock=_naive_utc(now))
            .execution_options(synchronize_session=False)
        )
        with self._session_factory.begin() as session:
            return session.execute(stmt).rowcount == 1

    def release(self, search_id: str) -> None:
        stmt = (
            update(SavedSearch)
            .where(SavedSearch.id == search_id)
            .values(processing_lock=None)
            .execution_options(synchronize_session=False)
        )
        with self._session_factory.begin() as session:
            session.execute(stmt)

    def save_snapshot(self, search_id: str, vehicle_ids: list[str], checked_at: datetime) -> None:
        stmt = (
            update(SavedSearch)
            .where(SavedSearch.id == search_id)
            .values(
                last_vehicle_ids=json.dumps(vehicle_ids),
                last_checked_at=_naive_utc(checked_at),
            )
            .execution_options(synchronize_session=False)
        )
        with self._session_factory.begin() as session:
            session.execute(stmt)

    def disable_alerts(self, search_id: str) -> None:
        """Switch off every alert channel and drop the lock."""
        stmt = (
            update(SavedSearch)
            .where(SavedSearch.id == search_id)
            .values(
                email_alerts_enabled=False,
                discord_alerts_enabled=False,
                processing_lock=None,
            )
            .execution_options(synchronize_session=False)
        )
        with self._session_factory.begin() as session:
            session.execute(stmt)

    def get_user(self, user_id: str) -> User | None:
        with self._session_factory() as session:
            return session.get(User, user_id)

    # ── CRUD ──

    def create(
        self,
        user_id: str,
        name: str,
        query: str = "",
        filters: FilterBag | None = None,
    ) -> SavedSearch:
        search = SavedSearch(
            user_id=user_id,
            name=name,
            query=query,
            filters=(filters or FilterBag()).dump(),
        )
        with self._session_factory.begin() as session:
            session.add(search)
        logger.info(f"Created saved search {search.id} for user {user_id}")
        return search

    def list_for_user(self, user_id: str) -> list[SavedSearch]:
        stmt = (
            select(SavedSearch)
            .where(SavedSearch.user_id == user_id)
            .order_by(SavedSearch.created_at.desc())
        )
        with self._session_factory() as session:
            return list(session.scalars(stmt))

    def get(self, search_id: str) -> SavedSearch | None:
        with self._session_factory() as session:
            return session.get(SavedSearch, search_id)

    def delete(self, search_id: str, user_id: str | None = None) -> bool:
        stmt = delete(SavedSearch).where(SavedSearch.id == search_id)
        if user_id is not None:
            stmt = stmt.where(SavedSearch.user_id == user_id)
        with self._session_factory.begin() as session:
            return session.execute(stmt.execution_options(synchronize_session=False)).rowcount == 1

    def set_email_alerts(self, search_id: str, enabled: bool, *, subscribed: bool) -> None:
        if enabled and not subscribed:
            raise AlertPreconditionError("Email alerts require an active subscription")
        self._set_toggle(search_id, email_alerts_enabled=enabled)

    def set_discord_alerts(self, search_id: str, enabled: bool, *, subscribed: bool) -> None:
        if enabled:
            if not subscribed:
                raise AlertPreconditionError("Discord alerts require an active subscription")
            search = self.get(search_id)
            if search is None:
                raise LookupError(f"Saved search {search_id} not found")
            user = self.get_user(search.user_id)
            if user is None or not user.discord_id or not SNOWFLAKE.match(user.discord_id):
                raise AlertPreconditionError("Link a Discord account before enabling Discord alerts")
            if not user.discord_app_installed:
                raise AlertPreconditionError("Install the Discord app before enabling Discord alerts")
        self._set_toggle(search_id, discord_alerts_enabled=enabled)

    def _set_toggle(self, search_id: str, **values) -> None:
        stmt = (
            update(SavedSearch)
            .where(SavedSearch.id == search_id)
            .values(updated_at=utcnow_naive(), **values)
            .execution_options(synchronize_session=False)
        )
        with self._session_factory.begin() as session:
            if session.execute(stmt).rowcount != 1:
                raise LookupError(f"Saved search {search_id} not found")
