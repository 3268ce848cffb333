"""Reconciler: the single write path for subscription state.

Every observer of provider state (notifications, the read-path fallback, the
period sync) hands a ``Snapshot`` to ``Reconciler.merge``. Local-only writes
(free plans, local cancel/resume) go through ``create_local``/``update_local``.
Each write refreshes the account's cached views before its lock is released.
"""

import asyncio
import calendar
from contextlib import asynccontextmanager
from datetime import UTC, datetime, timedelta
from typing import Any

import structlog

from subsync.config import ReconcilerConfig
from subsync.models.billing import (
    ACCESS_STATUSES,
    DYNAMIC_FIELDS,
    PERMANENT_FIELDS,
    DateSource,
    IntervalUnit,
    Snapshot,
    Subscription,
)
from subsync.services.access import evaluate, summarize
from subsync.services.cache import Cache, CacheView
from subsync.services.plan_catalog import PlanStore, interval_for_price
from subsync.services.subscription_store import AccountStore, SubscriptionStore

logger = structlog.get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


def add_interval(start: datetime, unit: IntervalUnit, count: int) -> datetime:
    """Advance ``start`` by ``count`` units, clamping to the last day of short months."""
    if unit == "day":
        return start + timedelta(days=count)
    if unit == "week":
        return start + timedelta(weeks=count)

    months = count * 12 if unit == "year" else count
    month_index = start.month - 1 + months
    year = start.year + month_index // 12
    month = month_index % 12 + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return start.replace(year=year, month=month, day=day)


class KeyedLocks:
    """One asyncio lock per key, dropped once no task holds or waits on it."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = {}

    def __len__(self) -> int:
        return len(self._locks)

    @asynccontextmanager
    async def hold(self, key: str):
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if not self._users[key]:
                del self._users[key]
                del self._locks[key]


class Reconciler:
    """Merges provider snapshots into the record store and keeps cached views current.

    Merges for one remote id are serialized by a per-remote-id lock; every
    write for one account is serialized by a per-account lock. Locks are always
    taken in that order.
    """

    def __init__(
        self,
        store: SubscriptionStore,
        accounts: AccountStore,
        cache: Cache,
        plans: PlanStore | None = None,
        config: ReconcilerConfig | None = None,
        now_provider=_utcnow,
    ) -> None:
        self.store = store
        self.accounts = accounts
        self.cache = cache
        self.plans = plans
        self.config = config or ReconcilerConfig()
        self.now_provider = now_provider
        self._remote_locks = KeyedLocks()
        self._account_locks = KeyedLocks()

    async def _resolve_account(
        self, snapshot: Snapshot, existing: Subscription | None
    ) -> str | None:
        if existing is not None:
            return existing.account_id
        if snapshot.account_id:
            return snapshot.account_id
        if snapshot.remote_customer_id:
            account = await self.accounts.get_account_by_customer_id(snapshot.remote_customer_id)
            if account is not None:
                return account.account_id
        return None

    async def _interval_for(self, snapshot: Snapshot, plan_reference: str | None):
        if snapshot.interval_unit:
            return snapshot.interval_unit, snapshot.interval_count or 1
        if self.plans is not None and plan_reference:
            plan = await self.plans.get_plan(plan_reference)
            if plan is not None:
                return interval_for_price(plan, snapshot.price_reference)
        return self.config.default_interval_unit, self.config.default_interval_count

    async def _resolve_period_end(
        self,
        snapshot: Snapshot,
        existing: Subscription | None,
        plan_reference: str | None,
        now: datetime,
    ) -> tuple[datetime | None, DateSource | None]:
        if snapshot.current_period_end is not None:
            return snapshot.current_period_end, DateSource.CONFIRMED

        # A known end for the running period wins over a fresh estimate.
        if existing is not None and existing.current_period_end is not None:
            if existing.current_period_end > now or snapshot.status not in ACCESS_STATUSES:
                return existing.current_period_end, existing.period_end_source

        if snapshot.status not in ACCESS_STATUSES:
            return None, None

        unit, count = await self._interval_for(snapshot, plan_reference)
        estimate = add_interval(now, unit, count)
        logger.info(
            "period_end_estimated",
            remote_id=snapshot.remote_id,
            period_end=estimate.isoformat(),
            interval_unit=unit,
            interval_count=count,
        )
        return estimate, DateSource.ESTIMATED

    async def _merge_fields(
        self,
        snapshot: Snapshot,
        existing: Subscription | None,
        account_id: str,
        now: datetime,
        overwrite_permanent: bool,
    ) -> dict[str, Any]:
        fields: dict[str, Any] = {"account_id": account_id, "kind": snapshot.kind}
        if snapshot.remote_customer_id or existing is None:
            fields["remote_customer_id"] = snapshot.remote_customer_id

        for name in PERMANENT_FIELDS:
            incoming = getattr(snapshot, name)
            current = getattr(existing, name) if existing is not None else None
            if existing is None or (current is None and incoming is not None):
                fields[name] = incoming
            elif overwrite_permanent and incoming is not None:
                fields[name] = incoming

        for name in DYNAMIC_FIELDS:
            fields[name] = getattr(snapshot, name)

        plan_reference = fields.get("plan_reference") or (
            existing.plan_reference if existing is not None else None
        )
        period_end, source = await self._resolve_period_end(
            snapshot, existing, plan_reference, now
        )
        fields["current_period_end"] = period_end
        fields["period_end_source"] = source
        return fields

    async def merge(
        self, snapshot: Snapshot, *, overwrite_permanent: bool = False
    ) -> Subscription | None:
        """Fold a provider snapshot into the store.

        Returns the persisted record, or None when the snapshot cannot be tied
        to a local account.
        """
        async with self._remote_locks.hold(snapshot.remote_id):
            existing = await self.store.get_by_remote_id(snapshot.remote_id)
            account_id = await self._resolve_account(snapshot, existing)
            if account_id is None:
                logger.warning(
                    "snapshot_account_unresolved",
                    remote_id=snapshot.remote_id,
                    remote_customer_id=snapshot.remote_customer_id,
                )
                return None

            async with self._account_locks.hold(account_id):
                now = self.now_provider()
                fields = await self._merge_fields(
                    snapshot, existing, account_id, now, overwrite_permanent
                )
                record = await self.store.upsert_by_remote_id(snapshot.remote_id, fields, now=now)
                await self._refresh_views(account_id, now)

        logger.info(
            "subscription_merged",
            account_id=account_id,
            subscription_id=record.id,
            remote_id=snapshot.remote_id,
            status=record.status.value,
            created=existing is None,
            period_end_source=record.period_end_source.value
            if record.period_end_source
            else None,
        )
        return record

    async def create_local(self, subscription: Subscription) -> Subscription:
        """Insert a provider-less record and terminate whatever it replaces."""
        async with self._account_locks.hold(subscription.account_id):
            now = self.now_provider()
            record = await self.store.create_local(subscription, now=now)
            await self._refresh_views(record.account_id, now)
        logger.info(
            "local_subscription_created",
            account_id=record.account_id,
            subscription_id=record.id,
            kind=record.kind.value,
        )
        return record

    async def update_local(self, subscription: Subscription) -> Subscription:
        async with self._account_locks.hold(subscription.account_id):
            now = self.now_provider()
            subscription.updated_at = now
            record = await self.store.update(subscription)
            await self._refresh_views(record.account_id, now)
        return record

    async def refresh_account_cache(self, account_id: str) -> None:
        async with self._account_locks.hold(account_id):
            await self._refresh_views(account_id, self.now_provider())

    async def build_views(self, account_id: str, now: datetime) -> dict[CacheView, Any]:
        """Derive every state view for the account from the record store."""
        history = await self.store.list_for_account(account_id)
        current = next((r for r in history if r.is_non_terminal(now)), None)

        plan_name = None
        if current is not None and current.plan_reference and self.plans is not None:
            plan = await self.plans.get_plan(current.plan_reference)
            plan_name = plan.name if plan else None

        return {
            CacheView.SUBSCRIPTION: {
                "record": current.model_dump(mode="json") if current else None
            },
            CacheView.ACCESS: evaluate(current, now).model_dump(mode="json"),
            CacheView.SUMMARY: summarize(current, now, plan_name).model_dump(mode="json"),
            CacheView.MEMBERSHIP: [r.model_dump(mode="json") for r in history],
        }

    async def _refresh_views(self, account_id: str, now: datetime) -> None:
        views = await self.build_views(account_id, now)
        await self.cache.refresh(account_id, views)
