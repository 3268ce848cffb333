"""Subscription record store and billing account repositories."""

import asyncio
import uuid
from datetime import datetime
from typing import Any, Protocol

import httpx
import structlog
from postgrest.exceptions import APIError as PostgrestAPIError

from subsync.errors import PersistenceError, TrialAlreadyUsed
from subsync.models.billing import (
    ACCESS_STATUSES,
    BillingAccount,
    DateSource,
    Subscription,
    SubscriptionKind,
    SubscriptionStatus,
)

logger = structlog.get_logger(__name__)

UNIQUE_VIOLATION = "23505"


def _terminate(record: Subscription, now: datetime) -> None:
    record.status = SubscriptionStatus.CANCELED
    record.grace_ends_at = now
    record.updated_at = now


def _needs_period_sync(record: Subscription) -> bool:
    if not record.is_remote or record.status not in ACCESS_STATUSES:
        return False
    return record.current_period_end is None or record.period_end_source == DateSource.ESTIMATED


class SubscriptionStore(Protocol):
    """Storage contract for subscription records.

    Records are never deleted. ``upsert_by_remote_id`` and ``create_local``
    must apply the record write and the termination of its siblings as one
    atomic unit.
    """

    async def get(self, subscription_id: str) -> Subscription | None:
        """Fetch a record by local id."""

    async def get_by_remote_id(self, remote_id: str) -> Subscription | None:
        """Fetch a record by provider id."""

    async def find_current_for_account(
        self, account_id: str, now: datetime
    ) -> Subscription | None:
        """Most recently created non-terminal record for the account."""

    async def list_for_account(self, account_id: str) -> list[Subscription]:
        """Full history for the account, newest first."""

    async def has_ever_had_free_trial(self, account_id: str) -> bool:
        """True if any record in the account's history is a free plan."""

    async def upsert_by_remote_id(
        self, remote_id: str, fields: dict[str, Any], *, now: datetime
    ) -> Subscription:
        """Create or update the record keyed by ``remote_id``."""

    async def create_local(self, subscription: Subscription, *, now: datetime) -> Subscription:
        """Insert a provider-less record, enforcing the lifetime free limit."""

    async def update(self, subscription: Subscription) -> Subscription:
        """Persist a local mutation of an existing record."""

    async def list_needing_period_sync(self) -> list[Subscription]:
        """Provider-backed records whose period end is missing or estimated."""


class AccountStore(Protocol):
    """Storage contract for provider customer mappings."""

    async def get_account(self, account_id: str) -> BillingAccount | None:
        """Fetch an account."""

    async def get_account_by_customer_id(self, customer_id: str) -> BillingAccount | None:
        """Fetch account by provider customer ID."""

    async def upsert_account(self, account: BillingAccount) -> BillingAccount:
        """Persist account state."""


class InMemorySubscriptionStore:
    """In-memory store used for tests and local runs."""

    def __init__(self) -> None:
        self.records: dict[str, Subscription] = {}
        self.remote_index: dict[str, str] = {}
        # Stands in for the database transaction around write + sibling termination
        self._tx = asyncio.Lock()

    def _account_records(self, account_id: str) -> list[Subscription]:
        rows = [r for r in self.records.values() if r.account_id == account_id]
        return sorted(rows, key=lambda r: r.created_at, reverse=True)

    def _terminate_siblings(self, keep: Subscription, now: datetime) -> list[str]:
        terminated = []
        for record in self._account_records(keep.account_id):
            if record.id != keep.id and record.is_non_terminal(now):
                _terminate(record, now)
                terminated.append(record.id)
        return terminated

    async def get(self, subscription_id: str) -> Subscription | None:
        record = self.records.get(subscription_id)
        return record.model_copy(deep=True) if record else None

    async def get_by_remote_id(self, remote_id: str) -> Subscription | None:
        local_id = self.remote_index.get(remote_id)
        if local_id is None:
            return None
        return await self.get(local_id)

    async def find_current_for_account(
        self, account_id: str, now: datetime
    ) -> Subscription | None:
        for record in self._account_records(account_id):
            if record.is_non_terminal(now):
                return record.model_copy(deep=True)
        return None

    async def list_for_account(self, account_id: str) -> list[Subscription]:
        return [r.model_copy(deep=True) for r in self._account_records(account_id)]

    async def has_ever_had_free_trial(self, account_id: str) -> bool:
        return any(r.kind == SubscriptionKind.FREE for r in self._account_records(account_id))

    async def upsert_by_remote_id(
        self, remote_id: str, fields: dict[str, Any], *, now: datetime
    ) -> Subscription:
        async with self._tx:
            local_id = self.remote_index.get(remote_id)
            if local_id is None:
                record = Subscription(
                    **{
                        **fields,
                        "id": str(uuid.uuid4()),
                        "remote_id": remote_id,
                        "created_at": now,
                        "updated_at": now,
                    }
                )
                self.records[record.id] = record
                self.remote_index[remote_id] = record.id
            else:
                record = self.records[local_id]
                immutable = {"id", "remote_id", "account_id", "created_at"}
                for name, value in fields.items():
                    if name not in immutable:
                        setattr(record, name, value)
                record.updated_at = now

            if record.status in ACCESS_STATUSES:
                self._terminate_siblings(record, now)
            return record.model_copy(deep=True)

    async def create_local(self, subscription: Subscription, *, now: datetime) -> Subscription:
        async with self._tx:
            if subscription.kind == SubscriptionKind.FREE and await self.has_ever_had_free_trial(
                subscription.account_id
            ):
                raise TrialAlreadyUsed(subscription.account_id)
            record = subscription.model_copy(deep=True)
            self.records[record.id] = record
            self._terminate_siblings(record, now)
            return record.model_copy(deep=True)

    async def update(self, subscription: Subscription) -> Subscription:
        async with self._tx:
            if subscription.id not in self.records:
                raise PersistenceError(f"Subscription {subscription.id} does not exist")
            stored = subscription.model_copy(deep=True)
            self.records[stored.id] = stored
            return stored.model_copy(deep=True)

    async def list_needing_period_sync(self) -> list[Subscription]:
        return [r.model_copy(deep=True) for r in self.records.values() if _needs_period_sync(r)]


class InMemoryAccountStore:
    """In-memory account repository used for tests and local runs."""

    def __init__(self) -> None:
        self.accounts: dict[str, BillingAccount] = {}
        self.customer_to_account: dict[str, str] = {}

    async def get_account(self, account_id: str) -> BillingAccount | None:
        account = self.accounts.get(account_id)
        return account.model_copy(deep=True) if account else None

    async def get_account_by_customer_id(self, customer_id: str) -> BillingAccount | None:
        account_id = self.customer_to_account.get(customer_id)
        if not account_id:
            return None
        return await self.get_account(account_id)

    async def upsert_account(self, account: BillingAccount) -> BillingAccount:
        stored = account.model_copy(deep=True)
        self.accounts[stored.account_id] = stored
        if stored.remote_customer_id:
            self.customer_to_account[stored.remote_customer_id] = stored.account_id
        return stored.model_copy(deep=True)


async def execute_query(query, *, raise_unique_violation: bool = False) -> list[dict]:
    """Run a PostgREST query, translating transport and API failures."""
    try:
        response = await query.execute()
    except PostgrestAPIError as e:
        if raise_unique_violation and e.code == UNIQUE_VIOLATION:
            raise
        raise PersistenceError(f"Supabase request failed: {e.message}") from e
    except httpx.HTTPError as e:
        raise PersistenceError(f"Supabase unreachable: {e}") from e
    data = response.data
    if data is None:
        return []
    return data if isinstance(data, list) else [data]


class SupabaseSubscriptionStore:
    """Supabase-backed store.

    Atomic operations run as Postgres functions (see
    ``backend/migrations/001_subscriptions.sql``) so the record write and the
    sibling termination commit together.
    """

    def __init__(self, client, table: str = "subscriptions"):
        self.client = client
        self.table = table

    def _select(self):
        return self.client.table(self.table).select("*")

    async def _one(self, query) -> Subscription | None:
        rows = await execute_query(query.limit(1))
        return Subscription.model_validate(rows[0]) if rows else None

    async def get(self, subscription_id: str) -> Subscription | None:
        return await self._one(self._select().eq("id", subscription_id))

    async def get_by_remote_id(self, remote_id: str) -> Subscription | None:
        return await self._one(self._select().eq("remote_id", remote_id))

    async def find_current_for_account(
        self, account_id: str, now: datetime
    ) -> Subscription | None:
        rows = await execute_query(
            self._select()
            .eq("account_id", account_id)
            .in_(
                "status",
                [
                    SubscriptionStatus.ACTIVE.value,
                    SubscriptionStatus.TRIALING.value,
                    SubscriptionStatus.CANCELED.value,
                ],
            )
            .order("created_at", desc=True)
        )
        for row in rows:
            record = Subscription.model_validate(row)
            if record.is_non_terminal(now):
                return record
        return None

    async def list_for_account(self, account_id: str) -> list[Subscription]:
        rows = await execute_query(
            self._select().eq("account_id", account_id).order("created_at", desc=True)
        )
        return [Subscription.model_validate(row) for row in rows]

    async def has_ever_had_free_trial(self, account_id: str) -> bool:
        rows = await execute_query(
            self.client.table(self.table)
            .select("id")
            .eq("account_id", account_id)
            .eq("kind", SubscriptionKind.FREE.value)
            .limit(1)
        )
        return bool(rows)

    async def upsert_by_remote_id(
        self, remote_id: str, fields: dict[str, Any], *, now: datetime
    ) -> Subscription:
        payload = {
            k: (v.isoformat() if isinstance(v, datetime) else getattr(v, "value", v))
            for k, v in fields.items()
        }
        rows = await execute_query(
            self.client.rpc(
                "upsert_subscription_by_remote_id",
                {"p_remote_id": remote_id, "p_fields": payload, "p_now": now.isoformat()},
            )
        )
        if not rows:
            raise PersistenceError(f"Upsert for {remote_id} returned no row")
        return Subscription.model_validate(rows[0])

    async def create_local(self, subscription: Subscription, *, now: datetime) -> Subscription:
        try:
            rows = await execute_query(
                self.client.rpc(
                    "create_local_subscription",
                    {
                        "p_record": subscription.model_dump(mode="json"),
                        "p_now": now.isoformat(),
                    },
                ),
                raise_unique_violation=True,
            )
        except PostgrestAPIError as e:
            # Partial unique index on (account_id) where kind = 'free'
            logger.info("free_trial_unique_violation", account_id=subscription.account_id)
            raise TrialAlreadyUsed(subscription.account_id) from e
        if not rows:
            raise PersistenceError(f"Insert for account {subscription.account_id} returned no row")
        return Subscription.model_validate(rows[0])

    async def update(self, subscription: Subscription) -> Subscription:
        payload = subscription.model_dump(
            mode="json", exclude={"id", "remote_id", "account_id", "created_at"}
        )
        rows = await execute_query(
            self.client.table(self.table).update(payload).eq("id", subscription.id)
        )
        return Subscription.model_validate(rows[0]) if rows else subscription

    async def list_needing_period_sync(self) -> list[Subscription]:
        rows = await execute_query(
            self._select()
            .not_.is_("remote_id", "null")
            .in_(
                "status",
                [SubscriptionStatus.ACTIVE.value, SubscriptionStatus.TRIALING.value],
            )
        )
        records = [Subscription.model_validate(row) for row in rows]
        return [r for r in records if _needs_period_sync(r)]


class SupabaseAccountStore:
    """Supabase-backed repository for provider customer mappings."""

    def __init__(self, client, table: str = "billing_accounts"):
        self.client = client
        self.table = table

    async def _fetch_one(self, column: str, value: str) -> BillingAccount | None:
        rows = await execute_query(
            self.client.table(self.table).select("*").eq(column, value).limit(1)
        )
        return BillingAccount.model_validate(rows[0]) if rows else None

    async def get_account(self, account_id: str) -> BillingAccount | None:
        return await self._fetch_one("account_id", account_id)

    async def get_account_by_customer_id(self, customer_id: str) -> BillingAccount | None:
        return await self._fetch_one("remote_customer_id", customer_id)

    async def upsert_account(self, account: BillingAccount) -> BillingAccount:
        payload = account.model_dump(mode="json", exclude_none=True)
        rows = await execute_query(
            self.client.table(self.table).upsert(payload, on_conflict="account_id")
        )
        if not rows:
            # Some Supabase responses return no data unless `returning=representation`.
            return account
        return BillingAccount.model_validate(rows[0])
