"""Read path with on-demand provider refresh for stale records."""

import asyncio
from datetime import UTC, datetime, timedelta

import structlog

from subsync.config import ReconcilerConfig
from subsync.errors import TransientGatewayError, ValidationError
from subsync.models.billing import Snapshot, Subscription
from subsync.services.billing_gateway import RemoteBillingGateway
from subsync.services.cache import Cache, CacheView
from subsync.services.reconciler import Reconciler
from subsync.services.subscription_store import AccountStore, SubscriptionStore

logger = structlog.get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class StalenessFallback:
    """Cache, then store, then provider.

    The provider call runs outside every lock and is bounded by
    ``gateway_timeout_seconds``; on timeout or provider failure the local record
    is returned as-is.
    """

    def __init__(
        self,
        store: SubscriptionStore,
        accounts: AccountStore,
        cache: Cache,
        reconciler: Reconciler,
        gateway: RemoteBillingGateway | None = None,
        config: ReconcilerConfig | None = None,
        now_provider=_utcnow,
    ) -> None:
        self.store = store
        self.accounts = accounts
        self.cache = cache
        self.reconciler = reconciler
        self.gateway = gateway
        self.config = config or ReconcilerConfig()
        self.now_provider = now_provider

    def is_stale(self, record: Subscription, now: datetime) -> bool:
        return now - record.updated_at > timedelta(seconds=self.config.stale_threshold_seconds)

    async def _bounded(self, coro) -> Snapshot | None:
        return await asyncio.wait_for(coro, timeout=self.config.gateway_timeout_seconds)

    async def _pull(self, account_id: str, record: Subscription | None) -> Snapshot | None:
        snapshot = None
        if record is not None and record.remote_id:
            snapshot = await self._bounded(self.gateway.fetch_subscription(record.remote_id))
            if snapshot is not None:
                return snapshot

        customer_id = record.remote_customer_id if record is not None else None
        if not customer_id:
            account = await self.accounts.get_account(account_id)
            customer_id = account.remote_customer_id if account else None
        if customer_id:
            snapshot = await self._bounded(
                self.gateway.fetch_active_subscription_for_account(customer_id)
            )
        if snapshot is not None and snapshot.account_id is None:
            snapshot.account_id = account_id
        return snapshot

    async def get_subscription(self, account_id: str) -> Subscription | None:
        """Current subscription for the account, refreshed from the provider when stale."""
        cached = await self.cache.get(account_id, CacheView.SUBSCRIPTION)
        if cached is not None:
            record = cached.get("record")
            return Subscription.model_validate(record) if record else None

        now = self.now_provider()
        record = await self.store.find_current_for_account(account_id, now)

        needs_pull = self.gateway is not None and (
            (record is not None and record.is_remote and self.is_stale(record, now))
            or record is None
        )
        if not needs_pull:
            await self.reconciler.refresh_account_cache(account_id)
            return record

        if record is not None:
            logger.info(
                "stale_subscription_refetch",
                account_id=account_id,
                subscription_id=record.id,
                age_seconds=int((now - record.updated_at).total_seconds()),
            )

        try:
            snapshot = await self._pull(account_id, record)
        except (TimeoutError, TransientGatewayError, ValidationError) as e:
            logger.warning(
                "stale_subscription_refetch_failed",
                account_id=account_id,
                error=str(e) or type(e).__name__,
            )
            return record

        if snapshot is None:
            await self.reconciler.refresh_account_cache(account_id)
            return record

        await self.reconciler.merge(snapshot)
        return await self.store.find_current_for_account(account_id, self.now_provider())
