"""Subscription operations exposed to controllers."""

import uuid
from datetime import UTC, datetime, timedelta
from typing import Any

import structlog

from subsync.errors import (
    BillingError,
    ConflictError,
    NoActiveSubscription,
    TrialAlreadyUsed,
    ValidationError,
)
from subsync.models.billing import (
    AccessDecision,
    BillingAccount,
    BillingFrequency,
    CheckoutHandle,
    Invoice,
    Subscription,
    SubscriptionKind,
    SubscriptionStatus,
    SubscriptionSummary,
)
from subsync.models.events import FailedEvent, ProviderEvent
from subsync.services.access import days_until, evaluate, summarize
from subsync.services.billing_gateway import RemoteBillingGateway
from subsync.services.cache import Cache, CacheView
from subsync.services.event_ingestion import EventIngestion
from subsync.services.plan_catalog import PlanCatalog
from subsync.services.reconciler import Reconciler
from subsync.services.staleness import StalenessFallback
from subsync.services.subscription_store import AccountStore, SubscriptionStore

logger = structlog.get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class SubscriptionService:
    """Entry points for subscribe, checkout, cancel/resume and the read views.

    Writes go through the Reconciler; reads go through the cache and the
    staleness fallback.
    """

    def __init__(
        self,
        store: SubscriptionStore,
        accounts: AccountStore,
        cache: Cache,
        catalog: PlanCatalog,
        reconciler: Reconciler,
        fallback: StalenessFallback,
        gateway: RemoteBillingGateway | None = None,
        ingestion: EventIngestion | None = None,
        now_provider=_utcnow,
    ) -> None:
        self.store = store
        self.accounts = accounts
        self.cache = cache
        self.catalog = catalog
        self.reconciler = reconciler
        self.fallback = fallback
        self.gateway = gateway
        self.ingestion = ingestion
        self.now_provider = now_provider

    def _require_gateway(self) -> RemoteBillingGateway:
        if self.gateway is None:
            raise ValidationError("Billing provider is not configured")
        return self.gateway

    def _require_ingestion(self) -> EventIngestion:
        if self.ingestion is None:
            raise ValidationError("Provider event ingestion is not configured")
        return self.ingestion

    async def _current(self, account_id: str) -> Subscription | None:
        return await self.store.find_current_for_account(account_id, self.now_provider())

    async def subscribe_free(
        self,
        account_id: str,
        plan_id: str,
        frequency: BillingFrequency = BillingFrequency.MONTHLY,
    ) -> Subscription:
        """Start the account's one free plan. Raises TrialAlreadyUsed on a second attempt."""
        plan = await self.catalog.require_plan(plan_id)
        if plan.price_for(frequency) > 0:
            raise ValidationError(f"Plan '{plan_id}' is not a free plan")

        if await self.store.has_ever_had_free_trial(account_id):
            logger.info("free_plan_rejected", account_id=account_id, plan_id=plan_id)
            raise TrialAlreadyUsed(account_id)

        now = self.now_provider()
        current = await self._current(account_id)
        if current is not None and current.is_remote and evaluate(current, now).can_access:
            raise ConflictError("Account already has an active paid subscription")

        subscription = Subscription(
            id=str(uuid.uuid4()),
            account_id=account_id,
            kind=SubscriptionKind.FREE,
            status=SubscriptionStatus.ACTIVE,
            plan_reference=plan.id,
            starts_at=now,
            grace_ends_at=now + timedelta(days=plan.duration_days_for(frequency)),
            created_at=now,
            updated_at=now,
        )
        return await self.reconciler.create_local(subscription)

    async def _ensure_customer(self, gateway: RemoteBillingGateway, account_id: str) -> str:
        account = await self.accounts.get_account(account_id)
        if account is not None and account.remote_customer_id:
            return account.remote_customer_id

        now = self.now_provider()
        customer_id = await gateway.create_customer(account_id)
        if account is None:
            account = BillingAccount(account_id=account_id, created_at=now)
        account.remote_customer_id = customer_id
        account.updated_at = now
        await self.accounts.upsert_account(account)
        logger.info("billing_customer_created", account_id=account_id, customer_id=customer_id)
        return customer_id

    async def request_paid_checkout(
        self, account_id: str, plan_id: str, frequency: BillingFrequency
    ) -> CheckoutHandle:
        """Swap an existing paid subscription in place, or open a hosted checkout."""
        gateway = self._require_gateway()
        plan = await self.catalog.require_plan(plan_id)
        if plan.price_for(frequency) <= 0:
            raise ValidationError("Free plans do not go through checkout")
        price_ref = plan.remote_price_for(frequency)
        if not price_ref:
            raise ValidationError(f"Plan '{plan_id}' has no {frequency.value} price")

        now = self.now_provider()
        current = await self._current(account_id)
        account = await self.accounts.get_account(account_id)
        if (
            current is not None
            and current.is_remote
            and evaluate(current, now).can_access
            and account is not None
            and account.has_payment_method
        ):
            snapshot = await gateway.swap_plan(current.remote_id, price_ref, plan_id=plan.id)
            snapshot.account_id = account_id
            await self.reconciler.merge(snapshot, overwrite_permanent=True)
            logger.info(
                "subscription_plan_swapped",
                account_id=account_id,
                remote_id=current.remote_id,
                plan_id=plan.id,
                frequency=frequency.value,
            )
            return CheckoutHandle(swapped=True)

        customer_id = await self._ensure_customer(gateway, account_id)
        handle = await gateway.create_checkout_session(
            account_id=account_id,
            customer_id=customer_id,
            price_ref=price_ref,
            plan_id=plan.id,
            frequency=frequency,
        )
        logger.info(
            "checkout_session_created",
            account_id=account_id,
            plan_id=plan.id,
            session_id=handle.session_id,
        )
        return handle

    async def handle_provider_event(
        self, event_type: str, payload: dict[str, Any], remote_id: str | None = None
    ) -> ProviderEvent | None:
        return await self._require_ingestion().submit(event_type, payload, remote_id)

    async def get_subscription(self, account_id: str) -> Subscription | None:
        return await self.fallback.get_subscription(account_id)

    async def get_access_decision(self, account_id: str) -> AccessDecision:
        now = self.now_provider()
        cached = await self.cache.get(account_id, CacheView.ACCESS)
        if cached is not None:
            decision = AccessDecision.model_validate(cached)
            expiry = decision.authoritative_expiry
            if expiry is None or expiry > now:
                if decision.can_access:
                    decision.days_remaining = days_until(expiry, now)
                return decision

        subscription = await self.fallback.get_subscription(account_id)
        decision = evaluate(subscription, now)
        await self.cache.set(account_id, CacheView.ACCESS, decision.model_dump(mode="json"))
        return decision

    async def cancel(self, account_id: str) -> Subscription:
        """Cancel at period end (provider-backed) or immediately (local)."""
        now = self.now_provider()
        current = await self._current(account_id)
        if current is None or not evaluate(current, now).can_access:
            raise NoActiveSubscription(account_id)

        if current.is_remote:
            if current.in_grace(now):
                return current
            await self._require_gateway().cancel_at_period_end(current.remote_id)
            logger.info(
                "subscription_cancel_requested",
                account_id=account_id,
                remote_id=current.remote_id,
            )
            return current

        current.status = SubscriptionStatus.CANCELED
        current.grace_ends_at = now
        record = await self.reconciler.update_local(current)
        logger.info(
            "local_subscription_canceled", account_id=account_id, subscription_id=record.id
        )
        return record

    async def resume(self, account_id: str) -> Subscription:
        """Undo a pending cancellation while its grace period lasts."""
        now = self.now_provider()
        current = await self._current(account_id)
        # Local cancellation is immediate, so only provider-backed records can be resumed
        if current is None or not current.is_remote or not current.in_grace(now):
            raise NoActiveSubscription(account_id, detail="No cancelled subscription to resume")

        await self._require_gateway().resume(current.remote_id)
        logger.info(
            "subscription_resume_requested",
            account_id=account_id,
            remote_id=current.remote_id,
        )
        return current

    async def get_summary(self, account_id: str) -> SubscriptionSummary:
        cached = await self.cache.get(account_id, CacheView.SUMMARY)
        if cached is not None:
            return SubscriptionSummary.model_validate(cached)

        subscription = await self.fallback.get_subscription(account_id)
        plan_name = None
        if subscription is not None and subscription.plan_reference:
            plan = await self.catalog.get_plan(subscription.plan_reference)
            plan_name = plan.name if plan else None
        return summarize(subscription, self.now_provider(), plan_name)

    async def get_membership_history(self, account_id: str) -> list[Subscription]:
        cached = await self.cache.get(account_id, CacheView.MEMBERSHIP)
        if cached is not None:
            return [Subscription.model_validate(r) for r in cached]

        history = await self.store.list_for_account(account_id)
        await self.cache.set(
            account_id, CacheView.MEMBERSHIP, [r.model_dump(mode="json") for r in history]
        )
        return history

    async def get_invoices(self, account_id: str, fresh: bool = False) -> list[Invoice]:
        """Provider invoices for the account. Provider failures yield an empty, uncached list."""
        if self.gateway is None:
            return []
        account = await self.accounts.get_account(account_id)
        if account is None or not account.remote_customer_id:
            return []

        if not fresh:
            cached = await self.cache.get(account_id, CacheView.INVOICES)
            if cached is not None:
                return [Invoice.model_validate(i) for i in cached]

        try:
            invoices = await self.gateway.fetch_invoices(account.remote_customer_id)
        except BillingError as e:
            logger.warning("invoice_fetch_failed", account_id=account_id, error=str(e))
            return []

        await self.cache.set(
            account_id, CacheView.INVOICES, [i.model_dump(mode="json") for i in invoices]
        )
        return invoices

    async def sync_missing_periods(self) -> dict[str, int]:
        """Re-read provider-backed records whose period end is missing or estimated."""
        gateway = self._require_gateway()
        records = await self.store.list_needing_period_sync()
        synced = failed = 0
        for record in records:
            try:
                snapshot = await gateway.fetch_subscription(record.remote_id)
            except BillingError as e:
                failed += 1
                logger.warning(
                    "period_sync_fetch_failed",
                    subscription_id=record.id,
                    remote_id=record.remote_id,
                    error=str(e),
                )
                continue
            if snapshot is None:
                failed += 1
                logger.warning("period_sync_remote_missing", remote_id=record.remote_id)
                continue
            await self.reconciler.merge(snapshot)
            synced += 1

        logger.info("period_sync_completed", checked=len(records), synced=synced, failed=failed)
        return {"checked": len(records), "synced": synced, "failed": failed}

    async def list_failed_events(self) -> list[FailedEvent]:
        return await self._require_ingestion().list_failed()

    async def replay_failed_event(self, failed_id: str) -> FailedEvent:
        return await self._require_ingestion().replay_failed_event(failed_id)
