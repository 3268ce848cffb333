"""
Shared test fixtures for the subscription sync test suite.
"""

import asyncio
import json
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from decimal import Decimal

import pytest
import structlog
from fastapi.testclient import TestClient

from subsync.config import CacheConfig, IngestionConfig, ReconcilerConfig
from subsync.models.billing import (
    BillingFrequency,
    CheckoutHandle,
    Invoice,
    Plan,
    Snapshot,
    SubscriptionKind,
    SubscriptionStatus,
)
from subsync.services.cache import InMemoryCache
from subsync.services.event_ingestion import (
    EventIngestion,
    InMemoryFailedEventStore,
    ProviderEventHandler,
)
from subsync.services.plan_catalog import InMemoryPlanStore, PlanCatalog
from subsync.services.reconciler import Reconciler
from subsync.services.staleness import StalenessFallback
from subsync.services.subscription_service import SubscriptionService
from subsync.services.subscription_store import InMemoryAccountStore, InMemorySubscriptionStore


@pytest.fixture(autouse=True)
def _set_test_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep Settings on in-memory backends regardless of the developer's .env."""
    monkeypatch.setenv("SUPABASE_URL", "")
    monkeypatch.setenv("SUPABASE_SECRET_KEY", "")
    monkeypatch.setenv("STRIPE__SECRET_KEY", "")
    monkeypatch.setenv("CACHE__BACKEND", "memory")


@pytest.fixture(autouse=True)
def _configure_structlog_for_tests():
    """Configure structlog for tests using a simple, deterministic setup."""
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(0),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=False,
    )


@pytest.fixture
def client() -> TestClient:
    """FastAPI TestClient wrapping the main application."""
    # Clear the lru_cache so settings pick up test env vars
    from subsync.config import get_settings

    get_settings.cache_clear()

    from subsync.main import app

    return TestClient(app)


class MutableClock:
    """Deterministic clock helper for tests."""

    def __init__(self, now: datetime):
        self._now = now

    def now(self) -> datetime:
        return self._now

    def advance(self, delta: timedelta) -> None:
        self._now += delta


class FakeGateway:
    """In-memory stand-in for the Stripe gateway.

    ``snapshots`` is the provider's view of each subscription. ``fetch_errors``
    are raised, in order, by the next fetch calls.
    """

    def __init__(self):
        self.snapshots: dict[str, Snapshot] = {}
        self.active_by_customer: dict[str, str] = {}
        self.invoices: dict[str, list[Invoice]] = {}
        self.fetch_errors: list[Exception] = []
        self.invoice_error: Exception | None = None
        self.fetch_delay = 0.0
        self.calls: list[tuple] = []

    def fetch_count(self, method: str = "fetch_subscription") -> int:
        return sum(1 for call in self.calls if call[0] == method)

    async def fetch_subscription(self, remote_id: str) -> Snapshot | None:
        self.calls.append(("fetch_subscription", remote_id))
        if self.fetch_delay:
            await asyncio.sleep(self.fetch_delay)
        if self.fetch_errors:
            raise self.fetch_errors.pop(0)
        snapshot = self.snapshots.get(remote_id)
        return snapshot.model_copy(deep=True) if snapshot else None

    async def fetch_active_subscription_for_account(self, customer_id: str) -> Snapshot | None:
        self.calls.append(("fetch_active_subscription_for_account", customer_id))
        remote_id = self.active_by_customer.get(customer_id)
        if remote_id is None:
            return None
        return self.snapshots[remote_id].model_copy(deep=True)

    async def cancel_at_period_end(self, remote_id: str) -> None:
        self.calls.append(("cancel_at_period_end", remote_id))

    async def resume(self, remote_id: str) -> None:
        self.calls.append(("resume", remote_id))

    async def swap_plan(self, remote_id: str, new_price_ref: str, *, plan_id: str) -> Snapshot:
        self.calls.append(("swap_plan", remote_id, new_price_ref, plan_id))
        swapped = self.snapshots[remote_id].model_copy(
            update={"price_reference": new_price_ref, "plan_reference": plan_id}
        )
        self.snapshots[remote_id] = swapped
        return swapped.model_copy(deep=True)

    async def create_customer(self, account_id: str) -> str:
        self.calls.append(("create_customer", account_id))
        return f"cus_{account_id}"

    async def create_checkout_session(
        self,
        *,
        account_id: str,
        customer_id: str,
        price_ref: str,
        plan_id: str,
        frequency: BillingFrequency,
    ) -> CheckoutHandle:
        self.calls.append(("create_checkout_session", account_id, customer_id, price_ref))
        return CheckoutHandle(url="https://checkout.test/cs_1", session_id="cs_1")

    async def fetch_invoices(self, customer_id: str) -> list[Invoice]:
        self.calls.append(("fetch_invoices", customer_id))
        if self.invoice_error is not None:
            raise self.invoice_error
        return list(self.invoices.get(customer_id, []))

    def snapshot_from_object(self, subscription_obj, *, account_id=None) -> Snapshot:
        metadata = subscription_obj.get("metadata") or {}
        return Snapshot(
            remote_id=subscription_obj["id"],
            remote_customer_id=subscription_obj.get("customer"),
            account_id=account_id or metadata.get("account_id"),
            status=SubscriptionStatus(subscription_obj.get("status", "active")),
            plan_reference=metadata.get("plan_id"),
        )

    def verify_webhook_event(self, payload: bytes, signature: str | None) -> dict:
        if not signature:
            raise ValueError("Missing Stripe-Signature header")
        if signature == "bad":
            raise ValueError("Invalid signature")
        return json.loads(payload)


FREE_PLAN = Plan(id="free", name="Starter", price=Decimal("0"), duration_days=30)
PRO_PLAN = Plan(
    id="pro",
    name="Pro",
    price=Decimal("10.00"),
    yearly_price=Decimal("100.00"),
    remote_monthly_price_id="price_pro_month",
    remote_yearly_price_id="price_pro_year",
)


@dataclass
class Engine:
    clock: MutableClock
    gateway: FakeGateway
    store: InMemorySubscriptionStore
    accounts: InMemoryAccountStore
    cache: InMemoryCache
    plans: InMemoryPlanStore
    catalog: PlanCatalog
    reconciler: Reconciler
    fallback: StalenessFallback
    failed_events: InMemoryFailedEventStore
    ingestion: EventIngestion
    service: SubscriptionService

    def snapshot(self, remote_id: str = "sub_1", **overrides) -> Snapshot:
        """Active monthly snapshot for account-1, registered with the fake provider."""
        now = self.clock.now()
        fields = {
            "remote_id": remote_id,
            "remote_customer_id": "cus_1",
            "account_id": "account-1",
            "kind": SubscriptionKind.PAID,
            "status": SubscriptionStatus.ACTIVE,
            "plan_reference": "pro",
            "price_reference": "price_pro_month",
            "starts_at": now,
            "current_period_end": now + timedelta(days=30),
        }
        fields.update(overrides)
        snapshot = Snapshot(**fields)
        self.gateway.snapshots[remote_id] = snapshot
        return snapshot.model_copy(deep=True)


def build_engine(
    clock: MutableClock,
    gateway: FakeGateway | None,
    *,
    reconciler_config: ReconcilerConfig | None = None,
    ingestion_config: IngestionConfig | None = None,
) -> Engine:
    reconciler_config = reconciler_config or ReconcilerConfig()
    ingestion_config = ingestion_config or IngestionConfig(
        backoff_seconds=[0.0, 0.0, 0.0], attempt_timeout_seconds=1.0, worker_count=2
    )
    store = InMemorySubscriptionStore()
    accounts = InMemoryAccountStore()
    cache = InMemoryCache(CacheConfig(), now_provider=clock.now)
    plans = InMemoryPlanStore([FREE_PLAN, PRO_PLAN])
    catalog = PlanCatalog(plans, cache)
    reconciler = Reconciler(
        store, accounts, cache, plans, reconciler_config, now_provider=clock.now
    )
    fallback = StalenessFallback(
        store, accounts, cache, reconciler, gateway, reconciler_config, now_provider=clock.now
    )
    failed_events = InMemoryFailedEventStore()
    handler = ProviderEventHandler(
        reconciler, accounts, gateway, ingestion_config, now_provider=clock.now
    )
    ingestion = EventIngestion(handler, failed_events, ingestion_config, now_provider=clock.now)
    service = SubscriptionService(
        store,
        accounts,
        cache,
        catalog,
        reconciler,
        fallback,
        gateway=gateway,
        ingestion=ingestion,
        now_provider=clock.now,
    )
    return Engine(
        clock=clock,
        gateway=gateway,
        store=store,
        accounts=accounts,
        cache=cache,
        plans=plans,
        catalog=catalog,
        reconciler=reconciler,
        fallback=fallback,
        failed_events=failed_events,
        ingestion=ingestion,
        service=service,
    )


@pytest.fixture
def clock() -> MutableClock:
    return MutableClock(datetime(2026, 2, 22, 12, 0, tzinfo=UTC))


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def engine(clock: MutableClock, gateway: FakeGateway) -> Engine:
    return build_engine(clock, gateway)


@pytest.fixture
def make_engine(clock: MutableClock, gateway: FakeGateway):
    """Factory for engines with non-default configuration."""

    def _make(**kwargs) -> Engine:
        return build_engine(clock, gateway, **kwargs)

    return _make
