"""Plan templates and the cached plan listing."""

from typing import Protocol

import structlog

from subsync.config import CacheConfig
from subsync.errors import ValidationError
from subsync.models.billing import BillingFrequency, IntervalUnit, Plan
from subsync.services.cache import PLANS_KEY, Cache
from subsync.services.subscription_store import execute_query

logger = structlog.get_logger(__name__)


class PlanStore(Protocol):
    """Storage contract for plan templates."""

    async def get_plan(self, plan_id: str) -> Plan | None:
        """Fetch a plan by id."""

    async def list_plans(self) -> list[Plan]:
        """All plans, enabled or not."""

    async def save_plan(self, plan: Plan) -> Plan:
        """Create or replace a plan."""


class InMemoryPlanStore:
    """In-memory plan repository used for tests and local runs."""

    def __init__(self, plans: list[Plan] | None = None) -> None:
        self.plans: dict[str, Plan] = {p.id: p for p in plans or []}

    async def get_plan(self, plan_id: str) -> Plan | None:
        plan = self.plans.get(plan_id)
        return plan.model_copy(deep=True) if plan else None

    async def list_plans(self) -> list[Plan]:
        return [p.model_copy(deep=True) for p in self.plans.values()]

    async def save_plan(self, plan: Plan) -> Plan:
        self.plans[plan.id] = plan.model_copy(deep=True)
        return plan


class SupabasePlanStore:
    """Supabase-backed plan repository."""

    def __init__(self, client, table: str = "plans"):
        self.client = client
        self.table = table

    async def get_plan(self, plan_id: str) -> Plan | None:
        rows = await execute_query(
            self.client.table(self.table).select("*").eq("id", plan_id).limit(1)
        )
        return Plan.model_validate(rows[0]) if rows else None

    async def list_plans(self) -> list[Plan]:
        rows = await execute_query(self.client.table(self.table).select("*").order("price"))
        return [Plan.model_validate(row) for row in rows]

    async def save_plan(self, plan: Plan) -> Plan:
        rows = await execute_query(
            self.client.table(self.table).upsert(plan.model_dump(mode="json"), on_conflict="id")
        )
        return Plan.model_validate(rows[0]) if rows else plan


def interval_for_price(plan: Plan, price_reference: str | None) -> tuple[IntervalUnit, int]:
    """Billing interval implied by which of the plan's remote prices is in use."""
    if price_reference and price_reference == plan.remote_yearly_price_id:
        return plan.interval_for(BillingFrequency.YEARLY)
    return plan.interval_for(BillingFrequency.MONTHLY)


class PlanCatalog:
    """Read-mostly plan access with a long-TTL listing in the shared cache."""

    def __init__(self, store: PlanStore, cache: Cache, config: CacheConfig | None = None):
        self.store = store
        self.cache = cache
        self.config = config or CacheConfig()

    async def list_plans(self) -> list[Plan]:
        """Enabled plans, cheapest first."""
        cached = await self.cache.get_global(PLANS_KEY)
        if cached is not None:
            return [Plan.model_validate(p) for p in cached]

        plans = sorted(
            (p for p in await self.store.list_plans() if p.enabled), key=lambda p: p.price
        )
        await self.cache.set_global(
            PLANS_KEY,
            [p.model_dump(mode="json") for p in plans],
            self.config.ttl_long_seconds,
        )
        return plans

    async def get_plan(self, plan_id: str) -> Plan | None:
        return await self.store.get_plan(plan_id)

    async def require_plan(self, plan_id: str) -> Plan:
        plan = await self.store.get_plan(plan_id)
        if plan is None or not plan.enabled:
            raise ValidationError(f"Unknown plan '{plan_id}'")
        return plan

    async def save_plan(self, plan: Plan) -> Plan:
        saved = await self.store.save_plan(plan)
        await self.cache.delete_global(PLANS_KEY)
        logger.info("plan_saved", plan_id=saved.id, enabled=saved.enabled)
        return saved
