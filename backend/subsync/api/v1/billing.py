"""Billing API endpoints."""

import structlog
from fastapi import APIRouter, Header, HTTPException, Request
from pydantic import BaseModel, Field
from stripe import SignatureVerificationError

from subsync.models.billing import (
    AccessDecision,
    BillingFrequency,
    CheckoutHandle,
    Invoice,
    Plan,
    Subscription,
    SubscriptionSummary,
)
from subsync.models.events import FailedEvent
from subsync.services.billing_gateway import StripeGateway
from subsync.services.subscription_service import SubscriptionService

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/billing", tags=["billing"])


class PlanRequest(BaseModel):
    """Free plan or checkout request."""

    plan_id: str = Field(description="Plan to subscribe to")
    frequency: BillingFrequency = BillingFrequency.MONTHLY


class WebhookResponse(BaseModel):
    """Stripe webhook acknowledgement."""

    received: bool
    accepted: bool


class PeriodSyncResponse(BaseModel):
    checked: int
    synced: int
    failed: int


def _get_subscription_service(request: Request) -> SubscriptionService:
    service = getattr(request.app.state, "subscription_service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Subscription service unavailable")
    return service


def _get_stripe_gateway(request: Request) -> StripeGateway:
    gateway = getattr(request.app.state, "stripe_gateway", None)
    if gateway is None:
        raise HTTPException(status_code=503, detail="Stripe not configured")
    return gateway


@router.get("/plans", response_model=list[Plan])
async def list_plans(request: Request) -> list[Plan]:
    service = _get_subscription_service(request)
    return await service.catalog.list_plans()


@router.put("/plans/{plan_id}", response_model=Plan)
async def save_plan(plan_id: str, plan: Plan, request: Request) -> Plan:
    """Create or replace a plan; the cached plan listing is dropped."""
    if plan.id != plan_id:
        raise HTTPException(status_code=400, detail="Plan id does not match the URL")
    service = _get_subscription_service(request)
    return await service.catalog.save_plan(plan)


@router.get("/accounts/{account_id}/subscription", response_model=Subscription | None)
async def get_subscription(account_id: str, request: Request) -> Subscription | None:
    service = _get_subscription_service(request)
    return await service.get_subscription(account_id)


@router.get("/accounts/{account_id}/access", response_model=AccessDecision)
async def get_access(account_id: str, request: Request) -> AccessDecision:
    """Whether the account may use paid features right now."""
    service = _get_subscription_service(request)
    return await service.get_access_decision(account_id)


@router.get("/accounts/{account_id}/summary", response_model=SubscriptionSummary)
async def get_summary(account_id: str, request: Request) -> SubscriptionSummary:
    service = _get_subscription_service(request)
    return await service.get_summary(account_id)


@router.get("/accounts/{account_id}/history", response_model=list[Subscription])
async def get_membership_history(account_id: str, request: Request) -> list[Subscription]:
    service = _get_subscription_service(request)
    return await service.get_membership_history(account_id)


@router.get("/accounts/{account_id}/invoices", response_model=list[Invoice])
async def get_invoices(account_id: str, request: Request, fresh: bool = False) -> list[Invoice]:
    service = _get_subscription_service(request)
    return await service.get_invoices(account_id, fresh=fresh)


@router.post("/accounts/{account_id}/free", response_model=Subscription, status_code=201)
async def subscribe_free(account_id: str, body: PlanRequest, request: Request) -> Subscription:
    """Start the account's free plan. 409 if it was already used."""
    service = _get_subscription_service(request)
    return await service.subscribe_free(account_id, body.plan_id, body.frequency)


@router.post("/accounts/{account_id}/checkout", response_model=CheckoutHandle)
async def request_checkout(
    account_id: str, body: PlanRequest, request: Request
) -> CheckoutHandle:
    """Open a Stripe Checkout session, or swap the plan of an existing subscriber."""
    _get_stripe_gateway(request)
    service = _get_subscription_service(request)
    return await service.request_paid_checkout(account_id, body.plan_id, body.frequency)


@router.post("/accounts/{account_id}/cancel", response_model=Subscription)
async def cancel_subscription(account_id: str, request: Request) -> Subscription:
    service = _get_subscription_service(request)
    return await service.cancel(account_id)


@router.post("/accounts/{account_id}/resume", response_model=Subscription)
async def resume_subscription(account_id: str, request: Request) -> Subscription:
    service = _get_subscription_service(request)
    return await service.resume(account_id)


@router.post("/webhook", response_model=WebhookResponse)
async def stripe_webhook(
    request: Request,
    stripe_signature: str | None = Header(default=None, alias="Stripe-Signature"),
) -> WebhookResponse:
    """Verify a Stripe notification and hand it to ingestion."""
    service = _get_subscription_service(request)
    gateway = _get_stripe_gateway(request)
    payload = await request.body()

    try:
        event = gateway.verify_webhook_event(payload, stripe_signature)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except SignatureVerificationError:
        raise HTTPException(status_code=400, detail="Invalid webhook signature")

    event_type = str(event.get("type", ""))
    if not event.get("id"):
        raise HTTPException(status_code=400, detail="Stripe event without an id")

    accepted = await service.handle_provider_event(event_type, event)
    logger.info("stripe_webhook_received", event_id=event["id"], event_type=event_type)
    return WebhookResponse(received=True, accepted=accepted is not None)


@router.get("/failed-events", response_model=list[FailedEvent])
async def list_failed_events(request: Request) -> list[FailedEvent]:
    """Notifications that exhausted their retries and need operator attention."""
    service = _get_subscription_service(request)
    return await service.list_failed_events()


@router.post("/failed-events/{failed_id}/replay", response_model=FailedEvent)
async def replay_failed_event(failed_id: str, request: Request) -> FailedEvent:
    service = _get_subscription_service(request)
    return await service.replay_failed_event(failed_id)


@router.post("/sync-periods", response_model=PeriodSyncResponse)
async def sync_missing_periods(request: Request) -> PeriodSyncResponse:
    """Re-read provider subscriptions whose period end is missing or estimated."""
    _get_stripe_gateway(request)
    service = _get_subscription_service(request)
    return PeriodSyncResponse(**await service.sync_missing_periods())
