"""Remote billing gateway: the provider's query and command API.

The Stripe implementation translates SDK objects into ``Snapshot`` values at
this boundary, so nothing downstream depends on Stripe's object shapes.
"""

import asyncio
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any, Protocol

import stripe
import structlog
from stripe import (
    APIConnectionError,
    APIError,
    InvalidRequestError,
    RateLimitError,
    StripeError,
)

from subsync.config import StripeConfig
from subsync.errors import TransientGatewayError, ValidationError
from subsync.models.billing import (
    BillingFrequency,
    CheckoutHandle,
    Invoice,
    Snapshot,
    SubscriptionKind,
    SubscriptionStatus,
)

logger = structlog.get_logger(__name__)

STATUS_MAP: dict[str, SubscriptionStatus] = {
    "active": SubscriptionStatus.ACTIVE,
    # Stripe keeps access during dunning
    "past_due": SubscriptionStatus.ACTIVE,
    "trialing": SubscriptionStatus.TRIALING,
    "canceled": SubscriptionStatus.CANCELED,
    "unpaid": SubscriptionStatus.CANCELED,
    "incomplete": SubscriptionStatus.CANCELED,
    "incomplete_expired": SubscriptionStatus.CANCELED,
    "paused": SubscriptionStatus.CANCELED,
}

ZERO_DECIMAL_CURRENCIES = {"bif", "clp", "jpy", "krw", "pyg", "vnd", "xaf", "xof"}


def _to_datetime(timestamp: int | None) -> datetime | None:
    if not timestamp:
        return None
    return datetime.fromtimestamp(timestamp, tz=UTC)


def _as_dict(obj: dict | Any) -> dict:
    if isinstance(obj, dict):
        return obj
    return obj.to_dict_recursive()


class RemoteBillingGateway(Protocol):
    """Provider operations the engine depends on."""

    async def fetch_subscription(self, remote_id: str) -> Snapshot | None:
        """Current provider state, or None when the provider has no such subscription."""

    async def fetch_active_subscription_for_account(self, customer_id: str) -> Snapshot | None:
        """The customer's access-granting subscription, if any."""

    async def cancel_at_period_end(self, remote_id: str) -> None:
        """Schedule cancellation at the end of the current period."""

    async def resume(self, remote_id: str) -> None:
        """Undo a scheduled cancellation."""

    async def swap_plan(self, remote_id: str, new_price_ref: str, *, plan_id: str) -> Snapshot:
        """Move the subscription to another price."""

    async def create_customer(self, account_id: str) -> str:
        """Create a provider customer and return its id."""

    async def create_checkout_session(
        self,
        *,
        account_id: str,
        customer_id: str,
        price_ref: str,
        plan_id: str,
        frequency: BillingFrequency,
    ) -> CheckoutHandle:
        """Hosted checkout for a new paid subscription."""

    async def fetch_invoices(self, customer_id: str) -> list[Invoice]:
        """Recent invoices for the customer, newest first."""

    def snapshot_from_object(
        self, subscription_obj: dict | Any, *, account_id: str | None = None
    ) -> Snapshot:
        """Translate a provider subscription object (e.g. from a notification)."""


class StripeGateway:
    """Encapsulates Stripe SDK calls used by the reconciliation engine."""

    def __init__(self, config: StripeConfig) -> None:
        if not config.secret_key:
            raise ValueError("Stripe secret key is required")

        self.config = config
        stripe.api_key = config.secret_key

    async def _call(self, func, *args, missing_ok: bool = False, **kwargs):
        """Run a blocking SDK call off the event loop and classify its failures.

        With ``missing_ok`` a resource-missing response yields None.
        """
        try:
            return await asyncio.to_thread(func, *args, **kwargs)
        except (APIConnectionError, RateLimitError, APIError) as e:
            raise TransientGatewayError(f"Stripe unavailable: {e}") from e
        except InvalidRequestError as e:
            if missing_ok and e.code == "resource_missing":
                return None
            raise ValidationError(f"Stripe rejected the request: {e}") from e
        except StripeError as e:
            if (e.http_status or 0) >= 500:
                raise TransientGatewayError(f"Stripe server error: {e}") from e
            raise ValidationError(f"Stripe rejected the request: {e}") from e

    def verify_webhook_event(self, payload: bytes, signature: str | None) -> dict:
        if not self.config.webhook_secret:
            raise ValueError("Stripe webhook secret is not configured")
        if not signature:
            raise ValueError("Missing Stripe-Signature header")

        event = stripe.Webhook.construct_event(
            payload=payload,
            sig_header=signature,
            secret=self.config.webhook_secret,
        )
        return _as_dict(event)

    async def fetch_subscription(self, remote_id: str) -> Snapshot | None:
        subscription = await self._call(stripe.Subscription.retrieve, remote_id, missing_ok=True)
        if subscription is None:
            logger.info("stripe_subscription_missing", remote_id=remote_id)
            return None
        return self.snapshot_from_object(subscription)

    async def fetch_active_subscription_for_account(self, customer_id: str) -> Snapshot | None:
        listing = await self._call(
            stripe.Subscription.list,
            customer=customer_id,
            status="all",
            limit=10,
            missing_ok=True,
        )
        if listing is None:
            return None
        for subscription in _as_dict(listing).get("data", []):
            snapshot = self.snapshot_from_object(subscription)
            if snapshot.status in (SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING):
                return snapshot
        return None

    async def _modify(self, remote_id: str, **params) -> dict:
        return _as_dict(await self._call(stripe.Subscription.modify, remote_id, **params))

    async def cancel_at_period_end(self, remote_id: str) -> None:
        await self._modify(remote_id, cancel_at_period_end=True)

    async def resume(self, remote_id: str) -> None:
        await self._modify(remote_id, cancel_at_period_end=False)

    async def swap_plan(self, remote_id: str, new_price_ref: str, *, plan_id: str) -> Snapshot:
        current = await self._call(stripe.Subscription.retrieve, remote_id, missing_ok=True)
        if current is None:
            raise ValidationError(f"Stripe subscription {remote_id} not found")

        raw = _as_dict(current)
        items = raw.get("items", {}).get("data", [])
        if not items:
            raise ValidationError("Stripe subscription has no items")

        updated = await self._modify(
            remote_id,
            items=[{"id": items[0]["id"], "price": new_price_ref}],
            proration_behavior="create_prorations",
            metadata={**(raw.get("metadata") or {}), "plan_id": plan_id},
        )
        return self.snapshot_from_object(updated)

    async def create_customer(self, account_id: str) -> str:
        customer = await self._call(stripe.Customer.create, metadata={"account_id": account_id})
        return str(_as_dict(customer)["id"])

    async def create_checkout_session(
        self,
        *,
        account_id: str,
        customer_id: str,
        price_ref: str,
        plan_id: str,
        frequency: BillingFrequency,
    ) -> CheckoutHandle:
        metadata = {"account_id": account_id, "plan_id": plan_id, "frequency": frequency.value}
        session = await self._call(
            stripe.checkout.Session.create,
            mode="subscription",
            customer=customer_id,
            line_items=[{"price": price_ref, "quantity": 1}],
            client_reference_id=account_id,
            metadata=metadata,
            # Copied onto the subscription object so every later snapshot carries it
            subscription_data={"metadata": metadata},
            success_url=self.config.checkout_success_url,
            cancel_url=self.config.checkout_cancel_url,
        )
        return CheckoutHandle(url=session.url, session_id=session.id)

    async def fetch_invoices(self, customer_id: str) -> list[Invoice]:
        listing = await self._call(stripe.Invoice.list, customer=customer_id, limit=24)
        return [self.invoice_from_object(inv) for inv in _as_dict(listing).get("data", [])]

    def invoice_from_object(self, invoice_obj: dict | Any) -> Invoice:
        invoice = _as_dict(invoice_obj)
        currency = str(invoice.get("currency") or "").lower()
        minor = invoice.get("amount_paid") or invoice.get("total") or 0
        divisor = Decimal(1) if currency in ZERO_DECIMAL_CURRENCIES else Decimal(100)
        lines = (invoice.get("lines") or {}).get("data") or []
        return Invoice(
            id=str(invoice.get("id", "")),
            issued_at=_to_datetime(invoice.get("created")),
            amount=(Decimal(minor) / divisor).quantize(Decimal("0.01")),
            currency=currency,
            status=str(invoice.get("status") or "").capitalize(),
            description=(lines[0].get("description") if lines else None) or "Subscription",
            hosted_url=invoice.get("hosted_invoice_url"),
        )

    def snapshot_from_object(
        self, subscription_obj: dict | Any, *, account_id: str | None = None
    ) -> Snapshot:
        subscription = _as_dict(subscription_obj)

        remote_id = subscription.get("id")
        if not remote_id:
            raise ValidationError("Stripe subscription is missing its id")

        raw_status = str(subscription.get("status", ""))
        status = STATUS_MAP.get(raw_status)
        if status is None:
            raise ValidationError(f"Unknown Stripe subscription status '{raw_status}'")

        items = subscription.get("items", {}).get("data", [])
        item = items[0] if items else {}
        price = item.get("price") or {}
        recurring = price.get("recurring") or item.get("plan") or {}

        metadata = subscription.get("metadata", {}) or {}

        # Newer API versions report the period on the item instead of the subscription.
        period_end = _to_datetime(
            subscription.get("current_period_end") or item.get("current_period_end")
        )

        if subscription.get("cancel_at_period_end"):
            grace_ends_at = _to_datetime(subscription.get("cancel_at")) or period_end
        elif subscription.get("cancel_at"):
            grace_ends_at = _to_datetime(subscription.get("cancel_at"))
        elif status == SubscriptionStatus.CANCELED:
            grace_ends_at = _to_datetime(
                subscription.get("ended_at") or subscription.get("canceled_at")
            )
        else:
            grace_ends_at = None

        customer = subscription.get("customer")
        if isinstance(customer, dict):
            customer = customer.get("id")

        return Snapshot(
            remote_id=str(remote_id),
            remote_customer_id=str(customer) if customer else None,
            account_id=account_id or metadata.get("account_id") or metadata.get("user_id"),
            kind=SubscriptionKind.TRIAL
            if status == SubscriptionStatus.TRIALING
            else SubscriptionKind.PAID,
            status=status,
            plan_reference=metadata.get("plan_id"),
            price_reference=price.get("id"),
            starts_at=_to_datetime(subscription.get("start_date")),
            current_period_end=period_end,
            trial_ends_at=_to_datetime(subscription.get("trial_end")),
            grace_ends_at=grace_ends_at,
            interval_unit=recurring.get("interval"),
            interval_count=recurring.get("interval_count"),
        )
