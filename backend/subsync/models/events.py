"""Provider notification models."""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class EventKind(str, Enum):
    """Supported notification classes."""

    SUBSCRIPTION_CREATED = "subscription_created"
    SUBSCRIPTION_UPDATED = "subscription_updated"
    SUBSCRIPTION_CANCELED = "subscription_canceled"
    CHECKOUT_COMPLETED = "checkout_completed"
    PAYMENT_METHOD_ATTACHED = "payment_method_attached"
    INVOICE_PAID = "invoice_paid"


# Stripe event type -> notification class. Anything else is acknowledged and ignored.
STRIPE_EVENT_KINDS: dict[str, EventKind] = {
    "customer.subscription.created": EventKind.SUBSCRIPTION_CREATED,
    "customer.subscription.updated": EventKind.SUBSCRIPTION_UPDATED,
    "customer.subscription.deleted": EventKind.SUBSCRIPTION_CANCELED,
    "checkout.session.completed": EventKind.CHECKOUT_COMPLETED,
    "payment_method.attached": EventKind.PAYMENT_METHOD_ATTACHED,
    "invoice.paid": EventKind.INVOICE_PAID,
    "invoice.payment_succeeded": EventKind.INVOICE_PAID,
}


class ProviderEvent(BaseModel):
    """A notification accepted for processing."""

    event_id: str
    event_type: str
    payload: dict[str, Any] = Field(default_factory=dict)
    remote_id: str | None = None
    attempts: int = 0
    last_error: str | None = None

    @property
    def kind(self) -> EventKind | None:
        return STRIPE_EVENT_KINDS.get(self.event_type)

    @property
    def data_object(self) -> dict[str, Any]:
        return (self.payload.get("data") or {}).get("object") or {}


class FailedEvent(BaseModel):
    """A notification that exhausted its retries. Shown to operators."""

    id: str
    event_id: str
    event_type: str
    remote_id: str | None = None
    payload: dict[str, Any] = Field(default_factory=dict)
    attempts: int
    last_error: str
    failed_at: datetime
    resolved_at: datetime | None = None
