"""Subscription, plan and access models."""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Literal

from pydantic import BaseModel, Field


class SubscriptionKind(str, Enum):
    """How the subscription was obtained."""

    FREE = "free"
    TRIAL = "trial"
    PAID = "paid"


class SubscriptionStatus(str, Enum):
    """Stored lifecycle status. EXPIRED is derived and never persisted."""

    ACTIVE = "active"
    TRIALING = "trialing"
    CANCELED = "canceled"
    EXPIRED = "expired"


class DateSource(str, Enum):
    """Whether a period end came from the provider or was estimated locally."""

    CONFIRMED = "confirmed"
    ESTIMATED = "estimated"


class BillingFrequency(str, Enum):
    """Billing frequencies offered on a plan."""

    MONTHLY = "monthly"
    YEARLY = "yearly"


class AccessReason(str, Enum):
    """Reason attached to an access decision."""

    NO_SUBSCRIPTION = "no_subscription"
    EXPIRED = "expired"
    CANCELLING = "cancelling"
    ACTIVE = "active"
    TRIAL_ACTIVE = "trial_active"
    FREE_PLAN = "free_plan"


IntervalUnit = Literal["day", "week", "month", "year"]

ACCESS_STATUSES = frozenset({SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING})

# Set once from the first reliable observation, then preserved.
PERMANENT_FIELDS: tuple[str, ...] = ("starts_at", "plan_reference", "price_reference")
# Always replaced by the latest observation.
DYNAMIC_FIELDS: tuple[str, ...] = (
    "status",
    "current_period_end",
    "trial_ends_at",
    "grace_ends_at",
)


class Subscription(BaseModel):
    """Persisted subscription record."""

    id: str
    account_id: str
    remote_id: str | None = None
    remote_customer_id: str | None = None
    kind: SubscriptionKind
    status: SubscriptionStatus
    plan_reference: str | None = None
    price_reference: str | None = None
    starts_at: datetime | None = None
    current_period_end: datetime | None = None
    period_end_source: DateSource | None = None
    trial_ends_at: datetime | None = None
    grace_ends_at: datetime | None = None
    created_at: datetime
    updated_at: datetime

    @property
    def is_remote(self) -> bool:
        return self.remote_id is not None

    def in_grace(self, now: datetime) -> bool:
        return self.grace_ends_at is not None and now < self.grace_ends_at

    def is_non_terminal(self, now: datetime) -> bool:
        """True while the record can still be the account's current subscription."""
        if self.status in ACCESS_STATUSES:
            return True
        return self.status == SubscriptionStatus.CANCELED and self.in_grace(now)


class Snapshot(BaseModel):
    """Point-in-time read of a subscription from the billing provider.

    Every path that learns about remote state (webhooks, read-path fallback,
    period sync) produces one of these and hands it to the Reconciler.
    """

    remote_id: str
    remote_customer_id: str | None = None
    account_id: str | None = None
    kind: SubscriptionKind = SubscriptionKind.PAID
    status: SubscriptionStatus
    plan_reference: str | None = None
    price_reference: str | None = None
    starts_at: datetime | None = None
    current_period_end: datetime | None = None
    trial_ends_at: datetime | None = None
    grace_ends_at: datetime | None = None
    interval_unit: IntervalUnit | None = None
    interval_count: int | None = Field(default=None, ge=1)


class Plan(BaseModel):
    """Price and duration template."""

    id: str
    name: str
    price: Decimal = Decimal("0")
    yearly_price: Decimal | None = None
    duration_days: int = Field(default=30, ge=1)
    yearly_duration_days: int | None = Field(default=365, ge=1)
    enabled: bool = True
    remote_monthly_price_id: str | None = None
    remote_yearly_price_id: str | None = None

    def price_for(self, frequency: BillingFrequency) -> Decimal:
        if frequency == BillingFrequency.YEARLY and self.yearly_price is not None:
            return self.yearly_price
        return self.price

    def duration_days_for(self, frequency: BillingFrequency) -> int:
        if frequency == BillingFrequency.YEARLY:
            return self.yearly_duration_days or 365
        return self.duration_days

    def remote_price_for(self, frequency: BillingFrequency) -> str | None:
        if frequency == BillingFrequency.YEARLY:
            return self.remote_yearly_price_id
        return self.remote_monthly_price_id

    def interval_for(self, frequency: BillingFrequency) -> tuple[IntervalUnit, int]:
        if frequency == BillingFrequency.YEARLY:
            return "year", 1
        return "month", 1


class BillingAccount(BaseModel):
    """Provider-side identity of a local account."""

    account_id: str
    remote_customer_id: str | None = None
    payment_method_brand: str | None = None
    payment_method_last4: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def has_payment_method(self) -> bool:
        return bool(self.payment_method_last4)


class AccessDecision(BaseModel):
    """Normalized answer to "may this account use paid features right now"."""

    can_access: bool
    reason: AccessReason
    authoritative_expiry: datetime | None = None
    expiry_estimated: bool = False
    days_remaining: int = 0


class SubscriptionSummary(BaseModel):
    """Compact view consumed by billing screens."""

    plan_name: str
    status: str
    expiry: datetime | None = None
    expiry_estimated: bool = False
    can_access: bool
    days_remaining: int = 0


class CheckoutHandle(BaseModel):
    """Where to send the user to finish a paid subscription."""

    url: str | None = None
    session_id: str | None = None
    swapped: bool = False


class Invoice(BaseModel):
    """Provider invoice, trimmed to what billing screens show."""

    id: str
    issued_at: datetime | None = None
    amount: Decimal = Decimal("0")
    currency: str = ""
    status: str = ""
    description: str = "Subscription"
    hosted_url: str | None = None
