"""Access evaluation: a pure function from a subscription record to a decision."""

import math
from datetime import datetime

from subsync.models.billing import (
    ACCESS_STATUSES,
    AccessDecision,
    AccessReason,
    DateSource,
    Subscription,
    SubscriptionKind,
    SubscriptionStatus,
    SubscriptionSummary,
)

SECONDS_PER_DAY = 86400


def days_until(expiry: datetime | None, now: datetime) -> int:
    """Whole days left before ``expiry``; 0 when unknown or already past."""
    if expiry is None or expiry <= now:
        return 0
    return max(0, math.floor((expiry - now).total_seconds() / SECONDS_PER_DAY))


def authoritative_expiry(subscription: Subscription) -> datetime | None:
    """The one timestamp that decides when access ends, chosen by status.

    Free plans and pending cancellations end at ``grace_ends_at``, trials at
    ``trial_ends_at`` (even when cancellation is scheduled) and running paid
    subscriptions at ``current_period_end``.
    """
    if subscription.kind == SubscriptionKind.FREE and not subscription.is_remote:
        return subscription.grace_ends_at
    if subscription.status == SubscriptionStatus.TRIALING:
        return subscription.trial_ends_at
    if subscription.grace_ends_at is not None:
        return subscription.grace_ends_at
    if subscription.status == SubscriptionStatus.ACTIVE:
        return subscription.current_period_end
    return None


def _decision(
    can_access: bool,
    reason: AccessReason,
    expiry: datetime | None,
    now: datetime,
    *,
    estimated: bool = False,
) -> AccessDecision:
    return AccessDecision(
        can_access=can_access,
        reason=reason,
        authoritative_expiry=expiry,
        expiry_estimated=estimated,
        days_remaining=days_until(expiry, now) if can_access else 0,
    )


def evaluate(subscription: Subscription | None, now: datetime) -> AccessDecision:
    """Decide whether the subscription grants access at ``now``."""
    if subscription is None:
        return _decision(False, AccessReason.NO_SUBSCRIPTION, None, now)

    expiry = authoritative_expiry(subscription)
    if expiry is not None and expiry <= now:
        return _decision(False, AccessReason.EXPIRED, expiry, now)

    if subscription.kind == SubscriptionKind.FREE and not subscription.is_remote:
        if subscription.status not in ACCESS_STATUSES:
            return _decision(False, AccessReason.EXPIRED, expiry, now)
        return _decision(True, AccessReason.FREE_PLAN, expiry, now)

    if subscription.status not in ACCESS_STATUSES and not subscription.in_grace(now):
        return _decision(False, AccessReason.EXPIRED, expiry, now)

    if subscription.status != SubscriptionStatus.TRIALING and subscription.in_grace(now):
        return _decision(True, AccessReason.CANCELLING, subscription.grace_ends_at, now)

    if subscription.status == SubscriptionStatus.TRIALING:
        return _decision(True, AccessReason.TRIAL_ACTIVE, subscription.trial_ends_at, now)

    return _decision(
        True,
        AccessReason.ACTIVE,
        subscription.current_period_end,
        now,
        estimated=subscription.period_end_source == DateSource.ESTIMATED,
    )


def summarize(
    subscription: Subscription | None, now: datetime, plan_name: str | None = None
) -> SubscriptionSummary:
    decision = evaluate(subscription, now)
    if subscription is None:
        return SubscriptionSummary(plan_name="No plan", status="none", can_access=False)
    status = AccessReason.EXPIRED.value if not decision.can_access else subscription.status.value
    return SubscriptionSummary(
        plan_name=plan_name or subscription.plan_reference or "Unknown plan",
        status=status,
        expiry=decision.authoritative_expiry,
        expiry_estimated=decision.expiry_estimated,
        can_access=decision.can_access,
        days_remaining=decision.days_remaining,
    )
