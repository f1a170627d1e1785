"""
Billing Rules

Pure functions that project Stripe state onto local billing state:
status mapping, next-billing-date priority, plan detection and invoice
amount extraction. No I/O; the services in infrastructure call these.
"""

import calendar
from datetime import datetime
from decimal import Decimal
from typing import Optional

from app.domain.billing import (
    BillingCycle,
    SubscriptionPlan,
    SubscriptionStatus,
)
from app.domain.webhook_events import InvoiceSnapshot, ProcessorSubscription


# Stripe status -> local status. Anything missing here is left unmapped.
PROCESSOR_STATUS_MAP: dict[str, SubscriptionStatus] = {
    "active": SubscriptionStatus.ACTIVE,
    "trialing": SubscriptionStatus.ACTIVE,
    "past_due": SubscriptionStatus.SUSPENDED,
    "unpaid": SubscriptionStatus.SUSPENDED,
    "canceled": SubscriptionStatus.CANCELLED,
    "incomplete_expired": SubscriptionStatus.CANCELLED,
}

CENTS = Decimal(100)


def map_processor_status(processor_status: Optional[str]) -> Optional[SubscriptionStatus]:
    """
    Map a Stripe subscription status to the local lifecycle status.

    Returns None for statuses without a mapping (e.g. incomplete, paused);
    callers keep the current local status in that case.
    """
    if processor_status is None:
        return None
    return PROCESSOR_STATUS_MAP.get(processor_status)


def add_billing_cycle(moment: datetime, cycle: BillingCycle) -> datetime:
    """
    Add one billing cycle to a timestamp, clamping to the end of short months.

    Jan 31 + 1 month -> Feb 28/29; Feb 29 + 1 year -> Feb 28.
    """
    if cycle == BillingCycle.YEARLY:
        year, month = moment.year + 1, moment.month
    else:
        year = moment.year + moment.month // 12
        month = moment.month % 12 + 1

    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def compute_next_billing_at(
    processor_status: Optional[str],
    trial_end: Optional[datetime],
    period_end: Optional[datetime],
    cycle: BillingCycle,
    now: datetime,
) -> datetime:
    """
    Compute the next billing timestamp. First applicable rule wins:

    a. trialing with a trial end -> trial end
    b. both trial end and period end -> the later of the two
    c. period end only -> period end
    d. trial end only -> trial end
    e. neither -> now + one billing cycle

    Args:
        processor_status: Raw Stripe subscription status
        trial_end: Stripe trial_end, if any
        period_end: Stripe current_period_end, if any
        cycle: Local billing cycle used by rule (e)
        now: Current time used by rule (e)

    Returns:
        The next billing timestamp
    """
    if processor_status == "trialing" and trial_end is not None:
        return trial_end
    if trial_end is not None and period_end is not None:
        return max(trial_end, period_end)
    if period_end is not None:
        return period_end
    if trial_end is not None:
        return trial_end
    return add_billing_cycle(now, cycle)


def billing_cycle_for_interval(interval: Optional[str]) -> Optional[BillingCycle]:
    """Map a Stripe price recurring interval to a billing cycle."""
    if interval == "month":
        return BillingCycle.MONTHLY
    if interval == "year":
        return BillingCycle.YEARLY
    return None


def plan_for_subscription(
    processor_sub: ProcessorSubscription,
    enterprise_price_id: Optional[str] = None,
) -> Optional[SubscriptionPlan]:
    """
    Detect the plan a Stripe subscription is priced at.

    Uses the price's plan_type metadata written when the price was created,
    then the configured enterprise price id. Returns None when neither
    identifies a plan.
    """
    plan_type = processor_sub.price_metadata.get("plan_type")
    if plan_type:
        try:
            return SubscriptionPlan(plan_type.lower())
        except ValueError:
            pass

    if enterprise_price_id and processor_sub.price_id == enterprise_price_id:
        return SubscriptionPlan.ENTERPRISE

    return None


def cents_to_amount(cents: Optional[int]) -> Decimal:
    """Convert Stripe minor units to a two-place Decimal."""
    if cents is None:
        return Decimal("0.00")
    return (Decimal(cents) / CENTS).quantize(Decimal("0.01"))


def extract_invoice_amount(invoice: InvoiceSnapshot) -> Decimal:
    """
    Amount of an invoice: amount_paid, then total, then amount_due, else 0.

    A field that is present wins even when it is zero.
    """
    for cents in (invoice.amount_paid, invoice.total, invoice.amount_due):
        if cents is not None:
            return cents_to_amount(cents)
    return Decimal("0.00")
