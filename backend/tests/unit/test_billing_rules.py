"""
Unit tests for the billing rules.

Status mapping, next-billing-date priority, month arithmetic, plan
detection and invoice amount extraction. No database or Stripe.
"""

from datetime import datetime, timezone
from decimal import Decimal

import pytest

from app.domain.billing import BillingCycle, SubscriptionPlan, SubscriptionStatus
from app.domain.billing_rules import (
    add_billing_cycle,
    billing_cycle_for_interval,
    cents_to_amount,
    compute_next_billing_at,
    extract_invoice_amount,
    map_processor_status,
    plan_for_subscription,
)
from app.domain.webhook_events import InvoiceSnapshot, ProcessorSubscription


NOW = datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)
TRIAL_END = datetime(2026, 1, 29, tzinfo=timezone.utc)
PERIOD_END = datetime(2026, 2, 15, tzinfo=timezone.utc)


class TestStatusMapping:
    """Tests for Stripe status -> local status."""

    @pytest.mark.parametrize(
        "processor_status,expected",
        [
            ("active", SubscriptionStatus.ACTIVE),
            ("trialing", SubscriptionStatus.ACTIVE),
            ("past_due", SubscriptionStatus.SUSPENDED),
            ("unpaid", SubscriptionStatus.SUSPENDED),
            ("canceled", SubscriptionStatus.CANCELLED),
            ("incomplete_expired", SubscriptionStatus.CANCELLED),
        ],
    )
    def test_known_statuses(self, processor_status, expected):
        assert map_processor_status(processor_status) == expected

    @pytest.mark.parametrize("processor_status", ["incomplete", "paused", "something_new", None])
    def test_unknown_statuses_are_unmapped(self, processor_status):
        """Unmapped statuses return None so the local status is kept."""
        assert map_processor_status(processor_status) is None


class TestNextBillingAt:
    """Tests for the next billing date priority rules."""

    def test_trialing_uses_trial_end(self):
        """A trialing subscription bills at trial end even if period end is later."""
        result = compute_next_billing_at("trialing", TRIAL_END, PERIOD_END, BillingCycle.MONTHLY, NOW)
        assert result == TRIAL_END

    def test_both_dates_takes_later(self):
        later_trial = datetime(2026, 3, 1, tzinfo=timezone.utc)
        result = compute_next_billing_at("active", later_trial, PERIOD_END, BillingCycle.MONTHLY, NOW)
        assert result == later_trial

        result = compute_next_billing_at("active", TRIAL_END, PERIOD_END, BillingCycle.MONTHLY, NOW)
        assert result == PERIOD_END

    def test_period_end_only(self):
        result = compute_next_billing_at("active", None, PERIOD_END, BillingCycle.MONTHLY, NOW)
        assert result == PERIOD_END

    def test_trial_end_only(self):
        result = compute_next_billing_at("active", TRIAL_END, None, BillingCycle.MONTHLY, NOW)
        assert result == TRIAL_END

    def test_trialing_without_trial_end_falls_through(self):
        result = compute_next_billing_at("trialing", None, PERIOD_END, BillingCycle.MONTHLY, NOW)
        assert result == PERIOD_END

    def test_no_dates_adds_one_month(self):
        result = compute_next_billing_at("active", None, None, BillingCycle.MONTHLY, NOW)
        assert result == datetime(2026, 2, 15, 12, 0, tzinfo=timezone.utc)

    def test_no_dates_adds_one_year(self):
        result = compute_next_billing_at(None, None, None, BillingCycle.YEARLY, NOW)
        assert result == datetime(2027, 1, 15, 12, 0, tzinfo=timezone.utc)


class TestAddBillingCycle:
    """Tests for calendar month/year addition."""

    def test_clamps_to_end_of_february(self):
        jan_31 = datetime(2026, 1, 31, 9, 30, tzinfo=timezone.utc)
        assert add_billing_cycle(jan_31, BillingCycle.MONTHLY) == datetime(
            2026, 2, 28, 9, 30, tzinfo=timezone.utc
        )

    def test_clamps_to_leap_day(self):
        jan_31 = datetime(2028, 1, 31, tzinfo=timezone.utc)
        assert add_billing_cycle(jan_31, BillingCycle.MONTHLY).day == 29

    def test_december_rolls_into_next_year(self):
        dec_15 = datetime(2026, 12, 15, tzinfo=timezone.utc)
        assert add_billing_cycle(dec_15, BillingCycle.MONTHLY) == datetime(
            2027, 1, 15, tzinfo=timezone.utc
        )

    def test_leap_day_plus_year(self):
        feb_29 = datetime(2028, 2, 29, tzinfo=timezone.utc)
        assert add_billing_cycle(feb_29, BillingCycle.YEARLY) == datetime(
            2029, 2, 28, tzinfo=timezone.utc
        )


class TestPlanDetection:
    """Tests for plan detection from Stripe prices."""

    def test_plan_type_metadata_wins(self):
        sub = ProcessorSubscription(
            id="sub_1", price_id="price_other", price_metadata={"plan_type": "ENTERPRISE"}
        )
        assert plan_for_subscription(sub, "price_enterprise") == SubscriptionPlan.ENTERPRISE

    def test_falls_back_to_enterprise_price_id(self):
        sub = ProcessorSubscription(id="sub_1", price_id="price_enterprise")
        assert plan_for_subscription(sub, "price_enterprise") == SubscriptionPlan.ENTERPRISE

    def test_unknown_plan_type_falls_back_to_price_id(self):
        sub = ProcessorSubscription(
            id="sub_1", price_id="price_enterprise", price_metadata={"plan_type": "PLATINUM"}
        )
        assert plan_for_subscription(sub, "price_enterprise") == SubscriptionPlan.ENTERPRISE

    def test_unidentified_price(self):
        sub = ProcessorSubscription(id="sub_1", price_id="price_other")
        assert plan_for_subscription(sub, "price_enterprise") is None
        assert plan_for_subscription(sub, None) is None


class TestInvoiceAmount:
    """Tests for the amount fallback chain."""

    def test_prefers_amount_paid(self):
        invoice = InvoiceSnapshot(id="in_1", amount_paid=3000, total=4000, amount_due=5000)
        assert extract_invoice_amount(invoice) == Decimal("30.00")

    def test_falls_back_to_total(self):
        invoice = InvoiceSnapshot(id="in_1", total=4000, amount_due=5000)
        assert extract_invoice_amount(invoice) == Decimal("40.00")

    def test_falls_back_to_amount_due(self):
        invoice = InvoiceSnapshot(id="in_1", amount_due=5000)
        assert extract_invoice_amount(invoice) == Decimal("50.00")

    def test_present_zero_wins(self):
        """A zero amount_paid is a value, not a missing field."""
        invoice = InvoiceSnapshot(id="in_1", amount_paid=0, total=4000)
        assert extract_invoice_amount(invoice) == Decimal("0.00")

    def test_nothing_present(self):
        assert extract_invoice_amount(InvoiceSnapshot(id="in_1")) == Decimal("0.00")

    def test_cents_conversion_keeps_two_places(self):
        assert cents_to_amount(1999) == Decimal("19.99")
        assert cents_to_amount(600) == Decimal("6.00")
        assert cents_to_amount(None) == Decimal("0.00")


class TestBillingCycleForInterval:

    def test_intervals(self):
        assert billing_cycle_for_interval("month") == BillingCycle.MONTHLY
        assert billing_cycle_for_interval("year") == BillingCycle.YEARLY
        assert billing_cycle_for_interval("week") is None
        assert billing_cycle_for_interval(None) is None


class TestPlanOrdering:

    def test_enterprise_outranks_free(self):
        assert SubscriptionPlan.ENTERPRISE.rank > SubscriptionPlan.FREE.rank
