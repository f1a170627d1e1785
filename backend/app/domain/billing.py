"""
Billing Domain Models

Domain models for the billing bounded context following Clean Architecture.
Enums, plan limits, domain entities and request/response DTOs shared by the
reconciliation services and the billing routes.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional
from pydantic import BaseModel, Field


class SubscriptionPlan(str, Enum):
    """Subscription plan tiers, ordered from lowest to highest."""
    FREE = "free"
    ENTERPRISE = "enterprise"

    @property
    def rank(self) -> int:
        """Position of the plan in the tier ordering."""
        return list(SubscriptionPlan).index(self)


class SubscriptionStatus(str, Enum):
    """Local subscription lifecycle status."""
    TRIAL = "trial"
    ACTIVE = "active"
    SUSPENDED = "suspended"
    CANCELLED = "cancelled"


class BillingCycle(str, Enum):
    """Billing cycle for subscriptions."""
    MONTHLY = "monthly"
    YEARLY = "yearly"


class PaymentStatus(str, Enum):
    """Status of a single invoice payment."""
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    REFUNDED = "refunded"


# =============================================================================
# Plan Limits
# =============================================================================

UNLIMITED_SEATS = -1


class PlanLimits(BaseModel):
    """Seat ceiling and per-seat price for a plan."""
    max_employees: int
    price_per_seat: Decimal


PLAN_LIMITS: dict[SubscriptionPlan, PlanLimits] = {
    SubscriptionPlan.FREE: PlanLimits(max_employees=7, price_per_seat=Decimal("0.00")),
    SubscriptionPlan.ENTERPRISE: PlanLimits(
        max_employees=UNLIMITED_SEATS, price_per_seat=Decimal("6.00")
    ),
}


# =============================================================================
# Domain Entities
# =============================================================================

class Subscription(BaseModel):
    """Local projection of a company's processor-side subscription."""
    id: Optional[str] = None
    company_id: str
    plan: SubscriptionPlan = SubscriptionPlan.FREE
    price_per_seat: Decimal = Decimal("0.00")
    seat_count: int = 0
    billing_cycle: BillingCycle = BillingCycle.MONTHLY
    next_billing_at: Optional[datetime] = None
    status: SubscriptionStatus = SubscriptionStatus.TRIAL
    stripe_customer_id: Optional[str] = None
    stripe_subscription_id: Optional[str] = None
    stripe_price_id: Optional[str] = None
    cancel_at_period_end: bool = False
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class PaymentRecord(BaseModel):
    """One ledger row per processor invoice."""
    id: Optional[str] = None
    company_id: str
    subscription_id: Optional[str] = None
    amount: Decimal = Decimal("0.00")
    status: PaymentStatus = PaymentStatus.PENDING
    stripe_invoice_id: str
    stripe_payment_intent_id: Optional[str] = None
    stripe_charge_id: Optional[str] = None
    stripe_customer_id: Optional[str] = None
    stripe_subscription_id: Optional[str] = None
    billing_period_start: Optional[datetime] = None
    billing_period_end: Optional[datetime] = None
    description: Optional[str] = None
    invoice_number: Optional[str] = None
    paid_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class CompanyBilling(BaseModel):
    """Billing-relevant slice of the company aggregate."""
    id: str
    name: str
    billing_email: Optional[str] = None
    domain: Optional[str] = None
    subscription_plan: SubscriptionPlan = SubscriptionPlan.FREE
    max_employees: int = PLAN_LIMITS[SubscriptionPlan.FREE].max_employees

    class Config:
        from_attributes = True


# =============================================================================
# Request/Response DTOs
# =============================================================================

class CheckoutSessionRequest(BaseModel):
    """Request DTO for starting an enterprise checkout."""
    success_url: Optional[str] = Field(
        default=None, description="Redirect URL after successful payment"
    )
    cancel_url: Optional[str] = Field(
        default=None, description="Redirect URL after cancelled payment"
    )


class CheckoutSessionResponse(BaseModel):
    """Response DTO for a created checkout session."""
    session_id: str
    url: Optional[str] = None


class PaymentSummaryResponse(BaseModel):
    """Total of succeeded payments for a company."""
    company_id: str
    total_paid: Decimal
    payment_count: int
    payments: list[PaymentRecord] = []


class SubscriptionLookupRequest(BaseModel):
    """Identifiers a webhook payload may carry."""
    stripe_subscription_id: Optional[str] = None
    stripe_customer_id: Optional[str] = None
    stripe_invoice_id: Optional[str] = None


class SubscriptionLookupResponse(BaseModel):
    """Diagnostic result of running the resolver chain."""
    found: bool
    strategy: Optional[str] = None
    subscription: Optional[Subscription] = None


class SweepSummary(BaseModel):
    """Result of sweeping every linked subscription."""
    subscriptions_swept: int = 0
    payments_backfilled: int = 0
    failures: int = 0


class SyncResponse(BaseModel):
    """Result of a forced resync from Stripe."""
    subscription: Subscription
    payments_backfilled: int = 0
