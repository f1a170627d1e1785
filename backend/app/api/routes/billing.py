"""
Billing Routes

Company billing endpoints: start an enterprise checkout, cancel the
subscription, and read the payment history.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query

from app.api.dependencies import get_billing
from app.domain.billing import (
    CheckoutSessionRequest,
    CheckoutSessionResponse,
    PaymentSummaryResponse,
    Subscription,
)
from app.infrastructure.services.billing_service import BillingService


router = APIRouter(prefix="/billing", tags=["billing"])


@router.post(
    "/companies/{company_id}/checkout-session",
    response_model=CheckoutSessionResponse,
)
async def create_checkout_session(
    company_id: str,
    request: Optional[CheckoutSessionRequest] = None,
    billing: BillingService = Depends(get_billing),
):
    """Create a Stripe Checkout session for the enterprise plan."""
    request = request or CheckoutSessionRequest()
    return await billing.start_checkout_session(
        company_id,
        success_url=request.success_url,
        cancel_url=request.cancel_url,
    )


@router.delete("/companies/{company_id}/subscription", response_model=Subscription)
async def cancel_subscription(
    company_id: str,
    billing: BillingService = Depends(get_billing),
):
    """Cancel the company's subscription and downgrade it to free."""
    return await billing.cancel_subscription(company_id)


@router.get("/companies/{company_id}/payments", response_model=PaymentSummaryResponse)
async def get_payments(
    company_id: str,
    limit: int = Query(default=50, ge=1, le=200),
    billing: BillingService = Depends(get_billing),
):
    """Succeeded payment total and recent payment history."""
    return await billing.payment_summary(company_id, limit=limit)
