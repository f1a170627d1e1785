"""
Admin Routes for Billing Operations

Forced resync, reconciliation sweeps and resolver diagnostics.
Protected by API key authentication.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query

from app.api.dependencies import get_billing, get_sweeper, verify_admin_api_key
from app.domain.billing import (
    SubscriptionLookupRequest,
    SubscriptionLookupResponse,
    SweepSummary,
    SyncResponse,
)
from app.infrastructure.services.billing_service import BillingService
from app.infrastructure.services.reconciliation_sweeper import ReconciliationSweeper

logger = logging.getLogger(__name__)


router = APIRouter(
    prefix="/admin/billing",
    tags=["admin"],
    dependencies=[Depends(verify_admin_api_key)]  # Protect ALL admin routes
)


@router.post("/companies/{company_id}/sync", response_model=SyncResponse)
async def force_sync(
    company_id: str,
    billing: BillingService = Depends(get_billing),
):
    """Resync a company's subscription from Stripe and backfill payments."""
    logger.info(f"Admin resync requested for company {company_id}")
    return await billing.force_sync(company_id)


@router.post("/sweep", response_model=SweepSummary)
async def run_sweep(
    max_invoices: Optional[int] = Query(default=None, ge=1, le=100),
    sweeper: ReconciliationSweeper = Depends(get_sweeper),
):
    """Sweep every linked subscription for unrecorded paid invoices."""
    return await sweeper.sweep_all(max_invoices)


@router.post("/lookup", response_model=SubscriptionLookupResponse)
async def lookup_subscription(
    request: SubscriptionLookupRequest,
    billing: BillingService = Depends(get_billing),
):
    """Run the resolver chain for a set of Stripe ids."""
    return await billing.lookup(request)
