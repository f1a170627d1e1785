"""
API Dependencies

FastAPI dependency providers for the billing services and admin
authentication. Routes depend on these rather than on the singleton
getters directly so tests can swap them via app.dependency_overrides.
"""

import logging
import secrets

from fastapi import Header, HTTPException, status

from app.config.settings import get_settings
from app.infrastructure.services.billing_service import BillingService, get_billing_service
from app.infrastructure.services.reconciliation_sweeper import (
    ReconciliationSweeper,
    get_reconciliation_sweeper,
)
from app.infrastructure.services.webhook_ingress import WebhookIngress, get_webhook_ingress


logger = logging.getLogger(__name__)


def get_ingress() -> WebhookIngress:
    """Webhook ingress provider."""
    return get_webhook_ingress()


def get_billing() -> BillingService:
    """Billing service provider."""
    return get_billing_service()


def get_sweeper() -> ReconciliationSweeper:
    """Reconciliation sweeper provider."""
    return get_reconciliation_sweeper()


async def verify_admin_api_key(
    x_admin_key: str = Header(..., description="Admin API key for protected operations")
) -> bool:
    """
    Verify admin API key from header.
    
    The admin key should be set in environment variable ADMIN_API_KEY.
    """
    expected_key = get_settings().admin_api_key
    
    if not expected_key:
        logger.error("ADMIN_API_KEY environment variable not set")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Admin authentication not configured"
        )
    
    # Constant-time comparison
    if not secrets.compare_digest(x_admin_key, expected_key):
        logger.warning("Invalid admin API key attempt")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid admin API key"
        )
    
    return True
