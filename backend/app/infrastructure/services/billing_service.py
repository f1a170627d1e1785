"""
Billing Service

Company-facing billing operations: default subscription creation, checkout,
cancellation, forced resync, resolver diagnostics and payment totals.
Reconciliation itself lives in the resolver, synchronizer, recorder and
sweeper; this service composes them.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from app.config.settings import get_settings
from app.domain.billing import (
    PLAN_LIMITS,
    BillingCycle,
    CheckoutSessionResponse,
    PaymentSummaryResponse,
    Subscription,
    SubscriptionLookupRequest,
    SubscriptionLookupResponse,
    SubscriptionPlan,
    SubscriptionStatus,
    SyncResponse,
)
from app.domain.billing_rules import add_billing_cycle
from app.infrastructure.exceptions import DuplicateError, NotFoundError, ValidationError
from app.infrastructure.db.repositories.subscription_repository import (
    SubscriptionRepository,
    get_subscription_repository,
)
from app.infrastructure.db.repositories.payment_repository import (
    PaymentRepository,
    get_payment_repository,
)
from app.infrastructure.db.repositories.company_repository import (
    CompanyRepository,
    get_company_repository,
)
from app.infrastructure.payments.stripe_service import StripeService, get_stripe_service
from app.infrastructure.services.entity_resolver import EntityResolver, get_entity_resolver
from app.infrastructure.services.reconciliation_sweeper import (
    ReconciliationSweeper,
    get_reconciliation_sweeper,
)
from app.infrastructure.services.subscription_synchronizer import (
    SubscriptionSynchronizer,
    get_subscription_synchronizer,
)


logger = logging.getLogger(__name__)


class BillingService:
    """Billing operations keyed by company."""

    def __init__(
        self,
        stripe_service: Optional[StripeService] = None,
        subscription_repo: Optional[SubscriptionRepository] = None,
        payment_repo: Optional[PaymentRepository] = None,
        company_repo: Optional[CompanyRepository] = None,
        resolver: Optional[EntityResolver] = None,
        synchronizer: Optional[SubscriptionSynchronizer] = None,
        sweeper: Optional[ReconciliationSweeper] = None,
    ):
        self._stripe = stripe_service or get_stripe_service()
        self._subscriptions = subscription_repo or get_subscription_repository()
        self._payments = payment_repo or get_payment_repository()
        self._companies = company_repo or get_company_repository()
        self._resolver = resolver or get_entity_resolver()
        self._synchronizer = synchronizer or get_subscription_synchronizer()
        self._sweeper = sweeper or get_reconciliation_sweeper()

    # =========================================================================
    # Subscription Lifecycle
    # =========================================================================

    async def ensure_subscription(self, company_id: str) -> Subscription:
        """
        Get the company's subscription, creating the free default on first use.

        The default is FREE, TRIAL, zero seats, next billing one month out;
        the company's seat ceiling is set to the free limit.

        Raises:
            NotFoundError: If the company does not exist
        """
        existing = await self._subscriptions.get_by_company_id(company_id)
        if existing:
            return existing

        company = await self._companies.get_by_id(company_id)
        if company is None:
            raise NotFoundError(f"Company {company_id} not found", operation="ensure_subscription")

        free = PLAN_LIMITS[SubscriptionPlan.FREE]
        default = Subscription(
            company_id=company.id,
            plan=SubscriptionPlan.FREE,
            price_per_seat=free.price_per_seat,
            seat_count=0,
            billing_cycle=BillingCycle.MONTHLY,
            next_billing_at=add_billing_cycle(datetime.now(timezone.utc), BillingCycle.MONTHLY),
            status=SubscriptionStatus.TRIAL,
        )

        try:
            created = await self._subscriptions.create(default)
        except DuplicateError:
            # Created concurrently by another event for the same company
            return await self._subscriptions.get_by_company_id(company_id)

        await self._companies.update_plan(company.id, SubscriptionPlan.FREE, free.max_employees)
        return created

    async def link_stripe_ids(
        self,
        subscription: Subscription,
        stripe_customer_id: Optional[str] = None,
        stripe_subscription_id: Optional[str] = None,
    ) -> Subscription:
        """Record Stripe ids on a subscription when they differ."""
        changes = {}
        if stripe_customer_id and subscription.stripe_customer_id != stripe_customer_id:
            changes["stripe_customer_id"] = stripe_customer_id
        if stripe_subscription_id and subscription.stripe_subscription_id != stripe_subscription_id:
            changes["stripe_subscription_id"] = stripe_subscription_id

        if not changes:
            return subscription

        logger.info(f"Linking subscription {subscription.id} to Stripe: {changes}")
        return await self._subscriptions.save(subscription.model_copy(update=changes))

    async def start_checkout_session(
        self,
        company_id: str,
        success_url: Optional[str] = None,
        cancel_url: Optional[str] = None,
    ) -> CheckoutSessionResponse:
        """
        Start an enterprise checkout for a company.

        Args:
            company_id: Internal company ID
            success_url: Redirect after payment (defaults under FRONTEND_URL)
            cancel_url: Redirect after cancel (defaults under FRONTEND_URL)

        Returns:
            Checkout session ID and URL
        """
        company = await self._companies.get_by_id(company_id)
        if company is None:
            raise NotFoundError(f"Company {company_id} not found", operation="checkout")

        subscription = await self.ensure_subscription(company_id)
        customer_id = await self._stripe.get_or_create_customer(
            company_id,
            email=company.billing_email,
            name=company.name,
            existing_customer_id=subscription.stripe_customer_id,
        )
        subscription = await self.link_stripe_ids(subscription, stripe_customer_id=customer_id)

        frontend_url = get_settings().frontend_url.rstrip("/")
        return await self._stripe.create_checkout_session(
            customer_id=customer_id,
            company_id=company_id,
            success_url=success_url or f"{frontend_url}/billing/success",
            cancel_url=cancel_url or f"{frontend_url}/billing/cancel",
            quantity=max(subscription.seat_count, 1),
        )

    async def cancel_subscription(self, company_id: str) -> Subscription:
        """
        Cancel the company's Stripe subscription and downgrade it locally.

        Raises:
            NotFoundError: If the company has no subscription
        """
        subscription = await self._subscriptions.get_by_company_id(company_id)
        if subscription is None:
            raise NotFoundError(f"No subscription for company {company_id}", operation="cancel")

        if subscription.stripe_subscription_id:
            await self._stripe.cancel_subscription(subscription.stripe_subscription_id)

        return await self._synchronizer.downgrade_to_free(subscription)

    async def force_sync(self, company_id: str) -> SyncResponse:
        """
        Resync a company's subscription from Stripe and backfill payments.

        Raises:
            NotFoundError: If the company has no subscription
            ValidationError: If the subscription is not linked to Stripe
        """
        subscription = await self._subscriptions.get_by_company_id(company_id)
        if subscription is None:
            raise NotFoundError(f"No subscription for company {company_id}", operation="sync")
        if not subscription.stripe_subscription_id:
            raise ValidationError(
                f"Subscription of company {company_id} is not linked to Stripe",
                details={"company_id": company_id},
            )

        processor_sub = await self._stripe.get_subscription(subscription.stripe_subscription_id)
        synced = await self._synchronizer.apply(subscription, processor_sub)
        backfilled = await self._sweeper.sweep(processor_sub.id)

        return SyncResponse(subscription=synced, payments_backfilled=backfilled)

    # =========================================================================
    # Queries
    # =========================================================================

    async def lookup(self, request: SubscriptionLookupRequest) -> SubscriptionLookupResponse:
        """Run the resolver chain and report which strategy matched."""
        if not (
            request.stripe_subscription_id
            or request.stripe_customer_id
            or request.stripe_invoice_id
        ):
            raise ValidationError("At least one Stripe identifier is required")

        resolution = await self._resolver.locate(
            stripe_subscription_id=request.stripe_subscription_id,
            stripe_customer_id=request.stripe_customer_id,
            stripe_invoice_id=request.stripe_invoice_id,
        )
        if resolution is None:
            return SubscriptionLookupResponse(found=False)

        return SubscriptionLookupResponse(
            found=True,
            strategy=resolution.strategy,
            subscription=resolution.subscription,
        )

    async def payment_summary(self, company_id: str, limit: int = 50) -> PaymentSummaryResponse:
        """Total and count of succeeded payments, with recent history."""
        total, count = await self._payments.sum_succeeded_by_company(company_id)
        payments = await self._payments.list_by_company(company_id, limit=limit)

        return PaymentSummaryResponse(
            company_id=company_id,
            total_paid=total,
            payment_count=count,
            payments=payments,
        )


# =============================================================================
# Singleton Instance
# =============================================================================

_billing_service_instance: Optional[BillingService] = None


def get_billing_service() -> BillingService:
    """Get or create billing service singleton."""
    global _billing_service_instance

    if _billing_service_instance is None:
        _billing_service_instance = BillingService()

    return _billing_service_instance
