"""
Stripe Payment Service

Clean Architecture infrastructure service for the Stripe API.
Handles customers, checkout sessions, subscriptions, invoices and
webhook signature verification.

The Stripe SDK is blocking: every call runs in a worker thread under a
timeout (STRIPE_TIMEOUT_SECONDS).
Transport-level retries are delegated to the SDK (max_network_retries).
"""

import asyncio
import json
import logging
from typing import Any, Callable, Optional
import stripe
from stripe import InvalidRequestError, SignatureVerificationError, StripeError

from app.config.settings import get_settings
from app.domain.billing import CheckoutSessionResponse
from app.domain.webhook_events import InvoiceSnapshot, ProcessorSubscription
from app.infrastructure.exceptions import (
    ConfigurationError,
    TideflowError,
    WebhookVerificationError,
)


logger = logging.getLogger(__name__)


class StripeServiceError(TideflowError):
    """
    Raised when a Stripe call fails or times out.

    retryable is False for request errors Stripe will keep rejecting
    (bad ids, invalid parameters).
    """

    def __init__(
        self,
        message: str,
        retryable: bool = True,
        original_error: Optional[Exception] = None,
    ):
        super().__init__(message, {"retryable": retryable}, original_error)
        self.retryable = retryable


class StripeService:
    """
    Stripe payment processing service.

    Stateless apart from configuration; safe to share across requests.
    """

    def __init__(self):
        """Initialize Stripe with API key from settings."""
        settings = get_settings()
        self._api_key = settings.stripe_secret_key
        self._webhook_secret = settings.stripe_webhook_secret
        self._enterprise_price_id = settings.stripe_enterprise_price_id
        self._timeout = settings.stripe_timeout_seconds

        if self._api_key:
            stripe.api_key = self._api_key
        stripe.max_network_retries = settings.stripe_max_network_retries

    async def _call(self, operation: str, fn: Callable[..., Any], *args, **kwargs) -> Any:
        """
        Run a blocking SDK call in a worker thread with a timeout.

        Raises:
            StripeServiceError: On any Stripe error or timeout
        """
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(fn, *args, **kwargs),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError as e:
            logger.error(f"Stripe {operation} timed out after {self._timeout}s")
            raise StripeServiceError(
                f"Stripe {operation} timed out",
                original_error=e,
            )
        except StripeError as e:
            logger.error(f"Stripe {operation} failed: {e}")
            raise StripeServiceError(
                f"Stripe {operation} failed: {e.user_message or e}",
                retryable=not isinstance(e, InvalidRequestError),
                original_error=e,
            )

    # =========================================================================
    # Customer Management
    # =========================================================================

    async def create_customer(
        self,
        company_id: str,
        email: Optional[str] = None,
        name: Optional[str] = None,
    ) -> str:
        """
        Create a new Stripe customer.

        Args:
            company_id: Internal company ID (stored in metadata)
            email: Billing email for receipts
            name: Optional company name

        Returns:
            Stripe customer ID
        """
        customer = await self._call(
            "customer create",
            stripe.Customer.create,
            email=email,
            name=name,
            metadata={
                "company_id": company_id,
                "source": "tideflow",
            },
        )
        logger.info(f"Created Stripe customer {customer.id} for company {company_id}")
        return customer.id

    async def get_or_create_customer(
        self,
        company_id: str,
        email: Optional[str] = None,
        name: Optional[str] = None,
        existing_customer_id: Optional[str] = None,
    ) -> str:
        """
        Get existing customer or create new one.

        Args:
            company_id: Internal company ID
            email: Billing email
            name: Company name
            existing_customer_id: Optional existing Stripe customer ID

        Returns:
            Stripe customer ID
        """
        if existing_customer_id:
            try:
                customer = await self._call(
                    "customer retrieve", stripe.Customer.retrieve, existing_customer_id
                )
                if not getattr(customer, "deleted", False):
                    return customer.id
            except StripeServiceError:
                logger.warning(f"Customer {existing_customer_id} not found, creating new")

        return await self.create_customer(company_id, email, name)

    # =========================================================================
    # Checkout Session
    # =========================================================================

    async def create_checkout_session(
        self,
        customer_id: str,
        company_id: str,
        success_url: str,
        cancel_url: str,
        quantity: int = 1,
    ) -> CheckoutSessionResponse:
        """
        Create a Stripe Checkout Session for the enterprise plan.

        company_id is written into both the session and the resulting
        subscription metadata; the resolver reads it back from the
        subscription when local ids are missing or stale.

        Args:
            customer_id: Stripe customer ID
            company_id: Internal company ID
            success_url: Redirect after successful payment
            cancel_url: Redirect after cancelled payment
            quantity: Number of seats

        Returns:
            Session ID and hosted checkout URL
        """
        if not self._enterprise_price_id:
            raise ConfigurationError(
                "No enterprise price configured",
                missing_keys=["STRIPE_ENTERPRISE_PRICE_ID"],
            )

        session = await self._call(
            "checkout session create",
            stripe.checkout.Session.create,
            customer=customer_id,
            client_reference_id=company_id,
            line_items=[
                {
                    "price": self._enterprise_price_id,
                    "quantity": max(quantity, 1),
                }
            ],
            mode="subscription",
            success_url=f"{success_url}?session_id={{CHECKOUT_SESSION_ID}}",
            cancel_url=cancel_url,
            billing_address_collection="auto",
            metadata={
                "company_id": company_id,
                "plan_type": "ENTERPRISE",
            },
            subscription_data={
                "metadata": {
                    "company_id": company_id,
                    "plan_type": "ENTERPRISE",
                },
            },
        )

        logger.info(f"Created checkout session {session.id} for company {company_id}")
        return CheckoutSessionResponse(session_id=session.id, url=getattr(session, "url", None))

    # =========================================================================
    # Subscriptions
    # =========================================================================

    async def create_subscription(
        self,
        customer_id: str,
        company_id: str,
        quantity: int = 1,
    ) -> ProcessorSubscription:
        """Create an enterprise subscription directly (no hosted checkout)."""
        if not self._enterprise_price_id:
            raise ConfigurationError(
                "No enterprise price configured",
                missing_keys=["STRIPE_ENTERPRISE_PRICE_ID"],
            )

        subscription = await self._call(
            "subscription create",
            stripe.Subscription.create,
            customer=customer_id,
            items=[{"price": self._enterprise_price_id, "quantity": max(quantity, 1)}],
            metadata={"company_id": company_id, "plan_type": "ENTERPRISE"},
        )
        logger.info(f"Created subscription {subscription.id} for company {company_id}")
        return ProcessorSubscription.from_stripe(subscription)

    async def get_subscription(self, subscription_id: str) -> ProcessorSubscription:
        """
        Retrieve a subscription by ID.

        Args:
            subscription_id: Stripe subscription ID

        Returns:
            Typed subscription snapshot
        """
        subscription = await self._call(
            "subscription retrieve", stripe.Subscription.retrieve, subscription_id
        )
        return ProcessorSubscription.from_stripe(subscription)

    async def cancel_subscription(
        self,
        subscription_id: str,
        cancel_at_period_end: bool = False,
    ) -> ProcessorSubscription:
        """
        Cancel a subscription.

        Args:
            subscription_id: Stripe subscription ID
            cancel_at_period_end: If True, cancel at end of billing period

        Returns:
            Updated subscription snapshot
        """
        if cancel_at_period_end:
            subscription = await self._call(
                "subscription modify",
                stripe.Subscription.modify,
                subscription_id,
                cancel_at_period_end=True,
            )
        else:
            subscription = await self._call(
                "subscription cancel", stripe.Subscription.cancel, subscription_id
            )

        logger.info(
            f"Cancelled subscription {subscription_id}, "
            f"at_period_end={cancel_at_period_end}"
        )
        return ProcessorSubscription.from_stripe(subscription)

    # =========================================================================
    # Invoices
    # =========================================================================

    async def retrieve_invoice(self, invoice_id: str) -> InvoiceSnapshot:
        """Retrieve a single invoice by ID."""
        invoice = await self._call("invoice retrieve", stripe.Invoice.retrieve, invoice_id)
        return InvoiceSnapshot.from_stripe(invoice)

    async def list_invoices(self, subscription_id: str, limit: int = 10) -> list[InvoiceSnapshot]:
        """
        List the most recent invoices of a subscription.

        Args:
            subscription_id: Stripe subscription ID
            limit: Page size (Stripe caps this at 100)

        Returns:
            Invoice snapshots, newest first
        """
        page = await self._call(
            "invoice list",
            stripe.Invoice.list,
            subscription=subscription_id,
            limit=limit,
        )
        return [InvoiceSnapshot.from_stripe(invoice) for invoice in page.data]

    # =========================================================================
    # Webhook Verification
    # =========================================================================

    def verify_webhook_signature(
        self,
        payload: bytes,
        signature: Optional[str],
    ) -> dict:
        """
        Verify webhook signature and decode the event.

        Args:
            payload: Raw request body
            signature: Stripe-Signature header

        Returns:
            Decoded event payload

        Raises:
            ConfigurationError: If no webhook secret is configured
            WebhookVerificationError: If the signature or payload is invalid
        """
        if not self._webhook_secret:
            raise ConfigurationError(
                "Stripe webhook secret not configured",
                missing_keys=["STRIPE_WEBHOOK_SECRET"],
            )
        if not signature:
            raise WebhookVerificationError("Missing Stripe-Signature header")

        try:
            stripe.Webhook.construct_event(
                payload,
                signature,
                self._webhook_secret,
            )
            return json.loads(payload)

        except ValueError as e:
            raise WebhookVerificationError("Invalid payload", original_error=e)
        except SignatureVerificationError as e:
            raise WebhookVerificationError("Invalid signature", original_error=e)


# =============================================================================
# Singleton Instance (Dependency Injection Ready)
# =============================================================================

_stripe_service_instance: Optional[StripeService] = None


def get_stripe_service() -> StripeService:
    """Get or create Stripe service singleton."""
    global _stripe_service_instance

    if _stripe_service_instance is None:
        _stripe_service_instance = StripeService()

    return _stripe_service_instance
