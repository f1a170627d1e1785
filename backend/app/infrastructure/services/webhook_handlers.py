"""
Stripe Event Handlers

One handler per billing event type. Every handler returns a WebhookOutcome;
handle() converts any error raised along the way into a FAILED outcome so
nothing propagates into the ingress dispatcher.

Handled events:
- checkout.session.completed: link the company's subscription, sync, sweep
- customer.subscription.created/updated: resolve, sync, sweep
- customer.subscription.deleted: resolve, sync, downgrade to free
- invoice.paid / invoice.payment_succeeded / invoice.finalized: record payment, sync
- invoice.payment_failed: record failure, sync
"""

import logging
from typing import Awaitable, Callable, Optional

from app.domain.billing import PaymentStatus
from app.domain.webhook_events import (
    CHECKOUT_SESSION_COMPLETED,
    INVOICE_FINALIZED,
    INVOICE_PAID,
    INVOICE_PAYMENT_FAILED,
    INVOICE_PAYMENT_SUCCEEDED,
    SUBSCRIPTION_CREATED,
    SUBSCRIPTION_DELETED,
    SUBSCRIPTION_UPDATED,
    CheckoutCompletedEvent,
    InvoiceEvent,
    InvoiceSnapshot,
    ParsedEvent,
    SubscriptionChangedEvent,
    WebhookOutcome,
)
from app.infrastructure.exceptions import (
    DuplicateError,
    NotFoundError,
    TideflowError,
    ValidationError,
)
from app.infrastructure.payments.stripe_service import (
    StripeService,
    StripeServiceError,
    get_stripe_service,
)
from app.infrastructure.services.billing_service import BillingService, get_billing_service
from app.infrastructure.services.entity_resolver import EntityResolver, get_entity_resolver
from app.infrastructure.services.payment_recorder import PaymentRecorder, get_payment_recorder
from app.infrastructure.services.reconciliation_sweeper import (
    ReconciliationSweeper,
    get_reconciliation_sweeper,
)
from app.infrastructure.services.subscription_synchronizer import (
    SubscriptionSynchronizer,
    get_subscription_synchronizer,
)


logger = logging.getLogger(__name__)

Handler = Callable[..., Awaitable[WebhookOutcome]]


class BillingEventHandlers:
    """Dispatch table and handlers for Stripe billing events."""

    def __init__(
        self,
        stripe_service: Optional[StripeService] = None,
        resolver: Optional[EntityResolver] = None,
        synchronizer: Optional[SubscriptionSynchronizer] = None,
        recorder: Optional[PaymentRecorder] = None,
        sweeper: Optional[ReconciliationSweeper] = None,
        billing: Optional[BillingService] = None,
    ):
        self._stripe = stripe_service or get_stripe_service()
        self._resolver = resolver or get_entity_resolver()
        self._synchronizer = synchronizer or get_subscription_synchronizer()
        self._recorder = recorder or get_payment_recorder()
        self._sweeper = sweeper or get_reconciliation_sweeper()
        self._billing = billing or get_billing_service()

        self._handlers: dict[str, Handler] = {
            CHECKOUT_SESSION_COMPLETED: self.handle_checkout_completed,
            SUBSCRIPTION_CREATED: self.handle_subscription_changed,
            SUBSCRIPTION_UPDATED: self.handle_subscription_changed,
            SUBSCRIPTION_DELETED: self.handle_subscription_deleted,
            INVOICE_PAID: self.handle_invoice_paid,
            INVOICE_PAYMENT_SUCCEEDED: self.handle_invoice_paid,
            INVOICE_FINALIZED: self.handle_invoice_finalized,
            INVOICE_PAYMENT_FAILED: self.handle_invoice_payment_failed,
        }

    @property
    def event_types(self) -> list[str]:
        return list(self._handlers)

    async def handle(self, event: ParsedEvent) -> WebhookOutcome:
        """
        Run the handler registered for the event type.

        Unregistered types are skipped. Errors become FAILED outcomes:
        Stripe errors keep their retryability, validation and id conflicts
        are not retryable, anything else is.
        """
        handler = self._handlers.get(event.type)
        if handler is None:
            logger.debug(f"Unhandled event type: {event.type}")
            return WebhookOutcome.skipped(f"unhandled event type {event.type}")

        try:
            return await handler(event)
        except StripeServiceError as e:
            return WebhookOutcome.failed(e.message, retryable=e.retryable)
        except (ValidationError, DuplicateError) as e:
            return WebhookOutcome.failed(e.message, retryable=False)
        except TideflowError as e:
            return WebhookOutcome.failed(e.message)
        except Exception as e:
            logger.exception(f"Unexpected error handling {event.type} ({event.id})")
            return WebhookOutcome.failed(f"{type(e).__name__}: {e}")

    # =========================================================================
    # Checkout
    # =========================================================================

    async def handle_checkout_completed(self, event: CheckoutCompletedEvent) -> WebhookOutcome:
        """Link the company's subscription to the new Stripe subscription."""
        session = event.session
        if not session.company_id or not session.customer or not session.subscription:
            logger.warning(
                f"Checkout session {session.id} missing company, customer or subscription id"
            )
            return WebhookOutcome.skipped("checkout session missing company, customer or subscription id")

        try:
            subscription = await self._billing.ensure_subscription(session.company_id)
        except NotFoundError:
            return WebhookOutcome.skipped(f"unknown company {session.company_id}")

        subscription = await self._billing.link_stripe_ids(
            subscription,
            stripe_customer_id=session.customer,
            stripe_subscription_id=session.subscription,
        )

        processor_sub = await self._stripe.get_subscription(session.subscription)
        await self._synchronizer.apply(subscription, processor_sub)
        await self._sweeper.sweep(processor_sub.id)

        return WebhookOutcome.applied(f"company {session.company_id} linked to {session.subscription}")

    # =========================================================================
    # Subscriptions
    # =========================================================================

    async def handle_subscription_changed(self, event: SubscriptionChangedEvent) -> WebhookOutcome:
        """Sync from the authoritative Stripe object and backfill payments."""
        payload_sub = event.subscription

        # Events can arrive out of order; the current object wins
        processor_sub = await self._stripe.get_subscription(payload_sub.id)
        subscription = await self._resolver.resolve(
            stripe_subscription_id=payload_sub.id,
            stripe_customer_id=payload_sub.customer,
            stripe_invoice_id=payload_sub.latest_invoice,
            processor_subscription=processor_sub,
        )
        if subscription is None:
            return WebhookOutcome.skipped(f"no local subscription for {payload_sub.id}")

        await self._synchronizer.apply(subscription, processor_sub)
        await self._sweeper.sweep(processor_sub.id)

        return WebhookOutcome.applied(f"subscription {subscription.id} synced")

    async def handle_subscription_deleted(self, event: SubscriptionChangedEvent) -> WebhookOutcome:
        """Downgrade the company to the free plan."""
        payload_sub = event.subscription
        subscription = await self._resolver.resolve(
            stripe_subscription_id=payload_sub.id,
            stripe_customer_id=payload_sub.customer,
            processor_subscription=payload_sub,
        )
        if subscription is None:
            return WebhookOutcome.skipped(f"no local subscription for {payload_sub.id}")

        subscription = await self._synchronizer.apply(subscription, payload_sub)
        await self._synchronizer.downgrade_to_free(subscription)

        return WebhookOutcome.applied(f"subscription {subscription.id} downgraded to free")

    # =========================================================================
    # Invoices
    # =========================================================================

    async def handle_invoice_paid(self, event: InvoiceEvent) -> WebhookOutcome:
        """Record a successful payment and sync the subscription."""
        invoice = await self._complete_invoice(event.invoice)

        subscription = await self._resolver.resolve(
            stripe_subscription_id=invoice.subscription,
            stripe_customer_id=invoice.customer,
            stripe_invoice_id=invoice.id,
        )
        if subscription is None:
            return WebhookOutcome.skipped(f"no local subscription for invoice {invoice.id}")

        record = await self._recorder.record(subscription, invoice, PaymentStatus.SUCCEEDED)

        if invoice.subscription:
            processor_sub = await self._stripe.get_subscription(invoice.subscription)
            await self._synchronizer.apply(subscription, processor_sub)

        return WebhookOutcome.applied(f"invoice {invoice.id} recorded as {record.status.value}")

    async def handle_invoice_finalized(self, event: InvoiceEvent) -> WebhookOutcome:
        """Finalized invoices only matter once they are paid."""
        if not event.invoice.is_paid:
            return WebhookOutcome.skipped(f"invoice {event.invoice.id} finalized but not paid")
        return await self.handle_invoice_paid(event)

    async def handle_invoice_payment_failed(self, event: InvoiceEvent) -> WebhookOutcome:
        """Record a failed payment and sync the subscription."""
        invoice = event.invoice

        subscription = await self._resolver.resolve(
            stripe_subscription_id=invoice.subscription,
            stripe_customer_id=invoice.customer,
            stripe_invoice_id=invoice.id,
        )
        if subscription is None:
            return WebhookOutcome.skipped(f"no local subscription for invoice {invoice.id}")

        record = await self._recorder.record_failure(subscription, invoice)

        if invoice.subscription:
            processor_sub = await self._stripe.get_subscription(invoice.subscription)
            await self._synchronizer.apply(subscription, processor_sub)

        return WebhookOutcome.applied(f"invoice {invoice.id} recorded as {record.status.value}")

    async def _complete_invoice(self, invoice: InvoiceSnapshot) -> InvoiceSnapshot:
        """Re-fetch an invoice whose payload lacks the subscription id."""
        if invoice.subscription:
            return invoice

        logger.info(f"Invoice {invoice.id} payload has no subscription id, fetching from Stripe")
        try:
            fetched = await self._stripe.retrieve_invoice(invoice.id)
        except StripeServiceError as e:
            logger.warning(f"Could not fetch invoice {invoice.id}: {e}")
            return invoice

        if not fetched.subscription:
            logger.info(f"Invoice {invoice.id} has no subscription, resolving by customer")
        return fetched


# =============================================================================
# Singleton Instance
# =============================================================================

_handlers_instance: Optional[BillingEventHandlers] = None


def get_billing_event_handlers() -> BillingEventHandlers:
    """Get or create billing event handlers singleton."""
    global _handlers_instance

    if _handlers_instance is None:
        _handlers_instance = BillingEventHandlers()

    return _handlers_instance
