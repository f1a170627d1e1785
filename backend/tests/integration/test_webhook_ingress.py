"""
Integration tests for webhook ingress and the billing event handlers.

Deliveries are signed with the test webhook secret and verified by the real
StripeService; every other Stripe call goes to the mocked service. State
lands in the in-memory SQLite ledger.
"""

from decimal import Decimal

import pytest

from app.domain.billing import PaymentStatus, SubscriptionPlan, SubscriptionStatus
from app.domain.webhook_events import OutcomeKind, ProcessorSubscription, WebhookEventStatus, InvoiceSnapshot
from app.infrastructure.exceptions import ValidationError, WebhookVerificationError
from app.infrastructure.payments.stripe_service import StripeService, StripeServiceError
from app.infrastructure.services.webhook_ingress import WebhookIngress


MAX_ATTEMPTS = 3


@pytest.fixture
def ingress(services):
    return WebhookIngress(
        stripe_service=StripeService(),
        handlers=services.handlers,
        event_repo=services.events,
        max_attempts=MAX_ATTEMPTS,
    )


@pytest.fixture
def deliver(ingress, signed_request):
    """Sign an event and run it through the ingress."""

    async def _deliver(event: dict):
        body, signature = signed_request(event)
        return await ingress.process(body, signature)

    return _deliver


@pytest.fixture
async def linked(company, create_subscription):
    return await create_subscription(
        company.id, stripe_customer_id="cus_123", stripe_subscription_id="sub_123"
    )


@pytest.fixture
def stripe_returns(services, stripe_subscription_payload):
    """Make the mocked Stripe return a subscription built from the payload builder."""

    def _returns(**fields) -> ProcessorSubscription:
        processor_sub = ProcessorSubscription.from_stripe(stripe_subscription_payload(**fields))
        services.stripe.get_subscription.return_value = processor_sub
        return processor_sub

    return _returns


class TestSignatureGate:
    """Tests for signature verification before any side effect."""

    @pytest.mark.asyncio
    async def test_invalid_signature_writes_nothing(
        self, services, ingress, linked, signed_request, event_payload, invoice_payload
    ):
        event = event_payload("invoice.paid", invoice_payload(), event_id="evt_forged")
        body, signature = signed_request(event, secret="whsec_attacker")

        with pytest.raises(WebhookVerificationError):
            await ingress.process(body, signature)

        assert await services.events.get("evt_forged") is None
        assert await services.payments.get_by_stripe_invoice_id("in_001") is None
        services.stripe.get_subscription.assert_not_called()

    @pytest.mark.asyncio
    async def test_missing_signature(self, ingress, database):
        with pytest.raises(WebhookVerificationError):
            await ingress.process(b'{"id": "evt_1", "type": "invoice.paid"}', None)

    @pytest.mark.asyncio
    async def test_signed_event_without_id_is_rejected(self, ingress, database, signed_request):
        body, signature = signed_request({"type": "invoice.paid", "data": {"object": {}}})

        with pytest.raises(ValidationError):
            await ingress.process(body, signature)

    @pytest.mark.asyncio
    async def test_signed_malformed_object_is_dead_lettered(self, services, deliver, database, event_payload):
        result = await deliver(event_payload("invoice.paid", {"status": "paid"}, event_id="evt_bad"))

        assert result.http_status == 200
        assert result.outcome.kind == OutcomeKind.FAILED
        entry = await services.events.get("evt_bad")
        assert entry.status == WebhookEventStatus.DEAD_LETTERED


class TestInvoiceEvents:
    """Tests for invoice.* deliveries."""

    @pytest.mark.asyncio
    async def test_invoice_paid_records_and_syncs(
        self, services, deliver, linked, stripe_returns, event_payload, invoice_payload
    ):
        stripe_returns()

        result = await deliver(event_payload("invoice.paid", invoice_payload(), event_id="evt_paid"))

        assert result.http_status == 200
        assert result.outcome.kind == OutcomeKind.APPLIED

        payment = await services.payments.get_by_stripe_invoice_id("in_001")
        assert payment.status == PaymentStatus.SUCCEEDED
        assert payment.amount == Decimal("30.00")
        assert payment.company_id == linked.company_id

        synced = await services.subscriptions.get_by_company_id(linked.company_id)
        assert synced.plan == SubscriptionPlan.ENTERPRISE
        assert synced.status == SubscriptionStatus.ACTIVE

        entry = await services.events.get("evt_paid")
        assert entry.status == WebhookEventStatus.PROCESSED

    @pytest.mark.asyncio
    async def test_redelivery_is_skipped(
        self, services, deliver, linked, stripe_returns, event_payload, invoice_payload
    ):
        stripe_returns()
        event = event_payload("invoice.paid", invoice_payload(), event_id="evt_twice")

        first = await deliver(event)
        second = await deliver(event)

        assert first.outcome.kind == OutcomeKind.APPLIED
        assert second.outcome.kind == OutcomeKind.SKIPPED
        assert second.outcome.reason == "duplicate delivery"
        assert second.http_status == 200
        services.stripe.get_subscription.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_sibling_events_record_one_payment(
        self, services, deliver, linked, stripe_returns, event_payload, invoice_payload
    ):
        """invoice.paid and invoice.payment_succeeded for one invoice give one row."""
        stripe_returns()

        await deliver(event_payload("invoice.paid", invoice_payload("in_same")))
        await deliver(event_payload("invoice.payment_succeeded", invoice_payload("in_same")))

        history = await services.payments.list_by_company(linked.company_id)
        assert len(history) == 1

    @pytest.mark.asyncio
    async def test_payment_failed_then_paid(
        self, services, deliver, linked, stripe_returns, event_payload, invoice_payload
    ):
        stripe_returns(status="past_due")
        await deliver(event_payload(
            "invoice.payment_failed",
            invoice_payload("in_late", status="open", amount_paid=0, amount_due=3000),
        ))

        failed = await services.payments.get_by_stripe_invoice_id("in_late")
        assert failed.status == PaymentStatus.FAILED
        suspended = await services.subscriptions.get_by_company_id(linked.company_id)
        assert suspended.status == SubscriptionStatus.SUSPENDED

        stripe_returns(status="active")
        await deliver(event_payload("invoice.paid", invoice_payload("in_late")))

        paid = await services.payments.get_by_stripe_invoice_id("in_late")
        assert paid.status == PaymentStatus.SUCCEEDED
        assert paid.id == failed.id
        active = await services.subscriptions.get_by_company_id(linked.company_id)
        assert active.status == SubscriptionStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_unpaid_finalized_invoice_is_skipped(
        self, services, deliver, linked, event_payload, invoice_payload
    ):
        result = await deliver(event_payload("invoice.finalized", invoice_payload(status="open")))

        assert result.outcome.kind == OutcomeKind.SKIPPED
        assert await services.payments.get_by_stripe_invoice_id("in_001") is None

    @pytest.mark.asyncio
    async def test_invoice_without_subscription_is_refetched(
        self, services, deliver, linked, stripe_returns, event_payload, invoice_payload
    ):
        stripe_returns()
        services.stripe.retrieve_invoice.return_value = InvoiceSnapshot.from_stripe(invoice_payload("in_bare"))

        result = await deliver(event_payload(
            "invoice.paid", invoice_payload("in_bare", subscription=None, customer="cus_unknown")
        ))

        assert result.outcome.kind == OutcomeKind.APPLIED
        services.stripe.retrieve_invoice.assert_awaited_once_with("in_bare")
        payment = await services.payments.get_by_stripe_invoice_id("in_bare")
        assert payment.stripe_subscription_id == "sub_123"

    @pytest.mark.asyncio
    async def test_unresolvable_invoice_is_acknowledged(
        self, services, deliver, database, event_payload, invoice_payload
    ):
        services.stripe.get_subscription.side_effect = StripeServiceError("gone", retryable=False)

        result = await deliver(event_payload(
            "invoice.paid",
            invoice_payload("in_orphan", subscription="sub_orphan", customer="cus_orphan"),
            event_id="evt_orphan",
        ))

        assert result.http_status == 200
        assert result.outcome.kind == OutcomeKind.SKIPPED
        assert (await services.events.get("evt_orphan")).status == WebhookEventStatus.PROCESSED


class TestRetryBound:
    """Tests for the attempt ledger under failing handlers."""

    @pytest.mark.asyncio
    async def test_retryable_failure_dead_letters_at_limit(
        self, services, deliver, linked, event_payload, invoice_payload
    ):
        services.stripe.get_subscription.side_effect = StripeServiceError("Stripe subscription retrieve timed out")
        event = event_payload("invoice.paid", invoice_payload("in_retry"), event_id="evt_retry")

        statuses = [(await deliver(event)).http_status for _ in range(MAX_ATTEMPTS)]
        after_limit = await deliver(event)

        assert statuses == [500] * (MAX_ATTEMPTS - 1) + [200]
        assert after_limit.http_status == 200
        assert after_limit.outcome.reason == "dead-lettered"

        entry = await services.events.get("evt_retry")
        assert entry.status == WebhookEventStatus.DEAD_LETTERED
        assert entry.attempts == MAX_ATTEMPTS
        assert "timed out" in entry.last_error

        # The payment was recorded on the first attempt and never duplicated
        history = await services.payments.list_by_company(linked.company_id)
        assert len(history) == 1

    @pytest.mark.asyncio
    async def test_retry_then_success(
        self, services, deliver, linked, stripe_subscription_payload, event_payload, invoice_payload
    ):
        services.stripe.get_subscription.side_effect = [
            StripeServiceError("Stripe subscription retrieve failed"),
            ProcessorSubscription.from_stripe(stripe_subscription_payload()),
        ]
        event = event_payload("invoice.paid", invoice_payload(), event_id="evt_flaky")

        first = await deliver(event)
        second = await deliver(event)

        assert first.http_status == 500
        assert second.http_status == 200
        entry = await services.events.get("evt_flaky")
        assert entry.status == WebhookEventStatus.PROCESSED
        assert entry.attempts == 1

    @pytest.mark.asyncio
    async def test_non_retryable_failure_dead_letters_immediately(
        self, services, deliver, linked, event_payload, invoice_payload
    ):
        services.stripe.get_subscription.side_effect = StripeServiceError(
            "No such subscription", retryable=False
        )

        result = await deliver(event_payload("invoice.paid", invoice_payload(), event_id="evt_bad_id"))

        assert result.http_status == 200
        assert result.outcome.kind == OutcomeKind.FAILED
        assert result.outcome.retryable is False
        assert (await services.events.get("evt_bad_id")).status == WebhookEventStatus.DEAD_LETTERED

    @pytest.mark.asyncio
    async def test_unexpected_error_is_retryable(
        self, services, deliver, linked, event_payload, invoice_payload
    ):
        services.stripe.get_subscription.side_effect = RuntimeError("boom")

        result = await deliver(event_payload("invoice.paid", invoice_payload()))

        assert result.http_status == 500
        assert "RuntimeError" in result.outcome.error


class TestCheckoutAndSubscriptionEvents:
    """Tests for checkout and customer.subscription.* deliveries."""

    @pytest.mark.asyncio
    async def test_checkout_links_and_promotes(
        self, services, deliver, company, stripe_returns, event_payload
    ):
        stripe_returns(sub_id="sub_new", customer="cus_new", company_id=company.id)

        result = await deliver(event_payload("checkout.session.completed", {
            "id": "cs_1",
            "customer": "cus_new",
            "subscription": "sub_new",
            "metadata": {"company_id": company.id},
        }))

        assert result.outcome.kind == OutcomeKind.APPLIED
        subscription = await services.subscriptions.get_by_company_id(company.id)
        assert subscription.stripe_customer_id == "cus_new"
        assert subscription.stripe_subscription_id == "sub_new"
        assert subscription.plan == SubscriptionPlan.ENTERPRISE

        stored_company = await services.companies.get_by_id(company.id)
        assert stored_company.max_employees == -1
        services.stripe.list_invoices.assert_awaited_once_with("sub_new", limit=10)

    @pytest.mark.asyncio
    async def test_checkout_for_unknown_company_is_skipped(self, deliver, database, event_payload):
        result = await deliver(event_payload("checkout.session.completed", {
            "id": "cs_1",
            "customer": "cus_new",
            "subscription": "sub_new",
            "client_reference_id": "00000000-0000-0000-0000-000000000000",
        }))

        assert result.outcome.kind == OutcomeKind.SKIPPED
        assert result.http_status == 200

    @pytest.mark.asyncio
    async def test_out_of_order_update_resolves_by_metadata(
        self, services, deliver, company, create_subscription, stripe_returns,
        stripe_subscription_payload, event_payload
    ):
        """An update that beats checkout to the ledger still finds the company."""
        await create_subscription(company.id)
        stripe_returns(sub_id="sub_early", customer="cus_early", company_id=company.id, quantity=9)

        result = await deliver(event_payload(
            "customer.subscription.updated",
            stripe_subscription_payload(sub_id="sub_early", customer="cus_early", company_id=company.id),
        ))

        assert result.outcome.kind == OutcomeKind.APPLIED
        synced = await services.subscriptions.get_by_company_id(company.id)
        assert synced.stripe_subscription_id == "sub_early"
        assert synced.seat_count == 9
        # Resolution reuses the object fetched for the sync
        services.stripe.get_subscription.assert_awaited_once_with("sub_early")

    @pytest.mark.asyncio
    async def test_deleted_downgrades_to_free(
        self, services, deliver, linked, stripe_returns, stripe_subscription_payload, event_payload
    ):
        stripe_returns()
        await deliver(event_payload("customer.subscription.updated", stripe_subscription_payload()))

        result = await deliver(event_payload(
            "customer.subscription.deleted", stripe_subscription_payload(status="canceled")
        ))

        assert result.outcome.kind == OutcomeKind.APPLIED
        subscription = await services.subscriptions.get_by_company_id(linked.company_id)
        assert subscription.plan == SubscriptionPlan.FREE
        assert subscription.status == SubscriptionStatus.CANCELLED
        stored_company = await services.companies.get_by_id(linked.company_id)
        assert stored_company.max_employees == 7

    @pytest.mark.asyncio
    async def test_late_update_after_deletion_keeps_free_plan(
        self, services, deliver, linked, stripe_returns, stripe_subscription_payload, event_payload
    ):
        stripe_returns()
        await deliver(event_payload("customer.subscription.updated", stripe_subscription_payload()))
        await deliver(event_payload(
            "customer.subscription.deleted", stripe_subscription_payload(status="canceled")
        ))

        # An update sent before the deletion arrives last; Stripe now reports canceled
        stripe_returns(status="canceled")
        result = await deliver(event_payload(
            "customer.subscription.updated", stripe_subscription_payload(status="canceled")
        ))

        assert result.outcome.kind == OutcomeKind.APPLIED
        subscription = await services.subscriptions.get_by_company_id(linked.company_id)
        assert subscription.plan == SubscriptionPlan.FREE
        assert subscription.status == SubscriptionStatus.CANCELLED
        assert subscription.price_per_seat == Decimal("0.00")
        stored_company = await services.companies.get_by_id(linked.company_id)
        assert stored_company.max_employees == 7

    @pytest.mark.asyncio
    async def test_unrecognized_event_is_acknowledged(self, services, deliver, database, event_payload):
        result = await deliver(event_payload("customer.created", {"id": "cus_1"}, event_id="evt_other"))

        assert result.http_status == 200
        assert result.outcome.kind == OutcomeKind.SKIPPED
        assert (await services.events.get("evt_other")).status == WebhookEventStatus.PROCESSED
