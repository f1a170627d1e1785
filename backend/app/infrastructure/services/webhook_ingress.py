"""
Stripe Webhook Ingress

Verifies, classifies and dispatches Stripe webhook deliveries.

Delivery contract:
- Invalid or missing signature: WebhookVerificationError, nothing written.
- Each event id is tracked in the attempt ledger. A redelivery of a
  processed event is skipped; a failing event is retried by Stripe until
  WEBHOOK_MAX_ATTEMPTS, then dead-lettered and acknowledged.
- HTTP status: 200 for applied, skipped and non-retryable failures;
  500 for retryable failures so Stripe redelivers.
"""

import logging
from typing import Optional

from pydantic import BaseModel

from app.config.settings import get_settings
from app.domain.webhook_events import (
    ParsedEvent,
    WebhookEventStatus,
    WebhookOutcome,
    parse_event,
)
from app.infrastructure.exceptions import ValidationError
from app.infrastructure.db.repositories.webhook_event_repository import (
    WebhookEventRepository,
    get_webhook_event_repository,
)
from app.infrastructure.payments.stripe_service import StripeService, get_stripe_service
from app.infrastructure.services.webhook_handlers import (
    BillingEventHandlers,
    get_billing_event_handlers,
)


logger = logging.getLogger(__name__)


class WebhookResult(BaseModel):
    """Outcome of one delivery, plus the status code to answer with."""
    event_id: str
    event_type: str
    outcome: WebhookOutcome
    http_status: int = 200


class WebhookIngress:
    """Entry point for raw Stripe webhook deliveries."""

    def __init__(
        self,
        stripe_service: Optional[StripeService] = None,
        handlers: Optional[BillingEventHandlers] = None,
        event_repo: Optional[WebhookEventRepository] = None,
        max_attempts: Optional[int] = None,
    ):
        self._stripe = stripe_service or get_stripe_service()
        self._handlers = handlers or get_billing_event_handlers()
        self._events = event_repo or get_webhook_event_repository()
        self._max_attempts = max_attempts or get_settings().webhook_max_attempts

    async def process(self, payload: bytes, signature: Optional[str]) -> WebhookResult:
        """
        Verify and handle one delivery.

        Args:
            payload: Raw request body
            signature: Stripe-Signature header

        Returns:
            WebhookResult with the outcome and HTTP status

        Raises:
            WebhookVerificationError: If the signature is missing or invalid
            ValidationError: If the verified payload has no event id or type
        """
        data = self._stripe.verify_webhook_signature(payload, signature)

        try:
            event = parse_event(data)
        except ValidationError as e:
            return await self._reject_malformed(data, e)

        entry = await self._events.begin_attempt(event.id, event.type)

        if entry.status == WebhookEventStatus.PROCESSED:
            logger.info(f"Event {event.id} already processed, skipping")
            return self._result(event, WebhookOutcome.skipped("duplicate delivery"))
        if entry.status == WebhookEventStatus.DEAD_LETTERED:
            logger.info(f"Event {event.id} is dead-lettered, skipping")
            return self._result(event, WebhookOutcome.skipped("dead-lettered"))

        logger.info(f"Processing webhook event: {event.type} ({event.id}), attempt {entry.attempts + 1}")
        outcome = await self._handlers.handle(event)
        return await self._settle(event, outcome)

    async def _settle(self, event: ParsedEvent, outcome: WebhookOutcome) -> WebhookResult:
        """Write the outcome to the attempt ledger."""
        if not outcome.is_failure:
            await self._events.mark_processed(event.id)
            logger.info(
                f"Webhook {event.type} ({event.id}) {outcome.kind.value}"
                + (f": {outcome.reason}" if outcome.reason else "")
            )
            return self._result(event, outcome)

        entry = await self._events.record_failure(
            event.id,
            outcome.error or "unknown error",
            self._max_attempts,
            retryable=outcome.retryable,
        )
        if entry.status == WebhookEventStatus.DEAD_LETTERED:
            outcome = outcome.model_copy(update={"retryable": False})

        logger.error(
            f"Webhook {event.type} ({event.id}) failed on attempt {entry.attempts}: {outcome.error} "
            f"(retryable={outcome.retryable})"
        )
        return self._result(event, outcome)

    async def _reject_malformed(self, data: dict, error: ValidationError) -> WebhookResult:
        """Dead-letter a signed event whose object cannot be parsed."""
        event_id = data.get("id")
        event_type = data.get("type")
        if not event_id or not event_type:
            raise error

        logger.error(f"Malformed webhook {event_type} ({event_id}): {error.message}")
        await self._events.begin_attempt(event_id, event_type)
        await self._events.record_failure(
            event_id, error.message, self._max_attempts, retryable=False
        )
        outcome = WebhookOutcome.failed(error.message, retryable=False)
        return WebhookResult(event_id=event_id, event_type=event_type, outcome=outcome, http_status=200)

    def _result(self, event: ParsedEvent, outcome: WebhookOutcome) -> WebhookResult:
        http_status = 500 if outcome.is_failure and outcome.retryable else 200
        return WebhookResult(
            event_id=event.id,
            event_type=event.type,
            outcome=outcome,
            http_status=http_status,
        )


# =============================================================================
# Singleton Instance
# =============================================================================

_webhook_ingress_instance: Optional[WebhookIngress] = None


def get_webhook_ingress() -> WebhookIngress:
    """Get or create webhook ingress singleton."""
    global _webhook_ingress_instance

    if _webhook_ingress_instance is None:
        _webhook_ingress_instance = WebhookIngress()

    return _webhook_ingress_instance
