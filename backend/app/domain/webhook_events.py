"""
Webhook Event Domain Models

Typed projections of Stripe webhook payloads. Raw JSON is parsed once at the
ingress boundary into a small tagged union of event kinds; each handler only
sees the fields it consumes.

Also defines WebhookOutcome, the result every handler returns instead of
raising into the dispatcher.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional, Union
from pydantic import BaseModel, Field

from app.infrastructure.exceptions import ValidationError


# =============================================================================
# Event Types
# =============================================================================

CHECKOUT_SESSION_COMPLETED = "checkout.session.completed"
SUBSCRIPTION_CREATED = "customer.subscription.created"
SUBSCRIPTION_UPDATED = "customer.subscription.updated"
SUBSCRIPTION_DELETED = "customer.subscription.deleted"
INVOICE_PAID = "invoice.paid"
INVOICE_PAYMENT_SUCCEEDED = "invoice.payment_succeeded"
INVOICE_FINALIZED = "invoice.finalized"
INVOICE_PAYMENT_FAILED = "invoice.payment_failed"

SUBSCRIPTION_EVENTS = {SUBSCRIPTION_CREATED, SUBSCRIPTION_UPDATED, SUBSCRIPTION_DELETED}
INVOICE_EVENTS = {
    INVOICE_PAID,
    INVOICE_PAYMENT_SUCCEEDED,
    INVOICE_FINALIZED,
    INVOICE_PAYMENT_FAILED,
}


def _object_id(value: Any) -> Optional[str]:
    """Collapse an expanded Stripe object to its id."""
    if value is None or isinstance(value, str):
        return value
    return _as_dict(value).get("id")


def _timestamp(value: Any) -> Optional[datetime]:
    """Convert a Stripe unix timestamp to an aware UTC datetime."""
    if value is None:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def _as_dict(value: Any) -> dict:
    """Return a plain dict for Stripe objects, dicts or missing values."""
    if value is None:
        return {}
    if isinstance(value, dict):
        return value
    return value.to_dict()


# =============================================================================
# Processor Object Snapshots
# =============================================================================

class ProcessorSubscription(BaseModel):
    """Fields of a Stripe subscription the synchronizer and resolver consume."""
    id: str
    customer: Optional[str] = None
    status: Optional[str] = None
    metadata: dict[str, str] = Field(default_factory=dict)
    trial_end: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    seat_count: Optional[int] = None
    price_id: Optional[str] = None
    unit_amount: Optional[int] = None
    interval: Optional[str] = None
    price_metadata: dict[str, str] = Field(default_factory=dict)
    latest_invoice: Optional[str] = None
    cancel_at_period_end: bool = False

    @property
    def company_id(self) -> Optional[str]:
        """Tenant id written into metadata at checkout."""
        return self.metadata.get("company_id")

    @classmethod
    def from_stripe(cls, data: Any) -> "ProcessorSubscription":
        """
        Build a snapshot from a Stripe subscription payload.

        Newer API versions moved current_period_end onto subscription items,
        so the first item is used when the top-level field is absent.
        """
        data = _as_dict(data)
        items = _as_dict(data.get("items")).get("data") or []
        item = _as_dict(items[0]) if items else {}
        price = _as_dict(item.get("price"))
        recurring = _as_dict(price.get("recurring"))

        period_end = data.get("current_period_end")
        if period_end is None:
            period_end = item.get("current_period_end")

        return cls(
            id=data["id"],
            customer=_object_id(data.get("customer")),
            status=data.get("status"),
            metadata=_as_dict(data.get("metadata")),
            trial_end=_timestamp(data.get("trial_end")),
            current_period_end=_timestamp(period_end),
            seat_count=item.get("quantity"),
            price_id=price.get("id"),
            unit_amount=price.get("unit_amount"),
            interval=recurring.get("interval"),
            price_metadata=_as_dict(price.get("metadata")),
            latest_invoice=_object_id(data.get("latest_invoice")),
            cancel_at_period_end=bool(data.get("cancel_at_period_end", False)),
        )


class InvoiceSnapshot(BaseModel):
    """Fields of a Stripe invoice the recorder and sweeper consume."""
    id: str
    customer: Optional[str] = None
    subscription: Optional[str] = None
    status: Optional[str] = None
    amount_paid: Optional[int] = None
    total: Optional[int] = None
    amount_due: Optional[int] = None
    payment_intent: Optional[str] = None
    charge: Optional[str] = None
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None
    description: Optional[str] = None
    number: Optional[str] = None

    @property
    def is_paid(self) -> bool:
        return self.status == "paid"

    @classmethod
    def from_stripe(cls, data: Any) -> "InvoiceSnapshot":
        """
        Build a snapshot from a Stripe invoice payload.

        The subscription id lives under parent.subscription_details on
        newer API versions.
        """
        data = _as_dict(data)
        subscription = _object_id(data.get("subscription"))
        if subscription is None:
            details = _as_dict(_as_dict(data.get("parent")).get("subscription_details"))
            subscription = _object_id(details.get("subscription"))

        return cls(
            id=data["id"],
            customer=_object_id(data.get("customer")),
            subscription=subscription,
            status=data.get("status"),
            amount_paid=data.get("amount_paid"),
            total=data.get("total"),
            amount_due=data.get("amount_due"),
            payment_intent=_object_id(data.get("payment_intent")),
            charge=_object_id(data.get("charge")),
            period_start=_timestamp(data.get("period_start")),
            period_end=_timestamp(data.get("period_end")),
            description=data.get("description"),
            number=data.get("number"),
        )


class CheckoutSessionSnapshot(BaseModel):
    """Fields of a completed Stripe Checkout session."""
    id: str
    customer: Optional[str] = None
    subscription: Optional[str] = None
    metadata: dict[str, str] = Field(default_factory=dict)
    client_reference_id: Optional[str] = None

    @property
    def company_id(self) -> Optional[str]:
        return self.metadata.get("company_id") or self.client_reference_id

    @classmethod
    def from_stripe(cls, data: Any) -> "CheckoutSessionSnapshot":
        data = _as_dict(data)
        return cls(
            id=data["id"],
            customer=_object_id(data.get("customer")),
            subscription=_object_id(data.get("subscription")),
            metadata=_as_dict(data.get("metadata")),
            client_reference_id=data.get("client_reference_id"),
        )


# =============================================================================
# Tagged Event Union
# =============================================================================

class WebhookEvent(BaseModel):
    """Common envelope of every Stripe event."""
    id: str
    type: str


class CheckoutCompletedEvent(WebhookEvent):
    session: CheckoutSessionSnapshot


class SubscriptionChangedEvent(WebhookEvent):
    subscription: ProcessorSubscription


class InvoiceEvent(WebhookEvent):
    invoice: InvoiceSnapshot


class UnrecognizedEvent(WebhookEvent):
    """Event types this service does not handle; accepted without effects."""
    pass


ParsedEvent = Union[
    CheckoutCompletedEvent,
    SubscriptionChangedEvent,
    InvoiceEvent,
    UnrecognizedEvent,
]


def parse_event(payload: dict) -> ParsedEvent:
    """
    Parse a verified Stripe event payload into a typed event.

    Args:
        payload: Decoded event JSON

    Returns:
        One of the ParsedEvent variants

    Raises:
        ValidationError: If the envelope or the nested object is malformed
    """
    event_id = payload.get("id")
    event_type = payload.get("type")
    if not event_id or not event_type:
        raise ValidationError("Webhook event is missing id or type")

    obj = (payload.get("data") or {}).get("object")

    try:
        if event_type == CHECKOUT_SESSION_COMPLETED:
            return CheckoutCompletedEvent(
                id=event_id,
                type=event_type,
                session=CheckoutSessionSnapshot.from_stripe(obj),
            )
        if event_type in SUBSCRIPTION_EVENTS:
            return SubscriptionChangedEvent(
                id=event_id,
                type=event_type,
                subscription=ProcessorSubscription.from_stripe(obj),
            )
        if event_type in INVOICE_EVENTS:
            return InvoiceEvent(
                id=event_id,
                type=event_type,
                invoice=InvoiceSnapshot.from_stripe(obj),
            )
    except (KeyError, TypeError, ValueError) as e:
        raise ValidationError(
            f"Malformed {event_type} payload",
            details={"event_id": event_id},
            original_error=e,
        )

    return UnrecognizedEvent(id=event_id, type=event_type)


# =============================================================================
# Handler Outcomes
# =============================================================================

class OutcomeKind(str, Enum):
    APPLIED = "applied"
    SKIPPED = "skipped"
    FAILED = "failed"


class WebhookOutcome(BaseModel):
    """Result of handling a single event."""
    kind: OutcomeKind
    reason: Optional[str] = None
    error: Optional[str] = None
    retryable: bool = False

    @classmethod
    def applied(cls, reason: Optional[str] = None) -> "WebhookOutcome":
        return cls(kind=OutcomeKind.APPLIED, reason=reason)

    @classmethod
    def skipped(cls, reason: str) -> "WebhookOutcome":
        return cls(kind=OutcomeKind.SKIPPED, reason=reason)

    @classmethod
    def failed(cls, error: str, retryable: bool = True) -> "WebhookOutcome":
        return cls(kind=OutcomeKind.FAILED, error=error, retryable=retryable)

    @property
    def is_failure(self) -> bool:
        return self.kind == OutcomeKind.FAILED


# =============================================================================
# Attempt Ledger
# =============================================================================

class WebhookEventStatus(str, Enum):
    PROCESSING = "processing"
    PROCESSED = "processed"
    FAILED = "failed"
    DEAD_LETTERED = "dead_lettered"


class ProcessedWebhookEvent(BaseModel):
    """Delivery history of one Stripe event id."""
    event_id: str
    event_type: str
    status: WebhookEventStatus = WebhookEventStatus.PROCESSING
    attempts: int = 0
    last_error: Optional[str] = None
    first_seen_at: Optional[datetime] = None
    last_attempt_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None
