"""
SQLModel ORM Models for Tideflow Billing

Exports all database models for Alembic autogenerate and application use.
Import models here to register them with SQLModel.metadata.
"""

from app.infrastructure.db.models.base import (
    TimestampMixin,
    UUIDMixin,
)
from app.infrastructure.db.models.company import CompanyModel
from app.infrastructure.db.models.subscription import SubscriptionModel
from app.infrastructure.db.models.payment_record import PaymentRecordModel
from app.infrastructure.db.models.webhook_event import WebhookEventModel


__all__ = [
    # Base
    "TimestampMixin",
    "UUIDMixin",
    # Billing
    "CompanyModel",
    "SubscriptionModel",
    "PaymentRecordModel",
    "WebhookEventModel",
]
