"""
Repository Layer for Tideflow Billing

Exports all repository classes and their singleton getters.
"""

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
from app.infrastructure.db.repositories.webhook_event_repository import (
    WebhookEventRepository,
    get_webhook_event_repository,
)


__all__ = [
    "SubscriptionRepository",
    "get_subscription_repository",
    "PaymentRepository",
    "get_payment_repository",
    "CompanyRepository",
    "get_company_repository",
    "WebhookEventRepository",
    "get_webhook_event_repository",
]
