"""
Subscription State Synchronizer

Projects a Stripe subscription onto the local subscription record: status,
seat count, price, billing cycle, next billing date and plan. A plan
promotion also raises the owning company's seat ceiling.

apply() is idempotent: projecting the same Stripe object twice leaves the
record unchanged and skips the second write.
"""

import logging
from datetime import datetime, timezone
from typing import Callable, Optional

from app.config.settings import get_settings
from app.domain.billing import (
    PLAN_LIMITS,
    Subscription,
    SubscriptionPlan,
    SubscriptionStatus,
)
from app.domain.billing_rules import (
    billing_cycle_for_interval,
    cents_to_amount,
    compute_next_billing_at,
    map_processor_status,
    plan_for_subscription,
)
from app.domain.webhook_events import ProcessorSubscription
from app.infrastructure.db.repositories.subscription_repository import (
    SubscriptionRepository,
    get_subscription_repository,
)
from app.infrastructure.db.repositories.company_repository import (
    CompanyRepository,
    get_company_repository,
)


logger = logging.getLogger(__name__)

# Fields compared to decide whether a projection changed anything
SYNCED_FIELDS = (
    "plan",
    "price_per_seat",
    "seat_count",
    "billing_cycle",
    "next_billing_at",
    "status",
    "stripe_customer_id",
    "stripe_subscription_id",
    "stripe_price_id",
    "cancel_at_period_end",
)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class SubscriptionSynchronizer:
    """Keeps local subscriptions in step with Stripe."""

    def __init__(
        self,
        subscription_repo: Optional[SubscriptionRepository] = None,
        company_repo: Optional[CompanyRepository] = None,
        enterprise_price_id: Optional[str] = None,
        clock: Callable[[], datetime] = _utc_now,
    ):
        self._subscriptions = subscription_repo or get_subscription_repository()
        self._companies = company_repo or get_company_repository()
        self._enterprise_price_id = (
            enterprise_price_id or get_settings().stripe_enterprise_price_id
        )
        self._clock = clock

    def project(
        self,
        subscription: Subscription,
        processor_sub: ProcessorSubscription,
    ) -> Subscription:
        """
        Compute the local record implied by a Stripe subscription.

        Pure: nothing is persisted.

        Args:
            subscription: Current local record
            processor_sub: Authoritative Stripe subscription

        Returns:
            A new Subscription with synced fields
        """
        updated = subscription.model_copy()

        # Unknown statuses keep the local status
        mapped = map_processor_status(processor_sub.status)
        if mapped is not None:
            updated.status = mapped

        if processor_sub.seat_count is not None:
            updated.seat_count = processor_sub.seat_count
        if processor_sub.price_id:
            updated.stripe_price_id = processor_sub.price_id

        cycle = billing_cycle_for_interval(processor_sub.interval)
        if cycle is not None:
            updated.billing_cycle = cycle

        updated.stripe_subscription_id = processor_sub.id
        if processor_sub.customer:
            updated.stripe_customer_id = processor_sub.customer
        updated.cancel_at_period_end = processor_sub.cancel_at_period_end

        # A cancelled subscription never gains a plan, whatever its price says
        detected = plan_for_subscription(processor_sub, self._enterprise_price_id)
        if (
            detected is not None
            and detected.rank > updated.plan.rank
            and updated.status != SubscriptionStatus.CANCELLED
        ):
            updated.plan = detected
            updated.price_per_seat = PLAN_LIMITS[detected].price_per_seat
        if updated.plan != SubscriptionPlan.FREE and processor_sub.unit_amount is not None:
            updated.price_per_seat = cents_to_amount(processor_sub.unit_amount)

        updated.next_billing_at = self._next_billing_at(updated, processor_sub)
        return updated

    def _next_billing_at(
        self,
        subscription: Subscription,
        processor_sub: ProcessorSubscription,
    ) -> datetime:
        now = self._clock()
        if (
            processor_sub.trial_end is None
            and processor_sub.current_period_end is None
            and subscription.next_billing_at is not None
            and subscription.next_billing_at > now
        ):
            # No dates from Stripe and a future date already set: keep it
            return subscription.next_billing_at

        return compute_next_billing_at(
            processor_sub.status,
            processor_sub.trial_end,
            processor_sub.current_period_end,
            subscription.billing_cycle,
            now,
        )

    async def apply(
        self,
        subscription: Subscription,
        processor_sub: ProcessorSubscription,
    ) -> Subscription:
        """
        Sync a local subscription from Stripe and persist any change.

        Args:
            subscription: Resolved local record
            processor_sub: Authoritative Stripe subscription

        Returns:
            The synced (and saved, if changed) subscription
        """
        updated = self.project(subscription, processor_sub)

        if all(getattr(updated, f) == getattr(subscription, f) for f in SYNCED_FIELDS):
            logger.debug(f"Subscription {subscription.id} already in sync with {processor_sub.id}")
            return subscription

        saved = await self._subscriptions.save(updated)
        logger.info(
            f"Synced subscription {saved.id} from {processor_sub.id}: "
            f"status={saved.status.value}, plan={saved.plan.value}, seats={saved.seat_count}, "
            f"next_billing_at={saved.next_billing_at}"
        )

        if (
            saved.plan.rank > subscription.plan.rank
            and saved.status != SubscriptionStatus.CANCELLED
        ):
            await self._companies.update_plan(
                saved.company_id,
                saved.plan,
                PLAN_LIMITS[saved.plan].max_employees,
            )

        return saved

    async def downgrade_to_free(self, subscription: Subscription) -> Subscription:
        """
        Move a subscription back to the free plan and mark it cancelled.

        Also resets the company's seat ceiling to the free limit.
        """
        free = PLAN_LIMITS[SubscriptionPlan.FREE]
        updated = subscription.model_copy(update={
            "plan": SubscriptionPlan.FREE,
            "price_per_seat": free.price_per_seat,
            "status": SubscriptionStatus.CANCELLED,
            "cancel_at_period_end": False,
        })

        saved = await self._subscriptions.save(updated)
        await self._companies.update_plan(saved.company_id, SubscriptionPlan.FREE, free.max_employees)

        logger.info(f"Downgraded subscription {saved.id} (company {saved.company_id}) to free")
        return saved


# =============================================================================
# Singleton Instance
# =============================================================================

_synchronizer_instance: Optional[SubscriptionSynchronizer] = None


def get_subscription_synchronizer() -> SubscriptionSynchronizer:
    """Get or create subscription synchronizer singleton."""
    global _synchronizer_instance

    if _synchronizer_instance is None:
        _synchronizer_instance = SubscriptionSynchronizer()

    return _synchronizer_instance
