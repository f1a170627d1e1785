"""
Entity Resolver

Locates the local subscription a webhook payload refers to. Stripe events
arrive out of order and with partial ids, so resolution walks an ordered
list of strategies and stops at the first hit:

1. customer_id            - local lookup by Stripe customer ID
2. subscription_id        - local lookup by Stripe subscription ID
3. processor_metadata     - fetch the Stripe subscription, read company_id
                            from its metadata, repair stale local ids
4. processor_customer_id  - local lookup by the customer on the fetched
                            Stripe subscription
5. invoice_payment        - company of an existing payment for the invoice

A miss is not an error: callers log and skip, and the sweeper or a
redelivery repairs the gap later.
"""

import logging
from typing import Awaitable, Callable, NamedTuple, Optional

from app.domain.billing import Subscription
from app.domain.webhook_events import ProcessorSubscription
from app.infrastructure.exceptions import DuplicateError
from app.infrastructure.db.repositories.subscription_repository import (
    SubscriptionRepository,
    get_subscription_repository,
)
from app.infrastructure.db.repositories.payment_repository import (
    PaymentRepository,
    get_payment_repository,
)
from app.infrastructure.payments.stripe_service import (
    StripeService,
    StripeServiceError,
    get_stripe_service,
)


logger = logging.getLogger(__name__)


class ResolutionContext:
    """
    Identifiers carried by one payload, plus a memoized Stripe fetch.

    Strategies 3 and 4 share a single subscription retrieval.
    """

    def __init__(
        self,
        stripe_service: StripeService,
        stripe_subscription_id: Optional[str] = None,
        stripe_customer_id: Optional[str] = None,
        stripe_invoice_id: Optional[str] = None,
        processor_subscription: Optional[ProcessorSubscription] = None,
    ):
        self.stripe_subscription_id = stripe_subscription_id
        self.stripe_customer_id = stripe_customer_id
        self.stripe_invoice_id = stripe_invoice_id
        self._stripe = stripe_service
        self._processor_subscription = processor_subscription
        self._fetched = processor_subscription is not None

    async def processor_subscription(self) -> Optional[ProcessorSubscription]:
        """Fetch the Stripe subscription once; failures count as a miss."""
        if not self._fetched:
            self._fetched = True
            if self.stripe_subscription_id:
                try:
                    self._processor_subscription = await self._stripe.get_subscription(
                        self.stripe_subscription_id
                    )
                except StripeServiceError as e:
                    logger.warning(
                        f"Could not fetch subscription {self.stripe_subscription_id} "
                        f"from Stripe during resolution: {e}"
                    )
        return self._processor_subscription


Strategy = Callable[[ResolutionContext], Awaitable[Optional[Subscription]]]


class Resolution(NamedTuple):
    """A located subscription and the strategy that found it."""
    subscription: Subscription
    strategy: str


class EntityResolver:
    """Resolves webhook payloads to local subscriptions."""

    def __init__(
        self,
        subscription_repo: Optional[SubscriptionRepository] = None,
        payment_repo: Optional[PaymentRepository] = None,
        stripe_service: Optional[StripeService] = None,
    ):
        self._subscriptions = subscription_repo or get_subscription_repository()
        self._payments = payment_repo or get_payment_repository()
        self._stripe = stripe_service or get_stripe_service()

        self._strategies: list[tuple[str, Strategy]] = [
            ("customer_id", self._by_customer_id),
            ("subscription_id", self._by_subscription_id),
            ("processor_metadata", self._by_processor_metadata),
            ("processor_customer_id", self._by_processor_customer_id),
            ("invoice_payment", self._by_invoice_payment),
        ]

    @property
    def strategy_names(self) -> list[str]:
        return [name for name, _ in self._strategies]

    async def locate(
        self,
        stripe_subscription_id: Optional[str] = None,
        stripe_customer_id: Optional[str] = None,
        stripe_invoice_id: Optional[str] = None,
        processor_subscription: Optional[ProcessorSubscription] = None,
    ) -> Optional[Resolution]:
        """
        Run the strategies in order and report which one matched.

        Args:
            stripe_subscription_id: Subscription ID from the payload
            stripe_customer_id: Customer ID from the payload
            stripe_invoice_id: Invoice ID from the payload
            processor_subscription: Already-fetched Stripe subscription, if any

        Returns:
            Resolution, or None when every strategy misses
        """
        context = ResolutionContext(
            self._stripe,
            stripe_subscription_id=stripe_subscription_id,
            stripe_customer_id=stripe_customer_id,
            stripe_invoice_id=stripe_invoice_id,
            processor_subscription=processor_subscription,
        )

        for name, strategy in self._strategies:
            subscription = await strategy(context)
            if subscription is not None:
                logger.info(
                    f"Resolved subscription {subscription.id} (company {subscription.company_id}) "
                    f"via {name}"
                )
                return Resolution(subscription, name)
            logger.debug(f"Resolution strategy {name} missed")

        logger.warning(
            f"No subscription found for subscription_id={stripe_subscription_id}, "
            f"customer_id={stripe_customer_id}, invoice_id={stripe_invoice_id}"
        )
        return None

    async def resolve(
        self,
        stripe_subscription_id: Optional[str] = None,
        stripe_customer_id: Optional[str] = None,
        stripe_invoice_id: Optional[str] = None,
        processor_subscription: Optional[ProcessorSubscription] = None,
    ) -> Optional[Subscription]:
        """Resolve a payload to its subscription, or None."""
        resolution = await self.locate(
            stripe_subscription_id,
            stripe_customer_id,
            stripe_invoice_id,
            processor_subscription,
        )
        return resolution.subscription if resolution else None

    # =========================================================================
    # Strategies
    # =========================================================================

    async def _by_customer_id(self, ctx: ResolutionContext) -> Optional[Subscription]:
        if not ctx.stripe_customer_id:
            return None
        return await self._subscriptions.get_by_stripe_customer_id(ctx.stripe_customer_id)

    async def _by_subscription_id(self, ctx: ResolutionContext) -> Optional[Subscription]:
        if not ctx.stripe_subscription_id:
            return None
        return await self._subscriptions.get_by_stripe_subscription_id(ctx.stripe_subscription_id)

    async def _by_processor_metadata(self, ctx: ResolutionContext) -> Optional[Subscription]:
        processor_sub = await ctx.processor_subscription()
        if processor_sub is None or not processor_sub.company_id:
            return None

        subscription = await self._subscriptions.get_by_company_id(processor_sub.company_id)
        if subscription is None:
            logger.warning(
                f"Company {processor_sub.company_id} from subscription metadata has no local subscription"
            )
            return None

        return await self._repair_ids(subscription, processor_sub)

    async def _by_processor_customer_id(self, ctx: ResolutionContext) -> Optional[Subscription]:
        processor_sub = await ctx.processor_subscription()
        if processor_sub is None or not processor_sub.customer:
            return None
        if processor_sub.customer == ctx.stripe_customer_id:
            # Already tried by the first strategy
            return None
        return await self._subscriptions.get_by_stripe_customer_id(processor_sub.customer)

    async def _by_invoice_payment(self, ctx: ResolutionContext) -> Optional[Subscription]:
        if not ctx.stripe_invoice_id:
            return None
        payment = await self._payments.get_by_stripe_invoice_id(ctx.stripe_invoice_id)
        if payment is None:
            return None
        return await self._subscriptions.get_by_company_id(payment.company_id)

    # =========================================================================
    # Self-healing
    # =========================================================================

    async def _repair_ids(
        self,
        subscription: Subscription,
        processor_sub: ProcessorSubscription,
    ) -> Subscription:
        """Overwrite missing or stale Stripe ids with the processor's."""
        changes = {}
        if subscription.stripe_subscription_id != processor_sub.id:
            changes["stripe_subscription_id"] = processor_sub.id
        if processor_sub.customer and subscription.stripe_customer_id != processor_sub.customer:
            changes["stripe_customer_id"] = processor_sub.customer

        if not changes:
            return subscription

        logger.info(
            f"Repairing Stripe ids of subscription {subscription.id}: "
            + ", ".join(f"{k} {getattr(subscription, k)} -> {v}" for k, v in changes.items())
        )
        try:
            return await self._subscriptions.save(subscription.model_copy(update=changes))
        except DuplicateError as e:
            logger.error(f"Could not repair ids of subscription {subscription.id}: {e}")
            return subscription


# =============================================================================
# Singleton Instance
# =============================================================================

_entity_resolver_instance: Optional[EntityResolver] = None


def get_entity_resolver() -> EntityResolver:
    """Get or create entity resolver singleton."""
    global _entity_resolver_instance

    if _entity_resolver_instance is None:
        _entity_resolver_instance = EntityResolver()

    return _entity_resolver_instance
