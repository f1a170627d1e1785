"""
Subscription Repository

Data access layer for company subscription persistence.
Follows Repository pattern for Clean Architecture.
"""

import logging
from typing import Optional

from sqlmodel import select
from sqlalchemy.exc import IntegrityError

from app.infrastructure.db.database import get_session_context
from app.infrastructure.db.models.base import ensure_utc, parse_uuid
from app.infrastructure.db.models.subscription import SubscriptionModel
from app.infrastructure.exceptions import DuplicateError, NotFoundError
from app.domain.billing import (
    Subscription,
    SubscriptionPlan,
    SubscriptionStatus,
    BillingCycle,
)


logger = logging.getLogger(__name__)


class SubscriptionRepository:
    """
    Repository for subscription data access.
    
    Implements the ledger-store lookups used by the resolver
    (company, Stripe customer, Stripe subscription) with domain mapping.
    """
    
    # =========================================================================
    # Query Methods
    # =========================================================================
    
    async def get_by_id(self, subscription_id: str) -> Optional[Subscription]:
        """Get subscription by internal ID."""
        subscription_uuid = parse_uuid(subscription_id)
        if subscription_uuid is None:
            return None
        
        async with get_session_context() as session:
            model = await session.get(SubscriptionModel, subscription_uuid)
            return self._to_domain(model) if model else None
    
    async def get_by_company_id(self, company_id: str) -> Optional[Subscription]:
        """
        Get subscription by company ID.
        
        Args:
            company_id: Internal company ID
            
        Returns:
            Subscription domain model or None
        """
        company_uuid = parse_uuid(company_id)
        if company_uuid is None:
            return None
        
        async with get_session_context() as session:
            statement = select(SubscriptionModel).where(
                SubscriptionModel.company_id == company_uuid
            )
            result = await session.execute(statement)
            model = result.scalar_one_or_none()
            
            if model:
                return self._to_domain(model)
            
            return None
    
    async def get_by_stripe_customer_id(
        self, 
        stripe_customer_id: str,
    ) -> Optional[Subscription]:
        """
        Get subscription by Stripe customer ID.
        
        Args:
            stripe_customer_id: Stripe customer ID
            
        Returns:
            Subscription domain model or None
        """
        async with get_session_context() as session:
            statement = select(SubscriptionModel).where(
                SubscriptionModel.stripe_customer_id == stripe_customer_id
            )
            result = await session.execute(statement)
            model = result.scalar_one_or_none()
            
            if model:
                return self._to_domain(model)
            
            return None
    
    async def get_by_stripe_subscription_id(
        self,
        stripe_subscription_id: str,
    ) -> Optional[Subscription]:
        """
        Get subscription by Stripe subscription ID.
        
        Args:
            stripe_subscription_id: Stripe subscription ID
            
        Returns:
            Subscription domain model or None
        """
        async with get_session_context() as session:
            statement = select(SubscriptionModel).where(
                SubscriptionModel.stripe_subscription_id == stripe_subscription_id
            )
            result = await session.execute(statement)
            model = result.scalar_one_or_none()
            
            if model:
                return self._to_domain(model)
            
            return None
    
    async def list_linked(self) -> list[Subscription]:
        """List subscriptions that carry a Stripe subscription ID."""
        async with get_session_context() as session:
            statement = (
                select(SubscriptionModel)
                .where(SubscriptionModel.stripe_subscription_id.is_not(None))
                .order_by(SubscriptionModel.created_at)
            )
            result = await session.execute(statement)
            return [self._to_domain(model) for model in result.scalars().all()]
    
    # =========================================================================
    # Command Methods
    # =========================================================================
    
    async def create(self, subscription: Subscription) -> Subscription:
        """
        Create a new subscription.
        
        Args:
            subscription: Subscription domain model
            
        Returns:
            Created subscription with ID
            
        Raises:
            DuplicateError: If the company already has a subscription
        """
        try:
            async with get_session_context() as session:
                model = SubscriptionModel(company_id=parse_uuid(subscription.company_id))
                self._apply_fields(model, subscription)
                
                session.add(model)
                await session.flush()
                await session.refresh(model)
                created = self._to_domain(model)
        except IntegrityError as e:
            raise DuplicateError(
                f"Subscription already exists for company {subscription.company_id}",
                operation="create",
                table=SubscriptionModel.__tablename__,
                original_error=e,
            )
        
        logger.info(f"Created subscription {created.id} for company {created.company_id}")
        return created
    
    async def save(self, subscription: Subscription) -> Subscription:
        """
        Persist all mutable fields of an existing subscription.
        
        Args:
            subscription: Subscription with updated values
            
        Returns:
            Updated subscription
            
        Raises:
            NotFoundError: If the subscription does not exist
            DuplicateError: If a Stripe ID is already linked to another row
        """
        subscription_uuid = parse_uuid(subscription.id)
        
        try:
            async with get_session_context() as session:
                model = (
                    await session.get(SubscriptionModel, subscription_uuid)
                    if subscription_uuid else None
                )
                if not model:
                    raise NotFoundError(
                        f"Subscription {subscription.id} not found",
                        operation="save",
                        table=SubscriptionModel.__tablename__,
                    )
                
                self._apply_fields(model, subscription)
                await session.flush()
                await session.refresh(model)
                saved = self._to_domain(model)
        except IntegrityError as e:
            raise DuplicateError(
                f"Stripe identifiers of subscription {subscription.id} conflict with another subscription",
                operation="save",
                table=SubscriptionModel.__tablename__,
                original_error=e,
            )
        
        logger.debug(f"Saved subscription {saved.id} for company {saved.company_id}")
        return saved
    
    # =========================================================================
    # Mapping Methods
    # =========================================================================
    
    def _apply_fields(self, model: SubscriptionModel, domain: Subscription) -> None:
        """Copy mutable domain fields onto the database model."""
        model.plan = domain.plan.value
        model.price_per_seat = domain.price_per_seat
        model.seat_count = domain.seat_count
        model.billing_cycle = domain.billing_cycle.value
        model.next_billing_at = domain.next_billing_at
        model.status = domain.status.value
        model.cancel_at_period_end = domain.cancel_at_period_end
        model.stripe_customer_id = domain.stripe_customer_id
        model.stripe_subscription_id = domain.stripe_subscription_id
        model.stripe_price_id = domain.stripe_price_id
    
    def _to_domain(self, model: SubscriptionModel) -> Subscription:
        """Convert database model to domain entity."""
        return Subscription(
            id=str(model.id),
            company_id=str(model.company_id),
            plan=SubscriptionPlan(model.plan),
            price_per_seat=model.price_per_seat,
            seat_count=model.seat_count or 0,
            billing_cycle=BillingCycle(model.billing_cycle) if model.billing_cycle else BillingCycle.MONTHLY,
            next_billing_at=ensure_utc(model.next_billing_at),
            status=SubscriptionStatus(model.status),
            stripe_customer_id=model.stripe_customer_id,
            stripe_subscription_id=model.stripe_subscription_id,
            stripe_price_id=model.stripe_price_id,
            cancel_at_period_end=model.cancel_at_period_end or False,
            created_at=ensure_utc(model.created_at),
            updated_at=ensure_utc(model.updated_at),
        )


# =============================================================================
# Singleton Instance
# =============================================================================

_subscription_repo_instance: Optional[SubscriptionRepository] = None


def get_subscription_repository() -> SubscriptionRepository:
    """Get or create subscription repository singleton."""
    global _subscription_repo_instance
    
    if _subscription_repo_instance is None:
        _subscription_repo_instance = SubscriptionRepository()
    
    return _subscription_repo_instance
