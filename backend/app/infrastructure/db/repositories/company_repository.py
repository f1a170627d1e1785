"""
Company Repository

Billing-side access to the company aggregate: read it, and write the plan
tier and seat ceiling when a subscription changes plan.
"""

import logging
from typing import Optional

from app.infrastructure.db.database import get_session_context
from app.infrastructure.db.models.base import parse_uuid
from app.infrastructure.db.models.company import CompanyModel
from app.domain.billing import CompanyBilling, SubscriptionPlan


logger = logging.getLogger(__name__)


class CompanyRepository:
    """Repository for the billing slice of companies."""
    
    async def get_by_id(self, company_id: str) -> Optional[CompanyBilling]:
        """Get company by ID, or None when unknown."""
        company_uuid = parse_uuid(company_id)
        if company_uuid is None:
            return None
        
        async with get_session_context() as session:
            model = await session.get(CompanyModel, company_uuid)
            return self._to_domain(model) if model else None
    
    async def create(self, company: CompanyBilling) -> CompanyBilling:
        """Insert a company row (used by seeding and tests)."""
        async with get_session_context() as session:
            model = CompanyModel(
                id=parse_uuid(company.id),
                name=company.name,
                billing_email=company.billing_email,
                domain=company.domain,
                subscription_plan=company.subscription_plan.value,
                max_employees=company.max_employees,
            )
            session.add(model)
            await session.flush()
            await session.refresh(model)
            return self._to_domain(model)
    
    async def update_plan(
        self,
        company_id: str,
        plan: SubscriptionPlan,
        max_employees: int,
    ) -> Optional[CompanyBilling]:
        """
        Set the company's plan tier and seat ceiling.
        
        Args:
            company_id: Internal company ID
            plan: New plan tier
            max_employees: New seat ceiling (-1 for unlimited)
            
        Returns:
            Updated company, or None when the company does not exist
        """
        company_uuid = parse_uuid(company_id)
        
        async with get_session_context() as session:
            model = await session.get(CompanyModel, company_uuid) if company_uuid else None
            if not model:
                logger.warning(f"Company {company_id} not found, plan change to {plan.value} not applied")
                return None
            
            model.subscription_plan = plan.value
            model.max_employees = max_employees
            await session.flush()
            await session.refresh(model)
            
            logger.info(f"Company {company_id} moved to {plan.value} (max employees {max_employees})")
            return self._to_domain(model)
    
    def _to_domain(self, model: CompanyModel) -> CompanyBilling:
        """Convert database model to domain entity."""
        return CompanyBilling(
            id=str(model.id),
            name=model.name,
            billing_email=model.billing_email,
            domain=model.domain,
            subscription_plan=SubscriptionPlan(model.subscription_plan),
            max_employees=model.max_employees,
        )


_company_repo_instance: Optional[CompanyRepository] = None


def get_company_repository() -> CompanyRepository:
    """Get or create company repository singleton."""
    global _company_repo_instance
    
    if _company_repo_instance is None:
        _company_repo_instance = CompanyRepository()
    
    return _company_repo_instance
