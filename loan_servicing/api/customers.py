"""
Customer endpoints: profile sync and credit score
"""

from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends

from .deps import get_engine, get_tenant_id
from .schemas import UpsertCustomerRequest, customer_response
from ..engine import LoanServicingEngine


router = APIRouter()


@router.put("/{customer_id}")
def upsert_customer(
    customer_id: str,
    request: UpsertCustomerRequest,
    tenant_id: str = Depends(get_tenant_id),
    engine: LoanServicingEngine = Depends(get_engine)
):
    """Create or refresh a borrower profile"""
    profile = engine.upsert_customer(tenant_id, customer_id, request.name, request.joined_on)
    return customer_response(profile)


@router.get("/{customer_id}/credit-score")
def get_credit_score(
    customer_id: str,
    as_of: Optional[date] = None,
    tenant_id: str = Depends(get_tenant_id),
    engine: LoanServicingEngine = Depends(get_engine)
):
    """Credit score (300-850) with the points each factor contributed"""
    score = engine.customer_credit_score(tenant_id, customer_id, as_of)
    response = score.to_dict()
    response["customer_id"] = customer_id
    return response
