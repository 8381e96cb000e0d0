"""
Portfolio endpoints
"""

from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends

from .deps import get_engine, get_tenant_id
from ..engine import LoanServicingEngine


router = APIRouter()


@router.get("/metrics")
def get_portfolio_metrics(
    as_of: Optional[date] = None,
    tenant_id: str = Depends(get_tenant_id),
    engine: LoanServicingEngine = Depends(get_engine)
):
    """Health, approval and risk metrics of the tenant's loan book"""
    return engine.portfolio_metrics(tenant_id, as_of).to_dict()
