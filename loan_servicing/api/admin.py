"""
Admin endpoints (overdue sweep, audit integrity)
"""

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends

from .deps import get_engine, get_tenant_id
from .schemas import SweepRequest
from ..engine import LoanServicingEngine


router = APIRouter()


@router.post("/sweep-overdue")
def sweep_overdue(
    request: Optional[SweepRequest] = None,
    tenant_id: str = Depends(get_tenant_id),
    engine: LoanServicingEngine = Depends(get_engine)
) -> Dict[str, Any]:
    """Mark the tenant's past-due installments overdue"""
    as_of = request.as_of if request else None
    return engine.sweep_overdue(tenant_id, as_of).to_dict()


@router.get("/audit/verify")
def verify_audit_trail(engine: LoanServicingEngine = Depends(get_engine)) -> Dict[str, Any]:
    """Recompute the audit hash chain"""
    result = engine.audit_trail.verify_integrity()
    return {
        "valid": result["valid"],
        "total_events": result["total_events"],
        "hash_errors": len(result["hash_errors"]),
        "chain_breaks": len(result["chain_breaks"]),
    }
