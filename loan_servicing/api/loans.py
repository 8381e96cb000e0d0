"""
Loan endpoints: lifecycle, schedules, payments and CSV import
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query, status

from .deps import get_engine, get_tenant_id
from .schemas import (
    CreateScheduleRequest, DisburseRequest, ImportLoansRequest, PaymentRequest,
    RegisterLoanRequest, StatusChangeRequest, entry_response, loan_response
)
from ..engine import LoanServicingEngine
from ..exceptions import InvalidInputError
from ..loans import LoanStatus


router = APIRouter()


@router.post("", status_code=status.HTTP_201_CREATED)
def register_loan(
    request: RegisterLoanRequest,
    tenant_id: str = Depends(get_tenant_id),
    engine: LoanServicingEngine = Depends(get_engine)
):
    """Register a signed loan in pending status"""
    loan = engine.register_loan(
        tenant_id=tenant_id,
        customer_id=request.customer_id,
        principal=request.principal,
        annual_rate_pct=request.annual_rate_pct,
        term_months=request.term_months,
        start_date=request.start_date,
        method=request.method,
        loan_id=request.loan_id
    )
    return loan_response(loan)


@router.get("")
def list_loans(
    customer_id: Optional[str] = None,
    loan_status: Optional[str] = Query(None, alias="status"),
    tenant_id: str = Depends(get_tenant_id),
    engine: LoanServicingEngine = Depends(get_engine)
):
    """List the tenant's loans, optionally by customer and status"""
    status_filter = None
    if loan_status:
        try:
            status_filter = LoanStatus(loan_status.lower())
        except ValueError:
            raise InvalidInputError(f"Unknown loan status: {loan_status}", {"field": "status"})
    loans = engine.list_loans(tenant_id, customer_id=customer_id, status=status_filter)
    return {"loans": [loan_response(loan) for loan in loans], "count": len(loans)}


@router.post("/import")
def import_loans(
    request: ImportLoansRequest,
    tenant_id: str = Depends(get_tenant_id),
    engine: LoanServicingEngine = Depends(get_engine)
):
    """Bulk-register loans from CSV; failing rows are reported individually"""
    return engine.import_loans_csv(tenant_id, request.csv_data).to_dict()


@router.get("/{loan_id}")
def get_loan(
    loan_id: str,
    tenant_id: str = Depends(get_tenant_id),
    engine: LoanServicingEngine = Depends(get_engine)
):
    return loan_response(engine.get_loan(tenant_id, loan_id))


@router.post("/{loan_id}/approve")
def approve_loan(
    loan_id: str,
    tenant_id: str = Depends(get_tenant_id),
    engine: LoanServicingEngine = Depends(get_engine)
):
    return loan_response(engine.approve_loan(tenant_id, loan_id))


@router.post("/{loan_id}/reject")
def reject_loan(
    loan_id: str,
    request: Optional[StatusChangeRequest] = None,
    tenant_id: str = Depends(get_tenant_id),
    engine: LoanServicingEngine = Depends(get_engine)
):
    reason = request.reason if request else None
    return loan_response(engine.reject_loan(tenant_id, loan_id, reason))


@router.post("/{loan_id}/default")
def mark_defaulted(
    loan_id: str,
    request: Optional[StatusChangeRequest] = None,
    tenant_id: str = Depends(get_tenant_id),
    engine: LoanServicingEngine = Depends(get_engine)
):
    """Write a disbursed loan off as defaulted"""
    reason = request.reason if request else None
    return loan_response(engine.mark_defaulted(tenant_id, loan_id, reason))


@router.post("/{loan_id}/schedule", status_code=status.HTTP_201_CREATED)
def create_schedule(
    loan_id: str,
    request: CreateScheduleRequest,
    tenant_id: str = Depends(get_tenant_id),
    engine: LoanServicingEngine = Depends(get_engine)
):
    """Disburse the loan on the given terms and store its repayment schedule"""
    loan, entries = engine.create_schedule(
        tenant_id=tenant_id,
        loan_id=loan_id,
        principal=request.principal,
        annual_rate_pct=request.annual_rate_pct,
        term_months=request.term_months,
        start_date=request.start_date,
        method=request.method
    )
    return {
        "loan": loan_response(loan),
        "entries": [entry_response(entry) for entry in entries],
    }


@router.post("/{loan_id}/disburse", status_code=status.HTTP_201_CREATED)
def disburse_loan(
    loan_id: str,
    request: Optional[DisburseRequest] = None,
    tenant_id: str = Depends(get_tenant_id),
    engine: LoanServicingEngine = Depends(get_engine)
):
    """Disburse the loan on the terms it was registered with"""
    start_date = request.start_date if request else None
    loan, entries = engine.disburse_loan(tenant_id, loan_id, start_date)
    return {
        "loan": loan_response(loan),
        "entries": [entry_response(entry) for entry in entries],
    }


@router.get("/{loan_id}/schedule")
def get_schedule(
    loan_id: str,
    tenant_id: str = Depends(get_tenant_id),
    engine: LoanServicingEngine = Depends(get_engine)
):
    entries = engine.get_schedule(tenant_id, loan_id)
    return {"loan_id": loan_id, "entries": [entry_response(entry) for entry in entries]}


@router.post("/{loan_id}/payments")
def apply_payment(
    loan_id: str,
    request: PaymentRequest,
    tenant_id: str = Depends(get_tenant_id),
    engine: LoanServicingEngine = Depends(get_engine)
):
    """Apply a payment; repeating the idempotency key returns the recorded result"""
    result = engine.apply_payment(
        tenant_id=tenant_id,
        loan_id=loan_id,
        amount=request.amount,
        idempotency_key=request.idempotency_key,
        received_at=request.received_at
    )
    return result.to_dict()


@router.get("/{loan_id}/payments")
def list_payments(
    loan_id: str,
    tenant_id: str = Depends(get_tenant_id),
    engine: LoanServicingEngine = Depends(get_engine)
):
    payments = engine.list_payments(tenant_id, loan_id)
    return {"loan_id": loan_id, "payments": [payment.result for payment in payments]}
