"""
Pydantic schemas for API requests and response helpers
"""

from datetime import date, datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..customers import CustomerProfile
from ..loans import Loan
from ..schedule_store import PaymentScheduleEntry


# Loan schemas
class RegisterLoanRequest(BaseModel):
    customer_id: str
    principal: str = Field(..., description="Decimal amount as string")
    annual_rate_pct: str = Field(..., description="Annual rate in percent, e.g. \"12\" for 12%")
    term_months: int
    start_date: Optional[date] = None
    method: str = Field("reducing_balance", description="reducing_balance or flat")
    loan_id: Optional[str] = None


class CreateScheduleRequest(BaseModel):
    principal: str = Field(..., description="Decimal amount as string")
    annual_rate_pct: str
    term_months: int
    start_date: date
    method: str = "reducing_balance"


class DisburseRequest(BaseModel):
    start_date: Optional[date] = None


class StatusChangeRequest(BaseModel):
    reason: Optional[str] = None


class PaymentRequest(BaseModel):
    amount: str = Field(..., description="Decimal amount as string, at most 2 decimal places")
    idempotency_key: str
    received_at: Optional[datetime] = None


class ImportLoansRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    csv_data: str = Field(..., alias="csvData")


# Customer schemas
class UpsertCustomerRequest(BaseModel):
    name: str
    joined_on: Optional[date] = None


# Admin schemas
class SweepRequest(BaseModel):
    as_of: Optional[date] = None


def loan_response(loan: Loan) -> Dict[str, Any]:
    return {
        "loan_id": loan.id,
        "customer_id": loan.customer_id,
        "principal": str(loan.principal),
        "annual_rate_pct": str(loan.annual_rate_pct),
        "term_months": loan.term_months,
        "start_date": loan.start_date.isoformat(),
        "method": loan.method.value,
        "status": loan.status.value,
        "outstanding_balance": str(loan.outstanding_balance),
        "total_paid": str(loan.total_paid),
        "principal_paid": str(loan.principal_paid),
        "interest_paid": str(loan.interest_paid),
        "disbursed_date": loan.disbursed_date.isoformat() if loan.disbursed_date else None,
        "last_payment_date": loan.last_payment_date.isoformat() if loan.last_payment_date else None,
        "closed_date": loan.closed_date.isoformat() if loan.closed_date else None,
        "status_reason": loan.status_reason,
    }


def entry_response(entry: PaymentScheduleEntry) -> Dict[str, Any]:
    return {
        "entry_id": entry.id,
        "sequence_no": entry.sequence_no,
        "due_date": entry.due_date.isoformat(),
        "principal_due": str(entry.principal_due),
        "interest_due": str(entry.interest_due),
        "total_due": str(entry.total_due),
        "principal_paid": str(entry.principal_paid),
        "interest_paid": str(entry.interest_paid),
        "paid_amount": str(entry.paid_amount),
        "paid_date": entry.paid_date.isoformat() if entry.paid_date else None,
        "status": entry.status.value,
    }


def customer_response(profile: CustomerProfile) -> Dict[str, Any]:
    return {
        "customer_id": profile.id,
        "name": profile.name,
        "joined_on": profile.joined_on.isoformat() if profile.joined_on else None,
    }
