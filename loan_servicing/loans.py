"""
Loan Lifecycle Module

Manages loans from registration through disbursement to closure:

    pending -> approved -> disbursed -> closed
                                     -> defaulted
    pending/approved -> rejected

Disbursement is the moment the repayment schedule is generated and stored;
from then on the outstanding balance is owned by the payment processor.
Closed, defaulted and rejected loans are immutable.
"""

import uuid
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from .amortization import AmortizationMethod, generate_schedule, validate_terms
from .events import EventDispatcher, EventPayload, ServicingEvent
from .exceptions import (
    DuplicateLoan, InvalidInputError, InvalidLoanTransition, LoanNotFound,
    ScheduleAlreadyExists
)
from .locks import LoanLockRegistry
from .logging_config import get_logger, log_action
from .money import ZERO
from .schedule_store import PaymentScheduleEntry, ScheduleStore
from .storage import StorageRecord, utc_now
from .tenancy import TenantStorageFactory


class LoanStatus(Enum):
    """Lifecycle status of a loan"""
    PENDING = "pending"
    APPROVED = "approved"
    DISBURSED = "disbursed"
    CLOSED = "closed"
    DEFAULTED = "defaulted"
    REJECTED = "rejected"


TERMINAL_STATUSES = (LoanStatus.CLOSED, LoanStatus.DEFAULTED, LoanStatus.REJECTED)

ALLOWED_TRANSITIONS = {
    LoanStatus.PENDING: (LoanStatus.APPROVED, LoanStatus.REJECTED, LoanStatus.DISBURSED),
    LoanStatus.APPROVED: (LoanStatus.DISBURSED, LoanStatus.REJECTED),
    LoanStatus.DISBURSED: (LoanStatus.CLOSED, LoanStatus.DEFAULTED),
    LoanStatus.CLOSED: (),
    LoanStatus.DEFAULTED: (),
    LoanStatus.REJECTED: (),
}


@dataclass
class Loan(StorageRecord):
    """Loan with its signed terms and current servicing totals"""
    tenant_id: str
    customer_id: str
    principal: Decimal
    annual_rate_pct: Decimal
    term_months: int
    start_date: date
    method: AmortizationMethod = AmortizationMethod.REDUCING_BALANCE
    status: LoanStatus = LoanStatus.PENDING

    outstanding_balance: Decimal = ZERO    # Remaining principal, set at disbursement
    total_paid: Decimal = ZERO
    principal_paid: Decimal = ZERO
    interest_paid: Decimal = ZERO

    disbursed_date: Optional[date] = None
    last_payment_date: Optional[date] = None
    closed_date: Optional[date] = None
    status_reason: Optional[str] = None

    @property
    def is_active(self) -> bool:
        """Only disbursed loans accept payments"""
        return self.status == LoanStatus.DISBURSED

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def can_transition_to(self, status: LoanStatus) -> bool:
        return status in ALLOWED_TRANSITIONS[self.status]

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Loan':
        data = dict(data)
        for field_name in ('principal', 'annual_rate_pct', 'outstanding_balance',
                           'total_paid', 'principal_paid', 'interest_paid'):
            data[field_name] = Decimal(data[field_name])
        for field_name in ('start_date', 'disbursed_date', 'last_payment_date', 'closed_date'):
            if data.get(field_name):
                data[field_name] = date.fromisoformat(data[field_name])
        data['method'] = AmortizationMethod(data['method'])
        data['status'] = LoanStatus(data['status'])
        return super().from_dict(data)


class LoanManager:
    """
    Manages loan lifecycle from registration through closure
    """

    def __init__(
        self,
        tenants: TenantStorageFactory,
        schedule_store: ScheduleStore,
        locks: LoanLockRegistry,
        dispatcher: EventDispatcher
    ):
        self.tenants = tenants
        self.schedule_store = schedule_store
        self.locks = locks
        self.dispatcher = dispatcher
        self.logger = get_logger("loan_servicing.loans")

        self.loans_table = "loans"

    def register_loan(
        self,
        tenant_id: str,
        customer_id: str,
        principal: Any,
        annual_rate_pct: Any,
        term_months: int,
        start_date: Optional[date] = None,
        method: Any = AmortizationMethod.REDUCING_BALANCE,
        loan_id: Optional[str] = None
    ) -> Loan:
        """
        Register a signed loan request in pending status

        Args:
            tenant_id: Owning tenant
            customer_id: Borrower
            principal: Amount to lend
            annual_rate_pct: Nominal annual rate in percent
            term_months: Number of monthly installments
            start_date: Expected disbursement date (defaults to today)
            method: Amortization method
            loan_id: Caller-chosen id, unique within the tenant (generated if omitted)

        Returns:
            Created Loan
        """
        if not customer_id or not str(customer_id).strip():
            raise InvalidInputError("customer_id is required", {"field": "customer_id"})
        principal, annual_rate_pct, term_months, start_date, method = validate_terms(
            principal, annual_rate_pct, term_months, start_date or date.today(), method
        )

        storage = self.tenants.for_tenant(tenant_id)
        loan_id = loan_id or str(uuid.uuid4())
        now = utc_now()
        loan = Loan(
            id=loan_id,
            created_at=now,
            updated_at=now,
            tenant_id=tenant_id,
            customer_id=str(customer_id).strip(),
            principal=principal,
            annual_rate_pct=annual_rate_pct,
            term_months=term_months,
            start_date=start_date,
            method=method,
        )

        with self.locks.hold(tenant_id, loan_id):
            with storage.atomic():
                if storage.exists(self.loans_table, loan_id):
                    raise DuplicateLoan(f"Loan {loan_id} already exists", {"loan_id": loan_id})
                storage.save(self.loans_table, loan.id, loan.to_dict())

        log_action(
            self.logger, "info", f"Registered loan of {principal} for customer {loan.customer_id}",
            tenant_id=tenant_id, loan_id=loan.id, action="register_loan", resource="loan"
        )
        self.dispatcher.publish(self._event(ServicingEvent.LOAN_REGISTERED, loan, {
            "customer_id": loan.customer_id,
            "principal": str(loan.principal),
            "annual_rate_pct": str(loan.annual_rate_pct),
            "term_months": loan.term_months,
        }))
        return loan

    def get_loan(self, tenant_id: str, loan_id: str) -> Loan:
        """
        Load a loan of the tenant

        Raises:
            LoanNotFound: no such loan in the tenant
        """
        data = self.tenants.for_tenant(tenant_id).load(self.loans_table, loan_id)
        if not data:
            raise LoanNotFound(f"Loan {loan_id} not found", {"loan_id": loan_id})
        return Loan.from_dict(data)

    def list_loans(self, tenant_id: str, customer_id: Optional[str] = None,
                   status: Optional[LoanStatus] = None) -> List[Loan]:
        filters = {}
        if customer_id is not None:
            filters['customer_id'] = customer_id
        if status is not None:
            filters['status'] = status.value
        records = self.tenants.for_tenant(tenant_id).find(self.loans_table, filters)
        loans = [Loan.from_dict(data) for data in records]
        loans.sort(key=lambda loan: (loan.created_at, loan.id))
        return loans

    def save_loan(self, loan: Loan) -> None:
        """Persist a loan into its own tenant"""
        loan.updated_at = utc_now()
        self.tenants.for_tenant(loan.tenant_id).save(self.loans_table, loan.id, loan.to_dict())

    def approve_loan(self, tenant_id: str, loan_id: str) -> Loan:
        return self._transition(tenant_id, loan_id, LoanStatus.APPROVED, ServicingEvent.LOAN_APPROVED)

    def reject_loan(self, tenant_id: str, loan_id: str, reason: Optional[str] = None) -> Loan:
        return self._transition(tenant_id, loan_id, LoanStatus.REJECTED, ServicingEvent.LOAN_REJECTED, reason)

    def mark_defaulted(self, tenant_id: str, loan_id: str, reason: Optional[str] = None) -> Loan:
        """Manually write a disbursed loan off as defaulted"""
        return self._transition(tenant_id, loan_id, LoanStatus.DEFAULTED, ServicingEvent.LOAN_DEFAULTED, reason)

    def create_schedule(
        self,
        tenant_id: str,
        loan_id: str,
        principal: Any,
        annual_rate_pct: Any,
        term_months: int,
        start_date: date,
        method: Any = AmortizationMethod.REDUCING_BALANCE,
        lock_timeout: Optional[float] = None
    ) -> Tuple[Loan, List[PaymentScheduleEntry]]:
        """
        Disburse a loan: generate its schedule from the signed terms and store it.

        The terms given here become the loan's terms. Schedule rows, the new
        loan status and the opening outstanding balance are written in one
        transaction.

        Raises:
            InvalidScheduleParameters: terms out of range
            LoanNotFound: loan is not in the tenant
            ScheduleAlreadyExists: loan already has a schedule
            InvalidLoanTransition: loan is rejected, closed or defaulted
        """
        lines = generate_schedule(principal, annual_rate_pct, term_months, start_date, method)
        principal, annual_rate_pct, term_months, start_date, method = validate_terms(
            principal, annual_rate_pct, term_months, start_date, method
        )
        storage = self.tenants.for_tenant(tenant_id)

        with self.locks.hold(tenant_id, loan_id, lock_timeout):
            with storage.atomic():
                loan = self.get_loan(tenant_id, loan_id)
                if self.schedule_store.has_schedule(tenant_id, loan_id):
                    raise ScheduleAlreadyExists(
                        f"Loan {loan_id} already has a payment schedule", {"loan_id": loan_id}
                    )
                if loan.status != LoanStatus.DISBURSED and not loan.can_transition_to(LoanStatus.DISBURSED):
                    raise InvalidLoanTransition(
                        f"Cannot disburse loan {loan_id} in status {loan.status.value}",
                        {"loan_id": loan_id, "status": loan.status.value}
                    )

                entries = self.schedule_store.persist(tenant_id, loan_id, lines)

                loan.principal = principal
                loan.annual_rate_pct = annual_rate_pct
                loan.term_months = term_months
                loan.start_date = start_date
                loan.method = method
                loan.status = LoanStatus.DISBURSED
                loan.outstanding_balance = principal
                loan.disbursed_date = start_date
                self.save_loan(loan)

        log_action(
            self.logger, "info", f"Disbursed loan with {len(entries)} installments",
            tenant_id=tenant_id, loan_id=loan_id, action="create_schedule", resource="loan",
            extra={"principal": str(principal), "method": method.value}
        )
        self.dispatcher.publish(self._event(ServicingEvent.SCHEDULE_CREATED, loan, {
            "installments": len(entries),
            "principal": str(principal),
            "installment_amount": str(entries[0].total_due),
            "maturity_date": entries[-1].due_date.isoformat(),
        }))
        return loan, entries

    def disburse_loan(self, tenant_id: str, loan_id: str,
                      start_date: Optional[date] = None) -> Tuple[Loan, List[PaymentScheduleEntry]]:
        """Disburse using the terms stored at registration"""
        loan = self.get_loan(tenant_id, loan_id)
        return self.create_schedule(
            tenant_id, loan_id, loan.principal, loan.annual_rate_pct, loan.term_months,
            start_date or loan.start_date, loan.method
        )

    def tenant_ids(self) -> List[str]:
        """Tenants owning at least one loan"""
        return self.tenants.tenant_ids(self.loans_table)

    def _transition(self, tenant_id: str, loan_id: str, target: LoanStatus,
                    event_type: ServicingEvent, reason: Optional[str] = None) -> Loan:
        storage = self.tenants.for_tenant(tenant_id)
        with self.locks.hold(tenant_id, loan_id):
            with storage.atomic():
                loan = self.get_loan(tenant_id, loan_id)
                if not loan.can_transition_to(target) or target == LoanStatus.DISBURSED:
                    raise InvalidLoanTransition(
                        f"Cannot move loan {loan_id} from {loan.status.value} to {target.value}",
                        {"loan_id": loan_id, "status": loan.status.value, "target": target.value}
                    )
                previous = loan.status
                loan.status = target
                loan.status_reason = reason
                if target == LoanStatus.DEFAULTED:
                    loan.closed_date = date.today()
                self.save_loan(loan)

        log_action(
            self.logger, "info", f"Loan moved from {previous.value} to {target.value}",
            tenant_id=tenant_id, loan_id=loan_id, action=f"loan_{target.value}", resource="loan",
            extra={"reason": reason} if reason else None
        )
        self.dispatcher.publish(self._event(event_type, loan, {
            "previous_status": previous.value,
            "reason": reason,
        }))
        return loan

    def _event(self, event_type: ServicingEvent, loan: Loan, data: Dict[str, Any]) -> EventPayload:
        return EventPayload(
            event_type=event_type,
            tenant_id=loan.tenant_id,
            entity_type="loan",
            entity_id=loan.id,
            data=data,
        )
