"""
Schedule Store

Owns the persisted installments of every loan. A loan's schedule is written
once, atomically, at disbursement; afterwards rows are only mutated in place
(payment allocation and overdue reclassification), never added or removed.
"""

from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from .amortization import InstallmentLine, schedule_totals
from .exceptions import InternalError, LoanNotFound, ScheduleAlreadyExists
from .logging_config import get_logger, log_action
from .money import ZERO
from .storage import StorageRecord, utc_now
from .tenancy import TenantStorageFactory


class EntryStatus(Enum):
    """Repayment status of a single installment"""
    PENDING = "pending"
    PARTIALLY_PAID = "partially_paid"
    PAID = "paid"
    OVERDUE = "overdue"


OPEN_STATUSES = (EntryStatus.PENDING, EntryStatus.PARTIALLY_PAID, EntryStatus.OVERDUE)


def entry_id(loan_id: str, sequence_no: int) -> str:
    """Deterministic id of a loan's installment"""
    return f"{loan_id}:{sequence_no}"


@dataclass
class PaymentScheduleEntry(StorageRecord):
    """One installment of a loan's repayment schedule"""
    tenant_id: str
    loan_id: str
    sequence_no: int
    due_date: date
    principal_due: Decimal
    interest_due: Decimal
    total_due: Decimal
    principal_paid: Decimal = ZERO
    interest_paid: Decimal = ZERO
    paid_amount: Decimal = ZERO
    paid_date: Optional[date] = None
    status: EntryStatus = EntryStatus.PENDING

    @property
    def outstanding(self) -> Decimal:
        return self.total_due - self.paid_amount

    @property
    def principal_outstanding(self) -> Decimal:
        return self.principal_due - self.principal_paid

    @property
    def interest_outstanding(self) -> Decimal:
        return self.interest_due - self.interest_paid

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_STATUSES

    def days_past_due(self, as_of: date) -> int:
        """Days since the due date for an unpaid installment, else 0"""
        if self.status == EntryStatus.PAID or self.due_date >= as_of:
            return 0
        return (as_of - self.due_date).days

    @classmethod
    def from_line(cls, line: InstallmentLine, tenant_id: str, loan_id: str,
                  now: Optional[datetime] = None) -> 'PaymentScheduleEntry':
        now = now or utc_now()
        return cls(
            id=entry_id(loan_id, line.sequence_no),
            created_at=now,
            updated_at=now,
            tenant_id=tenant_id,
            loan_id=loan_id,
            sequence_no=line.sequence_no,
            due_date=line.due_date,
            principal_due=line.principal_due,
            interest_due=line.interest_due,
            total_due=line.total_due,
        )

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PaymentScheduleEntry':
        data = dict(data)
        data['due_date'] = date.fromisoformat(data['due_date'])
        if data.get('paid_date'):
            data['paid_date'] = date.fromisoformat(data['paid_date'])
        for field_name in ('principal_due', 'interest_due', 'total_due',
                           'principal_paid', 'interest_paid', 'paid_amount'):
            data[field_name] = Decimal(data[field_name])
        data['status'] = EntryStatus(data['status'])
        return super().from_dict(data)


class ScheduleStore:
    """
    Tenant-scoped persistence of payment schedules
    """

    def __init__(self, tenants: TenantStorageFactory):
        self.tenants = tenants
        self.logger = get_logger("loan_servicing.schedule_store")

        self.entries_table = "payment_schedule_entries"
        self.schedules_table = "payment_schedules"
        self.loans_table = "loans"

    def has_schedule(self, tenant_id: str, loan_id: str) -> bool:
        storage = self.tenants.for_tenant(tenant_id)
        return (storage.exists(self.schedules_table, loan_id)
                or bool(storage.find(self.entries_table, {'loan_id': loan_id})))

    def persist(self, tenant_id: str, loan_id: str,
                lines: List[InstallmentLine]) -> List[PaymentScheduleEntry]:
        """
        Write a loan's full schedule in one transaction

        Raises:
            LoanNotFound: loan is not in the tenant
            ScheduleAlreadyExists: the loan already has installments
        """
        storage = self.tenants.for_tenant(tenant_id)
        expected = list(range(1, len(lines) + 1))
        if not lines or [line.sequence_no for line in lines] != expected:
            raise InternalError(f"Schedule for loan {loan_id} is not contiguous from 1")

        with storage.atomic():
            if not storage.exists(self.loans_table, loan_id):
                raise LoanNotFound(f"Loan {loan_id} not found", {"loan_id": loan_id})
            if self.has_schedule(tenant_id, loan_id):
                raise ScheduleAlreadyExists(
                    f"Loan {loan_id} already has a payment schedule", {"loan_id": loan_id}
                )

            now = utc_now()
            entries = [PaymentScheduleEntry.from_line(line, tenant_id, loan_id, now) for line in lines]
            for entry in entries:
                storage.save(self.entries_table, entry.id, entry.to_dict())

            totals = schedule_totals(lines)
            storage.save(self.schedules_table, loan_id, {
                'id': loan_id,
                'loan_id': loan_id,
                'installments': totals['installments'],
                'total_principal': str(totals['total_principal']),
                'total_interest': str(totals['total_interest']),
                'total_payable': str(totals['total_payable']),
                'first_due_date': lines[0].due_date.isoformat(),
                'maturity_date': lines[-1].due_date.isoformat(),
                'created_at': now.isoformat(),
            })

        log_action(
            self.logger, "info", f"Persisted {len(entries)} installments",
            tenant_id=tenant_id, loan_id=loan_id, action="persist_schedule", resource="schedule"
        )
        return entries

    def get(self, tenant_id: str, loan_id: str) -> List[PaymentScheduleEntry]:
        """
        Installments of a loan ordered by sequence number

        A loan without a schedule yet yields an empty list.

        Raises:
            LoanNotFound: loan is not in the tenant
        """
        storage = self.tenants.for_tenant(tenant_id)
        if not storage.exists(self.loans_table, loan_id):
            raise LoanNotFound(f"Loan {loan_id} not found", {"loan_id": loan_id})
        return self._load_entries(tenant_id, loan_id)

    def get_summary(self, tenant_id: str, loan_id: str) -> Optional[Dict[str, Any]]:
        return self.tenants.for_tenant(tenant_id).load(self.schedules_table, loan_id)

    def open_entries(self, tenant_id: str, loan_id: str) -> List[PaymentScheduleEntry]:
        """Unpaid installments (pending, partially paid, overdue), oldest first"""
        return [entry for entry in self._load_entries(tenant_id, loan_id) if entry.is_open]

    def save_entries(self, tenant_id: str, entries: List[PaymentScheduleEntry]) -> None:
        """Write back mutated installments; never creates new rows"""
        storage = self.tenants.for_tenant(tenant_id)
        with storage.atomic():
            for entry in entries:
                if entry.tenant_id != tenant_id or not storage.exists(self.entries_table, entry.id):
                    raise InternalError(f"Unknown schedule entry {entry.id}")
                entry.updated_at = utc_now()
                storage.save(self.entries_table, entry.id, entry.to_dict())

    def list_for_tenant(self, tenant_id: str) -> List[PaymentScheduleEntry]:
        """All installments of the tenant, grouped by loan and ordered by sequence"""
        entries = [
            PaymentScheduleEntry.from_dict(data)
            for data in self.tenants.for_tenant(tenant_id).load_all(self.entries_table)
        ]
        entries.sort(key=lambda e: (e.loan_id, e.sequence_no))
        return entries

    def _load_entries(self, tenant_id: str, loan_id: str) -> List[PaymentScheduleEntry]:
        storage = self.tenants.for_tenant(tenant_id)
        entries = [
            PaymentScheduleEntry.from_dict(data)
            for data in storage.find(self.entries_table, {'loan_id': loan_id})
        ]
        entries.sort(key=lambda e: e.sequence_no)
        return entries
