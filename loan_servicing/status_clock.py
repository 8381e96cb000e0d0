"""
Status Clock

Periodic sweep that reclassifies past-due installments as overdue.

The sweep runs per tenant and per loan. For each disbursed loan it takes the
loan's lock (bounded wait), re-reads the installments inside a transaction
and flips ``pending``/``partially_paid`` installments whose due date is
before ``as_of`` to ``overdue``. Paid installments are never touched, and
running the sweep twice for the same date changes nothing the second time.
"""

from dataclasses import dataclass, field
from datetime import date
from typing import Any, Dict, List, Optional

from .events import EventDispatcher, EventPayload, ServicingEvent
from .exceptions import LockTimeout
from .locks import LoanLockRegistry
from .loans import LoanManager, LoanStatus
from .logging_config import get_logger, log_action
from .schedule_store import EntryStatus, ScheduleStore
from .tenancy import TenantStorageFactory

SWEEPABLE_STATUSES = (EntryStatus.PENDING, EntryStatus.PARTIALLY_PAID)


@dataclass
class SweepResult:
    """Outcome of one overdue sweep for one tenant"""
    tenant_id: str
    as_of: date
    loans_scanned: int = 0
    entries_marked_overdue: int = 0
    loans_skipped: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'tenant_id': self.tenant_id,
            'as_of': self.as_of.isoformat(),
            'loans_scanned': self.loans_scanned,
            'entries_marked_overdue': self.entries_marked_overdue,
            'loans_skipped': list(self.loans_skipped),
        }


class StatusClock:
    """Overdue reclassification of installments"""

    def __init__(
        self,
        tenants: TenantStorageFactory,
        loan_manager: LoanManager,
        schedule_store: ScheduleStore,
        locks: LoanLockRegistry,
        dispatcher: EventDispatcher,
        lock_timeout: float = 1.0
    ):
        self.tenants = tenants
        self.loan_manager = loan_manager
        self.schedule_store = schedule_store
        self.locks = locks
        self.dispatcher = dispatcher
        self.lock_timeout = lock_timeout
        self.logger = get_logger("loan_servicing.status_clock")

    def sweep_overdue(self, tenant_id: str, as_of: Optional[date] = None) -> SweepResult:
        """
        Mark the tenant's past-due installments overdue

        Args:
            tenant_id: Tenant to sweep
            as_of: Business date; installments due strictly before it are past due

        Returns:
            SweepResult with counts and the loans skipped because they were busy
        """
        as_of = as_of or date.today()
        result = SweepResult(tenant_id=tenant_id, as_of=as_of)

        for loan in self.loan_manager.list_loans(tenant_id, status=LoanStatus.DISBURSED):
            result.loans_scanned += 1
            try:
                marked = self._sweep_loan(tenant_id, loan.id, as_of)
            except LockTimeout:
                # Busy with a payment; the next run picks it up
                result.loans_skipped.append(loan.id)
                log_action(
                    self.logger, "warning", "Skipped loan held by another operation",
                    tenant_id=tenant_id, loan_id=loan.id, action="sweep_overdue", resource="schedule"
                )
                continue
            result.entries_marked_overdue += len(marked)
            for entry in marked:
                self.dispatcher.publish(EventPayload(
                    event_type=ServicingEvent.ENTRY_OVERDUE,
                    tenant_id=tenant_id,
                    entity_type="schedule_entry",
                    entity_id=entry.id,
                    data={
                        "loan_id": entry.loan_id,
                        "sequence_no": entry.sequence_no,
                        "due_date": entry.due_date.isoformat(),
                        "amount_outstanding": str(entry.outstanding),
                        "as_of": as_of.isoformat(),
                    },
                ))

        log_action(
            self.logger, "info",
            f"Overdue sweep marked {result.entries_marked_overdue} installment(s) "
            f"across {result.loans_scanned} loan(s)",
            tenant_id=tenant_id, action="sweep_overdue", resource="schedule",
            extra=result.to_dict()
        )
        return result

    def sweep_all_tenants(self, as_of: Optional[date] = None) -> List[SweepResult]:
        """One independent sweep per tenant that owns loans"""
        as_of = as_of or date.today()
        return [self.sweep_overdue(tenant_id, as_of) for tenant_id in self.loan_manager.tenant_ids()]

    def _sweep_loan(self, tenant_id: str, loan_id: str, as_of: date):
        storage = self.tenants.for_tenant(tenant_id)
        with self.locks.hold(tenant_id, loan_id, self.lock_timeout):
            with storage.atomic():
                # Re-read under the lock: a payment may have landed since listing
                loan = self.loan_manager.get_loan(tenant_id, loan_id)
                if loan.status != LoanStatus.DISBURSED:
                    return []
                marked = [
                    entry for entry in self.schedule_store.get(tenant_id, loan_id)
                    if entry.status in SWEEPABLE_STATUSES and entry.due_date < as_of
                ]
                for entry in marked:
                    entry.status = EntryStatus.OVERDUE
                if marked:
                    self.schedule_store.save_entries(tenant_id, marked)
        return marked
