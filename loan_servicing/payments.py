"""
Payment Processor

Applies an incoming payment to a loan's schedule as a waterfall: the oldest
unpaid installment is settled first, then the next, until the money runs
out. Anything left after the last installment is returned as remainder.

Each payment runs under the loan's lock and inside one storage transaction
together with its PaymentEvent record, so a payment is applied completely or
not at all, and a retried idempotency key returns the recorded result.
"""

from dataclasses import dataclass, field
from datetime import date, datetime, time, timezone
from decimal import Decimal, ROUND_DOWN
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Union

from .events import EventDispatcher, EventPayload, ServicingEvent
from .exceptions import InternalError, InvalidInputError, LoanNotActive
from .locks import CancellationToken, LoanLockRegistry
from .loans import LoanManager, LoanStatus
from .logging_config import get_logger, log_action
from .money import CENT, ZERO, parse_money
from .schedule_store import EntryStatus, PaymentScheduleEntry, ScheduleStore
from .storage import StorageRecord, utc_now
from .tenancy import TenantStorageFactory

MAX_IDEMPOTENCY_KEY_LENGTH = 128


class AllocationPolicy(Enum):
    """How money applied to one installment is split between interest and principal"""
    INTEREST_FIRST = "interest_first"
    PROPORTIONAL = "proportional"


def allocate(entry: PaymentScheduleEntry, amount: Decimal,
             policy: AllocationPolicy = AllocationPolicy.INTEREST_FIRST) -> Tuple[Decimal, Decimal]:
    """
    Split ``amount`` (at most the entry's outstanding) into (interest, principal).

    Neither part ever exceeds what is still owed on that component.
    """
    interest_owed = entry.interest_outstanding
    principal_owed = entry.principal_outstanding

    if policy == AllocationPolicy.INTEREST_FIRST:
        interest = min(amount, interest_owed)
        principal = min(amount - interest, principal_owed)
        return interest, principal

    owed = interest_owed + principal_owed
    if owed <= 0:
        return ZERO, ZERO
    if amount >= owed:
        return interest_owed, principal_owed
    # Principal is rounded down so it completes only together with the interest
    principal = (amount * principal_owed / owed).quantize(CENT, rounding=ROUND_DOWN)
    interest = amount - principal
    return interest, principal


@dataclass(frozen=True)
class AppliedEntry:
    """What one payment did to one installment"""
    entry_id: str
    sequence_no: int
    interest_applied: Decimal
    principal_applied: Decimal
    amount_applied: Decimal
    status: EntryStatus

    def to_dict(self) -> Dict[str, Any]:
        return {
            'entry_id': self.entry_id,
            'sequence_no': self.sequence_no,
            'interest_applied': str(self.interest_applied),
            'principal_applied': str(self.principal_applied),
            'amount_applied': str(self.amount_applied),
            'status': self.status.value,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AppliedEntry':
        return cls(
            entry_id=data['entry_id'],
            sequence_no=data['sequence_no'],
            interest_applied=Decimal(data['interest_applied']),
            principal_applied=Decimal(data['principal_applied']),
            amount_applied=Decimal(data['amount_applied']),
            status=EntryStatus(data['status']),
        )


@dataclass(frozen=True)
class PaymentResult:
    """Breakdown of an applied payment"""
    loan_id: str
    idempotency_key: str
    amount: Decimal
    received_at: datetime
    applied_entries: Tuple[AppliedEntry, ...]
    interest_applied: Decimal
    principal_applied: Decimal
    total_applied: Decimal
    remainder: Decimal
    outstanding_balance: Decimal
    loan_status: LoanStatus
    replayed: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            'loan_id': self.loan_id,
            'idempotency_key': self.idempotency_key,
            'amount': str(self.amount),
            'received_at': self.received_at.isoformat(),
            'applied_entries': [entry.to_dict() for entry in self.applied_entries],
            'interest_applied': str(self.interest_applied),
            'principal_applied': str(self.principal_applied),
            'total_applied': str(self.total_applied),
            'remainder': str(self.remainder),
            'outstanding_balance': str(self.outstanding_balance),
            'loan_status': self.loan_status.value,
            'replayed': self.replayed,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], replayed: bool = False) -> 'PaymentResult':
        return cls(
            loan_id=data['loan_id'],
            idempotency_key=data['idempotency_key'],
            amount=Decimal(data['amount']),
            received_at=datetime.fromisoformat(data['received_at']),
            applied_entries=tuple(AppliedEntry.from_dict(e) for e in data['applied_entries']),
            interest_applied=Decimal(data['interest_applied']),
            principal_applied=Decimal(data['principal_applied']),
            total_applied=Decimal(data['total_applied']),
            remainder=Decimal(data['remainder']),
            outstanding_balance=Decimal(data['outstanding_balance']),
            loan_status=LoanStatus(data['loan_status']),
            replayed=replayed,
        )


@dataclass
class PaymentEvent(StorageRecord):
    """Immutable record of a received payment, one per (loan, idempotency key)"""
    tenant_id: str
    loan_id: str
    amount: Decimal
    received_at: datetime
    idempotency_key: str
    result: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PaymentEvent':
        data = dict(data)
        data['amount'] = Decimal(data['amount'])
        data['received_at'] = datetime.fromisoformat(data['received_at'])
        return super().from_dict(data)


def payment_event_id(loan_id: str, idempotency_key: str) -> str:
    """Record id of a (loan, idempotency key) pair; the length prefix keeps ids unambiguous"""
    return f"{len(loan_id)}:{loan_id}:{idempotency_key}"


def _as_timestamp(received_at: Union[date, datetime, None]) -> datetime:
    if received_at is None:
        return utc_now()
    if isinstance(received_at, datetime):
        if received_at.tzinfo is None:
            return received_at.replace(tzinfo=timezone.utc)
        return received_at
    if isinstance(received_at, date):
        return datetime.combine(received_at, time.min, tzinfo=timezone.utc)
    raise InvalidInputError(f"received_at must be a date or datetime, got {received_at!r}",
                            {"field": "received_at"})


class PaymentProcessor:
    """
    Waterfall payment application with idempotency and per-loan serialisation
    """

    def __init__(
        self,
        tenants: TenantStorageFactory,
        loan_manager: LoanManager,
        schedule_store: ScheduleStore,
        locks: LoanLockRegistry,
        dispatcher: EventDispatcher,
        allocation_policy: AllocationPolicy = AllocationPolicy.INTEREST_FIRST,
        closing_epsilon: Decimal = Decimal("0.01")
    ):
        self.tenants = tenants
        self.loan_manager = loan_manager
        self.schedule_store = schedule_store
        self.locks = locks
        self.dispatcher = dispatcher
        self.allocation_policy = allocation_policy
        self.closing_epsilon = closing_epsilon
        self.logger = get_logger("loan_servicing.payments")

        self.payments_table = "payment_events"

    def apply_payment(
        self,
        tenant_id: str,
        loan_id: str,
        amount: Any,
        idempotency_key: str,
        received_at: Union[date, datetime, None] = None,
        cancel_token: Optional[CancellationToken] = None,
        lock_timeout: Optional[float] = None
    ) -> PaymentResult:
        """
        Apply a payment to a loan

        Args:
            tenant_id: Caller's tenant
            loan_id: Loan being repaid
            amount: Positive amount with at most 2 decimal places
            idempotency_key: Caller token; a retry with the same key has no further effect
            received_at: When the money was received (defaults to now)
            cancel_token: Optional token; cancelling rolls the payment back
            lock_timeout: Override of the per-loan lock wait in seconds

        Returns:
            PaymentResult with the per-installment breakdown and any remainder

        Raises:
            InvalidAmount: amount not positive or not a 2dp number
            InvalidInputError: blank idempotency key
            LoanNotFound: loan not in the tenant
            LoanNotActive: loan is not disbursed
            LockTimeout, OperationCancelled: nothing was applied; safe to retry
        """
        amount = parse_money(amount)
        idempotency_key = self._check_key(idempotency_key)
        received_at = _as_timestamp(received_at)
        storage = self.tenants.for_tenant(tenant_id)
        event_id = payment_event_id(loan_id, idempotency_key)

        try:
            with self.locks.hold(tenant_id, loan_id, lock_timeout):
                with storage.atomic():
                    loan = self.loan_manager.get_loan(tenant_id, loan_id)

                    recorded = storage.load(self.payments_table, event_id)
                    if recorded:
                        if recorded.get('loan_id') != loan_id:
                            raise InternalError(
                                f"Payment record {event_id} belongs to loan {recorded.get('loan_id')}",
                                {"loan_id": loan_id, "idempotency_key": idempotency_key}
                            )
                        return self._replay(tenant_id, PaymentEvent.from_dict(recorded), amount)

                    if not loan.is_active:
                        raise LoanNotActive(
                            f"Loan {loan_id} is {loan.status.value}, payments require a disbursed loan",
                            {"loan_id": loan_id, "status": loan.status.value}
                        )

                    applied, mutated, remaining = self._waterfall(
                        tenant_id, loan_id, amount, received_at.date(), cancel_token
                    )
                    self.schedule_store.save_entries(tenant_id, mutated)

                    interest_applied = sum((a.interest_applied for a in applied), ZERO)
                    principal_applied = sum((a.principal_applied for a in applied), ZERO)
                    total_applied = interest_applied + principal_applied

                    loan.outstanding_balance = max(ZERO, loan.outstanding_balance - principal_applied)
                    loan.total_paid += total_applied
                    loan.interest_paid += interest_applied
                    loan.principal_paid += principal_applied
                    loan.last_payment_date = received_at.date()
                    # Closing needs every installment settled, not just the principal
                    closed = (loan.outstanding_balance < self.closing_epsilon
                              and not self.schedule_store.open_entries(tenant_id, loan_id))
                    if closed:
                        loan.outstanding_balance = ZERO
                        loan.status = LoanStatus.CLOSED
                        loan.closed_date = received_at.date()
                    self.loan_manager.save_loan(loan)

                    result = PaymentResult(
                        loan_id=loan_id,
                        idempotency_key=idempotency_key,
                        amount=amount,
                        received_at=received_at,
                        applied_entries=tuple(applied),
                        interest_applied=interest_applied,
                        principal_applied=principal_applied,
                        total_applied=total_applied,
                        remainder=remaining,
                        outstanding_balance=loan.outstanding_balance,
                        loan_status=loan.status,
                    )
                    now = utc_now()
                    event = PaymentEvent(
                        id=event_id,
                        created_at=now,
                        updated_at=now,
                        tenant_id=tenant_id,
                        loan_id=loan_id,
                        amount=amount,
                        received_at=received_at,
                        idempotency_key=idempotency_key,
                        result=result.to_dict(),
                    )
                    storage.save(self.payments_table, event.id, event.to_dict())

                    if cancel_token:
                        cancel_token.raise_if_cancelled()
        except InternalError as e:
            log_action(
                self.logger, "error", f"Payment not applied: {e}",
                tenant_id=tenant_id, loan_id=loan_id, action="apply_payment",
                resource="payment", correlation_id=idempotency_key,
                extra={"error": e.code, "amount": str(amount)}
            )
            raise

        log_action(
            self.logger, "info",
            f"Applied {total_applied} of {amount} across {len(applied)} installment(s)",
            tenant_id=tenant_id, loan_id=loan_id, action="apply_payment", resource="payment",
            correlation_id=idempotency_key,
            extra={"remainder": str(remaining), "outstanding_balance": str(loan.outstanding_balance)}
        )
        self._publish(tenant_id, loan_id, result, closed)
        return result

    def get_payment(self, tenant_id: str, loan_id: str, idempotency_key: str) -> Optional[PaymentEvent]:
        data = self.tenants.for_tenant(tenant_id).load(
            self.payments_table, payment_event_id(loan_id, idempotency_key)
        )
        return PaymentEvent.from_dict(data) if data else None

    def list_payments(self, tenant_id: str, loan_id: str) -> List[PaymentEvent]:
        """Payments recorded for a loan, in the order they were received"""
        self.loan_manager.get_loan(tenant_id, loan_id)
        events = [
            PaymentEvent.from_dict(data)
            for data in self.tenants.for_tenant(tenant_id).find(self.payments_table, {'loan_id': loan_id})
        ]
        events.sort(key=lambda e: (e.received_at, e.created_at))
        return events

    def _waterfall(self, tenant_id: str, loan_id: str, amount: Decimal, paid_on: date,
                   cancel_token: Optional[CancellationToken]):
        applied: List[AppliedEntry] = []
        mutated: List[PaymentScheduleEntry] = []
        remaining = amount

        for entry in self.schedule_store.open_entries(tenant_id, loan_id):
            if cancel_token:
                cancel_token.raise_if_cancelled()

            owed = entry.outstanding
            if owed <= 0:
                # Zero-amount installment, nothing to collect
                entry.status = EntryStatus.PAID
                entry.paid_date = entry.paid_date or paid_on
                mutated.append(entry)
                continue
            if remaining <= 0:
                break

            portion = min(remaining, owed)
            interest, principal = allocate(entry, portion, self.allocation_policy)
            entry.interest_paid += interest
            entry.principal_paid += principal
            entry.paid_amount += portion
            if entry.paid_amount == entry.total_due:
                entry.status = EntryStatus.PAID
                entry.paid_date = paid_on
            else:
                entry.status = EntryStatus.PARTIALLY_PAID
            remaining -= portion

            mutated.append(entry)
            applied.append(AppliedEntry(
                entry_id=entry.id,
                sequence_no=entry.sequence_no,
                interest_applied=interest,
                principal_applied=principal,
                amount_applied=portion,
                status=entry.status,
            ))

        return applied, mutated, remaining

    def _replay(self, tenant_id: str, event: PaymentEvent, amount: Decimal) -> PaymentResult:
        if event.amount != amount:
            log_action(
                self.logger, "warning",
                f"Idempotency key reused with a different amount ({amount} vs recorded {event.amount})",
                tenant_id=tenant_id, loan_id=event.loan_id, action="apply_payment",
                resource="payment", correlation_id=event.idempotency_key
            )
        else:
            log_action(
                self.logger, "info", "Returning recorded result for repeated idempotency key",
                tenant_id=tenant_id, loan_id=event.loan_id, action="apply_payment",
                resource="payment", correlation_id=event.idempotency_key
            )
        return PaymentResult.from_dict(event.result, replayed=True)

    def _check_key(self, idempotency_key: Any) -> str:
        if not isinstance(idempotency_key, str) or not idempotency_key.strip():
            raise InvalidInputError("idempotency_key is required", {"field": "idempotency_key"})
        idempotency_key = idempotency_key.strip()
        if len(idempotency_key) > MAX_IDEMPOTENCY_KEY_LENGTH:
            raise InvalidInputError(
                f"idempotency_key must be at most {MAX_IDEMPOTENCY_KEY_LENGTH} characters",
                {"field": "idempotency_key"}
            )
        return idempotency_key

    def _publish(self, tenant_id: str, loan_id: str, result: PaymentResult, closed: bool) -> None:
        self.dispatcher.publish(EventPayload(
            event_type=ServicingEvent.PAYMENT_APPLIED,
            tenant_id=tenant_id,
            entity_type="loan",
            entity_id=loan_id,
            data=result.to_dict(),
        ))
        if closed:
            self.dispatcher.publish(EventPayload(
                event_type=ServicingEvent.LOAN_CLOSED,
                tenant_id=tenant_id,
                entity_type="loan",
                entity_id=loan_id,
                data={"closed_by": result.idempotency_key},
            ))
