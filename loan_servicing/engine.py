"""
Loan Servicing Engine

Composition root wiring storage, tenancy, locking, events and the servicing
components together, and the single entry point used by the API, the CSV
importer and scheduled jobs. Every operation takes the caller's tenant id
explicitly.
"""

from datetime import date, datetime
from decimal import Decimal
from typing import Any, List, Optional, Tuple, Union

from .amortization import AmortizationMethod
from .audit import AuditTrail
from .config import ServicingConfig, get_config
from .customers import CustomerDirectory, CustomerProfile
from .events import EventDispatcher
from .importer import ImportResult, LoanImporter
from .locks import CancellationToken, LoanLockRegistry
from .loans import Loan, LoanManager, LoanStatus
from .logging_config import get_logger
from .payments import AllocationPolicy, PaymentEvent, PaymentProcessor, PaymentResult
from .schedule_store import PaymentScheduleEntry, ScheduleStore
from .scoring import CreditScore, PortfolioMetrics, RiskAggregator
from .status_clock import StatusClock, SweepResult
from .storage import StorageInterface, create_storage
from .tenancy import TenantStorageFactory


class LoanServicingEngine:
    """Loan servicing engine with all components initialized"""

    def __init__(
        self,
        storage: Optional[StorageInterface] = None,
        config: Optional[ServicingConfig] = None,
        dispatcher: Optional[EventDispatcher] = None
    ):
        self.config = config or get_config()
        self.storage = storage or create_storage(self.config.database_url)
        self.tenants = TenantStorageFactory(self.storage)
        self.dispatcher = dispatcher or EventDispatcher()
        self.locks = LoanLockRegistry(default_timeout=self.config.lock_timeout_seconds)
        self.logger = get_logger("loan_servicing.engine")

        self.audit_trail = AuditTrail(self.storage)
        if self.config.enable_audit_logging:
            self.audit_trail.attach(self.dispatcher)

        self.schedule_store = ScheduleStore(self.tenants)
        self.loan_manager = LoanManager(self.tenants, self.schedule_store, self.locks, self.dispatcher)
        self.payment_processor = PaymentProcessor(
            self.tenants, self.loan_manager, self.schedule_store, self.locks, self.dispatcher,
            allocation_policy=AllocationPolicy(self.config.payment_allocation),
            closing_epsilon=Decimal(self.config.closing_epsilon)
        )
        self.status_clock = StatusClock(
            self.tenants, self.loan_manager, self.schedule_store, self.locks, self.dispatcher,
            lock_timeout=self.config.lock_timeout_seconds
        )
        self.customers = CustomerDirectory(self.tenants, self.dispatcher)
        self.risk = RiskAggregator(self.loan_manager, self.schedule_store, self.customers)
        self.importer = LoanImporter(self.loan_manager, max_rows=self.config.csv_import_max_rows)

    # Loans

    def register_loan(self, tenant_id: str, customer_id: str, principal: Any, annual_rate_pct: Any,
                      term_months: int, start_date: Optional[date] = None,
                      method: Any = AmortizationMethod.REDUCING_BALANCE,
                      loan_id: Optional[str] = None) -> Loan:
        return self.loan_manager.register_loan(
            tenant_id, customer_id, principal, annual_rate_pct, term_months, start_date, method, loan_id
        )

    def get_loan(self, tenant_id: str, loan_id: str) -> Loan:
        return self.loan_manager.get_loan(tenant_id, loan_id)

    def list_loans(self, tenant_id: str, customer_id: Optional[str] = None,
                   status: Optional[LoanStatus] = None) -> List[Loan]:
        return self.loan_manager.list_loans(tenant_id, customer_id, status)

    def approve_loan(self, tenant_id: str, loan_id: str) -> Loan:
        return self.loan_manager.approve_loan(tenant_id, loan_id)

    def reject_loan(self, tenant_id: str, loan_id: str, reason: Optional[str] = None) -> Loan:
        return self.loan_manager.reject_loan(tenant_id, loan_id, reason)

    def mark_defaulted(self, tenant_id: str, loan_id: str, reason: Optional[str] = None) -> Loan:
        return self.loan_manager.mark_defaulted(tenant_id, loan_id, reason)

    # Schedules

    def create_schedule(self, tenant_id: str, loan_id: str, principal: Any, annual_rate_pct: Any,
                        term_months: int, start_date: date,
                        method: Any = AmortizationMethod.REDUCING_BALANCE
                        ) -> Tuple[Loan, List[PaymentScheduleEntry]]:
        return self.loan_manager.create_schedule(
            tenant_id, loan_id, principal, annual_rate_pct, term_months, start_date, method
        )

    def disburse_loan(self, tenant_id: str, loan_id: str,
                      start_date: Optional[date] = None) -> Tuple[Loan, List[PaymentScheduleEntry]]:
        return self.loan_manager.disburse_loan(tenant_id, loan_id, start_date)

    def get_schedule(self, tenant_id: str, loan_id: str) -> List[PaymentScheduleEntry]:
        return self.schedule_store.get(tenant_id, loan_id)

    # Payments

    def apply_payment(self, tenant_id: str, loan_id: str, amount: Any, idempotency_key: str,
                      received_at: Union[date, datetime, None] = None,
                      cancel_token: Optional[CancellationToken] = None,
                      lock_timeout: Optional[float] = None) -> PaymentResult:
        return self.payment_processor.apply_payment(
            tenant_id, loan_id, amount, idempotency_key, received_at, cancel_token, lock_timeout
        )

    def list_payments(self, tenant_id: str, loan_id: str) -> List[PaymentEvent]:
        return self.payment_processor.list_payments(tenant_id, loan_id)

    # Status clock

    def sweep_overdue(self, tenant_id: str, as_of: Optional[date] = None) -> SweepResult:
        return self.status_clock.sweep_overdue(tenant_id, as_of)

    def sweep_all_tenants(self, as_of: Optional[date] = None) -> List[SweepResult]:
        return self.status_clock.sweep_all_tenants(as_of)

    # Customers and scoring

    def upsert_customer(self, tenant_id: str, customer_id: str, name: str,
                        joined_on: Optional[date] = None) -> CustomerProfile:
        return self.customers.upsert_customer(tenant_id, customer_id, name, joined_on)

    def customer_credit_score(self, tenant_id: str, customer_id: str,
                              as_of: Optional[date] = None) -> CreditScore:
        return self.risk.customer_credit_score(tenant_id, customer_id, as_of)

    def portfolio_metrics(self, tenant_id: str, as_of: Optional[date] = None) -> PortfolioMetrics:
        return self.risk.portfolio_metrics(tenant_id, as_of)

    # Import

    def import_loans_csv(self, tenant_id: str, csv_text: str) -> ImportResult:
        return self.importer.import_csv(tenant_id, csv_text)

    def close(self) -> None:
        self.storage.close()
