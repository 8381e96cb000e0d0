"""
Risk & Scoring Aggregator

Pure, read-only functions computing a customer's credit score and a
portfolio's health and risk metrics from loans and schedule entries. Nothing
here is a system of record: results are recomputed on every call.

Every weight, cap and threshold is a module-level constant, and each score
component has its own function so it can be checked in isolation.

Credit score (300..850)::

    300                                   base
    + min(25 * loans, 100)                loan history
    + round(150 * paid / installments)    payment history
    + round(80 * (1 - outstanding/lent))  debt utilization
    - 15 * overdue installments           late payments
    + min(5 * months as customer, 50)     tenure

Portfolio health (0..100)::

    0.4 * on-time rate + 0.3 * disbursement rate
    + 0.2 * approval rate + 0.1 * overdue pressure
"""

from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple

from .customers import CustomerDirectory
from .exceptions import CustomerNotFound
from .loans import Loan, LoanManager, LoanStatus
from .money import ZERO, percentage, quantize, round_points
from .schedule_store import EntryStatus, PaymentScheduleEntry, ScheduleStore

# Credit score
CREDIT_SCORE_BASE = 300
CREDIT_SCORE_MIN = 300
CREDIT_SCORE_MAX = 850

LOAN_HISTORY_POINTS_PER_LOAN = 25
LOAN_HISTORY_MAX_POINTS = 100
PAYMENT_HISTORY_MAX_POINTS = 150
DEBT_UTILIZATION_MAX_POINTS = 80
LATE_PAYMENT_PENALTY = 15
TENURE_POINTS_PER_MONTH = 5
TENURE_MAX_POINTS = 50
DAYS_PER_TENURE_MONTH = 30

# Ratio thresholds for the impact label of a factor
PAYMENT_RATIO_POSITIVE = Decimal("0.8")
PAYMENT_RATIO_NEUTRAL = Decimal("0.5")
DEBT_RATIO_POSITIVE = Decimal("0.3")
DEBT_RATIO_NEUTRAL = Decimal("0.7")

CREDIT_GRADES = (
    (750, "A+"),
    (700, "A"),
    (650, "B+"),
    (600, "B"),
    (550, "C+"),
    (500, "C"),
)
LOWEST_GRADE = "D"

# Loans whose principal counts as borrowed money
BORROWED_STATUSES = (LoanStatus.DISBURSED, LoanStatus.CLOSED, LoanStatus.DEFAULTED)

# Portfolio health
HEALTH_WEIGHT_ON_TIME = Decimal("0.4")
HEALTH_WEIGHT_DISBURSEMENT = Decimal("0.3")
HEALTH_WEIGHT_APPROVAL = Decimal("0.2")
HEALTH_WEIGHT_OVERDUE_PRESSURE = Decimal("0.1")
HEALTH_SCORE_MIN = 0
HEALTH_SCORE_MAX = 100
OVERDUE_PRESSURE_MULTIPLIER = Decimal("10")

HEALTH_BANDS = (
    (80, "Excellent"),
    (60, "Good"),
)
LOWEST_HEALTH_BAND = "Needs Attention"

APPROVED_STATUSES = (LoanStatus.APPROVED, LoanStatus.DISBURSED, LoanStatus.CLOSED, LoanStatus.DEFAULTED)

# Portfolio risk
AT_RISK_DAYS_PAST_DUE = 30
AGING_BUCKETS = (
    ("1-7", 1, 7),
    ("8-30", 8, 30),
    ("31+", 31, None),
)
OVERDUE_LOAN_RATE_MULTIPLIER = Decimal("2")
CONCENTRATION_THRESHOLD_PCT = Decimal("20")
CONCENTRATION_PENALTY = Decimal("20")
RISK_SCORE_MAX = Decimal("100")


class FactorImpact(Enum):
    POSITIVE = "positive"
    NEUTRAL = "neutral"
    NEGATIVE = "negative"


@dataclass(frozen=True)
class ScoreFactor:
    """One explained contribution to a credit score"""
    name: str
    points: int
    reason: str
    impact: FactorImpact

    def to_dict(self) -> Dict[str, Any]:
        return {
            'name': self.name,
            'points': self.points,
            'reason': self.reason,
            'impact': self.impact.value,
        }


@dataclass(frozen=True)
class CreditScore:
    score: int
    grade: str
    factors: Tuple[ScoreFactor, ...]
    unclamped_score: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            'score': self.score,
            'grade': self.grade,
            'min_score': CREDIT_SCORE_MIN,
            'max_score': CREDIT_SCORE_MAX,
            'factors': [factor.to_dict() for factor in self.factors],
        }


# Credit score components

def loan_history_points(loan_count: int) -> int:
    return min(loan_count * LOAN_HISTORY_POINTS_PER_LOAN, LOAN_HISTORY_MAX_POINTS)


def payment_history_points(paid_entries: int, total_entries: int) -> int:
    if total_entries <= 0:
        return 0
    return round_points(Decimal(PAYMENT_HISTORY_MAX_POINTS) * Decimal(paid_entries) / Decimal(total_entries))


def debt_ratio(outstanding: Decimal, borrowed: Decimal) -> Decimal:
    """Share of borrowed principal still outstanding, 0..1"""
    if borrowed <= 0:
        return Decimal("0")
    return min(max(outstanding / borrowed, Decimal("0")), Decimal("1"))


def debt_utilization_points(outstanding: Decimal, borrowed: Decimal) -> int:
    if borrowed <= 0:
        return 0
    return round_points(Decimal(DEBT_UTILIZATION_MAX_POINTS) * (Decimal("1") - debt_ratio(outstanding, borrowed)))


def late_payment_penalty(overdue_entries: int) -> int:
    return overdue_entries * LATE_PAYMENT_PENALTY


def tenure_months(customer_since: date, as_of: date) -> int:
    if customer_since >= as_of:
        return 0
    return (as_of - customer_since).days // DAYS_PER_TENURE_MONTH


def tenure_points(customer_since: date, as_of: date) -> int:
    return min(tenure_months(customer_since, as_of) * TENURE_POINTS_PER_MONTH, TENURE_MAX_POINTS)


def credit_grade(score: int) -> str:
    for threshold, grade in CREDIT_GRADES:
        if score >= threshold:
            return grade
    return LOWEST_GRADE


def clamp_credit_score(raw_score: int) -> int:
    return min(max(raw_score, CREDIT_SCORE_MIN), CREDIT_SCORE_MAX)


def _ratio_impact(ratio: Decimal, positive_above: Decimal, neutral_above: Decimal) -> FactorImpact:
    if ratio > positive_above:
        return FactorImpact.POSITIVE
    if ratio > neutral_above:
        return FactorImpact.NEUTRAL
    return FactorImpact.NEGATIVE


def compute_credit_score(
    loans: Sequence[Loan],
    entries: Sequence[PaymentScheduleEntry],
    customer_since: Optional[date] = None,
    as_of: Optional[date] = None
) -> CreditScore:
    """
    Credit score of one customer from their loans and installments.

    Args:
        loans: The customer's loans (any status)
        entries: Installments of those loans
        customer_since: Date the customer joined; tenure is skipped when unknown
        as_of: Reference date for tenure (defaults to today)

    Returns:
        CreditScore with factors ordered by absolute impact, largest first
    """
    as_of = as_of or date.today()
    factors: List[ScoreFactor] = []

    loan_count = len(loans)
    if loan_count > 0:
        factors.append(ScoreFactor(
            name="loan_history",
            points=loan_history_points(loan_count),
            reason=f"{loan_count} loan(s) taken",
            impact=FactorImpact.POSITIVE,
        ))

    total_entries = len(entries)
    paid_entries = sum(1 for entry in entries if entry.status == EntryStatus.PAID)
    payment_ratio = Decimal(paid_entries) / Decimal(total_entries) if total_entries else Decimal("0")
    factors.append(ScoreFactor(
        name="payment_history",
        points=payment_history_points(paid_entries, total_entries),
        reason=f"{paid_entries}/{total_entries} installments paid",
        impact=_ratio_impact(payment_ratio, PAYMENT_RATIO_POSITIVE, PAYMENT_RATIO_NEUTRAL),
    ))

    borrowed_loans = [loan for loan in loans if loan.status in BORROWED_STATUSES]
    borrowed = sum((loan.principal for loan in borrowed_loans), ZERO)
    outstanding = sum((loan.outstanding_balance for loan in borrowed_loans), ZERO)
    ratio = debt_ratio(outstanding, borrowed)
    if borrowed > 0:
        debt_impact = (FactorImpact.POSITIVE if ratio < DEBT_RATIO_POSITIVE
                       else FactorImpact.NEUTRAL if ratio < DEBT_RATIO_NEUTRAL
                       else FactorImpact.NEGATIVE)
        debt_reason = f"{round_points(ratio * 100)}% of borrowed principal outstanding"
    else:
        debt_impact = FactorImpact.NEUTRAL
        debt_reason = "no disbursed loans"
    factors.append(ScoreFactor(
        name="debt_utilization",
        points=debt_utilization_points(outstanding, borrowed),
        reason=debt_reason,
        impact=debt_impact,
    ))

    overdue_entries = sum(1 for entry in entries if entry.status == EntryStatus.OVERDUE)
    if overdue_entries > 0:
        factors.append(ScoreFactor(
            name="late_payments",
            points=-late_payment_penalty(overdue_entries),
            reason=f"{overdue_entries} overdue installment(s)",
            impact=FactorImpact.NEGATIVE,
        ))

    if customer_since is not None:
        months = tenure_months(customer_since, as_of)
        factors.append(ScoreFactor(
            name="tenure",
            points=tenure_points(customer_since, as_of),
            reason=f"{months} month(s) as a customer",
            impact=FactorImpact.POSITIVE,
        ))

    raw_score = CREDIT_SCORE_BASE + sum(factor.points for factor in factors)
    score = clamp_credit_score(raw_score)
    # Stable sort keeps the declaration order among equal impacts
    ordered = sorted(factors, key=lambda factor: abs(factor.points), reverse=True)
    return CreditScore(score=score, grade=credit_grade(score), factors=tuple(ordered), unclamped_score=raw_score)


# Portfolio health components

def is_matured(entry: PaymentScheduleEntry, as_of: date) -> bool:
    """An installment counts towards on-time performance once due or paid"""
    return entry.due_date < as_of or entry.status == EntryStatus.PAID


def is_paid_on_time(entry: PaymentScheduleEntry) -> bool:
    return entry.status == EntryStatus.PAID and entry.paid_date is not None and entry.paid_date <= entry.due_date


def on_time_rate(entries: Sequence[PaymentScheduleEntry], as_of: date) -> Decimal:
    """Percent of matured installments paid on or before their due date; 100 when none matured"""
    matured = [entry for entry in entries if is_matured(entry, as_of)]
    if not matured:
        return Decimal("100")
    on_time = sum(1 for entry in matured if is_paid_on_time(entry))
    return percentage(Decimal(on_time), Decimal(len(matured)))


def disbursement_rate(loans: Sequence[Loan]) -> Decimal:
    """Percent of loans currently disbursed (in active repayment)"""
    active = sum(1 for loan in loans if loan.status == LoanStatus.DISBURSED)
    return percentage(Decimal(active), Decimal(len(loans)))


def approval_rate(loans: Sequence[Loan]) -> Decimal:
    """Percent of loans that were ever approved"""
    approved = sum(1 for loan in loans if loan.status in APPROVED_STATUSES)
    return percentage(Decimal(approved), Decimal(len(loans)))


def overdue_pressure(active_loans: int, overdue_entries: int) -> Decimal:
    """min(100, 10 * active loans / max(1, overdue installments))"""
    overdue = max(1, overdue_entries)
    return min(Decimal("100"), OVERDUE_PRESSURE_MULTIPLIER * Decimal(active_loans) / Decimal(overdue))


def portfolio_health_score(on_time: Decimal, disbursement: Decimal,
                           approval: Decimal, pressure: Decimal) -> int:
    blended = (
        on_time * HEALTH_WEIGHT_ON_TIME
        + disbursement * HEALTH_WEIGHT_DISBURSEMENT
        + approval * HEALTH_WEIGHT_APPROVAL
        + pressure * HEALTH_WEIGHT_OVERDUE_PRESSURE
    )
    return min(max(round_points(blended), HEALTH_SCORE_MIN), HEALTH_SCORE_MAX)


def health_band(score: int) -> str:
    for threshold, band in HEALTH_BANDS:
        if score >= threshold:
            return band
    return LOWEST_HEALTH_BAND


def aging_bucket(days_past_due: int) -> Optional[str]:
    for label, low, high in AGING_BUCKETS:
        if days_past_due >= low and (high is None or days_past_due <= high):
            return label
    return None


def portfolio_risk_score(loan_count: int, loans_with_overdue: int, principals: Sequence[Decimal]) -> int:
    """
    min(100, 2 * % of loans with an overdue installment
             + 20 if the largest loan exceeds 20% of total principal)
    """
    if loan_count <= 0:
        return 0
    overdue_loan_rate = percentage(Decimal(loans_with_overdue), Decimal(loan_count))
    total = sum(principals, ZERO)
    concentration = percentage(max(principals), total) if principals else Decimal("0")
    score = overdue_loan_rate * OVERDUE_LOAN_RATE_MULTIPLIER
    if concentration > CONCENTRATION_THRESHOLD_PCT:
        score += CONCENTRATION_PENALTY
    return round_points(min(RISK_SCORE_MAX, score))


@dataclass(frozen=True)
class PortfolioMetrics:
    as_of: date
    total_loans: int
    loans_by_status: Dict[str, int]
    total_principal: Decimal
    disbursed_principal: Decimal
    outstanding_balance: Decimal
    average_loan_size: Decimal
    on_time_rate: Decimal
    disbursement_rate: Decimal
    approval_rate: Decimal
    overdue_pressure: Decimal
    health_score: int
    health_band: str
    default_rate: Decimal
    overdue_entries: int
    overdue_amount: Decimal
    overdue_aging: Dict[str, int] = field(default_factory=dict)
    at_risk_loans: int = 0
    loans_with_overdue: int = 0
    risk_score: int = 0

    def to_dict(self) -> Dict[str, Any]:
        def pct(value: Decimal) -> str:
            return str(quantize(value))

        return {
            'as_of': self.as_of.isoformat(),
            'total_loans': self.total_loans,
            'loans_by_status': dict(self.loans_by_status),
            'total_principal': str(self.total_principal),
            'disbursed_principal': str(self.disbursed_principal),
            'outstanding_balance': str(self.outstanding_balance),
            'average_loan_size': str(self.average_loan_size),
            'on_time_rate': pct(self.on_time_rate),
            'disbursement_rate': pct(self.disbursement_rate),
            'approval_rate': pct(self.approval_rate),
            'overdue_pressure': pct(self.overdue_pressure),
            'health_score': self.health_score,
            'health_band': self.health_band,
            'default_rate': pct(self.default_rate),
            'overdue_entries': self.overdue_entries,
            'overdue_amount': str(self.overdue_amount),
            'overdue_aging': dict(self.overdue_aging),
            'at_risk_loans': self.at_risk_loans,
            'loans_with_overdue': self.loans_with_overdue,
            'risk_score': self.risk_score,
        }


def compute_portfolio_metrics(
    loans: Sequence[Loan],
    entries: Sequence[PaymentScheduleEntry],
    as_of: Optional[date] = None
) -> PortfolioMetrics:
    """
    Health, approval and risk metrics of a set of loans.

    Args:
        loans: Every loan of the portfolio (any status)
        entries: Installments of those loans
        as_of: Reference date for maturity and aging (defaults to today)
    """
    as_of = as_of or date.today()

    by_status = OrderedDict((status.value, 0) for status in LoanStatus)
    for loan in loans:
        by_status[loan.status.value] += 1
    active_loans = by_status[LoanStatus.DISBURSED.value]

    principals = [loan.principal for loan in loans]
    total_principal = sum(principals, ZERO)
    borrowed = [loan for loan in loans if loan.status in BORROWED_STATUSES]
    disbursed_principal = sum((loan.principal for loan in borrowed), ZERO)
    outstanding = sum((loan.outstanding_balance for loan in loans
                       if loan.status in (LoanStatus.DISBURSED, LoanStatus.DEFAULTED)), ZERO)
    average = quantize(total_principal / len(loans)) if loans else ZERO

    overdue = [entry for entry in entries if entry.status == EntryStatus.OVERDUE]
    aging = OrderedDict((label, 0) for label, _, _ in AGING_BUCKETS)
    at_risk = set()
    for entry in overdue:
        days = entry.days_past_due(as_of)
        label = aging_bucket(days)
        if label:
            aging[label] += 1
        if days > AT_RISK_DAYS_PAST_DUE:
            at_risk.add(entry.loan_id)
    loans_with_overdue = len({entry.loan_id for entry in overdue})

    on_time = on_time_rate(entries, as_of)
    disbursement = disbursement_rate(loans)
    approval = approval_rate(loans)
    pressure = overdue_pressure(active_loans, len(overdue))
    health = portfolio_health_score(on_time, disbursement, approval, pressure)

    return PortfolioMetrics(
        as_of=as_of,
        total_loans=len(loans),
        loans_by_status=dict(by_status),
        total_principal=total_principal,
        disbursed_principal=disbursed_principal,
        outstanding_balance=outstanding,
        average_loan_size=average,
        on_time_rate=on_time,
        disbursement_rate=disbursement,
        approval_rate=approval,
        overdue_pressure=pressure,
        health_score=health,
        health_band=health_band(health),
        default_rate=percentage(Decimal(by_status[LoanStatus.DEFAULTED.value]), Decimal(len(loans))),
        overdue_entries=len(overdue),
        overdue_amount=sum((entry.outstanding for entry in overdue), ZERO),
        overdue_aging=dict(aging),
        at_risk_loans=len(at_risk),
        loans_with_overdue=loans_with_overdue,
        risk_score=portfolio_risk_score(len(loans), loans_with_overdue, principals),
    )


class RiskAggregator:
    """Loads a tenant's data and feeds it to the scoring functions"""

    def __init__(self, loan_manager: LoanManager, schedule_store: ScheduleStore,
                 customers: CustomerDirectory):
        self.loan_manager = loan_manager
        self.schedule_store = schedule_store
        self.customers = customers

    def customer_credit_score(self, tenant_id: str, customer_id: str,
                              as_of: Optional[date] = None) -> CreditScore:
        """
        Raises:
            CustomerNotFound: no profile and no loans for the customer in this tenant
        """
        profile = self.customers.find_customer(tenant_id, customer_id)
        loans = self.loan_manager.list_loans(tenant_id, customer_id=customer_id)
        if profile is None and not loans:
            raise CustomerNotFound(f"Customer {customer_id} not found", {"customer_id": customer_id})

        loan_ids = {loan.id for loan in loans}
        entries = [entry for entry in self.schedule_store.list_for_tenant(tenant_id) if entry.loan_id in loan_ids]
        customer_since = (profile.joined_on or profile.created_at.date()) if profile else None
        return compute_credit_score(loans, entries, customer_since, as_of)

    def portfolio_metrics(self, tenant_id: str, as_of: Optional[date] = None) -> PortfolioMetrics:
        loans = self.loan_manager.list_loans(tenant_id)
        entries = self.schedule_store.list_for_tenant(tenant_id)
        return compute_portfolio_metrics(loans, entries, as_of)
