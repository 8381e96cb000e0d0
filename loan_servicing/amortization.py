"""
Amortization Calculator

Pure functions that turn loan terms into an ordered list of installment
lines. No I/O and no clock: the same inputs always produce the same lines.

Supported methods:
- reducing balance: level installment, interest on the outstanding balance
- flat: interest on the original principal every month, equal principal

Every amount is rounded to cents (ROUND_HALF_UP). The final installment
absorbs all rounding residue so that the principal portions sum exactly to
the loan principal.
"""

import calendar
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Union

from .exceptions import InvalidScheduleParameters
from .money import ZERO, quantize, to_decimal, CENT

MONTHS_PER_YEAR = Decimal("12")
MAX_TERM_MONTHS = 1200


class AmortizationMethod(Enum):
    """How interest is computed for each installment"""
    REDUCING_BALANCE = "reducing_balance"
    FLAT = "flat"


@dataclass(frozen=True)
class InstallmentLine:
    """Single line of a generated schedule"""
    sequence_no: int
    due_date: date
    principal_due: Decimal
    interest_due: Decimal
    total_due: Decimal
    opening_balance: Decimal
    closing_balance: Decimal

    def to_dict(self) -> Dict[str, Any]:
        return {
            'sequence_no': self.sequence_no,
            'due_date': self.due_date.isoformat(),
            'principal_due': str(self.principal_due),
            'interest_due': str(self.interest_due),
            'total_due': str(self.total_due),
            'opening_balance': str(self.opening_balance),
            'closing_balance': str(self.closing_balance),
        }


def add_months(start_date: date, months: int) -> date:
    """Add months to a date, clamping the day to the end of the target month"""
    month = start_date.month - 1 + months
    year = start_date.year + month // 12
    month = month % 12 + 1
    day = min(start_date.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def monthly_rate(annual_rate_pct: Decimal) -> Decimal:
    return annual_rate_pct / Decimal("100") / MONTHS_PER_YEAR


def level_payment(principal: Decimal, annual_rate_pct: Decimal, term_months: int) -> Decimal:
    """
    Level monthly installment of a reducing-balance loan, rounded to cents.

    A = P * r * (1+r)^n / ((1+r)^n - 1), or P / n at a zero rate.
    """
    r = monthly_rate(annual_rate_pct)
    if r == 0:
        return quantize(principal / Decimal(term_months))
    factor = (Decimal("1") + r) ** term_months
    return quantize(principal * r * factor / (factor - Decimal("1")))


def validate_terms(principal: Any, annual_rate_pct: Any, term_months: Any,
                   start_date: Any, method: Any):
    """Normalise and check loan terms; returns (principal, rate, term, start_date, method)"""
    try:
        principal = to_decimal(principal, "principal")
        annual_rate_pct = to_decimal(annual_rate_pct, "annual_rate_pct")
    except ValueError as e:
        raise InvalidScheduleParameters(str(e))

    if principal <= 0:
        raise InvalidScheduleParameters(f"principal must be positive, got {principal}")
    if principal != principal.quantize(CENT):
        raise InvalidScheduleParameters(f"principal has more than 2 decimal places: {principal}")
    if annual_rate_pct < 0:
        raise InvalidScheduleParameters(f"annual_rate_pct must not be negative, got {annual_rate_pct}")

    if isinstance(term_months, bool) or not isinstance(term_months, int):
        raise InvalidScheduleParameters(f"term_months must be an integer, got {term_months!r}")
    if term_months <= 0:
        raise InvalidScheduleParameters(f"term_months must be positive, got {term_months}")
    if term_months > MAX_TERM_MONTHS:
        raise InvalidScheduleParameters(f"term_months must not exceed {MAX_TERM_MONTHS}")

    if isinstance(start_date, datetime):
        start_date = start_date.date()
    if not isinstance(start_date, date):
        raise InvalidScheduleParameters(f"start_date must be a date, got {start_date!r}")

    if not isinstance(method, AmortizationMethod):
        try:
            method = AmortizationMethod(str(method).strip().lower())
        except ValueError:
            raise InvalidScheduleParameters(f"Unknown amortization method: {method!r}")

    return quantize(principal), annual_rate_pct, term_months, start_date, method


def generate_schedule(
    principal: Union[Decimal, str, int],
    annual_rate_pct: Union[Decimal, str, int],
    term_months: int,
    start_date: date,
    method: Union[AmortizationMethod, str] = AmortizationMethod.REDUCING_BALANCE
) -> List[InstallmentLine]:
    """
    Generate the repayment schedule of a loan.

    Args:
        principal: Amount lent, positive, at most 2 decimal places
        annual_rate_pct: Nominal annual rate in percent (12 means 12%)
        term_months: Number of monthly installments
        start_date: Disbursement date; installment k falls due k months later
        method: Reducing balance or flat

    Returns:
        Lines ordered by sequence number, starting at 1

    Raises:
        InvalidScheduleParameters: if any input is out of range
    """
    principal, annual_rate_pct, term_months, start_date, method = validate_terms(
        principal, annual_rate_pct, term_months, start_date, method
    )
    r = monthly_rate(annual_rate_pct)

    if method == AmortizationMethod.REDUCING_BALANCE:
        installment = level_payment(principal, annual_rate_pct, term_months)
        flat_interest = None
        flat_principal = None
    else:
        installment = None
        flat_interest = quantize(principal * r)
        flat_principal = quantize(principal / Decimal(term_months))

    lines = []
    balance = principal
    for sequence_no in range(1, term_months + 1):
        if method == AmortizationMethod.REDUCING_BALANCE:
            interest = quantize(balance * r)
            scheduled_principal = installment - interest
        else:
            interest = flat_interest
            scheduled_principal = flat_principal

        if sequence_no == term_months:
            principal_part = balance
        else:
            principal_part = min(max(scheduled_principal, ZERO), balance)

        closing = balance - principal_part
        lines.append(InstallmentLine(
            sequence_no=sequence_no,
            due_date=add_months(start_date, sequence_no),
            principal_due=principal_part,
            interest_due=interest,
            total_due=principal_part + interest,
            opening_balance=balance,
            closing_balance=closing,
        ))
        balance = closing

    return lines


def schedule_totals(lines: List[InstallmentLine]) -> Dict[str, Decimal]:
    """Sum of principal, interest and total over a schedule"""
    principal = sum((line.principal_due for line in lines), ZERO)
    interest = sum((line.interest_due for line in lines), ZERO)
    return {
        'installments': len(lines),
        'total_principal': principal,
        'total_interest': interest,
        'total_payable': principal + interest,
    }
