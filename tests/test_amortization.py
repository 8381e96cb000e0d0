"""
Test suite for the amortization calculator

Schedules must be deterministic, exact to the cent, and their principal
portions must always add up to the loan principal.
"""

import pytest
from decimal import Decimal
from datetime import date, datetime

from loan_servicing.amortization import (
    AmortizationMethod, InstallmentLine, add_months, generate_schedule,
    level_payment, schedule_totals, validate_terms, MAX_TERM_MONTHS
)
from loan_servicing.exceptions import InvalidScheduleParameters, InvalidInputError


class TestLevelPayment:
    """Test the level installment formula"""

    def test_reference_loan(self):
        """12,000 at 12% over 12 months"""
        assert level_payment(Decimal("12000.00"), Decimal("12"), 12) == Decimal("1066.19")

    def test_zero_rate_divides_principal(self):
        assert level_payment(Decimal("1000.00"), Decimal("0"), 3) == Decimal("333.33")

    def test_single_installment(self):
        """One month at 12% is principal plus one month of interest"""
        assert level_payment(Decimal("1000.00"), Decimal("12"), 1) == Decimal("1010.00")


class TestAddMonths:
    """Test calendar month arithmetic"""

    def test_simple_month(self):
        assert add_months(date(2024, 1, 15), 1) == date(2024, 2, 15)

    def test_clamps_to_leap_february(self):
        assert add_months(date(2024, 1, 31), 1) == date(2024, 2, 29)

    def test_clamps_to_non_leap_february(self):
        assert add_months(date(2023, 1, 31), 1) == date(2023, 2, 28)

    def test_crosses_year_boundary(self):
        assert add_months(date(2024, 11, 30), 3) == date(2025, 2, 28)

    def test_day_is_restored_after_short_month(self):
        """Each due date is computed from the start date, not the previous due date"""
        assert add_months(date(2024, 1, 31), 2) == date(2024, 3, 31)


class TestReducingBalanceSchedule:
    """Test reducing-balance schedules"""

    def setup_method(self):
        self.lines = generate_schedule(
            Decimal("12000.00"), Decimal("12"), 12, date(2024, 1, 1),
            AmortizationMethod.REDUCING_BALANCE
        )

    def test_line_count_and_sequence(self):
        assert len(self.lines) == 12
        assert [line.sequence_no for line in self.lines] == list(range(1, 13))

    def test_first_installment(self):
        first = self.lines[0]
        assert first.interest_due == Decimal("120.00")
        assert first.principal_due == Decimal("946.19")
        assert first.total_due == Decimal("1066.19")
        assert first.opening_balance == Decimal("12000.00")
        assert first.closing_balance == Decimal("11053.81")

    def test_second_installment_interest_on_reduced_balance(self):
        second = self.lines[1]
        assert second.opening_balance == Decimal("11053.81")
        assert second.interest_due == Decimal("110.54")
        assert second.principal_due == Decimal("955.65")

    def test_principal_sums_to_loan_principal(self):
        totals = schedule_totals(self.lines)
        assert totals["total_principal"] == Decimal("12000.00")
        assert totals["installments"] == 12
        assert totals["total_payable"] == totals["total_principal"] + totals["total_interest"]

    def test_final_balance_is_zero(self):
        assert self.lines[-1].closing_balance == Decimal("0.00")

    def test_every_line_total_is_principal_plus_interest(self):
        for line in self.lines:
            assert line.total_due == line.principal_due + line.interest_due
            assert line.principal_due >= 0
            assert line.interest_due >= 0

    def test_level_installments_except_last(self):
        assert {line.total_due for line in self.lines[:-1]} == {Decimal("1066.19")}

    def test_due_dates_are_monthly(self):
        assert self.lines[0].due_date == date(2024, 2, 1)
        assert self.lines[-1].due_date == date(2025, 1, 1)

    def test_amounts_have_two_decimal_places(self):
        for line in self.lines:
            for amount in (line.principal_due, line.interest_due, line.total_due):
                assert amount == amount.quantize(Decimal("0.01"))

    @pytest.mark.parametrize("principal,rate,term", [
        ("10000.00", "7.5", 36),
        ("999.99", "18", 7),
        ("50000.00", "3.25", 360),
        ("1.00", "24", 12),
        ("250000.00", "0", 240),
    ])
    def test_principal_sum_invariant(self, principal, rate, term):
        lines = generate_schedule(principal, rate, term, date(2024, 3, 31))
        assert sum(line.principal_due for line in lines) == Decimal(principal)
        assert lines[-1].closing_balance == Decimal("0.00")

    def test_deterministic(self):
        again = generate_schedule(
            Decimal("12000.00"), Decimal("12"), 12, date(2024, 1, 1),
            AmortizationMethod.REDUCING_BALANCE
        )
        assert again == self.lines

    def test_zero_rate_last_line_absorbs_residue(self):
        lines = generate_schedule(Decimal("1000.00"), Decimal("0"), 3, date(2024, 1, 1))
        assert [line.principal_due for line in lines] == [
            Decimal("333.33"), Decimal("333.33"), Decimal("333.34")
        ]
        assert all(line.interest_due == Decimal("0.00") for line in lines)

    def test_month_end_start_date(self):
        lines = generate_schedule(Decimal("3000.00"), Decimal("6"), 3, date(2024, 1, 31))
        assert [line.due_date for line in lines] == [
            date(2024, 2, 29), date(2024, 3, 31), date(2024, 4, 30)
        ]


class TestFlatSchedule:
    """Test flat-interest schedules"""

    def test_flat_interest_on_original_principal(self):
        lines = generate_schedule(Decimal("1200.00"), Decimal("12"), 12, date(2024, 1, 1), "flat")
        assert all(line.interest_due == Decimal("12.00") for line in lines)
        assert all(line.principal_due == Decimal("100.00") for line in lines)
        assert all(line.total_due == Decimal("112.00") for line in lines)

    def test_flat_principal_residue_on_last_line(self):
        lines = generate_schedule(Decimal("1000.00"), Decimal("5"), 3, date(2024, 1, 1), AmortizationMethod.FLAT)
        assert [line.principal_due for line in lines] == [
            Decimal("333.33"), Decimal("333.33"), Decimal("333.34")
        ]
        assert sum(line.principal_due for line in lines) == Decimal("1000.00")

    def test_flat_costs_more_than_reducing_balance(self):
        flat = schedule_totals(generate_schedule("12000", "12", 12, date(2024, 1, 1), "flat"))
        reducing = schedule_totals(generate_schedule("12000", "12", 12, date(2024, 1, 1), "reducing_balance"))
        assert flat["total_interest"] == Decimal("1440.00")
        assert flat["total_interest"] > reducing["total_interest"]


class TestInvalidTerms:
    """Test input validation"""

    @pytest.mark.parametrize("principal", ["0", "-100", "10.001", "abc", None])
    def test_invalid_principal(self, principal):
        with pytest.raises(InvalidScheduleParameters):
            generate_schedule(principal, "12", 12, date(2024, 1, 1))

    def test_negative_rate(self):
        with pytest.raises(InvalidScheduleParameters):
            generate_schedule("1000", "-1", 12, date(2024, 1, 1))

    @pytest.mark.parametrize("term", [0, -3, MAX_TERM_MONTHS + 1, 1.5, "12", True])
    def test_invalid_term(self, term):
        with pytest.raises(InvalidScheduleParameters):
            generate_schedule("1000", "12", term, date(2024, 1, 1))

    def test_start_date_must_be_a_date(self):
        with pytest.raises(InvalidScheduleParameters):
            generate_schedule("1000", "12", 12, "2024-01-01")

    def test_unknown_method(self):
        with pytest.raises(InvalidScheduleParameters):
            generate_schedule("1000", "12", 12, date(2024, 1, 1), "balloon")

    def test_is_an_invalid_input_error(self):
        with pytest.raises(InvalidInputError):
            generate_schedule("0", "12", 12, date(2024, 1, 1))

    def test_validate_terms_normalises(self):
        principal, rate, term, start, method = validate_terms(
            "500", 6, 24, datetime(2024, 5, 1, 10, 30), " FLAT "
        )
        assert principal == Decimal("500.00")
        assert rate == Decimal("6")
        assert term == 24
        assert start == date(2024, 5, 1)
        assert method == AmortizationMethod.FLAT


class TestInstallmentLine:

    def test_to_dict_uses_strings(self):
        line = generate_schedule("1200", "12", 12, date(2024, 1, 1))[0]
        assert isinstance(line, InstallmentLine)
        data = line.to_dict()
        assert data["sequence_no"] == 1
        assert data["due_date"] == "2024-02-01"
        assert data["interest_due"] == "12.00"
