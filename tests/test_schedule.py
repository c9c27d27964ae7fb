"""
Test suite for schedule module

Tests EMI calculation, due-date generation, rounding true-up and
regeneration of a schedule after the loan terms change.
"""

import pytest
from decimal import Decimal
from datetime import datetime, timezone, date

from loan_servicing.currency import Money, Currency
from loan_servicing.errors import InvalidTermsError
from loan_servicing.amortization import AmortizationAccountant
from loan_servicing.schedule import (
    LoanTerms, Installment, PaymentEvent, calculate_emi, add_months,
    generate_schedule, regenerate_schedule, total_interest, emi_end_date,
    installment_id, validate_terms
)


NOW = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


def pay(installment: Installment, amount: str) -> Installment:
    """Attach a payment directly, bypassing the ledger"""
    event = PaymentEvent(date=installment.due_date, mode="Cash", amount=Money(Decimal(amount)))
    installment.payment_history.append(event)
    installment.amount_paid = installment.history_total()
    return installment


class TestCalculateEMI:
    """Test the annuity formula"""

    def test_standard_emi(self):
        """P=100000 at 12% over 12 months gives 8884.88"""
        assert calculate_emi(Decimal('100000'), Decimal('12'), 12) == Decimal('8884.88')

    def test_zero_rate_emi(self):
        """Zero rate spreads the principal evenly"""
        assert calculate_emi(Decimal('12000'), Decimal('0'), 12) == Decimal('1000.00')

    def test_emi_rounded_half_up(self):
        """Zero-rate thirds round to the paisa"""
        assert calculate_emi(Decimal('10000'), Decimal('0'), 3) == Decimal('3333.33')

    def test_string_inputs_accepted(self):
        """Operator-entered strings are converted to Decimal"""
        assert calculate_emi("1,00,000", "12", 12) == Decimal('8884.88')

    def test_invalid_principal(self):
        """Principal must be positive"""
        with pytest.raises(InvalidTermsError) as exc_info:
            calculate_emi(Decimal('0'), Decimal('12'), 12)
        assert exc_info.value.field == "principal"

    def test_invalid_tenure(self):
        """Tenure must be a positive whole number"""
        with pytest.raises(InvalidTermsError):
            calculate_emi(Decimal('1000'), Decimal('12'), 0)
        with pytest.raises(InvalidTermsError):
            calculate_emi(Decimal('1000'), Decimal('12'), 1.5)

    def test_negative_rate(self):
        """Negative rates are rejected"""
        with pytest.raises(InvalidTermsError) as exc_info:
            calculate_emi(Decimal('1000'), Decimal('-1'), 12)
        assert exc_info.value.field == "annual_interest_rate"

    def test_invalid_terms_error_is_value_error(self):
        """Callers catching ValueError still see bad terms"""
        with pytest.raises(ValueError):
            validate_terms("abc", "12", 12)


class TestAddMonths:
    """Test calendar month arithmetic"""

    def test_simple_add(self):
        assert add_months(date(2024, 1, 15), 1) == date(2024, 2, 15)

    def test_clamps_to_month_end(self):
        """Jan 31 + 1 month lands on the last day of February"""
        assert add_months(date(2024, 1, 31), 1) == date(2024, 2, 29)
        assert add_months(date(2023, 1, 31), 1) == date(2023, 2, 28)

    def test_year_rollover(self):
        assert add_months(date(2024, 11, 30), 3) == date(2025, 2, 28)

    def test_zero_months(self):
        assert add_months(date(2024, 5, 10), 0) == date(2024, 5, 10)


class TestGenerateSchedule:
    """Test schedule generation"""

    def test_scenario_standard_loan(self):
        """Installment 1 falls due exactly one month after the start date"""
        terms = LoanTerms(Decimal('100000'), Decimal('12'), 12, date(2024, 1, 15))
        schedule = generate_schedule(terms, loan_id="LOAN1", created_at=NOW)

        assert len(schedule) == 12
        assert schedule[0].due_date == date(2024, 2, 15)
        assert schedule[-1].due_date == date(2025, 1, 15)
        assert [inst.emi_number for inst in schedule] == list(range(1, 13))
        assert all(inst.scheduled_amount == Money(Decimal('8884.88')) for inst in schedule[:-1])

    def test_final_installment_trued_up(self):
        """The last installment absorbs the rounding drift"""
        terms = LoanTerms(Decimal('100000'), Decimal('12'), 12, date(2024, 1, 15))
        schedule = generate_schedule(terms, created_at=NOW)

        assert schedule[-1].scheduled_amount == Money(Decimal('8884.87'))
        balances = AmortizationAccountant(Decimal('100000'), Decimal('12')).balances(schedule)
        assert abs(balances[-1]) < Decimal('0.01')

    def test_true_up_disabled(self):
        """Without the true-up every installment carries the rounded EMI"""
        terms = LoanTerms(Decimal('100000'), Decimal('12'), 12, date(2024, 1, 15))
        schedule = generate_schedule(terms, absorb_rounding_residual=False, created_at=NOW)
        assert {inst.scheduled_amount for inst in schedule} == {Money(Decimal('8884.88'))}

    def test_zero_rate_residual(self):
        """10000 over 3 months at 0% is 3333.33, 3333.33, 3333.34"""
        terms = LoanTerms(Decimal('10000'), Decimal('0'), 3, date(2024, 1, 1))
        schedule = generate_schedule(terms, created_at=NOW)
        amounts = [inst.scheduled_amount.amount for inst in schedule]
        assert amounts == [Decimal('3333.33'), Decimal('3333.33'), Decimal('3333.34')]
        assert sum(amounts) == Decimal('10000')

    def test_month_end_start_date(self):
        """Due dates are computed from the start date, not chained"""
        terms = LoanTerms(Decimal('3000'), Decimal('0'), 3, date(2024, 1, 31))
        schedule = generate_schedule(terms, created_at=NOW)
        assert [inst.due_date for inst in schedule] == [
            date(2024, 2, 29), date(2024, 3, 31), date(2024, 4, 30)
        ]

    def test_first_due_date_override(self):
        """An explicit EMI start date anchors the schedule"""
        terms = LoanTerms(Decimal('2000'), Decimal('0'), 2, date(2024, 1, 10),
                          first_due_date=date(2024, 3, 5))
        schedule = generate_schedule(terms, created_at=NOW)
        assert [inst.due_date for inst in schedule] == [date(2024, 3, 5), date(2024, 4, 5)]

    def test_deterministic(self):
        """Identical inputs give identical schedules"""
        terms = LoanTerms(Decimal('250000'), Decimal('14.5'), 36, date(2024, 6, 30))
        first = generate_schedule(terms, loan_id="L", created_at=NOW)
        second = generate_schedule(terms, loan_id="L", created_at=NOW)
        assert [inst.to_dict() for inst in first] == [inst.to_dict() for inst in second]

    def test_new_installments_are_unpaid(self):
        terms = LoanTerms(Decimal('5000'), Decimal('10'), 5, date(2024, 1, 1))
        for inst in generate_schedule(terms, created_at=NOW):
            assert inst.amount_paid.is_zero()
            assert inst.payment_history == []
            assert inst.version == 0

    def test_installment_ids_and_labels(self):
        terms = LoanTerms(Decimal('5000'), Decimal('10'), 2, date(2024, 1, 1))
        schedule = generate_schedule(terms, loan_id="LOAN9", loan_number="LN-9",
                                     customer_name="Ravi", created_at=NOW)
        assert schedule[1].id == installment_id("LOAN9", 2) == "LOAN9_2"
        assert schedule[0].loan_number == "LN-9"
        assert schedule[0].customer_name == "Ravi"

    def test_currency_carried(self):
        terms = LoanTerms(Decimal('1200'), Decimal('0'), 12, date(2024, 1, 1), currency=Currency.USD)
        schedule = generate_schedule(terms, created_at=NOW)
        assert schedule[0].scheduled_amount.currency == Currency.USD

    def test_principal_too_small(self):
        """A principal that rounds to a zero EMI is rejected"""
        terms = LoanTerms(Decimal('0.01'), Decimal('0'), 12, date(2024, 1, 1))
        with pytest.raises(InvalidTermsError):
            generate_schedule(terms, created_at=NOW)

    def test_total_interest_and_end_date(self):
        terms = LoanTerms(Decimal('100000'), Decimal('12'), 12, date(2024, 1, 15))
        schedule = generate_schedule(terms, created_at=NOW)
        assert total_interest(schedule, Decimal('100000')) == Money(Decimal('6618.55'))
        assert emi_end_date(schedule) == date(2025, 1, 15)
        assert emi_end_date([]) is None

    def test_due_dates_beyond_calendar_rejected(self):
        """A tenure running past the year 9999 is bad terms, not a crash"""
        with pytest.raises(InvalidTermsError) as exc_info:
            LoanTerms(Decimal('100000'), Decimal('12'), 100000, date(2024, 1, 1))
        assert exc_info.value.field == "tenure_months"

        with pytest.raises(InvalidTermsError):
            LoanTerms(Decimal('100000'), Decimal('12'), 12, date(2024, 1, 1),
                      first_due_date=date(9999, 6, 1))


class TestInstallmentAsOf:
    """Test the view of an installment on a past day"""

    def setup_method(self):
        """Set up test fixtures"""
        terms = LoanTerms(Decimal('12000'), Decimal('0'), 12, date(2024, 1, 1))
        self.installment = generate_schedule(terms, loan_id="LOAN1", created_at=NOW)[0]
        self.installment.payment_history = [
            PaymentEvent(date=date(2024, 2, 1), mode="Cash", amount=Money(Decimal('400'))),
            PaymentEvent(date=date(2024, 3, 1), mode="Cheque", amount=Money(Decimal('600'))),
        ]
        self.installment.amount_paid = self.installment.history_total()

    def test_later_events_left_out(self):
        view = self.installment.as_of(date(2024, 2, 15))
        assert view.amount_paid == Money(Decimal('400'))
        assert [event.mode for event in view.payment_history] == ["Cash"]
        assert view.last_payment_date == date(2024, 2, 1)
        assert self.installment.amount_paid == Money(Decimal('1000'))

    def test_event_on_the_day_included(self):
        assert self.installment.as_of(date(2024, 3, 1)).amount_paid == Money(Decimal('1000'))

    def test_before_any_payment(self):
        view = self.installment.as_of(date(2024, 1, 31))
        assert view.amount_paid.is_zero()
        assert not view.has_payments


class TestLongTenure:
    """Balance closes out over long schedules"""

    @pytest.mark.parametrize("principal,rate,tenure", [
        ("500000", "9.5", 240),
        ("75000", "24", 18),
        ("1", "12", 1),
    ])
    def test_principal_fully_amortized(self, principal, rate, tenure):
        """Sum of principal portions equals P within a cent"""
        terms = LoanTerms(Decimal(principal), Decimal(rate), tenure, date(2024, 1, 1))
        schedule = generate_schedule(terms, created_at=NOW)
        entries = AmortizationAccountant(Decimal(principal), Decimal(rate)).schedule(schedule)

        principal_total = sum((entry.principal_amount.amount for entry in entries), Decimal('0'))
        assert abs(principal_total - Decimal(principal)) <= Decimal('0.01')


class TestRegenerateSchedule:
    """Test re-amortization after a terms edit"""

    def setup_method(self):
        """Set up test fixtures"""
        self.terms = LoanTerms(Decimal('100000'), Decimal('12'), 12, date(2024, 1, 1))
        self.schedule = generate_schedule(self.terms, loan_id="LOAN1", created_at=NOW)

    def test_no_payments_matches_fresh_schedule(self):
        """With nothing paid regeneration equals a fresh schedule"""
        new_terms = LoanTerms(Decimal('120000'), Decimal('12'), 12, date(2024, 1, 1))
        regenerated = regenerate_schedule(self.schedule, new_terms, loan_id="LOAN1", created_at=NOW)
        fresh = generate_schedule(new_terms, loan_id="LOAN1", created_at=NOW)
        assert [i.scheduled_amount for i in regenerated] == [i.scheduled_amount for i in fresh]

    def test_paid_installments_kept(self):
        """Installments with payments keep amount, date and history"""
        pay(self.schedule[0], "8884.88")
        pay(self.schedule[1], "1000")
        new_terms = LoanTerms(Decimal('120000'), Decimal('12'), 12, date(2024, 1, 1))

        regenerated = regenerate_schedule(self.schedule, new_terms, loan_id="LOAN1", created_at=NOW)

        assert regenerated[0] is self.schedule[0]
        assert regenerated[1] is self.schedule[1]
        assert regenerated[1].amount_paid == Money(Decimal('1000'))
        assert all(inst.scheduled_amount > Money(Decimal('8884.88')) for inst in regenerated[2:])

    def test_regenerated_schedule_amortizes_new_principal(self):
        """Kept plus new installments retire the new principal"""
        pay(self.schedule[0], "8884.88")
        new_terms = LoanTerms(Decimal('120000'), Decimal('12'), 12, date(2024, 1, 1))

        regenerated = regenerate_schedule(self.schedule, new_terms, loan_id="LOAN1", created_at=NOW)
        balances = AmortizationAccountant(Decimal('120000'), Decimal('12')).balances(regenerated)
        assert abs(balances[-1]) < Decimal('0.01')

    def test_shorter_tenure_drops_unpaid_tail(self):
        pay(self.schedule[0], "8884.88")
        new_terms = LoanTerms(Decimal('100000'), Decimal('12'), 6, date(2024, 1, 1))
        regenerated = regenerate_schedule(self.schedule, new_terms, loan_id="LOAN1", created_at=NOW)
        assert [inst.emi_number for inst in regenerated] == [1, 2, 3, 4, 5, 6]

    def test_tenure_below_paid_installment_rejected(self):
        pay(self.schedule[7], "100")
        new_terms = LoanTerms(Decimal('100000'), Decimal('12'), 6, date(2024, 1, 1))
        with pytest.raises(InvalidTermsError) as exc_info:
            regenerate_schedule(self.schedule, new_terms, loan_id="LOAN1", created_at=NOW)
        assert exc_info.value.field == "tenure_months"

    def test_principal_already_covered_rejected(self):
        """Paid installments that already exceed the new principal leave nothing to spread"""
        for inst in self.schedule[:6]:
            pay(inst, "8884.88")
        new_terms = LoanTerms(Decimal('10000'), Decimal('12'), 12, date(2024, 1, 1))
        with pytest.raises(InvalidTermsError):
            regenerate_schedule(self.schedule, new_terms, loan_id="LOAN1", created_at=NOW)
