"""
Test suite for foreclosure module

Tests payoff quotes under both ways of counting retired installments.
"""

import pytest
from decimal import Decimal
from datetime import datetime, timezone, date

from loan_servicing.amortization import closed_form_balance
from loan_servicing.clock import FixedClock
from loan_servicing.currency import Money
from loan_servicing.foreclosure import (
    ForeclosureCalculator, ForeclosurePolicy, ForeclosureQuote, settled_count, elapsed_count
)
from loan_servicing.ledger import PaymentLedger
from loan_servicing.schedule import LoanTerms, PaymentEvent, generate_schedule


NOW = datetime(2024, 1, 1, tzinfo=timezone.utc)
PRINCIPAL = Decimal('100000')
RATE = Decimal('12')
EMI = Decimal('8884.88')


class TestForeclosureCalculator:
    """Test ForeclosureCalculator"""

    def setup_method(self):
        """Set up test fixtures"""
        self.clock = FixedClock(date(2024, 7, 15))
        self.ledger = PaymentLedger(self.clock)
        terms = LoanTerms(PRINCIPAL, RATE, 12, date(2024, 1, 1))
        self.schedule = generate_schedule(terms, loan_id="LOAN1", created_at=NOW)
        self.calculator = ForeclosureCalculator(clock=self.clock)

    def pay_in_full(self, count: int) -> None:
        for index in range(count):
            inst = self.schedule[index]
            self.schedule[index] = self.ledger.apply_payment(
                inst, [PaymentEvent(date=inst.due_date, mode="Cash", amount=inst.scheduled_amount)]
            )

    def test_scenario_six_of_twelve_paid(self):
        """Remaining principal after 6 on-time payments equals the closed-form B[6]"""
        self.pay_in_full(6)
        quote = self.calculator.quote("LOAN1", PRINCIPAL, RATE, self.schedule, as_of=date(2024, 7, 2))

        assert quote.installments_counted == 6
        assert quote.remaining_principal == closed_form_balance(PRINCIPAL, RATE, EMI, 6)
        assert quote.foreclosure_amount == quote.remaining_principal
        assert quote.amount_collected == Money(EMI * 6)

    def test_nothing_paid(self):
        quote = self.calculator.quote("LOAN1", PRINCIPAL, RATE, self.schedule)
        assert quote.installments_counted == 0
        assert quote.foreclosure_amount == Money(PRINCIPAL)
        assert quote.as_of == date(2024, 7, 15)

    def test_policies_diverge_on_arrears(self):
        """Three paid while six are due: settled counts 3, elapsed counts 6"""
        self.pay_in_full(3)

        settled = self.calculator.quote("LOAN1", PRINCIPAL, RATE, self.schedule,
                                        policy=ForeclosurePolicy.SETTLED_INSTALLMENTS)
        elapsed = self.calculator.quote("LOAN1", PRINCIPAL, RATE, self.schedule,
                                        policy=ForeclosurePolicy.ELAPSED_DUE_DATES)

        assert settled.installments_counted == 3
        assert elapsed.installments_counted == 6
        assert settled.remaining_principal == closed_form_balance(PRINCIPAL, RATE, EMI, 3)
        assert elapsed.remaining_principal == closed_form_balance(PRINCIPAL, RATE, EMI, 6)
        assert settled.foreclosure_amount > elapsed.foreclosure_amount

    def test_default_policy_from_constructor(self):
        calculator = ForeclosureCalculator(ForeclosurePolicy.ELAPSED_DUE_DATES, self.clock)
        quote = calculator.quote("LOAN1", PRINCIPAL, RATE, self.schedule)
        assert quote.policy == ForeclosurePolicy.ELAPSED_DUE_DATES
        assert quote.installments_counted == 6

    def test_fully_paid_loan_quotes_zero(self):
        """Both amounts are clamped at zero"""
        self.pay_in_full(12)
        quote = self.calculator.quote("LOAN1", PRINCIPAL, RATE, self.schedule)
        assert quote.remaining_principal == Money.zero()
        assert quote.foreclosure_amount == Money.zero()
        assert not quote.foreclosure_amount.is_negative()

    def test_past_quote_ignores_later_payments(self):
        """Collections dated after the quote date do not retire installments"""
        for index in range(6):
            self.schedule[index] = self.ledger.apply_payment(
                self.schedule[index],
                [PaymentEvent(date=date(2024, 7, 5), mode="Cash", amount=self.schedule[index].scheduled_amount)]
            )

        past = self.calculator.quote("LOAN1", PRINCIPAL, RATE, self.schedule, as_of=date(2024, 2, 15))
        current = self.calculator.quote("LOAN1", PRINCIPAL, RATE, self.schedule)

        assert past.installments_counted == 0
        assert past.foreclosure_amount == Money(PRINCIPAL)
        assert past.amount_collected == Money.zero()
        assert current.installments_counted == 6
        assert current.amount_collected == Money(EMI * 6)

    def test_partial_payment_not_counted(self):
        """A partly paid installment is not settled"""
        self.schedule[0] = self.ledger.apply_payment(
            self.schedule[0], [PaymentEvent(date=date(2024, 2, 1), mode="Cash", amount=Money(Decimal('5000')))]
        )
        assert settled_count(self.schedule, date(2024, 7, 15)) == 0

    def test_elapsed_count_strictly_before(self):
        """An installment due on the quote date has not elapsed"""
        assert elapsed_count(self.schedule, date(2024, 2, 1)) == 0
        assert elapsed_count(self.schedule, date(2024, 2, 2)) == 1

    def test_to_dict(self):
        data = self.calculator.quote("LOAN1", PRINCIPAL, RATE, self.schedule).to_dict()
        assert data['policy'] == "settled_installments"
        assert data['foreclosure_amount'] == "100000.00"
        assert data['currency'] == "INR"
