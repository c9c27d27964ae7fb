"""
Test suite for summary module

Tests the loan-level aggregate derived from installment state.
"""

import pytest
from decimal import Decimal
from datetime import datetime, timezone, date

from loan_servicing.currency import Money, Currency
from loan_servicing.ledger import InstallmentStatus
from loan_servicing.schedule import Installment, PaymentEvent
from loan_servicing.summary import LoanSummary, summarize, representative_installment


NOW = datetime(2024, 1, 1, tzinfo=timezone.utc)


def make_installment(emi_number: int, due: date, scheduled: str = "1000",
                     payments=()) -> Installment:
    history = [PaymentEvent(date=on, mode="Cash", amount=Money(Decimal(amount))) for on, amount in payments]
    inst = Installment(
        id=f"LOAN1_{emi_number}",
        created_at=NOW,
        updated_at=NOW,
        loan_id="LOAN1",
        emi_number=emi_number,
        due_date=due,
        scheduled_amount=Money(Decimal(scheduled)),
        payment_history=history,
    )
    inst.amount_paid = inst.history_total()
    return inst


class TestSummarize:
    """Test summarize()"""

    def setup_method(self):
        """Set up test fixtures"""
        self.installments = [
            make_installment(1, date(2024, 1, 10), payments=[(date(2024, 1, 9), "1000")]),
            make_installment(2, date(2024, 2, 10), payments=[(date(2024, 2, 12), "1000")]),
            make_installment(3, date(2024, 3, 10), payments=[(date(2024, 3, 15), "400")]),
            make_installment(4, date(2024, 4, 10)),
            make_installment(5, date(2024, 5, 10)),
        ]
        self.today = date(2024, 4, 15)

    def test_counts_and_totals(self):
        summary = summarize("LOAN1", self.installments, self.today)

        assert summary.total_emis == 5
        assert summary.paid_emis == 2
        assert summary.pending_emis == 3
        assert summary.total_amount == Money(Decimal('5000'))
        assert summary.amount_paid == Money(Decimal('2400'))
        assert summary.outstanding_amount == Money(Decimal('2600'))

    def test_overdue(self):
        summary = summarize("LOAN1", self.installments, self.today)
        assert summary.overdue_emis == 2
        assert summary.overdue_amount == Money(Decimal('1600'))

    def test_representative_status(self):
        """Earliest non-Paid installment drives next due date and status"""
        summary = summarize("LOAN1", self.installments, self.today)
        assert summary.next_due_date == date(2024, 3, 10)
        assert summary.status == InstallmentStatus.OVERDUE

    def test_last_payment_date(self):
        summary = summarize("LOAN1", self.installments, self.today)
        assert summary.last_payment_date == date(2024, 3, 15)

    def test_order_of_input_irrelevant(self):
        forward = summarize("LOAN1", self.installments, self.today)
        backward = summarize("LOAN1", list(reversed(self.installments)), self.today)
        assert forward.to_dict() == backward.to_dict()

    def test_clock_moves_status(self):
        """The same stored facts summarize differently on a later day"""
        early = summarize("LOAN1", self.installments[3:], date(2024, 4, 1))
        late = summarize("LOAN1", self.installments[3:], date(2024, 6, 1))
        assert early.status == InstallmentStatus.PENDING
        assert early.overdue_emis == 0
        assert late.status == InstallmentStatus.OVERDUE
        assert late.overdue_emis == 2

    def test_all_paid(self):
        installments = [
            make_installment(1, date(2024, 1, 10), payments=[(date(2024, 1, 10), "1000")]),
            make_installment(2, date(2024, 2, 10), payments=[(date(2024, 2, 1), "1000")]),
        ]
        summary = summarize("LOAN1", installments, date(2024, 1, 1))
        assert summary.next_due_date is None
        assert summary.status == InstallmentStatus.PAID
        assert summary.is_fully_paid
        assert summary.outstanding_amount == Money.zero()

    def test_no_payments(self):
        summary = summarize("LOAN1", self.installments[3:], date(2024, 4, 1))
        assert summary.last_payment_date is None
        assert summary.amount_paid.is_zero()

    def test_empty_schedule(self):
        """A loan with no schedule is not reported as settled"""
        summary = summarize("LOAN1", [], date(2024, 4, 1), Currency.USD)
        assert summary.total_emis == 0
        assert summary.status == InstallmentStatus.PENDING
        assert summary.next_due_date is None
        assert not summary.is_fully_paid
        assert summary.total_amount == Money.zero(Currency.USD)

    def test_payments_through_past_day(self):
        """Only payments dated on or before the cut-off are counted"""
        summary = summarize("LOAN1", self.installments, date(2024, 2, 11),
                            payments_through=date(2024, 2, 11))
        assert summary.paid_emis == 1
        assert summary.amount_paid == Money(Decimal('1000'))
        assert summary.last_payment_date == date(2024, 1, 9)
        assert summary.next_due_date == date(2024, 2, 10)
        assert summary.status == InstallmentStatus.OVERDUE

    def test_to_dict(self):
        data = summarize("LOAN1", self.installments, self.today).to_dict()
        assert data['status'] == "Overdue"
        assert data['outstanding_amount'] == "2600.00"
        assert data['next_due_date'] == "2024-03-10"
        assert data['currency'] == "INR"


class TestRepresentativeInstallment:
    """Test the tie-break for the displayed loan status"""

    def test_tie_broken_by_emi_number(self):
        same_day = date(2024, 5, 1)
        installments = [make_installment(3, same_day), make_installment(2, same_day)]
        chosen = representative_installment(installments, date(2024, 4, 1))
        assert chosen.emi_number == 2

    def test_paid_installments_skipped(self):
        installments = [
            make_installment(1, date(2024, 1, 1), payments=[(date(2024, 1, 1), "1000")]),
            make_installment(2, date(2024, 2, 1)),
        ]
        assert representative_installment(installments, date(2024, 1, 15)).emi_number == 2

    def test_none_when_all_paid(self):
        installments = [make_installment(1, date(2024, 1, 1), payments=[(date(2024, 1, 1), "1000")])]
        assert representative_installment(installments, date(2024, 1, 15)) is None
