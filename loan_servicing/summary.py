"""
Status Aggregator Module

Derives a loan-level summary from its installments and the current date.
Summaries are computed on read and never stored on the loan record.
"""

from datetime import date
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional

from .currency import Money, Currency, sum_money
from .ledger import InstallmentStatus, installment_status
from .schedule import Installment


@dataclass
class LoanSummary:
    """Aggregate view of one loan's repayment position"""
    loan_id: str
    as_of: date
    total_emis: int
    paid_emis: int
    total_amount: Money
    amount_paid: Money
    outstanding_amount: Money
    overdue_emis: int
    overdue_amount: Money
    next_due_date: Optional[date]
    status: InstallmentStatus
    last_payment_date: Optional[date]

    @property
    def pending_emis(self) -> int:
        return self.total_emis - self.paid_emis

    @property
    def is_fully_paid(self) -> bool:
        return self.total_emis > 0 and self.paid_emis == self.total_emis

    def to_dict(self) -> Dict[str, Any]:
        return {
            'loan_id': self.loan_id,
            'as_of': self.as_of.isoformat(),
            'total_emis': self.total_emis,
            'paid_emis': self.paid_emis,
            'pending_emis': self.pending_emis,
            'total_amount': str(self.total_amount.amount),
            'amount_paid': str(self.amount_paid.amount),
            'outstanding_amount': str(self.outstanding_amount.amount),
            'overdue_emis': self.overdue_emis,
            'overdue_amount': str(self.overdue_amount.amount),
            'next_due_date': self.next_due_date.isoformat() if self.next_due_date else None,
            'status': self.status.value,
            'last_payment_date': self.last_payment_date.isoformat() if self.last_payment_date else None,
            'currency': self.total_amount.currency.code,
        }


def representative_installment(installments: Iterable[Installment],
                               today: date) -> Optional[Installment]:
    """
    The installment a collections screen shows as "the" loan status

    Earliest due date among the non-Paid installments, ties broken by the
    lowest emi_number. None when everything is paid.
    """
    unpaid = [inst for inst in installments
              if installment_status(inst, today) != InstallmentStatus.PAID]
    if not unpaid:
        return None
    return min(unpaid, key=lambda inst: (inst.due_date, inst.emi_number))


def summarize(loan_id: str, installments: Iterable[Installment], today: date,
              currency: Optional[Currency] = None,
              payments_through: Optional[date] = None) -> LoanSummary:
    """
    Build the loan summary as of today

    Args:
        loan_id: Loan being summarised
        installments: The loan's installments, in any order
        today: Date statuses are evaluated against
        currency: Currency for an empty schedule (defaults to INR)
        payments_through: Leave out payment events dated after this day

    Returns:
        LoanSummary; a loan with nothing left to collect reports status Paid
        and no next due date, a loan with no schedule reports Pending
    """
    installments: List[Installment] = list(installments)
    if payments_through is not None:
        installments = [inst.as_of(payments_through) for inst in installments]
    if installments:
        currency = installments[0].currency
    currency = currency or Currency.INR

    statuses = [installment_status(inst, today) for inst in installments]
    overdue = [inst for inst, status in zip(installments, statuses)
               if status == InstallmentStatus.OVERDUE]

    representative = representative_installment(installments, today)
    if representative is not None:
        next_due_date = representative.due_date
        status = installment_status(representative, today)
    elif installments:
        next_due_date = None
        status = InstallmentStatus.PAID
    else:
        next_due_date = None
        status = InstallmentStatus.PENDING

    payment_dates = [inst.last_payment_date for inst in installments if inst.has_payments]

    return LoanSummary(
        loan_id=loan_id,
        as_of=today,
        total_emis=len(installments),
        paid_emis=sum(1 for status_ in statuses if status_ == InstallmentStatus.PAID),
        total_amount=sum_money((inst.scheduled_amount for inst in installments), currency),
        amount_paid=sum_money((inst.amount_paid for inst in installments), currency),
        outstanding_amount=sum_money((inst.remaining_amount for inst in installments), currency),
        overdue_emis=len(overdue),
        overdue_amount=sum_money((inst.remaining_amount for inst in overdue), currency),
        next_due_date=next_due_date,
        status=status,
        last_payment_date=max(payment_dates) if payment_dates else None,
    )
