"""
Collections Queue Module

Builds the follow-up and seized-vehicle work queues that collection agents
work from. Rows are derived from each loan's installments on read; nothing
here writes to storage.
"""

from datetime import date
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Tuple

from .currency import Money, Currency, sum_money
from .ledger import InstallmentStatus, installment_status
from .schedule import Installment
from .summary import representative_installment


@dataclass
class CollectionsFilter:
    """
    Criteria for a collections queue

    due_from/due_to bound the due dates of unpaid installments; either end
    may be open. text matches loan number, customer name or vehicle number;
    mobile matches applicant or guarantor numbers. Both are case-insensitive
    substring matches.
    """
    due_from: Optional[date] = None
    due_to: Optional[date] = None
    text: Optional[str] = None
    mobile: Optional[str] = None
    is_seized: Optional[bool] = None
    follow_up_date: Optional[date] = None
    include_closed: bool = False

    @property
    def has_window(self) -> bool:
        return self.due_from is not None or self.due_to is not None

    def in_window(self, due_date: date) -> bool:
        if self.due_from is not None and due_date < self.due_from:
            return False
        if self.due_to is not None and due_date > self.due_to:
            return False
        return True


@dataclass
class CollectionsRow:
    """One loan in a collections queue"""
    loan_id: str
    loan_number: str
    customer_name: str
    vehicle_number: str
    unpaid_months: int
    total_due_amount: Money
    next_due_date: Optional[date]
    status: InstallmentStatus
    mobile_numbers: List[str] = field(default_factory=list)
    guarantor_name: str = ""
    guarantor_mobile_numbers: List[str] = field(default_factory=list)
    is_seized: bool = False
    client_response: str = ""
    next_follow_up_date: Optional[date] = None

    @property
    def contact_numbers(self) -> List[str]:
        """Applicant numbers first, then guarantor numbers, without repeats"""
        numbers: List[str] = []
        for number in self.mobile_numbers + self.guarantor_mobile_numbers:
            if number and number not in numbers:
                numbers.append(number)
        return numbers

    def to_dict(self) -> Dict[str, Any]:
        return {
            'loan_id': self.loan_id,
            'loan_number': self.loan_number,
            'customer_name': self.customer_name,
            'vehicle_number': self.vehicle_number,
            'unpaid_months': self.unpaid_months,
            'total_due_amount': str(self.total_due_amount.amount),
            'next_due_date': self.next_due_date.isoformat() if self.next_due_date else None,
            'status': self.status.value,
            'mobile_numbers': list(self.mobile_numbers),
            'guarantor_name': self.guarantor_name,
            'guarantor_mobile_numbers': list(self.guarantor_mobile_numbers),
            'is_seized': self.is_seized,
            'client_response': self.client_response,
            'next_follow_up_date': self.next_follow_up_date.isoformat() if self.next_follow_up_date else None,
        }


class CollectionsQueueBuilder:
    """
    Turns (loan, installments) pairs into queue rows

    A loan is expected to expose id, loan_number, customer_name,
    vehicle_number, mobile_numbers, guarantor_name, guarantor_mobile_numbers,
    is_seized, is_active, client_response and next_follow_up_date.
    """

    def build(
        self,
        loans: Iterable[Tuple[Any, List[Installment]]],
        collections_filter: CollectionsFilter,
        today: date
    ) -> List[CollectionsRow]:
        """
        Build a queue

        A loan is listed only when at least one of its unpaid installments
        falls inside the due-date window (any unpaid installment when there
        is no window). Unpaid month and amount totals cover the whole loan.

        Returns:
            Rows sorted by earliest unpaid due date, then loan number
        """
        rows = []
        for loan, installments in loans:
            if not self._matches_loan(loan, collections_filter):
                continue

            unpaid = [inst for inst in installments
                      if installment_status(inst, today) != InstallmentStatus.PAID]
            if not unpaid:
                continue
            if collections_filter.has_window and not any(
                    collections_filter.in_window(inst.due_date) for inst in unpaid):
                continue

            rows.append(self._build_row(loan, installments, unpaid, today))

        rows.sort(key=lambda row: (row.next_due_date or date.max, row.loan_number))
        return rows

    def follow_up_filter(self, today: date, collections_filter: Optional[CollectionsFilter] = None) -> CollectionsFilter:
        """Follow-up preset: loans not seized, due window defaulting to today"""
        base = collections_filter or CollectionsFilter()
        due_from, due_to = base.due_from, base.due_to
        if due_from is None and due_to is None:
            due_from = due_to = today
        return CollectionsFilter(
            due_from=due_from,
            due_to=due_to,
            text=base.text,
            mobile=base.mobile,
            is_seized=False,
            follow_up_date=base.follow_up_date,
            include_closed=base.include_closed,
        )

    def seized_filter(self, collections_filter: Optional[CollectionsFilter] = None) -> CollectionsFilter:
        """Seized-vehicle preset: seized loans with anything unpaid, no date window"""
        base = collections_filter or CollectionsFilter()
        return CollectionsFilter(
            text=base.text,
            mobile=base.mobile,
            is_seized=True,
            follow_up_date=base.follow_up_date,
            include_closed=base.include_closed,
        )

    def _matches_loan(self, loan: Any, collections_filter: CollectionsFilter) -> bool:
        if not collections_filter.include_closed and not loan.is_active:
            return False
        if collections_filter.is_seized is not None and loan.is_seized != collections_filter.is_seized:
            return False
        if collections_filter.follow_up_date is not None and \
                loan.next_follow_up_date != collections_filter.follow_up_date:
            return False

        if collections_filter.text:
            needle = collections_filter.text.strip().lower()
            haystack = (loan.loan_number, loan.customer_name, loan.vehicle_number or "")
            if not any(needle in value.lower() for value in haystack):
                return False

        if collections_filter.mobile:
            needle = _digits(collections_filter.mobile)
            numbers = list(loan.mobile_numbers) + list(loan.guarantor_mobile_numbers)
            if not needle or not any(needle in _digits(number) for number in numbers):
                return False

        return True

    def _build_row(self, loan: Any, installments: List[Installment],
                   unpaid: List[Installment], today: date) -> CollectionsRow:
        currency = installments[0].currency if installments else Currency.INR
        representative = representative_installment(installments, today)

        return CollectionsRow(
            loan_id=loan.id,
            loan_number=loan.loan_number,
            customer_name=loan.customer_name,
            vehicle_number=loan.vehicle_number or "",
            unpaid_months=len(unpaid),
            total_due_amount=sum_money((inst.remaining_amount for inst in unpaid), currency),
            next_due_date=representative.due_date,
            status=installment_status(representative, today),
            mobile_numbers=list(loan.mobile_numbers),
            guarantor_name=loan.guarantor_name or "",
            guarantor_mobile_numbers=list(loan.guarantor_mobile_numbers),
            is_seized=loan.is_seized,
            client_response=loan.client_response or "",
            next_follow_up_date=loan.next_follow_up_date,
        )


def _digits(value: str) -> str:
    return "".join(ch for ch in value if ch.isdigit())
