"""
Payment Ledger Module

Applies payment events to a single installment. The payment history is
append-only and amount_paid is always recomputed from it. Status is never
stored: it is derived from the paid amount, the scheduled amount, the due
date and the current date, so an installment turns Overdue purely by the
clock moving past its due date.
"""

from dataclasses import replace
from datetime import date
from enum import Enum
from typing import Iterable, List, Optional

from .clock import Clock, SystemClock
from .currency import Money, sum_money
from .errors import InvalidAmountError, InvalidPaymentModeError, ReconciliationError
from .schedule import Installment, PaymentEvent


class InstallmentStatus(Enum):
    """Derived installment states"""
    PENDING = "Pending"
    PARTIALLY_PAID = "Partially Paid"
    PAID = "Paid"
    OVERDUE = "Overdue"     # past due without full settlement


class PaymentMode:
    """Instruments offered at the collection desk; any other label is accepted"""
    CASH = "Cash"
    ONLINE = "Online"
    GPAY = "GPay"
    PHONEPE = "PhonePe"
    CHEQUE = "Cheque"

    ALL = (CASH, ONLINE, GPAY, PHONEPE, CHEQUE)


def installment_status(installment: Installment, today: date) -> InstallmentStatus:
    """
    Derive an installment's status as of today

    Paid wins regardless of dates; otherwise a passed due date makes the
    installment Overdue whether or not something was collected.
    """
    paid = installment.amount_paid
    if paid >= installment.scheduled_amount:
        return InstallmentStatus.PAID
    if installment.due_date < today:
        return InstallmentStatus.OVERDUE
    if paid.is_positive():
        return InstallmentStatus.PARTIALLY_PAID
    return InstallmentStatus.PENDING


def check_reconciliation(installment: Installment) -> None:
    """Raise ReconciliationError unless amount_paid equals the history total"""
    history_total = installment.history_total()
    if installment.amount_paid != history_total:
        raise ReconciliationError(installment.id, installment.amount_paid.amount, history_total.amount)


class PaymentLedger:
    """
    Records collections against installments

    Operations return a new Installment value and never mutate their input,
    so a rejected call leaves the caller's copy untouched.
    """

    def __init__(self, clock: Optional[Clock] = None):
        self.clock = clock or SystemClock()

    def status(self, installment: Installment, today: Optional[date] = None) -> InstallmentStatus:
        return installment_status(installment, today or self.clock.today())

    def apply_payment(
        self,
        installment: Installment,
        events: Iterable[PaymentEvent],
        actor: Optional[str] = None
    ) -> Installment:
        """
        Append payment events and recompute the paid amount

        Several events may be applied at once, e.g. part cash and part
        cheque on the same day, or a backfill of collections made on
        different dates. Collections beyond the scheduled amount are kept as
        recorded over-collection; the status stays Paid.

        Args:
            installment: Installment to pay against
            events: One or more payment events, each with a positive amount
            actor: Operator recording the payment

        Returns:
            Updated installment with the next version number

        Raises:
            InvalidAmountError: If no events are given or any amount <= 0
            InvalidPaymentModeError: If any event has a blank mode
        """
        events = list(events)
        if not events:
            raise InvalidAmountError(installment.id, None, "at least one payment event is required")

        now = self.clock.now()
        stamped: List[PaymentEvent] = []
        for event in events:
            self._validate_event(installment, event)
            stamped.append(replace(
                event,
                mode=event.mode.strip(),
                recorded_at=event.recorded_at or now,
                recorded_by=event.recorded_by or actor,
            ))

        history = list(installment.payment_history) + stamped
        updated = replace(
            installment,
            payment_history=history,
            amount_paid=sum_money((event.amount for event in history), installment.currency),
            updated_at=now,
            updated_by=actor,
            version=installment.version + 1,
        )
        check_reconciliation(updated)
        return updated

    def set_surcharge(
        self,
        installment: Installment,
        overdue_amount: Money,
        remarks: Optional[str] = None,
        actor: Optional[str] = None
    ) -> Installment:
        """
        Record the operator-entered overdue surcharge and remarks

        The surcharge is descriptive only; it does not change the scheduled
        amount, the paid amount or the status.
        """
        if overdue_amount.currency != installment.currency:
            raise InvalidAmountError(installment.id, overdue_amount.to_string(), "currency mismatch")
        if overdue_amount.is_negative():
            raise InvalidAmountError(installment.id, overdue_amount.amount, "surcharge cannot be negative")

        return replace(
            installment,
            overdue_amount=overdue_amount,
            remarks=installment.remarks if remarks is None else remarks.strip(),
            updated_at=self.clock.now(),
            updated_by=actor,
            version=installment.version + 1,
        )

    def _validate_event(self, installment: Installment, event: PaymentEvent) -> None:
        if event.amount.currency != installment.currency:
            raise InvalidAmountError(installment.id, event.amount.to_string(), "currency mismatch")
        if not event.amount.is_positive():
            raise InvalidAmountError(installment.id, event.amount.amount)
        if not isinstance(event.mode, str) or not event.mode.strip():
            raise InvalidPaymentModeError(installment.id, event.mode)
