"""
Schedule Generator Module

Turns loan terms into a deterministic equal-monthly-installment (EMI)
repayment schedule, and re-amortizes the unpaid tail of an existing schedule
when a loan's terms are edited.
"""

from decimal import Decimal
from datetime import datetime, timezone, date
from dataclasses import dataclass, field, replace
from typing import Dict, Iterable, List, Optional, Tuple, Any
import calendar

from .currency import Money, Currency, round_amount, to_decimal
from .errors import InvalidTermsError
from .storage import StorageRecord


@dataclass
class LoanTerms:
    """Loan terms needed to build a schedule"""
    principal: Decimal
    annual_interest_rate: Decimal       # percent, e.g. 12 for 12% p.a.
    tenure_months: int
    start_date: date                    # installment i falls due start_date + i months
    first_due_date: Optional[date] = None  # overrides start_date + 1 month as the anchor
    currency: Currency = Currency.INR

    def __post_init__(self):
        self.principal, self.annual_interest_rate, self.tenure_months = validate_terms(
            self.principal, self.annual_interest_rate, self.tenure_months
        )
        try:
            self.due_date(self.tenure_months)
        except (ValueError, OverflowError):
            raise InvalidTermsError(
                "tenure_months", self.tenure_months, "final due date falls beyond the year 9999"
            )

    @property
    def monthly_rate(self) -> Decimal:
        """r = R / 12 / 100"""
        return monthly_rate(self.annual_interest_rate)

    def due_date(self, emi_number: int) -> date:
        """Due date of installment number emi_number (1-based)"""
        if self.first_due_date:
            return add_months(self.first_due_date, emi_number - 1)
        return add_months(self.start_date, emi_number)


@dataclass(frozen=True)
class PaymentEvent:
    """One collection against an installment. Immutable once appended."""
    date: date
    mode: str
    amount: Money
    recorded_at: Optional[datetime] = None
    recorded_by: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'date': self.date.isoformat(),
            'mode': self.mode,
            'amount': str(self.amount.amount),
            'currency': self.amount.currency.code,
            'recorded_at': self.recorded_at.isoformat() if self.recorded_at else None,
            'recorded_by': self.recorded_by,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PaymentEvent':
        return cls(
            date=date.fromisoformat(data['date']),
            mode=data['mode'],
            amount=Money(Decimal(data['amount']), Currency[data.get('currency', 'INR')]),
            recorded_at=datetime.fromisoformat(data['recorded_at']) if data.get('recorded_at') else None,
            recorded_by=data.get('recorded_by'),
        )


@dataclass
class Installment(StorageRecord):
    """
    One scheduled repayment of a loan.

    amount_paid is always the sum of payment_history; status is derived by
    the payment ledger from these stored facts and the current date.
    """
    loan_id: str
    emi_number: int
    due_date: date
    scheduled_amount: Money
    amount_paid: Money = None
    payment_history: List[PaymentEvent] = field(default_factory=list)
    overdue_amount: Money = None        # operator-entered surcharge
    remarks: str = ""
    loan_number: str = ""
    customer_name: str = ""
    updated_by: Optional[str] = None
    version: int = 0

    def __post_init__(self):
        zero = Money.zero(self.scheduled_amount.currency)
        if self.amount_paid is None:
            self.amount_paid = zero
        if self.overdue_amount is None:
            self.overdue_amount = zero

    @property
    def currency(self) -> Currency:
        return self.scheduled_amount.currency

    @property
    def has_payments(self) -> bool:
        return bool(self.payment_history)

    @property
    def remaining_amount(self) -> Money:
        """Amount still to collect (never negative)"""
        return (self.scheduled_amount - self.amount_paid).non_negative()

    @property
    def excess_amount(self) -> Money:
        """Over-collection beyond the scheduled amount"""
        return (self.amount_paid - self.scheduled_amount).non_negative()

    @property
    def last_payment_date(self) -> Optional[date]:
        if not self.payment_history:
            return None
        return max(event.date for event in self.payment_history)

    @property
    def payment_modes(self) -> List[str]:
        """Distinct instruments used, in first-use order"""
        modes: List[str] = []
        for event in self.payment_history:
            if event.mode not in modes:
                modes.append(event.mode)
        return modes

    def history_total(self) -> Money:
        total = Money.zero(self.currency)
        for event in self.payment_history:
            total = total + event.amount
        return total

    def as_of(self, on: date) -> 'Installment':
        """
        The installment as it stood at the end of a given day

        Payment events dated after that day are left out and amount_paid is
        re-summed from the events that remain.
        """
        history = [event for event in self.payment_history if event.date <= on]
        if len(history) == len(self.payment_history):
            return self
        total = Money.zero(self.currency)
        for event in history:
            total = total + event.amount
        return replace(self, payment_history=history, amount_paid=total)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'loan_id': self.loan_id,
            'loan_number': self.loan_number,
            'customer_name': self.customer_name,
            'emi_number': self.emi_number,
            'due_date': self.due_date.isoformat(),
            'currency': self.currency.code,
            'scheduled_amount': str(self.scheduled_amount.amount),
            'amount_paid': str(self.amount_paid.amount),
            'overdue_amount': str(self.overdue_amount.amount),
            'payment_history': [event.to_dict() for event in self.payment_history],
            'remarks': self.remarks,
            'updated_by': self.updated_by,
            'version': self.version,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Installment':
        currency = Currency[data.get('currency', 'INR')]
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            loan_id=data['loan_id'],
            loan_number=data.get('loan_number', ''),
            customer_name=data.get('customer_name', ''),
            emi_number=data['emi_number'],
            due_date=date.fromisoformat(data['due_date']),
            scheduled_amount=Money(Decimal(data['scheduled_amount']), currency),
            amount_paid=Money(Decimal(data['amount_paid']), currency),
            overdue_amount=Money(Decimal(data.get('overdue_amount', '0')), currency),
            payment_history=[PaymentEvent.from_dict(e) for e in data.get('payment_history', [])],
            remarks=data.get('remarks') or "",
            updated_by=data.get('updated_by'),
            version=data.get('version', 0),
        )


def monthly_rate(annual_interest_rate: Decimal) -> Decimal:
    """Convert an annual percent rate to a monthly fraction"""
    return to_decimal(annual_interest_rate) / Decimal('12') / Decimal('100')


def validate_terms(principal, annual_interest_rate, tenure_months) -> Tuple[Decimal, Decimal, int]:
    """
    Normalise and validate principal, rate and tenure

    Raises:
        InvalidTermsError: If principal <= 0, tenure <= 0 or rate < 0
    """
    if isinstance(tenure_months, bool) or not isinstance(tenure_months, int):
        raise InvalidTermsError("tenure_months", tenure_months, "must be a whole number of months")
    try:
        principal = to_decimal(principal)
    except ValueError as e:
        raise InvalidTermsError("principal", principal, str(e))
    try:
        annual_interest_rate = to_decimal(annual_interest_rate)
    except ValueError as e:
        raise InvalidTermsError("annual_interest_rate", annual_interest_rate, str(e))

    if not principal.is_finite() or principal <= 0:
        raise InvalidTermsError("principal", principal, "must be greater than zero")
    if tenure_months <= 0:
        raise InvalidTermsError("tenure_months", tenure_months, "must be greater than zero")
    if not annual_interest_rate.is_finite() or annual_interest_rate < 0:
        raise InvalidTermsError("annual_interest_rate", annual_interest_rate, "cannot be negative")
    return principal, annual_interest_rate, tenure_months


def calculate_emi(principal, annual_interest_rate, tenure_months: int,
                  currency: Currency = Currency.INR) -> Decimal:
    """
    Calculate the equal monthly installment, rounded to the currency unit

    Standard annuity formula: P * r * (1+r)^N / ((1+r)^N - 1), or P / N when
    the rate is zero.

    Raises:
        InvalidTermsError: If principal <= 0, tenure <= 0 or rate < 0
    """
    principal, annual_interest_rate, tenure_months = validate_terms(
        principal, annual_interest_rate, tenure_months
    )
    return _emi_for(principal, monthly_rate(annual_interest_rate), tenure_months, currency)


def _emi_for(principal: Decimal, rate: Decimal, tenure_months: int, currency: Currency) -> Decimal:
    if rate == 0:
        emi = principal / Decimal(tenure_months)
    else:
        factor = (Decimal('1') + rate) ** tenure_months
        emi = principal * rate * factor / (factor - Decimal('1'))
    return round_amount(emi, currency)


def add_months(start_date: date, months: int) -> date:
    """Add months to a date, clamping to the last day of short months"""
    month = start_date.month - 1 + months
    year = start_date.year + month // 12
    month = month % 12 + 1
    day = min(start_date.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def installment_id(loan_id: str, emi_number: int) -> str:
    return f"{loan_id}_{emi_number}"


def generate_schedule(
    terms: LoanTerms,
    loan_id: str = "",
    loan_number: str = "",
    customer_name: str = "",
    absorb_rounding_residual: bool = True,
    created_at: Optional[datetime] = None
) -> List[Installment]:
    """
    Generate the full repayment schedule for a loan

    Every installment carries the same rounded EMI. With
    absorb_rounding_residual the last installment is trued up by the few
    paise of rounding drift so the contractual balance ends at exactly zero.

    Args:
        terms: Validated loan terms
        loan_id: Owning loan id (installment ids derive from it)
        loan_number: Denormalised onto each installment for queues
        customer_name: Denormalised onto each installment for queues
        absorb_rounding_residual: True-up the final installment
        created_at: Timestamp for the new records (defaults to now)

    Returns:
        Installments numbered 1..N in due-date order
    """
    currency = terms.currency
    rate = terms.monthly_rate
    n = terms.tenure_months
    emi = _emi_for(terms.principal, rate, n, currency)
    if emi <= 0:
        raise InvalidTermsError("principal", terms.principal, f"too small to spread over {n} installments")

    amounts = [emi] * n
    if absorb_rounding_residual:
        amounts[-1] = _final_true_up(terms.principal, rate, amounts, currency)

    now = created_at or datetime.now(timezone.utc)
    return [
        Installment(
            id=installment_id(loan_id, number),
            created_at=now,
            updated_at=now,
            loan_id=loan_id,
            loan_number=loan_number,
            customer_name=customer_name,
            emi_number=number,
            due_date=terms.due_date(number),
            scheduled_amount=Money(amount, currency),
        )
        for number, amount in enumerate(amounts, start=1)
    ]


def regenerate_schedule(
    existing: Iterable[Installment],
    terms: LoanTerms,
    loan_id: str,
    loan_number: str = "",
    customer_name: str = "",
    absorb_rounding_residual: bool = True,
    created_at: Optional[datetime] = None
) -> List[Installment]:
    """
    Rebuild a schedule after the loan's terms changed

    Installments that already carry payments are kept exactly as they are
    (number, due date, scheduled amount, history). Every other slot 1..N is
    re-created with a level amount chosen so that the whole schedule, kept
    installments included, amortizes the new principal at the new rate.

    Raises:
        InvalidTermsError: If the new tenure drops a paid installment, or the
            paid installments already cover the new principal
    """
    existing = list(existing)
    if not existing:
        return generate_schedule(terms, loan_id, loan_number, customer_name,
                                 absorb_rounding_residual, created_at)

    kept = {inst.emi_number: inst for inst in existing if inst.has_payments}
    n = terms.tenure_months
    beyond = [number for number in kept if number > n]
    if beyond:
        raise InvalidTermsError(
            "tenure_months", n, f"installment {max(beyond)} already carries payments"
        )

    open_numbers = [number for number in range(1, n + 1) if number not in kept]
    if not open_numbers:
        return [kept[number] for number in sorted(kept)]

    currency = terms.currency
    rate = terms.monthly_rate
    fixed = {number: inst.scheduled_amount.amount for number, inst in kept.items()}
    level = round_amount(_level_payment(terms.principal, rate, n, fixed, open_numbers), currency)
    if level <= 0:
        raise InvalidTermsError("principal", terms.principal, "already covered by paid installments")

    amounts = dict(fixed)
    for number in open_numbers:
        amounts[number] = level
    if absorb_rounding_residual:
        ordered = [amounts[number] for number in range(1, n + 1)]
        last_open = open_numbers[-1]
        if last_open == n:
            amounts[n] = _final_true_up(terms.principal, rate, ordered, currency)

    now = created_at or datetime.now(timezone.utc)
    schedule = []
    for number in range(1, n + 1):
        if number in kept:
            schedule.append(kept[number])
            continue
        schedule.append(Installment(
            id=installment_id(loan_id, number),
            created_at=now,
            updated_at=now,
            loan_id=loan_id,
            loan_number=loan_number,
            customer_name=customer_name,
            emi_number=number,
            due_date=terms.due_date(number),
            scheduled_amount=Money(amounts[number], currency),
        ))
    return schedule


def _level_payment(principal: Decimal, rate: Decimal, n: int,
                   fixed: Dict[int, Decimal], open_numbers: List[int]) -> Decimal:
    # Solve P(1+r)^N = sum(a_i (1+r)^(N-i)) for the common amount of open slots
    growth = Decimal('1') + rate
    target = principal * growth ** n
    for number, amount in fixed.items():
        target -= amount * growth ** (n - number)
    weight = sum((growth ** (n - number) for number in open_numbers), Decimal('0'))
    return target / weight


def _final_true_up(principal: Decimal, rate: Decimal, amounts: List[Decimal],
                   currency: Currency) -> Decimal:
    # Balance just before the last installment, at full precision
    balance = principal
    for amount in amounts[:-1]:
        balance = balance + balance * rate - amount
    final = round_amount(balance + balance * rate, currency)
    if final <= 0:
        # Earlier installments already retire the balance; keep the level amount
        return amounts[-1]
    return final


def total_interest(installments: Iterable[Installment], principal: Decimal) -> Money:
    """Total interest over the life of a schedule"""
    installments = list(installments)
    currency = installments[0].currency if installments else Currency.INR
    scheduled = sum((inst.scheduled_amount.amount for inst in installments), Decimal('0'))
    return Money(scheduled - to_decimal(principal), currency)


def emi_end_date(installments: Iterable[Installment]) -> Optional[date]:
    """Due date of the final installment"""
    dates = [inst.due_date for inst in installments]
    return max(dates) if dates else None
