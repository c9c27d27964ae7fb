"""
Money Module

Currency codes and the immutable Money value used for every scheduled,
collected and outstanding amount. NEVER uses float for monetary values.
"""

from decimal import Decimal, ROUND_HALF_UP, InvalidOperation, getcontext
from dataclasses import dataclass
from typing import Iterable, Union
from enum import Enum
import re

# High precision for annuity factors like (1 + r) ** 360
getcontext().prec = 28


class Currency(Enum):
    """ISO 4217 currency codes with minor-unit precision"""
    INR = ("INR", 2)  # Indian Rupee, 2 decimal places (paise)
    USD = ("USD", 2)
    EUR = ("EUR", 2)
    GBP = ("GBP", 2)
    JPY = ("JPY", 0)

    def __init__(self, code: str, precision: int):
        self.code = code
        self.precision = precision

    @property
    def quantum(self) -> Decimal:
        """Smallest representable unit, e.g. Decimal('0.01')"""
        return Decimal('0.1') ** self.precision


@dataclass(frozen=True)
class Money:
    """
    Immutable money representation with currency and proper precision.
    The amount is always rounded half-up to the currency's minor unit.
    """
    amount: Decimal
    currency: Currency = Currency.INR

    def __post_init__(self):
        if not isinstance(self.amount, Decimal):
            object.__setattr__(self, 'amount', Decimal(str(self.amount)))
        rounded = round_amount(self.amount, self.currency)
        if rounded.is_zero():
            rounded = abs(rounded)  # no "-0.00"
        object.__setattr__(self, 'amount', rounded)

    @classmethod
    def zero(cls, currency: Currency = Currency.INR) -> 'Money':
        return cls(Decimal('0'), currency)

    def __add__(self, other: 'Money') -> 'Money':
        self._check_currency(other, "add")
        return Money(self.amount + other.amount, self.currency)

    def __sub__(self, other: 'Money') -> 'Money':
        self._check_currency(other, "subtract")
        return Money(self.amount - other.amount, self.currency)

    def __mul__(self, multiplier: Decimal) -> 'Money':
        if not isinstance(multiplier, Decimal):
            multiplier = Decimal(str(multiplier))
        return Money(self.amount * multiplier, self.currency)

    def __neg__(self) -> 'Money':
        return Money(-self.amount, self.currency)

    def __eq__(self, other) -> bool:
        if not isinstance(other, Money):
            return False
        return self.amount == other.amount and self.currency == other.currency

    def __hash__(self) -> int:
        return hash((self.amount, self.currency))

    def __lt__(self, other: 'Money') -> bool:
        self._check_currency(other, "compare")
        return self.amount < other.amount

    def __le__(self, other: 'Money') -> bool:
        self._check_currency(other, "compare")
        return self.amount <= other.amount

    def __gt__(self, other: 'Money') -> bool:
        self._check_currency(other, "compare")
        return self.amount > other.amount

    def __ge__(self, other: 'Money') -> bool:
        self._check_currency(other, "compare")
        return self.amount >= other.amount

    def _check_currency(self, other: 'Money', operation: str) -> None:
        if self.currency != other.currency:
            raise ValueError(f"Cannot {operation} {self.currency.code} and {other.currency.code}")

    def is_zero(self) -> bool:
        """Check if amount is exactly zero"""
        return self.amount == Decimal('0')

    def is_positive(self) -> bool:
        """Check if amount is positive"""
        return self.amount > Decimal('0')

    def is_negative(self) -> bool:
        """Check if amount is negative"""
        return self.amount < Decimal('0')

    def non_negative(self) -> 'Money':
        """Clamp at zero"""
        if self.is_negative():
            return Money.zero(self.currency)
        return self

    def to_string(self) -> str:
        """Format for display"""
        if self.currency.precision == 0:
            return f"{self.currency.code} {self.amount:,.0f}"
        return f"{self.currency.code} {self.amount:,.{self.currency.precision}f}"


def round_amount(value: Decimal, currency: Currency = Currency.INR) -> Decimal:
    """Round a raw Decimal to the currency's minor unit (half-up)"""
    return value.quantize(currency.quantum, rounding=ROUND_HALF_UP)


def sum_money(amounts: Iterable[Money], currency: Currency = Currency.INR) -> Money:
    """Sum Money values, starting from zero in the given currency"""
    total = Money.zero(currency)
    for amount in amounts:
        total = total + amount
    return total


def to_decimal(value: Union[Decimal, int, str, float]) -> Decimal:
    """
    Convert operator input to Decimal, handling common formats

    Accepts Decimal, int, numeric strings with currency symbols or thousands
    separators ("₹1,25,000.50"), and floats (converted through str so that
    0.1 stays 0.1).

    Raises:
        ValueError: If the value cannot be converted to a Decimal
    """
    if isinstance(value, Decimal):
        return value
    if isinstance(value, bool):
        raise ValueError(f"Cannot convert {value!r} to Decimal")
    if isinstance(value, (int, float)):
        return Decimal(str(value))
    if not value or not isinstance(value, str):
        raise ValueError("Value must be a number or a non-empty string")

    # Strip currency symbols, whitespace and grouping commas
    clean_value = re.sub(r'[^\d.\-+]', '', value.strip())
    try:
        return Decimal(clean_value)
    except InvalidOperation:
        raise ValueError(f"Cannot convert '{value}' to Decimal")
