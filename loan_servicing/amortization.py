"""
Amortization Module

Decomposes each scheduled installment into interest and principal along
the contractual declining balance. The decomposition follows the scheduled
amounts, not the cash actually collected: it is the curve the foreclosure
calculator reads remaining principal from.
"""

from decimal import Decimal
from datetime import date
from dataclasses import dataclass
from typing import Iterable, List

from .currency import Money, Currency, round_amount, to_decimal
from .schedule import Installment, monthly_rate


@dataclass
class AmortizationEntry:
    """Single row of the amortization table"""
    emi_number: int
    due_date: date
    payment_amount: Money
    principal_amount: Money
    interest_amount: Money
    remaining_balance: Money

    def __post_init__(self):
        calculated_payment = self.principal_amount + self.interest_amount
        if abs(calculated_payment.amount - self.payment_amount.amount) > Decimal('0.01'):
            raise ValueError(f"Payment amount {self.payment_amount.to_string()} does not equal "
                             f"principal {self.principal_amount.to_string()} + "
                             f"interest {self.interest_amount.to_string()}")


class AmortizationAccountant:
    """
    Tracks the declining balance of one loan

    B[0] = P
    interest[i] = B[i-1] * r
    principal[i] = scheduled[i] - interest[i]
    B[i] = B[i-1] - principal[i]

    Balances are carried at full Decimal precision and only rounded when
    reported, so rounding does not compound across installments.
    """

    def __init__(self, principal, annual_interest_rate, currency: Currency = Currency.INR):
        self.principal = to_decimal(principal)
        self.rate = monthly_rate(annual_interest_rate)
        self.currency = currency

    def balances(self, installments: Iterable[Installment]) -> List[Decimal]:
        """Unrounded balances B[0..N] in emi_number order"""
        balance = self.principal
        trajectory = [balance]
        for installment in _ordered(installments):
            interest = balance * self.rate
            balance = balance - (installment.scheduled_amount.amount - interest)
            trajectory.append(balance)
        return trajectory

    def schedule(self, installments: Iterable[Installment]) -> List[AmortizationEntry]:
        """
        Full amortization table

        Each principal portion is the drop between consecutive rounded
        balances, so the portions sum to P - B[N] exactly and interest takes
        the rounding.
        """
        entries = []
        balance = self.principal
        previous = Money(balance, self.currency)
        for installment in _ordered(installments):
            payment = installment.scheduled_amount
            balance = balance + balance * self.rate - payment.amount
            remaining = Money(balance, self.currency)
            principal_part = previous - remaining
            entries.append(AmortizationEntry(
                emi_number=installment.emi_number,
                due_date=installment.due_date,
                payment_amount=payment,
                principal_amount=principal_part,
                interest_amount=payment - principal_part,
                remaining_balance=remaining,
            ))
            previous = remaining
        return entries

    def balance_after(self, installments: Iterable[Installment], k: int) -> Money:
        """
        Contractual principal outstanding after k installments, clamped at zero

        k is capped to the schedule length; k <= 0 returns the full principal.
        """
        trajectory = self.balances(installments)
        k = max(0, min(k, len(trajectory) - 1))
        return Money(trajectory[k], self.currency).non_negative()

    def total_interest(self, installments: Iterable[Installment]) -> Money:
        """Interest component summed over the whole schedule"""
        entries = self.schedule(installments)
        total = Money.zero(self.currency)
        for entry in entries:
            total = total + entry.interest_amount
        return total


def closed_form_balance(principal, annual_interest_rate, emi, k: int,
                        currency: Currency = Currency.INR) -> Money:
    """
    Balance after k level payments, from the annuity identity

    B[k] = P(1+r)^k - EMI((1+r)^k - 1) / r, or P - k*EMI when r == 0.
    """
    principal = to_decimal(principal)
    emi = to_decimal(emi)
    rate = monthly_rate(annual_interest_rate)
    if rate == 0:
        balance = principal - emi * k
    else:
        growth = (Decimal('1') + rate) ** k
        balance = principal * growth - emi * (growth - Decimal('1')) / rate
    return Money(round_amount(balance, currency), currency)


def _ordered(installments: Iterable[Installment]) -> List[Installment]:
    return sorted(installments, key=lambda inst: inst.emi_number)
