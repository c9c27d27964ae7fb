"""
Foreclosure Calculator Module

Quotes the amount needed to close a loan early. The payoff is the
contractual principal still outstanding on the amortization curve after k
installments; how k is counted is selected by ForeclosurePolicy.
"""

from datetime import date
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional
import logging

from .amortization import AmortizationAccountant
from .clock import Clock, SystemClock
from .currency import Money, Currency, sum_money
from .ledger import InstallmentStatus, installment_status
from .schedule import Installment

logger = logging.getLogger(__name__)


class ForeclosurePolicy(Enum):
    """How many installments count as retired when quoting a payoff"""
    SETTLED_INSTALLMENTS = "settled_installments"   # fully paid installments
    ELAPSED_DUE_DATES = "elapsed_due_dates"         # installments whose due date has passed


@dataclass
class ForeclosureQuote:
    """Payoff quote for one loan on one date"""
    loan_id: str
    as_of: date
    policy: ForeclosurePolicy
    installments_counted: int
    remaining_principal: Money
    foreclosure_amount: Money
    amount_collected: Money

    def to_dict(self) -> Dict[str, Any]:
        return {
            'loan_id': self.loan_id,
            'as_of': self.as_of.isoformat(),
            'policy': self.policy.value,
            'installments_counted': self.installments_counted,
            'remaining_principal': str(self.remaining_principal.amount),
            'foreclosure_amount': str(self.foreclosure_amount.amount),
            'amount_collected': str(self.amount_collected.amount),
            'currency': self.foreclosure_amount.currency.code,
        }


def settled_count(installments: Iterable[Installment], as_of: date) -> int:
    """Number of installments paid in full"""
    return sum(1 for inst in installments
               if installment_status(inst, as_of) == InstallmentStatus.PAID)


def elapsed_count(installments: Iterable[Installment], as_of: date) -> int:
    """Highest emi_number whose due date is before as_of, or 0"""
    elapsed = [inst.emi_number for inst in installments if inst.due_date < as_of]
    return max(elapsed) if elapsed else 0


class ForeclosureCalculator:
    """
    Computes early-closure quotes

    No early-closure fee is added: the foreclosure amount equals the
    remaining principal.
    """

    def __init__(self, policy: ForeclosurePolicy = ForeclosurePolicy.SETTLED_INSTALLMENTS,
                 clock: Optional[Clock] = None):
        self.policy = policy
        self.clock = clock or SystemClock()

    def quote(
        self,
        loan_id: str,
        principal,
        annual_interest_rate,
        installments: Iterable[Installment],
        as_of: Optional[date] = None,
        policy: Optional[ForeclosurePolicy] = None
    ) -> ForeclosureQuote:
        """
        Quote the payoff amount as of a date

        Args:
            loan_id: Loan being quoted
            principal: Original principal
            annual_interest_rate: Annual percent rate
            installments: The loan's installments
            as_of: Quote date (defaults to today). An explicit date also leaves
                out payments dated after it
            policy: Override the calculator's default policy

        Returns:
            ForeclosureQuote with both amounts clamped at zero
        """
        installments: List[Installment] = list(installments)
        if as_of is None:
            as_of = self.clock.today()
        else:
            installments = [inst.as_of(as_of) for inst in installments]
        policy = policy or self.policy
        currency = installments[0].currency if installments else Currency.INR

        if policy == ForeclosurePolicy.SETTLED_INSTALLMENTS:
            k = settled_count(installments, as_of)
        else:
            k = elapsed_count(installments, as_of)

        accountant = AmortizationAccountant(principal, annual_interest_rate, currency)
        remaining = accountant.balance_after(installments, k)

        logger.debug(f"Foreclosure quote for loan {loan_id} as of {as_of}: "
                     f"k={k} policy={policy.value} remaining={remaining.to_string()}")

        return ForeclosureQuote(
            loan_id=loan_id,
            as_of=as_of,
            policy=policy,
            installments_counted=k,
            remaining_principal=remaining,
            foreclosure_amount=remaining,
            amount_collected=sum_money((inst.amount_paid for inst in installments), currency),
        )
