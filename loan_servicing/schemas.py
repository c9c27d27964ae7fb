"""
Pydantic schemas for service requests and responses

Amounts travel as Decimal strings and dates as ISO strings, so a UI layer
can pass these models straight through JSON.
"""

from datetime import date
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field

from .collections import CollectionsFilter, CollectionsRow
from .currency import Money, Currency, to_decimal
from .foreclosure import ForeclosureQuote
from .ledger import installment_status
from .schedule import Installment, LoanTerms, PaymentEvent
from .summary import LoanSummary


def _date(value: Optional[str]) -> Optional[date]:
    return date.fromisoformat(value) if value else None


class MoneyModel(BaseModel):
    amount: str = Field(..., description="Decimal amount as string")
    currency: str = Field("INR", description="Currency code (INR, USD, etc.)")

    def to_money(self) -> Money:
        return Money(to_decimal(self.amount), Currency[self.currency])

    @classmethod
    def from_money(cls, money: Money) -> 'MoneyModel':
        return cls(amount=str(money.amount), currency=money.currency.code)


# Loan schemas
class LoanIntakeRequest(BaseModel):
    loan_number: str
    customer_name: str
    principal: str = Field(..., description="Amount financed, Decimal as string")
    annual_interest_rate: str = Field(..., description="Annual rate in percent, e.g. '12'")
    tenure_months: int
    disbursement_date: str  # ISO date string
    emi_start_date: Optional[str] = None  # ISO date string; first due date
    mobile_numbers: List[str] = Field(default_factory=list)
    guarantor_name: str = ""
    guarantor_mobile_numbers: List[str] = Field(default_factory=list)
    address: str = ""
    vehicle_number: str = ""
    processing_fee_rate: str = "0"
    remarks: str = ""
    currency: str = "INR"

    def to_loan_terms(self) -> LoanTerms:
        return LoanTerms(
            principal=to_decimal(self.principal),
            annual_interest_rate=to_decimal(self.annual_interest_rate),
            tenure_months=self.tenure_months,
            start_date=date.fromisoformat(self.disbursement_date),
            first_due_date=_date(self.emi_start_date),
            currency=Currency[self.currency],
        )

    def to_create_kwargs(self) -> Dict[str, Any]:
        """Keyword arguments for LoanManager.create_loan"""
        return {
            "loan_number": self.loan_number,
            "customer_name": self.customer_name,
            "principal": self.principal,
            "annual_interest_rate": self.annual_interest_rate,
            "tenure_months": self.tenure_months,
            "disbursement_date": date.fromisoformat(self.disbursement_date),
            "emi_start_date": _date(self.emi_start_date),
            "mobile_numbers": list(self.mobile_numbers),
            "guarantor_name": self.guarantor_name,
            "guarantor_mobile_numbers": list(self.guarantor_mobile_numbers),
            "address": self.address,
            "vehicle_number": self.vehicle_number,
            "processing_fee_rate": self.processing_fee_rate,
            "remarks": self.remarks,
            "currency": Currency[self.currency],
        }


# Ledger schemas
class PaymentEventModel(BaseModel):
    date: str  # ISO date string
    mode: str = Field(..., description="Payment instrument, e.g. Cash, GPay, Cheque")
    amount: str = Field(..., description="Decimal amount as string")
    currency: str = "INR"

    def to_event(self) -> PaymentEvent:
        return PaymentEvent(
            date=date.fromisoformat(self.date),
            mode=self.mode,
            amount=Money(to_decimal(self.amount), Currency[self.currency]),
        )

    @classmethod
    def from_event(cls, event: PaymentEvent) -> 'PaymentEventModel':
        return cls(
            date=event.date.isoformat(),
            mode=event.mode,
            amount=str(event.amount.amount),
            currency=event.amount.currency.code,
        )


class ApplyPaymentRequest(BaseModel):
    installment_id: str
    events: List[PaymentEventModel]
    expected_version: Optional[int] = None

    def to_events(self) -> List[PaymentEvent]:
        return [event.to_event() for event in self.events]


class SurchargeRequest(BaseModel):
    installment_id: str
    overdue_amount: str
    remarks: Optional[str] = None
    expected_version: Optional[int] = None


class InstallmentModel(BaseModel):
    id: str
    loan_id: str
    loan_number: str
    customer_name: str
    emi_number: int
    due_date: str
    scheduled_amount: str
    amount_paid: str
    remaining_amount: str
    overdue_amount: str
    status: str
    payment_history: List[PaymentEventModel]
    remarks: str
    version: int

    @classmethod
    def from_installment(cls, installment: Installment, today: date) -> 'InstallmentModel':
        return cls(
            id=installment.id,
            loan_id=installment.loan_id,
            loan_number=installment.loan_number,
            customer_name=installment.customer_name,
            emi_number=installment.emi_number,
            due_date=installment.due_date.isoformat(),
            scheduled_amount=str(installment.scheduled_amount.amount),
            amount_paid=str(installment.amount_paid.amount),
            remaining_amount=str(installment.remaining_amount.amount),
            overdue_amount=str(installment.overdue_amount.amount),
            status=installment_status(installment, today).value,
            payment_history=[PaymentEventModel.from_event(e) for e in installment.payment_history],
            remarks=installment.remarks,
            version=installment.version,
        )


# Read-side schemas
class LoanSummaryModel(BaseModel):
    loan_id: str
    as_of: str
    total_emis: int
    paid_emis: int
    pending_emis: int
    total_amount: str
    amount_paid: str
    outstanding_amount: str
    overdue_emis: int
    overdue_amount: str
    next_due_date: Optional[str] = None
    status: str
    last_payment_date: Optional[str] = None
    currency: str

    @classmethod
    def from_summary(cls, summary: LoanSummary) -> 'LoanSummaryModel':
        return cls(**summary.to_dict())


class ForeclosureQuoteModel(BaseModel):
    loan_id: str
    as_of: str
    policy: str
    installments_counted: int
    remaining_principal: str
    foreclosure_amount: str
    amount_collected: str
    currency: str

    @classmethod
    def from_quote(cls, quote: ForeclosureQuote) -> 'ForeclosureQuoteModel':
        return cls(**quote.to_dict())


class CollectionsFilterModel(BaseModel):
    due_from: Optional[str] = None
    due_to: Optional[str] = None
    text: Optional[str] = None
    mobile: Optional[str] = None
    is_seized: Optional[bool] = None
    follow_up_date: Optional[str] = None
    include_closed: bool = False

    def to_filter(self) -> CollectionsFilter:
        return CollectionsFilter(
            due_from=_date(self.due_from),
            due_to=_date(self.due_to),
            text=self.text,
            mobile=self.mobile,
            is_seized=self.is_seized,
            follow_up_date=_date(self.follow_up_date),
            include_closed=self.include_closed,
        )


class CollectionsRowModel(BaseModel):
    loan_id: str
    loan_number: str
    customer_name: str
    vehicle_number: str
    unpaid_months: int
    total_due_amount: str
    next_due_date: Optional[str] = None
    status: str
    mobile_numbers: List[str]
    guarantor_name: str
    guarantor_mobile_numbers: List[str]
    is_seized: bool
    client_response: str
    next_follow_up_date: Optional[str] = None

    @classmethod
    def from_row(cls, row: CollectionsRow) -> 'CollectionsRowModel':
        return cls(**row.to_dict())
