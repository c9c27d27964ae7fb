"""
Loan Servicing Module

Loan intake and editing, schedule generation and regeneration, payment
application and the read-side views (summary, foreclosure quote,
collections queues) that the back office works from.
"""

from decimal import Decimal
from datetime import datetime, date
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union
from enum import Enum
from contextlib import contextmanager
import threading
import uuid

from .amortization import AmortizationAccountant, AmortizationEntry
from .audit import AuditTrail, AuditEventType, ActorProvider, SYSTEM_ACTOR, system_actor
from .clock import Clock, SystemClock
from .collections import CollectionsFilter, CollectionsQueueBuilder, CollectionsRow
from .config import LoanServicingConfig, get_config
from .currency import Money, Currency, to_decimal
from .errors import (
    LoanServicingError, InvalidTermsError, NotFoundError, DuplicateLoanNumberError,
    ConcurrentModificationError
)
from .foreclosure import ForeclosureCalculator, ForeclosurePolicy, ForeclosureQuote
from .ledger import PaymentLedger, check_reconciliation
from .logging_config import get_logger, log_action
from .schedule import (
    Installment, LoanTerms, PaymentEvent, calculate_emi, emi_end_date,
    generate_schedule, regenerate_schedule
)
from .storage import StorageInterface, StorageRecord
from .summary import LoanSummary, summarize


class LoanStatus(Enum):
    """Book status of a loan, set by an operator"""
    ACTIVE = "Active"
    CLOSED = "Closed"
    SOLD = "Sold"


# Fields whose change re-amortizes the schedule
TERM_FIELDS = (
    "principal", "annual_interest_rate", "tenure_months",
    "disbursement_date", "emi_start_date",
)

EDITABLE_FIELDS = TERM_FIELDS + (
    "loan_number", "customer_name", "mobile_numbers", "guarantor_name",
    "guarantor_mobile_numbers", "address", "vehicle_number",
    "processing_fee_rate", "remarks", "client_response", "next_follow_up_date",
)


@dataclass
class LoanRecord(StorageRecord):
    """
    A serviced loan

    Repayment aggregates (paid count, outstanding amount, status) are not
    stored here; they are derived from the installments on read.
    """
    loan_number: str
    customer_name: str
    principal: Money
    annual_interest_rate: Decimal
    tenure_months: int
    disbursement_date: date
    emi_start_date: Optional[date] = None   # first due date; defaults to a month after disbursement
    monthly_emi: Money = None
    emi_end_date: Optional[date] = None
    processing_fee_rate: Decimal = Decimal('0')
    mobile_numbers: List[str] = field(default_factory=list)
    guarantor_name: str = ""
    guarantor_mobile_numbers: List[str] = field(default_factory=list)
    address: str = ""
    vehicle_number: str = ""
    client_response: str = ""
    next_follow_up_date: Optional[date] = None
    is_seized: bool = False
    status: LoanStatus = LoanStatus.ACTIVE
    remarks: str = ""
    created_by: Optional[str] = None
    updated_by: Optional[str] = None
    version: int = 0

    def __post_init__(self):
        if self.monthly_emi is None:
            self.monthly_emi = Money.zero(self.principal.currency)

    @property
    def currency(self) -> Currency:
        return self.principal.currency

    @property
    def is_active(self) -> bool:
        return self.status == LoanStatus.ACTIVE

    @property
    def processing_fee(self) -> Money:
        """principal * processing_fee_rate / 100"""
        return self.principal * (self.processing_fee_rate / Decimal('100'))

    @property
    def terms(self) -> LoanTerms:
        return LoanTerms(
            principal=self.principal.amount,
            annual_interest_rate=self.annual_interest_rate,
            tenure_months=self.tenure_months,
            start_date=self.disbursement_date,
            first_due_date=self.emi_start_date,
            currency=self.currency,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'loan_number': self.loan_number,
            'customer_name': self.customer_name,
            'currency': self.currency.code,
            'principal': str(self.principal.amount),
            'annual_interest_rate': str(self.annual_interest_rate),
            'tenure_months': self.tenure_months,
            'disbursement_date': self.disbursement_date.isoformat(),
            'emi_start_date': self.emi_start_date.isoformat() if self.emi_start_date else None,
            'monthly_emi': str(self.monthly_emi.amount),
            'emi_end_date': self.emi_end_date.isoformat() if self.emi_end_date else None,
            'processing_fee_rate': str(self.processing_fee_rate),
            'mobile_numbers': list(self.mobile_numbers),
            'guarantor_name': self.guarantor_name,
            'guarantor_mobile_numbers': list(self.guarantor_mobile_numbers),
            'address': self.address,
            'vehicle_number': self.vehicle_number,
            'client_response': self.client_response,
            'next_follow_up_date': self.next_follow_up_date.isoformat() if self.next_follow_up_date else None,
            'is_seized': self.is_seized,
            'status': self.status.value,
            'remarks': self.remarks,
            'created_by': self.created_by,
            'updated_by': self.updated_by,
            'version': self.version,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LoanRecord':
        currency = Currency[data.get('currency', 'INR')]

        def get_date(field_name: str) -> Optional[date]:
            value = data.get(field_name)
            return date.fromisoformat(value) if value else None

        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            loan_number=data['loan_number'],
            customer_name=data['customer_name'],
            principal=Money(Decimal(data['principal']), currency),
            annual_interest_rate=Decimal(data['annual_interest_rate']),
            tenure_months=data['tenure_months'],
            disbursement_date=date.fromisoformat(data['disbursement_date']),
            emi_start_date=get_date('emi_start_date'),
            monthly_emi=Money(Decimal(data.get('monthly_emi', '0')), currency),
            emi_end_date=get_date('emi_end_date'),
            processing_fee_rate=Decimal(data.get('processing_fee_rate', '0')),
            mobile_numbers=list(data.get('mobile_numbers') or []),
            guarantor_name=data.get('guarantor_name') or "",
            guarantor_mobile_numbers=list(data.get('guarantor_mobile_numbers') or []),
            address=data.get('address') or "",
            vehicle_number=data.get('vehicle_number') or "",
            client_response=data.get('client_response') or "",
            next_follow_up_date=get_date('next_follow_up_date'),
            is_seized=bool(data.get('is_seized', False)),
            status=LoanStatus(data.get('status', LoanStatus.ACTIVE.value)),
            remarks=data.get('remarks') or "",
            created_by=data.get('created_by'),
            updated_by=data.get('updated_by'),
            version=data.get('version', 0),
        )


class LoanManager:
    """
    Loan servicing operations

    Every mutation runs inside storage.atomic(), writes through
    compare_and_save against the version it read, and is audited. Work on
    one loan's schedule (regeneration, payments, surcharges) is serialised
    by a per-loan lock.
    """

    def __init__(
        self,
        storage: StorageInterface,
        audit_trail: AuditTrail,
        clock: Optional[Clock] = None,
        actor_provider: Optional[ActorProvider] = None,
        settings: Optional[LoanServicingConfig] = None
    ):
        self.storage = storage
        self.audit_trail = audit_trail
        self.clock = clock or SystemClock()
        self.actor_provider = actor_provider or system_actor
        self.settings = settings or get_config()
        self.loans_table = "loans"
        self.installments_table = "installments"
        self.logger = get_logger("loan_servicing.loans")

        self.ledger = PaymentLedger(self.clock)
        self.foreclosure_calculator = ForeclosureCalculator(
            ForeclosurePolicy(self.settings.foreclosure_policy), self.clock
        )
        self.queue_builder = CollectionsQueueBuilder()

        self._locks: Dict[str, threading.RLock] = {}
        self._locks_guard = threading.Lock()

    # ------------------------------------------------------------------
    # Intake and editing
    # ------------------------------------------------------------------

    def generate_schedule(self, terms: LoanTerms) -> List[Installment]:
        """Preview the schedule for a set of terms without saving anything"""
        return generate_schedule(
            terms,
            absorb_rounding_residual=self.settings.absorb_rounding_residual,
            created_at=self.clock.now(),
        )

    def create_loan(
        self,
        loan_number: str,
        customer_name: str,
        principal: Union[Money, Decimal, int, str],
        annual_interest_rate: Union[Decimal, int, str],
        tenure_months: int,
        disbursement_date: date,
        emi_start_date: Optional[date] = None,
        mobile_numbers: Optional[List[str]] = None,
        guarantor_name: str = "",
        guarantor_mobile_numbers: Optional[List[str]] = None,
        address: str = "",
        vehicle_number: str = "",
        processing_fee_rate: Union[Decimal, int, str] = Decimal('0'),
        remarks: str = "",
        currency: Optional[Currency] = None
    ) -> LoanRecord:
        """
        Register a new loan and generate its repayment schedule

        Args:
            loan_number: Unique, human-assigned loan number
            customer_name: Borrower name
            principal: Amount financed
            annual_interest_rate: Annual rate in percent
            tenure_months: Number of monthly installments
            disbursement_date: Date the money was paid out
            emi_start_date: First due date (defaults to one month after disbursement)
            mobile_numbers: Applicant contact numbers
            guarantor_name: Guarantor name
            guarantor_mobile_numbers: Guarantor contact numbers
            address: Borrower address
            vehicle_number: Registration of the financed vehicle
            processing_fee_rate: Processing fee in percent of principal
            remarks: Free-text remarks
            currency: Loan currency (defaults to the configured currency)

        Returns:
            The saved LoanRecord

        Raises:
            InvalidTermsError: If the terms cannot produce a schedule
            DuplicateLoanNumberError: If the loan number is taken
        """
        actor = self._actor()
        with self._rejections("create_loan", f"loan_number:{loan_number}", actor):
            loan_number = _required_text("loan_number", loan_number)
            customer_name = _required_text("customer_name", customer_name)
            currency = currency or Currency[self.settings.default_currency]
            principal = _to_amount("principal", principal)
            processing_fee_rate = _to_rate("processing_fee_rate", processing_fee_rate)

            now = self.clock.now()
            loan = LoanRecord(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                loan_number=loan_number,
                customer_name=customer_name,
                principal=Money(principal, currency),
                annual_interest_rate=_to_rate("annual_interest_rate", annual_interest_rate),
                tenure_months=tenure_months,
                disbursement_date=disbursement_date,
                emi_start_date=emi_start_date,
                processing_fee_rate=processing_fee_rate,
                mobile_numbers=_clean_numbers(mobile_numbers),
                guarantor_name=(guarantor_name or "").strip(),
                guarantor_mobile_numbers=_clean_numbers(guarantor_mobile_numbers),
                address=(address or "").strip(),
                vehicle_number=(vehicle_number or "").strip(),
                remarks=(remarks or "").strip(),
                created_by=actor,
                updated_by=actor,
            )
            terms = loan.terms
            if loan.processing_fee_rate < 0:
                raise InvalidTermsError("processing_fee_rate", loan.processing_fee_rate, "cannot be negative")

            with self.storage.atomic():
                self._check_loan_number_free(loan.loan_number)
                schedule = generate_schedule(
                    terms,
                    loan_id=loan.id,
                    loan_number=loan.loan_number,
                    customer_name=loan.customer_name,
                    absorb_rounding_residual=self.settings.absorb_rounding_residual,
                    created_at=now,
                )
                loan.monthly_emi = Money(calculate_emi(
                    terms.principal, terms.annual_interest_rate, terms.tenure_months, currency
                ), currency)
                loan.emi_end_date = emi_end_date(schedule)

                self.storage.compare_and_save(self.loans_table, loan.id, loan.to_dict(), None, "loan")
                for installment in schedule:
                    self.storage.compare_and_save(
                        self.installments_table, installment.id, installment.to_dict(), None, "installment"
                    )

                self._audit(AuditEventType.LOAN_CREATED, "loan", loan.id, actor, {
                    "loan_number": loan.loan_number,
                    "customer_name": loan.customer_name,
                    "principal": loan.principal.to_string(),
                    "annual_interest_rate": loan.annual_interest_rate,
                    "tenure_months": loan.tenure_months,
                    "monthly_emi": loan.monthly_emi.to_string(),
                })
                self._audit(AuditEventType.SCHEDULE_GENERATED, "loan", loan.id, actor, {
                    "installments": len(schedule),
                    "first_due_date": schedule[0].due_date,
                    "emi_end_date": loan.emi_end_date,
                })

        log_action(
            self.logger, "info", f"Loan created: {loan.loan_number}",
            user_id=actor, action="create_loan", resource=f"loan:{loan.id}",
            extra={
                "loan_number": loan.loan_number,
                "principal": loan.principal.to_string(),
                "tenure_months": loan.tenure_months,
                "monthly_emi": loan.monthly_emi.to_string(),
            }
        )
        return loan

    def update_loan(self, loan_id: str, expected_version: Optional[int] = None, **changes) -> LoanRecord:
        """
        Edit a loan

        Changing principal, rate, tenure, disbursement date or EMI start date
        re-amortizes the schedule: installments that already carry payments
        are kept as they are and every other installment is replaced.

        Args:
            loan_id: Loan to edit
            expected_version: Version the caller's copy was read at
            **changes: Field values to set (see EDITABLE_FIELDS)

        Returns:
            The updated LoanRecord

        Raises:
            NotFoundError: If the loan does not exist
            InvalidTermsError: If a field is unknown or the new terms are invalid
            DuplicateLoanNumberError: If the new loan number is taken
            ConcurrentModificationError: If the loan changed since expected_version
        """
        actor = self._actor()
        with self._rejections("update_loan", f"loan:{loan_id}", actor):
            unknown = sorted(set(changes) - set(EDITABLE_FIELDS))
            if unknown:
                raise InvalidTermsError(unknown[0], changes[unknown[0]], "not an editable loan field")

            with self._loan_lock(loan_id), self.storage.atomic():
                loan = self._require_loan(loan_id)
                self._check_expected_version("loan", loan.id, expected_version, loan.version)

                updated = self._apply_changes(loan, changes)
                terms_changed = any(getattr(updated, name) != getattr(loan, name) for name in TERM_FIELDS)
                if updated.loan_number != loan.loan_number:
                    self._check_loan_number_free(updated.loan_number)

                now = self.clock.now()
                updated = replace(updated, updated_at=now, updated_by=actor, version=loan.version + 1)

                installments = self._load_installments(loan.id)
                relabel = (updated.loan_number, updated.customer_name) != (loan.loan_number, loan.customer_name)
                if terms_changed:
                    schedule = self._regenerate(updated, installments, actor, now)
                    updated.emi_end_date = emi_end_date(schedule)
                    updated.monthly_emi = _level_amount(schedule, updated)
                    if relabel:
                        # Re-created slots already carry the new labels
                        self._relabel_installments(
                            [inst for inst in schedule if inst.has_payments], updated, now
                        )
                elif relabel:
                    self._relabel_installments(installments, updated, now)

                self.storage.compare_and_save(
                    self.loans_table, loan.id, updated.to_dict(), loan.version, "loan"
                )
                self._audit(AuditEventType.LOAN_UPDATED, "loan", loan.id, actor, {
                    "changes": {name: _audit_value(getattr(updated, name)) for name in sorted(changes)},
                    "schedule_regenerated": terms_changed,
                    "version": updated.version,
                })

        log_action(
            self.logger, "info", f"Loan updated: {updated.loan_number}",
            user_id=actor, action="update_loan", resource=f"loan:{loan_id}",
            extra={"fields": sorted(changes), "schedule_regenerated": terms_changed}
        )
        return updated

    def toggle_seized(self, loan_id: str, expected_version: Optional[int] = None) -> LoanRecord:
        """Flip the vehicle-seized flag"""
        actor = self._actor()
        with self._rejections("toggle_seized", f"loan:{loan_id}", actor):
            with self.storage.atomic():
                loan = self._require_loan(loan_id)
                self._check_expected_version("loan", loan.id, expected_version, loan.version)
                updated = self._save_loan_change(loan, actor, is_seized=not loan.is_seized)
                event_type = AuditEventType.LOAN_SEIZED if updated.is_seized else AuditEventType.LOAN_UNSEIZED
                self._audit(event_type, "loan", loan.id, actor, {"loan_number": loan.loan_number})

        log_action(
            self.logger, "info",
            f"Loan {updated.loan_number} {'seized' if updated.is_seized else 'unseized'}",
            user_id=actor, action="toggle_seized", resource=f"loan:{loan_id}"
        )
        return updated

    def set_loan_status(self, loan_id: str, status: Union[LoanStatus, str],
                        expected_version: Optional[int] = None) -> LoanRecord:
        """Set the loan's book status (Active, Closed or Sold)"""
        actor = self._actor()
        with self._rejections("set_loan_status", f"loan:{loan_id}", actor):
            if not isinstance(status, LoanStatus):
                try:
                    status = LoanStatus(status)
                except ValueError:
                    raise InvalidTermsError("status", status, "must be Active, Closed or Sold")

            with self.storage.atomic():
                loan = self._require_loan(loan_id)
                self._check_expected_version("loan", loan.id, expected_version, loan.version)
                updated = self._save_loan_change(loan, actor, status=status)
                self._audit(AuditEventType.LOAN_STATUS_CHANGED, "loan", loan.id, actor, {
                    "old_status": loan.status,
                    "new_status": status,
                })

        log_action(
            self.logger, "info", f"Loan {updated.loan_number} status set to {status.value}",
            user_id=actor, action="set_loan_status", resource=f"loan:{loan_id}"
        )
        return updated

    def set_client_response(self, loan_id: str, text: str,
                            next_follow_up_date: Optional[date] = None,
                            expected_version: Optional[int] = None) -> LoanRecord:
        """Record the borrower's latest response and when to call back"""
        actor = self._actor()
        with self._rejections("set_client_response", f"loan:{loan_id}", actor):
            with self.storage.atomic():
                loan = self._require_loan(loan_id)
                self._check_expected_version("loan", loan.id, expected_version, loan.version)
                updated = self._save_loan_change(
                    loan, actor,
                    client_response=(text or "").strip(),
                    next_follow_up_date=next_follow_up_date,
                )
                self._audit(AuditEventType.CLIENT_RESPONSE_RECORDED, "loan", loan.id, actor, {
                    "client_response": updated.client_response,
                    "next_follow_up_date": next_follow_up_date,
                })

        log_action(
            self.logger, "info", f"Client response recorded for loan {updated.loan_number}",
            user_id=actor, action="set_client_response", resource=f"loan:{loan_id}"
        )
        return updated

    def generate_missing_schedules(self) -> Dict[str, int]:
        """
        Generate schedules for loans that have no installments

        Returns:
            Counts of loans generated and skipped
        """
        results = {"loans_processed": 0, "generated": 0, "skipped": 0}
        actor = self._actor()

        for loan in self._load_loans():
            results["loans_processed"] += 1
            with self._loan_lock(loan.id), self.storage.atomic():
                if self._load_installments(loan.id):
                    results["skipped"] += 1
                    continue

                now = self.clock.now()
                schedule = generate_schedule(
                    loan.terms,
                    loan_id=loan.id,
                    loan_number=loan.loan_number,
                    customer_name=loan.customer_name,
                    absorb_rounding_residual=self.settings.absorb_rounding_residual,
                    created_at=now,
                )
                for installment in schedule:
                    self.storage.compare_and_save(
                        self.installments_table, installment.id, installment.to_dict(), None, "installment"
                    )
                self._save_loan_change(
                    loan, actor,
                    emi_end_date=emi_end_date(schedule),
                    monthly_emi=schedule[0].scheduled_amount,
                )
                self._audit(AuditEventType.SCHEDULE_GENERATED, "loan", loan.id, actor, {
                    "installments": len(schedule),
                    "backfill": True,
                })
                results["generated"] += 1

        log_action(
            self.logger, "info", f"Missing schedules generated for {results['generated']} loans",
            user_id=actor, action="generate_missing_schedules", extra=results
        )
        return results

    # ------------------------------------------------------------------
    # Ledger
    # ------------------------------------------------------------------

    def apply_payment(self, installment_id: str, events: Iterable[PaymentEvent],
                      expected_version: Optional[int] = None) -> Installment:
        """
        Record one or more collections against an installment

        Args:
            installment_id: Installment to pay against
            events: Payment events (date, mode, amount)
            expected_version: Version the caller's copy was read at

        Returns:
            The updated installment

        Raises:
            NotFoundError: If the installment does not exist
            InvalidAmountError: If any event amount is not positive
            InvalidPaymentModeError: If any event has no mode
            ConcurrentModificationError: If the installment changed since it was read
        """
        actor = self._actor()
        events = list(events)
        with self._rejections("apply_payment", f"installment:{installment_id}", actor):
            installment = self._require_installment(installment_id)
            with self._loan_lock(installment.loan_id), self.storage.atomic():
                installment = self._require_installment(installment_id)
                self._check_expected_version("installment", installment.id, expected_version,
                                             installment.version)

                updated = self.ledger.apply_payment(installment, events, actor)
                self.storage.compare_and_save(
                    self.installments_table, installment.id, updated.to_dict(),
                    installment.version, "installment"
                )
                status = self.ledger.status(updated)
                self._audit(AuditEventType.PAYMENT_APPLIED, "installment", installment.id, actor, {
                    "loan_id": installment.loan_id,
                    "emi_number": installment.emi_number,
                    "events": [event.to_dict() for event in updated.payment_history[len(installment.payment_history):]],
                    "amount_paid": updated.amount_paid.amount,
                    "status": status,
                })

        log_action(
            self.logger, "info",
            f"Payment applied to EMI {updated.emi_number} of loan {updated.loan_number}",
            user_id=actor, action="apply_payment", resource=f"installment:{installment_id}",
            extra={
                "events": len(events),
                "amount_paid": updated.amount_paid.to_string(),
                "scheduled_amount": updated.scheduled_amount.to_string(),
                "status": status.value,
            }
        )
        return updated

    def set_surcharge(self, installment_id: str, amount: Union[Money, Decimal, int, str],
                      remarks: Optional[str] = None,
                      expected_version: Optional[int] = None) -> Installment:
        """Record an operator-entered overdue surcharge and remarks on an installment"""
        actor = self._actor()
        with self._rejections("set_surcharge", f"installment:{installment_id}", actor):
            installment = self._require_installment(installment_id)
            with self._loan_lock(installment.loan_id), self.storage.atomic():
                installment = self._require_installment(installment_id)
                self._check_expected_version("installment", installment.id, expected_version,
                                             installment.version)
                if not isinstance(amount, Money):
                    amount = Money(_to_amount("overdue_amount", amount), installment.currency)

                updated = self.ledger.set_surcharge(installment, amount, remarks, actor)
                self.storage.compare_and_save(
                    self.installments_table, installment.id, updated.to_dict(),
                    installment.version, "installment"
                )
                self._audit(AuditEventType.SURCHARGE_UPDATED, "installment", installment.id, actor, {
                    "loan_id": installment.loan_id,
                    "emi_number": installment.emi_number,
                    "overdue_amount": updated.overdue_amount.amount,
                    "remarks": updated.remarks,
                })

        log_action(
            self.logger, "info", f"Surcharge set on EMI {updated.emi_number} of loan {updated.loan_number}",
            user_id=actor, action="set_surcharge", resource=f"installment:{installment_id}",
            extra={"overdue_amount": updated.overdue_amount.to_string()}
        )
        return updated

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_loan(self, loan_id: str) -> Optional[LoanRecord]:
        """Get loan by ID"""
        data = self.storage.load(self.loans_table, loan_id)
        if data:
            return LoanRecord.from_dict(data)
        return None

    def get_loan_by_number(self, loan_number: str) -> Optional[LoanRecord]:
        """Get loan by its loan number"""
        matches = self.storage.find(self.loans_table, {"loan_number": (loan_number or "").strip()})
        if matches:
            return LoanRecord.from_dict(matches[0])
        return None

    def find_loans(
        self,
        loan_number: Optional[str] = None,
        customer_name: Optional[str] = None,
        mobile_number: Optional[str] = None,
        vehicle_number: Optional[str] = None,
        tenure_months: Optional[int] = None,
        is_seized: Optional[bool] = None,
        status: Optional[Union[LoanStatus, str]] = None
    ) -> List[LoanRecord]:
        """
        Search loans; text criteria are case-insensitive substring matches

        Returns:
            Matching loans, newest first
        """
        if isinstance(status, LoanStatus):
            status = status.value

        def matches(data: Dict[str, Any]) -> bool:
            if loan_number and loan_number.lower() not in data['loan_number'].lower():
                return False
            if customer_name and customer_name.lower() not in data['customer_name'].lower():
                return False
            if vehicle_number and vehicle_number.lower() not in (data.get('vehicle_number') or "").lower():
                return False
            if mobile_number and not any(mobile_number in number for number in data.get('mobile_numbers') or []):
                return False
            if tenure_months is not None and data['tenure_months'] != tenure_months:
                return False
            if is_seized is not None and bool(data.get('is_seized')) != is_seized:
                return False
            if status is not None and data.get('status') != status:
                return False
            return True

        loans = [LoanRecord.from_dict(data) for data in self.storage.query(self.loans_table, matches)]
        loans.sort(key=lambda loan: loan.created_at, reverse=True)
        return loans

    def get_installments(self, loan_id: str) -> List[Installment]:
        """Get a loan's installments in emi_number order"""
        self._require_loan(loan_id)
        return self._load_installments(loan_id)

    def get_installment(self, installment_id: str) -> Optional[Installment]:
        """Get installment by ID"""
        data = self.storage.load(self.installments_table, installment_id)
        if data:
            return Installment.from_dict(data)
        return None

    def get_amortization_schedule(self, loan_id: str) -> List[AmortizationEntry]:
        """Interest/principal split of every scheduled installment"""
        loan = self._require_loan(loan_id)
        accountant = AmortizationAccountant(loan.principal.amount, loan.annual_interest_rate, loan.currency)
        return accountant.schedule(self._load_installments(loan_id))

    def get_loan_summary(self, loan_id: str, as_of: Optional[date] = None) -> LoanSummary:
        """
        Repayment position of a loan, derived from its installments

        With an explicit as_of date the summary reflects only payments dated
        on or before it.
        """
        loan = self._require_loan(loan_id)
        return summarize(loan.id, self._load_installments(loan.id), as_of or self.clock.today(),
                         loan.currency, payments_through=as_of)

    def get_foreclosure_quote(self, loan_id: str, as_of: Optional[date] = None,
                              policy: Optional[ForeclosurePolicy] = None) -> ForeclosureQuote:
        """Amount required to close the loan early"""
        loan = self._require_loan(loan_id)
        return self.foreclosure_calculator.quote(
            loan.id,
            loan.principal.amount,
            loan.annual_interest_rate,
            self._load_installments(loan.id),
            as_of=as_of,
            policy=policy,
        )

    def get_collections_queue(self, collections_filter: Optional[CollectionsFilter] = None) -> List[CollectionsRow]:
        """Loans with unpaid installments matching the filter"""
        return self.queue_builder.build(
            self._loans_with_installments(),
            collections_filter or CollectionsFilter(),
            self.clock.today(),
        )

    def follow_up_queue(self, collections_filter: Optional[CollectionsFilter] = None) -> List[CollectionsRow]:
        """Loans not seized with unpaid installments due in the window (today by default)"""
        today = self.clock.today()
        return self.queue_builder.build(
            self._loans_with_installments(),
            self.queue_builder.follow_up_filter(today, collections_filter),
            today,
        )

    def seized_queue(self, collections_filter: Optional[CollectionsFilter] = None) -> List[CollectionsRow]:
        """Seized loans with anything left to collect"""
        return self.queue_builder.build(
            self._loans_with_installments(),
            self.queue_builder.seized_filter(collections_filter),
            self.clock.today(),
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _actor(self) -> str:
        return self.actor_provider() or SYSTEM_ACTOR

    def _loan_lock(self, loan_id: str) -> threading.RLock:
        with self._locks_guard:
            return self._locks.setdefault(loan_id, threading.RLock())

    @contextmanager
    def _rejections(self, action: str, resource: str, actor: str):
        try:
            yield
        except LoanServicingError as e:
            log_action(
                self.logger, "warning", f"{action} rejected: {e}",
                user_id=actor, action=action, resource=resource,
                extra={"error": type(e).__name__}
            )
            raise

    def _audit(self, event_type: AuditEventType, entity_type: str, entity_id: str,
               actor: str, metadata: Dict[str, Any]) -> None:
        if self.settings.enable_audit_logging:
            self.audit_trail.log_event(
                event_type=event_type,
                entity_type=entity_type,
                entity_id=entity_id,
                metadata=metadata,
                user_id=actor,
            )

    def _require_loan(self, loan_id: str) -> LoanRecord:
        loan = self.get_loan(loan_id)
        if not loan:
            raise NotFoundError("loan", loan_id)
        return loan

    def _require_installment(self, installment_id: str) -> Installment:
        installment = self.get_installment(installment_id)
        if not installment:
            raise NotFoundError("installment", installment_id)
        return installment

    def _check_expected_version(self, entity_type: str, entity_id: str,
                                expected_version: Optional[int], actual_version: int) -> None:
        if expected_version is not None and expected_version != actual_version:
            raise ConcurrentModificationError(entity_type, entity_id, expected_version, actual_version)

    def _check_loan_number_free(self, loan_number: str) -> None:
        if self.storage.find(self.loans_table, {"loan_number": loan_number}):
            raise DuplicateLoanNumberError(loan_number)

    def _load_loans(self) -> List[LoanRecord]:
        return [LoanRecord.from_dict(data) for data in self.storage.load_all(self.loans_table)]

    def _load_installments(self, loan_id: str) -> List[Installment]:
        installments = [
            Installment.from_dict(data)
            for data in self.storage.find(self.installments_table, {"loan_id": loan_id})
        ]
        installments.sort(key=lambda inst: inst.emi_number)
        return installments

    def _loans_with_installments(self) -> List[Tuple[LoanRecord, List[Installment]]]:
        grouped: Dict[str, List[Installment]] = {}
        for data in self.storage.load_all(self.installments_table):
            installment = Installment.from_dict(data)
            grouped.setdefault(installment.loan_id, []).append(installment)

        pairs = []
        for loan in self._load_loans():
            installments = sorted(grouped.get(loan.id, []), key=lambda inst: inst.emi_number)
            pairs.append((loan, installments))
        return pairs

    def _save_loan_change(self, loan: LoanRecord, actor: str, **values) -> LoanRecord:
        updated = replace(loan, updated_at=self.clock.now(), updated_by=actor,
                          version=loan.version + 1, **values)
        self.storage.compare_and_save(self.loans_table, loan.id, updated.to_dict(), loan.version, "loan")
        return updated

    def _apply_changes(self, loan: LoanRecord, changes: Dict[str, Any]) -> LoanRecord:
        values: Dict[str, Any] = {}
        for name, value in changes.items():
            if name == "principal":
                if isinstance(value, Money):
                    value = value.amount
                value = Money(_to_amount("principal", value), loan.currency)
            elif name in ("annual_interest_rate", "processing_fee_rate"):
                value = _to_rate(name, value)
                if name == "processing_fee_rate" and value < 0:
                    raise InvalidTermsError(name, value, "cannot be negative")
            elif name in ("loan_number", "customer_name"):
                value = _required_text(name, value)
            elif name in ("mobile_numbers", "guarantor_mobile_numbers"):
                value = _clean_numbers(value)
            elif name in ("guarantor_name", "address", "vehicle_number", "remarks", "client_response"):
                value = (value or "").strip()
            values[name] = value

        updated = replace(loan, **values)
        # Validates principal, rate and tenure together
        updated.terms
        return updated

    def _regenerate(self, loan: LoanRecord, existing: List[Installment],
                    actor: str, now: datetime) -> List[Installment]:
        schedule = regenerate_schedule(
            existing,
            loan.terms,
            loan_id=loan.id,
            loan_number=loan.loan_number,
            customer_name=loan.customer_name,
            absorb_rounding_residual=self.settings.absorb_rounding_residual,
            created_at=now,
        )
        current = {inst.emi_number: inst for inst in existing}
        kept_numbers = {inst.emi_number for inst in schedule if inst.has_payments}
        for installment in schedule:
            check_reconciliation(installment)

        for installment in schedule:
            if installment.emi_number in kept_numbers:
                continue
            previous = current.get(installment.emi_number)
            if previous is None:
                self.storage.compare_and_save(
                    self.installments_table, installment.id, installment.to_dict(), None, "installment"
                )
            else:
                replacement = replace(installment, id=previous.id, created_at=previous.created_at,
                                      updated_by=actor, version=previous.version + 1)
                self.storage.compare_and_save(
                    self.installments_table, previous.id, replacement.to_dict(),
                    previous.version, "installment"
                )

        new_numbers = {inst.emi_number for inst in schedule}
        dropped = [inst for inst in existing if inst.emi_number not in new_numbers]
        for installment in dropped:
            self.storage.delete(self.installments_table, installment.id)

        self._audit(AuditEventType.SCHEDULE_REGENERATED, "loan", loan.id, actor, {
            "installments": len(schedule),
            "kept": sorted(kept_numbers),
            "dropped": sorted(inst.emi_number for inst in dropped),
            "principal": loan.principal.to_string(),
            "annual_interest_rate": loan.annual_interest_rate,
            "tenure_months": loan.tenure_months,
        })
        return schedule

    def _relabel_installments(self, installments: List[Installment], loan: LoanRecord,
                              now: datetime) -> None:
        for installment in installments:
            relabelled = replace(installment, loan_number=loan.loan_number, customer_name=loan.customer_name,
                                 updated_at=now, version=installment.version + 1)
            self.storage.compare_and_save(
                self.installments_table, installment.id, relabelled.to_dict(),
                installment.version, "installment"
            )


def _required_text(field_name: str, value: Optional[str]) -> str:
    if not isinstance(value, str) or not value.strip():
        raise InvalidTermsError(field_name, value, "is required")
    return value.strip()


def _to_amount(field_name: str, value: Any) -> Decimal:
    if isinstance(value, Money):
        return value.amount
    try:
        return to_decimal(value)
    except ValueError as e:
        raise InvalidTermsError(field_name, value, str(e))


def _to_rate(field_name: str, value: Any) -> Decimal:
    try:
        return to_decimal(value)
    except ValueError as e:
        raise InvalidTermsError(field_name, value, str(e))


def _clean_numbers(numbers: Optional[Iterable[str]]) -> List[str]:
    cleaned: List[str] = []
    for number in numbers or []:
        number = (number or "").strip()
        if number and number not in cleaned:
            cleaned.append(number)
    return cleaned


def _level_amount(schedule: List[Installment], loan: LoanRecord) -> Money:
    # EMI charged on the re-amortized slots. The final slot may carry the rounding
    # true-up, so the full-term EMI stands in when it is the only slot re-created.
    level_slots = [inst for inst in schedule
                   if not inst.has_payments and inst.emi_number != loan.tenure_months]
    if level_slots:
        return level_slots[0].scheduled_amount
    return Money(calculate_emi(loan.principal.amount, loan.annual_interest_rate, loan.tenure_months,
                               loan.currency), loan.currency)


def _audit_value(value: Any) -> Any:
    if isinstance(value, Money):
        return value.amount
    return value
