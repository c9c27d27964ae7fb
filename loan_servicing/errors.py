"""
Loan Servicing Errors

Exception hierarchy raised by the schedule, ledger and loan service modules.
Every error carries the offending entity id or value so the caller can build
a user-facing message without parsing strings.
"""

from typing import Any, Optional


class LoanServicingError(Exception):
    """Base exception for all loan servicing errors."""


class InvalidTermsError(LoanServicingError, ValueError):
    """Raised when loan terms cannot produce a repayment schedule."""

    def __init__(self, field: str, value: Any, reason: str = ""):
        self.field = field
        self.value = value
        message = f"Invalid loan terms: {field}={value!r}"
        if reason:
            message = f"{message} ({reason})"
        super().__init__(message)


class InvalidAmountError(LoanServicingError, ValueError):
    """Raised when a payment event or surcharge carries a bad amount."""

    def __init__(self, entity_id: Optional[str], value: Any, reason: str = "amount must be positive"):
        self.entity_id = entity_id
        self.value = value
        target = f" for installment {entity_id}" if entity_id else ""
        super().__init__(f"Invalid amount {value!r}{target}: {reason}")


class NotFoundError(LoanServicingError, LookupError):
    """Raised when a loan or installment id does not exist."""

    def __init__(self, entity_type: str, entity_id: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(f"{entity_type.capitalize()} {entity_id} not found")


class DuplicateLoanNumberError(LoanServicingError, ValueError):
    """Raised at intake when the loan number is already taken."""

    def __init__(self, loan_number: str):
        self.loan_number = loan_number
        super().__init__(f"Loan number {loan_number} already exists")


class ConcurrentModificationError(LoanServicingError):
    """Raised when a write is based on a stale version of a record."""

    def __init__(self, entity_type: str, entity_id: str, expected_version: int,
                 actual_version: Optional[int]):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.expected_version = expected_version
        self.actual_version = actual_version
        super().__init__(
            f"{entity_type.capitalize()} {entity_id} was modified concurrently "
            f"(expected version {expected_version}, found {actual_version}); reload and retry"
        )


class InvalidPaymentModeError(LoanServicingError, ValueError):
    """Raised when a payment event has no instrument label."""

    def __init__(self, entity_id: Optional[str], value: Any):
        self.entity_id = entity_id
        self.value = value
        super().__init__(f"Payment mode is required for installment {entity_id} (got {value!r})")


class ReconciliationError(LoanServicingError):
    """Raised when an installment's paid amount disagrees with its payment history."""

    def __init__(self, entity_id: str, amount_paid: Any, history_total: Any):
        self.entity_id = entity_id
        self.amount_paid = amount_paid
        self.history_total = history_total
        super().__init__(
            f"Installment {entity_id} records {amount_paid} paid but its payment history sums to {history_total}"
        )
