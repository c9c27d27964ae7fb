"""
Loan Servicing Engine

EMI schedule generation, an append-only payment ledger with time-derived
installment status, amortization and foreclosure math, and collections
work queues. All money is Decimal.
"""

__version__ = "1.0.0"
