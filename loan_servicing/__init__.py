"""
Loan Servicing Engine

Deterministic repayment schedules, waterfall payment application with
idempotency and per-loan serialisation, overdue tracking, and credit and
portfolio scoring for multi-tenant lending platforms. All financial math
uses Decimal.
"""

__version__ = "1.0.0"
