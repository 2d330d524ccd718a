"""
Peer-to-peer micro-lending ledger

This module provides:
- Loans between users, with fixed or percentage repayment terms
- Loan lifecycle: pending → active → completed, or pending → declined
- Incoming mobile-money transactions and carrier callbacks
- Repayment allocation across a borrower's loans, oldest first
- Idempotent repayments keyed on (transaction, loan)
- Version-checked writes on every ledger row
"""

from .models import (
    LoanStatus,
    RepaymentMethod,
    Loan,
    Transaction,
    Repayment,
    Notification,
    User,
    AllocationResult,
)
from .service import LedgerService
from .allocator import RepaymentAllocator

__all__ = [
    "LoanStatus",
    "RepaymentMethod",
    "Loan",
    "Transaction",
    "Repayment",
    "Notification",
    "User",
    "AllocationResult",
    "LedgerService",
    "RepaymentAllocator",
]
