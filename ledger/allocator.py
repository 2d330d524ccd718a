"""
Repayment allocation.

Both the live transaction path and sync replay call ``allocate``. An
incoming payment is walked across the borrower's active loans oldest
first; each loan step commits atomically (loan CAS, wallet debit,
repayment row) so a crash between steps leaves a state that a second
call with the same transaction id finishes without double-applying.
"""

import logging
import threading
from decimal import Decimal
from typing import Optional
from uuid import UUID, uuid4

from .config import Settings, get_settings
from .errors import ConflictError, DuplicateError, LedgerServiceError, NotFoundError, ValidationError
from .models import (
    AllocationFailure,
    AllocationLine,
    AllocationResult,
    Loan,
    LoanStatus,
    NotificationType,
    User,
)
from .notifications import notify
from .storage import InMemoryStorage

logger = logging.getLogger(__name__)

ZERO = Decimal("0")


class RepaymentAllocator:
    def __init__(self, storage: InMemoryStorage, settings: Optional[Settings] = None):
        self.storage = storage
        self.settings = settings or get_settings()
        self._borrower_locks: dict[UUID, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _lock_for(self, borrower_id: UUID) -> threading.Lock:
        with self._locks_guard:
            return self._borrower_locks.setdefault(borrower_id, threading.Lock())

    def allocate(
        self,
        borrower_id: UUID,
        incoming_amount: Decimal,
        transaction_id: UUID,
        loan_id: Optional[UUID] = None,
    ) -> AllocationResult:
        """Apply ``incoming_amount`` to the borrower's active loans.

        ``loan_id`` narrows the walk to a single loan (payments that name
        their loan, e.g. a ``LOAN-<id>`` bill reference). Amounts under the
        configured threshold are a no-op, not an error.
        """
        incoming_amount = Decimal(str(incoming_amount))
        if incoming_amount <= ZERO:
            raise ValidationError(f"Incoming amount must be positive, got {incoming_amount}")

        result = AllocationResult(
            borrower_id=borrower_id,
            transaction_id=transaction_id,
            incoming_amount=incoming_amount,
            unallocated_amount=incoming_amount,
        )

        threshold = self.settings.transaction_threshold
        if incoming_amount < threshold:
            result.skipped_reason = f"Amount {incoming_amount} is below the repayment threshold {threshold}"
            return result

        with self._lock_for(borrower_id):
            self._walk_loans(result, loan_id)
        return result

    def _walk_loans(self, result: AllocationResult, loan_id: Optional[UUID]) -> None:
        remaining = result.incoming_amount

        # repayments a previous run already committed for this transaction
        applied = self.storage.select(
            "repayments",
            where=lambda r: r["transaction_id"] == result.transaction_id,
            order_by=lambda r: r["created_at"],
        )
        applied_loans = set()
        for row in applied:
            applied_loans.add(row["loan_id"])
            remaining -= row["amount_deducted"]
            result.allocations.append(AllocationLine(
                loan_id=row["loan_id"],
                repayment_id=row["id"],
                amount_deducted=row["amount_deducted"],
                balance_after=row["balance_after"],
                completed=row["balance_after"] <= ZERO,
                already_applied=True,
            ))

        for loan in self._active_loans(result.borrower_id, loan_id):
            if remaining <= ZERO:
                break
            if loan.id in applied_loans:
                continue
            try:
                line = self._apply_to_loan(loan, result.incoming_amount, remaining, result.transaction_id)
            except LedgerServiceError as e:
                logger.error(
                    "Repayment of transaction %s against loan %s failed: %s",
                    result.transaction_id, loan.id, e,
                )
                result.errors.append(AllocationFailure(loan_id=loan.id, error=str(e)))
                # later loans are never paid ahead of an older one
                break
            if line is None:
                continue
            result.allocations.append(line)
            remaining -= line.amount_deducted
            if not line.already_applied:
                self._notify_parties(loan, line)

        result.unallocated_amount = max(remaining, ZERO)

    def _active_loans(self, borrower_id: UUID, loan_id: Optional[UUID]) -> list[Loan]:
        rows = self.storage.select(
            "loans",
            where=lambda r: (
                r["borrower_id"] == borrower_id
                and r["status"] == LoanStatus.ACTIVE
                and r["remaining_balance"] > ZERO
                and (loan_id is None or r["id"] == loan_id)
            ),
            order_by=lambda r: r["created_at"],
        )
        return [Loan(**r) for r in rows]

    def _apply_to_loan(
        self,
        loan: Loan,
        incoming_amount: Decimal,
        remaining: Decimal,
        transaction_id: UUID,
    ) -> Optional[AllocationLine]:
        attempts = self.settings.allocation_cas_retries
        for attempt in range(1, attempts + 1):
            deduction = min(loan.due_for(incoming_amount), remaining, loan.remaining_balance)
            if deduction <= ZERO:
                return None

            new_balance = loan.remaining_balance - deduction
            status = LoanStatus.COMPLETED if new_balance <= ZERO else loan.status
            repayment_id = uuid4()
            try:
                with self.storage.atomic():
                    self.storage.compare_and_swap("loans", loan.id, loan.version, {
                        "remaining_balance": max(new_balance, ZERO),
                        "status": status,
                    })
                    self._debit_wallet(loan.borrower_id, deduction)
                    self.storage.insert("repayments", {
                        "id": repayment_id,
                        "loan_id": loan.id,
                        "transaction_id": transaction_id,
                        "amount_deducted": deduction,
                        "balance_after": max(new_balance, ZERO),
                        "borrower_phone": loan.borrower_phone,
                        "lender_phone": loan.lender_phone,
                    })
            except DuplicateError:
                return self._existing_line(loan.id, transaction_id)
            except ConflictError as e:
                logger.warning(
                    "Loan %s changed underneath repayment (attempt %d/%d): %s",
                    loan.id, attempt, attempts, e,
                )
                fresh = self.storage.get("loans", loan.id)
                if fresh is None:
                    raise NotFoundError(f"Loan {loan.id} disappeared during repayment")
                loan = Loan(**fresh)
                if loan.status != LoanStatus.ACTIVE or loan.remaining_balance <= ZERO:
                    return None
                continue

            return AllocationLine(
                loan_id=loan.id,
                repayment_id=repayment_id,
                amount_deducted=deduction,
                balance_after=max(new_balance, ZERO),
                completed=status == LoanStatus.COMPLETED,
            )

        raise ConflictError(f"Loan {loan.id} kept changing; gave up after {attempts} attempts")

    def _debit_wallet(self, user_id: UUID, amount: Decimal) -> None:
        row = self.storage.get("users", user_id)
        if row is None:
            raise NotFoundError(f"Borrower {user_id} not found")
        user = User(**row)
        self.storage.compare_and_swap("users", user.id, user.version, {
            "wallet_balance": user.wallet_balance - amount,
        })

    def _existing_line(self, loan_id: UUID, transaction_id: UUID) -> AllocationLine:
        repayment_id = self.storage.lookup("repayments.transaction_loan", (transaction_id, loan_id))
        row = self.storage.get("repayments", repayment_id)
        return AllocationLine(
            loan_id=loan_id,
            repayment_id=row["id"],
            amount_deducted=row["amount_deducted"],
            balance_after=row["balance_after"],
            completed=row["balance_after"] <= ZERO,
            already_applied=True,
        )

    def _notify_parties(self, loan: Loan, line: AllocationLine) -> None:
        notify(
            self.storage, loan.borrower_id, NotificationType.REPAYMENT,
            f"Ksh {line.amount_deducted} deducted for loan repayment. Balance: Ksh {line.balance_after}",
            loan_id=loan.id, repayment_id=line.repayment_id,
        )
        notify(
            self.storage, loan.lender_id, NotificationType.REPAYMENT,
            f"Ksh {line.amount_deducted} received from {loan.borrower_phone}. Loan balance: Ksh {line.balance_after}",
            loan_id=loan.id, repayment_id=line.repayment_id,
        )
