"""
Unit Tests for the Repayment Allocator

Tests cover:
1. Fixed and percentage deductions
2. Loan completion
3. Idempotence per (transaction, loan)
4. Oldest-first allocation across loans
5. Threshold handling
6. Concurrent writes and partial failure
"""

import pytest
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from uuid import uuid4

from ledger.allocator import RepaymentAllocator
from ledger.config import Settings
from ledger.errors import ConflictError, TransientError, ValidationError
from ledger.models import (
    CreateLoanRequest,
    Loan,
    LoanDecisionRequest,
    LoanStatus,
    NotificationType,
    RegisterUserRequest,
    RepaymentMethod,
)
from ledger.service import LedgerService
from ledger.storage import InMemoryStorage


# Test constants
BORROWER_PHONE = "0712345678"
LENDER_PHONE = "0722345678"


class Clock:
    """Deterministic clock; every reading is one second after the last."""

    def __init__(self):
        self.current = datetime(2026, 3, 2, 8, 0, tzinfo=timezone.utc)

    def __call__(self):
        self.current += timedelta(seconds=1)
        return self.current


def make_ledger(threshold="100"):
    storage = InMemoryStorage(clock=Clock())
    service = LedgerService(storage=storage, settings=Settings(transaction_threshold=Decimal(threshold)))
    borrower = service.register_user(RegisterUserRequest(phone=BORROWER_PHONE, name="Wanjiru Kamau"))
    lender = service.register_user(RegisterUserRequest(phone=LENDER_PHONE, name="Otieno Odhiambo"))
    return service, borrower, lender


def active_loan(service, principal, repayment, method=RepaymentMethod.FIXED, balance=None):
    loan = service.request_loan(CreateLoanRequest(
        borrower_phone=BORROWER_PHONE,
        lender_phone=LENDER_PHONE,
        principal_amount=Decimal(principal),
        repayment_method=method,
        repayment_amount=Decimal(repayment),
    ))
    loan = service.decide_loan(loan.id, LoanDecisionRequest(approve=True))
    if balance is not None:
        row = service.storage.compare_and_swap(
            "loans", loan.id, loan.version, {"remaining_balance": Decimal(balance)},
        )
        loan = Loan(**row)
    return loan


def repayment_notifications(service):
    return service.storage.select(
        "notifications", where=lambda r: r["notification_type"] == NotificationType.REPAYMENT,
    )


class TestDeductions:
    """Tests for per-loan deduction amounts."""

    def test_fixed_method_caps_at_configured_amount(self):
        """Test 1000 against a 5000/500 loan at 4500 deducts 500 and leaves the rest."""
        service, borrower, lender = make_ledger()
        loan = active_loan(service, "5000", "500", balance="4500")

        result = service.allocator.allocate(borrower.id, Decimal("1000"), uuid4())

        assert len(result.allocations) == 1
        assert result.allocations[0].amount_deducted == Decimal("500")
        assert result.allocations[0].balance_after == Decimal("4000")
        assert result.unallocated_amount == Decimal("500")

        updated = service.get_loan(loan.id)
        assert updated.remaining_balance == Decimal("4000")
        assert updated.status == LoanStatus.ACTIVE

        assert len(service.list_repayments(loan.id)) == 1
        notes = repayment_notifications(service)
        assert len(notes) == 2
        assert {n["user_id"] for n in notes} == {borrower.id, lender.id}

    def test_notification_messages(self):
        """Test borrower and lender are told the deduction and new balance."""
        service, borrower, lender = make_ledger()
        active_loan(service, "5000", "500", balance="4500")

        service.allocator.allocate(borrower.id, Decimal("1000"), uuid4())

        by_user = {n["user_id"]: n["message"] for n in repayment_notifications(service)}
        assert by_user[borrower.id] == "Ksh 500 deducted for loan repayment. Balance: Ksh 4000"
        assert by_user[lender.id] == "Ksh 500 received from 254712345678. Loan balance: Ksh 4000"

    def test_deduction_limited_by_balance_completes_loan(self):
        """Test a 200 balance with fixed 500 and incoming 1000 deducts 200 and completes."""
        service, borrower, _ = make_ledger()
        loan = active_loan(service, "5000", "500", balance="200")

        result = service.allocator.allocate(borrower.id, Decimal("1000"), uuid4())

        assert result.allocations[0].amount_deducted == Decimal("200")
        assert result.allocations[0].completed is True
        updated = service.get_loan(loan.id)
        assert updated.remaining_balance == Decimal("0")
        assert updated.status == LoanStatus.COMPLETED

    def test_percentage_uses_original_incoming_amount(self):
        """Test 10% of a 1000 payment is 100 even after an older loan took 500."""
        service, borrower, _ = make_ledger()
        first = active_loan(service, "5000", "500")
        second = active_loan(service, "2000", "10", method=RepaymentMethod.PERCENTAGE)

        result = service.allocator.allocate(borrower.id, Decimal("1000"), uuid4())

        deducted = {line.loan_id: line.amount_deducted for line in result.allocations}
        assert deducted[first.id] == Decimal("500")
        assert deducted[second.id] == Decimal("100")
        assert result.unallocated_amount == Decimal("400")

    def test_percentage_capped_by_remainder(self):
        """Test a percentage deduction never exceeds what is left of the payment."""
        service, borrower, _ = make_ledger()
        active_loan(service, "1000", "900")
        second = active_loan(service, "1000", "50", method=RepaymentMethod.PERCENTAGE)

        result = service.allocator.allocate(borrower.id, Decimal("1000"), uuid4())

        deducted = {line.loan_id: line.amount_deducted for line in result.allocations}
        assert deducted[second.id] == Decimal("100")
        assert result.unallocated_amount == Decimal("0")

    def test_non_positive_amount_rejected(self):
        """Test zero and negative payments are validation errors."""
        service, borrower, _ = make_ledger()

        with pytest.raises(ValidationError):
            service.allocator.allocate(borrower.id, Decimal("0"), uuid4())
        with pytest.raises(ValidationError):
            service.allocator.allocate(borrower.id, Decimal("-50"), uuid4())

    def test_no_active_loans_leaves_everything_unallocated(self):
        """Test a payment with nothing to repay allocates nothing."""
        service, borrower, _ = make_ledger()

        result = service.allocator.allocate(borrower.id, Decimal("750"), uuid4())

        assert result.allocations == []
        assert result.unallocated_amount == Decimal("750")
        assert result.skipped_reason is None


class TestThreshold:
    """Tests for the minimum amount that triggers allocation."""

    def test_below_threshold_is_skipped(self):
        """Test a payment under the threshold touches no loan."""
        service, borrower, _ = make_ledger()
        loan = active_loan(service, "5000", "500")

        result = service.allocator.allocate(borrower.id, Decimal("99"), uuid4())

        assert result.skipped_reason is not None
        assert result.allocations == []
        assert service.get_loan(loan.id).remaining_balance == Decimal("5000")

    def test_amount_equal_to_threshold_is_processed(self):
        """Test a payment of exactly the threshold is allocated."""
        service, borrower, _ = make_ledger()
        loan = active_loan(service, "5000", "500")

        result = service.allocator.allocate(borrower.id, Decimal("100"), uuid4())

        assert result.skipped_reason is None
        assert result.allocations[0].amount_deducted == Decimal("100")
        assert service.get_loan(loan.id).remaining_balance == Decimal("4900")


class TestIdempotence:
    """Tests that a transaction is applied to a loan at most once."""

    def test_replay_creates_one_repayment(self):
        """Test allocating the same transaction twice decrements the balance once."""
        service, borrower, _ = make_ledger()
        loan = active_loan(service, "5000", "500", balance="4500")
        transaction_id = uuid4()

        first = service.allocator.allocate(borrower.id, Decimal("1000"), transaction_id)
        second = service.allocator.allocate(borrower.id, Decimal("1000"), transaction_id)

        assert service.get_loan(loan.id).remaining_balance == Decimal("4000")
        assert len(service.list_repayments(loan.id)) == 1
        assert first.allocations[0].already_applied is False
        assert second.allocations[0].already_applied is True
        assert second.allocations[0].repayment_id == first.allocations[0].repayment_id
        assert second.unallocated_amount == Decimal("500")
        assert len(repayment_notifications(service)) == 2

    def test_replay_does_not_debit_wallet_twice(self):
        """Test the borrower wallet moves once per applied repayment."""
        service, borrower, _ = make_ledger()
        active_loan(service, "5000", "500")
        transaction_id = uuid4()

        service.allocator.allocate(borrower.id, Decimal("500"), transaction_id)
        service.allocator.allocate(borrower.id, Decimal("500"), transaction_id)

        assert service.get_user(borrower.id).wallet_balance == Decimal("-500")


class TestFifoAllocation:
    """Tests for oldest-first allocation across a borrower's loans."""

    def test_oldest_loans_paid_first(self):
        """Test a payment covering two loans never touches the third."""
        service, borrower, _ = make_ledger()
        first = active_loan(service, "300", "300")
        second = active_loan(service, "400", "400")
        third = active_loan(service, "1000", "100")

        result = service.allocator.allocate(borrower.id, Decimal("700"), uuid4())

        assert [line.loan_id for line in result.allocations] == [first.id, second.id]
        assert service.get_loan(first.id).status == LoanStatus.COMPLETED
        assert service.get_loan(second.id).status == LoanStatus.COMPLETED
        assert service.get_loan(third.id).remaining_balance == Decimal("1000")

    def test_completed_and_pending_loans_are_skipped(self):
        """Test only active loans with a balance take part."""
        service, borrower, _ = make_ledger()
        done = active_loan(service, "500", "500", balance="0")
        service.storage.compare_and_swap(
            "loans", done.id, done.version, {"status": LoanStatus.COMPLETED},
        )
        pending = service.request_loan(CreateLoanRequest(
            borrower_phone=BORROWER_PHONE,
            lender_phone=LENDER_PHONE,
            principal_amount=Decimal("800"),
            repayment_amount=Decimal("200"),
        ))
        live = active_loan(service, "1000", "250")

        result = service.allocator.allocate(borrower.id, Decimal("300"), uuid4())

        assert [line.loan_id for line in result.allocations] == [live.id]
        assert service.get_loan(pending.id).remaining_balance == Decimal("800")

    def test_loan_id_restricts_allocation(self):
        """Test a payment that names its loan skips older loans."""
        service, borrower, _ = make_ledger()
        older = active_loan(service, "1000", "500")
        named = active_loan(service, "1000", "500")

        result = service.allocator.allocate(borrower.id, Decimal("500"), uuid4(), loan_id=named.id)

        assert [line.loan_id for line in result.allocations] == [named.id]
        assert service.get_loan(older.id).remaining_balance == Decimal("1000")

    def test_balances_stay_within_bounds(self):
        """Test repeated payments keep every balance in [0, principal] and complete at zero."""
        service, borrower, _ = make_ledger()
        loans = [
            active_loan(service, "600", "250"),
            active_loan(service, "900", "20", method=RepaymentMethod.PERCENTAGE),
            active_loan(service, "150", "150"),
        ]

        for amount in ("400", "1000", "120", "2500", "800"):
            service.allocator.allocate(borrower.id, Decimal(amount), uuid4())

        for loan in loans:
            current = service.get_loan(loan.id)
            assert Decimal("0") <= current.remaining_balance <= current.principal_amount
            assert (current.status == LoanStatus.COMPLETED) == (current.remaining_balance == 0)


class TestConcurrentWrites:
    """Tests for version conflicts and partial failure."""

    def test_retries_after_concurrent_loan_write(self, monkeypatch):
        """Test a version conflict is retried against a fresh read."""
        service, borrower, _ = make_ledger()
        loan = active_loan(service, "5000", "500")
        storage = service.storage
        original = storage.compare_and_swap
        raced = []

        def racing_cas(table, row_id, expected_version, changes):
            if table == "loans" and not raced:
                raced.append(row_id)
                raise ConflictError(f"loans row {row_id} changed")
            return original(table, row_id, expected_version, changes)

        monkeypatch.setattr(storage, "compare_and_swap", racing_cas)

        result = service.allocator.allocate(borrower.id, Decimal("500"), uuid4())

        assert raced == [loan.id]
        assert result.errors == []
        assert service.get_loan(loan.id).remaining_balance == Decimal("4500")
        assert len(service.list_repayments(loan.id)) == 1

    def test_exhausted_retries_reported_as_failure(self, monkeypatch):
        """Test a loan that keeps changing is reported, not silently skipped."""
        service, borrower, _ = make_ledger()
        loan = active_loan(service, "5000", "500")
        storage = service.storage
        original = storage.compare_and_swap

        def always_stale(table, row_id, expected_version, changes):
            if table == "loans":
                raise ConflictError(f"loans row {row_id} changed")
            return original(table, row_id, expected_version, changes)

        monkeypatch.setattr(storage, "compare_and_swap", always_stale)

        result = service.allocator.allocate(borrower.id, Decimal("500"), uuid4())

        assert result.is_partial
        assert result.errors[0].loan_id == loan.id
        assert result.unallocated_amount == Decimal("500")

    def test_failure_halts_walk_and_rerun_finishes(self, monkeypatch):
        """Test a failed loan stops allocation and a rerun completes without double-applying."""
        service, borrower, _ = make_ledger()
        first = active_loan(service, "1000", "300")
        second = active_loan(service, "1000", "300")
        third = active_loan(service, "1000", "300")
        storage = service.storage
        original = storage.compare_and_swap
        transaction_id = uuid4()

        def outage_on_second(table, row_id, expected_version, changes):
            if table == "loans" and row_id == second.id:
                raise TransientError("Ledger store is unreachable")
            return original(table, row_id, expected_version, changes)

        monkeypatch.setattr(storage, "compare_and_swap", outage_on_second)
        partial = service.allocator.allocate(borrower.id, Decimal("900"), transaction_id)

        assert partial.is_partial
        assert [line.loan_id for line in partial.allocations] == [first.id]
        assert service.get_loan(third.id).remaining_balance == Decimal("1000")

        monkeypatch.setattr(storage, "compare_and_swap", original)
        finished = service.allocator.allocate(borrower.id, Decimal("900"), transaction_id)

        assert finished.errors == []
        assert [line.loan_id for line in finished.allocations] == [first.id, second.id, third.id]
        assert finished.allocations[0].already_applied is True
        for loan in (first, second, third):
            assert service.get_loan(loan.id).remaining_balance == Decimal("700")
            assert len(service.list_repayments(loan.id)) == 1

    def test_failed_step_rolls_back_loan_write(self, monkeypatch):
        """Test a wallet failure undoes the loan balance change of the same step."""
        service, borrower, _ = make_ledger()
        loan = active_loan(service, "5000", "500")
        storage = service.storage
        original = storage.compare_and_swap

        def wallet_outage(table, row_id, expected_version, changes):
            if table == "users":
                raise TransientError("Ledger store is unreachable")
            return original(table, row_id, expected_version, changes)

        monkeypatch.setattr(storage, "compare_and_swap", wallet_outage)
        result = service.allocator.allocate(borrower.id, Decimal("500"), uuid4())

        assert result.is_partial
        assert service.get_loan(loan.id).remaining_balance == Decimal("5000")
        assert service.list_repayments(loan.id) == []

    def test_allocator_accepts_explicit_settings(self):
        """Test a standalone allocator honours its own threshold."""
        storage = InMemoryStorage(clock=Clock())
        allocator = RepaymentAllocator(storage, Settings(transaction_threshold=Decimal("1000")))

        result = allocator.allocate(uuid4(), Decimal("999"), uuid4())

        assert result.skipped_reason is not None
